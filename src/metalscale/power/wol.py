#!/usr/bin/env python3
"""Wake-on-LAN sender.

Builds magic packets and sends them as UDP broadcasts.
"""

import logging
import re
import socket
from typing import Optional

from metalscale.power.base import WakeError, WakeSender


logger = logging.getLogger(__name__)

# Constants
DEFAULT_WOL_PORT = 9
DEFAULT_BROADCAST_ADDRESS = "255.255.255.255"
MAGIC_PACKET_REPEAT = 16

_MAC_SEPARATORS = re.compile(r"[:\-.]")


def parse_mac(mac_address: str) -> bytes:
    """Parse a MAC address into its six bytes.

    Accepts colon, dash and dot separated forms as well as bare hex.

    Raises:
        WakeError: If the address is not a 48-bit MAC
    """
    digits = _MAC_SEPARATORS.sub("", mac_address.strip())
    if len(digits) != 12:
        raise WakeError(f"Invalid MAC address: {mac_address}")
    try:
        return bytes.fromhex(digits)
    except ValueError as exc:
        raise WakeError(f"Invalid MAC address: {mac_address}") from exc


def build_magic_packet(mac_address: str) -> bytes:
    """Build a 102-byte magic packet: six 0xFF bytes then the MAC sixteen times."""
    return b"\xff" * 6 + parse_mac(mac_address) * MAGIC_PACKET_REPEAT


class MagicPacketSender(WakeSender):
    """Sends magic packets over a UDP broadcast socket.

    Attributes:
        default_port: Port used when a call passes none
        default_broadcast_address: Broadcast address used when a call passes none
    """

    def __init__(
        self,
        default_port: int = DEFAULT_WOL_PORT,
        default_broadcast_address: str = DEFAULT_BROADCAST_ADDRESS,
    ) -> None:
        self.default_port = default_port
        self.default_broadcast_address = default_broadcast_address

    def wake(
        self, mac_address: str, port: Optional[int] = None, broadcast_address: Optional[str] = None
    ) -> None:
        packet = build_magic_packet(mac_address)
        port = port or self.default_port
        broadcast_address = broadcast_address or self.default_broadcast_address

        logger.info(f"Sending magic packet for {mac_address} to {broadcast_address}:{port}")
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
                sock.sendto(packet, (broadcast_address, port))
        except OSError as exc:
            msg = f"Failed to send magic packet for {mac_address}: {exc}"
            logger.error(msg)
            raise WakeError(msg) from exc

        logger.info(f"✓ Magic packet sent for {mac_address}")
