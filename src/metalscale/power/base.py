#!/usr/bin/env python3
"""Abstract base classes for power capabilities.

Provides the interfaces the reconciler consumes for powering machines on and
off and for checking whether they are reachable. Each capability is
independently pluggable.
"""

from abc import ABC, abstractmethod
from typing import Optional


class PowerControlError(Exception):
    """Base exception for power control errors."""


class WakeError(PowerControlError):
    """Raised when a magic packet cannot be sent."""


class ShutdownError(PowerControlError):
    """Raised when a remote shutdown cannot be executed."""


class WakeSender(ABC):
    """Sends Wake-on-LAN magic packets."""

    @abstractmethod
    def wake(
        self, mac_address: str, port: Optional[int] = None, broadcast_address: Optional[str] = None
    ) -> None:
        """Send a magic packet.

        Args:
            mac_address: Target MAC address
            port: UDP port (implementation default when None or 0)
            broadcast_address: Broadcast address (implementation default when None or empty)

        Raises:
            WakeError: If the packet cannot be built or sent
        """


class ShutdownExecutor(ABC):
    """Shuts machines down remotely.

    Credential material is bound at construction, not passed per call.
    """

    @abstractmethod
    def shutdown(self, host: str, user: Optional[str] = None) -> None:
        """Shut down a machine.

        Args:
            host: Machine hostname or IP address
            user: Remote user (implementation default when None)

        Raises:
            ShutdownError: If the shutdown command cannot be delivered
        """


class BMCClient(ABC):
    """Controls machines through their baseboard management controller."""

    @abstractmethod
    def power_on(self, address: str, username: str, password: str) -> None:
        """Power on the machine behind a BMC.

        Raises:
            PowerControlError: If the BMC call fails
        """

    @abstractmethod
    def power_off(self, address: str, username: str, password: str) -> None:
        """Power off the machine behind a BMC.

        Raises:
            PowerControlError: If the BMC call fails
        """

    @abstractmethod
    def get_power_status(self, address: str, username: str, password: str) -> bool:
        """Return True if the chassis reports power on.

        Raises:
            PowerControlError: If the BMC call fails or the answer is unrecognized
        """


class ReachabilityProbe(ABC):
    """Checks whether a machine answers on the network."""

    @abstractmethod
    def is_reachable(self, address: str) -> bool:
        """Return True if the address answers.

        Failures collapse to False; there is no error channel.
        """
