#!/usr/bin/env python3
"""Factory for creating power backend instances.

Provides centralized backend instantiation based on controller configuration.
"""

import logging
from dataclasses import dataclass

from metalscale.config.config import PowerConfig
from metalscale.power.base import BMCClient, ReachabilityProbe, ShutdownExecutor, WakeSender


logger = logging.getLogger(__name__)


@dataclass
class PowerBackends:
    """The capability set handed to the reconciler.

    Attributes:
        wake_sender: Powers WOL machines on
        shutdown_executor: Powers WOL machines off
        bmc_client: Powers IPMI machines on and off
        probe: Checks machine reachability
    """

    wake_sender: WakeSender
    shutdown_executor: ShutdownExecutor
    bmc_client: BMCClient
    probe: ReachabilityProbe


def create_power_backends(power_config: PowerConfig) -> PowerBackends:
    """Create the default backends from configuration.

    Args:
        power_config: Power backend settings

    Returns:
        PowerBackends with magic packet, SSH, ipmitool and ping implementations
    """
    from metalscale.power.ipmi import IPMIToolClient
    from metalscale.power.probe import PingProbe
    from metalscale.power.ssh import SSHShutdownExecutor
    from metalscale.power.wol import MagicPacketSender

    if not power_config.ssh_key_file:
        logger.warning("No SSH key configured, WOL machines cannot be powered off")

    return PowerBackends(
        wake_sender=MagicPacketSender(
            default_port=power_config.wol_port,
            default_broadcast_address=power_config.broadcast_address,
        ),
        shutdown_executor=SSHShutdownExecutor(
            key_file=power_config.ssh_key_file,
            default_user=power_config.ssh_user,
            connect_timeout=power_config.ssh_connect_timeout,
        ),
        bmc_client=IPMIToolClient(timeout=power_config.ipmi_timeout),
        probe=PingProbe(
            attempts=power_config.probe_attempts,
            timeout=power_config.probe_timeout,
            retry_delay=power_config.probe_retry_delay,
        ),
    )
