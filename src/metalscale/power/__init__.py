"""Power capabilities for switching machines on and off and probing them."""

from metalscale.power.base import (
    BMCClient,
    PowerControlError,
    ReachabilityProbe,
    ShutdownError,
    ShutdownExecutor,
    WakeError,
    WakeSender,
)
from metalscale.power.factory import PowerBackends, create_power_backends
from metalscale.power.ipmi import (
    IPMICommandError,
    IPMIError,
    IPMITimeoutError,
    IPMIToolClient,
)
from metalscale.power.probe import PingProbe
from metalscale.power.ssh import SSHShutdownExecutor
from metalscale.power.wol import MagicPacketSender


__all__ = [
    # Interfaces and errors
    "WakeSender",
    "ShutdownExecutor",
    "BMCClient",
    "ReachabilityProbe",
    "PowerControlError",
    "WakeError",
    "ShutdownError",
    # Implementations
    "MagicPacketSender",
    "SSHShutdownExecutor",
    "IPMIToolClient",
    "IPMIError",
    "IPMITimeoutError",
    "IPMICommandError",
    "PingProbe",
    # Factory
    "PowerBackends",
    "create_power_backends",
]
