#!/usr/bin/env python3
"""Reachability probe using ICMP ping."""

import logging
import subprocess
import time

from metalscale.power.base import ReachabilityProbe


logger = logging.getLogger(__name__)

# Constants
DEFAULT_PING_ATTEMPTS = 3
DEFAULT_PING_TIMEOUT = 2
DEFAULT_RETRY_DELAY = 0.5


class PingProbe(ReachabilityProbe):
    """Reachability probe that runs the system ping binary.

    Tries a fixed number of times with a short per-attempt deadline and
    a delay between attempts.

    Attributes:
        attempts: Number of ping attempts
        timeout: Per-attempt deadline in seconds
        retry_delay: Seconds between attempts
    """

    def __init__(
        self,
        attempts: int = DEFAULT_PING_ATTEMPTS,
        timeout: int = DEFAULT_PING_TIMEOUT,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        self.attempts = attempts
        self.timeout = timeout
        self.retry_delay = retry_delay

    def ping(self, address: str) -> bool:
        """Send a single ping.

        Returns:
            True if the address answered, False otherwise
        """
        try:
            result = subprocess.run(
                ["ping", "-c", "1", "-W", str(self.timeout), address],
                capture_output=True,
                timeout=self.timeout + 1,
                check=False,
            )
            return result.returncode == 0
        except (subprocess.TimeoutExpired, OSError) as exc:
            logger.debug(f"Ping of {address} failed: {exc}")
            return False

    def is_reachable(self, address: str) -> bool:
        for attempt in range(self.attempts):
            if self.ping(address):
                return True
            if attempt < self.attempts - 1:
                time.sleep(self.retry_delay)

        logger.debug(f"{address} unreachable after {self.attempts} attempts")
        return False
