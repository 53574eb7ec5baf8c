#!/usr/bin/env python3
"""IPMI Client - Power management via ipmitool.

Handles chassis power on, soft power off and power status queries.
"""

import logging
import os
import subprocess
import tempfile
from typing import List, Tuple

from metalscale.power.base import BMCClient, PowerControlError


logger = logging.getLogger(__name__)

# Constants
DEFAULT_IPMI_TIMEOUT = 30


class IPMIError(PowerControlError):
    """Base exception for IPMI-related errors."""


class IPMITimeoutError(IPMIError):
    """Exception raised when IPMI command times out."""


class IPMICommandError(IPMIError):
    """Exception raised when IPMI command fails."""


class IPMIToolClient(BMCClient):
    """BMC client that shells out to ipmitool over lanplus.

    The password is written to a private temporary file so it never shows
    up in the process list.

    Attributes:
        timeout: Per-command timeout in seconds
    """

    def __init__(self, timeout: int = DEFAULT_IPMI_TIMEOUT) -> None:
        self.timeout = timeout

    def _run_ipmi_command(
        self, address: str, username: str, password: str, args: List[str]
    ) -> Tuple[int, str, str]:
        """Run ipmitool command.

        Args:
            address: BMC hostname or IP address
            username: BMC username
            password: BMC password
            args: Command arguments to pass to ipmitool

        Returns:
            Tuple of (return_code, stdout, stderr)

        Raises:
            IPMITimeoutError: If command times out
            IPMICommandError: If command fails to execute
        """
        password_file = None
        try:
            fd, password_file = tempfile.mkstemp(prefix="ipmi_", suffix=".tmp", text=True)
            try:
                os.write(fd, password.encode("utf-8"))
            finally:
                os.close(fd)
            os.chmod(password_file, 0o600)

            cmd = [
                "ipmitool",
                "-I",
                "lanplus",
                "-H",
                address,
                "-U",
                username,
                "-f",
                password_file,
            ] + args

            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout, check=False
            )
            return result.returncode, result.stdout, result.stderr

        except subprocess.TimeoutExpired as exc:
            msg = f"IPMI command to {address} timed out after {self.timeout}s"
            logger.error(msg)
            raise IPMITimeoutError(msg) from exc
        except OSError as exc:
            msg = f"IPMI command to {address} failed: {exc}"
            logger.error(msg)
            raise IPMICommandError(msg) from exc
        finally:
            if password_file and os.path.exists(password_file):
                try:
                    os.unlink(password_file)
                except OSError as exc:
                    logger.error(
                        f"SECURITY: Failed to delete IPMI password file {password_file}: {exc}"
                    )

    def _power(self, address: str, username: str, password: str, action: str) -> None:
        ret, _, stderr = self._run_ipmi_command(address, username, password, ["power", action])
        if ret != 0:
            msg = f"IPMI power {action} on {address} failed: {stderr.strip()}"
            logger.error(msg)
            raise IPMICommandError(msg)

    def power_on(self, address: str, username: str, password: str) -> None:
        logger.info(f"Powering on {address} via IPMI...")
        self._power(address, username, password, "on")
        logger.info(f"✓ Power on command sent to {address}")

    def power_off(self, address: str, username: str, password: str) -> None:
        # Soft power off asks the OS for an ACPI shutdown
        logger.info(f"Powering off {address} via IPMI...")
        self._power(address, username, password, "soft")
        logger.info(f"✓ Power off command sent to {address}")

    def get_power_status(self, address: str, username: str, password: str) -> bool:
        ret, stdout, stderr = self._run_ipmi_command(
            address, username, password, ["power", "status"]
        )
        if ret != 0:
            raise IPMICommandError(f"Failed to get power status of {address}: {stderr.strip()}")

        stdout_lower = stdout.lower()
        if "is on" in stdout_lower:
            return True
        if "is off" in stdout_lower:
            return False
        raise IPMICommandError(f"Unrecognized power status from {address}: {stdout.strip()}")
