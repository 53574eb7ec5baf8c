#!/usr/bin/env python3
"""SSH shutdown executor.

Powers machines off by running a shutdown command over SSH.
"""

import logging
import subprocess
from typing import List, Optional

from metalscale.power.base import ShutdownError, ShutdownExecutor


logger = logging.getLogger(__name__)

# Constants
DEFAULT_SSH_USER = "root"
DEFAULT_CONNECT_TIMEOUT = 10
SHUTDOWN_COMMAND = "sudo shutdown -h now"
SSH_CONNECTION_CLOSED = 255


class SSHShutdownExecutor(ShutdownExecutor):
    """Shuts machines down through the ssh binary.

    The identity file is bound at construction. Host keys are not verified.

    Attributes:
        key_file: Private key passed to ssh with -i
        default_user: User when a call passes none
        connect_timeout: SSH connection timeout in seconds
    """

    def __init__(
        self,
        key_file: Optional[str],
        default_user: str = DEFAULT_SSH_USER,
        connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
    ) -> None:
        self.key_file = key_file
        self.default_user = default_user
        self.connect_timeout = connect_timeout

    def _build_command(self, host: str, user: str) -> List[str]:
        return [
            "ssh",
            "-i",
            str(self.key_file),
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
            f"{user}@{host}",
            SHUTDOWN_COMMAND,
        ]

    def shutdown(self, host: str, user: Optional[str] = None) -> None:
        if not self.key_file:
            raise ShutdownError("SSH private key is required")

        user = user or self.default_user
        logger.info(f"Shutting down {user}@{host} via SSH...")

        try:
            result = subprocess.run(
                self._build_command(host, user),
                capture_output=True,
                text=True,
                timeout=self.connect_timeout * 3,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            msg = f"SSH shutdown of {host} timed out"
            logger.error(msg)
            raise ShutdownError(msg) from exc
        except OSError as exc:
            msg = f"SSH shutdown of {host} failed: {exc}"
            logger.error(msg)
            raise ShutdownError(msg) from exc

        if result.returncode == 0:
            logger.info(f"✓ Shutdown command sent to {host}")
            return

        # A shutdown drops the session; 255 without a remote close is a connect failure
        if result.returncode == SSH_CONNECTION_CLOSED and "closed by remote host" in result.stderr:
            logger.info(f"✓ Shutdown command sent to {host} (connection closed)")
            return

        msg = f"SSH shutdown of {host} failed (exit {result.returncode}): {result.stderr.strip()}"
        logger.error(msg)
        raise ShutdownError(msg)
