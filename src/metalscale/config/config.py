#!/usr/bin/env python3
"""Configuration classes for the metalscale controller.

This module contains the configuration dataclasses used throughout metalscale
and the YAML loader that builds them.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


logger = logging.getLogger(__name__)

# Constants
DEFAULT_CONFIG_PATH = "metalscale.yaml"
DEFAULT_LISTEN_ADDRESS = "0.0.0.0:8086"
DEFAULT_REQUEUE_INTERVAL = 60
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_RESYNC_INTERVAL = 60
DEFAULT_WORKERS = 4
DEFAULT_WOL_PORT = 9
DEFAULT_BROADCAST_ADDRESS = "255.255.255.255"
DEFAULT_SSH_USER = "root"


class ConfigError(Exception):
    """Raised when the controller configuration is invalid."""


@dataclass
class TLSConfig:
    """TLS material for the RPC server.

    Either all three paths are set (mutual TLS) or none of them.

    Attributes:
        cert_file: Server certificate (PEM)
        key_file: Server private key (PEM)
        ca_file: CA bundle used to verify client certificates
    """

    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    ca_file: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.cert_file and self.key_file and self.ca_file)

    def validate(self) -> None:
        set_count = sum(1 for value in (self.cert_file, self.key_file, self.ca_file) if value)
        if 0 < set_count < 3:
            raise ConfigError("All TLS options (cert, key, ca) must be set together, or none")


@dataclass
class ServerConfig:
    """RPC server configuration.

    Attributes:
        address: host:port the server binds to
        tls: Optional TLS material
        graceful_shutdown_timeout: Seconds to wait for in-flight calls on shutdown
    """

    address: str = DEFAULT_LISTEN_ADDRESS
    tls: TLSConfig = field(default_factory=TLSConfig)
    graceful_shutdown_timeout: int = 30

    @property
    def host(self) -> str:
        host, _, _ = self.address.rpartition(":")
        # [::]:8086 binds the IPv6 wildcard
        host = host.strip("[]")
        return host or "0.0.0.0"

    @property
    def port(self) -> int:
        _, _, port = self.address.rpartition(":")
        return int(port)


@dataclass
class ReconcileConfig:
    """Reconciliation loop tuning.

    Attributes:
        requeue_interval: Seconds before re-checking a machine with a pending transition
        failure_threshold: Consecutive failures before a machine is marked failed
        resync_interval: Seconds between full resyncs of every record
        workers: Number of reconcile worker threads
    """

    requeue_interval: int = DEFAULT_REQUEUE_INTERVAL
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    resync_interval: int = DEFAULT_RESYNC_INTERVAL
    workers: int = DEFAULT_WORKERS


@dataclass
class PowerConfig:
    """Settings shared by the power backends.

    Attributes:
        wol_port: Default UDP port for magic packets
        broadcast_address: Default broadcast address for magic packets
        ssh_user: Default user for SSH shutdown
        ssh_key_file: Private key used for SSH shutdown
        ssh_connect_timeout: SSH connection timeout in seconds
        ipmi_timeout: ipmitool command timeout in seconds
        probe_attempts: Ping attempts per reachability check
        probe_timeout: Per-attempt ping deadline in seconds
        probe_retry_delay: Delay between ping attempts in seconds
    """

    wol_port: int = DEFAULT_WOL_PORT
    broadcast_address: str = DEFAULT_BROADCAST_ADDRESS
    ssh_user: str = DEFAULT_SSH_USER
    ssh_key_file: Optional[str] = None
    ssh_connect_timeout: int = 10
    ipmi_timeout: int = 30
    probe_attempts: int = 3
    probe_timeout: int = 2
    probe_retry_delay: float = 0.5


@dataclass
class ControllerConfig:
    """Top-level controller configuration.

    Attributes:
        server: RPC server settings
        reconcile: Reconciliation loop settings
        power: Power backend settings
        db_path: Path to the SQLite record database
    """

    server: ServerConfig = field(default_factory=ServerConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    power: PowerConfig = field(default_factory=PowerConfig)
    db_path: str = "metalscale.db"

    def validate(self) -> None:
        """Check the configuration for consistency.

        Raises:
            ConfigError: If any setting is invalid
        """
        if not self.server.address:
            raise ConfigError("Server address is required")
        try:
            self.server.port
        except ValueError as exc:
            raise ConfigError(f"Invalid server address '{self.server.address}'") from exc
        self.server.tls.validate()
        if self.reconcile.requeue_interval <= 0:
            raise ConfigError("requeue_interval must be positive")
        if self.reconcile.failure_threshold <= 0:
            raise ConfigError("failure_threshold must be positive")
        if self.reconcile.workers <= 0:
            raise ConfigError("workers must be positive")


@dataclass
class MachineConfig:
    """Inventory entry for one physical machine.

    Attributes:
        name: Unique machine name
        control_type: Power control method ("wol" or "ipmi")
        power_state: Initial desired power state
        address: Network address of the machine (WOL) or its BMC (IPMI)
        mac_address: MAC address for magic packets (WOL)
        port: Magic packet UDP port (WOL)
        broadcast_address: Broadcast address for magic packets (WOL)
        ssh_user: User for SSH shutdown (WOL)
        ipmi_user: BMC username (IPMI)
        ipmi_password: BMC password (IPMI)
        labels: Free-form labels
    """

    name: str
    control_type: str = "wol"
    power_state: str = "off"
    address: Optional[str] = None
    mac_address: Optional[str] = None
    port: Optional[int] = None
    broadcast_address: Optional[str] = None
    ssh_user: Optional[str] = None
    ipmi_user: Optional[str] = None
    ipmi_password: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)


def _resolve_path(config_dir: Path, value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    path = Path(value).expanduser()
    if path.is_absolute():
        return str(path)
    resolved = (config_dir / path).resolve()
    logger.debug(f"Resolved path: {value} -> {resolved}")
    return str(resolved)


def build_controller_config(
    config_dict: Dict[str, Any], config_dir: Optional[Path] = None
) -> ControllerConfig:
    """Create ControllerConfig from a parsed YAML dictionary.

    Args:
        config_dict: Configuration dictionary from YAML
        config_dir: Directory used to resolve relative paths

    Returns:
        ControllerConfig object
    """
    config_dir = config_dir or Path.cwd()

    server_dict = config_dict.get("server", {}) or {}
    tls_dict = server_dict.get("tls", {}) or {}
    reconcile_dict = config_dict.get("reconcile", {}) or {}
    power_dict = config_dict.get("power", {}) or {}
    wol_dict = power_dict.get("wol", {}) or {}
    ssh_dict = power_dict.get("ssh", {}) or {}
    probe_dict = power_dict.get("probe", {}) or {}

    return ControllerConfig(
        server=ServerConfig(
            address=server_dict.get("address", DEFAULT_LISTEN_ADDRESS),
            tls=TLSConfig(
                cert_file=_resolve_path(config_dir, tls_dict.get("cert")),
                key_file=_resolve_path(config_dir, tls_dict.get("key")),
                ca_file=_resolve_path(config_dir, tls_dict.get("ca")),
            ),
            graceful_shutdown_timeout=server_dict.get("graceful_shutdown_timeout", 30),
        ),
        reconcile=ReconcileConfig(
            requeue_interval=reconcile_dict.get("requeue_interval", DEFAULT_REQUEUE_INTERVAL),
            failure_threshold=reconcile_dict.get("failure_threshold", DEFAULT_FAILURE_THRESHOLD),
            resync_interval=reconcile_dict.get("resync_interval", DEFAULT_RESYNC_INTERVAL),
            workers=reconcile_dict.get("workers", DEFAULT_WORKERS),
        ),
        power=PowerConfig(
            wol_port=wol_dict.get("port", DEFAULT_WOL_PORT),
            broadcast_address=wol_dict.get("broadcast_address", DEFAULT_BROADCAST_ADDRESS),
            ssh_user=ssh_dict.get("user", DEFAULT_SSH_USER),
            ssh_key_file=_resolve_path(config_dir, ssh_dict.get("key_file")),
            ssh_connect_timeout=ssh_dict.get("connect_timeout", 10),
            ipmi_timeout=(power_dict.get("ipmi", {}) or {}).get("timeout", 30),
            probe_attempts=probe_dict.get("attempts", 3),
            probe_timeout=probe_dict.get("timeout", 2),
            probe_retry_delay=probe_dict.get("retry_delay", 0.5),
        ),
        db_path=_resolve_path(config_dir, config_dict.get("database_path", "metalscale.db")),
    )


def load_config(config_path: str) -> ControllerConfig:
    """Load controller configuration from a YAML file.

    A missing file yields the defaults.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated ControllerConfig

    Raises:
        ConfigError: If the file cannot be parsed or the result is invalid
    """
    path = Path(config_path)

    if not path.exists():
        logger.info(f"Config file {config_path} not found, using defaults")
        config = ControllerConfig()
        config.validate()
        return config

    try:
        with path.open() as f:
            config_dict = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {config_path}: {exc}") from exc

    config = build_controller_config(config_dict, path.parent.resolve())
    config.validate()
    return config


def load_machines(inventory_path: str) -> List[MachineConfig]:
    """Load a machine inventory from a YAML file.

    Args:
        inventory_path: Path to YAML file with a top-level 'machines' list

    Returns:
        List of MachineConfig entries

    Raises:
        ConfigError: If the file is missing or an entry is malformed
    """
    path = Path(inventory_path)
    if not path.exists():
        raise ConfigError(f"Inventory file not found: {inventory_path}")

    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {inventory_path}: {exc}") from exc

    machines = []
    for entry in data.get("machines", []) or []:
        if "name" not in entry:
            raise ConfigError("Each machine must have a 'name' field")

        control_type = str(entry.get("type", "wol")).lower()
        if control_type not in ("wol", "ipmi"):
            raise ConfigError(f"Machine {entry['name']}: unknown type '{control_type}'")
        power_state = entry.get("power_state", "off")
        if isinstance(power_state, bool):
            # YAML reads bare on/off as booleans
            power_state = "on" if power_state else "off"
        power_state = str(power_state).lower()
        if power_state not in ("on", "off"):
            raise ConfigError(f"Machine {entry['name']}: invalid power_state '{power_state}'")
        wol = entry.get("wol", {}) or {}
        ipmi = entry.get("ipmi", {}) or {}
        section = wol if control_type == "wol" else ipmi

        machines.append(
            MachineConfig(
                name=entry["name"],
                control_type=control_type,
                power_state=power_state,
                address=section.get("address"),
                mac_address=wol.get("mac_address"),
                port=wol.get("port"),
                broadcast_address=wol.get("broadcast_address"),
                ssh_user=wol.get("user"),
                ipmi_user=ipmi.get("username"),
                ipmi_password=ipmi.get("password"),
                labels={str(k): str(v) for k, v in (entry.get("labels", {}) or {}).items()},
            )
        )

    logger.info(f"Loaded inventory with {len(machines)} machines")
    return machines
