"""
Configuration tests: YAML loading, defaults, TLS completeness, inventory parsing.
"""

import textwrap

import pytest

from metalscale.config import ConfigError, ControllerConfig, TLSConfig, load_config, load_machines
from metalscale.config.config import DEFAULT_FAILURE_THRESHOLD, DEFAULT_REQUEUE_INTERVAL


def _write(path, content):
    path.write_text(textwrap.dedent(content))
    return str(path)


class TestControllerConfig:
    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(str(tmp_path.resolve() / "absent.yaml"))
        assert config.server.address == "0.0.0.0:8086"
        assert config.reconcile.failure_threshold == DEFAULT_FAILURE_THRESHOLD
        assert config.reconcile.requeue_interval == DEFAULT_REQUEUE_INTERVAL
        assert not config.server.tls.enabled

    def test_full_file(self, tmp_path):
        path = _write(
            tmp_path / "metalscale.yaml",
            """
            server:
              address: "127.0.0.1:9443"
              tls:
                cert: certs/server.crt
                key: certs/server.key
                ca: /etc/pki/ca.crt
            reconcile:
              requeue_interval: 30
              failure_threshold: 5
              workers: 2
            power:
              wol:
                port: 7
              ssh:
                user: ops
                key_file: keys/id_ed25519
              probe:
                attempts: 1
            database_path: state/machines.db
            """,
        )
        config = load_config(path)

        assert config.server.port == 9443
        assert config.server.tls.enabled
        assert config.server.tls.cert_file == str(tmp_path.resolve() / "certs" / "server.crt")
        assert config.server.tls.ca_file == "/etc/pki/ca.crt"
        assert config.reconcile.requeue_interval == 30
        assert config.reconcile.failure_threshold == 5
        assert config.reconcile.workers == 2
        assert config.power.wol_port == 7
        assert config.power.ssh_user == "ops"
        assert config.power.ssh_key_file == str(tmp_path.resolve() / "keys" / "id_ed25519")
        assert config.power.probe_attempts == 1
        assert config.db_path == str(tmp_path.resolve() / "state" / "machines.db")

    def test_partial_tls_rejected(self, tmp_path):
        path = _write(
            tmp_path / "metalscale.yaml",
            """
            server:
              tls:
                cert: server.crt
                key: server.key
            """,
        )
        with pytest.raises(ConfigError, match="TLS"):
            load_config(path)

    @pytest.mark.parametrize(
        "tls,enabled",
        [
            (TLSConfig(), False),
            (TLSConfig(cert_file="a", key_file="b", ca_file="c"), True),
        ],
    )
    def test_tls_all_or_none(self, tls, enabled):
        tls.validate()
        assert tls.enabled is enabled

    def test_bad_address(self):
        config = ControllerConfig()
        config.server.address = "localhost:http"
        with pytest.raises(ConfigError):
            config.validate()

    def test_non_positive_threshold(self):
        config = ControllerConfig()
        config.reconcile.failure_threshold = 0
        with pytest.raises(ConfigError):
            config.validate()

    def test_invalid_yaml(self, tmp_path):
        path = _write(tmp_path / "metalscale.yaml", "server: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config(path)


class TestInventory:
    def test_load_machines(self, tmp_path):
        path = _write(
            tmp_path / "machines.yaml",
            """
            machines:
              - name: node-01
                type: wol
                power_state: "on"
                wol:
                  address: 10.0.0.21
                  mac_address: "aa:bb:cc:dd:ee:01"
                  user: admin
                labels:
                  gpu-type: a100
              - name: bmc-01
                type: ipmi
                ipmi:
                  address: 10.0.1.22
                  username: ADMIN
                  password: secret
            """,
        )
        wol, ipmi = load_machines(path)

        assert wol.control_type == "wol"
        assert wol.power_state == "on"
        assert wol.address == "10.0.0.21"
        assert wol.mac_address == "aa:bb:cc:dd:ee:01"
        assert wol.ssh_user == "admin"
        assert wol.labels == {"gpu-type": "a100"}

        assert ipmi.control_type == "ipmi"
        assert ipmi.power_state == "off"
        assert ipmi.address == "10.0.1.22"
        assert ipmi.ipmi_password == "secret"

    def test_missing_inventory(self, tmp_path):
        with pytest.raises(ConfigError):
            load_machines(str(tmp_path.resolve() / "absent.yaml"))

    def test_entry_without_name(self, tmp_path):
        path = _write(tmp_path / "machines.yaml", "machines:\n  - type: wol\n")
        with pytest.raises(ConfigError, match="name"):
            load_machines(path)

    def test_unknown_type(self, tmp_path):
        path = _write(tmp_path / "machines.yaml", "machines:\n  - name: x\n    type: redfish\n")
        with pytest.raises(ConfigError, match="redfish"):
            load_machines(path)

    def test_bare_on_off(self, tmp_path):
        path = _write(
            tmp_path / "machines.yaml",
            "machines:\n  - name: a\n    power_state: on\n  - name: b\n    power_state: off\n",
        )
        assert [m.power_state for m in load_machines(path)] == ["on", "off"]
