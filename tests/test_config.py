import json

from airvol.config import ConfigManager, resolve_forced_config
from airvol.constants import DEFAULT_CONFIG, DEFAULT_CONFIG_FILE
from airvol.models import ForcedConfig


def _write(path, data):
    path.write_text(json.dumps(data))
    return str(path)


def test_missing_file_is_created_with_defaults(tmp_path):
    config_file = tmp_path / "airvol_config.json"
    manager = ConfigManager(str(config_file))

    assert config_file.exists()
    assert manager.config == DEFAULT_CONFIG
    assert manager.get("discovery.port") == 4210
    assert manager.get("connection.watchdog_timeout") == 12.0


def test_partial_file_is_merged_over_defaults(tmp_path):
    config_file = _write(tmp_path / "c.json", {"connection": {"heartbeat_interval": 2}})
    manager = ConfigManager(config_file)

    assert manager.get("connection.heartbeat_interval") == 2
    assert manager.get("connection.retry_max") == 1.0
    assert manager.get("volume.threshold") == 0.5


def test_invalid_values_are_reset(tmp_path):
    config_file = _write(tmp_path / "c.json", {
        "discovery": {"port": 70000, "interval": "fast"},
        "connection": {"retry_min": 5.0, "retry_max": 1.0},
        "volume": {"sink": "speakers"},
        "settings": {"debug": 1},
    })
    manager = ConfigManager(config_file)

    assert manager.get("discovery.port") == 4210
    assert manager.get("discovery.interval") == 7.0
    assert manager.get("connection.retry_min") == 0.05
    assert manager.get("connection.retry_max") == 1.0
    assert manager.get("volume.sink") == "auto"
    assert manager.get("settings.debug") is False


def test_unreadable_file_uses_defaults(tmp_path):
    config_file = tmp_path / "c.json"
    config_file.write_text("{not json")
    manager = ConfigManager(str(config_file))
    assert manager.config == DEFAULT_CONFIG


def test_set_without_persisting(tmp_path):
    config_file = tmp_path / "c.json"
    manager = ConfigManager(str(config_file))
    manager.set("settings.debug", True, persist=False)

    assert manager.get("settings.debug") is True
    assert json.loads(config_file.read_text())["settings"]["debug"] is False


def test_forced_config_precedence(tmp_path):
    config_file = _write(tmp_path / "c.json", {"forced": {"ip": "10.0.0.1", "ws_port": 8000, "name": "Cfg"}})
    manager = ConfigManager(config_file)

    assert resolve_forced_config(manager, environ={}) == ForcedConfig("10.0.0.1", 8000, "Cfg")

    environ = {"AIRVOL_IP": "10.0.0.2", "AIRVOL_WS_PORT": "81", "AIRVOL_NAME": ""}
    assert resolve_forced_config(manager, environ=environ) == ForcedConfig("10.0.0.2", 81, "Cfg")

    overrides = {"ip": "10.0.0.3", "ws_port": None, "name": "Studio"}
    assert resolve_forced_config(manager, environ=environ, overrides=overrides) == \
        ForcedConfig("10.0.0.3", 81, "Studio")


def test_forced_config_ignores_bad_port(tmp_path):
    manager = ConfigManager(str(tmp_path / "c.json"))
    forced = resolve_forced_config(manager, environ={"AIRVOL_WS_PORT": "eighty"})
    assert forced == ForcedConfig()
    assert not forced.is_active()

    forced = resolve_forced_config(manager, environ={"AIRVOL_WS_PORT": "99999"})
    assert forced.port is None


def test_default_file_name(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    manager = ConfigManager()

    assert manager.config_file == DEFAULT_CONFIG_FILE
    assert (tmp_path / DEFAULT_CONFIG_FILE).exists()
