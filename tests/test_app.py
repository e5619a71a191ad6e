import math

from airvol.app import AirVolumeApp
from airvol.constants import DEFAULT_CONFIG_FILE
from airvol.models import Target
from conftest import RecordingSink
from main import build_parser


def _app(tmp_path, **kwargs):
    return AirVolumeApp(
        config_file=str(tmp_path / "airvol_config.json"),
        configure_logging=False,
        sink=RecordingSink(),
        **kwargs
    )


def test_components_are_wired_from_configuration(tmp_path):
    app = _app(tmp_path, environ={"AIRVOL_IP": "10.0.0.9"},
               config_overrides={"discovery.enabled": False, "connection.heartbeat_interval": 2.0})

    assert app.initialize_components() is True
    assert app.discovery is None
    assert app.supervisor.heartbeat_interval == 2.0
    assert app.supervisor.event_sink is app.event_log

    target = app.selector.select()
    assert target == Target("10.0.0.9", 81)
    assert target.last_seen == math.inf


def test_status_before_start(tmp_path):
    app = _app(tmp_path, environ={}, forced_overrides={"name": "Studio"})
    assert app.initialize_components() is True
    assert app.discovery is not None
    assert app.discovery.forced.name == "Studio"

    status = app.get_status()
    assert status["running"] is False
    assert status["state"] == "Idle"
    assert status["target"] is None
    assert status["last_volume"] is None
    assert "uptime" in status["diagnostics"]


def test_state_changes_reach_diagnostics(tmp_path):
    app = _app(tmp_path, environ={})
    app.initialize_components()

    app.supervisor._set_state(app.supervisor.state.reconnecting(0.1))
    app.supervisor._set_state(app.supervisor.state.error("boom"))

    summary = app.diagnostic_logger.get_diagnostic_summary()
    assert summary["error_counts"] == {"supervisor_error": 1}
    assert "connection.retry_delay" in summary["performance_metrics"]
    assert "state" in summary["diagnostic_categories"]


def test_command_line_defaults_match_application():
    args = build_parser().parse_args([])
    assert args.config == DEFAULT_CONFIG_FILE
    assert AirVolumeApp(configure_logging=False).config_file == DEFAULT_CONFIG_FILE
