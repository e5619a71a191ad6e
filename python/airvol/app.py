"""
Main application coordinator for the volume follower.
"""

import queue
import sys
import time
import logging
import psutil
from .config import ConfigManager, resolve_forced_config
from .constants import CANDIDATE_QUEUE_SIZE, DEFAULT_CONFIG_FILE
from .diagnostics import DiagnosticLogger
from .discovery import DiscoveryListener
from .events import EventLog, EventSink
from .models import StateKind
from .supervisor import ConnectionSupervisor, RetryBackoff
from .targets import TargetSelector
from .volume_controller import NullVolumeSink, VolumeGate, create_volume_sink

logger = logging.getLogger(__name__)


class _DiagnosticsListener(EventSink):
    """Feeds state transitions into the diagnostic logger"""

    def __init__(self, diagnostic_logger):
        self.diagnostic_logger = diagnostic_logger

    def log_line(self, timestamp, message):
        pass

    def state_changed(self, state):
        self.diagnostic_logger.log_diagnostic("state", state.describe())
        if state.kind is StateKind.RECONNECTING:
            self.diagnostic_logger.log_performance_metric("connection.retry_delay", state.detail, "s")
        elif state.kind is StateKind.ERROR:
            self.diagnostic_logger.log_error_event("supervisor_error", state.detail)


class AirVolumeApp:
    """Main application class that coordinates all components"""

    def __init__(self, config_file=DEFAULT_CONFIG_FILE, forced_overrides=None,
                 environ=None, sink=None, config_overrides=None,
                 configure_logging=True):
        """
        Initialize the application

        Args:
            config_file (str): Path to configuration file
            forced_overrides (dict): Forced ip/ws_port/name from the command line
            environ (dict): Environment used for forced overrides
            sink (VolumeSink): Volume sink to use instead of the configured one
            config_overrides (dict): Dotted config keys overriding the file for this run
            configure_logging (bool): Let the diagnostic logger install handlers
        """
        self.config_file = config_file
        self.forced_overrides = forced_overrides or {}
        self.environ = environ
        self.sink = sink
        self.config_overrides = config_overrides or {}
        self.configure_logging = configure_logging
        self.running = False

        # Component instances
        self.config_manager = None
        self.diagnostic_logger = None
        self.forced = None
        self.event_log = None
        self.gate = None
        self.selector = None
        self.candidates = None
        self.discovery = None
        self.supervisor = None

        logger.info("Air Volume application initializing...")

    def initialize_components(self):
        """Initialize all application components"""
        try:
            self.config_manager = ConfigManager(self.config_file)
            for key_path, value in self.config_overrides.items():
                self.config_manager.set(key_path, value, persist=False)
            self.diagnostic_logger = DiagnosticLogger(
                self.config_manager, configure_logging=self.configure_logging)

            self.forced = resolve_forced_config(
                self.config_manager, environ=self.environ, overrides=self.forced_overrides)

            settings = self.config_manager.get_settings()
            self.event_log = EventLog(max_lines=settings.get("event_log_size", 200))
            self.event_log.subscribe(_DiagnosticsListener(self.diagnostic_logger))

            volume_config = self.config_manager.get_volume_config()
            if self.sink is None:
                self.sink = create_volume_sink(volume_config.get("sink", "auto"))
            self.gate = VolumeGate(self.sink, threshold=volume_config.get("threshold", 0.5))

            connection = self.config_manager.get_connection_config()
            self.selector = TargetSelector(
                forced=self.forced,
                event_sink=self.event_log,
                default_ws_port=connection["default_ws_port"],
            )

            discovery_config = self.config_manager.get_discovery_config()
            if discovery_config.get("enabled", True):
                self.candidates = queue.Queue(maxsize=CANDIDATE_QUEUE_SIZE)
                self.discovery = DiscoveryListener(
                    self.candidates,
                    forced=self.forced,
                    event_sink=self.event_log,
                    port=discovery_config["port"],
                    address=discovery_config["address"],
                    service=discovery_config["service"],
                    interval=discovery_config["interval"],
                    jitter=discovery_config["jitter"],
                    receive_timeout=discovery_config["receive_timeout"],
                )
            else:
                logger.info("Discovery is disabled in the configuration")

            self.supervisor = ConnectionSupervisor(
                self.selector,
                self.gate,
                event_sink=self.event_log,
                forced=self.forced,
                heartbeat_interval=connection["heartbeat_interval"],
                watchdog_timeout=connection["watchdog_timeout"],
                watchdog_tick=connection["watchdog_tick"],
                connect_timeout=connection["connect_timeout"],
                close_timeout=connection["close_timeout"],
                stale_target_ttl=connection["stale_target_ttl"],
                idle_poll=connection["idle_poll"],
                origin=connection["origin"] or None,
                backoff=RetryBackoff(
                    minimum=connection["retry_min"],
                    maximum=connection["retry_max"],
                    multiplier=connection["retry_multiplier"],
                    jitter=connection["retry_jitter"],
                ),
            )

            logger.info("All components initialized successfully")
            return True

        except (OSError, KeyError, ValueError) as e:
            logger.error(f"Error initializing components: {e}")
            if self.diagnostic_logger:
                self.diagnostic_logger.log_error_event("initialization_error", str(e))
            return False

    def start(self, block=True):
        """
        Start discovery, target selection and the supervisor

        Args:
            block (bool): Run the console loop until interrupted
        """
        if self.config_manager is None and not self.initialize_components():
            logger.error("Failed to initialize application components")
            return False

        self.running = True
        logger.info("Starting Air Volume...")
        self._log_startup_diagnostics()

        if self.discovery:
            if not self.discovery.start():
                self.diagnostic_logger.log_error_event("discovery_error", "discovery socket unavailable")
                if not self.forced.ip:
                    logger.warning("Discovery unavailable and no forced IP: waiting forever for a target")
            self.selector.start(self.candidates)
        self.supervisor.start()

        if not block:
            return True

        try:
            self._run_console_mode()
        finally:
            self.stop()
        return True

    def _run_console_mode(self):
        """Log state changes until interrupted"""
        logger.info("Console mode active. Press Ctrl+C to quit.")
        last_state = None
        try:
            while self.running:
                state = self.supervisor.state
                if state != last_state:
                    logger.info(f"Status: {state}")
                    last_state = state
                time.sleep(0.5)
        except KeyboardInterrupt:
            logger.info("Console mode interrupted")

    def stop(self):
        """Stop the application gracefully"""
        if not self.running:
            return
        logger.info("Stopping Air Volume...")
        self.running = False

        if self.supervisor:
            self.supervisor.stop()
        if self.discovery:
            self.discovery.stop()
        if self.selector:
            self.selector.stop()

        self._log_shutdown_diagnostics()
        if self.diagnostic_logger:
            self.diagnostic_logger.cleanup()
        logger.info("Application stopped successfully")

    def _log_startup_diagnostics(self):
        """Log diagnostic information at startup"""
        system_info = {
            "python_version": sys.version.split()[0],
            "platform": sys.platform,
            "cpu_count": psutil.cpu_count(),
            "volume_sink": getattr(self.sink, "name", type(self.sink).__name__),
            "dry_run": isinstance(self.sink, NullVolumeSink),
            "forced": {
                "ip": self.forced.ip,
                "ws_port": self.forced.port,
                "name": self.forced.name,
            },
            "discovery_enabled": self.discovery is not None,
        }
        self.diagnostic_logger.log_diagnostic("startup", system_info)
        logger.info("Startup diagnostics logged")

    def _log_shutdown_diagnostics(self):
        """Log diagnostic information at shutdown"""
        if not self.diagnostic_logger:
            return
        diagnostics = self.diagnostic_logger.get_diagnostic_summary()
        shutdown_info = {
            "uptime": diagnostics.get("uptime_formatted", "unknown"),
            "total_errors": sum(diagnostics.get("error_counts", {}).values()),
            "sessions_opened": self.supervisor.sessions_opened if self.supervisor else 0,
            "last_volume": self.gate.last_applied if self.gate else None,
        }
        self.diagnostic_logger.log_diagnostic("shutdown", shutdown_info)
        logger.info(f"Application shutdown - Uptime: {shutdown_info['uptime']}")

    def get_status(self):
        """Get current application status"""
        target = self.selector.current if self.selector else None
        status = {
            "running": self.running,
            "state": self.supervisor.state.describe() if self.supervisor else None,
            "target": target.label if target else None,
            "last_volume": self.gate.last_applied if self.gate else None,
            "discovery": self.discovery.is_running() if self.discovery else False,
        }
        if self.diagnostic_logger:
            diagnostics = self.diagnostic_logger.get_diagnostic_summary()
            status["diagnostics"] = {
                "uptime": diagnostics.get("uptime_formatted", "unknown"),
                "error_count": sum(diagnostics.get("error_counts", {}).values()),
            }
        return status

    def is_running(self):
        """Check if application is running"""
        return self.running
