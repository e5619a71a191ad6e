"""
Constants and configuration defaults for the volume follower.
"""

# Discovery Settings
DEFAULT_DISCOVERY_PORT = 4210
DEFAULT_DISCOVERY_ADDRESS = "255.255.255.255"
DEFAULT_SERVICE_NAME = "airvol"
DEFAULT_DISCOVER_INTERVAL = 7.0  # Seconds between discovery probes
DEFAULT_DISCOVER_JITTER = 0.3  # Symmetric random jitter on the probe interval
MIN_DISCOVER_INTERVAL = 1.0
DISCOVERY_RECEIVE_TIMEOUT = 1.0
DISCOVERY_BUFFER_SIZE = 4096
STOP_POLL_SLICE = 0.2
RECEIVE_ERROR_PAUSE = 0.1
CANDIDATE_QUEUE_SIZE = 64

# Connection Settings
DEFAULT_HEARTBEAT_INTERVAL = 5.0
DEFAULT_WATCHDOG_TIMEOUT = 12.0
DEFAULT_WATCHDOG_TICK = 1.0
DEFAULT_CONNECT_TIMEOUT = 15.0
DEFAULT_CLOSE_TIMEOUT = 1.0
DEFAULT_RETRY_MIN = 0.05
DEFAULT_RETRY_MAX = 1.0
DEFAULT_RETRY_JITTER = 0.05
DEFAULT_RETRY_MULTIPLIER = 1.5
DEFAULT_STALE_TARGET_TTL = 20.0
DEFAULT_IDLE_POLL = 0.5
DEFAULT_WS_PORT = 81
MAX_PORT = 65535
DEFAULT_WS_PATHS = ["/ws", "/"]
DEFAULT_ORIGIN = "http://airvol.local"

# Wire payloads
HEARTBEAT_PAYLOAD = '{"hb":1}'
PERCENT_KEYS = ("percent", "pct", "volume_percent")
RAW_KEY = "raw"
RAW_MAX = 4095

# Volume Settings
DEFAULT_VOLUME_THRESHOLD = 0.5

# Environment overrides
ENV_FORCED_IP = "AIRVOL_IP"
ENV_FORCED_PORT = "AIRVOL_WS_PORT"
ENV_FORCED_NAME = "AIRVOL_NAME"

DEFAULT_EVENT_LOG_SIZE = 200
DEFAULT_DEBUG = False
DEFAULT_CONFIG_FILE = "airvol_config.json"

# Default configuration structure
DEFAULT_CONFIG = {
    "discovery": {
        "enabled": True,
        "port": DEFAULT_DISCOVERY_PORT,
        "address": DEFAULT_DISCOVERY_ADDRESS,
        "service": DEFAULT_SERVICE_NAME,
        "interval": DEFAULT_DISCOVER_INTERVAL,
        "jitter": DEFAULT_DISCOVER_JITTER,
        "receive_timeout": DISCOVERY_RECEIVE_TIMEOUT
    },
    "connection": {
        "heartbeat_interval": DEFAULT_HEARTBEAT_INTERVAL,
        "watchdog_timeout": DEFAULT_WATCHDOG_TIMEOUT,
        "watchdog_tick": DEFAULT_WATCHDOG_TICK,
        "connect_timeout": DEFAULT_CONNECT_TIMEOUT,
        "close_timeout": DEFAULT_CLOSE_TIMEOUT,
        "retry_min": DEFAULT_RETRY_MIN,
        "retry_max": DEFAULT_RETRY_MAX,
        "retry_jitter": DEFAULT_RETRY_JITTER,
        "retry_multiplier": DEFAULT_RETRY_MULTIPLIER,
        "stale_target_ttl": DEFAULT_STALE_TARGET_TTL,
        "idle_poll": DEFAULT_IDLE_POLL,
        "default_ws_port": DEFAULT_WS_PORT,
        "origin": DEFAULT_ORIGIN
    },
    "volume": {
        "threshold": DEFAULT_VOLUME_THRESHOLD,
        "sink": "auto"  # "auto", "windows", "macos", "linux" or "null"
    },
    "forced": {
        "ip": "",
        "ws_port": 0,
        "name": ""
    },
    "settings": {
        "debug": DEFAULT_DEBUG,
        "log_level": "INFO",
        "log_file": "airvol.log",
        "max_log_size_mb": 10,
        "backup_log_count": 3,
        "event_log_size": DEFAULT_EVENT_LOG_SIZE
    },
    "diagnostics": {
        "enable_performance_monitoring": True,
        "collect_process_metrics": True
    }
}

NUMBER = (int, float)

# Configuration validation schema
CONFIG_SCHEMA = {
    "discovery": {
        "enabled": {"type": bool},
        "port": {"type": int, "min": 1, "max": 65535},
        "address": {"type": str, "required": True},
        "service": {"type": str, "required": True},
        "interval": {"type": NUMBER, "min": 1.0, "max": 3600.0},
        "jitter": {"type": NUMBER, "min": 0.0, "max": 60.0},
        "receive_timeout": {"type": NUMBER, "min": 0.05, "max": 10.0}
    },
    "connection": {
        "heartbeat_interval": {"type": NUMBER, "min": 0.1, "max": 300.0},
        "watchdog_timeout": {"type": NUMBER, "min": 0.5, "max": 3600.0},
        "watchdog_tick": {"type": NUMBER, "min": 0.05, "max": 60.0},
        "connect_timeout": {"type": NUMBER, "min": 0.5, "max": 300.0},
        "close_timeout": {"type": NUMBER, "min": 0.1, "max": 60.0},
        "retry_min": {"type": NUMBER, "min": 0.0, "max": 60.0},
        "retry_max": {"type": NUMBER, "min": 0.0, "max": 600.0},
        "retry_jitter": {"type": NUMBER, "min": 0.0, "max": 10.0},
        "retry_multiplier": {"type": NUMBER, "min": 1.0, "max": 10.0},
        "stale_target_ttl": {"type": NUMBER, "min": 1.0, "max": 3600.0},
        "idle_poll": {"type": NUMBER, "min": 0.05, "max": 60.0},
        "default_ws_port": {"type": int, "min": 1, "max": 65535},
        "origin": {"type": str}
    },
    "volume": {
        "threshold": {"type": NUMBER, "min": 0.0, "max": 100.0},
        "sink": {"type": str, "choices": ["auto", "windows", "macos", "linux", "null"]}
    },
    "forced": {
        "ip": {"type": str},
        "ws_port": {"type": int, "min": 0, "max": 65535},
        "name": {"type": str}
    },
    "settings": {
        "debug": {"type": bool},
        "log_level": {"type": str, "choices": ["DEBUG", "INFO", "WARNING", "ERROR"]},
        "log_file": {"type": str},
        "max_log_size_mb": {"type": int, "min": 1, "max": 100},
        "backup_log_count": {"type": int, "min": 1, "max": 10},
        "event_log_size": {"type": int, "min": 10, "max": 10000}
    },
    "diagnostics": {
        "enable_performance_monitoring": {"type": bool},
        "collect_process_metrics": {"type": bool}
    }
}

# Optional dependency availability flags
PYCAW_AVAILABLE = False

try:
    from comtypes import CLSCTX_ALL
    from pycaw.pycaw import AudioUtilities, IAudioEndpointVolume
    PYCAW_AVAILABLE = True
except ImportError:
    pass
