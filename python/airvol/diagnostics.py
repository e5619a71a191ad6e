"""
Diagnostics and logging setup for the volume follower.
"""

import json
import os
import platform
import time
import threading
import logging
import logging.handlers
import psutil

logger = logging.getLogger(__name__)


class DiagnosticLogger:
    """Logging with file rotation, error counters and process diagnostics"""

    def __init__(self, config_manager, configure_logging=True):
        """
        Initialize diagnostic logger

        Args:
            config_manager: Configuration manager instance
            configure_logging (bool): Install root handlers (off in tests)
        """
        self.config = config_manager
        self.performance_metrics = {}
        self.error_counts = {}
        self.diagnostics = {}
        self.start_time = time.time()
        self.lock = threading.Lock()

        diagnostics_config = config_manager.get("diagnostics", {})
        self.enable_performance_monitoring = diagnostics_config.get("enable_performance_monitoring", True)
        self.collect_process_metrics = diagnostics_config.get("collect_process_metrics", True)

        if configure_logging:
            self.setup_logging()

        logger.info("Diagnostic logger initialized")

    def setup_logging(self):
        """Setup logging with file rotation and a console handler"""
        settings = self.config.get_settings()

        log_level = settings.get("log_level", "INFO")
        log_file = settings.get("log_file", "airvol.log")
        max_size = settings.get("max_log_size_mb", 10) * 1024 * 1024
        backup_count = settings.get("backup_log_count", 3)
        debug_mode = settings.get("debug", False)

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )

        if debug_mode:
            log_level_obj = logging.DEBUG
        else:
            log_level_obj = getattr(logging, log_level.upper(), logging.INFO)

        handlers = []
        try:
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_size,
                backupCount=backup_count,
                encoding='utf-8'
            )
            file_handler.setFormatter(formatter)
            file_handler.setLevel(log_level_obj)
            handlers.append(file_handler)
        except OSError as e:
            print(f"Cannot open log file {log_file}: {e}")

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(console_formatter)
        console_handler.setLevel(log_level_obj)
        handlers.append(console_handler)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level_obj)
        root_logger.handlers.clear()
        for handler in handlers:
            root_logger.addHandler(handler)

        # websockets logs every frame at DEBUG
        logging.getLogger("websockets").setLevel(max(log_level_obj, logging.INFO))

        self.log_system_info()
        self.log_config_info()
        logger.info(f"Logging initialized - Level: {logging.getLevelName(log_level_obj)}, File: {log_file}")

    def log_system_info(self):
        """Log system information at startup"""
        try:
            system_info = {
                "platform": platform.platform(),
                "python_version": platform.python_version(),
                "cpu_count": psutil.cpu_count(),
                "memory_total_gb": round(psutil.virtual_memory().total / (1024**3), 2),
            }
            logger.info(f"System Information: {json.dumps(system_info)}")
        except (OSError, psutil.Error) as e:
            logger.error(f"Error logging system info: {e}")

    def log_config_info(self):
        """Log the discovery and connection settings in effect"""
        config_info = {
            "discovery_enabled": self.config.get("discovery.enabled", True),
            "discovery_port": self.config.get("discovery.port"),
            "service": self.config.get("discovery.service"),
            "heartbeat_interval": self.config.get("connection.heartbeat_interval"),
            "watchdog_timeout": self.config.get("connection.watchdog_timeout"),
            "volume_threshold": self.config.get("volume.threshold"),
            "volume_sink": self.config.get("volume.sink"),
            "debug_mode": self.config.get("settings.debug", False),
        }
        logger.info(f"Configuration: {json.dumps(config_info)}")

    def log_performance_metric(self, metric_name, value, unit=""):
        """Record a performance metric (last 100 values kept)"""
        if not self.enable_performance_monitoring:
            return

        with self.lock:
            values = self.performance_metrics.setdefault(metric_name, [])
            values.append({"timestamp": time.time(), "value": value, "unit": unit})
            if len(values) > 100:
                del values[:-100]
        logger.debug(f"Performance metric: {metric_name} = {value} {unit}")

    def log_error_event(self, error_type, error_message, context=None):
        """Log error event with context"""
        with self.lock:
            self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1
            error_data = {
                "timestamp": time.time(),
                "error_type": error_type,
                "message": str(error_message),
                "count": self.error_counts[error_type],
                "context": context or {}
            }
        logger.error(f"Error event: {json.dumps(error_data, default=str)}")

    def log_diagnostic(self, category, data):
        """Log diagnostic information"""
        with self.lock:
            entries = self.diagnostics.setdefault(category, [])
            entries.append({"timestamp": time.time(), "data": data})
            if len(entries) > 100:
                del entries[:-100]
        logger.debug(f"Diagnostic logged - {category}: {data}")

    def get_diagnostic_summary(self):
        """Get diagnostic summary"""
        with self.lock:
            uptime = time.time() - self.start_time
            summary = {
                "timestamp": time.time(),
                "uptime_seconds": uptime,
                "uptime_formatted": self._format_uptime(uptime),
                "error_counts": self.error_counts.copy(),
                "diagnostic_categories": list(self.diagnostics.keys()),
                "total_diagnostic_entries": sum(len(entries) for entries in self.diagnostics.values()),
                "performance_metrics": {},
            }

            for metric_name, values in self.performance_metrics.items():
                if values:
                    recent_values = [entry["value"] for entry in values[-10:]]
                    summary["performance_metrics"][metric_name] = {
                        "latest_value": values[-1]["value"],
                        "average_recent": sum(recent_values) / len(recent_values),
                        "unit": values[-1]["unit"],
                        "sample_count": len(values)
                    }

        if self.collect_process_metrics:
            summary["process_info"] = self._get_process_info()
        return summary

    def _get_process_info(self):
        try:
            process = psutil.Process(os.getpid())
            return {
                "memory_usage_mb": round(process.memory_info().rss / 1024 / 1024, 2),
                "cpu_percent": process.cpu_percent(),
                "thread_count": threading.active_count(),
            }
        except psutil.Error as e:
            logger.error(f"Error reading process info: {e}")
            return {}

    def _format_uptime(self, seconds):
        """Format uptime in human readable format"""
        days = int(seconds // 86400)
        hours = int((seconds % 86400) // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = int(seconds % 60)
        return f"{days}d {hours}h {minutes}m {secs}s"

    def cleanup(self):
        """Log the final summary"""
        logger.info("Diagnostic logger shutting down")
        summary = self.get_diagnostic_summary()
        logger.info(f"Final diagnostic summary: {json.dumps(summary, default=str)}")
