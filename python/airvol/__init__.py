"""
Air Volume - Network Volume Follower
====================================

This package follows a volume knob on the local network and mirrors it onto
the PC audio output.

Features:
- UDP broadcast discovery of "airvol" devices
- Forced target configuration (IP, port, name)
- Resilient WebSocket session with heartbeat and watchdog
- Retry backoff across candidate endpoints
- Change-threshold gating of volume writes

Version: 1.0.0
"""

__version__ = "1.0.0"
