#!/usr/bin/env python3
"""
Main entry point for the Air Volume follower.
"""

import sys
import argparse
import logging
from airvol.app import AirVolumeApp
from airvol.constants import DEFAULT_CONFIG_FILE
from airvol.volume_controller import NullVolumeSink
from airvol import __version__

# Set up basic logging before application starts
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)


def print_banner():
    """Print application banner"""
    banner = f"""
Air Volume - Network Volume Follower v{__version__}

Features:
- UDP broadcast discovery of airvol devices
- Forced target (AIRVOL_IP / AIRVOL_WS_PORT / AIRVOL_NAME)
- WebSocket session with heartbeat and watchdog
- Retry backoff across candidate endpoints
"""
    print(banner)


def build_parser():
    parser = argparse.ArgumentParser(
        description="Air Volume - follow a network volume knob",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                              # Discover a device and follow it
  %(prog)s --ip 192.168.1.40            # Skip discovery, connect to this IP
  %(prog)s --ip 192.168.1.40 --port 81  # Forced IP and WebSocket port
  %(prog)s --name Studio                # Only accept the device named Studio
  %(prog)s --dry-run --debug            # Log volume changes without applying

Environment:
  AIRVOL_IP, AIRVOL_WS_PORT and AIRVOL_NAME force the same values as
  --ip, --port and --name. Command line values take precedence.
        """,
    )

    parser.add_argument(
        "--config",
        "-c",
        default=DEFAULT_CONFIG_FILE,
        help=f"Configuration file path (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument("--ip", help="Forced device IP (disables discovery-driven selection)")
    parser.add_argument("--port", type=int, help="Forced WebSocket port")
    parser.add_argument("--name", help="Only accept devices announcing this name")
    parser.add_argument(
        "--sink",
        choices=["auto", "windows", "macos", "linux", "null"],
        help="Volume sink to use (default: from configuration)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Do not change the system volume")
    parser.add_argument("--no-discovery", action="store_true", help="Do not open the discovery socket")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        help="Suppress banner",
    )
    parser.add_argument(
        "--version", action="version", version=f"Air Volume v{__version__}"
    )
    return parser


def main(argv=None):
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.port is not None and not 1 <= args.port <= 65535:
        parser.error("--port must be between 1 and 65535")

    if not args.quiet:
        print_banner()

    try:
        logger.info("Initializing Air Volume...")

        forced_overrides = {"ip": args.ip, "ws_port": args.port, "name": args.name}

        # Command line switches only affect this run
        config_overrides = {}
        if args.debug:
            config_overrides["settings.debug"] = True
        if args.sink:
            config_overrides["volume.sink"] = args.sink
        if args.no_discovery:
            config_overrides["discovery.enabled"] = False

        sink = NullVolumeSink() if args.dry_run else None
        app = AirVolumeApp(
            config_file=args.config,
            forced_overrides=forced_overrides,
            sink=sink,
            config_overrides=config_overrides,
        )

        if not app.initialize_components():
            logger.error("Failed to initialize application components")
            return 1

        logger.info(f"Configuration file: {args.config}")
        logger.info(f"Debug mode: {'enabled' if args.debug else 'disabled'}")
        success = app.start()
        return 0 if success else 1

    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
        return 0

    except PermissionError as e:
        logger.error(f"Permission denied: {e}")
        return 1

    except ImportError as e:
        logger.error(f"Missing required dependency: {e}")
        logger.info("Please install required packages: pip install -e .")
        return 1


if __name__ == "__main__":
    sys.exit(main())
