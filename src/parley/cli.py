#!/usr/bin/env python3
"""
Parley CLI - Command Line Interface for Parley
"""
import argparse
import os
import sys


def _check_config() -> int:
    from . import config as CFG

    ok, messages = CFG.validate_config_silent()
    for message in messages:
        print(message)
    missing = CFG.missing_credentials()
    for name in missing:
        print(f"Missing credential: {name}")
    if not CFG.get_api_key("weather"):
        print("Optional credential not set: OPENWEATHER_API_KEY (weather lookups disabled)")
    if ok and not missing:
        print("Configuration OK")
        return 0
    return 1


def main():
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="Parley - live spoken conversation server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  parley serve           # Start the websocket server and HTTP sidecar
  parley check-config    # Validate config/config.yaml and provider credentials
        """
    )

    parser.add_argument(
        'command',
        choices=['serve', 'check-config'],
        help='Command to run'
    )

    parser.add_argument(
        '--config',
        default=None,
        help='Path to configuration file'
    )

    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )

    args = parser.parse_args()

    # Must be set before parley modules read them
    if args.config:
        os.environ['PARLEY_CONFIG'] = os.path.abspath(args.config)
    if args.debug:
        os.environ['PARLEY_LOG_LEVEL'] = 'DEBUG'
    if args.config:
        from . import config as CFG
        CFG.reload_config(args.config)

    try:
        if args.command == 'check-config':
            sys.exit(_check_config())
        elif args.command == 'serve':
            from .server import main as serve_main
            serve_main()
    except KeyboardInterrupt:
        print("\nShutting down...")
        sys.exit(0)


if __name__ == '__main__':
    main()
