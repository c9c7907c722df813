#!/usr/bin/env python3
"""
Command line entry point.

Usage:
    looperbridge [--config FILE] [--log-level LEVEL] [directive ...]

Examples:
    looperbridge din FCB1010 base E3
    looperbridge --config config.yaml ch 1 oout 9951 oin 9000
    looperbridge list
    looperbridge din FCB1010 | sendmidi dev FCB1010 -   # LED feedback via sendmidi
"""

import argparse
import os
import sys

from looperbridge import __version__
from looperbridge.config import BridgeConfig, apply_directives, load_config
from looperbridge.log import LOG_LEVEL_ENV, get_logger, set_level
from looperbridge.runtime import Bridge

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="looperbridge",
        description="Bridge an FCB1010 foot pedal to SooperLooper over MIDI and OSC",
        epilog="Directives: din <name>, dout <name>, vout [name], ch <0-16>, base <note>, "
               "oin <port>, oout <port>, list, panic",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML config file (optional)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv(LOG_LEVEL_ENV, "INFO").upper(),
        help="Logging verbosity (default: INFO)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "directives",
        nargs="*",
        help="Configuration directives, applied after the config file",
    )
    return parser


def main(argv=None):
    """Parse arguments, build the bridge and run it until Ctrl+C.

    Exits with code 1 if the configuration is missing or invalid.
    """
    args = build_parser().parse_args(argv)
    set_level(args.log_level)

    try:
        config = load_config(args.config) if args.config else BridgeConfig()
        actions = apply_directives(config, args.directives)
    except FileNotFoundError as e:
        logger.error(f"{e}")
        sys.exit(1)
    except ValueError as e:
        logger.error(f"{e}")
        sys.exit(1)

    bridge = Bridge(config)
    bridge.run(actions)


if __name__ == "__main__":
    main()
