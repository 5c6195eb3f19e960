#!/usr/bin/env python3
"""
HitchBuddy gateway supervisor

Binds the public port, serves the built frontend, proxies the API to the
backend process and keeps answering health probes while upstreams start,
crash or restart.

Usage:
    python main.py [--host HOST] [--port PORT] [--asset-root DIR]
                   [--signal-policy POLICY] [--no-frontend] [--debug]
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from config.factory import ConfigurationError, apply_overrides, create_config
from core.lifecycle import ExitCode
from core.logging_config import setup_application_logging
from services.supervisor import Supervisor

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="HitchBuddy gateway supervisor")
    parser.add_argument("--host", default=None, help="Address to bind (default: $HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Public port (default: $PORT or 5000)")
    parser.add_argument("--asset-root", default=None, help="Directory of the built frontend")
    parser.add_argument("--signal-policy", default=None,
                        help="'availability', 'standard', or NAME=action overrides "
                             "(e.g. 'availability,SIGINT=shutdown')")
    parser.add_argument("--no-frontend", action="store_true",
                        help="Do not launch or proxy the frontend dev server")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging and access log")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        config = create_config(args.env_file)
        config = apply_overrides(
            config,
            host=args.host,
            port=args.port,
            asset_root=args.asset_root,
            signal_policy=args.signal_policy,
            no_frontend=args.no_frontend,
            debug=args.debug,
        )
    except ConfigurationError as e:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
        logger.critical(f"Configuration error: {e}")
        return int(ExitCode.CONFIG_ERROR)

    setup_application_logging(
        log_level=config.logging.level,
        log_file_path=config.logging.file_path,
        max_file_size=config.logging.max_file_size,
        backup_count=config.logging.backup_count,
        console_logging=config.logging.console_logging,
        log_format=config.logging.log_format,
    )

    supervisor = Supervisor(config)
    return asyncio.run(supervisor.run())


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
