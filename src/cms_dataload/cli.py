#!/usr/bin/env python3
"""
cms-dataload command line entry point.

Loads configuration, runs the dataload workflow against freshly started
politeiad and cmswww daemons, and reports the outcome:

    exit 0  "Load data complete"
    exit 1  any step failed (error printed to stderr)
    exit 2  configuration error (nothing was started)
"""
import argparse
import logging
import sys
from typing import List, Optional

from .config import load_config
from .errors import ConfigError, DataloadError
from .workflow import DEFAULT_STEPS, WorkflowOrchestrator

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cms-dataload",
        description="Start politeiad and cmswww and load them with test users and invoices",
    )
    parser.add_argument("--envfile", help="Extra KEY=VALUE settings file layered above .env")
    parser.add_argument("--deletedata", action="store_true", default=None,
                        help="Delete existing daemon data, sessions and CLI state first")
    parser.add_argument("--includetests", action="store_true", default=None,
                        help="Also run the password reset and profile edit checks")
    parser.add_argument("--skip", action="append", metavar="STEP", default=None,
                        help="Skip a named step (repeatable); see --list-steps")
    parser.add_argument("--list-steps", action="store_true",
                        help="Print the workflow steps and exit")
    parser.add_argument("--api-url", help="cmswww base URL")
    parser.add_argument("--datadir", help="Directory for generated invoices and logs")
    parser.add_argument("--readiness-timeout", type=float,
                        help="Seconds to wait for each daemon's readiness marker (0 waits forever)")
    parser.add_argument("--loglevel", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level")
    return parser


def list_steps() -> None:
    for step in DEFAULT_STEPS:
        flag = ""
        if step.optional:
            flag = " (--includetests)"
        elif step.only_if is not None:
            flag = " (--deletedata)"
        print(f"{step.name:<28}{step.description}{flag}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.list_steps:
        list_steps()
        return 0

    overrides = {
        "DELETE_DATA": args.deletedata,
        "INCLUDE_TESTS": args.includetests,
        "SKIP_STEPS": args.skip,
        "API_URL": args.api_url,
        "DATA_DIR": args.datadir,
        "READINESS_TIMEOUT": args.readiness_timeout,
        "LOG_LEVEL": args.loglevel,
    }

    try:
        config = load_config(overrides, env_file=args.envfile)
    except ConfigError as e:
        print(f"Could not load configuration: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO), format=LOG_FORMAT)

    try:
        WorkflowOrchestrator(config).run()
    except ConfigError as e:
        print(f"Could not load configuration: {e}", file=sys.stderr)
        return 2
    except (DataloadError, OSError) as e:
        print(f"{e}", file=sys.stderr)
        return 1

    print("Load data complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
