#!/usr/bin/env python3
"""Manual cache invalidation for Lambda deployments (backs the Makefile targets)."""
import argparse
import os
import sys
import time

from config import load_config
from exceptions import ConfigurationError
from logger_config import get_logger

logger = get_logger("redeploy")

TOUCH_FILE = ".touch"

USAGE = """Usage:
  make help              - Show this help message
  make force-redeploy    - Force a Lambda redeployment by modifying .touch file"""


def timestamp() -> str:
    """Current local time in the format of date(1)."""
    return time.strftime("%a %b %e %H:%M:%S %Z %Y")


def force_redeploy(source_dir: str) -> str:
    """Write the current timestamp to <source_dir>/.touch and return its path."""
    if not os.path.isdir(source_dir):
        raise FileNotFoundError(f"Source directory {source_dir} does not exist")
    touch_path = os.path.join(source_dir, TOUCH_FILE)
    with open(touch_path, "w") as f:
        f.write(timestamp() + "\n")
    return touch_path


def cmd_help(args):
    print(USAGE)
    return 0


def cmd_force_redeploy(args):
    source_dir = args.source_dir
    if args.function:
        try:
            source_dir = load_config(args.config).get_lambda(args.function).source_dir
        except ConfigurationError as e:
            logger.error(e.message)
            return 1
        if not os.path.isabs(source_dir):
            # Relative to the project, which is where the config file lives
            source_dir = os.path.join(os.path.dirname(os.path.abspath(args.config)), source_dir)
    try:
        force_redeploy(source_dir)
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1
    print(f"{TOUCH_FILE} file has been updated. Run 'pulumi up' to redeploy.")
    return 0


def build_parser():
    p = argparse.ArgumentParser(prog="redeploy")
    sub = p.add_subparsers(dest="cmd")
    s = sub.add_parser("help", help="Show usage")
    s.set_defaults(func=cmd_help)
    s = sub.add_parser("force-redeploy", help="Force a redeployment by modifying the .touch file")
    s.add_argument("--source-dir", default=".", help="Function source directory (default: current directory)")
    s.add_argument("--function", help="Function name to look up in the configuration instead of --source-dir")
    s.add_argument("--config", default="config.yaml", help="Configuration file used with --function")
    s.set_defaults(func=cmd_force_redeploy)
    return p


def main(argv=None):
    p = build_parser()
    args = p.parse_args(argv)
    if not hasattr(args, "func"):
        p.print_help()
        return 2
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
