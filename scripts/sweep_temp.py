#!/usr/bin/env python3
"""
Run one temp-session sweep and exit.

Useful from cron when the API process runs with the background sweeper
disabled, or to clean up after a crash.
"""

import argparse
import asyncio
import dataclasses
import logging
import sys

from mediavault.config import StorageSettings
from mediavault.services.policy_service import PolicyEnforcer
from mediavault.services.staging_service import StagingArea


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Remove expired temp upload sessions")
    parser.add_argument("--ttl", type=int, help="override TEMP_TTL (seconds)")
    parser.add_argument("--verbose", action="store_true", help="log every removed session")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = StorageSettings.from_env()
    if args.ttl is not None:
        if args.ttl <= 0:
            print("--ttl must be positive", file=sys.stderr)
            return 2
        settings = dataclasses.replace(settings, temp_ttl_seconds=args.ttl)
    logging.basicConfig(level=logging.DEBUG if args.verbose else settings.log_level)

    staging = StagingArea(settings, PolicyEnforcer(settings.rules))
    removed = asyncio.run(staging.sweep_once())
    if args.verbose:
        for session_id in removed:
            print(f"removed {session_id}")
    print(f"Removed {len(removed)} expired session(s) from {settings.temp_root}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
