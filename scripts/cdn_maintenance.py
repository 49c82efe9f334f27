#!/usr/bin/env python3
"""
CDN Maintenance Script

Run Edge Flush maintenance tasks from cron or by hand.

Usage:
    python scripts/cdn_maintenance.py init-db
    python scripts/cdn_maintenance.py sweep
    python scripts/cdn_maintenance.py flush --force
    python scripts/cdn_maintenance.py status
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(),
        ]
    )


def run(command: str, force: bool = False) -> int:
    """Run one maintenance command. Returns the process exit code."""
    from edge_flush.cache.dispatch import InlineDispatcher
    from edge_flush.cache.service import EdgeFlush
    from edge_flush.database.session import init_db

    if command == "init-db":
        init_db()
        return 0

    edge_flush = EdgeFlush(dispatcher=InlineDispatcher())

    if command == "sweep":
        invalidation = edge_flush.orchestrator.invalidate_obsolete_tags()
        if invalidation is None:
            print("Invalidations are disabled")
            return 0
        print(json.dumps(invalidation.to_dict(), indent=2))
        return 0 if invalidation.success or invalidation.is_empty() else 1

    if command == "flush":
        invalidation = edge_flush.orchestrator.invalidate_all(force=force)
        print(json.dumps(invalidation.to_dict(), indent=2))
        return 0 if invalidation.success else 1

    if command == "status":
        print(json.dumps(edge_flush.store.stats(), indent=2))
        return 0

    print(f"Unknown command: {command}")
    return 2


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Edge Flush CDN maintenance"
    )
    parser.add_argument(
        "command",
        choices=["init-db", "sweep", "flush", "status"],
        help="Maintenance task to run"
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Flush even when invalidations are disabled"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging"
    )

    args = parser.parse_args()

    load_dotenv()
    setup_logging(args.verbose)

    sys.exit(run(args.command, force=args.force))


if __name__ == "__main__":
    main()
