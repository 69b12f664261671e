#!/usr/bin/env python3
"""
Job worker - runs queued EXECUTE_OPERATION jobs until interrupted.

Jobs left 'queued' by a previous process are picked up on start.
"""

import argparse
import sys
import time
from pathlib import Path

# Add the repository root to sys.path to import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from adloop.core.config import DB_PATH, validate_queue_config
from adloop.core.service import build_service


def main():
    parser = argparse.ArgumentParser(description="Run the adloop job queue workers")
    parser.add_argument("--db", default=DB_PATH, help=f"SQLite database path (default: {DB_PATH})")
    parser.add_argument(
        "--status-interval",
        type=int,
        default=60,
        help="Seconds between status lines (default: 60)"
    )
    args = parser.parse_args()

    issues = validate_queue_config()
    if issues:
        print(f"❌ Queue configuration invalid: {issues}")
        sys.exit(1)

    service = build_service(db_path=args.db, queue_enabled=True)

    try:
        service.start()
        print(f"🚀 Job workers running against {args.db}")
        print("💡 Press Ctrl+C to stop")

        while True:
            time.sleep(args.status_interval)
            print(f"📋 {service.get_status()['queue']}")

    except KeyboardInterrupt:
        print("\n👋 Shutting down gracefully...")
    except Exception as e:
        print(f"💥 Critical error: {e}")
        service.shutdown()
        sys.exit(1)

    service.shutdown()


if __name__ == "__main__":
    main()
