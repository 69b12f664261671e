#!/usr/bin/env python3
"""
Evaluate one entity from a JSON request file and print the decision.

The request file has the same shape as the POST /decisions/evaluate body:
{"entity_id": ..., "snapshot": {...}, "history": {...}, "policy": {...}}
"""

import argparse
import json
import sys
from pathlib import Path

# Add the repository root to sys.path to import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError

from adloop.api.schemas import EvaluateRequest
from adloop.core.config import DB_PATH
from adloop.core.errors import InputError
from adloop.core.service import build_service


def main():
    parser = argparse.ArgumentParser(
        description="Score an entity and propose an operation if its policy calls for one",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s request.json                # Evaluate against ./data/adloop.db
  %(prog)s request.json --db /tmp/x.db # Use another database

Operations are executed inline (no queue) with the dry-run executor.
        """
    )
    parser.add_argument("request_file", help="Path to the JSON evaluation request")
    parser.add_argument("--db", default=DB_PATH, help=f"SQLite database path (default: {DB_PATH})")
    args = parser.parse_args()

    try:
        raw = json.loads(Path(args.request_file).read_text())
        request = EvaluateRequest(**raw)
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        print(f"❌ Invalid request file: {e}")
        sys.exit(1)

    service = build_service(db_path=args.db, queue_enabled=False)
    try:
        decision = service.evaluate(
            request.entity_id,
            request.snapshot.model_dump(),
            request.history,
            request.policy.to_policy(),
            entity_type=request.entity_type,
            account_id=request.account_id
        )
    except InputError as e:
        print(f"❌ {e}")
        sys.exit(1)

    print(json.dumps(decision.to_dict(), indent=2, default=str))


if __name__ == "__main__":
    main()
