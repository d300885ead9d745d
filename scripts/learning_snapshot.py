#!/usr/bin/env python3
"""
Learning Snapshot Utility
Exports the feedback loop's state to a JSON file, or imports one.
"""

import argparse
import asyncio
import json
import sys

from clinfeedback.core.config import DB_PATH
from clinfeedback.core.feedback import create_feedback_service
from clinfeedback.core.snapshot import SnapshotValidationError


def export_snapshot(db_path: str, path: str) -> dict:
    service = create_feedback_service(db_path)
    snapshot = asyncio.run(service.export_snapshot())
    with open(path, "w", encoding="utf-8") as f:
        json.dump(snapshot, f, indent=2)
    return snapshot


def import_snapshot(db_path: str, path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    service = create_feedback_service(db_path)
    return asyncio.run(service.import_snapshot(data))


def main(argv=None):
    parser = argparse.ArgumentParser(description="Export or import feedback learning state")
    parser.add_argument("--db-path", default=DB_PATH, help="feedback database file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    export_parser = subparsers.add_parser("export", help="write a snapshot file")
    export_parser.add_argument("path")

    import_parser = subparsers.add_parser("import", help="merge a snapshot file")
    import_parser.add_argument("path")

    args = parser.parse_args(argv)

    if args.command == "export":
        snapshot = export_snapshot(args.db_path, args.path)
        print(f"✓ Exported {len(snapshot['learning']['patterns'])} patterns and "
              f"{len(snapshot['corrections'])} corrections to {args.path}")
        return

    try:
        results = import_snapshot(args.db_path, args.path)
    except (OSError, json.JSONDecodeError, SnapshotValidationError) as e:
        print(f"ERROR: Snapshot not imported: {e}")
        sys.exit(1)

    for section, counts in results.items():
        print(f"✓ {section}: {counts}")
    print("Import complete!")


if __name__ == "__main__":
    main()
