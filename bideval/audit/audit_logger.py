#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Audit Logger: append-only audit trail writer for BidEval.

Events are written with the caller's connection so an audit row commits
(or rolls back) together with the change it records. No UPDATE/DELETE
operations.

Usage:
    python -m bideval.audit.audit_logger --entity-id PROJ-123 [--limit 20] [--json]
"""

import argparse
import json
import os
import sqlite3
import sys
from datetime import datetime, timezone
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "BIDEVAL_DB_PATH", str(BASE_DIR / "data" / "bideval.db")
))


def log_event(conn: sqlite3.Connection, event_type: str, action: str,
              entity_type: str = "", entity_id: str = "",
              details: dict = None, actor: str = "bideval") -> dict:
    """Append an event to the audit trail inside the caller's transaction."""
    entry = {
        "event_type": event_type,
        "actor": actor,
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "details": json.dumps(details or {}, default=str),
        "created_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    }
    conn.execute(
        """INSERT INTO audit_trail
           (event_type, actor, action, entity_type, entity_id, details, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (entry["event_type"], entry["actor"], entry["action"],
         entry["entity_type"], entry["entity_id"], entry["details"],
         entry["created_at"]),
    )
    return entry


def recent_events(entity_id: str = "", limit: int = 20, db_path=None) -> list:
    """Most recent audit events, optionally for one entity."""
    conn = sqlite3.connect(str(db_path or DB_PATH))
    conn.row_factory = sqlite3.Row
    try:
        if entity_id:
            rows = conn.execute(
                "SELECT * FROM audit_trail WHERE entity_id = ? "
                "ORDER BY id DESC LIMIT ?",
                (entity_id, limit),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM audit_trail ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
    finally:
        conn.close()

    events = []
    for row in rows:
        event = dict(row)
        try:
            event["details"] = json.loads(event["details"] or "{}")
        except json.JSONDecodeError:
            pass
        events.append(event)
    return events


def main():
    parser = argparse.ArgumentParser(description="Audit trail viewer")
    parser.add_argument("--entity-id", default="")
    parser.add_argument("--limit", type=int, default=20)
    parser.add_argument("--db-path", help="Override database path")
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args()

    try:
        events = recent_events(args.entity_id, args.limit, args.db_path)
    except sqlite3.Error as exc:
        print(json.dumps({"error": str(exc)}) if args.json else f"ERROR: {exc}")
        sys.exit(1)

    if args.json:
        print(json.dumps(events, indent=2, default=str))
    else:
        for e in events:
            print(f"{e['created_at']}  [{e['event_type']}] {e['action']}")


if __name__ == "__main__":
    main()
