#!/usr/bin/env python3
"""Rewrite every profile's image positions to 0..N-1, keeping the current order."""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.orm import Session

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.db import session_scope


@dataclass
class Stats:
    profiles_scanned: int = 0
    profiles_changed: int = 0
    rows_updated: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "profiles_scanned": self.profiles_scanned,
            "profiles_changed": self.profiles_changed,
            "rows_updated": self.rows_updated,
        }


def renormalize(session: Session, *, apply_changes: bool) -> Stats:
    rows = session.execute(
        text("SELECT id, profile_id, position FROM profile_images ORDER BY profile_id, position, id")
    ).mappings().all()

    by_profile: Dict[int, List[dict]] = {}
    for row in rows:
        by_profile.setdefault(int(row["profile_id"]), []).append(dict(row))

    stats = Stats()
    for profile_id, images in by_profile.items():
        stats.profiles_scanned += 1
        changes = [(image["id"], index) for index, image in enumerate(images) if image["position"] != index]
        if not changes:
            continue
        stats.profiles_changed += 1
        stats.rows_updated += len(changes)
        print(f"[profile:{profile_id}] {len(changes)} position(s) out of order")
        if apply_changes:
            session.execute(
                text("UPDATE profile_images SET position = :position WHERE id = :id"),
                [{"id": image_id, "position": position} for image_id, position in changes],
            )
    return stats


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--apply", action="store_true", help="Write the new positions. Without this, runs dry-run only.")
    parser.add_argument("--env-file", default="", help="Optional .env file to load before connecting to the DB.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if args.env_file:
        load_dotenv(args.env_file, override=True)
    else:
        load_dotenv(override=False)

    print("Mode:", "APPLY" if args.apply else "DRY-RUN")
    with session_scope() as session:
        stats = renormalize(session, apply_changes=bool(args.apply))
        if not args.apply:
            session.rollback()

    for key, value in stats.as_dict().items():
        print(f"  {key}: {value}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
