#!/usr/bin/env python3
"""Delete profile image blobs that no profile_images row references any more."""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Set

from dotenv import load_dotenv
from sqlalchemy import text

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src import gcs_storage
from src.db import readonly_session_scope
from src.image_pipeline import PROFILE_IMAGE_PREFIX, TIERS, derive_storage_keys, delete_image


@dataclass
class Stats:
    blobs_scanned: int = 0
    orphan_images: int = 0
    deleted_blobs: int = 0
    failed_blobs: int = 0
    orphans: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {
            "blobs_scanned": self.blobs_scanned,
            "orphan_images": self.orphan_images,
            "deleted_blobs": self.deleted_blobs,
            "failed_blobs": self.failed_blobs,
            "orphans": self.orphans,
        }


def medium_key_for(blob_name: str) -> str:
    """Map any tier's key back to the medium key that identifies the image."""
    stem, dot, extension = blob_name.rpartition(".")
    if not dot:
        return blob_name
    for tier in TIERS:
        if tier.suffix and stem.endswith(tier.suffix):
            return f"{stem[: -len(tier.suffix)]}.{extension}"
    return blob_name


def find_orphans(blob_names: Iterable[str], referenced: Set[str]) -> List[str]:
    orphans: List[str] = []
    for name in blob_names:
        medium_key = medium_key_for(name)
        if medium_key not in referenced and medium_key not in orphans:
            orphans.append(medium_key)
    return orphans


def referenced_medium_keys() -> Set[str]:
    with readonly_session_scope() as session:
        return set(session.execute(text("SELECT DISTINCT medium_storage_key FROM profile_images")).scalars().all())


def cleanup(prefix: str, *, apply_changes: bool, min_age_minutes: int = 60) -> Stats:
    stats = Stats()
    # Young blobs may belong to an upload whose rows are not committed yet.
    created_before = datetime.now(timezone.utc) - timedelta(minutes=max(0, min_age_minutes))
    names = list(gcs_storage.list_blob_names(f"{prefix.rstrip('/')}/", created_before=created_before))
    stats.blobs_scanned = len(names)
    orphans = find_orphans(names, referenced_medium_keys())
    stats.orphan_images = len(orphans)
    stats.orphans = orphans

    for medium_key in orphans:
        tier_keys = derive_storage_keys(medium_key)
        print(f"[orphan] {medium_key} ({', '.join(tier_keys.values())})")
        if not apply_changes:
            continue
        report = delete_image(medium_key)
        stats.deleted_blobs += len(report.succeeded)
        stats.failed_blobs += len(report.failed)
        for key, reason in report.failed:
            print(f"[orphan] delete failed {key}: {reason}")
    return stats


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--apply", action="store_true", help="Delete orphans. Without this, runs dry-run only.")
    parser.add_argument("--min-age-minutes", type=int, default=60, help="Ignore blobs younger than this.")
    parser.add_argument("--prefix", default=PROFILE_IMAGE_PREFIX, help="Blob key prefix holding profile images.")
    parser.add_argument("--env-file", default="", help="Optional .env file to load before connecting.")
    parser.add_argument("--report-file", default="", help="Optional path to write a JSON report.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if args.env_file:
        load_dotenv(args.env_file, override=True)
    else:
        load_dotenv(override=False)

    print("Mode:", "APPLY" if args.apply else "DRY-RUN")
    stats = cleanup(args.prefix, apply_changes=bool(args.apply), min_age_minutes=args.min_age_minutes)
    for key, value in stats.as_dict().items():
        if key != "orphans":
            print(f"  {key}: {value}")

    if args.report_file:
        report_path = Path(str(args.report_file)).expanduser()
        report_path.write_text(json.dumps(stats.as_dict(), indent=2), encoding="utf-8")
        print(f"Wrote report: {report_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
