"""Bootstrap the marketplace database using Alembic migrations."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config
from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Migrate the marketplace database to the latest revision.")
    parser.add_argument("--env-file", default="", help="Optional .env file to load before connecting.")
    parser.add_argument("--seed", action="store_true", help="Insert the default tag reference data afterwards.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if args.env_file:
        load_dotenv(args.env_file, override=True)
    else:
        load_dotenv(override=False)

    cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    db_url = os.getenv("DATABASE_URL")
    if db_url:
        cfg.set_main_option("sqlalchemy.url", db_url)

    command.upgrade(cfg, "head")
    print("Marketplace database migrated to head")

    if args.seed:
        from src.profile_tags import seed_reference_data

        inserted = seed_reference_data()
        for category, count in inserted.items():
            print(f"  {category}: {count} inserted")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
