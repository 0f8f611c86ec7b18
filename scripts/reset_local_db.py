"""Recreate the decision tables on the database named by DATABASE_URL.

Usage:
    python scripts/reset_local_db.py            # drop and recreate
    python scripts/reset_local_db.py --keep     # create missing tables only
"""

from __future__ import annotations

import argparse
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:  # pragma: no cover - script entry point
    sys.path.insert(0, str(ROOT))

from portal_decisions.db import reset_schema  # noqa: E402


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--keep", action="store_true", help="keep existing rows and create missing tables")
    args = parser.parse_args(argv)

    tables = reset_schema(drop_existing=not args.keep)
    action = "Created missing" if args.keep else "Recreated"
    print(f"{action} tables: {', '.join(tables)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
