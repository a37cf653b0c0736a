#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authstore.factory import create_stores_from_env
from authstore.ops import resync_license_snapshots


async def _run(*, dry_run: bool) -> dict:
    bundle = create_stores_from_env()
    try:
        return await resync_license_snapshots(bundle, dry_run=dry_run)
    finally:
        await bundle.aclose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Copy live application data into every license snapshot")
    parser.add_argument("--dry-run", action="store_true", help="count stale snapshots without writing")
    parser.add_argument("--verbose", action="store_true", help="log store activity to stderr")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    result = asyncio.run(_run(dry_run=args.dry_run))
    print(json.dumps(result, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
