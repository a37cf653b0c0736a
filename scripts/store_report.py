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
from authstore.ops import build_store_report


async def _run() -> dict:
    bundle = create_stores_from_env()
    try:
        return await build_store_report(bundle)
    finally:
        await bundle.aclose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Summarize the general and license store documents")
    parser.add_argument("--verbose", action="store_true", help="log store activity to stderr")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    result = asyncio.run(_run())
    print(json.dumps(result, ensure_ascii=True, sort_keys=True, indent=2, default=str))
    return 0 if result["ok"] else 2


if __name__ == "__main__":
    raise SystemExit(main())
