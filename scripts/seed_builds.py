#!/usr/bin/env python
"""Populate the build store with demo builds ready for scraping."""
from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from dotenv import load_dotenv

from fullscrape.storage.repository import JsonBuildRepository
from fullscrape.storage.seed import seed_builds


def main() -> None:
    """CLI entrypoint mirroring `python -m fullscrape.main seed-builds`."""
    load_dotenv()
    parser = argparse.ArgumentParser(description="Seed the build store with demo builds")
    parser.add_argument(
        "--store",
        type=Path,
        default=Path("data/builds.json"),
        help="Path to the JSON build store",
    )
    args = parser.parse_args()
    created = asyncio.run(seed_builds(JsonBuildRepository(path=args.store)))
    for build in created:
        print(build.build_id)


if __name__ == "__main__":
    main()
