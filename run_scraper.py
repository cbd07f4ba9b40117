#!/usr/bin/env python3

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from ek_config import EkConfig, load_config
from ek_reader import Reader
from ek_source import collect_ads


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Extract Kleinanzeigen ads as JSON lines")
    parser.add_argument("--url", required=True, help="Listing page to start from")
    parser.add_argument("--config", help="Path to a JSON config (selectors, categories, network)")
    parser.add_argument("--pages", type=int, default=1, help="How many listing pages to follow")
    parser.add_argument("--lightweight", action="store_true", help="Only use listing page data")
    parser.add_argument("--lower-bound", type=int, default=None, help="Skip ads with id <= this value")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser.parse_args(argv)


def _load(path: Optional[str]) -> EkConfig:
    if not path:
        return EkConfig()
    config_path = Path(path)
    if not config_path.exists():
        raise SystemExit(f"Config not found: {config_path}")
    return load_config(config_path)


def main(argv: Optional[list[str]] = None) -> None:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    config = _load(args.config)
    logging.info("Scraping %s: pages=%s lightweight=%s", args.url, args.pages, args.lightweight)

    reader = Reader(config)
    try:
        ads = collect_ads(
            args.url,
            config=config,
            fetcher=reader,
            max_pages=args.pages,
            lightweight=args.lightweight,
            lower_bound=args.lower_bound,
        )
    finally:
        reader.close()

    for ad in ads:
        sys.stdout.write(json.dumps(ad.to_record(), ensure_ascii=False) + "\n")
    logging.info("Ads extracted: %s", len(ads))


if __name__ == "__main__":
    main()
