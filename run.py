#!/usr/bin/env python3
"""
Tech Transfer Scraping Engine - single-target runner

Dispatches one URL through rate limiting, fetch, extraction and retry, and
prints the outcome as JSON.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add src to Python path
src_path = Path(__file__).parent / "src"
sys.path.insert(0, str(src_path))


def parse_selector(value: str):
    name, sep, selector = value.partition("=")
    if not sep or not name.strip() or not selector.strip():
        raise argparse.ArgumentTypeError(f"expected FIELD=SELECTOR, got '{value}'")
    return name.strip(), selector.strip()


def build_parser() -> argparse.ArgumentParser:
    from techtransfer_scraper.types import EngineType, InstitutionClass

    parser = argparse.ArgumentParser(description="Scrape one tech-transfer listing.")
    parser.add_argument("url", help="URL to fetch")
    parser.add_argument("--institution-key", required=True, help="Source key used for rate limiting")
    parser.add_argument(
        "--institution-class",
        default=InstitutionClass.DEFAULT.value,
        choices=[c.value for c in InstitutionClass],
    )
    parser.add_argument("--engine", default=EngineType.STATIC.value, choices=[e.value for e in EngineType])
    parser.add_argument(
        "--selector",
        action="append",
        type=parse_selector,
        default=[],
        metavar="FIELD=SELECTOR",
        help="CSS selector for a field; repeatable",
    )
    parser.add_argument("--config", help="Path to a YAML configuration file")
    parser.add_argument("--log-level", help="Override the configured log level")
    return parser


async def run(args: argparse.Namespace) -> int:
    from techtransfer_scraper.config import load_config
    from techtransfer_scraper.scrapers import EngineDispatcher, ScrapeTarget
    from techtransfer_scraper.utils.logging import setup_logging

    config = load_config(args.config)
    setup_logging(level=args.log_level, config=config.logging)

    target = ScrapeTarget(
        url=args.url,
        institution_key=args.institution_key,
        institution_class=args.institution_class,
        selectors=dict(args.selector),
        engine_hint=args.engine,
    )

    async with EngineDispatcher(config) as dispatcher:
        outcome = await dispatcher.dispatch(target)

    print(json.dumps(outcome.to_dict(), indent=2, default=str))
    return 0 if outcome.succeeded else 1


def main() -> int:
    from techtransfer_scraper.config import ConfigurationError

    args = build_parser().parse_args()
    try:
        return asyncio.run(run(args))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
