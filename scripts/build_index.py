from __future__ import annotations

import argparse
import asyncio
import dataclasses
from pathlib import Path

from geosuggest.catalog import SourceFiles
from geosuggest.config import get_settings
from geosuggest.engine import Engine
from geosuggest.logging_config import setup_logging
from geosuggest.parser import GEONAMES_CITIES, MINIMAL_CITIES
from geosuggest.storage import DumpFormat, dump_to
from geosuggest.updater import IndexUpdater


def _languages(raw: str | None) -> tuple[str, ...]:
    if raw is None:
        return get_settings().sources.languages
    return tuple(sorted({lang.strip() for lang in raw.split(",") if lang.strip()}))


def build_from_files(args: argparse.Namespace) -> Engine:
    files = SourceFiles(
        cities=args.cities,
        names=args.names,
        countries=args.countries,
        admin1_codes=args.admin1_codes,
        admin2_codes=args.admin2_codes,
        cities_schema=MINIMAL_CITIES if args.minimal else GEONAMES_CITIES,
    )
    return Engine.from_files(files, languages=_languages(args.languages))


def build_from_urls(args: argparse.Namespace) -> Engine:
    sources = get_settings().sources
    overrides = {
        "cities_url": args.cities_url,
        "cities_filename": args.cities_filename,
        "names_url": args.names_url,
        "names_filename": args.names_filename,
        "countries_url": args.countries_url,
        "admin1_codes_url": args.admin1_url,
        "admin2_codes_url": args.admin2_url,
    }
    sources = dataclasses.replace(
        sources,
        languages=_languages(args.languages),
        **{k: v for k, v in overrides.items() if v is not None},
    )
    return asyncio.run(IndexUpdater(sources).build())


def main() -> None:
    setup_logging()
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Build a geosuggest index from files or urls.")
    parser.add_argument("--output", default=settings.index.index_file, help="Dump index to")
    parser.add_argument(
        "--format",
        default=settings.index.dump_format,
        choices=[f.value for f in DumpFormat],
    )
    parser.add_argument("--languages", help="Comma separated isolanguage codes to keep")
    sub = parser.add_subparsers(dest="command", required=True)

    files = sub.add_parser("from-files", help="Build index from local files")
    files.add_argument("--cities", required=True, type=Path)
    files.add_argument("--minimal", action="store_true",
                       help="Cities file is the comma separated id,name,latitude,... format")
    files.add_argument("--names", type=Path)
    files.add_argument("--countries", type=Path)
    files.add_argument("--admin1-codes", type=Path)
    files.add_argument("--admin2-codes", type=Path)

    urls = sub.add_parser("from-urls", help="Build index from urls (defaults from environment)")
    urls.add_argument("--cities-url")
    urls.add_argument("--cities-filename")
    urls.add_argument("--names-url")
    urls.add_argument("--names-filename")
    urls.add_argument("--countries-url")
    urls.add_argument("--admin1-url")
    urls.add_argument("--admin2-url")

    args = parser.parse_args()

    if args.command == "from-files":
        engine = build_from_files(args)
    else:
        engine = build_from_urls(args)

    dump_to(args.output, engine, DumpFormat(args.format))
    print(f"Built index with {len(engine)} cities in {args.output}")


if __name__ == "__main__":
    main()
