"""CLI entrypoint for geosuggest."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from geosuggest.logging_config import setup_logging


def main() -> None:
    setup_logging()

    parser = argparse.ArgumentParser(prog="geosuggest")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve")

    check_parser = sub.add_parser("check", help="Check the index file against its sources")
    check_parser.add_argument("--index", help="Index file (default: GEOSUGGEST_INDEX_FILE)")
    check_parser.add_argument("--rebuild", action="store_true", help="Rebuild when stale")

    info_parser = sub.add_parser("info", help="Print index metadata")
    info_parser.add_argument("--index", help="Index file (default: GEOSUGGEST_INDEX_FILE)")

    args = parser.parse_args()

    if args.command == "serve":
        _serve()
    elif args.command == "check":
        sys.exit(asyncio.run(_check(args.index, args.rebuild)))
    elif args.command == "info":
        _info(args.index)


def _serve() -> None:
    import uvicorn

    from geosuggest.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "geosuggest.api:app",
        host=settings.api.host,
        port=settings.api.port,
        reload=(settings.env == "development"),
        log_level=settings.log_level.lower(),
    )


async def _check(index: str | None, rebuild: bool) -> int:
    """Exit status: 0 up to date (or rebuilt), 1 stale, 2 check or rebuild failed."""
    from geosuggest.config import get_settings
    from geosuggest.errors import GeosuggestError
    from geosuggest.storage import DumpFormat, read_metadata
    from geosuggest.updater import IndexUpdater, RebuildCoordinator, SnapshotHolder

    settings = get_settings()
    path = index or settings.index.index_file
    updater = IndexUpdater(settings.sources)

    try:
        stale = await updater.has_updates(read_metadata(path))
    except FileNotFoundError:
        print(f"Index file {path} not found")
        stale = True
    except GeosuggestError as e:
        print(f"Update check failed: {e}")
        return 2

    if not stale:
        print("Index is up to date.")
        return 0
    if not rebuild:
        print("Updates available.")
        return 1

    holder = SnapshotHolder()
    coordinator = RebuildCoordinator(holder, updater, path, DumpFormat(settings.index.dump_format))
    try:
        rebuilt = await coordinator.rebuild(force=True)
    except GeosuggestError as e:
        print(f"Rebuild failed: {e}")
        return 2
    if not rebuilt:
        print(f"Another process is rebuilding {path}.")
        return 1
    print(f"Index rebuilt: {len(holder.get())} cities written to {path}")
    return 0


def _info(index: str | None) -> None:
    from geosuggest.config import get_settings
    from geosuggest.storage import read_metadata

    path = index or get_settings().index.index_file
    metadata = read_metadata(path)
    print(json.dumps(metadata.model_dump(mode="json"), ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
