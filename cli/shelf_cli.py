"""Command-line interface for shelfsync."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING, Any

from shelfsync.config import Settings
from shelfsync.exceptions import InvalidItemIdError, OperationError, ShelfError
from shelfsync.filesystem.cache_store import CacheStore
from shelfsync.filesystem.ledger import open_ledger
from shelfsync.filesystem.toml_manager import (
    ShelfConfig,
    parse_library_config,
    write_library_config,
)
from shelfsync.github.client import GitHubClient
from shelfsync.services.cache_service import clear_cache, fetch_item
from shelfsync.services.delete_service import delete_items
from shelfsync.services.import_service import (
    RepoRef,
    find_route,
    import_shelf,
    migrate_one,
    migrate_repo,
)
from shelfsync.services.move_service import move_items
from shelfsync.services.progress import EventKind, launch
from shelfsync.services.shelve_service import shelve_item
from shelfsync.services.sync_service import sync_modified
from shelfsync.services.transfer_service import Library, ShelfLocation
from shelfsync.services.verify_service import verify_shelf

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from shelfsync.schemas.item import ItemRecord
    from shelfsync.services.transfer_service import BatchResult

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """A user-facing error that ends the command."""


def configure_logging(verbose: bool) -> None:
    """Configure CLI logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)-8s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class Context:
    """Settings, configuration and lazily created stores for one invocation."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.config = parse_library_config(settings.config_file)
        self._client: GitHubClient | None = None

    def shelf(self, name: str, release: str | None = None) -> ShelfLocation:
        shelf = self.config.shelf_by_name(name)
        if shelf is None:
            known = ", ".join(s.name for s in self.config.shelves) or "none configured"
            raise CommandError(f"Unknown shelf {name!r} (known: {known})")
        try:
            return ShelfLocation.from_config(
                shelf,
                global_owner=self.config.owner,
                default_release=self.config.default_release or self.settings.default_release,
                release=release,
            )
        except ValueError as exc:
            raise CommandError(str(exc)) from exc

    def cache(self) -> CacheStore:
        return CacheStore(self.settings.cache_dir)

    def library(self) -> Library:
        try:
            self.settings.validate_credentials()
        except ValueError as exc:
            raise CommandError(str(exc)) from exc
        if self._client is None:
            self._client = GitHubClient(self.settings)
        return Library(blobs=self._client, files=self._client, cache=self.cache())

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _print_event(kind: EventKind, item_id: str, message: str, percent: float | None) -> None:
    if kind is EventKind.BYTES:
        if percent is not None:
            print(f"  {item_id}: {percent:5.1f}%", file=sys.stderr)
        return
    label = kind.value.replace("_", " ")
    parts = [part for part in (item_id, message) if part]
    print(f"[{label}] {' '.join(parts)}", file=sys.stderr)


async def _run_with_progress(
    operation: Callable[..., Coroutine[Any, Any, BatchResult]],
    *args: Any,
    queue_size: int,
    **kwargs: Any,
) -> BatchResult:
    handle = launch(operation, *args, queue_size=queue_size, **kwargs)
    try:
        async for event in handle.events():
            if event.final:
                break
            _print_event(event.kind, event.item_id, event.message, event.percent)
    except asyncio.CancelledError:
        handle.cancel()
        raise
    return await handle.result()


def _report(result: BatchResult) -> None:
    for failure in result.failures:
        print(f"  FAILED {failure.item_id} ({failure.step}): {failure.message}")
    print(result.summary())


def _split_repo(value: str) -> tuple[str, str]:
    owner, sep, repo = value.partition("/")
    if not sep or not owner or not repo:
        raise CommandError(f"Expected OWNER/REPO, got {value!r}")
    return owner, repo


def _split_tags(value: str | None) -> list[str]:
    if not value:
        return []
    return [tag.strip() for tag in value.split(",") if tag.strip()]


# Commands


def cmd_init(ctx: Context, args: argparse.Namespace) -> None:
    config = ctx.config
    if args.owner:
        config.owner = args.owner
    if args.release:
        config.default_release = args.release
    if args.shelf:
        if not args.repo:
            raise CommandError("--repo is required with --shelf")
        if config.shelf_by_name(args.shelf) is not None:
            raise CommandError(f"Shelf {args.shelf!r} already exists")
        config.shelves.append(ShelfConfig(name=args.shelf, repo=args.repo))
    write_library_config(ctx.settings.config_file, config)
    print(f"Wrote configuration to {ctx.settings.config_file}")


def cmd_shelves(ctx: Context, args: argparse.Namespace) -> None:
    if not ctx.config.shelves:
        print("No shelves configured. Run 'shelfsync init --shelf NAME --repo REPO'.")
        return
    for shelf in ctx.config.shelves:
        location = ctx.shelf(shelf.name)
        print(f"{shelf.name}: {location.owner}/{location.repo} (release {location.release})")


async def cmd_add(ctx: Context, args: argparse.Namespace) -> None:
    path = Path(args.file)
    if not path.is_file():
        raise CommandError(f"No such file: {path}")
    shelf = ctx.shelf(args.shelf, args.release)
    record = await shelve_item(
        ctx.library(),
        path,
        shelf,
        title=args.title or "",
        author=args.author or "",
        year=args.year or 0,
        tags=_split_tags(args.tags),
        item_id=args.id,
        cache=args.cache,
    )
    print(f"Added {record.id} ({record.size_bytes} bytes, sha256 {record.sha256[:12]})")


async def cmd_get(ctx: Context, args: argparse.Namespace) -> None:
    library = ctx.library()
    shelf = ctx.shelf(args.shelf)
    record = await library.catalog(shelf).find(args.id)
    if record is None:
        raise CommandError(f"{args.id} not found on {shelf.label}")
    cached = await fetch_item(library, record, force=args.force)
    print(cached.path)


async def cmd_move(ctx: Context, args: argparse.Namespace) -> None:
    src = ctx.shelf(args.shelf)
    if args.to_shelf:
        dst = ctx.shelf(args.to_shelf, args.to_release)
    elif args.to_release:
        dst = src.with_release(args.to_release)
    else:
        raise CommandError("Give --to-shelf and/or --to-release")
    result = await _run_with_progress(
        move_items,
        ctx.library(),
        list(args.ids),
        src,
        dst,
        keep_source=args.keep_source,
        queue_size=ctx.settings.progress_queue_size,
    )
    _report(result)


async def cmd_delete(ctx: Context, args: argparse.Namespace) -> None:
    shelf = ctx.shelf(args.shelf)
    if not args.yes:
        answer = input(f"Delete {len(args.ids)} item(s) from {shelf.label}? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted.")
            return
    result = await _run_with_progress(
        delete_items,
        ctx.library(),
        shelf,
        list(args.ids),
        queue_size=ctx.settings.progress_queue_size,
    )
    _report(result)


async def cmd_import(ctx: Context, args: argparse.Namespace) -> None:
    src = ctx.shelf(args.source)
    dst = ctx.shelf(args.dest, args.release)
    ledger = None if args.no_ledger else open_ledger(ctx.settings.ledger_path)
    result = await _run_with_progress(
        import_shelf,
        ctx.library(),
        src,
        dst,
        ledger=ledger,
        limit=args.limit,
        queue_size=ctx.settings.progress_queue_size,
    )
    _report(result)


def _route(ctx: Context, owner: str, repo: str, path: str) -> str | None:
    sources = [s for s in ctx.config.migration_sources if (s.owner, s.repo) == (owner, repo)]
    route = find_route(path, sources)
    return route[1] if route else None


def _origin(ctx: Context, value: str, ref: str | None) -> RepoRef:
    owner, repo = _split_repo(value)
    for source in ctx.config.migration_sources:
        if (source.owner, source.repo) == (owner, repo):
            return RepoRef(owner=owner, repo=repo, ref=ref or source.ref)
    return RepoRef(owner=owner, repo=repo, ref=ref or "main")


async def cmd_migrate_one(ctx: Context, args: argparse.Namespace) -> None:
    origin = _origin(ctx, args.repo, args.ref)
    shelf_name = args.shelf or _route(ctx, origin.owner, origin.repo, args.path)
    if shelf_name is None:
        raise CommandError(f"No mapping routes {args.path}; pass --shelf")
    ledger = None if args.no_ledger else open_ledger(ctx.settings.ledger_path)
    record = await migrate_one(ctx.library(), origin, args.path, ctx.shelf(shelf_name), ledger=ledger)
    if record is None:
        print(f"Skipped {args.path}: already migrated")
    else:
        print(f"Migrated {args.path} -> {shelf_name}/{record.id}")


async def cmd_migrate_batch(ctx: Context, args: argparse.Namespace) -> None:
    origin = _origin(ctx, args.repo, args.ref)
    library = ctx.library()
    files = await library.files.list_files(origin.owner, origin.repo, origin.ref, args.ext or ())

    routed: dict[str, list[str]] = defaultdict(list)
    for file in files:
        shelf_name = args.shelf or _route(ctx, origin.owner, origin.repo, file.path)
        if shelf_name is None:
            logger.info("No route for %s, skipping", file.path)
            continue
        routed[shelf_name].append(file.path)
    if not routed:
        print("Nothing to migrate.")
        return

    ledger = None if args.no_ledger else open_ledger(ctx.settings.ledger_path)
    for shelf_name, paths in routed.items():
        if args.limit is not None:
            paths = paths[: args.limit]
        print(f"Migrating {len(paths)} file(s) to {shelf_name}")
        result = await _run_with_progress(
            migrate_repo,
            library,
            origin,
            ctx.shelf(shelf_name),
            extensions=args.ext or (),
            paths=paths,
            ledger=ledger,
            queue_size=ctx.settings.progress_queue_size,
        )
        _report(result)


async def cmd_migrate_scan(ctx: Context, args: argparse.Namespace) -> None:
    origin = _origin(ctx, args.repo, args.ref)
    library = ctx.library()
    files = await library.files.list_files(origin.owner, origin.repo, origin.ref, args.ext or ())
    ledger = open_ledger(ctx.settings.ledger_path)
    done = ledger.sources() if ledger is not None else set()
    for file in files:
        shelf_name = _route(ctx, origin.owner, origin.repo, file.path) or "-"
        marker = "done" if f"{origin.owner}/{origin.repo}:{file.path}" in done else "todo"
        print(f"{marker:4}  {shelf_name:16}  {file.path}  ({file.size} bytes)")
    print(f"{len(files)} file(s)")


async def cmd_sync(ctx: Context, args: argparse.Namespace) -> None:
    result = await _run_with_progress(
        sync_modified,
        ctx.library(),
        ctx.shelf(args.shelf),
        item_ids=args.ids or None,
        force=args.force,
        queue_size=ctx.settings.progress_queue_size,
    )
    for item_id in result.skipped:
        print(f"  skipped {item_id}: catalog changed since it was cached")
    _report(result)


async def cmd_verify(ctx: Context, args: argparse.Namespace) -> None:
    names = [args.shelf] if args.shelf else [shelf.name for shelf in ctx.config.shelves]
    if not names:
        print("No shelves configured.")
        return
    library = ctx.library()
    issues = 0
    for name in names:
        report = await verify_shelf(
            library, ctx.shelf(name), fix=args.fix, delete_orphans=args.delete_orphans
        )
        issues += report.issue_count
        print(f"{name}: {report.record_count} record(s), {report.blob_count} asset(s)")
        for release in report.missing_releases:
            print(f"  release missing: {release}")
        for record in report.dangling:
            print(f"  dangling record {record.id}: asset {record.source.asset} missing")
        for orphan in report.orphans:
            print(f"  orphan asset {orphan.blob.name} in release {orphan.release}")
        if report.removed:
            print(f"  removed {len(report.removed)} dangling record(s)")
        if report.deleted:
            print(f"  deleted {len(report.deleted)} orphan asset(s)")
    if issues == 0:
        print("No issues found")
    elif not (args.fix or args.delete_orphans):
        print(f"{issues} issue(s) found. Run with --fix or --delete-orphans to repair.")


def cmd_cache_info(ctx: Context, args: argparse.Namespace) -> None:
    cache = ctx.cache()
    entries = cache.entries()
    for entry in entries:
        key = entry.key
        print(f"{key.owner}/{key.repo}  {key.item_id}  {entry.size} bytes")
    print(f"{len(entries)} cached item(s), {cache.total_size()} bytes in {cache.root}")


async def cmd_cache_clear(ctx: Context, args: argparse.Namespace) -> None:
    cache = ctx.cache()
    if args.all:
        count = len(cache.entries())
        cache.clear_all()
        print(f"Removed {count} cached item(s)")
        return
    records: list[ItemRecord] = []
    if args.shelf:
        shelf = ctx.shelf(args.shelf)
        records = await ctx.library().catalog(shelf).load_or_empty()
    result = clear_cache(cache, records, item_ids=args.ids or None, force=args.force)
    for key in result.skipped:
        print(f"  kept {key.item_id}: local changes (use --force)")
    print(f"Removed {len(result.removed)} cached item(s)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shelfsync",
        description="Keep a document library in GitHub releases and a local cache consistent",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--config", help="Configuration file (default: SHELFSYNC_CONFIG_FILE)")

    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("init", help="Create or extend the configuration file")
    p.add_argument("--owner", help="Default GitHub owner")
    p.add_argument("--release", help="Default release tag")
    p.add_argument("--shelf", help="Add a shelf with this name")
    p.add_argument("--repo", help="Repository of the new shelf")
    p.set_defaults(handler=cmd_init)

    p = sub.add_parser("shelves", help="List configured shelves")
    p.set_defaults(handler=cmd_shelves)

    p = sub.add_parser("add", help="Add a local file to a shelf")
    p.add_argument("shelf")
    p.add_argument("file")
    p.add_argument("--title")
    p.add_argument("--author")
    p.add_argument("--year", type=int)
    p.add_argument("--tags", help="Comma-separated tags")
    p.add_argument("--id", help="Item id (default: derived from the title)")
    p.add_argument("--release", help="Release to upload into")
    p.add_argument("--cache", action="store_true", help="Also keep a cached copy")
    p.set_defaults(handler=cmd_add)

    p = sub.add_parser("get", help="Download an item into the cache and print its path")
    p.add_argument("shelf")
    p.add_argument("id")
    p.add_argument("--force", action="store_true", help="Download even if cached")
    p.set_defaults(handler=cmd_get)

    p = sub.add_parser("move", help="Move items to another release or shelf")
    p.add_argument("shelf")
    p.add_argument("ids", nargs="+")
    p.add_argument("--to-shelf")
    p.add_argument("--to-release")
    p.add_argument("--keep-source", action="store_true", help="Leave the source asset in place")
    p.set_defaults(handler=cmd_move)

    p = sub.add_parser("delete", help="Delete items")
    p.add_argument("shelf")
    p.add_argument("ids", nargs="+")
    p.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    p.set_defaults(handler=cmd_delete)

    p = sub.add_parser("import", help="Copy items from another shelf")
    p.add_argument("source")
    p.add_argument("dest")
    p.add_argument("--release")
    p.add_argument("--limit", "-n", type=int)
    p.add_argument("--no-ledger", action="store_true")
    p.set_defaults(handler=cmd_import)

    migrate = sub.add_parser("migrate", help="Migrate files from a plain repository")
    migrate_sub = migrate.add_subparsers(dest="migrate_command", required=True)

    p = migrate_sub.add_parser("one", help="Migrate one file")
    p.add_argument("repo", help="OWNER/REPO")
    p.add_argument("path")
    p.add_argument("--shelf")
    p.add_argument("--ref")
    p.add_argument("--no-ledger", action="store_true")
    p.set_defaults(handler=cmd_migrate_one)

    p = migrate_sub.add_parser("batch", help="Migrate every routed file")
    p.add_argument("repo", help="OWNER/REPO")
    p.add_argument("--shelf", help="Send everything to this shelf instead of routing")
    p.add_argument("--ref")
    p.add_argument("--ext", action="append", help="File extension to include (repeatable)")
    p.add_argument("--limit", "-n", type=int)
    p.add_argument("--no-ledger", action="store_true")
    p.set_defaults(handler=cmd_migrate_batch)

    p = migrate_sub.add_parser("scan", help="List files and where they would go")
    p.add_argument("repo", help="OWNER/REPO")
    p.add_argument("--ref")
    p.add_argument("--ext", action="append")
    p.set_defaults(handler=cmd_migrate_scan)

    p = sub.add_parser("sync", help="Upload locally edited cached copies")
    p.add_argument("shelf")
    p.add_argument("ids", nargs="*")
    p.add_argument(
        "--force", action="store_true", help="Overwrite items that also changed on the shelf"
    )
    p.set_defaults(handler=cmd_sync)

    p = sub.add_parser("verify", help="Find catalog records and release assets that disagree")
    p.add_argument("shelf", nargs="?", help="Verify only this shelf")
    p.add_argument("--fix", action="store_true", help="Remove records whose asset is missing")
    p.add_argument(
        "--delete-orphans", action="store_true", help="Delete assets no record references"
    )
    p.set_defaults(handler=cmd_verify)

    cache = sub.add_parser("cache", help="Inspect or clear the local cache")
    cache_sub = cache.add_subparsers(dest="cache_command", required=True)
    p = cache_sub.add_parser("info", help="List cached items")
    p.set_defaults(handler=cmd_cache_info)
    p = cache_sub.add_parser("clear", help="Remove cached items")
    p.add_argument("--shelf", help="Compare against this shelf's catalog")
    p.add_argument("ids", nargs="*")
    p.add_argument("--force", action="store_true", help="Also remove locally edited copies")
    p.add_argument(
        "--all",
        action="store_true",
        help="Delete the whole cache directory, edited copies included",
    )
    p.set_defaults(handler=cmd_cache_clear)

    return parser


async def _dispatch(ctx: Context, args: argparse.Namespace) -> None:
    try:
        outcome = args.handler(ctx, args)
        if asyncio.iscoroutine(outcome):
            await outcome
    finally:
        await ctx.aclose()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if not getattr(args, "handler", None):
        parser.print_help()
        return

    settings = Settings()
    if args.config:
        settings = settings.model_copy(update={"config_file": Path(args.config)})

    try:
        ctx = Context(settings)
        asyncio.run(_dispatch(ctx, args))
    except (CommandError, InvalidItemIdError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    except OperationError as exc:
        print(f"Error: {exc}")
        print(f"  Item {exc.item_id} stopped at step '{exc.step}'; fix the cause and retry.")
        sys.exit(1)
    except (ShelfError, OSError, ValueError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("Interrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
