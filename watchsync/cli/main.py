"""Command line entry point for WatchSync."""

from __future__ import annotations

import argparse
from typing import Optional, Sequence

from watchsync.backend.common.errors import WatchSyncError
from watchsync.backend.common.logging import init_logging
from watchsync.backend.information_handlers.models import SuccessPolicy, SyncDirection, SyncOptions
from watchsync.backend.information_handlers.plex_manager import PlexManager
from watchsync.backend.information_handlers.trakt_manager import TraktManager
from watchsync.backend.network_handlers.session import HttpSession, NetError
from watchsync.backend.sync.engine import SyncEngine
from watchsync.config import settings

from ._utils import (
    build_subparser,
    exit_with_error,
    parse_since,
    positive_int,
    print_json,
    require_subcommand,
    to_serializable,
)

_SESSION: Optional[HttpSession] = None


def _session() -> HttpSession:
    global _SESSION
    if _SESSION is None:
        _SESSION = HttpSession(timeout=settings.get_settings().request_timeout)
    return _SESSION


def _trakt() -> TraktManager:
    try:
        return TraktManager(session=_session())
    except WatchSyncError as exc:
        exit_with_error(f"Trakt is unavailable: {exc}")
        raise


def _engine(args: argparse.Namespace) -> SyncEngine:
    policy = SuccessPolicy.STRICT if getattr(args, "strict", False) else None
    return SyncEngine(_trakt(), PlexManager(session=_session()), success_policy=policy)


def _sync_options(args: argparse.Namespace) -> SyncOptions:
    fields = {"direction": SyncDirection(args.direction), "dry_run": args.dry_run}
    if args.batch_size:
        fields["batch_size"] = args.batch_size
    return SyncOptions(**fields)


# ---------------------------------------------------------------------------
# trakt
# ---------------------------------------------------------------------------

def _handle_trakt_auth_url(args: argparse.Namespace) -> None:
    print_json({"auth_url": _trakt().generate_auth_url(args.state)})


def _handle_trakt_complete_auth(args: argparse.Namespace) -> None:
    manager = _trakt()
    token = manager.exchange_code_for_token(args.code)
    print_json({"authenticated": True, "scope": token.scope, "expires_in": token.expires_in})


def _handle_trakt_status(_: argparse.Namespace) -> None:
    manager = _trakt()
    print_json(to_serializable({"status": manager.status(), "config": manager.public_config()}))


def _handle_trakt_search(args: argparse.Namespace) -> None:
    results = _trakt().search(args.query, media_type=args.media_type, year=args.year)
    print_json(to_serializable(results[: args.limit]))


def _handle_trakt_stats(_: argparse.Namespace) -> None:
    print_json(to_serializable(_trakt().stats_summary()))


def _handle_trakt_history(args: argparse.Namespace) -> None:
    manager = _trakt()
    if args.media_type == "shows":
        entries = manager.get_watched_shows()
    else:
        entries = manager.get_watched_movies()
    print_json(to_serializable(entries[: args.limit]))


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------

def _handle_sync_full(args: argparse.Namespace) -> None:
    result = _engine(args).perform_full_sync(_sync_options(args))
    print_json(to_serializable(result))
    if not result.success:
        raise SystemExit(1)


def _handle_sync_incremental(args: argparse.Namespace) -> None:
    result = _engine(args).perform_incremental_sync(args.since, _sync_options(args))
    print_json(to_serializable(result))
    if not result.success:
        raise SystemExit(1)


def _handle_sync_status(args: argparse.Namespace) -> None:
    manager = _trakt()
    print_json(
        to_serializable(
            {
                "trakt": manager.status(),
                "settings": settings.get_settings().as_dict(),
            }
        )
    )


def _add_sync_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--direction",
        choices=[d.value for d in SyncDirection],
        default=SyncDirection.PLEX_TO_TRAKT.value,
        help="Which way to reconcile watch history.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Validate and count without writing to Trakt.")
    parser.add_argument("--batch-size", type=positive_int, help="Movies per history request.")
    parser.add_argument("--strict", action="store_true", help="Fail the run on any recorded error.")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="watchsync",
        description="Synchronize Plex watch history with Trakt.",
    )
    parser.add_argument("--log-level", help="Override WATCHSYNC_LOG_LEVEL for this invocation.")
    subparsers = parser.add_subparsers(dest="command")
    require_subcommand(subparsers)

    # Trakt --------------------------------------------------------------
    trakt_parser = build_subparser(subparsers, "trakt", help="Trakt account helpers.")
    trakt_sub = trakt_parser.add_subparsers(dest="trakt_command")
    require_subcommand(trakt_sub)

    auth_url = build_subparser(trakt_sub, "auth-url", help="Print the OAuth authorization URL.")
    auth_url.add_argument("--state", help="Opaque state value echoed back by Trakt.")
    auth_url.set_defaults(func=_handle_trakt_auth_url)

    complete_auth = build_subparser(trakt_sub, "complete-auth", help="Exchange an authorization code for tokens.")
    complete_auth.add_argument("code", help="Code shown by Trakt after authorizing the application.")
    complete_auth.set_defaults(func=_handle_trakt_complete_auth)

    status = build_subparser(trakt_sub, "status", help="Show authentication state and client configuration.")
    status.set_defaults(func=_handle_trakt_status)

    search = build_subparser(trakt_sub, "search", help="Search Trakt for movies or shows.")
    search.add_argument("query", help="Text to search for.")
    search.add_argument("--media-type", choices=["movie", "show"], help="Restrict search to a specific media type.")
    search.add_argument("--year", type=int, help="Restrict search to a given year.")
    search.add_argument("--limit", type=int, default=10, help="Maximum number of results to print.")
    search.set_defaults(func=_handle_trakt_search)

    stats = build_subparser(trakt_sub, "stats", help="Summarize account statistics and milestones.")
    stats.set_defaults(func=_handle_trakt_stats)

    history = build_subparser(trakt_sub, "history", help="List watched movies or shows on Trakt.")
    history.add_argument("--media-type", choices=["movies", "shows"], default="movies", help="Media type to query.")
    history.add_argument("--limit", type=int, default=25, help="Maximum number of entries to print.")
    history.set_defaults(func=_handle_trakt_history)

    # Sync ---------------------------------------------------------------
    sync_parser = build_subparser(subparsers, "sync", help="Run watch-history synchronization.")
    sync_sub = sync_parser.add_subparsers(dest="sync_command")
    require_subcommand(sync_sub)

    full = build_subparser(sync_sub, "full", help="Sync the entire watched library.")
    _add_sync_arguments(full)
    full.set_defaults(func=_handle_sync_full)

    incremental = build_subparser(sync_sub, "incremental", help="Sync items watched after a point in time.")
    incremental.add_argument("--since", type=parse_since, required=True, help="ISO-8601 timestamp.")
    _add_sync_arguments(incremental)
    incremental.set_defaults(func=_handle_sync_incremental)

    sync_status = build_subparser(sync_sub, "status", help="Show Trakt authentication state and effective settings.")
    sync_status.set_defaults(func=_handle_sync_status)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    init_logging(args.log_level or settings.get_settings().log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return
    try:
        handler(args)
    except (NetError, WatchSyncError) as exc:
        exit_with_error(str(exc))


if __name__ == "__main__":  # pragma: no cover
    main()
