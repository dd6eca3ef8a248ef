from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional, Protocol, Sequence, TypeVar, runtime_checkable

from watchsync.backend.common.errors import ProviderError, SyncInProgressError
from watchsync.backend.common.logging import get_logger
from watchsync.backend.common.types import SyncStatus
from watchsync.backend.information_handlers.mapper import PlexToTraktMapper
from watchsync.backend.information_handlers.models import (
    PlexEpisode,
    PlexMovie,
    SuccessPolicy,
    SyncConflict,
    SyncDirection,
    SyncOptions,
    SyncResult,
    WatchSession,
)
from watchsync.backend.information_handlers.trakt_manager import TraktManager
from watchsync.backend.information_handlers.trakt_models import SyncShowItem
from watchsync.backend.network_handlers.session import NetError
from watchsync.config.settings import get_settings

log = get_logger(__name__)

T = TypeVar("T")

CANCELLED_MESSAGE = "Sync cancelled"
TRAKT_TO_PLEX_NOTICE = "Trakt to Plex sync not yet implemented - use for comparison only"


@runtime_checkable
class SourceCollector(Protocol):
    """What the engine needs from a watch-history source."""

    def get_watched_movies(self, user_id: Optional[int] = None) -> List[PlexMovie]: ...

    def get_watched_episodes(self, user_id: Optional[int] = None) -> List[PlexEpisode]: ...

    def get_current_sessions(self) -> List[WatchSession]: ...

    def mark_as_watched(self, rating_key: str, user_id: Optional[int] = None) -> None: ...

    def update_progress(self, rating_key: str, progress: int, user_id: Optional[int] = None) -> None: ...


class SyncState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class _Tally:
    """Mutable accumulator for one run; frozen into a ``SyncResult`` at the end."""

    items_processed: int = 0
    items_added: int = 0
    items_updated: int = 0
    items_failed: int = 0
    conflicts: List[SyncConflict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False

    def merge(self, other: "_Tally") -> None:
        self.items_processed += other.items_processed
        self.items_added += other.items_added
        self.items_updated += other.items_updated
        self.items_failed += other.items_failed
        self.conflicts.extend(other.conflicts)
        self.errors.extend(other.errors)
        self.cancelled = self.cancelled or other.cancelled


def chunk(items: Sequence[T], size: int) -> List[Sequence[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [items[i:i + size] for i in range(0, len(items), size)]


class SyncEngine:
    """
    Reconciles a source's watch history with Trakt.

    One run at a time per engine: a second ``perform_*`` call while a run is
    active raises :class:`SyncInProgressError` before touching the network.
    Item and batch failures are recorded on the result; run-level failures
    are caught too, so callers always get a ``SyncResult`` back.
    """

    def __init__(
        self,
        trakt: TraktManager,
        source: SourceCollector,
        *,
        mapper: Optional[PlexToTraktMapper] = None,
        batch_delay_seconds: Optional[float] = None,
        success_policy: Optional[SuccessPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        cfg = get_settings()
        self._trakt = trakt
        self._source = source
        self._mapper = mapper or PlexToTraktMapper(app_version=cfg.app_version)
        self._batch_delay = cfg.batch_delay_seconds if batch_delay_seconds is None else max(0.0, batch_delay_seconds)
        self._success_policy = success_policy or SuccessPolicy(cfg.success_policy)
        self._batch_size = cfg.batch_size
        self._incremental_batch_size = cfg.incremental_batch_size
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._run_lock = threading.Lock()
        self._state = SyncState.IDLE
        self._sync_id: Optional[str] = None
        self._started_at: Optional[datetime] = None
        self._last_result: Optional[SyncResult] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def perform_full_sync(
        self,
        options: Optional[SyncOptions] = None,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> SyncResult:
        opts = options or SyncOptions()
        if "batch_size" not in opts.model_fields_set:
            opts = opts.model_copy(update={"batch_size": self._batch_size})

        return self._run(opts, since=None, cancel=cancel)

    def perform_incremental_sync(
        self,
        since: datetime,
        options: Optional[SyncOptions] = None,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> SyncResult:
        opts = options or SyncOptions()
        if "batch_size" not in opts.model_fields_set:
            opts = opts.model_copy(update={"batch_size": self._incremental_batch_size})
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        log.info("sync_incremental_requested", extra={"since": since.isoformat()})

        return self._run(opts, since=since, cancel=cancel)

    def get_sync_status(self) -> SyncStatus:
        started = self._started_at
        return {
            "in_progress": self._state is SyncState.RUNNING,
            "sync_id": self._sync_id,
            "state": self._state.value,
            "started_at": started.isoformat() if started else None,
        }

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self._last_result

    # ------------------------------------------------------------------
    # Run orchestration
    # ------------------------------------------------------------------
    def _run(
        self,
        options: SyncOptions,
        *,
        since: Optional[datetime],
        cancel: Optional[threading.Event],
    ) -> SyncResult:
        if not self._run_lock.acquire(blocking=False):
            raise SyncInProgressError(self._sync_id)

        start_time = self._clock()
        self._sync_id = f"sync_{int(start_time.timestamp() * 1000)}"
        self._started_at = start_time
        self._state = SyncState.RUNNING
        tally = _Tally()

        try:
            log.info(
                "sync_started",
                extra={
                    "sync_id": self._sync_id,
                    "direction": options.direction.value,
                    "dry_run": options.dry_run,
                    "batch_size": options.batch_size,
                },
            )

            if options.direction in (SyncDirection.PLEX_TO_TRAKT, SyncDirection.BIDIRECTIONAL):
                tally.merge(self._sync_source_to_trakt(options, since=since, cancel=cancel))

            if options.direction in (SyncDirection.TRAKT_TO_PLEX, SyncDirection.BIDIRECTIONAL):
                if not tally.cancelled:
                    tally.merge(self._sync_trakt_to_source(options))
        except Exception as exc:
            log.exception("sync_failed", extra={"sync_id": self._sync_id})
            tally.errors.append(str(exc) or exc.__class__.__name__)
        finally:
            result = SyncResult(
                success=self._is_success(tally),
                items_processed=tally.items_processed,
                items_added=tally.items_added,
                items_updated=tally.items_updated,
                items_failed=tally.items_failed,
                conflicts=tuple(tally.conflicts),
                errors=tuple(tally.errors),
                start_time=start_time,
                end_time=self._clock(),
                sync_id=self._sync_id,
            )
            self._last_result = result
            self._state = SyncState.COMPLETED if result.success else SyncState.FAILED
            self._run_lock.release()

        log.info(
            "sync_finished",
            extra={"sync_id": result.sync_id, "success": result.success, "errors": len(result.errors), **result.summary()},
        )

        return result

    def _is_success(self, tally: _Tally) -> bool:
        if self._success_policy is SuccessPolicy.STRICT:
            return not tally.errors
        return not tally.errors or tally.items_processed > 0

    # ------------------------------------------------------------------
    # Source -> Trakt
    # ------------------------------------------------------------------
    def _sync_source_to_trakt(
        self,
        options: SyncOptions,
        *,
        since: Optional[datetime],
        cancel: Optional[threading.Event],
    ) -> _Tally:
        tally = _Tally()
        try:
            movies = self._filter_since(self._source.get_watched_movies(), since)
            log.info("sync_source_movies", extra={"count": len(movies)})
            valid_movies = self._validated(movies, "Movie", tally)

            if valid_movies and not options.dry_run:
                self._sync_movie_batches(valid_movies, options.batch_size, tally, cancel)

            if tally.cancelled:
                return tally

            episodes = self._filter_since(self._source.get_watched_episodes(), since)
            log.info("sync_source_episodes", extra={"count": len(episodes)})
            valid_episodes = self._validated(episodes, "Episode", tally)

            if valid_episodes and not options.dry_run:
                if self._cancel_requested(cancel, tally):
                    return tally
                self._sync_episodes(valid_episodes, tally)

            if options.dry_run:
                log.info(
                    "sync_dry_run",
                    extra={"movies": len(valid_movies), "episodes": len(valid_episodes)},
                )
                tally.items_processed = len(valid_movies) + len(valid_episodes)
        except Exception as exc:
            log.exception("sync_source_to_trakt_failed")
            tally.errors.append(f"Plex to Trakt sync failed: {exc}")

        return tally

    def _validated(self, items: Sequence[T], label: str, tally: _Tally) -> List[T]:
        valid: List[T] = []
        for item in items:
            outcome = self._mapper.validate(item)
            if outcome.valid:
                valid.append(item)
                continue
            tally.errors.append(f'{label} "{item.title}": {", ".join(outcome.errors)}')
            tally.items_failed += 1

        return valid

    def _sync_movie_batches(
        self,
        movies: Sequence[PlexMovie],
        batch_size: int,
        tally: _Tally,
        cancel: Optional[threading.Event],
    ) -> None:
        batches = chunk(movies, batch_size)
        total = len(batches)

        for index, batch in enumerate(batches, start=1):
            if self._cancel_requested(cancel, tally):
                return
            if index > 1 and self._batch_delay:
                self._sleep(self._batch_delay)

            try:
                outcome = self._trakt.sync_watched_movies(self._mapper.to_sync_movies(batch))
            except (NetError, ProviderError) as exc:
                log.warning("sync_movie_batch_failed", extra={"batch": index, "of": total, "error": str(exc)})
                tally.errors.append(f"Failed to sync movie batch: {exc}")
                tally.items_failed += len(batch)
                continue

            tally.items_processed += len(batch)
            tally.items_added += outcome.added.movies
            log.info(
                "sync_movie_batch",
                extra={
                    "batch": index,
                    "of": total,
                    "size": len(batch),
                    "added": outcome.added.movies,
                    "existing": outcome.existing.movies,
                },
            )
            for missing in outcome.not_found.movies:
                tally.errors.append(f"Movie not found on Trakt: {missing.get('title')} ({missing.get('year')})")
                tally.items_failed += 1

    def _sync_episodes(self, episodes: Sequence[PlexEpisode], tally: _Tally) -> None:
        shows = self._mapper.to_sync_shows(episodes)
        per_show: dict = {}
        for show in shows:
            key = _ids_key(show.ids)
            per_show[key] = per_show.get(key, 0) + _episode_count(show)
        sent = sum(per_show.values())
        dropped = len(episodes) - sent
        if dropped:
            tally.errors.append(f"{dropped} episode(s) had no show to sync under")
            tally.items_failed += dropped

        try:
            outcome = self._trakt.sync_watched_shows(shows)
        except (NetError, ProviderError) as exc:
            log.warning("sync_episodes_failed", extra={"count": sent, "error": str(exc)})
            tally.errors.append(f"Failed to sync episodes: {exc}")
            tally.items_failed += sent
            return

        tally.items_processed += sent
        tally.items_added += outcome.added.episodes
        log.info(
            "sync_episodes",
            extra={
                "size": sent,
                "added": outcome.added.episodes,
                "existing": outcome.existing.episodes,
            },
        )
        for missing in outcome.not_found.shows:
            tally.errors.append(f"Show not found on Trakt: {missing.get('title')} ({missing.get('year')})")
            tally.items_failed += per_show.get(_ids_key(missing.get("ids")), 1)
        for missing in outcome.not_found.seasons:
            tally.errors.append(f"Season not found on Trakt: {missing.get('number')}")
            tally.items_failed += len(missing.get("episodes") or ()) or 1
        for missing in outcome.not_found.episodes:
            tally.errors.append(f"Episode not found on Trakt: {missing.get('title')}")
            tally.items_failed += 1

    def _filter_since(self, items: Sequence[T], since: Optional[datetime]) -> List[T]:
        if since is None:
            return list(items)

        cutoff = since.timestamp()
        kept: List[T] = []
        for item in items:
            stamp = getattr(item, "last_viewed_at", None) or getattr(item, "updated_at", None)
            # Without a timestamp there is no way to tell the item is old.
            if stamp is None or stamp > cutoff:
                kept.append(item)

        return kept

    def _cancel_requested(self, cancel: Optional[threading.Event], tally: _Tally) -> bool:
        if tally.cancelled:
            return True
        if cancel is not None and cancel.is_set():
            log.warning("sync_cancelled", extra={"sync_id": self._sync_id})
            tally.errors.append(CANCELLED_MESSAGE)
            tally.cancelled = True
            return True

        return False

    # ------------------------------------------------------------------
    # Trakt -> source (comparison only)
    # ------------------------------------------------------------------
    def _sync_trakt_to_source(self, options: SyncOptions) -> _Tally:
        tally = _Tally()
        try:
            movies = self._trakt.get_watched_movies()
            shows = self._trakt.get_watched_shows()
            log.info("sync_remote_watched", extra={"movies": len(movies), "shows": len(shows)})
            tally.items_processed = len(movies) + len(shows)

            if not options.dry_run:
                tally.errors.append(TRAKT_TO_PLEX_NOTICE)
        except Exception as exc:
            log.exception("sync_trakt_to_source_failed")
            tally.errors.append(f"Trakt to Plex sync failed: {exc}")

        return tally


def _ids_key(ids: Any) -> frozenset:
    if not isinstance(ids, Mapping):
        return frozenset()
    return frozenset((str(k), str(v)) for k, v in ids.items())


def _episode_count(show: SyncShowItem) -> int:
    return sum(len(season.episodes) for season in show.seasons)


__all__ = [
    "CANCELLED_MESSAGE",
    "SourceCollector",
    "SyncEngine",
    "SyncState",
    "TRAKT_TO_PLEX_NOTICE",
    "chunk",
]
