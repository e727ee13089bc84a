"""
SmartAlbumService: the entry point presentation code talks to.

It wires the library, store, classifier and caches together, runs generation
on a background worker thread and publishes GenerationEvents to subscribers.
"""

import random
import threading
import time
from datetime import datetime
from typing import Callable, List, Optional

from smart_albums.app_insights import AppInsights
from smart_albums.batch_scheduler import (
    BatchScheduler, CancellationToken, RunOutcome, SchedulerState, build_album,
)
from smart_albums.cache_validity import CacheValidityTracker
from smart_albums.classification import ClassificationAggregator, Classifier
from smart_albums.clustering import cluster_into_events, collect_utility_assets
from smart_albums.config import PipelineConfig
from smart_albums.database import AlbumStore
from smart_albums.heuristics import Geocoder, HeuristicTagger
from smart_albums.image_cache import ImageCacheRegistry
from smart_albums.library import AssetLibrary
from smart_albums.memory import MemoryMonitor
from smart_albums.metadata import extract_metadata
from smart_albums.models import (
    ClassificationResult, EventKind, GenerationEvent, MediaAsset, SmartAlbum, UtilityType,
)
from smart_albums.error_handling import SmartAlbumError, handle_error, logger

UTILITY_TITLES = {
    UtilityType.SCREENSHOT: "Screenshots",
    UtilityType.RECEIPT: "Receipts",
    UtilityType.DOCUMENT: "Documents",
    UtilityType.WHITEBOARD: "Whiteboards",
    UtilityType.QR_CODE: "QR codes",
}

EventListener = Callable[[GenerationEvent], None]


class SmartAlbumService:
    """
    Facade over album generation, storage and cache validity.

    Args:
        library: Asset library to generate albums from
        store: Album persistence
        classifier: External image classifier; heuristics are used when None
        geocoder: Optional reverse geocoder for location tags and titles
        config: Pipeline configuration
        image_caches: Image caches cleared on memory pressure
        monitor: Memory monitor whose signals reach the scheduler and caches
        telemetry: Application Insights client
    """

    def __init__(self, library: AssetLibrary, store: AlbumStore,
                 classifier: Optional[Classifier] = None,
                 geocoder: Optional[Geocoder] = None,
                 config: Optional[PipelineConfig] = None,
                 image_caches: Optional[ImageCacheRegistry] = None,
                 monitor: Optional[MemoryMonitor] = None,
                 telemetry: Optional[AppInsights] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 validate_cache_in_background: bool = True):
        self.config = config or PipelineConfig()
        self.library = library
        self.store = store
        self.clock = clock
        self.telemetry = telemetry or AppInsights()
        self.image_caches = image_caches

        self.aggregator = ClassificationAggregator(
            classifier,
            HeuristicTagger(geocoder, self.config.geocoding_timeout),
            max_workers=self.config.classification_workers,
            timeout=self.config.classification_timeout,
            max_samples=self.config.max_samples_per_cluster,
            max_tags=self.config.max_tags_per_album,
        )
        self.scheduler = BatchScheduler(
            store,
            self.aggregator,
            batch_size=self.config.batch_size_override,
            pause_seconds=self.config.pressure_pause_seconds,
            image_caches=image_caches,
            rng=rng,
            clock=clock,
        )
        self.cache_tracker = CacheValidityTracker(
            store, library,
            ttl=self.config.cache_ttl,
            clock=clock,
            validate_in_background=validate_cache_in_background,
        )

        if monitor is not None:
            self.scheduler.attach(monitor)
            if image_caches is not None:
                image_caches.attach(monitor, pressure=False)

        self._lock = threading.Lock()
        self._listeners: List[EventListener] = []
        self._worker: Optional[threading.Thread] = None
        self._token: Optional[CancellationToken] = None
        self._last_outcome: Optional[RunOutcome] = None
        self._prune_needed = True
        self.library.add_change_listener(self._on_library_changed)

    def close(self):
        self.cancel()
        self.wait()
        self.library.remove_change_listener(self._on_library_changed)
        self.cache_tracker.close()
        self.aggregator.close()

    # Event channel
    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def _publish(self, event: GenerationEvent):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Generation event listener failed: {e}", exc_info=True)

    # Read-only state
    @property
    def is_generating(self) -> bool:
        with self._lock:
            worker = self._worker
        return (worker is not None and worker.is_alive()) or self.scheduler.is_running

    @property
    def progress(self) -> float:
        return self.scheduler.progress

    @property
    def state(self) -> SchedulerState:
        return self.scheduler.state

    @property
    def last_outcome(self) -> Optional[RunOutcome]:
        return self._last_outcome

    def _on_library_changed(self):
        self._prune_needed = True

    def _prune_if_needed(self):
        if not self._prune_needed or self.is_generating:
            return
        self._prune_needed = False
        removed = self.store.prune_missing_assets(self.library.asset_ids())
        if removed:
            logger.info(f"Removed {removed} albums whose assets are gone")

    @property
    def all_albums(self) -> List[SmartAlbum]:
        self._prune_if_needed()
        return self.store.get_all_albums()

    @property
    def featured_albums(self) -> List[SmartAlbum]:
        self._prune_if_needed()
        return self.store.get_featured_albums(now=self.clock())

    def load_albums(self) -> List[SmartAlbum]:
        """Stored albums, best first. Check needs_regeneration to decide whether to refresh."""
        self.cache_tracker.wait_until_ready()
        self._prune_if_needed()
        return self.store.get_all_albums(sort_by="relevance_score")

    @property
    def needs_regeneration(self) -> bool:
        self.cache_tracker.wait_until_ready()
        return not self.cache_tracker.should_use_cached_albums()

    # Commands
    def delete(self, album_id: str) -> bool:
        deleted = self.store.delete_album(album_id)
        if deleted:
            logger.info(f"Deleted album {album_id}")
        return deleted

    def cancel(self):
        with self._lock:
            token = self._token
        if token is not None:
            token.cancel()

    def wait(self, timeout: Optional[float] = None) -> Optional[RunOutcome]:
        with self._lock:
            worker = self._worker
        if worker is not None:
            worker.join(timeout)
        return self._last_outcome

    def refresh(self, assets: Optional[List[MediaAsset]] = None,
                on_complete: Optional[Callable[[RunOutcome], None]] = None,
                wait: bool = False) -> Optional[RunOutcome]:
        """Discard cached state and regenerate every album."""
        self.cache_tracker.invalidate_cache()
        self.aggregator.clear_cache()
        return self._start(assets, 0, on_complete, wait, replace=True)

    def generate(self, assets: Optional[List[MediaAsset]] = None, limit: int = 0,
                 on_complete: Optional[Callable[[RunOutcome], None]] = None,
                 wait: bool = False) -> Optional[RunOutcome]:
        """
        Generate albums on a background worker.

        Args:
            assets: Assets to process; the whole library when None
            limit: Maximum albums to produce (0 means no limit)
            on_complete: Called with the RunOutcome when the run ends
            wait: Block until the run ends and return its outcome

        Returns:
            The outcome when wait is set or a run was already active, else None
        """
        return self._start(assets, limit, on_complete, wait, replace=assets is None and not limit)

    def _start(self, assets: Optional[List[MediaAsset]], limit: int,
               on_complete: Optional[Callable[[RunOutcome], None]],
               wait: bool, replace: bool) -> Optional[RunOutcome]:
        with self._lock:
            busy = self._worker is not None and self._worker.is_alive()
            if not busy:
                self._token = CancellationToken()
                self._worker = threading.Thread(
                    target=self._run, args=(assets, limit, on_complete, self._token, replace),
                    name="album-generation", daemon=True)
                worker = self._worker

        if busy:
            logger.info("Album generation already running")
            outcome = RunOutcome(SchedulerState.RUNNING, already_running=True)
            if on_complete:
                on_complete(outcome)
            return outcome

        worker.start()
        if wait:
            worker.join()
            return self._last_outcome
        return None

    def _cluster(self, assets: List[MediaAsset]):
        metadata = extract_metadata(assets, chunk_size=self.config.extraction_chunk_size)
        return cluster_into_events(
            metadata,
            max_time_window=self.config.max_time_window,
            max_distance=self.config.max_distance_meters,
            min_size=self.config.min_cluster_size,
            min_duration=self.config.min_cluster_duration,
        )

    def _run(self, assets: Optional[List[MediaAsset]], limit: int,
             on_complete: Optional[Callable[[RunOutcome], None]],
             token: CancellationToken, replace: bool = False):
        started = time.monotonic()
        full_run = assets is None and not limit

        try:
            if assets is None:
                assets = self.library.fetch_assets()
            clusters = self._cluster(assets)

            use_fallback = not self.aggregator.is_classifier_available()
            if use_fallback:
                logger.info("Classifier unavailable, tagging every cluster with heuristics")

            if replace:
                self.cache_tracker.invalidate_cache()
        except Exception as e:
            handle_error(e, "preparing album generation", raise_error=False)
            self.telemetry.track_exception(e)
            outcome = RunOutcome(SchedulerState.FAILED, error=str(e))
            self._last_outcome = outcome
            self._publish(GenerationEvent(EventKind.FAILED, message=str(e)))
            if on_complete:
                on_complete(outcome)
            return

        batches_saved = 0

        def on_event(event: GenerationEvent):
            nonlocal batches_saved
            if event.kind == EventKind.BATCH_SAVED:
                batches_saved += 1
            self._publish(event)

        outcome = self.scheduler.start(clusters, token=token, on_event=on_event,
                                       limit=limit, use_fallback=use_fallback,
                                       replace_existing=replace)
        self._last_outcome = outcome

        if outcome.state == SchedulerState.COMPLETED and full_run and not outcome.failed_batches:
            self.cache_tracker.mark_cache_updated(self.store.count_albums())
        self._prune_needed = True

        if outcome.state == SchedulerState.FAILED:
            self.telemetry.track_exception(SmartAlbumError(outcome.error or "album generation failed"))

        self.telemetry.track_assets_processed(len(assets))
        self.telemetry.track_albums_created(outcome.albums_saved)
        self.telemetry.track_batches_saved(batches_saved)
        self.telemetry.track_fallback_classifications(outcome.fallback_clusters)
        self.telemetry.track_processing_time(time.monotonic() - started)
        self.telemetry.track_event("album_generation_finished", {
            "state": outcome.state.value,
            "clusters": outcome.total_clusters,
            "failed_batches": outcome.failed_batches,
        })

        if on_complete:
            on_complete(outcome)

    def utility_album(self, utility_type: UtilityType = UtilityType.SCREENSHOT) -> Optional[SmartAlbum]:
        """An unsaved album gathering every utility asset of one type, newest first."""
        metadata = extract_metadata(self.library.fetch_assets(),
                                    chunk_size=self.config.extraction_chunk_size)
        cluster = collect_utility_assets(metadata, utility_type)
        if not cluster:
            return None

        title = UTILITY_TITLES.get(utility_type, utility_type.value.title())
        album = build_album(cluster, [ClassificationResult(title, 1.0)], now=self.clock())
        album.title = title
        return album
