"""
Adaptive batch processing of event clusters into stored albums.

Clusters are processed in consecutive batches. Each batch is classified,
scored, titled and persisted in one store transaction. The batch size starts
from the device memory tier and halves on every memory pressure signal.
"""

import random
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from smart_albums.classification import ClassificationAggregator, GENERIC_LABELS
from smart_albums.clustering import Cluster
from smart_albums.database import AlbumStore
from smart_albums.image_cache import ImageCacheRegistry
from smart_albums.memory import MemoryMonitor, batch_size_for_memory
from smart_albums.models import ClassificationResult, EventKind, GenerationEvent, SmartAlbum
from smart_albums.scoring import calculate_relevance_score, select_best_thumbnail
from smart_albums.titles import title_for_cluster
from smart_albums.error_handling import AlbumStoreError, handle_error, logger

DEFAULT_PAUSE_SECONDS = 2.0
PAUSE_POLL_SECONDS = 0.1


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a running job."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class RunOutcome:
    state: SchedulerState
    albums_saved: int = 0
    processed_clusters: int = 0
    total_clusters: int = 0
    failed_batches: int = 0
    fallback_clusters: int = 0
    already_running: bool = False
    error: Optional[str] = None


def title_tags(tags: List[ClassificationResult]) -> List[str]:
    """Tag labels worth putting in a title, without generic ones."""
    return [tag.label for tag in tags if tag.label.lower() not in GENERIC_LABELS]


def build_album(cluster: Cluster, tags: List[ClassificationResult],
                location: Optional[str] = None,
                rng: Optional[random.Random] = None,
                now: Optional[datetime] = None) -> SmartAlbum:
    """Turn a classified cluster into a validated SmartAlbum."""
    assets = [item.asset for item in cluster]
    thumbnail = select_best_thumbnail(assets)

    album = SmartAlbum(
        title=title_for_cluster(cluster, title_tags(tags), location, rng),
        created_at=now or datetime.now(),
        relevance_score=calculate_relevance_score(tags, len(cluster)),
        tags=[tag.label for tag in tags],
        asset_ids=[asset.id for asset in assets],
        thumbnail_asset_id=thumbnail.id if thumbnail else "",
    )
    return album.validate()


class BatchScheduler:
    """
    Runs album generation over clusters, one run at a time.

    Args:
        store: Album persistence
        aggregator: Cluster classification
        batch_size: Initial batch size; derived from device memory when None
        pause_seconds: How long the queue pauses after a memory pressure signal
        image_caches: Caches cleared on memory pressure
        rng: Random source for titles
        clock: Time source for album creation times
    """

    def __init__(self, store: AlbumStore, aggregator: ClassificationAggregator,
                 batch_size: Optional[int] = None,
                 pause_seconds: float = DEFAULT_PAUSE_SECONDS,
                 image_caches: Optional[ImageCacheRegistry] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.aggregator = aggregator
        self.initial_batch_size = batch_size or batch_size_for_memory()
        self.batch_size = self.initial_batch_size
        self.pause_seconds = pause_seconds
        self.image_caches = image_caches
        self.rng = rng or random.Random()
        self.clock = clock

        self._lock = threading.Lock()
        self._state = SchedulerState.IDLE
        self._progress = 0.0
        self._resume = threading.Event()
        self._resume.set()
        self._resume_timer: Optional[threading.Timer] = None

    @property
    def state(self) -> SchedulerState:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state == SchedulerState.RUNNING

    @property
    def progress(self) -> float:
        with self._lock:
            return self._progress

    @property
    def is_paused(self) -> bool:
        return not self._resume.is_set()

    def attach(self, monitor: MemoryMonitor):
        monitor.add_pressure_listener(self.handle_memory_pressure)

    def handle_memory_pressure(self, reason: str = "warning"):
        """Halve the batch size, pause the queue briefly and drop image caches."""
        with self._lock:
            old_size = self.batch_size
            self.batch_size = max(1, self.batch_size // 2)
            if self._resume_timer is not None:
                self._resume_timer.cancel()
            self._resume.clear()
            self._resume_timer = threading.Timer(self.pause_seconds, self._resume.set)
            self._resume_timer.daemon = True
            self._resume_timer.start()

        logger.warning(f"Memory pressure ({reason}): batch size {old_size} -> {self.batch_size}, "
                       f"pausing for {self.pause_seconds}s")
        if self.image_caches is not None:
            self.image_caches.handle_memory_warning()

    def _wait_if_paused(self, token: CancellationToken):
        while not self._resume.wait(PAUSE_POLL_SECONDS):
            if token.is_cancelled:
                return

    def _set_progress(self, processed: int, total: int):
        value = processed / total if total else 1.0
        with self._lock:
            # Progress never moves backwards within a run
            self._progress = max(self._progress, value)
            return self._progress

    def _location_for(self, cluster: Cluster) -> Optional[str]:
        tagger = self.aggregator.heuristic_tagger
        if tagger.geocoder is None:
            return None
        located = next((item for item in cluster if item.coordinate is not None), None)
        if located is None:
            return None
        placemark = tagger.reverse_geocode(located.coordinate)
        return placemark.best_name() if placemark else None

    def start(self, clusters: List[Cluster],
              token: Optional[CancellationToken] = None,
              on_event: Optional[Callable[[GenerationEvent], None]] = None,
              on_complete: Optional[Callable[[RunOutcome], None]] = None,
              limit: int = 0,
              use_fallback: bool = False,
              replace_existing: bool = False) -> RunOutcome:
        """
        Process clusters into albums on the calling thread.

        Args:
            clusters: Valid clusters in chronological order
            token: Cancellation token checked between batches and clusters
            on_event: Receives GenerationEvents as the run progresses
            on_complete: Called once with the final outcome
            limit: Stop after this many albums (0 means no limit)
            use_fallback: Skip the classifier and tag with heuristics only
            replace_existing: The first saved batch replaces every stored album
                in the same transaction; stored albums survive until then

        Returns:
            RunOutcome: Final state and counters. If another run is active the
            outcome has already_running set and nothing is processed.
        """
        with self._lock:
            if self._state == SchedulerState.RUNNING:
                outcome = RunOutcome(SchedulerState.RUNNING, already_running=True)
                already_running = True
            else:
                already_running = False
                self._state = SchedulerState.RUNNING
                self._progress = 0.0
                self.batch_size = self.initial_batch_size

        if already_running:
            logger.info("Album generation already running, ignoring start request")
            if on_complete:
                on_complete(outcome)
            return outcome

        token = token or CancellationToken()
        emit = on_event or (lambda event: None)
        total = len(clusters)
        outcome = RunOutcome(SchedulerState.RUNNING, total_clusters=total)

        emit(GenerationEvent(EventKind.STARTED, total=total))
        logger.info(f"Starting album generation for {total} clusters, batch size {self.batch_size}")

        try:
            index = 0
            while index < total and not token.is_cancelled:
                if limit and outcome.albums_saved >= limit:
                    break

                self._wait_if_paused(token)
                if token.is_cancelled:
                    break

                batch = clusters[index:index + self.batch_size]
                index += len(batch)
                albums = []

                for cluster in batch:
                    if token.is_cancelled:
                        break
                    if limit and outcome.albums_saved + len(albums) >= limit:
                        break

                    result = self.aggregator.classify_cluster(cluster, use_fallback=use_fallback)
                    if result.used_fallback:
                        outcome.fallback_clusters += 1
                    albums.append(build_album(cluster, result.tags, self._location_for(cluster),
                                              self.rng, self.clock()))

                    outcome.processed_clusters += 1
                    progress = self._set_progress(outcome.processed_clusters, total)
                    emit(GenerationEvent(EventKind.PROGRESS, progress, outcome.processed_clusters,
                                         total, outcome.albums_saved))

                if albums:
                    try:
                        if replace_existing:
                            self.store.replace_all(albums)
                            replace_existing = False
                        else:
                            self.store.append_batch(albums)
                        outcome.albums_saved += len(albums)
                        emit(GenerationEvent(EventKind.BATCH_SAVED, self.progress,
                                             outcome.processed_clusters, total, outcome.albums_saved))
                    except AlbumStoreError as e:
                        outcome.failed_batches += 1
                        handle_error(e, f"saving batch of {len(albums)} albums", raise_error=False)

            if token.is_cancelled:
                outcome.state = SchedulerState.CANCELLED
                kind = EventKind.CANCELLED
            else:
                # A finished run that produced no albums still replaces the old ones
                if replace_existing and not outcome.failed_batches:
                    self.store.replace_all([])
                outcome.state = SchedulerState.COMPLETED
                kind = EventKind.COMPLETED
                self._set_progress(total, total)
            emit(GenerationEvent(kind, self.progress, outcome.processed_clusters, total,
                                 outcome.albums_saved))

        except Exception as e:
            outcome.state = SchedulerState.FAILED
            outcome.error = str(e)
            handle_error(e, "album generation", raise_error=False)
            emit(GenerationEvent(EventKind.FAILED, self.progress, outcome.processed_clusters,
                                 total, outcome.albums_saved, str(e)))

        with self._lock:
            self._state = outcome.state

        logger.info(f"Album generation {outcome.state.value}: {outcome.albums_saved} albums saved, "
                    f"{outcome.processed_clusters}/{total} clusters processed")
        if on_complete:
            on_complete(outcome)
        return outcome
