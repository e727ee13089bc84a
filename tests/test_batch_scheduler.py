"""
Tests for the batch scheduler.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import random
import threading
from datetime import datetime, timedelta

import pytest

from smart_albums.batch_scheduler import (
    BatchScheduler,
    CancellationToken,
    SchedulerState,
    build_album,
)
from smart_albums.classification import ClassificationAggregator, Classifier
from smart_albums.database import AlbumStore
from smart_albums.memory import MemoryMonitor, batch_size_for_memory, GB
from smart_albums.metadata import extract_asset_metadata
from smart_albums.models import ClassificationResult, EventKind, MediaAsset
from smart_albums.error_handling import AlbumStoreError

START = datetime(2025, 6, 1, 9, 0)


def make_clusters(count):
    clusters = []
    for c in range(count):
        base = START + timedelta(days=c)
        clusters.append([
            extract_asset_metadata(MediaAsset(id=f"c{c}_{i}", capture_timestamp=base + timedelta(minutes=20 * i)))
            for i in range(3)
        ])
    return clusters


class StaticClassifier(Classifier):
    def __init__(self, hook=None):
        self.hook = hook

    def classify(self, asset):
        if self.hook:
            self.hook(asset)
        return [ClassificationResult("Hiking", 0.8)]


class RecordingStore(AlbumStore):
    """AlbumStore that records batch sizes and can fail chosen batches."""

    def __init__(self, db_path, fail_batches=()):
        super().__init__(db_path)
        self.batch_sizes = []
        self.replaced = []
        self.fail_batches = set(fail_batches)

    def _record(self, albums):
        index = len(self.batch_sizes)
        self.batch_sizes.append(len(albums))
        if index in self.fail_batches:
            raise AlbumStoreError("disk full")
        return index

    def append_batch(self, albums):
        self._record(albums)
        return super().append_batch(albums)

    def replace_all(self, albums):
        index = self._record(albums)
        count = super().replace_all(albums)
        self.replaced.append(index)
        return count


class CountingCaches:
    def __init__(self):
        self.clears = 0

    def handle_memory_warning(self):
        self.clears += 1


@pytest.fixture
def store(tmp_path):
    return RecordingStore(str(tmp_path / "albums.db"))


@pytest.fixture
def make_scheduler(store):
    aggregators = []

    def factory(classifier=None, **kwargs):
        aggregator = ClassificationAggregator(classifier or StaticClassifier())
        aggregators.append(aggregator)
        kwargs.setdefault("batch_size", 4)
        kwargs.setdefault("pause_seconds", 0.05)
        kwargs.setdefault("rng", random.Random(0))
        return BatchScheduler(kwargs.pop("store", store), aggregator, **kwargs)

    yield factory
    for aggregator in aggregators:
        aggregator.close()


class TestMemoryTiers:
    """Test initial batch sizes."""

    def test_batch_size_tiers(self):
        """Batch size follows the device memory tier."""
        assert batch_size_for_memory(1 * GB) == 200
        assert batch_size_for_memory(2 * GB) == 200
        assert batch_size_for_memory(3 * GB) == 500
        assert batch_size_for_memory(4 * GB) == 500
        assert batch_size_for_memory(16 * GB) == 1000


class TestBuildAlbum:
    """Test album construction from a cluster."""

    def test_build_album(self):
        """Albums carry the cluster assets, tags and a bounded score."""
        cluster = make_clusters(1)[0]
        album = build_album(cluster, [ClassificationResult("Wedding", 0.9)], rng=random.Random(1), now=START)
        assert album.asset_ids == ["c0_0", "c0_1", "c0_2"]
        assert album.tags == ["Wedding"]
        assert album.title
        assert 0 <= album.relevance_score <= 100
        assert album.thumbnail_asset_id == "c0_0"


class TestBatchScheduler:
    """Test batch processing runs."""

    def test_processes_all_clusters_in_batches(self, make_scheduler, store):
        """Clusters are saved in consecutive batches."""
        scheduler = make_scheduler()
        outcome = scheduler.start(make_clusters(10))

        assert outcome.state == SchedulerState.COMPLETED
        assert outcome.albums_saved == 10
        assert store.batch_sizes == [4, 4, 2]
        assert scheduler.progress == 1.0
        assert store.count_albums() == 10

    def test_memory_pressure_halves_batch_and_clears_caches_once(self, make_scheduler, store):
        """A pressure signal mid-run halves the next batch and clears caches once."""
        caches = CountingCaches()
        monitor = MemoryMonitor()
        fired = []

        def hook(asset):
            if asset.id == "c1_0" and not fired:
                fired.append(asset.id)
                monitor.signal_memory_warning()

        scheduler = make_scheduler(StaticClassifier(hook), image_caches=caches)
        scheduler.attach(monitor)

        outcome = scheduler.start(make_clusters(8))

        assert outcome.state == SchedulerState.COMPLETED
        assert store.batch_sizes == [4, 2, 2]
        assert caches.clears == 1
        assert scheduler.batch_size == 2

    def test_each_signal_halves_again(self, make_scheduler):
        """Repeated signals keep halving down to one."""
        scheduler = make_scheduler(batch_size=4)
        for _ in range(4):
            scheduler.handle_memory_pressure("test")
        assert scheduler.batch_size == 1
        assert scheduler.is_paused

    def test_progress_is_monotonic(self, make_scheduler):
        """Published progress never decreases and ends at 1."""
        events = []
        scheduler = make_scheduler()
        scheduler.start(make_clusters(9), on_event=events.append)

        progress = [event.progress for event in events if event.kind == EventKind.PROGRESS]
        assert progress == sorted(progress)
        assert progress[-1] == 1.0
        assert events[0].kind == EventKind.STARTED
        assert events[-1].kind == EventKind.COMPLETED

    def test_cancellation_keeps_saved_batches(self, make_scheduler, store):
        """Cancelling mid-run stops processing and keeps earlier batches."""
        token = CancellationToken()

        def on_event(event):
            if event.kind == EventKind.BATCH_SAVED:
                token.cancel()

        scheduler = make_scheduler()
        outcome = scheduler.start(make_clusters(12), token=token, on_event=on_event)

        assert outcome.state == SchedulerState.CANCELLED
        assert outcome.albums_saved == 4
        assert store.count_albums() == 4
        assert scheduler.state == SchedulerState.CANCELLED

    def test_failed_batch_is_skipped(self, make_scheduler, tmp_path):
        """A batch that fails to save is logged and the run continues."""
        failing = RecordingStore(str(tmp_path / "failing.db"), fail_batches={0})
        scheduler = make_scheduler(store=failing)

        outcome = scheduler.start(make_clusters(6))

        assert outcome.state == SchedulerState.COMPLETED
        assert outcome.failed_batches == 1
        assert outcome.albums_saved == 2
        assert failing.count_albums() == 2

    def test_limit_caps_album_count(self, make_scheduler, store):
        """limit stops the run once enough albums are produced."""
        outcome = make_scheduler().start(make_clusters(10), limit=5)
        assert outcome.albums_saved == 5
        assert store.count_albums() == 5

    def test_single_flight(self, make_scheduler):
        """A second start while running returns at once as already running."""
        entered = threading.Event()
        release = threading.Event()

        def hook(asset):
            entered.set()
            release.wait(5)

        scheduler = make_scheduler(StaticClassifier(hook))
        worker = threading.Thread(target=scheduler.start, args=(make_clusters(2),))
        worker.start()
        assert entered.wait(5)

        completions = []
        outcome = scheduler.start(make_clusters(2), on_complete=completions.append)

        release.set()
        worker.join(5)

        assert outcome.already_running
        assert completions == [outcome]
        assert scheduler.state == SchedulerState.COMPLETED

    def test_unexpected_error_fails_run(self, make_scheduler):
        """Unexpected exceptions end the run in the failed state."""
        scheduler = make_scheduler()

        def explode(cluster, use_fallback=False):
            raise RuntimeError("unexpected")

        scheduler.aggregator.classify_cluster = explode
        events = []
        outcome = scheduler.start(make_clusters(3), on_event=events.append)

        assert outcome.state == SchedulerState.FAILED
        assert outcome.error == "unexpected"
        assert events[-1].kind == EventKind.FAILED

    def test_empty_run_completes(self, make_scheduler):
        """No clusters completes immediately with full progress."""
        scheduler = make_scheduler()
        outcome = scheduler.start([])
        assert outcome.state == SchedulerState.COMPLETED
        assert scheduler.progress == 1.0


class TestReplaceExisting:
    """Test replacing stored albums during a run."""

    def seed_old_album(self, store):
        AlbumStore(store.db_path).append_batch(
            [build_album(make_clusters(1)[0], [ClassificationResult("Old", 0.9)])])

    def test_first_batch_replaces_stored_albums(self, make_scheduler, store):
        """Old albums disappear in the first saved batch; later batches append."""
        self.seed_old_album(store)

        outcome = make_scheduler().start(make_clusters(6), replace_existing=True)

        assert outcome.albums_saved == 6
        assert store.count_albums() == 6
        assert store.batch_sizes == [4, 2]
        assert store.replaced == [0]
        assert "Old" not in {tag for album in store.get_all_albums() for tag in album.tags}

    def test_cancel_before_first_save_keeps_stored_albums(self, make_scheduler, store):
        """Nothing is deleted until a new batch is ready to take its place."""
        self.seed_old_album(store)
        token = CancellationToken()

        def on_event(event):
            if event.kind == EventKind.STARTED:
                token.cancel()

        outcome = make_scheduler().start(make_clusters(6), token=token, on_event=on_event,
                                         replace_existing=True)

        assert outcome.state == SchedulerState.CANCELLED
        assert store.count_albums() == 1
        assert store.replaced == []

    def test_failed_first_batch_defers_replacement(self, make_scheduler, tmp_path):
        """When the first batch fails the next saved batch does the replacing."""
        failing = RecordingStore(str(tmp_path / "failing.db"), fail_batches={0})
        self.seed_old_album(failing)

        outcome = make_scheduler(store=failing).start(make_clusters(6), replace_existing=True)

        assert outcome.failed_batches == 1
        assert outcome.albums_saved == 2
        assert failing.replaced == [1]
        assert failing.count_albums() == 2

    def test_every_batch_failing_keeps_stored_albums(self, make_scheduler, tmp_path):
        """Old albums survive a run where no batch could be saved."""
        failing = RecordingStore(str(tmp_path / "failing.db"), fail_batches={0, 1})
        self.seed_old_album(failing)

        outcome = make_scheduler(store=failing).start(make_clusters(6), replace_existing=True)

        assert outcome.failed_batches == 2
        assert failing.count_albums() == 1

    def test_empty_completed_run_clears_store(self, make_scheduler, store):
        """A finished replacing run with no clusters leaves the store empty."""
        self.seed_old_album(store)
        make_scheduler().start([], replace_existing=True)
        assert store.count_albums() == 0
