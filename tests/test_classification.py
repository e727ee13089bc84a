"""
Tests for classification aggregation.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import itertools
import threading
from datetime import datetime, timedelta

import pytest

from smart_albums.models import ClassificationResult, MediaAsset
from smart_albums.metadata import extract_asset_metadata
from smart_albums.classification import (
    Classifier,
    ClassificationAggregator,
    combine_classification_results,
    filter_generic_labels,
    is_failed_result,
    select_sample_assets,
)

SENTINEL = [ClassificationResult("Photo", 0.5), ClassificationResult("Image", 0.5)]


def make_cluster(count, start=datetime(2025, 7, 12, 15, 0)):
    return [extract_asset_metadata(MediaAsset(id=f"a{i}", capture_timestamp=start + timedelta(minutes=10 * i)))
            for i in range(count)]


class FakeClassifier(Classifier):
    def __init__(self, responses=None, default=None, available=True):
        self.responses = responses or {}
        self.default = default if default is not None else []
        self.available = available
        self.calls = []
        self._lock = threading.Lock()

    def classify(self, asset):
        with self._lock:
            self.calls.append(asset.id)
        response = self.responses.get(asset.id, self.default)
        if isinstance(response, Exception):
            raise response
        return list(response)

    def is_available(self):
        return self.available


@pytest.fixture
def aggregator_factory():
    created = []

    def factory(classifier, **kwargs):
        aggregator = ClassificationAggregator(classifier, **kwargs)
        created.append(aggregator)
        return aggregator

    yield factory
    for aggregator in created:
        aggregator.close()


class TestSampling:
    """Test representative sample selection."""

    def test_first_middle_last(self):
        """Large clusters sample first, middle and last."""
        cluster = make_cluster(9)
        assert [item.asset.id for item in select_sample_assets(cluster)] == ["a0", "a4", "a8"]

    def test_small_cluster_uses_all(self):
        """Clusters of three or fewer are sampled entirely."""
        cluster = make_cluster(3)
        assert select_sample_assets(cluster) == cluster


class TestResultHelpers:
    """Test failure detection, combining and filtering."""

    def test_failed_results(self):
        """Empty output and the sentinel pair count as failures."""
        assert is_failed_result([])
        assert is_failed_result(None)
        assert is_failed_result(SENTINEL)
        assert not is_failed_result([ClassificationResult("Beach", 0.9)])
        assert not is_failed_result(SENTINEL + [ClassificationResult("Beach", 0.9)])

    def test_combine_sums_confidence(self):
        """Confidences for the same label are summed and sorted descending."""
        combined = combine_classification_results([
            ClassificationResult("Beach", 0.5),
            ClassificationResult("Sunset", 0.7),
            ClassificationResult("Beach", 0.4),
        ])
        assert [tag.label for tag in combined] == ["Beach", "Sunset"]
        assert combined[0].confidence == pytest.approx(0.9)

    def test_combine_is_order_independent(self):
        """Permuting sample results yields the same top labels."""
        samples = [
            [ClassificationResult("Beach", 0.6), ClassificationResult("Sea", 0.3)],
            [ClassificationResult("Sunset", 0.6), ClassificationResult("Beach", 0.2)],
            [ClassificationResult("Sea", 0.5), ClassificationResult("Sand", 0.3), ClassificationResult("Sky", 0.3)],
        ]
        outcomes = set()
        for permutation in itertools.permutations(samples):
            flat = [result for sample in permutation for result in sample]
            top = filter_generic_labels(combine_classification_results(flat))
            outcomes.add(frozenset(tag.label for tag in top))
        assert len(outcomes) == 1

    def test_filter_generic_labels(self):
        """Generic labels are dropped and at most five tags are kept."""
        combined = [ClassificationResult(label, 1.0 - i * 0.1) for i, label in
                    enumerate(["Photos", "Beach", "Image", "Sea", "Sand", "Sky", "Sun", "Palm"])]
        filtered = filter_generic_labels(combined)
        assert [tag.label for tag in filtered] == ["Beach", "Sea", "Sand", "Sky", "Sun"]

    def test_filter_keeps_unfiltered_top_three_when_all_generic(self):
        """If everything is generic, the top three unfiltered tags survive."""
        combined = [ClassificationResult(label, 1.0 - i * 0.1) for i, label in
                    enumerate(["Photo", "Picture", "Snapshot", "Collection"])]
        filtered = filter_generic_labels(combined)
        assert [tag.label for tag in filtered] == ["Photo", "Picture", "Snapshot"]


class TestClassificationAggregator:
    """Test cluster classification with fallbacks."""

    def test_combines_sampled_results(self, aggregator_factory):
        """Tags come from the combined classifier output."""
        classifier = FakeClassifier(default=[ClassificationResult("Beach", 0.8),
                                             ClassificationResult("Photo", 0.9)])
        aggregator = aggregator_factory(classifier)

        result = aggregator.classify_cluster(make_cluster(10))

        assert not result.used_fallback
        assert [tag.label for tag in result.tags] == ["Beach"]
        assert sorted(classifier.calls) == ["a0", "a5", "a9"]

    def test_all_sentinel_falls_back_to_heuristics(self, aggregator_factory):
        """Sentinel output for every sample produces non-empty heuristic tags."""
        aggregator = aggregator_factory(FakeClassifier(default=SENTINEL))

        result = aggregator.classify_cluster(make_cluster(6))

        assert result.used_fallback
        assert result.failed_samples == 3
        assert result.tags
        assert "July 2025" in [tag.label for tag in result.tags]

    def test_partial_failure_uses_remaining_samples(self, aggregator_factory):
        """A raising classifier call counts as one failed sample."""
        classifier = FakeClassifier(
            responses={"a0": RuntimeError("boom"), "a2": SENTINEL},
            default=[ClassificationResult("Party", 0.7)],
        )
        aggregator = aggregator_factory(classifier)

        result = aggregator.classify_cluster(make_cluster(5))

        assert not result.used_fallback
        assert result.failed_samples == 2
        assert [tag.label for tag in result.tags] == ["Party"]

    def test_malformed_results_count_as_failures(self, aggregator_factory):
        """Results that are not ClassificationResults are treated as failed calls."""
        classifier = FakeClassifier(default=[("Party", 0.7)])
        aggregator = aggregator_factory(classifier)

        result = aggregator.classify_cluster(make_cluster(3))

        assert result.used_fallback
        assert result.failed_samples == 3

    def test_timeout_counts_as_failure(self, aggregator_factory):
        """A hung call is abandoned after the configured timeout."""
        release = threading.Event()

        class SlowClassifier(FakeClassifier):
            def classify(self, asset):
                release.wait(5)
                return [ClassificationResult("Late", 0.9)]

        aggregator = aggregator_factory(SlowClassifier(), timeout=0.1)
        try:
            result = aggregator.classify_cluster(make_cluster(3))
        finally:
            release.set()

        assert result.used_fallback

    def test_results_are_cached_per_asset(self, aggregator_factory):
        """Successful results are reused until the cache is cleared."""
        classifier = FakeClassifier(default=[ClassificationResult("Hike", 0.8)])
        aggregator = aggregator_factory(classifier)
        cluster = make_cluster(3)

        aggregator.classify_cluster(cluster)
        aggregator.classify_cluster(cluster)
        assert len(classifier.calls) == 3

        aggregator.clear_cache()
        aggregator.classify_cluster(cluster)
        assert len(classifier.calls) == 6

    def test_failures_are_not_cached(self, aggregator_factory):
        """Sentinel results are retried on the next run."""
        classifier = FakeClassifier(default=SENTINEL)
        aggregator = aggregator_factory(classifier)
        cluster = make_cluster(3)

        aggregator.classify_cluster(cluster)
        aggregator.classify_cluster(cluster)
        assert len(classifier.calls) == 6

    def test_forced_fallback_skips_classifier(self, aggregator_factory):
        """use_fallback bypasses the classifier entirely."""
        classifier = FakeClassifier(default=[ClassificationResult("Hike", 0.8)])
        aggregator = aggregator_factory(classifier)

        result = aggregator.classify_cluster(make_cluster(4), use_fallback=True)

        assert result.used_fallback
        assert classifier.calls == []

    def test_availability_probe(self, aggregator_factory):
        """Unavailable or missing classifiers are reported as such."""
        assert not aggregator_factory(FakeClassifier(available=False)).is_classifier_available()
        assert not aggregator_factory(None).is_classifier_available()
        assert aggregator_factory(FakeClassifier()).is_classifier_available()
