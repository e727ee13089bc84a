"""
Classification aggregation for event clusters.

Up to three representative assets per cluster are classified concurrently and
their labels combined. When every sampled call fails, tags come from the
HeuristicTagger instead.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait, ALL_COMPLETED
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from smart_albums.models import AssetMetadata, ClassificationResult, MediaAsset
from smart_albums.heuristics import HeuristicTagger
from smart_albums.error_handling import ClassificationError

logger = logging.getLogger(__name__)

SENTINEL_LABELS = frozenset({"Photo", "Image"})
GENERIC_LABELS = frozenset({
    "photo", "photos", "image", "images", "picture", "pictures", "snapshot", "collection",
})
MAX_SAMPLES_PER_CLUSTER = 3
MAX_COMBINED_TAGS = 5
UNFILTERED_FALLBACK_TAGS = 3


class Classifier:
    """External image classifier contract."""

    def classify(self, asset: MediaAsset) -> List[ClassificationResult]:
        raise NotImplementedError

    def is_available(self) -> bool:
        return True


@dataclass
class ClusterClassification:
    """Outcome of classifying one cluster."""
    tags: List[ClassificationResult] = field(default_factory=list)
    used_fallback: bool = False
    failed_samples: int = 0
    sample_count: int = 0


def select_sample_assets(cluster: List[AssetMetadata],
                         max_samples: int = MAX_SAMPLES_PER_CLUSTER) -> List[AssetMetadata]:
    """First, middle and last members for temporal diversity."""
    if len(cluster) <= max_samples:
        return list(cluster)

    indices = [0, len(cluster) // 2, len(cluster) - 1][:max_samples]
    return [cluster[index] for index in indices]


def is_failed_result(results: Optional[List[ClassificationResult]]) -> bool:
    """Empty output or the classifier's two-label "unavailable" sentinel."""
    if not results:
        return True
    return len(results) == 2 and {result.label for result in results} == SENTINEL_LABELS


def combine_classification_results(results: List[ClassificationResult]) -> List[ClassificationResult]:
    """Sum confidence per label and sort descending (ties broken by label)."""
    combined: Dict[str, float] = {}
    for result in results:
        combined[result.label] = combined.get(result.label, 0.0) + result.confidence

    ordered = sorted(combined.items(), key=lambda pair: (-pair[1], pair[0]))
    return [ClassificationResult(label, confidence) for label, confidence in ordered]


def filter_generic_labels(combined: List[ClassificationResult],
                          max_tags: int = MAX_COMBINED_TAGS) -> List[ClassificationResult]:
    filtered = [result for result in combined if result.label.lower() not in GENERIC_LABELS]
    if not filtered:
        return combined[:UNFILTERED_FALLBACK_TAGS]
    return filtered[:max_tags]


class ClassificationAggregator:
    """
    Samples a cluster, fans classify calls out to a thread pool and joins them.

    Args:
        classifier: External classifier
        heuristic_tagger: Fallback tag source
        max_workers: Size of the classification thread pool
        timeout: Optional per-call timeout in seconds; None waits indefinitely
    """

    def __init__(self, classifier: Optional[Classifier],
                 heuristic_tagger: Optional[HeuristicTagger] = None,
                 max_workers: int = MAX_SAMPLES_PER_CLUSTER,
                 timeout: Optional[float] = None,
                 max_samples: int = MAX_SAMPLES_PER_CLUSTER,
                 max_tags: int = MAX_COMBINED_TAGS):
        self.classifier = classifier
        self.heuristic_tagger = heuristic_tagger or HeuristicTagger()
        self.timeout = timeout
        self.max_samples = max_samples
        self.max_tags = max_tags
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="classify")
        self._cache: Dict[str, List[ClassificationResult]] = {}
        self._cache_lock = threading.Lock()

    def close(self):
        self._executor.shutdown(wait=False)
        self.heuristic_tagger.close()

    def clear_cache(self):
        with self._cache_lock:
            self._cache.clear()

    def is_classifier_available(self) -> bool:
        if self.classifier is None:
            return False
        try:
            return bool(self.classifier.is_available())
        except Exception as e:
            logger.warning(f"Classifier availability check failed: {e}")
            return False

    def _classify_cached(self, asset: MediaAsset) -> List[ClassificationResult]:
        with self._cache_lock:
            cached = self._cache.get(asset.id)
        if cached is not None:
            return cached

        results = list(self.classifier.classify(asset) or [])
        if not all(isinstance(result, ClassificationResult) for result in results):
            raise ClassificationError(f"Classifier returned unexpected results for {asset.id}")
        # Failures are not cached so a later run can retry them
        if not is_failed_result(results):
            with self._cache_lock:
                self._cache[asset.id] = results
        return results

    def classify_samples(self, samples: List[AssetMetadata]) -> List[Optional[List[ClassificationResult]]]:
        """
        Classify samples concurrently and wait for all of them.

        Returns:
            One entry per sample: the results, or None if the call raised or timed out
        """
        futures = [self._executor.submit(self._classify_cached, item.asset) for item in samples]
        done, _ = wait(futures, timeout=self.timeout, return_when=ALL_COMPLETED)

        outcomes = []
        for item, future in zip(samples, futures):
            if future not in done:
                future.cancel()
                logger.warning(f"Classification of {item.asset.id} timed out after {self.timeout}s")
                outcomes.append(None)
                continue
            try:
                outcomes.append(future.result())
            except Exception as e:
                logger.warning(f"Classification of {item.asset.id} failed: {e}")
                outcomes.append(None)
        return outcomes

    def fallback(self, cluster: List[AssetMetadata], sample_count: int = 0) -> ClusterClassification:
        return ClusterClassification(
            tags=self.heuristic_tagger.generate_tags(cluster),
            used_fallback=True,
            failed_samples=sample_count,
            sample_count=sample_count,
        )

    def classify_cluster(self, cluster: List[AssetMetadata],
                         use_fallback: bool = False) -> ClusterClassification:
        """
        Produce tags for a cluster.

        Args:
            cluster: Cluster members in chronological order
            use_fallback: Skip the classifier and use heuristics directly

        Returns:
            ClusterClassification: Non-empty tags plus bookkeeping
        """
        if use_fallback or self.classifier is None:
            return self.fallback(cluster)

        samples = select_sample_assets(cluster, self.max_samples)
        outcomes = self.classify_samples(samples)

        collected = []
        failed = 0
        for results in outcomes:
            if results is None or is_failed_result(results):
                failed += 1
            else:
                collected.extend(results)

        if failed:
            logger.debug(f"Classification failed for {failed}/{len(samples)} sampled assets")

        if failed == len(samples) or not collected:
            logger.info("All sampled classifications failed, using heuristic tags")
            return self.fallback(cluster, len(samples))

        tags = filter_generic_labels(combine_classification_results(collected), self.max_tags)
        return ClusterClassification(
            tags=tags,
            used_fallback=False,
            failed_samples=failed,
            sample_count=len(samples),
        )
