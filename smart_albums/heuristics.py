"""
Deterministic fallback tagging for clusters the classifier could not label.

Tags are built from capture time, season, burst and video share, frame
aspect ratios, and a best-effort reverse geocode bounded by a hard timeout.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import List, Optional

import numpy as np

from smart_albums.models import AssetMetadata, ClassificationResult, Coordinate, MediaType, Placemark

logger = logging.getLogger(__name__)

DOCUMENT_ASPECT_RANGES = ((0.65, 0.85), (1.2, 1.5))
SQUARE_ASPECT_TOLERANCE = 0.05
RECEIPT_ASPECT_MAX = 0.6
MAJORITY_SHARE = 0.5
MIN_BURST_MEMBERS = 3
MAX_GEOCODE_CANDIDATES = 3


class Geocoder:
    """Reverse geocoding contract. Implementations may block or raise."""

    def reverse_geocode(self, coordinate: Coordinate) -> Optional[Placemark]:
        raise NotImplementedError


def season_for(moment: datetime) -> str:
    month = moment.month
    if month in (12, 1, 2):
        return "Winter"
    if month in (3, 4, 5):
        return "Spring"
    if month in (6, 7, 8):
        return "Summer"
    return "Fall"


def detailed_time_of_day(moment: datetime) -> str:
    hour = moment.hour
    if 5 <= hour < 8:
        return "Early morning"
    if 8 <= hour < 12:
        return "Morning"
    if 12 <= hour < 14:
        return "Midday"
    if 14 <= hour < 17:
        return "Afternoon"
    if 17 <= hour < 19:
        return "Evening"
    if 19 <= hour < 22:
        return "Night"
    return "Late night"


def aspect_ratio_tags(cluster: List[AssetMetadata]) -> List[ClassificationResult]:
    """
    Tags for document-like, QR-like and receipt-like frames.

    A tag is emitted when the majority of still images with known dimensions
    fall in its aspect-ratio band (width / height).
    """
    sizes = [(item.asset.pixel_width, item.asset.pixel_height) for item in cluster
             if item.media_type == MediaType.IMAGE
             and item.asset.pixel_width > 0 and item.asset.pixel_height > 0]
    if not sizes:
        return []

    dims = np.array(sizes, dtype=float)
    aspects = dims[:, 0] / dims[:, 1]

    document_like = np.zeros(len(aspects), dtype=bool)
    for low, high in DOCUMENT_ASPECT_RANGES:
        document_like |= (aspects >= low) & (aspects <= high)
    square_like = np.abs(aspects - 1.0) <= SQUARE_ASPECT_TOLERANCE
    receipt_like = aspects < RECEIPT_ASPECT_MAX

    tags = []
    if document_like.mean() > MAJORITY_SHARE:
        tags.append(ClassificationResult("Documents", 0.6))
    if square_like.mean() > MAJORITY_SHARE:
        tags.append(ClassificationResult("QR codes", 0.55))
    if receipt_like.mean() > MAJORITY_SHARE:
        tags.append(ClassificationResult("Receipts", 0.6))
    return tags


class HeuristicTagger:
    """Produces tags for a cluster without a classifier."""

    def __init__(self, geocoder: Optional[Geocoder] = None, geocoding_timeout: float = 1.0):
        self.geocoder = geocoder
        self.geocoding_timeout = geocoding_timeout
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="geocode")

    def close(self):
        self._executor.shutdown(wait=False)

    def reverse_geocode(self, coordinate: Coordinate) -> Optional[Placemark]:
        """Geocode with a hard timeout; any failure yields None."""
        if self.geocoder is None:
            return None

        future = self._executor.submit(self.geocoder.reverse_geocode, coordinate)
        try:
            return future.result(timeout=self.geocoding_timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.debug(f"Reverse geocoding timed out after {self.geocoding_timeout}s")
        except Exception as e:
            logger.debug(f"Reverse geocoding failed: {e}")
        return None

    def location_tags(self, cluster: List[AssetMetadata]) -> List[ClassificationResult]:
        for item in cluster[:MAX_GEOCODE_CANDIDATES]:
            if item.coordinate is None:
                continue

            placemark = self.reverse_geocode(item.coordinate)
            tags = []
            if placemark is not None:
                if placemark.country:
                    tags.append(ClassificationResult(placemark.country, 0.65))
                if placemark.locality:
                    tags.append(ClassificationResult(placemark.locality, 0.7))
                if placemark.area_of_interest:
                    tags.append(ClassificationResult(placemark.area_of_interest, 0.75))
            # Only the first located asset is tried
            return tags
        return []

    def generate_tags(self, cluster: List[AssetMetadata]) -> List[ClassificationResult]:
        """
        Build fallback tags for a cluster. Never returns an empty list.

        Args:
            cluster: Cluster members in chronological order

        Returns:
            List[ClassificationResult]: Unique labels, most general first
        """
        tags = [
            ClassificationResult("Photos", 1.0),
            ClassificationResult("Collection", 0.9),
        ]

        first_date = next((item.capture_timestamp for item in cluster
                           if item.capture_timestamp is not None), None)
        if first_date is not None:
            tags.append(ClassificationResult(first_date.strftime("%B %Y"), 0.8))
            tags.append(ClassificationResult(season_for(first_date), 0.75))
            tags.append(ClassificationResult(detailed_time_of_day(first_date), 0.7))

        tags.extend(self.location_tags(cluster))

        if cluster:
            burst_count = sum(1 for item in cluster if item.asset.burst_id)
            burst_share = burst_count / len(cluster)
            if burst_count > MIN_BURST_MEMBERS or (burst_count > 1 and burst_share >= MAJORITY_SHARE):
                tags.append(ClassificationResult("Burst photos", 0.75))

            video_count = sum(1 for item in cluster if item.media_type == MediaType.VIDEO)
            if video_count:
                if video_count / len(cluster) > MAJORITY_SHARE:
                    tags.append(ClassificationResult("Videos", 0.8))
                else:
                    tags.append(ClassificationResult("Photos and videos", 0.7))

            if any(item.asset.is_screenshot for item in cluster):
                tags.append(ClassificationResult("Screenshots", 0.6))

        tags.extend(aspect_ratio_tags(cluster))

        unique = []
        seen = set()
        for tag in tags:
            if tag.label not in seen:
                seen.add(tag.label)
                unique.append(tag)
        return unique
