"""
Tests for event clustering.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import random
from datetime import datetime, timedelta

import pytest

from smart_albums.models import Coordinate, MediaAsset, UtilityType
from smart_albums.metadata import extract_asset_metadata
from smart_albums.error_handling import ClusteringError
from smart_albums.clustering import (
    haversine_distance,
    coordinate_distance,
    calculate_time_difference,
    is_valid_cluster,
    is_cluster_boundary,
    cluster_into_events,
    cluster_by_proximity,
    time_of_day_for,
    calculate_cluster_summary,
    collect_utility_assets,
)

HOME = Coordinate(40.7128, -74.0060)
FAR_AWAY = Coordinate(40.7589, -73.9851)  # about 5.4 km from HOME


def make_item(asset_id, timestamp, coordinate=None, filename="", is_screenshot=False):
    asset = MediaAsset(id=asset_id, capture_timestamp=timestamp, coordinate=coordinate,
                       filename=filename, is_screenshot=is_screenshot)
    return extract_asset_metadata(asset)


def burst(prefix, start, count, step_minutes, coordinate=HOME):
    return [make_item(f"{prefix}{i}", start + timedelta(minutes=i * step_minutes), coordinate)
            for i in range(count)]


class TestDistances:
    """Test distance calculations."""

    def test_haversine_distance_same_point(self):
        """Distance between the same point should be 0."""
        assert haversine_distance(40.7128, -74.0060, 40.7128, -74.0060) == 0.0

    def test_haversine_distance_in_meters(self):
        """NYC to Times Square is roughly 5.4 km."""
        distance = haversine_distance(HOME.latitude, HOME.longitude,
                                      FAR_AWAY.latitude, FAR_AWAY.longitude)
        assert 5000 <= distance <= 6000

    def test_coordinate_distance_missing_coordinate(self):
        """Missing coordinates yield no distance."""
        assert coordinate_distance(None, HOME) is None
        assert coordinate_distance(HOME, None) is None

    def test_time_difference_is_signed(self):
        """Time difference goes from the first to the second capture."""
        first = make_item("a", datetime(2025, 10, 29, 10, 0))
        second = make_item("b", datetime(2025, 10, 29, 11, 30))
        assert calculate_time_difference(first, second) == timedelta(minutes=90)
        assert calculate_time_difference(second, first) == timedelta(minutes=-90)


class TestClusterValidity:
    """Test cluster validity rules."""

    def test_too_few_assets(self):
        """Clusters need at least three assets."""
        cluster = burst("a", datetime(2025, 5, 1, 10, 0), 2, 40)
        assert not is_valid_cluster(cluster)

    def test_too_short(self):
        """Clusters need to span at least 30 minutes."""
        cluster = burst("a", datetime(2025, 5, 1, 10, 0), 5, 5)
        assert not is_valid_cluster(cluster)

    def test_exactly_thirty_minutes_is_valid(self):
        """A 30 minute span is enough."""
        cluster = burst("a", datetime(2025, 5, 1, 10, 0), 4, 10)
        assert is_valid_cluster(cluster)


class TestBoundaries:
    """Test event boundary detection."""

    def test_gap_over_window_is_boundary(self):
        """A gap larger than two hours splits events."""
        first = make_item("a", datetime(2025, 5, 1, 10, 0), HOME)
        second = make_item("b", datetime(2025, 5, 1, 12, 1), HOME)
        assert is_cluster_boundary(first, second)

    def test_gap_of_exactly_window_is_not_boundary(self):
        """The time window is inclusive."""
        first = make_item("a", datetime(2025, 5, 1, 10, 0), HOME)
        second = make_item("b", datetime(2025, 5, 1, 12, 0), HOME)
        assert not is_cluster_boundary(first, second)

    def test_distance_is_boundary_when_both_located(self):
        """Consecutive captures far apart split events."""
        first = make_item("a", datetime(2025, 5, 1, 10, 0), HOME)
        second = make_item("b", datetime(2025, 5, 1, 10, 5), FAR_AWAY)
        assert is_cluster_boundary(first, second)

    def test_missing_location_never_splits(self):
        """A capture without location is accepted as close by."""
        first = make_item("a", datetime(2025, 5, 1, 10, 0), HOME)
        second = make_item("b", datetime(2025, 5, 1, 10, 5), None)
        assert not is_cluster_boundary(first, second)


class TestEventClustering:
    """Test the full clustering pass."""

    def test_scenario_single_event_and_discarded_pair(self):
        """12 captures 14:00-14:45 form one event, a later pair elsewhere is dropped."""
        day = datetime(2025, 10, 4)
        event = [make_item(f"e{i}", day.replace(hour=14) + timedelta(minutes=i * 45 / 11), HOME)
                 for i in range(12)]
        pair = [make_item("p0", day.replace(hour=20), FAR_AWAY),
                make_item("p1", day.replace(hour=20, minute=1), FAR_AWAY)]

        clusters = cluster_into_events(event + pair)

        assert len(clusters) == 1
        assert [item.asset.id for item in clusters[0]] == [f"e{i}" for i in range(12)]

    def test_every_cluster_satisfies_validity(self):
        """Emitted clusters always have at least 3 assets spanning 30 minutes."""
        rng = random.Random(7)
        start = datetime(2025, 1, 1, 8, 0)
        items = []
        moment = start
        for i in range(300):
            moment += timedelta(minutes=rng.choice([1, 5, 20, 90, 200]))
            coordinate = rng.choice([HOME, FAR_AWAY, None])
            items.append(make_item(f"r{i}", moment, coordinate))

        for cluster in cluster_into_events(items):
            assert len(cluster) >= 3
            assert cluster[-1].capture_timestamp - cluster[0].capture_timestamp >= timedelta(minutes=30)

    def test_input_order_does_not_matter(self):
        """Clustering sorts by capture time first."""
        items = burst("a", datetime(2025, 5, 1, 9, 0), 6, 10) + burst("b", datetime(2025, 5, 1, 18, 0), 4, 15)
        shuffled = list(items)
        random.Random(3).shuffle(shuffled)

        expected = [[item.asset.id for item in cluster] for cluster in cluster_into_events(items)]
        actual = [[item.asset.id for item in cluster] for cluster in cluster_into_events(shuffled)]
        assert actual == expected
        assert len(expected) == 2

    def test_clustering_is_idempotent(self):
        """Repeated runs on the same input give identical boundaries."""
        items = burst("a", datetime(2025, 5, 1, 9, 0), 6, 10) + burst("b", datetime(2025, 5, 1, 18, 0), 4, 15)
        first = [[item.asset.id for item in cluster] for cluster in cluster_into_events(items)]
        second = [[item.asset.id for item in cluster] for cluster in cluster_into_events(items)]
        assert first == second

    def test_undated_and_utility_assets_are_excluded(self):
        """Assets without timestamp or flagged as utility never join a cluster."""
        items = burst("a", datetime(2025, 5, 1, 9, 0), 4, 15)
        items.append(make_item("undated", None, HOME))
        items.append(make_item("shot", datetime(2025, 5, 1, 9, 20), HOME, is_screenshot=True))

        clusters = cluster_into_events(items)
        ids = {item.asset.id for item in clusters[0]}
        assert "undated" not in ids
        assert "shot" not in ids

    def test_location_change_splits_event(self):
        """Moving far away mid-stream ends the current event."""
        start = datetime(2025, 5, 1, 9, 0)
        items = burst("a", start, 4, 15, HOME) + burst("b", start + timedelta(hours=1), 4, 15, FAR_AWAY)
        clusters = cluster_into_events(items)
        assert len(clusters) == 2

    def test_empty_input(self):
        """No input, no clusters."""
        assert cluster_into_events([]) == []

    def test_invalid_parameters(self):
        """Non-positive windows, distances or sizes are rejected."""
        with pytest.raises(ClusteringError):
            cluster_into_events([], max_time_window=timedelta(0))
        with pytest.raises(ClusteringError):
            cluster_into_events([], min_size=0)


class TestProximityClustering:
    """Test the coarse proximity grouping."""

    def test_twelve_hour_window_keeps_day_together(self):
        """Captures a few hours apart stay in one group."""
        start = datetime(2025, 5, 1, 8, 0)
        items = [make_item(f"a{i}", start + timedelta(hours=3 * i), HOME) for i in range(4)]
        groups = cluster_by_proximity(items)
        assert len(groups) == 1
        assert len(groups[0]) == 4

    def test_radius_is_measured_from_anchor(self):
        """A capture outside the radius of the first located capture starts a new group."""
        start = datetime(2025, 5, 1, 8, 0)
        items = burst("a", start, 3, 5, HOME) + burst("b", start + timedelta(minutes=20), 3, 5, FAR_AWAY)
        groups = cluster_by_proximity(items)
        assert [len(group) for group in groups] == [3, 3]

    def test_no_duration_requirement(self):
        """Three captures within a minute are enough."""
        items = burst("a", datetime(2025, 5, 1, 8, 0), 3, 0)
        assert len(cluster_by_proximity(items)) == 1


class TestSummaries:
    """Test cluster summaries and utility grouping."""

    def test_time_of_day_buckets(self):
        """Hours map to the four buckets."""
        assert time_of_day_for(datetime(2025, 1, 1, 5)) == "morning"
        assert time_of_day_for(datetime(2025, 1, 1, 12)) == "afternoon"
        assert time_of_day_for(datetime(2025, 1, 1, 17)) == "evening"
        assert time_of_day_for(datetime(2025, 1, 1, 21)) == "night"
        assert time_of_day_for(datetime(2025, 1, 1, 3)) == "night"

    def test_cluster_summary(self):
        """Summary has centroid, time range, count and dominant time of day."""
        start = datetime(2025, 5, 1, 9, 0)
        cluster = [
            make_item("a", start, Coordinate(10.0, 20.0)),
            make_item("b", start + timedelta(minutes=20), Coordinate(12.0, 22.0)),
            make_item("c", start + timedelta(minutes=40), None),
        ]
        summary = calculate_cluster_summary(cluster)
        assert summary.center_lat == 11.0
        assert summary.center_lon == 21.0
        assert summary.start_time == start
        assert summary.end_time == start + timedelta(minutes=40)
        assert summary.image_count == 3
        assert summary.time_of_day == "morning"

    def test_collect_screenshots_newest_first(self):
        """Screenshots are gathered newest first."""
        items = [
            make_item("old", datetime(2025, 1, 1), is_screenshot=True),
            make_item("photo", datetime(2025, 1, 2)),
            make_item("new", datetime(2025, 1, 3), is_screenshot=True),
        ]
        collected = collect_utility_assets(items, UtilityType.SCREENSHOT)
        assert [item.asset.id for item in collected] == ["new", "old"]

    def test_summary_of_empty_cluster(self):
        """An empty cluster yields an empty summary."""
        summary = calculate_cluster_summary([])
        assert summary.image_count == 0
        assert summary.start_time is None
