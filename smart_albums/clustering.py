import math
from typing import List, Optional
from datetime import datetime, timedelta
from smart_albums.models import AssetMetadata, ClusterSummary, Coordinate, UtilityType
from smart_albums.error_handling import ClusteringError, logger

EARTH_RADIUS_METERS = 6371000.0

DEFAULT_MAX_TIME_WINDOW = timedelta(hours=2)
DEFAULT_MAX_DISTANCE_METERS = 300.0
DEFAULT_MIN_CLUSTER_SIZE = 3
DEFAULT_MIN_CLUSTER_DURATION = timedelta(minutes=30)

# Coarser grouping pass used for whole-library batch runs
PROXIMITY_TIME_WINDOW = timedelta(hours=12)
PROXIMITY_DISTANCE_METERS = 1000.0

Cluster = List[AssetMetadata]

def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres."""
    lat1_rad, lon1_rad = math.radians(lat1), math.radians(lon1)
    lat2_rad, lon2_rad = math.radians(lat2), math.radians(lon2)

    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad

    a = math.sin(dlat/2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon/2)**2
    c = 2 * math.asin(min(1.0, math.sqrt(a)))

    return c * EARTH_RADIUS_METERS

def coordinate_distance(first: Optional[Coordinate], second: Optional[Coordinate]) -> Optional[float]:
    """Distance in metres, or None unless both coordinates are known."""
    if first is None or second is None:
        return None

    try:
        return haversine_distance(first.latitude, first.longitude,
                                  second.latitude, second.longitude)
    except (ValueError, TypeError) as e:
        logger.warning(f"Error calculating GPS distance: {e}")
        return None

def calculate_time_difference(first: AssetMetadata, second: AssetMetadata) -> timedelta:
    """Signed time from first to second capture."""
    return second.capture_timestamp - first.capture_timestamp

def cluster_duration(cluster: Cluster) -> timedelta:
    if not cluster:
        return timedelta(0)
    return cluster[-1].capture_timestamp - cluster[0].capture_timestamp

def is_valid_cluster(cluster: Cluster,
                     min_size: int = DEFAULT_MIN_CLUSTER_SIZE,
                     min_duration: timedelta = DEFAULT_MIN_CLUSTER_DURATION) -> bool:
    if len(cluster) < min_size:
        return False

    first, last = cluster[0].capture_timestamp, cluster[-1].capture_timestamp
    if first is None or last is None:
        return False

    return (last - first) >= min_duration

def clusterable_metadata(metadata: List[AssetMetadata]) -> List[AssetMetadata]:
    """Dated, non-utility entries sorted by capture time (stable)."""
    valid = [item for item in metadata
             if item.capture_timestamp is not None and not item.is_utility]
    return sorted(valid, key=lambda item: item.capture_timestamp)

def is_cluster_boundary(previous: AssetMetadata, current: AssetMetadata,
                        max_time_window: timedelta = DEFAULT_MAX_TIME_WINDOW,
                        max_distance: float = DEFAULT_MAX_DISTANCE_METERS) -> bool:
    if calculate_time_difference(previous, current) > max_time_window:
        return True

    # Missing location on either side never forces a split
    distance = coordinate_distance(previous.coordinate, current.coordinate)
    return distance is not None and distance > max_distance

def cluster_into_events(metadata: List[AssetMetadata],
                        max_time_window: timedelta = DEFAULT_MAX_TIME_WINDOW,
                        max_distance: float = DEFAULT_MAX_DISTANCE_METERS,
                        min_size: int = DEFAULT_MIN_CLUSTER_SIZE,
                        min_duration: timedelta = DEFAULT_MIN_CLUSTER_DURATION) -> List[Cluster]:
    """
    Group metadata into temporally (and spatially) contiguous events.

    Args:
        metadata: Asset metadata in any order
        max_time_window: Largest gap between consecutive captures within an event
        max_distance: Largest distance in metres between consecutive located captures
        min_size: Minimum number of assets in an emitted cluster
        min_duration: Minimum span between first and last capture of an emitted cluster

    Returns:
        List of valid clusters in chronological order
    """
    if max_time_window <= timedelta(0) or max_distance <= 0 or min_size < 1:
        raise ClusteringError(
            f"Invalid clustering parameters: window={max_time_window}, "
            f"distance={max_distance}, min_size={min_size}")

    sorted_metadata = clusterable_metadata(metadata)
    if not sorted_metadata:
        logger.info("No dated assets available for clustering")
        return []

    clusters = []
    dropped = 0
    current_cluster = [sorted_metadata[0]]

    for item in sorted_metadata[1:]:
        if is_cluster_boundary(current_cluster[-1], item, max_time_window, max_distance):
            if is_valid_cluster(current_cluster, min_size, min_duration):
                clusters.append(current_cluster)
            else:
                dropped += 1
            current_cluster = [item]
        else:
            current_cluster.append(item)

    if is_valid_cluster(current_cluster, min_size, min_duration):
        clusters.append(current_cluster)
    else:
        dropped += 1

    logger.info(f"Clustering completed: {len(sorted_metadata)} assets -> {len(clusters)} events "
                f"({dropped} partial clusters dropped)")
    return clusters

def cluster_by_proximity(metadata: List[AssetMetadata],
                         time_window: timedelta = PROXIMITY_TIME_WINDOW,
                         proximity_threshold: float = PROXIMITY_DISTANCE_METERS,
                         min_size: int = DEFAULT_MIN_CLUSTER_SIZE) -> List[Cluster]:
    """
    Coarse grouping pass: a 12h gap window and a radius around the cluster anchor.

    The anchor is the first located asset of the cluster. Clusters only need
    min_size members; there is no duration requirement.
    """
    sorted_metadata = clusterable_metadata(metadata)
    if not sorted_metadata:
        return []

    clusters = []
    current_cluster = [sorted_metadata[0]]
    anchor = sorted_metadata[0].coordinate

    for previous, item in zip(sorted_metadata, sorted_metadata[1:]):
        within_time = calculate_time_difference(previous, item) <= time_window
        distance = coordinate_distance(item.coordinate, anchor)
        within_radius = distance is None or distance <= proximity_threshold

        if within_time and within_radius:
            current_cluster.append(item)
            if anchor is None:
                anchor = item.coordinate
        else:
            if len(current_cluster) >= min_size:
                clusters.append(current_cluster)
            current_cluster = [item]
            anchor = item.coordinate

    if len(current_cluster) >= min_size:
        clusters.append(current_cluster)

    logger.info(f"Proximity clustering completed: {len(sorted_metadata)} assets -> {len(clusters)} groups")
    return clusters

def time_of_day_for(moment: datetime) -> str:
    hour = moment.hour
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"

def dominant_time_of_day(cluster: Cluster) -> Optional[str]:
    counts = {}
    for item in cluster:
        if item.capture_timestamp is None:
            continue
        bucket = time_of_day_for(item.capture_timestamp)
        counts[bucket] = counts.get(bucket, 0) + 1

    if not counts:
        return None
    return max(counts, key=counts.get)

def calculate_cluster_summary(cluster: Cluster) -> ClusterSummary:
    if not cluster:
        return ClusterSummary()

    # Calculate center coordinates
    valid_coords = [(item.coordinate.latitude, item.coordinate.longitude)
                    for item in cluster if item.coordinate is not None]

    if valid_coords:
        center_lat = sum(lat for lat, lon in valid_coords) / len(valid_coords)
        center_lon = sum(lon for lat, lon in valid_coords) / len(valid_coords)
    else:
        center_lat, center_lon = None, None

    valid_times = [item.capture_timestamp for item in cluster if item.capture_timestamp is not None]
    start_time = min(valid_times) if valid_times else None
    end_time = max(valid_times) if valid_times else None

    return ClusterSummary(
        center_lat=center_lat,
        center_lon=center_lon,
        start_time=start_time,
        end_time=end_time,
        image_count=len(cluster),
        time_of_day=dominant_time_of_day(cluster)
    )

def collect_utility_assets(metadata: List[AssetMetadata],
                           utility_type: UtilityType = UtilityType.SCREENSHOT) -> Cluster:
    """All entries of one utility type, newest first."""
    matching = [item for item in metadata if item.utility_type == utility_type]
    return sorted(matching,
                  key=lambda item: item.capture_timestamp or datetime.min,
                  reverse=True)
