import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from smart_albums.error_handling import ValidationError, logger


class MediaType(Enum):
    IMAGE = "image"
    VIDEO = "video"


class UtilityType(Enum):
    RECEIPT = "receipt"
    DOCUMENT = "document"
    SCREENSHOT = "screenshot"
    WHITEBOARD = "whiteboard"
    QR_CODE = "qr_code"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Coordinate:
    """A WGS84 position in degrees."""
    latitude: float
    longitude: float


@dataclass
class MediaAsset:
    """Represents a photo or video in the asset library (read-only to the pipeline)."""
    id: str
    capture_timestamp: Optional[datetime] = None
    coordinate: Optional[Coordinate] = None
    media_type: MediaType = MediaType.IMAGE
    pixel_width: int = 0
    pixel_height: int = 0
    is_screenshot: bool = False
    burst_id: Optional[str] = None
    filename: str = ""
    path: Optional[str] = None


@dataclass
class AssetMetadata:
    """Per-asset metadata used for clustering."""
    asset: MediaAsset
    capture_timestamp: Optional[datetime] = None
    coordinate: Optional[Coordinate] = None
    media_type: MediaType = MediaType.IMAGE
    is_utility: bool = False
    utility_type: Optional[UtilityType] = None


@dataclass(frozen=True)
class ClassificationResult:
    """A single label produced by the classifier. Labels are the identity."""
    label: str
    confidence: float = field(compare=False, hash=False)


@dataclass
class Placemark:
    """Reverse geocoding result."""
    name: Optional[str] = None
    locality: Optional[str] = None
    administrative_area: Optional[str] = None
    country: Optional[str] = None
    area_of_interest: Optional[str] = None

    def best_name(self) -> Optional[str]:
        for value in (self.name, self.locality, self.administrative_area, self.country):
            if value:
                return value
        return None


@dataclass
class ClusterSummary:
    """Aggregate facts about a cluster of assets."""
    center_lat: Optional[float] = None
    center_lon: Optional[float] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    image_count: int = 0
    time_of_day: Optional[str] = None


DEFAULT_TAGS = ["Photos"]
NIL_UUID = "00000000-0000-0000-0000-000000000000"


@dataclass
class SmartAlbum:
    """A persisted, titled, scored and tagged grouping of asset ids."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    title: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    relevance_score: int = 0
    tags: List[str] = field(default_factory=list)
    asset_ids: List[str] = field(default_factory=list)
    thumbnail_asset_id: str = ""

    def validate(self) -> "SmartAlbum":
        """
        Repair the fields that have a sensible default and reject the rest.

        Returns:
            SmartAlbum: self, for chaining

        Raises:
            ValidationError: If the album has no asset ids
        """
        if not self.asset_ids:
            raise ValidationError(f"Album {self.id} has no asset ids")

        if not self.title or not self.title.strip():
            self.title = f"Photos from {self.created_at.strftime('%b %d, %Y')}"
            logger.debug(f"Fixed empty title for album {self.id}")

        if not self.id or self.id == NIL_UUID:
            self.id = str(uuid.uuid4())
            logger.debug("Fixed invalid UUID for album")

        if not self.tags:
            self.tags = list(DEFAULT_TAGS)

        if not self.thumbnail_asset_id:
            self.thumbnail_asset_id = self.asset_ids[0]

        self.relevance_score = max(0, min(100, int(self.relevance_score)))
        return self


@dataclass
class CacheState:
    """Snapshot of the album cache validity."""
    is_valid: bool = False
    last_update_time: Optional[datetime] = None
    library_hash: str = ""
    cached_album_count: int = 0


class EventKind(Enum):
    STARTED = "started"
    PROGRESS = "progress"
    BATCH_SAVED = "batch_saved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class GenerationEvent:
    """Published to service subscribers while albums are generated."""
    kind: EventKind
    progress: float = 0.0
    processed: int = 0
    total: int = 0
    albums_saved: int = 0
    message: Optional[str] = None
