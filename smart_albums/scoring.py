import math
from typing import List, Optional

from smart_albums.models import ClassificationResult, MediaAsset, MediaType

SPECIAL_EVENT_KEYWORDS = (
    "birthday", "wedding", "graduation", "party", "holiday",
    "travel", "anniversary", "celebration", "vacation", "festival",
)

CONFIDENCE_WEIGHT_CAP = 30.0
COUNT_WEIGHT_CAP = 30.0
TAG_WEIGHT_CAP = 25.0
TAG_WEIGHT = 8.0
SPECIAL_EVENT_BONUS = 15.0


def has_special_event_tag(tags: List[ClassificationResult]) -> bool:
    return any(keyword in tag.label.lower() for tag in tags for keyword in SPECIAL_EVENT_KEYWORDS)


def calculate_relevance_score(tags: List[ClassificationResult], asset_count: int) -> int:
    """
    Score an album from 0 to 100.

    Components: top tag confidence (up to 30), asset count (up to 30),
    number of distinct tags (up to 25) and a bonus of 15 when any tag names
    a special event.

    Args:
        tags: Album tags, highest confidence first
        asset_count: Number of assets in the album

    Returns:
        int: Floored score clamped to [0, 100]
    """
    score = min(COUNT_WEIGHT_CAP, max(0, asset_count) / 2.0)

    if tags:
        top_confidence = max(tag.confidence for tag in tags)
        score += min(CONFIDENCE_WEIGHT_CAP, top_confidence * 100)

        unique_labels = {tag.label for tag in tags}
        score += min(TAG_WEIGHT_CAP, len(unique_labels) * TAG_WEIGHT)

        if has_special_event_tag(tags):
            score += SPECIAL_EVENT_BONUS

    return int(math.floor(max(0.0, min(100.0, score))))


def _thumbnail_score(asset: MediaAsset) -> float:
    score = 0.0
    if asset.coordinate is not None:
        score += 10
    score += min(10.0, (asset.pixel_width * asset.pixel_height) / 100000)
    return score


def select_best_thumbnail(assets: List[MediaAsset]) -> Optional[MediaAsset]:
    """Prefer located, high-resolution landscape photos that are not screenshots."""
    if not assets:
        return None

    candidates = [asset for asset in assets
                  if asset.media_type == MediaType.IMAGE
                  and not asset.is_screenshot
                  and asset.pixel_width > asset.pixel_height]
    if not candidates:
        return assets[0]

    # max() keeps the first of equal scores
    return max(candidates, key=_thumbnail_score)
