"""
Asset metadata extraction for the smart album pipeline.
"""

from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from PIL import Image
from PIL.ExifTags import TAGS, GPSTAGS

from smart_albums.models import AssetMetadata, Coordinate, MediaAsset, MediaType, UtilityType
from smart_albums.error_handling import logger

EXIF_IFD = 0x8769
GPS_IFD = 0x8825
EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"

# Checked in order, first match wins
UTILITY_FILENAME_KEYWORDS = [
    (UtilityType.RECEIPT, ("receipt", "invoice")),
    (UtilityType.DOCUMENT, ("document", "doc")),
    (UtilityType.WHITEBOARD, ("whiteboard", "board")),
    (UtilityType.QR_CODE, ("qr", "code")),
]

VIDEO_EXTENSIONS = {'.mov', '.mp4', '.m4v', '.avi'}


def determine_utility_type(asset: MediaAsset) -> Optional[UtilityType]:
    """
    Determine the utility type of an asset from its flags and filename.

    Args:
        asset: The asset to inspect

    Returns:
        UtilityType or None if the asset is a regular photo/video
    """
    if asset.is_screenshot:
        return UtilityType.SCREENSHOT

    filename = (asset.filename or "").lower()
    if not filename:
        return None

    for utility_type, keywords in UTILITY_FILENAME_KEYWORDS:
        if any(keyword in filename for keyword in keywords):
            return utility_type

    return None


def is_utility_asset(asset: MediaAsset) -> bool:
    return determine_utility_type(asset) is not None


def extract_asset_metadata(asset: MediaAsset) -> AssetMetadata:
    utility_type = determine_utility_type(asset)
    return AssetMetadata(
        asset=asset,
        capture_timestamp=asset.capture_timestamp,
        coordinate=asset.coordinate,
        media_type=asset.media_type,
        is_utility=utility_type is not None,
        utility_type=utility_type,
    )


def extract_metadata(assets: List[MediaAsset],
                     chunk_size: int = 500,
                     on_progress: Optional[Callable[[int, int], None]] = None) -> List[AssetMetadata]:
    """
    Extract clustering metadata for every asset, preserving input order.

    Args:
        assets: Assets to process
        chunk_size: Number of assets handled between progress reports
        on_progress: Optional callback receiving (processed, total)

    Returns:
        List[AssetMetadata]: One entry per input asset
    """
    total = len(assets)
    metadata = []

    for start in range(0, total, max(1, chunk_size)):
        chunk = assets[start:start + chunk_size]
        metadata.extend(extract_asset_metadata(asset) for asset in chunk)

        if on_progress:
            on_progress(len(metadata), total)

    utility_count = sum(1 for item in metadata if item.is_utility)
    logger.info(f"Extracted metadata for {total} assets ({utility_count} utility)")
    return metadata


def _decode(value) -> str:
    return value.decode('utf-8') if isinstance(value, bytes) else str(value)


def _dms_to_decimal(dms, ref: str) -> float:
    decimal = float(dms[0]) + float(dms[1]) / 60 + float(dms[2]) / 3600
    return decimal * (-1 if ref in ('S', 'W') else 1)


def parse_exif_timestamp(exif) -> Optional[datetime]:
    exif_ifd = exif.get_ifd(EXIF_IFD)
    candidates = []
    for tag_id, value in (exif_ifd or {}).items():
        tag = TAGS.get(tag_id, tag_id)
        if tag == "DateTimeOriginal":
            candidates.insert(0, value)
        elif tag == "DateTime":
            candidates.append(value)

    # Some writers only set DateTime on the main IFD
    for tag_id, value in exif.items():
        if TAGS.get(tag_id, tag_id) == "DateTime":
            candidates.append(value)

    for value in candidates:
        try:
            return datetime.strptime(_decode(value).strip(), EXIF_DATETIME_FORMAT)
        except ValueError:
            continue
    return None


def parse_exif_coordinate(exif) -> Optional[Coordinate]:
    gps_ifd = exif.get_ifd(GPS_IFD)
    if not gps_ifd:
        return None

    gps_data = {GPSTAGS.get(tag_id, tag_id): value for tag_id, value in gps_ifd.items()}
    if 'GPSLatitude' not in gps_data or 'GPSLongitude' not in gps_data:
        return None

    lat_ref = _decode(gps_data.get('GPSLatitudeRef', b'N'))
    lon_ref = _decode(gps_data.get('GPSLongitudeRef', b'E'))

    try:
        return Coordinate(
            latitude=_dms_to_decimal(gps_data['GPSLatitude'], lat_ref),
            longitude=_dms_to_decimal(gps_data['GPSLongitude'], lon_ref),
        )
    except (TypeError, ValueError, ZeroDivisionError, IndexError) as e:
        logger.warning(f"Unreadable GPS data: {e}")
        return None


def read_exif_metadata(file_path: str) -> MediaAsset:
    """
    Build a MediaAsset from an image file using its EXIF data.

    Args:
        file_path: Path to the image file

    Returns:
        MediaAsset: Asset with timestamp, coordinate and size when available
    """
    path = Path(file_path)
    asset = MediaAsset(id=str(path.resolve()), filename=path.name, path=str(path))
    asset.is_screenshot = "screenshot" in path.name.lower()

    if path.suffix.lower() in VIDEO_EXTENSIONS:
        asset.media_type = MediaType.VIDEO
        return asset

    with Image.open(path) as pil_image:
        asset.pixel_width, asset.pixel_height = pil_image.size
        exif = pil_image.getexif()
        if exif:
            asset.capture_timestamp = parse_exif_timestamp(exif)
            asset.coordinate = parse_exif_coordinate(exif)

    return asset
