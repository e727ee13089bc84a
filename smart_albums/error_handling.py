"""
Error handling and logging infrastructure for the smart album pipeline.
"""

import logging
import sys
from typing import Optional
from pathlib import Path

# Configure logging
def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """
    Setup logging configuration for the pipeline.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
    """
    logger = logging.getLogger('smart_albums')
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Pillow logs every decoded chunk at DEBUG
    logging.getLogger('PIL').setLevel(logging.WARNING)

    return logger

DECODABLE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.tiff', '.webp'}

# Global logger instance
logger = setup_logging()

class SmartAlbumError(Exception):
    """Base exception class for smart album errors."""
    pass

class ClassificationError(SmartAlbumError):
    """Exception raised when a classifier call cannot be used."""
    pass

class ClusteringError(SmartAlbumError):
    """Exception raised for clustering algorithm errors."""
    pass

class AlbumStoreError(SmartAlbumError):
    """Exception raised for album persistence errors."""
    pass

class ValidationError(SmartAlbumError):
    """Exception raised when an album cannot be repaired into a valid record."""
    pass

class ImageCacheError(SmartAlbumError):
    """Exception raised when an image cannot be loaded into a cache tier."""
    pass

class ConfigurationError(SmartAlbumError):
    """Exception raised for invalid configuration values."""
    pass

def handle_error(error: Exception, context: str = "", raise_error: bool = True):
    """
    Handle and log errors consistently.

    Args:
        error: The exception that occurred
        context: Additional context about where the error occurred
        raise_error: Whether to re-raise the error after logging
    """
    error_msg = f"Error in {context}: {str(error)}" if context else f"Error: {str(error)}"
    logger.error(error_msg, exc_info=True)

    if raise_error:
        raise error

def validate_image_file(file_path: str) -> bool:
    """
    Validate that a file exists and has a decodable image extension.

    Args:
        file_path: Path to the image file

    Returns:
        bool: True if the file can be handed to the image loader

    Raises:
        ImageCacheError: If the file is missing or not an image
    """
    path = Path(file_path)

    if not path.is_file():
        raise ImageCacheError(f"Image file does not exist: {file_path}")

    if path.suffix.lower() not in DECODABLE_EXTENSIONS:
        raise ImageCacheError(f"Unsupported image format: {path.suffix}")

    return True
