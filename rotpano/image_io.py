"""
Image I/O utilities using PIL (Pillow).
"""

import logging

import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)


def read_image(filepath):
    """
    Read image from file.

    Args:
        filepath: Path to image file

    Returns:
        Image as numpy array (H x W x 3) for color or (H x W) for grayscale

    Raises:
        IOError: if the file cannot be opened or decoded
    """
    try:
        with Image.open(filepath) as img:
            # Convert to RGB if needed
            if img.mode != 'RGB' and img.mode != 'L':
                img = img.convert('RGB')
            return np.array(img)
    except (OSError, ValueError) as e:
        raise IOError(f"Failed to read image from {filepath}: {e}") from e


def write_image(filepath, image):
    """
    Write image to file.

    Args:
        filepath: Path to save image
        image: Image as numpy array (H x W), (H x W x 1) or (H x W x 3)
    """
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    if image.ndim == 3 and image.shape[2] == 1:
        image = image[:, :, 0]

    try:
        Image.fromarray(image).save(filepath)
    except (OSError, ValueError) as e:
        raise IOError(f"Failed to write image to {filepath}: {e}") from e


def read_images(filepaths, skip_errors=True):
    """
    Read multiple images.

    Args:
        filepaths: List of image file paths
        skip_errors: Put None in place of unreadable files instead of raising

    Returns:
        List of images as numpy arrays (None for unreadable files)
    """
    images = []

    for filepath in filepaths:
        try:
            images.append(read_image(filepath))
        except IOError as e:
            if not skip_errors:
                raise
            logger.warning("%s", e)
            images.append(None)

    return images


def resize_image(image, scale=1.0, width=None, height=None, resample=Image.BILINEAR):
    """
    Resize image.

    Args:
        image: Input image (uint8, float or bool)
        scale: Scale factor (if width and height not specified)
        width: Target width (optional)
        height: Target height (optional)
        resample: PIL resampling filter

    Returns:
        Resized image with the input's dtype
    """
    if width is not None and height is not None:
        new_size = (int(width), int(height))
    else:
        h, w = image.shape[:2]
        new_size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))

    if image.dtype == bool:
        # Masks are resized with nearest neighbour so they stay binary
        img = Image.fromarray(image.astype(np.uint8) * 255)
        return np.array(img.resize(new_size, Image.NEAREST)) > 127

    dtype = image.dtype
    if dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    squeeze = image.ndim == 3 and image.shape[2] == 1
    if squeeze:
        image = image[:, :, 0]

    resized = np.array(Image.fromarray(image).resize(new_size, resample))
    if squeeze:
        resized = resized[:, :, np.newaxis]
    return resized.astype(dtype)


__all__ = ["read_image", "read_images", "write_image", "resize_image"]
