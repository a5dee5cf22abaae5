"""
Image utility functions
"""

import cv2
import numpy as np
from PIL import Image, ImageOps
from typing import Tuple

# Refuse decompression bombs
Image.MAX_IMAGE_PIXELS = 100_000_000  # 100MP limit


def load_image(image_path: str, max_dimension: int = 0) -> Image.Image:
    """Open an image upright in RGB, optionally downscaled to max_dimension"""
    with Image.open(image_path) as img:
        img = ImageOps.exif_transpose(img)
        if img.mode != 'RGB':
            img = img.convert('RGB')
        else:
            img.load()

    if max_dimension and max(img.size) > max_dimension:
        img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

    return img


def load_rgb_array(image_path: str, max_dimension: int = 0) -> np.ndarray:
    """Load an image as an RGB uint8 array"""
    return np.asarray(load_image(image_path, max_dimension), dtype=np.uint8)


def resize_maintain_aspect(image: np.ndarray,
                          target_size: Tuple[int, int]) -> Tuple[np.ndarray, float]:
    """Resize image to fit target_size maintaining aspect ratio; returns (image, scale)"""
    h, w = image.shape[:2]
    target_w, target_h = target_size

    scale = min(target_w / w, target_h / h)
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))

    return cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA), scale
