# tests/conftest.py

import cv2
import numpy as np
import pytest

from core.database import PhotoStore


@pytest.fixture
def store(tmp_path):
    """Fresh on-disk photo store per test"""
    photo_store = PhotoStore(str(tmp_path / "photos.db"))
    yield photo_store
    photo_store.close()


@pytest.fixture
def write_image(tmp_path):
    """Write a synthetic image and return its path"""
    def _write(relative_path, image=None, seed=0, size=(128, 128)):
        path = tmp_path / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if image is None:
            rng = np.random.default_rng(seed)
            image = rng.integers(0, 255, (size[1], size[0], 3), dtype=np.uint8)
        cv2.imwrite(str(path), image)
        return path
    return _write


def bits_hash(n_bits_set: int, hex_length: int = 64) -> str:
    """Hex hash with the lowest n bits set"""
    return format((1 << n_bits_set) - 1, f'0{hex_length}x')


def gradient_image(width=256, height=256):
    """Smooth synthetic photo with one bright disc"""
    x = np.linspace(0, 255, width, dtype=np.float32)
    y = np.linspace(0, 255, height, dtype=np.float32)
    gray = (np.add.outer(y, x) / 2).astype(np.uint8)
    image = cv2.merge([gray, np.flipud(gray), gray])
    cv2.circle(image, (width // 3, height // 2), width // 6, (255, 255, 255), -1)
    return image
