import numpy as np
import cv2
import pytest

from celldet.core import DetectionParameters


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def square_img():
    # 10x10 bright square on a flat dark background
    img = np.zeros((40, 40), np.float32)
    img[15:25, 15:25] = 100.0
    return img


@pytest.fixture
def blobs_img():
    # three well separated discs of different brightness
    img = np.zeros((128, 128), np.float32)
    cv2.circle(img, (30, 30), 8, 150, -1)
    cv2.circle(img, (90, 35), 10, 200, -1)
    cv2.circle(img, (55, 95), 7, 220, -1)
    return img


@pytest.fixture
def noisy_blobs(blobs_img, rng):
    return blobs_img + rng.normal(0, 2, blobs_img.shape).astype(np.float32)


@pytest.fixture
def pixel_params():
    # flat background, no expansion, pixel-edge boundaries
    return DetectionParameters(
        background_radius=0, sigma=2, threshold=50, min_area=30, max_area=2000,
        cell_expansion=0, smooth_boundaries=False,
    )
