"""SSIM scorer — Gaussian-windowed structural similarity over luminance."""

import logging

import numpy as np
from skimage.metrics import structural_similarity

from vrdiff.pixels import luminance

logger = logging.getLogger(__name__)

SIGMA = 1.5
TRUNCATE = 3.5
# Filter radius used by skimage for SIGMA/TRUNCATE; a band needs this many
# halo rows on each side for its interior SSIM values to match the full image.
RADIUS = int(TRUNCATE * SIGMA + 0.5)
WINDOW = 2 * RADIUS + 1

# Stabilizers for 8-bit data: (0.01 * 255)^2 and (0.03 * 255)^2
C1 = (0.01 * 255) ** 2
C2 = (0.03 * 255) ** 2


def _global_ssim(x: np.ndarray, y: np.ndarray) -> float:
    """Single-window SSIM over the whole array, for images too small to slide a window."""
    mx, my = x.mean(), y.mean()
    vx, vy = x.var(), y.var()
    cov = ((x - mx) * (y - my)).mean()
    num = (2 * mx * my + C1) * (2 * cov + C2)
    den = (mx * mx + my * my + C1) * (vx + vy + C2)
    return float(num / den)


def supports_window(height: int, width: int) -> bool:
    return height >= WINDOW and width >= WINDOW


def ssim_map(luma_a: np.ndarray, luma_b: np.ndarray) -> np.ndarray:
    """Per-pixel SSIM of two luminance arrays (float64, same shape, both sides >= WINDOW)."""
    _, smap = structural_similarity(
        luma_a.astype(np.float64),
        luma_b.astype(np.float64),
        gaussian_weights=True,
        sigma=SIGMA,
        use_sample_covariance=False,
        data_range=255.0,
        full=True,
    )
    return smap


def ssim_partial(
    a: np.ndarray, b: np.ndarray, crop: tuple[int, int] = None
) -> tuple[float, int]:
    """
    Sum and count of per-pixel SSIM values over the ``crop`` rows of two RGBA bands.

    Summing partials from halo-padded bands and dividing by the total count
    reproduces the full-image score.
    """
    smap = ssim_map(luminance(a), luminance(b))
    if crop is not None:
        smap = smap[crop[0] : crop[1]]
    return float(smap.sum(dtype=np.float64)), int(smap.size)


def finalize(total: float, count: int) -> float:
    if count <= 0:
        return 0.0
    return float(min(1.0, max(0.0, total / count)))


def ssim_score(a: np.ndarray, b: np.ndarray) -> float:
    """
    SSIM between two equally-sized RGBA arrays, in [0, 1] (1 = identical).

    Uses an 11x11 Gaussian window (sigma 1.5) averaged over every pixel;
    images smaller than the window fall back to a single global window.
    """
    h, w = a.shape[:2]
    if not supports_window(h, w):
        logger.debug(f"image {w}x{h} smaller than SSIM window, using global SSIM")
        score = _global_ssim(
            luminance(a).astype(np.float64), luminance(b).astype(np.float64)
        )
        return finalize(score, 1)
    return finalize(*ssim_partial(a, b))
