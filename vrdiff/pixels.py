"""Pixel comparator — per-pixel deltas, anti-aliasing suppression, region labeling."""

import logging
import math
from dataclasses import dataclass, field

import cv2
import numpy as np

from vrdiff.zones import Rect, apply_ignore_regions

logger = logging.getLogger(__name__)

# Largest possible RGB euclidean distance (255 * sqrt(3))
MAX_RGB_DISTANCE = 255.0 * math.sqrt(3.0)

# Marker color used to paint differing pixels in the diff image
DIFF_COLOR = (255, 0, 0, 255)

SEVERITY_LEVELS = {"low": 0, "medium": 1, "high": 2}


@dataclass
class DiffRegion:
    """A 4-connected group of differing pixels."""

    x: int
    y: int
    width: int
    height: int
    pixel_count: int
    severity: str = "low"  # low | medium | high
    mean_delta: float = 0.0  # mean normalized delta of the region's pixels (0-1)

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def severity_level(self) -> int:
        return SEVERITY_LEVELS.get(self.severity, 0)

    def to_dict(self) -> dict:
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "pixel_count": self.pixel_count,
            "severity": self.severity,
            "mean_delta": round(self.mean_delta, 6),
        }

    def __str__(self) -> str:
        return f"({self.x},{self.y} {self.width}x{self.height}, {self.pixel_count}px {self.severity})"


@dataclass(frozen=True)
class Component:
    """Bounding box and pixel statistics of one labeled component (inclusive bounds)."""

    x0: int
    y0: int
    x1: int
    y1: int
    pixel_count: int
    delta_sum: float = 0.0

    def merge(self, other: "Component") -> "Component":
        return Component(
            x0=min(self.x0, other.x0),
            y0=min(self.y0, other.y0),
            x1=max(self.x1, other.x1),
            y1=max(self.y1, other.y1),
            pixel_count=self.pixel_count + other.pixel_count,
            delta_sum=self.delta_sum + other.delta_sum,
        )


@dataclass
class PixelComparison:
    """Outcome of comparing two equally-sized RGBA buffers (or bands of them)."""

    mask: np.ndarray  # bool, True where pixels differ
    delta: np.ndarray  # float32 normalized delta (0-1)
    diff_count: int = 0
    ignored_count: int = 0
    delta_sum: float = 0.0
    delta_max: float = 0.0
    labels: np.ndarray = None  # int32 component labels, 0 = background
    components: list = field(default_factory=list)  # Component per label, index = label - 1


def luminance(rgba: np.ndarray) -> np.ndarray:
    """Rec. 601 luma of an RGBA array as float32 (0-255)."""
    px = rgba.astype(np.float32)
    return 0.299 * px[..., 0] + 0.587 * px[..., 1] + 0.114 * px[..., 2]


def pixel_delta(a: np.ndarray, b: np.ndarray, ignore_colors: bool = False) -> np.ndarray:
    """
    Normalized per-pixel difference (0-1) between two RGBA arrays.

    Colors are compared by euclidean RGB distance, or by luma alone when
    ``ignore_colors`` is set; an alpha change counts on its own.
    """
    fa = a.astype(np.float32)
    fb = b.astype(np.float32)
    if ignore_colors:
        color = np.abs(luminance(a) - luminance(b)) / 255.0
    else:
        d = fa[..., :3] - fb[..., :3]
        color = np.sqrt(np.sum(d * d, axis=-1)) / MAX_RGB_DISTANCE
    alpha = np.abs(fa[..., 3] - fb[..., 3]) / 255.0
    return np.minimum(np.maximum(color, alpha), 1.0).astype(np.float32)


def _intermediate(luma: np.ndarray, other: np.ndarray) -> np.ndarray:
    kernel = np.ones((3, 3), dtype=np.uint8)
    low = cv2.erode(luma, kernel)
    high = cv2.dilate(luma, kernel)
    # A pixel sitting strictly inside its neighbourhood range lies on a gradient,
    # and the other image's value at that spot is already present nearby.
    on_gradient = (luma > low) & (luma < high)
    explained = (other >= low) & (other <= high)
    return on_gradient & explained


def antialiased_mask(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Pixels whose change looks like anti-aliasing in either image.

    A pixel qualifies when its 3x3 neighbourhood in one image has non-zero
    spread with the pixel strictly between the neighbourhood min and max, and
    the other image's value at the same spot falls inside that range.
    """
    luma_a = np.ascontiguousarray(luminance(a))
    luma_b = np.ascontiguousarray(luminance(b))
    return _intermediate(luma_a, luma_b) | _intermediate(luma_b, luma_a)


def compare_pixels(
    a: np.ndarray,
    b: np.ndarray,
    threshold: float = 0.1,
    ignore_colors: bool = False,
    ignore_antialiasing: bool = False,
    ignore_regions: list[Rect] = None,
    row_offset: int = 0,
    crop: tuple[int, int] = None,
    label: bool = True,
) -> PixelComparison:
    """
    Compare two equally-sized RGBA arrays.

    ``a`` and ``b`` may be horizontal bands of a larger image: ``row_offset``
    is the image row of the band's first row and ``crop`` the (start, stop)
    band rows to keep, so halo rows can feed the neighbourhood heuristic
    without being counted. Ignore regions are applied before labeling.
    """
    if a.shape != b.shape:
        raise ValueError(f"buffer shapes differ: {a.shape} vs {b.shape}")

    delta = pixel_delta(a, b, ignore_colors)
    mask = delta > threshold
    if ignore_antialiasing and np.any(mask):
        mask &= ~antialiased_mask(a, b)

    if crop is not None:
        start, stop = crop
        mask = mask[start:stop]
        delta = delta[start:stop]
        row_offset += start

    raw_count = int(np.count_nonzero(mask))
    if ignore_regions:
        mask = apply_ignore_regions(mask, ignore_regions, row_offset=row_offset)
    diff_count = int(np.count_nonzero(mask))

    result = PixelComparison(
        mask=mask,
        delta=delta,
        diff_count=diff_count,
        ignored_count=raw_count - diff_count,
    )
    if diff_count:
        hits = delta[mask]
        result.delta_sum = float(hits.sum(dtype=np.float64))
        result.delta_max = float(hits.max())
    if label:
        result.labels, result.components = label_regions(mask, delta, row_offset)
    return result


def label_regions(
    mask: np.ndarray, delta: np.ndarray = None, row_offset: int = 0
) -> tuple[np.ndarray, list[Component]]:
    """4-connected component labeling. Returns the label image and one Component per label."""
    if not np.any(mask):
        return np.zeros(mask.shape, dtype=np.int32), []

    count, labels, stats, _ = cv2.connectedComponentsWithStats(
        mask.astype(np.uint8), connectivity=4, ltype=cv2.CV_32S
    )
    if delta is not None:
        sums = np.bincount(labels.ravel(), weights=delta.ravel(), minlength=count)
    else:
        sums = np.zeros(count, dtype=np.float64)

    components = []
    for lbl in range(1, count):
        x, y, w, h, area = (int(v) for v in stats[lbl])
        components.append(
            Component(
                x0=x,
                y0=y + row_offset,
                x1=x + w - 1,
                y1=y + h - 1 + row_offset,
                pixel_count=area,
                delta_sum=float(sums[lbl]),
            )
        )
    return labels, components


def classify_severity(
    pixel_count: int, total_pixels: int, low: float = 0.001, medium: float = 0.01
) -> str:
    """Severity from the fraction of the image a region covers (monotonic in pixel_count)."""
    if total_pixels <= 0:
        return "high"
    ratio = pixel_count / total_pixels
    if ratio < low:
        return "low"
    if ratio < medium:
        return "medium"
    return "high"


def build_regions(
    components: list[Component],
    total_pixels: int,
    severity_low: float = 0.001,
    severity_medium: float = 0.01,
) -> list[DiffRegion]:
    """Turn components into DiffRegions in reading order (top-to-bottom, left-to-right)."""
    regions = []
    for c in components:
        regions.append(
            DiffRegion(
                x=c.x0,
                y=c.y0,
                width=c.x1 - c.x0 + 1,
                height=c.y1 - c.y0 + 1,
                pixel_count=c.pixel_count,
                severity=classify_severity(
                    c.pixel_count, total_pixels, severity_low, severity_medium
                ),
                mean_delta=c.delta_sum / c.pixel_count if c.pixel_count else 0.0,
            )
        )
    regions.sort(key=lambda r: (r.y, r.x, r.height, r.width, r.pixel_count))
    return regions


def render_diff_image(
    baseline: np.ndarray,
    mask: np.ndarray,
    color: tuple[int, int, int, int] = DIFF_COLOR,
    fade: float = 0.3,
) -> np.ndarray:
    """
    Diff visualization: the baseline as faded grayscale with differing pixels
    painted in the marker color. Returns an H x W x 4 uint8 RGBA array.
    """
    luma = luminance(baseline)
    faded = (255.0 - (255.0 - luma) * fade).astype(np.uint8)
    out = np.empty(baseline.shape[:2] + (4,), dtype=np.uint8)
    out[..., 0] = faded
    out[..., 1] = faded
    out[..., 2] = faded
    out[..., 3] = 255
    out[mask] = color
    return out
