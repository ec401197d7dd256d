"""Ignore regions — rectangles excluded from diff scoring, declared or detected."""

import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# Common IAB banner sizes (width, height)
AD_SIZES = [(300, 250), (728, 90), (320, 50), (160, 600), (300, 600), (970, 250)]


@dataclass(frozen=True)
class Rect:
    """An axis-aligned rectangle in baseline pixel coordinates."""

    x: int
    y: int
    width: int
    height: int
    name: str = ""

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def x2(self) -> int:
        return self.x + self.width

    @property
    def y2(self) -> int:
        return self.y + self.height

    def clamp(self, img_w: int, img_h: int) -> Optional["Rect"]:
        """Clip to the image bounds. Returns None when nothing is left."""
        x1 = min(max(0, int(self.x)), img_w)
        y1 = min(max(0, int(self.y)), img_h)
        x2 = min(max(0, int(self.x + self.width)), img_w)
        y2 = min(max(0, int(self.y + self.height)), img_h)
        if x2 <= x1 or y2 <= y1:
            return None
        return Rect(x1, y1, x2 - x1, y2 - y1, self.name)

    def contains(self, other: "Rect") -> bool:
        return (
            self.x <= other.x
            and self.y <= other.y
            and other.x2 <= self.x2
            and other.y2 <= self.y2
        )

    def to_dict(self) -> dict:
        d = {"x": self.x, "y": self.y, "width": self.width, "height": self.height}
        if self.name:
            d["name"] = self.name
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "Rect":
        return cls(
            x=int(data.get("x", 0)),
            y=int(data.get("y", 0)),
            width=int(data.get("width", data.get("w", 0))),
            height=int(data.get("height", data.get("h", 0))),
            name=data.get("name", ""),
        )

    def __str__(self) -> str:
        label = f"{self.name} " if self.name else ""
        return f"{label}({self.x},{self.y} {self.width}x{self.height})"


def parse_ignore_regions(regions_cfg: list) -> list[Rect]:
    """Parse ignore regions from config. Accepts dicts or Rect instances."""
    rects = []
    for r in regions_cfg or []:
        rects.append(r if isinstance(r, Rect) else Rect.from_dict(r))
    if rects:
        logger.debug(f"Loaded {len(rects)} ignore region(s): {', '.join(map(str, rects))}")
    return rects


def clamp_regions(rects: list[Rect], img_w: int, img_h: int) -> list[Rect]:
    """Clamp every rect to the image; empty results are dropped, duplicates merged."""
    clamped = []
    for rect in rects:
        c = rect.clamp(img_w, img_h)
        if c is not None and c not in clamped:
            clamped.append(c)
    return clamped


def build_ignore_mask(rects: list[Rect], img_w: int, img_h: int) -> np.ndarray:
    """
    Build a boolean mask that is True inside any ignore rect.
    Returns an array of shape (img_h, img_w).
    """
    mask = np.zeros((img_h, img_w), dtype=bool)
    for rect in clamp_regions(rects, img_w, img_h):
        mask[rect.y : rect.y2, rect.x : rect.x2] = True
    return mask


def apply_ignore_regions(
    diff_mask: np.ndarray, rects: list[Rect], row_offset: int = 0
) -> np.ndarray:
    """
    Clear diff pixels that fall inside any ignore rect.

    ``diff_mask`` may be a horizontal band of a larger image starting at
    ``row_offset``; rects are always in full-image coordinates. Returns a new
    mask, the input is left untouched.
    """
    out = diff_mask.copy()
    if not rects:
        return out
    band_h, img_w = out.shape[:2]
    for rect in rects:
        y1 = max(rect.y - row_offset, 0)
        y2 = min(rect.y2 - row_offset, band_h)
        x1 = max(rect.x, 0)
        x2 = min(rect.x2, img_w)
        if y2 > y1 and x2 > x1:
            out[y1:y2, x1:x2] = False
    return out


def _matches_ad_size(w: int, h: int, tolerance: float = 0.1) -> bool:
    for aw, ah in AD_SIZES:
        if abs(w - aw) <= aw * tolerance and abs(h - ah) <= ah * tolerance:
            return True
    return False


def detect_ignore_regions(
    baseline: np.ndarray,
    comparison: np.ndarray,
    change_threshold: int = 16,
    min_text_height: int = 6,
    max_text_height: int = 64,
    min_edge_density: float = 0.05,
) -> list[Rect]:
    """
    Propose rectangles that look like volatile content between two RGBA images.

    Changed pixels are smeared horizontally so glyphs merge into text lines;
    short wide blobs with dense edges are proposed as "text" (clocks, counters,
    timestamps), and blobs shaped like standard ad slots as "advertisement".
    Proposals are only suggestions; nothing is excluded unless the caller
    opts in.
    """
    gray_a = cv2.cvtColor(np.ascontiguousarray(baseline), cv2.COLOR_RGBA2GRAY)
    gray_b = cv2.cvtColor(np.ascontiguousarray(comparison), cv2.COLOR_RGBA2GRAY)
    changed = (cv2.absdiff(gray_a, gray_b) > change_threshold).astype(np.uint8) * 255
    if not np.any(changed):
        return []

    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (9, 3))
    merged = cv2.dilate(changed, kernel, iterations=1)
    count, _, stats, _ = cv2.connectedComponentsWithStats(merged, connectivity=8)

    edges_a = cv2.Canny(gray_a, 50, 150)
    edges_b = cv2.Canny(gray_b, 50, 150)
    img_h, img_w = gray_a.shape

    proposals = []
    for label in range(1, count):
        x, y, w, h, _ = (int(v) for v in stats[label])
        if _matches_ad_size(w, h):
            proposals.append(Rect(x, y, w, h, "advertisement"))
            continue
        if not (min_text_height <= h <= max_text_height) or w < 2 * h:
            continue
        area = float(w * h)
        density = max(
            np.count_nonzero(edges_a[y : y + h, x : x + w]) / area,
            np.count_nonzero(edges_b[y : y + h, x : x + w]) / area,
        )
        if density >= min_edge_density:
            proposals.append(Rect(x, y, w, h, "text"))

    proposals = clamp_regions(proposals, img_w, img_h)
    proposals.sort(key=lambda r: (r.y, r.x, r.height, r.width))
    if proposals:
        logger.debug(f"Proposed {len(proposals)} ignore region(s): {', '.join(map(str, proposals))}")
    return proposals


def draw_ignore_regions(image, rects: list[Rect]):
    """Draw ignore regions on a copy of the image for debugging. Returns PIL Image."""
    from PIL import Image, ImageDraw

    debug_img = image.copy().convert("RGBA")
    w, h = debug_img.size

    # Hatch the ignored areas
    overlay = Image.new("RGBA", (w, h), (0, 0, 0, 0))
    draw_overlay = ImageDraw.Draw(overlay)
    for rect in clamp_regions(rects, w, h):
        draw_overlay.rectangle(
            [rect.x, rect.y, rect.x2 - 1, rect.y2 - 1], fill=(255, 200, 0, 90)
        )
    debug_img = Image.alpha_composite(debug_img, overlay)

    draw = ImageDraw.Draw(debug_img)
    for rect in clamp_regions(rects, w, h):
        draw.rectangle([rect.x, rect.y, rect.x2 - 1, rect.y2 - 1], outline="orange", width=2)
        if rect.name:
            draw.text((rect.x + 3, rect.y + 3), rect.name, fill="orange")

    return debug_img.convert("RGB")
