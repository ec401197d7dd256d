"""Diff engine — compares two screenshots and reports a reproducible verdict."""

import asyncio
import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field, fields
from typing import Optional

import numpy as np

from vrdiff.capture import Screenshot, create_screenshot
from vrdiff.loader import DiffError, InvalidImageDataError, RawImage, load_image
from vrdiff.metrics import PerformanceMonitor, PerformanceStats
from vrdiff.phash import hamming_distance, hash_similarity, perceptual_hash
from vrdiff.pixels import DiffRegion, build_regions, compare_pixels, render_diff_image
from vrdiff.ssim import ssim_score
from vrdiff.workers import ComparisonParams, WorkerPoolCoordinator, WorkerStatus
from vrdiff.zones import Rect, clamp_regions, detect_ignore_regions, parse_ignore_regions

logger = logging.getLogger(__name__)


class DimensionMismatchError(DiffError):
    code = "DIMENSION_MISMATCH"


def _setting(cfg: dict, key: str, default):
    """Config lookup where an explicit null (e.g. `threshold:` left blank in YAML) means the default."""
    value = cfg.get(key)
    return default if value is None else value


@dataclass
class DiffOptions:
    """
    Per-comparison settings. Fields left as None take the engine's configured
    default; ignore regions are added to the configured ones.
    """

    threshold: Optional[float] = None  # min normalized delta (0-1) for a pixel to differ
    ignore_colors: Optional[bool] = None
    ignore_antialiasing: Optional[bool] = None
    ignore_regions: list = field(default_factory=list)  # Rect or dicts
    auto_ignore_regions: Optional[bool] = None
    include_diff_image: Optional[bool] = None

    def merged_with(self, defaults: "DiffOptions") -> "DiffOptions":
        values = {}
        for f in fields(self):
            if f.name == "ignore_regions":
                continue
            own = getattr(self, f.name)
            values[f.name] = getattr(defaults, f.name) if own is None else own
        values["ignore_regions"] = parse_ignore_regions(
            defaults.ignore_regions
        ) + parse_ignore_regions(self.ignore_regions)
        return DiffOptions(**values)

    @classmethod
    def from_config(cls, diff_cfg: dict, regions_cfg: list = None) -> "DiffOptions":
        return cls(
            threshold=_setting(diff_cfg, "threshold", 0.1),
            ignore_colors=_setting(diff_cfg, "ignore_colors", False),
            ignore_antialiasing=_setting(diff_cfg, "ignore_antialiasing", False),
            ignore_regions=parse_ignore_regions(regions_cfg or []),
            auto_ignore_regions=_setting(diff_cfg, "auto_ignore_regions", False),
            include_diff_image=_setting(diff_cfg, "include_diff_image", True),
        )


@dataclass
class DiffRequest:
    baseline: Screenshot
    comparison: Screenshot
    options: Optional[DiffOptions] = None


@dataclass
class DiffMetrics:
    ssim_score: float = 1.0  # 0-1, 1 = structurally identical
    perceptual_distance: int = 0  # Hamming distance between perceptual hashes
    processing_time_ms: float = 0.0
    total_pixels: int = 0
    mean_color_delta: float = 0.0  # over differing pixels, 0-1
    max_color_delta: float = 0.0
    ignored_pixel_count: int = 0
    hash_similarity: float = 1.0
    used_workers: bool = False

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class VisualDiff:
    """Successful comparison payload."""

    pixel_difference_count: int
    percentage_difference: float
    regions: list[DiffRegion]
    metrics: DiffMetrics
    diff_image: Optional[np.ndarray] = field(default=None, repr=False)  # H x W x 4 RGBA
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    baseline_id: str = ""
    comparison_id: str = ""
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    threshold: float = 0.1
    status: str = "passed"  # passed | warning | failed
    baseline_hash: str = ""
    comparison_hash: str = ""
    suggested_ignore_regions: Optional[list] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "baseline_id": self.baseline_id,
            "comparison_id": self.comparison_id,
            "timestamp": self.timestamp,
            "status": self.status,
            "threshold": self.threshold,
            "pixel_difference_count": self.pixel_difference_count,
            "percentage_difference": self.percentage_difference,
            "regions": [r.to_dict() for r in self.regions],
            "metrics": self.metrics.to_dict(),
            "baseline_hash": self.baseline_hash,
            "comparison_hash": self.comparison_hash,
            "suggested_ignore_regions": (
                None
                if self.suggested_ignore_regions is None
                else [r.to_dict() for r in self.suggested_ignore_regions]
            ),
        }


@dataclass
class ErrorInfo:
    code: str
    message: str
    timestamp: float = field(default_factory=lambda: time.time() * 1000)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "timestamp": self.timestamp}


@dataclass
class DiffResult:
    """Either ``diff`` (success) or ``error`` (failure) is set, never both."""

    success: bool
    diff: Optional[VisualDiff] = None
    error: Optional[ErrorInfo] = None

    def __post_init__(self):
        if self.success != (self.diff is not None) or (self.diff is None) == (self.error is None):
            raise ValueError("DiffResult needs exactly one of diff (success) or error (failure)")

    @classmethod
    def failure(cls, code: str, message: str) -> "DiffResult":
        return cls(success=False, error=ErrorInfo(code=code, message=message))

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True, "diff": self.diff.to_dict()}
        return {"success": False, "error": self.error.to_dict()}


class DiffEngine:
    """
    Screenshot comparison engine.

    Owns a bounded worker pool, a small cache of decoded buffers and rolling
    performance metrics for its lifetime. ``compare_screenshots`` never raises;
    every failure comes back as a structured DiffResult.
    """

    def __init__(self, config: dict = None):
        config = config or {}
        diff_cfg = config.get("diff", {}) or {}
        memory_cfg = config.get("memory", {}) or {}

        self.default_options = DiffOptions.from_config(diff_cfg, config.get("ignore_regions", []))
        self.max_diff_percentage = _setting(diff_cfg, "max_diff_percentage", 0.1)
        self.min_ssim = _setting(diff_cfg, "min_ssim", 0.85)
        self.severity_low = _setting(diff_cfg, "severity_low", 0.001)
        self.severity_medium = _setting(diff_cfg, "severity_medium", 0.01)

        self.max_retained_bytes = _setting(memory_cfg, "max_retained_bytes", 8_000_000)
        self.cache_bytes = _setting(memory_cfg, "cache_bytes", 64_000_000)
        self._buffers: OrderedDict[str, RawImage] = OrderedDict()
        self._buffer_lock = threading.Lock()

        self.monitor = PerformanceMonitor(_setting(diff_cfg, "history_size", 100))
        self.coordinator = WorkerPoolCoordinator(config.get("workers", {}) or {})

        logger.debug(
            f"DiffEngine ready: threshold={self.default_options.threshold}, "
            f"max_workers={self.coordinator.max_workers}, "
            f"worker threshold={self.coordinator.threshold_bytes} bytes"
        )

    # --- public API ---

    async def compare_screenshots(self, request: DiffRequest) -> DiffResult:
        """Compare ``request.baseline`` against ``request.comparison``."""
        start = time.perf_counter()
        try:
            result = await self._compare(request, start)
        except DiffError as e:
            logger.error(f"Comparison failed [{e.code}]: {e.message}")
            result = DiffResult.failure(e.code, e.message)
        except Exception as e:
            logger.exception("Unexpected error during comparison")
            result = DiffResult.failure("COMPARISON_FAILED", str(e) or type(e).__name__)

        self.monitor.record_comparison((time.perf_counter() - start) * 1000, result.success)
        try:
            self.optimize_memory_usage()
        except Exception as e:
            logger.warning(f"Memory optimization failed: {e}")
        return result

    def compare_screenshots_sync(self, request: DiffRequest) -> DiffResult:
        """Blocking wrapper for scripts; must not be called from a running event loop."""
        return asyncio.run(self.compare_screenshots(request))

    async def batch_compare_screenshots(
        self,
        baseline: Screenshot,
        comparisons: list[Screenshot],
        options: DiffOptions = None,
    ) -> list[DiffResult]:
        """Compare one baseline against many screenshots. Results keep input order."""
        return list(
            await asyncio.gather(
                *(
                    self.compare_screenshots(DiffRequest(baseline, comparison, options))
                    for comparison in comparisons
                )
            )
        )

    def should_use_workers(self, byte_size: int) -> bool:
        return self.coordinator.should_use_workers(byte_size)

    def get_worker_status(self) -> WorkerStatus:
        return self.coordinator.status()

    def get_performance_metrics(self) -> PerformanceStats:
        return self.monitor.stats()

    def reset_performance_metrics(self):
        self.monitor.reset()

    def cleanup(self):
        """Terminate pooled workers, drop cached buffers and reset metrics. Safe to repeat."""
        self.coordinator.terminate()
        with self._buffer_lock:
            self._buffers.clear()
        self.monitor.reset()
        logger.debug("DiffEngine resources released")

    def optimize_memory_usage(self) -> int:
        """
        Apply the buffer retention policy: buffers larger than
        ``max_retained_bytes`` are dropped, then the least recently used ones
        until the cache fits ``cache_bytes``. Returns the bytes released.
        """
        freed = 0
        with self._buffer_lock:
            for key in [k for k, raw in self._buffers.items() if raw.byte_size > self.max_retained_bytes]:
                freed += self._buffers.pop(key).byte_size
            total = sum(raw.byte_size for raw in self._buffers.values())
            while self._buffers and total > self.cache_bytes:
                _, raw = self._buffers.popitem(last=False)
                total -= raw.byte_size
                freed += raw.byte_size
        if freed:
            logger.debug(f"released {freed} bytes of decoded image buffers")
        return freed

    def load_image_data(self, screenshot: Screenshot) -> RawImage:
        """Decode a screenshot, reusing a cached buffer for the same content."""
        key = screenshot.cache_key
        if key is None:
            return load_image(screenshot.encoded_image)
        with self._buffer_lock:
            cached = self._buffers.get(key)
            if cached is not None:
                self._buffers.move_to_end(key)
                return cached
        raw = load_image(screenshot.encoded_image)
        logger.debug(f"[{screenshot.name}] decoded {raw.width}x{raw.height}")
        with self._buffer_lock:
            self._buffers[key] = raw
        return raw

    def detect_ignore_regions(self, baseline, comparison) -> list[Rect]:
        """Propose likely-volatile regions (text, ads) between two images for review."""
        a = self._as_raw(baseline)
        b = self._as_raw(comparison)
        self._check_dimensions(a, b)
        return detect_ignore_regions(a.pixels, b.pixels)

    def calculate_similarity_score(self, image1, image2) -> float:
        """Blend of SSIM, perceptual hash and pixel agreement (0-1). Returns 0.0 on failure."""
        try:
            a = self._as_raw(image1)
            b = self._as_raw(image2)
            self._check_dimensions(a, b)
            structural = ssim_score(a.pixels, b.pixels)
            hashed = hash_similarity(perceptual_hash(a.pixels), perceptual_hash(b.pixels))
            cmp = compare_pixels(
                a.pixels, b.pixels, threshold=self.default_options.threshold, label=False
            )
            pixel = 1.0 - cmp.diff_count / (a.width * a.height)
            return float(min(1.0, max(0.0, structural * 0.5 + hashed * 0.3 + pixel * 0.2)))
        except Exception as e:
            logger.warning(f"Similarity calculation failed: {e}")
            return 0.0

    def determine_status(self, percentage_difference: float, ssim: float) -> str:
        pixel_failed = percentage_difference > self.max_diff_percentage
        ssim_failed = ssim < self.min_ssim
        if pixel_failed and ssim_failed:
            return "failed"
        if pixel_failed or ssim_failed:
            return "warning"
        return "passed"

    def optimize_settings(self, image) -> DiffOptions:
        """Suggest options for an image: large or busy images get a more tolerant threshold."""
        raw = self._as_raw(image)
        rgb = raw.pixels[..., :3].astype(np.int16)
        # Mean absolute RGB delta between horizontal neighbours
        complexity = float(np.abs(np.diff(rgb, axis=1)).sum(axis=-1).mean()) if raw.width > 1 else 0.0
        threshold = 0.3 if raw.width * raw.height > 1_000_000 else 0.2
        if complexity > 50:
            threshold = max(0.3, threshold)
        return DiffOptions(threshold=threshold, ignore_antialiasing=True)

    # --- internals ---

    def _as_raw(self, image) -> RawImage:
        if isinstance(image, Screenshot):
            return self.load_image_data(image)
        return load_image(image)

    async def _decode(self, screenshot: Screenshot) -> RawImage:
        try:
            return await asyncio.to_thread(self.load_image_data, screenshot)
        except DiffError:
            raise
        except Exception as e:
            raise InvalidImageDataError(
                f"[{screenshot.name}] failed to load image data: {e}"
            ) from e

    @staticmethod
    def _check_dimensions(a: RawImage, b: RawImage):
        if a.size != b.size:
            raise DimensionMismatchError(
                f"Image dimensions don't match: baseline ({a.width}x{a.height}) "
                f"vs comparison ({b.width}x{b.height})"
            )

    async def _compare(self, request: DiffRequest, start: float) -> DiffResult:
        if request is None or request.baseline is None or request.comparison is None:
            raise InvalidImageDataError("request needs both a baseline and a comparison screenshot")
        baseline_shot = self._as_screenshot(request.baseline, "baseline")
        comparison_shot = self._as_screenshot(request.comparison, "comparison")
        options = (request.options or DiffOptions()).merged_with(self.default_options)

        with self.monitor.timing("image_loading"):
            baseline = await self._decode(baseline_shot)
            comparison = await self._decode(comparison_shot)
        self._check_dimensions(baseline, comparison)

        width, height = baseline.size
        total_pixels = width * height
        rects = clamp_regions(options.ignore_regions, width, height)

        suggested = None
        if options.auto_ignore_regions:
            with self.monitor.timing("ignore_region_detection"):
                suggested = await asyncio.to_thread(
                    detect_ignore_regions, baseline.pixels, comparison.pixels
                )
            rects = clamp_regions(rects + suggested, width, height)

        threshold = float(min(1.0, max(0.0, options.threshold)))
        params = ComparisonParams(
            threshold=threshold,
            ignore_colors=bool(options.ignore_colors),
            ignore_antialiasing=bool(options.ignore_antialiasing),
            ignore_regions=tuple(rects),
        )
        with self.monitor.timing("diff_calculation"):
            outcome = await self.coordinator.run(baseline, comparison, params)

        with self.monitor.timing("perceptual_hash"):
            baseline_hash = await asyncio.to_thread(perceptual_hash, baseline.pixels)
            comparison_hash = await asyncio.to_thread(perceptual_hash, comparison.pixels)
        distance = hamming_distance(baseline_hash, comparison_hash)

        regions = build_regions(
            outcome.components, total_pixels, self.severity_low, self.severity_medium
        )
        diff_image = None
        if options.include_diff_image:
            with self.monitor.timing("diff_visualization"):
                diff_image = await asyncio.to_thread(
                    render_diff_image, baseline.pixels, outcome.mask
                )

        percentage = outcome.diff_count / total_pixels * 100
        metrics = DiffMetrics(
            ssim_score=outcome.ssim_score,
            perceptual_distance=distance,
            total_pixels=total_pixels,
            mean_color_delta=outcome.delta_sum / outcome.diff_count if outcome.diff_count else 0.0,
            max_color_delta=outcome.delta_max,
            ignored_pixel_count=outcome.ignored_count,
            hash_similarity=hash_similarity(baseline_hash, comparison_hash),
            used_workers=outcome.used_workers,
        )
        diff = VisualDiff(
            pixel_difference_count=outcome.diff_count,
            percentage_difference=percentage,
            regions=regions,
            metrics=metrics,
            diff_image=diff_image,
            baseline_id=baseline_shot.id,
            comparison_id=comparison_shot.id,
            threshold=threshold,
            status=self.determine_status(percentage, outcome.ssim_score),
            baseline_hash=baseline_hash,
            comparison_hash=comparison_hash,
            suggested_ignore_regions=suggested,
        )
        metrics.processing_time_ms = (time.perf_counter() - start) * 1000

        logger.info(
            f"[{baseline_shot.name} vs {comparison_shot.name}] {diff.status}: "
            f"{percentage:.3f}% pixels, SSIM={outcome.ssim_score:.4f}, "
            f"{len(regions)} region(s), {metrics.processing_time_ms:.0f}ms"
            f"{' (workers)' if outcome.used_workers else ''}"
        )
        return DiffResult(success=True, diff=diff)

    @staticmethod
    def _as_screenshot(value, name: str) -> Screenshot:
        if isinstance(value, Screenshot):
            return value
        return create_screenshot(value, name=name)


_engine: Optional[DiffEngine] = None
_engine_lock = threading.Lock()


def get_diff_engine(config: dict = None) -> DiffEngine:
    """Process-wide engine, created on first use."""
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = DiffEngine(config)
        return _engine
