"""Worker pool coordinator — tiles large comparisons across pooled worker units."""

import asyncio
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from vrdiff import ssim
from vrdiff.loader import RawImage
from vrdiff.pixels import Component, compare_pixels

logger = logging.getLogger(__name__)

MAX_POOL_SIZE = 8
MIN_TILE_ROWS = 32
# Rows of context above and below each tile: enough for the SSIM window,
# which also covers the 3x3 anti-aliasing neighbourhood.
HALO_ROWS = ssim.RADIUS


class WorkerError(Exception):
    """A worker unit crashed, timed out or could not run the tile."""


@dataclass
class WorkerStatus:
    """Read-only snapshot of the worker pool."""

    pool_size: int
    is_supported: bool
    max_workers: int
    hardware_concurrency: int
    busy: int = 0
    fallbacks: int = 0

    def to_dict(self) -> dict:
        return {
            "pool_size": self.pool_size,
            "is_supported": self.is_supported,
            "max_workers": self.max_workers,
            "hardware_concurrency": self.hardware_concurrency,
            "busy": self.busy,
            "fallbacks": self.fallbacks,
        }


@dataclass(frozen=True)
class ComparisonParams:
    """Pixel comparison settings shared by every unit of one comparison."""

    threshold: float = 0.1
    ignore_colors: bool = False
    ignore_antialiasing: bool = False
    ignore_regions: tuple = ()


@dataclass
class ComparisonOutcome:
    """Merged result of the pixel and SSIM work for one image pair."""

    mask: np.ndarray
    components: list = field(default_factory=list)
    diff_count: int = 0
    ignored_count: int = 0
    delta_sum: float = 0.0
    delta_max: float = 0.0
    ssim_score: float = 1.0
    used_workers: bool = False


class WorkerHandle:
    """One pooled unit: a single-thread executor that moves between idle and busy."""

    def __init__(self, index: int):
        self.index = index
        self.state = "idle"  # idle | busy | terminated
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"vrdiff-worker-{index}"
        )

    def submit(self, fn, *args) -> Future:
        if self.state == "terminated":
            raise WorkerError(f"worker {self.index} has been terminated")
        return self._executor.submit(fn, *args)

    def terminate(self):
        self.state = "terminated"
        self._executor.shutdown(wait=False, cancel_futures=True)


class WorkerPool:
    """Bounded pool of worker handles with explicit acquire/release, provisioned lazily."""

    def __init__(self, max_workers: int):
        self.max_workers = max_workers
        self._handles: list[WorkerHandle] = []
        self._idle: list[WorkerHandle] = []
        self._next_index = 0
        self._cond = threading.Condition()

    @property
    def size(self) -> int:
        with self._cond:
            return len(self._handles)

    @property
    def busy(self) -> int:
        with self._cond:
            return len(self._handles) - len(self._idle)

    def _take(self) -> Optional[WorkerHandle]:
        if self._idle:
            handle = self._idle.pop()
        elif len(self._handles) < self.max_workers:
            handle = WorkerHandle(self._next_index)
            self._next_index += 1
            self._handles.append(handle)
            logger.debug(f"provisioned worker {handle.index} ({len(self._handles)}/{self.max_workers})")
        else:
            return None
        handle.state = "busy"
        return handle

    def try_acquire(self) -> Optional[WorkerHandle]:
        with self._cond:
            return self._take()

    def acquire(self, timeout: float = None) -> WorkerHandle:
        """Block until a unit is free. Raises WorkerError on timeout."""
        with self._cond:
            ok = self._cond.wait_for(
                lambda: self._idle or len(self._handles) < self.max_workers, timeout
            )
            if not ok:
                raise WorkerError("timed out waiting for a free worker")
            return self._take()

    def release(self, handle: WorkerHandle):
        with self._cond:
            if handle not in self._handles:
                # Pool was terminated while the unit was busy
                handle.terminate()
                return
            handle.state = "idle"
            self._idle.append(handle)
            self._cond.notify()

    def discard(self, handle: WorkerHandle):
        """Drop a failed unit; a fresh one is provisioned on demand."""
        with self._cond:
            if handle in self._handles:
                self._handles.remove(handle)
            if handle in self._idle:
                self._idle.remove(handle)
            self._cond.notify()
        handle.terminate()
        logger.debug(f"discarded worker {handle.index}")

    def terminate(self):
        with self._cond:
            handles = list(self._handles)
            self._handles.clear()
            self._idle.clear()
            self._cond.notify_all()
        for handle in handles:
            handle.terminate()
        if handles:
            logger.debug(f"terminated {len(handles)} worker(s)")


@dataclass(frozen=True)
class Tile:
    """Row range [row_start, row_stop) plus the halo-padded band [band_start, band_stop)."""

    index: int
    row_start: int
    row_stop: int
    band_start: int
    band_stop: int

    @property
    def crop(self) -> tuple[int, int]:
        return (self.row_start - self.band_start, self.row_stop - self.band_start)


def plan_tiles(
    height: int, units: int, halo: int = HALO_ROWS, min_rows: int = MIN_TILE_ROWS
) -> list[Tile]:
    """Split ``height`` rows into at most ``units`` contiguous tiles of at least ``min_rows``."""
    count = max(1, min(units, height // min_rows))
    bounds = [round(i * height / count) for i in range(count + 1)]
    return [
        Tile(
            index=i,
            row_start=bounds[i],
            row_stop=bounds[i + 1],
            band_start=max(0, bounds[i] - halo),
            band_stop=min(height, bounds[i + 1] + halo),
        )
        for i in range(count)
    ]


@dataclass(frozen=True, eq=False)
class TileJob:
    tile: Tile
    baseline: np.ndarray  # read-only band
    comparison: np.ndarray
    params: ComparisonParams


@dataclass(frozen=True, eq=False)
class TileResult:
    tile: Tile
    mask: np.ndarray
    labels: np.ndarray
    components: tuple
    diff_count: int
    ignored_count: int
    delta_sum: float
    delta_max: float
    ssim_sum: float
    ssim_count: int


def _band(pixels: np.ndarray, tile: Tile) -> np.ndarray:
    band = np.array(pixels[tile.band_start : tile.band_stop])
    band.setflags(write=False)
    return band


def run_tile(job: TileJob) -> TileResult:
    """Compare one band. Runs inside a worker unit and touches nothing but its job."""
    tile, params = job.tile, job.params
    cmp = compare_pixels(
        job.baseline,
        job.comparison,
        threshold=params.threshold,
        ignore_colors=params.ignore_colors,
        ignore_antialiasing=params.ignore_antialiasing,
        ignore_regions=list(params.ignore_regions),
        row_offset=tile.band_start,
        crop=tile.crop,
    )
    ssim_sum, ssim_count = ssim.ssim_partial(job.baseline, job.comparison, tile.crop)
    return TileResult(
        tile=tile,
        mask=cmp.mask,
        labels=cmp.labels,
        components=tuple(cmp.components),
        diff_count=cmp.diff_count,
        ignored_count=cmp.ignored_count,
        delta_sum=cmp.delta_sum,
        delta_max=cmp.delta_max,
        ssim_sum=ssim_sum,
        ssim_count=ssim_count,
    )


def _find(parent: list, i: int) -> int:
    while parent[i] != i:
        parent[i] = parent[parent[i]]
        i = parent[i]
    return i


def stitch_components(results: list[TileResult]) -> list[Component]:
    """
    Merge per-tile components, joining those that touch across a tile seam
    (4-connectivity: same column, adjacent rows).
    """
    offsets = []
    merged: list[Component] = []
    for res in results:
        offsets.append(len(merged))
        merged.extend(res.components)
    parent = list(range(len(merged)))

    for k in range(len(results) - 1):
        upper, lower = results[k], results[k + 1]
        if not upper.components or not lower.components:
            continue
        above = upper.labels[-1]
        below = lower.labels[0]
        touching = (above > 0) & (below > 0)
        if not np.any(touching):
            continue
        pairs = np.unique(np.stack([above[touching], below[touching]], axis=1), axis=0)
        for la, lb in pairs:
            ra = _find(parent, offsets[k] + int(la) - 1)
            rb = _find(parent, offsets[k + 1] + int(lb) - 1)
            if ra != rb:
                parent[max(ra, rb)] = min(ra, rb)

    groups: dict[int, Component] = {}
    for i, comp in enumerate(merged):
        root = _find(parent, i)
        groups[root] = groups[root].merge(comp) if root in groups else comp
    return [groups[root] for root in sorted(groups)]


def merge_tiles(results: list[TileResult]) -> ComparisonOutcome:
    """Combine tile results in row order into one outcome."""
    results = sorted(results, key=lambda r: r.tile.index)
    ssim_sum = sum(r.ssim_sum for r in results)
    ssim_count = sum(r.ssim_count for r in results)
    return ComparisonOutcome(
        mask=np.vstack([r.mask for r in results]),
        components=stitch_components(results),
        diff_count=sum(r.diff_count for r in results),
        ignored_count=sum(r.ignored_count for r in results),
        delta_sum=sum(r.delta_sum for r in results),
        delta_max=max((r.delta_max for r in results), default=0.0),
        ssim_score=ssim.finalize(ssim_sum, ssim_count),
        used_workers=True,
    )


class ComparisonStrategy:
    """How the pixel and SSIM work of one comparison gets executed."""

    name = "base"

    async def run(
        self, baseline: RawImage, comparison: RawImage, params: ComparisonParams
    ) -> ComparisonOutcome:
        raise NotImplementedError


class SynchronousStrategy(ComparisonStrategy):
    """The full, unpartitioned algorithm in a single thread, off the event loop."""

    name = "synchronous"

    async def run(self, baseline, comparison, params):
        return await asyncio.to_thread(self.compute, baseline, comparison, params)

    @staticmethod
    def compute(
        baseline: RawImage, comparison: RawImage, params: ComparisonParams
    ) -> ComparisonOutcome:
        cmp = compare_pixels(
            baseline.pixels,
            comparison.pixels,
            threshold=params.threshold,
            ignore_colors=params.ignore_colors,
            ignore_antialiasing=params.ignore_antialiasing,
            ignore_regions=list(params.ignore_regions),
        )
        return ComparisonOutcome(
            mask=cmp.mask,
            components=cmp.components,
            diff_count=cmp.diff_count,
            ignored_count=cmp.ignored_count,
            delta_sum=cmp.delta_sum,
            delta_max=cmp.delta_max,
            ssim_score=ssim.ssim_score(baseline.pixels, comparison.pixels),
            used_workers=False,
        )


class ParallelStrategy(ComparisonStrategy):
    """Row tiles dispatched to pooled units, merged back in row order."""

    name = "parallel"

    def __init__(self, pool: WorkerPool, timeout: float = 30.0):
        self.pool = pool
        self.timeout = timeout

    def _settle(self, handle: WorkerHandle, future: Future):
        """Return a unit whose tile was abandoned, once the tile has really finished."""
        if not future.cancelled() and future.exception() is not None:
            self.pool.discard(handle)
        else:
            self.pool.release(handle)

    async def _acquire(self) -> WorkerHandle:
        handle = self.pool.try_acquire()
        if handle is not None:
            return handle
        slot = Future()
        asyncio.get_running_loop().run_in_executor(None, self._acquire_into, slot)
        try:
            return await asyncio.wrap_future(slot)
        except asyncio.CancelledError:
            if not slot.cancel():
                slot.add_done_callback(self._return_unclaimed)
            raise

    def _acquire_into(self, slot: Future):
        try:
            handle = self.pool.acquire(self.timeout)
        except Exception as e:
            if slot.set_running_or_notify_cancel():
                slot.set_exception(e)
            return
        if not slot.set_running_or_notify_cancel():
            # Nobody is waiting any more
            self.pool.release(handle)
            return
        slot.set_result(handle)

    def _return_unclaimed(self, slot: Future):
        if not slot.cancelled() and slot.exception() is None:
            self.pool.release(slot.result())

    async def dispatch(self, job: TileJob) -> TileResult:
        handle = await self._acquire()
        try:
            future = handle.submit(run_tile, job)
        except BaseException:
            self.pool.discard(handle)
            raise
        try:
            result = await asyncio.wait_for(asyncio.wrap_future(future), self.timeout)
        except asyncio.CancelledError:
            future.add_done_callback(lambda f: self._settle(handle, f))
            raise
        except asyncio.TimeoutError as e:
            self.pool.discard(handle)
            raise WorkerError(
                f"tile {job.tile.index} timed out on worker {handle.index} after {self.timeout}s"
            ) from e
        except Exception as e:
            self.pool.discard(handle)
            raise WorkerError(
                f"tile {job.tile.index} failed on worker {handle.index}: {e}"
            ) from e
        self.pool.release(handle)
        logger.debug(
            f"tile {job.tile.index} rows {job.tile.row_start}-{job.tile.row_stop} "
            f"done on worker {handle.index}: {result.diff_count} px"
        )
        return result

    async def run(self, baseline, comparison, params):
        if not ssim.supports_window(MIN_TILE_ROWS, baseline.width):
            raise WorkerError(f"image width {baseline.width} too narrow to tile")
        tiles = plan_tiles(baseline.height, self.pool.max_workers)
        jobs = [
            TileJob(
                tile=t,
                baseline=_band(baseline.pixels, t),
                comparison=_band(comparison.pixels, t),
                params=params,
            )
            for t in tiles
        ]
        results = await asyncio.gather(
            *(self.dispatch(job) for job in jobs), return_exceptions=True
        )
        for res in results:
            if isinstance(res, BaseException):
                raise res
        return merge_tiles(results)


class WorkerPoolCoordinator:
    """Chooses between the parallel and synchronous strategies and owns the pool."""

    def __init__(self, config: dict = None):
        config = config or {}
        self.enabled = config.get("enabled", True)
        self.hardware_concurrency = os.cpu_count() or 1
        max_workers = config.get("max_workers") or max(
            2, min(self.hardware_concurrency, MAX_POOL_SIZE)
        )
        self.max_workers = max(1, min(int(max_workers), MAX_POOL_SIZE))
        self.threshold_bytes = config.get("threshold_bytes", 4_000_000)
        self.timeout = config.get("timeout", 30.0)

        self.pool = WorkerPool(self.max_workers)
        self.synchronous = SynchronousStrategy()
        self.parallel = ParallelStrategy(self.pool, self.timeout)
        self._fallbacks = 0
        self._lock = threading.Lock()

    @property
    def is_supported(self) -> bool:
        return bool(self.enabled) and self.max_workers >= 2

    def should_use_workers(self, byte_size: int) -> bool:
        """True when the buffer is large enough to be worth splitting and units are available."""
        return self.is_supported and byte_size > self.threshold_bytes

    def select_strategy(self, byte_size: int) -> ComparisonStrategy:
        if self.should_use_workers(byte_size):
            return self.parallel
        return self.synchronous

    async def run(
        self, baseline: RawImage, comparison: RawImage, params: ComparisonParams
    ) -> ComparisonOutcome:
        strategy = self.select_strategy(baseline.byte_size)
        logger.debug(
            f"{strategy.name} comparison of {baseline.width}x{baseline.height} "
            f"({baseline.byte_size} bytes)"
        )
        if strategy is self.synchronous:
            return await self.synchronous.run(baseline, comparison, params)
        try:
            return await strategy.run(baseline, comparison, params)
        except Exception as e:
            with self._lock:
                self._fallbacks += 1
            logger.warning(f"Parallel comparison failed, falling back to synchronous: {e}")
            return await self.synchronous.run(baseline, comparison, params)

    def status(self) -> WorkerStatus:
        with self._lock:
            fallbacks = self._fallbacks
        return WorkerStatus(
            pool_size=self.pool.size,
            is_supported=self.is_supported,
            max_workers=self.max_workers,
            hardware_concurrency=self.hardware_concurrency,
            busy=self.pool.busy,
            fallbacks=fallbacks,
        )

    def terminate(self):
        self.pool.terminate()
