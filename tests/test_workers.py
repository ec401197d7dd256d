import asyncio
import threading
import time
from unittest.mock import patch

import numpy as np
import pytest

from vrdiff import workers
from vrdiff.loader import RawImage
from vrdiff.workers import (
    ComparisonParams,
    ParallelStrategy,
    SynchronousStrategy,
    WorkerError,
    WorkerPool,
    WorkerPoolCoordinator,
    plan_tiles,
)
from vrdiff.zones import Rect


def _pair(width: int = 120, height: int = 160, seed: int = 0):
    rng = np.random.default_rng(seed)
    base = rng.integers(0, 256, (height, width, 4), dtype=np.uint8)
    base[..., 3] = 255
    changed = base.copy()
    # Blocks placed across likely tile seams, plus a lone pixel
    changed[30:90, 10:14, :3] = 0
    changed[70:75, 50:110, :3] = 255
    changed[120:150, 60:70, :3] //= 3
    changed[5, 5, :3] = 255 - changed[5, 5, :3]
    return RawImage.from_array(base), RawImage.from_array(changed)


def _forced(**extra) -> WorkerPoolCoordinator:
    config = {"threshold_bytes": 0, "max_workers": 4}
    config.update(extra)
    return WorkerPoolCoordinator(config)


def _boxes(components):
    return sorted((c.y0, c.x0, c.y1, c.x1, c.pixel_count) for c in components)


class TestPlanTiles:
    def test_tiles_cover_rows_in_order(self):
        tiles = plan_tiles(100, 4)
        assert len(tiles) == 3  # 32-row minimum
        assert tiles[0].row_start == 0
        assert tiles[-1].row_stop == 100
        for upper, lower in zip(tiles, tiles[1:]):
            assert upper.row_stop == lower.row_start

    def test_halo(self):
        tiles = plan_tiles(200, 2, halo=5)
        assert tiles[0].band_start == 0
        assert tiles[0].band_stop == tiles[0].row_stop + 5
        assert tiles[1].band_start == tiles[1].row_start - 5
        assert tiles[1].band_stop == 200
        assert tiles[1].crop == (5, 5 + tiles[1].row_stop - tiles[1].row_start)

    def test_short_image_is_one_tile(self):
        tiles = plan_tiles(20, 8)
        assert len(tiles) == 1
        assert (tiles[0].row_start, tiles[0].row_stop) == (0, 20)


class TestWorkerPool:
    def test_lazy_provisioning(self):
        pool = WorkerPool(2)
        assert pool.size == 0
        a = pool.try_acquire()
        b = pool.try_acquire()
        assert pool.size == 2
        assert pool.busy == 2
        assert pool.try_acquire() is None
        pool.release(a)
        assert pool.try_acquire() is a
        pool.release(a)
        pool.release(b)
        assert pool.busy == 0
        pool.terminate()

    def test_acquire_timeout(self):
        pool = WorkerPool(1)
        handle = pool.acquire(timeout=1)
        with pytest.raises(WorkerError):
            pool.acquire(timeout=0.05)
        pool.release(handle)
        pool.terminate()

    def test_discard_frees_a_slot(self):
        pool = WorkerPool(1)
        handle = pool.try_acquire()
        pool.discard(handle)
        assert handle.state == "terminated"
        assert pool.size == 0
        fresh = pool.try_acquire()
        assert fresh is not None and fresh is not handle
        pool.terminate()

    def test_terminate_is_idempotent(self):
        pool = WorkerPool(2)
        pool.try_acquire()
        pool.terminate()
        pool.terminate()
        assert pool.size == 0


class TestCoordinator:
    def test_should_use_workers_for_4k(self):
        coordinator = WorkerPoolCoordinator({"max_workers": 4})
        assert coordinator.should_use_workers(3840 * 2160 * 4)
        assert not coordinator.should_use_workers(100 * 100 * 4)

    def test_disabled(self):
        coordinator = WorkerPoolCoordinator({"enabled": False})
        assert not coordinator.is_supported
        assert not coordinator.should_use_workers(3840 * 2160 * 4)

    def test_single_worker_is_unsupported(self):
        assert not WorkerPoolCoordinator({"max_workers": 1}).is_supported

    def test_pool_size_is_clamped(self):
        assert WorkerPoolCoordinator({"max_workers": 64}).max_workers == workers.MAX_POOL_SIZE

    def test_parallel_path_dispatches_tiles(self):
        a, b = _pair()
        coordinator = _forced()
        try:
            with patch.object(workers, "run_tile", wraps=workers.run_tile) as spy:
                outcome = asyncio.run(coordinator.run(a, b, ComparisonParams()))
            assert spy.call_count > 1
            assert outcome.used_workers
            status = coordinator.status()
            assert status.pool_size >= 2
            assert status.busy == 0
            assert status.fallbacks == 0
        finally:
            coordinator.terminate()

    @pytest.mark.parametrize(
        "params",
        [
            ComparisonParams(),
            ComparisonParams(threshold=0.3, ignore_antialiasing=True),
            ComparisonParams(ignore_colors=True, ignore_regions=(Rect(0, 60, 30, 40),)),
        ],
    )
    def test_parallel_matches_synchronous(self, params):
        a, b = _pair()
        expected = SynchronousStrategy.compute(a, b, params)
        coordinator = _forced()
        try:
            outcome = asyncio.run(coordinator.run(a, b, params))
        finally:
            coordinator.terminate()

        assert outcome.used_workers
        assert outcome.diff_count == expected.diff_count
        assert outcome.ignored_count == expected.ignored_count
        assert np.array_equal(outcome.mask, expected.mask)
        assert _boxes(outcome.components) == _boxes(expected.components)
        assert outcome.delta_sum == pytest.approx(expected.delta_sum, rel=1e-6)
        assert outcome.delta_max == pytest.approx(expected.delta_max)
        assert outcome.ssim_score == pytest.approx(expected.ssim_score, abs=1e-6)

    def test_component_spanning_seams_is_stitched(self):
        base = np.zeros((160, 40, 4), dtype=np.uint8)
        base[..., 3] = 255
        changed = base.copy()
        changed[:, 20, :3] = 255  # one column, full height
        a, b = RawImage.from_array(base), RawImage.from_array(changed)
        coordinator = _forced()
        try:
            outcome = asyncio.run(coordinator.run(a, b, ComparisonParams()))
        finally:
            coordinator.terminate()
        assert outcome.used_workers
        assert len(outcome.components) == 1
        comp = outcome.components[0]
        assert (comp.y0, comp.y1, comp.pixel_count) == (0, 159, 160)

    def test_worker_failure_falls_back(self):
        a, b = _pair()
        expected = SynchronousStrategy.compute(a, b, ComparisonParams())
        coordinator = _forced()
        try:
            with patch.object(workers, "run_tile", side_effect=RuntimeError("worker crashed")):
                outcome = asyncio.run(coordinator.run(a, b, ComparisonParams()))
            assert not outcome.used_workers
            assert outcome.diff_count == expected.diff_count
            assert coordinator.status().fallbacks == 1
            assert coordinator.status().busy == 0
        finally:
            coordinator.terminate()

    def test_narrow_image_falls_back(self):
        base = np.zeros((100, 6, 4), dtype=np.uint8)
        a = b = RawImage.from_array(base)
        coordinator = _forced()
        try:
            outcome = asyncio.run(coordinator.run(a, b, ComparisonParams()))
        finally:
            coordinator.terminate()
        assert not outcome.used_workers
        assert coordinator.status().fallbacks == 1

    def test_small_image_stays_synchronous(self):
        a, b = _pair(40, 40)
        coordinator = WorkerPoolCoordinator({"max_workers": 4})
        with patch.object(workers, "run_tile") as spy:
            outcome = asyncio.run(coordinator.run(a, b, ComparisonParams()))
        spy.assert_not_called()
        assert not outcome.used_workers
        assert coordinator.status().pool_size == 0

    def test_synchronous_path_runs_off_the_event_loop(self):
        a, b = _pair()
        coordinator = WorkerPoolCoordinator({"enabled": False})
        real_compute = SynchronousStrategy.compute
        entered, release = threading.Event(), threading.Event()

        def slow_compute(baseline, comparison, params):
            entered.set()
            assert release.wait(5)
            return real_compute(baseline, comparison, params)

        async def scenario():
            task = asyncio.create_task(coordinator.run(a, b, ComparisonParams()))
            while not entered.is_set():
                await asyncio.sleep(0.005)
            release.set()
            return await task

        with patch.object(coordinator.synchronous, "compute", side_effect=slow_compute):
            outcome = asyncio.run(scenario())
        assert not outcome.used_workers
        assert outcome.diff_count == real_compute(a, b, ComparisonParams()).diff_count

    def test_cancelled_comparison_returns_its_units(self):
        a, b = _pair()
        coordinator = _forced(max_workers=2)
        real_tile = workers.run_tile
        started = threading.Event()

        def slow_tile(job):
            started.set()
            time.sleep(0.2)
            return real_tile(job)

        async def scenario():
            task = asyncio.create_task(coordinator.run(a, b, ComparisonParams()))
            while not started.is_set():
                await asyncio.sleep(0.005)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        try:
            with patch.object(workers, "run_tile", side_effect=slow_tile):
                asyncio.run(scenario())
                deadline = time.monotonic() + 3
                while coordinator.status().busy and time.monotonic() < deadline:
                    time.sleep(0.01)
            status = coordinator.status()
            assert status.busy == 0
            assert status.pool_size == 2
            assert status.fallbacks == 0

            outcome = asyncio.run(coordinator.run(a, b, ComparisonParams()))
            assert outcome.used_workers
            assert coordinator.status().busy == 0
        finally:
            coordinator.terminate()

    def test_cancelled_wait_for_a_unit_hands_it_back(self):
        pool = WorkerPool(1)
        strategy = ParallelStrategy(pool, timeout=5)
        held = pool.try_acquire()

        async def scenario():
            task = asyncio.create_task(strategy._acquire())
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            pool.release(held)

        try:
            asyncio.run(scenario())
            deadline = time.monotonic() + 3
            while pool.busy and time.monotonic() < deadline:
                time.sleep(0.01)
            assert pool.busy == 0
            assert pool.size == 1
            assert pool.try_acquire() is held
        finally:
            pool.terminate()
