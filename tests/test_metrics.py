import threading

import pytest

from vrdiff.metrics import STAGES, PerformanceMonitor


class TestPerformanceMonitor:
    def test_empty(self):
        stats = PerformanceMonitor().stats()
        assert stats.total_comparisons == 0
        assert stats.success_rate == 0.0
        assert stats.average_comparison_time == 0.0
        assert stats.recent_comparison_times == []
        assert set(stats.stage_stats) == set(STAGES)

    def test_success_rate(self):
        monitor = PerformanceMonitor()
        monitor.record_comparison(10.0, True)
        monitor.record_comparison(30.0, False)
        stats = monitor.stats()
        assert stats.total_comparisons == 2
        assert stats.success_rate == 0.5
        assert stats.average_comparison_time == pytest.approx(20.0)

    def test_history_is_bounded(self):
        monitor = PerformanceMonitor(history_size=3)
        for i in range(5):
            monitor.record_comparison(float(i), True)
        stats = monitor.stats()
        assert stats.recent_comparison_times == [2.0, 3.0, 4.0]
        assert stats.total_comparisons == 5

    def test_stage_timing(self):
        monitor = PerformanceMonitor()
        with monitor.timing("perceptual_hash"):
            pass
        with pytest.raises(RuntimeError):
            with monitor.timing("perceptual_hash"):
                raise RuntimeError("boom")
        stage = monitor.stats().stage_stats["perceptual_hash"]
        assert stage["count"] == 2
        assert stage["min"] >= 0.0

    def test_reset(self):
        monitor = PerformanceMonitor()
        monitor.record_comparison(5.0, True)
        monitor.record_stage("image_loading", 1.0)
        monitor.reset()
        stats = monitor.stats()
        assert stats.total_comparisons == 0
        assert stats.stage_stats["image_loading"]["count"] == 0

    def test_concurrent_updates_are_not_lost(self):
        monitor = PerformanceMonitor(history_size=10)

        def record():
            for _ in range(500):
                monitor.record_comparison(1.0, True)

        threads = [threading.Thread(target=record) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        stats = monitor.stats()
        assert stats.total_comparisons == 4000
        assert stats.success_rate == 1.0

    def test_to_dict(self):
        monitor = PerformanceMonitor()
        monitor.record_comparison(2.0, True)
        d = monitor.stats().to_dict()
        assert d["total_comparisons"] == 1
        assert d["recent_comparison_times"] == [2.0]
