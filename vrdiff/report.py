"""Reporters — console and JSON output of a comparison verdict for CI steps."""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from vrdiff.diff import DiffResult

logger = logging.getLogger(__name__)


class DiffReport:
    """Everything a reporter needs about one comparison."""

    def __init__(self, baseline_name: str, comparison_name: str, result: DiffResult):
        self.timestamp = datetime.now()
        self.baseline_name = baseline_name
        self.comparison_name = comparison_name
        self.result = result

    @property
    def status(self) -> str:
        if not self.result.success:
            return "error"
        return self.result.diff.status

    def format_text(self) -> str:
        ts = self.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        lines = [
            f"[{self.status.upper()}] {self.baseline_name} vs {self.comparison_name}",
            f"Time: {ts}",
        ]
        if not self.result.success:
            err = self.result.error
            lines.append(f"Error: {err.code}: {err.message}")
            return "\n".join(lines)

        diff = self.result.diff
        m = diff.metrics
        lines.append(
            f"Change: {diff.pixel_difference_count} px ({diff.percentage_difference:.3f}%), "
            f"SSIM={m.ssim_score:.4f}, hash distance={m.perceptual_distance}"
        )
        lines.append(
            f"Processing: {m.processing_time_ms:.0f}ms"
            f"{' on workers' if m.used_workers else ''}"
        )
        if m.ignored_pixel_count:
            lines.append(f"Ignored: {m.ignored_pixel_count} px inside ignore regions")
        if diff.regions:
            lines.append(f"Regions ({len(diff.regions)}):")
            for region in diff.regions[:10]:
                lines.append(f"  • {region}")
            if len(diff.regions) > 10:
                lines.append(f"  ... {len(diff.regions) - 10} more")
        if diff.suggested_ignore_regions:
            lines.append("Suggested ignore regions:")
            for rect in diff.suggested_ignore_regions:
                lines.append(f"  • {rect}")
        return "\n".join(lines)


class ConsoleReporter:
    """Logs the report with structured formatting."""

    def __init__(self, config: dict):
        self.enabled = config.get("enabled", True)
        self.level = config.get("level", "info")

    def send(self, report: DiffReport):
        if not self.enabled:
            return

        log_fn = {
            "info": logger.info,
            "warning": logger.warning,
            "error": logger.error,
        }.get(self.level, logger.info)
        if report.status in ("failed", "error") and log_fn is logger.info:
            log_fn = logger.warning

        log_fn(f"\n{'=' * 60}\n{report.format_text()}\n{'=' * 60}")


class JsonReporter:
    """Writes the result as JSON to a file, or to stdout when no path is set."""

    def __init__(self, config: dict):
        self.enabled = config.get("enabled", False)
        self.path = config.get("path", "")

    def send(self, report: DiffReport):
        if not self.enabled:
            return
        payload = {
            "baseline": report.baseline_name,
            "comparison": report.comparison_name,
            "status": report.status,
            **report.result.to_dict(),
        }
        text = json.dumps(payload, indent=2)
        if self.path:
            Path(self.path).write_text(text + "\n")
            logger.info(f"JSON report written to {self.path}")
        else:
            sys.stdout.write(text + "\n")


class ReportDispatcher:
    """Routes a report to all configured reporters."""

    def __init__(self, report_config: dict):
        self.channels = []

        console_cfg = report_config.get("console", {})
        if console_cfg.get("enabled", True):
            self.channels.append(ConsoleReporter(console_cfg))

        json_cfg = report_config.get("json", {})
        if json_cfg.get("enabled", False):
            self.channels.append(JsonReporter(json_cfg))

    def dispatch(self, report: DiffReport):
        """Send a report to all enabled channels."""
        for channel in self.channels:
            try:
                channel.send(report)
            except Exception as e:
                logger.error(f"Reporter {type(channel).__name__} failed: {e}")
