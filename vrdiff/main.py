"""Command line entry point — compare a baseline and a comparison screenshot."""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

import yaml

from vrdiff.capture import screenshot_from_file
from vrdiff.diff import DiffEngine, DiffOptions, DiffRequest, DiffResult
from vrdiff.loader import RawImage, encode_image
from vrdiff.report import DiffReport, ReportDispatcher
from vrdiff.zones import Rect, draw_ignore_regions

logger = logging.getLogger("vrdiff")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ERROR = 2


def load_config(path: Optional[str]) -> dict:
    """Read a YAML config file. No path means built-in defaults."""
    if not path:
        return {}
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def setup_logging(config: dict):
    level_str = (config.get("logging", {}) or {}).get("level", "INFO")
    level = getattr(logging, str(level_str).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Suppress noisy libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def parse_rect(value: str) -> Rect:
    """argparse type for ``X,Y,W,H`` ignore regions."""
    try:
        x, y, w, h = (int(v) for v in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected X,Y,W,H, got {value!r}")
    return Rect(x, y, w, h, name="cli")


def exit_code(result: DiffResult) -> int:
    if not result.success:
        return EXIT_ERROR
    return EXIT_FAILED if result.diff.status == "failed" else EXIT_OK


class VRDiffApp:
    """Runs one comparison from the command line: load, compare, write artifacts, report."""

    def __init__(self, config: dict, args: argparse.Namespace):
        self.config = config
        self.args = args

        diff_cfg = self.config.setdefault("diff", {}) or {}
        self.config["diff"] = diff_cfg
        if args.max_diff_percentage is not None:
            diff_cfg["max_diff_percentage"] = args.max_diff_percentage
        if args.min_ssim is not None:
            diff_cfg["min_ssim"] = args.min_ssim

        report_cfg = self.config.get("report", {}) or {}
        if args.json:
            report_cfg["json"] = {"enabled": True, "path": args.json_out or ""}
        self.engine = DiffEngine(self.config)
        self.dispatcher = ReportDispatcher(report_cfg)

    def _options(self) -> DiffOptions:
        args = self.args
        return DiffOptions(
            threshold=args.threshold,
            ignore_colors=True if args.ignore_colors else None,
            ignore_antialiasing=True if args.ignore_antialiasing else None,
            ignore_regions=list(args.ignore or []),
            auto_ignore_regions=True if args.auto_ignore else None,
            include_diff_image=True if (args.diff_out or args.regions_out) else None,
        )

    def run(self) -> int:
        args = self.args
        try:
            baseline = screenshot_from_file(args.baseline)
            comparison = screenshot_from_file(args.comparison)
        except OSError as e:
            logger.error(f"Cannot read screenshot: {e}")
            return EXIT_ERROR

        try:
            result = self.engine.compare_screenshots_sync(
                DiffRequest(baseline, comparison, self._options())
            )
            if result.success:
                self._write_artifacts(result, baseline)
            self.dispatcher.dispatch(DiffReport(baseline.name, comparison.name, result))
            return exit_code(result)
        finally:
            self.engine.cleanup()

    def _write_artifacts(self, result: DiffResult, baseline):
        diff = result.diff
        if self.args.diff_out and diff.diff_image is not None:
            path = Path(self.args.diff_out)
            path.write_bytes(encode_image(RawImage.from_array(diff.diff_image)))
            logger.info(f"Diff image saved to {path}")

        if self.args.regions_out:
            rects = list(self.engine.default_options.ignore_regions)
            rects += list(self.args.ignore or [])
            rects += list(diff.suggested_ignore_regions or [])
            try:
                image = self.engine.load_image_data(baseline).to_pil()
                draw_ignore_regions(image, rects).save(self.args.regions_out)
                logger.info(f"Ignore region debug image saved to {self.args.regions_out}")
            except Exception as e:
                logger.warning(f"Failed to save ignore region debug image: {e}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="vrdiff — visual regression diff between two screenshots"
    )
    parser.add_argument("baseline", help="Baseline screenshot (PNG/JPEG/WebP)")
    parser.add_argument("comparison", help="Screenshot to compare against the baseline")
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help="Path to YAML config file (default: built-in settings)",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Per-pixel color delta threshold 0-1 (default: 0.1)",
    )
    parser.add_argument("--ignore-colors", action="store_true", help="Compare luminance only")
    parser.add_argument(
        "--ignore-antialiasing",
        action="store_true",
        help="Do not count pixels that look like anti-aliased edges",
    )
    parser.add_argument(
        "--ignore",
        type=parse_rect,
        action="append",
        metavar="X,Y,W,H",
        help="Region to exclude from the comparison (repeatable)",
    )
    parser.add_argument(
        "--auto-ignore",
        action="store_true",
        help="Detect text and ad-sized regions that changed and ignore them",
    )
    parser.add_argument("--diff-out", metavar="PATH", help="Write the diff overlay image")
    parser.add_argument(
        "--regions-out", metavar="PATH", help="Write a debug image of the ignore regions"
    )
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("--json-out", metavar="PATH", help="Write the JSON result to a file")
    parser.add_argument(
        "--max-diff-percentage",
        type=float,
        default=None,
        help="Percent of differing pixels tolerated before failing (default: 0.1)",
    )
    parser.add_argument(
        "--min-ssim",
        type=float,
        default=None,
        help="Lowest SSIM score that still passes (default: 0.85)",
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, yaml.YAMLError) as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(str(e))
        return EXIT_ERROR
    setup_logging(config)

    app = VRDiffApp(config, args)
    return app.run()


if __name__ == "__main__":
    sys.exit(main())
