import argparse
import json

import pytest
from PIL import Image, ImageDraw

from vrdiff.main import EXIT_ERROR, EXIT_FAILED, EXIT_OK, load_config, main, parse_rect
from vrdiff.zones import Rect


def _save(path, color=(120, 120, 120, 255), box=None, size=(60, 40)):
    img = Image.new("RGBA", size, color)
    if box:
        ImageDraw.Draw(img).rectangle(box, fill=(255, 0, 0, 255))
    img.save(path)
    return str(path)


class TestConfig:
    def test_no_path_is_defaults(self):
        assert load_config(None) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.yaml"))

    def test_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("diff:\n  threshold: 0.25\n")
        assert load_config(str(path)) == {"diff": {"threshold": 0.25}}

    def test_parse_rect(self):
        assert parse_rect("1,2,3,4") == Rect(1, 2, 3, 4, "cli")
        with pytest.raises(argparse.ArgumentTypeError):
            parse_rect("1,2,3")


class TestMain:
    def test_identical_passes(self, tmp_path):
        a = _save(tmp_path / "a.png")
        b = _save(tmp_path / "b.png")
        assert main([a, b]) == EXIT_OK

    def test_changed_fails(self, tmp_path):
        a = _save(tmp_path / "a.png", color=(0, 0, 0, 255))
        b = _save(tmp_path / "b.png", color=(255, 255, 255, 255))
        assert main([a, b]) == EXIT_FAILED

    def test_small_change_warns_but_exits_ok(self, tmp_path):
        a = _save(tmp_path / "a.png")
        b = _save(tmp_path / "b.png", box=(0, 0, 3, 3))
        out = tmp_path / "result.json"
        assert main([a, b, "--json", "--json-out", str(out)]) == EXIT_OK
        assert json.loads(out.read_text())["status"] == "warning"

    def test_ignore_region_and_diff_out(self, tmp_path):
        a = _save(tmp_path / "a.png")
        b = _save(tmp_path / "b.png", box=(0, 0, 9, 9))
        diff_path = tmp_path / "diff.png"
        regions_path = tmp_path / "regions.png"
        code = main(
            [a, b, "--ignore", "0,0,10,10", "--diff-out", str(diff_path), "--regions-out", str(regions_path)]
        )
        assert code == EXIT_OK
        assert Image.open(diff_path).size == (60, 40)
        assert Image.open(regions_path).size == (60, 40)

    def test_dimension_mismatch_is_error(self, tmp_path):
        a = _save(tmp_path / "a.png")
        b = _save(tmp_path / "b.png", size=(30, 30))
        assert main([a, b]) == EXIT_ERROR

    def test_missing_input_is_error(self, tmp_path):
        a = _save(tmp_path / "a.png")
        assert main([a, str(tmp_path / "nope.png")]) == EXIT_ERROR

    def test_missing_config_is_error(self, tmp_path):
        a = _save(tmp_path / "a.png")
        assert main([a, a, "-c", str(tmp_path / "nope.yaml")]) == EXIT_ERROR

    def test_thresholds_from_flags(self, tmp_path):
        a = _save(tmp_path / "a.png", color=(0, 0, 0, 255))
        b = _save(tmp_path / "b.png", color=(255, 255, 255, 255))
        assert main([a, b, "--max-diff-percentage", "100", "--min-ssim", "0"]) == EXIT_OK
