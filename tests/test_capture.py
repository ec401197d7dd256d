import hashlib
import io

from PIL import Image

from vrdiff.capture import (
    Screenshot,
    Viewport,
    create_screenshot,
    screenshot_from_bytes,
    screenshot_from_file,
)


def _png(width: int, height: int) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", (width, height), (0, 0, 0, 255)).save(buf, format="PNG")
    return buf.getvalue()


class TestScreenshot:
    def test_from_bytes_fills_metadata(self):
        data = _png(40, 30)
        shot = screenshot_from_bytes(data, name="home", tags=["desktop"])
        assert shot.name == "home"
        assert shot.metadata.dimensions == (40, 30)
        assert shot.metadata.file_size == len(data)
        assert shot.metadata.color_depth == 32
        assert shot.metadata.content_hash == hashlib.sha256(data).hexdigest()
        assert shot.viewport == Viewport(40, 30)
        assert shot.tags == ("desktop",)
        assert shot.timestamp > 0

    def test_cache_key_follows_content(self):
        data = _png(8, 8)
        a = screenshot_from_bytes(data)
        b = screenshot_from_bytes(data)
        assert a.id != b.id
        assert a.cache_key == b.cache_key

    def test_cache_key_never_uses_id(self):
        shot = create_screenshot(Image.new("RGB", (2, 2)), id="abc")
        assert shot.cache_key is None

    def test_cache_key_hashes_raw_bytes(self):
        data = _png(4, 4)
        shot = Screenshot(id="abc", name="raw", encoded_image=data)
        assert shot.metadata.content_hash == ""
        assert shot.cache_key == hashlib.sha256(data).hexdigest()

    def test_unreadable_bytes_still_build(self):
        shot = screenshot_from_bytes(b"garbage", name="bad")
        assert shot.metadata.dimensions == (0, 0)

    def test_from_file(self, tmp_path):
        path = tmp_path / "login.png"
        path.write_bytes(_png(5, 7))
        shot = screenshot_from_file(path)
        assert shot.name == "login"
        assert shot.url.startswith("file://")
        assert shot.metadata.dimensions == (5, 7)

    def test_to_dict(self):
        d = screenshot_from_bytes(_png(3, 4), name="x").to_dict()
        assert d["metadata"]["dimensions"] == {"width": 3, "height": 4}
        assert d["viewport"]["width"] == 3
        assert "encoded_image" not in d
