"""Screenshot records — the immutable input handed over by a capture tool."""

import hashlib
import io
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from PIL import Image

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Viewport:
    """Browser or device viewport the screenshot was taken in."""

    width: int
    height: int
    device_scale_factor: float = 1.0
    is_mobile: bool = False


@dataclass(frozen=True)
class ScreenshotMetadata:
    user_agent: str = ""
    pixel_ratio: float = 1.0
    color_depth: int = 24
    file_size: int = 0
    dimensions: tuple[int, int] = (0, 0)  # (width, height)
    content_hash: str = ""


@dataclass(frozen=True, eq=False)
class Screenshot:
    """A captured screenshot. ``encoded_image`` is any reference the image loader can decode."""

    id: str
    name: str
    encoded_image: Any = field(repr=False)
    url: str = ""
    viewport: Viewport = None
    browser_engine: str = "chromium"
    timestamp: float = 0.0  # epoch ms
    metadata: ScreenshotMetadata = field(default_factory=ScreenshotMetadata)
    tags: tuple = ()

    @property
    def cache_key(self) -> Optional[str]:
        """
        Key for reusing the decoded buffer, derived from the image content only.

        Encoded bytes without a recorded hash are hashed on the spot; other
        references (paths, URLs, arrays, PIL images) have no stable content
        key and return None, so they are decoded on every use.
        """
        if self.metadata.content_hash:
            return self.metadata.content_hash
        if isinstance(self.encoded_image, (bytes, bytearray)):
            return hashlib.sha256(self.encoded_image).hexdigest()
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "viewport": vars(self.viewport) if self.viewport else None,
            "browser_engine": self.browser_engine,
            "timestamp": self.timestamp,
            "metadata": {
                "user_agent": self.metadata.user_agent,
                "pixel_ratio": self.metadata.pixel_ratio,
                "color_depth": self.metadata.color_depth,
                "file_size": self.metadata.file_size,
                "dimensions": {
                    "width": self.metadata.dimensions[0],
                    "height": self.metadata.dimensions[1],
                },
                "content_hash": self.metadata.content_hash,
            },
            "tags": list(self.tags),
        }


def _now_ms() -> float:
    return time.time() * 1000


def screenshot_from_bytes(data: bytes, name: str = "screenshot", **kwargs) -> Screenshot:
    """Build a Screenshot from encoded image bytes, filling metadata from the image header."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            depth = {"1": 1, "L": 8, "P": 8, "RGB": 24, "RGBA": 32}.get(img.mode, 24)
    except Exception as e:
        # Leave validation to the loader; the record can still be built
        logger.debug(f"[{name}] could not read image header: {e}")
        width, height, depth = 0, 0, 24

    metadata = ScreenshotMetadata(
        user_agent=kwargs.pop("user_agent", ""),
        pixel_ratio=kwargs.pop("pixel_ratio", 1.0),
        color_depth=depth,
        file_size=len(data),
        dimensions=(width, height),
        content_hash=hashlib.sha256(data).hexdigest(),
    )
    viewport = kwargs.pop("viewport", None) or Viewport(width, height)
    return Screenshot(
        id=kwargs.pop("id", None) or uuid.uuid4().hex,
        name=name,
        encoded_image=data,
        viewport=viewport,
        timestamp=kwargs.pop("timestamp", None) or _now_ms(),
        metadata=metadata,
        tags=tuple(kwargs.pop("tags", ())),
        **kwargs,
    )


def screenshot_from_file(path, **kwargs) -> Screenshot:
    """Build a Screenshot from an image file on disk."""
    path = Path(path)
    kwargs.setdefault("url", path.resolve().as_uri())
    return screenshot_from_bytes(path.read_bytes(), name=kwargs.pop("name", path.stem), **kwargs)


def create_screenshot(encoded_image, name: str = "screenshot", **kwargs) -> Screenshot:
    """Factory: wrap any decodable reference (bytes, path, data URL, array, PIL image)."""
    if isinstance(encoded_image, (bytes, bytearray)):
        return screenshot_from_bytes(bytes(encoded_image), name=name, **kwargs)
    return Screenshot(
        id=kwargs.pop("id", None) or uuid.uuid4().hex,
        name=name,
        encoded_image=encoded_image,
        timestamp=kwargs.pop("timestamp", None) or _now_ms(),
        tags=tuple(kwargs.pop("tags", ())),
        **kwargs,
    )
