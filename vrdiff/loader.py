"""Image loader — decodes screenshot references into raw RGBA buffers."""

import base64
import binascii
import io
import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)


class DiffError(Exception):
    """A comparison failure that is reported to the caller with a code."""

    code = "COMPARISON_FAILED"

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class InvalidImageDataError(DiffError):
    code = "INVALID_IMAGE_DATA"


@dataclass(frozen=True, eq=False)
class RawImage:
    """Decoded image: an H x W x 4 uint8 RGBA array."""

    width: int
    height: int
    pixels: np.ndarray

    @property
    def byte_size(self) -> int:
        return self.width * self.height * 4

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)

    @classmethod
    def from_array(cls, array: np.ndarray) -> "RawImage":
        """Wrap a grayscale, RGB or RGBA uint8 array, adding an opaque alpha if needed."""
        if array.dtype != np.uint8:
            raise InvalidImageDataError(f"unsupported pixel dtype {array.dtype}")
        if array.ndim == 2:
            array = np.stack([array, array, array], axis=-1)
        if array.ndim != 3 or array.shape[2] not in (3, 4):
            raise InvalidImageDataError(f"unsupported pixel array shape {array.shape}")
        if array.shape[2] == 3:
            alpha = np.full(array.shape[:2] + (1,), 255, dtype=np.uint8)
            array = np.concatenate([array, alpha], axis=-1)
        h, w = array.shape[:2]
        if w == 0 or h == 0:
            raise InvalidImageDataError("image has no pixels")
        pixels = np.array(array, order="C")
        pixels.setflags(write=False)
        return cls(width=w, height=h, pixels=pixels)

    def to_pil(self) -> Image.Image:
        return Image.fromarray(np.array(self.pixels))


def _decode_bytes(data: bytes) -> RawImage:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            rgba = img.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise InvalidImageDataError(f"cannot decode image data: {e}") from e
    return RawImage.from_array(np.asarray(rgba, dtype=np.uint8))


def _decode_data_url(url: str) -> RawImage:
    header, sep, payload = url.partition(",")
    if not sep or ";base64" not in header:
        raise InvalidImageDataError("data URL is not base64 encoded")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidImageDataError(f"malformed base64 payload: {e}") from e
    return _decode_bytes(data)


def _fetch(url: str, timeout: float = 10.0) -> RawImage:
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise InvalidImageDataError(f"failed to fetch {url}: {e}") from e
    logger.debug(f"fetched {len(resp.content)} bytes from {url}")
    return _decode_bytes(resp.content)


def load_image(ref) -> RawImage:
    """
    Decode an opaque image reference into a RawImage.

    Accepts a RawImage, PIL image, numpy array, encoded bytes, a base64
    ``data:`` URL, an http(s) URL or a filesystem path. Every failure is
    raised as InvalidImageDataError.
    """
    if isinstance(ref, RawImage):
        return ref
    if isinstance(ref, Image.Image):
        try:
            return RawImage.from_array(np.asarray(ref.convert("RGBA"), dtype=np.uint8))
        except (OSError, ValueError) as e:
            raise InvalidImageDataError(f"cannot convert image: {e}") from e
    if isinstance(ref, np.ndarray):
        return RawImage.from_array(ref)
    if isinstance(ref, (bytes, bytearray, memoryview)):
        if not ref:
            raise InvalidImageDataError("empty image data")
        return _decode_bytes(bytes(ref))
    if isinstance(ref, str):
        if ref.startswith("data:"):
            return _decode_data_url(ref)
        if ref.startswith(("http://", "https://")):
            return _fetch(ref)
        ref = Path(ref)
    if isinstance(ref, Path):
        try:
            data = ref.read_bytes()
        except OSError as e:
            raise InvalidImageDataError(f"cannot read {ref}: {e}") from e
        return _decode_bytes(data)
    raise InvalidImageDataError(f"unsupported image reference type {type(ref).__name__}")


def encode_image(raw: RawImage, fmt: str = "PNG") -> bytes:
    """Encode a RawImage (or RGBA array) into a transportable image."""
    if isinstance(raw, np.ndarray):
        raw = RawImage.from_array(raw)
    buf = io.BytesIO()
    img = raw.to_pil()
    if fmt.upper() in ("JPEG", "JPG"):
        img = img.convert("RGB")
    img.save(buf, format=fmt)
    return buf.getvalue()


def to_data_url(raw: RawImage, fmt: str = "PNG") -> str:
    payload = base64.b64encode(encode_image(raw, fmt)).decode("ascii")
    return f"data:image/{fmt.lower()};base64,{payload}"
