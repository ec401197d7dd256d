"""Perceptual hash — coarse luminance fingerprint and Hamming distance."""

import numpy as np
from PIL import Image

HASH_SIZE = 8  # 8x8 cells -> 64-bit fingerprint


def perceptual_hash(rgba: np.ndarray, hash_size: int = HASH_SIZE) -> str:
    """
    Fingerprint an RGBA array as a string of ``hash_size**2`` '0'/'1' bits.

    The image is downsampled to hash_size x hash_size grayscale cells and each
    cell is thresholded against the mean brightness. Cells equal to the mean
    (flat images) fall back to absolute brightness, so solid black and solid
    white hash differently.
    """
    gray = Image.fromarray(np.ascontiguousarray(rgba)).convert("L")
    cells = np.asarray(
        gray.resize((hash_size, hash_size), Image.LANCZOS), dtype=np.float64
    ).ravel()
    mean = cells.mean()
    bits = (cells > mean) | ((cells == mean) & (cells >= 128))
    return "".join("1" if b else "0" for b in bits)


def hamming_distance(hash1: str, hash2: str) -> int:
    """Number of differing positions. Hashes of different length count as fully different."""
    if len(hash1) != len(hash2):
        return len(hash1)
    return sum(1 for c1, c2 in zip(hash1, hash2) if c1 != c2)


def hash_similarity(hash1: str, hash2: str) -> float:
    """1.0 for identical hashes, 0.0 when every bit differs."""
    if len(hash1) != len(hash2):
        return 0.0
    if not hash1:
        return 1.0
    return 1.0 - hamming_distance(hash1, hash2) / len(hash1)
