from __future__ import annotations

from typing import Iterable, Optional


def hamming_distance(hash1: str, hash2: str) -> Optional[int]:
    """Count differing bits between two hex hashes.

    Hashes of different lengths are not comparable and yield ``None``.
    """
    if len(hash1) != len(hash2) or not hash1:
        return None
    try:
        return bin(int(hash1, 16) ^ int(hash2, 16)).count("1")
    except ValueError:
        return None


def find_duplicate(phash: str, known_hashes: Iterable[Optional[str]], threshold: int) -> Optional[str]:
    """Return the first known hash within ``threshold`` bits of ``phash``.

    Linear scan over every known hash.
    """
    for candidate in known_hashes:
        if not candidate:
            continue
        distance = hamming_distance(phash, candidate)
        if distance is not None and distance <= threshold:
            return candidate
    return None
