"""
Cheap content signatures for near-duplicate rejection.

Not a cryptographic hash: it samples every 29th byte of the first 2 KiB and
mixes in the total length. Byte-identical images always collide.
"""

from __future__ import annotations

from typing import Set

SIGNATURE_PREFIX_BYTES = 2048
SAMPLE_STRIDE = 29


def image_signature(data: bytes) -> str:
    checksum = 0
    for i in range(0, min(len(data), SIGNATURE_PREFIX_BYTES), SAMPLE_STRIDE):
        checksum = (checksum * 31 + data[i]) & 0xFFFFFFFF
    return f"{len(data)}-{checksum}"


class SignatureDeduper:
    """First image with a given signature wins; later ones are duplicates."""

    def __init__(self) -> None:
        self._seen: Set[str] = set()

    def is_duplicate(self, signature: str) -> bool:
        if signature in self._seen:
            return True
        self._seen.add(signature)
        return False

    def __len__(self) -> int:
        return len(self._seen)
