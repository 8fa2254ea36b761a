from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Optional

import httpx
from PIL import Image

IMAGE_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7)",
    "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

# Larger downloads are abandoned mid-stream
MAX_IMAGE_BYTES = 15 * 1024 * 1024

_MIME_BY_FORMAT = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
}


class ImageFetchError(Exception):
    pass


@dataclass(frozen=True)
class ImageInfo:
    width: int
    height: int
    format: Optional[str] = None


def probe_image(data: bytes) -> ImageInfo:
    """
    Read dimensions from the image header only.
    Image.open is lazy: pixel data is not decoded until load().
    Raises on anything Pillow can't identify.
    """
    with Image.open(io.BytesIO(data)) as img:
        width, height = img.size
        return ImageInfo(width=int(width), height=int(height), format=img.format)


def mime_type_for(data: bytes, default: str = "image/png") -> str:
    try:
        fmt = probe_image(data).format or ""
    except Exception:
        return default
    return _MIME_BY_FORMAT.get(fmt.upper(), default)


def aspect_ratio_for(data: bytes) -> str:
    """
    Nearest aspect ratio the image model accepts:
      > 1.5 => 16:9, > 1.2 => 4:3, < 0.6 => 9:16, < 0.8 => 3:4, else 1:1
    """
    try:
        info = probe_image(data)
    except Exception:
        return "1:1"
    if info.height <= 0:
        return "1:1"
    ratio = info.width / info.height
    if ratio > 1.5:
        return "16:9"
    if ratio > 1.2:
        return "4:3"
    if ratio < 0.6:
        return "9:16"
    if ratio < 0.8:
        return "3:4"
    return "1:1"


async def fetch_image(
    url: str,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 20,
    max_bytes: int = MAX_IMAGE_BYTES,
) -> bytes:
    """
    GET an image with browser-like headers, streamed under a byte budget.
    Non-200, empty body or more than `max_bytes` => ImageFetchError.
    """
    if client is None:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, headers=IMAGE_HEADERS) as c:
            return await fetch_image(url, client=c, max_bytes=max_bytes)

    async with client.stream("GET", url) as r:
        if r.status_code != 200:
            raise ImageFetchError(f"GET {url} returned {r.status_code}")

        declared = r.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > max_bytes:
            raise ImageFetchError(f"GET {url} declares {declared} bytes (limit {max_bytes})")

        buf = bytearray()
        async for chunk in r.aiter_bytes():
            buf.extend(chunk)
            if len(buf) > max_bytes:
                raise ImageFetchError(f"GET {url} exceeded {max_bytes} bytes")

    if not buf:
        raise ImageFetchError(f"GET {url} returned an empty body")
    return bytes(buf)
