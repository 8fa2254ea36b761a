from typing import Optional, Tuple

from productgallery.core.imaging import probe_image

MIN_SIDE = 200


def read_dimensions(data: bytes) -> Optional[Tuple[int, int]]:
    """
    (width, height) from the image header, or None when the payload
    is not an image Pillow can identify.
    """
    try:
        info = probe_image(data)
    except Exception:
        return None
    return info.width, info.height


def is_large_enough(width: int, height: int, min_side: int = MIN_SIDE) -> bool:
    return width >= min_side and height >= min_side
