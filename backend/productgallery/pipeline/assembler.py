import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from productgallery.core.events import EventEmitter
from productgallery.pipeline.models import CancellationToken, GalleryItem, ImageCandidate

logger = logging.getLogger(__name__)

GALLERY_SIZE = 4

CleanFn = Callable[[bytes, str], Awaitable[bytes]]
GenerateFn = Callable[[bytes, str, int, int], Awaitable[List[GalleryItem]]]


class AssemblyError(Exception):
    """The top-ranked photo could not be cleaned; there is no gallery."""


def rank_candidates(candidates: Sequence[ImageCandidate]) -> List[ImageCandidate]:
    """Largest pixel area first; equal areas keep discovery order."""
    return sorted(candidates, key=lambda c: (-c.area, c.index))


class GalleryAssembler:
    def __init__(
        self,
        clean: CleanFn,
        generate: GenerateFn,
        *,
        gallery_size: int = GALLERY_SIZE,
        events: Optional[EventEmitter] = None,
        token: Optional[CancellationToken] = None,
    ) -> None:
        self.clean = clean
        self.generate = generate
        self.gallery_size = gallery_size
        self.events = events or EventEmitter()
        self.token = token or CancellationToken()

    def _add(self, gallery: List[GalleryItem], item: GalleryItem) -> None:
        gallery.append(item)
        self.events.emit(
            "gallery.item_added",
            name=item.name,
            is_synthetic=item.is_synthetic,
            source_url=item.source_url,
        )

    async def assemble(self, candidates: Sequence[ImageCandidate], title: str) -> List[GalleryItem]:
        """
        Verified candidates => gallery of at most `gallery_size` items.

        - candidate 1 is cleaned; failure raises AssemblyError
        - candidates 2..n are cleaned independently; a failure drops that one
        - 1..size-1 real photos => synthetic views fill the remaining slots
        """
        ranked = [c for c in rank_candidates(candidates) if c.verified and c.data is not None]
        ranked = ranked[: self.gallery_size]
        gallery: List[GalleryItem] = []
        if not ranked:
            return gallery

        top = ranked[0]
        try:
            cleaned = await self.clean(top.data, title)
        except Exception as e:
            raise AssemblyError(f"Could not prepare the main product photo: {e}") from e
        if self.token.cancelled:
            return gallery
        self._add(gallery, GalleryItem(name="main_product.png", data=cleaned, source_url=top.url))

        for n, c in enumerate(ranked[1:], start=2):
            try:
                cleaned = await self.clean(c.data, title)
            except Exception as e:
                logger.warning("photo cleanup failed for %s: %s", c.url, e)
                self.events.emit("candidate.dropped", url=c.url, index=c.index, reason="cleanup", error=str(e))
                continue
            if self.token.cancelled:
                return gallery
            self._add(gallery, GalleryItem(name=f"photo_{n}.png", data=cleaned, source_url=c.url))

        await self.fill_synthetic(gallery, title)
        return gallery

    async def assemble_manual(self, image_bytes: bytes, title: str) -> List[GalleryItem]:
        """
        Manual fallback: the caller's own photo becomes item 1 (cleaned when
        possible, as uploaded otherwise) and synthetic views fill the rest.
        """
        try:
            main = await self.clean(image_bytes, title)
        except Exception as e:
            logger.warning("photo cleanup failed for uploaded image: %s", e)
            main = image_bytes

        gallery: List[GalleryItem] = []
        self._add(gallery, GalleryItem(name="main_product.png", data=main, source_url=None))
        await self.fill_synthetic(gallery, title)
        return gallery

    async def regenerate_slot(self, seed: bytes, title: str, index: int) -> Optional[GalleryItem]:
        """
        Redo one gallery slot from the seed photo: slot 0 is cleaned again,
        any other slot gets a single synthetic view at that slot's offset.
        None when the generator had nothing to offer.
        """
        if not 0 <= index < self.gallery_size:
            raise ValueError(f"slot index must be between 0 and {self.gallery_size - 1}")

        if index == 0:
            cleaned = await self.clean(seed, title)
            item = GalleryItem(name="main_product_refreshed.png", data=cleaned)
        else:
            produced = await self.generate(seed, title, 1, index)
            if not produced:
                return None
            item = produced[0]
            item.is_synthetic = True

        self.events.emit("gallery.slot_regenerated", index=index, name=item.name, is_synthetic=item.is_synthetic)
        return item

    async def fill_synthetic(self, gallery: List[GalleryItem], title: str) -> None:
        """
        One generation request per open slot, seeded from item 1.
        A failing request skips its slot; an empty answer stops filling.
        """
        if not gallery or len(gallery) >= self.gallery_size:
            return

        seed = gallery[0].data
        if seed is None:
            return

        for _ in range(self.gallery_size - len(gallery)):
            offset = len(gallery)
            try:
                produced = await self.generate(seed, title, 1, offset)
            except Exception as e:
                logger.warning("synthetic view %d failed: %s", offset, e)
                self.events.emit("gallery.synthetic_failed", offset=offset, error=str(e))
                continue
            if self.token.cancelled:
                return
            if not produced:
                self.events.emit("gallery.synthetic_exhausted", offset=offset)
                break

            item = produced[0]
            item.is_synthetic = True
            self._add(gallery, item)
