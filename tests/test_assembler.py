import base64

import pytest

from fakes import FakeCleaner, FakeGenerator, make_png
from productgallery.core import gemini
from productgallery.core.gemini import GeminiRequestError
from productgallery.pipeline.assembler import AssemblyError, GalleryAssembler, rank_candidates
from productgallery.pipeline.models import CancellationToken, GalleryItem, ImageCandidate


def _verified(index: int, width: int, height: int, verified: bool = True) -> ImageCandidate:
    return ImageCandidate(
        url=f"https://img/{index}.jpg",
        index=index,
        data=f"photo-{index}".encode(),
        width=width,
        height=height,
        verified=verified,
    )


def test_rank_by_area_then_discovery_order():
    a = _verified(0, 300, 300)
    b = _verified(1, 500, 500)
    c = _verified(2, 900, 100)  # same area as a
    assert [x.index for x in rank_candidates([a, b, c])] == [1, 0, 2]


class TestGalleryAssembler:
    @pytest.mark.asyncio
    async def test_two_real_photos_get_two_synthetic_views(self, events, recorder):
        cleaner, generator = FakeCleaner(), FakeGenerator()
        assembler = GalleryAssembler(cleaner, generator, events=events)

        gallery = await assembler.assemble([_verified(0, 300, 300), _verified(1, 600, 400)], "Kettle")

        assert [g.name for g in gallery] == ["main_product.png", "photo_2.png", "gen_2.png", "gen_3.png"]
        assert [g.is_synthetic for g in gallery] == [False, False, True, True]
        assert gallery[0].source_url == "https://img/1.jpg"
        assert gallery[0].data == b"clean:photo-1"
        assert generator.calls == [2, 3]
        assert len(recorder.of_type("gallery.item_added")) == 4

    @pytest.mark.asyncio
    async def test_at_most_four_real_photos(self, events):
        generator = FakeGenerator()
        candidates = [_verified(i, 300 + i, 300) for i in range(6)]
        gallery = await GalleryAssembler(FakeCleaner(), generator, events=events).assemble(candidates, "Kettle")

        assert len(gallery) == 4
        assert not any(g.is_synthetic for g in gallery)
        assert [g.source_url for g in gallery] == [f"https://img/{i}.jpg" for i in (5, 4, 3, 2)]
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_unverified_candidates_are_never_used(self, events):
        candidates = [_verified(0, 300, 300), _verified(1, 2000, 2000, verified=False)]
        gallery = await GalleryAssembler(FakeCleaner(), FakeGenerator(), events=events).assemble(
            candidates, "Kettle"
        )

        assert gallery[0].source_url == "https://img/0.jpg"
        assert "https://img/1.jpg" not in [g.source_url for g in gallery]

    @pytest.mark.asyncio
    async def test_nothing_verified_means_no_gallery(self, events):
        generator = FakeGenerator()
        gallery = await GalleryAssembler(FakeCleaner(), generator, events=events).assemble([], "Kettle")
        assert gallery == []
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_main_photo_cleanup_failure_is_fatal(self, events):
        top = _verified(0, 800, 800)
        assembler = GalleryAssembler(FakeCleaner(failing=[top.data]), FakeGenerator(), events=events)

        with pytest.raises(AssemblyError):
            await assembler.assemble([top, _verified(1, 300, 300)], "Kettle")

    @pytest.mark.asyncio
    async def test_secondary_cleanup_failure_drops_that_photo(self, events, recorder):
        first, second, third = _verified(0, 800, 800), _verified(1, 600, 600), _verified(2, 400, 400)
        assembler = GalleryAssembler(FakeCleaner(failing=[second.data]), FakeGenerator(), events=events)

        gallery = await assembler.assemble([first, second, third], "Kettle")

        assert [g.source_url for g in gallery if not g.is_synthetic] == [first.url, third.url]
        assert len(gallery) == 4
        assert recorder.dropped_reasons() == ["cleanup"]

    @pytest.mark.asyncio
    async def test_failed_generation_is_skipped(self, events, recorder):
        calls = []

        async def flaky(seed, title, count, offset):
            calls.append(offset)
            if len(calls) == 1:
                raise RuntimeError("model overloaded")
            return [GalleryItem(name=f"gen_{offset}.png", data=b"synthetic")]

        gallery = await GalleryAssembler(FakeCleaner(), flaky, events=events).assemble(
            [_verified(0, 300, 300), _verified(1, 300, 300)], "Kettle"
        )

        # Two open slots, two requests: one failed, one filled
        assert calls == [2, 2]
        assert len(gallery) == 3
        assert gallery[-1].is_synthetic is True
        assert len(recorder.of_type("gallery.synthetic_failed")) == 1

    @pytest.mark.asyncio
    async def test_empty_generation_stops_filling(self, events, recorder):
        generator = FakeGenerator(empty_from=0)
        gallery = await GalleryAssembler(FakeCleaner(), generator, events=events).assemble(
            [_verified(0, 300, 300)], "Kettle"
        )

        assert len(gallery) == 1
        assert generator.calls == [1]
        assert recorder.of_type("gallery.synthetic_exhausted")

    @pytest.mark.asyncio
    async def test_cancelled_assembly_stops_adding(self, events):
        token = CancellationToken()

        async def clean_then_cancel(data, title):
            token.cancel()
            return data

        generator = FakeGenerator()
        gallery = await GalleryAssembler(clean_then_cancel, generator, events=events, token=token).assemble(
            [_verified(0, 300, 300), _verified(1, 300, 300)], "Kettle"
        )

        assert gallery == []
        assert generator.calls == []


class TestManualAssembly:
    @pytest.mark.asyncio
    async def test_upload_becomes_main_photo(self, events):
        generator = FakeGenerator()
        gallery = await GalleryAssembler(FakeCleaner(), generator, events=events).assemble_manual(
            b"user-photo", "Kettle"
        )

        assert gallery[0].name == "main_product.png"
        assert gallery[0].data == b"clean:user-photo"
        assert gallery[0].source_url is None
        assert generator.calls == [1, 2, 3]
        assert len(gallery) == 4

    @pytest.mark.asyncio
    async def test_upload_is_kept_as_is_when_cleanup_fails(self, events):
        gallery = await GalleryAssembler(
            FakeCleaner(failing=[b"user-photo"]), FakeGenerator(), events=events
        ).assemble_manual(b"user-photo", "Kettle")

        assert gallery[0].data == b"user-photo"
        assert gallery[0].is_synthetic is False


class TestWithGeminiGenerator:
    @pytest.mark.asyncio
    async def test_transient_generation_failure_does_not_end_fill(self, events, recorder, monkeypatch):
        calls = []

        async def flaky_generate_content(model, parts, **kwargs):
            calls.append(parts[1]["text"])
            if len(calls) == 1:
                raise GeminiRequestError("Gemini request failed: 503", status_code=503)
            image = base64.b64encode(b"view").decode()
            return {"candidates": [{"content": {"parts": [{"inline_data": {"data": image}}]}}]}

        monkeypatch.setattr(gemini, "_generate_content", flaky_generate_content)
        candidate = ImageCandidate(
            url="https://img/0.jpg", index=0, data=make_png(300, 300), width=300, height=300, verified=True
        )

        gallery = await GalleryAssembler(FakeCleaner(), gemini.generate_product_views, events=events).assemble(
            [candidate], "Kettle"
        )

        assert len(calls) == 3
        assert len(gallery) == 3
        assert [g.is_synthetic for g in gallery] == [False, True, True]
        assert len(recorder.of_type("gallery.synthetic_failed")) == 1
        assert recorder.of_type("gallery.synthetic_exhausted") == []


class TestRegenerateSlot:
    @pytest.mark.asyncio
    async def test_main_slot_is_cleaned_again(self, events, recorder):
        cleaner, generator = FakeCleaner(), FakeGenerator()
        item = await GalleryAssembler(cleaner, generator, events=events).regenerate_slot(b"seed", "Kettle", 0)

        assert item.name == "main_product_refreshed.png"
        assert item.data == b"clean:seed"
        assert item.is_synthetic is False
        assert cleaner.calls == 1
        assert generator.calls == []
        assert recorder.of_type("gallery.slot_regenerated")[0].payload["index"] == 0

    @pytest.mark.asyncio
    async def test_other_slots_get_one_view_at_their_offset(self, events):
        generator = FakeGenerator()
        item = await GalleryAssembler(FakeCleaner(), generator, events=events).regenerate_slot(b"seed", "Kettle", 2)

        assert generator.calls == [2]
        assert item.is_synthetic is True
        assert item.name == "gen_2.png"

    @pytest.mark.asyncio
    async def test_empty_generation(self, events):
        item = await GalleryAssembler(FakeCleaner(), FakeGenerator(empty_from=0), events=events).regenerate_slot(
            b"seed", "Kettle", 3
        )
        assert item is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("index", [-1, 4])
    async def test_index_out_of_range(self, events, index):
        with pytest.raises(ValueError):
            await GalleryAssembler(FakeCleaner(), FakeGenerator(), events=events).regenerate_slot(
                b"seed", "Kettle", index
            )

    @pytest.mark.asyncio
    async def test_failures_propagate(self, events):
        with pytest.raises(RuntimeError):
            await GalleryAssembler(FakeCleaner(failing=[b"seed"]), FakeGenerator(), events=events).regenerate_slot(
                b"seed", "Kettle", 0
            )
