import base64
from unittest.mock import AsyncMock

import httpx
import pytest

from fakes import make_png
from productgallery.core import gemini
from productgallery.core.gemini import GeminiRateLimitError, GeminiRequestError


def _text_response(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _image_response(data: bytes, camel: bool = False) -> dict:
    key = "inlineData" if camel else "inline_data"
    return {
        "candidates": [
            {"content": {"parts": [{"text": "here you go"}, {key: {"mime_type": "image/png", "data": base64.b64encode(data).decode()}}]}}
        ]
    }


class TestHelpers:
    def test_redact_key(self):
        assert gemini._redact_key("GET /v1beta/models?key=AIzaSecret&x=1") == "GET /v1beta/models?key=REDACTED&x=1"
        assert gemini._redact_key("") == ""

    def test_extract_json_from_fenced_block(self):
        text = 'Sure!\n```json\n{"match": true, "confidence": 0.8}\n```\nanything else?'
        assert gemini._extract_json_best_effort(text) == {"match": True, "confidence": 0.8}

    def test_extract_json_with_nested_arrays(self):
        text = 'Found: {"title": "Acme Kettle", "images": ["https://a/1.jpg", "https://a/2.jpg"]} - done'
        assert gemini._extract_json_best_effort(text)["images"] == ["https://a/1.jpg", "https://a/2.jpg"]

    def test_extract_json_failure(self):
        with pytest.raises(ValueError):
            gemini._extract_json_best_effort("no json here")

    def test_model_path(self):
        assert gemini._model_path("gemini-2.5-flash") == "models/gemini-2.5-flash"
        assert gemini._model_path("models/gemini-2.5-flash") == "models/gemini-2.5-flash"

    def test_unexpected_response_shape(self):
        with pytest.raises(GeminiRequestError):
            gemini._response_text({"promptFeedback": {"blockReason": "SAFETY"}})


class TestPostWithRetry:
    @pytest.mark.asyncio
    async def test_retries_on_rate_limit(self, monkeypatch):
        statuses = iter([429, 503, 200])
        sleep = AsyncMock()
        monkeypatch.setattr(gemini, "_sleep_for_retry", sleep)

        transport = httpx.MockTransport(lambda request: httpx.Response(next(statuses), json={}))
        async with httpx.AsyncClient(transport=transport) as client:
            r = await gemini._post_with_retry(client, "https://gemini.test/x", params={"key": "k"}, json_payload={})

        assert r.status_code == 200
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, monkeypatch):
        monkeypatch.setattr(gemini, "_sleep_for_retry", AsyncMock())
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            r = await gemini._post_with_retry(
                client, "https://gemini.test/x", params={}, json_payload={}, max_retries=2
            )

        assert r.status_code == 503
        assert len(calls) == 3


class TestGenerateContent:
    @pytest.mark.asyncio
    async def test_missing_api_key(self, monkeypatch):
        monkeypatch.setattr(gemini.settings, "GEMINI_API_KEY", "")
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        with pytest.raises(GeminiRequestError):
            await gemini._generate_content("gemini-2.5-flash", [{"text": "hi"}])

    @pytest.mark.asyncio
    async def test_rate_limit_surfaces_retry_after(self, monkeypatch):
        monkeypatch.setattr(gemini.settings, "GEMINI_API_KEY", "test-key")
        monkeypatch.setattr(
            gemini, "_post_with_retry", AsyncMock(return_value=httpx.Response(429, headers={"retry-after": "7"}))
        )
        with pytest.raises(GeminiRateLimitError) as exc:
            await gemini._generate_content("gemini-2.5-flash", [{"text": "hi"}])
        assert exc.value.retry_after_seconds == 7.0
        assert exc.value.status_code == 429

    @pytest.mark.asyncio
    async def test_error_body_is_redacted(self, monkeypatch):
        monkeypatch.setattr(gemini.settings, "GEMINI_API_KEY", "test-key")
        monkeypatch.setattr(
            gemini,
            "_post_with_retry",
            AsyncMock(return_value=httpx.Response(400, text="bad request for ?key=test-key")),
        )
        with pytest.raises(GeminiRequestError) as exc:
            await gemini._generate_content("gemini-2.5-flash", [{"text": "hi"}])
        assert exc.value.status_code == 400
        assert "test-key" not in exc.value.body

    @pytest.mark.asyncio
    async def test_payload_shape(self, monkeypatch):
        monkeypatch.setattr(gemini.settings, "GEMINI_API_KEY", "test-key")
        post = AsyncMock(return_value=httpx.Response(200, json=_text_response("ok")))
        monkeypatch.setattr(gemini, "_post_with_retry", post)

        await gemini._generate_content(
            "gemini-2.5-flash",
            [{"text": "hi"}],
            generation_config={"temperature": 0},
            tools=[{"google_search": {}}],
        )

        _, url = post.await_args.args
        payload = post.await_args.kwargs["json_payload"]
        assert url.endswith("/models/gemini-2.5-flash:generateContent")
        assert post.await_args.kwargs["params"] == {"key": "test-key"}
        assert payload["generationConfig"] == {"temperature": 0}
        assert payload["tools"] == [{"google_search": {}}]


class TestOracles:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "answer,expected",
        [
            ('{"match": true, "confidence": 0.92, "reason": "same kettle"}', True),
            ('{"match": true, "confidence": 0.3}', False),
            ('{"match": false, "confidence": 0.99}', False),
            ('```json\n{"match": true, "confidence": 0.7}\n```', True),
        ],
    )
    async def test_verify_product_image(self, monkeypatch, answer, expected):
        monkeypatch.setattr(gemini, "_generate_content", AsyncMock(return_value=_text_response(answer)))
        assert await gemini.verify_product_image(make_png(300, 300), "Acme Kettle") is expected

    @pytest.mark.asyncio
    async def test_clean_product_photo(self, monkeypatch):
        generate = AsyncMock(return_value=_image_response(b"white-bg", camel=True))
        monkeypatch.setattr(gemini, "_generate_content", generate)

        cleaned = await gemini.clean_product_photo(make_png(400, 300), "Acme Kettle")

        assert cleaned == b"white-bg"
        config = generate.await_args.kwargs["generation_config"]
        assert config["image_config"] == {"aspect_ratio": "4:3"}

    @pytest.mark.asyncio
    async def test_clean_without_image_fails(self, monkeypatch):
        monkeypatch.setattr(gemini, "_generate_content", AsyncMock(return_value=_text_response("sorry")))
        with pytest.raises(GeminiRequestError):
            await gemini.clean_product_photo(make_png(300, 300), "Acme Kettle")

    @pytest.mark.asyncio
    async def test_generate_views_rotates_shots_and_skips_failures(self, monkeypatch):
        prompts = []

        async def fake_generate(model, parts, **kwargs):
            text = parts[1]["text"]
            prompts.append(text)
            if "DETAIL SHOT" in text:
                raise GeminiRequestError("blocked")
            return _image_response(b"view")

        monkeypatch.setattr(gemini, "_generate_content", fake_generate)

        items = await gemini.generate_product_views(make_png(300, 300), "Acme Kettle", count=3, offset=0)

        assert len(prompts) == 3
        assert len(items) == 2
        assert all(i.is_synthetic and i.data == b"view" for i in items)
        assert [i.name.split("_")[1] for i in items] == ["1", "3"]

    @pytest.mark.asyncio
    async def test_generate_views_offset(self, monkeypatch):
        monkeypatch.setattr(gemini, "_generate_content", AsyncMock(return_value=_image_response(b"view")))
        items = await gemini.generate_product_views(make_png(300, 300), "Acme Kettle", count=1, offset=3)
        assert items[0].name.startswith("gen_4_")
        assert await gemini.generate_product_views(b"seed", "Acme Kettle", count=0) == []

    @pytest.mark.asyncio
    async def test_search_product_by_title(self, monkeypatch):
        answer = (
            'I found these:\n{"title": "Acme Kettle 1.7L", '
            '"images": ["https://shop/1.jpg", 42, "https://shop/2.png"]}'
        )
        generate = AsyncMock(return_value=_text_response(answer))
        monkeypatch.setattr(gemini, "_generate_content", generate)

        found = await gemini.search_product_by_title("Acme Kettle")

        assert found == {"title": "Acme Kettle 1.7L", "images": ["https://shop/1.jpg", "https://shop/2.png"]}
        assert generate.await_args.kwargs["tools"] == [{"google_search": {}}]

    @pytest.mark.asyncio
    async def test_generate_views_raises_when_every_shot_fails(self, monkeypatch):
        monkeypatch.setattr(
            gemini, "_generate_content", AsyncMock(side_effect=GeminiRequestError("overloaded", status_code=503))
        )
        with pytest.raises(GeminiRequestError) as exc:
            await gemini.generate_product_views(make_png(300, 300), "Acme Kettle", count=2, offset=1)
        assert exc.value.status_code == 503
