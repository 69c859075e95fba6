import json

import httpx
import pytest

from app.domain.flows.errors import TextGenerationError
from app.domain.flows.instance import HistoryEntry
from app.services.text_generation import GeminiTextGenerator


def _generator(handler, api_key="k-test"):
    return GeminiTextGenerator(
        api_key=api_key,
        model="gemini-test",
        base_url="https://gemini.local/v1beta",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


def test_generate_posts_history_and_prompt():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": " Hola Ana "}]}}]})

    history = [HistoryEntry(role="lead", text="hola"), HistoryEntry(role="bot", text="¿Tu nombre?")]
    assert _generator(handler).generate("Saluda", history) == "Hola Ana"

    assert seen["url"].startswith("https://gemini.local/v1beta/models/gemini-test:generateContent")
    assert "key=k-test" in seen["url"]
    assert [c["role"] for c in seen["body"]["contents"]] == ["user", "model", "user"]
    assert seen["body"]["contents"][-1]["parts"][0]["text"] == "Saluda"


@pytest.mark.parametrize(
    "response,code",
    [
        (httpx.Response(503, json={"error": "busy"}), "http_503"),
        (httpx.Response(200, json={"candidates": []}), "malformed_response"),
        (httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "  "}]}}]}), "empty_response"),
    ],
)
def test_generate_failures(response, code):
    with pytest.raises(TextGenerationError, match=code):
        _generator(lambda request: response).generate("x", [])


def test_missing_api_key():
    with pytest.raises(TextGenerationError, match="gemini_api_key_missing"):
        _generator(lambda request: httpx.Response(200), api_key="").generate("x", [])
