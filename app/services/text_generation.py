"""
Cliente de geração de texto usado pelos nós `ai_action`.
Usa a API REST do Gemini (generateContent) via httpx.
"""
from typing import Any, Dict, List, Optional
import httpx
from app.core.config import settings
from app.domain.flows.errors import TextGenerationError
from app.domain.flows.instance import HistoryEntry
import structlog

log = structlog.get_logger()


class GeminiTextGenerator:
    """Implementação de `TextGenerator` sobre o endpoint generateContent."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.model = model or settings.GEMINI_MODEL
        self.base_url = (base_url or settings.GEMINI_BASE_URL).rstrip("/")
        self.timeout = float(timeout if timeout is not None else settings.FLOW_COLLABORATOR_TIMEOUT_SECS)
        self._transport = transport

    def _build_contents(self, prompt: str, history: List[HistoryEntry]) -> List[Dict[str, Any]]:
        contents: List[Dict[str, Any]] = []
        for h in history:
            role = "user" if h.role == "lead" else "model"
            contents.append({"role": role, "parts": [{"text": h.text}]})
        contents.append({"role": "user", "parts": [{"text": prompt}]})
        return contents

    def generate(self, prompt: str, history: List[HistoryEntry]) -> str:
        if not self.api_key:
            raise TextGenerationError("gemini_api_key_missing")

        url = f"{self.base_url}/models/{self.model}:generateContent"
        body = {"contents": self._build_contents(prompt, history)}
        log.debug("text_generation_start", model=self.model, history=len(history))

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(url, params={"key": self.api_key}, json=body)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            log.warning("text_generation_http_error", status=e.response.status_code)
            raise TextGenerationError(f"http_{e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            log.warning("text_generation_failed", error=str(e))
            raise TextGenerationError(str(e) or type(e).__name__) from e

        try:
            parts = data["candidates"][0]["content"]["parts"]
            text = "".join(str(p.get("text") or "") for p in parts).strip()
        except (KeyError, IndexError, TypeError) as e:
            log.warning("text_generation_bad_response", keys=list(data.keys()) if isinstance(data, dict) else None)
            raise TextGenerationError("malformed_response") from e

        if not text:
            raise TextGenerationError("empty_response")

        log.info(
            "text_generation_success",
            response_length=len(text),
            response_preview=text[:100] + "..." if len(text) > 100 else text,
        )
        return text
