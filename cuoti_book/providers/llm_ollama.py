from __future__ import annotations

import base64
import logging
import time

import httpx

from cuoti_book.providers.base import LLMProvider, ProviderError, TransientProviderError

log = logging.getLogger("cuoti_book.llm")


class OllamaProvider(LLMProvider):
    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "qwen3:8b",
        timeout: float = 120.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    async def generate(
        self, prompt: str, temperature: float = 0.1, image: bytes | None = None
    ) -> str:
        log.info("── PROMPT (%s) ──\n%s", self.model, prompt)
        body: dict = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "think": False,
            "format": "json",
            "options": {"temperature": temperature},
        }
        if image is not None:
            body["images"] = [base64.b64encode(image).decode("ascii")]

        t0 = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.base_url}/api/generate", json=body)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429 or status >= 500:
                raise TransientProviderError(str(e), rate_limited=status == 429) from e
            raise ProviderError(str(e)) from e
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientProviderError(str(e) or type(e).__name__) from e
        except ValueError as e:
            raise ProviderError(f"Ollama returned a non-JSON body: {e}") from e
        if not isinstance(data, dict):
            raise ProviderError(f"Ollama returned unexpected JSON: {type(data).__name__}")

        elapsed = time.monotonic() - t0
        response = data.get("response", "")
        tokens = data.get("eval_count", "?")
        log.info("── RESPONSE (%.1fs, %s tokens) ──\n%s", elapsed, tokens, response)
        return response

    def name(self) -> str:
        return f"ollama/{self.model}"
