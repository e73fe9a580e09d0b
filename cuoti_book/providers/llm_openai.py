from __future__ import annotations

import base64

from cuoti_book.providers.base import LLMProvider, ProviderError, TransientProviderError


class OpenAIProvider(LLMProvider):
    """Chat completions against OpenAI or an OpenAI-compatible endpoint
    (DeepSeek, Qwen via DashScope)."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        timeout: float = 60.0,
        label: str = "openai",
    ):
        import openai
        self.client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self.model = model
        self.label = label

    async def generate(
        self, prompt: str, temperature: float = 0.1, image: bytes | None = None
    ) -> str:
        import openai

        if image is not None:
            b64 = base64.b64encode(image).decode("ascii")
            content = [
                {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{b64}"}},
                {"type": "text", "text": prompt},
            ]
        else:
            content = prompt
        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                temperature=temperature,
                response_format={"type": "json_object"},
                messages=[{"role": "user", "content": content}],
            )
        except openai.RateLimitError as e:
            raise TransientProviderError(str(e), rate_limited=True) from e
        except (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError) as e:
            raise TransientProviderError(str(e)) from e
        except openai.APIError as e:
            raise ProviderError(str(e)) from e
        if not resp.choices:
            raise ProviderError(f"{self.label} returned no choices")
        return resp.choices[0].message.content or ""

    def name(self) -> str:
        return f"{self.label}/{self.model}"
