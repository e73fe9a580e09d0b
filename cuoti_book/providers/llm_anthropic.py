from __future__ import annotations

import base64

from cuoti_book.providers.base import LLMProvider, ProviderError, TransientProviderError


class AnthropicProvider(LLMProvider):
    def __init__(self, api_key: str, model: str = "claude-sonnet-4-20250514", timeout: float = 60.0):
        import anthropic
        self.client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout)
        self.model = model

    async def generate(
        self, prompt: str, temperature: float = 0.1, image: bytes | None = None
    ) -> str:
        import anthropic

        content: list[dict] = []
        if image is not None:
            content.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": "image/jpeg",
                    "data": base64.b64encode(image).decode("ascii"),
                },
            })
        content.append({"type": "text", "text": prompt})
        try:
            message = await self.client.messages.create(
                model=self.model,
                max_tokens=2048,
                temperature=temperature,
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.RateLimitError as e:
            raise TransientProviderError(str(e), rate_limited=True) from e
        except (anthropic.APITimeoutError, anthropic.APIConnectionError, anthropic.InternalServerError) as e:
            raise TransientProviderError(str(e)) from e
        except anthropic.APIError as e:
            raise ProviderError(str(e)) from e
        texts = [block.text for block in message.content if getattr(block, "type", None) == "text"]
        if not texts:
            raise ProviderError(f"Anthropic returned no text (stop_reason={message.stop_reason})")
        return texts[0]

    def name(self) -> str:
        return f"anthropic/{self.model}"
