from __future__ import annotations

from cuoti_book.providers.base import LLMProvider, ProviderError, TransientProviderError


class GeminiProvider(LLMProvider):
    def __init__(self, api_key: str, model: str = "gemini-2.0-flash", timeout: float = 60.0):
        import google.generativeai as genai
        genai.configure(api_key=api_key)
        self.model = model
        self.timeout = timeout
        self._client = genai.GenerativeModel(
            model,
            generation_config={"response_mime_type": "application/json"},
        )

    async def generate(
        self, prompt: str, temperature: float = 0.1, image: bytes | None = None
    ) -> str:
        from google.api_core import exceptions as gexc

        parts: list = []
        if image is not None:
            parts.append({"mime_type": "image/jpeg", "data": image})
        parts.append(prompt)
        try:
            response = await self._client.generate_content_async(
                parts,
                generation_config={"temperature": temperature},
                request_options={"timeout": self.timeout},
            )
        except gexc.ResourceExhausted as e:
            raise TransientProviderError(str(e), rate_limited=True) from e
        except (gexc.DeadlineExceeded, gexc.ServiceUnavailable, gexc.InternalServerError) as e:
            raise TransientProviderError(str(e)) from e
        except gexc.GoogleAPIError as e:
            raise ProviderError(str(e)) from e
        try:
            return response.text
        except ValueError as e:
            # Blocked or empty candidates have no text
            raise ProviderError(f"Gemini returned no text: {e}") from e

    def name(self) -> str:
        return f"gemini/{self.model}"
