"""
RatePro - AI provider adapter (Google Gemini, REST)

Only the request/response contract lives here:
prompt in, raw model text out.
- timeout / network error / 429 / 5xx -> TransientError (retryable)
- other 4xx -> AIProviderError (not retried)
"""

import logging
import httpx

from services.config_resolver import get_config
from services.errors import TransientError

logger = logging.getLogger("ai_client")

GEMINI_MODEL = "gemini-2.5-flash"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
AI_TIMEOUT_SECONDS = 20.0


class AIProviderError(Exception):
    """Non-retryable provider failure (bad request, auth, malformed reply)"""
    pass


async def generate_text(prompt: str, model: str = GEMINI_MODEL, timeout: float = AI_TIMEOUT_SECONDS) -> str:
    """Send one prompt, return the first candidate's text."""
    api_key = await get_config("GEMINI_API_KEY", sensitive=True)

    payload = {
        "contents": [{"parts": [{"text": prompt}]}],
        "generationConfig": {
            "temperature": 0.2,
            "responseMimeType": "application/json",
        },
    }

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(
                GEMINI_URL.format(model=model),
                json=payload,
                headers={
                    "x-goog-api-key": api_key,
                    "Content-Type": "application/json",
                },
            )
    except httpx.TimeoutException:
        logger.warning(f"[AI] Timeout after {timeout}s")
        raise TransientError("AI provider timeout")
    except httpx.TransportError as e:
        logger.warning(f"[AI] Transport error: {e}")
        raise TransientError("AI provider unreachable")

    if resp.status_code == 429 or resp.status_code >= 500:
        logger.warning(f"[AI] Provider returned {resp.status_code}")
        raise TransientError(f"AI provider returned {resp.status_code}")
    if resp.status_code >= 400:
        logger.error(f"[AI] Provider rejected request: {resp.status_code}")
        raise AIProviderError(f"AI provider returned {resp.status_code}")

    try:
        data = resp.json()
        return data["candidates"][0]["content"]["parts"][0]["text"]
    except (ValueError, KeyError, IndexError, TypeError):
        raise AIProviderError("AI provider returned an unexpected payload")
