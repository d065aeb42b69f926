"""LLM client — HTTP connection to a text-generation backend.

The orchestrator is handed a generator matching the protocol:

    async def __call__(self, stage: str, prompt: str) -> str: ...

`stage` identifies what the call is for ("group_turn", "welcome",
"summary", "memory"). Implementations may use it for logging; none route
on it.

One implementation per backend, chosen once per session by make_generator():

    KoboldCppLLM          POST {url}/api/v1/generate    {"prompt": ...}
    OpenAICompletionsLLM  POST {url}/v1/completions     {"model": ..., "prompt": ...}
    OpenAIChatLLM         POST {url}                    chat completions (OpenRouter,
                                                        LM Studio, Player2, ...)
    GeminiLLM             POST {url}/v1beta/models/{model}:generateContent?key=...
    EchoLLM               no network; echoes the last prompt line

HTTP implementations raise LLMError for every connection and protocol
failure. Backends that answer with an error text instead ("❌ ...",
"⚠️ ...") are caught by is_failed_reply(); the orchestrator treats both as
"no turn produced".
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import httpx

from earshot.config import Connection

logger = logging.getLogger(__name__)

ERROR_PREFIXES = ("❌", "⚠️", "Error:")


# ---------------------------------------------------------------------------
# Protocol — every generator must match this signature
# ---------------------------------------------------------------------------

class TextGenerator(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...


def is_failed_reply(text: str | None) -> bool:
    """Empty, whitespace-only, or an error message dressed up as a reply."""
    if text is None:
        return True
    stripped = text.strip()
    return not stripped or stripped.startswith(ERROR_PREFIXES)


async def ask(
    generator: TextGenerator, stage: str, prompt: str, timeout: float
) -> str | None:
    """One generation call bounded by `timeout` seconds.

    Returns the stripped reply, or None on timeout, LLMError, or a failed
    reply. Cancellation of the calling task propagates.
    """
    try:
        reply = await asyncio.wait_for(generator(stage, prompt), timeout)
    except asyncio.TimeoutError:
        logger.warning("%s call timed out after %.1fs", stage, timeout)
        return None
    except LLMError as e:
        logger.warning("%s call failed: %s", stage, e)
        return None
    if is_failed_reply(reply):
        logger.warning("%s call returned no usable text: %r", stage, reply)
        return None
    return reply.strip()


# ---------------------------------------------------------------------------
# HttpLLM — shared plumbing for real backends
# ---------------------------------------------------------------------------

class HttpLLM:
    """Async HTTP client base. Subclasses define the wire format.

    Args:
        provider_url: Base URL (or full endpoint, for chat backends).
        api_key:      Bearer token / API key, or empty string if not required.
        model:        Model identifier, for backends that take one.
        timeout:      HTTP timeout in seconds. Defaults to 120.
    """

    backend = "http"

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        model: str = "",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, prompt: str) -> tuple[str, dict]:
        raise NotImplementedError

    def _parse_response(self, data: dict) -> str:
        raise NotImplementedError

    async def __call__(self, stage: str, prompt: str) -> str:
        url, body = self._build_request(prompt)
        logger.debug("llm call backend=%s stage=%s prompt_len=%d", self.backend, stage, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM request to {self._base_url} failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError(f"LLM backend returned a non-JSON body ({self.backend})") from e
        text = self._parse_response(data)
        logger.debug("llm response backend=%s stage=%s len=%d", self.backend, stage, len(text))
        return text


class KoboldCppLLM(HttpLLM):
    backend = "koboldcpp"

    def _build_request(self, prompt: str) -> tuple[str, dict]:
        return f"{self._base_url}/api/v1/generate", {"prompt": prompt}

    def _parse_response(self, data: dict) -> str:
        results = data.get("results")
        if not results or "text" not in results[0]:
            raise LLMError("Unexpected response format from KoboldCpp backend")
        return results[0]["text"]


class OpenAICompletionsLLM(HttpLLM):
    backend = "openai"

    def _build_request(self, prompt: str) -> tuple[str, dict]:
        body: dict = {"prompt": prompt}
        if self._model:
            body["model"] = self._model
        return f"{self._base_url}/v1/completions", body

    def _parse_response(self, data: dict) -> str:
        choices = data.get("choices")
        if not choices or "text" not in choices[0]:
            raise LLMError("Unexpected response format from OpenAI-compatible backend")
        return choices[0]["text"]


class OpenAIChatLLM(HttpLLM):
    """Chat-completions endpoint; provider_url is the full endpoint URL."""

    backend = "openai_chat"

    def _build_request(self, prompt: str) -> tuple[str, dict]:
        body: dict = {"messages": [{"role": "user", "content": prompt}]}
        if self._model:
            body["model"] = self._model
        return self._base_url, body

    def _parse_response(self, data: dict) -> str:
        choices = data.get("choices")
        if not choices:
            raise LLMError("Unexpected response format from chat-completions backend")
        message = choices[0].get("message") or {}
        if "content" not in message:
            raise LLMError("Unexpected response format from chat-completions backend")
        return message["content"] or ""


class GeminiLLM(HttpLLM):
    """Google Generative Language API. The key travels in the query string."""

    backend = "gemini"

    def __init__(
        self,
        provider_url: str = "https://generativelanguage.googleapis.com",
        api_key: str = "",
        model: str = "gemini-1.5-flash",
        timeout: float = 120.0,
    ) -> None:
        super().__init__(provider_url, api_key, model or "gemini-1.5-flash", timeout)

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _build_request(self, prompt: str) -> tuple[str, dict]:
        if not self._api_key:
            raise LLMError("Missing Gemini API key")
        url = f"{self._base_url}/v1beta/models/{self._model}:generateContent?key={self._api_key}"
        return url, {"contents": [{"parts": [{"text": prompt}]}]}

    def _parse_response(self, data: dict) -> str:
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError("Unexpected response format from Gemini backend") from e
        text = "".join(p.get("text", "") for p in parts)
        if not text:
            raise LLMError("No text found in Gemini response")
        return text


# ---------------------------------------------------------------------------
# EchoLLM — no network; useful for wiring checks and demos
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the last non-empty prompt line.

    Lets you drive a whole round (admission, scheduling, summaries) without a
    running model. Use a stub generator in tests when you need controlled
    replies.
    """

    async def __call__(self, stage: str, prompt: str) -> str:
        logger.debug("EchoLLM stage=%s prompt_len=%d", stage, len(prompt))
        lines = [line.strip() for line in prompt.splitlines() if line.strip()]
        return lines[-1] if lines else ""


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

# (class, endpoint used when the connection leaves provider_url empty)
_BACKENDS: dict[str, tuple[type[HttpLLM], str]] = {
    "koboldcpp": (KoboldCppLLM, "http://localhost:5001"),
    "openai": (OpenAICompletionsLLM, "http://localhost:8080"),
    "openai_chat": (OpenAIChatLLM, "https://openrouter.ai/api/v1/chat/completions"),
    "gemini": (GeminiLLM, "https://generativelanguage.googleapis.com"),
}


def make_generator(conn: Connection) -> TextGenerator:
    """Build the generator for a connection. Called once per session."""
    if conn.provider_format == "echo":
        return EchoLLM()
    cls, default_url = _BACKENDS[conn.provider_format]
    return cls(
        provider_url=conn.provider_url or default_url,
        api_key=conn.api_key,
        model=conn.model,
        timeout=conn.timeout,
    )


# ---------------------------------------------------------------------------
# LLMError — raised by HttpLLM subclasses for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
