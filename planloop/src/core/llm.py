"""Text-generation plumbing shared by the planner, critic and step strategies."""

from __future__ import annotations

import inspect
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol

import httpx


logger = logging.getLogger(__name__)

JSON_ONLY_SUFFIX = "\n\nIMPORTANT: Respond only with valid JSON, no additional text."

_JSON_SPAN = re.compile(r"\{[\s\S]*\}")


class TextGenerator(Protocol):
    """Callable producing text for a system instruction and a user prompt.

    Implementations may return a string, a (possibly async) iterable of chunks,
    or an awaitable resolving to either.
    """

    def __call__(self, system_prompt: str, user_prompt: str) -> Any:  # pragma: no cover - interface
        ...


class LlmClientError(RuntimeError):
    pass


def extract_json(text: str) -> str:
    """Return the first ``{ ... }`` span in ``text`` or ``text`` unchanged.

    The match is greedy, from the first opening brace to the last closing
    brace, so callers must still reject malformed results.
    """

    match = _JSON_SPAN.search(text)
    if match:
        return match.group(0)
    return text


def _chunk_text(chunk: Any) -> str:
    if isinstance(chunk, str):
        return chunk
    text = getattr(chunk, "text", None)
    if isinstance(text, str):
        return text
    if isinstance(chunk, Mapping) and isinstance(chunk.get("text"), str):
        return chunk["text"]
    return ""


async def collect_text(response: Any) -> str:
    """Resolve a generator response into one string.

    Streaming responses are concatenated in order; chunks without text are
    skipped.
    """

    while inspect.isawaitable(response):
        response = await response
    if response is None:
        return ""
    if isinstance(response, str):
        return response
    if hasattr(response, "__aiter__"):
        parts: List[str] = []
        async for chunk in response:
            parts.append(_chunk_text(chunk))
        return "".join(parts)
    if isinstance(response, (bytes, bytearray)):
        return bytes(response).decode("utf-8")
    if hasattr(response, "__iter__") and not isinstance(response, Mapping):
        return "".join(_chunk_text(chunk) for chunk in response)
    return _chunk_text(response) or str(response)


async def generate_text(llm: TextGenerator, system_prompt: str, user_prompt: str) -> str:
    return await collect_text(llm(system_prompt, user_prompt))


async def generate_json(
    llm: TextGenerator,
    system_prompt: str,
    user_prompt: str,
    context: Any = None,
) -> str:
    """Ask ``llm`` for JSON and return the extracted object text."""

    if context is not None and hasattr(context, "add_message"):
        context.add_message({"role": "user", "content": user_prompt})
    text = await generate_text(llm, system_prompt + JSON_ONLY_SUFFIX, user_prompt)
    return extract_json(text)


@dataclass
class HttpTextGenerator:
    """Minimal async client for OpenAI-compatible ``/chat/completions`` endpoints.

    A fresh ``httpx.AsyncClient`` is opened per call so the generator can be
    shared across event loops.
    """

    base_url: str
    model: str
    api_key: Optional[str] = None
    timeout: float = 60.0
    temperature: float = 0.2
    headers: Dict[str, str] = field(default_factory=dict)
    transport: Optional[httpx.AsyncBaseTransport] = field(default=None, repr=False)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        headers.update(self.headers)
        return headers

    async def __call__(self, system_prompt: str, user_prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
        }
        url = self.base_url.rstrip("/") + "/chat/completions"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=payload, headers=self._headers())
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error("LLM call failed with HTTP %s", exc.response.status_code)
            raise LlmClientError(
                f"LLM endpoint returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("LLM call failed: %s", exc)
            raise LlmClientError(f"LLM request failed: {exc}") from exc
        except ValueError as exc:
            raise LlmClientError("LLM endpoint returned invalid JSON") from exc
        try:
            return str(data["choices"][0]["message"]["content"] or "")
        except (KeyError, IndexError, TypeError) as exc:
            raise LlmClientError("LLM response missing choices[0].message.content") from exc


__all__ = [
    "HttpTextGenerator",
    "JSON_ONLY_SUFFIX",
    "LlmClientError",
    "TextGenerator",
    "collect_text",
    "extract_json",
    "generate_json",
    "generate_text",
]
