"""
Completion backends behind one streaming interface.

Two variants implement ``BackendClient``:

- ``RemoteChatBackend``: an Ollama-compatible HTTP server (``/api/generate`` and
  ``/api/chat``) streaming newline-delimited JSON. Stateless across calls, so the chat
  history is resent every time.
- ``LocalInferenceBackend``: the on-device Apple Foundation Model via ``apple_fm_sdk``. Chat
  keeps one ``LanguageModelSession`` alive so the model retains its context, and only the
  newest user turn is sent.

Both return async iterators of text fragments. Consumers cancel by stopping iteration (or
cancelling the task); the HTTP response or SDK stream is closed on the way out.
"""

from __future__ import annotations

import importlib
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

import httpx

from .exceptions import (
    BackendProtocolError,
    BackendUnavailable,
    EmberChatError,
    require_local_runtime,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .config import EngineConfig

logger = logging.getLogger("ember_chat.backends")

DEFAULT_BASE_URL = "http://localhost:11434"
LOCAL_MODEL_ID = "apple-foundation-model"

ChatRole = Literal["system", "user", "assistant"]


# ---------------------------------------------------------------------------
# Request values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SamplingParams:
    """Sampling knobs; unset values are left to the server's defaults."""

    temperature: float | None = None
    top_p: float | None = None
    num_ctx: int | None = None
    max_tokens: int | None = None

    def to_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.temperature is not None:
            options["temperature"] = self.temperature
        if self.top_p is not None:
            options["top_p"] = self.top_p
        if self.num_ctx is not None:
            options["num_ctx"] = self.num_ctx
        if self.max_tokens is not None:
            options["num_predict"] = self.max_tokens
        return options


CHAT_SAMPLING = SamplingParams(temperature=0.6, top_p=0.9, num_ctx=32768)
GENERATE_SAMPLING = SamplingParams(temperature=0.3, top_p=0.6)


@dataclass(frozen=True)
class ChatMessage:
    role: ChatRole
    content: str
    images: tuple[str, ...] = field(default=())

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.images:
            payload["images"] = list(self.images)
        return payload


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class BackendClient(Protocol):
    """Common interface for completion backends."""

    def generate(
        self,
        model_id: str,
        system_prompt: str,
        user_prompt: str,
        sampling: SamplingParams | None = None,
        images: Sequence[str] = (),
    ) -> AsyncIterator[str]: ...

    def chat(
        self,
        model_id: str,
        messages: Sequence[ChatMessage],
        sampling: SamplingParams | None = None,
    ) -> AsyncIterator[str]: ...

    async def list_models(self) -> list[str]: ...

    async def aclose(self) -> None: ...


# ---------------------------------------------------------------------------
# RemoteChatBackend
# ---------------------------------------------------------------------------


def _parse_record(line: str) -> dict[str, Any] | None:
    """Decode one NDJSON line. Blank lines (keep-alives) yield None."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        record = json.loads(stripped)
    except json.JSONDecodeError as exc:
        raise BackendProtocolError(f"Malformed stream record: {stripped[:120]!r}") from exc
    if not isinstance(record, dict):
        raise BackendProtocolError(
            f"Stream record must be a JSON object, got {type(record).__name__}"
        )
    return record


def _generate_text(record: dict[str, Any]) -> str:
    return record.get("response", "")


def _chat_text(record: dict[str, Any]) -> str:
    message = record.get("message") or {}
    if not isinstance(message, dict):
        raise BackendProtocolError(f"'message' must be an object, got {type(message).__name__}")
    return message.get("content", "")


class RemoteChatBackend:
    """Streams completions from an Ollama-compatible HTTP server."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        client: httpx.AsyncClient | None = None,
        request_timeout: float | None = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(request_timeout, connect=connect_timeout)
        )

    async def generate(
        self,
        model_id: str,
        system_prompt: str,
        user_prompt: str,
        sampling: SamplingParams | None = None,
        images: Sequence[str] = (),
    ) -> AsyncIterator[str]:
        body: dict[str, Any] = {"model": model_id, "prompt": user_prompt, "stream": True}
        if system_prompt:
            body["system"] = system_prompt
        if images:
            body["images"] = list(images)
        options = sampling.to_options() if sampling else {}
        if options:
            body["options"] = options

        async for fragment in self._stream("/api/generate", body, _generate_text, "response"):
            yield fragment

    async def chat(
        self,
        model_id: str,
        messages: Sequence[ChatMessage],
        sampling: SamplingParams | None = None,
    ) -> AsyncIterator[str]:
        body: dict[str, Any] = {
            "model": model_id,
            "messages": [message.to_payload() for message in messages],
            "stream": True,
        }
        options = sampling.to_options() if sampling else {}
        if options:
            body["options"] = options

        async for fragment in self._stream("/api/chat", body, _chat_text, "message"):
            yield fragment

    async def _stream(
        self,
        path: str,
        body: dict[str, Any],
        extract: Callable[[dict[str, Any]], str],
        text_key: str,
    ) -> AsyncIterator[str]:
        url = f"{self.base_url}{path}"
        logger.debug("[EmberChat Remote] POST %s model=%s", url, body.get("model"))
        try:
            async with self._client.stream("POST", url, json=body) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace").strip()
                    raise BackendProtocolError(
                        f"{path} returned HTTP {response.status_code}: {detail[:200]}"
                    )

                async for line in response.aiter_lines():
                    record = _parse_record(line)
                    if record is None:
                        continue
                    if "error" in record:
                        raise BackendProtocolError(f"Backend error: {record['error']}")
                    if text_key not in record and "done" not in record:
                        raise BackendProtocolError(
                            f"Stream record has neither '{text_key}' nor 'done': {record!r}"
                        )
                    fragment = extract(record)
                    if not isinstance(fragment, str):
                        raise BackendProtocolError(
                            f"Stream text must be a string, got {type(fragment).__name__}"
                        )
                    if fragment:
                        yield fragment
                    if record.get("done"):
                        logger.debug(
                            "[EmberChat Remote] %s done (reason=%s)",
                            path,
                            record.get("done_reason", "stop"),
                        )
                        return
        except httpx.RemoteProtocolError as exc:
            raise BackendProtocolError(f"Malformed HTTP response from {url}: {exc}") from exc
        except httpx.TransportError as exc:
            raise BackendUnavailable(f"Cannot reach completion server at {url}: {exc}") from exc

        raise BackendProtocolError(f"{path} stream ended before a record with done=true")

    async def list_models(self) -> list[str]:
        url = f"{self.base_url}/api/tags"
        try:
            response = await self._client.get(url)
        except httpx.TransportError as exc:
            raise BackendUnavailable(f"Cannot reach completion server at {url}: {exc}") from exc
        if response.status_code >= 400:
            raise BackendProtocolError(f"/api/tags returned HTTP {response.status_code}")
        try:
            payload = response.json()
            return [str(entry["name"]) for entry in payload.get("models", [])]
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise BackendProtocolError(f"Malformed model list from {url}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def __repr__(self) -> str:
        return f"RemoteChatBackend(base_url={self.base_url!r})"


# ---------------------------------------------------------------------------
# LocalInferenceBackend
# ---------------------------------------------------------------------------


def _is_context_overflow(exc: Exception) -> bool:
    error_str = str(exc)
    return (
        "Context window size exceeded" in error_str
        or "ExceededContextWindowSizeError" in error_str
        or type(exc).__name__ == "ExceededContextWindowSizeError"
    )


def _render_history(messages: Sequence[ChatMessage]) -> str:
    lines = []
    for message in messages:
        speaker = "User" if message.role == "user" else "Assistant"
        lines.append(f"{speaker}: {message.content}")
    return "\n".join(lines)


class LocalInferenceBackend:
    """Runs generation in-process on the Apple Foundation Model.

    ``model`` and ``session_factory`` default to ``apple_fm_sdk.SystemLanguageModel()`` and
    ``apple_fm_sdk.LanguageModelSession``; the SDK is only imported when first needed.
    """

    def __init__(self, model: Any = None, session_factory: Callable[..., Any] | None = None):
        self._model = model
        self._session_factory = session_factory
        self._chat_session: Any = None
        self._chat_instructions: str | None = None

    def _runtime(self) -> tuple[Any, Callable[..., Any]]:
        if self._model is None or self._session_factory is None:
            require_local_runtime("LocalInferenceBackend")
            fm = importlib.import_module("apple_fm_sdk")
            if self._model is None:
                self._model = fm.SystemLanguageModel()
            if self._session_factory is None:
                self._session_factory = fm.LanguageModelSession

        is_available, reason = self._model.is_available()
        if not is_available:
            raise BackendUnavailable(f"Foundation Model is not available: {reason}")
        return self._model, self._session_factory

    def _new_session(self, instructions: str) -> Any:
        model, factory = self._runtime()
        if instructions:
            return factory(model=model, instructions=instructions)
        return factory(model=model)

    def reset(self) -> None:
        """Forget the retained chat session (and the model's context with it)."""
        self._chat_session = None
        self._chat_instructions = None

    @staticmethod
    def _note_ignored(sampling: SamplingParams | None, images: Sequence[str]) -> None:
        if sampling is not None and sampling.to_options():
            logger.debug("[EmberChat Local] Sampling options are not configurable; ignored.")
        if images:
            logger.debug("[EmberChat Local] %d image(s) ignored by the local model.", len(images))

    async def generate(
        self,
        model_id: str,
        system_prompt: str,
        user_prompt: str,
        sampling: SamplingParams | None = None,
        images: Sequence[str] = (),
    ) -> AsyncIterator[str]:
        self._note_ignored(sampling, images)
        session = self._new_session(system_prompt)
        async for fragment in self._stream(session, user_prompt):
            yield fragment

    async def chat(
        self,
        model_id: str,
        messages: Sequence[ChatMessage],
        sampling: SamplingParams | None = None,
    ) -> AsyncIterator[str]:
        system_prompt = ""
        history = list(messages)
        if history and history[0].role == "system":
            system_prompt = history.pop(0).content
        if not history or history[-1].role != "user":
            raise BackendProtocolError("Chat request must end with a user message")

        latest = history[-1]
        self._note_ignored(sampling, latest.images)
        prompt = latest.content
        fresh_conversation = len(history) == 1
        if (
            fresh_conversation
            or self._chat_session is None
            or system_prompt != self._chat_instructions
        ):
            self._chat_session = self._new_session(system_prompt)
            self._chat_instructions = system_prompt
            if not fresh_conversation:
                # The new session has no memory of earlier turns; replay them as context.
                prompt = (
                    f"Conversation so far:\n{_render_history(history[:-1])}\n\n"
                    f"User: {latest.content}"
                )
        else:
            self._runtime()

        session = self._chat_session
        try:
            async for fragment in self._stream(session, prompt):
                yield fragment
        except BackendProtocolError:
            if self._chat_session is session:
                self.reset()
            raise

    async def _stream(self, session: Any, prompt: str) -> AsyncIterator[str]:
        previous = ""
        try:
            async for snapshot in session.stream_response(prompt):
                text = str(snapshot)
                if not text.startswith(previous):
                    raise BackendProtocolError(
                        "Local model snapshot does not extend the previous one"
                    )
                delta = text[len(previous) :]
                previous = text
                if delta:
                    yield delta
        except EmberChatError:
            raise
        except Exception as exc:
            if _is_context_overflow(exc):
                logger.warning(
                    "[EmberChat Local] Context window exceeded; the next chat starts fresh."
                )
            raise BackendProtocolError(f"Local generation failed: {exc}") from exc

    async def list_models(self) -> list[str]:
        self._runtime()
        return [LOCAL_MODEL_ID]

    async def aclose(self) -> None:
        self.reset()

    def __repr__(self) -> str:
        return f"LocalInferenceBackend(chat_session={'open' if self._chat_session else 'none'})"


def make_backend(config: EngineConfig) -> BackendClient:
    """Build the backend variant named by ``config.backend``."""
    if config.backend == "local":
        return LocalInferenceBackend()
    return RemoteChatBackend(
        config.base_url,
        request_timeout=config.request_timeout,
        connect_timeout=config.connect_timeout,
    )
