"""
Conversation orchestration: role + history + new message in, incremental transcript out.

``ConversationSession`` owns the transcript and at most one in-flight request. A send
appends the user turn and an empty assistant placeholder, then starts an ``asyncio.Task``
that opens the backend stream (``chat`` with full history for multi-turn roles,
``generate`` otherwise) and pipes fragments through the think filter into the placeholder.
A backend that fails while opening the stream is handled like a failure mid-stream.

Every request gets a generation number. Starting a new request, switching roles or
calling ``cancel_current()`` retires the current generation synchronously, so a superseded
stream can never write into the transcript again, even before its task has observed the
cancellation.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from .backends import BackendClient, ChatMessage
from .config import EngineConfig
from .exceptions import Cancelled, EmberChatError, EmptyInput
from .roles import Role, RoleCatalog, default_catalog
from .think_filter import TokenStreamFilter, filter_stream
from .transcript import Attachment, Author, Transcript, Turn, utc_now

logger = logging.getLogger("ember_chat.session")


class SessionEventKind(Enum):
    STREAMING_STARTED = "streaming_started"
    STREAMING_FINISHED = "streaming_finished"
    ERROR = "error"
    ROLE_CHANGED = "role_changed"
    MODEL_CHANGED = "model_changed"
    MODELS_REFRESHED = "models_refreshed"
    ATTACHMENTS_CHANGED = "attachments_changed"


@dataclass(frozen=True)
class SessionEvent:
    kind: SessionEventKind
    detail: Any = None


SessionListener = Callable[[SessionEvent], None]


@dataclass(frozen=True)
class SessionError:
    """User-visible failure, kept until the UI acknowledges it."""

    message: str
    exception: BaseException
    occurred_at: datetime = field(default_factory=utc_now)


@dataclass
class _PendingRequest:
    generation: int
    task: asyncio.Task[None]
    placeholder_id: UUID


def build_chat_messages(role: Role, turns: Sequence[Turn]) -> list[ChatMessage]:
    """Chat history for *turns* (which end with the new user turn, placeholder excluded).

    Assistant turns without text are skipped; user attachments travel as base64 images.
    """
    messages: list[ChatMessage] = []
    if role.system_prompt:
        messages.append(ChatMessage(role="system", content=role.system_prompt))
    for turn in turns:
        if turn.is_user:
            images = tuple(attachment.to_base64() for attachment in turn.attachments)
            messages.append(ChatMessage(role="user", content=turn.text, images=images))
        elif turn.text:
            messages.append(ChatMessage(role="assistant", content=turn.text))
    return messages


class ConversationSession:
    """One conversation with one backend. Not shared between event loops.

    Args:
        backend: The ``BackendClient`` every request goes to.
        catalog: Roles to choose from. Defaults to the built-in catalog.
        config: Sampling defaults, think-marker and reveal policy.
        role_id: Initial role; falls back to ``config.default_role``.
    """

    def __init__(
        self,
        backend: BackendClient,
        catalog: RoleCatalog | None = None,
        config: EngineConfig | None = None,
        role_id: str | None = None,
    ) -> None:
        self.backend = backend
        self.catalog = catalog or default_catalog()
        self.config = config or EngineConfig()
        self.transcript = Transcript()

        self._role = self.catalog.role_by_id(role_id or self.config.default_role)
        self._model_id = self._role.default_model_id
        self._filter = TokenStreamFilter(
            reveal_thinking=self._reveal_for(self._role), marker=self.config.think_marker
        )
        self._pending: _PendingRequest | None = None
        self._generation = 0
        self._attachments: list[Attachment] = []
        self._available_models: list[str] = []
        self._last_error: SessionError | None = None
        self._listeners: list[SessionListener] = []

    # -- observable state ------------------------------------------------------------

    @property
    def active_role(self) -> Role:
        return self._role

    @property
    def active_model_id(self) -> str:
        return self._model_id

    @property
    def is_streaming(self) -> bool:
        return self._pending is not None

    @property
    def last_error(self) -> SessionError | None:
        return self._last_error

    @property
    def pending_attachments(self) -> tuple[Attachment, ...]:
        return tuple(self._attachments)

    @property
    def available_models(self) -> tuple[str, ...]:
        return tuple(self._available_models)

    @property
    def think_filter(self) -> TokenStreamFilter:
        return self._filter

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: SessionEventKind, detail: Any = None) -> None:
        event = SessionEvent(kind, detail)
        for listener in list(self._listeners):
            listener(event)

    def acknowledge_error(self) -> None:
        self._last_error = None

    # -- sending ---------------------------------------------------------------------

    def _reveal_for(self, role: Role) -> bool:
        if self.config.reveal_thinking is not None:
            return self.config.reveal_thinking
        return role.reveal_thinking

    @staticmethod
    def _validate_input(user_text: str) -> str:
        if not user_text or not user_text.strip():
            raise EmptyInput("Message is empty")
        return user_text

    def send(
        self, user_text: str, attachments: Sequence[Attachment] | None = None
    ) -> asyncio.Task[None] | None:
        """Start a request for *user_text*. Must be called from a running event loop.

        Returns the task streaming the reply, or None when the text is blank. When
        *attachments* is None the pending attachment selection is sent (and then cleared).
        """
        try:
            text = self._validate_input(user_text)
        except EmptyInput:
            logger.debug("[EmberChat Session] Ignoring empty message.")
            return None

        loop = asyncio.get_running_loop()
        role = self._role

        if role.is_stateless:
            self.transcript.clear()
        self.cancel_current()

        if attachments is None:
            attachments = self._attachments
        attached = tuple(attachments)
        if self._attachments:
            self._attachments.clear()
            self._emit(SessionEventKind.ATTACHMENTS_CHANGED, ())

        self.transcript.append(Author.USER, text, attached)
        placeholder = self.transcript.append(Author.ASSISTANT)

        self._filter.reveal_thinking = self._reveal_for(role)
        self._filter.reset()
        self._last_error = None

        open_stream = self._stream_opener(role, text, attached)
        self._generation += 1
        generation = self._generation
        task = loop.create_task(
            self._drive(generation, open_stream, placeholder.id),
            name=f"ember-chat-request-{generation}",
        )
        self._pending = _PendingRequest(generation, task, placeholder.id)
        logger.info(
            "[EmberChat Session] Request %d: role=%s model=%s shape=%s",
            generation,
            role.id,
            self._model_id,
            "chat" if role.uses_multi_turn_chat else "generate",
        )
        self._emit(SessionEventKind.STREAMING_STARTED, generation)
        return task

    def _stream_opener(
        self, role: Role, text: str, attachments: Sequence[Attachment]
    ) -> Callable[[], AsyncIterator[str]]:
        """Bind the request now; the backend is only called once the task runs."""
        if role.uses_multi_turn_chat:
            messages = build_chat_messages(role, self.transcript.turns[:-1])
            return functools.partial(
                self.backend.chat, self._model_id, messages, self.config.chat_sampling
            )
        images = tuple(attachment.to_base64() for attachment in attachments)
        return functools.partial(
            self.backend.generate,
            self._model_id,
            role.system_prompt,
            text,
            self.config.generate_sampling,
            images,
        )

    def _is_current(self, generation: int) -> bool:
        return self._pending is not None and self._pending.generation == generation

    def _apply(self, generation: int, placeholder_id: UUID, shown: str) -> None:
        if shown and self._is_current(generation):
            self.transcript.append_text(placeholder_id, shown)

    async def _drive(
        self,
        generation: int,
        open_stream: Callable[[], AsyncIterator[str]],
        placeholder_id: UUID,
    ) -> None:
        try:
            async with contextlib.aclosing(open_stream()) as fragments:
                shown_stream = filter_stream(fragments, self._filter)
                async with contextlib.aclosing(shown_stream):
                    async for shown in shown_stream:
                        self._apply(generation, placeholder_id, shown)
        except asyncio.CancelledError:
            logger.info("[EmberChat Session] Request %d cancelled.", generation)
            if self._is_current(generation):
                self._drop_empty_placeholder(placeholder_id)
            raise
        except Cancelled:
            logger.info("[EmberChat Session] Request %d stopped by the backend.", generation)
            if self._is_current(generation):
                self._drop_empty_placeholder(placeholder_id)
        except Exception as exc:
            if not self._is_current(generation):
                logger.debug(
                    "[EmberChat Session] Superseded request %d failed late: %s", generation, exc
                )
                return
            self._fail(generation, placeholder_id, exc)
        else:
            logger.info("[EmberChat Session] Request %d complete.", generation)
        finally:
            if self._is_current(generation):
                self._pending = None
                self._emit(SessionEventKind.STREAMING_FINISHED, generation)

    def _fail(self, generation: int, placeholder_id: UUID, exc: Exception) -> None:
        if isinstance(exc, EmberChatError):
            logger.error("[EmberChat Session] Request %d failed: %s", generation, exc)
        else:
            logger.error(
                "[EmberChat Session] Request %d failed unexpectedly.", generation, exc_info=exc
            )
        self._record_error(exc, "Failed to send message")
        self._drop_empty_placeholder(placeholder_id)

    def _record_error(self, exc: Exception, context: str) -> None:
        detail = str(exc) or type(exc).__name__
        self._last_error = SessionError(f"{context}: {detail}", exc)
        self._emit(SessionEventKind.ERROR, self._last_error)

    def _drop_empty_placeholder(self, placeholder_id: UUID) -> None:
        index = self.transcript.index_of(placeholder_id)
        if index is None:
            return
        turn = self.transcript[index]
        if turn.author is Author.ASSISTANT and not turn.text:
            self.transcript.remove(placeholder_id)

    def cancel_current(self) -> bool:
        """Cancel the in-flight request, keeping any text it already produced."""
        pending = self._pending
        if pending is None:
            return False
        self._pending = None
        pending.task.cancel()
        self._drop_empty_placeholder(pending.placeholder_id)
        logger.debug("[EmberChat Session] Cancelling request %d.", pending.generation)
        self._emit(SessionEventKind.STREAMING_FINISHED, pending.generation)
        return True

    async def wait(self) -> None:
        """Wait until the in-flight request (if any) has finished, failed or been cancelled."""
        pending = self._pending
        if pending is None:
            return
        await asyncio.wait([pending.task])

    # -- transcript & selection ------------------------------------------------------

    def clear(self) -> None:
        """Empty the transcript and the attachment selection. Does not cancel."""
        self.transcript.clear()
        if self._attachments:
            self._attachments.clear()
            self._emit(SessionEventKind.ATTACHMENTS_CHANGED, ())

    def reset(self) -> None:
        self.cancel_current()
        self.clear()

    def attach(self, data: bytes, file_name: str = "") -> Attachment:
        attachment = Attachment(data=data, file_name=file_name)
        self._attachments.append(attachment)
        self._emit(SessionEventKind.ATTACHMENTS_CHANGED, self.pending_attachments)
        return attachment

    def remove_attachment(self, attachment_id: UUID) -> bool:
        before = len(self._attachments)
        self._attachments = [a for a in self._attachments if a.id != attachment_id]
        if len(self._attachments) == before:
            return False
        self._emit(SessionEventKind.ATTACHMENTS_CHANGED, self.pending_attachments)
        return True

    def set_role(self, role_id: str) -> None:
        """Switch roles: cancels, clears the conversation and selects the role's model."""
        role = self.catalog.role_by_id(role_id)
        if role.id == self._role.id:
            return
        self.reset()
        self._role = role
        self._filter.reveal_thinking = self._reveal_for(role)
        logger.info("[EmberChat Session] Role -> %s", role.id)
        self._emit(SessionEventKind.ROLE_CHANGED, role)
        self.set_model(role.default_model_id)

    def set_model(self, model_id: str) -> None:
        if not model_id or not model_id.strip():
            raise ValueError("model_id must be a non-empty string")
        if model_id == self._model_id:
            return
        self._model_id = model_id
        self._emit(SessionEventKind.MODEL_CHANGED, model_id)

    async def refresh_models(self) -> list[str]:
        """Ask the backend which models exist; fall back to the first if ours is missing."""
        try:
            models = list(await self.backend.list_models())
        except EmberChatError as exc:
            logger.warning("[EmberChat Session] Could not load models: %s", exc)
            self._record_error(exc, "Failed to load models")
            return []
        self._available_models = models
        if models and self._model_id not in models:
            self.set_model(models[0])
        self._emit(SessionEventKind.MODELS_REFRESHED, tuple(models))
        return models

    async def aclose(self) -> None:
        self.cancel_current()
        await self.backend.aclose()

    def __repr__(self) -> str:
        return (
            f"ConversationSession(role={self._role.id!r}, model={self._model_id!r}, "
            f"turns={len(self.transcript)}, streaming={self.is_streaming})"
        )
