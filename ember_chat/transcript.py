"""Conversation transcript: ordered turns plus change notifications for the UI layer."""

from __future__ import annotations

import base64
import logging
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from uuid import UUID, uuid4

logger = logging.getLogger("ember_chat.transcript")


def utc_now() -> datetime:
    return datetime.now(UTC)


class Author(Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Attachment:
    """Binary blob (usually an image) attached to a user turn."""

    data: bytes
    file_name: str = ""
    id: UUID = field(default_factory=uuid4)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


@dataclass
class Turn:
    author: Author
    text: str = ""
    attachments: tuple[Attachment, ...] = ()
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_user(self) -> bool:
        return self.author is Author.USER


class TranscriptEventKind(Enum):
    APPENDED = "appended"
    UPDATED = "updated"
    REMOVED = "removed"
    CLEARED = "cleared"


@dataclass(frozen=True)
class TranscriptEvent:
    kind: TranscriptEventKind
    turn: Turn | None = None
    index: int | None = None
    delta: str = ""


TranscriptListener = Callable[[TranscriptEvent], None]


class Transcript:
    """Append-only list of turns during a session.

    The only in-place mutation is ``append_text`` on the last turn, which is how a streaming
    assistant reply grows. Every change is announced to subscribed listeners, in order.
    """

    def __init__(self) -> None:
        self._turns: list[Turn] = []
        self._listeners: list[TranscriptListener] = []

    # -- observation -----------------------------------------------------------------

    def subscribe(self, listener: TranscriptListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: TranscriptEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    # -- read access -----------------------------------------------------------------

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    @property
    def last(self) -> Turn | None:
        return self._turns[-1] if self._turns else None

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(tuple(self._turns))

    def __getitem__(self, index: int) -> Turn:
        return self._turns[index]

    def index_of(self, turn_id: UUID) -> int | None:
        for index, turn in enumerate(self._turns):
            if turn.id == turn_id:
                return index
        return None

    # -- mutation --------------------------------------------------------------------

    def append(
        self, author: Author, text: str = "", attachments: Sequence[Attachment] = ()
    ) -> Turn:
        turn = Turn(author=author, text=text, attachments=tuple(attachments))
        self._turns.append(turn)
        self._notify(TranscriptEvent(TranscriptEventKind.APPENDED, turn, len(self._turns) - 1))
        return turn

    def append_text(self, turn_id: UUID, delta: str) -> bool:
        """Concatenate *delta* onto the last turn if it is *turn_id*.

        Returns False (and changes nothing) when the turn is gone or no longer last, which
        happens after a ``clear()`` while a stream was still running.
        """
        if not delta:
            return False
        last = self.last
        if last is None or last.id != turn_id:
            logger.debug("[EmberChat Transcript] Dropping %d chars for detached turn.", len(delta))
            return False
        last.text += delta
        self._notify(
            TranscriptEvent(TranscriptEventKind.UPDATED, last, len(self._turns) - 1, delta)
        )
        return True

    def remove(self, turn_id: UUID) -> Turn | None:
        index = self.index_of(turn_id)
        if index is None:
            return None
        turn = self._turns.pop(index)
        self._notify(TranscriptEvent(TranscriptEventKind.REMOVED, turn, index))
        return turn

    def clear(self) -> None:
        if not self._turns:
            return
        self._turns.clear()
        self._notify(TranscriptEvent(TranscriptEventKind.CLEARED))

    def __repr__(self) -> str:
        return f"Transcript(turns={len(self._turns)})"
