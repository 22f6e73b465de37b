"""Shared fakes for the ember_chat test-suite."""

from __future__ import annotations

import asyncio
from collections import deque
from unittest.mock import MagicMock

import pytest

HOLD = object()
"""Script item that parks the stream until ``FakeBackend.release()`` is called."""


class FakeBackend:
    """Scripted ``BackendClient``.

    A script is a list of items: strings are yielded as fragments, exceptions are raised,
    and ``HOLD`` blocks until released. ``scripts`` are consumed one per request; when they
    run out, ``script`` is reused.
    """

    def __init__(self, script=(), scripts=None, models=None, models_error=None):
        self.script = list(script)
        self.scripts = deque(scripts or [])
        self.models = list(models or [])
        self.models_error = models_error
        self.calls: list[tuple[str, dict]] = []
        self.opened = 0
        self.finished = 0
        self.aclosed = False
        self._gate = asyncio.Event()

    def release(self) -> None:
        self._gate.set()

    def _next_script(self):
        return list(self.scripts.popleft()) if self.scripts else list(self.script)

    async def _stream(self, script):
        self.opened += 1
        try:
            for item in script:
                if item is HOLD:
                    await self._gate.wait()
                    continue
                if isinstance(item, BaseException):
                    raise item
                yield item
                await asyncio.sleep(0)
        finally:
            self.finished += 1

    def generate(self, model_id, system_prompt, user_prompt, sampling=None, images=()):
        self.calls.append(
            (
                "generate",
                {
                    "model": model_id,
                    "system": system_prompt,
                    "prompt": user_prompt,
                    "sampling": sampling,
                    "images": tuple(images),
                },
            )
        )
        return self._stream(self._next_script())

    def chat(self, model_id, messages, sampling=None):
        self.calls.append(
            ("chat", {"model": model_id, "messages": list(messages), "sampling": sampling})
        )
        return self._stream(self._next_script())

    async def list_models(self):
        if self.models_error is not None:
            raise self.models_error
        return list(self.models)

    async def aclose(self):
        self.aclosed = True


def make_mock_model(available=True, reason=None):
    """Create a mock SystemLanguageModel with configurable availability."""
    model = MagicMock()
    model.is_available.return_value = (available, reason)
    return model


class FakeFMSession:
    """Stands in for ``apple_fm_sdk.LanguageModelSession``: streams cumulative snapshots."""

    def __init__(self, snapshots=(), error=None, model=None, instructions=None):
        self.snapshots = list(snapshots)
        self.error = error
        self.model = model
        self.instructions = instructions
        self.prompts: list[str] = []

    async def stream_response(self, prompt):
        self.prompts.append(prompt)
        for snapshot in self.snapshots:
            yield snapshot
        if self.error is not None:
            raise self.error


@pytest.fixture
def fake_backend():
    return FakeBackend(script=["Hello", ", world"])
