"""
Tests for LocalInferenceBackend with a mocked Foundation Model runtime.
"""

import importlib.machinery
import logging
import sys
import types
from collections import deque

import pytest

from ember_chat.backends import (
    LOCAL_MODEL_ID,
    BackendClient,
    ChatMessage,
    LocalInferenceBackend,
    SamplingParams,
    make_backend,
)
from ember_chat.config import EngineConfig
from ember_chat.exceptions import BackendProtocolError, BackendUnavailable

from .conftest import FakeFMSession, make_mock_model


class SessionFactory:
    """Hands out FakeFMSessions; each script is (snapshots, error)."""

    def __init__(self, *scripts):
        self.scripts = deque(scripts)
        self.sessions = []

    def __call__(self, model=None, instructions=None):
        snapshots, error = self.scripts.popleft() if self.scripts else ((), None)
        session = FakeFMSession(snapshots, error, model=model, instructions=instructions)
        self.sessions.append(session)
        return session


async def collect(stream):
    return [fragment async for fragment in stream]


def local_backend(*scripts, model=None):
    factory = SessionFactory(*scripts)
    backend = LocalInferenceBackend(model=model or make_mock_model(), session_factory=factory)
    return backend, factory


# ========================================================================
# generate
# ========================================================================


class TestGenerate:
    async def test_snapshots_become_deltas(self):
        backend, factory = local_backend((["Hel", "Hello", "Hello!"], None))
        out = await collect(backend.generate(LOCAL_MODEL_ID, "Translate.", "hi"))

        assert out == ["Hel", "lo", "!"]
        assert factory.sessions[0].instructions == "Translate."
        assert factory.sessions[0].prompts == ["hi"]

    async def test_repeated_snapshot_yields_nothing(self):
        backend, _ = local_backend((["a", "a", "ab"], None))
        assert await collect(backend.generate(LOCAL_MODEL_ID, "", "hi")) == ["a", "b"]

    async def test_no_system_prompt_means_no_instructions(self):
        backend, factory = local_backend((["x"], None))
        await collect(backend.generate(LOCAL_MODEL_ID, "", "hi"))
        assert factory.sessions[0].instructions is None

    async def test_each_generate_uses_fresh_session(self):
        backend, factory = local_backend((["a"], None), (["b"], None))
        await collect(backend.generate(LOCAL_MODEL_ID, "", "one"))
        await collect(backend.generate(LOCAL_MODEL_ID, "", "two"))
        assert len(factory.sessions) == 2

    async def test_sampling_and_images_are_ignored(self):
        backend, factory = local_backend((["ok"], None))
        out = await collect(
            backend.generate(
                LOCAL_MODEL_ID, "", "hi", SamplingParams(temperature=0.1), images=["aW1n"]
            )
        )
        assert out == ["ok"]
        assert factory.sessions[0].prompts == ["hi"]


# ========================================================================
# chat
# ========================================================================


class TestChat:
    async def test_session_is_reused_and_only_latest_turn_sent(self):
        backend, factory = local_backend((["Hello"], None))
        first = [ChatMessage("system", "Be nice."), ChatMessage("user", "hi")]
        second = first + [ChatMessage("assistant", "Hello"), ChatMessage("user", "again")]

        await collect(backend.chat(LOCAL_MODEL_ID, first))
        await collect(backend.chat(LOCAL_MODEL_ID, second))

        assert len(factory.sessions) == 1
        assert factory.sessions[0].instructions == "Be nice."
        assert factory.sessions[0].prompts == ["hi", "again"]

    async def test_new_conversation_starts_new_session(self):
        backend, factory = local_backend()
        await collect(backend.chat(LOCAL_MODEL_ID, [ChatMessage("user", "one")]))
        await collect(backend.chat(LOCAL_MODEL_ID, [ChatMessage("user", "two")]))
        assert len(factory.sessions) == 2

    async def test_changed_system_prompt_replays_history(self):
        backend, factory = local_backend()
        await collect(
            backend.chat(LOCAL_MODEL_ID, [ChatMessage("system", "A"), ChatMessage("user", "hi")])
        )
        await collect(
            backend.chat(
                LOCAL_MODEL_ID,
                [
                    ChatMessage("system", "B"),
                    ChatMessage("user", "hi"),
                    ChatMessage("assistant", "hey"),
                    ChatMessage("user", "again"),
                ],
            )
        )

        assert len(factory.sessions) == 2
        assert factory.sessions[1].instructions == "B"
        assert factory.sessions[1].prompts == [
            "Conversation so far:\nUser: hi\nAssistant: hey\n\nUser: again"
        ]

    async def test_reset_forgets_session(self):
        backend, factory = local_backend()
        history = [ChatMessage("user", "hi")]
        await collect(backend.chat(LOCAL_MODEL_ID, history))
        backend.reset()
        await collect(
            backend.chat(
                LOCAL_MODEL_ID,
                history + [ChatMessage("assistant", "yo"), ChatMessage("user", "more")],
            )
        )
        assert len(factory.sessions) == 2
        assert factory.sessions[1].prompts[0].startswith("Conversation so far:")

    async def test_chat_must_end_with_user_turn(self):
        backend, _ = local_backend()
        with pytest.raises(BackendProtocolError, match="user message"):
            await collect(backend.chat(LOCAL_MODEL_ID, [ChatMessage("system", "only")]))

    async def test_failure_drops_retained_session(self):
        backend, factory = local_backend((["a"], RuntimeError("sdk crashed")))
        with pytest.raises(BackendProtocolError, match="sdk crashed"):
            await collect(backend.chat(LOCAL_MODEL_ID, [ChatMessage("user", "hi")]))
        assert backend._chat_session is None


# ========================================================================
# Failures & availability
# ========================================================================


class TestFailures:
    async def test_unavailable_model(self):
        backend, _ = local_backend(model=make_mock_model(False, "Apple Intelligence is off"))
        with pytest.raises(BackendUnavailable, match="Apple Intelligence is off"):
            await collect(backend.generate(LOCAL_MODEL_ID, "", "hi"))

    async def test_snapshot_that_does_not_extend(self):
        backend, _ = local_backend((["Hello", "Help"], None))
        with pytest.raises(BackendProtocolError, match="does not extend"):
            await collect(backend.generate(LOCAL_MODEL_ID, "", "hi"))

    async def test_sdk_error_is_wrapped(self):
        backend, _ = local_backend(([], ValueError("bad input")))
        with pytest.raises(BackendProtocolError) as excinfo:
            await collect(backend.generate(LOCAL_MODEL_ID, "", "hi"))
        assert isinstance(excinfo.value.__cause__, ValueError)

    async def test_context_overflow_is_logged(self, caplog):
        backend, _ = local_backend(([], Exception("Context window size exceeded")))
        with caplog.at_level(logging.WARNING, logger="ember_chat.backends"):
            with pytest.raises(BackendProtocolError):
                await collect(backend.generate(LOCAL_MODEL_ID, "", "hi"))
        assert "Context window exceeded" in caplog.text

    async def test_missing_sdk(self, monkeypatch):
        monkeypatch.setitem(sys.modules, "apple_fm_sdk", None)
        backend = LocalInferenceBackend()
        with pytest.raises(BackendUnavailable, match="apple-fm-sdk"):
            await backend.list_models()


# ========================================================================
# Runtime wiring
# ========================================================================


class TestRuntime:
    async def test_list_models(self):
        backend, _ = local_backend()
        assert await backend.list_models() == [LOCAL_MODEL_ID]

    async def test_default_runtime_is_loaded_from_sdk(self, monkeypatch):
        factory = SessionFactory((["from sdk"], None))
        fake_sdk = types.ModuleType("apple_fm_sdk")
        fake_sdk.__spec__ = importlib.machinery.ModuleSpec("apple_fm_sdk", None)
        fake_sdk.SystemLanguageModel = make_mock_model
        fake_sdk.LanguageModelSession = factory
        monkeypatch.setitem(sys.modules, "apple_fm_sdk", fake_sdk)

        backend = LocalInferenceBackend()
        assert await collect(backend.generate(LOCAL_MODEL_ID, "", "hi")) == ["from sdk"]
        assert factory.sessions[0].model is not None

    async def test_aclose_resets(self):
        backend, _ = local_backend()
        await collect(backend.chat(LOCAL_MODEL_ID, [ChatMessage("user", "hi")]))
        await backend.aclose()
        assert backend._chat_session is None

    def test_satisfies_protocol_and_factory(self):
        assert isinstance(LocalInferenceBackend(), BackendClient)
        assert isinstance(make_backend(EngineConfig(backend="local")), LocalInferenceBackend)
