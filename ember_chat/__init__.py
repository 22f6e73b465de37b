"""
EmberChat: conversation engine for desktop chat clients backed by a local LLM.

Turns a user message plus an assistant role into a streaming request against an
Ollama-compatible server or the on-device Apple Foundation Model. Hides in-band
``<think>`` reasoning and grows an observable transcript as tokens arrive.
"""

from .backends import (
    BackendClient,
    ChatMessage,
    LocalInferenceBackend,
    RemoteChatBackend,
    SamplingParams,
    make_backend,
)
from .config import EngineConfig, load_config
from .exceptions import (
    BackendProtocolError,
    BackendUnavailable,
    Cancelled,
    ConfigError,
    EmberChatError,
    EmptyInput,
    UnknownRole,
)
from .roles import Role, RoleCatalog, default_catalog
from .session import ConversationSession, SessionError, SessionEvent, SessionEventKind
from .think_filter import ThinkState, TokenStreamFilter, filter_stream
from .transcript import Attachment, Author, Transcript, TranscriptEvent, Turn

__all__ = [
    "Attachment",
    "Author",
    "BackendClient",
    "BackendProtocolError",
    "BackendUnavailable",
    "Cancelled",
    "ChatMessage",
    "ConfigError",
    "ConversationSession",
    "EmberChatError",
    "EmptyInput",
    "EngineConfig",
    "LocalInferenceBackend",
    "RemoteChatBackend",
    "Role",
    "RoleCatalog",
    "SamplingParams",
    "SessionError",
    "SessionEvent",
    "SessionEventKind",
    "ThinkState",
    "TokenStreamFilter",
    "Transcript",
    "TranscriptEvent",
    "Turn",
    "UnknownRole",
    "default_catalog",
    "filter_stream",
    "load_config",
    "make_backend",
]
