"""Error taxonomy for EmberChat.

Backends raise these where a failure is detected; ``ConversationSession`` classifies them
once. ``Cancelled`` and ``EmptyInput`` never reach the user.
"""

from __future__ import annotations

import importlib.util

LOCAL_RUNTIME_MODULE = "apple_fm_sdk"


class EmberChatError(Exception):
    """Base class for every error raised by ember_chat."""


class UnknownRole(EmberChatError, KeyError):
    """Requested role id is not in the catalog."""

    def __init__(self, role_id: str) -> None:
        self.role_id = role_id
        super().__init__(f"Unknown role: {role_id!r}")

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0])


class BackendUnavailable(EmberChatError):
    """The completion backend cannot be reached or is not loaded."""


class BackendProtocolError(EmberChatError):
    """The backend answered with something that could not be understood."""


class Cancelled(EmberChatError):
    """A stream was stopped on request. Not an error from the user's point of view."""


class EmptyInput(EmberChatError):
    """A send was attempted with blank text."""


class ConfigError(EmberChatError):
    """Configuration file or environment holds an invalid value."""


def require_local_runtime(context: str = "local inference") -> None:
    """Raise ``BackendUnavailable`` with install guidance when the on-device SDK is missing."""
    if importlib.util.find_spec(LOCAL_RUNTIME_MODULE) is not None:
        return
    raise BackendUnavailable(
        f"[EmberChat] {context} requires 'apple-fm-sdk', which is not installed.\n"
        "The Apple Foundation Models SDK has to be installed manually on macOS 26+:\n"
        "  pip install 'ember-chat[local]'\n"
        "or use the remote backend: --backend remote"
    )
