"""Assistant roles and the static catalog that holds them."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from . import prompts
from .exceptions import UnknownRole


@dataclass(frozen=True)
class Role:
    """A named bundle of system prompt, default model and request shape.

    ``uses_multi_turn_chat`` selects the chat endpoint with full history. Roles without it
    are stateless per turn: the transcript is cleared before every send.
    """

    id: str
    display_name: str
    system_prompt: str
    default_model_id: str
    uses_multi_turn_chat: bool = False
    reveal_thinking: bool = False
    shortcut: str = ""

    @property
    def is_stateless(self) -> bool:
        return not self.uses_multi_turn_chat


class RoleCatalog:
    """Fixed, ordered registry of roles. Iteration follows declaration order."""

    def __init__(self, roles: Iterable[Role]) -> None:
        self._roles: dict[str, Role] = {}
        for role in roles:
            if role.id in self._roles:
                raise ValueError(f"Duplicate role id: {role.id!r}")
            self._roles[role.id] = role
        if not self._roles:
            raise ValueError("RoleCatalog needs at least one role")

    def list_roles(self) -> tuple[Role, ...]:
        return tuple(self._roles.values())

    def role_by_id(self, role_id: str) -> Role:
        try:
            return self._roles[role_id]
        except KeyError:
            raise UnknownRole(role_id) from None

    def __contains__(self, role_id: object) -> bool:
        return role_id in self._roles

    def __iter__(self) -> Iterator[Role]:
        return iter(self._roles.values())

    def __len__(self) -> int:
        return len(self._roles)

    def __repr__(self) -> str:
        return f"RoleCatalog(roles={list(self._roles)!r})"


CHAT_MODEL = "qwen3:32b-fp16"
TRANSLATE_MODEL = "gemma3:4b-it-qat"

BUILTIN_ROLES: tuple[Role, ...] = (
    Role(
        id="chat",
        display_name="General Chat",
        system_prompt=prompts.CHAT,
        default_model_id=CHAT_MODEL,
        uses_multi_turn_chat=True,
        reveal_thinking=True,
        shortcut="g",
    ),
    Role(
        id="translate",
        display_name="Translate",
        system_prompt=prompts.TRANSLATE,
        default_model_id=TRANSLATE_MODEL,
        shortcut="t",
    ),
    Role(
        id="fix_grammar",
        display_name="Fix Grammar",
        system_prompt=prompts.FIX_GRAMMAR,
        default_model_id=CHAT_MODEL,
        shortcut="f",
    ),
)

DEFAULT_ROLE_ID = "translate"


def default_catalog() -> RoleCatalog:
    """Catalog with the built-in General Chat, Translate and Fix Grammar roles."""
    return RoleCatalog(BUILTIN_ROLES)
