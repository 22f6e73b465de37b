"""
EmberChat CLI: a terminal front end over ``ConversationSession``.

Registered as `ember-chat` console script via pyproject.toml.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from .backends import make_backend
from .config import BACKENDS, EngineConfig, configure_logging, load_config
from .exceptions import EmberChatError, require_local_runtime
from .roles import default_catalog
from .session import ConversationSession
from .transcript import TranscriptEvent, TranscriptEventKind

HELP_TEXT = """\
Slash Commands
/help                 Show command help
/clear                Start over with an empty conversation
/role <id>            Switch role (clears the conversation)
/model <id>           Use a different model
/models               List models the backend offers
/attach <path>        Attach a file (image) to the next message
/quit                 Leave the chat
Ctrl-C while a reply streams cancels it."""


def _build_session(
    config: EngineConfig,
    role_id: str | None,
    model_id: str | None,
    reveal_thinking: bool | None = None,
) -> ConversationSession:
    config = config.with_overrides(reveal_thinking=reveal_thinking)
    if config.backend == "local":
        require_local_runtime("ember-chat --backend local")
    session = ConversationSession(make_backend(config), default_catalog(), config, role_id)
    if model_id:
        session.set_model(model_id)
    return session


def _echo_deltas(event: TranscriptEvent) -> None:
    if event.kind is TranscriptEventKind.UPDATED:
        click.echo(event.delta, nl=False)


async def _send_and_wait(session: ConversationSession, text: str) -> bool:
    """Send *text*, stream the reply to stdout. Returns False when the request failed."""
    unsubscribe = session.transcript.subscribe(_echo_deltas)
    try:
        task = session.send(text)
        if task is None:
            return True
        await session.wait()
    finally:
        unsubscribe()
    click.echo()
    if session.last_error is not None:
        click.secho(session.last_error.message, fg="red", err=True)
        session.acknowledge_error()
        return False
    return True


# ── Main group ────────────────────────────────────────────────────────────────


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="ember-chat")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="TOML config file (default: ~/.config/ember-chat/config.toml).",
)
@click.option("--base-url", default=None, help="Completion server URL.")
@click.option("--backend", type=click.Choice(BACKENDS), default=None, help="Backend variant.")
@click.option("--log-level", default=None, help="Logging level (debug, info, warning, ...).")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path | None,
    base_url: str | None,
    backend: str | None,
    log_level: str | None,
) -> None:
    """EmberChat: chat with a local LLM from the terminal."""
    config = load_config(config_path).with_overrides(
        base_url=base_url, backend=backend, log_level=log_level
    )
    configure_logging(config.log_level)
    ctx.obj = config


# ── Catalog ───────────────────────────────────────────────────────────────────


@cli.command()
def roles() -> None:
    """List the available assistant roles."""
    click.secho(f"\n  {'Id':<14}{'Name':<16}{'Model':<22}{'Mode':<11}{'Key'}", fg="cyan")
    click.secho(f"  {'─' * 13} {'─' * 15} {'─' * 21} {'─' * 10} {'─' * 3}", fg="cyan")
    for role in default_catalog().list_roles():
        mode = "chat" if role.uses_multi_turn_chat else "stateless"
        click.echo(
            f"  {role.id:<14}{role.display_name:<16}{role.default_model_id:<22}"
            f"{mode:<11}{role.shortcut}"
        )
    click.echo()


@cli.command()
@click.pass_obj
def models(config: EngineConfig) -> None:
    """List models offered by the backend."""

    async def fetch() -> list[str]:
        backend = make_backend(config)
        try:
            return await backend.list_models()
        finally:
            await backend.aclose()

    names = asyncio.run(fetch())
    if not names:
        click.secho("The backend reports no models.", fg="yellow", err=True)
        return
    for name in names:
        click.echo(name)


# ── Conversation ──────────────────────────────────────────────────────────────


@cli.command()
@click.option("-r", "--role", "role_id", default=None, help="Role id (see `ember-chat roles`).")
@click.option("-m", "--model", "model_id", default=None, help="Override the role's model.")
@click.option(
    "--reveal-thinking/--hide-thinking",
    default=None,
    help="Show or hide <think> reasoning (default: per role).",
)
@click.argument("text")
@click.pass_obj
def ask(
    config: EngineConfig,
    role_id: str | None,
    model_id: str | None,
    reveal_thinking: bool | None,
    text: str,
) -> None:
    """Send one message and stream the reply.

    \b
    Examples:
        ember-chat ask "apple"
        ember-chat ask -r chat "Why is the sky blue?"
    """
    session = _build_session(config, role_id, model_id, reveal_thinking)

    async def run() -> bool:
        try:
            return await _send_and_wait(session, text)
        finally:
            await session.aclose()

    if not asyncio.run(run()):
        raise SystemExit(1)


def _handle_command(session: ConversationSession, runner: asyncio.Runner, line: str) -> bool:
    """Run a slash command. Returns False when the chat should end."""
    command, _, argument = line[1:].partition(" ")
    argument = argument.strip()

    if command in {"quit", "exit"}:
        return False
    if command == "help":
        click.echo(HELP_TEXT)
    elif command == "clear":
        session.reset()
        click.secho("Conversation cleared.", fg="cyan")
    elif command == "role":
        session.set_role(argument)
        role = session.active_role
        click.secho(f"Role: {role.display_name} (model {session.active_model_id})", fg="cyan")
    elif command == "model":
        session.set_model(argument)
        click.secho(f"Model: {session.active_model_id}", fg="cyan")
    elif command == "models":
        for name in runner.run(session.refresh_models()):
            marker = "*" if name == session.active_model_id else " "
            click.echo(f" {marker} {name}")
        if session.last_error is not None:
            click.secho(session.last_error.message, fg="red", err=True)
            session.acknowledge_error()
    elif command == "attach":
        path = Path(argument).expanduser()
        attachment = session.attach(path.read_bytes(), path.name)
        click.secho(f"Attached {attachment.file_name} ({len(attachment.data)} bytes).", fg="cyan")
    else:
        click.secho(f"Unknown command '/{command}'. Try /help.", fg="yellow", err=True)
    return True


@cli.command()
@click.option("-r", "--role", "role_id", default=None, help="Role id (see `ember-chat roles`).")
@click.option("-m", "--model", "model_id", default=None, help="Override the role's model.")
@click.pass_obj
def chat(config: EngineConfig, role_id: str | None, model_id: str | None) -> None:
    """Interactive conversation with slash commands (/help)."""
    session = _build_session(config, role_id, model_id)
    role = session.active_role
    click.secho(
        f"{role.display_name} · {session.active_model_id} · /help for commands",
        fg="cyan",
        bold=True,
    )

    with asyncio.Runner() as runner:
        try:
            while True:
                try:
                    line = click.prompt("you", prompt_suffix="> ", default="", show_default=False)
                except (EOFError, click.Abort):
                    break
                line = line.strip()
                if not line:
                    continue
                if line.startswith("/"):
                    try:
                        if not _handle_command(session, runner, line):
                            break
                    except (EmberChatError, ValueError, OSError) as exc:
                        click.secho(str(exc), fg="red", err=True)
                    continue
                try:
                    runner.run(_send_and_wait(session, line))
                except KeyboardInterrupt:
                    session.cancel_current()
                    click.secho("\n[cancelled]", fg="yellow")
        finally:
            runner.run(session.aclose())


# ── Entry point ───────────────────────────────────────────────────────────────


def cli_entry() -> None:
    """Entry point for the console_scripts."""
    try:
        cli()
    except EmberChatError as exc:
        click.secho(str(exc), fg="red", err=True)
        raise SystemExit(2) from exc


if __name__ == "__main__":
    cli_entry()
