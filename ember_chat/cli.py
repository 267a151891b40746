"""
EmberChat CLI: chat with a local GGUF model and manage saved conversations.

Registered as `ember-chat` console script via pyproject.toml.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
import threading
from collections.abc import Iterator
from pathlib import Path

import click

from .config import DEFAULT_CONTEXT_SIZE, DEFAULT_THREADS, configure_logging, db_path
from .controller import SessionController
from .engine import LlamaCppEngine
from .events import ControllerEvent, NoticeEvent, SessionChangedEvent, TokenEvent
from .exceptions import EmberChatError, EngineSetupError, SessionNotFoundError
from .models import ChatSession
from .storage import (
    KeyValueStore,
    SettingsStore,
    SqliteChatHistoryStore,
    export_jsonl,
    export_markdown,
    open_stores,
)

HISTORY_TIME_FORMAT = "%b %d, %H:%M"

CHAT_HELP = """\
Commands:
  /help            Show this help
  /new             Start a new chat
  /history         List saved chats
  /load N          Open saved chat N and print its transcript
  /delete N        Delete saved chat N
  /edit N TEXT     Replace the text of message N (a user message)
  /regen N         Regenerate response N
  /title           Show the current chat title
  /unload          Save, unload the model and exit
  /quit            Save and exit
Anything else is sent to the model. Ctrl-C stops a streaming reply."""


# ── Helpers ───────────────────────────────────────────────────────────────────


@contextlib.contextmanager
def _open_stores(
    ctx: click.Context,
) -> Iterator[tuple[KeyValueStore, SqliteChatHistoryStore, SettingsStore]]:
    kv, history, settings = open_stores(db_path(ctx.obj["data_dir"]))
    try:
        yield kv, history, settings
    finally:
        kv.close()


def _resolve_session(sessions: list[ChatSession], ref: str) -> ChatSession:
    """Find a chat by its 1-based list position or by its id."""
    if ref.isdigit():
        position = int(ref)
        if 1 <= position <= len(sessions):
            return sessions[position - 1]
    for session in sessions:
        if session.id == ref:
            return session
    raise SessionNotFoundError(f"No chat matches {ref!r}")


def _print_history_table(sessions: list[ChatSession]) -> None:
    if not sessions:
        click.secho("No saved chats yet.", fg="yellow")
        return
    click.secho(f"\n  {'#':<5}{'Title':<40}{'Msgs':>5}  {'Updated'}", fg="cyan")
    click.secho(f"  {'─' * 4} {'─' * 39} {'─' * 5}  {'─' * 13}", fg="cyan")
    for position, session in enumerate(sessions, start=1):
        title = session.title if len(session.title) <= 38 else session.title[:35] + "..."
        updated = session.updated_at.astimezone().strftime(HISTORY_TIME_FORMAT)
        click.echo(f"  {position:<5}{title:<40}{len(session.entries):>5}  {updated}")
    click.echo()


def _print_transcript(session: ChatSession) -> None:
    click.secho(f"\n{session.title}", fg="cyan", bold=True)
    for number, entry in enumerate(session.entries, start=1):
        if entry.is_user:
            click.secho(f"[{number}] You: ", fg="green", bold=True, nl=False)
        else:
            click.secho(f"[{number}] Assistant: ", fg="magenta", bold=True, nl=False)
        click.echo(entry.text)
    click.echo()


def _parse_number(raw: str, what: str) -> int:
    try:
        number = int(raw)
    except ValueError:
        raise click.UsageError(f"{what} must be a number, got {raw!r}") from None
    if number < 1:
        raise click.UsageError(f"{what} must be 1 or greater")
    return number


@contextlib.contextmanager
def _interrupt_cancels(controller: SessionController) -> Iterator[None]:
    """Route Ctrl-C to ``cancel_generation`` while a reply is streaming."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.cancel_generation)
    except (NotImplementedError, RuntimeError, ValueError):
        # Loops without signal support keep the default KeyboardInterrupt.
        installed = False
    else:
        installed = True
    try:
        yield
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


class _LineReader:
    """Reads stdin on a daemon thread so a blocked read never holds up shutdown."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._lines: asyncio.Queue[str | None] = asyncio.Queue()
        self._thread = threading.Thread(target=self._run, name="ember-stdin", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        stream = click.get_text_stream("stdin")
        while True:
            line = stream.readline()
            if not line:
                self._loop.call_soon_threadsafe(self._lines.put_nowait, None)
                return
            self._loop.call_soon_threadsafe(self._lines.put_nowait, line.rstrip("\n"))

    async def readline(self) -> str | None:
        return await self._lines.get()


# ── Interactive chat ──────────────────────────────────────────────────────────


async def _run_command(controller: SessionController, line: str) -> bool:
    """Execute one slash command. Returns ``False`` when the chat should end."""
    name, _, rest = line.partition(" ")
    rest = rest.strip()

    if name in ("/quit", "/exit"):
        return False
    if name == "/help":
        click.echo(CHAT_HELP)
    elif name == "/new":
        await controller.start_new_session()
        click.secho("Started a new chat.", fg="cyan")
    elif name == "/history":
        _print_history_table(controller.list_sessions())
    elif name == "/load":
        session = _resolve_session(controller.list_sessions(), rest)
        await controller.load_session(session.id)
        _print_transcript(session)
    elif name == "/delete":
        session = _resolve_session(controller.list_sessions(), rest)
        await controller.delete_session(session.id)
        click.secho(f"Deleted '{session.title}'.", fg="cyan")
        if controller.active_session is None:
            click.secho("Use /new or /load N to continue.", fg="yellow")
    elif name == "/edit":
        number, _, text = rest.partition(" ")
        await controller.edit_message(_parse_number(number, "Message number") - 1, text)
        click.secho(f"Message {number} updated.", fg="cyan")
    elif name == "/regen":
        index = _parse_number(rest, "Response number") - 1
        click.secho("Assistant: ", fg="magenta", bold=True, nl=False)
        with _interrupt_cancels(controller):
            await controller.regenerate(index)
        click.echo()
    elif name == "/title":
        session = controller.active_session
        click.echo(session.title if session is not None else "(no active chat)")
    elif name == "/unload":
        await controller.unload_model()
        return False
    else:
        click.secho(f"Unknown command {name}. Type /help for a list.", fg="yellow")
    return True


async def _chat_loop(controller: SessionController, model_path: Path) -> None:
    loop = asyncio.get_running_loop()
    unloaded = asyncio.Event()

    def render(event: ControllerEvent) -> None:
        if isinstance(event, TokenEvent):
            click.echo(event.token, nl=False)
        elif isinstance(event, NoticeEvent):
            click.secho(event.message, fg="red" if event.level == "error" else "yellow", err=True)
        elif isinstance(event, SessionChangedEvent) and event.reason == "unloaded":
            unloaded.set()

    async with controller:
        controller.subscribe(render)
        click.secho(f"Loading {model_path.name}...", fg="cyan")
        await controller.load_model(model_path)
        click.secho("Model ready. Type /help for commands.\n", fg="green")

        reader = _LineReader(loop)
        reader.start()
        while not unloaded.is_set():
            click.secho("You: ", fg="green", bold=True, nl=False)
            read = asyncio.ensure_future(reader.readline())
            expired = asyncio.ensure_future(unloaded.wait())
            await asyncio.wait({read, expired}, return_when=asyncio.FIRST_COMPLETED)
            expired.cancel()
            if not read.done():
                read.cancel()
                break
            line = read.result()
            if line is None:
                click.echo()
                break
            line = line.strip()
            if not line:
                continue

            try:
                if line.startswith("/"):
                    if not await _run_command(controller, line):
                        break
                    continue
                click.secho("Assistant: ", fg="magenta", bold=True, nl=False)
                with _interrupt_cancels(controller):
                    await controller.send(line)
                click.echo()
            except (EmberChatError, click.UsageError, ValueError) as exc:
                click.secho(f"Error: {exc}", fg="red", err=True)

        await controller.wait_for_titles()

    if unloaded.is_set():
        click.secho("Model unloaded; chat saved.", fg="cyan")


# ── Main group ────────────────────────────────────────────────────────────────


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="ember-chat")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Where chats and settings are stored (default: $EMBER_CHAT_HOME or ~/.ember_chat).",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, data_dir: Path | None) -> None:
    """EmberChat: private chat with a local GGUF model."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir


# ── Chat ──────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("model_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--threads", default=DEFAULT_THREADS, show_default=True, type=click.IntRange(min=1)
)
@click.option(
    "--context-size",
    default=DEFAULT_CONTEXT_SIZE,
    show_default=True,
    type=click.IntRange(min=256),
    help="Model context window in tokens.",
)
@click.pass_context
def chat(ctx: click.Context, model_path: Path, threads: int, context_size: int) -> None:
    """Chat interactively with MODEL_PATH (a .gguf file)."""
    with _open_stores(ctx) as (_, history, settings):
        controller = SessionController(
            LlamaCppEngine(),
            history,
            settings,
            threads=threads,
            context_size=context_size,
        )
        try:
            asyncio.run(_chat_loop(controller, model_path))
        except EngineSetupError:
            raise
        except EmberChatError as exc:
            raise click.ClickException(str(exc)) from exc


# ── History ───────────────────────────────────────────────────────────────────


@cli.group()
def history() -> None:
    """Browse, export and delete saved chats."""


@history.command(name="list")
@click.pass_context
def history_list(ctx: click.Context) -> None:
    """List saved chats, most recent first."""
    with _open_stores(ctx) as (_, store, _settings):
        sessions = asyncio.run(store.load())
    _print_history_table(sessions)


@history.command(name="show")
@click.argument("ref")
@click.pass_context
def history_show(ctx: click.Context, ref: str) -> None:
    """Print the transcript of chat REF (list number or id)."""
    with _open_stores(ctx) as (_, store, _settings):
        sessions = asyncio.run(store.load())
    try:
        session = _resolve_session(sessions, ref)
    except SessionNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    _print_transcript(session)


@history.command(name="delete")
@click.argument("ref")
@click.pass_context
def history_delete(ctx: click.Context, ref: str) -> None:
    """Delete chat REF (list number or id)."""
    with _open_stores(ctx) as (_, store, _settings):
        try:
            session = _resolve_session(asyncio.run(store.load()), ref)
            asyncio.run(store.delete(session.id))
        except SessionNotFoundError as exc:
            raise click.ClickException(str(exc)) from exc
    click.secho(f"Deleted '{session.title}'.", fg="green")


@history.command(name="export")
@click.argument("ref")
@click.argument("target", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def history_export(ctx: click.Context, ref: str, target: Path) -> None:
    """Export chat REF to TARGET (.md or .jsonl)."""
    suffix = target.suffix.lower()
    if suffix not in (".md", ".jsonl"):
        raise click.BadParameter("target must end in .md or .jsonl", param_hint="TARGET")
    with _open_stores(ctx) as (_, store, _settings):
        sessions = asyncio.run(store.load())
    try:
        session = _resolve_session(sessions, ref)
    except SessionNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc

    if suffix == ".md":
        export_markdown(session, target)
    else:
        export_jsonl(session, target)
    click.secho(f"Exported '{session.title}' to {target}", fg="green")


# ── Settings ──────────────────────────────────────────────────────────────────


@cli.group()
def settings() -> None:
    """Show or change the system prompt and auto-save interval."""


@settings.command(name="show")
@click.pass_context
def settings_show(ctx: click.Context) -> None:
    with _open_stores(ctx) as (_, _history, store):
        prompt = asyncio.run(store.load_system_prompt())
        minutes = asyncio.run(store.load_auto_save_minutes())
    click.secho("System prompt:", bold=True)
    click.echo(f"  {prompt}")
    click.secho("Auto-save and unload after:", bold=True)
    click.echo(f"  {minutes} minutes" if minutes > 0 else "  disabled")


@settings.command(name="set")
@click.option("--system-prompt", default=None, help="Prompt prepended to every chat.")
@click.option(
    "--auto-save-minutes",
    type=int,
    default=None,
    help="Idle minutes before the chat is saved and the model unloaded (0 disables).",
)
@click.pass_context
def settings_set(
    ctx: click.Context, system_prompt: str | None, auto_save_minutes: int | None
) -> None:
    """Update one or more settings."""
    if system_prompt is None and auto_save_minutes is None:
        raise click.UsageError("Pass --system-prompt and/or --auto-save-minutes.")
    with _open_stores(ctx) as (_, _history, store):
        if system_prompt is not None:
            asyncio.run(store.save_system_prompt(system_prompt))
        if auto_save_minutes is not None:
            asyncio.run(store.save_auto_save_minutes(auto_save_minutes))
    click.secho("Settings saved.", fg="green")


# ── Maintenance ───────────────────────────────────────────────────────────────


@cli.command(name="clear-data")
@click.confirmation_option(prompt="Delete all saved chats and settings?")
@click.pass_context
def clear_data(ctx: click.Context) -> None:
    """Delete every saved chat and reset settings to defaults."""
    with _open_stores(ctx) as (_, _history, store):
        asyncio.run(store.reset())
    click.secho("All data cleared.", fg="green")


# ── Entry point ───────────────────────────────────────────────────────────────


def cli_entry() -> None:
    """Entry point for the console_scripts."""
    try:
        cli()
    except EngineSetupError as exc:
        click.secho(str(exc), fg="red", err=True)
        raise SystemExit(2) from exc


if __name__ == "__main__":
    cli_entry()
