from __future__ import annotations
import asyncio
import logging
import signal
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table
from rich.text import Text

from .bootstrap import build_app, configure_logging
from .core.chat_session import ChatSession
from .core.errors import ChatError
from .core.models import Result
from .core.normalizer import RawImage, read_image

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False)

HELP = (
    "Commands: /help, /id, /settings, /set <field> <value>, /image <path>, "
    "/keys, /key <provider> <field> <value>, /exit, /quit"
)


class ConsoleSink:
    """Prints each iteration's text as it grows, then a newline per result."""

    def __init__(self, console: Console, show_headers: bool):
        self.console = console
        self.show_headers = show_headers
        self._iteration = 0
        self._printed = ""

    def on_snapshot(self, iteration: int, text: str) -> None:
        if iteration != self._iteration:
            self._iteration, self._printed = iteration, ""
            if self.show_headers:
                self.console.print(f"[bold]-- iteration {iteration} --[/bold]")
        if text.startswith(self._printed):
            self.console.print(text[len(self._printed):], end="", markup=False, highlight=False)
        else:
            # final text replaced the streamed one
            self.console.print("\n" + text, end="", markup=False, highlight=False)
        self._printed = text

    def on_result(self, result: Result) -> None:
        if result.iteration != self._iteration:
            self._iteration, self._printed = result.iteration, ""
            if self.show_headers:
                self.console.print(f"[bold]-- iteration {result.iteration} --[/bold]")
        if result.error:
            if self._printed:
                self.console.print("")
            self.console.print(result.response, style="red", markup=False)
        else:
            self.console.print("")


def results_table(results: List[Result]) -> Table:
    table = Table(show_lines=True)
    table.add_column("Iteration", justify="center")
    table.add_column("Response")
    for r in results:
        table.add_row(str(r.iteration), Text(r.response), style="red" if r.error else None)
    return table


def settings_table(session: ChatSession) -> Table:
    table = Table(title=f"{session.provider_name} / {session.provider.model}")
    table.add_column("Setting")
    table.add_column("Value")
    for k, v in session.settings.to_dict().items():
        table.add_row(k, Text(repr(v)))
    return table


def _handle_command(console: Console, session: ChatSession, line: str, pending: List[RawImage]) -> bool:
    """Returns False when the loop should stop."""
    parts = line.split(maxsplit=3)
    cmd = parts[0]
    if cmd in ("/exit", "/quit"):
        console.print("Bye.")
        return False
    if cmd == "/help":
        console.print(HELP, markup=False)
    elif cmd == "/id":
        console.print(session.transcript.session_id)
    elif cmd == "/settings":
        console.print(settings_table(session))
    elif cmd == "/set" and len(parts) >= 3:
        value = line.split(maxsplit=2)[2]
        parsed = value if parts[1] in ("system_prompt", "stop_sequences") else yaml.safe_load(value)
        session.update_settings(**{parts[1]: parsed})
        console.print(f"{parts[1]} = {parsed!r}", markup=False)
    elif cmd == "/image" and len(parts) >= 2:
        pending[:] = [read_image(Path(line.split(maxsplit=1)[1]))]
        console.print(f"Attached {pending[0].media_type} ({len(pending[0].data)} bytes) to the next message.")
    elif cmd == "/keys":
        for provider, fields in session.masked_credentials().items():
            for name, masked in fields.items():
                console.print(f"{provider}.{name} = {masked}", markup=False)
    elif cmd == "/key" and len(parts) == 4:
        session.save_credentials(parts[1], **{parts[2]: parts[3]})
        console.print(f"Saved {parts[1]}.{parts[2]}.", markup=False)
    else:
        console.print(f"Unknown or incomplete command. {HELP}", markup=False)
    return True


async def _turn(session: ChatSession, text: str, image: Optional[RawImage], sink: ConsoleSink) -> List[Result]:
    """
    Run one turn. Ctrl+C cancels the turn task, which still records a row per
    iteration in the transcript, and then surfaces as KeyboardInterrupt.
    """
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(session.run_turn(text, image, sink=sink))
    interrupted = False

    def on_sigint() -> None:
        nonlocal interrupted
        interrupted = True
        session.cancel()
        task.cancel()

    try:
        loop.add_signal_handler(signal.SIGINT, on_sigint)
        installed = True
    except (NotImplementedError, RuntimeError):
        # no signal handlers on this loop (Windows, or not the main thread)
        logger.debug("SIGINT handler not installed")
        installed = False
    try:
        return await task
    except asyncio.CancelledError:
        if interrupted:
            raise KeyboardInterrupt from None
        raise
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


@app.callback(invoke_without_command=True)
def chat(
    config: Path = typer.Option(Path("config/default.yaml"), help="YAML config file"),
    provider: Optional[str] = typer.Option(None, help="Override model.provider"),
    model: Optional[str] = typer.Option(None, help="Override model.name"),
    iterations: Optional[int] = typer.Option(None, help="Override settings.iterations"),
    log_level: Optional[str] = typer.Option(None, help="Log level for the polychat logger"),
):
    ctx = build_app(config, provider=provider, model=model)
    session: ChatSession = ctx["session"]
    console = Console()

    if log_level:
        configure_logging(log_level)
    if iterations is not None:
        session.update_settings(iterations=iterations)
    for w in ctx["warnings"]:
        console.print(f"[policy] {w}", style="yellow", markup=False)

    console.print(f"polychat ({session.provider_name}: {session.provider.model}). Type /help for commands. Ctrl+C to quit.")
    pending: List[RawImage] = []
    while True:
        try:
            user_input = input("you> ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\nBye.")
            return

        if not user_input and not pending:
            continue

        try:
            if user_input.startswith("/"):
                if not _handle_command(console, session, user_input, pending):
                    return
                continue

            image = pending.pop() if pending else None
            sink = ConsoleSink(console, show_headers=session.settings.iterations > 1)
            try:
                results = asyncio.run(_turn(session, user_input, image, sink))
            except KeyboardInterrupt:
                console.print("\n[stream interrupted]", markup=False)
                continue
            if len(results) > 1:
                console.print(results_table(results))
        except (ChatError, ValueError) as e:
            console.print(f"[error] {e}", style="red", markup=False)
