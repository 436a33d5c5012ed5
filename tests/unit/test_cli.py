# tests/unit/test_cli.py

from __future__ import annotations
import sys
from pathlib import Path
from textwrap import dedent

import asyncio
import io
import os
import signal

import pytest
from rich.console import Console
from typer.testing import CliRunner

# Ensure "src" is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from polychat.cli import ConsoleSink, _turn, app  # Typer app
from polychat.core.chat_session import ChatSession
from polychat.core.models import GenerationSettings
from polychat.core.stream import DeltaEvent, StreamHandle
from polychat.storage.transcript import Transcript


def _write_config(tmp_path: Path) -> Path:
    cfg_dir = tmp_path / "config"
    cfg_dir.mkdir(parents=True)
    sessions_dir = tmp_path / "sessions"
    cfg = cfg_dir / "default.yaml"
    cfg.write_text(
        dedent(
            f"""
            model:
              provider: echo
              name: echo-model
            providers:
              echo:
                token_delay: 0.0
            secrets:
              method: env
              mapping: {{}}
            storage:
              backend: file
              transcripts_dir: "{sessions_dir}"
              resume: null
            """
        ),
        encoding="utf-8",
    )
    return cfg


def test_cli_echo_roundtrip(tmp_path: Path):
    cfg = _write_config(tmp_path)
    sessions_dir = tmp_path / "sessions"

    runner = CliRunner()
    # Provide a minimal dialogue: one message, then exit
    result = runner.invoke(app, ["--config", str(cfg)], input="hello\n/exit\n", catch_exceptions=False)

    assert result.exit_code == 0
    # Echo provider returns a fixed lorem ipsum; check a known word appears
    assert "Lorem ipsum" in result.output
    assert "iteration 2" in result.output
    # Sessions folder should be created at the absolute path, with one transcript
    assert sessions_dir.is_dir()
    assert len(list(sessions_dir.glob("*.jsonl"))) == 1


def test_cli_commands(tmp_path: Path):
    cfg = _write_config(tmp_path)
    runner = CliRunner()
    dialogue = "/set temperature 0.5\n/set temperature 7\n/settings\n/help\n/quit\n"
    result = runner.invoke(app, ["--config", str(cfg), "--iterations", "1"], input=dialogue,
                           catch_exceptions=False)

    assert result.exit_code == 0
    assert "temperature = 0.5" in result.output
    # out-of-range value is reported, the loop keeps going
    assert "[error]" in result.output
    assert "/image <path>" in result.output
    assert "Bye." in result.output


class _StallingProvider:
    name = "stall"
    model = "stall-1"
    required_credentials = ()

    async def dispatch(self, messages, ctx):
        async def events():
            yield DeltaEvent("half")
            # Ctrl+C arrives while the reply is still streaming
            os.kill(os.getpid(), signal.SIGINT)
            await asyncio.Event().wait()
        return StreamHandle(events())


@pytest.mark.skipif(sys.platform == "win32", reason="needs loop signal handlers")
def test_ctrl_c_cancels_the_turn_and_keeps_the_transcript(tmp_path: Path):
    session = ChatSession(_StallingProvider(), Transcript(root_dir=tmp_path),
                          settings=GenerationSettings(iterations=2))
    sink = ConsoleSink(Console(file=io.StringIO()), show_headers=True)

    with pytest.raises(KeyboardInterrupt):
        asyncio.run(_turn(session, "hello", None, sink))

    last = session.transcript.records[-1]
    assert last["type"] == "results"
    assert [r["iteration"] for r in last["results"]] == [1, 2]
    assert all(r["error"] for r in last["results"])
    # the handler is gone once the turn is over
    assert signal.getsignal(signal.SIGINT) is signal.default_int_handler
