from __future__ import annotations

import asyncio
import base64
import binascii
import json
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from polychat.bootstrap import build_key_store, build_provider, build_settings
from polychat.config_loader import KNOWN_PROVIDERS, ConfigError, load_config
from polychat.core.chat_session import ChatSession
from polychat.core.errors import MissingCredentialError, ValidationError
from polychat.core.models import GenerationSettings, Result
from polychat.core.normalizer import RawImage
from polychat.core.ports import KeyStore
from polychat.secrets.sources import mask_credentials
from polychat.storage.transcript import Transcript


class ImagePayload(BaseModel):
    media_type: str
    data: str  # base64


class ChatRequest(BaseModel):
    session_id: Optional[str] = None
    message: str = ""
    image: Optional[ImagePayload] = None


class KeysRequest(BaseModel):
    provider: str
    fields: Dict[str, str]


class SettingsRequest(BaseModel):
    settings: Dict[str, Any]


def _repo_root_from_here() -> Path:
    return Path(__file__).resolve().parents[3]


def _decode_image(payload: Optional[ImagePayload]) -> Optional[RawImage]:
    if payload is None:
        return None
    try:
        data = base64.b64decode(payload.data, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Image data is not valid base64")
    return RawImage(data=data, media_type=payload.media_type)


class _QueueSink:
    def __init__(self, queue: "asyncio.Queue[Optional[Dict[str, Any]]]"):
        self.queue = queue

    def on_snapshot(self, iteration: int, text: str) -> None:
        self.queue.put_nowait({"iteration": iteration, "snapshot": text})

    def on_result(self, result: Result) -> None:
        self.queue.put_nowait({"result": asdict(result)})


def create_app(
    config_path: Path,
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    key_store: Optional[KeyStore] = None,
) -> FastAPI:
    config_path = Path(config_path)
    cfg = load_config(config_path)

    if provider:
        cfg["model"]["provider"] = str(provider).lower()
        if cfg["model"]["provider"] not in KNOWN_PROVIDERS:
            raise ConfigError(
                f"Unknown model.provider '{cfg['model']['provider']}' (expected one of {', '.join(KNOWN_PROVIDERS)})."
            )
    if model:
        cfg["model"]["name"] = model

    provider_obj, policy = build_provider(cfg, config_path)
    key_store = key_store or build_key_store(cfg)
    default_settings = build_settings(cfg)
    runtime = cfg.get("runtime") or {}

    repo_root = _repo_root_from_here()
    tdir_path = Path(cfg["storage"]["transcripts_dir"])
    transcripts_dir = (repo_root / tdir_path).resolve() if not tdir_path.is_absolute() else tdir_path
    backend = cfg["storage"]["backend"]

    app = FastAPI()
    app.state.cfg = cfg
    app.state.provider = provider_obj
    app.state.key_store = key_store
    app.state.sessions: Dict[str, ChatSession] = {}
    app.state.locks: Dict[str, asyncio.Lock] = {}

    def _create_session() -> str:
        transcript = Transcript(
            root_dir=(transcripts_dir if backend == "file" else None),
            header_meta={
                "config_path": str(config_path),
                "provider": cfg["model"]["provider"],
                "model": cfg["model"]["name"],
            },
        )
        app.state.sessions[transcript.session_id] = ChatSession(
            provider_obj,
            transcript,
            settings=default_settings,
            key_store=key_store,
            require_system_prompt=bool(runtime.get("require_system_prompt", False)),
            policy=policy,
        )
        app.state.locks[transcript.session_id] = asyncio.Lock()
        return transcript.session_id

    def _get_session(session_id: Optional[str]) -> tuple[str, ChatSession]:
        if not session_id:
            # no id: the request starts a new session
            session_id = _create_session()
        session = app.state.sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Unknown session")
        return session_id, session

    def _check_request(req: ChatRequest, session: ChatSession) -> Optional[RawImage]:
        if not req.message.strip() and req.image is None:
            raise HTTPException(status_code=400, detail="Empty message")
        image = _decode_image(req.image)
        try:
            session.resolve()
        except (MissingCredentialError, ValidationError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return image

    def _open(req: ChatRequest) -> tuple[str, ChatSession, Optional[RawImage]]:
        session_id, session = _get_session(req.session_id)
        try:
            return session_id, session, _check_request(req, session)
        except HTTPException:
            if not req.session_id:
                # a session started by a rejected request is not kept
                app.state.sessions.pop(session_id, None)
                app.state.locks.pop(session_id, None)
            raise

    @app.get("/api/config")
    async def api_config():
        return JSONResponse(
            {
                "provider": cfg["model"]["provider"],
                "model": cfg["model"]["name"],
                "multimodal": bool(getattr(provider_obj, "multimodal", False)),
                "settings": default_settings.to_dict(),
            }
        )

    @app.post("/api/session")
    async def api_session():
        return JSONResponse({"session_id": _create_session()})

    @app.delete("/api/session/{session_id}")
    async def api_end_session(session_id: str):
        session = app.state.sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Unknown session")
        async with app.state.locks[session_id]:
            del app.state.sessions[session_id]
        del app.state.locks[session_id]
        return JSONResponse({"session_id": session_id, "ended": True})

    @app.put("/api/settings/{session_id}")
    async def api_settings(session_id: str, req: SettingsRequest):
        session = app.state.sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Unknown session")
        try:
            updated = session.replace_settings(GenerationSettings.from_mapping(req.settings, base=session.settings))
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return JSONResponse({"session_id": session_id, "settings": updated.to_dict()})

    @app.get("/api/keys")
    async def api_keys():
        return JSONResponse(mask_credentials(key_store.get()))

    @app.put("/api/keys")
    async def api_put_keys(req: KeysRequest):
        try:
            key_store.set({req.provider: dict(req.fields)})
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        for session in app.state.sessions.values():
            session.reload_credentials()
        return JSONResponse(mask_credentials(key_store.get()))

    @app.post("/api/chat")
    async def api_chat(req: ChatRequest):
        session_id, session, image = _open(req)
        async with app.state.locks[session_id]:
            results = await session.run_turn(req.message, image)
        return JSONResponse({"session_id": session_id, "results": [asdict(r) for r in results]})

    @app.post("/api/stream")
    async def api_stream(req: ChatRequest):
        session_id, session, image = _open(req)

        async def gen():
            async with app.state.locks[session_id]:
                queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
                task = asyncio.create_task(session.run_turn(req.message, image, sink=_QueueSink(queue)))
                task.add_done_callback(lambda _t: queue.put_nowait(None))
                try:
                    while (item := await queue.get()) is not None:
                        yield json.dumps(item, ensure_ascii=False) + "\n"
                    if task.exception() is not None:
                        yield json.dumps({"error": str(task.exception())}) + "\n"
                finally:
                    if not task.done():
                        # client went away: close the in-flight stream, skip the rest
                        session.cancel()
                        await task

        return StreamingResponse(gen(), media_type="application/x-ndjson", headers={"X-Session-Id": session_id})

    return app


def run(
    *,
    config: Path,
    host: str = "127.0.0.1",
    port: int = 8000,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    reload: bool = False,
) -> None:
    import uvicorn

    app = create_app(config, provider=provider, model=model)
    uvicorn.run(app, host=host, port=port, reload=reload)


def main() -> None:
    import typer

    def serve(
        config: Path = typer.Option(Path("config/default.yaml"), help="YAML config file"),
        host: str = "127.0.0.1",
        port: int = 8000,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> None:
        run(config=config, host=host, port=port, provider=provider, model=model)

    typer.run(serve)
