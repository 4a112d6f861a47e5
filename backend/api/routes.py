"""REST API routes for PeerShare."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from config import DEFAULT_EXPIRY_MINUTES, DEFAULT_SAVE_DIR
from connection.provider import ConnectionProvider
from errors import AuthFailure, ConnectivityError, TransportClosed
from session.guest import GuestSession
from session.host import HostSession
from session.models import SessionConfig

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_provider_factory: Callable[[], ConnectionProvider] | None = None
_event_sink: Callable[[str, dict], Awaitable[None]] | None = None
_host: HostSession | None = None
_guest: GuestSession | None = None
_save_dir: str = DEFAULT_SAVE_DIR


def init_routes(
    provider_factory: Callable[[], ConnectionProvider],
    event_sink: Callable[[str, dict], Awaitable[None]] | None = None,
) -> None:
    """Inject the connection provider factory and the event sink."""
    global _provider_factory, _event_sink
    _provider_factory = provider_factory
    _event_sink = event_sink


async def shutdown_sessions() -> None:
    """Tear down whatever host or guest session is still open."""
    global _host, _guest
    if _host is not None:
        await _host.stop()
        _host = None
    if _guest is not None:
        await _guest.close()
        _guest = None


def current_state() -> dict:
    return {
        "host": _host.snapshot() if _host else None,
        "guest": _guest.snapshot() if _guest else None,
    }


def _require_host() -> HostSession:
    if _host is None or not _host.running:
        raise HTTPException(status_code=409, detail="No active host session")
    return _host


def _require_guest() -> GuestSession:
    if _guest is None:
        raise HTTPException(status_code=409, detail="No active guest session")
    return _guest


# --- Host ---

class HostStartBody(BaseModel):
    expiry_minutes: float | None = Field(default=DEFAULT_EXPIRY_MINUTES, gt=0)
    max_downloads: int | None = Field(default=None, ge=1)
    password: str | None = None
    chunk_size: int | None = Field(default=None, gt=0)


class AddFilesBody(BaseModel):
    paths: list[str]


class ChatBody(BaseModel):
    text: str


@router.post("/host/start")
async def start_host(body: HostStartBody):
    """Claim a short code and start offering files."""
    global _host
    if _host is not None and _host.running:
        raise HTTPException(status_code=409, detail="Already hosting")

    config = SessionConfig(max_downloads=body.max_downloads, password=body.password)
    if body.chunk_size is not None:
        config.chunk_size = body.chunk_size
    host = HostSession(_provider_factory(), config)
    if _event_sink is not None:
        host.on_event(_event_sink)
    try:
        code = await host.start(expiry_minutes=body.expiry_minutes)
    except ConnectivityError as e:
        await host.stop()
        raise HTTPException(status_code=502, detail=str(e))
    _host = host
    return {"code": code, "session": host.snapshot()}


@router.post("/host/files")
async def add_host_files(body: AddFilesBody):
    """Offer files by absolute path; the backend reads them directly from disk."""
    host = _require_host()
    added = []
    for path in body.paths:
        try:
            added.append(host.add_file(path))
        except ValueError as e:
            logger.warning(f"Skipping invalid file path: {path}")
            if len(body.paths) == 1:
                raise HTTPException(status_code=400, detail=str(e))
    if not added:
        raise HTTPException(status_code=400, detail="No valid files selected")
    return {"files": [meta.to_wire() for meta in added]}


@router.delete("/host/files/{file_id}")
async def remove_host_file(file_id: str):
    host = _require_host()
    try:
        host.remove_file(file_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="File not found")
    return {"status": "removed"}


@router.post("/host/stop")
async def stop_host():
    global _host
    if _host is None:
        raise HTTPException(status_code=409, detail="No active host session")
    await _host.stop()
    _host = None
    return {"status": "stopped"}


@router.get("/host")
async def get_host():
    return {"session": _host.snapshot() if _host else None}


@router.post("/host/chat")
async def host_chat(body: ChatBody):
    host = _require_host()
    try:
        message = host.send_text(body.text)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return message.model_dump(mode="json")


@router.post("/host/nudge")
async def host_nudge():
    host = _require_host()
    return {"sent": host.nudge()}


# --- Guest ---

class ConnectBody(BaseModel):
    code: str = Field(min_length=1)


class PasswordBody(BaseModel):
    password: str


class DownloadBody(BaseModel):
    file_id: str


@router.post("/guest/connect")
async def guest_connect(body: ConnectBody):
    """Dial the host behind a short code."""
    global _guest
    if _guest is not None:
        await _guest.close()
        _guest = None

    guest = GuestSession(_provider_factory(), save_dir=_save_dir)
    if _event_sink is not None:
        guest.on_event(_event_sink)
    try:
        await guest.connect(body.code)
    except ConnectivityError as e:
        await guest.close()
        raise HTTPException(status_code=502, detail=str(e))
    _guest = guest
    return {"session": guest.snapshot()}


@router.post("/guest/password")
async def guest_password(body: PasswordBody):
    guest = _require_guest()
    try:
        await guest.unlock(body.password)
    except AuthFailure as e:
        raise HTTPException(status_code=403, detail=str(e))
    except TransportClosed as e:
        raise HTTPException(status_code=409, detail=str(e))
    except asyncio.TimeoutError:
        raise HTTPException(status_code=504, detail="Host did not answer")
    return {"status": "unlocked"}


@router.post("/guest/downloads")
async def guest_download(body: DownloadBody):
    guest = _require_guest()
    try:
        queued = guest.download(body.file_id)
    except TransportClosed as e:
        raise HTTPException(status_code=409, detail=str(e))
    except KeyError:
        raise HTTPException(status_code=404, detail="File not found")
    return {"queued": queued}


@router.post("/guest/download-all")
async def guest_download_all():
    guest = _require_guest()
    try:
        queued = guest.download_all()
    except TransportClosed as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"queued": queued}


@router.post("/guest/chat")
async def guest_chat(body: ChatBody):
    guest = _require_guest()
    try:
        message = guest.send_text(body.text)
    except TransportClosed as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return message.model_dump(mode="json")


@router.post("/guest/nudge")
async def guest_nudge():
    guest = _require_guest()
    try:
        sent = guest.send_nudge()
    except TransportClosed as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"sent": sent}


@router.post("/guest/close")
async def guest_close():
    global _guest
    guest = _require_guest()
    await guest.close()
    _guest = None
    return {"status": "closed"}


@router.get("/guest")
async def get_guest():
    return {"session": _guest.snapshot() if _guest else None}


# --- Settings ---

class SettingsBody(BaseModel):
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {"save_dir": _save_dir}


@router.put("/settings")
async def update_settings(body: SettingsBody):
    global _save_dir
    if body.save_dir is not None:
        if not os.path.isdir(body.save_dir):
            try:
                os.makedirs(body.save_dir, exist_ok=True)
            except OSError as e:
                raise HTTPException(
                    status_code=400, detail=f"Invalid directory: {e}"
                )
        _save_dir = body.save_dir
        if _guest is not None:
            _guest.save_dir = Path(body.save_dir)
    return {"status": "updated"}
