#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastapi", "uvicorn[standard]", "psutil"]
# ///
"""Camera streaming bridge.

Exposes each configured camera's stream session manager over HTTP so a
controller can prepare, start, reconfigure and stop SRTP streams and fetch
snapshots. FFmpeg does the transcoding.

Usage:
    ./main.py [--config FILE] [--host HOST] [--port PORT] [--debug]

Options:
    --config FILE   Camera config (default: config.json, or $CAMSTREAM_CONFIG)
    --host HOST     Address to listen on (default: 0.0.0.0)
    --port PORT     Port to listen on (default: 8000)
    --debug         Enable debug logging
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi import HTTPException
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.responses import Response

import config
from network import AddressResolutionError
from network import PortAllocationError
from streaming import AudioInfo
from streaming import MediaSetup
from streaming import PreparedMedia
from streaming import PrepareStreamRequest
from streaming import SessionNotFoundError
from streaming import SnapshotRequest
from streaming import StreamingDelegate
from streaming import StreamingRequest
from streaming import StreamLimitError
from streaming import StreamRequestType
from streaming import VideoInfo
from transcoding import SRTPCryptoSuite
from transcoding import TranscodeError


log = logging.getLogger()

_delegates: dict[str, StreamingDelegate] = {}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create one session manager per camera; stop every stream on exit."""
    server_config = config.load_server_config()
    for camera in server_config.cameras:
        _delegates[camera.name] = StreamingDelegate(
            camera, server_config.video_processor, server_config.interface_name
        )
        log.info("[%s] Camera ready", camera.name)
    try:
        yield
    finally:
        await shutdown()


async def shutdown() -> None:
    """Stop all sessions on all cameras."""
    for name, delegate in list(_delegates.items()):
        try:
            await delegate.shutdown()
        except Exception as e:
            log.error("[%s] Shutdown failed: %s", name, e)
    _delegates.clear()


app = FastAPI(title="camstream", lifespan=lifespan)


# =============================================================================
# Error mapping
# =============================================================================


@app.exception_handler(SessionNotFoundError)
async def session_not_found_handler(request: Request, exc: SessionNotFoundError):
    return JSONResponse({"detail": str(exc)}, status_code=404)


@app.exception_handler(StreamLimitError)
async def stream_limit_handler(request: Request, exc: StreamLimitError):
    return JSONResponse({"detail": str(exc)}, status_code=429)


@app.exception_handler(AddressResolutionError)
@app.exception_handler(PortAllocationError)
async def network_error_handler(request: Request, exc: OSError):
    return JSONResponse({"detail": str(exc)}, status_code=503)


@app.exception_handler(TranscodeError)
async def transcode_error_handler(request: Request, exc: TranscodeError):
    return JSONResponse({"detail": str(exc), "diagnostics": exc.diagnostics}, status_code=500)


# =============================================================================
# Request parsing
# =============================================================================


def get_delegate(name: str) -> StreamingDelegate:
    delegate = _delegates.get(name)
    if not delegate:
        raise HTTPException(404, f"Unknown camera: {name}")
    return delegate


def _parse_media_setup(data: dict[str, Any]) -> MediaSetup:
    return MediaSetup(
        port=int(data["port"]),
        srtp_crypto_suite=SRTPCryptoSuite(int(data.get("srtp_crypto_suite", 0))),
        srtp_key=base64.b64decode(data["srtp_key"], validate=True),
        srtp_salt=base64.b64decode(data["srtp_salt"], validate=True),
    )


def parse_prepare_request(data: dict[str, Any]) -> PrepareStreamRequest:
    try:
        return PrepareStreamRequest(
            session_id=str(data["session_id"]),
            target_address=str(data["target_address"]),
            ipv6=data.get("address_version", "ipv4") == "ipv6",
            video=_parse_media_setup(data["video"]),
            audio=_parse_media_setup(data["audio"]),
        )
    except (KeyError, TypeError, ValueError, binascii.Error) as e:
        raise HTTPException(400, f"Invalid prepare request: {e!r}") from None


def parse_stream_request(data: dict[str, Any]) -> StreamingRequest:
    try:
        request_type = StreamRequestType(data["type"])
        video = None
        if data.get("video"):
            v = data["video"]
            video = VideoInfo(
                width=int(v["width"]),
                height=int(v["height"]),
                fps=int(v["fps"]),
                max_bit_rate=int(v["max_bit_rate"]),
                pt=int(v.get("pt", 99)),
            )
        a = data.get("audio") or {}
        audio = AudioInfo(
            sample_rate=int(a.get("sample_rate", 16)),
            max_bit_rate=int(a.get("max_bit_rate", 24)),
            pt=int(a.get("pt", 110)),
        )
        if request_type == StreamRequestType.START and video is None:
            raise ValueError("start request requires video parameters")
        return StreamingRequest(
            session_id=str(data["session_id"]),
            type=request_type,
            video=video,
            audio=audio,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(400, f"Invalid stream request: {e!r}") from None


def _media_response(media: PreparedMedia) -> dict[str, Any]:
    return {
        "port": media.port,
        "ssrc": media.ssrc,
        "srtp_key": base64.b64encode(media.srtp_key).decode("ascii"),
        "srtp_salt": base64.b64encode(media.srtp_salt).decode("ascii"),
    }


# =============================================================================
# Routes
# =============================================================================


@app.get("/cameras")
async def list_cameras():
    return {name: d.streaming_options() for name, d in _delegates.items()}


@app.post("/cameras/{name}/prepare")
async def prepare_stream(name: str, request: Request):
    """Allocate return ports and SSRCs for a new session."""
    delegate = get_delegate(name)
    prepare = parse_prepare_request(await request.json())
    response = await delegate.prepare_stream(prepare)
    return {
        "address": response.address,
        "video": _media_response(response.video),
        "audio": _media_response(response.audio),
    }


@app.post("/cameras/{name}/stream")
async def stream_request(name: str, request: Request):
    """Start, reconfigure or stop a prepared session."""
    delegate = get_delegate(name)
    stream = parse_stream_request(await request.json())
    await delegate.handle_stream_request(stream)
    return {"status": "ok", "session_id": stream.session_id, "type": stream.type.value}


@app.get("/cameras/{name}/snapshot")
async def snapshot(name: str, width: int = 640, height: int = 360):
    delegate = get_delegate(name)
    if width <= 0 or height <= 0:
        raise HTTPException(400, "width and height must be positive")
    image = await delegate.handle_snapshot_request(SnapshotRequest(width=width, height=height))
    return Response(content=image, media_type="image/jpeg", headers={"Cache-Control": "no-cache"})


if __name__ == "__main__":
    import argparse
    import pathlib

    import uvicorn  # pyright: ignore[reportMissingImports]

    parser = argparse.ArgumentParser(description="Camera streaming bridge")
    parser.add_argument("--config", type=pathlib.Path, help="Path to config.json")
    parser.add_argument("--host", default="0.0.0.0", help="Address to listen on")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )

    if args.config:
        config.CONFIG_FILE = args.config

    uv_log = "debug" if args.debug else "info"
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        access_log=args.debug,
        log_level=uv_log,
    )
