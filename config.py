"""Camera and server configuration loading."""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from dataclasses import fields
from typing import Any

import json
import logging
import os
import pathlib


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
CONFIG_FILE = pathlib.Path(os.environ.get("CAMSTREAM_CONFIG", APP_DIR / "config.json"))

PRESERVE_RATIO_MODES = ("", "W", "H")

# camelCase config keys accepted as aliases for field names
_CAMEL_ALIASES = {
    "source": "source",
    "stillImageSource": "still_image_source",
    "maxWidth": "max_width",
    "maxHeight": "max_height",
    "maxFPS": "max_fps",
    "maxBitrate": "max_bitrate",
    "minBitrate": "min_bitrate",
    "maxStreams": "max_streams",
    "packetSize": "packet_size",
    "vcodec": "vcodec",
    "videoFilter": "video_filter",
    "vflip": "vflip",
    "hflip": "hflip",
    "preserveRatio": "preserve_ratio",
    "mapvideo": "map_video",
    "mapaudio": "map_audio",
    "additionalCommandline": "additional_commandline",
    "audio": "audio",
    "debug": "debug",
    "startupTimeout": "startup_timeout",
    "videoProcessor": "video_processor",
    "interfaceName": "interface_name",
    "videoConfig": "video_config",
}


class ConfigurationError(ValueError):
    """Raised when a camera or server config is missing or invalid."""


@dataclass(slots=True)
class VideoConfig:
    source: str
    still_image_source: str = ""
    max_width: int = 1920
    max_height: int = 1080
    max_fps: int = 30
    max_bitrate: int = 0  # kbps, 0 = no cap
    min_bitrate: int = 0  # kbps, 0 = no floor
    max_streams: int = 2
    packet_size: int = 1316
    vcodec: str = ""  # empty = libx264
    video_filter: str | None = None  # None/"" = scale from preserve_ratio, "none" = no filter
    vflip: bool = False
    hflip: bool = False
    preserve_ratio: str = ""  # "", "W" or "H"
    map_video: str = ""  # empty = 0:0
    map_audio: str = ""  # empty = 0:1
    additional_commandline: str = ""
    audio: bool = False
    debug: bool = False
    startup_timeout: float = 30.0  # seconds to wait for the first return packet


@dataclass(slots=True)
class CameraConfig:
    name: str
    video_config: VideoConfig


@dataclass(slots=True)
class ServerConfig:
    video_processor: str = "ffmpeg"
    interface_name: str | None = None
    cameras: list[CameraConfig] = field(default_factory=list)


def _normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    return {_CAMEL_ALIASES.get(k, k): v for k, v in data.items()}


def _coerce_int(name: str, value: Any, minimum: int = 0) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None
    if number < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {number}")
    return number


def validate_video_config(data: dict[str, Any]) -> VideoConfig:
    """Build a VideoConfig from a raw dict, applying defaults and checking values."""
    data = _normalize_keys(data)
    source = str(data.get("source") or "").strip()
    if not source:
        raise ConfigurationError("Missing source for camera")

    known = {f.name for f in fields(VideoConfig)}
    unknown = set(data) - known
    if unknown:
        log.warning("Ignoring unknown video config keys: %s", ", ".join(sorted(unknown)))
    kwargs = {k: v for k, v in data.items() if k in known}
    kwargs["source"] = source

    for key in ("max_width", "max_height", "max_fps", "max_streams", "packet_size"):
        if key in kwargs:
            kwargs[key] = _coerce_int(key, kwargs[key], minimum=1)
    for key in ("max_bitrate", "min_bitrate"):
        if key in kwargs:
            kwargs[key] = _coerce_int(key, kwargs[key] or 0)
    if "startup_timeout" in kwargs:
        try:
            kwargs["startup_timeout"] = float(kwargs["startup_timeout"])
        except (TypeError, ValueError):
            raise ConfigurationError("startup_timeout must be a number") from None
        if kwargs["startup_timeout"] <= 0:
            raise ConfigurationError("startup_timeout must be positive")

    preserve_ratio = str(kwargs.get("preserve_ratio") or "").upper()
    if preserve_ratio not in PRESERVE_RATIO_MODES:
        raise ConfigurationError(f"preserve_ratio must be W, H or empty, got {preserve_ratio!r}")
    kwargs["preserve_ratio"] = preserve_ratio

    config = VideoConfig(**kwargs)
    if config.max_bitrate and config.min_bitrate > config.max_bitrate:
        raise ConfigurationError(
            f"min_bitrate ({config.min_bitrate}) exceeds max_bitrate ({config.max_bitrate})"
        )
    return config


def validate_camera_config(data: dict[str, Any]) -> CameraConfig:
    data = _normalize_keys(data)
    name = str(data.get("name") or "").strip()
    if not name:
        raise ConfigurationError("Camera is missing a name")
    video = data.get("video_config")
    if not isinstance(video, dict):
        raise ConfigurationError(f"[{name}] Missing video_config")
    try:
        return CameraConfig(name=name, video_config=validate_video_config(video))
    except ConfigurationError as e:
        raise ConfigurationError(f"[{name}] {e}") from None


def load_server_config(path: pathlib.Path | None = None) -> ServerConfig:
    """Load server config. A missing file yields an empty config."""
    path = path or CONFIG_FILE
    if path.exists():
        try:
            data: dict[str, Any] = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {e}") from None
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a JSON object")
    else:
        log.warning("Config file %s not found, no cameras configured", path)
        data = {}
    data = _normalize_keys(data)

    cameras: list[CameraConfig] = []
    seen: set[str] = set()
    for raw in data.get("cameras", []):
        camera = validate_camera_config(raw)
        if camera.name in seen:
            raise ConfigurationError(f"Duplicate camera name: {camera.name}")
        seen.add(camera.name)
        cameras.append(camera)

    return ServerConfig(
        video_processor=data.get("video_processor") or "ffmpeg",
        interface_name=data.get("interface_name") or None,
        cameras=cameras,
    )
