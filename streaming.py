"""Stream session management for one camera.

A controller first prepares a session (we pick a local address and return
ports, it supplies its address, ports and SRTP keys), then starts it with
the negotiated video/audio parameters. Each started session owns one ffmpeg
process until it is stopped or the process exits.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import threading
from collections import deque
from dataclasses import dataclass
from dataclasses import field

from config import CameraConfig
from network import AddressResolutionError
from network import allocate_port
from network import get_ip_address
from network import release_port
from transcoding import FfmpegProcess
from transcoding import SRTPCryptoSuite
from transcoding import build_snapshot_cmd
from transcoding import build_stream_cmd
from transcoding import clamp_bitrates
from transcoding import clamp_fps
from transcoding import determine_resolution
from transcoding import take_snapshot


log = logging.getLogger(__name__)

# Resolutions advertised to controllers as [width, height, fps]
SUPPORTED_RESOLUTIONS = [
    [320, 180, 30],
    [320, 240, 15],  # Apple Watch requires this configuration
    [320, 240, 30],
    [480, 270, 30],
    [480, 360, 30],
    [640, 360, 30],
    [640, 480, 30],
    [1280, 720, 30],
    [1280, 960, 30],
    [1920, 1080, 30],
    [1600, 1200, 30],
]
H264_PROFILES = ["baseline", "main", "high"]
H264_LEVELS = ["3.1", "3.2", "4.0"]

# Recently issued SSRCs; old entries age out so the history stays bounded
SSRC_HISTORY = 4096
_issued_ssrcs: set[int] = set()
_ssrc_order: deque[int] = deque()
_ssrc_lock = threading.Lock()


class SessionNotFoundError(LookupError):
    """Raised when a start request has no matching prepared session."""


class StreamLimitError(RuntimeError):
    """Raised when a camera already runs its maximum number of streams."""


class StreamRequestType(enum.StrEnum):
    START = "start"
    RECONFIGURE = "reconfigure"
    STOP = "stop"


@dataclass(slots=True)
class MediaSetup:
    port: int
    srtp_crypto_suite: SRTPCryptoSuite
    srtp_key: bytes
    srtp_salt: bytes


@dataclass(slots=True)
class PrepareStreamRequest:
    session_id: str
    target_address: str
    video: MediaSetup
    audio: MediaSetup
    ipv6: bool = False


@dataclass(slots=True)
class PreparedMedia:
    port: int
    ssrc: int
    srtp_key: bytes
    srtp_salt: bytes


@dataclass(slots=True)
class PrepareStreamResponse:
    address: str
    video: PreparedMedia
    audio: PreparedMedia


@dataclass(slots=True)
class VideoInfo:
    width: int
    height: int
    fps: int
    max_bit_rate: int  # kbps
    pt: int = 99


@dataclass(slots=True)
class AudioInfo:
    sample_rate: int = 16  # kHz
    max_bit_rate: int = 24  # kbps
    pt: int = 110


@dataclass(slots=True)
class StreamingRequest:
    session_id: str
    type: StreamRequestType
    video: VideoInfo | None = None
    audio: AudioInfo = field(default_factory=AudioInfo)


@dataclass(slots=True)
class SnapshotRequest:
    width: int
    height: int


@dataclass(slots=True)
class SessionInfo:
    address: str  # address of the controller
    ipv6: bool

    video_port: int
    video_return_port: int
    video_crypto_suite: SRTPCryptoSuite
    video_srtp: bytes  # key and salt concatenated
    video_ssrc: int

    audio_port: int
    audio_return_port: int
    audio_crypto_suite: SRTPCryptoSuite
    audio_srtp: bytes
    audio_ssrc: int


def generate_ssrc() -> int:
    """Random 31-bit synchronisation source, distinct from the last SSRC_HISTORY issued."""
    with _ssrc_lock:
        while True:
            ssrc = int.from_bytes(os.urandom(4), "big") & 0x7FFFFFFF
            if ssrc and ssrc not in _issued_ssrcs:
                break
        _issued_ssrcs.add(ssrc)
        _ssrc_order.append(ssrc)
        while len(_ssrc_order) > SSRC_HISTORY:
            _issued_ssrcs.discard(_ssrc_order.popleft())
        return ssrc


class StreamingDelegate:
    def __init__(
        self,
        camera: CameraConfig,
        video_processor: str = "ffmpeg",
        interface_name: str | None = None,
    ) -> None:
        self.name = camera.name
        self.video_config = camera.video_config
        self.video_processor = video_processor or "ffmpeg"
        self.interface_name = interface_name
        self.pending_sessions: dict[str, SessionInfo] = {}
        self.ongoing_sessions: dict[str, FfmpegProcess] = {}
        # Return ports of ongoing sessions, released when they end
        self._ongoing_ports: dict[str, tuple[int, int]] = {}

    @property
    def camera_stream_count(self) -> int:
        return self.video_config.max_streams or 2

    def streaming_options(self) -> dict:
        return {
            "camera_stream_count": self.camera_stream_count,
            "supported_crypto_suites": [SRTPCryptoSuite.AES_CM_128_HMAC_SHA1_80.name],
            "video": {
                "resolutions": SUPPORTED_RESOLUTIONS,
                "codec": {"profiles": H264_PROFILES, "levels": H264_LEVELS},
            },
            "audio": {"codecs": [{"type": "AAC-eld", "samplerate": 16}]},
        }

    def _debug(self, msg: str, *args: object) -> None:
        if self.video_config.debug:
            log.debug("[%s] " + msg, self.name, *args)

    async def _resolve_address(self, ipv6: bool) -> str:
        try:
            return await asyncio.to_thread(get_ip_address, ipv6, self.interface_name)
        except AddressResolutionError as e:
            if not self.interface_name:
                raise
            log.warning("[%s] %s Falling back to default.", self.name, e)
            return await asyncio.to_thread(get_ip_address, ipv6, None)

    async def handle_snapshot_request(self, request: SnapshotRequest) -> bytes:
        resolution = determine_resolution(request.width, request.height, self.video_config)
        self._debug("Snapshot requested: %dx%d", request.width, request.height)
        self._debug("Sending snapshot: %dx%d", resolution.width, resolution.height)
        cmd = build_snapshot_cmd(self.video_config, resolution)
        try:
            return await take_snapshot(
                self.video_processor, cmd, self.name, self.video_config.debug
            )
        except Exception as e:
            log.error("[%s] An error occurred while making snapshot request: %s", self.name, e)
            raise

    async def prepare_stream(self, request: PrepareStreamRequest) -> PrepareStreamResponse:
        session_id = request.session_id
        if session_id in self.ongoing_sessions:
            log.warning("[%s] Session %s prepared again, stopping old stream", self.name, session_id)
            await self.stop_stream(session_id)
        elif session_id in self.pending_sessions:
            self._discard_pending(session_id)

        # Binding to port 0 does not block, so reserve without awaiting
        video_return_port = allocate_port(request.ipv6)
        try:
            audio_return_port = allocate_port(request.ipv6)
        except OSError:
            release_port(video_return_port)
            raise
        video_ssrc = generate_ssrc()
        audio_ssrc = generate_ssrc()

        try:
            current_address = await self._resolve_address(request.ipv6)
        except BaseException:
            # Includes cancellation
            release_port(video_return_port)
            release_port(audio_return_port)
            raise

        self.pending_sessions[session_id] = SessionInfo(
            address=request.target_address,
            ipv6=request.ipv6,
            video_port=request.video.port,
            video_return_port=video_return_port,
            video_crypto_suite=request.video.srtp_crypto_suite,
            video_srtp=request.video.srtp_key + request.video.srtp_salt,
            video_ssrc=video_ssrc,
            audio_port=request.audio.port,
            audio_return_port=audio_return_port,
            audio_crypto_suite=request.audio.srtp_crypto_suite,
            audio_srtp=request.audio.srtp_key + request.audio.srtp_salt,
            audio_ssrc=audio_ssrc,
        )
        self._debug(
            "Prepared session %s: controller %s, return ports %d/%d",
            session_id,
            request.target_address,
            video_return_port,
            audio_return_port,
        )

        return PrepareStreamResponse(
            address=current_address,
            video=PreparedMedia(
                port=video_return_port,
                ssrc=video_ssrc,
                srtp_key=request.video.srtp_key,
                srtp_salt=request.video.srtp_salt,
            ),
            audio=PreparedMedia(
                port=audio_return_port,
                ssrc=audio_ssrc,
                srtp_key=request.audio.srtp_key,
                srtp_salt=request.audio.srtp_salt,
            ),
        )

    def _discard_pending(self, session_id: str) -> None:
        session = self.pending_sessions.pop(session_id, None)
        if session:
            release_port(session.video_return_port)
            release_port(session.audio_return_port)

    def _release_ongoing_ports(self, session_id: str) -> None:
        for port in self._ongoing_ports.pop(session_id, ()):
            release_port(port)

    def _on_process_exit(self, process: FfmpegProcess, returncode: int | None, expected: bool) -> None:
        session_id = process.session_id
        if self.ongoing_sessions.get(session_id) is not process:
            return
        del self.ongoing_sessions[session_id]
        self._release_ongoing_ports(session_id)
        if not expected:
            log.info(
                "[%s] Removed session %s after FFmpeg exited (code %s)",
                self.name,
                session_id,
                returncode,
            )

    async def _start_stream(self, request: StreamingRequest) -> None:
        session_id = request.session_id
        session = self.pending_sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"No prepared session {session_id}")
        if request.video is None:
            raise ValueError("Start request is missing video parameters")
        if len(self.ongoing_sessions) >= self.camera_stream_count:
            raise StreamLimitError(
                f"Camera already has {len(self.ongoing_sessions)} active streams"
            )

        config = self.video_config
        video, audio = request.video, request.audio
        fps = clamp_fps(video.fps, config)
        resolution = determine_resolution(video.width, video.height, config)
        video_bitrate, audio_bitrate = clamp_bitrates(video.max_bit_rate, audio.max_bit_rate, config)

        self._debug(
            "Video stream requested: %dx%d, %d fps, %d kbps",
            video.width,
            video.height,
            video.fps,
            video.max_bit_rate,
        )
        log.info(
            "[%s] Starting video stream: %dx%d, %d fps, %d kbps",
            self.name,
            resolution.width,
            resolution.height,
            fps,
            video_bitrate,
        )

        cmd = build_stream_cmd(
            config, session, resolution, fps, video_bitrate, audio_bitrate, video, audio
        )
        process = FfmpegProcess(
            self.name,
            session_id,
            self.video_processor,
            cmd,
            session.video_return_port,
            ipv6=session.ipv6,
            debug=config.debug,
            startup_timeout=config.startup_timeout,
            on_exit=self._on_process_exit,
        )

        self.ongoing_sessions[session_id] = process
        self._ongoing_ports[session_id] = (session.video_return_port, session.audio_return_port)
        del self.pending_sessions[session_id]

        try:
            await process.start()
            await process.wait_started()
        except asyncio.CancelledError:
            log.warning("[%s] Start of session %s cancelled", self.name, session_id)
            await self.stop_stream(session_id)
            raise
        except Exception as e:
            log.error("[%s] Unable to start video stream: %s", self.name, e)
            await self.stop_stream(session_id)
            raise

    async def handle_stream_request(self, request: StreamingRequest) -> None:
        if request.type == StreamRequestType.START:
            await self._start_stream(request)
        elif request.type == StreamRequestType.RECONFIGURE:
            # Not implemented: the running process keeps its parameters
            video = request.video
            if video:
                self._debug(
                    "Received request to reconfigure: %dx%d, %d fps, %d kbps (Ignored)",
                    video.width,
                    video.height,
                    video.fps,
                    video.max_bit_rate,
                )
        elif request.type == StreamRequestType.STOP:
            await self.stop_stream(request.session_id)

    async def stop_stream(self, session_id: str) -> None:
        """Stop a session in any state. Never raises."""
        if session_id in self.pending_sessions:
            self._discard_pending(session_id)
            self._debug("Discarded pending session %s", session_id)
        process = self.ongoing_sessions.get(session_id)
        if process is None:
            return
        try:
            await process.stop()
            log.info("[%s] Stopped video stream.", self.name)
        except Exception as e:
            log.error("[%s] Error occurred terminating video process: %s", self.name, e)
        finally:
            if self.ongoing_sessions.get(session_id) is process:
                del self.ongoing_sessions[session_id]
                self._release_ongoing_ports(session_id)

    async def shutdown(self) -> None:
        """Stop every session. Safe to call more than once."""
        session_ids = list(self.pending_sessions) + list(self.ongoing_sessions)
        if not session_ids:
            return
        results = await asyncio.gather(
            *(self.stop_stream(sid) for sid in session_ids), return_exceptions=True
        )
        for sid, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                log.error("[%s] Error stopping session %s on shutdown: %s", self.name, sid, result)
        log.info("[%s] Stopped %d session(s) on shutdown", self.name, len(session_ids))
