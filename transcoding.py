"""FFmpeg command construction and process supervision for camera streams."""

from __future__ import annotations

import asyncio
import base64
import enum
import logging
import os
import re
import signal
import socket
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import TYPE_CHECKING

from config import VideoConfig
from network import PortAllocationError


if TYPE_CHECKING:
    from streaming import AudioInfo
    from streaming import SessionInfo
    from streaming import VideoInfo

log = logging.getLogger(__name__)

# Timing constants (seconds)
STOP_GRACE_SEC = 2.0
KILL_WAIT_SEC = 1.0
SNAPSHOT_TIMEOUT_SEC = 20.0

DEFAULT_VCODEC = "libx264"
DEFAULT_MAP_VIDEO = "0:0"
DEFAULT_MAP_AUDIO = "0:1"
DEFAULT_ADDITIONAL_COMMANDLINE = "-preset ultrafast -tune zerolatency"
AUDIO_PACKET_SIZE = 188

_STDERR_TAIL_LINES = 10
_STDERR_CHUNK_SIZE = 4096
_STDERR_MAX_LINE = 4096
# ffmpeg ends progress lines with \r only
_LINE_BREAK = re.compile(rb"\r\n|\r|\n")
# ffmpeg error lines, optionally behind "[component @ 0x...]" and "level+" prefixes
_ERROR_LINE = re.compile(r"^(?:\[[^\]]+\]\s*)*\[?error\b", re.IGNORECASE)


class SRTPCryptoSuite(enum.IntEnum):
    AES_CM_128_HMAC_SHA1_80 = 0
    AES_CM_256_HMAC_SHA1_80 = 1
    NONE = 2


class TranscodeError(RuntimeError):
    """Base for transcoder failures; carries the tail of ffmpeg's stderr."""

    def __init__(self, message: str, diagnostics: str = "") -> None:
        super().__init__(message)
        self.diagnostics = diagnostics


class ProcessSpawnError(TranscodeError):
    """The transcoder binary could not be started."""


class ProcessRuntimeError(TranscodeError):
    """The transcoder exited or never became ready during a session."""


class SnapshotError(TranscodeError):
    """Still-image capture failed."""


@dataclass(slots=True)
class ResolutionInfo:
    width: int
    height: int
    video_filter: str


# =============================================================================
# Negotiation
# =============================================================================


def determine_resolution(width: int, height: int, config: VideoConfig) -> ResolutionInfo:
    width = min(width, config.max_width)
    height = min(height, config.max_height)

    if config.preserve_ratio == "W":
        resolution = f"{width}:-1"
    elif config.preserve_ratio == "H":
        resolution = f"-1:{height}"
    else:
        resolution = f"{width}:{height}"

    # Empty string and None both mean "scale to the negotiated size"
    config_filter = config.video_filter or None
    video_filter = f"scale={resolution}" if config_filter is None else config_filter

    vf: list[str] = []
    if video_filter != "none":
        # Flips must precede the scale filter to work
        if config.hflip:
            vf.append("hflip")
        if config.vflip:
            vf.append("vflip")
        vf.append(video_filter)

    return ResolutionInfo(width=width, height=height, video_filter=",".join(vf))


def clamp_fps(fps: int, config: VideoConfig) -> int:
    return min(fps, config.max_fps)


def clamp_bitrates(video_bitrate: int, audio_bitrate: int, config: VideoConfig) -> tuple[int, int]:
    """Apply configured bitrate caps. Audio is only ever capped, never raised."""
    if config.max_bitrate and video_bitrate > config.max_bitrate:
        video_bitrate = config.max_bitrate
    elif config.min_bitrate and video_bitrate < config.min_bitrate:
        video_bitrate = config.min_bitrate
    if config.max_bitrate and audio_bitrate > config.max_bitrate:
        audio_bitrate = config.max_bitrate
    return video_bitrate, audio_bitrate


# =============================================================================
# Command construction
# =============================================================================


def _format_host(address: str) -> str:
    return f"[{address}]" if ":" in address else address


def _rtp_output_args(
    ssrc: int,
    suite: SRTPCryptoSuite,
    srtp: bytes,
    address: str,
    port: int,
    packet_size: int,
) -> list[str]:
    args = ["-ssrc", str(ssrc), "-f", "rtp"]
    query = f"?rtcpport={port}&localrtcpport={port}&pkt_size={packet_size}"
    host = _format_host(address)
    if suite == SRTPCryptoSuite.NONE:
        args.append(f"rtp://{host}:{port}{query}")
        return args
    args.extend(
        [
            "-srtp_out_suite",
            suite.name,
            "-srtp_out_params",
            base64.b64encode(srtp).decode("ascii"),
            f"srtp://{host}:{port}{query}",
        ]
    )
    return args


def build_stream_cmd(
    config: VideoConfig,
    session: SessionInfo,
    resolution: ResolutionInfo,
    fps: int,
    video_bitrate: int,
    audio_bitrate: int,
    video: VideoInfo,
    audio: AudioInfo,
) -> list[str]:
    """Build ffmpeg arguments (without the binary) for one SRTP stream."""
    vcodec = config.vcodec or DEFAULT_VCODEC
    # Periodic progress stats only when debugging
    cmd = ["-hide_banner"] if config.debug else ["-hide_banner", "-nostats"]
    cmd.extend(config.source.split())

    cmd.extend(
        [
            "-map",
            config.map_video or DEFAULT_MAP_VIDEO,
            "-vcodec",
            vcodec,
            "-pix_fmt",
            "yuv420p",
            "-r",
            str(fps),
            "-f",
            "rawvideo",
        ]
    )
    cmd.extend((config.additional_commandline or DEFAULT_ADDITIONAL_COMMANDLINE).split())
    if vcodec != "copy" and resolution.video_filter:
        cmd.extend(["-vf", resolution.video_filter])
    cmd.extend(
        [
            "-b:v",
            f"{video_bitrate}k",
            "-bufsize",
            f"{2 * video_bitrate}k",
            "-maxrate",
            f"{video_bitrate}k",
            "-payload_type",
            str(video.pt),
        ]
    )
    cmd.extend(
        _rtp_output_args(
            session.video_ssrc,
            session.video_crypto_suite,
            session.video_srtp,
            session.address,
            session.video_port,
            config.packet_size,
        )
    )

    if config.audio:
        cmd.extend(
            [
                "-map",
                config.map_audio or DEFAULT_MAP_AUDIO,
                "-acodec",
                "libfdk_aac",
                "-profile:a",
                "aac_eld",
                "-flags",
                "+global_header",
                "-f",
                "null",
                "-ar",
                f"{audio.sample_rate}k",
                "-b:a",
                f"{audio_bitrate}k",
                "-bufsize",
                f"{audio_bitrate}k",
                "-ac",
                "1",
                "-payload_type",
                str(audio.pt),
            ]
        )
        cmd.extend(
            _rtp_output_args(
                session.audio_ssrc,
                session.audio_crypto_suite,
                session.audio_srtp,
                session.address,
                session.audio_port,
                AUDIO_PACKET_SIZE,
            )
        )

    if config.debug:
        cmd.extend(["-loglevel", "level+verbose"])
    return cmd


def build_snapshot_cmd(config: VideoConfig, resolution: ResolutionInfo) -> list[str]:
    cmd = (config.still_image_source or config.source).split()
    cmd.extend(["-frames:v", "1"])
    if resolution.video_filter:
        cmd.extend(["-vf", resolution.video_filter])
    cmd.extend(["-f", "image2", "-"])
    return cmd


# =============================================================================
# Process supervision
# =============================================================================


def _log_ffmpeg_line(camera_name: str, text: str, debug: bool) -> None:
    if _ERROR_LINE.match(text):
        log.error("[%s] %s", camera_name, text)
    elif debug:
        log.debug("[%s] %s", camera_name, text)


class _ReturnPortProtocol(asyncio.DatagramProtocol):
    def __init__(self, on_packet: Callable[[], None]) -> None:
        self._on_packet = on_packet

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self._on_packet()


class FfmpegProcess:
    """One ffmpeg process streaming to a controller.

    The stream counts as started once the controller sends anything (RTCP)
    back to the session's return port. ``started`` resolves exactly once:
    with ``None`` on the first return packet, or with an exception if the
    process exits first, is stopped first, or the startup timeout passes.
    """

    def __init__(
        self,
        camera_name: str,
        session_id: str,
        processor: str,
        cmd: list[str],
        return_port: int,
        *,
        ipv6: bool = False,
        debug: bool = False,
        startup_timeout: float = 30.0,
        on_exit: Callable[[FfmpegProcess, int | None, bool], None] | None = None,
    ) -> None:
        self.camera_name = camera_name
        self.session_id = session_id
        self.processor = processor
        self.cmd = cmd
        self.return_port = return_port
        self.ipv6 = ipv6
        self.debug = debug
        self.startup_timeout = startup_timeout
        self.process: asyncio.subprocess.Process | None = None
        self.stderr_lines: list[str] = []
        self._on_exit = on_exit
        self._transport: asyncio.DatagramTransport | None = None
        self._started: asyncio.Future[None] | None = None
        self._spawned = asyncio.Event()
        self._exited = asyncio.Event()
        self._monitor_task: asyncio.Task[None] | None = None
        self._stop_task: asyncio.Task[None] | None = None
        self._stop_requested = False
        self._start_called = False

    @property
    def started(self) -> asyncio.Future[None]:
        if self._started is None:
            self._started = asyncio.get_running_loop().create_future()
            # Failures may never be awaited if the session is torn down first
            self._started.add_done_callback(lambda f: f.cancelled() or f.exception())
        return self._started

    @property
    def returncode(self) -> int | None:
        return self.process.returncode if self.process else None

    def diagnostics(self) -> str:
        return "\n".join(self.stderr_lines[-_STDERR_TAIL_LINES:])

    def _resolve_started(self, exc: BaseException | None = None) -> None:
        if self.started.done():
            return
        if exc is None:
            self.started.set_result(None)
        else:
            self.started.set_exception(exc)

    def _on_return_packet(self) -> None:
        if not self.started.done():
            log.debug("[%s] Received first return packet on port %d", self.camera_name, self.return_port)
        self._resolve_started()
        self._close_socket()

    def _close_socket(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    async def start(self) -> None:
        """Open the return-port listener, then spawn ffmpeg."""
        self._start_called = True
        loop = asyncio.get_running_loop()
        host = "::" if self.ipv6 else "0.0.0.0"
        family = socket.AF_INET6 if self.ipv6 else socket.AF_INET
        try:
            try:
                self._transport, _ = await loop.create_datagram_endpoint(
                    lambda: _ReturnPortProtocol(self._on_return_packet),
                    local_addr=(host, self.return_port),
                    family=family,
                )
            except OSError as e:
                error = PortAllocationError(f"Unable to listen on port {self.return_port}: {e}")
                self._resolve_started(error)
                raise error from e

            if self._stop_requested:
                self._close_socket()
                self._resolve_started(ProcessRuntimeError("Stream stopped before start"))
                return

            log.debug(
                "[%s] Stream command: %s %s",
                self.camera_name,
                self.processor,
                " ".join(self.cmd),
            )
            try:
                self.process = await asyncio.create_subprocess_exec(
                    self.processor,
                    *self.cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                    env=os.environ.copy(),
                )
            except OSError as e:
                self._close_socket()
                error = ProcessSpawnError(f"Unable to start {self.processor}: {e}", str(e))
                self._resolve_started(error)
                raise error from e
        finally:
            self._spawned.set()

        self._monitor_task = asyncio.create_task(self._monitor())

    async def _read_stderr(self) -> None:
        """Drain stderr until EOF, splitting on \\r as well as \\n."""
        assert self.process is not None and self.process.stderr is not None
        pending = b""
        while True:
            chunk = await self.process.stderr.read(_STDERR_CHUNK_SIZE)
            if not chunk:
                break
            *lines, pending = _LINE_BREAK.split(pending + chunk)
            if len(pending) > _STDERR_MAX_LINE:
                lines.append(pending)
                pending = b""
            for line in lines:
                self._record_stderr_line(line)
        self._record_stderr_line(pending)

    def _record_stderr_line(self, line: bytes) -> None:
        text = line.decode(errors="replace").rstrip()
        if not text:
            return
        self.stderr_lines.append(text)
        del self.stderr_lines[:-_STDERR_TAIL_LINES]
        _log_ffmpeg_line(self.camera_name, text, self.debug)

    async def _monitor(self) -> None:
        assert self.process is not None
        await self._read_stderr()
        returncode = await self.process.wait()
        self._close_socket()
        self._exited.set()

        expected = self._stop_requested
        if not self.started.done():
            self._resolve_started(
                ProcessRuntimeError(
                    f"FFmpeg exited with code {returncode} before the stream started",
                    self.diagnostics(),
                )
            )
        if expected:
            log.debug("[%s] FFmpeg exited with code %s", self.camera_name, returncode)
        else:
            log.error(
                "[%s] FFmpeg exited unexpectedly with code %s: %s",
                self.camera_name,
                returncode,
                self.diagnostics() or "no output",
            )
        if self._on_exit is not None:
            self._on_exit(self, returncode, expected)

    async def wait_started(self) -> None:
        """Wait for the first return packet, stopping the process on timeout."""
        try:
            await asyncio.wait_for(asyncio.shield(self.started), self.startup_timeout)
        except TimeoutError:
            error = ProcessRuntimeError(
                f"No response from controller within {self.startup_timeout:g}s",
                self.diagnostics(),
            )
            self._resolve_started(error)
            await self.stop()
            raise error from None

    async def stop(self) -> None:
        """Interrupt ffmpeg, escalating to kill after a grace period. Idempotent."""
        self._stop_requested = True
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._terminate())
        await asyncio.shield(self._stop_task)

    async def _terminate(self) -> None:
        if not self._start_called:
            self._resolve_started(ProcessRuntimeError("Stream stopped before start"))
            return
        await self._spawned.wait()
        self._resolve_started(ProcessRuntimeError("Stream stopped before start"))
        self._close_socket()
        proc = self.process
        if proc is None:
            return
        if proc.returncode is None:
            try:
                proc.send_signal(signal.SIGINT)
            except ProcessLookupError:
                pass
            else:
                try:
                    await asyncio.wait_for(self._exited.wait(), STOP_GRACE_SEC)
                except TimeoutError:
                    log.warning(
                        "[%s] FFmpeg did not exit after %gs, killing", self.camera_name, STOP_GRACE_SEC
                    )
                    with suppress(ProcessLookupError):
                        proc.kill()
                    try:
                        await asyncio.wait_for(proc.wait(), KILL_WAIT_SEC)
                    except TimeoutError:
                        log.error("[%s] FFmpeg pid %d did not die after kill", self.camera_name, proc.pid)
        if self._monitor_task is not None:
            with suppress(TimeoutError):
                await asyncio.wait_for(asyncio.shield(self._monitor_task), KILL_WAIT_SEC)


async def take_snapshot(
    processor: str,
    cmd: list[str],
    camera_name: str,
    debug: bool = False,
    timeout: float = SNAPSHOT_TIMEOUT_SEC,
) -> bytes:
    """Run a one-shot ffmpeg capture and return the image bytes."""
    log.debug("[%s] Snapshot command: %s %s", camera_name, processor, " ".join(cmd))
    try:
        process = await asyncio.create_subprocess_exec(
            processor,
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=os.environ.copy(),
        )
    except OSError as e:
        raise SnapshotError(f"Unable to start {processor}: {e}", str(e)) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except TimeoutError:
        with suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        raise SnapshotError(f"Snapshot timed out after {timeout:g}s") from None

    lines = [line for line in stderr.decode(errors="replace").splitlines() if line.strip()]
    for line in lines:
        _log_ffmpeg_line(camera_name, line, debug)
    diagnostics = "\n".join(lines[-_STDERR_TAIL_LINES:])
    if process.returncode != 0:
        raise SnapshotError(f"FFmpeg exited with code {process.returncode}", diagnostics)
    if not stdout:
        raise SnapshotError("FFmpeg returned an empty image", diagnostics)
    return stdout
