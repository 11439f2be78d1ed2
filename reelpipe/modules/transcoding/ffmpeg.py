"""FFmpeg/ffprobe utilities.

Probing, thumbnail extraction and HLS rendition encoding. Every subprocess
runs with a wall-clock timeout and is killed and reaped when it expires.
"""

import asyncio
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from reelpipe.core.config import Settings
from reelpipe.core.storage import rendition_manifest_name, segment_name_pattern
from reelpipe.modules.transcoding.abr import MIN_SOURCE_DIMENSION, QualityPreset
from reelpipe.modules.transcoding.exceptions import (
    InvalidMediaError,
    RenditionError,
    ThumbnailError,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], Awaitable[None]]

DEFAULT_FRAME_RATE = 30.0
STDERR_TAIL_LINES = 5

# Encoding gets slower as the output gets taller.
RESOLUTION_TIMEOUT_MULTIPLIERS = {
    360: 1.0,
    480: 1.25,
    720: 1.5,
    1080: 2.0,
    1440: 3.0,
    2160: 4.0,
}


@dataclass
class ProbeResult:
    """Technical metadata of a source file."""
    path: str
    duration: float  # seconds
    size: int  # bytes
    bitrate: int  # bps
    format_name: str
    width: int
    height: int
    frame_rate: float
    video_codec: Optional[str]
    pixel_format: Optional[str]
    audio_codec: Optional[str]
    has_audio: bool


@dataclass
class RenditionOutput:
    """Files produced for one rendition."""
    preset: QualityPreset
    output_dir: Path
    manifest_path: Path
    segment_count: int
    size_bytes: int


def parse_frame_rate(value: Optional[str]) -> float:
    """Parse an ffprobe rate such as ``30000/1001``.

    Malformed values and zero denominators give ``DEFAULT_FRAME_RATE``.
    """
    if not value:
        return DEFAULT_FRAME_RATE
    try:
        if "/" in value:
            num, den = value.split("/", 1)
            numerator, denominator = float(num), float(den)
        else:
            numerator, denominator = float(value), 1.0
    except ValueError:
        return DEFAULT_FRAME_RATE
    if denominator == 0 or numerator <= 0:
        return DEFAULT_FRAME_RATE
    return round(numerator / denominator, 2)


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_probe_output(data: dict, path: str) -> ProbeResult:
    """Build a ProbeResult from ffprobe's JSON output.

    Raises:
        InvalidMediaError: If there is no video stream or it is smaller than
            MIN_SOURCE_DIMENSION in either direction
    """
    streams = data.get("streams") or []
    fmt = data.get("format") or {}

    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise InvalidMediaError("No video stream found")

    width = _to_int(video.get("width"))
    height = _to_int(video.get("height"))
    if width < MIN_SOURCE_DIMENSION or height < MIN_SOURCE_DIMENSION:
        raise InvalidMediaError(f"Video stream has invalid dimensions {width}x{height}")

    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

    duration = _to_float(fmt.get("duration"))
    if duration <= 0:
        duration = _to_float(video.get("duration"))

    return ProbeResult(
        path=path,
        duration=duration,
        size=_to_int(fmt.get("size")),
        bitrate=_to_int(fmt.get("bit_rate")),
        format_name=fmt.get("format_name") or "",
        width=width,
        height=height,
        frame_rate=parse_frame_rate(video.get("r_frame_rate")),
        video_codec=video.get("codec_name"),
        pixel_format=video.get("pix_fmt"),
        audio_codec=audio.get("codec_name") if audio else None,
        has_audio=audio is not None,
    )


def calculate_ffmpeg_timeout(
    duration: float,
    height: int,
    multiplier: float = 3.0,
    minimum: float = 120,
    maximum: float = 7200,
) -> float:
    """Timeout for one encode, scaled by duration and output height."""
    resolution_multiplier = RESOLUTION_TIMEOUT_MULTIPLIERS.get(height, 2.0)
    timeout = max(duration, 0) * multiplier * resolution_multiplier
    return max(minimum, min(timeout, maximum))


def thumbnail_offset(duration: float, preferred: float) -> float:
    """Seek position for the thumbnail frame, kept inside the video."""
    if duration <= 0:
        return 0.0
    if duration < preferred:
        return duration / 2
    return preferred


def tail(text: str, lines: int = STDERR_TAIL_LINES) -> str:
    """Last non-empty lines of a process's stderr."""
    kept = [line for line in text.splitlines() if line.strip()]
    return "\n".join(kept[-lines:])


def build_hls_command(
    ffmpeg_path: str,
    source: Union[str, Path],
    preset: QualityPreset,
    manifest_path: Path,
    segment_pattern: Path,
    encoder_preset: str = "medium",
    audio_bitrate: int = 128000,
    segment_duration: int = 10,
) -> list[str]:
    """FFmpeg arguments for one VOD HLS rendition."""
    scale = (
        f"scale={preset.width}:{preset.height}:force_original_aspect_ratio=decrease,"
        f"pad={preset.width}:{preset.height}:(ow-iw)/2:(oh-ih)/2"
    )
    return [
        ffmpeg_path,
        "-y",
        "-i", str(source),
        "-map", "0:v:0",
        "-map", "0:a:0?",
        "-vf", scale,
        "-c:v", "libx264",
        "-preset", encoder_preset,
        "-profile:v", "main",
        "-pix_fmt", "yuv420p",
        "-b:v", str(preset.bitrate),
        "-maxrate", str(int(preset.bitrate * 1.07)),
        "-bufsize", str(preset.bitrate * 2),
        "-c:a", "aac",
        "-b:a", str(audio_bitrate),
        "-ac", "2",
        "-hls_time", str(segment_duration),
        "-hls_playlist_type", "vod",
        "-hls_list_size", "0",
        "-start_number", "0",
        "-hls_segment_filename", str(segment_pattern),
        "-progress", "pipe:1",
        "-nostats",
        "-f", "hls",
        str(manifest_path),
    ]


class MediaToolkit(Protocol):
    """What the pipeline needs from the media tools."""

    async def probe(self, path: Union[str, Path]) -> ProbeResult:
        ...

    async def extract_thumbnail(
        self, source: Union[str, Path], dest: Path, duration: float
    ) -> Path:
        ...

    async def transcode_rendition(
        self,
        source: Union[str, Path],
        preset: QualityPreset,
        output_dir: Path,
        asset_id: uuid.UUID,
        duration: float,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RenditionOutput:
        ...


async def _reap(process: asyncio.subprocess.Process, context: str) -> None:
    """Kill a subprocess if it is still running and wait for it."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


class FFmpegToolkit:
    """Runs ffprobe and ffmpeg as asyncio subprocesses."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        probe_timeout: float = 30,
        thumbnail_timeout: float = 60,
        encoder_preset: str = "medium",
        audio_bitrate: int = 128000,
        segment_duration: int = 10,
        thumbnail_offset: float = 5,
        thumbnail_size: tuple[int, int] = (640, 360),
        timeout_multiplier: float = 3.0,
        timeout_minimum: float = 120,
        timeout_maximum: float = 7200,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.probe_timeout = probe_timeout
        self.thumbnail_timeout = thumbnail_timeout
        self.encoder_preset = encoder_preset
        self.audio_bitrate = audio_bitrate
        self.segment_duration = segment_duration
        self.thumbnail_offset = thumbnail_offset
        self.thumbnail_size = thumbnail_size
        self.timeout_multiplier = timeout_multiplier
        self.timeout_minimum = timeout_minimum
        self.timeout_maximum = timeout_maximum

    @classmethod
    def from_settings(cls, settings: Settings) -> "FFmpegToolkit":
        return cls(
            ffmpeg_path=settings.FFMPEG_PATH,
            ffprobe_path=settings.FFPROBE_PATH,
            probe_timeout=settings.FFPROBE_TIMEOUT_SECONDS,
            thumbnail_timeout=settings.THUMBNAIL_TIMEOUT_SECONDS,
            encoder_preset=settings.ENCODER_PRESET,
            audio_bitrate=settings.AUDIO_BITRATE,
            segment_duration=settings.HLS_SEGMENT_DURATION,
            thumbnail_offset=settings.THUMBNAIL_OFFSET_SECONDS,
            thumbnail_size=(settings.THUMBNAIL_WIDTH, settings.THUMBNAIL_HEIGHT),
            timeout_multiplier=settings.FFMPEG_TIMEOUT_MULTIPLIER,
            timeout_minimum=settings.FFMPEG_TIMEOUT_MINIMUM,
            timeout_maximum=settings.FFMPEG_TIMEOUT_MAXIMUM,
        )

    async def _run(self, cmd: list[str], timeout: float, context: str) -> tuple[int, bytes, str]:
        """Run a short command to completion.

        Returns:
            (returncode, stdout, stderr)

        Raises:
            asyncio.TimeoutError: If the command outlives ``timeout``
            OSError: If the binary cannot be started
        """
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        finally:
            await _reap(process, context)
        return process.returncode, stdout, stderr.decode("utf-8", errors="replace")

    async def _run_with_progress(
        self,
        cmd: list[str],
        duration: float,
        timeout: float,
        on_progress: Optional[ProgressCallback],
        context: str,
    ) -> tuple[bool, Optional[str]]:
        """Run an encode, reporting ``-progress`` output as 0-100.

        Returns:
            (success, error_message)
        """
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stderr_lines: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        last_reported = 0

        async def read_progress():
            nonlocal last_reported
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="ignore").strip()
                if not text.startswith("out_time_ms=") or duration <= 0:
                    continue
                try:
                    seconds = int(text.split("=", 1)[1]) / 1_000_000
                except ValueError:
                    continue
                percent = min(100, int(seconds / duration * 100))
                if percent > last_reported:
                    last_reported = percent
                    if on_progress:
                        await on_progress(percent)

        async def read_stderr():
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip()
                if text:
                    stderr_lines.append(text)

        async def drain_and_wait():
            await asyncio.gather(read_progress(), read_stderr())
            await process.wait()

        start = asyncio.get_running_loop().time()
        try:
            await asyncio.wait_for(drain_and_wait(), timeout=timeout)
        except asyncio.TimeoutError:
            elapsed = asyncio.get_running_loop().time() - start
            logger.warning(
                f"{context} exceeded {timeout:.0f}s limit",
                extra={"elapsed_seconds": round(elapsed, 1)},
            )
            return False, f"timed out after {elapsed:.0f} seconds (limit: {timeout:.0f}s)"
        finally:
            await _reap(process, context)

        if process.returncode != 0:
            detail = "\n".join(stderr_lines)
            message = f"ffmpeg exited with code {process.returncode}"
            return False, f"{message}: {detail}" if detail else message
        return True, None

    async def probe(self, path: Union[str, Path]) -> ProbeResult:
        """Validate a source and read its metadata.

        Raises:
            InvalidMediaError: If the file is missing, unreadable or has no video
        """
        path = str(path)
        if not Path(path).is_file():
            raise InvalidMediaError(f"Source file not found: {path}")

        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            path,
        ]
        try:
            returncode, stdout, stderr = await self._run(cmd, self.probe_timeout, "ffprobe")
        except asyncio.TimeoutError:
            raise InvalidMediaError(f"ffprobe timed out after {self.probe_timeout}s")
        except OSError as e:
            raise InvalidMediaError(f"ffprobe could not be started: {e}")

        if returncode != 0:
            detail = tail(stderr)
            raise InvalidMediaError(
                f"ffprobe failed with code {returncode}" + (f": {detail}" if detail else "")
            )
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError:
            raise InvalidMediaError("ffprobe returned invalid output")
        return parse_probe_output(data, path)

    async def extract_thumbnail(
        self, source: Union[str, Path], dest: Path, duration: float
    ) -> Path:
        """Grab one frame as a JPEG.

        Raises:
            ThumbnailError: If the frame could not be written
        """
        width, height = self.thumbnail_size
        offset = thumbnail_offset(duration, self.thumbnail_offset)
        cmd = [
            self.ffmpeg_path,
            "-y",
            "-ss", f"{offset:.3f}",
            "-i", str(source),
            "-frames:v", "1",
            "-vf",
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2",
            "-q:v", "2",
            str(dest),
        ]
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            returncode, _, stderr = await self._run(cmd, self.thumbnail_timeout, "thumbnail")
        except asyncio.TimeoutError:
            raise ThumbnailError(f"Thumbnail extraction timed out after {self.thumbnail_timeout}s")
        except OSError as e:
            raise ThumbnailError(f"Thumbnail extraction failed: {e}")

        if returncode != 0 or not dest.is_file() or dest.stat().st_size == 0:
            raise ThumbnailError(f"Thumbnail extraction failed: {tail(stderr) or returncode}")
        return dest

    async def transcode_rendition(
        self,
        source: Union[str, Path],
        preset: QualityPreset,
        output_dir: Path,
        asset_id: uuid.UUID,
        duration: float,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RenditionOutput:
        """Encode one rendition into HLS segments and a VOD playlist.

        Raises:
            RenditionError: On encoder failure, timeout or missing output
        """
        manifest_path = output_dir / rendition_manifest_name(asset_id, preset.label)
        segment_pattern = output_dir / segment_name_pattern(asset_id, preset.label)
        cmd = build_hls_command(
            self.ffmpeg_path,
            source,
            preset,
            manifest_path,
            segment_pattern,
            encoder_preset=self.encoder_preset,
            audio_bitrate=self.audio_bitrate,
            segment_duration=self.segment_duration,
        )
        timeout = calculate_ffmpeg_timeout(
            duration,
            preset.height,
            multiplier=self.timeout_multiplier,
            minimum=self.timeout_minimum,
            maximum=self.timeout_maximum,
        )

        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            success, error = await self._run_with_progress(
                cmd, duration, timeout, on_progress, f"ffmpeg {preset.label}"
            )
        except OSError as e:
            raise RenditionError(preset.label, f"could not run ffmpeg: {e}")
        if not success:
            raise RenditionError(preset.label, error or "ffmpeg failed")

        try:
            segments = sorted(output_dir.glob(f"{asset_id}_{preset.label}_*.ts"))
            size_bytes = sum(segment.stat().st_size for segment in segments)
            has_manifest = manifest_path.is_file()
        except OSError as e:
            raise RenditionError(preset.label, f"could not read output: {e}")

        if not has_manifest or not segments:
            raise RenditionError(preset.label, "ffmpeg produced no playlist or segments")

        return RenditionOutput(
            preset=preset,
            output_dir=output_dir,
            manifest_path=manifest_path,
            segment_count=len(segments),
            size_bytes=size_bytes,
        )
