#!/usr/bin/env python3
"""
Video restoration pipeline.

Extracts every frame with ffmpeg, restores the frames in parallel with the
image pipeline, then rebuilds the video at the source frame rate with the
original audio track.
"""

from __future__ import annotations

import enum
import json
import shutil
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Collection, Optional, Sequence

from PIL import Image

from errors import PartialBatchFailure, PipelineIOError, SubprocessError
from imaging import DEFAULT_WORKING_CAP, resolve_target_size
from model_store import ensure_model_artifact
from profiles import ModelProfile
from restore_images import (
    BatchScheduler,
    default_worker_count,
    make_pipeline_factory,
)
from toolchain import (
    Toolchain,
    list_available_encoders,
    progress_write,
    resolve_toolchain,
    run_tool,
)
from tracing import traced

# ── Constants ──────────────────────────────────────────────────────────────────

DEFAULT_FRAMERATE = "30"
MAX_FRAMERATE = 240.0

INPUT_FRAME_PATTERN = "frame_%06d.png"
INPUT_FRAME_GLOB = "frame_*.png"

PREFERRED_VIDEO_ENCODER = "libx264"
ALTERNATE_VIDEO_ENCODERS = ("libopenh264", "h264_videotoolbox", "h264_nvenc")
BASELINE_VIDEO_ENCODER = "mpeg4"
AUDIO_ENCODER_PREFERENCE = ("aac", "libmp3lame")
AUDIO_COPY = "copy"

DEFAULT_PRESET = "medium"
DEFAULT_CRF = 18
DEFAULT_AUDIO_BITRATE = "192k"
FALLBACK_VIDEO_BITRATE = "8M"
EVEN_DIMENSIONS_FILTER = "scale=trunc(iw/2)*2:trunc(ih/2)*2"
OUTPUT_PIXEL_FORMAT = "yuv420p"

# PNG output, worst case ~3 bytes per pixel
PNG_BYTES_PER_PIXEL = 3.0


class VideoStage(str, enum.Enum):
    IDLE = "Idle"
    EXTRACTING = "Extracting"
    PROCESSING_FRAMES = "ProcessingFrames"
    PROBING_STREAMS = "ProbingStreams"
    REASSEMBLING = "Reassembling"
    DONE = "Done"
    FAILED = "Failed"


@dataclass(frozen=True)
class VideoInfo:
    framerate: str
    width: int
    height: int
    audio_codec: Optional[str]
    has_audio: bool
    duration_seconds: float


@dataclass(frozen=True)
class StreamMap:
    input_index: int
    media_type: str
    stream_index: int = 0

    def spec(self) -> str:
        return f"{self.input_index}:{self.media_type}:{self.stream_index}"


@dataclass(frozen=True)
class CodecChoice:
    video_encoder: str
    audio_encoder: Optional[str]
    notes: tuple[str, ...] = field(default=(), compare=False)

    @property
    def copies_audio(self) -> bool:
        return self.audio_encoder == AUDIO_COPY


# ── Functions ──────────────────────────────────────────────────────────────────


def parse_framerate(value: str) -> str:
    """Parse ffprobe framerate strings like 30000/1001 into fixed 3-decimal text."""
    if not value:
        return DEFAULT_FRAMERATE

    try:
        if "/" in value:
            num, den = value.split("/", maxsplit=1)
            denominator = float(den)
            if denominator == 0:
                return DEFAULT_FRAMERATE
            framerate = float(num) / denominator
        else:
            framerate = float(value)
    except (TypeError, ValueError):
        return DEFAULT_FRAMERATE

    if framerate <= 0 or framerate > MAX_FRAMERATE:
        return DEFAULT_FRAMERATE
    return f"{framerate:.3f}"


def get_video_info(ffprobe_bin: str, input_video: Path) -> VideoInfo:
    """Read metadata with ffprobe and return parsed info."""
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        str(input_video),
    ]
    result = run_tool(cmd, f"ffprobe failed for {input_video}")

    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise SubprocessError("Failed to parse ffprobe output", str(exc)) from exc

    video_stream = None
    audio_stream = None
    for stream in payload.get("streams", []):
        stream_type = stream.get("codec_type")
        if stream_type == "video" and video_stream is None:
            video_stream = stream
        elif stream_type == "audio" and audio_stream is None:
            audio_stream = stream

    if video_stream is None:
        raise SubprocessError(f"No video stream found in {input_video}")

    framerate = parse_framerate(
        video_stream.get("avg_frame_rate") or video_stream.get("r_frame_rate", "")
    )
    duration_raw = (
        video_stream.get("duration")
        or payload.get("format", {}).get("duration")
        or "0"
    )
    try:
        duration_seconds = max(float(duration_raw), 0.0)
    except (TypeError, ValueError):
        duration_seconds = 0.0

    return VideoInfo(
        framerate=framerate,
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
        has_audio=audio_stream is not None,
        duration_seconds=duration_seconds,
    )


def extract_frames(ffmpeg_bin: str, input_video: Path, frames_dir: Path) -> int:
    """Extract every input frame into a numbered lossless PNG sequence."""
    output_pattern = frames_dir / INPUT_FRAME_PATTERN
    cmd = [
        ffmpeg_bin,
        "-i",
        str(input_video),
        "-fps_mode",
        "passthrough",
        "-start_number",
        "1",
        str(output_pattern),
        "-y",
        "-hide_banner",
        "-loglevel",
        "warning",
    ]
    run_tool(cmd, "Frame extraction failed")

    frame_count = len(list(frames_dir.glob(INPUT_FRAME_GLOB)))
    if frame_count == 0:
        raise SubprocessError("Frame extraction produced zero output frames.")
    return frame_count


def negotiate_codecs(available: Collection[str], *, has_audio: bool) -> CodecChoice:
    """Pick encoders from the ones ffmpeg reports, recording every fallback."""
    notes: list[str] = []

    if PREFERRED_VIDEO_ENCODER in available:
        video_encoder = PREFERRED_VIDEO_ENCODER
    else:
        alternate = next((name for name in ALTERNATE_VIDEO_ENCODERS if name in available), None)
        if alternate is not None:
            video_encoder = alternate
        elif BASELINE_VIDEO_ENCODER in available:
            video_encoder = BASELINE_VIDEO_ENCODER
        else:
            raise SubprocessError(
                "No usable video encoder: ffmpeg offers none of "
                f"{', '.join((PREFERRED_VIDEO_ENCODER, *ALTERNATE_VIDEO_ENCODERS, BASELINE_VIDEO_ENCODER))}"
            )
        notes.append(
            f"Video encoder {PREFERRED_VIDEO_ENCODER} unavailable; using {video_encoder}"
        )
    notes.append(f"Video encoder: {video_encoder}")

    audio_encoder: Optional[str] = None
    if has_audio:
        audio_encoder = next(
            (name for name in AUDIO_ENCODER_PREFERENCE if name in available),
            AUDIO_COPY,
        )
        if audio_encoder != AUDIO_ENCODER_PREFERENCE[0]:
            notes.append(
                f"Audio encoder {AUDIO_ENCODER_PREFERENCE[0]} unavailable; using {audio_encoder}"
            )
        notes.append(f"Audio encoder: {audio_encoder}")

    return CodecChoice(video_encoder=video_encoder, audio_encoder=audio_encoder, notes=tuple(notes))


def get_codec_flags(encoder: str, preset: str, crf: int) -> list[str]:
    """Return ffmpeg quality flags for the negotiated video encoder."""
    if encoder == "libx264":
        return ["-c:v", "libx264", "-preset", preset, "-crf", str(crf)]
    if encoder == "h264_nvenc":
        return ["-c:v", "h264_nvenc", "-cq", str(crf)]
    if encoder in ("libopenh264", "h264_videotoolbox"):
        return ["-c:v", encoder, "-b:v", FALLBACK_VIDEO_BITRATE]
    if encoder == "mpeg4":
        return ["-c:v", "mpeg4", "-q:v", "2"]
    raise ValueError(f"Unsupported video encoder: {encoder}")


def build_reassemble_command(
    ffmpeg_bin: str,
    frames_pattern: Path,
    source_video: Path,
    output_video: Path,
    *,
    framerate: str,
    codecs: CodecChoice,
    preset: str,
    crf: int,
    audio_bitrate: str,
) -> list[str]:
    """Build the encode invocation: restored frames as input 0, source audio as input 1."""
    cmd = [
        ffmpeg_bin,
        "-framerate",
        framerate,
        "-start_number",
        "1",
        "-i",
        str(frames_pattern),
    ]

    stream_maps = [StreamMap(0, "v")]
    if codecs.audio_encoder is not None:
        cmd.extend(["-i", str(source_video)])
        stream_maps.append(StreamMap(1, "a"))

    for stream_map in stream_maps:
        cmd.extend(["-map", stream_map.spec()])

    cmd.extend(get_codec_flags(codecs.video_encoder, preset, crf))
    cmd.extend(["-vf", EVEN_DIMENSIONS_FILTER, "-pix_fmt", OUTPUT_PIXEL_FORMAT])

    if codecs.audio_encoder is not None:
        cmd.extend(["-c:a", codecs.audio_encoder])
        if not codecs.copies_audio:
            cmd.extend(["-b:a", audio_bitrate])
        cmd.append("-shortest")

    cmd.extend(
        [
            "-movflags",
            "+faststart",
            str(output_video),
            "-y",
            "-hide_banner",
            "-loglevel",
            "warning",
        ]
    )
    return cmd


def resolve_output_path(
    input_video: Path,
    output_arg: Optional[str | Path],
    profile: ModelProfile,
) -> Path:
    if output_arg:
        return Path(output_arg).expanduser().resolve()
    return (input_video.parent / f"{input_video.stem}{profile.output_suffix()}.mp4").resolve()


def prepare_workspace(work_root: Optional[str | Path], keep_temp: bool) -> tuple[Path, bool]:
    """Create a per-run workspace and report whether it should be removed afterwards."""
    parent = None
    if work_root:
        parent = Path(work_root).expanduser().resolve()
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PipelineIOError(f"Cannot create work directory {parent}: {exc}") from exc
    workspace_root = Path(tempfile.mkdtemp(prefix="onnx_restore_", dir=parent))
    return workspace_root, not keep_temp


def check_disk_space(
    workspace_root: Path,
    frame_count: int,
    source_size: tuple[int, int],
    restored_size: tuple[int, int],
) -> None:
    """Warn or fail if the extracted and restored PNG frames would not fit on disk."""
    pixels_per_frame = source_size[0] * source_size[1] + restored_size[0] * restored_size[1]
    projected_bytes = pixels_per_frame * PNG_BYTES_PER_PIXEL * frame_count

    available = shutil.disk_usage(workspace_root).free
    projected_gb = projected_bytes / (1024**3)
    available_gb = available / (1024**3)
    if projected_bytes > available * 0.9:
        raise PipelineIOError(
            f"Projected disk usage ({projected_gb:.1f} GB) exceeds 90% of "
            f"available space ({available_gb:.1f} GB). Use --work-dir to "
            f"point to a larger volume."
        )
    if projected_bytes > available * 0.5:
        progress_write(
            f"Warning: Projected disk usage ({projected_gb:.1f} GB) is over "
            f"50% of available space ({available_gb:.1f} GB)."
        )


def format_time(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    if hours:
        return f"{hours}h {minutes}m {secs:.1f}s"
    if minutes:
        return f"{minutes}m {secs:.1f}s"
    return f"{secs:.1f}s"


class VideoPipelineOrchestrator:
    """
    Drives extract -> restore frames -> probe -> reassemble for one video.

    ``state`` follows Idle, Extracting, ProcessingFrames, ProbingStreams,
    Reassembling and ends in Done or Failed. ``diagnostics`` collects the
    decisions taken during the last run (frame counts, negotiated encoders).
    Working directories are removed whether the run succeeds or not, unless
    ``keep_temp`` is set.
    """

    def __init__(
        self,
        toolchain: Toolchain,
        scheduler: BatchScheduler,
        *,
        parallelism: Optional[int] = None,
        work_root: Optional[str | Path] = None,
        keep_temp: bool = False,
        preset: str = DEFAULT_PRESET,
        crf: int = DEFAULT_CRF,
        audio_bitrate: str = DEFAULT_AUDIO_BITRATE,
        working_cap: int = DEFAULT_WORKING_CAP,
    ):
        self.toolchain = toolchain
        self.scheduler = scheduler
        self.parallelism = parallelism or default_worker_count()
        self.work_root = work_root
        self.keep_temp = keep_temp
        self.preset = preset
        self.crf = crf
        self.audio_bitrate = audio_bitrate
        self.working_cap = working_cap
        self.state = VideoStage.IDLE
        self.diagnostics: list[str] = []

    def _note(self, message: str) -> None:
        self.diagnostics.append(message)
        print(f"  {message}")

    def _frame_sizes(
        self, first_frame: Path, profile: ModelProfile
    ) -> tuple[tuple[int, int], tuple[int, int]]:
        """Return the (source, restored) frame size, both as (width, height)."""
        try:
            with Image.open(first_frame) as frame:
                width, height = frame.size
        except OSError as exc:
            raise PipelineIOError(f"Cannot read extracted frame {first_frame}: {exc}") from exc
        work_width, work_height = resolve_target_size(
            width, height, profile.minimum_dimension, self.working_cap
        )
        restored = (work_width * profile.scale_factor, work_height * profile.scale_factor)
        return (width, height), restored

    @traced
    def process_video(
        self,
        input_video: str | Path,
        profile: ModelProfile,
        output_video: Optional[str | Path] = None,
    ) -> Path:
        input_video = Path(input_video).expanduser().resolve()
        if not input_video.is_file():
            raise PipelineIOError(f"Input video not found: {input_video}")

        output_video = resolve_output_path(input_video, output_video, profile)
        if output_video == input_video:
            raise ValueError("Output video path must be different from input video path.")
        try:
            output_video.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PipelineIOError(f"Cannot create output directory {output_video.parent}: {exc}") from exc

        self.state = VideoStage.IDLE
        self.diagnostics = []
        workspace_root, should_cleanup = prepare_workspace(self.work_root, self.keep_temp)
        input_frames_dir = workspace_root / "input_frames"
        output_frames_dir = workspace_root / "restored_frames"

        print("\n" + "=" * 60)
        print("Video Restoration - ONNX")
        print("=" * 60)
        print(f"Input:   {input_video}")
        print(f"Output:  {output_video}")
        print(f"Model:   {profile.name} ({profile.scale_factor}x)")
        print(f"Workers: {self.parallelism}")
        print(f"Workspace: {workspace_root}")
        print("=" * 60 + "\n")

        total_start = time.time()
        try:
            input_frames_dir.mkdir(parents=True, exist_ok=True)
            output_frames_dir.mkdir(parents=True, exist_ok=True)

            self.state = VideoStage.EXTRACTING
            print("Extracting frames...")
            step_start = time.time()
            frame_count = extract_frames(self.toolchain.ffmpeg, input_video, input_frames_dir)
            self._note(f"Extracted {frame_count} frame(s)")
            print(f"  Time: {format_time(time.time() - step_start)}\n")

            frames = sorted(input_frames_dir.glob(INPUT_FRAME_GLOB))
            source_size, restored_size = self._frame_sizes(frames[0], profile)
            check_disk_space(workspace_root, frame_count, source_size, restored_size)

            self.state = VideoStage.PROCESSING_FRAMES
            print("Restoring frames...")
            step_start = time.time()
            results, failures = self.scheduler.run_all(
                frames,
                profile,
                output_frames_dir,
                self.parallelism,
                desc="Frames",
            )
            if failures:
                raise PartialBatchFailure(results, failures)
            self._note(f"Restored {len(results)} frame(s)")
            print(f"  Time: {format_time(time.time() - step_start)}\n")

            self.state = VideoStage.PROBING_STREAMS
            print("Analyzing source streams...")
            info = get_video_info(self.toolchain.ffprobe, input_video)
            self._note(f"Framerate: {info.framerate} fps")
            self._note(f"Audio: {info.audio_codec if info.has_audio else 'None'}")

            self.state = VideoStage.REASSEMBLING
            print("Reassembling output video...")
            step_start = time.time()
            codecs = negotiate_codecs(
                list_available_encoders(self.toolchain.ffmpeg),
                has_audio=info.has_audio,
            )
            for note in codecs.notes:
                self._note(note)

            frames_pattern = output_frames_dir / f"frame_%06d{profile.output_suffix()}.png"
            cmd = build_reassemble_command(
                self.toolchain.ffmpeg,
                frames_pattern,
                input_video,
                output_video,
                framerate=info.framerate,
                codecs=codecs,
                preset=self.preset,
                crf=self.crf,
                audio_bitrate=self.audio_bitrate,
            )
            run_tool(cmd, "Video reassembly failed")
            print(f"  Time: {format_time(time.time() - step_start)}\n")

            self.state = VideoStage.DONE
        except BaseException:
            self.state = VideoStage.FAILED
            raise
        finally:
            if should_cleanup:
                shutil.rmtree(input_frames_dir, ignore_errors=True)
                shutil.rmtree(output_frames_dir, ignore_errors=True)
                shutil.rmtree(workspace_root, ignore_errors=True)
            else:
                print(f"Workspace kept at: {workspace_root}")

        print("=" * 60)
        print("Complete!")
        print(f"Total time: {format_time(time.time() - total_start)}")
        print(f"Output: {output_video}")
        print("=" * 60 + "\n")
        return output_video


@traced
def process_video(
    input_video: str | Path,
    profile: ModelProfile,
    output_video: Optional[str | Path] = None,
    *,
    parallelism: Optional[int] = None,
    models_dir: Optional[Path] = None,
    providers: Optional[Sequence[str]] = None,
    working_cap: int = DEFAULT_WORKING_CAP,
    work_root: Optional[str | Path] = None,
    keep_temp: bool = False,
    preset: str = DEFAULT_PRESET,
    crf: int = DEFAULT_CRF,
    audio_bitrate: str = DEFAULT_AUDIO_BITRATE,
    ffmpeg_path: Optional[str] = None,
    ffprobe_path: Optional[str] = None,
) -> Path:
    """Restore every frame of a video and return the path of the rebuilt file."""
    toolchain = resolve_toolchain(ffmpeg_path, ffprobe_path)
    model_path = ensure_model_artifact(profile, models_dir)
    workers = parallelism or default_worker_count()

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="frame-worker") as executor:
        scheduler = BatchScheduler(
            make_pipeline_factory(model_path, providers=providers, working_cap=working_cap),
            executor=executor,
        )
        orchestrator = VideoPipelineOrchestrator(
            toolchain,
            scheduler,
            parallelism=workers,
            work_root=work_root,
            keep_temp=keep_temp,
            preset=preset,
            crf=crf,
            audio_bitrate=audio_bitrate,
            working_cap=working_cap,
        )
        return orchestrator.process_video(input_video, profile, output_video)
