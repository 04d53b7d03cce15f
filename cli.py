"""CLI: argument parsing, model selection, and runtime validation."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from errors import PartialBatchFailure
from imaging import DEFAULT_WORKING_CAP
from model_store import get_default_models_dir
from profiles import (
    DEFAULT_MODEL,
    MODEL_CATALOG,
    ModelKind,
    ModelProfile,
    NormalizationRange,
    TensorLayout,
    catalog_names,
    get_profile,
)
from restore_images import collect_image_paths, process_batch
from restore_video import (
    DEFAULT_AUDIO_BITRATE,
    DEFAULT_CRF,
    DEFAULT_PRESET,
    format_time,
    process_video,
)
from tracing import init_tracing, shutdown_tracing, traced

# ── Constants ──────────────────────────────────────────────────────────────────

SUPPORTED_PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
)


# ── Functions ──────────────────────────────────────────────────────────────────


def build_profile(args: argparse.Namespace) -> ModelProfile:
    """Return the catalog profile, or a custom one when --model-file is given."""
    if not args.model_file:
        return get_profile(args.model)

    model_file = Path(args.model_file).expanduser().resolve()
    return ModelProfile(
        name=model_file.stem,
        artifact_location=str(model_file),
        scale_factor=args.scale,
        window_multiple=args.window,
        tensor_layout=TensorLayout(args.layout),
        input_range=NormalizationRange(args.input_range),
        output_range=NormalizationRange(args.output_range),
        minimum_dimension=args.min_dim or None,
        kind=ModelKind(args.kind),
        description="Custom model",
        category="Custom",
    )


def validate_runtime_args(args: argparse.Namespace) -> None:
    if args.command == "models":
        return
    if args.working_cap <= 0:
        raise ValueError("Working cap must be > 0.")
    if args.jobs is not None and args.jobs < 1:
        raise ValueError("Jobs must be >= 1.")
    if args.model_file:
        if args.scale < 1:
            raise ValueError("Scale must be >= 1.")
        if args.window < 1:
            raise ValueError("Window multiple must be >= 1.")
        if args.min_dim < 0:
            raise ValueError("Minimum dimension must be >= 0.")
    if args.command == "video" and (args.crf < 0 or args.crf > 51):
        raise ValueError("CRF must be between 0 and 51.")


def _add_model_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-m",
        "--model",
        type=str,
        default=DEFAULT_MODEL,
        choices=catalog_names(),
        metavar="MODEL",
        help="Catalog model name (see the 'models' command)",
    )
    parser.add_argument(
        "--model-file",
        type=str,
        default=None,
        help="Local ONNX file to use instead of a catalog model",
    )
    parser.add_argument("--scale", type=int, default=4, help="Scale factor of --model-file")
    parser.add_argument(
        "--window",
        type=int,
        default=1,
        help="Spatial multiple required by --model-file (1 = none)",
    )
    parser.add_argument(
        "--layout",
        type=str,
        choices=[layout.value for layout in TensorLayout],
        default=TensorLayout.CHANNELS_FIRST.value,
        help="Tensor layout of --model-file",
    )
    parser.add_argument(
        "--input-range",
        type=str,
        choices=[value.value for value in NormalizationRange],
        default=NormalizationRange.ZERO_TO_ONE.value,
        help="Input value range of --model-file",
    )
    parser.add_argument(
        "--output-range",
        type=str,
        choices=[value.value for value in NormalizationRange],
        default=NormalizationRange.ZERO_TO_ONE.value,
        help="Output value range of --model-file",
    )
    parser.add_argument(
        "--min-dim",
        type=int,
        default=0,
        help="Minimum spatial size accepted by --model-file (0 = none)",
    )
    parser.add_argument(
        "--kind",
        type=str,
        choices=[kind.value for kind in ModelKind],
        default=ModelKind.UPSCALING.value,
        help="Model kind of --model-file (controls the output suffix)",
    )
    parser.add_argument(
        "--models-dir",
        type=str,
        default=str(get_default_models_dir()),
        help="Directory where downloaded models are cached",
    )
    parser.add_argument(
        "--provider",
        dest="providers",
        action="append",
        default=None,
        help="ONNX Runtime execution provider (repeatable; default: auto)",
    )
    parser.add_argument(
        "--working-cap",
        type=int,
        default=DEFAULT_WORKING_CAP,
        help="Largest side fed to the model; bigger inputs are downscaled",
    )
    parser.add_argument(
        "--otlp-endpoint",
        type=str,
        default=None,
        help="Export OpenTelemetry spans to this OTLP/HTTP endpoint",
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="onnx-restore",
        description="Restore or upscale images and videos with ONNX models",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    images = subparsers.add_parser(
        "images",
        help="Restore image files or folders of images",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    images.add_argument("inputs", nargs="+", help="Image files or folders")
    images.add_argument(
        "-o",
        "--output-dir",
        type=str,
        default="restored",
        help="Directory for restored PNG files",
    )
    images.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=1,
        help="Parallel workers (1 keeps input order)",
    )
    _add_model_arguments(images)

    video = subparsers.add_parser(
        "video",
        help="Restore every frame of a video and rebuild it with the original audio",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    video.add_argument("input_video", type=str, help="Path to input video")
    video.add_argument(
        "-o",
        "--output",
        type=str,
        default=None,
        help="Output video path (default: <input><suffix>.mp4)",
    )
    video.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=None,
        help="Parallel frame workers (default: CPU count clamped to 2-8)",
    )
    video.add_argument("--crf", type=int, default=DEFAULT_CRF, help="x264 CRF (0-51)")
    video.add_argument(
        "--preset",
        type=str,
        default=DEFAULT_PRESET,
        choices=SUPPORTED_PRESETS,
        help="x264 preset",
    )
    video.add_argument(
        "--audio-bitrate",
        type=str,
        default=DEFAULT_AUDIO_BITRATE,
        help="Audio bitrate when audio is re-encoded",
    )
    video.add_argument(
        "--work-dir",
        type=str,
        default=None,
        help="Parent directory for temporary frame workspaces",
    )
    video.add_argument("--keep-temp", action="store_true", help="Keep temporary workspace")
    video.add_argument("--ffmpeg-path", type=str, default=None, help="Custom ffmpeg binary")
    video.add_argument("--ffprobe-path", type=str, default=None, help="Custom ffprobe binary")
    _add_model_arguments(video)

    subparsers.add_parser("models", help="List the built-in model catalog")

    return parser.parse_args(argv)


def print_catalog() -> None:
    for profile in MODEL_CATALOG:
        print(f"{profile.name:<42} {profile.display_name()}")


def run_images(args: argparse.Namespace) -> int:
    profile = build_profile(args)
    paths = collect_image_paths(args.inputs)
    if not paths:
        raise ValueError("No input images found.")

    output_dir = Path(args.output_dir).expanduser().resolve()
    print(f"Model:  {profile.display_name()}")
    print(f"Images: {len(paths)}")
    print(f"Output: {output_dir}\n")

    results, failures = process_batch(
        paths,
        profile,
        output_dir,
        parallelism=args.jobs,
        models_dir=Path(args.models_dir),
        providers=args.providers,
        working_cap=args.working_cap,
    )

    for result in results:
        print(
            f"{result.source_path.name}: {result.input_size[0]}x{result.input_size[1]} -> "
            f"{result.output_size[0]}x{result.output_size[1]} "
            f"in {format_time(result.elapsed_seconds)} ({result.output_path})"
        )
    for failure in failures:
        print(f"Failed: {failure.describe()}", file=sys.stderr)
    print(f"\nRestored {len(results)} of {len(paths)} image(s).")
    return 1 if failures else 0


def run_video(args: argparse.Namespace) -> int:
    profile = build_profile(args)
    try:
        process_video(
            args.input_video,
            profile,
            args.output,
            parallelism=args.jobs,
            models_dir=Path(args.models_dir),
            providers=args.providers,
            working_cap=args.working_cap,
            work_root=args.work_dir,
            keep_temp=args.keep_temp,
            preset=args.preset,
            crf=args.crf,
            audio_bitrate=args.audio_bitrate,
            ffmpeg_path=args.ffmpeg_path,
            ffprobe_path=args.ffprobe_path,
        )
    except PartialBatchFailure as exc:
        for failure in exc.failures:
            print(f"Failed: {failure.describe()}", file=sys.stderr)
        raise
    return 0


@traced
def run_command(args: argparse.Namespace) -> int:
    if args.command == "models":
        print_catalog()
        return 0
    if args.command == "images":
        return run_images(args)
    return run_video(args)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    if getattr(args, "otlp_endpoint", None):
        init_tracing(args.otlp_endpoint)
    try:
        validate_runtime_args(args)
        return run_command(args)
    except KeyboardInterrupt:
        print("Interrupted by user.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        shutdown_tracing()


if __name__ == "__main__":
    raise SystemExit(main())
