"""Model profiles: the geometry and normalization contract of each ONNX model."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


class TensorLayout(str, enum.Enum):
    CHANNELS_FIRST = "nchw"
    CHANNELS_LAST = "nhwc"


class NormalizationRange(str, enum.Enum):
    ZERO_TO_ONE = "zero-to-one"
    NEG_ONE_TO_ONE = "neg-one-to-one"


class ModelKind(str, enum.Enum):
    UPSCALING = "upscaling"
    DENOISING = "denoising"
    ENHANCEMENT = "enhancement"


@dataclass(frozen=True)
class ModelProfile:
    name: str
    artifact_location: str
    scale_factor: int = 1
    window_multiple: int = 1
    tensor_layout: TensorLayout = TensorLayout.CHANNELS_FIRST
    input_range: NormalizationRange = NormalizationRange.ZERO_TO_ONE
    output_range: NormalizationRange = NormalizationRange.ZERO_TO_ONE
    minimum_dimension: Optional[int] = None
    kind: ModelKind = ModelKind.UPSCALING
    description: str = ""
    category: str = ""

    def __post_init__(self) -> None:
        if self.scale_factor < 1:
            raise ValueError(f"scale_factor must be >= 1 (got {self.scale_factor}).")
        if self.window_multiple < 1:
            raise ValueError(f"window_multiple must be >= 1 (got {self.window_multiple}).")
        if self.minimum_dimension is not None and self.minimum_dimension < 0:
            raise ValueError(
                f"minimum_dimension must be >= 0 (got {self.minimum_dimension})."
            )

    def output_suffix(self) -> str:
        """Filename suffix appended to the input stem for this model's outputs."""
        if self.kind in (ModelKind.UPSCALING, ModelKind.ENHANCEMENT) and self.scale_factor > 1:
            return f"_{self.scale_factor}x"
        if self.kind is ModelKind.DENOISING:
            return "_denoised"
        return "_enhanced"

    def display_name(self) -> str:
        if self.kind is ModelKind.UPSCALING:
            return f"{self.category} - {self.description} ({self.scale_factor}x)"
        return f"{self.category} - {self.description}"


# ── Catalog ───────────────────────────────────────────────────────────────────

_XENOVA_BASE = "https://huggingface.co/Xenova"
_AMUSE_BASE = "https://huggingface.co/TensorStack/Upscale-amuse/resolve/main"


def _catalog_entry(
    name: str,
    url: str,
    kind: ModelKind,
    scale: int,
    window: int,
    description: str,
    category: str,
) -> ModelProfile:
    return ModelProfile(
        name=name,
        artifact_location=url,
        scale_factor=scale,
        window_multiple=window,
        kind=kind,
        description=description,
        category=category,
    )


MODEL_CATALOG: tuple[ModelProfile, ...] = (
    _catalog_entry(
        "swin2SR-realworld-sr-x4-64-bsrgan-psnr",
        f"{_XENOVA_BASE}/swin2SR-realworld-sr-x4-64-bsrgan-psnr/resolve/main/onnx/model.onnx",
        ModelKind.UPSCALING, 4, 8, "Real-world photos (4x)", "Swin2SR",
    ),
    _catalog_entry(
        "swin2SR-classical-sr-x4-64",
        f"{_XENOVA_BASE}/swin2SR-classical-sr-x4-64/resolve/main/onnx/model.onnx",
        ModelKind.UPSCALING, 4, 8, "Clean images (4x)", "Swin2SR",
    ),
    _catalog_entry(
        "swin2SR-lightweight-x2-64",
        f"{_XENOVA_BASE}/swin2SR-lightweight-x2-64/resolve/main/onnx/model.onnx",
        ModelKind.UPSCALING, 2, 8, "Lightweight (2x)", "Swin2SR",
    ),
    _catalog_entry(
        "swin2SR-compressed-sr-x4-48",
        f"{_XENOVA_BASE}/swin2SR-compressed-sr-x4-48/resolve/main/onnx/model.onnx",
        ModelKind.UPSCALING, 4, 8, "Compressed/JPEG (4x)", "Swin2SR",
    ),
    _catalog_entry(
        "2x_APISR_RRDB_GAN_generator",
        f"{_XENOVA_BASE}/2x_APISR_RRDB_GAN_generator-onnx/resolve/main/onnx/model.onnx",
        ModelKind.UPSCALING, 2, 1, "APISR GAN (2x) Anime", "APISR",
    ),
    _catalog_entry(
        "4x_APISR_GRL_GAN_generator",
        f"{_XENOVA_BASE}/4x_APISR_GRL_GAN_generator-onnx/resolve/main/onnx/model.onnx",
        ModelKind.UPSCALING, 4, 1, "APISR GAN (4x) Anime", "APISR",
    ),
    _catalog_entry(
        "SwinIR-Noise",
        f"{_AMUSE_BASE}/SwinIR-Noise/model.onnx",
        ModelKind.DENOISING, 1, 8, "Noise reduction", "SwinIR",
    ),
    _catalog_entry(
        "SwinIR-BSRGAN-4x",
        f"{_AMUSE_BASE}/SwinIR-BSRGAN-4x/model.onnx",
        ModelKind.ENHANCEMENT, 4, 8, "Real degradations (4x)", "SwinIR",
    ),
    _catalog_entry(
        "BSRGAN-2x",
        f"{_AMUSE_BASE}/BSRGAN-2x/model.onnx",
        ModelKind.ENHANCEMENT, 2, 1, "Blind SR (2x)", "BSRGAN",
    ),
    _catalog_entry(
        "RealESRGAN-2x",
        f"{_AMUSE_BASE}/RealESRGAN-2x/model.onnx",
        ModelKind.ENHANCEMENT, 2, 1, "Real-world SR (2x)", "RealESRGAN",
    ),
    _catalog_entry(
        "RealESRGAN-4x",
        f"{_AMUSE_BASE}/RealESRGAN-4x/model.onnx",
        ModelKind.ENHANCEMENT, 4, 1, "Real-world SR (4x)", "RealESRGAN",
    ),
    _catalog_entry(
        "RealESR-General-4x",
        f"{_AMUSE_BASE}/RealESR-General-4x/model.onnx",
        ModelKind.ENHANCEMENT, 4, 1, "General purpose (4x)", "RealESRGAN",
    ),
    _catalog_entry(
        "Swin2SR-Classical-2x",
        f"{_AMUSE_BASE}/Swin2SR-Classical-2x/model.onnx",
        ModelKind.UPSCALING, 2, 8, "Classical SR (2x)", "Swin2SR-TS",
    ),
    _catalog_entry(
        "Swin2SR-Classical-4x",
        f"{_AMUSE_BASE}/Swin2SR-Classical-4x/model.onnx",
        ModelKind.UPSCALING, 4, 8, "Classical SR (4x)", "Swin2SR-TS",
    ),
    _catalog_entry(
        "UltraSharp-4x",
        f"{_AMUSE_BASE}/UltraSharp-4x/model.onnx",
        ModelKind.ENHANCEMENT, 4, 1, "Ultra sharp details (4x)", "Custom",
    ),
    _catalog_entry(
        "UltraMix-Smooth-4x",
        f"{_AMUSE_BASE}/UltraMix-Smooth-4x/model.onnx",
        ModelKind.ENHANCEMENT, 4, 1, "Ultra smooth details (4x)", "Custom",
    ),
)

DEFAULT_MODEL = "RealESRGAN-4x"


def catalog_names() -> list[str]:
    return [profile.name for profile in MODEL_CATALOG]


def get_profile(name: str) -> ModelProfile:
    """Look up a catalog profile by name (case-insensitive)."""
    wanted = name.lower()
    for profile in MODEL_CATALOG:
        if profile.name.lower() == wanted:
            return profile
    raise ValueError(f"Unknown model: {name}. Available: {', '.join(catalog_names())}")
