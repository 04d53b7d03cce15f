"""Image geometry and tensor conversion: size policy, padding, normalization."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
from PIL import Image

from errors import ShapeError, SizePolicyError
from profiles import NormalizationRange, TensorLayout

DEFAULT_WORKING_CAP = 512


# ── Size policy ────────────────────────────────────────────────────────────────


def resolve_target_size(
    width: int,
    height: int,
    minimum_dimension: Optional[int] = 0,
    working_cap: int = DEFAULT_WORKING_CAP,
) -> tuple[int, int]:
    """Return the working resolution for an image of ``width`` x ``height``.

    The larger side is capped at ``working_cap`` and the smaller side raised to
    ``minimum_dimension``; both adjustments preserve aspect ratio. The cap is
    never allowed below the minimum. The side that is not pinned to the bound
    is truncated toward zero.
    """
    if width <= 0 or height <= 0:
        raise SizePolicyError(f"Invalid image dimensions: {width}x{height}")
    if working_cap <= 0:
        raise SizePolicyError(f"Working cap must be > 0 (got {working_cap})")

    minimum = minimum_dimension or 0
    cap = max(working_cap, minimum)

    if max(width, height) > cap:
        scale = cap / max(width, height)
        if width >= height:
            return cap, max(1, int(height * scale))
        return max(1, int(width * scale)), cap

    if minimum and min(width, height) < minimum:
        scale = minimum / min(width, height)
        if width <= height:
            return minimum, max(minimum, int(height * scale))
        return max(minimum, int(width * scale)), minimum

    return width, height


def resize_image(image: Image.Image, size: tuple[int, int]) -> Image.Image:
    if image.size == tuple(size):
        return image
    return image.resize(size, Image.Resampling.LANCZOS)


# ── Padding ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PaddingDescriptor:
    padded_width: int
    padded_height: int
    right_pad: int
    bottom_pad: int

    @property
    def is_padded(self) -> bool:
        return self.right_pad > 0 or self.bottom_pad > 0


def _reflect_indices(size: int, padded_size: int) -> np.ndarray:
    # Mirror about the last row/column; clamps at index 0 when the pad exceeds the image.
    idx = np.arange(padded_size)
    mirrored = size - 1 - np.minimum(idx - size, size - 1)
    return np.where(idx < size, idx, mirrored)


def pad_to_multiple(image: np.ndarray, multiple: int) -> tuple[np.ndarray, PaddingDescriptor]:
    """Pad an HxWxC array on the right and bottom so both sides divide ``multiple``."""
    height, width = int(image.shape[0]), int(image.shape[1])
    if multiple <= 1 or (width % multiple == 0 and height % multiple == 0):
        return image, PaddingDescriptor(width, height, 0, 0)

    padded_width = -(-width // multiple) * multiple
    padded_height = -(-height // multiple) * multiple

    rows = _reflect_indices(height, padded_height)
    cols = _reflect_indices(width, padded_width)
    padded = image[np.ix_(rows, cols)]

    return padded, PaddingDescriptor(
        padded_width=padded_width,
        padded_height=padded_height,
        right_pad=padded_width - width,
        bottom_pad=padded_height - height,
    )


def crop_to_size(image: np.ndarray, target_width: int, target_height: int) -> np.ndarray:
    """Top-left crop that discards the padded margin of an inference output."""
    height, width = int(image.shape[0]), int(image.shape[1])
    if target_width > width or target_height > height:
        raise ShapeError(
            f"Cannot crop {width}x{height} output to {target_width}x{target_height}"
        )
    return image[:target_height, :target_width]


# ── Tensor codec ───────────────────────────────────────────────────────────────


def to_tensor(
    image: np.ndarray,
    layout: TensorLayout,
    value_range: NormalizationRange,
) -> np.ndarray:
    """Convert an HxWx3 uint8 array to a normalized float32 batch of one."""
    if image.ndim != 3 or image.shape[2] != 3:
        raise ShapeError(f"Expected an HxWx3 image, got shape {image.shape}")

    data = image.astype(np.float32)
    if value_range is NormalizationRange.NEG_ONE_TO_ONE:
        data = data / 127.5 - 1.0
    else:
        data = data / 255.0

    if layout is TensorLayout.CHANNELS_FIRST:
        data = data.transpose(2, 0, 1)
    return np.ascontiguousarray(data[np.newaxis, ...], dtype=np.float32)


def from_tensor(
    tensor: np.ndarray,
    value_range: NormalizationRange,
    layout: TensorLayout = TensorLayout.CHANNELS_FIRST,
) -> np.ndarray:
    """Convert a model output batch back to an HxWx3 uint8 array."""
    if tensor.ndim != 4:
        raise ShapeError(f"Expected a 4-D tensor, got shape {tensor.shape}")
    if tensor.shape[0] != 1:
        raise ShapeError(f"Expected a batch of one, got shape {tensor.shape}")

    channels = tensor.shape[1] if layout is TensorLayout.CHANNELS_FIRST else tensor.shape[3]
    if channels != 3:
        raise ShapeError(
            f"Expected 3 channels in {layout.value} output, got shape {tensor.shape}"
        )

    data = tensor[0].astype(np.float32)
    if layout is TensorLayout.CHANNELS_FIRST:
        data = data.transpose(1, 2, 0)

    if value_range is NormalizationRange.NEG_ONE_TO_ONE:
        data = (data + 1.0) * 127.5
    else:
        data = data * 255.0
    return np.clip(np.rint(data), 0, 255).astype(np.uint8)
