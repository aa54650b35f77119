"""Image preprocessing pipeline.

Decodes uploaded bytes with Pillow, applies EXIF orientation, center-crops
to the model's aspect ratio, resizes, normalizes, and adapts the channel
count to build an NHWC float32 tensor.
"""

from __future__ import annotations

import io
import math
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from capsulescan.ml.errors import ImageDecodeError, ShapeMismatchError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from capsulescan.ml.model_manager import TensorSpec

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)


class NormalizationMode(StrEnum):
    """Pixel value range the model was trained on."""

    UNIT = "unit"  # [0, 1]
    SIGNED = "signed"  # [-1, 1]


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def center_crop_box(src_width: int, src_height: int, target_width: int, target_height: int) -> tuple[int, int, int, int]:
    """Return ``(x, y, width, height)`` of the centered crop matching the target aspect ratio."""
    target_aspect = target_width / target_height
    src_aspect = src_width / src_height

    crop_width = float(src_width)
    crop_height = float(src_height)
    if src_aspect > target_aspect:
        crop_width = src_height * target_aspect
    elif src_aspect < target_aspect:
        crop_height = src_width / target_aspect

    x = _round_half_up((src_width - crop_width) / 2)
    y = _round_half_up((src_height - crop_height) / 2)
    width = max(1, min(_round_half_up(crop_width), src_width - x))
    height = max(1, min(_round_half_up(crop_height), src_height - y))
    return x, y, width, height


class ImagePreprocessor:
    """Turns image bytes into a model input tensor."""

    def __init__(
        self,
        normalization: NormalizationMode = NormalizationMode.UNIT,
        max_image_pixels: int = 16_777_216,
    ) -> None:
        self.normalization = NormalizationMode(normalization)
        self.max_image_pixels = max_image_pixels

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an upright RGB uint8 numpy array.

        Args:
            image_bytes: Raw file bytes (any format Pillow can read).

        Returns:
            HxWx3 RGB uint8 numpy array with EXIF orientation applied.

        Raises:
            ImageDecodeError: If the image cannot be decoded or exceeds size limits.
        """
        if not image_bytes:
            raise ImageDecodeError("Empty image data")

        try:
            image = Image.open(io.BytesIO(image_bytes))
            width, height = image.size
            if width * height > self.max_image_pixels:
                raise ImageDecodeError(f"Image is {width}x{height}, above the {self.max_image_pixels} pixel limit")
            image.load()
            upright = ImageOps.exif_transpose(image)
            return np.asarray(upright.convert("RGB"), dtype=np.uint8)
        except ImageDecodeError:
            raise
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            raise ImageDecodeError(f"Cannot decode image: {exc}") from exc

    def crop_and_resize(self, frame: NDArray[np.uint8], width: int, height: int) -> NDArray[np.uint8]:
        """Center-crop ``frame`` to the target aspect ratio and resize it bilinearly."""
        src_height, src_width = frame.shape[:2]
        x, y, crop_width, crop_height = center_crop_box(src_width, src_height, width, height)
        cropped = Image.fromarray(frame[y : y + crop_height, x : x + crop_width])
        resized = cropped.resize((width, height), Image.Resampling.BILINEAR)
        return np.asarray(resized, dtype=np.uint8)

    def normalize(self, pixels: NDArray[np.uint8]) -> NDArray[np.float32]:
        values = pixels.astype(np.float32) / 255.0
        if self.normalization is NormalizationMode.SIGNED:
            values = (values - 0.5) * 2.0
        return values

    def to_tensor(self, frame: NDArray[np.uint8], spec: TensorSpec) -> NDArray[np.float32]:
        """Build a ``[1, H, W, C]`` float32 tensor from an RGB frame.

        Raises:
            ShapeMismatchError: If the declared channel count is neither 1 nor 3.
        """
        _, height, width, channels = spec.shape
        if channels not in (1, 3):
            raise ShapeMismatchError(f"Unsupported input channel count {channels}; expected 1 or 3")

        values = self.normalize(self.crop_and_resize(frame, width, height))
        if channels == 1:
            values = (values @ LUMA_WEIGHTS)[..., np.newaxis]
        return values[np.newaxis, ...].astype(np.float32, copy=False)

    def preprocess(self, image_bytes: bytes, spec: TensorSpec) -> NDArray[np.float32]:
        """Decode ``image_bytes`` and convert it to the tensor described by ``spec``."""
        return self.to_tensor(self.decode_image(image_bytes), spec)
