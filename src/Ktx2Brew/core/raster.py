"""Raster helpers -- RGBA8 image container, POT sizing, and decoding."""

import io
import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import DecodeError

# Pixel-count limits are enforced per call in decode_image().
Image.MAX_IMAGE_PIXELS = None

logger = logging.getLogger("ktx2_pipeline")

BYTES_PER_TEXEL = 4

ImageDecoder = Callable[[bytes], Tuple[int, int, bytes]]


@dataclass(frozen=True)
class RasterImage:
    """Decoded RGBA8 raster: R,G,B,A per texel, top-left origin, row-major."""

    width: int
    height: int
    pixels: bytes

    def __post_init__(self) -> None:
        if self.width < 1 or self.height < 1:
            raise ValueError(
                f"Raster dimensions must be positive, got {self.width}x{self.height}"
            )
        expected = self.width * self.height * BYTES_PER_TEXEL
        if len(self.pixels) != expected:
            raise ValueError(
                f"Raster buffer holds {len(self.pixels)} bytes, "
                f"expected {expected} for {self.width}x{self.height} RGBA8"
            )

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "RasterImage":
        """Build a raster from an ``(H, W, 4)`` uint8 array."""
        if arr.ndim != 3 or arr.shape[2] != BYTES_PER_TEXEL:
            raise ValueError(f"Expected (H, W, 4) array, got shape {arr.shape}")
        arr = np.ascontiguousarray(arr, dtype=np.uint8)
        return cls(width=int(arr.shape[1]), height=int(arr.shape[0]), pixels=arr.tobytes())

    def to_array(self) -> np.ndarray:
        """Return a read-only ``(H, W, 4)`` uint8 view of the pixels."""
        return np.frombuffer(self.pixels, dtype=np.uint8).reshape(
            self.height, self.width, BYTES_PER_TEXEL
        )


def ensure_pot(value: float) -> int:
    """Return the smallest power of two >= value (512 -> 512, 513 -> 1024).

    Values below 1 clamp to 1.
    """
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"Dimension must be a positive finite number, got {value!r}")
    if value <= 1:
        return 1
    return 2 ** math.ceil(math.log2(value))


def is_pot(value: int) -> bool:
    return value > 0 and (value & (value - 1)) == 0


def fit_to_box(original_width: int, original_height: int,
               box_width: float, box_height: float) -> Tuple[float, float]:
    """Shrink or grow the box to the source aspect ratio (before POT rounding)."""
    if original_width <= 0 or original_height <= 0:
        raise ValueError(
            f"Source dimensions must be positive, got {original_width}x{original_height}"
        )
    if box_width <= 0 or box_height <= 0:
        raise ValueError(f"Target box must be positive, got {box_width}x{box_height}")
    aspect = original_width / original_height
    width, height = float(box_width), float(box_height)
    if width / height > aspect:
        width = height * aspect
    else:
        height = width / aspect
    return width, height


def target_dimensions(original_width: int, original_height: int,
                      box: Tuple[float, float]) -> Tuple[int, int]:
    """Return the POT output size for a source image bounded by ``box``."""
    width, height = fit_to_box(original_width, original_height, box[0], box[1])
    return ensure_pot(width), ensure_pot(height)


def decode_image(data: bytes, max_pixels: int = 0,
                 decoder: Optional[ImageDecoder] = None) -> RasterImage:
    """Decode a compressed image buffer (PNG, JPEG, ...) to RGBA8."""
    if not data:
        raise DecodeError("Image buffer is empty")

    if decoder is not None:
        try:
            width, height, pixels = decoder(bytes(data))
            raster = RasterImage(int(width), int(height), bytes(pixels))
        except DecodeError:
            raise
        except Exception as exc:
            raise DecodeError(f"Custom image decoder failed: {exc}") from exc
        _check_pixel_budget(raster.width, raster.height, max_pixels)
        return raster

    try:
        with Image.open(io.BytesIO(data)) as img:
            _check_pixel_budget(img.width, img.height, max_pixels)
            logger.debug(
                "Decoding %s image %dx%d (mode=%s)",
                img.format, img.width, img.height, img.mode,
            )
            rgba = img.convert("RGBA")
            arr = np.asarray(rgba, dtype=np.uint8)
    except DecodeError:
        raise
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as exc:
        raise DecodeError(f"Unsupported or corrupt image data: {exc}") from exc
    return RasterImage.from_array(arr)


def _check_pixel_budget(width: int, height: int, max_pixels: int) -> None:
    if max_pixels > 0 and width * height > max_pixels:
        raise DecodeError(
            f"Image too large: {width}x{height} = {width * height:,} pixels "
            f"(max {max_pixels:,}). Resize input or increase max_image_pixels."
        )
