"""Decode and normalize textures to power-of-two RGBA8 rasters.

The resample itself is delegated to a resize context so the same contract is
served on headless hosts (OpenCV on the CPU) and on CUDA machines (torch).
"""

import logging
from typing import Optional, Protocol, Tuple

import cv2
import numpy as np

from ..core.errors import ContextUnavailable, ResizeError
from ..core.raster import ImageDecoder, RasterImage, decode_image, target_dimensions

logger = logging.getLogger("ktx2_pipeline.normalize")


class ResizeContext(Protocol):
    """Resamples an RGBA8 raster to exact output dimensions."""

    name: str

    def resize(self, raster: RasterImage, width: int, height: int) -> RasterImage: ...

    def close(self) -> None: ...


class CpuResizeContext:
    """OpenCV resampling: area filter when shrinking, bilinear when enlarging."""

    name = "cpu"

    def resize(self, raster: RasterImage, width: int, height: int) -> RasterImage:
        if (raster.width, raster.height) == (width, height):
            return raster
        src = raster.to_array().copy()
        shrinking = width <= raster.width and height <= raster.height
        interp = cv2.INTER_AREA if shrinking else cv2.INTER_LINEAR
        # Progressive downsample to avoid aliasing on large jumps
        curr_w, curr_h = raster.width, raster.height
        while shrinking and (curr_w > width * 2 or curr_h > height * 2):
            next_w = max(curr_w // 2, width)
            next_h = max(curr_h // 2, height)
            src = cv2.resize(src, (next_w, next_h), interpolation=interp)
            curr_w, curr_h = next_w, next_h
        resized = cv2.resize(src, (width, height), interpolation=interp)
        if resized.ndim == 2:
            resized = resized[:, :, None]
        return RasterImage.from_array(resized)

    def close(self) -> None:
        pass


def _parse_device_id(device: str) -> int:
    if ":" in device:
        try:
            return int(device.split(":", 1)[1])
        except ValueError:
            logger.warning("Could not parse CUDA device index from %s; using 0.", device)
    return 0


class GpuResizeContext:
    """torch bilinear resampling on a CUDA device.

    Device tensors live only for one `resize` call and are freed on every
    exit path.
    """

    name = "cuda"

    def __init__(self, device: str = "cuda"):
        try:
            import torch
            import torch.nn.functional as F
        except ImportError as exc:
            raise ContextUnavailable(
                "GPU resize requires torch (pip install 'Ktx2Brew[gpu]')"
            ) from exc
        try:
            available = torch.cuda.is_available()
        except Exception as exc:
            raise ContextUnavailable(f"CUDA query failed: {exc}") from exc
        if not available:
            raise ContextUnavailable("No CUDA device is available for GPU resize")

        device_id = _parse_device_id(device)
        count = int(torch.cuda.device_count())
        if device_id >= count:
            logger.warning(
                "Requested CUDA device %d is out of range (available: 0..%d). "
                "Falling back to cuda:0", device_id, count - 1,
            )
            device_id = 0
        self._torch = torch
        self._F = F
        self.device = torch.device(f"cuda:{device_id}")
        self.name = f"cuda:{device_id}"
        self._closed = False

    def resize(self, raster: RasterImage, width: int, height: int) -> RasterImage:
        if self._closed:
            raise ContextUnavailable("GPU resize context has been closed")
        torch = self._torch
        src = dst = None
        try:
            with torch.no_grad():
                host = torch.from_numpy(raster.to_array().copy())
                src = host.to(self.device).permute(2, 0, 1).unsqueeze(0).float()
                shrinking = width < raster.width or height < raster.height
                dst = self._F.interpolate(
                    src, size=(height, width), mode="bilinear",
                    align_corners=False, antialias=shrinking,
                )
                dst = dst.round_().clamp_(0, 255).to(torch.uint8)
                pixels = dst.squeeze(0).permute(1, 2, 0).contiguous().cpu().numpy()
        finally:
            del src, dst
            torch.cuda.empty_cache()
        return RasterImage.from_array(pixels)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._torch.cuda.empty_cache()


def create_resize_context(device: str = "auto") -> ResizeContext:
    """Return a resize context for ``auto``, ``cpu``, ``cuda`` or ``cuda:N``."""
    device = str(device or "auto").strip().lower()
    if device == "cpu":
        return CpuResizeContext()
    if device.startswith("cuda"):
        return GpuResizeContext(device)
    if device != "auto":
        raise ValueError(f"Unknown resize device '{device}'")
    try:
        return GpuResizeContext("cuda")
    except ContextUnavailable as exc:
        logger.debug("GPU resize unavailable (%s); using CPU resampling.", exc)
        return CpuResizeContext()


class RasterNormalizer:
    """Decode image bytes and resize them to POT dimensions inside a box."""

    def __init__(self, context: Optional[ResizeContext] = None, max_image_pixels: int = 0,
                 image_decoder: Optional[ImageDecoder] = None):
        self.context = context or CpuResizeContext()
        self.max_image_pixels = max_image_pixels
        self.image_decoder = image_decoder

    def normalize(self, compressed_image: bytes, target_box: Tuple[int, int]) -> RasterImage:
        decoded = decode_image(
            compressed_image, max_pixels=self.max_image_pixels, decoder=self.image_decoder,
        )
        width, height = target_dimensions(decoded.width, decoded.height, tuple(target_box))
        logger.debug(
            "Normalizing %dx%d -> %dx%d (box %s, context %s)",
            decoded.width, decoded.height, width, height,
            "x".join(str(v) for v in target_box), self.context.name,
        )
        try:
            return self.context.resize(decoded, width, height)
        except ContextUnavailable:
            raise
        except Exception as exc:
            raise ResizeError(
                f"{self.context.name} resize to {width}x{height} failed: {exc}"
            ) from exc

    def close(self) -> None:
        self.context.close()


def normalize(compressed_image: bytes, target_box: Tuple[int, int],
              context: Optional[ResizeContext] = None) -> RasterImage:
    """One-shot `RasterNormalizer.normalize` with a CPU context by default."""
    return RasterNormalizer(context).normalize(compressed_image, target_box)
