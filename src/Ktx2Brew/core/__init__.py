"""Core utilities -- re-exports all public symbols for convenience."""

from .errors import (
    Ktx2BrewError,
    DecodeError,
    InitializationError,
    EncodeError,
    ResizeError,
    ContextUnavailable,
    TextureTimeoutError,
    SessionReleasedError,
    TEXTURE_ERRORS,
)
from .raster import (
    RasterImage,
    ensure_pot,
    is_pot,
    fit_to_box,
    target_dimensions,
    decode_image,
)
from .records import (
    TextureOutcome,
    BatchReport,
    format_bytes,
    format_size_change,
)
from .paths import is_data_uri, rewrite_texture_uri, uri_basename
from .logging import setup_logging

__all__ = [
    "Ktx2BrewError", "DecodeError", "InitializationError", "EncodeError",
    "ResizeError", "ContextUnavailable", "TextureTimeoutError", "SessionReleasedError",
    "TEXTURE_ERRORS",
    "RasterImage", "ensure_pot", "is_pot", "fit_to_box", "target_dimensions",
    "decode_image",
    "TextureOutcome", "BatchReport", "format_bytes", "format_size_change",
    "is_data_uri", "rewrite_texture_uri", "uri_basename",
    "setup_logging",
]
