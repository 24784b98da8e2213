"""Provide package metadata and shared paths for `Ktx2Brew`."""

import logging as _logging
import os as _os
from pathlib import Path as _Path

__version__ = "0.3.0"
_logger = _logging.getLogger("ktx2_pipeline")


def _bin_dir_candidates():
    env = _os.environ.get("KTX2BREW_BIN_DIR")
    if env:
        yield _Path(env).expanduser()

    pkg_dir = _Path(__file__).resolve().parent
    # Wheel/package-data layout (if bundled).
    yield pkg_dir / "bin"
    # Editable/repo layout: src/Ktx2Brew -> project_root/bin.
    yield pkg_dir.parent.parent / "bin"
    yield _Path.cwd() / "bin"


def _resolve_bin_dir() -> _Path:
    seen = []
    for candidate in _bin_dir_candidates():
        seen.append(str(candidate))
        if candidate.is_dir():
            return candidate
    fallback = _Path(__file__).resolve().parent / "bin"
    _logger.debug(
        "No bundled tool directory found (checked: %s). Falling back to %s.",
        ", ".join(seen),
        fallback,
    )
    return fallback


BIN_DIR = _resolve_bin_dir()


def make_texture_compression_step(config=None, **kwargs):
    """Return the named, document-mutating texture compression step."""
    from .pipeline import make_texture_compression_step as _make
    return _make(config, **kwargs)


__all__ = ["__version__", "BIN_DIR", "make_texture_compression_step"]
