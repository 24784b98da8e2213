"""Encoder session lifecycle.

A session owns one initialized codec engine configured from one frozen
`EncodeOptions`. Sessions are created explicitly, shared by every texture of
a batch, and released on every exit path.
"""

import copy
import logging
import threading
from typing import Callable, Optional

from ..config import EncodeOptions
from ..core.errors import InitializationError, SessionReleasedError
from .basisu import BasisEngine, BasisTextureType, BasisuCliEngine, SourceType

logger = logging.getLogger("ktx2_pipeline.session")

EngineFactory = Callable[[], BasisEngine]

# Format selection first; the engine snapshots it on every encode.
_FORMAT_SETTERS = (
    ("uastc", "set_uastc"),
    ("ktx2", "set_create_ktx2_file"),
)
_OPTION_SETTERS = (
    ("debug", "set_debug"),
    ("srgb_transfer_func", "set_ktx2_srgb_transfer_func"),
    ("perceptual", "set_perceptual"),
    ("generate_mipmaps", "set_mip_gen"),
    ("y_flip", "set_y_flip"),
    ("quality_level", "set_quality_level"),
    ("compression_level", "set_compression_level"),
    ("supercompression", "set_ktx2_uastc_supercompression"),
    ("normal_map", "set_normal_map"),
    ("rdo_uastc", "set_rdo_uastc"),
    ("rdo_uastc_quality_scalar", "set_rdo_uastc_quality_scalar"),
    ("rdo_uastc_dict_size", "set_rdo_uastc_dict_size"),
    ("max_endpoint_clusters", "set_max_endpoint_clusters"),
    ("max_selector_clusters", "set_max_selector_clusters"),
    ("endpoint_rdo_thresh", "set_endpoint_rdo_thresh"),
    ("selector_rdo_thresh", "set_selector_rdo_thresh"),
)


def default_engine_factory() -> BasisEngine:
    return BasisuCliEngine()


def apply_options(engine: BasisEngine, options: EncodeOptions) -> None:
    """Push every set option into the engine; ``None`` keeps the engine default."""
    for attr, setter in _FORMAT_SETTERS + _OPTION_SETTERS:
        value = getattr(options, attr)
        if value is None:
            continue
        getattr(engine, setter)(value)
    engine.set_tex_type(BasisTextureType.TYPE_2D)


class EncoderSession:
    """Initialized engine plus the options it was configured with."""

    def __init__(self, engine: BasisEngine, options: EncodeOptions):
        self._engine = engine
        self._options = options
        self._lock = threading.Lock()
        self._released = False
        self._abandoned = False

    @property
    def options(self) -> EncodeOptions:
        """A copy of the options the session was configured with."""
        return copy.deepcopy(self._options)

    @property
    def released(self) -> bool:
        return self._released or self._abandoned

    @property
    def engine(self) -> BasisEngine:
        self._check_alive()
        return self._engine

    def _check_alive(self) -> None:
        if self._released or self._abandoned:
            raise SessionReleasedError("Encoder session has been released")

    def set_source(self, buffer: bytes, width: int, height: int,
                   source_type: SourceType = SourceType.RAW) -> None:
        with self._lock:
            self._check_alive()
            self._engine.set_slice_source_image(0, buffer, width, height, source_type)

    def encode(self, output: bytearray) -> int:
        with self._lock:
            self._check_alive()
            try:
                return int(self._engine.encode(output))
            finally:
                if self._abandoned:
                    self._release_engine()

    def required_capacity(self) -> Optional[int]:
        with self._lock:
            self._check_alive()
            getter = getattr(self._engine, "required_capacity", None)
            return getter() if getter is not None else None

    def release(self) -> None:
        """Delete the engine's native resources. Safe to call repeatedly.

        An abandoned session is left to `abandon`, which releases it once the
        in-flight encode returns; this call never waits on that encode.
        """
        if self._abandoned:
            return
        with self._lock:
            self._release_engine()

    def abandon(self) -> None:
        """Release now, or as soon as an in-flight encode returns."""
        self._abandoned = True
        if self._lock.acquire(blocking=False):
            try:
                self._release_engine()
            finally:
                self._lock.release()
        else:
            logger.warning("Encoder session busy; it will be released when encode returns.")

    def _release_engine(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self._engine.delete()
        except Exception as exc:
            logger.warning("Encoder engine release failed: %s", exc)
        logger.debug("Encoder session released.")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


def create_session(options=None,
                   engine_factory: Optional[EngineFactory] = None) -> EncoderSession:
    """Initialize an engine and configure it once from ``options``.

    ``options`` may be an `EncodeOptions`, a partial mapping, or None.
    """
    merged = EncodeOptions.merged(options)
    factory = engine_factory or default_engine_factory
    try:
        engine = factory()
        engine.initialize()
    except InitializationError:
        raise
    except Exception as exc:
        raise InitializationError(f"Codec engine failed to initialize: {exc}") from exc

    try:
        apply_options(engine, merged)
    except Exception as exc:
        try:
            engine.delete()
        except Exception as cleanup_exc:
            logger.debug("Engine cleanup after configuration failure failed: %s", cleanup_exc)
        raise InitializationError(f"Codec engine rejected encode options: {exc}") from exc

    logger.info(
        "Encoder session ready (%s, %s, mipmaps=%s, supercompression=%s)",
        "UASTC" if merged.uastc else f"ETC1S q={merged.quality_level}",
        "KTX2" if merged.ktx2 else "basis",
        merged.generate_mipmaps, merged.supercompression,
    )
    return EncoderSession(engine, merged)


class SessionManager:
    """Caches one session for long-lived hosts.

    `acquire` hands back the cached session while the requested options are
    unchanged and replaces it when they differ.
    """

    def __init__(self, engine_factory: Optional[EngineFactory] = None):
        self._engine_factory = engine_factory
        self._session: Optional[EncoderSession] = None
        self._lock = threading.Lock()

    def acquire(self, options=None) -> EncoderSession:
        merged = EncodeOptions.merged(options)
        with self._lock:
            current = self._session
            if current is not None and not current.released:
                if current.options == merged:
                    return current
                logger.info("Encode options changed; recreating encoder session.")
                current.release()
            self._session = create_session(merged, self._engine_factory)
            return self._session

    def close(self) -> None:
        with self._lock:
            if self._session is not None:
                self._session.release()
                self._session = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
