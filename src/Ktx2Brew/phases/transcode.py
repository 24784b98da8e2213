"""Encode one normalized raster through an encoder session."""

import logging
from typing import Optional

from ..codec.basisu import SourceType
from ..codec.session import EncoderSession
from ..core import ktx2
from ..core.errors import EncodeError
from ..core.raster import RasterImage

logger = logging.getLogger("ktx2_pipeline.transcode")

MIB = 1024 * 1024
DEFAULT_INITIAL_CAPACITY = 10 * MIB
DEFAULT_MAX_CAPACITY = 256 * MIB


def transcode(session: EncoderSession, raster: RasterImage,
              initial_capacity: int = DEFAULT_INITIAL_CAPACITY,
              max_capacity: int = DEFAULT_MAX_CAPACITY,
              png_source: Optional[bytes] = None) -> bytes:
    """Return the compressed container for ``raster``.

    The scratch buffer starts at ``initial_capacity`` and is reallocated to
    the size the engine reports when its output does not fit, up to
    ``max_capacity``. Zero output for any other reason raises `EncodeError`.
    ``png_source`` passes the original PNG bytes through instead of the raw
    raster (``source_type: png``).
    """
    if initial_capacity < 1 or max_capacity < initial_capacity:
        raise ValueError("Output capacity must satisfy 1 <= initial <= max")

    if png_source is not None:
        session.set_source(png_source, 0, 0, SourceType.PNG)
    else:
        session.set_source(raster.pixels, raster.width, raster.height, SourceType.RAW)

    capacity = initial_capacity
    while True:
        output = bytearray(capacity)
        written = session.encode(output)
        if written > 0:
            break
        required = session.required_capacity()
        if required is None or required <= capacity:
            raise EncodeError(
                f"Encoder produced no output for {raster.width}x{raster.height} raster"
            )
        if required > max_capacity:
            raise EncodeError(
                f"Encoded output needs {required} bytes, above the "
                f"{max_capacity}-byte output limit"
            )
        logger.debug("Growing encode buffer %d -> %d bytes", capacity, required)
        capacity = required

    payload = bytes(memoryview(output)[:written])
    options = session.options
    if options.kv_data and options.ktx2:
        try:
            payload = ktx2.set_key_values(payload, options.kv_data)
        except ValueError as exc:
            raise EncodeError(f"Could not write KTX2 key/value data: {exc}") from exc
    return payload
