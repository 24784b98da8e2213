"""Exception taxonomy for the transcoding pipeline."""


class Ktx2BrewError(RuntimeError):
    """Base class for pipeline errors."""


class DecodeError(Ktx2BrewError):
    """Raised when image bytes are not a supported or intact raster format."""


class InitializationError(Ktx2BrewError):
    """Raised when the codec engine cannot be loaded or initialized."""


class EncodeError(Ktx2BrewError):
    """Raised when the encoder produces no output for a texture."""


class ResizeError(Ktx2BrewError):
    """Raised when a resize context fails to resample one texture."""


class ContextUnavailable(Ktx2BrewError):
    """Raised when a resize context (GPU device, etc.) cannot be created."""


class TextureTimeoutError(Ktx2BrewError):
    """Raised when a single texture exceeds its processing timeout."""


class SessionReleasedError(Ktx2BrewError):
    """Raised when an encoder session is used after release."""


# Per-texture errors; anything else aborts the batch.
TEXTURE_ERRORS = (DecodeError, ResizeError, EncodeError, TextureTimeoutError)
