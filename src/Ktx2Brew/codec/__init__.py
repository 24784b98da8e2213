"""Codec engine adapters and encoder session lifecycle."""

from .basisu import (
    BasisEngine,
    BasisTextureType,
    BasisuCliEngine,
    SourceType,
    resolve_basisu,
)
from .session import (
    EncoderSession,
    SessionManager,
    apply_options,
    create_session,
)

__all__ = [
    "BasisEngine", "BasisTextureType", "BasisuCliEngine", "SourceType",
    "resolve_basisu",
    "EncoderSession", "SessionManager", "apply_options", "create_session",
]
