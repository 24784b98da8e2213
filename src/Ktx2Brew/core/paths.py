"""URI helpers for rewritten texture references."""

from pathlib import PurePosixPath
from urllib.parse import unquote


def is_data_uri(uri: str) -> bool:
    return bool(uri) and uri.lstrip().lower().startswith("data:")


def uri_basename(uri: str) -> str:
    """Return the file name of a URI without directory or extension."""
    raw = str(uri).replace("\\", "/").split("?", 1)[0].split("#", 1)[0]
    return PurePosixPath(raw).stem


def rewrite_texture_uri(uri: str, extension: str, preserve_directories: bool = False) -> str:
    """Swap the extension of a texture URI, e.g. ``foo/bar.png`` -> ``bar.ktx2``.

    The directory prefix is dropped unless ``preserve_directories`` is set.
    """
    if not extension.startswith("."):
        extension = "." + extension
    stem = uri_basename(uri)
    if not stem:
        raise ValueError(f"Cannot derive a file name from URI '{uri}'")
    if not preserve_directories:
        return stem + extension
    raw = str(uri).replace("\\", "/").split("?", 1)[0].split("#", 1)[0]
    parent = str(PurePosixPath(raw).parent)
    if parent in ("", "."):
        return stem + extension
    return f"{parent}/{stem}{extension}"


def uri_to_relpath(uri: str) -> str:
    """Decode a relative glTF URI into a filesystem-relative path."""
    return unquote(str(uri).split("?", 1)[0].split("#", 1)[0])
