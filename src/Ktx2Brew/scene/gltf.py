"""Minimal glTF 2.0 document adapter (``.gltf`` and ``.glb``).

Exposes the document's images as an ordered, name-queryable collection of
`TextureRecord` objects, and writes rewritten image payloads back on save.
Everything the adapter does not understand is carried through untouched.
"""

import base64
import json
import logging
import os
import struct
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional
from urllib.parse import unquote_to_bytes

from ..core.paths import is_data_uri, uri_to_relpath

logger = logging.getLogger("ktx2_pipeline.gltf")

GLB_MAGIC = 0x46546C67  # "glTF"
GLB_VERSION = 2
CHUNK_JSON = 0x4E4F534A
CHUNK_BIN = 0x004E4942

KHR_TEXTURE_BASISU = "KHR_texture_basisu"
_BASISU_MIME_TYPES = ("image/ktx2",)

_MIME_BY_EXT = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".ktx2": "image/ktx2",
    ".basis": "image/x-basis",
}


def _safe_relpath(uri: str) -> PurePosixPath:
    """Return a relative, traversal-free path for a glTF URI."""
    p = PurePosixPath(uri_to_relpath(uri).replace("\\", "/"))
    if p.is_absolute() or ".." in p.parts or not p.parts:
        raise ValueError(f"Refusing to use URI outside the document directory: '{uri}'")
    return p


def _decode_data_uri(uri: str) -> bytes:
    header, _, payload = uri.partition(",")
    if ";base64" in header:
        return base64.b64decode(payload)
    return unquote_to_bytes(payload)


def _encode_data_uri(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type or 'application/octet-stream'};base64," + \
        base64.b64encode(data).decode("ascii")


def _pad(data: bytes, fill: bytes) -> bytes:
    return data + fill * (-len(data) % 4)


class TextureRecord:
    """One glTF image: name, payload bytes, MIME type, and optional URI."""

    def __init__(self, index: int, entry: dict, image: Optional[bytes], storage: str):
        self.index = index
        self._entry = entry
        self._image = image
        self.storage = storage  # "uri" | "data" | "bufferView" | "missing"
        self.modified = False

    @property
    def name(self) -> str:
        return self._entry.get("name", "")

    @property
    def label(self) -> str:
        return self.name or self._entry.get("uri", "")[:64] or f"image[{self.index}]"

    @property
    def image(self) -> Optional[bytes]:
        return self._image

    @image.setter
    def image(self, data: Optional[bytes]) -> None:
        self._image = bytes(data) if data is not None else None
        self.modified = True

    @property
    def mime_type(self) -> str:
        return self._entry.get("mimeType", "")

    @mime_type.setter
    def mime_type(self, value: str) -> None:
        self._entry["mimeType"] = value
        self.modified = True

    @property
    def uri(self) -> Optional[str]:
        uri = self._entry.get("uri")
        if uri is None or is_data_uri(uri):
            return None
        return uri

    @uri.setter
    def uri(self, value: Optional[str]) -> None:
        if value is None:
            self._entry.pop("uri", None)
        else:
            self._entry["uri"] = value
        self.modified = True

    def __repr__(self) -> str:
        size = len(self._image) if self._image is not None else 0
        return f"TextureRecord({self.label!r}, mime={self.mime_type!r}, bytes={size})"


class SceneDocument:
    """In-memory glTF JSON plus its binary buffers and image records."""

    def __init__(self, gltf: dict, buffers: List[Optional[bytes]], base_dir: str = "."):
        self.gltf = gltf
        self.base_dir = base_dir
        self._buffers = list(buffers)
        self._textures = [
            self._load_image(i, entry) for i, entry in enumerate(gltf.get("images", []))
        ]

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, path: str) -> "SceneDocument":
        base_dir = os.path.dirname(os.path.abspath(path))
        with open(path, "rb") as f:
            raw = f.read()
        if raw[:4] == b"glTF":
            gltf, bin_chunk = cls._parse_glb(raw, path)
        else:
            try:
                gltf = json.loads(raw.decode("utf-8-sig"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise ValueError(f"{path}: not a glTF JSON or GLB file ({exc})") from exc
            bin_chunk = None
        if not isinstance(gltf, dict) or "asset" not in gltf:
            raise ValueError(f"{path}: missing required 'asset' property")

        buffers: List[Optional[bytes]] = []
        for i, buf in enumerate(gltf.get("buffers", [])):
            uri = buf.get("uri")
            if uri is None:
                buffers.append(bin_chunk if i == 0 else None)
            elif is_data_uri(uri):
                buffers.append(_decode_data_uri(uri))
            else:
                buffer_path = os.path.join(base_dir, str(_safe_relpath(uri)))
                try:
                    with open(buffer_path, "rb") as f:
                        buffers.append(f.read())
                except OSError as exc:
                    logger.warning("Buffer %d unreadable (%s): %s", i, uri, exc)
                    buffers.append(None)
        doc = cls(gltf, buffers, base_dir)
        logger.info("Loaded %s: %d image(s), %d buffer(s)",
                    path, len(doc._textures), len(buffers))
        return doc

    @staticmethod
    def _parse_glb(raw: bytes, path: str):
        if len(raw) < 20:
            raise ValueError(f"{path}: GLB file truncated")
        magic, version, length = struct.unpack_from("<III", raw, 0)
        if magic != GLB_MAGIC or version != GLB_VERSION:
            raise ValueError(f"{path}: unsupported GLB header (version={version})")
        gltf = None
        bin_chunk = None
        offset = 12
        end = min(length, len(raw))
        while offset + 8 <= end:
            chunk_length, chunk_type = struct.unpack_from("<II", raw, offset)
            chunk = raw[offset + 8:offset + 8 + chunk_length]
            if chunk_type == CHUNK_JSON and gltf is None:
                gltf = json.loads(chunk.decode("utf-8"))
            elif chunk_type == CHUNK_BIN and bin_chunk is None:
                bin_chunk = bytes(chunk)
            offset += 8 + chunk_length
        if gltf is None:
            raise ValueError(f"{path}: GLB has no JSON chunk")
        return gltf, bin_chunk

    def _buffer_view_bytes(self, view_index: int) -> Optional[bytes]:
        views = self.gltf.get("bufferViews", [])
        if not (0 <= view_index < len(views)):
            return None
        view = views[view_index]
        buf_index = view.get("buffer", 0)
        if not (0 <= buf_index < len(self._buffers)) or self._buffers[buf_index] is None:
            return None
        start = view.get("byteOffset", 0)
        return self._buffers[buf_index][start:start + view["byteLength"]]

    def _load_image(self, index: int, entry: dict) -> TextureRecord:
        if "bufferView" in entry:
            data = self._buffer_view_bytes(entry["bufferView"])
            storage = "bufferView" if data is not None else "missing"
        elif is_data_uri(entry.get("uri", "")):
            data = _decode_data_uri(entry["uri"])
            storage = "data"
            if not entry.get("mimeType"):
                declared = entry["uri"].strip()[5:].split(",", 1)[0].split(";", 1)[0]
                if declared.startswith("image/"):
                    entry["mimeType"] = declared
        elif entry.get("uri"):
            try:
                image_path = os.path.join(self.base_dir, str(_safe_relpath(entry["uri"])))
                with open(image_path, "rb") as f:
                    data = f.read()
                storage = "uri"
            except (OSError, ValueError) as exc:
                logger.warning("Image %d (%s) unreadable: %s", index, entry["uri"], exc)
                data, storage = None, "missing"
        else:
            data, storage = None, "missing"
        if data is not None and not entry.get("mimeType"):
            ext = PurePosixPath(uri_to_relpath(entry.get("uri", ""))).suffix.lower()
            if ext in _MIME_BY_EXT:
                entry["mimeType"] = _MIME_BY_EXT[ext]
        return TextureRecord(index, entry, data, storage)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_textures(self) -> List[TextureRecord]:
        return list(self._textures)

    def get_texture(self, name: str) -> Optional[TextureRecord]:
        for record in self._textures:
            if record.name == name:
                return record
        return None

    def require_extension(self, name: str, required: bool = True) -> None:
        used = self.gltf.setdefault("extensionsUsed", [])
        if name not in used:
            used.append(name)
        if required:
            req = self.gltf.setdefault("extensionsRequired", [])
            if name not in req:
                req.append(name)

    @property
    def extensions_required(self) -> List[str]:
        return list(self.gltf.get("extensionsRequired", []))

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    def _repack_buffers(self, replacements: Dict[int, bytes]) -> None:
        """Rebuild buffers whose image views changed size, patching view offsets."""
        views = self.gltf.get("bufferViews", [])
        touched = {views[v].get("buffer", 0) for v in replacements}
        for buf_index in touched:
            old = self._buffers[buf_index]
            out = bytearray()
            for view_index, view in enumerate(views):
                if view.get("buffer", 0) != buf_index:
                    continue
                start = view.get("byteOffset", 0)
                data = replacements.get(view_index, old[start:start + view["byteLength"]])
                out += b"\x00" * (-len(out) % 4)
                view["byteOffset"] = len(out)
                view["byteLength"] = len(data)
                out += data
            self._buffers[buf_index] = bytes(out)
            self.gltf["buffers"][buf_index]["byteLength"] = len(out)
            logger.debug("Repacked buffer %d: %d -> %d bytes", buf_index, len(old), len(out))

    def _route_basisu_textures(self) -> None:
        images = self.gltf.get("images", [])
        for texture in self.gltf.get("textures", []):
            ext = texture.get("extensions", {}).get(KHR_TEXTURE_BASISU)
            source = ext.get("source") if ext else texture.get("source")
            if source is None or not (0 <= source < len(images)):
                continue
            if images[source].get("mimeType") in _BASISU_MIME_TYPES:
                texture.setdefault("extensions", {})[KHR_TEXTURE_BASISU] = {"source": source}
                if texture.get("source") == source:
                    del texture["source"]

    def save(self, path: str) -> None:
        out_dir = os.path.dirname(os.path.abspath(path))
        as_glb = Path(path).suffix.lower() == ".glb"
        os.makedirs(out_dir, exist_ok=True)

        replacements: Dict[int, bytes] = {}
        for record in self._textures:
            entry = record._entry
            if record.image is None:
                continue
            if record.storage == "bufferView":
                if record.modified:
                    replacements[entry["bufferView"]] = record.image
            elif record.storage == "data":
                entry["uri"] = _encode_data_uri(record.image, record.mime_type)
            elif record.uri:
                image_path = Path(out_dir) / str(_safe_relpath(record.uri))
                image_path.parent.mkdir(parents=True, exist_ok=True)
                image_path.write_bytes(record.image)
        if replacements:
            self._repack_buffers(replacements)
        self._route_basisu_textures()

        bin_chunk = None
        for i, buf in enumerate(self.gltf.get("buffers", [])):
            data = self._buffers[i] if i < len(self._buffers) else None
            if data is None:
                continue
            uri = buf.get("uri")
            if uri is None and i == 0 and as_glb:
                bin_chunk = data
            elif uri is not None and is_data_uri(uri):
                buf["uri"] = _encode_data_uri(data, "application/octet-stream")
            else:
                if uri is None:
                    uri = f"{Path(path).stem}.bin" if i == 0 else f"{Path(path).stem}_{i}.bin"
                    buf["uri"] = uri
                buffer_path = Path(out_dir) / str(_safe_relpath(uri))
                buffer_path.parent.mkdir(parents=True, exist_ok=True)
                buffer_path.write_bytes(data)

        if as_glb:
            self._write_glb(path, bin_chunk)
        else:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(self.gltf, f, indent=2)
        logger.info("Saved %s", path)

    def _write_glb(self, path: str, bin_chunk: Optional[bytes]) -> None:
        json_bytes = _pad(json.dumps(self.gltf, separators=(",", ":")).encode("utf-8"), b" ")
        parts = [struct.pack("<II", len(json_bytes), CHUNK_JSON), json_bytes]
        if bin_chunk is not None:
            bin_bytes = _pad(bin_chunk, b"\x00")
            parts += [struct.pack("<II", len(bin_bytes), CHUNK_BIN), bin_bytes]
        body = b"".join(parts)
        with open(path, "wb") as f:
            f.write(struct.pack("<III", GLB_MAGIC, GLB_VERSION, 12 + len(body)))
            f.write(body)
