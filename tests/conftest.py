"""Shared test fixtures."""

import hashlib
import io
import json
import os
import shutil
import struct
import tempfile
import threading
import time

import numpy as np
import pytest
from PIL import Image

from Ktx2Brew.config import PipelineConfig
from Ktx2Brew.core.ktx2 import KTX2_IDENTIFIER


def make_png(width=64, height=64, color=(200, 100, 50, 255), mode="RGBA"):
    """Return PNG bytes of a solid-colour image."""
    if mode == "RGBA":
        fill = tuple(color)
    elif mode == "RGB":
        fill = tuple(color[:3])
    else:
        fill = color[0]
    buf = io.BytesIO()
    Image.new(mode, (width, height), fill).save(buf, format="PNG")
    return buf.getvalue()


def make_noise_png(width=64, height=64, seed=0):
    rng = np.random.default_rng(seed)
    arr = rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)
    buf = io.BytesIO()
    Image.fromarray(arr).save(buf, format="PNG")
    return buf.getvalue()


def make_ktx2(width, height, levels=1, payload=b"\x11" * 32):
    """Build a structurally valid KTX2 container with opaque level data."""
    index_end = 80 + 24 * levels
    dfd_offset = index_end
    dfd = struct.pack("<I", 28) + b"\x00" * 24
    data_start = dfd_offset + len(dfd)
    data_start += -data_start % 16

    header = bytearray(KTX2_IDENTIFIER)
    header += struct.pack("<9I", 0, 1, width, height, 0, 0, 1, levels, 0)
    header += struct.pack("<4I", dfd_offset, len(dfd), 0, 0)
    header += struct.pack("<2Q", 0, 0)

    index = bytearray()
    body = bytearray()
    offset = data_start
    for _ in range(levels):
        index += struct.pack("<3Q", offset, len(payload), len(payload))
        body += payload
        body += b"\x00" * (-len(payload) % 16)
        offset = data_start + len(body)

    out = bytearray(header + index + dfd)
    out += b"\x00" * (data_start - len(out))
    out += body
    return bytes(out)


class FakeEngine:
    """In-process stand-in for a Basis Universal encoder.

    Produces a deterministic KTX2 container whose level data is a digest of
    the staged slice. ``fail_when(width, height)`` forces a zero-byte encode,
    ``output_size`` pads the container, and ``encode_delay`` slows encoding.
    """

    def __init__(self, fail_when=None, output_size=None, encode_delay=0.0,
                 fail_init=False):
        self.calls = []
        self.settings = {}
        self.slice = None
        self.fail_when = fail_when
        self.output_size = output_size
        self.encode_delay = encode_delay
        self.fail_init = fail_init
        self.initialized = False
        self.deleted = False
        self.encode_count = 0
        self._required = None
        self.encode_started = threading.Event()

    def __getattr__(self, name):
        if not name.startswith("set_"):
            raise AttributeError(name)

        def _setter(value):
            self.calls.append((name, value))
            self.settings[name] = value
        return _setter

    def initialize(self):
        self.calls.append(("initialize", None))
        if self.fail_init:
            raise RuntimeError("wasm module failed to load")
        self.initialized = True

    def set_slice_source_image(self, slice_index, buffer, width, height, source_type):
        self.calls.append(("set_slice_source_image", (slice_index, width, height, source_type)))
        self.slice = (bytes(buffer), width, height, source_type)

    def _container(self):
        buffer, width, height, _ = self.slice
        digest = hashlib.sha256(buffer).digest()
        payload = digest
        if self.output_size:
            payload = digest * (self.output_size // len(digest) + 1)
        return make_ktx2(max(width, 1), max(height, 1), payload=payload)

    def encode(self, output):
        self.calls.append(("encode", len(output)))
        self.encode_count += 1
        self.encode_started.set()
        if self.encode_delay:
            time.sleep(self.encode_delay)
        if self.slice is None:
            return 0
        _, width, height, _ = self.slice
        if self.fail_when is not None and self.fail_when(width, height):
            self._required = None
            return 0
        data = self._container()
        if len(data) > len(output):
            self._required = len(data)
            return 0
        output[:len(data)] = data
        self._required = None
        return len(data)

    def required_capacity(self):
        return self._required

    def delete(self):
        self.calls.append(("delete", None))
        self.deleted = True

    def call_names(self):
        return [name for name, _ in self.calls]


class EngineFactory:
    """Engine factory that remembers every engine it created."""

    def __init__(self, **engine_kwargs):
        self.engine_kwargs = engine_kwargs
        self.engines = []

    def __call__(self):
        engine = FakeEngine(**self.engine_kwargs)
        self.engines.append(engine)
        return engine


def write_gltf(directory, images, name="scene.gltf", extra=None):
    """Write a glTF referencing ``images``: list of (name, uri_or_None, bytes).

    Images with a URI are written next to the document; images without
    one are stored as data URIs. ``bytes`` of None leaves the file missing.
    """
    import base64

    gltf = {
        "asset": {"version": "2.0"},
        "images": [],
        "textures": [],
        "samplers": [{}],
    }
    for i, (img_name, uri, data) in enumerate(images):
        entry = {"name": img_name}
        if uri is not None:
            entry["uri"] = uri
            if data is not None:
                path = os.path.join(directory, uri)
                os.makedirs(os.path.dirname(path) or directory, exist_ok=True)
                with open(path, "wb") as f:
                    f.write(data)
        else:
            entry["uri"] = "data:image/png;base64," + base64.b64encode(data).decode()
            entry["mimeType"] = "image/png"
        gltf["images"].append(entry)
        gltf["textures"].append({"sampler": 0, "source": i})
    if extra:
        gltf.update(extra)
    path = os.path.join(directory, name)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(gltf, f)
    return path


def write_glb(path, images, vertex_data=b"\x01\x02\x03\x04" * 6):
    """Write a GLB with one vertex buffer view followed by image views."""
    bin_chunk = bytearray(vertex_data)
    views = [{"buffer": 0, "byteOffset": 0, "byteLength": len(vertex_data)}]
    gltf = {
        "asset": {"version": "2.0"},
        "images": [],
        "textures": [],
        "accessors": [{"bufferView": 0, "componentType": 5126, "count": 2, "type": "VEC3"}],
    }
    for i, (img_name, data) in enumerate(images):
        bin_chunk += b"\x00" * (-len(bin_chunk) % 4)
        views.append({"buffer": 0, "byteOffset": len(bin_chunk), "byteLength": len(data)})
        bin_chunk += data
        gltf["images"].append(
            {"name": img_name, "bufferView": len(views) - 1, "mimeType": "image/png"}
        )
        gltf["textures"].append({"source": i})
    gltf["bufferViews"] = views
    gltf["buffers"] = [{"byteLength": len(bin_chunk)}]

    json_bytes = json.dumps(gltf).encode("utf-8")
    json_bytes += b" " * (-len(json_bytes) % 4)
    bin_bytes = bytes(bin_chunk) + b"\x00" * (-len(bin_chunk) % 4)
    body = (struct.pack("<II", len(json_bytes), 0x4E4F534A) + json_bytes +
            struct.pack("<II", len(bin_bytes), 0x004E4942) + bin_bytes)
    with open(path, "wb") as f:
        f.write(struct.pack("<III", 0x46546C67, 2, 12 + len(body)))
        f.write(body)
    return path


@pytest.fixture
def tmp_dir():
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def default_config():
    return PipelineConfig()


@pytest.fixture
def fake_engine_factory():
    return EngineFactory()
