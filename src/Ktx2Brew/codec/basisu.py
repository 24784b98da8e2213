"""Basis Universal codec engine.

`BasisEngine` is the parameter surface the transcoding pipeline drives.
`BasisuCliEngine` implements it over the ``basisu`` command-line encoder:
setters accumulate flags, slices are staged in a private work directory, and
``encode`` runs the tool and copies the container into the caller's buffer.
"""

import enum
import logging
import os
import platform
import shutil
import subprocess
import sys
import tempfile
from typing import Optional, Protocol

import numpy as np
from PIL import Image

from ..core.errors import InitializationError

logger = logging.getLogger("ktx2_pipeline.basisu")


class BasisTextureType(enum.IntEnum):
    TYPE_2D = 0
    TYPE_2D_ARRAY = 1
    CUBEMAP_ARRAY = 2
    VIDEO_FRAMES = 3
    VOLUME = 4


class SourceType(enum.IntEnum):
    """Slice source kind: pre-decoded RGBA8 or original PNG bytes."""

    RAW = 0
    PNG = 1


class BasisEngine(Protocol):
    """Operations the pipeline needs from a Basis Universal encoder."""

    def initialize(self) -> None: ...
    def set_debug(self, enabled: bool) -> None: ...
    def set_uastc(self, enabled: bool) -> None: ...
    def set_create_ktx2_file(self, enabled: bool) -> None: ...
    def set_y_flip(self, enabled: bool) -> None: ...
    def set_quality_level(self, level: int) -> None: ...
    def set_compression_level(self, level: int) -> None: ...
    def set_ktx2_uastc_supercompression(self, enabled: bool) -> None: ...
    def set_normal_map(self, enabled: bool) -> None: ...
    def set_ktx2_srgb_transfer_func(self, enabled: bool) -> None: ...
    def set_perceptual(self, enabled: bool) -> None: ...
    def set_mip_gen(self, enabled: bool) -> None: ...
    def set_rdo_uastc(self, enabled: bool) -> None: ...
    def set_rdo_uastc_quality_scalar(self, value: float) -> None: ...
    def set_rdo_uastc_dict_size(self, value: int) -> None: ...
    def set_max_endpoint_clusters(self, value: int) -> None: ...
    def set_max_selector_clusters(self, value: int) -> None: ...
    def set_endpoint_rdo_thresh(self, value: float) -> None: ...
    def set_selector_rdo_thresh(self, value: float) -> None: ...
    def set_tex_type(self, tex_type: BasisTextureType) -> None: ...

    def set_slice_source_image(self, slice_index: int, buffer: bytes,
                               width: int, height: int,
                               source_type: SourceType) -> None: ...

    def encode(self, output: bytearray) -> int: ...
    def required_capacity(self) -> Optional[int]: ...
    def delete(self) -> None: ...


def _forward_output(text: str, level: int, max_lines: int = 120) -> None:
    """Log tool output line-by-line at the given level."""
    if not text or not text.strip():
        return
    lines = text.splitlines()
    if len(lines) > max_lines:
        logger.log(level, "[basisu] ... %d earlier lines omitted", len(lines) - max_lines)
        lines = lines[-max_lines:]
    for line in lines:
        if len(line) > 500:
            line = line[:500] + "..."
        logger.log(level, "[basisu] %s", line)


def resolve_basisu(tool_path: str = "") -> Optional[str]:
    """Locate the basisu executable: explicit path, PATH, then bundled bin/."""
    if tool_path:
        return tool_path if os.path.isfile(tool_path) else None
    found = shutil.which("basisu")
    if found:
        return found
    from .. import BIN_DIR
    exe_suffix = ".exe" if platform.system() == "Windows" else ""
    candidates = [BIN_DIR / f"basisu{exe_suffix}"]
    candidates.extend(sorted(BIN_DIR.glob(f"basis_universal*/basisu{exe_suffix}"), reverse=True))
    for candidate in candidates:
        if candidate.is_file():
            return str(candidate)
    return None


class BasisuCliEngine:
    """`BasisEngine` backed by the basisu executable."""

    _TEX_TYPE_FLAGS = {
        BasisTextureType.TYPE_2D: "2d",
        BasisTextureType.TYPE_2D_ARRAY: "2darray",
        BasisTextureType.CUBEMAP_ARRAY: "cubemap",
        BasisTextureType.VIDEO_FRAMES: "video",
        BasisTextureType.VOLUME: "3d",
    }

    def __init__(self, tool_path: str = "", timeout_seconds: int = 300,
                 keep_work_dir: bool = False):
        self._requested_tool = tool_path
        self.tool_path: Optional[str] = None
        self.timeout_seconds = timeout_seconds
        self.keep_work_dir = keep_work_dir
        self._work_dir: Optional[str] = None
        self._settings = {
            "debug": False,
            "uastc": False,
            "ktx2": False,
            "y_flip": False,
            "quality_level": None,
            "compression_level": None,
            "supercompression": False,
            "normal_map": False,
            "srgb_transfer_func": False,
            "perceptual": True,
            "mip_gen": False,
            "rdo_uastc": False,
            "rdo_uastc_quality_scalar": None,
            "rdo_uastc_dict_size": None,
            "max_endpoint_clusters": None,
            "max_selector_clusters": None,
            "endpoint_rdo_thresh": None,
            "selector_rdo_thresh": None,
            "tex_type": BasisTextureType.TYPE_2D,
        }
        self._slice_path: Optional[str] = None
        self._slice_generation = 0
        self._cached_generation = -1
        self._cached_output: Optional[bytes] = None
        self._required: Optional[int] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        tool = resolve_basisu(self._requested_tool)
        if not tool:
            raise InitializationError(
                "basisu executable not found. Install Basis Universal "
                "(https://github.com/BinomialLLC/basis_universal), put it on PATH, "
                "or set encoder.tool_path."
            )
        try:
            proc = subprocess.run(
                [tool, "-version"], capture_output=True, text=True,
                encoding="utf-8", errors="replace", timeout=30,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise InitializationError(f"basisu failed to start ({tool}): {exc}") from exc
        version_text = (proc.stdout or proc.stderr or "").strip().splitlines()
        logger.info("Using basisu: %s (%s)", tool,
                    version_text[0] if version_text else "version unknown")
        self.tool_path = tool
        self._work_dir = tempfile.mkdtemp(prefix="ktx2brew_basisu_")

    def delete(self) -> None:
        work_dir, self._work_dir = self._work_dir, None
        self._cached_output = None
        self._slice_path = None
        if work_dir and not self.keep_work_dir:
            shutil.rmtree(work_dir, ignore_errors=True)
        logger.debug("basisu engine released (work dir %s)", work_dir)

    # ------------------------------------------------------------------
    # Setters
    # ------------------------------------------------------------------

    def _set(self, name, value) -> None:
        if self._settings.get(name) != value:
            self._settings[name] = value
            self._cached_output = None

    def set_debug(self, enabled):
        self._set("debug", bool(enabled))

    def set_uastc(self, enabled):
        self._set("uastc", bool(enabled))

    def set_create_ktx2_file(self, enabled):
        self._set("ktx2", bool(enabled))

    def set_y_flip(self, enabled):
        self._set("y_flip", bool(enabled))

    def set_quality_level(self, level):
        self._set("quality_level", int(level))

    def set_compression_level(self, level):
        self._set("compression_level", int(level))

    def set_normal_map(self, enabled):
        self._set("normal_map", bool(enabled))

    def set_perceptual(self, enabled):
        self._set("perceptual", bool(enabled))

    def set_mip_gen(self, enabled):
        self._set("mip_gen", bool(enabled))

    def set_rdo_uastc(self, enabled):
        self._set("rdo_uastc", bool(enabled))

    def set_rdo_uastc_dict_size(self, value):
        self._set("rdo_uastc_dict_size", int(value))

    def set_ktx2_uastc_supercompression(self, enabled):
        self._set("supercompression", bool(enabled))

    def set_ktx2_srgb_transfer_func(self, enabled):
        self._set("srgb_transfer_func", bool(enabled))

    def set_rdo_uastc_quality_scalar(self, value):
        self._set("rdo_uastc_quality_scalar", float(value))

    def set_max_endpoint_clusters(self, value):
        self._set("max_endpoint_clusters", int(value))

    def set_max_selector_clusters(self, value):
        self._set("max_selector_clusters", int(value))

    def set_endpoint_rdo_thresh(self, value):
        self._set("endpoint_rdo_thresh", float(value))

    def set_selector_rdo_thresh(self, value):
        self._set("selector_rdo_thresh", float(value))

    def set_tex_type(self, tex_type):
        self._set("tex_type", BasisTextureType(tex_type))

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def set_slice_source_image(self, slice_index, buffer, width, height, source_type):
        if slice_index != 0:
            raise ValueError("Only slice 0 is supported (single-image 2D textures)")
        if self._work_dir is None:
            raise RuntimeError("basisu engine is not initialized")
        path = os.path.join(self._work_dir, "slice0.png")
        if SourceType(source_type) == SourceType.PNG:
            with open(path, "wb") as f:
                f.write(bytes(buffer))
        else:
            arr = np.frombuffer(bytes(buffer), dtype=np.uint8)
            if arr.size != width * height * 4:
                raise ValueError(
                    f"RAW slice has {arr.size} bytes, expected {width * height * 4} "
                    f"for {width}x{height} RGBA8"
                )
            Image.fromarray(arr.reshape(height, width, 4)).save(path)
        self._slice_path = path
        self._slice_generation += 1
        self._cached_output = None
        self._required = None

    def build_command(self, source_path: str, output_path: str) -> list:
        s = self._settings
        cmd = [self.tool_path or "basisu"]
        if s["ktx2"]:
            cmd.append("-ktx2")
            if s["uastc"] and not s["supercompression"]:
                cmd.append("-ktx2_no_zstandard")
        if s["uastc"]:
            cmd.append("-uastc")
            if s["rdo_uastc"]:
                scalar = s["rdo_uastc_quality_scalar"]
                cmd += ["-uastc_rdo_l", f"{scalar if scalar is not None else 1.0:g}"]
                if s["rdo_uastc_dict_size"] is not None:
                    cmd += ["-uastc_rdo_d", str(s["rdo_uastc_dict_size"])]
        else:
            if s["quality_level"] is not None:
                cmd += ["-q", str(s["quality_level"])]
            if s["max_endpoint_clusters"] is not None:
                cmd += ["-max_endpoints", str(s["max_endpoint_clusters"])]
            if s["max_selector_clusters"] is not None:
                cmd += ["-max_selectors", str(s["max_selector_clusters"])]
            if s["endpoint_rdo_thresh"] is not None:
                cmd += ["-endpoint_rdo_thresh", f"{s['endpoint_rdo_thresh']:g}"]
            if s["selector_rdo_thresh"] is not None:
                cmd += ["-selector_rdo_thresh", f"{s['selector_rdo_thresh']:g}"]
        if s["compression_level"] is not None:
            cmd += ["-comp_level", str(s["compression_level"])]
        # The CLI ties the DFD transfer function to the perceptual flag.
        if not s["perceptual"]:
            cmd.append("-linear")
        if s["normal_map"]:
            cmd.append("-normal_map")
        if s["y_flip"]:
            cmd.append("-y_flip")
        if s["mip_gen"]:
            cmd.append("-mipmap")
        if s["debug"]:
            cmd.append("-debug")
        cmd += ["-tex_type", self._TEX_TYPE_FLAGS[s["tex_type"]]]
        cmd += ["-file", source_path, "-output_file", output_path]
        return cmd

    def _run(self) -> Optional[bytes]:
        ext = ".ktx2" if self._settings["ktx2"] else ".basis"
        output_path = os.path.join(self._work_dir, f"slice0_out{ext}")
        if os.path.exists(output_path):
            os.remove(output_path)
        if self._settings["srgb_transfer_func"] != self._settings["perceptual"]:
            logger.warning(
                "basisu derives the KTX2 transfer function from the perceptual flag; "
                "srgb_transfer_func=%s is ignored.", self._settings["srgb_transfer_func"],
            )
        cmd = self.build_command(self._slice_path, output_path)
        logger.debug("Running basisu: %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd, capture_output=True, text=True, encoding="utf-8",
                errors="replace", timeout=self.timeout_seconds, cwd=self._work_dir,
            )
        except subprocess.TimeoutExpired:
            logger.error("basisu timed out after %ds", self.timeout_seconds)
            return None
        except OSError as exc:
            logger.error("basisu could not be executed: %s", exc)
            return None

        if proc.returncode != 0:
            if proc.returncode < 0 and sys.platform != "win32":
                logger.error("basisu was killed by signal %d", -proc.returncode)
            else:
                logger.error("basisu failed with exit code %d", proc.returncode)
            _forward_output(proc.stdout, logging.ERROR, max_lines=20)
            _forward_output(proc.stderr, logging.ERROR, max_lines=20)
            return None
        _forward_output(proc.stdout, logging.DEBUG)
        _forward_output(proc.stderr, logging.DEBUG)

        if not os.path.isfile(output_path):
            logger.error("basisu reported success but wrote no output file")
            return None
        with open(output_path, "rb") as f:
            return f.read()

    def encode(self, output: bytearray) -> int:
        """Encode slice 0 into ``output``; return bytes written, 0 on failure."""
        if self._slice_path is None or self._work_dir is None:
            logger.error("encode() called without a source slice")
            return 0
        if self._cached_output is None or self._cached_generation != self._slice_generation:
            self._cached_output = self._run()
            self._cached_generation = self._slice_generation
        data = self._cached_output
        if not data:
            self._required = None
            return 0
        if len(data) > len(output):
            # Keep the result; a retry with a larger buffer reuses it.
            self._required = len(data)
            logger.debug(
                "Encoded container (%d bytes) exceeds output buffer (%d bytes)",
                len(data), len(output),
            )
            return 0
        output[:len(data)] = data
        self._required = None
        return len(data)

    def required_capacity(self) -> Optional[int]:
        return self._required
