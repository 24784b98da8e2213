"""Define typed configuration models for the texture compression step.

Use `PipelineConfig` to load, validate, and persist runtime settings, and
`StepConfig` for the library-level `make_texture_compression_step` surface.
"""

import dataclasses
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import yaml

logger = logging.getLogger("ktx2_pipeline.config")

SOURCE_TYPES = ("raw", "png")


@dataclass(frozen=True)
class ResizeSpec:
    """Upper-bound box for the aspect-preserving POT resize."""

    width: int = 1024
    height: int = 1024

    @classmethod
    def coerce(cls, value: Any) -> "ResizeSpec":
        """Accept a ResizeSpec, ``(w, h)``, ``{"width", "height"}`` or ``"WxH"``."""
        if isinstance(value, ResizeSpec):
            return value
        if isinstance(value, str):
            parts = value.lower().replace(" ", "").split("x")
            if len(parts) != 2:
                raise ValueError(f"Resize must look like WIDTHxHEIGHT, got '{value}'")
            return cls(int(parts[0]), int(parts[1]))
        if isinstance(value, dict):
            return cls(int(value["width"]), int(value["height"]))
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return cls(int(value[0]), int(value[1]))
        raise ValueError(f"Cannot interpret {value!r} as a resize box")

    def as_tuple(self):
        return (self.width, self.height)

    def __iter__(self):
        return iter(self.as_tuple())


@dataclass(frozen=True)
class TextureOverride:
    """Per-texture resize box, matched by exact texture name."""

    name: str
    resize: ResizeSpec

    @classmethod
    def coerce(cls, value: Any) -> "TextureOverride":
        if isinstance(value, TextureOverride):
            return value
        if isinstance(value, dict):
            return cls(str(value["name"]), ResizeSpec.coerce(value["resize"]))
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return cls(str(value[0]), ResizeSpec.coerce(value[1]))
        raise ValueError(f"Cannot interpret {value!r} as a texture override")


@dataclass
class EncodeOptions:
    """Basis Universal encoder settings, applied once per encoder session."""

    debug: bool = False
    uastc: bool = True
    ktx2: bool = True
    y_flip: bool = False
    quality_level: int = 150
    compression_level: Optional[int] = None
    supercompression: bool = True
    normal_map: bool = False
    srgb_transfer_func: bool = True
    perceptual: bool = True
    generate_mipmaps: bool = True
    kv_data: Dict[str, Union[str, bytes]] = field(default_factory=dict)
    source_type: str = "raw"
    rdo_uastc: bool = False
    rdo_uastc_quality_scalar: float = 1.0
    rdo_uastc_dict_size: int = 4096
    max_endpoint_clusters: Optional[int] = None
    max_selector_clusters: Optional[int] = None
    endpoint_rdo_thresh: Optional[float] = None
    selector_rdo_thresh: Optional[float] = None

    @classmethod
    def merged(cls, overrides: Union["EncodeOptions", Dict[str, Any], None] = None
               ) -> "EncodeOptions":
        """Return defaults merged with a partial override mapping."""
        if overrides is None:
            return cls()
        if isinstance(overrides, EncodeOptions):
            return dataclasses.replace(overrides, kv_data=dict(overrides.kv_data))
        unknown = set(overrides) - {f.name for f in dataclasses.fields(cls)}
        if unknown:
            raise ValueError(f"Unknown encode option(s): {sorted(unknown)}")
        options = cls(**{k: v for k, v in overrides.items() if k != "kv_data"})
        options.kv_data = dict(overrides.get("kv_data") or {})
        return options

    @property
    def container_extension(self) -> str:
        return ".ktx2" if self.ktx2 else ".basis"

    @property
    def container_mime_type(self) -> str:
        return "image/ktx2" if self.ktx2 else "image/x-basis"

    def validation_errors(self, prefix: str = "") -> List[str]:
        errors = []
        if not (1 <= self.quality_level <= 255):
            errors.append(f"{prefix}quality_level must be in [1, 255]")
        if self.compression_level is not None and not (0 <= self.compression_level <= 6):
            errors.append(f"{prefix}compression_level must be in [0, 6]")
        if self.source_type not in SOURCE_TYPES:
            errors.append(f"{prefix}source_type must be one of {list(SOURCE_TYPES)}")
        if not (0.001 <= self.rdo_uastc_quality_scalar <= 10.0):
            errors.append(f"{prefix}rdo_uastc_quality_scalar must be in [0.001, 10.0]")
        if not (64 <= self.rdo_uastc_dict_size <= 65535):
            errors.append(f"{prefix}rdo_uastc_dict_size must be in [64, 65535]")
        for name in ("max_endpoint_clusters", "max_selector_clusters"):
            value = getattr(self, name)
            if value is not None and not (1 <= value <= 16128):
                errors.append(f"{prefix}{name} must be in [1, 16128]")
        for name in ("endpoint_rdo_thresh", "selector_rdo_thresh"):
            value = getattr(self, name)
            if value is not None and not (0.0 <= value <= 1e10):
                errors.append(f"{prefix}{name} must be in [0, 1e10]")
        for key, value in self.kv_data.items():
            if not isinstance(key, str) or not key:
                errors.append(f"{prefix}kv_data keys must be non-empty strings")
            elif not isinstance(value, (str, bytes)):
                errors.append(f"{prefix}kv_data['{key}'] must be a string or bytes")
        if self.kv_data and not self.ktx2:
            logger.warning("kv_data is only written into KTX2 containers; ignoring for .basis")
        return errors


@dataclass
class StepConfig:
    """Inputs of `make_texture_compression_step`."""

    resize: ResizeSpec = field(default_factory=ResizeSpec)
    encode_options: EncodeOptions = field(default_factory=EncodeOptions)
    per_texture_overrides: List[TextureOverride] = field(default_factory=list)

    @classmethod
    def coerce(cls, value: Any) -> "StepConfig":
        """Build from a StepConfig, PipelineConfig, mapping, or None."""
        if value is None:
            return cls()
        if isinstance(value, StepConfig):
            return value
        if isinstance(value, PipelineConfig):
            return value.step
        if isinstance(value, dict):
            return cls(
                resize=ResizeSpec.coerce(value.get("resize", (1024, 1024))),
                encode_options=EncodeOptions.merged(value.get("encode_options")),
                per_texture_overrides=[
                    TextureOverride.coerce(item)
                    for item in (value.get("per_texture_overrides") or [])
                ],
            )
        raise TypeError(f"Unsupported step configuration type: {type(value).__name__}")

    def resize_for(self, name: str) -> ResizeSpec:
        """Return the first override matching ``name``, else the global box."""
        for override in self.per_texture_overrides:
            if override.name == name:
                return override.resize
        return self.resize


@dataclass
class NormalizeConfig:
    """Decode/resize settings."""

    device: str = "auto"  # auto | cpu | cuda | cuda:N
    max_image_pixels: int = 67108864  # 8192x8192


@dataclass
class EncoderToolConfig:
    """Settings for the basisu command-line engine."""

    tool_path: str = ""
    tool_timeout_seconds: int = 300
    initial_capacity_mb: int = 10
    max_capacity_mb: int = 256
    keep_work_dir: bool = False


_SUPPORTED_CONFIG_VERSION = 1


@dataclass
class PipelineConfig:
    """Master configuration for CLI and batch runs."""

    config_version: int = 1
    input_path: str = ""
    output_path: str = ""
    results_path: str = ""
    log_level: str = "INFO"
    dry_run: bool = False
    fail_fast: bool = False
    texture_timeout_seconds: int = 300
    preserve_uri_directories: bool = False

    step: StepConfig = field(default_factory=StepConfig)
    normalize: NormalizeConfig = field(default_factory=NormalizeConfig)
    encoder: EncoderToolConfig = field(default_factory=EncoderToolConfig)

    @classmethod
    def from_yaml(cls, path: str) -> "PipelineConfig":
        """Load pipeline configuration from YAML or return defaults."""
        if not os.path.exists(path):
            logger.info("Config file '%s' not found. Using defaults.", path)
            config = cls()
            config.validate()
            return config
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Failed to parse YAML config '{path}': {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(
                f"Config file '{path}' must contain a YAML mapping, "
                f"got {type(data).__name__}"
            )
        yaml_version = data.get("config_version", 1)
        if isinstance(yaml_version, int) and yaml_version > _SUPPORTED_CONFIG_VERSION:
            logger.warning(
                "Config file '%s' has config_version=%d, but this build only "
                "supports up to version %d. Some settings may be ignored.",
                path, yaml_version, _SUPPORTED_CONFIG_VERSION,
            )
        config = cls()
        _merge_dict_to_dataclass(config, data)
        try:
            config.validate()
        except ValueError as exc:
            raise ValueError(f"{path}: {exc}") from exc
        return config

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        step = data["step"]
        step["resize"] = list(self.step.resize.as_tuple())
        step["per_texture_overrides"] = [
            {"name": o.name, "resize": list(o.resize.as_tuple())}
            for o in self.step.per_texture_overrides
        ]
        return data

    def to_yaml(self, path: str):
        """Write pipeline configuration to a YAML file."""
        data = self.to_dict()
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        ext = os.path.splitext(path)[1]
        tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}{ext}"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    def validate(self):
        """Validate configuration values. Raises ValueError on invalid config."""
        errors = []

        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if str(self.log_level).upper() not in valid_log_levels:
            errors.append(
                f"log_level must be one of {sorted(valid_log_levels)}, "
                f"got '{self.log_level}'"
            )
        if self.texture_timeout_seconds < 1:
            errors.append("texture_timeout_seconds must be >= 1")

        errors.extend(_resize_errors("step.resize", self.step.resize))
        seen = set()
        for i, override in enumerate(self.step.per_texture_overrides):
            errors.extend(_resize_errors(f"step.per_texture_overrides[{i}].resize",
                                         override.resize))
            if override.name in seen:
                logger.warning(
                    "Duplicate per-texture override for '%s'; the first entry wins.",
                    override.name,
                )
            seen.add(override.name)
        errors.extend(self.step.encode_options.validation_errors("step.encode_options."))

        device = str(self.normalize.device).strip().lower()
        base, _, index = device.partition(":")
        if base not in {"auto", "cpu", "cuda"}:
            errors.append(
                f"normalize.device must be auto, cpu, cuda or cuda:N, got '{self.normalize.device}'"
            )
        elif index and (base != "cuda" or not index.isdigit()):
            errors.append(
                "normalize.device cuda index must be a non-negative integer "
                f"(e.g. 'cuda:0'), got '{self.normalize.device}'"
            )
        if self.normalize.max_image_pixels < 0:
            errors.append("normalize.max_image_pixels must be >= 0 (0 = unlimited)")

        if self.encoder.tool_timeout_seconds < 1:
            errors.append("encoder.tool_timeout_seconds must be >= 1")
        if self.encoder.initial_capacity_mb < 1:
            errors.append("encoder.initial_capacity_mb must be >= 1")
        if self.encoder.max_capacity_mb < self.encoder.initial_capacity_mb:
            errors.append("encoder.max_capacity_mb must be >= initial_capacity_mb")

        if errors:
            raise ValueError(
                "Configuration validation failed:\n" +
                "\n".join(f"  - {e}" for e in errors)
            )


def _resize_errors(label: str, spec: ResizeSpec) -> List[str]:
    if spec.width < 1 or spec.height < 1:
        return [f"{label} must be positive, got {spec.width}x{spec.height}"]
    return []


def parse_overrides(items: Sequence[str]) -> List[TextureOverride]:
    """Parse ``NAME=WxH`` strings (CLI form) into overrides."""
    overrides = []
    for item in items:
        name, sep, box = str(item).rpartition("=")
        if not sep or not name:
            raise ValueError(f"Override must look like NAME=WIDTHxHEIGHT, got '{item}'")
        overrides.append(TextureOverride(name, ResizeSpec.coerce(box)))
    return overrides


# Fields whose YAML form is not the dataclass itself.
_COERCED_FIELDS = {
    "resize": ResizeSpec.coerce,
    "per_texture_overrides": lambda v: [TextureOverride.coerce(i) for i in v],
}


def _merge_dict_to_dataclass(obj, data: dict, _path: str = ""):
    for key, value in data.items():
        full_key = f"{_path}{key}"
        if not hasattr(obj, key):
            logger.warning("Unknown config key ignored: '%s'", full_key)
            continue
        field_val = getattr(obj, key)
        if key in _COERCED_FIELDS and value is not None:
            try:
                setattr(obj, key, _COERCED_FIELDS[key](value))
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning(
                    "Invalid value for '%s' (%r): %s. Using default value.",
                    full_key, value, exc,
                )
            continue
        if dataclasses.is_dataclass(field_val) and isinstance(value, dict):
            _merge_dict_to_dataclass(field_val, value, f"{full_key}.")
            continue
        if value is None:
            if field_val is not None:
                logger.warning(
                    "Config key '%s' is null but field default is %s. Using default value.",
                    full_key, type(field_val).__name__,
                )
            else:
                setattr(obj, key, None)
            continue
        expected_type = type(field_val)
        # Optional numeric fields default to None; accept any number.
        if field_val is None:
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                setattr(obj, key, value)
            else:
                logger.warning(
                    "Config type mismatch for '%s': expected a number, got %s (%r). "
                    "Using default value.", full_key, type(value).__name__, value,
                )
            continue
        if (not isinstance(value, expected_type)
                and not (expected_type is float and isinstance(value, int))
                and not (expected_type is int and isinstance(value, float)
                         and value == int(value))):
            logger.warning(
                "Config type mismatch for '%s': expected %s, got %s (%r). "
                "Using default value.",
                full_key, expected_type.__name__, type(value).__name__, value,
            )
            continue
        if expected_type is int and isinstance(value, float):
            value = int(value)
        if isinstance(field_val, dict) and isinstance(value, dict):
            field_val.update(value)
        else:
            setattr(obj, key, value)
