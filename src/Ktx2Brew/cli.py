"""Command-line interface for the KTX2 texture compression step."""

import argparse
import logging
import os
import re
import sys

from .config import EncodeOptions, PipelineConfig, ResizeSpec, parse_overrides
from .core import ContextUnavailable, InitializationError, TEXTURE_ERRORS, setup_logging

logger = logging.getLogger("ktx2_pipeline")

_SCENE_EXTENSIONS = (".gltf", ".glb")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ktx2brew",
        description="Compress glTF textures to KTX2 / Basis Universal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ktx2brew -i scene.gltf -o out/scene.gltf
  ktx2brew -i scene.glb -o scene_ktx2.glb --resize 2048x2048
  ktx2brew -i scene.gltf -o out/scene.gltf --override hero_albedo=4096x4096
  ktx2brew -i scene.gltf -o out/scene.gltf --etc1s --quality 200
  ktx2brew -i scene.gltf --dry-run
  ktx2brew --generate-config
        """
    )
    parser.add_argument("--input", "-i", help="Input .gltf or .glb document")
    parser.add_argument("--output", "-o", help="Output .gltf or .glb document")
    parser.add_argument("--config", "-c", help="Path to config YAML")
    parser.add_argument("--resize", help="Global resize box, WIDTHxHEIGHT")
    parser.add_argument("--override", action="append", default=[], metavar="NAME=WxH",
                        help="Per-texture resize box (repeatable)")
    parser.add_argument("--etc1s", action="store_true",
                        help="Encode ETC1S instead of UASTC")
    parser.add_argument("--basis", action="store_true",
                        help="Write legacy .basis files instead of KTX2")
    parser.add_argument("--no-mipmaps", action="store_true")
    parser.add_argument("--quality", type=int, help="ETC1S quality level (1-255)")
    parser.add_argument("--device", help="Resize device: auto | cpu | cuda | cuda:N")
    parser.add_argument("--timeout", type=int, help="Per-texture timeout in seconds")
    parser.add_argument("--fail-fast", action="store_true",
                        help="Stop at the first texture that fails")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--generate-config", action="store_true",
                        help="Generate default config.yaml")
    parser.add_argument("--report", help="Write the batch report as JSON")
    parser.add_argument("--log-level",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    return parser


def _apply_overrides(config: PipelineConfig, args) -> None:
    if args.input:
        config.input_path = args.input
    if args.output:
        config.output_path = args.output
    if args.report:
        config.results_path = args.report
    if args.resize:
        config.step.resize = ResizeSpec.coerce(args.resize)
    if args.override:
        config.step.per_texture_overrides = (
            parse_overrides(args.override) + list(config.step.per_texture_overrides)
        )
    options: EncodeOptions = config.step.encode_options
    if args.etc1s:
        options.uastc = False
    if args.basis:
        options.ktx2 = False
    if args.no_mipmaps:
        options.generate_mipmaps = False
    if args.quality is not None:
        options.quality_level = args.quality
    if args.device:
        config.normalize.device = args.device
    if args.timeout is not None:
        config.texture_timeout_seconds = args.timeout
    if args.fail_fast:
        config.fail_fast = True
    if args.dry_run:
        config.dry_run = True
    if args.log_level:
        config.log_level = args.log_level


def main(argv=None):
    """Parse CLI arguments, run the compression step, and exit with its status."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.generate_config:
        config = PipelineConfig()
        dest = args.config or "config.yaml"
        if os.path.isdir(dest):
            dest = os.path.join(dest, "config.yaml")
        config.to_yaml(dest)
        logger.info("Generated default %s", dest)
        print(f"Generated default {dest}")
        return

    # Surface early validation warnings from from_yaml() on stderr.
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    if args.config:
        if not os.path.exists(args.config):
            logger.error("Config file not found: %s", args.config)
            print(f"Error: Config file not found: {args.config}")
            sys.exit(1)
        try:
            config = PipelineConfig.from_yaml(args.config)
        except ValueError as e:
            logger.error("Invalid config file '%s': %s", args.config, e)
            print(f"Error: Invalid config: {e}")
            sys.exit(1)
    else:
        config = PipelineConfig()

    if args.device and not re.fullmatch(r"(auto|cpu|cuda(?::\d+)?)", args.device):
        print(
            "Error: --device must be one of auto, cpu, cuda, or cuda:N "
            f"(got '{args.device}')"
        )
        logger.error("Invalid --device value '%s'", args.device)
        sys.exit(1)
    try:
        _apply_overrides(config, args)
    except ValueError as e:
        print(f"Error: {e}")
        logger.error(str(e))
        sys.exit(1)

    if not config.input_path or not os.path.isfile(config.input_path):
        logger.error("Input document invalid or not found: %s", config.input_path)
        print(f"Error: Input document not found: {config.input_path}")
        sys.exit(1)
    if os.path.splitext(config.input_path)[1].lower() not in _SCENE_EXTENSIONS:
        print(f"Error: Input must be a .gltf or .glb file: {config.input_path}")
        sys.exit(1)
    if not config.output_path and not config.dry_run:
        print("Error: --output is required unless --dry-run is set")
        sys.exit(1)

    log_file = None
    if config.output_path:
        out_dir = os.path.dirname(os.path.abspath(config.output_path))
        os.makedirs(out_dir, exist_ok=True)
        log_file = os.path.join(out_dir, "ktx2brew.log")
    setup_logging(config.log_level, log_file)

    try:
        config.validate()
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    from .pipeline import make_texture_compression_step
    from .scene.gltf import SceneDocument

    try:
        document = SceneDocument.load(config.input_path)
    except (OSError, ValueError) as e:
        logger.error("Failed to load %s: %s", config.input_path, e)
        print(f"Error: Failed to load {config.input_path}: {e}")
        sys.exit(1)

    step = make_texture_compression_step(config, show_progress=True)
    try:
        report = step(document)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user.")
        sys.exit(130)
    except (InitializationError, ContextUnavailable) as exc:
        logger.error("Texture compression aborted: %s", exc)
        print(f"Error: {exc}")
        sys.exit(2)
    except TEXTURE_ERRORS as exc:
        logger.error("Texture compression stopped (fail-fast): %s", exc)
        if config.results_path and step.last_report is not None:
            step.last_report.save(config.results_path)
        sys.exit(1)

    if config.results_path:
        report.save(config.results_path)
    if not config.dry_run:
        document.save(config.output_path)

    if not report.ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
