"""Compress every texture of a scene document to KTX2 / Basis Universal.

`TextureCompressionStep` owns one encoder session per batch, normalizes and
transcodes textures one at a time, commits successful payloads back into
the document, and folds per-texture results into a `BatchReport`.
"""

import dataclasses
import io
import logging
import threading
import time
from queue import Empty, Queue
from typing import Callable, Iterable, Optional, Sequence

from PIL import Image
from tqdm import tqdm

from .codec.basisu import BasisuCliEngine
from .codec.session import EncoderSession, EngineFactory, create_session
from .config import (
    EncodeOptions, PipelineConfig, ResizeSpec, StepConfig, TextureOverride,
)
from .core.errors import TEXTURE_ERRORS, TextureTimeoutError
from .core.paths import rewrite_texture_uri
from .core.raster import ImageDecoder
from .core.records import (
    STATUS_COMPRESSED, STATUS_FAILED, STATUS_SKIPPED,
    BatchReport, TextureOutcome, format_size_change,
)
from .phases.normalize import RasterNormalizer, ResizeContext, create_resize_context
from .phases.transcode import MIB, transcode
from .scene.gltf import KHR_TEXTURE_BASISU, TextureRecord

logger = logging.getLogger("ktx2_pipeline")

STEP_NAME = "texture_compress_ktx2"


def _png_size(data: bytes):
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.format == "PNG":
                return img.size
    except (OSError, ValueError):
        pass
    return None


class TextureCompressionStep:
    """Named, document-mutating texture compression step.

    Calling the step with a scene document runs `run` with the configured
    resize box, per-texture overrides and encode options.
    """

    name = STEP_NAME

    def __init__(
        self,
        config=None,
        engine_factory: Optional[EngineFactory] = None,
        resize_context: Optional[ResizeContext] = None,
        image_decoder: Optional[ImageDecoder] = None,
        show_progress: bool = False,
    ):
        if isinstance(config, PipelineConfig):
            self.pipeline_config = config
        else:
            self.pipeline_config = PipelineConfig(step=StepConfig.coerce(config))
        self.pipeline_config.validate()
        self.step_config = self.pipeline_config.step
        self.engine_factory = engine_factory or self._default_engine_factory
        self.resize_context = resize_context
        self.image_decoder = image_decoder
        self.show_progress = show_progress
        self.last_report: Optional[BatchReport] = None

    def _default_engine_factory(self):
        tool = self.pipeline_config.encoder
        return BasisuCliEngine(
            tool_path=tool.tool_path,
            timeout_seconds=tool.tool_timeout_seconds,
            keep_work_dir=tool.keep_work_dir,
        )

    def __call__(self, document) -> BatchReport:
        return self.run(document)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"

    @staticmethod
    def _run_with_timeout(label: str, fn: Callable, timeout_seconds: float):
        """Run ``fn`` in a daemon worker thread with a hard timeout."""
        result_queue: Queue = Queue(maxsize=1)

        def _worker():
            try:
                result_queue.put(("ok", fn()))
            except BaseException as exc:  # pragma: no cover - exercised via caller path
                result_queue.put(("err", exc))

        worker = threading.Thread(target=_worker, name=f"{STEP_NAME}:{label}", daemon=True)
        worker.start()
        worker.join(timeout_seconds)
        if worker.is_alive():
            raise TextureTimeoutError(f"Timed out after {timeout_seconds}s on {label}")

        try:
            status, payload = result_queue.get_nowait()
        except Empty as exc:
            raise RuntimeError(
                f"{STEP_NAME} worker finished without returning a result for {label}"
            ) from exc
        if status == "err":
            raise payload
        return payload

    def _compress_one(self, record: TextureRecord, box: ResizeSpec,
                      normalizer: RasterNormalizer, session: EncoderSession,
                      options: EncodeOptions):
        raster = normalizer.normalize(record.image, box.as_tuple())
        png_source = None
        if options.source_type == "png":
            if _png_size(record.image) == (raster.width, raster.height):
                png_source = record.image
            else:
                logger.debug("%s: resized, encoding the raw raster instead of the PNG",
                             record.label)
        encoder = self.pipeline_config.encoder
        payload = transcode(
            session, raster,
            initial_capacity=encoder.initial_capacity_mb * MIB,
            max_capacity=encoder.max_capacity_mb * MIB,
            png_source=png_source,
        )
        return raster, payload

    def _commit(self, record: TextureRecord, payload: bytes, options: EncodeOptions):
        record.image = payload
        record.mime_type = options.container_mime_type
        if record.uri:
            record.uri = rewrite_texture_uri(
                record.uri, options.container_extension,
                preserve_directories=self.pipeline_config.preserve_uri_directories,
            )

    def run(
        self,
        document,
        global_resize=None,
        per_texture_overrides: Optional[Iterable] = None,
        encode_options=None,
    ) -> BatchReport:
        """Compress every texture of ``document`` in place.

        Arguments left as None fall back to the step configuration.
        Texture-local failures are recorded and skipped unless
        ``fail_fast`` is set; engine and resize-context failures abort.
        """
        cfg = self.pipeline_config
        step = StepConfig(
            resize=ResizeSpec.coerce(
                global_resize if global_resize is not None else self.step_config.resize
            ),
            encode_options=EncodeOptions.merged(
                encode_options if encode_options is not None
                else self.step_config.encode_options
            ),
            per_texture_overrides=[
                TextureOverride.coerce(o) for o in (
                    per_texture_overrides if per_texture_overrides is not None
                    else self.step_config.per_texture_overrides
                )
            ],
        )
        dataclasses.replace(cfg, step=step).validate()
        options = step.encode_options
        report = BatchReport(step=self.name)
        self.last_report = report
        textures = document.list_textures()

        if cfg.dry_run:
            for record in textures:
                box = step.resize_for(record.name)
                if record.image is None:
                    logger.warning("[dry-run] %s: no image data, would skip", record.label)
                    report.add(TextureOutcome(record.name, STATUS_SKIPPED, "no image"))
                    continue
                logger.info("[dry-run] %s: would compress into %dx%d box (%s)",
                            record.label, box.width, box.height,
                            options.container_extension)
                report.add(TextureOutcome(
                    record.name, STATUS_SKIPPED, "dry run", resize=box.as_tuple(),
                    input_bytes=len(record.image), uri=record.uri,
                ))
            logger.info(report.summary())
            return report

        document.require_extension(KHR_TEXTURE_BASISU, required=True)

        context = self.resize_context
        owns_context = context is None
        if owns_context:
            context = create_resize_context(cfg.normalize.device)
        normalizer = RasterNormalizer(
            context, max_image_pixels=cfg.normalize.max_image_pixels,
            image_decoder=self.image_decoder,
        )
        session = None
        try:
            session = create_session(options, self.engine_factory)
            for record in tqdm(textures, desc="Compressing textures",
                               disable=not self.show_progress):
                box = step.resize_for(record.name)
                if record.image is None:
                    logger.warning("%s: texture has no image data; skipping", record.label)
                    report.add(TextureOutcome(record.name, STATUS_SKIPPED, "no image",
                                              resize=box.as_tuple()))
                    continue

                input_bytes = len(record.image)
                started = time.monotonic()
                try:
                    raster, payload = self._run_with_timeout(
                        record.label,
                        lambda: self._compress_one(record, box, normalizer, session, options),
                        cfg.texture_timeout_seconds,
                    )
                except TEXTURE_ERRORS as exc:
                    elapsed = time.monotonic() - started
                    logger.error("%s: %s", record.label, exc)
                    report.add(TextureOutcome(
                        record.name, STATUS_FAILED, str(exc), resize=box.as_tuple(),
                        input_bytes=input_bytes, uri=record.uri, elapsed_seconds=elapsed,
                    ))
                    if isinstance(exc, TextureTimeoutError):
                        session.abandon()
                        if cfg.fail_fast:
                            raise
                        session = create_session(options, self.engine_factory)
                    elif cfg.fail_fast:
                        raise
                    continue

                self._commit(record, payload, options)
                elapsed = time.monotonic() - started
                outcome = report.add(TextureOutcome(
                    record.name, STATUS_COMPRESSED, resize=box.as_tuple(),
                    width=raster.width, height=raster.height,
                    input_bytes=input_bytes, output_bytes=len(payload),
                    uri=record.uri, elapsed_seconds=elapsed,
                ))
                logger.info(
                    "%s: %dx%d -> %s (%s, %.2fs)", record.label,
                    outcome.width, outcome.height, options.container_extension,
                    format_size_change(input_bytes, len(payload)), elapsed,
                )
        finally:
            if session is not None:
                session.release()
            if owns_context:
                normalizer.close()

        log = logger.warning if report.failed else logger.info
        log(report.summary())
        return report


def make_texture_compression_step(config=None, **kwargs) -> TextureCompressionStep:
    """Return the ``texture_compress_ktx2`` step for ``config``.

    ``config`` may be a `StepConfig`, a `PipelineConfig`, a mapping such as
    ``{"resize": (512, 512), "encode_options": {"uastc": False}}``, or None.
    Keyword arguments are forwarded to `TextureCompressionStep`.
    """
    return TextureCompressionStep(config, **kwargs)


def run(document, global_resize, per_texture_overrides: Sequence = (),
        encode_options=None, **kwargs) -> BatchReport:
    """One-shot batch run with default runtime settings."""
    return TextureCompressionStep(**kwargs).run(
        document, global_resize, list(per_texture_overrides), encode_options,
    )
