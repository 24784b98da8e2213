"""Tests for the batch texture compression step."""

import json
import os
import tempfile
import time
import unittest
from unittest import mock

from Ktx2Brew import make_texture_compression_step as lazy_factory
from Ktx2Brew.config import PipelineConfig, StepConfig, TextureOverride, ResizeSpec
from Ktx2Brew.core import ktx2
from Ktx2Brew.core.errors import EncodeError, InitializationError, TextureTimeoutError
from Ktx2Brew.phases.normalize import CpuResizeContext
from Ktx2Brew.pipeline import TextureCompressionStep, make_texture_compression_step, run
from Ktx2Brew.scene.gltf import KHR_TEXTURE_BASISU, SceneDocument

from conftest import EngineFactory, make_png, write_gltf


class _PipelineTestBase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmpdir = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def load(self, images):
        return SceneDocument.load(write_gltf(self.tmpdir, images))

    def make_step(self, config=None, **engine_kwargs):
        factory = EngineFactory(**engine_kwargs)
        step = make_texture_compression_step(
            config, engine_factory=factory, resize_context=CpuResizeContext(),
        )
        return step, factory


class TestStepSurface(_PipelineTestBase):
    def test_step_is_named_callable(self):
        step = make_texture_compression_step({"resize": (512, 512)})
        self.assertEqual(step.name, "texture_compress_ktx2")
        self.assertTrue(callable(step))
        self.assertEqual(step.step_config.resize, ResizeSpec(512, 512))

    def test_package_level_factory(self):
        step = lazy_factory(StepConfig(resize=ResizeSpec(256, 256)))
        self.assertIsInstance(step, TextureCompressionStep)
        self.assertEqual(step.step_config.resize.as_tuple(), (256, 256))

    def test_invalid_mapping_config_rejected(self):
        with self.assertRaises(ValueError) as cm:
            make_texture_compression_step({
                "resize": (0, 0),
                "encode_options": {"quality_level": 999},
            })
        message = str(cm.exception)
        self.assertIn("step.resize", message)
        self.assertIn("quality_level", message)

    def test_invalid_run_arguments_rejected_before_encoding(self):
        doc = self.load([("albedo", "bar.png", make_png(8, 8))])
        step, factory = self.make_step()
        with self.assertRaises(ValueError):
            step.run(doc, (0, 64))
        self.assertEqual(factory.engines, [])
        self.assertEqual(doc.get_texture("albedo").uri, "bar.png")
        self.assertNotIn("extensionsRequired", doc.gltf)

    def test_pipeline_config_runtime_settings_kept(self):
        cfg = PipelineConfig(fail_fast=True)
        step = make_texture_compression_step(cfg)
        self.assertTrue(step.pipeline_config.fail_fast)


class TestBatchRun(_PipelineTestBase):
    def test_end_to_end_single_texture(self):
        doc = self.load([("albedo", "foo/bar.png", make_png(400, 200))])
        step, factory = self.make_step({"resize": (512, 512)})
        report = step(doc)

        record = doc.get_texture("albedo")
        header = ktx2.parse_header(record.image)
        self.assertEqual((header.width, header.height), (512, 256))
        self.assertEqual(record.mime_type, "image/ktx2")
        self.assertEqual(record.uri, "bar.ktx2")
        self.assertIn(KHR_TEXTURE_BASISU, doc.extensions_required)
        self.assertEqual(report.compressed, ["albedo"])
        outcome = report.get("albedo")
        self.assertEqual((outcome.width, outcome.height), (512, 256))
        self.assertEqual(outcome.resize, (512, 512))
        self.assertEqual(len(factory.engines), 1)
        self.assertTrue(factory.engines[0].deleted)

    def test_fractional_fit_rounds_to_square(self):
        doc = self.load([("albedo", "bar.png", make_png(300, 200))])
        step, _ = self.make_step({"resize": (512, 512)})
        step(doc)
        header = ktx2.parse_header(doc.get_texture("albedo").image)
        self.assertEqual((header.width, header.height), (512, 512))

    def test_per_texture_override_by_name(self):
        doc = self.load([
            ("hero", "hero.png", make_png(64, 64)),
            ("prop", "prop.png", make_png(64, 64)),
        ])
        step, factory = self.make_step({
            "resize": (128, 128),
            "per_texture_overrides": [
                {"name": "hero", "resize": (1024, 1024)},
                {"name": "hero", "resize": (16, 16)},
            ],
        })
        report = step(doc)
        self.assertEqual(report.get("hero").width, 1024)
        self.assertEqual(report.get("prop").width, 128)
        self.assertEqual(len(factory.engines), 1)

    def test_missing_image_is_skipped(self):
        doc = self.load([
            ("gone", "gone.png", None),
            ("ok", "ok.png", make_png(8, 8)),
        ])
        step, _ = self.make_step({"resize": (8, 8)})
        with self.assertLogs("ktx2_pipeline", level="WARNING") as cm:
            report = step(doc)
        self.assertTrue(any("gone" in line for line in cm.output))
        self.assertEqual(report.skipped, ["gone"])
        self.assertEqual(report.compressed, ["ok"])
        gone = doc.get_texture("gone")
        self.assertEqual(gone.uri, "gone.png")
        self.assertEqual(gone.mime_type, "")

    def test_failures_isolated_by_default(self):
        doc = self.load([
            ("a", "a.png", make_png(8, 8)),
            ("b", "b.png", make_png(64, 64)),
            ("c", "c.png", make_png(8, 8)),
        ])
        step, factory = self.make_step(
            {"resize": (64, 64), "per_texture_overrides": [{"name": "b", "resize": (256, 256)}]},
            fail_when=lambda w, h: w == 256,
        )
        report = step(doc)
        self.assertEqual(report.compressed, ["a", "c"])
        self.assertEqual(report.failed, ["b"])
        self.assertFalse(report.ok)
        self.assertEqual(doc.get_texture("b").uri, "b.png")
        self.assertEqual(doc.get_texture("b").image, make_png(64, 64))
        self.assertTrue(factory.engines[0].deleted)

    def test_fail_fast_keeps_committed_records(self):
        doc = self.load([
            ("first", "first.png", make_png(8, 8)),
            ("second", "second.png", make_png(64, 64)),
            ("third", "third.png", make_png(8, 8)),
        ])
        cfg = PipelineConfig(fail_fast=True)
        cfg.step = StepConfig(
            resize=ResizeSpec(64, 64),
            per_texture_overrides=[TextureOverride("second", ResizeSpec(256, 256))],
        )
        step, factory = self.make_step(cfg, fail_when=lambda w, h: w == 256)
        with self.assertRaises(EncodeError):
            step(doc)
        self.assertEqual(doc.get_texture("first").mime_type, "image/ktx2")
        self.assertEqual(doc.get_texture("first").uri, "first.ktx2")
        self.assertEqual(doc.get_texture("third").uri, "third.png")
        self.assertEqual(step.last_report.failed, ["second"])
        self.assertTrue(factory.engines[0].deleted)

    def test_corrupt_image_recorded_as_failed(self):
        doc = self.load([("bad", "bad.png", b"definitely not a png")])
        step, _ = self.make_step()
        report = step(doc)
        self.assertEqual(report.failed, ["bad"])
        self.assertIn("corrupt", report.get("bad").reason)

    def test_initialization_failure_aborts(self):
        doc = self.load([("a", "a.png", make_png(8, 8))])
        step, _ = self.make_step(fail_init=True)
        with self.assertRaises(InitializationError):
            step(doc)
        self.assertEqual(doc.get_texture("a").uri, "a.png")

    def test_timeout_abandons_and_recreates_session(self):
        doc = self.load([("slow", "slow.png", make_png(8, 8))])
        cfg = PipelineConfig(texture_timeout_seconds=1)
        step, factory = self.make_step(cfg, encode_delay=1.5)
        report = step(doc)
        self.assertEqual(report.failed, ["slow"])
        self.assertIn("Timed out", report.get("slow").reason)
        self.assertEqual(len(factory.engines), 2)
        self.assertTrue(factory.engines[1].deleted)
        self.assertEqual(doc.get_texture("slow").uri, "slow.png")

    def test_fail_fast_timeout_returns_without_waiting_for_encode(self):
        doc = self.load([
            ("slow", "slow.png", make_png(8, 8)),
            ("after", "after.png", make_png(8, 8)),
        ])
        cfg = PipelineConfig(texture_timeout_seconds=1, fail_fast=True)
        step, factory = self.make_step(cfg, encode_delay=4.0)
        started = time.monotonic()
        with self.assertRaises(TextureTimeoutError):
            step(doc)
        self.assertLess(time.monotonic() - started, 3.0)
        self.assertEqual(step.last_report.failed, ["slow"])
        self.assertEqual(len(factory.engines), 1)
        self.assertEqual(doc.get_texture("after").uri, "after.png")

        engine = factory.engines[0]
        deadline = time.monotonic() + 10
        while not engine.deleted and time.monotonic() < deadline:
            time.sleep(0.1)
        self.assertTrue(engine.deleted)

    def test_resample_failure_isolated_to_texture(self):
        class _OutOfMemoryOnLarge:
            name = "flaky"

            def resize(self, raster, width, height):
                if raster.width > 32:
                    raise RuntimeError("CUDA out of memory")
                return CpuResizeContext().resize(raster, width, height)

            def close(self):
                pass

        doc = self.load([
            ("big", "big.png", make_png(64, 64)),
            ("ok", "ok.png", make_png(8, 8)),
        ])
        step = make_texture_compression_step(
            {"resize": (64, 64)}, engine_factory=EngineFactory(),
            resize_context=_OutOfMemoryOnLarge(),
        )
        report = step(doc)
        self.assertEqual(report.failed, ["big"])
        self.assertEqual(report.compressed, ["ok"])
        self.assertIn("CUDA out of memory", report.get("big").reason)
        self.assertEqual(doc.get_texture("big").uri, "big.png")

    def test_owned_resize_context_closed_when_session_fails(self):
        doc = self.load([("a", "a.png", make_png(8, 8))])
        context = mock.Mock()
        context.name = "owned"
        step = make_texture_compression_step(engine_factory=EngineFactory(fail_init=True))
        with mock.patch("Ktx2Brew.pipeline.create_resize_context", return_value=context):
            with self.assertRaises(InitializationError):
                step(doc)
        context.close.assert_called_once()

    def test_data_uri_not_rewritten(self):
        doc = self.load([("embedded", None, make_png(8, 8))])
        step, _ = self.make_step({"resize": (8, 8)})
        step(doc)
        record = doc.get_texture("embedded")
        self.assertIsNone(record.uri)
        self.assertEqual(record.mime_type, "image/ktx2")

    def test_preserve_uri_directories(self):
        doc = self.load([("albedo", "foo/bar.png", make_png(8, 8))])
        cfg = PipelineConfig(preserve_uri_directories=True)
        step, _ = self.make_step(cfg)
        step(doc)
        self.assertEqual(doc.get_texture("albedo").uri, "foo/bar.ktx2")

    def test_basis_container(self):
        doc = self.load([("albedo", "bar.png", make_png(8, 8))])
        step, factory = self.make_step({"encode_options": {"ktx2": False, "uastc": False}})
        step(doc)
        record = doc.get_texture("albedo")
        self.assertEqual(record.mime_type, "image/x-basis")
        self.assertEqual(record.uri, "bar.basis")
        self.assertFalse(factory.engines[0].settings["set_create_ktx2_file"])

    def test_png_source_used_when_no_resize_needed(self):
        png = make_png(16, 8)
        doc = self.load([("albedo", "bar.png", png)])
        step, factory = self.make_step(
            {"resize": (16, 16), "encode_options": {"source_type": "png"}},
        )
        step(doc)
        buffer, width, height, _ = factory.engines[0].slice
        self.assertEqual(buffer, png)

    def test_dry_run_touches_nothing(self):
        doc = self.load([("albedo", "bar.png", make_png(8, 8))])
        step, factory = self.make_step(PipelineConfig(dry_run=True))
        report = step(doc)
        self.assertEqual(factory.engines, [])
        self.assertEqual(doc.get_texture("albedo").uri, "bar.png")
        self.assertNotIn("extensionsRequired", doc.gltf)
        self.assertEqual(report.skipped, ["albedo"])

    def test_run_arguments_override_config(self):
        doc = self.load([("albedo", "bar.png", make_png(64, 64))])
        step, _ = self.make_step({"resize": (1024, 1024)})
        report = step.run(doc, (32, 32), [], {"generate_mipmaps": False})
        self.assertEqual(report.get("albedo").width, 32)

    def test_module_run_helper(self):
        doc = self.load([("albedo", "bar.png", make_png(64, 64))])
        factory = EngineFactory()
        report = run(doc, (16, 16), engine_factory=factory,
                     resize_context=CpuResizeContext())
        self.assertEqual(report.get("albedo").width, 16)

    def test_report_saved_as_json(self):
        doc = self.load([("albedo", "bar.png", make_png(8, 8))])
        step, _ = self.make_step()
        report = step(doc)
        path = os.path.join(self.tmpdir, "reports", "report.json")
        report.save(path)
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        self.assertEqual(data["step"], "texture_compress_ktx2")
        self.assertEqual(data["compressed"], ["albedo"])
        self.assertEqual(data["textures"][0]["resize"], [1024, 1024])

    def test_saved_document_round_trip(self):
        doc = self.load([("albedo", "foo/bar.png", make_png(40, 20))])
        step, _ = self.make_step({"resize": (64, 64)})
        step(doc)
        out = os.path.join(self.tmpdir, "out", "scene.gltf")
        doc.save(out)
        reloaded = SceneDocument.load(out)
        record = reloaded.get_texture("albedo")
        self.assertEqual(record.uri, "bar.ktx2")
        self.assertTrue(ktx2.is_ktx2(record.image))
        texture = reloaded.gltf["textures"][0]
        self.assertEqual(texture["extensions"][KHR_TEXTURE_BASISU]["source"], 0)
