"""Tests for logging setup."""

import logging
import os
import tempfile
import threading
import unittest
from unittest import mock

from Ktx2Brew.core.logging import _LOG_FORMAT, setup_logging


class TestSetupLogging(unittest.TestCase):
    def test_embedded_mode_only_touches_own_hierarchy(self):
        root = logging.getLogger()
        pipeline_logger = logging.getLogger("ktx2_pipeline")
        sentinel = logging.NullHandler()
        old_level = pipeline_logger.level
        with mock.patch.object(root, "handlers", [sentinel]):
            with tempfile.TemporaryDirectory() as tmpdir:
                log_file = os.path.join(tmpdir, "logs", "ktx2brew.log")
                setup_logging("DEBUG", log_file)
                files = []
                try:
                    self.assertEqual(root.handlers, [sentinel])
                    self.assertEqual(pipeline_logger.level, logging.DEBUG)
                    files = [
                        h for h in pipeline_logger.handlers
                        if getattr(h, "baseFilename", None) == os.path.abspath(log_file)
                    ]
                    self.assertEqual(len(files), 1)

                    setup_logging("DEBUG", log_file)
                    files_again = [
                        h for h in pipeline_logger.handlers
                        if getattr(h, "baseFilename", None) == os.path.abspath(log_file)
                    ]
                    self.assertEqual(len(files_again), 1)
                finally:
                    for handler in files:
                        pipeline_logger.removeHandler(handler)
                        handler.close()
                    pipeline_logger.setLevel(old_level)

    def test_invalid_level_falls_back_to_info(self):
        root = logging.getLogger()
        pipeline_logger = logging.getLogger("ktx2_pipeline")
        old_level = pipeline_logger.level
        with mock.patch.object(root, "handlers", [logging.NullHandler()]):
            setup_logging("CHATTY")
        try:
            self.assertEqual(pipeline_logger.level, logging.INFO)
        finally:
            pipeline_logger.setLevel(old_level)

    def test_format_names_the_worker_thread(self):
        record = logging.LogRecord("ktx2_pipeline", logging.INFO, __file__, 1, "hi", None, None)
        line = logging.Formatter(_LOG_FORMAT).format(record)
        self.assertIn(f"[T{threading.get_ident()}]", line)
