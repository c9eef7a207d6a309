# SPDX-License-Identifier: LGPL-3.0-or-later
import json
import logging

import pytest

from winbuilder.core.logger import TRACE, JsonFormatter, Log
from winbuilder.core.logging_utils import log_step, safe_logger


@pytest.mark.unit
class TestLogSetup:

    def test_levels_from_flags(self):
        assert Log._level_from_flags(0, 0) == logging.INFO
        assert Log._level_from_flags(2, 0) == logging.DEBUG
        assert Log._level_from_flags(3, 0) == TRACE
        assert Log._level_from_flags(3, 1) == logging.WARNING
        assert Log._level_from_flags(0, 2) == logging.ERROR

    def test_setup_replaces_handlers(self, tmp_path):
        log_file = tmp_path / "build.log"

        lg = Log.setup(0, str(log_file), logger_name="winbuilder-test")
        Log.setup(0, str(log_file), logger_name="winbuilder-test")
        lg.info("hello")
        for h in lg.handlers:
            h.flush()

        assert len([h for h in lg.handlers if isinstance(h, logging.FileHandler)]) == 1
        assert "hello" in log_file.read_text(encoding="utf-8")

    def test_json_formatter(self):
        rec = logging.LogRecord("winbuilder", logging.WARNING, __file__, 1, "vm %s", ("build",), None)

        data = json.loads(JsonFormatter().format(rec))

        assert data["msg"] == "vm build"
        assert data["level"] == "WARNING"


@pytest.mark.unit
class TestSafeLogger:

    def test_passes_through_logger_like_objects(self, fake_logger):
        assert safe_logger(fake_logger) is fake_logger

    def test_none_falls_back_to_project_logger(self):
        assert safe_logger(None).name == "winbuilder"

    def test_object_without_methods_is_replaced(self):
        assert isinstance(safe_logger(object()), logging.Logger)

    def test_log_step_reraises(self, fake_logger):
        with pytest.raises(ValueError):
            with log_step(fake_logger, "Creating disk"):
                raise ValueError("no space")

        assert any("Creating disk failed" in m for m in fake_logger.messages("error"))
