"""Tests for log file and console configuration."""
from __future__ import annotations

import io
import logging
import re

import pytest

from fleet_deploy.log_setup import ROOT_LOGGER, configure_logging, reset_logging

LINE = re.compile(r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] (debug|info|warning|error): .+$")


class TestConfigureLogging:

    @pytest.mark.unit
    def test_file_lines_have_timestamp_and_level(self, tmp_path):
        log_file = tmp_path / "deployment.log"
        configure_logging(log_file)
        log = logging.getLogger(f"{ROOT_LOGGER}.test")
        log.info("Found %d connected device(s)", 2)
        log.error("Error deploying app.apk to device a: boom")
        reset_logging()

        lines = log_file.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert all(LINE.match(line) for line in lines)
        assert lines[0].endswith("info: Found 2 connected device(s)")
        assert " error: " in lines[1]

    @pytest.mark.unit
    def test_appends_across_runs(self, tmp_path):
        log_file = tmp_path / "deployment.log"
        for message in ("first", "second"):
            configure_logging(log_file)
            logging.getLogger(ROOT_LOGGER).info(message)
            reset_logging()
        assert len(log_file.read_text(encoding="utf-8").splitlines()) == 2

    @pytest.mark.unit
    def test_creates_parent_directory(self, tmp_path):
        log_file = tmp_path / "logs" / "nested" / "deployment.log"
        configure_logging(log_file)
        logging.getLogger(ROOT_LOGGER).debug("hello")
        reset_logging()
        assert "debug: hello" in log_file.read_text(encoding="utf-8")

    @pytest.mark.unit
    def test_quiet_has_no_console_handler(self, tmp_path):
        logger = configure_logging(tmp_path / "x.log")
        assert len(logger.handlers) == 1

    @pytest.mark.unit
    def test_verbose_plain_stream(self, tmp_path):
        stream = io.StringIO()
        configure_logging(tmp_path / "x.log", verbose=True, stream=stream)
        logging.getLogger(ROOT_LOGGER).warning("Aborting...")
        assert "warning: Aborting..." in stream.getvalue()
        assert "\033[" not in stream.getvalue()

    @pytest.mark.unit
    def test_verbose_colour(self, tmp_path):
        stream = io.StringIO()
        configure_logging(tmp_path / "x.log", verbose=True, stream=stream, color=True)
        logging.getLogger(ROOT_LOGGER).error("boom")
        assert stream.getvalue().startswith("\033[1;31m")
        assert "error: boom" in stream.getvalue()

    @pytest.mark.unit
    def test_reconfigure_replaces_handlers(self, tmp_path):
        configure_logging(tmp_path / "a.log", verbose=True, stream=io.StringIO())
        logger = configure_logging(tmp_path / "b.log")
        assert len(logger.handlers) == 1
