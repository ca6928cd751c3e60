"""Tests for logging set-up, run manifests and numeric helpers."""

import json
import logging

import numpy as np
import pytest
from mpmath import mpf, workdps

from perturbzoom.util.logging_setup import configure_root_logging, get_logger, log_duration, parse_level
from perturbzoom.util.manifest import build_manifest, manifest_path_for, write_manifest
from perturbzoom.util.numeric import LONGDOUBLE_IS_WIDER, row_bands, to_longdouble


class TestLogging:
    def test_child_loggers(self):
        assert get_logger().name == "perturbzoom"
        assert get_logger("probe").name == "perturbzoom.probe"

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "run.log"
        logger = configure_root_logging(level=logging.DEBUG, console=False, log_file=str(log_file))
        try:
            get_logger("grid").info("Grid start %sx%s", 4, 3)
            for handler in logger.handlers:
                handler.flush()
            text = log_file.read_text(encoding="utf-8")
        finally:
            configure_root_logging(level=logging.INFO, console=False, log_file=None)

        assert "perturbzoom.grid - Grid start 4x3" in text
        assert " INFO " in text


class TestLevelsAndTiming:
    def test_parse_level(self):
        assert parse_level("debug") == logging.DEBUG
        assert parse_level(" WARNING ") == logging.WARNING

    def test_parse_level_rejects_unknown(self):
        with pytest.raises(ValueError):
            parse_level("verbose")

    def test_log_duration(self):
        records = []
        handler = logging.Handler()
        handler.emit = records.append
        logger = get_logger("timing")
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        try:
            with log_duration(logger, "Grid"):
                pass
        finally:
            logger.removeHandler(handler)
            logger.setLevel(logging.NOTSET)

        messages = [r.getMessage() for r in records]
        assert messages[0] == "Grid start"
        assert messages[1].startswith("Grid took ")


class TestManifest:
    def test_round_trip(self, tmp_path):
        manifest = build_manifest(
            settings={"width": 8, "center": ["-0.5", "0"]},
            renderer_info={"tier": "raw-32", "backend": "numpy"},
            result={"escaped_pixels": 3},
            commit="abc123",
        )
        path = str(tmp_path / "nested" / "frame.json")
        write_manifest(path, manifest)
        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        assert data["settings"]["center"] == ["-0.5", "0"]
        assert data["renderer"]["tier"] == "raw-32"
        assert data["git"]["commit"] == "abc123"
        assert data["result"]["escaped_pixels"] == 3
        assert "numpy" in data["packages"]
        assert "mpmath" in data["packages"]

    def test_manifest_path(self):
        assert manifest_path_for("renders/deep.png") == "renders/deep.json"


class TestNumeric:
    def test_row_bands_cover_height(self):
        assert row_bands(10, 4) == [(0, 4), (4, 8), (8, 10)]
        assert row_bands(3, 0) == [(0, 1), (1, 2), (2, 3)]
        assert row_bands(0, 8) == []

    def test_to_longdouble(self):
        with workdps(50):
            assert to_longdouble(mpf("0.5")) == np.longdouble(0.5)
            assert to_longdouble(mpf(0)) == 0
            tiny = to_longdouble(mpf("1e-400"))
        assert isinstance(tiny, np.longdouble)
        if LONGDOUBLE_IS_WIDER:
            assert tiny > 0
