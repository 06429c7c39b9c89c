"""
Tests for memory checks and logging setup.
"""

import logging

from dical.core.logging_utils import setup_logging
from dical.core.memory import check_memory, estimate_calibration_memory_gb


class TestMemory:
    """Test memory estimates."""

    def test_estimate_scales(self):
        small = estimate_calibration_memory_gb(10, 8128, 24, 1, 128)
        large = estimate_calibration_memory_gb(20, 8128, 24, 1, 128)
        assert large > small > 0

    def test_warns_over_limit(self, caplog):
        with caplog.at_level(logging.WARNING, logger="dical"):
            check_memory(1000, 8128, 768, 10, 128, memory_limit_gb=0.001)
        assert any("GB" in rec.getMessage() for rec in caplog.records)


class TestLogging:
    """Test logger setup."""

    def test_file_handler(self, tmp_path):
        logger = setup_logging(str(tmp_path), level="INFO", use_rich=False)
        try:
            logger.info("solver started")
            for handler in logger.handlers:
                handler.flush()
            log_files = list(tmp_path.glob("dical_run_*.log"))
            assert len(log_files) == 1
            assert "solver started" in log_files[0].read_text()
        finally:
            for handler in list(logger.handlers):
                handler.close()
            logger.handlers.clear()

    def test_rich_console(self):
        logger = setup_logging(use_rich=True)
        try:
            assert logger.name == "dical"
            assert len(logger.handlers) == 1
        finally:
            logger.handlers.clear()
