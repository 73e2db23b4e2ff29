"""Tests for the CLI logging setup."""

import logging
from collections.abc import Iterator

import pytest

from guest_runner._logging import LIBRARY_LOGGER_NAME, _ClickHandler, configure_logging, shutdown_logging


@pytest.fixture
def lib_logger() -> Iterator[logging.Logger]:
    logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    saved = logger.level
    yield logger
    shutdown_logging()
    logger.setLevel(saved)


def _click_handlers(logger: logging.Logger) -> list[logging.Handler]:
    return [h for h in logger.handlers if isinstance(h, _ClickHandler)]


class TestConfigureLogging:
    def test_idempotent(self, lib_logger: logging.Logger) -> None:
        configure_logging()
        configure_logging()
        assert len(_click_handlers(lib_logger)) == 1

    def test_quiet_wins_over_level(self, lib_logger: logging.Logger) -> None:
        configure_logging(level=logging.DEBUG, quiet=True)
        assert lib_logger.level == logging.ERROR

    def test_explicit_level(self, lib_logger: logging.Logger) -> None:
        configure_logging(level="DEBUG")
        assert lib_logger.level == logging.DEBUG

    def test_records_go_to_stderr(self, lib_logger: logging.Logger, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(level=logging.INFO)
        logging.getLogger("guest_runner.runner").info("Script uploaded to guest: %s", "/tmp/x.sh")

        err = capsys.readouterr().err
        assert "INFO" in err
        assert "guest_runner.runner - Script uploaded to guest: /tmp/x.sh" in err

    def test_shutdown_detaches(self, lib_logger: logging.Logger) -> None:
        configure_logging()
        shutdown_logging()
        assert _click_handlers(lib_logger) == []
