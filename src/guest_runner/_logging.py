"""Logging setup for guest-runner.

The library only attaches a NullHandler to the "guest_runner" logger; the
GUEST_RUNNER_LOG_LEVEL env var sets its level. The CLI calls
configure_logging() to print run progress on stderr:

    INFO [2026-02-25 10:02:54] guest_runner.runner - Script uploaded to guest: ...
"""

import logging
import os

import click

LIBRARY_LOGGER_NAME: str = "guest_runner"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level_value = logging.getLevelNamesMapping().get(os.environ.get("GUEST_RUNNER_LOG_LEVEL", "").strip().upper())
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_LEVEL_COLORS: dict[int, str] = {
    logging.WARNING: "yellow",
    logging.ERROR: "red",
    logging.CRITICAL: "red",
}


class _ClickHandler(logging.Handler):
    """Echo records to stderr, coloured by level (plain when not a TTY)."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(logging.Formatter("%(levelname)s [%(asctime)s] %(name)s - %(message)s", "%Y-%m-%d %H:%M:%S"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            color = _LEVEL_COLORS.get(record.levelno)
            click.echo(click.style(self.format(record), fg=color, dim=color is None), err=True)
        except Exception:  # noqa: BLE001
            self.handleError(record)


def get_logger(name: str) -> logging.Logger:
    """Logger for a guest_runner module (child of the library logger)."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Attach the stderr handler (once) and set the level.

    quiet wins over level; with neither, an unset level becomes INFO.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    if not any(isinstance(h, _ClickHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_ClickHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
    elif lib_logger.level == logging.NOTSET:
        lib_logger.setLevel(logging.INFO)


def shutdown_logging() -> None:
    """Detach the handler installed by configure_logging()."""
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    for handler in [h for h in lib_logger.handlers if isinstance(h, _ClickHandler)]:
        lib_logger.removeHandler(handler)
        handler.close()
