from __future__ import annotations

import logging
from typing import Any, TextIO

TRACE = 5


class CustomLogger(logging.Logger):
    def trace(self, message: object, *args: Any, stacklevel: int = 1, **kwargs: Any) -> None:
        if self.isEnabledFor(TRACE):
            self._log(TRACE, message, args, **kwargs, stacklevel=stacklevel + 1)


logging.setLoggerClass(CustomLogger)
logging.addLevelName(TRACE, "TRACE")


class ColoredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        colors = {
            TRACE: "\033[0;37m",
            logging.DEBUG: "\033[0m",
            logging.INFO: "\033[34m",
            logging.WARNING: "\033[1;33m",
            logging.ERROR: "\033[1;31m",
            logging.CRITICAL: "\033[1;37;41m",
        }
        c = colors.get(record.levelno, "\033[0m")
        record.elapsed = f"{record.relativeCreated / 1000.0:8.3f}"  # type: ignore[attr-defined]
        record.msg = f"{c}{record.msg}\033[0m"
        record.levelname = f"{c}{record.levelname:<8}\033[0m"
        return super().format(record)


def get_logger(name: str) -> CustomLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def setup_logging(level: str | int = logging.INFO) -> CustomLogger:
    """Attach the colored console handler to the ``prism`` logger.

    Safe to call more than once; the handler is only added the first time.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    root: CustomLogger = get_logger("prism")
    root.setLevel(level)
    root.propagate = False

    if not any(getattr(h, "_prism", False) for h in root.handlers):
        handler: logging.StreamHandler[TextIO] = logging.StreamHandler()
        handler.setLevel(TRACE)
        handler.setFormatter(
            ColoredFormatter(
                "%(elapsed)s | %(levelname)-8s | %(filename)s | %(funcName)s[%(lineno)d] | %(message)s"
            )
        )
        handler._prism = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    return root
