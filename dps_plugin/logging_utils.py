from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Optional, Union

LOGGER_NAME = "DpsBar"
PAYLOAD_LOGGER_NAME = "DpsBar.Payloads"
LOG_TAG = "DpsBar"
PAYLOAD_LOG_FILENAME = "dpsbar-payloads.log"

HostLogSink = Union[logging.Logger, Callable[[str], None]]


class HostLogHandler(logging.Handler):
    """Logging bridge that forwards plugin records to the host's diagnostics sink."""

    def __init__(self, sink: Optional[HostLogSink] = None) -> None:
        super().__init__()
        self.sink = sink

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        sink = self.sink
        if isinstance(sink, logging.Logger):
            try:
                if sink.isEnabledFor(record.levelno):
                    sink.log(record.levelno, message)
                return
            except Exception:
                pass
        elif callable(sink):
            try:
                sink(message)
                return
            except Exception:
                pass
        root_logger = logging.getLogger()
        if root_logger.isEnabledFor(record.levelno):
            root_logger.log(record.levelno, message)


def configure_plugin_logger(sink: Optional[HostLogSink] = None, *, level: int = logging.INFO) -> logging.Logger:
    """Install (or retarget) the host bridge on the plugin logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    bridge = next((handler for handler in logger.handlers if isinstance(handler, HostLogHandler)), None)
    if bridge is None:
        bridge = HostLogHandler(sink)
        bridge.setFormatter(logging.Formatter(f"[%(asctime)s] [{LOG_TAG}] %(message)s", "%H:%M:%S"))
        logger.addHandler(bridge)
    else:
        bridge.sink = sink
    logger.propagate = False
    return logger


def build_rotating_file_handler(
    log_dir: Path,
    filename: str,
    *,
    retention: int = 5,
    max_bytes: int = 512 * 1024,
    formatter: Optional[logging.Formatter] = None,
) -> logging.Handler:
    """Construct a rotating file handler for raw payload capture."""
    retention = max(1, retention)
    backup_count = max(0, retention - 1)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / filename,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    if formatter is not None:
        handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    return handler


def configure_payload_logger(
    log_dir: Optional[Path],
    *,
    enabled: bool,
    retention: int = 5,
    max_bytes: int = 512 * 1024,
) -> Optional[logging.Logger]:
    """Attach a rotating capture file to the payload logger when enabled."""
    logger = logging.getLogger(PAYLOAD_LOGGER_NAME)
    release_payload_logger()
    if not enabled or log_dir is None:
        return None
    handler = build_rotating_file_handler(
        log_dir,
        PAYLOAD_LOG_FILENAME,
        retention=retention,
        max_bytes=max_bytes,
        formatter=logging.Formatter("%(asctime)s %(message)s"),
    )
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger


def release_payload_logger() -> None:
    logger = logging.getLogger(PAYLOAD_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
