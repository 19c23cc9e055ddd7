import logging
import os
from contextlib import contextmanager

import structlog

_FILE_HANDLER_NAME = "advisor_file"


def configure_logging(level: str | None = None, log_path: str | None = None):
    """Route stdlib logging to stderr (and optionally a file) at `level`.

    Safe to call more than once; the CLI calls it again after loading config.
    """
    level = (level or os.environ.get("ADVISOR_LOG_LEVEL", "INFO")).upper()
    log_path = log_path if log_path is not None else os.environ.get("ADVISOR_LOG_PATH", "")

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))

    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(name)s - %(message)s"))
        root.addHandler(stream_handler)

    # File logging is opt-in; the orchestrator usually runs inside a host service
    if log_path and not any(h.get_name() == _FILE_HANDLER_NAME for h in root.handlers):
        try:
            directory = os.path.dirname(log_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
        except OSError:
            return
        file_handler.set_name(_FILE_HANDLER_NAME)
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        root.addHandler(file_handler)


configure_logging()

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)


def get_logger(name: str | None = None):
    return structlog.get_logger(name)


@contextmanager
def bind_run(run_id: str):
    """Attach `run_id` to every log line emitted inside the block, including from child tasks."""
    with structlog.contextvars.bound_contextvars(run_id=run_id):
        yield


logger = get_logger("advisor")
