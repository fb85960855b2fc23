import logging
from pathlib import Path
from typing import Optional, Union

LOGGER_NAME = "photalign"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

backend_logger = logging.getLogger(LOGGER_NAME)
# Library default: stay silent unless the application configures handlers
backend_logger.addHandler(logging.NullHandler())


def configure_logging(level: Union[int, str] = "INFO", log_dir: Optional[Path] = None) -> logging.Logger:
    """
    Attaches a console handler (and optionally a file handler) to the package logger.
    Safe to call more than once; previously attached handlers are replaced.

    Args:
        level (int | str): Logging level name or number.
        log_dir (Optional[Path]): If given, logs are also written to log_dir/photalign.log.

    Returns:
        logging.Logger: The configured package logger.
    """
    for handler in list(backend_logger.handlers):
        if not isinstance(handler, logging.NullHandler):
            backend_logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    backend_logger.addHandler(stream_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{LOGGER_NAME}.log")
        file_handler.setFormatter(formatter)
        backend_logger.addHandler(file_handler)

    backend_logger.setLevel(level)
    return backend_logger
