from .backend_logger import backend_logger, configure_logging
