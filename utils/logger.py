"""Centralized logging with rotation for the intake service and its staff actions."""
import logging
import os
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(module)s:%(lineno)d | %(message)s"


def init_logging(app) -> logging.Logger:
    level_name = (app.config.get("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")

    handlers: list[logging.Handler] = []
    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    log_path = None
    if not app.config.get("TESTING"):
        log_dir = app.config.get("LOG_DIR") or os.path.join(app.instance_path, "logs")
        os.makedirs(log_dir, exist_ok=True)
        log_path = os.path.join(log_dir, "ouvidoria.log")
        file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    # utils.* modules log through their own module loggers; route them to the same handlers.
    for name in (app.name, "utils"):
        logger = logging.getLogger(name)
        logger.setLevel(level)
        for existing in list(logger.handlers):
            logger.removeHandler(existing)
            existing.close()
        for handler in handlers:
            logger.addHandler(handler)
        logger.propagate = False

    app.logger.info("Logging initialized", extra={"path": log_path})
    return app.logger
