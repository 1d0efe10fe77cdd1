import asyncio
import logging
import logging.handlers
from pathlib import Path

logger = logging.getLogger("shotbot")

LOG_FILE_NAME = "shotbot.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
# third-party loggers that are noisy at INFO/WARNING
QUIET_LOGGERS = {
    "googleapiclient.discovery_cache": logging.ERROR,
    "googleapiclient.http": logging.WARNING,
    "discord.gateway": logging.WARNING,
}


def configure_logging(log_dir: str | Path = "logs", level_name: str | None = "INFO") -> Path:
    """Stdout plus a rotating `shotbot.log` under log_dir. Returns the log file path."""
    requested = (level_name or "").strip().upper() or "INFO"
    log_level = logging.getLevelName(requested)
    unknown_level = not isinstance(log_level, int)
    if unknown_level:
        log_level = logging.INFO
    log_path = Path(log_dir) / LOG_FILE_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")
    stdout_handler = logging.StreamHandler()
    stdout_handler.setFormatter(formatter)
    file_handler = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(log_level)
    root_logger.addHandler(stdout_handler)
    root_logger.addHandler(file_handler)
    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(level, log_level))
    if unknown_level:
        logger.warning("logging_level_unknown requested=%r using=INFO", requested)
    logger.info("logging_configured level=%s path=%s", logging.getLevelName(log_level), log_path)
    return log_path


def register_loop_exception_handler(loop: asyncio.AbstractEventLoop) -> None:
    """Log unhandled task exceptions under the shotbot logger, then defer to the previous handler."""
    if getattr(loop, "_shotbot_exception_handler_installed", False):
        return
    previous_handler = loop.get_exception_handler()

    def _handle(active_loop: asyncio.AbstractEventLoop, context: dict[str, object]) -> None:
        message = context.get("message", "Unhandled asyncio loop exception")
        source = context.get("task") or context.get("future")
        source_name = source.get_name() if isinstance(source, asyncio.Task) else repr(source)
        exception = context.get("exception")
        if exception is not None:
            logger.error("loop_exception source=%s message=%s", source_name, message, exc_info=exception)
        else:
            logger.error("loop_exception source=%s message=%s", source_name, message)
        if previous_handler is not None:
            previous_handler(active_loop, context)
        else:
            active_loop.default_exception_handler(context)

    loop.set_exception_handler(_handle)
    setattr(loop, "_shotbot_exception_handler_installed", True)
    logger.info("loop_exception_handler_registered")
