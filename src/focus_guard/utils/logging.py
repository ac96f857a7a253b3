import sys

from loguru import logger

from focus_guard.settings import settings

LOG_FORMAT_CONSOLE = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan> | "
    "<level>{message}</level>"
)
LOG_FORMAT_FILE = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {message}"
LOG_ROTATION = "10 MB"
LOG_RETENTION = "10 days"
LOG_COMPRESSION = "zip"
LOG_FILE_NAME = "focus_guard.log"


def setup_logging(verbose: bool = False) -> None:
    """
    Configure loguru sinks for the CLI and the daemon.

    Args:
        verbose (bool): If True, enables DEBUG level logging. Otherwise the
                       level is INFO unless `settings.debug` is set.
    """
    logger.remove()

    level = "DEBUG" if verbose or settings.debug else "INFO"

    logger.add(sys.stderr, level=level, format=LOG_FORMAT_CONSOLE)

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file_path = settings.log_dir / LOG_FILE_NAME
    logger.add(
        log_file_path,
        level=level,
        format=LOG_FORMAT_FILE,
        rotation=LOG_ROTATION,
        retention=LOG_RETENTION,
        compression=LOG_COMPRESSION,
        enqueue=True,
    )

    logger.debug(f"Logging initialized at {level}. Log file: {log_file_path}")
