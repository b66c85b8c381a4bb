import logging
import sys
from logging.handlers import RotatingFileHandler

from devward.local.config import effective_settings as config


class SubprocessLogFilter(logging.Filter):
    """
    Keeps service output (logged under 'proc.<service>' by the runner) off the
    tool's own handlers. That output belongs in the service run log only.
    """
    def filter(self, record):
        return not record.name.startswith('proc.')


class MainFormatter(logging.Formatter):
    """A formatter for tool logs that prints raw messages for subprocess output."""

    def __init__(self):
        super().__init__('%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s')

    def format(self, record):
        if record.name.startswith('proc.'):
            return record.getMessage()
        return super().format(record)


def setup_logging(console_level: int = logging.INFO) -> None:
    """
    Configures the root logger for the tool.
    This sets up a console handler and a rotating file handler in the devward
    home, clearing any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    console_handler.addFilter(SubprocessLogFilter())
    root_logger.addHandler(console_handler)

    # --- Tool Log File Handler (all levels) ---
    try:
        config.TOOL_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.TOOL_LOG_PATH,
            maxBytes=config.TOOL_LOG_MAX_BYTES,
            backupCount=config.TOOL_LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(MainFormatter())
        file_handler.addFilter(SubprocessLogFilter())
        root_logger.addHandler(file_handler)
    except OSError as e:
        root_logger.error(f"Failed to initialize tool log file at '{config.TOOL_LOG_PATH}': {e}. File logging is disabled.")
