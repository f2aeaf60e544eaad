import logging
import sys
from typing import Optional
from dotenv import load_dotenv
import os

load_dotenv()

class ColoredFormatter(logging.Formatter):
    """Formatter that colours the level tag for terminal output."""

    COLORS = {
        'INFO': '\033[94m',    # Blue
        'WARNING': '\033[93m', # Yellow
        'SUCCESS': '\033[92m', # Green
        'ERROR': '\033[91m',   # Red
        'DEBUG': '\033[95m',   # Magenta
        'CRITICAL': '\033[91m', # Red
        'RESET': '\033[0m'
    }

    def format(self, record):
        level_mapping = {
            'DEBUG': '[DEBUG]',
            'INFO': '[INFO]',
            'SUCCESS': '[SUCCESS]',
            'WARNING': '[WARNING]',
            'ERROR': '[ERROR]',
            'CRITICAL': '[ERROR]'
        }

        levelname = level_mapping.get(record.levelname, f'[{record.levelname}]')
        color = self.COLORS.get(record.levelname, '')

        log_message = f"{self.formatTime(record)} - {record.name} - {color}{levelname}{self.COLORS['RESET']} - {record.getMessage()}"

        if record.exc_info:
            exc_text = self.formatException(record.exc_info)
            log_message = f"{log_message}\n{exc_text}"
        elif record.exc_text:
            log_message = f"{log_message}\n{record.exc_text}"

        return log_message

def get_logger(name: str = "cubular_client", level: Optional[str] = None) -> logging.Logger:
    """Configure and return the package logger."""
    logger = logging.getLogger(name)
    logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())

    # Reconfiguring must not stack handlers
    logger.handlers.clear()

    if log_file := os.getenv("LOG_FILE"):
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    # stderr keeps stdout free for the host UI
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(ColoredFormatter())
    logger.addHandler(console_handler)

    return logger

# SUCCESS sits between INFO and WARNING
logging.SUCCESS = 25
logging.addLevelName(logging.SUCCESS, "SUCCESS")

def success(self, message, *args, **kwargs):
    """Log 'message % args' with severity 'SUCCESS'."""
    if self.isEnabledFor(logging.SUCCESS):
        self._log(logging.SUCCESS, message, args, **kwargs)

logging.Logger.success = success

logger = get_logger()
