"""
Logging setup and configuration for pg_role_sync.

Each run writes to a log file named after the day of the week, so a week of
history is kept without any cleanup. The file is truncated when a run starts.
Only one run at a time may use a given log directory.
"""

import os
import re
import logging
from datetime import datetime
from typing import Dict, Any, Optional

ARTIFACT_PREFIX = 'pg_role_sync'


def weekday_index(now: Optional[datetime] = None) -> int:
    """Day of the week as 0-6 with Sunday as 0."""
    now = now or datetime.now()
    return now.isoweekday() % 7


def artifact_path(directory: str, extension: str, now: Optional[datetime] = None) -> str:
    """
    Build the weekday-rotated path of a run artifact.

    Args:
        directory: Directory holding the artifact
        extension: File extension without the dot ('log' or 'sql')
        now: Reference time, defaults to the current time

    Returns:
        Path such as logs/pg_role_sync_3.log
    """
    return os.path.join(directory, f"{ARTIFACT_PREFIX}_{weekday_index(now)}.{extension}")


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'pgpassword', 'token', 'secret',
        'credential', 'pass', 'pwd',
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            # key=value
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern1 = rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)'
                msg = re.sub(pattern1, r'\1****\2', msg, flags=re.IGNORECASE)

            # "key": "value"
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern2 = rf'("{keyword}"\s*:\s*")[^"]*(")'
                msg = re.sub(pattern2, r'\1****\2', msg, flags=re.IGNORECASE)

                pattern3 = rf'("{keyword}"\s*:\s*)([^",}}\s]+)(\s*[,}}\]])'
                msg = re.sub(pattern3, r'\1****\3', msg, flags=re.IGNORECASE)

            # 'key': 'value' as printed from a dict
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern4 = rf"('{keyword}'\s*:\s*')[^']*(')"
                msg = re.sub(pattern4, r'\1****\2', msg, flags=re.IGNORECASE)

            record.msg = msg

        return True


class LoggingManager:
    """
    Manages logging configuration for pg_role_sync.

    Provides a per-run log file and optional console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.log_file = None

    def setup_logging(self, config: Dict[str, Any], now: Optional[datetime] = None) -> str:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
            now: Reference time used to pick the log file

        Returns:
            Path of the log file in use
        """
        if self.configured:
            return self.log_file

        logging_config = config if config else {}

        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'WARNING').upper()

        self._ensure_log_directory()
        self.log_file = artifact_path(self.log_dir, 'log', now)

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )

        sensitive_filter = SensitiveDataFilter()

        # Truncate: the log holds only the current run
        file_handler = logging.FileHandler(self.log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, file={self.log_file}, console={console_enabled}")
        return self.log_file

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                # Fallback to current directory if log directory creation fails
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def reset(self) -> None:
        """Detach handlers installed by setup_logging so it can run again."""
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
            handler.close()
        self.configured = False
        self.log_file = None


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        now: Reference time used to pick the log file

    Returns:
        Path of the log file in use
    """
    return _logging_manager.setup_logging(config, now)


def reset_logging() -> None:
    _logging_manager.reset()
