"""
Logging setup and configuration for Roster Tag Sync.

Provides file logging with daily rotation and retention, optional console
output, scrubbing of credentials from log records, and the adapter that
turns the reconciliation engine's (message, is_fatal) notifications into
log records.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Dict, Any, List

LOG_FILE_NAME = 'app.log'

sink_logger = logging.getLogger('roster_sync.sync')


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'secret',
        'api_key', 'apikey', 'access_token', 'credential', 'authorization',
    ]

    _PATTERNS = []
    for _keyword in SENSITIVE_KEYWORDS:
        # key=value and key: value
        _PATTERNS.append((re.compile(rf'({_keyword}\s*[=:]\s*)(?!Basic\b|Bearer\b)[^\s,}}\]"\']+', re.IGNORECASE),
                          r'\1****'))
        # "key": "value"
        _PATTERNS.append((re.compile(rf'("{_keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'))
    _PATTERNS.append((re.compile(r'(Authorization:\s*(?:Basic|Bearer)\s+)[^\s,}\]]+', re.IGNORECASE), r'\1****'))
    # Mailchimp API keys: 32 hex digits and a data centre suffix
    _PATTERNS.append((re.compile(r'\b[0-9a-f]{32}-[a-z]{2,3}\d+\b', re.IGNORECASE), '****'))
    del _keyword

    def filter(self, record):
        """Scrub the formatted message of the record."""
        msg = record.getMessage()
        for pattern, replacement in self._PATTERNS:
            msg = pattern.sub(replacement, msg)
        record.msg = msg
        record.args = None
        return True


class LoggingManager:
    """
    Manages logging configuration for the application.

    Logging is configured once per process; later calls are ignored.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: The `logging` configuration section
        """
        if self.configured:
            return

        logging_config = config or {}

        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'INFO').upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.INFO))
            console_handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s',
                                                           datefmt='%H:%M:%S'))
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}"
        )

    def _ensure_log_directory(self) -> None:
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: Could not create log directory {self.log_dir}: {e}")
            print("Falling back to current directory for logs")
            self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create the file handler.

        Args:
            rotation: 'daily'/'midnight' for a timed rotating file, anything else for a plain file
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if rotation.lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
            return handler

        return logging.FileHandler(log_file, encoding='utf-8')

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in self.get_log_files():
            if log_file.endswith(LOG_FILE_NAME):
                continue
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure process-wide logging from the `logging` configuration section."""
    _logging_manager.setup_logging(config)


def log_sink(message: str, is_fatal: bool) -> None:
    """Default engine sink: progress at INFO, terminal failures at CRITICAL."""
    if is_fatal:
        sink_logger.critical(message)
    else:
        sink_logger.info(message)
