"""
Logging setup for Group Membership Sync.

Configures file logging with daily rotation and retention, optional console
output, scrubbing of credentials, and an audit logger for membership changes.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Any, Dict, Optional


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'token', 'secret', 'client_secret',
        'api_key', 'access_token', 'refresh_token', 'authorization',
    ]

    _PATTERNS = []
    for _keyword in SENSITIVE_KEYWORDS:
        _PATTERNS.append((re.compile(rf'({_keyword}\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), r'\1****'))
        _PATTERNS.append((re.compile(rf'([\'"]{_keyword}[\'"]\s*:\s*[\'"])[^\'"]*([\'"])', re.IGNORECASE),
                          r'\1****\2'))
    _PATTERNS.append((re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)[^\s,}\]]+', re.IGNORECASE),
                      r'\1****'))
    del _keyword

    def filter(self, record):
        """Replace secret values in the formatted message."""
        msg = record.getMessage()
        for pattern, replacement in self._PATTERNS:
            msg = pattern.sub(replacement, msg)
        record.msg = msg
        record.args = ()
        return True


class LoggingManager:
    """Owns the root logger configuration for the application."""

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config or {}
        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'WARNING').upper()

        self._ensure_log_directory()

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

        file_handler = self._create_file_handler(rotation)
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

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}"
        )

    def reset(self) -> None:
        """Drop handlers so logging can be configured again."""
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()
        self.configured = False

    def _ensure_log_directory(self) -> None:
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create the file handler for the rotation setting ('daily', 'midnight' or 'none').
        """
        log_file = os.path.join(self.log_dir, 'membership_sync.log')

        if rotation.lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, 'membership_sync.log.*')):
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """Convenience function to set up logging."""
    _logging_manager.setup_logging(config)


def reset_logging() -> None:
    _logging_manager.reset()


class AuditLogger:
    """Records every membership change sent to the remote service."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_membership_change(self, action: str, group_id: str, member_id: str,
                              kind: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Membership {status}: {action} {kind}={member_id} group={group_id}")

    def log_operation(self, operation: str, group_id: str, details: str = ""):
        message = f"Reconcile {operation}: group={group_id}"
        if details:
            message += f" - {details}"
        self.logger.info(message)


audit_logger = AuditLogger()
