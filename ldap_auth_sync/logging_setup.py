"""
Logging setup for LDAP Auth Sync.

Application records go to a rotating ``app.log`` (and optionally the console).
The ``security`` logger additionally writes an audit trail of directory logins
and mirrored directory changes to ``audit.log``. Every handler scrubs bind
passwords, cleartext user passwords and RFC 2307 password hashes.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Dict, Any, Optional

AUDIT_LOGGER_NAME = 'security'

APP_LOG_FILE = 'app.log'
AUDIT_LOG_FILE = 'audit.log'


class SensitiveDataFilter(logging.Filter):
    """Masks credentials in log messages and their arguments."""

    SENSITIVE_KEYWORDS = ('bind_password', 'userpassword', 'password', 'credential', 'secret', 'token', 'pwd')

    _keywords = '|'.join(SENSITIVE_KEYWORDS)
    # password=..., bind_password = ...
    _ASSIGNMENT = re.compile(rf'((?:{_keywords})\s*=\s*)[^\s,}}\]]+', re.IGNORECASE)
    # 'password': '...' and "userPassword": "..." in dict reprs
    _QUOTED = re.compile(rf'''(["'](?:{_keywords})["']\s*:\s*["'])[^"']*''', re.IGNORECASE)
    _PASSWORD_HASH = re.compile(r'\{(SHA|SSHA|MD5|SMD5|CRYPT)\}[A-Za-z0-9+/=$.]+', re.IGNORECASE)

    @classmethod
    def scrub(cls, text: str) -> str:
        text = cls._ASSIGNMENT.sub(r'\1****', text)
        text = cls._QUOTED.sub(r'\1****', text)
        return cls._PASSWORD_HASH.sub(r'{\1}****', text)

    def filter(self, record):
        record.msg = self.scrub(str(record.msg))
        if isinstance(record.args, tuple):
            record.args = tuple(self.scrub(arg) if isinstance(arg, str) else arg for arg in record.args)
        return True


class LoggingManager:
    """
    Configures the root and audit loggers once per process.

    Recognized configuration keys: ``level``, ``log_dir``, ``rotation``
    (``daily``/``midnight`` or ``none``), ``retention_days``, ``console_output``,
    ``console_level`` and ``audit_log``.
    """

    def __init__(self):
        self.configured = False
        self.log_dir: Optional[str] = None
        self.retention_days = 7
        self._audit_handler: Optional[logging.Handler] = None

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        if self.configured:
            return

        config = config or {}
        level = getattr(logging, str(config.get('level', 'INFO')).upper(), logging.INFO)
        console_level = getattr(logging, str(config.get('console_level', 'WARNING')).upper(), logging.WARNING)
        rotation = str(config.get('rotation', 'daily')).lower()
        self.retention_days = config.get('retention_days', 7)

        fallback_reason = self._prepare_log_dir(config.get('log_dir', 'logs'))

        scrubber = SensitiveDataFilter()
        file_format = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
                                        datefmt='%Y-%m-%d %H:%M:%S')

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        root_logger.addHandler(self._file_handler(APP_LOG_FILE, rotation, level, file_format, scrubber))

        if config.get('console_output', True):
            console_handler = logging.StreamHandler()
            console_handler.setLevel(console_level)
            console_handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s',
                                                           datefmt='%H:%M:%S'))
            console_handler.addFilter(scrubber)
            root_logger.addHandler(console_handler)

        if config.get('audit_log', True):
            audit_format = logging.Formatter('%(asctime)s %(message)s', datefmt='%Y-%m-%dT%H:%M:%S')
            self._audit_handler = self._file_handler(AUDIT_LOG_FILE, rotation, logging.INFO, audit_format, scrubber)
            logging.getLogger(AUDIT_LOGGER_NAME).addHandler(self._audit_handler)

        self._prune_rotated_logs()
        self.configured = True

        logger = logging.getLogger(__name__)
        if fallback_reason:
            logger.warning(f"Could not create log directory, logging to {self.log_dir}: {fallback_reason}")
        logger.info(f"Logging configured: level={logging.getLevelName(level)}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days")

    def _prepare_log_dir(self, log_dir: str) -> Optional[str]:
        """Create the log directory, falling back to the working directory. Returns the failure, if any."""
        self.log_dir = log_dir
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            self.log_dir = '.'
            return str(e)
        return None

    def _file_handler(self, filename: str, rotation: str, level: int,
                      formatter: logging.Formatter, scrubber: logging.Filter) -> logging.Handler:
        path = os.path.join(self.log_dir, filename)
        if rotation in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                path, when='midnight', interval=1, backupCount=self.retention_days, encoding='utf-8')
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(path, encoding='utf-8')
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(scrubber)
        return handler

    def _prune_rotated_logs(self) -> None:
        """Delete rotated log files older than the retention period."""
        if self.retention_days <= 0:
            return

        cutoff = (datetime.now() - timedelta(days=self.retention_days)).timestamp()
        for base in (APP_LOG_FILE, AUDIT_LOG_FILE):
            for rotated in glob.glob(os.path.join(self.log_dir, base + '.*')):
                try:
                    if os.path.getmtime(rotated) < cutoff:
                        os.remove(rotated)
                except OSError as e:
                    logging.getLogger(__name__).warning(f"Could not remove old log file {rotated}: {e}")

    def reset(self) -> None:
        """Detach the audit handler and allow logging to be configured again."""
        if self._audit_handler is not None:
            logging.getLogger(AUDIT_LOGGER_NAME).removeHandler(self._audit_handler)
            self._audit_handler.close()
            self._audit_handler = None
        self.configured = False


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """Configure logging from the ``logging`` configuration section."""
    _logging_manager.setup_logging(config)


class SecurityAuditLogger:
    """Writes authentication and directory change events to the audit trail."""

    def __init__(self):
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def log_authentication_attempt(self, system: str, username: str, success: bool):
        """Log a credential check; system names the directory connection that decided it."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Authentication {status}: {system} user={username}")

    def log_directory_login(self, username: str, identity_id: Any):
        """Log a session opened for a directory-authenticated user."""
        self.logger.info(f"Directory login succeeded: user={username} identity={identity_id}")

    def log_directory_operation(self, operation: str, dn: str, success: bool):
        """Log an entry created, modified, renamed or deleted on the secondary directory."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Directory operation {status}: {operation} dn={dn}")

    def log_security_event(self, event: str, details: str = ""):
        message = f"Security event: {event}"
        if details:
            message += f" - {details}"
        self.logger.warning(message)


security_logger = SecurityAuditLogger()
