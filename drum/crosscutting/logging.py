import json
import logging
import re
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
ROOT_LOGGER_NAME = 'drum'

# Correlation data for the transfer step currently running
service_var: ContextVar[Optional[str]] = ContextVar('service', default=None)
playlist_var: ContextVar[Optional[str]] = ContextVar('playlist', default=None)
stage_var: ContextVar[Optional[str]] = ContextVar('stage', default=None)


class SecretMasker:
    """Masks tokens, secrets and authorization codes in log output."""

    patterns = [
        r'(?i)(client_secret|refresh_token|access_token)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
        r'(?i)(developer_token|user_token|music-user-token)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.+/=]{10,})["\']?',
        r'(?i)(token|secret|password)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
        r'(?i)(bearer)[\s]+([a-zA-Z0-9\-_\.]{20,})',
        r'(?i)(code)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
    ]

    def __init__(self):
        self.compiled_patterns = [re.compile(p) for p in self.patterns]

    @staticmethod
    def _mask(secret: str) -> str:
        if len(secret) > 8:
            return secret[:4] + '*' * (len(secret) - 8) + secret[-4:]
        return '*' * len(secret)

    def mask_secrets(self, text: str) -> str:
        """Mask every secret-looking value in text, keeping its first and last 4 characters."""
        if not text:
            return text
        for pattern in self.compiled_patterns:
            text = pattern.sub(lambda m: f"{m.group(1)}: {self._mask(m.group(2))}", text)
        return text

    def mask_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.mask_secrets(value)
        if isinstance(value, dict):
            return self.mask_dict(value)
        if isinstance(value, list):
            return [self.mask_value(item) for item in value]
        return value

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask secrets in a (nested) dictionary. Values under secret-named keys are masked whole."""
        if not data:
            return data
        masked = {}
        for key, value in data.items():
            if isinstance(value, str) and re.search(r'(?i)token|secret|password', key):
                masked[key] = self._mask(value)
            else:
                masked[key] = self.mask_value(value)
        return masked


class StructuredFormatter(logging.Formatter):
    """Formats each record as one JSON object, tagged with the current transfer context."""

    def __init__(self):
        super().__init__()
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': self.masker.mask_secrets(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        for key, var in (('service', service_var), ('playlist', playlist_var), ('stage', stage_var)):
            value = var.get()
            if value:
                log_entry[key] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        fields = getattr(record, 'fields', None)
        if fields:
            log_entry['fields'] = self.masker.mask_dict(fields)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class MaskingFormatter(logging.Formatter):
    """Plain text formatter that still keeps secrets out of the output."""

    def __init__(self, fmt: str = PLAIN_FORMAT):
        super().__init__(fmt)
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        return self.masker.mask_secrets(super().format(record))


class TransferContext:
    """Context manager tagging log records with the service, playlist and stage being worked on.

    Only the values given are changed; nested contexts inherit the rest.
    """

    def __init__(self, service: Optional[str] = None,
                 playlist: Optional[str] = None,
                 stage: Optional[str] = None):
        self.values = {service_var: service, playlist_var: playlist, stage_var: stage}
        self._tokens: List = []

    def __enter__(self):
        for var, value in self.values.items():
            if value is not None:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


def setup_logging(level: str = 'INFO',
                  log_file: Optional[str] = None,
                  json_format: bool = False) -> logging.Logger:
    """Configure the 'drum' logger hierarchy.

    Args:
        level: Level name such as 'INFO' or 'DEBUG'
        log_file: Optional file that receives the same records as stderr
        json_format: Emit one JSON object per record instead of plain text

    Returns:
        The configured 'drum' logger
    """
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(numeric_level)
    logger.handlers.clear()
    logger.propagate = False

    formatter = StructuredFormatter() if json_format else MaskingFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def log_with_fields(logger: logging.Logger, level: str, message: str,
                    fields: Optional[Dict[str, Any]] = None, **kwargs) -> None:
    """Log message with additional structured fields."""
    all_fields = dict(fields or {})
    all_fields.update(kwargs)
    logger.log(getattr(logging, level.upper()), message, extra={'fields': all_fields})


def log_transfer_start(logger: logging.Logger, source: str, destination: str, **kwargs) -> None:
    with TransferContext(stage='start'):
        log_with_fields(logger, 'INFO', f"Copying {source} to {destination}", {
            'source': source,
            'destination': destination,
            **kwargs
        })


def log_transfer_complete(logger: logging.Logger, done: int, failed: int, **kwargs) -> None:
    with TransferContext(stage='complete'):
        log_with_fields(logger, 'INFO', f"Transfer finished: {done} done, {failed} failed", {
            'done': done,
            'failed': failed,
            **kwargs
        })
