# CREATE FILE: utils/logging.py

import json
import os
import re
import sys
import time
import traceback
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Any, Optional, TextIO
from contextlib import contextmanager


class StructuredLogger:
    """
    Structured JSON logger shared by the fare engine services.

    Every entry is a single JSON line carrying:
    - Service identity (name, environment, version, host, pid)
    - Business events for money movements (quotes, ledgers)
    - Finance alerts for degraded tax calculations
    - Outbound API call timing
    """

    def __init__(self, service_name: str, environment: str = None, stream: TextIO = None):
        self.service_name = service_name
        self.environment = environment or os.getenv('ENVIRONMENT', 'development')
        self.version = os.getenv('SERVICE_VERSION', '1.0.0')
        self.enable_debug = os.getenv('DEBUG_LOGGING', 'false').lower() == 'true'
        self.stream = stream

        self.base_fields = {
            'service': self.service_name,
            'environment': self.environment,
            'version': self.version,
            'hostname': os.getenv('HOSTNAME', 'unknown'),
            'process_id': os.getpid()
        }

    def _create_log_entry(self, level: str, message: str, **kwargs) -> Dict[str, Any]:
        """Create a structured log entry with standard fields"""
        entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': level.upper(),
            'message': message,
            **self.base_fields
        }

        for key, value in kwargs.items():
            if value is not None:
                entry[key] = value

        return entry

    def _log(self, level: str, message: str, **kwargs):
        """Write one JSON line to the configured stream (stdout by default)"""
        log_entry = self._create_log_entry(level, message, **kwargs)
        print(json.dumps(log_entry, default=_json_default), file=self.stream or sys.stdout)

    def debug(self, message: str, **kwargs):
        """Debug level logging (only if debug enabled)"""
        if self.enable_debug:
            self._log('debug', message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log('info', message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log('warning', message, **kwargs)

    def error(self, message: str, error: Exception = None, **kwargs):
        """Error level logging with optional exception details"""
        error_details = {}
        if error:
            error_details = {
                'error_type': type(error).__name__,
                'error_message': str(error),
                'stack_trace': ''.join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                ) if self.enable_debug else None
            }

        self._log('error', message, **error_details, **kwargs)

    def business_event(self, event_type: str, amount: Any = None,
                       order_id: str = None, **kwargs):
        """Log business events (quotes, ledgers, identifiers)"""
        self.info(
            f"Business event: {event_type}",
            action='business_event',
            event_type=event_type,
            amount=amount,
            order_id=order_id,
            **kwargs
        )

    def finance_alert(self, alert_type: str, amount: Any = None, **kwargs):
        """Flag a transaction that finance/ops must reconcile by hand"""
        self._log(
            'warning',
            f"Finance alert: {alert_type}",
            action='finance_alert',
            alert_type=alert_type,
            amount=amount,
            **kwargs
        )

    def api_call(self, target_service: str, endpoint: str, method: str = 'POST',
                 duration_ms: float = None, success: bool = True, **kwargs):
        """Log outbound API calls to external providers"""
        self._log(
            'info' if success else 'error',
            f"API call: {method} {target_service}{endpoint}",
            action='api_call',
            target_service=target_service,
            endpoint=endpoint,
            method=method,
            duration_ms=round(duration_ms, 2) if duration_ms is not None else None,
            success=success,
            **kwargs
        )

    @contextmanager
    def operation_context(self, operation_name: str, **kwargs):
        """Context manager for timed operations"""
        start_time = time.time()

        try:
            self.debug(f"Operation started: {operation_name}",
                       action='operation_start',
                       operation=operation_name,
                       **kwargs)
            yield
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self.error(f"Operation failed: {operation_name}",
                       error=e,
                       action='operation_error',
                       operation=operation_name,
                       duration_ms=round(duration_ms, 2),
                       **kwargs)
            raise
        else:
            duration_ms = (time.time() - start_time) * 1000
            self.debug(f"Operation completed: {operation_name}",
                       action='operation_end',
                       operation=operation_name,
                       duration_ms=round(duration_ms, 2),
                       **kwargs)


def _json_default(value: Any) -> Any:
    # Money is logged as a string so no precision is lost
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def get_logger(service_name: str) -> StructuredLogger:
    """Get a configured logger for a service"""
    return StructuredLogger(service_name)


# PII Sanitization utilities

DEFAULT_REDACT_FIELDS = {
    'email', 'phone', 'line1', 'line2', 'address_line1', 'address_line2',
    'postal_code', 'card_number', 'api_key', 'secret', 'token'
}

_EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
_PHONE_PATTERN = re.compile(r'\b(?:\+?1[-.\s]?)?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}\b')


def sanitize_pii(data: Any, redact_fields: Optional[set] = None) -> Any:
    """
    Recursively sanitize PII from data structures before logging.

    Street lines and postal codes are redacted; city and state are kept so
    tax logs still show which jurisdiction was being quoted.
    """
    if redact_fields is None:
        redact_fields = DEFAULT_REDACT_FIELDS

    if isinstance(data, dict):
        return {
            key: '[REDACTED]' if key.lower() in redact_fields
            else sanitize_pii(value, redact_fields)
            for key, value in data.items()
        }
    elif isinstance(data, list):
        return [sanitize_pii(item, redact_fields) for item in data]
    elif isinstance(data, str):
        if _EMAIL_PATTERN.search(data):
            return '[REDACTED_EMAIL]'
        if _PHONE_PATTERN.search(data):
            return '[REDACTED_PHONE]'
        return data
    else:
        return data
