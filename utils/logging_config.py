"""
Centralized logging configuration for the fleet cash ledger
Provides structured JSON logging for production and a readable format for development
"""

import os
import sys
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any
import traceback


# Attributes every LogRecord carries; anything else was passed through `extra`
_RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename', 'module',
    'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName', 'created', 'msecs',
    'relativeCreated', 'thread', 'threadName', 'processName', 'process', 'message',
    'taskName'
])


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging
    Includes application metadata and any `extra` fields (ledger id, driver, delta...)
    """

    def __init__(self):
        super().__init__()
        self.application_name = "fleet_cash_ledger"
        self.environment = os.environ.get('FLASK_ENV', 'development')

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON"""

        log_data: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'application': self.application_name,
            'environment': self.environment
        }

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': traceback.format_exception(*record.exc_info)
            }

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data['extra'] = extra_fields

        if record.levelno in (logging.DEBUG, logging.ERROR):
            log_data['location'] = {
                'file': record.pathname,
                'function': record.funcName,
                'line': record.lineno
            }

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(app=None) -> Dict[str, logging.Logger]:
    """
    Configure centralized logging for the application
    Returns dict of configured loggers for the engine components
    """

    log_level = os.environ.get('LOG_LEVEL', 'INFO').upper()
    if log_level not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
        log_level = 'INFO'

    use_json_logging = (
        os.environ.get('USE_JSON_LOGGING', 'false').lower() == 'true' or
        os.environ.get('FLASK_ENV') == 'production'
    )

    if use_json_logging:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s in %(name)s: %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Replace handlers installed by a previous create_app() call
    for handler in list(root_logger.handlers):
        if getattr(handler, '_fleet_ledger_handler', False):
            root_logger.removeHandler(handler)
    console_handler._fleet_ledger_handler = True
    root_logger.addHandler(console_handler)

    if os.environ.get('ENABLE_FILE_LOGGING', 'false').lower() == 'true':
        os.makedirs('logs', exist_ok=True)
        file_handler = logging.FileHandler('logs/ledger.log')
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        file_handler._fleet_ledger_handler = True
        root_logger.addHandler(file_handler)

    loggers = {}
    for name in ('services', 'models', 'utils', 'audit', 'scheduler'):
        loggers[name] = logging.getLogger(name)
        loggers[name].setLevel(log_level)

    if os.environ.get('FLASK_ENV') == 'production':
        logging.getLogger('werkzeug').setLevel(logging.WARNING)
        logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

    if app:
        app.logger.info(f"Logging configured: level={log_level}, json_format={use_json_logging}")

    return loggers

