# savings340b/utils/logging_config.py
"""
Application-wide logging with structured (JSON) output, correlation IDs
and a separate audit trail for uploads, reviews and exports.
Reads settings from config/config.yaml.
"""
import logging
import logging.config
import json
import time
import yaml
import os
import uuid
import re
from contextvars import ContextVar
from datetime import datetime
from typing import Dict, Any
from pythonjsonlogger import jsonlogger

# Context variables for request correlation
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")
user_id_var: ContextVar[str] = ContextVar("user_id", default="system")


class StructuredFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter that stamps every record with the correlation ID,
    the acting user and service metadata.
    """
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['correlation_id'] = correlation_id_var.get()
        log_record['user_id'] = user_id_var.get()
        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname

        log_record['service'] = 'savings340b-portal'
        log_record['environment'] = os.getenv('ENVIRONMENT', 'development')

        # Custom fields passed through `extra`
        for attr in ('upload_id', 'hospital_pid', 'pharmacy_pid', 'sheet',
                     'error_details', 'event_details', 'performance_metrics'):
            if hasattr(record, attr):
                log_record[attr] = getattr(record, attr)


class CorrelationIdFilter(logging.Filter):
    """Adds correlation ID and user ID to log records."""
    def filter(self, record):
        record.correlation_id = correlation_id_var.get()
        record.user_id = user_id_var.get()
        return True


class AuditFormatter(logging.Formatter):
    """Formatter for audit logs: one JSON object per event."""
    def format(self, record):
        audit_record = {
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'event_type': 'audit',
            'correlation_id': correlation_id_var.get(),
            'user_id': user_id_var.get(),
            'action': getattr(record, 'action', 'unknown'),
            'resource': getattr(record, 'resource', 'unknown'),
            'outcome': getattr(record, 'outcome', 'unknown'),
            'message': record.getMessage(),
            'level': record.levelname,
            'logger': record.name,
        }
        if hasattr(record, 'event_details'):
            audit_record['event_details'] = record.event_details
        return json.dumps(audit_record, default=str)


def _expand_env_var(value):
    """Expands ${VAR} and ${VAR:-default} inside a config string."""
    if not isinstance(value, str):
        return value
    pattern = r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}'

    def replace_match(match):
        var_name, default_value = match.groups()
        return os.environ.get(var_name, default_value if default_value is not None else "")
    return re.sub(pattern, replace_match, value)


def build_logging_config(logging_config: Dict[str, Any]) -> Dict[str, Any]:
    """Builds the dictConfig mapping from the `logging` section of config.yaml."""
    log_dir = _expand_env_var(logging_config.get('log_dir', 'logs'))
    level = str(logging_config.get('level', 'INFO')).upper()
    max_bytes = logging_config.get('max_bytes', 10485760)
    backup_count = logging_config.get('backup_count', 5)
    os.makedirs(log_dir, exist_ok=True)

    if logging_config.get('structured', True):
        standard_formatter = {
            '()': StructuredFormatter,
            'format': '%(timestamp)s %(level)s %(name)s %(message)s'
        }
    else:
        standard_formatter = {
            'format': logging_config.get(
                'log_format', '%(asctime)s - %(name)s - %(levelname)s - %(correlation_id)s - %(message)s')
        }
    if logging_config.get('console_json', False):
        console_formatter = standard_formatter
    else:
        console_formatter = {
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(correlation_id)s - %(message)s'
        }

    return {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'standard': standard_formatter,
            'console': console_formatter,
            'audit': {'()': AuditFormatter},
        },
        'filters': {
            'correlation_id': {'()': CorrelationIdFilter},
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'console',
                'level': level,
                'filters': ['correlation_id'],
                'stream': 'ext://sys.stdout',
            },
            'app_file_handler': {
                'class': 'logging.handlers.RotatingFileHandler',
                'formatter': 'standard',
                'filename': os.path.join(log_dir, logging_config.get('app_log_file', 'app.log')),
                'maxBytes': max_bytes,
                'backupCount': backup_count,
                'encoding': 'utf8',
                'level': level,
                'filters': ['correlation_id'],
            },
            'audit_file_handler': {
                'class': 'logging.handlers.RotatingFileHandler',
                'formatter': 'audit',
                'filename': os.path.join(log_dir, logging_config.get('audit_log_file', 'audit.log')),
                'maxBytes': max_bytes,
                'backupCount': backup_count,
                'encoding': 'utf8',
                'level': 'INFO',
                'filters': ['correlation_id'],
            },
            'error_file_handler': {
                'class': 'logging.handlers.RotatingFileHandler',
                'formatter': 'standard',
                'filename': os.path.join(log_dir, logging_config.get('error_log_file', 'error.log')),
                'maxBytes': max_bytes,
                'backupCount': logging_config.get('error_backup_count', 10),
                'encoding': 'utf8',
                'level': 'ERROR',
                'filters': ['correlation_id'],
            },
        },
        'loggers': {
            'savings340b': {
                'handlers': ['console', 'app_file_handler', 'error_file_handler'],
                'level': level,
                'propagate': False
            },
            'audit': {
                'handlers': ['audit_file_handler'],
                'level': 'INFO',
                'propagate': False
            },
            'performance': {
                'handlers': ['app_file_handler'],
                'level': 'INFO',
                'propagate': False
            },
            'sqlalchemy.engine': {
                'handlers': ['app_file_handler'],
                'level': str(logging_config.get('sqlalchemy_level', 'WARNING')).upper(),
                'propagate': False
            },
            'uvicorn': {
                'handlers': ['console', 'app_file_handler'],
                'level': 'INFO',
                'propagate': False
            },
        },
        'root': {
            'handlers': ['console', 'app_file_handler'],
            'level': 'WARNING',
        }
    }


def setup_logging(config_path: str = None):
    """
    Configures logging from config.yaml (or $SAVINGS340B_CONFIG), falling back
    to basicConfig when the file is missing or unreadable.
    """
    config_path = (config_path or os.environ.get('SAVINGS340B_CONFIG')
                   or os.path.join(os.path.dirname(__file__), '..', '..', 'config', 'config.yaml'))
    default_level = logging.INFO

    if os.path.exists(config_path):
        try:
            with open(config_path, 'rt') as f:
                config_data = yaml.safe_load(f.read()) or {}
            logging_config = config_data.get('logging', {})
            logging.config.dictConfig(build_logging_config(logging_config))
            logging.getLogger('savings340b').info(
                "Logging configured from config.yaml",
                extra={'performance_metrics': {'structured_logging': logging_config.get('structured', True)}}
            )
        except Exception as e:
            _setup_fallback_logging(default_level)
            logging.exception(f"Error configuring logging from YAML, using fallback: {e}")
    else:
        _setup_fallback_logging(default_level)
        logging.warning("config.yaml not found. Using fallback logging configuration.")


def _setup_fallback_logging(level):
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(correlation_id)s - %(message)s'
    )
    for handler in logging.root.handlers:
        handler.addFilter(CorrelationIdFilter())


def get_logger(name: str):
    return logging.getLogger(name)


def set_correlation_id(cid: str = None) -> str:
    """
    Sets the correlation ID for the current context.
    If no cid is provided, a new UUID is generated.
    """
    if cid is None:
        cid = str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    return correlation_id_var.get()


def set_user_id(user_id: str):
    user_id_var.set(user_id)


class PerformanceLogger:
    """
    Context manager that times an operation and logs its duration,
    escalating to WARNING above `threshold_ms` and ERROR on exceptions.
    """
    def __init__(self, operation_name: str, logger: logging.Logger = None,
                 threshold_ms: float = None, **kwargs):
        self.operation_name = operation_name
        self.logger = logger or get_logger('performance')
        self.threshold_ms = threshold_ms
        self.extra_data = kwargs
        self.start_time = None
        self.duration_ms = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000

        performance_data = {
            'operation_name': self.operation_name,
            'duration_ms': round(self.duration_ms, 2),
            'success': exc_type is None,
            **self.extra_data
        }
        if exc_type is not None:
            performance_data['error_type'] = exc_type.__name__
            performance_data['error_message'] = str(exc_val)

        log_level = logging.INFO
        if self.threshold_ms and self.duration_ms > self.threshold_ms:
            log_level = logging.WARNING
        if exc_type is not None:
            log_level = logging.ERROR

        self.logger.log(
            log_level,
            f"Completed operation: {self.operation_name} in {self.duration_ms:.2f}ms",
            extra={'performance_metrics': performance_data}
        )
        # Never suppress the exception
        return False


def log_audit_event(action: str, resource: str, outcome: str = "success",
                    user_id: str = None, **details):
    """Writes one structured event to the audit logger."""
    audit_logger = get_logger('audit')

    if user_id:
        set_user_id(user_id)

    audit_logger.info(
        f"Audit: {action} on {resource} - {outcome}",
        extra={
            'action': action,
            'resource': resource,
            'outcome': outcome,
            'event_details': details
        }
    )
