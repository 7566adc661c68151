# savings340b/utils/error_handler.py
"""
Defines custom application exceptions and standardized error handling utilities.
Every AppException is recorded in an in-process metrics collector so the
status endpoint can report recent error patterns.
"""
import threading
from datetime import datetime, timedelta
from collections import defaultdict, deque
from typing import Dict, List, Optional, Any
from enum import Enum
from dataclasses import dataclass, field
import uuid

from savings340b.utils.logging_config import get_logger, get_correlation_id

logger = get_logger('savings340b.error_handler')


class ErrorSeverity(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ErrorCategory(Enum):
    CONFIGURATION = "Configuration"
    DATABASE = "Database"
    PARSING = "Parsing"
    VALIDATION = "Validation"
    API = "API"
    AUTHENTICATION = "Authentication"
    AUTHORIZATION = "Authorization"
    BUSINESS_LOGIC = "BusinessLogic"
    EXPORT = "Export"


# --- Error Metrics Collection ---
@dataclass
class ErrorMetric:
    error_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=datetime.utcnow)
    error_code: str = ""
    category: ErrorCategory = ErrorCategory.CONFIGURATION
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    component: str = ""
    correlation_id: str = ""
    error_message: str = ""
    additional_context: Dict[str, Any] = field(default_factory=dict)


class ErrorMetricsCollector:
    """Keeps a bounded window of recent errors for the status endpoint."""

    def __init__(self, max_metrics_memory: int = 10000):
        self._metrics: deque = deque(maxlen=max_metrics_memory)
        self._error_counts: Dict[str, int] = defaultdict(int)
        self._category_counts: Dict[str, int] = defaultdict(int)
        self._component_errors: Dict[str, int] = defaultdict(int)
        self._lock = threading.RLock()

    def record_error(self, metric: ErrorMetric):
        with self._lock:
            self._metrics.append(metric)
            self._error_counts[metric.error_code] += 1
            self._category_counts[metric.category.value] += 1
            self._component_errors[metric.component] += 1

            logger.debug(
                f"Error recorded: {metric.error_code} in {metric.component} "
                f"(Severity: {metric.severity.value})",
                extra={
                    'error_details': {
                        'error_id': metric.error_id,
                        'error_code': metric.error_code,
                        'category': metric.category.value,
                        'correlation_id': metric.correlation_id,
                    }
                }
            )

    def get_error_rate(self, time_window_minutes: int = 60) -> float:
        """Errors per minute over the window."""
        with self._lock:
            cutoff_time = datetime.utcnow() - timedelta(minutes=time_window_minutes)
            recent_errors = [m for m in self._metrics if m.timestamp >= cutoff_time]
            return len(recent_errors) / max(time_window_minutes, 1)

    def get_top_errors(self, limit: int = 10) -> List[tuple]:
        with self._lock:
            return sorted(self._error_counts.items(), key=lambda x: x[1], reverse=True)[:limit]

    def get_error_patterns(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'total_errors': len(self._metrics),
                'error_rate_1h': self.get_error_rate(60),
                'top_errors': self.get_top_errors(),
                'category_distribution': dict(self._category_counts),
                'component_distribution': dict(self._component_errors),
            }

    def reset(self):
        with self._lock:
            self._metrics.clear()
            self._error_counts.clear()
            self._category_counts.clear()
            self._component_errors.clear()


# Global metrics collector instance
metrics_collector = ErrorMetricsCollector()


# --- Custom Exception Classes ---
class AppException(Exception):
    """Base class for custom application exceptions."""

    def __init__(self,
                 message: str,
                 error_code: str = "APP_ERROR",
                 details: dict = None,
                 category: ErrorCategory = ErrorCategory.CONFIGURATION,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM,
                 component: str = "Unknown",
                 recoverable: bool = True):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details if details is not None else {}
        self.category = category
        self.severity = severity
        self.component = component
        self.recoverable = recoverable
        self.correlation_id = get_correlation_id()
        self.timestamp = datetime.utcnow()

        self._record_metric()

    def _record_metric(self):
        metric = ErrorMetric(
            error_code=self.error_code,
            category=self.category,
            severity=self.severity,
            component=self.component,
            correlation_id=self.correlation_id,
            error_message=self.message,
            additional_context=self.details
        )
        metrics_collector.record_error(metric)

    def __str__(self):
        return f"{self.error_code} ({self.category.value}): {self.message}"


class ConfigError(AppException):
    """For errors related to application configuration."""
    def __init__(self, message: str, details: dict = None, component: str = "Configuration"):
        super().__init__(
            message=message,
            error_code="CONFIG_ERROR",
            details=details,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.HIGH,
            component=component,
            recoverable=False
        )


class DatabaseError(AppException):
    """For errors related to database operations."""
    def __init__(self, message: str, original_exception: Exception = None, details: dict = None,
                 component: str = "Database", error_code: str = "DB_ERROR"):
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            category=ErrorCategory.DATABASE,
            severity=ErrorSeverity.HIGH,
            component=component,
            recoverable=True
        )
        self.original_exception = original_exception


class PortalDBError(DatabaseError):
    """For errors raised by the portal persistence handler."""
    def __init__(self, message: str, original_exception: Exception = None, details: dict = None):
        super().__init__(
            message=message,
            original_exception=original_exception,
            details=details,
            component="PortalDatabase",
            error_code="PORTAL_DB_ERROR"
        )


class WorkbookParseError(AppException):
    """Raised when an uploaded workbook container cannot be opened."""
    def __init__(self, message: str, filename: str = None, details: dict = None):
        super().__init__(
            message=message,
            error_code="WORKBOOK_PARSE_ERROR",
            details=details,
            category=ErrorCategory.PARSING,
            severity=ErrorSeverity.MEDIUM,
            component="WorkbookParser",
            recoverable=False
        )
        self.filename = filename
        if self.filename:
            self.details['filename'] = self.filename


class ExportError(AppException):
    """Raised when export rows cannot be rendered to the requested format."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(
            message=message,
            error_code="EXPORT_ERROR",
            details=details,
            category=ErrorCategory.EXPORT,
            severity=ErrorSeverity.HIGH,
            component="ExportService",
            recoverable=False
        )


class APIError(AppException):
    """For errors surfaced to API callers with an HTTP status code."""
    def __init__(self, message: str, status_code: int = 500, details: dict = None,
                 component: str = "API", error_code: str = "INTERNAL_ERROR",
                 category: ErrorCategory = ErrorCategory.API):
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            category=category,
            severity=ErrorSeverity.MEDIUM if status_code < 500 else ErrorSeverity.HIGH,
            component=component,
            recoverable=True
        )
        self.status_code = status_code


class AuthenticationError(APIError):
    """No valid session / bearer token."""
    def __init__(self, message: str = "Unauthorized", details: dict = None):
        super().__init__(message=message, status_code=401, details=details, component="Security",
                         error_code="UNAUTHORIZED", category=ErrorCategory.AUTHENTICATION)


class AuthorizationError(APIError):
    """Authenticated caller lacks the required role."""
    def __init__(self, message: str = "Admin access required", details: dict = None):
        super().__init__(message=message, status_code=403, details=details, component="Security",
                         error_code="FORBIDDEN", category=ErrorCategory.AUTHORIZATION)


class BadRequestError(APIError):
    def __init__(self, message: str, details: dict = None, component: str = "API"):
        super().__init__(message=message, status_code=400, details=details, component=component,
                         error_code="BAD_REQUEST", category=ErrorCategory.VALIDATION)


class NotFoundError(APIError):
    def __init__(self, message: str, details: dict = None, component: str = "API"):
        super().__init__(message=message, status_code=404, details=details, component=component,
                         error_code="NOT_FOUND", category=ErrorCategory.API)


# --- Error Handling Utilities ---
def log_app_exception(exc: AppException, level: str = "error", context: Optional[str] = None):
    """Logs an AppException with structured details."""
    log_method = getattr(logger, level.lower(), logger.error)

    log_message = (f"AppException: Code={exc.error_code}, Category={exc.category.value}, "
                   f"Severity={exc.severity.value}, Component={exc.component}, Message='{exc.message}'")
    if context:
        log_message += f", Context={context}"

    log_details = exc.details.copy()
    log_details.update({
        'error_code': exc.error_code,
        'category': exc.category.value,
        'severity': exc.severity.value,
        'component': exc.component,
        'correlation_id': exc.correlation_id,
        'recoverable': exc.recoverable,
    })
    if getattr(exc, 'original_exception', None):
        log_details['original_exception'] = str(exc.original_exception)

    log_method(log_message, extra={'error_details': log_details},
               exc_info=exc.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL))


def handle_exception(e: Exception,
                     context: str = "General",
                     re_raise_as: type = None,
                     component: str = "Unknown"):
    """
    Logs `e` and re-raises it. AppExceptions are re-raised unchanged unless
    `re_raise_as` is given; anything else is wrapped so callers only ever
    see the application hierarchy.
    """
    if isinstance(e, AppException):
        log_app_exception(e, context=context)
        if re_raise_as:
            raise re_raise_as(message=e.message) from e
        raise e

    err_message = f"Unexpected error in {context}: {e}"
    logger.error(err_message, exc_info=True, extra={'error_details': {'component': component}})

    if re_raise_as:
        if issubclass(re_raise_as, DatabaseError):
            raise re_raise_as(message=err_message, original_exception=e) from e
        raise re_raise_as(message=err_message) from e

    raise AppException(
        message=err_message,
        error_code="UNEXPECTED_ERROR",
        category=ErrorCategory.BUSINESS_LOGIC,
        component=component
    ) from e
