"""
Parley Centralized Error Handling and Exception Management
"""
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from .logging_utils import setup_logger

logger = setup_logger("parley.error_handler", "logs/parley.log")


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Context information for error tracking"""
    component: str
    operation: str
    session_id: Optional[str] = None
    turn_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)


class ErrorHandler:
    """Centralized error handling and reporting system"""

    def __init__(self, max_history_size: int = 1000):
        self.error_count = 0
        self.error_history: List[Dict[str, Any]] = []
        self.max_history_size = max_history_size
        self.error_handlers: Dict[Type[Exception], Callable] = {}

    def register_error_handler(self, exception_type: Type[Exception], handler: Callable) -> None:
        """Register a custom error handler for a specific exception type"""
        self.error_handlers[exception_type] = handler

    def handle_error(self, error: Exception, context: ErrorContext,
                     severity: ErrorSeverity = ErrorSeverity.MEDIUM) -> Dict[str, Any]:
        """Handle an error with context and severity"""
        error_id = f"ERR_{int(time.time() * 1000000)}"
        self.error_count += 1

        error_details = {
            'error_id': error_id,
            'type': error.__class__.__name__,
            'message': str(error),
            'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            'context': {
                'component': context.component,
                'operation': context.operation,
                'session_id': context.session_id,
                'turn_id': context.turn_id,
                'metadata': context.metadata,
            },
            'severity': severity.value,
            'timestamp': context.timestamp.isoformat(),
            'count': self.error_count,
        }

        if error.__class__ in self.error_handlers:
            try:
                return self.error_handlers[error.__class__](error, context, severity)
            except Exception as handler_error:
                logger.error(f"Error in custom handler for {error.__class__.__name__}: {handler_error}")

        self._log_error(error_details, severity)
        self._add_to_history(error_details)
        return error_details

    def _log_error(self, error_details: Dict[str, Any], severity: ErrorSeverity) -> None:
        """Log error with appropriate level"""
        ctx = error_details['context']
        log_message = (f"[{error_details['error_id']}] {ctx['component']}.{ctx['operation']} "
                       f"{error_details['type']}: {error_details['message']}")

        if severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message, extra={'error_details': error_details})
        elif severity == ErrorSeverity.HIGH:
            logger.error(log_message, extra={'error_details': error_details})
        elif severity == ErrorSeverity.MEDIUM:
            logger.warning(log_message, extra={'error_details': error_details})
        else:
            logger.info(log_message, extra={'error_details': error_details})

    def _add_to_history(self, error_details: Dict[str, Any]) -> None:
        """Add error to history, removing old entries if needed"""
        self.error_history.append(error_details)
        if len(self.error_history) > self.max_history_size:
            self.error_history = self.error_history[-self.max_history_size:]

    def get_error_stats(self) -> Dict[str, Any]:
        """Get error statistics"""
        return {
            'total_errors': self.error_count,
            'recent_errors': len(self.error_history),
            'error_types': self._get_error_type_counts(),
        }

    def _get_error_type_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for error in self.error_history[-100:]:
            error_type = error['type']
            counts[error_type] = counts.get(error_type, 0) + 1
        return counts

    def clear_error_history(self) -> None:
        """Clear error history"""
        self.error_history.clear()
        self.error_count = 0


def get_error_handler() -> ErrorHandler:
    """Get or create error handler instance"""
    if not hasattr(get_error_handler, '_instance'):
        get_error_handler._instance = ErrorHandler()  # type: ignore[attr-defined]
    return get_error_handler._instance  # type: ignore[attr-defined]


def handle_error(error: Exception, component: str, operation: str,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM, **context_kwargs) -> Dict[str, Any]:
    """Convenience function to handle errors"""
    context = ErrorContext(component=component, operation=operation, **context_kwargs)
    return get_error_handler().handle_error(error, context, severity)


class ParleyException(Exception):
    """Base exception for Parley-specific errors"""

    def __init__(self, message: str, component: str = "unknown", operation: str = "unknown", **kwargs):
        super().__init__(message)
        self.component = component
        self.operation = operation
        self.context = kwargs


class ConfigurationError(ParleyException):
    """Configuration-related errors; fatal at startup"""
    pass


class ValidationError(ParleyException):
    """Input validation errors"""

    def __init__(self, message: str, reason: str = "invalid_input", **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason


class ProviderError(ParleyException):
    """Recoverable failure talking to an external provider"""
    pass


class RecognitionError(ProviderError):
    pass


class GenerationError(ProviderError):
    pass


class SynthesisError(ProviderError):
    pass


class TurnCancelled(ParleyException):
    """Raised when work for a revoked turn reaches a checkpoint"""

    def __init__(self, reason: str = "cancelled", **kwargs):
        super().__init__(f"turn cancelled: {reason}", component="turn", operation="cancel", **kwargs)
        self.reason = reason
