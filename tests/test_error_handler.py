import os
import sys

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from parley.error_handler import (
    ErrorContext,
    ErrorHandler,
    ErrorSeverity,
    GenerationError,
    ProviderError,
    TurnCancelled,
    ValidationError,
)


def test_handle_error_records_context():
    handler = ErrorHandler()
    details = handler.handle_error(GenerationError("quota exceeded"),
                                   ErrorContext("router", "generate:fast", session_id="abc", turn_id="conn-1"),
                                   ErrorSeverity.LOW)

    assert details["type"] == "GenerationError"
    assert details["context"]["session_id"] == "abc"
    assert details["context"]["turn_id"] == "conn-1"
    assert details["severity"] == "low"
    assert handler.get_error_stats()["error_types"] == {"GenerationError": 1}


def test_history_is_bounded():
    handler = ErrorHandler(max_history_size=3)
    for i in range(5):
        handler.handle_error(ValueError(str(i)), ErrorContext("test", "op"))
    assert len(handler.error_history) == 3
    assert handler.error_count == 5
    handler.clear_error_history()
    assert handler.get_error_stats()["total_errors"] == 0


def test_custom_handler_takes_over():
    handler = ErrorHandler()
    handler.register_error_handler(KeyError, lambda e, ctx, sev: {"handled": ctx.operation})
    assert handler.handle_error(KeyError("x"), ErrorContext("c", "lookup")) == {"handled": "lookup"}
    assert handler.error_history == []


def test_exception_hierarchy():
    assert issubclass(GenerationError, ProviderError)
    cancelled = TurnCancelled("barge-in")
    assert cancelled.reason == "barge-in"
    assert "barge-in" in str(cancelled)
    assert ValidationError("bad").reason == "invalid_input"
