import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from parley.error_handler import ValidationError
from parley.validation import InputValidator


@pytest.fixture
def validator():
    return InputValidator()


def test_control_message_parsing(validator):
    message = validator.validate_control_message('{"type": "attach_session", "session_id": " abc-1 "}')
    assert message == {"type": "attach_session", "session_id": "abc-1"}
    assert validator.validate_control_message({"type": "cancel_reply"}) == {"type": "cancel_reply"}


@pytest.mark.parametrize("raw,reason", [
    ('{"type": "attach_session"}', "missing_session"),
    ('{"type": "attach_session", "session_id": "a b"}', "invalid_session"),
    ('{"type": "change_voice"}', "missing_field"),
    ('{"type": "change_voice", "voice": "robot"}', "invalid_voice"),
    ('{"type": "explode"}', "unknown_type"),
    ('[1, 2]', "invalid_input"),
    ('{broken', "invalid_input"),
])
def test_control_message_rejections(validator, raw, reason):
    with pytest.raises(ValidationError) as excinfo:
        validator.validate_control_message(raw)
    assert excinfo.value.reason == reason


def test_oversized_message(validator):
    with pytest.raises(ValidationError) as excinfo:
        validator.validate_json_input('{"type": "' + "x" * (64 * 1024) + '"}')
    assert excinfo.value.reason == "too_large"


def test_text_input_is_sanitized(validator):
    assert validator.validate_text_input("hi <script>alert(1)</script>there\x07") == "hi there"
    with pytest.raises(ValidationError):
        validator.validate_text_input("   ")


def test_filename_sanitized(validator):
    assert validator.validate_filename("../etc/pass?wd.txt") == "..etcpasswd.txt"
    with pytest.raises(ValidationError):
        validator.validate_filename("///")


def test_upload_size_limits(validator):
    assert validator.validate_upload_size(10, 100) == 10
    with pytest.raises(ValidationError):
        validator.validate_upload_size(0)
    with pytest.raises(ValidationError):
        validator.validate_upload_size(101, 100)
