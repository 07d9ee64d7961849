"""
Parley Input Validation and Sanitization Module
"""
import json
import re
from typing import Any, Dict, List, Optional, Union

from .error_handler import ValidationError
from .logging_utils import setup_logger

logger = setup_logger("parley.validation", "logs/parley.log")

# Inbound control message types and the fields each one requires
CONTROL_MESSAGES: Dict[str, List[str]] = {
    "attach_session": ["session_id"],
    "begin_listening": [],
    "end_listening": [],
    "cancel_reply": [],
    "change_voice": ["voice"],
}


class InputValidator:
    """Centralized input validation and sanitization"""

    def __init__(self):
        self.MAX_TEXT_LENGTH = 10000
        self.MAX_MESSAGE_BYTES = 64 * 1024
        self.MAX_UPLOAD_SIZE = 10 * 1024 * 1024  # 10MB
        self.MAX_FILENAME_LENGTH = 255

        self.SESSION_TOKEN_PATTERN = re.compile(r'^[A-Za-z0-9_.:-]{1,128}$')
        self.VOICE_ID_PATTERN = re.compile(r'^[a-z]{2}-[A-Z]{2}-[a-z]+$')

        # Dangerous patterns
        self.DANGEROUS_PATTERNS = [
            r'<script[^>]*>.*?</script>',
            r'javascript:',
            r'vbscript:',
            r'on\w+\s*=',
            r'<iframe[^>]*>.*?</iframe>',
            r'<object[^>]*>.*?</object>',
            r'<embed[^>]*>.*?</embed>',
        ]

        self.COMPILED_PATTERNS = [re.compile(pattern, re.IGNORECASE | re.DOTALL) for pattern in self.DANGEROUS_PATTERNS]

    def validate_text_input(self, text: str, max_length: Optional[int] = None) -> str:
        """Validate and sanitize text input"""
        if not isinstance(text, str):
            raise ValidationError("Input must be a string")

        if not text.strip():
            raise ValidationError("Input cannot be empty")

        if max_length is None:
            max_length = self.MAX_TEXT_LENGTH

        if len(text) > max_length:
            raise ValidationError(f"Input exceeds maximum length of {max_length} characters")

        sanitized = self._sanitize_html(text)

        # Remove control characters except newlines and tabs
        sanitized = re.sub(r'[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]', '', sanitized)

        return sanitized.strip()

    def validate_json_input(self, data: Union[str, bytes, Dict]) -> Dict:
        """Parse a JSON object"""
        try:
            if isinstance(data, (str, bytes)):
                if len(data) > self.MAX_MESSAGE_BYTES:
                    raise ValidationError("Message too large", reason="too_large")
                parsed = json.loads(data)
            elif isinstance(data, dict):
                parsed = data
            else:
                raise ValidationError("Invalid JSON input type")
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON format: {e}")

        if not isinstance(parsed, dict):
            raise ValidationError("JSON input must be an object")
        return parsed

    def validate_session_token(self, token: Any) -> str:
        if not isinstance(token, str) or not token.strip():
            raise ValidationError("Missing session id", reason="missing_session")
        token = token.strip()
        if not self.SESSION_TOKEN_PATTERN.match(token):
            raise ValidationError("Session id contains invalid characters", reason="invalid_session")
        return token

    def validate_voice_id(self, voice: Any) -> str:
        if not isinstance(voice, str) or not self.VOICE_ID_PATTERN.match(voice.strip()):
            raise ValidationError(f"Invalid voice: {voice!r}", reason="invalid_voice")
        return voice.strip()

    def validate_control_message(self, raw: Union[str, bytes, Dict]) -> Dict[str, Any]:
        """Parse an inbound control frame and check its type and required fields"""
        message = self.validate_json_input(raw)
        msg_type = message.get("type")
        if msg_type not in CONTROL_MESSAGES:
            raise ValidationError(f"Unknown message type: {msg_type!r}", reason="unknown_type")

        missing = [f for f in CONTROL_MESSAGES[msg_type] if message.get(f) in (None, "")]
        if missing:
            reason = "missing_session" if "session_id" in missing else "missing_field"
            raise ValidationError(f"Missing required fields: {missing}", reason=reason)

        if message.get("session_id") is not None:
            message["session_id"] = self.validate_session_token(message["session_id"])
        if message.get("voice") is not None:
            message["voice"] = self.validate_voice_id(message["voice"])
        return message

    def validate_filename(self, filename: str) -> str:
        """Validate filename for safety"""
        if not isinstance(filename, str):
            raise ValidationError("Filename must be a string")

        if len(filename) > self.MAX_FILENAME_LENGTH:
            raise ValidationError(f"Filename too long: {len(filename)} > {self.MAX_FILENAME_LENGTH}")

        # Remove path separators and dangerous characters
        sanitized = re.sub(r'[<>:"/\\|?*\x00-\x1f]', '', filename)

        if not sanitized.strip() or sanitized.strip() in (".", ".."):
            raise ValidationError("Invalid filename after sanitization")

        return sanitized.strip()

    def validate_upload_size(self, size: int, max_size: Optional[int] = None) -> int:
        if max_size is None:
            max_size = self.MAX_UPLOAD_SIZE
        if size <= 0:
            raise ValidationError("Uploaded file is empty", reason="empty_document")
        if size > max_size:
            raise ValidationError(f"File too large: {size} bytes > {max_size} bytes", reason="too_large")
        return size

    def _sanitize_html(self, text: str) -> str:
        """Remove potentially dangerous HTML/JS"""
        for pattern in self.COMPILED_PATTERNS:
            text = pattern.sub('', text)
        return text


_validator_instance: Optional[InputValidator] = None


def get_validator() -> InputValidator:
    """Get or create input validator instance"""
    global _validator_instance
    if _validator_instance is None:
        _validator_instance = InputValidator()
    return _validator_instance
