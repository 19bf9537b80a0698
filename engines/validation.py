"""Validation utilities and domain errors for lesson completion."""

from typing import Any, Dict, List, Optional


class ValidationError(Exception):
    """Base class for validation errors."""
    pass


class LessonCompletionValidationError(ValidationError):
    """Raised when a lesson completion payload fails validation."""
    pass


class UserNotFoundError(LookupError):
    """Raised when an operation references a user that does not exist."""

    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


def _require_identifier(name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise LessonCompletionValidationError(
            f"Field {name} has wrong type. Expected str, got {type(value).__name__}"
        )
    cleaned = value.strip()
    if not cleaned:
        raise LessonCompletionValidationError(f"Field {name} must not be empty")
    return cleaned


def validate_lesson_completion(data: Dict[str, Any]) -> None:
    """Validate the identifiers and transcript of a lesson completion.

    Numeric fields are not validated here; the scoring engines normalise them.
    """
    for field in ("user_id", "lesson_id"):
        if field not in data:
            raise LessonCompletionValidationError(f"Missing required field: {field}")
        _require_identifier(field, data[field])

    messages: Optional[List[Any]] = data.get("user_messages")
    if messages is not None:
        if not isinstance(messages, (list, tuple)):
            raise LessonCompletionValidationError("user_messages must be a list of strings")
        for idx, message in enumerate(messages):
            if not isinstance(message, str):
                raise LessonCompletionValidationError(
                    f"user_messages[{idx}] has wrong type. Expected str, got {type(message).__name__}"
                )

    flags = data.get("flags")
    if flags is not None and not isinstance(flags, (list, tuple)):
        raise LessonCompletionValidationError("flags must be a list of strings")


def normalize_flags(flags: Optional[List[Any]]) -> List[str]:
    """Keep only string flags, dropping duplicates while preserving order."""
    if not isinstance(flags, (list, tuple)):
        return []
    seen: List[str] = []
    for flag in flags:
        if isinstance(flag, str) and flag not in seen:
            seen.append(flag)
    return seen
