"""
Input validation helpers

Each validator returns ``(is_valid, error_message[, cleaned_value])``.
"""
import re
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Tuple

# Upper bound for schedule intervals (one week)
MAX_INTERVAL_MINUTES = 7 * 24 * 60


def validate_process_id(process_id: Any) -> Tuple[bool, Optional[str], str]:
    """
    Validate a sync process id.

    Args:
        process_id: Process id from the request

    Returns:
        (is_valid, error_message, cleaned_id)
    """
    if not process_id:
        return False, 'process_id is required', ''

    if not isinstance(process_id, str):
        return False, 'process_id must be a string', ''

    process_id = process_id.strip()

    if len(process_id) > 64:
        return False, 'process_id must be at most 64 characters', ''

    if not re.match(r'^[a-zA-Z0-9_.-]+$', process_id):
        return False, 'process_id may only contain letters, digits, dots, underscores and hyphens', ''

    return True, None, process_id


def validate_choice(value: Any, choices: Iterable[str], field_name: str) -> Tuple[bool, Optional[str], str]:
    """
    Validate a value against a closed set of strings (case-insensitive).

    Returns:
        (is_valid, error_message, cleaned_value)
    """
    choices = list(choices)

    if not value:
        return False, f'{field_name} is required', ''

    if not isinstance(value, str):
        return False, f'{field_name} must be a string', ''

    value = value.lower().strip()

    if value not in choices:
        return False, f"Invalid {field_name}, must be one of {choices}", ''

    return True, None, value


def validate_interval(minutes: Any) -> Tuple[bool, Optional[str], int]:
    """
    Validate a schedule interval in minutes.

    Returns:
        (is_valid, error_message, cleaned_minutes)
    """
    if minutes is None or isinstance(minutes, bool):
        return False, 'interval_minutes is required', 0

    try:
        cleaned = int(minutes)
    except (TypeError, ValueError):
        return False, 'interval_minutes must be an integer', 0

    if cleaned <= 0:
        return False, 'interval_minutes must be a positive integer', 0

    if cleaned > MAX_INTERVAL_MINUTES:
        return False, f'interval_minutes cannot exceed {MAX_INTERVAL_MINUTES}', 0

    return True, None, cleaned


def validate_corporation_id(corporation_id: Any) -> Tuple[bool, Optional[str], int]:
    """
    Validate an EVE corporation id.

    Returns:
        (is_valid, error_message, cleaned_id)
    """
    if corporation_id is None or isinstance(corporation_id, bool):
        return False, 'corporation_id is required', 0

    try:
        cleaned = int(corporation_id)
    except (TypeError, ValueError):
        return False, 'corporation_id must be an integer', 0

    if cleaned <= 0:
        return False, 'corporation_id must be a positive integer', 0

    return True, None, cleaned


def validate_scopes(scopes: Any) -> Tuple[bool, Optional[str], List[str]]:
    """
    Validate a list of granted ESI scopes.

    Accepts a list or a space separated string (the SSO format).

    Returns:
        (is_valid, error_message, cleaned_scopes)
    """
    if scopes is None:
        return True, None, []

    if isinstance(scopes, str):
        scopes = scopes.split()

    if not isinstance(scopes, list):
        return False, 'scopes must be a list or a space separated string', []

    cleaned = []
    for i, scope in enumerate(scopes):
        if not isinstance(scope, str) or not scope.strip():
            return False, f'scopes[{i}] must be a non-empty string', []
        if not re.match(r'^esi-[a-z_]+\.[a-z_]+\.v\d+$', scope.strip()):
            return False, f"scopes[{i}] is not an ESI scope: '{scope}'", []
        cleaned.append(scope.strip())

    return True, None, cleaned


def validate_expires_at(value: Any) -> Tuple[bool, Optional[str], Optional[int]]:
    """
    Validate a token expiry.

    Supports ISO8601 strings or epoch timestamps in seconds or milliseconds.

    Returns:
        (is_valid, error_message, epoch_ms)
    """
    if value is None:
        return True, None, None

    if isinstance(value, str) and not value.strip():
        return True, None, None

    def _to_ms(number: float) -> int:
        # Millisecond timestamps are already > 1e12
        if number < 1e12:
            number = number * 1000
        return int(number)

    if isinstance(value, bool):
        return False, 'expires_at has an invalid format', None

    if isinstance(value, (int, float)):
        return True, None, _to_ms(float(value))

    if isinstance(value, str):
        text = value.strip()
        try:
            iso_text = text.replace('Z', '+00:00') if text.endswith('Z') else text
            parsed = datetime.fromisoformat(iso_text)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return True, None, int(parsed.timestamp() * 1000)
        except ValueError:
            try:
                return True, None, _to_ms(float(text))
            except ValueError:
                pass

    return False, 'expires_at has an invalid format', None


def sanitize_string(value: Any, max_length: int = 255, default: str = '') -> str:
    """
    Clean a free-text input.

    Args:
        value: Raw value
        max_length: Truncate to this length
        default: Returned for empty input

    Returns:
        Stripped, truncated string
    """
    if not value:
        return default

    if not isinstance(value, str):
        value = str(value)

    value = value.strip()

    if len(value) > max_length:
        value = value[:max_length]

    return value
