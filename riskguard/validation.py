"""
riskguard/validation.py
========================
Request validation — RiskGuard

Responsibility:
    - Validate raw JSON bodies and query parameters BEFORE any analysis runs
    - Build typed FraudAnalysisRequest objects from validated input
    - Collect every field error and FAIL FAST with one ValidationError
    - NO auto-correction — a malformed field is an error, never a default

This module does NOT:
    - Perform any fraud or intrusion analysis
    - Write audit entries (the caller decides what to log)
"""

import logging
import re
import uuid
from typing import Any

from riskguard.errors import ValidationError
from riskguard.models import (
    CallerLocation,
    DetectionMode,
    FraudAnalysisRequest,
    PatternType,
    new_id,
)

logger = logging.getLogger("riskguard.validation")


# ---------------------------------------------------------------------------
# Constraints
# ---------------------------------------------------------------------------

PHONE_HASH_PATTERN = re.compile(r"^[A-Za-z0-9]{8,64}$")
MESSAGE_MIN_CHARS = 1
MESSAGE_MAX_CHARS = 2000
CALL_DURATION_MAX_SECONDS = 3600
MAX_PREVIOUS_INTERACTIONS = 500
BATCH_MIN_ITEMS = 1
BATCH_MAX_ITEMS = 20
REQUEST_ID_MIN_CHARS = 8

TIME_WINDOWS: tuple[str, ...] = ("30m", "24h", "7d", "30d")
DEFAULT_TIME_WINDOW = "24h"

_VALID_MODES: set[str] = {m.value for m in DetectionMode}
_VALID_PATTERN_TYPES: set[str] = {p.value for p in PatternType}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# Single-field validators
# ---------------------------------------------------------------------------


def phone_hash_error(value: Any) -> str | None:
    if not isinstance(value, str) or not PHONE_HASH_PATTERN.match(value):
        return "Phone hash must be 8-64 alphanumeric characters"
    return None


def validate_phone_hash(value: Any) -> str:
    """Return ``value`` if it is a well-formed phone hash, else raise."""
    error = phone_hash_error(value)
    if error:
        raise ValidationError(
            "Invalid phone hash", [{"field": "phone_hash", "message": error}],
        )
    return value


def store_id_error(value: Any) -> str | None:
    if not isinstance(value, str):
        return "Store ID must be a valid UUID"
    try:
        uuid.UUID(value)
    except ValueError:
        return "Store ID must be a valid UUID"
    return None


def validate_request_id(value: Any) -> str:
    if not isinstance(value, str) or len(value.strip()) < REQUEST_ID_MIN_CHARS:
        raise ValidationError(
            "Valid request ID is required",
            [{"field": "request_id", "message": f"Must be at least {REQUEST_ID_MIN_CHARS} characters"}],
            error_code="invalid_request_id",
        )
    return value


def validate_time_window(token: str | None) -> str:
    """Strict check used at the HTTP surface; ``None`` means the default."""
    if token is None or token == "":
        return DEFAULT_TIME_WINDOW
    if token not in TIME_WINDOWS:
        raise ValidationError(
            "Invalid time window",
            [{"field": "time_window", "message": f"Must be one of {list(TIME_WINDOWS)}"}],
        )
    return token


def parse_pattern_types(raw: str | None) -> list[PatternType] | None:
    """Parse a comma-separated subset of pattern types; ``None`` means all."""
    if raw is None or raw.strip() == "":
        return None
    names = [part.strip() for part in raw.split(",") if part.strip()]
    unknown = [n for n in names if n not in _VALID_PATTERN_TYPES]
    if unknown:
        raise ValidationError(
            "Invalid pattern types",
            [{
                "field": "pattern_types",
                "message": f"Unknown pattern types {unknown}; allowed: {sorted(_VALID_PATTERN_TYPES)}",
            }],
        )
    # de-duplicate, keep order
    return [PatternType(n) for n in dict.fromkeys(names)]


def parse_bool(raw: Any, field_name: str, default: bool = False) -> bool:
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and raw.lower() in ("true", "1", "yes"):
        return True
    if isinstance(raw, str) and raw.lower() in ("false", "0", "no"):
        return False
    raise ValidationError(
        f"Invalid {field_name}",
        [{"field": field_name, "message": "Must be a boolean"}],
    )


def _location_errors(value: Any, prefix: str) -> list[dict[str, str]]:
    if not isinstance(value, dict):
        return [{"field": prefix, "message": "Caller location must be an object"}]
    errors = []
    lat = value.get("latitude")
    lon = value.get("longitude")
    acc = value.get("accuracy")
    if not _is_number(lat) or not -90 <= lat <= 90:
        errors.append({"field": f"{prefix}.latitude", "message": "Invalid latitude"})
    if not _is_number(lon) or not -180 <= lon <= 180:
        errors.append({"field": f"{prefix}.longitude", "message": "Invalid longitude"})
    if acc is not None and (not _is_number(acc) or acc < 0):
        errors.append({"field": f"{prefix}.accuracy", "message": "Invalid accuracy"})
    return errors


# ---------------------------------------------------------------------------
# Request body
# ---------------------------------------------------------------------------


def analysis_request_errors(body: Any, prefix: str = "") -> list[dict[str, str]]:
    """Return every field error in one analysis request body."""
    if not isinstance(body, dict):
        return [{"field": prefix.rstrip(".") or "body", "message": "Request body must be an object"}]

    errors: list[dict[str, str]] = []

    def add(field_name: str, message: str) -> None:
        errors.append({"field": f"{prefix}{field_name}", "message": message})

    error = phone_hash_error(body.get("phone_hash"))
    if error:
        add("phone_hash", error)

    text = body.get("message_text")
    if not isinstance(text, str) or not MESSAGE_MIN_CHARS <= len(text) <= MESSAGE_MAX_CHARS or not text.strip():
        add("message_text", f"Message text must be between {MESSAGE_MIN_CHARS} and {MESSAGE_MAX_CHARS} characters")

    error = store_id_error(body.get("store_id"))
    if error:
        add("store_id", error)

    duration = body.get("call_duration")
    if duration is not None and (
        not isinstance(duration, int) or isinstance(duration, bool)
        or not 0 <= duration <= CALL_DURATION_MAX_SECONDS
    ):
        add("call_duration", f"Call duration must be between 0 and {CALL_DURATION_MAX_SECONDS} seconds")

    location = body.get("caller_location")
    if location is not None:
        errors.extend(_location_errors(location, f"{prefix}caller_location"))

    metadata = body.get("session_metadata")
    if metadata is not None and not isinstance(metadata, dict):
        add("session_metadata", "Session metadata must be an object")

    interactions = body.get("previous_interactions")
    if interactions is not None:
        if not isinstance(interactions, list):
            add("previous_interactions", "Previous interactions must be an array")
        elif len(interactions) > MAX_PREVIOUS_INTERACTIONS:
            add("previous_interactions", f"At most {MAX_PREVIOUS_INTERACTIONS} previous interactions")

    mode = body.get("detection_mode")
    if mode is not None and mode not in _VALID_MODES:
        add("detection_mode", f"Invalid detection mode; allowed: {sorted(_VALID_MODES)}")

    learning = body.get("enable_learning")
    if learning is not None and not isinstance(learning, bool):
        add("enable_learning", "Enable learning must be a boolean")

    return errors


def build_analysis_request(
    body: dict[str, Any],
    request_id: str | None = None,
    default_mode: DetectionMode = DetectionMode.COMPREHENSIVE,
    enable_learning: bool | None = None,
) -> FraudAnalysisRequest:
    """
    Build a FraudAnalysisRequest from an already-validated body.

    ``enable_learning`` overrides the body value when given (batch items
    force it off).
    """
    location = body.get("caller_location")
    learning = body.get("enable_learning", True) if enable_learning is None else enable_learning
    return FraudAnalysisRequest(
        phone_hash=body["phone_hash"],
        message_text=body["message_text"],
        store_id=body["store_id"],
        call_duration=body.get("call_duration"),
        caller_location=CallerLocation(
            latitude=float(location["latitude"]),
            longitude=float(location["longitude"]),
            accuracy=location.get("accuracy"),
        ) if location else None,
        session_metadata=dict(body.get("session_metadata") or {}),
        previous_interactions=list(body.get("previous_interactions") or []),
        detection_mode=DetectionMode(body.get("detection_mode") or default_mode),
        enable_learning=bool(learning),
        request_id=request_id or new_id(),
    )


def parse_analysis_request(body: Any, request_id: str | None = None) -> FraudAnalysisRequest:
    """
    Validate one analysis body and build the typed request.

    Raises:
        ValidationError: with every field error found.
    """
    errors = analysis_request_errors(body)
    if errors:
        logger.info("Analysis request rejected: %d field errors", len(errors))
        raise ValidationError("Invalid request parameters", errors)
    return build_analysis_request(body, request_id=request_id)


def parse_batch_requests(body: Any, batch_id: str) -> list[FraudAnalysisRequest]:
    """
    Validate a batch body ``{"requests": [...]}`` of 1–20 items.

    Items default to quick_scan and always run with learning disabled.
    Item request ids are ``{batch_id}-{index}``.
    """
    items = body.get("requests") if isinstance(body, dict) else None
    if not isinstance(items, list) or not BATCH_MIN_ITEMS <= len(items) <= BATCH_MAX_ITEMS:
        raise ValidationError(
            "Invalid batch request parameters",
            [{
                "field": "requests",
                "message": f"Requests must be an array with {BATCH_MIN_ITEMS}-{BATCH_MAX_ITEMS} items",
            }],
        )

    errors: list[dict[str, str]] = []
    for index, item in enumerate(items):
        errors.extend(analysis_request_errors(item, prefix=f"requests[{index}]."))
    if errors:
        raise ValidationError("Invalid batch request parameters", errors)

    return [
        build_analysis_request(
            item,
            request_id=f"{batch_id}-{index}",
            default_mode=DetectionMode.QUICK_SCAN,
            enable_learning=False,
        )
        for index, item in enumerate(items)
    ]
