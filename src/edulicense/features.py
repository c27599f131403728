"""Feature entitlement and restriction evaluation.

A feature may carry named restrictions that constrain the runtime values a
client is allowed to use it with.  Restrictions come in two shapes:

Typed::

    {"type": "range", "min": 1, "max": 5}
    {"type": "allowed_values", "values": ["math", "science"]}
    {"type": "forbidden_values", "values": ["guest"]}
    {"type": "regex", "pattern": "^[a-z]+$", "flags": "i"}
    {"type": "date_range", "min": "2026-01-01", "max": "2026-06-30"}
    {"type": "time_range", "min": "08:00", "max": "16:30"}
    {"type": "ip_range", "range": "10.0.0.0/8"}
    {"type": "ip_range", "ranges": ["10.0.0.0/8", "192.168.1.7"]}
    {"type": "custom", ...}

Legacy (untyped)::

    True / 10 / "pro" / ["a", "b"]
    {"min": 1, "max": 5} / {"allowed": [...]} / {"forbidden": [...]}

Every shape is classified into a :class:`RestrictionKind` and evaluated by
exactly one checker.  Unknown shapes and ``custom`` restrictions fail
closed: they log a warning and evaluate to ``False``.
"""

from __future__ import annotations

import enum
import logging
import re
from collections.abc import Callable, Sequence
from datetime import date, datetime, timezone
from typing import Any

from edulicense.models import Feature, FeatureValidationResult
from edulicense.security import is_ip_allowed

logger = logging.getLogger(__name__)


class RestrictionKind(enum.Enum):
    """Closed set of restriction shapes understood by the engine."""

    RANGE = "range"
    ALLOWED_VALUES = "allowed_values"
    FORBIDDEN_VALUES = "forbidden_values"
    REGEX = "regex"
    DATE_RANGE = "date_range"
    TIME_RANGE = "time_range"
    IP_RANGE = "ip_range"
    CUSTOM = "custom"
    LEGACY = "legacy"
    UNKNOWN = "unknown"


_TYPED_KINDS: dict[str, RestrictionKind] = {
    kind.value: kind
    for kind in RestrictionKind
    if kind not in (RestrictionKind.LEGACY, RestrictionKind.UNKNOWN)
}

_REGEX_FLAGS: dict[str, int] = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}


def classify_restriction(restriction: Any) -> RestrictionKind:
    """Return the :class:`RestrictionKind` for a raw restriction value."""
    if isinstance(restriction, dict):
        if "type" in restriction:
            return _TYPED_KINDS.get(str(restriction["type"]), RestrictionKind.UNKNOWN)
        if ("min" in restriction and "max" in restriction) or "allowed" in restriction or "forbidden" in restriction:
            return RestrictionKind.LEGACY
        return RestrictionKind.UNKNOWN
    if isinstance(restriction, (bool, int, float, str, list, tuple)):
        return RestrictionKind.LEGACY
    return RestrictionKind.UNKNOWN


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _in_numeric_range(value: Any, low: Any, high: Any) -> bool:
    if not (_is_number(value) and _is_number(low) and _is_number(high)):
        return False
    return low <= value <= high


def _parse_date(value: Any) -> datetime:
    """Coerce *value* into an aware UTC datetime for range comparisons."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Not a date: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _minutes_of_day(value: Any) -> int:
    if not isinstance(value, str):
        raise ValueError(f"Not a time: {value!r}")
    hours_text, minutes_text = value.strip().split(":", 1)
    hours, minutes = int(hours_text), int(minutes_text[:2])
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"Time out of range: {value!r}")
    return hours * 60 + minutes


# ---------------------------------------------------------------------------
# Per-kind checkers
# ---------------------------------------------------------------------------


def _check_range(restriction: dict[str, Any], value: Any) -> bool:
    if "min" not in restriction or "max" not in restriction:
        return False
    return _in_numeric_range(value, restriction["min"], restriction["max"])


def _check_allowed(restriction: dict[str, Any], value: Any) -> bool:
    values = restriction.get("values")
    if not isinstance(values, (list, tuple)):
        return False
    return value in values


def _check_forbidden(restriction: dict[str, Any], value: Any) -> bool:
    values = restriction.get("values")
    if not isinstance(values, (list, tuple)):
        return False
    return value not in values


def _check_regex(restriction: dict[str, Any], value: Any) -> bool:
    pattern = restriction.get("pattern")
    if not isinstance(pattern, str) or not isinstance(value, str):
        return False
    flags = 0
    for char in str(restriction.get("flags") or ""):
        flags |= _REGEX_FLAGS.get(char, 0)
    try:
        compiled = re.compile(pattern, flags)
    except re.error as exc:
        logger.error("Invalid regex pattern %r: %s", pattern, exc)
        return False
    return compiled.search(value) is not None


def _check_date_range(restriction: dict[str, Any], value: Any) -> bool:
    if "min" not in restriction or "max" not in restriction:
        return False
    try:
        return _parse_date(restriction["min"]) <= _parse_date(value) <= _parse_date(restriction["max"])
    except (TypeError, ValueError) as exc:
        logger.error("Error checking date range: %s", exc)
        return False


def _check_time_range(restriction: dict[str, Any], value: Any) -> bool:
    if "min" not in restriction or "max" not in restriction:
        return False
    try:
        low = _minutes_of_day(restriction["min"])
        high = _minutes_of_day(restriction["max"])
        return low <= _minutes_of_day(value) <= high
    except ValueError as exc:
        logger.error("Error checking time range: %s", exc)
        return False


def _check_ip_range(restriction: dict[str, Any], value: Any) -> bool:
    if not isinstance(value, str):
        return False
    if isinstance(restriction.get("range"), str):
        return is_ip_allowed(value, [restriction["range"]])
    ranges = restriction.get("ranges")
    if isinstance(ranges, (list, tuple)):
        return is_ip_allowed(value, [r for r in ranges if isinstance(r, str)])
    return False


def _check_legacy(restriction: Any, value: Any) -> bool:
    if isinstance(restriction, bool):
        return isinstance(value, bool) and value == restriction
    if _is_number(restriction):
        return _is_number(value) and value <= restriction
    if isinstance(restriction, str):
        return value == restriction
    if isinstance(restriction, (list, tuple)):
        return value in restriction
    if isinstance(restriction, dict):
        if "min" in restriction and "max" in restriction:
            return _in_numeric_range(value, restriction["min"], restriction["max"])
        if isinstance(restriction.get("allowed"), (list, tuple)):
            return value in restriction["allowed"]
        if isinstance(restriction.get("forbidden"), (list, tuple)):
            return value not in restriction["forbidden"]
    return False


_CHECKERS: dict[RestrictionKind, Callable[[Any, Any], bool]] = {
    RestrictionKind.RANGE: _check_range,
    RestrictionKind.ALLOWED_VALUES: _check_allowed,
    RestrictionKind.FORBIDDEN_VALUES: _check_forbidden,
    RestrictionKind.REGEX: _check_regex,
    RestrictionKind.DATE_RANGE: _check_date_range,
    RestrictionKind.TIME_RANGE: _check_time_range,
    RestrictionKind.IP_RANGE: _check_ip_range,
    RestrictionKind.LEGACY: _check_legacy,
}


def evaluate_restriction(restriction: Any, value: Any) -> bool:
    """Evaluate a single restriction against *value*.

    Never raises; unsupported shapes evaluate to ``False``.
    """
    kind = classify_restriction(restriction)
    if kind is RestrictionKind.CUSTOM:
        logger.warning("Custom restriction type is not supported; denying")
        return False
    checker = _CHECKERS.get(kind)
    if checker is None:
        logger.warning("Unknown restriction shape %r; denying", restriction)
        return False
    return checker(restriction, value)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def find_feature(features: Sequence[Feature], name: str) -> Feature | None:
    for feature in features:
        if feature.name == name:
            return feature
    return None


def has_feature(features: Sequence[Feature], name: str) -> bool:
    """True iff *name* is present and enabled."""
    feature = find_feature(features, name)
    return feature is not None and feature.enabled


def meets_restriction(features: Sequence[Feature], name: str, key: str, value: Any) -> bool:
    """Check one restriction of one feature against a runtime value.

    Absent or disabled features never meet a restriction.  A feature with
    no restriction under *key* does.
    """
    feature = find_feature(features, name)
    if feature is None or not feature.enabled:
        return False
    restriction = (feature.restrictions or {}).get(key)
    # Only None means unrestricted; 0, False and "" are enforced.
    if restriction is None:
        return True
    result = evaluate_restriction(restriction, value)
    if not result:
        logger.debug("Feature %s restriction %s not met by %r", name, key, value)
    return result


def validate_feature(
    features: Sequence[Feature],
    name: str,
    context: dict[str, Any] | None = None,
) -> FeatureValidationResult:
    """Validate a feature and every restriction the context supplies a value for.

    Restriction keys missing from *context* are skipped.  All failing keys
    are reported in ``restriction_details``.
    """
    feature = find_feature(features, name)
    if feature is None:
        return FeatureValidationResult(
            feature_name=name,
            is_valid=False,
            message=f"Feature '{name}' not found in license",
        )
    if not feature.enabled:
        return FeatureValidationResult(
            feature_name=name,
            is_valid=False,
            message=f"Feature '{name}' is disabled in license",
        )

    context = context or {}
    details: dict[str, dict[str, Any]] = {}
    for key, restriction in (feature.restrictions or {}).items():
        if key not in context:
            continue
        value = context[key]
        if not meets_restriction(features, name, key, value):
            details[key] = {"restriction": restriction, "value": value}

    if details:
        return FeatureValidationResult(
            feature_name=name,
            is_valid=False,
            message=f"Feature '{name}' restrictions not met",
            restriction_details=details,
        )
    return FeatureValidationResult(
        feature_name=name,
        is_valid=True,
        message=f"Feature '{name}' is valid",
    )


def validate_features(
    features: Sequence[Feature],
    names: Sequence[str],
    context: dict[str, Any] | None = None,
) -> list[FeatureValidationResult]:
    """Validate several features, preserving the order of *names*."""
    return [validate_feature(features, name, context) for name in names]
