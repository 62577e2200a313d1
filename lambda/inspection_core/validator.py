"""
Input validation - coerces raw payloads into typed models.

Every public operation of the engine accepts either a model instance
or a plain dict. This module is the single place where raw input is
checked, so range and presence errors always surface as
InvalidInputError naming the offending field.
"""

import math
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from inspection_core.models import (
    AnalysisComplexity,
    ImageQualityMetrics,
    InvalidInputError,
    ModelPerformanceHistory,
)


def require_unit_interval(field: str, value: Any) -> float:
    """Returns value as float, or raises if it is not a number in [0, 1]."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInputError(field, f"expected a number in [0, 1], got {value!r}")
    value = float(value)
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        raise InvalidInputError(field, f"value {value} outside [0, 1]")
    return value


def to_quality_metrics(data: ImageQualityMetrics | dict | None, field: str) -> ImageQualityMetrics:
    """
    Validates a metrics set.

    Instances are re-checked too: model_construct() or model_copy()
    can produce instances that bypassed pydantic validation.
    """
    if data is None:
        raise InvalidInputError(field, "required field missing")

    if isinstance(data, ImageQualityMetrics):
        for name, value in data.model_dump().items():
            require_unit_interval(f"{field}.{name}", value)
        return data

    if not isinstance(data, dict):
        raise InvalidInputError(field, f"expected an object, got {type(data).__name__}")

    return _parse(ImageQualityMetrics, data, field)


def to_history(data: ModelPerformanceHistory | dict | None) -> ModelPerformanceHistory | None:
    """None means first use: no history yet."""
    if data is None:
        return None

    if isinstance(data, ModelPerformanceHistory):
        require_unit_interval("history.recent_accuracy", data.recent_accuracy)
        if data.total_analyses < 0:
            raise InvalidInputError("history.total_analyses", "must be non-negative")
        if not 0 <= data.successful_analyses <= data.total_analyses:
            raise InvalidInputError(
                "history.successful_analyses", "must be between 0 and total_analyses"
            )
        return data

    if not isinstance(data, dict):
        raise InvalidInputError("history", f"expected an object, got {type(data).__name__}")

    return _parse(ModelPerformanceHistory, data, "history")


def to_complexity(value: AnalysisComplexity | str | None) -> AnalysisComplexity:
    """Accepts the enum, its value, or its name in any case."""
    if isinstance(value, AnalysisComplexity):
        return value
    if isinstance(value, str):
        try:
            return AnalysisComplexity(value.upper())
        except ValueError:
            pass
    raise InvalidInputError(
        "complexity",
        f"expected one of {[c.value for c in AnalysisComplexity]}, got {value!r}",
    )


def to_contextual_flags(data: dict | None) -> dict[str, bool]:
    """
    Normalizes flag keys to snake_case.

    Only values that are exactly True count as set; anything else
    (missing, False, "yes", 1) is treated as absent. A flag given under
    both spellings is set if either one is.
    """
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidInputError("contextual_data", f"expected an object, got {type(data).__name__}")

    flags: dict[str, bool] = {}
    for key, value in data.items():
        name = _snake_case(str(key))
        flags[name] = flags.get(name, False) or value is True
    return flags


def _parse(model_cls, data: dict, field: str):
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        name = f"{field}.{location}" if location else field
        raise InvalidInputError(name, first["msg"]) from e


def _snake_case(key: str) -> str:
    chars = []
    for char in key:
        if char.isupper():
            chars.append("_")
            chars.append(char.lower())
        else:
            chars.append(char)
    return "".join(chars).lstrip("_")
