"""
Confidence scoring - weighted trust estimate for an automated analysis.

Combines image quality, model reliability for the declared complexity,
capture context, and the model's track record into one [0, 1] score.
Every term is reported as a factor so the result can be audited.
"""

import logging

from inspection_core.models import (
    AnalysisComplexity,
    ConfidenceFactor,
    ConfidenceFactorType,
    ConfidenceScore,
    ImageQualityMetrics,
    ModelPerformanceHistory,
)
from inspection_core.validator import (
    to_complexity,
    to_contextual_flags,
    to_history,
    to_quality_metrics,
)
from inspection_core.config import (
    CONFIDENCE_WEIGHTS,
    MODEL_RELIABILITY,
    COMPLEXITY_PENALTY,
    CONTEXTUAL_BASE,
    CONTEXTUAL_ADJUSTMENTS,
    HISTORICAL_DEFAULT,
)


logger = logging.getLogger(__name__)


# --- Public API ---

def calculate_confidence(
    reference_quality: ImageQualityMetrics | dict,
    part_quality: ImageQualityMetrics | dict,
    complexity: AnalysisComplexity | str,
    history: ModelPerformanceHistory | dict | None = None,
    contextual_data: dict | None = None,
) -> ConfidenceScore:
    """
    Scores how far an analysis of these two images can be trusted.

    overall = clamp01(0.30 * quality + 0.25 * reliability + 0.20 * context
                      + 0.15 * history - 0.10 * complexity_penalty)

    Raises:
        InvalidInputError: If any input is missing or outside [0, 1].
    """
    reference_quality = to_quality_metrics(reference_quality, "reference_quality")
    part_quality = to_quality_metrics(part_quality, "part_quality")
    complexity = to_complexity(complexity)
    history = to_history(history)
    flags = to_contextual_flags(contextual_data)

    image_quality = (reference_quality.overall_score + part_quality.overall_score) / 2
    reliability = model_reliability(complexity)
    contextual = contextual_score(flags)
    historical = historical_score(history)
    penalty = complexity_penalty(complexity)

    factors = (
        _factor(ConfidenceFactorType.IMAGE_QUALITY, "image_quality", image_quality),
        _factor(ConfidenceFactorType.MODEL_RELIABILITY, "model_reliability", reliability),
        _factor(ConfidenceFactorType.CONTEXTUAL, "contextual", contextual),
        _factor(ConfidenceFactorType.HISTORICAL, "historical", historical),
        _factor(ConfidenceFactorType.COMPLEXITY, "complexity", penalty, sign=-1.0),
    )

    overall = _clamp01(sum(f.contribution for f in factors))

    logger.debug(
        "Confidence %.3f (quality=%.3f reliability=%.2f context=%.2f history=%.3f penalty=%.2f)",
        overall, image_quality, reliability, contextual, historical, penalty,
    )

    return ConfidenceScore(
        image_quality_score=image_quality,
        model_reliability_score=reliability,
        contextual_score=contextual,
        historical_score=historical,
        complexity_penalty=penalty,
        overall_confidence=overall,
        factors=factors,
    )


def model_reliability(complexity: AnalysisComplexity) -> float:
    """Fixed trust ceiling for the task tier. Not adjustable by input data."""
    return MODEL_RELIABILITY[complexity.value]


def complexity_penalty(complexity: AnalysisComplexity) -> float:
    return COMPLEXITY_PENALTY[complexity.value]


def contextual_score(flags: dict[str, bool]) -> float:
    """
    Neutral 0.5 shifted by a fixed amount per flag that is set.

    Conflicting flags simply add up, so the result does not depend
    on flag order.
    """
    score = CONTEXTUAL_BASE
    for flag, adjustment in CONTEXTUAL_ADJUSTMENTS.items():
        if flags.get(flag):
            score += adjustment
    return _clamp01(score)


def historical_score(history: ModelPerformanceHistory | None) -> float:
    """Equal-weight mean of lifetime success rate and recent accuracy."""
    if history is None or history.success_rate is None:
        return HISTORICAL_DEFAULT
    return _clamp01((history.success_rate + history.recent_accuracy) / 2)


# --- Internal ---

def _factor(
    name: ConfidenceFactorType,
    weight_key: str,
    raw_value: float,
    sign: float = 1.0,
) -> ConfidenceFactor:
    weight = CONFIDENCE_WEIGHTS[weight_key]
    return ConfidenceFactor(
        name=name,
        weight=weight,
        raw_value=raw_value,
        contribution=sign * weight * raw_value,
    )


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))
