"""
Feedback evaluation - user validation of a finished analysis.

Three validated constructors (positive, negative, mixed) build an
immutable Feedback with its confidence calibration and learning
weight. The weight ranks feedback for the retraining pipeline, which
lives outside this package.

Also aggregates feedback into the per-user model performance history
consumed by the confidence scorer, and into pattern reports.
"""

import logging
from collections import Counter
from datetime import datetime, timezone

from pydantic import BaseModel

from inspection_core.models import (
    AccuracyRating,
    CalibrationClass,
    ConfidenceValidation,
    Feedback,
    FeedbackSuggestion,
    FeedbackType,
    ImprovementArea,
    InvalidInputError,
    ModelPerformanceHistory,
    UserSatisfaction,
)
from inspection_core.validator import require_unit_interval
from inspection_core.config import (
    FLOAT_TOLERANCE,
    ACCURATE_DEVIATION,
    MODERATE_DEVIATION,
    INACCURATE_DEVIATION,
    FEEDBACK_TYPE_WEIGHTS,
    ACCURATE_CONFIDENCE_MULTIPLIER,
    INACCURATE_CONFIDENCE_MULTIPLIER,
    DETAILED_COMMENT_MULTIPLIER,
    DETAILED_COMMENT_MIN_LENGTH,
    ISSUE_KEYWORDS,
    PERFORMANCE_RECENT_DEFAULT,
    PERFORMANCE_RECENT_DECAY,
    COMMON_ISSUES_LIMIT,
    IMPROVEMENT_AREA_SHARE,
)


logger = logging.getLogger(__name__)


_SATISFACTION = {
    AccuracyRating.EXCELLENT: UserSatisfaction.VERY_SATISFIED,
    AccuracyRating.GOOD: UserSatisfaction.SATISFIED,
    AccuracyRating.ACCEPTABLE: UserSatisfaction.NEUTRAL,
    AccuracyRating.POOR: UserSatisfaction.DISSATISFIED,
    AccuracyRating.VERY_POOR: UserSatisfaction.VERY_DISSATISFIED,
}

_SATISFACTION_POINTS = {level: points for points, level in enumerate(UserSatisfaction, start=1)}


# --- Constructors ---

def create_positive(
    analysis_id: str,
    accuracy_rating: AccuracyRating | str,
    reported_confidence: float,
    actual_confidence: float,
    comments: str | None = None,
    reported_issues: list[str] | None = None,
) -> Feedback:
    """
    Feedback confirming the analysis.

    Raises:
        InvalidInputError: If issues are reported or any input is invalid.
    """
    if reported_issues:
        raise InvalidInputError("reported_issues", "positive feedback cannot report issues")

    return _create(
        FeedbackType.POSITIVE,
        analysis_id,
        accuracy_rating,
        reported_confidence,
        actual_confidence,
        comments=comments,
    )


def create_negative(
    analysis_id: str,
    accuracy_rating: AccuracyRating | str,
    reported_issues: list[str],
    reported_confidence: float,
    actual_confidence: float,
    comments: str | None = None,
    suggestions: list[FeedbackSuggestion | dict] | None = None,
) -> Feedback:
    """Feedback rejecting the analysis. Issues are required, may be empty."""
    if reported_issues is None:
        raise InvalidInputError("reported_issues", "required field missing")

    return _create(
        FeedbackType.NEGATIVE,
        analysis_id,
        accuracy_rating,
        reported_confidence,
        actual_confidence,
        comments=comments,
        reported_issues=reported_issues,
        suggestions=suggestions,
    )


def create_mixed(
    analysis_id: str,
    accuracy_rating: AccuracyRating | str,
    reported_issues: list[str],
    suggestions: list[FeedbackSuggestion | dict],
    reported_confidence: float,
    actual_confidence: float,
    comments: str | None = None,
) -> Feedback:
    """Feedback for a partially correct analysis."""
    if reported_issues is None:
        raise InvalidInputError("reported_issues", "required field missing")
    if suggestions is None:
        raise InvalidInputError("suggestions", "required field missing")

    return _create(
        FeedbackType.MIXED,
        analysis_id,
        accuracy_rating,
        reported_confidence,
        actual_confidence,
        comments=comments,
        reported_issues=reported_issues,
        suggestions=suggestions,
    )


# --- Calibration & Weighting ---

def validate_confidence(reported_confidence: float, actual_confidence: float) -> ConfidenceValidation:
    """Compares what the system reported with what the user validated."""
    reported = require_unit_interval("reported_confidence", reported_confidence)
    actual = require_unit_interval("actual_confidence", actual_confidence)
    deviation = abs(reported - actual)

    return ConfidenceValidation(
        reported_confidence=reported,
        actual_confidence=actual,
        deviation=deviation,
        is_accurate=deviation <= ACCURATE_DEVIATION + FLOAT_TOLERANCE,
        calibration_class=calibration_class(reported, actual),
    )


def calibration_class(reported: float, actual: float) -> CalibrationClass:
    deviation = abs(reported - actual)
    if deviation <= ACCURATE_DEVIATION + FLOAT_TOLERANCE:
        return CalibrationClass.WELL_CALIBRATED
    if deviation <= MODERATE_DEVIATION + FLOAT_TOLERANCE:
        return CalibrationClass.MODERATELY_CALIBRATED
    if reported > actual:
        return CalibrationClass.OVERCONFIDENT
    return CalibrationClass.UNDERCONFIDENT


def learning_weight(
    feedback_type: FeedbackType,
    validation: ConfidenceValidation,
    comments: str | None,
) -> float:
    """
    base 1.0 x type x confidence accuracy x comment quality.

    Negative feedback and well-calibrated reports teach the most;
    badly calibrated reports are discounted. Always positive.
    """
    weight = 1.0
    weight *= FEEDBACK_TYPE_WEIGHTS[feedback_type.value]

    if validation.is_accurate:
        weight *= ACCURATE_CONFIDENCE_MULTIPLIER
    elif validation.deviation >= INACCURATE_DEVIATION - FLOAT_TOLERANCE:
        weight *= INACCURATE_CONFIDENCE_MULTIPLIER

    if comments is not None and len(comments) > DETAILED_COMMENT_MIN_LENGTH:
        weight *= DETAILED_COMMENT_MULTIPLIER

    return weight


def get_improvement_areas(feedback: Feedback) -> list[ImprovementArea]:
    """
    Areas this feedback points at, without duplicates, in enum order.

    Keyword matching is plain case-insensitive substring search.
    """
    areas: set[ImprovementArea] = set()

    if feedback.accuracy_rating in (AccuracyRating.POOR, AccuracyRating.VERY_POOR):
        areas.add(ImprovementArea.MODEL_ACCURACY)

    if not feedback.confidence_validation.is_accurate:
        areas.add(ImprovementArea.CONFIDENCE_CALIBRATION)

    if feedback.type != FeedbackType.POSITIVE:
        areas.add(ImprovementArea.IMAGE_QUALITY_ASSESSMENT)

    for issue in feedback.reported_issues:
        text = issue.lower()
        for area, keywords in ISSUE_KEYWORDS.items():
            if any(keyword in text for keyword in keywords):
                areas.add(ImprovementArea(area))

    return [area for area in ImprovementArea if area in areas]


# --- Aggregation ---

def update_performance_history(
    history: ModelPerformanceHistory | None,
    feedback: Feedback,
) -> ModelPerformanceHistory:
    """Folds one feedback into the running history. Recent accuracy decays by 0.8."""
    total = (history.total_analyses if history else 0) + 1
    successful = (history.successful_analyses if history else 0) + (1 if feedback.is_positive else 0)
    previous = history.recent_accuracy if history else PERFORMANCE_RECENT_DEFAULT

    recent = previous * PERFORMANCE_RECENT_DECAY + feedback.accuracy_score * (1 - PERFORMANCE_RECENT_DECAY)

    return ModelPerformanceHistory(
        total_analyses=total,
        successful_analyses=successful,
        recent_accuracy=max(0.0, min(1.0, recent)),
        last_updated=datetime.now(timezone.utc),
    )


class FeedbackAnalysisReport(BaseModel):
    """Patterns across a batch of feedback."""
    total_feedback: int = 0
    average_satisfaction: float = 0.0  # 1 (very dissatisfied) .. 5 (very satisfied)
    average_accuracy: float = 0.0
    average_deviation: float = 0.0
    calibration_accuracy: float = 0.0
    overconfidence_rate: float = 0.0
    underconfidence_rate: float = 0.0
    average_learning_weight: float = 0.0
    common_issues: list[str] = []
    improvement_areas: list[ImprovementArea] = []


def analyze_feedback(feedbacks: list[Feedback]) -> FeedbackAnalysisReport:
    """Summarizes feedback history. Empty input yields an all-zero report."""
    if not feedbacks:
        return FeedbackAnalysisReport()

    count = len(feedbacks)
    calibrations = Counter(f.confidence_validation.calibration_class for f in feedbacks)

    issue_counts = Counter(issue for f in feedbacks for issue in f.reported_issues)
    common_issues = [issue for issue, _ in issue_counts.most_common(COMMON_ISSUES_LIMIT)]

    area_counts = Counter(area for f in feedbacks for area in get_improvement_areas(f))
    min_count = max(1, round(count * IMPROVEMENT_AREA_SHARE))
    areas = [area for area in ImprovementArea if area_counts[area] >= min_count]

    return FeedbackAnalysisReport(
        total_feedback=count,
        average_satisfaction=sum(_SATISFACTION_POINTS[f.satisfaction] for f in feedbacks) / count,
        average_accuracy=sum(f.accuracy_score for f in feedbacks) / count,
        average_deviation=sum(f.confidence_validation.deviation for f in feedbacks) / count,
        calibration_accuracy=sum(1 for f in feedbacks if f.confidence_validation.is_accurate) / count,
        overconfidence_rate=calibrations[CalibrationClass.OVERCONFIDENT] / count,
        underconfidence_rate=calibrations[CalibrationClass.UNDERCONFIDENT] / count,
        average_learning_weight=sum(f.learning_weight for f in feedbacks) / count,
        common_issues=common_issues,
        improvement_areas=areas,
    )


# --- Internal ---

def _create(
    feedback_type: FeedbackType,
    analysis_id: str,
    accuracy_rating: AccuracyRating | str,
    reported_confidence: float,
    actual_confidence: float,
    comments: str | None = None,
    reported_issues: list[str] | None = None,
    suggestions: list[FeedbackSuggestion | dict] | None = None,
) -> Feedback:
    if not analysis_id:
        raise InvalidInputError("analysis_id", "required field missing")

    rating = _to_rating(accuracy_rating)
    validation = validate_confidence(reported_confidence, actual_confidence)
    issues = tuple(_to_issue_text(issue) for issue in (reported_issues or []))
    parsed_suggestions = tuple(_to_suggestion(s) for s in (suggestions or []))

    if comments is not None and not isinstance(comments, str):
        raise InvalidInputError("comments", "expected text")

    feedback = Feedback(
        analysis_id=analysis_id,
        created_at=datetime.now(timezone.utc),
        type=feedback_type,
        satisfaction=_SATISFACTION[rating],
        accuracy_rating=rating,
        confidence_validation=validation,
        reported_issues=issues,
        suggestions=parsed_suggestions,
        comments=comments,
        learning_weight=learning_weight(feedback_type, validation, comments),
    )

    logger.info(
        "Feedback %s for %s: deviation=%.3f calibration=%s weight=%.3f",
        feedback_type.value, analysis_id, validation.deviation,
        validation.calibration_class.value, feedback.learning_weight,
    )
    return feedback


def _to_rating(value: AccuracyRating | str) -> AccuracyRating:
    if isinstance(value, AccuracyRating):
        return value
    if isinstance(value, str):
        try:
            return AccuracyRating(value.upper())
        except ValueError:
            pass
    raise InvalidInputError(
        "accuracy_rating",
        f"expected one of {[r.value for r in AccuracyRating]}, got {value!r}",
    )


def _to_issue_text(value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError("reported_issues", f"expected non-empty text, got {value!r}")
    return value


def _to_suggestion(value: FeedbackSuggestion | dict) -> FeedbackSuggestion:
    if isinstance(value, FeedbackSuggestion):
        return value
    if not isinstance(value, dict):
        raise InvalidInputError("suggestions", f"expected an object, got {type(value).__name__}")
    try:
        return FeedbackSuggestion.model_validate(value)
    except ValueError as e:
        raise InvalidInputError("suggestions", str(e)) from e
