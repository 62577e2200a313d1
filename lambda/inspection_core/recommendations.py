"""
Recommendation engine - one corrective action per analysis.

Selection is a fixed, priority-ordered rule table evaluated first match
wins: blur > lighting > contrast > any other issue > no issues. Each
recommendation type carries pre-authored steps and a fixed expected
improvement; nothing about the output is computed from input scores
except which rule fired and, for blur, the priority.
"""

import logging
from dataclasses import dataclass

from inspection_core.models import (
    ConfidenceLevel,
    ConfidenceScore,
    ExpectedImprovement,
    ImageQualityMetrics,
    IssueKind,
    IssueSeverity,
    Priority,
    QualityIssue,
    Recommendation,
    RecommendationCategory,
    RecommendationStep,
    RecommendationType,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Template:
    """Pre-authored content for one recommendation type."""
    category: RecommendationCategory
    title: str
    description: str
    steps: tuple[tuple[str, str, int], ...]  # (action, details, estimated_time_ms)
    improvement: tuple[float, float, float]  # (confidence, quality, success probability)
    resources: tuple[str, ...] = ()


_TEMPLATES: dict[RecommendationType, _Template] = {
    RecommendationType.RETAKE_PHOTO: _Template(
        category=RecommendationCategory.IMAGE_CAPTURE,
        title="Retake a sharper photo",
        description="The image is blurred, which sharply reduces analysis accuracy.",
        steps=(
            ("Clean the camera lens", "Use a soft cloth or lens wipe", 30_000),
            ("Enable autofocus", "Tap the part on screen before capturing", 5_000),
            ("Stabilize the camera", "Rest your elbows on a surface or use both hands", 10_000),
            ("Capture a new photo", "Hold still and wait for a sharp preview", 15_000),
        ),
        improvement=(0.30, 0.40, 0.85),
        resources=("Clean cloth", "Stable surface"),
    ),
    RecommendationType.IMPROVE_CONDITIONS: _Template(
        category=RecommendationCategory.ENVIRONMENT,
        title="Improve the lighting",
        description="Unsuitable lighting hides surface details of the part.",
        steps=(
            ("Move towards diffuse daylight", "Avoid direct sun on the part", 30_000),
            ("Switch on additional lights", "Use several sources for even illumination", 15_000),
            ("Remove hard shadows", "Turn the part so no sharp shadow falls on it", 45_000),
        ),
        improvement=(0.25, 0.35, 0.80),
        resources=("Additional lighting",),
    ),
    RecommendationType.CHANGE_BACKGROUND: _Template(
        category=RecommendationCategory.ENVIRONMENT,
        title="Increase contrast",
        description="Low contrast makes it hard to separate the part from its surroundings.",
        steps=(
            ("Use a contrasting background", "Light part on a dark background or the reverse", 60_000),
            ("Adjust the light angle", "Change the light direction to bring out edges", 30_000),
        ),
        improvement=(0.20, 0.30, 0.75),
        resources=("Contrasting backdrop",),
    ),
    RecommendationType.ADJUST_SETTINGS: _Template(
        category=RecommendationCategory.TECHNICAL,
        title="Adjust camera settings",
        description="Camera settings limit the detail available to the analysis.",
        steps=(
            ("Check the camera resolution", "Select the highest available resolution", 30_000),
            ("Avoid digital zoom", "Move closer instead of zooming in", 20_000),
            ("Lower the ISO", "Add light so the camera can use a lower ISO", 15_000),
        ),
        improvement=(0.35, 0.45, 0.90),
        resources=("Camera settings access",),
    ),
    RecommendationType.REPOSITION_CAMERA: _Template(
        category=RecommendationCategory.POSITIONING,
        title="Improve framing",
        description="The part covers too little of the frame for a detailed comparison.",
        steps=(
            ("Move the camera closer", "The part should fill at least half of the frame", 30_000),
            ("Center the part", "Place the part in the middle of the image", 15_000),
        ),
        improvement=(0.25, 0.30, 0.85),
    ),
    RecommendationType.REVIEW_SETTINGS: _Template(
        category=RecommendationCategory.REVIEW,
        title="Review capture setup",
        description="General quality check before running the analysis.",
        steps=(
            ("Check the lighting", "Make sure the part is evenly lit", 30_000),
            ("Verify sharpness", "Both images should be sharp and legible", 30_000),
        ),
        improvement=(0.10, 0.15, 0.60),
    ),
    RecommendationType.PROCEED: _Template(
        category=RecommendationCategory.ANALYSIS,
        title="Proceed with analysis",
        description="Image quality is excellent for automated analysis.",
        steps=(),
        improvement=(0.0, 0.0, 1.0),
    ),
}

# Rule 4: issue kinds without a dedicated rule
_OTHER_ISSUE_TYPES: dict[IssueKind, RecommendationType] = {
    IssueKind.FRAMING: RecommendationType.REPOSITION_CAMERA,
}

_CATALOG_ORDER = {kind: index for index, kind in enumerate(IssueKind)}


# --- Public API ---

def generate_recommendation(
    reference_quality: ImageQualityMetrics,
    part_quality: ImageQualityMetrics,
    confidence_score: ConfidenceScore,
    issues: list[QualityIssue] | None = None,
) -> Recommendation:
    """
    Selects the single most important corrective action.

    When issues is None they are derived from both metric sets.
    Identical (issues, confidence_score) always yield the same result.
    """
    if issues is None:
        issues = collect_issues(reference_quality, part_quality)

    blur = _most_severe(issues, IssueKind.BLUR, minimum=IssueSeverity.MAJOR)
    if blur is not None:
        priority = Priority.CRITICAL if blur.severity == IssueSeverity.CRITICAL else Priority.HIGH
        return _build(RecommendationType.RETAKE_PHOTO, priority)

    if _most_severe(issues, IssueKind.LIGHTING, minimum=IssueSeverity.MAJOR) is not None:
        return _build(RecommendationType.IMPROVE_CONDITIONS, Priority.HIGH)

    if _most_severe(issues, IssueKind.CONTRAST) is not None:
        return _build(RecommendationType.CHANGE_BACKGROUND, Priority.MEDIUM)

    if issues:
        deciding = min(issues, key=lambda i: (-i.severity.rank, _CATALOG_ORDER[i.kind]))
        rec_type = _OTHER_ISSUE_TYPES.get(deciding.kind, RecommendationType.ADJUST_SETTINGS)
        return _build(rec_type, Priority.MEDIUM)

    return default_recommendation(confidence_score)


def default_recommendation(confidence_score: ConfidenceScore) -> Recommendation:
    """Used when no quality issue was detected."""
    if confidence_score.confidence_level == ConfidenceLevel.VERY_HIGH:
        return _build(RecommendationType.PROCEED, Priority.LOW)
    return _build(RecommendationType.REVIEW_SETTINGS, Priority.MEDIUM)


def collect_issues(*metrics: ImageQualityMetrics) -> list[QualityIssue]:
    """Issues of all metric sets, duplicates of the same kind and severity dropped."""
    seen: list[QualityIssue] = []
    for m in metrics:
        for issue in m.quality_issues():
            if issue not in seen:
                seen.append(issue)
    return seen


def is_recommendation_warranted(issues: list[QualityIssue], confidence_score: ConfidenceScore) -> bool:
    """Whether the caller should attach a recommendation to the record."""
    return bool(issues) or confidence_score.should_show_warnings


# --- Internal ---

def _most_severe(
    issues: list[QualityIssue],
    kind: IssueKind,
    minimum: IssueSeverity = IssueSeverity.MINOR,
) -> QualityIssue | None:
    matching = [i for i in issues if i.kind == kind and i.severity.rank >= minimum.rank]
    if not matching:
        return None
    return max(matching, key=lambda i: i.severity.rank)


def _build(rec_type: RecommendationType, priority: Priority) -> Recommendation:
    template = _TEMPLATES[rec_type]
    steps = tuple(
        RecommendationStep(order=index, action=action, details=details, estimated_time_ms=ms)
        for index, (action, details, ms) in enumerate(template.steps, start=1)
    )
    confidence_increase, quality_increase, success_probability = template.improvement

    logger.debug("Selected recommendation %s (%s)", rec_type.value, priority.value)

    return Recommendation(
        type=rec_type,
        category=template.category,
        priority=priority,
        title=template.title,
        description=template.description,
        steps=steps,
        estimated_time_ms=sum(step.estimated_time_ms for step in steps),
        expected_improvement=ExpectedImprovement(
            confidence_increase=confidence_increase,
            quality_increase=quality_increase,
            success_probability=success_probability,
        ),
        required_resources=template.resources,
        is_actionable=rec_type != RecommendationType.PROCEED,
    )
