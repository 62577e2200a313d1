"""
Domain models for the inspection confidence engine.

Value models shared by the scorer, recommendation engine, feedback
evaluator, lifecycle record, and storage. All models are frozen:
every change produces a new instance.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from inspection_core.config import (
    ACCURACY_SCORES,
    ANALYSIS_ACCEPTABLE_QUALITY,
    BRIGHTNESS_HIGH,
    BRIGHTNESS_LOW,
    BRIGHTNESS_OPTIMAL,
    COMPRESSION_MIN,
    CONFIDENCE_LEVEL_FLOORS,
    CONTRAST_MIN,
    HUMAN_REVIEW_BELOW,
    NOISE_MAX,
    OBJECT_COVERAGE_MIN,
    RELIABLE_CONFIDENCE,
    RESOLUTION_MIN,
    SEVERITY_MAJOR_FROM,
    SEVERITY_MINOR_FROM,
    SHARPNESS_MIN,
)


# --- Exceptions ---

class InvalidInputError(ValueError):
    """Input value missing or outside its documented range."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class IllegalStateTransitionError(Exception):
    """Transition attempted on a record that is already terminal."""
    pass


class SerializationError(Exception):
    """Stored or received JSON could not be parsed into a model."""
    pass


class StorageError(Exception):
    """Database operation failed."""
    pass


class RecordNotFoundError(Exception):
    """Requested analysis record does not exist."""
    pass


class ConcurrentModificationError(Exception):
    """Record changed in the store since it was loaded."""
    pass


class PerformanceHistoryConflictError(ConcurrentModificationError):
    """A user's performance history changed since it was read. Nothing was written."""
    pass


# --- Base ---

class FrozenModel(BaseModel):
    """Immutable model with JSON helpers that raise SerializationError."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes):
        try:
            return cls.model_validate_json(data)
        except (PydanticValidationError, TypeError) as e:
            raise SerializationError(f"Malformed {cls.__name__} JSON: {e}") from e


# --- Quality Issue Catalog ---

class IssueKind(str, Enum):
    """Detectable input-quality problems, in catalog order."""
    BLUR = "BLUR"
    LIGHTING = "LIGHTING"
    CONTRAST = "CONTRAST"
    NOISE = "NOISE"
    RESOLUTION = "RESOLUTION"
    FRAMING = "FRAMING"
    OTHER = "OTHER"


class IssueSeverity(str, Enum):
    MINOR = "MINOR"
    MAJOR = "MAJOR"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    IssueSeverity.MINOR: 0,
    IssueSeverity.MAJOR: 1,
    IssueSeverity.CRITICAL: 2,
}


class QualityIssue(FrozenModel):
    kind: IssueKind
    severity: IssueSeverity


def severity_for(score: float) -> IssueSeverity:
    """Maps a normalized goodness score (1.0 = perfect) to a severity."""
    if score >= SEVERITY_MINOR_FROM:
        return IssueSeverity.MINOR
    if score >= SEVERITY_MAJOR_FROM:
        return IssueSeverity.MAJOR
    return IssueSeverity.CRITICAL


class QualityLevel(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    ACCEPTABLE = "ACCEPTABLE"
    POOR = "POOR"
    CRITICAL = "CRITICAL"


# --- Quality Metrics ---

class ImageQualityMetrics(FrozenModel):
    """Per-image quality scores, computed outside this package."""
    sharpness: float = Field(ge=0.0, le=1.0)
    brightness: float = Field(ge=0.0, le=1.0)
    contrast: float = Field(ge=0.0, le=1.0)
    noise_level: float = Field(ge=0.0, le=1.0)
    resolution: float = Field(ge=0.0, le=1.0)
    compression: float = Field(ge=0.0, le=1.0)
    object_coverage: float = Field(ge=0.0, le=1.0)
    edge_clarity: float = Field(ge=0.0, le=1.0)
    overall_score: float = Field(ge=0.0, le=1.0)

    @property
    def quality_level(self) -> QualityLevel:
        if self.overall_score >= 0.9:
            return QualityLevel.EXCELLENT
        if self.overall_score >= 0.7:
            return QualityLevel.GOOD
        if self.overall_score >= 0.5:
            return QualityLevel.ACCEPTABLE
        if self.overall_score >= 0.3:
            return QualityLevel.POOR
        return QualityLevel.CRITICAL

    @property
    def is_acceptable_for_analysis(self) -> bool:
        return self.overall_score >= ANALYSIS_ACCEPTABLE_QUALITY

    def quality_issues(self) -> list[QualityIssue]:
        """Thresholds each dimension; issues are returned in catalog order."""
        issues: list[QualityIssue] = []

        if self.sharpness < SHARPNESS_MIN:
            issues.append(QualityIssue(kind=IssueKind.BLUR, severity=severity_for(self.sharpness)))

        if self.brightness < BRIGHTNESS_LOW or self.brightness > BRIGHTNESS_HIGH:
            goodness = 1.0 - abs(self.brightness - BRIGHTNESS_OPTIMAL) * 2
            issues.append(QualityIssue(kind=IssueKind.LIGHTING, severity=severity_for(goodness)))

        if self.contrast < CONTRAST_MIN:
            issues.append(QualityIssue(kind=IssueKind.CONTRAST, severity=severity_for(self.contrast)))

        if self.noise_level > NOISE_MAX:
            issues.append(QualityIssue(kind=IssueKind.NOISE, severity=severity_for(1.0 - self.noise_level)))

        if self.resolution < RESOLUTION_MIN:
            issues.append(QualityIssue(kind=IssueKind.RESOLUTION, severity=severity_for(self.resolution)))

        if self.object_coverage < OBJECT_COVERAGE_MIN:
            issues.append(QualityIssue(kind=IssueKind.FRAMING, severity=severity_for(self.object_coverage)))

        if self.compression < COMPRESSION_MIN:
            issues.append(QualityIssue(kind=IssueKind.OTHER, severity=severity_for(self.compression)))

        return issues


# --- Confidence ---

class AnalysisComplexity(str, Enum):
    """Declared difficulty tier, ordered from easiest to hardest."""
    SIMPLE = "SIMPLE"
    MODERATE = "MODERATE"
    COMPLEX = "COMPLEX"
    EXTREME = "EXTREME"


class ConfidenceLevel(str, Enum):
    VERY_HIGH = "VERY_HIGH"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    VERY_LOW = "VERY_LOW"


def confidence_level_for(value: float) -> ConfidenceLevel:
    """Buckets are closed on the left: 0.70 is HIGH, 0.50 is MEDIUM."""
    for level in ConfidenceLevel:
        if value >= CONFIDENCE_LEVEL_FLOORS[level.value]:
            return level
    return ConfidenceLevel.VERY_LOW


class ConfidenceFactorType(str, Enum):
    IMAGE_QUALITY = "IMAGE_QUALITY"
    MODEL_RELIABILITY = "MODEL_RELIABILITY"
    CONTEXTUAL = "CONTEXTUAL"
    HISTORICAL = "HISTORICAL"
    COMPLEXITY = "COMPLEXITY"


class ConfidenceFactor(FrozenModel):
    """One weighted term of the overall confidence."""
    name: ConfidenceFactorType
    weight: float = Field(ge=0.0, le=1.0)
    raw_value: float = Field(ge=0.0, le=1.0)
    contribution: float = Field(ge=-1.0, le=1.0)  # negative for the complexity penalty


class ModelPerformanceHistory(FrozenModel):
    """Track record of the vision model for one user."""
    total_analyses: int = Field(ge=0)
    successful_analyses: int = Field(ge=0)
    recent_accuracy: float = Field(ge=0.0, le=1.0)
    last_updated: datetime | None = None

    @model_validator(mode="after")
    def _successful_within_total(self):
        if self.successful_analyses > self.total_analyses:
            raise ValueError("successful_analyses cannot exceed total_analyses")
        return self

    @property
    def success_rate(self) -> float | None:
        if self.total_analyses == 0:
            return None
        return self.successful_analyses / self.total_analyses


class ConfidenceScore(FrozenModel):
    image_quality_score: float = Field(ge=0.0, le=1.0)
    model_reliability_score: float = Field(ge=0.0, le=1.0)
    contextual_score: float = Field(ge=0.0, le=1.0)
    historical_score: float = Field(ge=0.0, le=1.0)
    complexity_penalty: float = Field(ge=0.0, le=1.0)
    overall_confidence: float = Field(ge=0.0, le=1.0)
    factors: tuple[ConfidenceFactor, ...]

    @property
    def confidence_level(self) -> ConfidenceLevel:
        return confidence_level_for(self.overall_confidence)

    @property
    def is_reliable_for_decision_making(self) -> bool:
        return self.overall_confidence >= RELIABLE_CONFIDENCE

    @property
    def requires_human_review(self) -> bool:
        return self.overall_confidence < HUMAN_REVIEW_BELOW

    @property
    def should_show_warnings(self) -> bool:
        return self.overall_confidence < RELIABLE_CONFIDENCE

    def factor(self, name: ConfidenceFactorType) -> ConfidenceFactor:
        for factor in self.factors:
            if factor.name == name:
                return factor
        raise KeyError(name)


# --- Recommendation ---

class RecommendationType(str, Enum):
    RETAKE_PHOTO = "RETAKE_PHOTO"
    IMPROVE_CONDITIONS = "IMPROVE_CONDITIONS"
    ADJUST_SETTINGS = "ADJUST_SETTINGS"
    CHANGE_BACKGROUND = "CHANGE_BACKGROUND"
    REPOSITION_CAMERA = "REPOSITION_CAMERA"
    REVIEW_SETTINGS = "REVIEW_SETTINGS"
    PROCEED = "PROCEED"


class RecommendationCategory(str, Enum):
    IMAGE_CAPTURE = "IMAGE_CAPTURE"
    ENVIRONMENT = "ENVIRONMENT"
    SETUP = "SETUP"
    TECHNICAL = "TECHNICAL"
    POSITIONING = "POSITIONING"
    ANALYSIS = "ANALYSIS"
    REVIEW = "REVIEW"


class Priority(str, Enum):
    """Shared by recommendations and feedback suggestions."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RecommendationStep(FrozenModel):
    order: int = Field(ge=1)
    action: str
    details: str
    estimated_time_ms: int = Field(ge=0)


class ExpectedImprovement(FrozenModel):
    confidence_increase: float = Field(ge=0.0, le=1.0)
    quality_increase: float = Field(ge=0.0, le=1.0)
    success_probability: float = Field(ge=0.0, le=1.0)


class Recommendation(FrozenModel):
    type: RecommendationType
    category: RecommendationCategory
    priority: Priority
    title: str
    description: str
    steps: tuple[RecommendationStep, ...] = ()
    estimated_time_ms: int = Field(ge=0)
    expected_improvement: ExpectedImprovement
    required_resources: tuple[str, ...] = ()
    is_actionable: bool

    @property
    def is_urgent(self) -> bool:
        return self.priority == Priority.CRITICAL

    @property
    def has_high_impact(self) -> bool:
        return self.expected_improvement.confidence_increase >= 0.2


# --- Feedback ---

class FeedbackType(str, Enum):
    POSITIVE = "POSITIVE"
    NEGATIVE = "NEGATIVE"
    MIXED = "MIXED"


class AccuracyRating(str, Enum):
    """Five-point ordinal, worst first."""
    VERY_POOR = "VERY_POOR"
    POOR = "POOR"
    ACCEPTABLE = "ACCEPTABLE"
    GOOD = "GOOD"
    EXCELLENT = "EXCELLENT"

    @property
    def score(self) -> float:
        return ACCURACY_SCORES[self.value]


class UserSatisfaction(str, Enum):
    VERY_DISSATISFIED = "VERY_DISSATISFIED"
    DISSATISFIED = "DISSATISFIED"
    NEUTRAL = "NEUTRAL"
    SATISFIED = "SATISFIED"
    VERY_SATISFIED = "VERY_SATISFIED"


class CalibrationClass(str, Enum):
    WELL_CALIBRATED = "WELL_CALIBRATED"
    MODERATELY_CALIBRATED = "MODERATELY_CALIBRATED"
    OVERCONFIDENT = "OVERCONFIDENT"
    UNDERCONFIDENT = "UNDERCONFIDENT"


class ImprovementArea(str, Enum):
    MODEL_ACCURACY = "MODEL_ACCURACY"
    CONFIDENCE_CALIBRATION = "CONFIDENCE_CALIBRATION"
    IMAGE_QUALITY_ASSESSMENT = "IMAGE_QUALITY_ASSESSMENT"
    BLUR_DETECTION = "BLUR_DETECTION"
    LIGHTING_ASSESSMENT = "LIGHTING_ASSESSMENT"
    DEFECT_DETECTION = "DEFECT_DETECTION"


class SuggestionType(str, Enum):
    IMAGE_QUALITY = "IMAGE_QUALITY"
    USER_INTERFACE = "USER_INTERFACE"
    NEW_FEATURE = "NEW_FEATURE"
    PERFORMANCE = "PERFORMANCE"
    ACCURACY = "ACCURACY"


class FeedbackSuggestion(FrozenModel):
    type: SuggestionType
    text: str = Field(min_length=1)
    priority: Priority = Priority.MEDIUM


class ConfidenceValidation(FrozenModel):
    reported_confidence: float = Field(ge=0.0, le=1.0)
    actual_confidence: float = Field(ge=0.0, le=1.0)
    deviation: float = Field(ge=0.0, le=1.0)
    is_accurate: bool
    calibration_class: CalibrationClass


class Feedback(FrozenModel):
    """User validation of a completed analysis. Build via the inspection_core.feedback constructors."""
    analysis_id: str = Field(min_length=1)
    created_at: datetime
    type: FeedbackType
    satisfaction: UserSatisfaction
    accuracy_rating: AccuracyRating
    confidence_validation: ConfidenceValidation
    reported_issues: tuple[str, ...] = ()
    suggestions: tuple[FeedbackSuggestion, ...] = ()
    comments: str | None = None
    learning_weight: float = Field(gt=0.0)

    @property
    def is_positive(self) -> bool:
        return self.type == FeedbackType.POSITIVE

    @property
    def accuracy_score(self) -> float:
        return self.accuracy_rating.score


class ImprovementCategory(str, Enum):
    IMAGE_QUALITY = "IMAGE_QUALITY"
    ANALYSIS_CONFIDENCE = "ANALYSIS_CONFIDENCE"
    MODEL_PERFORMANCE = "MODEL_PERFORMANCE"


class ImprovementSuggestion(FrozenModel):
    category: ImprovementCategory
    priority: Priority
    description: str
    expected_impact: float = Field(ge=0.0, le=1.0)
