"""
Analysis lifecycle record - one auditable entity per inspection.

The record is immutable. Every transition returns a new record with
its status advanced and exactly one event appended to the log; the
record it was called on is left untouched. Archived and failed
records are terminal: only with_error() still applies to them.
"""

import base64
import binascii
import copy
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_serializer, field_validator

from inspection_core.models import (
    ConfidenceScore,
    Feedback,
    FrozenModel,
    IllegalStateTransitionError,
    ImageQualityMetrics,
    ImprovementArea,
    ImprovementCategory,
    ImprovementSuggestion,
    InvalidInputError,
    Priority,
    Recommendation,
)
from inspection_core.feedback import get_improvement_areas
from inspection_core.images import CompressionLevel
from inspection_core.config import (
    IMPROVEMENT_THRESHOLD,
    RECORD_VERSION,
    APP_VERSION,
    PLATFORM,
)


logger = logging.getLogger(__name__)


# --- Status & Events ---

class AnalysisStatus(str, Enum):
    INITIALIZED = "INITIALIZED"
    QUALITY_ANALYZED = "QUALITY_ANALYZED"
    CONFIDENCE_CALCULATED = "CONFIDENCE_CALCULATED"
    RECOMMENDATION_GENERATED = "RECOMMENDATION_GENERATED"
    AI_ANALYSIS_STARTED = "AI_ANALYSIS_STARTED"
    AI_ANALYSIS_COMPLETED = "AI_ANALYSIS_COMPLETED"
    FEEDBACK_RECEIVED = "FEEDBACK_RECEIVED"
    ARCHIVED = "ARCHIVED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({AnalysisStatus.ARCHIVED, AnalysisStatus.FAILED})

COMPLETED_STATUSES = frozenset({AnalysisStatus.AI_ANALYSIS_COMPLETED, AnalysisStatus.FEEDBACK_RECEIVED})


class EventType(str, Enum):
    CREATED = "CREATED"
    QUALITY_ANALYZED = "QUALITY_ANALYZED"
    CONFIDENCE_CALCULATED = "CONFIDENCE_CALCULATED"
    RECOMMENDATION_GENERATED = "RECOMMENDATION_GENERATED"
    RECOMMENDATION_FOLLOWED = "RECOMMENDATION_FOLLOWED"
    AI_ANALYSIS_STARTED = "AI_ANALYSIS_STARTED"
    AI_ANALYSIS_COMPLETED = "AI_ANALYSIS_COMPLETED"
    FEEDBACK_RECEIVED = "FEEDBACK_RECEIVED"
    IMAGES_STORED = "IMAGES_STORED"
    ARCHIVED = "ARCHIVED"
    ERROR = "ERROR"


class AnalysisEvent(FrozenModel):
    timestamp: datetime
    type: EventType
    payload: dict[str, Any] = {}


# --- Record Parts ---

class AnalysisInputData(FrozenModel):
    """Opaque references to the inputs. Paths are never opened here."""
    reference_image_path: str
    part_image_path: str
    user_id: str
    session_id: str
    additional_context: dict[str, Any] = {}


class AnalysisMetadata(FrozenModel):
    version: str
    app_version: str
    platform: str
    device_info: dict[str, Any] = {}


class StoredImages(FrozenModel):
    """Compressed image payloads. Base64 in JSON, raw bytes in Python."""
    reference_image: bytes
    part_image: bytes
    compression_level: CompressionLevel
    stored_at: datetime

    @field_validator("reference_image", "part_image", mode="before")
    @classmethod
    def _decode_base64(cls, value):
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except binascii.Error as e:
                raise ValueError("image payload is not valid base64") from e
        return value

    @field_serializer("reference_image", "part_image", when_used="json")
    def _encode_base64(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")

    @property
    def total_size(self) -> int:
        return len(self.reference_image) + len(self.part_image)


# --- Aggregate Root ---

class AnalysisRecord(FrozenModel):
    id: str
    created_at: datetime
    completed_at: datetime | None = None
    status: AnalysisStatus

    input_data: AnalysisInputData
    metadata: AnalysisMetadata

    # Pre-analysis
    reference_image_quality: ImageQualityMetrics | None = None
    part_image_quality: ImageQualityMetrics | None = None
    confidence_score: ConfidenceScore | None = None
    recommendation: Recommendation | None = None
    was_recommendation_followed: bool = False

    # Vision model output, passed through untouched
    analysis_result: dict[str, Any] | None = None
    processing_time_ms: int | None = Field(None, ge=0)
    tokens_used: int | None = Field(None, ge=0)
    estimated_cost: float | None = Field(None, ge=0.0)

    user_feedback: Feedback | None = None
    stored_images: StoredImages | None = None
    error_message: str | None = None

    events: tuple[AnalysisEvent, ...] = ()

    # --- Creation ---

    @classmethod
    def create_new(
        cls,
        reference_image_path: str,
        part_image_path: str,
        user_id: str,
        additional_context: dict | None = None,
        device_info: dict | None = None,
    ) -> "AnalysisRecord":
        """
        Starts a new inspection in INITIALIZED with a CREATED event.

        Raises:
            InvalidInputError: If a path or the user id is missing.
        """
        for field, value in (
            ("reference_image_path", reference_image_path),
            ("part_image_path", part_image_path),
            ("user_id", user_id),
        ):
            if not isinstance(value, str) or not value:
                raise InvalidInputError(field, "required field missing")

        now = _now()
        record_id = f"analysis_{uuid.uuid4().hex}"

        record = cls(
            id=record_id,
            created_at=now,
            status=AnalysisStatus.INITIALIZED,
            input_data=AnalysisInputData(
                reference_image_path=reference_image_path,
                part_image_path=part_image_path,
                user_id=user_id,
                session_id=f"session_{uuid.uuid4().hex}",
                additional_context=_json_copy(additional_context or {}, "additional_context"),
            ),
            metadata=AnalysisMetadata(
                version=RECORD_VERSION,
                app_version=APP_VERSION,
                platform=PLATFORM,
                device_info=_json_copy(device_info or {}, "device_info"),
            ),
            events=(
                AnalysisEvent(
                    timestamp=now,
                    type=EventType.CREATED,
                    payload={"user_id": user_id},
                ),
            ),
        )
        logger.info("Created analysis %s for user %s", record_id, user_id)
        return record

    # --- Transitions ---

    def with_quality_analysis(
        self,
        reference_quality: ImageQualityMetrics,
        part_quality: ImageQualityMetrics,
    ) -> "AnalysisRecord":
        """Quality metrics are set once per record."""
        self._ensure_active("with_quality_analysis")
        if self.reference_image_quality is not None or self.part_image_quality is not None:
            raise IllegalStateTransitionError(f"Quality of {self.id} was already analyzed")

        return self._advance(
            EventType.QUALITY_ANALYZED,
            {
                "reference_quality": reference_quality.model_dump(mode="json"),
                "part_quality": part_quality.model_dump(mode="json"),
            },
            status=AnalysisStatus.QUALITY_ANALYZED,
            reference_image_quality=reference_quality,
            part_image_quality=part_quality,
        )

    def with_confidence_score(self, confidence: ConfidenceScore) -> "AnalysisRecord":
        """Confidence is set once per record."""
        self._ensure_active("with_confidence_score")
        if self.confidence_score is not None:
            raise IllegalStateTransitionError(f"Confidence of {self.id} was already calculated")

        return self._advance(
            EventType.CONFIDENCE_CALCULATED,
            confidence.model_dump(mode="json"),
            status=AnalysisStatus.CONFIDENCE_CALCULATED,
            confidence_score=confidence,
        )

    def with_recommendation(self, recommendation: Recommendation) -> "AnalysisRecord":
        self._ensure_active("with_recommendation")
        return self._advance(
            EventType.RECOMMENDATION_GENERATED,
            recommendation.model_dump(mode="json"),
            status=AnalysisStatus.RECOMMENDATION_GENERATED,
            recommendation=recommendation,
        )

    def with_recommendation_followed(self) -> "AnalysisRecord":
        """Marks that the operator acted on the recommendation. Status is unchanged."""
        self._ensure_active("with_recommendation_followed")
        if self.recommendation is None:
            raise InvalidInputError("recommendation", f"{self.id} has no recommendation to follow")

        return self._advance(
            EventType.RECOMMENDATION_FOLLOWED,
            {"recommendation_type": self.recommendation.type.value},
            was_recommendation_followed=True,
        )

    def with_ai_analysis_started(self, model_name: str | None = None) -> "AnalysisRecord":
        self._ensure_active("with_ai_analysis_started")
        return self._advance(
            EventType.AI_ANALYSIS_STARTED,
            {"model": model_name} if model_name else {},
            status=AnalysisStatus.AI_ANALYSIS_STARTED,
        )

    def with_ai_result(
        self,
        result: dict[str, Any],
        processing_time_ms: int | None = None,
        tokens_used: int | None = None,
        estimated_cost: float | None = None,
    ) -> "AnalysisRecord":
        """Stores the vision model output as an opaque JSON object and completes the record."""
        self._ensure_active("with_ai_result")
        if not isinstance(result, dict):
            raise InvalidInputError("analysis_result", f"expected an object, got {type(result).__name__}")
        _check_non_negative("processing_time_ms", processing_time_ms, int)
        _check_non_negative("tokens_used", tokens_used, int)
        _check_non_negative("estimated_cost", estimated_cost, (int, float))

        stored = _json_copy(result, "analysis_result")
        now = _now()

        return self._advance(
            EventType.AI_ANALYSIS_COMPLETED,
            {"analysis_result": copy.deepcopy(stored), "processing_time_ms": processing_time_ms},
            status=AnalysisStatus.AI_ANALYSIS_COMPLETED,
            timestamp=now,
            analysis_result=stored,
            processing_time_ms=processing_time_ms,
            tokens_used=tokens_used,
            estimated_cost=estimated_cost,
            completed_at=now,
        )

    def with_user_feedback(self, feedback: Feedback) -> "AnalysisRecord":
        """
        Attaches user feedback.

        Allowed before the analysis completed: feedback may refer to an
        unfinished record.
        """
        self._ensure_active("with_user_feedback")
        if feedback.analysis_id != self.id:
            raise InvalidInputError(
                "analysis_id", f"feedback for {feedback.analysis_id} cannot be attached to {self.id}"
            )

        return self._advance(
            EventType.FEEDBACK_RECEIVED,
            feedback.model_dump(mode="json"),
            status=AnalysisStatus.FEEDBACK_RECEIVED,
            user_feedback=feedback,
        )

    def with_stored_images(
        self,
        reference_image: bytes,
        part_image: bytes,
        compression_level: CompressionLevel = CompressionLevel.MEDIUM,
    ) -> "AnalysisRecord":
        """Attaches already-compressed payloads. Status is unchanged."""
        self._ensure_active("with_stored_images")
        now = _now()
        images = StoredImages(
            reference_image=reference_image,
            part_image=part_image,
            compression_level=compression_level,
            stored_at=now,
        )
        return self._advance(
            EventType.IMAGES_STORED,
            {
                "reference_size_bytes": len(reference_image),
                "part_size_bytes": len(part_image),
                "compression_level": compression_level.value,
            },
            timestamp=now,
            stored_images=images,
        )

    def with_error(self, message: str) -> "AnalysisRecord":
        """
        Records an externally observed failure and forces FAILED.

        Legal from every state, terminal ones included. Never raises.
        """
        text = str(message)
        logger.warning("Analysis %s failed in %s: %s", self.id, self.status.value, text)
        return self._advance(
            EventType.ERROR,
            {"error": text, "previous_status": self.status.value},
            status=AnalysisStatus.FAILED,
            error_message=text,
        )

    def archive(self) -> "AnalysisRecord":
        self._ensure_active("archive")
        return self._advance(
            EventType.ARCHIVED,
            {"previous_status": self.status.value},
            status=AnalysisStatus.ARCHIVED,
        )

    # --- Derived ---

    @property
    def version(self) -> int:
        """Number of events; grows by one with every transition."""
        return len(self.events)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_completed(self) -> bool:
        return self.status in COMPLETED_STATUSES

    @property
    def has_feedback(self) -> bool:
        return self.user_feedback is not None

    @property
    def was_successful(self) -> bool:
        return self.is_completed and (self.user_feedback is None or self.user_feedback.is_positive)

    @property
    def total_duration(self) -> timedelta:
        end = self.completed_at if self.completed_at is not None else _now()
        return end - self.created_at

    @property
    def confidence_accuracy(self) -> float | None:
        """1 - deviation between reported and validated confidence, once both exist."""
        if self.confidence_score is None or self.user_feedback is None:
            return None
        return 1.0 - self.user_feedback.confidence_validation.deviation

    @property
    def overall_quality_score(self) -> float:
        """
        Mean of whichever of reference quality, part quality, confidence,
        and feedback accuracy are present.

        Missing values are left out rather than counted as zero, so a
        young record averages fewer terms than a finished one and the
        two are not directly comparable.
        """
        values = []
        if self.reference_image_quality is not None:
            values.append(self.reference_image_quality.overall_score)
        if self.part_image_quality is not None:
            values.append(self.part_image_quality.overall_score)
        if self.confidence_score is not None:
            values.append(self.confidence_score.overall_confidence)
        if self.user_feedback is not None:
            values.append(self.user_feedback.accuracy_score)

        return sum(values) / len(values) if values else 0.0

    def get_improvement_suggestions(self) -> list[ImprovementSuggestion]:
        suggestions: list[ImprovementSuggestion] = []

        if self.reference_image_quality is not None and self.reference_image_quality.overall_score < IMPROVEMENT_THRESHOLD:
            suggestions.append(ImprovementSuggestion(
                category=ImprovementCategory.IMAGE_QUALITY,
                priority=Priority.HIGH,
                description="Improve reference image quality",
                expected_impact=0.3,
            ))

        if self.part_image_quality is not None and self.part_image_quality.overall_score < IMPROVEMENT_THRESHOLD:
            suggestions.append(ImprovementSuggestion(
                category=ImprovementCategory.IMAGE_QUALITY,
                priority=Priority.HIGH,
                description="Improve part image quality",
                expected_impact=0.3,
            ))

        if self.confidence_score is not None and self.confidence_score.overall_confidence < IMPROVEMENT_THRESHOLD:
            suggestions.append(ImprovementSuggestion(
                category=ImprovementCategory.ANALYSIS_CONFIDENCE,
                priority=Priority.MEDIUM,
                description="Improve capture conditions for a more confident analysis",
                expected_impact=0.25,
            ))

        if self.user_feedback is not None:
            for area in get_improvement_areas(self.user_feedback):
                category, description = _AREA_SUGGESTIONS[area]
                suggestions.append(ImprovementSuggestion(
                    category=category,
                    priority=Priority.HIGH,
                    description=description,
                    expected_impact=0.4,
                ))

        return suggestions

    # --- Internal ---

    def _ensure_active(self, transition: str) -> None:
        if self.is_terminal:
            raise IllegalStateTransitionError(
                f"Cannot apply {transition} to {self.id}: record is {self.status.value}"
            )

    def _advance(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        status: AnalysisStatus | None = None,
        timestamp: datetime | None = None,
        **updates,
    ) -> "AnalysisRecord":
        event = AnalysisEvent(timestamp=timestamp or _now(), type=event_type, payload=payload)
        if status is not None:
            updates["status"] = status
        updates["events"] = self.events + (event,)
        return self.model_copy(update=updates)


_AREA_SUGGESTIONS: dict[ImprovementArea, tuple[ImprovementCategory, str]] = {
    ImprovementArea.MODEL_ACCURACY: (ImprovementCategory.MODEL_PERFORMANCE, "Increase model accuracy"),
    ImprovementArea.CONFIDENCE_CALIBRATION: (ImprovementCategory.ANALYSIS_CONFIDENCE, "Recalibrate confidence scoring"),
    ImprovementArea.IMAGE_QUALITY_ASSESSMENT: (ImprovementCategory.IMAGE_QUALITY, "Improve image quality assessment"),
    ImprovementArea.BLUR_DETECTION: (ImprovementCategory.IMAGE_QUALITY, "Improve blur detection"),
    ImprovementArea.LIGHTING_ASSESSMENT: (ImprovementCategory.IMAGE_QUALITY, "Improve lighting assessment"),
    ImprovementArea.DEFECT_DETECTION: (ImprovementCategory.MODEL_PERFORMANCE, "Improve defect detection"),
}


# --- Statistics ---

class AnalysisStatistics(BaseModel):
    total_analyses: int = 0
    completed_analyses: int = 0
    successful_analyses: int = 0
    failed_analyses: int = 0
    with_feedback: int = 0
    average_confidence: float = 0.0
    average_processing_time_ms: float = 0.0
    completion_rate: float = 0.0
    success_rate: float = 0.0
    feedback_rate: float = 0.0


def compute_statistics(records: list[AnalysisRecord]) -> AnalysisStatistics:
    """Aggregates over any set of records. Empty input yields zeros."""
    total = len(records)
    if total == 0:
        return AnalysisStatistics()

    completed = sum(1 for r in records if r.is_completed)
    successful = sum(1 for r in records if r.was_successful)
    failed = sum(1 for r in records if r.status == AnalysisStatus.FAILED)
    with_feedback = sum(1 for r in records if r.has_feedback)

    confidences = [r.confidence_score.overall_confidence for r in records if r.confidence_score is not None]
    times = [r.processing_time_ms for r in records if r.processing_time_ms is not None]

    return AnalysisStatistics(
        total_analyses=total,
        completed_analyses=completed,
        successful_analyses=successful,
        failed_analyses=failed,
        with_feedback=with_feedback,
        average_confidence=sum(confidences) / len(confidences) if confidences else 0.0,
        average_processing_time_ms=sum(times) / len(times) if times else 0.0,
        completion_rate=completed / total,
        success_rate=successful / total,
        feedback_rate=with_feedback / total,
    )


# --- Helpers ---

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_non_negative(field: str, value, kind) -> None:
    # model_copy() skips validation, so optional numbers are checked here
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, kind) or value < 0:
        raise InvalidInputError(field, f"expected a non-negative number, got {value!r}")


def _json_copy(data: dict, field: str) -> dict:
    """Deep copy that also guarantees the data survives a JSON round-trip."""
    try:
        return json.loads(json.dumps(data))
    except (TypeError, ValueError) as e:
        raise InvalidInputError(field, f"must be JSON-serializable: {e}") from e
