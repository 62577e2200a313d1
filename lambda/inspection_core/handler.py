"""
Lambda entry point - drives the analysis lifecycle over HTTP.

Parses API Gateway events, loads the record, applies one or more pure
transitions, and writes the successor back with a compare-and-swap on
the version it was loaded at. Quality metrics and vision results are
computed by the caller and arrive in the request body.

No business logic lives here beyond request parsing and response formatting.
"""

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from inspection_core.confidence import calculate_confidence
from inspection_core.recommendations import (
    collect_issues,
    generate_recommendation,
    is_recommendation_warranted,
)
from inspection_core.feedback import (
    create_positive,
    create_negative,
    create_mixed,
    get_improvement_areas,
    update_performance_history,
)
from inspection_core.images import compress_image, to_compression_level
from inspection_core.lifecycle import AnalysisRecord, AnalysisStatus, compute_statistics
from inspection_core.storage import (
    create_record,
    save_record,
    load_record,
    list_records_for_user,
    get_performance_history,
    save_feedback,
)
from inspection_core.validator import to_history, to_quality_metrics
from inspection_core.models import (
    ConcurrentModificationError,
    FeedbackType,
    IllegalStateTransitionError,
    InvalidInputError,
    PerformanceHistoryConflictError,
    RecordNotFoundError,
    SerializationError,
    StorageError,
)
from inspection_core.config import HISTORY_WRITE_ATTEMPTS, LOG_LEVEL


logger = logging.getLogger(__name__)
logging.getLogger("inspection_core").setLevel(LOG_LEVEL)


# --- Lambda Entry Point ---

def lambda_handler(event: dict, context: Any) -> dict:
    """
    AWS Lambda handler for API Gateway HTTP API (v2).

    Routes:
    - POST /analyses
    - GET  /analyses/{analysis_id}
    - PUT  /analyses/{analysis_id}/quality
    - PUT  /analyses/{analysis_id}/start
    - PUT  /analyses/{analysis_id}/result
    - PUT  /analyses/{analysis_id}/images
    - PUT  /analyses/{analysis_id}/recommendation-followed
    - POST /analyses/{analysis_id}/feedback
    - PUT  /analyses/{analysis_id}/error
    - PUT  /analyses/{analysis_id}/archive
    - GET  /users/{user_id}/analyses

    An optional leading /v1 segment is ignored.
    Never raises: every error becomes an HTTP response.
    """
    try:
        http_method = event["requestContext"]["http"]["method"]
        path = event["requestContext"]["http"]["path"]

        parts = [p for p in path.split("/") if p]
        if parts and parts[0] == "v1":
            parts = parts[1:]

        if http_method == "POST" and parts == ["analyses"]:
            return _run(lambda: _handle_create(_parse_body(event)))

        if http_method == "GET" and len(parts) == 2 and parts[0] == "analyses":
            return _run(lambda: _handle_get(parts[1]))

        if len(parts) == 3 and parts[0] == "analyses":
            route = _TRANSITION_ROUTES.get((http_method, parts[2]))
            if route is not None:
                return _run(lambda: route(parts[1], _parse_body(event)))

        if http_method == "GET" and len(parts) == 3 and parts[0] == "users" and parts[2] == "analyses":
            return _run(lambda: _handle_list(parts[1], event.get("queryStringParameters") or {}))

        return _error_response(404, "NOT_FOUND", "Route not found")

    except Exception:
        logger.exception("Unhandled error while routing request")
        return _error_response(500, "INTERNAL_ERROR", "An unexpected error occurred")


# --- Route Handlers ---

def _handle_create(body: dict) -> dict:
    """POST /analyses: start a new inspection record."""
    record = AnalysisRecord.create_new(
        reference_image_path=body.get("reference_image_path"),
        part_image_path=body.get("part_image_path"),
        user_id=body.get("user_id"),
        additional_context=body.get("additional_context"),
        device_info=body.get("device_info"),
    )
    create_record(record)
    return _success_response(201, _record_summary(record))


def _handle_get(analysis_id: str) -> dict:
    """GET /analyses/{analysis_id}: full record with derived values."""
    record = load_record(analysis_id)

    data = record.model_dump(mode="json", exclude={"stored_images"})
    data["version"] = record.version
    data["derived"] = _derived(record)
    if record.stored_images is not None:
        data["stored_images"] = {
            "compression_level": record.stored_images.compression_level.value,
            "stored_at": record.stored_images.stored_at.isoformat(),
            "total_size_bytes": record.stored_images.total_size,
        }

    return _success_response(200, data)


def _handle_quality(analysis_id: str, body: dict) -> dict:
    """PUT /analyses/{analysis_id}/quality: score confidence, recommend if warranted."""
    record = load_record(analysis_id)

    reference = to_quality_metrics(body.get("reference_quality"), "reference_quality")
    part = to_quality_metrics(body.get("part_quality"), "part_quality")

    if "history" in body:
        history = to_history(body["history"])
    else:
        history = get_performance_history(record.input_data.user_id)

    score = calculate_confidence(
        reference,
        part,
        body.get("complexity"),
        history,
        body.get("contextual_data"),
    )
    issues = collect_issues(reference, part)

    updated = record.with_quality_analysis(reference, part).with_confidence_score(score)

    recommendation = None
    if is_recommendation_warranted(issues, score):
        recommendation = generate_recommendation(reference, part, score, issues)
        updated = updated.with_recommendation(recommendation)

    save_record(updated, expected_version=record.version)

    return _success_response(200, {
        **_record_summary(updated),
        "confidence": {
            **score.model_dump(mode="json"),
            "confidence_level": score.confidence_level.value,
            "is_reliable_for_decision_making": score.is_reliable_for_decision_making,
            "requires_human_review": score.requires_human_review,
            "should_show_warnings": score.should_show_warnings,
        },
        "issues": [issue.model_dump(mode="json") for issue in issues],
        "recommendation": recommendation.model_dump(mode="json") if recommendation else None,
    })


def _handle_start(analysis_id: str, body: dict) -> dict:
    """PUT /analyses/{analysis_id}/start: vision analysis was dispatched."""
    return _transition(analysis_id, lambda r: r.with_ai_analysis_started(body.get("model")))


def _handle_result(analysis_id: str, body: dict) -> dict:
    """PUT /analyses/{analysis_id}/result: attach the vision model output."""
    if "analysis_result" not in body:
        raise InvalidInputError("analysis_result", "required field missing")

    return _transition(analysis_id, lambda r: r.with_ai_result(
        body["analysis_result"],
        processing_time_ms=body.get("processing_time_ms"),
        tokens_used=body.get("tokens_used"),
        estimated_cost=body.get("estimated_cost"),
    ))


def _handle_images(analysis_id: str, body: dict) -> dict:
    """PUT /analyses/{analysis_id}/images: compress and attach both images."""
    level = to_compression_level(body.get("compression_level"))
    reference = compress_image(_decode_image(body, "reference_image"), level, "reference_image")
    part = compress_image(_decode_image(body, "part_image"), level, "part_image")

    return _transition(analysis_id, lambda r: r.with_stored_images(reference, part, level))


def _handle_recommendation_followed(analysis_id: str, body: dict) -> dict:
    """PUT /analyses/{analysis_id}/recommendation-followed"""
    return _transition(analysis_id, lambda r: r.with_recommendation_followed())


def _handle_feedback(analysis_id: str, body: dict) -> dict:
    """POST /analyses/{analysis_id}/feedback: evaluate feedback, update model history."""
    record = load_record(analysis_id)

    reported = body.get("reported_confidence")
    if reported is None and record.confidence_score is not None:
        reported = record.confidence_score.overall_confidence

    feedback_type = str(body.get("type", "")).upper()
    common = {
        "analysis_id": record.id,
        "accuracy_rating": body.get("accuracy_rating"),
        "reported_confidence": reported,
        "actual_confidence": body.get("actual_confidence"),
        "comments": body.get("comments"),
    }

    if feedback_type == FeedbackType.POSITIVE.value:
        feedback = create_positive(reported_issues=body.get("reported_issues"), **common)
    elif feedback_type == FeedbackType.NEGATIVE.value:
        feedback = create_negative(
            reported_issues=body.get("reported_issues"),
            suggestions=body.get("suggestions"),
            **common,
        )
    elif feedback_type == FeedbackType.MIXED.value:
        feedback = create_mixed(
            reported_issues=body.get("reported_issues"),
            suggestions=body.get("suggestions"),
            **common,
        )
    else:
        raise InvalidInputError("type", f"expected one of {[t.value for t in FeedbackType]}")

    updated = record.with_user_feedback(feedback)

    # Record and history commit together; a history race refolds from a fresh read
    user_id = record.input_data.user_id
    for attempt in range(1, HISTORY_WRITE_ATTEMPTS + 1):
        previous = get_performance_history(user_id)
        history = update_performance_history(previous, feedback)
        try:
            save_feedback(updated, record.version, history, previous)
            break
        except PerformanceHistoryConflictError:
            if attempt == HISTORY_WRITE_ATTEMPTS:
                raise
            logger.info("Performance history of %s moved, retrying (attempt %d)", user_id, attempt)

    return _success_response(200, {
        **_record_summary(updated),
        "feedback": feedback.model_dump(mode="json"),
        "improvement_areas": [area.value for area in get_improvement_areas(feedback)],
    })


def _handle_error(analysis_id: str, body: dict) -> dict:
    """PUT /analyses/{analysis_id}/error: record an external failure."""
    message = body.get("message")
    if not message:
        raise InvalidInputError("message", "required field missing")

    return _transition(analysis_id, lambda r: r.with_error(message))


def _handle_archive(analysis_id: str, body: dict) -> dict:
    """PUT /analyses/{analysis_id}/archive"""
    return _transition(analysis_id, lambda r: r.archive())


def _handle_list(user_id: str, params: dict) -> dict:
    """GET /users/{user_id}/analyses: newest first, with aggregate statistics."""
    status = None
    if params.get("status"):
        try:
            status = AnalysisStatus(params["status"].upper())
        except ValueError:
            raise InvalidInputError("status", f"unknown status {params['status']!r}")

    limit = None
    if params.get("limit"):
        try:
            limit = int(params["limit"])
        except ValueError:
            raise InvalidInputError("limit", "expected an integer")
        if limit < 1:
            raise InvalidInputError("limit", "must be positive")

    # Statistics cover every matching record; limit only trims the listing
    records = list_records_for_user(user_id, status=status)
    listed = records[:limit] if limit is not None else records

    return _success_response(200, {
        "user_id": user_id,
        "analyses": [_record_summary(r) for r in listed],
        "statistics": compute_statistics(records).model_dump(mode="json"),
    })


_TRANSITION_ROUTES: dict[tuple[str, str], Callable[[str, dict], dict]] = {
    ("PUT", "quality"): _handle_quality,
    ("PUT", "start"): _handle_start,
    ("PUT", "result"): _handle_result,
    ("PUT", "images"): _handle_images,
    ("PUT", "recommendation-followed"): _handle_recommendation_followed,
    ("POST", "feedback"): _handle_feedback,
    ("PUT", "error"): _handle_error,
    ("PUT", "archive"): _handle_archive,
}


# --- Helpers ---

def _transition(analysis_id: str, apply: Callable[[AnalysisRecord], AnalysisRecord]) -> dict:
    """Load, apply one transition, compare-and-swap save."""
    record = load_record(analysis_id)
    updated = apply(record)
    save_record(updated, expected_version=record.version)
    return _success_response(200, _record_summary(updated))


def _run(action: Callable[[], dict]) -> dict:
    """Maps domain exceptions to HTTP responses."""
    try:
        return action()

    except InvalidInputError as e:
        return _error_response(400, "INVALID_INPUT", str(e), details={"field": e.field})

    except RecordNotFoundError as e:
        return _error_response(404, "RECORD_NOT_FOUND", str(e))

    except IllegalStateTransitionError as e:
        return _error_response(409, "ILLEGAL_STATE_TRANSITION", str(e))

    except ConcurrentModificationError as e:
        return _error_response(409, "CONCURRENT_MODIFICATION", str(e))

    except SerializationError:
        logger.exception("Stored record could not be parsed")
        return _error_response(500, "SERIALIZATION_ERROR", "Stored record is malformed")

    except StorageError:
        logger.exception("Storage operation failed")
        return _error_response(500, "STORAGE_ERROR", "Storage operation failed")

    except Exception:
        logger.exception("Unexpected error while handling request")
        return _error_response(500, "INTERNAL_ERROR", "An unexpected error occurred")


def _parse_body(event: dict) -> dict:
    try:
        body = json.loads(event.get("body") or "{}")
    except json.JSONDecodeError:
        raise InvalidInputError("body", "request body must be valid JSON")
    if not isinstance(body, dict):
        raise InvalidInputError("body", "request body must be a JSON object")
    return body


def _decode_image(body: dict, field: str) -> bytes:
    value = body.get(field)
    if not value:
        raise InvalidInputError(field, "required field missing")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidInputError(field, "image must be valid base64-encoded data")


def _record_summary(record: AnalysisRecord) -> dict:
    summary = {
        "analysis_id": record.id,
        "status": record.status.value,
        "version": record.version,
        "created_at": record.created_at.isoformat(),
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
        "overall_confidence": (
            record.confidence_score.overall_confidence if record.confidence_score else None
        ),
    }
    if record.status == AnalysisStatus.FAILED:
        summary["error_message"] = record.error_message
    return summary


def _derived(record: AnalysisRecord) -> dict:
    score = record.confidence_score
    return {
        "overall_quality_score": record.overall_quality_score,
        "total_duration_ms": int(record.total_duration.total_seconds() * 1000),
        "confidence_level": score.confidence_level.value if score else None,
        "requires_human_review": score.requires_human_review if score else None,
        "confidence_accuracy": record.confidence_accuracy,
        "is_terminal": record.is_terminal,
        "improvement_suggestions": [
            s.model_dump(mode="json") for s in record.get_improvement_suggestions()
        ],
    }


# --- Response Helpers ---

def _success_response(status_code: int, data: dict) -> dict:
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
        },
        "body": json.dumps(data),
    }


def _error_response(
    status_code: int,
    code: str,
    message: str,
    details: dict | str | None = None,
) -> dict:
    error_body: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if details is not None:
        error_body["error"]["details"] = details

    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
        },
        "body": json.dumps(error_body),
    }
