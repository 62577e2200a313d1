"""
Storage layer - DynamoDB persistence for analysis records.

Records are stored as their full JSON document in `body`, next to a few
key attributes used for lookups and conditional writes. Writes of an
existing record are compare-and-swap on (analysis_id, version), so two
divergent successors of the same record cannot silently overwrite each
other. Stored image payloads live in S3; the item keeps only their keys,
which keeps it under the DynamoDB item size limit.
All database interaction is isolated here.
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError
from pydantic import ValidationError as PydanticValidationError

from inspection_core.lifecycle import AnalysisRecord, AnalysisStatus, EventType
from inspection_core.models import (
    ConcurrentModificationError,
    ModelPerformanceHistory,
    PerformanceHistoryConflictError,
    RecordNotFoundError,
    SerializationError,
    StorageError,
)
from inspection_core.config import (
    ANALYSIS_TABLE,
    IMAGE_BUCKET,
    IMAGE_PREFIX,
    PERFORMANCE_TABLE,
    USER_INDEX,
)


logger = logging.getLogger(__name__)

_IMAGE_PAYLOADS = {"stored_images": {"reference_image", "part_image"}}


# --- AWS client cache ---
# Initialized once per Lambda container, reused across invocations.

_dynamodb = None
_s3 = None
_tables: dict = {}


def _get_dynamodb():
    global _dynamodb
    if _dynamodb is None:
        _dynamodb = boto3.resource("dynamodb")
    return _dynamodb


def _get_table(name: str = ANALYSIS_TABLE):
    """Lazy-initialized DynamoDB table with caching."""
    if name not in _tables:
        _tables[name] = _get_dynamodb().Table(name)
    return _tables[name]


def _get_s3():
    global _s3
    if _s3 is None:
        _s3 = boto3.client("s3")
    return _s3


# --- Analysis Records ---

def create_record(record: AnalysisRecord) -> AnalysisRecord:
    """
    Persists a new record. Fails if the id is already taken.

    Raises:
        ConcurrentModificationError: If a record with this id exists.
        StorageError: If the DynamoDB write fails.
    """
    _put(record, Attr("analysis_id").not_exists(), f"Record {record.id} already exists")
    logger.info("Stored new analysis %s", record.id)
    return record


def save_record(record: AnalysisRecord, expected_version: int) -> AnalysisRecord:
    """
    Writes a successor of a stored record.

    expected_version is the version of the record the transition was
    computed from. The write only succeeds if the store still holds
    exactly that version.

    Raises:
        ConcurrentModificationError: If the stored version differs.
        StorageError: If the DynamoDB or S3 write fails.
    """
    _put(
        record,
        Attr("version").eq(expected_version),
        f"Record {record.id} changed since version {expected_version}",
    )
    logger.info("Saved analysis %s at version %d (%s)", record.id, record.version, record.status.value)
    return record


def get_record(analysis_id: str) -> AnalysisRecord | None:
    """
    Retrieves a record by id.

    Returns None if the record does not exist.

    Raises:
        SerializationError: If the stored document is malformed.
        StorageError: If the DynamoDB or S3 read fails.
    """
    try:
        table = _get_table()
        response = table.get_item(Key={"analysis_id": analysis_id})
    except Exception as e:
        raise StorageError(f"Failed to retrieve record {analysis_id}: {e}") from e

    if "Item" not in response:
        return None

    return _from_item(response["Item"])


def load_record(analysis_id: str) -> AnalysisRecord:
    """Like get_record, but a missing record raises RecordNotFoundError."""
    record = get_record(analysis_id)
    if record is None:
        raise RecordNotFoundError(f"Record {analysis_id} not found")
    return record


def list_records_for_user(
    user_id: str,
    status: AnalysisStatus | None = None,
    limit: int | None = None,
) -> list[AnalysisRecord]:
    """
    Newest-first records of one user via the user_id/created_at index.

    Follows LastEvaluatedKey until the index is exhausted or `limit`
    matching records are collected. DynamoDB applies its own Limit before
    the filter, so the limit is enforced here instead.

    Raises:
        StorageError: If the DynamoDB query fails.
    """
    query = {
        "IndexName": USER_INDEX,
        "KeyConditionExpression": Key("user_id").eq(user_id),
        "ScanIndexForward": False,
    }
    if status is not None:
        query["FilterExpression"] = Attr("status").eq(status.value)

    items: list[dict] = []
    try:
        table = _get_table()
        while True:
            response = table.query(**query)
            items.extend(response.get("Items", []))
            if limit is not None and len(items) >= limit:
                break
            if "LastEvaluatedKey" not in response:
                break
            query["ExclusiveStartKey"] = response["LastEvaluatedKey"]
    except Exception as e:
        raise StorageError(f"Failed to list records of user {user_id}: {e}") from e

    if limit is not None:
        items = items[:limit]
    return [_from_item(item) for item in items]


# --- Model Performance History ---

def get_performance_history(user_id: str) -> ModelPerformanceHistory | None:
    """None on first use."""
    try:
        table = _get_table(PERFORMANCE_TABLE)
        response = table.get_item(Key={"user_id": user_id})
    except Exception as e:
        raise StorageError(f"Failed to retrieve performance history of {user_id}: {e}") from e

    if "Item" not in response:
        return None

    body = response["Item"].get("body")
    if body is None:
        raise SerializationError(f"Performance history of {user_id} has no body")
    return ModelPerformanceHistory.from_json(body)


def save_feedback(
    record: AnalysisRecord,
    expected_version: int,
    history: ModelPerformanceHistory,
    previous_history: ModelPerformanceHistory | None,
) -> AnalysisRecord:
    """
    Writes a record successor carrying feedback together with the owner's
    folded performance history, in one DynamoDB transaction.

    Either both writes land or neither does. The history write is
    conditional on the history read it was folded from: absent if
    previous_history is None, otherwise still at the same total_analyses.

    Raises:
        ConcurrentModificationError: If the stored record version differs.
        PerformanceHistoryConflictError: If only the history changed.
        StorageError: If the transaction fails for any other reason.
    """
    user_id = record.input_data.user_id
    if previous_history is None:
        history_condition = Attr("user_id").not_exists()
    else:
        history_condition = Attr("total_analyses").eq(previous_history.total_analyses)

    transact_items = [
        {"Put": {
            "TableName": ANALYSIS_TABLE,
            "Item": _prepare_item(record),
            "ConditionExpression": Attr("version").eq(expected_version),
        }},
        {"Put": {
            "TableName": PERFORMANCE_TABLE,
            "Item": _history_item(user_id, history),
            "ConditionExpression": history_condition,
        }},
    ]

    try:
        _get_dynamodb().meta.client.transact_write_items(TransactItems=transact_items)
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") == "TransactionCanceledException":
            reasons = [r.get("Code") for r in e.response.get("CancellationReasons", [])]
            if reasons and reasons[0] == "ConditionalCheckFailed":
                message = f"Record {record.id} changed since version {expected_version}"
                logger.warning(message)
                raise ConcurrentModificationError(message) from e
            if len(reasons) > 1 and reasons[1] == "ConditionalCheckFailed":
                message = f"Performance history of {user_id} changed while folding feedback"
                logger.warning(message)
                raise PerformanceHistoryConflictError(message) from e
        raise StorageError(f"Failed to save feedback for record {record.id}: {e}") from e
    except Exception as e:
        raise StorageError(f"Failed to save feedback for record {record.id}: {e}") from e

    logger.info(
        "Saved feedback for analysis %s at version %d, history of %s at %d analyses",
        record.id, record.version, user_id, history.total_analyses,
    )
    return record


def clear_table_cache() -> None:
    """Clears cached AWS resources. Testing only."""
    global _dynamodb, _s3
    _dynamodb = None
    _s3 = None
    _tables.clear()


# --- Internal ---

def _put(record: AnalysisRecord, condition, conflict_message: str) -> None:
    item = _prepare_item(record)
    try:
        table = _get_table()
        table.put_item(Item=item, ConditionExpression=condition)
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
            logger.warning(conflict_message)
            raise ConcurrentModificationError(conflict_message) from e
        raise StorageError(f"Failed to save record {record.id}: {e}") from e
    except Exception as e:
        raise StorageError(f"Failed to save record {record.id}: {e}") from e


def _prepare_item(record: AnalysisRecord) -> dict:
    """
    Item for `record`, uploading its images first when this write is the
    one that attached them. Every later write carries the same keys.
    """
    if record.stored_images is not None and record.events[-1].type == EventType.IMAGES_STORED:
        _upload_images(record)
    return _to_item(record)


def _upload_images(record: AnalysisRecord) -> None:
    reference_key, part_key = _image_keys(record)
    images = record.stored_images
    try:
        s3 = _get_s3()
        for key, payload in ((reference_key, images.reference_image), (part_key, images.part_image)):
            s3.put_object(Bucket=IMAGE_BUCKET, Key=key, Body=payload)
    except Exception as e:
        raise StorageError(f"Failed to upload images of record {record.id}: {e}") from e
    logger.info("Uploaded %d image bytes of analysis %s", images.total_size, record.id)


def _download_image(key: str, analysis_id: str) -> bytes:
    try:
        return _get_s3().get_object(Bucket=IMAGE_BUCKET, Key=key)["Body"].read()
    except Exception as e:
        raise StorageError(f"Failed to download image {key} of record {analysis_id}: {e}") from e


def _image_keys(record: AnalysisRecord) -> tuple[str, str]:
    # stored_at in the key: replacing the images never overwrites the objects an older version points at
    stamp = record.stored_images.stored_at.strftime("%Y%m%dT%H%M%S%fZ")
    prefix = f"{IMAGE_PREFIX}/{record.id}/{stamp}"
    return f"{prefix}/reference", f"{prefix}/part"


def _to_item(record: AnalysisRecord) -> dict:
    if record.stored_images is not None:
        body = record.model_dump_json(exclude=_IMAGE_PAYLOADS)
    else:
        body = record.to_json()

    item = {
        "analysis_id": record.id,
        "version": record.version,
        "status": record.status.value,
        "user_id": record.input_data.user_id,
        "created_at": record.created_at.isoformat(),
        "body": body,
    }
    if record.confidence_score is not None:
        item["overall_confidence"] = record.confidence_score.overall_confidence
    if record.stored_images is not None:
        item["reference_image_key"], item["part_image_key"] = _image_keys(record)
    return _to_dynamodb(item)


def _from_item(item: dict) -> AnalysisRecord:
    analysis_id = item.get("analysis_id")
    body = item.get("body")
    if body is None:
        raise SerializationError(f"Stored item {analysis_id} has no body")

    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError) as e:
        raise SerializationError(f"Stored item {analysis_id} has a malformed body: {e}") from e

    images = data.get("stored_images") if isinstance(data, dict) else None
    if images is None or "reference_image" in images:
        return AnalysisRecord.from_json(body)

    payloads = {}
    for field, key_attribute in (("reference_image", "reference_image_key"), ("part_image", "part_image_key")):
        key = item.get(key_attribute)
        if key is None:
            raise SerializationError(f"Stored item {analysis_id} has images but no {key_attribute}")
        payloads[field] = _download_image(key, analysis_id)
    data["stored_images"] = {**images, **payloads}

    try:
        return AnalysisRecord.model_validate(data)
    except PydanticValidationError as e:
        raise SerializationError(f"Malformed AnalysisRecord JSON: {e}") from e


def _history_item(user_id: str, history: ModelPerformanceHistory) -> dict:
    return {
        "user_id": user_id,
        "total_analyses": history.total_analyses,
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "body": history.to_json(),
    }


def _to_dynamodb(data: dict) -> dict:
    """Convert floats to Decimal for DynamoDB compatibility."""
    return json.loads(json.dumps(data), parse_float=Decimal)
