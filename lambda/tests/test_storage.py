"""
Unit tests for storage module
"""
import io
import json
import pytest
from decimal import Decimal
from unittest.mock import MagicMock, patch

from PIL import Image
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from inspection_core import storage as storage_module
from inspection_core.storage import (
    create_record,
    save_record,
    get_record,
    load_record,
    list_records_for_user,
    get_performance_history,
    save_feedback,
    clear_table_cache,
)
from inspection_core.lifecycle import AnalysisRecord, AnalysisStatus
from inspection_core.confidence import calculate_confidence
from inspection_core.feedback import create_positive, update_performance_history
from inspection_core.images import CompressionLevel, compress_image
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
    PERFORMANCE_TABLE,
    USER_INDEX,
)

DYNAMODB_ITEM_LIMIT = 400 * 1024


# ============================================================================
# HELPERS
# ============================================================================

def conditional_check_failed(operation="PutItem") -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        operation,
    )


def transaction_cancelled(*codes: str) -> ClientError:
    error = ClientError(
        {"Error": {"Code": "TransactionCanceledException", "Message": "Transaction cancelled"}},
        "TransactWriteItems",
    )
    error.response["CancellationReasons"] = [{"Code": code} for code in codes]
    return error


def photo_like_jpeg(size=(1600, 1200)) -> bytes:
    """Sensor-noise texture, so JPEG cannot shrink it much."""
    img = Image.merge("RGB", [Image.effect_noise(size, 64) for _ in range(3)])
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return compress_image(buf.getvalue(), CompressionLevel.MEDIUM)


def uniform_metrics(value: float) -> dict:
    return {
        name: value
        for name in (
            "sharpness", "brightness", "contrast", "noise_level", "resolution",
            "compression", "object_coverage", "edge_clarity", "overall_score",
        )
    }


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def sample_record():
    return AnalysisRecord.create_new(
        reference_image_path="ref/housing.jpg",
        part_image_path="parts/housing-0113.jpg",
        user_id="inspector-7",
    )


@pytest.fixture
def scored_record(sample_record):
    score = calculate_confidence(uniform_metrics(0.8), uniform_metrics(0.7), "simple")
    return sample_record.with_confidence_score(score)


@pytest.fixture
def completed_record(scored_record):
    return scored_record.with_ai_analysis_started().with_ai_result({"defects": []})


@pytest.fixture(scope="module")
def photo():
    return photo_like_jpeg()


@pytest.fixture
def mock_boto3_resource():
    with patch('inspection_core.storage.boto3.resource') as mock_resource:
        yield mock_resource


@pytest.fixture
def mock_s3():
    """In-memory bucket behind boto3.client('s3')."""
    objects = {}

    def put_object(Bucket, Key, Body):
        objects[(Bucket, Key)] = Body
        return {}

    def get_object(Bucket, Key):
        return {"Body": io.BytesIO(objects[(Bucket, Key)])}

    with patch('inspection_core.storage.boto3.client') as mock_client:
        s3 = mock_client.return_value
        s3.objects = objects
        s3.put_object.side_effect = put_object
        s3.get_object.side_effect = get_object
        yield s3


@pytest.fixture
def mock_dynamodb_table(mock_boto3_resource):
    mock_table = MagicMock()
    mock_boto3_resource.return_value.Table.return_value = mock_table
    yield mock_table


# ============================================================================
# CREATE RECORD TESTS
# ============================================================================

class TestCreateRecord:

    def test_create_record_success(self, sample_record, mock_dynamodb_table):
        mock_dynamodb_table.put_item.return_value = {}
        result = create_record(sample_record)
        assert result is sample_record
        mock_dynamodb_table.put_item.assert_called_once()

    def test_item_layout(self, sample_record, mock_dynamodb_table):
        create_record(sample_record)
        item = mock_dynamodb_table.put_item.call_args[1]['Item']
        assert item['analysis_id'] == sample_record.id
        assert item['version'] == 1
        assert item['status'] == "INITIALIZED"
        assert item['user_id'] == "inspector-7"
        assert item['created_at'] == sample_record.created_at.isoformat()
        assert AnalysisRecord.from_json(item['body']) == sample_record
        assert 'overall_confidence' not in item

    def test_overall_confidence_stored_as_decimal(self, scored_record, mock_dynamodb_table):
        create_record(scored_record)
        item = mock_dynamodb_table.put_item.call_args[1]['Item']
        assert isinstance(item['overall_confidence'], Decimal)

    def test_condition_requires_new_id(self, sample_record, mock_dynamodb_table):
        create_record(sample_record)
        condition = mock_dynamodb_table.put_item.call_args[1]['ConditionExpression']
        assert condition == Attr("analysis_id").not_exists()

    def test_existing_id_conflicts(self, sample_record, mock_dynamodb_table):
        mock_dynamodb_table.put_item.side_effect = conditional_check_failed()
        with pytest.raises(ConcurrentModificationError):
            create_record(sample_record)

    def test_dynamodb_error(self, sample_record, mock_dynamodb_table):
        mock_dynamodb_table.put_item.side_effect = Exception("DynamoDB unavailable")
        with pytest.raises(StorageError) as exc_info:
            create_record(sample_record)
        assert f"Failed to save record {sample_record.id}" in str(exc_info.value)

    def test_other_client_error_is_storage_error(self, sample_record, mock_dynamodb_table):
        mock_dynamodb_table.put_item.side_effect = ClientError(
            {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow down"}},
            "PutItem",
        )
        with pytest.raises(StorageError):
            create_record(sample_record)


# ============================================================================
# SAVE RECORD TESTS
# ============================================================================

class TestSaveRecord:

    def test_compare_and_swap_on_expected_version(self, sample_record, mock_dynamodb_table):
        updated = sample_record.archive()
        save_record(updated, expected_version=sample_record.version)
        kwargs = mock_dynamodb_table.put_item.call_args[1]
        assert kwargs['ConditionExpression'] == Attr("version").eq(1)
        assert kwargs['Item']['version'] == 2
        assert kwargs['Item']['status'] == "ARCHIVED"

    def test_stale_version_conflicts(self, sample_record, mock_dynamodb_table):
        mock_dynamodb_table.put_item.side_effect = conditional_check_failed()
        with pytest.raises(ConcurrentModificationError) as exc_info:
            save_record(sample_record.archive(), expected_version=1)
        assert "changed since version 1" in str(exc_info.value)

    def test_dynamodb_error(self, sample_record, mock_dynamodb_table):
        mock_dynamodb_table.put_item.side_effect = Exception("timeout")
        with pytest.raises(StorageError):
            save_record(sample_record.archive(), expected_version=1)


# ============================================================================
# GET RECORD TESTS
# ============================================================================

class TestGetRecord:

    def test_get_existing_record(self, scored_record, mock_dynamodb_table):
        mock_dynamodb_table.get_item.return_value = {
            'Item': {'analysis_id': scored_record.id, 'version': 2, 'body': scored_record.to_json()}
        }
        result = get_record(scored_record.id)
        assert result == scored_record
        mock_dynamodb_table.get_item.assert_called_once_with(Key={'analysis_id': scored_record.id})

    def test_get_missing_record_returns_none(self, mock_dynamodb_table):
        mock_dynamodb_table.get_item.return_value = {}
        assert get_record("analysis_missing") is None

    def test_load_missing_record_raises(self, mock_dynamodb_table):
        mock_dynamodb_table.get_item.return_value = {}
        with pytest.raises(RecordNotFoundError):
            load_record("analysis_missing")

    def test_malformed_body(self, mock_dynamodb_table):
        mock_dynamodb_table.get_item.return_value = {
            'Item': {'analysis_id': "analysis_1", 'body': '{"id": "analysis_1"}'}
        }
        with pytest.raises(SerializationError):
            get_record("analysis_1")

    def test_missing_body(self, mock_dynamodb_table):
        mock_dynamodb_table.get_item.return_value = {'Item': {'analysis_id': "analysis_1"}}
        with pytest.raises(SerializationError):
            get_record("analysis_1")

    def test_dynamodb_error(self, mock_dynamodb_table):
        mock_dynamodb_table.get_item.side_effect = Exception("Connection refused")
        with pytest.raises(StorageError):
            get_record("analysis_1")


# ============================================================================
# LIST RECORDS TESTS
# ============================================================================

class TestListRecordsForUser:

    def test_query_newest_first(self, sample_record, mock_dynamodb_table):
        mock_dynamodb_table.query.return_value = {'Items': [{'body': sample_record.to_json()}]}
        records = list_records_for_user("inspector-7")
        assert records == [sample_record]
        kwargs = mock_dynamodb_table.query.call_args[1]
        assert kwargs['IndexName'] == USER_INDEX
        assert kwargs['ScanIndexForward'] is False
        assert 'FilterExpression' not in kwargs
        assert 'Limit' not in kwargs

    def test_status_filter_without_dynamodb_limit(self, mock_dynamodb_table):
        mock_dynamodb_table.query.return_value = {'Items': []}
        list_records_for_user("inspector-7", status=AnalysisStatus.FAILED, limit=10)
        kwargs = mock_dynamodb_table.query.call_args[1]
        assert kwargs['FilterExpression'] == Attr("status").eq("FAILED")
        assert 'Limit' not in kwargs

    def test_follows_last_evaluated_key(self, sample_record, mock_dynamodb_table):
        failed = sample_record.with_error("upload interrupted")
        mock_dynamodb_table.query.side_effect = [
            {'Items': [], 'LastEvaluatedKey': {'analysis_id': "a1"}},
            {'Items': [{'body': failed.to_json()}], 'LastEvaluatedKey': {'analysis_id': "a2"}},
            {'Items': [{'body': failed.to_json()}]},
        ]
        records = list_records_for_user("inspector-7", status=AnalysisStatus.FAILED)
        assert records == [failed, failed]
        calls = mock_dynamodb_table.query.call_args_list
        assert len(calls) == 3
        assert 'ExclusiveStartKey' not in calls[0][1]
        assert calls[1][1]['ExclusiveStartKey'] == {'analysis_id': "a1"}
        assert calls[2][1]['ExclusiveStartKey'] == {'analysis_id': "a2"}

    def test_limit_applied_after_filtering(self, sample_record, mock_dynamodb_table):
        failed = sample_record.with_error("upload interrupted")
        mock_dynamodb_table.query.side_effect = [
            {'Items': [{'body': failed.to_json()}], 'LastEvaluatedKey': {'analysis_id': "a1"}},
            {'Items': [{'body': failed.to_json()}] * 3, 'LastEvaluatedKey': {'analysis_id': "a2"}},
            {'Items': [{'body': failed.to_json()}]},
        ]
        records = list_records_for_user("inspector-7", status=AnalysisStatus.FAILED, limit=2)
        assert len(records) == 2
        # enough matches after the second page
        assert mock_dynamodb_table.query.call_count == 2

    def test_dynamodb_error(self, mock_dynamodb_table):
        mock_dynamodb_table.query.side_effect = Exception("index missing")
        with pytest.raises(StorageError):
            list_records_for_user("inspector-7")


# ============================================================================
# PERFORMANCE HISTORY TESTS
# ============================================================================

class TestPerformanceHistory:

    def test_first_use_returns_none(self, mock_dynamodb_table):
        mock_dynamodb_table.get_item.return_value = {}
        assert get_performance_history("inspector-7") is None

    def test_reads_body(self, mock_dynamodb_table):
        history = ModelPerformanceHistory(total_analyses=12, successful_analyses=9, recent_accuracy=0.72)
        mock_dynamodb_table.get_item.return_value = {
            'Item': {'user_id': "inspector-7", 'total_analyses': 12, 'body': history.to_json()}
        }
        assert get_performance_history("inspector-7") == history

    def test_uses_performance_table(self, mock_boto3_resource):
        mock_boto3_resource.return_value.Table.return_value.get_item.return_value = {}
        get_performance_history("inspector-7")
        mock_boto3_resource.return_value.Table.assert_called_with(PERFORMANCE_TABLE)

    def test_missing_body(self, mock_dynamodb_table):
        mock_dynamodb_table.get_item.return_value = {'Item': {'user_id': "inspector-7"}}
        with pytest.raises(SerializationError):
            get_performance_history("inspector-7")

    def test_read_error(self, mock_dynamodb_table):
        mock_dynamodb_table.get_item.side_effect = Exception("throttled")
        with pytest.raises(StorageError):
            get_performance_history("inspector-7")


# ============================================================================
# SAVE FEEDBACK TESTS
# ============================================================================

class TestSaveFeedback:

    @pytest.fixture
    def feedback_record(self, completed_record):
        feedback = create_positive(completed_record.id, "GOOD", 0.7, 0.65)
        return completed_record.with_user_feedback(feedback), feedback

    @pytest.fixture
    def transact(self, mock_boto3_resource):
        return mock_boto3_resource.return_value.meta.client.transact_write_items

    def test_record_and_history_in_one_transaction(self, feedback_record, completed_record, transact):
        updated, feedback = feedback_record
        history = update_performance_history(None, feedback)

        save_feedback(updated, completed_record.version, history, None)

        transact.assert_called_once()
        record_put, history_put = [i["Put"] for i in transact.call_args[1]["TransactItems"]]
        assert record_put["TableName"] == ANALYSIS_TABLE
        assert record_put["Item"]["version"] == updated.version
        assert record_put["ConditionExpression"] == Attr("version").eq(completed_record.version)
        assert history_put["TableName"] == PERFORMANCE_TABLE
        assert history_put["Item"]["user_id"] == "inspector-7"
        assert history_put["Item"]["total_analyses"] == 1
        assert ModelPerformanceHistory.from_json(history_put["Item"]["body"]) == history
        assert history_put["ConditionExpression"] == Attr("user_id").not_exists()

    def test_history_condition_on_previous_total(self, feedback_record, completed_record, transact):
        updated, feedback = feedback_record
        previous = ModelPerformanceHistory(total_analyses=12, successful_analyses=9, recent_accuracy=0.72)

        save_feedback(updated, completed_record.version, update_performance_history(previous, feedback), previous)

        history_put = transact.call_args[1]["TransactItems"][1]["Put"]
        assert history_put["Item"]["total_analyses"] == 13
        assert history_put["ConditionExpression"] == Attr("total_analyses").eq(12)

    def test_stale_record_conflicts(self, feedback_record, completed_record, transact):
        updated, feedback = feedback_record
        transact.side_effect = transaction_cancelled("ConditionalCheckFailed", "None")
        with pytest.raises(ConcurrentModificationError) as exc_info:
            save_feedback(updated, completed_record.version, update_performance_history(None, feedback), None)
        assert not isinstance(exc_info.value, PerformanceHistoryConflictError)

    def test_moved_history_conflicts(self, feedback_record, completed_record, transact):
        updated, feedback = feedback_record
        transact.side_effect = transaction_cancelled("None", "ConditionalCheckFailed")
        with pytest.raises(PerformanceHistoryConflictError):
            save_feedback(updated, completed_record.version, update_performance_history(None, feedback), None)

    def test_other_cancellation_is_storage_error(self, feedback_record, completed_record, transact):
        updated, feedback = feedback_record
        transact.side_effect = transaction_cancelled("None", "ThrottlingError")
        with pytest.raises(StorageError):
            save_feedback(updated, completed_record.version, update_performance_history(None, feedback), None)

    def test_transport_error(self, feedback_record, completed_record, transact):
        updated, feedback = feedback_record
        transact.side_effect = Exception("endpoint unreachable")
        with pytest.raises(StorageError):
            save_feedback(updated, completed_record.version, update_performance_history(None, feedback), None)


# ============================================================================
# STORED IMAGES TESTS
# ============================================================================

class TestStoredImages:

    def test_realistic_images_go_to_s3(self, completed_record, photo, mock_dynamodb_table, mock_s3):
        assert len(photo) > DYNAMODB_ITEM_LIMIT
        updated = completed_record.with_stored_images(photo, photo, CompressionLevel.MEDIUM)

        save_record(updated, expected_version=completed_record.version)

        item = mock_dynamodb_table.put_item.call_args[1]['Item']
        assert len(json.dumps(item, default=str).encode()) < DYNAMODB_ITEM_LIMIT
        stored = json.loads(item['body'])['stored_images']
        assert 'reference_image' not in stored
        assert 'part_image' not in stored
        assert mock_s3.objects[(IMAGE_BUCKET, item['reference_image_key'])] == photo
        assert mock_s3.objects[(IMAGE_BUCKET, item['part_image_key'])] == photo
        assert item['reference_image_key'].startswith(f"analyses/{updated.id}/")

    def test_load_fetches_payloads(self, completed_record, photo, mock_dynamodb_table, mock_s3):
        updated = completed_record.with_stored_images(photo, b"part-bytes", CompressionLevel.HIGH)
        save_record(updated, expected_version=completed_record.version)
        mock_dynamodb_table.get_item.return_value = {'Item': mock_dynamodb_table.put_item.call_args[1]['Item']}

        loaded = get_record(updated.id)

        assert loaded == updated
        assert loaded.stored_images.total_size == len(photo) + len(b"part-bytes")

    def test_later_writes_do_not_reupload(self, completed_record, mock_dynamodb_table, mock_s3):
        updated = completed_record.with_stored_images(b"ref", b"part")
        save_record(updated, expected_version=completed_record.version)
        first_item = mock_dynamodb_table.put_item.call_args[1]['Item']
        mock_s3.put_object.reset_mock()

        save_record(updated.archive(), expected_version=updated.version)

        mock_s3.put_object.assert_not_called()
        archived_item = mock_dynamodb_table.put_item.call_args[1]['Item']
        assert archived_item['reference_image_key'] == first_item['reference_image_key']

    def test_upload_failure_skips_dynamodb_write(self, completed_record, mock_dynamodb_table, mock_s3):
        mock_s3.put_object.side_effect = Exception("access denied")
        with pytest.raises(StorageError):
            save_record(completed_record.with_stored_images(b"ref", b"part"), expected_version=completed_record.version)
        mock_dynamodb_table.put_item.assert_not_called()

    def test_missing_image_key(self, completed_record, mock_dynamodb_table, mock_s3):
        updated = completed_record.with_stored_images(b"ref", b"part")
        save_record(updated, expected_version=completed_record.version)
        item = dict(mock_dynamodb_table.put_item.call_args[1]['Item'])
        del item['part_image_key']
        mock_dynamodb_table.get_item.return_value = {'Item': item}
        with pytest.raises(SerializationError):
            get_record(updated.id)

    def test_records_without_images_never_touch_s3(self, sample_record, mock_dynamodb_table, mock_s3):
        create_record(sample_record)
        mock_dynamodb_table.get_item.return_value = {'Item': mock_dynamodb_table.put_item.call_args[1]['Item']}
        assert get_record(sample_record.id) == sample_record
        mock_s3.put_object.assert_not_called()
        mock_s3.get_object.assert_not_called()


# ============================================================================
# TABLE CACHE TESTS
# ============================================================================

class TestTableCache:

    def test_resource_created_once(self, sample_record, mock_boto3_resource):
        mock_boto3_resource.return_value.Table.return_value.get_item.return_value = {}
        get_record(sample_record.id)
        get_record(sample_record.id)
        mock_boto3_resource.assert_called_once_with("dynamodb")
        mock_boto3_resource.return_value.Table.assert_called_once_with(ANALYSIS_TABLE)

    def test_clear_cache_recreates_resource(self, mock_boto3_resource):
        mock_boto3_resource.return_value.Table.return_value.get_item.return_value = {}
        get_record("analysis_1")
        clear_table_cache()
        get_record("analysis_1")
        assert mock_boto3_resource.call_count == 2

    def test_each_test_starts_without_cached_clients(self):
        assert storage_module._dynamodb is None
        assert storage_module._s3 is None
        assert storage_module._tables == {}
