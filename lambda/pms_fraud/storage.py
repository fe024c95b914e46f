"""
Storage layer - DynamoDB and S3 operations.

Work orders, odometer readings and photo rows live in DynamoDB; photo
binaries live in S3. All AWS interaction is isolated here.

Work-order writes are optimistic: every write is conditioned on the
`version` that was read, and a failed condition re-reads the item and
re-runs the caller's pure mutation. Work orders created elsewhere may
carry no `version` yet; they are read as version 0.

A vehicle's latest reading is also kept in its own table, keyed by VIN and
read consistently, so a new reading is always classified against the one
it replaces rather than against a lagging index.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from pms_fraud.config import (
    LATEST_READINGS_TABLE,
    MAX_UPDATE_RETRIES,
    ODOMETER_READINGS_TABLE,
    PHOTO_BUCKET,
    PHOTOS_WORK_ORDER_INDEX,
    READINGS_VIN_INDEX,
    WORK_ORDER_PHOTOS_TABLE,
    WORK_ORDERS_TABLE,
)
from pms_fraud.ledger import apply_patch
from pms_fraud.models import (
    ConcurrencyConflictError,
    OdometerReading,
    ReadingNotFoundError,
    StorageError,
    WorkOrder,
    WorkOrderNotFoundError,
    WorkOrderPatch,
    WorkOrderPhoto,
)

logger = logging.getLogger(__name__)

# Cancellation reasons that mean another writer got there first
CONFLICT_REASONS = {"ConditionalCheckFailed", "TransactionConflict"}

ReadingStep = Callable[[WorkOrder, OdometerReading | None], tuple[OdometerReading, WorkOrderPatch]]


# --- Client cache ---
# Initialized once per Lambda container, reused across invocations.

_dynamodb = None
_tables: dict = {}
_s3 = None


def _get_dynamodb():
    global _dynamodb
    if _dynamodb is None:
        _dynamodb = boto3.resource("dynamodb")
    return _dynamodb


def _get_table(name: str):
    """Lazy-initialized DynamoDB table with caching."""
    if name not in _tables:
        _tables[name] = _get_dynamodb().Table(name)
    return _tables[name]


def _get_s3():
    global _s3
    if _s3 is None:
        _s3 = boto3.client("s3")
    return _s3


def clear_table_cache() -> None:
    """Clears cached AWS clients. Testing only."""
    global _dynamodb, _s3
    _dynamodb = None
    _s3 = None
    _tables.clear()


# --- Work Orders ---

def save_work_order(work_order: WorkOrder) -> WorkOrder:
    """
    Writes a work order unconditionally. Used when the work order is first
    created; alert changes go through update_work_order.

    Raises:
        StorageError: If DynamoDB write fails.
    """
    try:
        _get_table(WORK_ORDERS_TABLE).put_item(Item=_item(work_order))
        return work_order
    except Exception as e:
        raise StorageError(f"Failed to save work order {work_order.work_order_id}: {e}")


def get_work_order(work_order_id: str) -> WorkOrder | None:
    """
    Retrieves a work order by ID. Returns None if it does not exist.

    Raises:
        StorageError: If DynamoDB read fails.
    """
    try:
        response = _get_table(WORK_ORDERS_TABLE).get_item(
            Key={"work_order_id": work_order_id},
            ConsistentRead=True,
        )
        if "Item" not in response:
            return None
        return WorkOrder(**_from_dynamodb(response["Item"]))
    except Exception as e:
        raise StorageError(f"Failed to retrieve work order {work_order_id}: {e}")


def update_work_order(
    work_order_id: str,
    mutate: Callable[[WorkOrder], WorkOrderPatch],
    max_attempts: int = MAX_UPDATE_RETRIES,
) -> WorkOrder:
    """
    Read-modify-write of one work order under a version check.

    `mutate` must be pure: it is re-run on fresh state after a conflict.

    Raises:
        WorkOrderNotFoundError: If the work order does not exist.
        ConcurrencyConflictError: If every attempt lost to a concurrent write.
        StorageError: If DynamoDB fails for any other reason.
    """
    for attempt in range(1, max_attempts + 1):
        work_order = _require_work_order(work_order_id)

        patch = mutate(work_order)
        if patch.is_empty():
            return work_order

        updated = _next_version(work_order, patch)
        try:
            _get_table(WORK_ORDERS_TABLE).put_item(
                Item=_item(updated),
                **_version_guard(work_order.version),
            )
            return updated
        except ClientError as e:
            if not _is_conflict(e):
                raise StorageError(f"Failed to update work order {work_order_id}: {e}")
            _log_conflict(work_order_id, attempt, max_attempts)
        except Exception as e:
            raise StorageError(f"Failed to update work order {work_order_id}: {e}")

    raise ConcurrencyConflictError(
        f"Work order {work_order_id} changed concurrently {max_attempts} times; try again"
    )


# --- Odometer Readings ---

def commit_reading(
    work_order_id: str,
    prepare: ReadingStep,
    max_attempts: int = MAX_UPDATE_RETRIES,
) -> tuple[OdometerReading, WorkOrder]:
    """
    Writes a new reading, the vehicle's latest-reading pointer and the
    work-order changes in one transaction.

    `prepare` gets the work order and the vehicle's latest reading, both
    read consistently, and returns the new reading plus the work-order
    patch. It is re-run on fresh state after a conflict, so a reading that
    raced another submission is re-classified against the winner.

    Raises:
        WorkOrderNotFoundError: If the work order does not exist.
        ConcurrencyConflictError: If every attempt lost to a concurrent write;
            nothing was written.
        StorageError: If DynamoDB fails for any other reason.
    """
    for attempt in range(1, max_attempts + 1):
        work_order = _require_work_order(work_order_id)
        previous = latest_reading_for_vin(work_order.vehicle_vin)

        reading, patch = prepare(work_order, previous)
        updated = _next_version(work_order, patch)
        reading_row = _item(reading)

        try:
            _get_dynamodb().meta.client.transact_write_items(TransactItems=[
                {"Put": {
                    "TableName": ODOMETER_READINGS_TABLE,
                    "Item": reading_row,
                    **_absent_guard("reading_id"),
                }},
                {"Put": {
                    "TableName": LATEST_READINGS_TABLE,
                    "Item": reading_row,
                    **_latest_reading_guard(previous),
                }},
                {"Put": {
                    "TableName": WORK_ORDERS_TABLE,
                    "Item": _item(updated),
                    **_version_guard(work_order.version),
                }},
            ])
            return reading, updated
        except ClientError as e:
            if not _is_conflict(e):
                raise StorageError(f"Failed to record reading for work order {work_order_id}: {e}")
            _log_conflict(work_order_id, attempt, max_attempts)
        except Exception as e:
            raise StorageError(f"Failed to record reading for work order {work_order_id}: {e}")

    raise ConcurrencyConflictError(
        f"Work order {work_order_id} changed concurrently {max_attempts} times; try again"
    )


def get_reading(reading_id: str) -> OdometerReading | None:
    try:
        response = _get_table(ODOMETER_READINGS_TABLE).get_item(Key={"reading_id": reading_id})
        if "Item" not in response:
            return None
        return OdometerReading(**_from_dynamodb(response["Item"]))
    except Exception as e:
        raise StorageError(f"Failed to retrieve reading {reading_id}: {e}")


def latest_reading_for_vin(vin: str) -> OdometerReading | None:
    """Most recent reading for a VIN, or None for a new vehicle. Strongly consistent."""
    try:
        response = _get_table(LATEST_READINGS_TABLE).get_item(
            Key={"vehicle_vin": vin},
            ConsistentRead=True,
        )
        if "Item" not in response:
            return None
        return OdometerReading(**_from_dynamodb(response["Item"]))
    except Exception as e:
        raise StorageError(f"Failed to retrieve latest reading for VIN {vin}: {e}")


def get_reading_history(vin: str, limit: int) -> list[OdometerReading]:
    """Newest first. Readings recorded within the same second have no defined order."""
    try:
        response = _get_table(ODOMETER_READINGS_TABLE).query(
            IndexName=READINGS_VIN_INDEX,
            KeyConditionExpression=Key("vehicle_vin").eq(vin),
            ScanIndexForward=False,
            Limit=limit,
        )
        return [OdometerReading(**_from_dynamodb(item)) for item in response.get("Items", [])]
    except Exception as e:
        raise StorageError(f"Failed to retrieve readings for VIN {vin}: {e}")


def get_anomalies_for_vin(vin: str) -> list[OdometerReading]:
    """All anomalous readings for a VIN, newest first."""
    try:
        items = _query_all(
            _get_table(ODOMETER_READINGS_TABLE),
            IndexName=READINGS_VIN_INDEX,
            KeyConditionExpression=Key("vehicle_vin").eq(vin),
            FilterExpression=Attr("is_anomaly").eq(True),
            ScanIndexForward=False,
        )
        return [OdometerReading(**_from_dynamodb(item)) for item in items]
    except Exception as e:
        raise StorageError(f"Failed to retrieve anomalies for VIN {vin}: {e}")


def mark_reading_verified(reading_id: str, verifier_id: str | None, verified_at: datetime) -> OdometerReading:
    """
    Supervisor sign-off. The only change a reading accepts after creation.

    Raises:
        ReadingNotFoundError: If the reading does not exist.
        StorageError: If DynamoDB update fails.
    """
    try:
        response = _get_table(ODOMETER_READINGS_TABLE).update_item(
            Key={"reading_id": reading_id},
            UpdateExpression="SET is_verified = :verified, verified_by = :by, verified_at = :at",
            ConditionExpression=Attr("reading_id").exists(),
            ExpressionAttributeValues={
                ":verified": True,
                ":by": verifier_id,
                ":at": verified_at.isoformat(),
            },
            ReturnValues="ALL_NEW",
        )
        return OdometerReading(**_from_dynamodb(response["Attributes"]))
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
            raise ReadingNotFoundError(f"Reading {reading_id} not found")
        raise StorageError(f"Failed to verify reading {reading_id}: {e}")
    except Exception as e:
        raise StorageError(f"Failed to verify reading {reading_id}: {e}")


# --- Photos ---

def save_photo(photo: WorkOrderPhoto) -> WorkOrderPhoto:
    try:
        _get_table(WORK_ORDER_PHOTOS_TABLE).put_item(Item=_item(photo))
        return photo
    except Exception as e:
        raise StorageError(f"Failed to save photo {photo.photo_id}: {e}")


def get_photo(photo_id: str) -> WorkOrderPhoto | None:
    try:
        response = _get_table(WORK_ORDER_PHOTOS_TABLE).get_item(Key={"photo_id": photo_id})
        if "Item" not in response:
            return None
        return WorkOrderPhoto(**_from_dynamodb(response["Item"]))
    except Exception as e:
        raise StorageError(f"Failed to retrieve photo {photo_id}: {e}")


def list_photos(work_order_id: str) -> list[WorkOrderPhoto]:
    try:
        items = _query_all(
            _get_table(WORK_ORDER_PHOTOS_TABLE),
            IndexName=PHOTOS_WORK_ORDER_INDEX,
            KeyConditionExpression=Key("work_order_id").eq(work_order_id),
        )
        return [WorkOrderPhoto(**_from_dynamodb(item)) for item in items]
    except Exception as e:
        raise StorageError(f"Failed to list photos for work order {work_order_id}: {e}")


def delete_photo(photo_id: str) -> None:
    try:
        _get_table(WORK_ORDER_PHOTOS_TABLE).delete_item(Key={"photo_id": photo_id})
    except Exception as e:
        raise StorageError(f"Failed to delete photo {photo_id}: {e}")


def store_photo_file(key: str, content: bytes, mime_type: str) -> str:
    """Uploads the binary to S3 and returns its key."""
    try:
        _get_s3().put_object(Bucket=PHOTO_BUCKET, Key=key, Body=content, ContentType=mime_type)
        return key
    except Exception as e:
        raise StorageError(f"Failed to store photo file {key}: {e}")


def delete_photo_file(key: str) -> None:
    try:
        _get_s3().delete_object(Bucket=PHOTO_BUCKET, Key=key)
    except Exception as e:
        raise StorageError(f"Failed to delete photo file {key}: {e}")


# --- Helpers ---

def _query_all(table, **kwargs) -> list[dict]:
    items = []
    while True:
        response = table.query(**kwargs)
        items.extend(response.get("Items", []))
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


def _require_work_order(work_order_id: str) -> WorkOrder:
    work_order = get_work_order(work_order_id)
    if work_order is None:
        raise WorkOrderNotFoundError(f"Work order {work_order_id} not found")
    return work_order


def _next_version(work_order: WorkOrder, patch: WorkOrderPatch) -> WorkOrder:
    return apply_patch(work_order, patch).model_copy(update={"version": work_order.version + 1})


# Condition arguments are plain Python values; the resource's client does
# the AttributeValue serialization for put_item and transact_write_items alike.

def _version_guard(expected: int) -> dict:
    """Condition that the stored work order is still at `expected`."""
    if expected == 0:
        # Work orders written by other systems may have no version yet
        expression = "attribute_not_exists(#version) OR #version = :expected"
    else:
        expression = "#version = :expected"
    return {
        "ConditionExpression": expression,
        "ExpressionAttributeNames": {"#version": "version"},
        "ExpressionAttributeValues": {":expected": expected},
    }


def _absent_guard(key: str) -> dict:
    return {
        "ConditionExpression": "attribute_not_exists(#key)",
        "ExpressionAttributeNames": {"#key": key},
    }


def _latest_reading_guard(previous: OdometerReading | None) -> dict:
    """Condition that the VIN's latest reading is still the one we classified against."""
    if previous is None:
        return _absent_guard("vehicle_vin")
    return {
        "ConditionExpression": "#reading_id = :previous",
        "ExpressionAttributeNames": {"#reading_id": "reading_id"},
        "ExpressionAttributeValues": {":previous": previous.reading_id},
    }


def _is_conflict(error: ClientError) -> bool:
    """True when a conditional write lost to another writer, as opposed to a bad request."""
    code = error.response.get("Error", {}).get("Code")
    if code in ("ConditionalCheckFailedException", "TransactionConflictException"):
        return True
    if code != "TransactionCanceledException":
        return False
    reasons = [r.get("Code") for r in error.response.get("CancellationReasons") or [] if r]
    return not reasons or any(reason in CONFLICT_REASONS for reason in reasons)


def _log_conflict(work_order_id: str, attempt: int, max_attempts: int) -> None:
    logger.warning(
        "Version conflict on work order %s (attempt %d/%d)",
        work_order_id, attempt, max_attempts,
    )


def _item(model) -> dict:
    return _to_dynamodb(model.model_dump(mode="json"))


def _to_dynamodb(data: dict) -> dict:
    """Convert floats to Decimal for DynamoDB compatibility."""
    return json.loads(json.dumps(data), parse_float=Decimal)


def _from_dynamodb(value):
    """Convert Decimal back to int/float so models and JSON responses see plain numbers."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamodb(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamodb(v) for v in value]
    return value
