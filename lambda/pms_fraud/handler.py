"""
Lambda entry point - routes API Gateway events to the fraud core.

Parses API Gateway (HTTP API v2) events, pulls identity and request
metadata from the request context, calls the service layer, and maps
domain exceptions to HTTP responses.

No business logic lives here beyond request parsing and response formatting.
"""

import base64
import binascii
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from pms_fraud import service
from pms_fraud.config import LOG_LEVEL, READING_HISTORY_LIMIT
from pms_fraud.models import (
    ConcurrencyConflictError,
    InvalidInputError,
    PhotoNotFoundError,
    PhotoUpload,
    ReadingNotFoundError,
    RequestContext,
    StorageError,
    WorkOrderNotFoundError,
)

logger = logging.getLogger(__name__)
logging.getLogger().setLevel(LOG_LEVEL)


class _BadRequest(Exception):
    """Request body could not be parsed."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


# --- Lambda Entry Point ---

def lambda_handler(event: dict, context: Any) -> dict:
    """
    AWS Lambda handler for API Gateway HTTP API (v2).

    Routes:
    - POST   /work-orders/{id}/odometer
    - POST   /odometer/validate
    - PUT    /odometer/{reading_id}/verify
    - GET    /vehicles/{vin}/odometer
    - GET    /vehicles/{vin}/anomalies
    - POST   /work-orders/{id}/photos
    - DELETE /work-orders/{id}/photos/{photo_id}
    - GET    /work-orders/{id}/photos/stats

    Never raises exceptions - all errors converted to HTTP responses.
    """
    try:
        http_method = event["requestContext"]["http"]["method"]
        path = event["requestContext"]["http"]["path"]

        for method, pattern, route in _ROUTES:
            match = pattern.search(path)
            if method == http_method and match:
                return route(event, **match.groupdict())

        return _error_response(404, "NOT_FOUND", "Route not found")

    except _BadRequest as e:
        return _error_response(400, e.code, e.message)
    except InvalidInputError as e:
        return _error_response(400, "VALIDATION_ERROR", e.message, details={"field": e.field})
    except PydanticValidationError as e:
        return _error_response(400, "VALIDATION_ERROR", "Request body is invalid", details=[
            {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]} for err in e.errors()
        ])
    except WorkOrderNotFoundError as e:
        return _error_response(404, "WORK_ORDER_NOT_FOUND", str(e))
    except ReadingNotFoundError as e:
        return _error_response(404, "READING_NOT_FOUND", str(e))
    except PhotoNotFoundError as e:
        return _error_response(404, "PHOTO_NOT_FOUND", str(e))
    except ConcurrencyConflictError as e:
        return _error_response(409, "CONFLICT", str(e))
    except StorageError:
        logger.exception("Storage failure")
        return _error_response(500, "STORAGE_ERROR", "Storage operation failed")
    except Exception:
        logger.exception("Unhandled error")
        return _error_response(500, "INTERNAL_ERROR", "An unexpected error occurred")


# --- Route Handlers ---

def _handle_record_reading(event: dict, work_order_id: str) -> dict:
    """POST /work-orders/{id}/odometer - classify, check intervals, persist."""
    body = _parse_body(event)
    if "reading" not in body:
        raise InvalidInputError("reading", "Missing required field: reading")

    reading = service.record_reading(
        work_order_id,
        body["reading"],
        photo_path=body.get("photo_path"),
        unit=body.get("unit", "km"),
        context=_request_context(event),
    )

    return _success_response(201, {
        "reading": reading.model_dump(mode="json"),
        "is_anomaly": reading.is_anomaly,
        "message": reading.anomaly_notes or "Reading recorded",
    })


def _handle_validate_reading(event: dict) -> dict:
    """POST /odometer/validate - advisory check, nothing persisted."""
    body = _parse_body(event)
    for field in ("vin", "reading"):
        if field not in body:
            raise InvalidInputError(field, f"Missing required field: {field}")

    result = service.validate_reading(body["vin"], body["reading"])
    return _success_response(200, result.model_dump(mode="json", exclude_none=True))


def _handle_verify_reading(event: dict, reading_id: str) -> dict:
    """PUT /odometer/{reading_id}/verify - supervisor sign-off."""
    reading = service.verify_reading(reading_id, _request_context(event).user_id)
    return _success_response(200, {"reading": reading.model_dump(mode="json")})


def _handle_reading_history(event: dict, vin: str) -> dict:
    """GET /vehicles/{vin}/odometer?limit=N"""
    params = event.get("queryStringParameters") or {}
    try:
        limit = int(params.get("limit", READING_HISTORY_LIMIT))
    except (TypeError, ValueError):
        raise InvalidInputError("limit", "Limit must be an integer")

    readings = service.get_reading_history(vin, limit)
    return _success_response(200, {
        "vin": vin,
        "readings": [r.model_dump(mode="json") for r in readings],
    })


def _handle_anomalies(event: dict, vin: str) -> dict:
    """GET /vehicles/{vin}/anomalies"""
    readings = service.get_anomalies_for_vin(vin)
    return _success_response(200, {
        "vin": vin,
        "anomalies": [r.model_dump(mode="json") for r in readings],
    })


def _handle_upload_photos(event: dict, work_order_id: str) -> dict:
    """POST /work-orders/{id}/photos - store, extract EXIF, refresh alerts."""
    body = _parse_body(event)

    photo_type = body.get("photo_type")
    if not photo_type:
        raise InvalidInputError("photo_type", "Missing required field: photo_type")

    raw_photos = body.get("photos")
    if not isinstance(raw_photos, list):
        raise InvalidInputError("photos", "Missing required field: photos")

    uploads = [_decode_upload(raw) for raw in raw_photos]

    photos = service.upload_photos(
        work_order_id,
        uploads,
        photo_type=photo_type,
        notes=body.get("notes"),
        context=_request_context(event),
    )

    return _success_response(201, {
        "message": f"{len(photos)} photo(s) uploaded successfully",
        "photos": [p.model_dump(mode="json") for p in photos],
    })


def _handle_delete_photo(event: dict, work_order_id: str, photo_id: str) -> dict:
    """DELETE /work-orders/{id}/photos/{photo_id}"""
    service.delete_photo(work_order_id, photo_id)
    return _success_response(200, {"message": "Photo deleted successfully"})


def _handle_photo_stats(event: dict, work_order_id: str) -> dict:
    """GET /work-orders/{id}/photos/stats"""
    stats = service.get_photo_statistics(work_order_id)
    return _success_response(200, stats.model_dump(mode="json"))


_ROUTES: list[tuple[str, re.Pattern, Callable[..., dict]]] = [
    ("POST", re.compile(r"/work-orders/(?P<work_order_id>[^/]+)/odometer/?$"), _handle_record_reading),
    ("POST", re.compile(r"/odometer/validate/?$"), _handle_validate_reading),
    ("PUT", re.compile(r"/odometer/(?P<reading_id>[^/]+)/verify/?$"), _handle_verify_reading),
    ("GET", re.compile(r"/vehicles/(?P<vin>[^/]+)/odometer/?$"), _handle_reading_history),
    ("GET", re.compile(r"/vehicles/(?P<vin>[^/]+)/anomalies/?$"), _handle_anomalies),
    ("POST", re.compile(r"/work-orders/(?P<work_order_id>[^/]+)/photos/?$"), _handle_upload_photos),
    ("DELETE", re.compile(r"/work-orders/(?P<work_order_id>[^/]+)/photos/(?P<photo_id>[^/]+)/?$"), _handle_delete_photo),
    ("GET", re.compile(r"/work-orders/(?P<work_order_id>[^/]+)/photos/stats/?$"), _handle_photo_stats),
]


# --- Request Helpers ---

def _parse_body(event: dict) -> dict:
    raw = event.get("body") or "{}"
    if event.get("isBase64Encoded"):
        try:
            raw = base64.b64decode(raw).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            raise _BadRequest("VALIDATION_ERROR", "Request body is not valid base64")
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        raise _BadRequest("VALIDATION_ERROR", "Request body must be valid JSON")
    if not isinstance(body, dict):
        raise _BadRequest("VALIDATION_ERROR", "Request body must be a JSON object")
    return body


def _decode_upload(raw: Any) -> PhotoUpload:
    if not isinstance(raw, dict):
        raise InvalidInputError("photos", "Each photo must be an object")
    for field in ("file_name", "mime_type", "content"):
        if not raw.get(field):
            raise InvalidInputError("photos", f"Missing required photo field: {field}")
    try:
        content = base64.b64decode(raw["content"], validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise _BadRequest("INVALID_IMAGE", "Image must be valid base64-encoded data")
    return PhotoUpload(file_name=raw["file_name"], mime_type=raw["mime_type"], content=content)


def _request_context(event: dict) -> RequestContext:
    request_context = event.get("requestContext") or {}
    http = request_context.get("http") or {}
    claims = ((request_context.get("authorizer") or {}).get("jwt") or {}).get("claims") or {}
    return RequestContext(
        user_id=claims.get("sub"),
        ip_address=http.get("sourceIp"),
        user_agent=http.get("userAgent"),
    )


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
    details: dict | list | str | None = None,
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
