"""JSON record format shared by both sides of the folder."""

from __future__ import annotations

import base64
import binascii
import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from folder_proxy.broker.errors import RecordFormatError
from folder_proxy.broker.models import (
    Headers,
    RequestRecord,
    RequestStatus,
    ResponseRecord,
)

TEMP_SUFFIX = ".tmp"
BODY_ENCODING_UTF8 = "utf-8"
BODY_ENCODING_BASE64 = "base64"


def encode_body(body: bytes | None) -> tuple[str | None, str | None]:
    """Return ``(body, bodyEncoding)``; text stays readable, binary goes base64."""

    if body is None:
        return None, None
    try:
        return body.decode("utf-8"), BODY_ENCODING_UTF8
    except UnicodeDecodeError:
        return base64.b64encode(body).decode("ascii"), BODY_ENCODING_BASE64


def decode_body(raw: object, encoding: object, *, record_id: str | None) -> bytes | None:
    if raw is None:
        return None
    if not isinstance(raw, str):
        # Hand-written records sometimes carry a JSON document as the body.
        return json.dumps(raw, ensure_ascii=False).encode("utf-8")
    if encoding in (None, BODY_ENCODING_UTF8):
        return raw.encode("utf-8")
    if encoding == BODY_ENCODING_BASE64:
        try:
            return base64.b64decode(raw.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as error:
            raise RecordFormatError(
                message=f"body is not valid base64: {error}",
                code="body_invalid",
                record_id=record_id,
            ) from error
    raise RecordFormatError(
        message=f"unsupported bodyEncoding {encoding!r}",
        code="body_invalid",
        record_id=record_id,
    )


def request_to_payload(record: RequestRecord) -> dict[str, Any]:
    body, body_encoding = encode_body(record.body)
    return {
        "id": record.id,
        "method": record.method,
        "path": record.path,
        "headers": record.headers,
        "body": body,
        "bodyEncoding": body_encoding,
        "submittedAt": record.submitted_at.isoformat(),
        "status": record.status.value,
    }


def response_to_payload(record: ResponseRecord) -> dict[str, Any]:
    body, body_encoding = encode_body(record.body)
    return {
        "id": record.id,
        "statusCode": record.status_code,
        "headers": record.headers,
        "body": body,
        "bodyEncoding": body_encoding,
        "producedAt": record.produced_at.isoformat(),
    }


def request_from_payload(raw: dict[str, Any], *, expected_id: str | None = None) -> RequestRecord:
    """Validate and build a request record from decoded JSON."""

    record_id = _required_str(raw, "id", record_id=expected_id)
    if expected_id is not None and record_id != expected_id:
        raise RecordFormatError(
            message=f"record id {record_id!r} does not match file name {expected_id!r}",
            code="id_mismatch",
            record_id=expected_id,
        )
    method = _required_str(raw, "method", record_id=record_id).upper()
    path = _required_str(raw, "path", record_id=record_id)
    if not path.startswith("/"):
        raise RecordFormatError(
            message=f"path must start with '/': {path!r}",
            code="path_invalid",
            record_id=record_id,
        )
    status_raw = raw.get("status", RequestStatus.PENDING.value)
    try:
        status = RequestStatus(status_raw)
    except ValueError as error:
        raise RecordFormatError(
            message=f"unknown status {status_raw!r}",
            code="status_invalid",
            record_id=record_id,
        ) from error
    return RequestRecord(
        id=record_id,
        method=method,
        path=path,
        headers=_headers(raw.get("headers"), record_id=record_id),
        body=decode_body(raw.get("body"), raw.get("bodyEncoding"), record_id=record_id),
        submitted_at=_timestamp(raw.get("submittedAt"), record_id=record_id),
        status=status,
    )


def response_from_payload(
    raw: dict[str, Any],
    *,
    expected_id: str | None = None,
) -> ResponseRecord:
    """Validate and build a response record from decoded JSON."""

    record_id = _required_str(raw, "id", record_id=expected_id)
    if expected_id is not None and record_id != expected_id:
        raise RecordFormatError(
            message=f"record id {record_id!r} does not match file name {expected_id!r}",
            code="id_mismatch",
            record_id=expected_id,
        )
    status_code = raw.get("statusCode")
    if isinstance(status_code, bool) or not isinstance(status_code, int):
        raise RecordFormatError(
            message="statusCode must be an integer",
            code="status_code_invalid",
            record_id=record_id,
        )
    if not 100 <= status_code <= 999:  # noqa: PLR2004
        raise RecordFormatError(
            message=f"statusCode out of range: {status_code}",
            code="status_code_invalid",
            record_id=record_id,
        )
    return ResponseRecord(
        id=record_id,
        status_code=status_code,
        headers=_headers(raw.get("headers"), record_id=record_id),
        body=decode_body(raw.get("body"), raw.get("bodyEncoding"), record_id=record_id),
        produced_at=_timestamp(raw.get("producedAt"), record_id=record_id),
    )


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Write JSON to a sibling temp file, fsync it, then rename over ``path``.

    Readers of ``path`` therefore see either the previous content or the new
    content, never a partial document.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f"{path.name}.{uuid4().hex}{TEMP_SUFFIX}")
    data = json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8")
    try:
        with temp_path.open("wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def load_json(path: Path, *, record_id: str | None = None) -> dict[str, Any]:
    """Load a JSON object; content problems become ``RecordFormatError``.

    ``OSError`` is left to the caller since it is not a content problem.
    """

    text = path.read_text("utf-8")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise RecordFormatError(
            message=f"invalid JSON in {path.name}: {error}",
            code="json_invalid",
            record_id=record_id,
        ) from error
    if not isinstance(payload, dict):
        raise RecordFormatError(
            message=f"expected JSON object in {path.name}",
            code="json_invalid",
            record_id=record_id,
        )
    return payload


def _required_str(raw: dict[str, Any], key: str, *, record_id: str | None) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise RecordFormatError(
            message=f"{key} must be a non-empty string",
            code=f"{key}_invalid",
            record_id=record_id,
        )
    return value


def _headers(raw: object, *, record_id: str) -> Headers:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise RecordFormatError(
            message="headers must be an object",
            code="headers_invalid",
            record_id=record_id,
        )
    headers: Headers = {}
    for name, value in raw.items():
        if isinstance(value, list):
            if not all(isinstance(item, str | int | float) for item in value):
                raise RecordFormatError(
                    message=f"header {name!r} must be a string or list of strings",
                    code="headers_invalid",
                    record_id=record_id,
                )
            headers[str(name)] = [str(item) for item in value]
        elif isinstance(value, str | int | float) and not isinstance(value, bool):
            headers[str(name)] = str(value)
        else:
            raise RecordFormatError(
                message=f"header {name!r} must be a string or list of strings",
                code="headers_invalid",
                record_id=record_id,
            )
    return headers


def _timestamp(raw: object, *, record_id: str) -> datetime:
    if raw is None:
        return datetime.now(tz=UTC)
    if isinstance(raw, int | float) and not isinstance(raw, bool):
        # Epoch milliseconds, as written by older front ends.
        return datetime.fromtimestamp(raw / 1000, tz=UTC)
    if not isinstance(raw, str):
        raise RecordFormatError(
            message="timestamp must be an ISO-8601 string",
            code="timestamp_invalid",
            record_id=record_id,
        )
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as error:
        raise RecordFormatError(
            message=f"invalid timestamp {raw!r}",
            code="timestamp_invalid",
            record_id=record_id,
        ) from error
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
