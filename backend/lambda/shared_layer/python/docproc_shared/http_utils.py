"""docproc_shared.http_utils — API Gateway request/response helpers.

Every response is JSON with the CORS headers below. Errors share one
envelope, `{"success": false, "error": <message>, ...extra}`, so clients can
always read `error`.
"""

from __future__ import annotations

import base64
import json
import os
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "*")
CORS_HEADERS = {
    "Access-Control-Allow-Origin": CORS_ORIGIN,
    "Access-Control-Allow-Headers": "Content-Type,Authorization,Cookie,X-Docproc-Internal-Key",
    "Access-Control-Allow-Methods": "GET,POST,PUT,DELETE,OPTIONS",
    "Access-Control-Allow-Credentials": "true",
}
_JSON_HEADERS = {"Content-Type": "application/json", **CORS_HEADERS}


def _encode(value: Any) -> Any:
    # DynamoDB numbers arrive as Decimal; sets come from SS/NS attributes.
    if isinstance(value, Decimal):
        return int(value) if value % 1 == 0 else float(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": dict(_JSON_HEADERS),
        "body": json.dumps(body, default=_encode),
    }


def _preflight() -> Dict[str, Any]:
    return {"statusCode": 204, "headers": dict(CORS_HEADERS), "body": ""}


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    """Error envelope; `extra` carries context such as blocking dependents."""
    return _response(status_code, {**extra, "success": False, "error": message})


def _raw_body(event: Dict[str, Any]) -> Optional[str]:
    body = event.get("body")
    if body is None or not event.get("isBase64Encoded"):
        return body
    return base64.b64decode(body).decode("utf-8")


def _parse_body(event: Dict[str, Any]) -> Any:
    """Decoded JSON body; `{}` when there is none, None when it is not JSON."""
    try:
        raw = _raw_body(event)
        return json.loads(raw) if raw else {}
    except (ValueError, TypeError):
        return None


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    """(METHOD, path) for HTTP API v2 events, with REST v1 fields as fallback."""
    http = (event.get("requestContext") or {}).get("http") or {}
    method = str(http.get("method") or event.get("httpMethod") or "GET").upper()
    path = event.get("rawPath") or http.get("path") or event.get("path") or "/"
    return method, (path.rstrip("/") or "/")


def _query_params(event: Dict[str, Any]) -> Dict[str, str]:
    return dict(event.get("queryStringParameters") or {})
