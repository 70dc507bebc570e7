"""docproc_shared.auth — Request authentication for the config Lambdas.

Two ways in:
    * the `docproc_id_token` cookie carrying a Cognito *id* token (RS256),
      checked against the user pool JWKS, issuer, audience and `token_use`;
    * the `X-Docproc-Internal-Key` header for service-to-service calls.

Environment:
    COGNITO_USER_POOL_ID              e.g. ap-southeast-2_AbCdEf123
    COGNITO_CLIENT_ID                 app client id (token audience)
    DOCPROC_INTERNAL_API_KEY          active internal key
    DOCPROC_INTERNAL_API_KEY_PREVIOUS rollover key accepted during rotation
    DOCPROC_INTERNAL_API_KEYS         comma-separated allowlist
    DOCPROC_AUTH_DISABLED             "true" skips auth (local development only)
"""

from __future__ import annotations

import json
import logging
import os
import time
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import jwt
from jwt.algorithms import RSAAlgorithm

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "docproc_id_token"
INTERNAL_KEY_HEADER = "x-docproc-internal-key"

ErrorFn = Callable[[int, str], Dict[str, Any]]


def _normalize_api_keys(*raw_values: str) -> Tuple[str, ...]:
    """Split csv/scalar key sources into an ordered, de-duplicated tuple."""
    keys: Dict[str, None] = {}
    for raw in raw_values:
        for part in str(raw or "").split(","):
            if part.strip():
                keys.setdefault(part.strip(), None)
    return tuple(keys)


COGNITO_USER_POOL_ID: str = os.environ.get("COGNITO_USER_POOL_ID", "")
COGNITO_CLIENT_ID: str = os.environ.get("COGNITO_CLIENT_ID", "")
INTERNAL_API_KEY: str = os.environ.get("DOCPROC_INTERNAL_API_KEY", "")
INTERNAL_API_KEY_PREVIOUS: str = os.environ.get("DOCPROC_INTERNAL_API_KEY_PREVIOUS", "")
INTERNAL_API_KEYS: Tuple[str, ...] = _normalize_api_keys(
    os.environ.get("DOCPROC_INTERNAL_API_KEYS", ""),
    INTERNAL_API_KEY,
    INTERNAL_API_KEY_PREVIOUS,
)
AUTH_DISABLED: bool = os.environ.get("DOCPROC_AUTH_DISABLED", "false").lower() == "true"

# kid -> public key, refreshed hourly
_jwks_cache: Dict[str, Any] = {}
_jwks_fetched_at: float = 0.0
_JWKS_TTL: float = 3600.0


def _issuer() -> str:
    region = COGNITO_USER_POOL_ID.split("_", 1)[0]
    return f"https://cognito-idp.{region}.amazonaws.com/{COGNITO_USER_POOL_ID}"


def _cookie_pairs(event: Dict[str, Any]) -> Iterable[str]:
    headers = event.get("headers") or {}
    header_value = headers.get("cookie") or headers.get("Cookie") or ""
    for part in header_value.split(";"):
        yield part.strip()
    # API Gateway v2 moves cookies out of the headers into their own list.
    cookies = event.get("cookies") or []
    if isinstance(cookies, str):
        cookies = [cookies]
    for part in cookies:
        if isinstance(part, str):
            yield part.strip()


def _extract_token(event: Dict[str, Any]) -> Optional[str]:
    """Return the id token cookie value, or None."""
    for pair in _cookie_pairs(event):
        name, sep, value = pair.partition("=")
        if sep and name == TOKEN_COOKIE and value:
            return value
    return None


def _get_jwks() -> Dict[str, Any]:
    global _jwks_cache, _jwks_fetched_at
    if _jwks_cache and time.time() - _jwks_fetched_at < _JWKS_TTL:
        return _jwks_cache
    if not COGNITO_USER_POOL_ID:
        raise ValueError("Authentication is not configured.")

    try:
        with urllib.request.urlopen(f"{_issuer()}/.well-known/jwks.json", timeout=5) as resp:
            keys = json.loads(resp.read()).get("keys", [])
    except (urllib.error.URLError, json.JSONDecodeError) as exc:
        logger.error("JWKS fetch failed for %s: %s", COGNITO_USER_POOL_ID, exc)
        raise ValueError("Unable to verify session token.") from exc
    _jwks_cache = {k["kid"]: RSAAlgorithm.from_jwk(json.dumps(k)) for k in keys}
    _jwks_fetched_at = time.time()
    logger.info("loaded %d signing keys for %s", len(_jwks_cache), COGNITO_USER_POOL_ID)
    return _jwks_cache


def _verify_token(token: str) -> Dict[str, Any]:
    """Validate a Cognito id token and return its claims.

    Raises ValueError with a user-facing message on any failure.
    """
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise ValueError("Invalid session token.") from exc
    if header.get("alg") != "RS256":
        raise ValueError("Invalid session token.")

    key = _get_jwks().get(header.get("kid"))
    if key is None:
        raise ValueError("Session token signed by an unknown key.")

    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=COGNITO_CLIENT_ID or None,
            issuer=_issuer(),
            options={"verify_aud": bool(COGNITO_CLIENT_ID)},
        )
    except jwt.ExpiredSignatureError as exc:
        raise ValueError("Token has expired. Please sign in again.") from exc
    except jwt.PyJWTError as exc:
        logger.warning("token rejected: %s", exc)
        raise ValueError("Invalid session token.") from exc

    if claims.get("token_use") != "id":
        raise ValueError("Invalid session token.")
    return claims


def _internal_key_matches(event: Dict[str, Any]) -> bool:
    if not INTERNAL_API_KEYS:
        return False
    headers = {k.lower(): v for k, v in (event.get("headers") or {}).items()}
    return headers.get(INTERNAL_KEY_HEADER, "") in INTERNAL_API_KEYS


def _authenticate(
    event: Dict[str, Any],
    *,
    error_fn: Optional[ErrorFn] = None,
) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Return (claims, None) for an authenticated request, else (None, 401 response)."""
    error_fn = error_fn or _default_error

    if AUTH_DISABLED:
        return {"auth_mode": "disabled"}, None
    if _internal_key_matches(event):
        return {"auth_mode": "internal-key"}, None

    token = _extract_token(event)
    if not token:
        return None, error_fn(401, "Authentication required. Please sign in.")
    try:
        return _verify_token(token), None
    except ValueError as exc:
        return None, error_fn(401, str(exc))


def _default_error(status_code: int, message: str) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps({"success": False, "error": message}),
    }
