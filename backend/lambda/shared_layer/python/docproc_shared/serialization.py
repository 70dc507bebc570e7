"""docproc_shared.serialization — DynamoDB serialization/deserialization.

Provides TypeSerializer/TypeDeserializer wrappers, id generation and
timestamp helpers used across the config Lambdas.
"""

from __future__ import annotations

import time
import uuid
from decimal import Decimal
from typing import Any, Dict

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

_SER = TypeSerializer()
_DESER = TypeDeserializer()


def _to_dynamo(value: Any) -> Any:
    """Replace floats (recursively) with Decimals; DynamoDB rejects float.

    Nested None is kept and stored as NULL.
    """
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_dynamo(v) for v in value]
    return value


def _from_dynamo(value: Any) -> Any:
    """Replace Decimals (recursively) with int or float."""
    if isinstance(value, Decimal):
        return int(value) if value == int(value) else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamo(v) for v in value]
    if isinstance(value, set):
        return sorted(_from_dynamo(v) for v in value)
    return value


def _serialize(value: Any) -> Any:
    """Serialize a Python value for DynamoDB."""
    return _SER.serialize(_to_dynamo(value))


def _serialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize a plain dict into a DynamoDB item; top-level None values are dropped."""
    return {k: _serialize(v) for k, v in item.items() if v is not None}


def _deserialize(item: Dict[str, Any]) -> Dict[str, Any]:
    """Deserialize a DynamoDB item to a plain Python dict."""
    return {k: _from_dynamo(_DESER.deserialize(v)) for k, v in item.items()}


def _new_id() -> str:
    return uuid.uuid4().hex


def _now_ms() -> int:
    """Current epoch time in milliseconds."""
    return int(time.time() * 1000)


def _unix_now() -> int:
    return int(time.time())
