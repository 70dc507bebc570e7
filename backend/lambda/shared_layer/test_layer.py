"""test_layer.py — Unit tests for docproc_shared layer modules.

Run from shared_layer directory:
    PYTHONPATH=python python3 -m pytest test_layer.py -v
"""

from __future__ import annotations

import json
import os
import sys
import unittest
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

# Ensure the layer's python/ directory is importable.
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))

import docproc_shared.auth as auth_mod  # noqa: E402
import docproc_shared.aws_clients as clients  # noqa: E402
from docproc_shared.auth import _authenticate, _extract_token  # noqa: E402
from docproc_shared.errors import LockBusyError, NotFoundError  # noqa: E402
from docproc_shared.expressions import (  # noqa: E402
    And,
    Cond,
    ExpressionCompiler,
    Or,
    build_filter,
    build_set_update,
    compile_condition,
    range_condition,
)
from docproc_shared.http_utils import _error, _parse_body, _path_method, _response  # noqa: E402
from docproc_shared.locks import EntityLock  # noqa: E402
from docproc_shared.serialization import _deserialize, _serialize, _serialize_item  # noqa: E402
from docproc_shared.store import DynamoStore  # noqa: E402


def _client_error(code, message="", op="Op"):
    return ClientError({"Error": {"Code": code, "Message": message}}, op)


class AuthTests(unittest.TestCase):
    def test_extract_token_from_cookie_header(self):
        event = {"headers": {"cookie": "docproc_id_token=abc123; other=val"}}
        self.assertEqual(_extract_token(event), "abc123")

    def test_extract_token_from_cookies_array(self):
        event = {"headers": {}, "cookies": ["docproc_id_token=xyz789", "other=val"]}
        self.assertEqual(_extract_token(event), "xyz789")

    def test_extract_token_missing(self):
        self.assertIsNone(_extract_token({"headers": {"cookie": "other=val"}}))

    @patch.object(auth_mod, "INTERNAL_API_KEYS", ("active-key", "previous-key"))
    def test_internal_key_accepts_rollover_key(self):
        claims, err = _authenticate({"headers": {"x-docproc-internal-key": "previous-key"}})
        self.assertIsNone(err)
        self.assertEqual(claims["auth_mode"], "internal-key")

    @patch.object(auth_mod, "INTERNAL_API_KEYS", ("active-key",))
    def test_wrong_internal_key_without_token_is_401(self):
        claims, err = _authenticate({"headers": {"x-docproc-internal-key": "nope"}}, error_fn=_error)
        self.assertIsNone(claims)
        self.assertEqual(err["statusCode"], 401)
        self.assertFalse(json.loads(err["body"])["success"])

    @patch.object(auth_mod, "AUTH_DISABLED", True)
    def test_auth_disabled_short_circuits(self):
        claims, err = _authenticate({"headers": {}})
        self.assertIsNone(err)
        self.assertEqual(claims["auth_mode"], "disabled")

    @patch.object(auth_mod, "INTERNAL_API_KEYS", ())
    @patch.object(auth_mod, "_verify_token", side_effect=ValueError("Token has expired."))
    def test_invalid_token_is_401(self, _verify):
        claims, err = _authenticate({"headers": {"cookie": "docproc_id_token=old"}})
        self.assertIsNone(claims)
        self.assertEqual(err["statusCode"], 401)
        self.assertEqual(json.loads(err["body"])["error"], "Token has expired.")

    def test_normalize_api_keys_dedupes_csv(self):
        self.assertEqual(auth_mod._normalize_api_keys("a, b,,a", "b", ""), ("a", "b"))


class HttpUtilsTests(unittest.TestCase):
    def test_error_format_with_extra(self):
        resp = _error(400, "in use", workflows=[{"id": "w1", "name": "A"}])
        body = json.loads(resp["body"])
        self.assertEqual(resp["statusCode"], 400)
        self.assertFalse(body["success"])
        self.assertEqual(body["error"], "in use")
        self.assertEqual(body["workflows"], [{"id": "w1", "name": "A"}])
        self.assertIn("Access-Control-Allow-Origin", resp["headers"])

    def test_response_encodes_decimals(self):
        from decimal import Decimal

        body = json.loads(_response(200, {"n": Decimal("2"), "f": Decimal("0.5")})["body"])
        self.assertEqual(body, {"n": 2, "f": 0.5})

    def test_parse_body_base64(self):
        import base64

        raw = base64.b64encode(b'{"key": "b64"}').decode()
        self.assertEqual(_parse_body({"body": raw, "isBase64Encoded": True}), {"key": "b64"})

    def test_parse_body_invalid_json_is_none(self):
        self.assertIsNone(_parse_body({"body": "{not json"}))

    def test_path_method_prefers_raw_path_and_strips_slash(self):
        event = {
            "requestContext": {"http": {"method": "post", "path": "/ignored"}},
            "rawPath": "/prod/update-config/",
        }
        self.assertEqual(_path_method(event), ("POST", "/prod/update-config"))


class SerializationTests(unittest.TestCase):
    def test_float_round_trips_through_decimal(self):
        self.assertEqual(_serialize(3.14), {"N": "3.14"})
        self.assertEqual(_deserialize({"c": {"N": "0.75"}, "n": {"N": "42"}}), {"c": 0.75, "n": 42})

    def test_serialize_item_drops_only_top_level_none(self):
        item = _serialize_item({
            "id": "a",
            "subTypeId": None,
            "nested": {"x": None, "y": 1.5},
            "changes": [{"field": "status", "oldValue": None}],
        })
        self.assertNotIn("subTypeId", item)
        self.assertEqual(item["nested"], {"M": {"x": {"NULL": True}, "y": {"N": "1.5"}}})
        self.assertEqual(_deserialize(item)["changes"], [{"field": "status", "oldValue": None}])


class ExpressionTests(unittest.TestCase):
    def test_names_and_values_use_placeholders(self):
        expr, names, values = compile_condition(Cond("status", "eq", "pending"))
        self.assertEqual(expr, "#n0 = :v0")
        self.assertEqual(names, {"#n0": "status"})
        self.assertEqual(values, {":v0": {"S": "pending"}})

    def test_dotted_path_reuses_segment_placeholders(self):
        compiler = ExpressionCompiler()
        first = compiler.condition(Cond("originalClassification.confidence", "ge", 0.5))
        second = compiler.condition(Cond("originalClassification.documentType", "eq", "Invoice"))
        self.assertEqual(first, "#n0.#n1 >= :v0")
        self.assertEqual(second, "#n0.#n2 = :v1")
        self.assertEqual(
            compiler.names,
            {"#n0": "originalClassification", "#n1": "confidence", "#n2": "documentType"},
        )

    def test_nested_compound_is_parenthesised(self):
        node = And(
            Or(Cond("a", "eq", 1), Cond("b", "eq", 1)),
            Cond("c", "not_exists"),
            Cond("d", "between", 1, 5),
        )
        expr, _, values = compile_condition(node)
        self.assertEqual(
            expr,
            "(#n0 = :v0 OR #n1 = :v1) AND attribute_not_exists(#n2) AND #n3 BETWEEN :v2 AND :v3",
        )
        self.assertEqual(len(values), 4)

    def test_functions(self):
        expr, _, _ = compile_condition(Cond("name", "begins_with", "Inv"))
        self.assertEqual(expr, "begins_with(#n0, :v0)")

    def test_unknown_operator_rejected(self):
        with self.assertRaises(ValueError):
            Cond("a", "like", "x")

    def test_build_filter_skips_empty_conditions(self):
        self.assertIsNone(build_filter([None, None]))
        only = Cond("a", "eq", 1)
        self.assertIs(build_filter([None, only]), only)
        self.assertIsInstance(build_filter([only, Cond("b", "eq", 2)]), And)

    def test_range_condition_bounds(self):
        self.assertEqual(range_condition("t", 1, 2), Cond("t", "between", 1, 2))
        self.assertEqual(range_condition("t", low=1), Cond("t", "ge", 1))
        self.assertEqual(range_condition("t", high=2), Cond("t", "le", 2))
        self.assertIsNone(range_condition("t"))

    def test_set_update_touches_only_supplied_keys(self):
        spec = build_set_update({"id": "x", "name": "New", "status": "ok"}, timestamp=123)
        self.assertEqual(spec.expression, "SET #n0 = :v0, #n1 = :v1, #n2 = :v2")
        self.assertEqual(spec.names, {"#n0": "name", "#n1": "status", "#n2": "updatedAt"})
        self.assertEqual(spec.values[":v2"], {"N": "123"})
        self.assertEqual(spec.fields, ["name", "status"])
        self.assertNotIn("REMOVE", spec.expression)

    def test_set_update_no_op(self):
        self.assertIsNone(build_set_update({"id": "x"}, timestamp=1))
        self.assertIsNone(build_set_update({"updatedAt": 5}, timestamp=1))


class StoreTests(unittest.TestCase):
    def test_update_missing_record_raises_not_found(self):
        ddb = MagicMock()
        ddb.update_item.side_effect = _client_error("ConditionalCheckFailedException")
        with self.assertRaises(NotFoundError):
            DynamoStore(ddb)._update("t", "id1", {"name": "x"}, timestamp=1)

    def test_update_no_op_skips_write(self):
        ddb = MagicMock()
        self.assertIsNone(DynamoStore(ddb)._update("t", "id1", {"id": "id1"}, timestamp=1))
        ddb.update_item.assert_not_called()

    def test_scan_follows_pages(self):
        ddb = MagicMock()
        ddb.scan.side_effect = [
            {"Items": [{"id": {"S": "a"}}], "ScannedCount": 3, "LastEvaluatedKey": {"id": {"S": "a"}}},
            {"Items": [{"id": {"S": "b"}}], "ScannedCount": 2},
        ]
        items, scanned = DynamoStore(ddb)._scan("t")
        self.assertEqual([i["id"] for i in items], ["a", "b"])
        self.assertEqual(scanned, 5)
        self.assertEqual(ddb.scan.call_args_list[1].kwargs["ExclusiveStartKey"], {"id": {"S": "a"}})

    def test_query_falls_back_to_scan_on_missing_index(self):
        ddb = MagicMock()
        ddb.query.side_effect = _client_error(
            "ValidationException", "The table does not have the specified index: stepId-index"
        )
        ddb.scan.return_value = {"Items": [{"id": {"S": "t1"}}], "ScannedCount": 1}
        items = DynamoStore(ddb)._query_index("tasks", "stepId-index", "stepId", 2)
        self.assertEqual(items, [{"id": "t1"}])
        self.assertEqual(ddb.scan.call_args.kwargs["FilterExpression"], "#n0 = :v0")

    def test_query_other_validation_errors_propagate(self):
        ddb = MagicMock()
        ddb.query.side_effect = _client_error("ValidationException", "Invalid KeyConditionExpression")
        with self.assertRaises(ClientError):
            DynamoStore(ddb)._query_index("tasks", "stepId-index", "stepId", 2)

    def test_batch_put_chunks_and_retries_unprocessed_once(self):
        ddb = MagicMock()
        leftover = [{"PutRequest": {"Item": {"id": {"S": "x"}}}}]
        ddb.batch_write_item.side_effect = [
            {"UnprocessedItems": {"t": leftover}},
            {"UnprocessedItems": {"t": leftover}},
            {},
        ]
        failed = DynamoStore(ddb)._batch_put("t", [{"id": str(i)} for i in range(30)])
        self.assertEqual(failed, 1)
        self.assertEqual(ddb.batch_write_item.call_count, 3)
        first_chunk = ddb.batch_write_item.call_args_list[0].kwargs["RequestItems"]["t"]
        self.assertEqual(len(first_chunk), 25)

    def test_closed_store_refuses_calls(self):
        store = DynamoStore(MagicMock())
        store.close()
        with self.assertRaises(RuntimeError):
            store._get("t", "a")


class LockTests(unittest.TestCase):
    def test_hold_acquires_and_releases(self):
        ddb = MagicMock()
        lock = EntityLock(ddb, "locks", ttl_seconds=10)
        with lock.hold("task", "t1") as lock_id:
            self.assertEqual(lock_id, "task#t1")
        acquire = ddb.update_item.call_args.kwargs
        self.assertEqual(acquire["Key"], {"lock_id": {"S": "task#t1"}})
        self.assertIn("lock_expires_epoch <= :now", acquire["ConditionExpression"])
        release = ddb.delete_item.call_args.kwargs
        self.assertEqual(release["ExpressionAttributeValues"][":owner"], {"S": lock.owner})

    def test_busy_lock_raises(self):
        ddb = MagicMock()
        ddb.update_item.side_effect = _client_error("ConditionalCheckFailedException")
        with self.assertRaises(LockBusyError):
            with EntityLock(ddb, "locks").hold("workflow", "w1"):
                self.fail("body must not run")
        ddb.delete_item.assert_not_called()

    def test_release_after_body_error(self):
        ddb = MagicMock()
        with self.assertRaises(KeyError):
            with EntityLock(ddb, "locks").hold("workflow", "w1"):
                raise KeyError("boom")
        ddb.delete_item.assert_called_once()

    def test_disabled_lock_is_no_op(self):
        ddb = MagicMock()
        with EntityLock(ddb, "").hold("workflow", "w1") as lock_id:
            self.assertIsNone(lock_id)
        ddb.update_item.assert_not_called()
        ddb.delete_item.assert_not_called()


class AwsClientTests(unittest.TestCase):
    def tearDown(self):
        clients._reset_clients()

    @patch("docproc_shared.aws_clients.boto3")
    def test_get_ddb_singleton(self, mock_boto3):
        clients._reset_clients()
        mock_boto3.client.return_value = MagicMock()
        self.assertIs(clients._get_ddb(), clients._get_ddb())
        mock_boto3.client.assert_called_once()

    def test_local_endpoint_uses_local_credentials(self):
        kwargs = clients.ddb_client_kwargs(endpoint_url="http://localhost:8000")
        self.assertEqual(kwargs["endpoint_url"], "http://localhost:8000")
        self.assertEqual(kwargs["aws_access_key_id"], "local")
        self.assertEqual(kwargs["region_name"], "local")

    @patch.object(clients, "APP_ACCESS_KEY_ID", "AKIA")
    @patch.object(clients, "APP_SECRET_ACCESS_KEY", "")
    def test_partial_explicit_credentials_are_ignored(self):
        kwargs = clients.ddb_client_kwargs(region="ap-southeast-2", endpoint_url="")
        self.assertEqual(kwargs["region_name"], "ap-southeast-2")
        self.assertNotIn("aws_access_key_id", kwargs)


if __name__ == "__main__":
    unittest.main()
