"""test_lambda_function.py — Mock-based tests for feedback_api.

Run: python3 -m pytest test_lambda_function.py -v
"""

from __future__ import annotations

import importlib.util
import json
import os
import sys
import unittest
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "shared_layer", "python"))

_spec = importlib.util.spec_from_file_location(
    "feedback_api",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
feedback_api = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(feedback_api)

from docproc_shared.serialization import _deserialize, _serialize_item  # noqa: E402


def _make_event(method="GET", path="/api/feedback", body=None, query_params=None,
                cookie="docproc_id_token=valid-jwt"):
    event = {
        "requestContext": {"http": {"method": method, "path": path}},
        "headers": {"cookie": cookie} if cookie else {},
        "rawPath": path,
        "queryStringParameters": query_params or {},
    }
    if body is not None:
        event["body"] = json.dumps(body) if isinstance(body, dict) else body
    return event


def _fake_ddb(get=None, scan_items=None):
    ddb = MagicMock()
    ddb.get_item.return_value = {"Item": _serialize_item(get)} if get else {}
    items = scan_items or []
    ddb.scan.return_value = {
        "Items": [_serialize_item(i) for i in items],
        "ScannedCount": len(items),
    }
    ddb.update_item.return_value = {"Attributes": {}}
    return ddb


def _body(resp):
    return json.loads(resp["body"])


class _Base(unittest.TestCase):
    def setUp(self):
        feedback_api._reset_store()

    def tearDown(self):
        feedback_api._reset_store()

    def _invoke(self, ddb, *args, **kwargs):
        with patch.object(feedback_api, "_authenticate", return_value=({"sub": "user1"}, None)), \
                patch.object(feedback_api, "_get_ddb", return_value=ddb):
            return feedback_api.lambda_handler(_make_event(*args, **kwargs), None)


class ListFeedbackTests(_Base):
    def test_no_filters_is_plain_scan(self):
        ddb = _fake_ddb(scan_items=[{"id": "f1", "documentId": "d1"}])
        resp = self._invoke(ddb, "GET", "/api/feedback")
        self.assertEqual(resp["statusCode"], 200)
        self.assertEqual(_body(resp)["count"], 1)
        self.assertNotIn("FilterExpression", ddb.scan.call_args.kwargs)

    def test_confidence_and_date_ranges_are_inclusive(self):
        ddb = _fake_ddb()
        self._invoke(ddb, "GET", "/api/feedback", query_params={
            "documentType": "Invoice",
            "minConfidence": "0.5",
            "maxConfidence": "0.9",
            "startDate": "1700000000000",
        })
        call = ddb.scan.call_args.kwargs
        expr = call["FilterExpression"]
        self.assertIn(" OR ", expr)
        self.assertIn("BETWEEN", expr)
        self.assertIn(">=", expr)
        names = call["ExpressionAttributeNames"]
        self.assertIn("originalClassification", names.values())
        self.assertIn("confidence", names.values())
        self.assertIn({"N": "0.5"}, call["ExpressionAttributeValues"].values())
        self.assertIn({"N": "1700000000000"}, call["ExpressionAttributeValues"].values())

    def test_invalid_number_is_400(self):
        resp = self._invoke(_fake_ddb(), "GET", "/api/feedback", query_params={"minConfidence": "high"})
        self.assertEqual(resp["statusCode"], 400)

    def test_non_finite_numbers_are_400(self):
        for raw in ("nan", "inf", "-Infinity"):
            ddb = _fake_ddb()
            resp = self._invoke(ddb, "GET", "/api/feedback", query_params={"minConfidence": raw})
            self.assertEqual(resp["statusCode"], 400, raw)
            self.assertEqual(_body(resp)["error"], "Invalid numeric filter: minConfidence")
            ddb.scan.assert_not_called()

    def test_inverted_ranges_are_400(self):
        for params, message in (
            ({"minConfidence": "0.9", "maxConfidence": "0.5"},
             "minConfidence must not be greater than maxConfidence"),
            ({"startDate": "1700000000001", "endDate": "1700000000000"},
             "startDate must not be greater than endDate"),
        ):
            ddb = _fake_ddb()
            resp = self._invoke(ddb, "GET", "/api/feedback", query_params=params)
            self.assertEqual(resp["statusCode"], 400)
            self.assertEqual(_body(resp)["error"], message)
            ddb.scan.assert_not_called()

    def test_non_positive_limit_is_400(self):
        resp = self._invoke(_fake_ddb(), "GET", "/api/feedback", query_params={"limit": "-1"})
        self.assertEqual(resp["statusCode"], 400)


class CreateFeedbackTests(_Base):
    def test_document_id_required(self):
        resp = self._invoke(_fake_ddb(), "POST", "/api/train-models/classification-feedback", body={})
        self.assertEqual(resp["statusCode"], 400)
        self.assertEqual(_body(resp)["error"], "documentId is required")

    def test_create_defaults(self):
        ddb = _fake_ddb()
        resp = self._invoke(ddb, "POST", "/api/feedback", body={
            "documentId": "doc-1",
            "correctedDocumentType": "Invoice",
            "documentSubType": "Tax",
        })
        self.assertEqual(resp["statusCode"], 200)
        record = _body(resp)["feedback"]
        self.assertEqual(record["feedbackSource"], "manual")
        self.assertEqual(record["status"], "pending")
        self.assertFalse(record["hasBeenUsedForTraining"])
        self.assertEqual(record["documentSubType"], "Tax")
        self.assertIsInstance(record["timestamp"], int)
        # Pending counter bumped on the training config.
        self.assertIn("ADD", ddb.update_item.call_args.kwargs["UpdateExpression"])


class UpdateFeedbackTests(_Base):
    CURRENT = {"id": "f1", "documentId": "doc-1", "correctedDocumentType": "Invoice", "status": "pending"}

    def test_missing_record_is_404(self):
        resp = self._invoke(_fake_ddb(), "POST", "/api/feedback/update", body={"id": "nope", "status": "x"})
        self.assertEqual(resp["statusCode"], 404)

    def test_identical_values_are_a_no_op(self):
        ddb = _fake_ddb(get=self.CURRENT)
        resp = self._invoke(ddb, "POST", "/api/feedback/update", body={"id": "f1", "status": "pending"})
        self.assertEqual(_body(resp)["message"], "No changes to apply")
        ddb.update_item.assert_not_called()
        ddb.put_item.assert_not_called()

    def test_audit_entry_records_only_changed_fields(self):
        ddb = _fake_ddb(get=self.CURRENT)
        ddb.update_item.return_value = {"Attributes": _serialize_item({**self.CURRENT, "status": "reviewed"})}
        resp = self._invoke(ddb, "POST", "/api/feedback/update", body={
            "id": "f1", "status": "reviewed", "correctedDocumentType": "Invoice", "updatedBy": "alice",
        })
        body = _body(resp)
        self.assertEqual(resp["statusCode"], 200)
        self.assertEqual(body["feedback"]["status"], "reviewed")
        audit = body["audit"]
        self.assertEqual(audit["changes"], [{"field": "status", "oldValue": "pending", "newValue": "reviewed"}])
        self.assertEqual(audit["modifiedBy"], "alice")
        self.assertEqual(audit["feedbackId"], "f1")
        self.assertEqual(audit["documentId"], "doc-1")

        put = ddb.put_item.call_args.kwargs
        self.assertEqual(put["TableName"], feedback_api.AUDIT_TABLE)
        self.assertIn("attribute_not_exists", put["ConditionExpression"])
        self.assertEqual(_deserialize(put["Item"])["changes"][0]["field"], "status")

    def test_stored_audit_keeps_unset_old_value(self):
        current = {"id": "f1", "documentId": "doc-1", "status": "pending"}
        ddb = _fake_ddb(get=current)
        self._invoke(ddb, "POST", "/api/feedback/update", body={"id": "f1", "correctedDocumentType": "Invoice"})

        stored = ddb.put_item.call_args.kwargs["Item"]
        change = stored["changes"]["L"][0]["M"]
        self.assertEqual(change["oldValue"], {"NULL": True})
        self.assertEqual(change["newValue"], {"S": "Invoice"})
        self.assertEqual(
            _deserialize(stored)["changes"],
            [{"field": "correctedDocumentType", "oldValue": None, "newValue": "Invoice"}],
        )

    def test_audit_failure_keeps_the_update(self):
        ddb = _fake_ddb(get=self.CURRENT)
        ddb.put_item.side_effect = ClientError(
            {"Error": {"Code": "ConditionalCheckFailedException", "Message": "exists"}}, "PutItem"
        )
        resp = self._invoke(ddb, "POST", "/api/feedback/update", body={"id": "f1", "status": "reviewed"})
        self.assertEqual(resp["statusCode"], 200)
        self.assertIsNone(_body(resp)["audit"])
        ddb.update_item.assert_called_once()


class AuditListTests(_Base):
    def test_sorted_newest_first_with_default_limit(self):
        ddb = _fake_ddb(scan_items=[
            {"id": "a1", "timestamp": 100},
            {"id": "a2", "timestamp": 300},
            {"id": "a3", "timestamp": 200},
        ])
        resp = self._invoke(ddb, "GET", "/api/feedback/audit", query_params={"feedbackId": "f1"})
        self.assertEqual([i["id"] for i in _body(resp)["items"]], ["a2", "a3", "a1"])
        self.assertEqual(ddb.scan.call_args.kwargs["Limit"], 50)


class ByDoctypeAndStatsTests(_Base):
    ITEMS = [
        {"id": "f1", "correctedDocumentType": "Invoice", "documentSubType": "Tax",
         "hasBeenUsedForTraining": True, "timestamp": 1,
         "originalClassification": {"documentType": "Receipt", "confidence": 0.4}},
        {"id": "f2", "originalClassification": {"documentType": "Receipt", "confidence": 0.9},
         "timestamp": 5},
        {"id": "f3", "timestamp": 3},
    ]

    def test_by_doctype_requires_region(self):
        with patch.object(feedback_api, "APP_REGION", ""):
            resp = self._invoke(_fake_ddb(), "GET", "/api/train-models/classification-feedback/by-doctype")
        self.assertEqual(resp["statusCode"], 500)

    def test_by_doctype_maps_and_sorts(self):
        ddb = _fake_ddb(scan_items=self.ITEMS)
        with patch.object(feedback_api, "APP_REGION", "us-east-1"):
            resp = self._invoke(
                ddb, "GET", "/api/train-models/classification-feedback/by-doctype",
                query_params={"docTypeId": "Invoice"},
            )
        rows = _body(resp)
        self.assertEqual([r["id"] for r in rows], ["f2", "f3", "f1"])
        self.assertEqual(rows[2]["documentSubType"], "Tax")
        self.assertEqual(rows[0]["documentSubType"], "General")
        self.assertTrue(rows[2]["trained"])
        self.assertIn("contains", ddb.scan.call_args.kwargs["FilterExpression"])

    def test_stats_groups_by_corrected_then_original_type(self):
        resp = self._invoke(_fake_ddb(scan_items=self.ITEMS), "GET",
                            "/api/train-models/classification-feedback/stats")
        stats = _body(resp)
        self.assertEqual((stats["total"], stats["trained"], stats["untrained"]), (3, 1, 2))
        by_type = stats["byDocumentType"]
        self.assertEqual(sorted(by_type), ["Invoice", "Receipt", "Unknown"])
        self.assertEqual(by_type["Invoice"]["bySubType"]["Tax"], {"total": 1, "trained": 1, "untrained": 0})
        self.assertEqual(by_type["Receipt"]["bySubType"]["General"]["untrained"], 1)


class TrainingToggleTests(_Base):
    def test_defaults_when_absent(self):
        resp = self._invoke(_fake_ddb(), "GET", "/api/comprehend/auto-retrain-toggle")
        body = _body(resp)
        self.assertFalse(body["autoTrainingEnabled"])
        self.assertEqual(body["feedbackThreshold"], 50)
        self.assertEqual(body["modelStatus"], "IDLE")

    def test_enabled_must_be_boolean(self):
        resp = self._invoke(_fake_ddb(), "POST", "/api/comprehend/auto-retrain-toggle", body={"enabled": "yes"})
        self.assertEqual(resp["statusCode"], 400)
        self.assertEqual(_body(resp)["error"], "Enabled status must be a boolean")

    def test_first_toggle_creates_singleton(self):
        ddb = _fake_ddb()
        resp = self._invoke(ddb, "POST", "/api/comprehend/auto-retrain-toggle", body={"enabled": True})
        body = _body(resp)
        self.assertEqual(body, {"success": True, "autoTrainingEnabled": True, "feedbackThreshold": 50})
        item = _deserialize(ddb.put_item.call_args.kwargs["Item"])
        self.assertEqual(item["id"], "training-config")

    def test_existing_singleton_is_updated_in_place(self):
        ddb = _fake_ddb(get={"id": "training-config", "autoTrainingEnabled": False, "feedbackThreshold": 20})
        ddb.update_item.return_value = {"Attributes": _serialize_item(
            {"id": "training-config", "autoTrainingEnabled": True, "feedbackThreshold": 20}
        )}
        resp = self._invoke(ddb, "POST", "/api/comprehend/auto-retrain-toggle", body={"enabled": True})
        self.assertEqual(_body(resp)["feedbackThreshold"], 20)
        ddb.put_item.assert_not_called()


if __name__ == "__main__":
    unittest.main()
