"""test_lambda_function.py — Tests for llm_api with urlopen and Secrets Manager mocked.

Run: python3 -m pytest test_lambda_function.py -v
"""

from __future__ import annotations

import importlib.util
import io
import json
import os
import sys
import unittest
import urllib.error
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "shared_layer", "python"))

_spec = importlib.util.spec_from_file_location(
    "llm_api",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
llm_api = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(llm_api)


def _make_event(path, body, method="POST"):
    return {
        "requestContext": {"http": {"method": method, "path": path}},
        "headers": {"cookie": "docproc_id_token=valid-jwt"},
        "rawPath": path,
        "body": json.dumps(body) if isinstance(body, dict) else body,
    }


def _completion(content):
    resp = MagicMock()
    resp.read.return_value = json.dumps(
        {"choices": [{"message": {"role": "assistant", "content": content}}]}
    ).encode("utf-8")
    cm = MagicMock()
    cm.__enter__.return_value = resp
    cm.__exit__.return_value = False
    return cm


def _body(resp):
    return json.loads(resp["body"])


TYPES = [
    {"name": "Invoice", "description": "Bills", "subTypes": [{"name": "Tax"}, {"name": "Proforma"}]},
    {"name": "Payslip"},
]


class PromptTests(unittest.TestCase):
    def test_classification_prompt_lists_types_and_sub_types(self):
        prompt = llm_api.build_classification_prompt("hello", TYPES, "a.pdf")
        self.assertIn("- Invoice: Bills\nSub-types: - Tax\n- Proforma", prompt)
        self.assertIn("- Payslip", prompt)
        self.assertIn("Document Filename: a.pdf", prompt)
        self.assertNotIn("[truncated]", prompt)

    def test_classification_text_truncated_at_8000(self):
        prompt = llm_api.build_classification_prompt("x" * 9000, TYPES)
        self.assertIn("x" * 8000 + "...[truncated]", prompt)
        self.assertNotIn("x" * 8001, prompt)

    def test_summary_prompt_fields_and_defaults(self):
        prompt = llm_api.build_summary_prompt(
            "y" * 4001, None, None, [{"label": "Total", "value": "$10"}, {"name": "ABN"}]
        )
        self.assertIn("Document Type: Unknown", prompt)
        self.assertIn("- Total: $10", prompt)
        self.assertIn("- ABN: N/A", prompt)
        self.assertIn("y" * 4000 + " ... [truncated]", prompt)

    def test_summary_prompt_without_fields(self):
        prompt = llm_api.build_summary_prompt("short", "Invoice", "Tax", [])
        self.assertIn("No specific fields extracted", prompt)


class _Base(unittest.TestCase):
    def setUp(self):
        llm_api._reset_client()

    def tearDown(self):
        llm_api._reset_client()

    def _invoke(self, path, body, method="POST"):
        with patch.object(llm_api, "_authenticate", return_value=({"sub": "user1"}, None)):
            return llm_api.lambda_handler(_make_event(path, body, method), None)


@patch.object(llm_api, "OPENAI_API_KEY", "sk-test")
class ClassifyTests(_Base):
    PATH = "/api/docs-2-analyse/classify-llm"

    def test_missing_text(self):
        resp = self._invoke(self.PATH, {"availableTypes": TYPES})
        self.assertEqual(resp["statusCode"], 400)
        self.assertEqual(_body(resp)["error"], "Missing text content for classification")

    def test_invalid_available_types(self):
        resp = self._invoke(self.PATH, {"text": "hi", "availableTypes": "Invoice"})
        self.assertEqual(resp["statusCode"], 400)
        self.assertEqual(_body(resp)["error"], "Missing or invalid availableTypes")

    @patch("urllib.request.urlopen")
    def test_parses_model_json(self, mock_urlopen):
        mock_urlopen.return_value = _completion(json.dumps({
            "documentType": "Invoice", "subType": "Tax", "confidence": 0.92, "reasoning": "ABN present",
            "extra": "ignored",
        }))
        resp = self._invoke(self.PATH, {"text": "Tax invoice ABN 123", "availableTypes": TYPES})
        self.assertEqual(resp["statusCode"], 200)
        self.assertEqual(_body(resp), {
            "documentType": "Invoice", "subType": "Tax", "confidence": 0.92, "reasoning": "ABN present",
        })

        req = mock_urlopen.call_args.args[0]
        self.assertEqual(req.full_url, "https://api.openai.com/v1/chat/completions")
        self.assertEqual(req.headers.get("Authorization"), "Bearer sk-test")
        payload = json.loads(req.data.decode("utf-8"))
        self.assertEqual(payload["model"], "gpt-4o")
        self.assertEqual(payload["response_format"], {"type": "json_object"})
        self.assertEqual(payload["temperature"], 0.2)
        self.assertEqual(payload["messages"][0]["role"], "system")

    @patch("urllib.request.urlopen")
    def test_unparsable_output_returns_raw_response(self, mock_urlopen):
        mock_urlopen.return_value = _completion("Invoice, probably")
        resp = self._invoke(self.PATH, {"text": "x", "availableTypes": TYPES})
        self.assertEqual(resp["statusCode"], 500)
        self.assertEqual(_body(resp)["rawResponse"], "Invoice, probably")

    @patch("urllib.request.urlopen")
    def test_upstream_http_error_is_500(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.HTTPError(
            "https://api.openai.com/v1/chat/completions", 429, "Too Many Requests", {},
            io.BytesIO(b'{"error": "rate limited"}'),
        )
        resp = self._invoke(self.PATH, {"text": "x", "availableTypes": TYPES})
        self.assertEqual(resp["statusCode"], 500)
        self.assertEqual(_body(resp)["error"], "Failed to classify document")


@patch.object(llm_api, "OPENAI_API_KEY", "sk-test")
class SummariseTests(_Base):
    PATH = "/api/docs-3-process/summarise-doc"

    def test_missing_text(self):
        resp = self._invoke(self.PATH, {"documentType": "Invoice"})
        self.assertEqual(resp["statusCode"], 400)
        self.assertEqual(_body(resp)["error"], "Missing required document text")

    @patch("urllib.request.urlopen")
    def test_summary_and_word_count(self, mock_urlopen):
        mock_urlopen.return_value = _completion("  A tax invoice for ten dollars.  ")
        resp = self._invoke(self.PATH, {"text": "body", "documentType": "Invoice", "documentSubType": "Tax"})
        body = _body(resp)
        self.assertEqual(resp["statusCode"], 200)
        self.assertEqual(body["summary"], "A tax invoice for ten dollars.")
        self.assertEqual(body["wordCount"], 6)
        self.assertEqual(body["documentSubType"], "Tax")

        payload = json.loads(mock_urlopen.call_args.args[0].data.decode("utf-8"))
        self.assertEqual(payload["model"], "gpt-4")
        self.assertEqual(payload["max_tokens"], 500)
        self.assertEqual(payload["temperature"], 0.3)

    @patch("urllib.request.urlopen")
    def test_upstream_error_text_is_not_returned(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.HTTPError(
            "https://api.openai.com/v1/chat/completions", 401, "Unauthorized", {},
            io.BytesIO(b'{"error": "Incorrect API key provided: sk-abc***"}'),
        )
        resp = self._invoke(self.PATH, {"text": "body"})
        self.assertEqual(resp["statusCode"], 500)
        self.assertEqual(_body(resp), {"success": False, "error": "Failed to generate document summary"})
        self.assertNotIn("sk-abc", resp["body"])


class ApiKeyTests(_Base):
    def test_missing_key_is_configuration_error(self):
        with patch.object(llm_api, "OPENAI_API_KEY", ""), \
                patch.object(llm_api, "OPENAI_API_KEY_SECRET_ID", ""):
            resp = self._invoke("/docs-3-process/summarise-doc", {"text": "x"})
        self.assertEqual(resp["statusCode"], 500)
        self.assertEqual(_body(resp)["error"], "LLM API key is not configured")

    def test_key_read_from_json_secret(self):
        sm = MagicMock()
        sm.get_secret_value.return_value = {"SecretString": json.dumps({"api_key": "sk-from-secret"})}
        with patch.object(llm_api, "OPENAI_API_KEY", ""), \
                patch.object(llm_api, "OPENAI_API_KEY_SECRET_ID", "docproc/openai"), \
                patch.object(llm_api, "_get_secretsmanager", return_value=sm):
            self.assertEqual(llm_api._resolve_api_key(), "sk-from-secret")
        sm.get_secret_value.assert_called_once_with(SecretId="docproc/openai")

    def test_plain_secret_string(self):
        self.assertEqual(llm_api._extract_api_key("  sk-plain \n"), "sk-plain")
        self.assertIsNone(llm_api._extract_api_key('{"unrelated": 1}'))


if __name__ == "__main__":
    unittest.main()
