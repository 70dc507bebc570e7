"""lambda_function.py — LLM document classification and summarisation.

Routes (matched on the path tail):
    POST /docs-2-analyse/classify-llm     pick a document type/sub-type for extracted text
    POST /docs-3-process/summarise-doc    summarise extracted text

Environment variables:
    OPENAI_API_KEY              API key (takes precedence)
    OPENAI_API_KEY_SECRET_ID    Secrets Manager secret holding the key (plain or JSON)
    OPENAI_API_BASE_URL         default: https://api.openai.com
    OPENAI_API_TIMEOUT_SECONDS  default: 60
    CLASSIFY_MODEL              default: gpt-4o
    SUMMARY_MODEL               default: gpt-4
"""

from __future__ import annotations

import json
import logging
import os
import re
import ssl
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

import certifi
from botocore.exceptions import BotoCoreError, ClientError

from docproc_shared.auth import _authenticate
from docproc_shared.aws_clients import _get_secretsmanager
from docproc_shared.http_utils import _error, _parse_body, _path_method, _preflight, _response

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
OPENAI_API_KEY_SECRET_ID = os.environ.get("OPENAI_API_KEY_SECRET_ID", "")
OPENAI_API_BASE_URL = os.environ.get("OPENAI_API_BASE_URL", "https://api.openai.com")
OPENAI_API_TIMEOUT_SECONDS = int(os.environ.get("OPENAI_API_TIMEOUT_SECONDS", "60"))
CLASSIFY_MODEL = os.environ.get("CLASSIFY_MODEL", "gpt-4o")
SUMMARY_MODEL = os.environ.get("SUMMARY_MODEL", "gpt-4")

CLASSIFY_TEXT_LIMIT = 8000
SUMMARY_TEXT_LIMIT = 4000

CLASSIFY_SYSTEM_PROMPT = (
    "You are an AI specialized in document classification. You classify documents based on "
    "their text content into predefined categories. Always respond with valid JSON."
)
SUMMARY_SYSTEM_PROMPT = (
    "You are an AI assistant specialized in document summarization that provides accurate, "
    "concise summaries."
)

_CERT_BUNDLE = certifi.where()

logger = logging.getLogger()
logger.setLevel(logging.INFO)


class LLMError(RuntimeError):
    """Raised when the completion endpoint fails or returns nothing usable."""


class LLMConfigError(RuntimeError):
    """Raised when no API key can be resolved."""


# ---------------------------------------------------------------------------
# OpenAI client
# ---------------------------------------------------------------------------


class OpenAIChatClient:
    """Minimal Chat Completions client over urllib with the certifi CA bundle."""

    def __init__(self, api_key: str, base_url: str = OPENAI_API_BASE_URL,
                 timeout: int = OPENAI_API_TIMEOUT_SECONDS):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def complete(self, model: str, messages: List[Dict[str, str]], **params: Any) -> str:
        payload = {"model": model, "messages": messages, **params}
        req = urllib.request.Request(
            url=f"{self.base_url}/v1/chat/completions",
            method="POST",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        context = ssl.create_default_context(cafile=_CERT_BUNDLE)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout, context=context) as resp:
                body = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:500]
            raise LLMError(f"http_{exc.code}: {detail}") from exc
        except urllib.error.URLError as exc:
            raise LLMError(f"url_error: {exc.reason}") from exc
        except json.JSONDecodeError as exc:
            raise LLMError("completion response was not JSON") from exc

        choices = body.get("choices") or []
        content = ((choices[0] if choices else {}).get("message") or {}).get("content")
        if not content:
            raise LLMError("No response from model")
        return content


def _extract_api_key(secret_string: str) -> Optional[str]:
    raw = (secret_string or "").strip()
    if raw.startswith("{"):
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        for field in ("api_key", "openai_api_key", "OPENAI_API_KEY", "key"):
            value = payload.get(field)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None
    return raw or None


def _resolve_api_key() -> str:
    if OPENAI_API_KEY:
        return OPENAI_API_KEY
    if not OPENAI_API_KEY_SECRET_ID:
        raise LLMConfigError("LLM API key is not configured")
    try:
        secret = _get_secretsmanager().get_secret_value(SecretId=OPENAI_API_KEY_SECRET_ID)
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] OpenAI key secret fetch failed: %s", exc)
        raise LLMConfigError("LLM API key is not configured") from exc
    api_key = _extract_api_key(secret.get("SecretString") or "")
    if not api_key:
        raise LLMConfigError("LLM API key is not configured")
    return api_key


_client: Optional[OpenAIChatClient] = None


def _get_client() -> OpenAIChatClient:
    global _client
    if _client is None:
        _client = OpenAIChatClient(_resolve_api_key())
    return _client


def _reset_client() -> None:
    global _client
    _client = None


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def _describe(entry: Dict[str, Any]) -> str:
    description = entry.get("description")
    return f"- {entry.get('name', '')}" + (f": {description}" if description else "")


def build_classification_prompt(text: str, available_types: List[Dict[str, Any]],
                                file_name: Optional[str] = None) -> str:
    lines = []
    for doc_type in available_types:
        line = _describe(doc_type)
        sub_types = doc_type.get("subTypes") or []
        if sub_types:
            line += "\nSub-types: " + "\n".join(_describe(st) for st in sub_types)
        lines.append(line)
    truncated = text[:CLASSIFY_TEXT_LIMIT] + ("...[truncated]" if len(text) > CLASSIFY_TEXT_LIMIT else "")
    return (
        "As a document classification expert, analyze this document text and classify it.\n\n"
        "Available Document Types:\n"
        f"{chr(10).join(lines)}\n\n"
        f"Document Filename: {file_name or 'Unknown'}\n\n"
        "Document Text (truncated if long):\n"
        f"{truncated}\n\n"
        "Based on the text content and available document types, determine the most appropriate "
        "document type and sub-type (if applicable).\n\n"
        "Return your analysis in JSON format:\n"
        "{\n"
        '  "documentType": "Most appropriate document type from the list above",\n'
        '  "subType": "Most appropriate sub-type if relevant, otherwise null",\n'
        '  "confidence": <number between 0-1 indicating confidence level>,\n'
        '  "reasoning": "Brief explanation of your classification decision"\n'
        "}"
    )


def build_summary_prompt(text: str, document_type: Optional[str], document_sub_type: Optional[str],
                         extracted_fields: List[Dict[str, Any]]) -> str:
    if extracted_fields:
        fields = "\n".join(
            f"- {f.get('label') or f.get('name')}: {f.get('value') or 'N/A'}" for f in extracted_fields
        )
    else:
        fields = "No specific fields extracted"
    truncated = text[:SUMMARY_TEXT_LIMIT] + (" ... [truncated]" if len(text) > SUMMARY_TEXT_LIMIT else "")
    return (
        "You are an expert at summarizing documents. Please create a concise and accurate summary "
        "of the following document.\n\n"
        f"Document Type: {document_type or 'Unknown'}\n"
        f"Document Sub-Type: {document_sub_type or 'Unknown'}\n\n"
        "The document contains the following key information:\n"
        f"{fields}\n\n"
        "Document Text:\n"
        f"{truncated}\n\n"
        "Please provide a summary of this document that:\n"
        "1. Identifies the key purpose and information\n"
        "2. Mentions the most important details and dates\n"
        "3. Includes any action items or requirements\n"
        "4. Is structured in a clear, professional format\n"
        "5. Is no more than 200-300 words"
    )


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _handle_classify(event: Dict[str, Any]) -> Dict[str, Any]:
    body = _parse_body(event)
    if not isinstance(body, dict):
        return _error(400, "Invalid JSON body")
    text = body.get("text")
    if not text or not isinstance(text, str):
        return _error(400, "Missing text content for classification")
    available = body.get("availableTypes")
    if not isinstance(available, list):
        return _error(400, "Missing or invalid availableTypes")

    prompt = build_classification_prompt(text, available, body.get("fileName"))
    try:
        raw = _get_client().complete(
            CLASSIFY_MODEL,
            [
                {"role": "system", "content": CLASSIFY_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=0.2,
        )
    except LLMError as exc:
        logger.error("[ERROR] classification call failed: %s", exc)
        return _error(500, "Failed to classify document")

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.error("[ERROR] classification response was not JSON")
        return _error(500, "Failed to parse classification response", rawResponse=raw)
    if not isinstance(parsed, dict):
        return _error(500, "Failed to parse classification response", rawResponse=raw)

    logger.info("[INFO] classified as %s (%s)", parsed.get("documentType"), parsed.get("confidence"))
    return _response(200, {
        "documentType": parsed.get("documentType"),
        "subType": parsed.get("subType"),
        "confidence": parsed.get("confidence"),
        "reasoning": parsed.get("reasoning"),
    })


def _handle_summarise(event: Dict[str, Any]) -> Dict[str, Any]:
    body = _parse_body(event)
    if not isinstance(body, dict):
        return _error(400, "Invalid JSON body")
    text = body.get("text")
    if not text or not isinstance(text, str):
        return _error(400, "Missing required document text")
    fields = body.get("extractedFields") or []
    if not isinstance(fields, list):
        return _error(400, "extractedFields must be a list")

    prompt = build_summary_prompt(
        text,
        body.get("documentType"),
        body.get("documentSubType"),
        [f for f in fields if isinstance(f, dict)],
    )
    try:
        summary = _get_client().complete(
            SUMMARY_MODEL,
            [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0.3,
            max_tokens=500,
        ).strip()
    except LLMError as exc:
        logger.error("[ERROR] summary call failed: %s", exc)
        return _error(500, "Failed to generate document summary")

    return _response(200, {
        "success": True,
        "summary": summary,
        "wordCount": len(summary.split()),
        "documentType": body.get("documentType"),
        "documentSubType": body.get("documentSubType"),
    })


_ROUTES = [
    ("POST", re.compile(r"/docs-2-analyse/classify-llm$"), _handle_classify),
    ("POST", re.compile(r"/docs-3-process/summarise-doc$"), _handle_summarise),
]


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _preflight()

    claims, auth_err = _authenticate(event, error_fn=_error)
    if auth_err:
        return auth_err

    for route_method, pattern, handler in _ROUTES:
        if not pattern.search(path):
            continue
        if route_method != method:
            return _error(405, f"Method {method} not allowed.")
        try:
            return handler(event)
        except LLMConfigError as exc:
            return _error(500, str(exc))

    return _error(404, f"Unsupported route: {method} {path}")
