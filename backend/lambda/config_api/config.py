"""config.py — Environment variables, table names, constants and logging for config_api."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

__all__ = [
    "APP_CONFIG_ID",
    "APP_REGION",
    "DEFAULT_REDACTION_SETTINGS",
    "DEFAULT_WORKFLOW_TASKS",
    "DYNAMODB_LOCAL_ENDPOINT",
    "DEFAULT_PROMPT_CATEGORY",
    "LOCK_TTL_SECONDS",
    "PROMPT_ROLES",
    "RESPONSE_FORMAT_TYPES",
    "STORAGE_ACCESS_LEVELS",
    "SUB_TYPE_ELEMENT_CACHE_TTL_SECONDS",
    "TableNames",
    "WORKFLOW_TYPES",
    "logger",
]

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

APP_REGION = os.environ.get("APP_REGION", os.environ.get("DYNAMODB_REGION", ""))
DYNAMODB_LOCAL_ENDPOINT = os.environ.get("DYNAMODB_LOCAL_ENDPOINT", "")
APP_CONFIG_ID = "app-config"
LOCK_TTL_SECONDS = int(os.environ.get("LOCK_TTL_SECONDS", "30"))
SUB_TYPE_ELEMENT_CACHE_TTL_SECONDS = 300
WORKFLOW_TYPES = ("API", "User", "Exception")
PROMPT_ROLES = ("system", "user", "assistant")
RESPONSE_FORMAT_TYPES = ("text", "json_object", "json")
STORAGE_ACCESS_LEVELS = ("immediate", "1-day", "14-day")

DEFAULT_PROMPT_CATEGORY = {
    "description": "",
    "model": "gpt-4",
    "temperature": 1,
    "responseFormat": {"type": "text"},
}

DEFAULT_REDACTION_SETTINGS = {
    "redactPII": True,
    "redactFinancial": True,
}


@dataclass
class TableNames:
    config: str
    document_types: str
    sub_types: str
    elements: str
    datasets: str
    examples: str
    workflows: str
    workflow_tasks: str
    prompt_categories: str
    prompts: str
    retention_policies: str
    storage_solutions: str
    locks: str

    @classmethod
    def from_env(cls) -> "TableNames":
        return cls(
            config=os.environ.get("DYNAMODB_CONFIG_TABLE", "document-processor-config"),
            document_types=os.environ.get("DYNAMODB_DOCTYPE_TABLE", "document-processor-doctypes"),
            sub_types=os.environ.get("DYNAMODB_SUBTYPE_TABLE", "document-processor-subtypes"),
            elements=os.environ.get("DYNAMODB_ELEMENT_TABLE", "document-processor-elements"),
            datasets=os.environ.get("DYNAMODB_DATASET_TABLE", "document-processor-datasets"),
            examples=os.environ.get("DYNAMODB_EXAMPLE_TABLE", "document-processor-examples"),
            workflows=os.environ.get("DYNAMODB_WORKFLOWS_TABLE", "document-processor-workflows"),
            workflow_tasks=os.environ.get(
                "DYNAMODB_WORKFLOW_TASKS_TABLE", "document-processor-workflow-tasks"
            ),
            prompt_categories=os.environ.get(
                "PROMPT_CATEGORIES_TABLE", "document-processor-prompt-categories"
            ),
            prompts=os.environ.get("PROMPTS_TABLE", "document-processor-prompts"),
            retention_policies=os.environ.get(
                "DYNAMODB_RETENTION_POLICY_TABLE", "document-processor-retention-policies"
            ),
            storage_solutions=os.environ.get(
                "DYNAMODB_STORAGE_SOLUTIONS_TABLE", "document-processor-storage-solutions"
            ),
            locks=os.environ.get("DYNAMODB_LOCKS_TABLE", "document-processor-locks"),
        )


# Catalogue written by WorkflowStore.seed_default_tasks when the task table is empty.
DEFAULT_WORKFLOW_TASKS = (
    {"id": "task_autocls_documents", "name": "Auto-classify documents",
     "description": "Automatically classify document types using AWS Comprehend", "stepId": 2},
    {"id": "task_classify_llm", "name": "Classify with LLM",
     "description": "Use LLM to classify documents if AWS classification is unsuccessful", "stepId": 2},
    {"id": "task_scan_tfn", "name": "Scan for TFN",
     "description": "Detect and handle Tax File Numbers in the document", "stepId": 2},
    {"id": "task_fraud_check", "name": "Conduct Fraud Check",
     "description": "Perform fraud analysis and verification", "stepId": 2},
    {"id": "task_identify_data", "name": "Automatically Identify Data Elements",
     "description": "Identify and extract data elements from the document", "stepId": 3},
    {"id": "task_redact_elements", "name": "Automatically Redact Elements",
     "description": "Redact sensitive information from the document", "stepId": 3},
    {"id": "task_create_summary", "name": "Create Summary",
     "description": "Generate a document summary using LLM", "stepId": 3},
    {"id": "task_save_original", "name": "Save Original Document",
     "description": "Save the original document with retention policy", "stepId": 3},
    {"id": "task_save_redacted", "name": "Save Redacted Document",
     "description": "Save the redacted document with retention policy", "stepId": 3},
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)
