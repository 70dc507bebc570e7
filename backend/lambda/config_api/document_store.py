"""document_store.py — DynamoDB adapter for document types, sub-types, data elements,
training datasets and the cached AppConfig aggregate.

Storage layout (one table per entity, all keyed by `id`):
    doctypes   — document type records
    subtypes   — sub-type records, `documentTypeId` back-reference (GSI documentTypeId-index);
                 the record also embeds the `dataElements` list it was saved with
    elements   — data elements, `documentTypeId` (GSI documentTypeId-index) and optional
                 `subTypeId` (GSI subTypeId-index); no `subTypeId` means a direct element
    datasets   — training datasets (GSI documentTypeId-index)
    examples   — training examples (GSI datasetId-index)
    config     — the `app-config` aggregate `{id, config, updatedAt}`

Every write through this store invalidates the cached aggregate.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from docproc_shared.errors import NotFoundError
from docproc_shared.expressions import Cond, ExpressionCompiler
from docproc_shared.locks import EntityLock
from docproc_shared.serialization import _new_id, _now_ms, _serialize
from docproc_shared.store import DynamoStore, _error_code

from config import (
    APP_CONFIG_ID,
    DEFAULT_REDACTION_SETTINGS,
    SUB_TYPE_ELEMENT_CACHE_TTL_SECONDS,
    TableNames,
)

logger = logging.getLogger(__name__)

__all__ = ["ConfigStore"]

_ELEMENT_OWNER_FIELDS = ("id", "documentTypeId", "subTypeId")
# Children live in their own tables; never copy them onto the parent record.
_DOC_TYPE_CHILD_FIELDS = ("subTypes", "dataElements", "trainingDatasets")


class ConfigStore(DynamoStore):
    def __init__(self, ddb, tables: TableNames, locks: Optional[EntityLock] = None):
        super().__init__(ddb)
        self.tables = tables
        self.locks = locks or EntityLock(ddb, "")
        self._sub_type_elements: Dict[str, Tuple[float, List[Dict[str, Any]]]] = {}

    def close(self) -> None:
        self._sub_type_elements.clear()
        super().close()

    # ------------------------------------------------------------------
    # Document types
    # ------------------------------------------------------------------

    def get_document_type(self, doc_type_id: str) -> Optional[Dict[str, Any]]:
        """Point lookup with sub-types (and their elements) attached; None if absent."""
        doc_type = self._get(self.tables.document_types, doc_type_id)
        if doc_type is None:
            return None
        doc_type["subTypes"] = self.get_sub_types_by_document_type(doc_type_id)
        return doc_type

    def get_all_document_types(self) -> List[Dict[str, Any]]:
        doc_types, _ = self._scan(self.tables.document_types)
        for doc_type in doc_types:
            doc_type["subTypes"] = self.get_sub_types_by_document_type(doc_type["id"])
        return doc_types

    def require_document_type(self, doc_type_id: str) -> Dict[str, Any]:
        doc_type = self._get(self.tables.document_types, doc_type_id)
        if doc_type is None:
            raise NotFoundError("Document type not found", "documentType", doc_type_id)
        return doc_type

    def create_document_type(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a document type plus any embedded sub-types and elements.

        Embedded elements and sub-types are also written to their own tables
        so they are reachable through the index queries. Failed batch chunks
        are logged and do not abort the create.
        """
        doc_type = {**data, "id": _new_id(), "dataElements": list(data.get("dataElements") or [])}
        doc_type_id = doc_type["id"]
        record = {k: v for k, v in doc_type.items() if k not in ("subTypes", "trainingDatasets")}
        self._put(self.tables.document_types, record)

        if doc_type["dataElements"]:
            self._batch_put(
                self.tables.elements,
                [
                    {**element, "id": element.get("id") or _new_id(), "documentTypeId": doc_type_id}
                    for element in doc_type["dataElements"]
                ],
            )

        sub_types = []
        for sub_type in doc_type.get("subTypes") or []:
            sub_type = {
                **sub_type,
                "id": sub_type.get("id") or _new_id(),
                "documentTypeId": doc_type_id,
                "dataElements": list(sub_type.get("dataElements") or []),
            }
            self._put(self.tables.sub_types, sub_type)
            self._write_sub_type_elements(doc_type_id, sub_type)
            sub_types.append(sub_type)
        if sub_types:
            doc_type["subTypes"] = sub_types

        self.invalidate_app_config()
        logger.info("document type created: %s (%s)", doc_type_id, doc_type.get("name"))
        return doc_type

    def update_document_type(self, doc_type_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Partial update; returns the stored record (unchanged when there is nothing to set)."""
        fields = {k: v for k, v in updates.items() if k not in _DOC_TYPE_CHILD_FIELDS}
        updated = self._update(self.tables.document_types, doc_type_id, fields, timestamp=_now_ms())
        if updated is None:
            return self.require_document_type(doc_type_id)
        self.invalidate_app_config()
        return updated

    def delete_document_type(self, doc_type_id: str) -> None:
        """Cascade: sub-types with their elements, direct elements, datasets with examples."""
        self.require_document_type(doc_type_id)
        with self.locks.hold("documentType", doc_type_id):
            for sub_type in self._sub_type_records(doc_type_id):
                self._delete_sub_type_unlocked(sub_type["id"])
            for element in self.get_data_elements_by_document_type(doc_type_id):
                self._delete(self.tables.elements, element["id"])
            for dataset in self.get_training_datasets_by_document_type(doc_type_id):
                self._delete_dataset_unlocked(dataset["id"])
            self._delete(self.tables.document_types, doc_type_id)
        self.invalidate_app_config()
        logger.info("document type deleted: %s", doc_type_id)

    # ------------------------------------------------------------------
    # Sub-types
    # ------------------------------------------------------------------

    def _sub_type_records(self, doc_type_id: str) -> List[Dict[str, Any]]:
        return self._query_index(
            self.tables.sub_types, "documentTypeId-index", "documentTypeId", doc_type_id
        )

    def get_sub_types_by_document_type(self, doc_type_id: str) -> List[Dict[str, Any]]:
        sub_types = self._sub_type_records(doc_type_id)
        for sub_type in sub_types:
            sub_type["dataElements"] = self.get_data_elements_by_sub_type(sub_type["id"])
        return sub_types

    def get_sub_type(self, sub_type_id: str) -> Optional[Dict[str, Any]]:
        return self._get(self.tables.sub_types, sub_type_id)

    def require_sub_type(self, doc_type_id: str, sub_type_id: str) -> Dict[str, Any]:
        """The sub-type, provided it exists and belongs to the document type."""
        sub_type = self.get_sub_type(sub_type_id)
        if sub_type is None or sub_type.get("documentTypeId") not in (None, doc_type_id):
            raise NotFoundError("Sub-type not found", "subType", sub_type_id)
        return sub_type

    def create_sub_type(self, doc_type_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.require_document_type(doc_type_id)
        sub_type = {
            **data,
            "id": _new_id(),
            "documentTypeId": doc_type_id,
            "dataElements": list(data.get("dataElements") or []),
        }
        self._put(self.tables.sub_types, sub_type)
        self._write_sub_type_elements(doc_type_id, sub_type)
        self.invalidate_app_config()
        return sub_type

    def _write_sub_type_elements(self, doc_type_id: str, sub_type: Dict[str, Any]) -> None:
        elements = sub_type.get("dataElements") or []
        if not elements:
            return
        for element in elements:
            element.setdefault("id", _new_id())
        self._batch_put(
            self.tables.elements,
            [
                {**element, "documentTypeId": doc_type_id, "subTypeId": sub_type["id"]}
                for element in elements
            ],
        )
        self._sub_type_elements.pop(sub_type["id"], None)

    def update_sub_type(
        self, doc_type_id: str, sub_type_id: str, updates: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Partial update. A `dataElements` list also re-syncs the elements table:
        elements missing from the list are deleted, listed ones updated or created.
        """
        current = self.require_sub_type(doc_type_id, sub_type_id)
        if "dataElements" in updates and isinstance(updates["dataElements"], list):
            existing_ids = {e["id"] for e in self._fetch_sub_type_elements(current)}
            wanted = updates["dataElements"]
            wanted_ids = {e.get("id") for e in wanted if e.get("id")}
            for element_id in existing_ids - wanted_ids:
                self._delete(self.tables.elements, element_id)
            synced = []
            for element in wanted:
                if element.get("id") in existing_ids:
                    self._update(
                        self.tables.elements,
                        element["id"],
                        element,
                        skip=_ELEMENT_OWNER_FIELDS,
                        timestamp=_now_ms(),
                    )
                    synced.append(element)
                else:
                    synced.append(
                        self._put_element(doc_type_id, element, sub_type_id)
                    )
            updates = {**updates, "dataElements": synced}
            self._sub_type_elements.pop(sub_type_id, None)

        updated = self._update(
            self.tables.sub_types,
            sub_type_id,
            updates,
            skip=("id", "documentTypeId"),
            timestamp=_now_ms(),
        )
        self.invalidate_app_config()
        return updated if updated is not None else current

    def delete_sub_type(self, doc_type_id: str, sub_type_id: str) -> None:
        self.require_sub_type(doc_type_id, sub_type_id)
        with self.locks.hold("subType", sub_type_id):
            self._delete_sub_type_unlocked(sub_type_id)
        self.invalidate_app_config()

    def _delete_sub_type_unlocked(self, sub_type_id: str) -> None:
        for element in self._fetch_sub_type_elements({"id": sub_type_id}):
            self._delete(self.tables.elements, element["id"])
        self._delete(self.tables.sub_types, sub_type_id)
        self._sub_type_elements.pop(sub_type_id, None)

    # ------------------------------------------------------------------
    # Data elements
    # ------------------------------------------------------------------

    def get_data_elements_by_document_type(self, doc_type_id: str) -> List[Dict[str, Any]]:
        """Direct elements only; sub-type elements are returned per sub-type."""
        return [
            e for e in self._elements_of_document_type(doc_type_id) if not e.get("subTypeId")
        ]

    def _elements_of_document_type(self, doc_type_id: str) -> List[Dict[str, Any]]:
        return self._query_index(
            self.tables.elements, "documentTypeId-index", "documentTypeId", doc_type_id
        )

    def get_data_elements_by_sub_type(self, sub_type_id: str) -> List[Dict[str, Any]]:
        """Elements of one sub-type, cached per store instance for five minutes."""
        if not sub_type_id:
            return []
        cached = self._sub_type_elements.get(sub_type_id)
        if cached and (time.monotonic() - cached[0]) < SUB_TYPE_ELEMENT_CACHE_TTL_SECONDS:
            return [dict(e) for e in cached[1]]
        elements = self._fetch_sub_type_elements({"id": sub_type_id})
        self._sub_type_elements[sub_type_id] = (time.monotonic(), elements)
        return [dict(e) for e in elements]

    def _fetch_sub_type_elements(self, sub_type: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self._query_index(
            self.tables.elements, "subTypeId-index", "subTypeId", sub_type["id"]
        )

    def _put_element(
        self, doc_type_id: str, data: Dict[str, Any], sub_type_id: Optional[str] = None
    ) -> Dict[str, Any]:
        element = {**data, "id": data.get("id") or _new_id(), "documentTypeId": doc_type_id}
        element.pop("subTypeId", None)
        if sub_type_id:
            element["subTypeId"] = sub_type_id
        self._put(self.tables.elements, element)
        if sub_type_id:
            self._sub_type_elements.pop(sub_type_id, None)
        return element

    def create_data_element(
        self, doc_type_id: str, data: Dict[str, Any], sub_type_id: Optional[str] = None
    ) -> Dict[str, Any]:
        self.require_document_type(doc_type_id)
        if sub_type_id:
            self.require_sub_type(doc_type_id, sub_type_id)
        element = self._put_element(doc_type_id, {k: v for k, v in data.items() if k != "id"}, sub_type_id)
        self.invalidate_app_config()
        return element

    def update_data_element(
        self,
        doc_type_id: str,
        element_id: str,
        updates: Dict[str, Any],
        sub_type_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Set only the fields present in `updates`.

        Raises NotFoundError when the owning document type (or the element)
        does not exist. `id`, `documentTypeId` and `subTypeId` are never
        rewritten by an update.
        """
        self.require_document_type(doc_type_id)
        updated = self._update(
            self.tables.elements,
            element_id,
            updates,
            skip=_ELEMENT_OWNER_FIELDS,
            timestamp=_now_ms(),
        )
        if sub_type_id:
            self._sub_type_elements.pop(sub_type_id, None)
        if updated is None:
            current = self._get(self.tables.elements, element_id)
            if current is None:
                raise NotFoundError("Data element not found", "dataElement", element_id)
            return current
        self._sub_type_elements.pop(updated.get("subTypeId") or "", None)
        self.invalidate_app_config()
        return updated

    def delete_data_element(
        self, doc_type_id: str, element_id: str, sub_type_id: Optional[str] = None
    ) -> None:
        self.require_document_type(doc_type_id)
        self._delete(self.tables.elements, element_id)
        if sub_type_id:
            self._sub_type_elements.pop(sub_type_id, None)
        self.invalidate_app_config()

    # ------------------------------------------------------------------
    # Training datasets / examples
    # ------------------------------------------------------------------

    def get_training_datasets_by_document_type(self, doc_type_id: str) -> List[Dict[str, Any]]:
        return self._query_index(
            self.tables.datasets, "documentTypeId-index", "documentTypeId", doc_type_id
        )

    def create_training_dataset(self, doc_type_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.require_document_type(doc_type_id)
        dataset = {
            **data,
            "id": _new_id(),
            "documentTypeId": doc_type_id,
            "examples": list(data.get("examples") or []),
        }
        self._put(self.tables.datasets, dataset)
        self.invalidate_app_config()
        return dataset

    def require_training_dataset(self, doc_type_id: str, dataset_id: str) -> Dict[str, Any]:
        """The dataset, provided it exists and belongs to the document type."""
        dataset = self._get(self.tables.datasets, dataset_id)
        if dataset is None or dataset.get("documentTypeId") != doc_type_id:
            raise NotFoundError("Training dataset not found", "trainingDataset", dataset_id)
        return dataset

    def update_training_dataset(
        self, doc_type_id: str, dataset_id: str, updates: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        self.require_training_dataset(doc_type_id, dataset_id)
        updated = self._update(
            self.tables.datasets,
            dataset_id,
            updates,
            skip=("id", "documentTypeId"),
            timestamp=_now_ms(),
        )
        if updated is not None:
            self.invalidate_app_config()
        return updated

    def delete_training_dataset(self, doc_type_id: str, dataset_id: str) -> None:
        self.require_training_dataset(doc_type_id, dataset_id)
        self._delete_dataset_unlocked(dataset_id)
        self.invalidate_app_config()

    def _delete_dataset_unlocked(self, dataset_id: str) -> None:
        for example in self.get_training_examples_by_dataset(dataset_id):
            self._delete(self.tables.examples, example["id"])
        self._delete(self.tables.datasets, dataset_id)

    def get_training_examples_by_dataset(self, dataset_id: str) -> List[Dict[str, Any]]:
        return self._query_index(self.tables.examples, "datasetId-index", "datasetId", dataset_id)

    def create_training_example(
        self, doc_type_id: str, dataset_id: str, data: Dict[str, Any]
    ) -> Dict[str, Any]:
        example = {**data, "id": _new_id(), "documentTypeId": doc_type_id, "datasetId": dataset_id}
        self._put(self.tables.examples, example)
        self.invalidate_app_config()
        return example

    def delete_training_example(self, dataset_id: str, example_id: str) -> None:
        self._delete(self.tables.examples, example_id)
        self.invalidate_app_config()

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    def fix_document_elements(self, doc_type_id: str) -> bool:
        """Re-sync element association fields with the sub-type layout.

        1. Elements of this document type pointing at a sub-type that is not
           one of its sub-types lose their `subTypeId` (become direct elements).
        2. Elements embedded in a sub-type record that are missing from the
           elements table, or stored under another sub-type, are re-written with
           the right `documentTypeId` / `subTypeId`. When several sub-types embed
           the same element id, the lowest sub-type id claims it.

        Idempotent: a second run finds nothing to change. Returns False if a
        store call failed part-way.
        """
        try:
            sub_types = sorted(self._sub_type_records(doc_type_id), key=lambda s: s["id"])
            valid_ids = {s["id"] for s in sub_types}
            stored = {e["id"]: e for e in self._elements_of_document_type(doc_type_id)}

            orphaned = 0
            for element in stored.values():
                if element.get("subTypeId") and element["subTypeId"] not in valid_ids:
                    if self._detach_element(element["id"]):
                        orphaned += 1
                    element.pop("subTypeId")

            claimed: set = set()
            restored = 0
            for sub_type in sub_types:
                for embedded in sub_type.get("dataElements") or []:
                    element_id = embedded.get("id")
                    if not element_id or element_id in claimed:
                        continue
                    claimed.add(element_id)
                    current = stored.get(element_id)
                    if current and current.get("subTypeId") == sub_type["id"]:
                        continue
                    item = {
                        **(current or {}),
                        **embedded,
                        "documentTypeId": doc_type_id,
                        "subTypeId": sub_type["id"],
                    }
                    self._put(self.tables.elements, item)
                    stored[element_id] = item
                    self._sub_type_elements.pop(sub_type["id"], None)
                    restored += 1
        except (BotoCoreError, ClientError) as exc:
            logger.error("fix elements failed for %s: %s", doc_type_id, exc)
            return False

        if orphaned or restored:
            self.invalidate_app_config()
        logger.info(
            "fix elements %s: %d orphaned sub-type refs cleared, %d elements restored",
            doc_type_id, orphaned, restored,
        )
        return True

    def _detach_element(self, element_id: str) -> bool:
        """Drop `subTypeId` from a stored element. False if it was deleted meanwhile."""
        compiler = ExpressionCompiler()
        update = "REMOVE {sub} SET {ts} = {now}".format(
            sub=compiler.name("subTypeId"),
            ts=compiler.name("updatedAt"),
            now=compiler.value(_now_ms()),
        )
        try:
            self.ddb.update_item(
                TableName=self.tables.elements,
                Key={"id": _serialize(element_id)},
                UpdateExpression=update,
                ConditionExpression=compiler.condition(Cond("id", "exists")),
                **compiler.params(),
            )
        except ClientError as exc:
            if _error_code(exc) == "ConditionalCheckFailedException":
                return False
            raise
        return True

    # ------------------------------------------------------------------
    # AppConfig aggregate
    # ------------------------------------------------------------------

    def build_or_get_app_config(self) -> Dict[str, Any]:
        """Return the cached aggregate, assembling and persisting it if absent."""
        cached = self._get(self.tables.config, APP_CONFIG_ID)
        if cached and isinstance(cached.get("config"), dict):
            return cached["config"]
        config, warnings = self.assemble_app_config()
        for warning in warnings:
            logger.warning("app config assembly: %s", warning)
        self.update_app_config(config)
        return config

    def assemble_app_config(self) -> Tuple[Dict[str, Any], List[str]]:
        """Walk every child table and build the aggregate. Per-document-type
        failures are reported as warnings and that document type is kept with
        whatever could be loaded.
        """
        warnings: List[str] = []
        doc_types, _ = self._scan(self.tables.document_types)
        assembled = []
        for doc_type in sorted(doc_types, key=lambda d: (str(d.get("name", "")), d["id"])):
            doc_type_id = doc_type["id"]
            entry = {**doc_type, "subTypes": [], "dataElements": [], "trainingDatasets": []}
            try:
                entry["subTypes"] = self.get_sub_types_by_document_type(doc_type_id)
                entry["dataElements"] = self.get_data_elements_by_document_type(doc_type_id)
                datasets = self.get_training_datasets_by_document_type(doc_type_id)
                for dataset in datasets:
                    dataset["examples"] = self.get_training_examples_by_dataset(dataset["id"])
                entry["trainingDatasets"] = datasets
            except (BotoCoreError, ClientError) as exc:
                warnings.append(f"Document type {doc_type_id}: {exc}")
            assembled.append(entry)
        config = {
            "documentTypes": assembled,
            "defaultRedactionSettings": dict(DEFAULT_REDACTION_SETTINGS),
        }
        return config, warnings

    def update_app_config(self, config: Dict[str, Any]) -> None:
        self._put(
            self.tables.config,
            {"id": APP_CONFIG_ID, "config": config, "updatedAt": _now_ms()},
        )

    def invalidate_app_config(self) -> None:
        self._delete(self.tables.config, APP_CONFIG_ID)

    def rebuild_app_config(self) -> Tuple[Dict[str, Any], List[str]]:
        """Drop the cached aggregate and rebuild it from the entity tables."""
        self.invalidate_app_config()
        config, warnings = self.assemble_app_config()
        self.update_app_config(config)
        logger.info(
            "app config rebuilt: %d document types, %d warnings",
            len(config["documentTypes"]), len(warnings),
        )
        return config, warnings
