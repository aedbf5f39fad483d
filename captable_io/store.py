"""
store.py — persistence collaborators.

RowStore is the only thing the import orchestrator writes through. A store
reports each write as a WriteResult; it does not raise for failed writes.
select() returns stored records matching equality filters (an empty list
when the backend cannot be read).

    InMemoryRowStore   tests and dry runs
    JsonlRowStore      one <table>.jsonl per table in a local directory
    RestRowStore       PostgREST-style HTTP backend (requests)

TemplateStore keeps named field-mapping sets and export templates per
company and schema in a single JSON file.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Sequence

import requests

from captable_io.config import EngineConfig
from captable_io.errors import TemplateNotFoundError
from captable_io.export import ExportTemplate
from captable_io.models import FieldMapping
from captable_io.values import is_empty, to_text

logger = logging.getLogger(__name__)

IDEMPOTENCY_FILE = "_idempotency.json"


@dataclass(frozen=True)
class WriteResult:
    ok: bool
    error: Optional[str] = None
    duplicate: bool = False

    @classmethod
    def failure(cls, message: str) -> "WriteResult":
        return cls(ok=False, error=message)


class RowStore(Protocol):
    def insert(
        self,
        table: str,
        rows: Sequence[dict[str, Any]],
        *,
        idempotency_key: Optional[str] = None,
    ) -> WriteResult: ...

    def update(self, table: str, key: str, changes: dict[str, Any]) -> WriteResult: ...

    def select(self, table: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]: ...


class InMemoryRowStore:
    """
    Dict-of-lists store.

    ``insert_hook(table, rows)`` may return an error message to make that
    insert fail, which is how tests simulate a backend rejecting a batch.
    """

    def __init__(self, insert_hook: Optional[Callable[[str, Sequence[dict]], Optional[str]]] = None) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.insert_hook = insert_hook
        self.insert_calls = 0
        self._seen_keys: set[str] = set()

    def insert(self, table, rows, *, idempotency_key=None) -> WriteResult:
        self.insert_calls += 1
        if idempotency_key and idempotency_key in self._seen_keys:
            return WriteResult(ok=True, duplicate=True)
        if self.insert_hook is not None:
            message = self.insert_hook(table, rows)
            if message:
                return WriteResult.failure(message)
        self.tables[table].extend(dict(row) for row in rows)
        if idempotency_key:
            self._seen_keys.add(idempotency_key)
        return WriteResult(ok=True)

    def update(self, table, key, changes) -> WriteResult:
        for record in self.tables.get(table, []):
            if record.get("id") == key:
                record.update(changes)
                return WriteResult(ok=True)
        return WriteResult.failure(f"No {table} record with id {key}")

    def select(self, table, filters=None) -> list[dict[str, Any]]:
        return [dict(r) for r in self.tables.get(table, []) if _matches(r, filters)]


class JsonlRowStore:
    def __init__(self, directory: "str | Path") -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _table_path(self, table: str) -> Path:
        return self.directory / f"{table}.jsonl"

    def _load_keys(self) -> set[str]:
        path = self.directory / IDEMPOTENCY_FILE
        if not path.exists():
            return set()
        return set(json.loads(path.read_text(encoding="utf-8")))

    def _save_keys(self, keys: set[str]) -> None:
        path = self.directory / IDEMPOTENCY_FILE
        path.write_text(json.dumps(sorted(keys), indent=2), encoding="utf-8")

    def read(self, table: str) -> list[dict[str, Any]]:
        path = self._table_path(table)
        if not path.exists():
            return []
        with path.open(encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]

    def select(self, table, filters=None) -> list[dict[str, Any]]:
        return [r for r in self.read(table) if _matches(r, filters)]

    def insert(self, table, rows, *, idempotency_key=None) -> WriteResult:
        try:
            keys = self._load_keys()
            if idempotency_key and idempotency_key in keys:
                return WriteResult(ok=True, duplicate=True)
            with self._table_path(table).open("a", encoding="utf-8") as handle:
                for row in rows:
                    handle.write(json.dumps(row, ensure_ascii=False, default=str) + "\n")
            if idempotency_key:
                keys.add(idempotency_key)
                self._save_keys(keys)
        except (OSError, TypeError, ValueError) as exc:
            return WriteResult.failure(f"Could not write {table}: {exc}")
        return WriteResult(ok=True)

    def update(self, table, key, changes) -> WriteResult:
        try:
            records = self.read(table)
            found = False
            for record in records:
                if record.get("id") == key:
                    record.update(changes)
                    found = True
            if not found:
                return WriteResult.failure(f"No {table} record with id {key}")
            payload = "".join(json.dumps(r, ensure_ascii=False, default=str) + "\n" for r in records)
            self._table_path(table).write_text(payload, encoding="utf-8")
        except (OSError, TypeError, ValueError) as exc:
            return WriteResult.failure(f"Could not update {table}: {exc}")
        return WriteResult(ok=True)


class RestRowStore:
    """Row store over a PostgREST-compatible HTTP API (e.g. a hosted Postgres)."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        })

    def _url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    def _send(self, method: str, table: str, **kwargs) -> WriteResult:
        try:
            response = self.session.request(method, self._url(table), timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, table, exc)
            return WriteResult.failure(f"{method} {table} failed: {exc}")

        if response.status_code >= 400:
            try:
                detail = response.json().get("message") or response.text
            except ValueError:
                detail = response.text
            return WriteResult.failure(f"HTTP {response.status_code}: {str(detail)[:300]}")
        return WriteResult(ok=True)

    def insert(self, table, rows, *, idempotency_key=None) -> WriteResult:
        headers = {"Prefer": "return=minimal"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        body = json.loads(json.dumps(list(rows), default=str))
        return self._send("POST", table, json=body, headers=headers)

    def update(self, table, key, changes) -> WriteResult:
        body = json.loads(json.dumps(changes, default=str))
        return self._send(
            "PATCH",
            table,
            params={"id": f"eq.{key}"},
            json=body,
            headers={"Prefer": "return=minimal"},
        )

    def select(self, table, filters=None) -> list[dict[str, Any]]:
        params = {name: f"eq.{value}" for name, value in (filters or {}).items()}
        try:
            response = self.session.request("GET", self._url(table), params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("GET %s failed: %s", table, exc)
            return []
        return payload if isinstance(payload, list) else []


def _matches(record: dict[str, Any], filters: Optional[dict[str, Any]]) -> bool:
    return all(record.get(name) == value for name, value in (filters or {}).items())


def existing_shareholder_names(
    store: RowStore,
    company_id: str,
    *,
    exclude_job_id: Optional[str] = None,
) -> set[str]:
    """
    Lower-cased names of the shareholders already stored for a company.

    Rows written by ``exclude_job_id`` are ignored so a re-run job does not
    flag its own earlier batches.
    """
    try:
        rows = store.select("shareholders", {"company_id": company_id})
    except Exception:
        logger.exception("Could not load existing shareholders for %s", company_id)
        return set()
    return {
        to_text(r.get("name")).strip().lower()
        for r in rows
        if not is_empty(r.get("name")) and (exclude_job_id is None or r.get("import_job_id") != exclude_job_id)
    }


def build_row_store(config: EngineConfig) -> RowStore:
    if config.rest_url:
        return RestRowStore(config.rest_url, config.rest_api_key or "", timeout=config.request_timeout)
    if config.data_dir:
        return JsonlRowStore(config.data_dir)
    return InMemoryRowStore()


# ══════════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ══════════════════════════════════════════════════════════════════════════════

class TemplateStore:
    def __init__(self, path: "str | Path") -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"mappings": {}, "exports": {}}
        payload = json.loads(self.path.read_text(encoding="utf-8"))
        payload.setdefault("mappings", {})
        payload.setdefault("exports", {})
        return payload

    def _save(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True), encoding="utf-8")

    @staticmethod
    def _bucket(payload: dict, kind: str, company_id: str, schema: str) -> dict[str, Any]:
        return payload[kind].setdefault(company_id, {}).setdefault(schema, {})

    def save_mapping_template(
        self,
        company_id: str,
        schema: str,
        name: str,
        mappings: Sequence[FieldMapping],
        parse_options: Optional[dict[str, Any]] = None,
    ) -> None:
        payload = self._load()
        self._bucket(payload, "mappings", company_id, schema)[name] = {
            "field_mappings": [mapping.to_dict() for mapping in mappings],
            "parse_options": parse_options or {},
        }
        self._save(payload)

    def load_mapping_template(self, company_id: str, schema: str, name: str) -> tuple[list[FieldMapping], dict[str, Any]]:
        entry = self._load()["mappings"].get(company_id, {}).get(schema, {}).get(name)
        if entry is None:
            raise TemplateNotFoundError(f"No mapping template '{name}' for {company_id}/{schema}")
        mappings = [FieldMapping.from_dict(item) for item in entry["field_mappings"]]
        return mappings, dict(entry.get("parse_options") or {})

    def save_export_template(self, company_id: str, template: ExportTemplate) -> None:
        payload = self._load()
        self._bucket(payload, "exports", company_id, template.target_schema)[template.name] = template.to_dict()
        self._save(payload)

    def load_export_template(self, company_id: str, schema: str, name: str) -> ExportTemplate:
        entry = self._load()["exports"].get(company_id, {}).get(schema, {}).get(name)
        if entry is None:
            raise TemplateNotFoundError(f"No export template '{name}' for {company_id}/{schema}")
        return ExportTemplate.from_dict(entry)

    def list_export_templates(self, company_id: str, schema: Optional[str] = None) -> list[ExportTemplate]:
        by_schema = self._load()["exports"].get(company_id, {})
        schemas = [schema] if schema else sorted(by_schema)
        templates = [
            ExportTemplate.from_dict(entry)
            for name in schemas
            for entry in by_schema.get(name, {}).values()
        ]
        return sorted(templates, key=lambda t: t.name)
