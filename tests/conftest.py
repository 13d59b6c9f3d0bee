"""Shared fakes for the finsheet test suite.

External services (parsing API, Azure OpenAI, Drive, table stores) are replaced
by in-memory fakes; async code is driven with ``asyncio.run``.
"""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from finsheet.orchestrator import PipelineCapabilities
from finsheet.types import (
    AggregationWarning,
    DownloadedFile,
    ExtractedRecord,
    FileDescriptor,
    InterpretationResult,
    InterpretationStats,
    ParsedDocument,
)


# ---------------------------------------------------------------------------
# HTTP fakes
# ---------------------------------------------------------------------------


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data: Any = None, text: str = "", content: bytes = b""):
        self.status_code = status_code
        self._json = json_data
        self.text = text or (json.dumps(json_data) if json_data is not None else "")
        self.content = content

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        if self._json is None:
            raise ValueError("no JSON body")
        return self._json


class FakeSession:
    """Routes requests by URL suffix; each route holds a list of responses (last one repeats)."""

    def __init__(self, routes: Optional[Dict[str, List[Any]]] = None):
        self.routes = routes or {}
        self.calls: List[tuple] = []

    def _respond(self, method: str, url: str, kwargs: Dict[str, Any]):
        self.calls.append((method, url, kwargs))
        for suffix, responses in self.routes.items():
            if url.endswith(suffix):
                item = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(item, Exception):
                    raise item
                return item
        return FakeResponse(404, text="not found")

    def get(self, url: str, **kwargs):
        return self._respond("GET", url, kwargs)

    def post(self, url: str, **kwargs):
        return self._respond("POST", url, kwargs)


class FakeClock:
    def __init__(self, step: float = 1.0):
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


# ---------------------------------------------------------------------------
# OpenAI fake
# ---------------------------------------------------------------------------


class FakeOpenAI:
    def __init__(self, outputs: List[Any]):
        self.outputs = list(outputs)
        self.calls: List[Dict[str, Any]] = []
        self.responses = SimpleNamespace(create=self._create)

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        item = self.outputs.pop(0)
        if isinstance(item, Exception):
            raise item
        if not isinstance(item, str):
            item = json.dumps(item)
        return SimpleNamespace(output_text=item)


# ---------------------------------------------------------------------------
# Capability fakes
# ---------------------------------------------------------------------------


def record(line_item: str, **values: str) -> ExtractedRecord:
    return ExtractedRecord(line_item=line_item, values=dict(values))


def completed_doc(file_name: str, content: Any = "| Revenue | 100 |", job_id: str = "job-1") -> ParsedDocument:
    return ParsedDocument(file_name=file_name, job_id=job_id, status="completed", content=content)


class FakeServices:
    """
    Pipeline complet en mémoire.

    `records_by_file` donne la sortie d'interprétation par nom de fichier ;
    `fail` associe un nom de fichier à l'étape qui doit échouer.
    """

    def __init__(
        self,
        records_by_file: Optional[Dict[str, List[ExtractedRecord]]] = None,
        fail: Optional[Dict[str, str]] = None,
        existing_table: Optional[List[List[str]]] = None,
        persist_error: Optional[Exception] = None,
        snapshot_error: Optional[Exception] = None,
        persist_warnings: Optional[List[AggregationWarning]] = None,
    ):
        self.records_by_file = records_by_file or {}
        self.fail = fail or {}
        self.existing_table = existing_table or []
        self.persist_error = persist_error
        self.snapshot_error = snapshot_error
        self.persist_warnings = persist_warnings
        self.calls: List[tuple] = []
        self.persisted: List[tuple] = []

    async def download(self, file_id: str, name: str) -> DownloadedFile:
        self.calls.append(("download", name))
        if self.fail.get(name) == "download":
            raise RuntimeError(f"download failed for {name}")
        return DownloadedFile(name=name, content=b"%PDF-1.4 fake")

    async def parse_submit(self, file: DownloadedFile) -> str:
        self.calls.append(("parse_submit", file.name))
        if self.fail.get(file.name) == "submit":
            raise RuntimeError("upload rejected")
        return f"job-{file.name}"

    async def parse_poll(self, job_id: str, name: str) -> ParsedDocument:
        self.calls.append(("parse_poll", name))
        if self.fail.get(name) == "parse":
            return ParsedDocument.failed(name, job_id, "Processing timeout exceeded")
        return completed_doc(name, job_id=job_id)

    async def interpret(self, documents, existing_table, mode) -> InterpretationResult:
        names = [d.file_name for d in documents]
        self.calls.append(("interpret", tuple(names), mode))
        if self.fail.get(names[0]) == "interpret":
            raise RuntimeError("model exploded")
        records = [ExtractedRecord(r.line_item, dict(r.values)) for r in self.records_by_file.get(names[0], [])]
        return InterpretationResult(records=records, raw_output="[]", stats=InterpretationStats(documents_processed=1))

    async def persist(self, records, target_id: str) -> Optional[List[AggregationWarning]]:
        self.calls.append(("persist", target_id))
        if self.persist_error is not None:
            raise self.persist_error
        self.persisted.append((list(records), target_id))
        return self.persist_warnings

    async def fetch_existing_table(self, target_id: str):
        self.calls.append(("fetch_existing_table", target_id))
        if self.snapshot_error is not None:
            raise self.snapshot_error
        return self.existing_table

    def capabilities(self) -> PipelineCapabilities:
        return PipelineCapabilities(
            download=self.download,
            parse_submit=self.parse_submit,
            parse_poll=self.parse_poll,
            interpret=self.interpret,
            persist=self.persist,
            fetch_existing_table=self.fetch_existing_table,
        )


def descriptors(*names: str) -> List[FileDescriptor]:
    return [FileDescriptor(id=f"id-{n}", name=n) for n in names]


@pytest.fixture
def three_files() -> List[FileDescriptor]:
    return descriptors("file1", "file2", "file3")
