import asyncio
import csv

import pytest

from conftest import record
from finsheet.errors import PersistError
from finsheet.merger import TableMerger
from finsheet.table_store import CsvTableStore, FirestoreTableStore, build_table_store


class FakeSnapshot:
    def __init__(self, data):
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return self._data


class FakeDocument:
    def __init__(self, store, key, fail_on_set=False):
        self.store = store
        self.key = key
        self.fail_on_set = fail_on_set

    def get(self):
        return FakeSnapshot(self.store.get(self.key))

    def set(self, data):
        if self.fail_on_set:
            raise RuntimeError("permission denied")
        self.store[self.key] = data
        self.store.setdefault("_writes", []).append(self.key)


class FakeFirestore:
    def __init__(self, fail_on_set=False):
        self.data = {}
        self.fail_on_set = fail_on_set

    def collection(self, name):
        db = self

        class _Collection:
            def document(self, doc_id):
                return FakeDocument(db.data, (name, doc_id), fail_on_set=db.fail_on_set)

        return _Collection()


def read_csv(path):
    with path.open(encoding="utf-8", newline="") as f:
        return list(csv.reader(f))


class TestCsvTableStore:
    def test_create_then_update(self, tmp_path):
        store = CsvTableStore(tmp_path)
        assert asyncio.run(store.fetch_existing_table("report")) == []

        asyncio.run(store.persist([record("Revenue", **{"2022": "1000"}), record("Net Income", **{"2022": "100"})], "report"))
        assert read_csv(tmp_path / "report.csv") == [["lineItem", "2022"], ["Revenue", "1000"], ["Net Income", "100"]]

        asyncio.run(store.persist([record("Revenue", **{"2023": "1200"})], "report"))
        assert asyncio.run(store.fetch_existing_table("report.csv")) == [
            ["lineItem", "2022", "2023"],
            ["Revenue", "1000", "1200"],
            ["Net Income", "100"],
        ]

    def test_unmatched_append_policy(self, tmp_path):
        store = CsvTableStore(tmp_path, merger=TableMerger(unmatched_policy="append"))
        asyncio.run(store.persist([record("Revenue", **{"2022": "1000"}), record("Net Income", **{"2022": "100"})], "t"))
        assert asyncio.run(store.persist([record("EBITDA", **{"2022": "300"})], "t")) == []
        assert read_csv(tmp_path / "t.csv")[-1] == ["EBITDA", "300"]

    def test_unmatched_line_items_reported(self, tmp_path):
        store = CsvTableStore(tmp_path)
        assert asyncio.run(store.persist([record("Revenue", **{"2022": "1000"}), record("Net Income", **{"2022": "1"})], "t")) == []
        warnings = asyncio.run(store.persist([record("EBITDA", **{"2023": "300"})], "t"))
        assert [w.kind for w in warnings] == ["unmatched_line_item"]
        assert "EBITDA" in warnings[0].message

    def test_write_failure_wrapped(self, tmp_path):
        blocker = tmp_path / "blocked"
        blocker.write_text("not a directory", encoding="utf-8")
        store = CsvTableStore(blocker)
        with pytest.raises(PersistError, match="t"):
            asyncio.run(store.persist([record("Revenue", **{"2022": "1"})], "t"))


class TestFirestoreTableStore:
    def test_rows_stored_as_cells(self):
        db = FakeFirestore()
        store = FirestoreTableStore(db=db, collection="tables")
        asyncio.run(store.persist([record("Revenue", **{"2022": "1000"})], "acme"))
        doc = db.data[("tables", "acme")]
        assert doc["rows"] == [{"cells": ["lineItem", "2022"]}, {"cells": ["Revenue", "1000"]}]
        assert "updated_at" in doc
        assert asyncio.run(store.fetch_existing_table("acme")) == [["lineItem", "2022"], ["Revenue", "1000"]]

    def test_update_writes_one_batch_at_a_time(self):
        db = FakeFirestore()
        store = FirestoreTableStore(db=db, collection="tables", merger=TableMerger(column_batch_size=1))
        asyncio.run(store.persist([record("Revenue", **{"2022": "1000"}), record("Net Income", **{"2022": "1"})], "acme"))
        asyncio.run(store.persist([record("Revenue", **{"2023": "1", "2024": "2"})], "acme"))
        assert db.data["_writes"].count(("tables", "acme")) == 3
        assert asyncio.run(store.fetch_existing_table("acme"))[0] == ["lineItem", "2022", "2023", "2024"]

    def test_missing_document_is_empty_table(self):
        store = FirestoreTableStore(db=FakeFirestore())
        assert asyncio.run(store.fetch_existing_table("nope")) == []

    def test_write_failure_wrapped(self):
        store = FirestoreTableStore(db=FakeFirestore(fail_on_set=True))
        with pytest.raises(PersistError, match="permission denied"):
            asyncio.run(store.persist([record("Revenue", **{"2022": "1"})], "acme"))


class TestBuildTableStore:
    def test_csv_backend_under_out_root(self, tmp_path):
        store = build_table_store("csv", tmp_path, TableMerger())
        assert isinstance(store, CsvTableStore)
        assert store.path_for("x") == tmp_path.resolve() / "tables" / "x.csv"

    def test_firestore_backend(self, tmp_path):
        assert isinstance(build_table_store("firestore", tmp_path, TableMerger()), FirestoreTableStore)
