"""Stockage du tableau cible : lecture de l'existant et écriture finale par lots.

Deux backends :
- `CsvTableStore` : un fichier CSV par cible sous un dossier racine.
- `FirestoreTableStore` : un document Firestore par cible. Firestore refuse
  les tableaux imbriqués, chaque ligne est donc stockée comme `{"cells": [...]}`.
"""

import csv
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Sequence

import firebase_admin
from firebase_admin import firestore

from .errors import ConfigurationError, PersistError
from .merger import TableMerger, apply_updates, snapshot_mode
from .types import AggregationWarning, ExtractedRecord, TabularSnapshot

logger = logging.getLogger(__name__)

FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")
FIRESTORE_COLLECTION = os.getenv("FIRESTORE_COLLECTION", "financial_tables")


class TableStore:
    def __init__(self, merger: Optional[TableMerger] = None):
        self.merger = merger or TableMerger()

    def _read_rows(self, target_id: str) -> TabularSnapshot:
        raise NotImplementedError

    def _write_rows(self, target_id: str, rows: TabularSnapshot) -> None:
        raise NotImplementedError

    async def fetch_existing_table(self, target_id: str) -> TabularSnapshot:
        return self._read_rows(target_id)

    async def persist(self, records: Sequence[ExtractedRecord], target_id: str) -> List[AggregationWarning]:
        """
        Relit le tableau juste avant l'écriture, planifie les mises à jour et
        écrit un lot de colonnes à la fois.

        Renvoie les avertissements de la fusion (libellés non appariés ignorés).
        """
        try:
            current = self._read_rows(target_id)
            mode = snapshot_mode(current)
            rows: TabularSnapshot = current if mode == "update" else []
            batches = self.merger.plan(records, current)
            logger.info("Écriture de %d enregistrement(s) dans %s (mode %s, %d lot(s))",
                        len(records), target_id, mode.upper(), len(batches))
            for batch in batches:
                rows = apply_updates(rows, batch)
                self._write_rows(target_id, rows)
            return list(self.merger.warnings)
        except PersistError:
            raise
        except Exception as exc:
            raise PersistError(f"Échec de l'écriture du tableau {target_id}: {exc}") from exc


class CsvTableStore(TableStore):
    def __init__(self, root: Path, merger: Optional[TableMerger] = None):
        super().__init__(merger)
        self.root = Path(root).expanduser().resolve()

    def path_for(self, target_id: str) -> Path:
        name = target_id if target_id.endswith(".csv") else f"{target_id}.csv"
        return self.root / name

    def _read_rows(self, target_id: str) -> TabularSnapshot:
        path = self.path_for(target_id)
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8", newline="") as f:
            return [row for row in csv.reader(f) if row]

    def _write_rows(self, target_id: str, rows: TabularSnapshot) -> None:
        path = self.path_for(target_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8", newline="") as f:
            csv.writer(f).writerows(rows)


def _init_firebase() -> Any:
    """
    Initialise Firebase (Firestore) et retourne le client.
    """
    if not FIREBASE_PROJECT_ID:
        raise ConfigurationError("FIREBASE_PROJECT_ID doit être défini dans l'environnement.")

    if not firebase_admin._apps:
        firebase_admin.initialize_app(options={"projectId": FIREBASE_PROJECT_ID})
    return firestore.client()


class FirestoreTableStore(TableStore):
    def __init__(self, db: Optional[Any] = None, collection: str = FIRESTORE_COLLECTION,
                 merger: Optional[TableMerger] = None):
        super().__init__(merger)
        self._db = db
        self.collection = collection

    @property
    def db(self) -> Any:
        if self._db is None:
            self._db = _init_firebase()
        return self._db

    def _doc(self, target_id: str):
        return self.db.collection(self.collection).document(target_id)

    def _read_rows(self, target_id: str) -> TabularSnapshot:
        snap = self._doc(target_id).get()
        if not snap.exists:
            return []
        data = snap.to_dict() or {}
        return [[str(c) for c in row.get("cells", [])] for row in data.get("rows", [])]

    def _write_rows(self, target_id: str, rows: TabularSnapshot) -> None:
        self._doc(target_id).set(
            {
                "rows": [{"cells": list(row)} for row in rows],
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
        )


def build_table_store(backend: str, out_root: Path, merger: TableMerger) -> TableStore:
    if backend == "firestore":
        return FirestoreTableStore(merger=merger)
    return CsvTableStore(out_root / "tables", merger=merger)
