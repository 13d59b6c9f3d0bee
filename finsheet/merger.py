"""Calcul des écritures à appliquer sur un tableau cible (lignes = libellés, colonnes = périodes).

Deux modes :
- CREATE : le tableau est (re)construit entièrement à partir des enregistrements.
- UPDATE : seules les nouvelles périodes sont ajoutées en colonnes, par lots
  de `column_batch_size` colonnes pour respecter les limites de taille des
  requêtes côté service de tableur.
"""

import logging
from typing import Dict, Iterable, List, Sequence

from .types import LINE_ITEM_KEY, AggregationWarning, CellUpdate, ExtractedRecord, OperationMode, TabularSnapshot

logger = logging.getLogger(__name__)

UpdateBatch = List[CellUpdate]


def column_letter(index: int) -> str:
    """Index de colonne base 0 → lettres A1 (0 → A, 25 → Z, 26 → AA)."""
    if index < 0:
        raise ValueError(f"Index de colonne négatif: {index}")
    letters = ""
    n = index + 1
    while n:
        n, rem = divmod(n - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def snapshot_mode(snapshot: TabularSnapshot) -> OperationMode:
    """0 ou 1 ligne (en-tête seul) → CREATE ; au moins une ligne de données → UPDATE."""
    return "update" if snapshot and len(snapshot) >= 2 else "create"


def collect_periods(records: Iterable[ExtractedRecord]) -> List[str]:
    periods = set()
    for record in records:
        periods.update(record.values.keys())
    return sorted(periods)


def apply_updates(rows: TabularSnapshot, updates: Sequence[CellUpdate]) -> TabularSnapshot:
    """
    Applique un lot de `CellUpdate` sur une copie de la grille.
    Les lignes trop courtes sont complétées avec des chaînes vides.
    """
    grid = [list(r) for r in rows]
    for update in updates:
        for dr, values in enumerate(update.values):
            r = update.row + dr
            while len(grid) <= r:
                grid.append([])
            row = grid[r]
            end = update.column + len(values)
            if len(row) < end:
                row.extend([""] * (end - len(row)))
            row[update.column:end] = [str(v) for v in values]
    return grid


class TableMerger:
    def __init__(self, column_batch_size: int = 10, unmatched_policy: str = "ignore"):
        if column_batch_size <= 0:
            raise ValueError("column_batch_size doit être strictement positif")
        if unmatched_policy not in ("ignore", "append"):
            raise ValueError(f"Politique inconnue pour les libellés non appariés: {unmatched_policy!r}")
        self.column_batch_size = column_batch_size
        self.unmatched_policy = unmatched_policy
        self.unmatched_line_items: List[str] = []
        self.warnings: List[AggregationWarning] = []

    def build_create_rows(self, records: Sequence[ExtractedRecord]) -> TabularSnapshot:
        periods = collect_periods(records)
        rows: TabularSnapshot = [[LINE_ITEM_KEY, *periods]]
        for record in records:
            rows.append([record.line_item, *[record.get(p) for p in periods]])
        return rows

    def plan_create(self, records: Sequence[ExtractedRecord]) -> List[UpdateBatch]:
        rows = self.build_create_rows(records)
        batch = [CellUpdate(row=0, column=0, values=[rows[0]])]
        batch.extend(CellUpdate(row=idx, column=0, values=[row]) for idx, row in enumerate(rows[1:], start=1))
        return [batch]

    def plan_update(self, records: Sequence[ExtractedRecord], snapshot: TabularSnapshot) -> List[UpdateBatch]:
        header = list(snapshot[0]) if snapshot else [LINE_ITEM_KEY]
        existing_periods = header[1:]
        data_rows = snapshot[1:]
        by_line_item: Dict[str, ExtractedRecord] = {}
        for record in records:
            if record.line_item in by_line_item:
                by_line_item[record.line_item].merge(record)
            else:
                by_line_item[record.line_item] = ExtractedRecord(record.line_item, dict(record.values))

        new_periods = sorted({p for r in by_line_item.values() for p in r.values if p not in existing_periods})
        batches: List[UpdateBatch] = []

        for i in range(0, len(new_periods), self.column_batch_size):
            batch_periods = new_periods[i : i + self.column_batch_size]
            start_col = len(header) + i
            updates: UpdateBatch = [CellUpdate(row=0, column=start_col, values=[batch_periods])]
            for row_idx, row in enumerate(data_rows, start=1):
                line_item = row[0] if row else ""
                record = by_line_item.get(line_item)
                if record is None:
                    continue
                new_values = [record.get(p) for p in batch_periods]
                if any(v != "" for v in new_values):
                    updates.append(CellUpdate(row=row_idx, column=start_col, values=[new_values]))
            batches.append(updates)

        if not new_periods:
            logger.info("Aucune nouvelle période à ajouter au tableau.")

        known = {row[0] for row in data_rows if row}
        self.unmatched_line_items = [li for li in by_line_item if li not in known]
        if self.unmatched_line_items:
            if self.unmatched_policy == "append":
                full_header = header + new_periods
                appended = [
                    CellUpdate(
                        row=len(snapshot) + n,
                        column=0,
                        values=[[li, *[by_line_item[li].get(p) for p in full_header[1:]]]],
                    )
                    for n, li in enumerate(self.unmatched_line_items)
                ]
                logger.info("%d libellé(s) non apparié(s) ajouté(s) en nouvelles lignes.", len(appended))
                batches.append(appended)
            else:
                msg = (
                    f"{len(self.unmatched_line_items)} libellé(s) absent(s) du tableau existant ignoré(s): "
                    f"{', '.join(self.unmatched_line_items)}"
                )
                logger.warning(msg)
                self.warnings.append(AggregationWarning(file_name=None, kind="unmatched_line_item", message=msg))
        return batches

    def plan(self, records: Sequence[ExtractedRecord], snapshot: TabularSnapshot) -> List[UpdateBatch]:
        self.warnings = []
        self.unmatched_line_items = []
        if snapshot_mode(snapshot) == "update":
            return self.plan_update(records, snapshot)
        return self.plan_create(records)

    def merge(self, records: Sequence[ExtractedRecord], snapshot: TabularSnapshot) -> TabularSnapshot:
        """Applique tous les lots planifiés et renvoie la grille résultante."""
        rows = [] if snapshot_mode(snapshot) == "create" else snapshot
        for batch in self.plan(records, snapshot):
            rows = apply_updates(rows, batch)
        return rows
