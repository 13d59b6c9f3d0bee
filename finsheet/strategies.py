"""Stratégies d'interprétation selon le mode d'opération.

- CREATE : le premier document non vide établit la structure (libellés et
  périodes). Les documents suivants sont entièrement ignorés.
- UPDATE : chaque document est traité séparément et replié dans un
  accumulateur indexé par libellé exact (union des périodes, la dernière
  valeur gagne en cas de collision).
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from .types import AggregationWarning, ExtractedRecord, OperationMode, ParsedDocument

logger = logging.getLogger(__name__)


class RecordAccumulator:
    """Enregistrements indexés par libellé, dans l'ordre de première apparition."""

    def __init__(self) -> None:
        self._records: Dict[str, ExtractedRecord] = {}
        self.established = False

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, line_item: str) -> bool:
        return line_item in self._records

    def add_or_merge(self, record: ExtractedRecord) -> None:
        existing = self._records.get(record.line_item)
        if existing is None:
            self._records[record.line_item] = ExtractedRecord(record.line_item, dict(record.values))
        else:
            existing.merge(record)

    def records(self) -> List[ExtractedRecord]:
        return list(self._records.values())


class InterpretationStrategy:
    mode: OperationMode

    def select_documents(
        self, documents: Sequence[ParsedDocument]
    ) -> Tuple[List[ParsedDocument], List[AggregationWarning]]:
        raise NotImplementedError

    def fold(
        self,
        accumulator: RecordAccumulator,
        records: Sequence[ExtractedRecord],
        source: Optional[str] = None,
    ) -> List[AggregationWarning]:
        raise NotImplementedError


class CreateStrategy(InterpretationStrategy):
    mode: OperationMode = "create"

    def select_documents(self, documents):
        documents = list(documents)
        warnings: List[AggregationWarning] = []
        for extra in documents[1:]:
            msg = (
                f"Mode CREATE: seul le premier document ({documents[0].file_name}) établit la structure, "
                f"{extra.file_name} est ignoré."
            )
            logger.warning(msg)
            warnings.append(AggregationWarning(file_name=extra.file_name, kind="ignored_document", message=msg))
        return documents[:1], warnings

    def fold(self, accumulator, records, source=None):
        if accumulator.established:
            # Ni libellés ni périodes : l'en-tête dépend du seul premier document.
            msg = f"Mode CREATE: la structure est déjà établie, {source or 'document'} est ignoré."
            logger.warning(msg)
            return [AggregationWarning(file_name=source, kind="ignored_document", message=msg)]

        for record in records:
            accumulator.add_or_merge(record)
        accumulator.established = len(accumulator) > 0
        return []


class UpdateStrategy(InterpretationStrategy):
    mode: OperationMode = "update"

    def select_documents(self, documents):
        return list(documents), []

    def fold(self, accumulator, records, source=None):
        for record in records:
            accumulator.add_or_merge(record)
        accumulator.established = accumulator.established or len(accumulator) > 0
        return []


def strategy_for(mode: OperationMode) -> InterpretationStrategy:
    if mode == "create":
        return CreateStrategy()
    if mode == "update":
        return UpdateStrategy()
    raise ValueError(f"Mode d'opération inconnu: {mode!r}")
