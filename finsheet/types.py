from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

OperationMode = Literal["create", "update"]
StageStatus = Literal["pending", "processing", "completed", "error"]
TabularSnapshot = List[List[str]]

STAGES = ("download", "parse", "interpret", "persist")
LINE_ITEM_KEY = "lineItem"


@dataclass
class PipelineConfig:
    """Configuration de haut niveau pour exécuter le pipeline."""
    out_root: Path
    llamaparse_api_key: Optional[str] = None
    llamaparse_base_url: str = "https://api.cloud.llamaindex.ai/api/parsing"
    max_batch_size: int = 10
    processing_timeout: float = 300.0    # secondes
    poll_interval: float = 2.0
    max_response_chars: int = 20000
    column_batch_size: int = 10
    unmatched_policy: str = "ignore"     # "ignore" | "append"
    table_backend: str = "csv"           # "csv" | "firestore"


@dataclass
class RunPaths:
    """Regroupe les chemins utilisés pendant une exécution de lot."""
    run_root: Path
    run_dir: Path
    base_name: str


@dataclass
class FileDescriptor:
    id: str
    name: str


@dataclass
class DownloadedFile:
    name: str
    content: bytes
    mime_type: str = "application/pdf"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class FileTask:
    """
    Suivi d'un fichier à travers les quatre étapes du pipeline.

    Les étapes avancent strictement de gauche à droite ; dès qu'une étape
    échoue, elle et toutes les suivantes passent en `error`.
    """
    id: str
    file_name: str
    download: StageStatus = "pending"
    parse: StageStatus = "pending"
    interpret: StageStatus = "pending"
    persist: StageStatus = "pending"
    job_id: Optional[str] = None
    error: Optional[str] = None
    processing_time_ms: Optional[int] = None

    def start(self, stage: str) -> None:
        setattr(self, stage, "processing")

    def complete(self, stage: str) -> None:
        setattr(self, stage, "completed")

    def fail(self, stage: str, message: str) -> None:
        """Marque `stage` et toutes les étapes suivantes en erreur (première erreur conservée)."""
        if self.error is None:
            self.error = message
        for name in STAGES[STAGES.index(stage):]:
            setattr(self, name, "error")

    def statuses(self) -> Dict[str, StageStatus]:
        return {name: getattr(self, name) for name in STAGES}

    @property
    def has_error(self) -> bool:
        return any(status == "error" for status in self.statuses().values())

    @property
    def succeeded(self) -> bool:
        return all(status == "completed" for status in self.statuses().values())

    def copy(self) -> "FileTask":
        return replace(self)


@dataclass
class ParsedDocument:
    file_name: str
    job_id: str
    status: StageStatus
    content: Any = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.status == "completed" and self.content is None:
            raise ValueError("Un document 'completed' doit porter un contenu extrait.")
        if self.status == "error" and self.content is not None:
            raise ValueError("Un document en erreur ne peut pas porter de contenu.")

    @classmethod
    def failed(cls, file_name: str, job_id: str, error: str) -> "ParsedDocument":
        return cls(file_name=file_name, job_id=job_id, status="error", error=error, completed_at=datetime.now())


@dataclass
class ExtractedRecord:
    """Une ligne financière normalisée : un libellé et ses valeurs par période."""
    line_item: str
    values: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.line_item:
            raise ValueError("Un enregistrement doit avoir un libellé de ligne non vide.")

    @property
    def periods(self) -> List[str]:
        return list(self.values.keys())

    def non_empty_periods(self) -> List[str]:
        return [p for p, v in self.values.items() if v is not None and str(v).strip() != ""]

    def get(self, period: str) -> str:
        return self.values.get(period) or ""

    def merge(self, other: "ExtractedRecord") -> None:
        """Union des périodes ; en cas de collision, la nouvelle valeur l'emporte."""
        self.values.update(other.values)

    def to_dict(self) -> Dict[str, str]:
        data = {LINE_ITEM_KEY: self.line_item}
        data.update(self.values)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractedRecord":
        values = {str(k): ("" if v is None else str(v)) for k, v in data.items() if k != LINE_ITEM_KEY}
        return cls(line_item=str(data[LINE_ITEM_KEY]), values=values)


@dataclass
class AggregationWarning:
    """Avertissement non bloquant (extraction vide, sortie tronquée, document ignoré...)."""
    file_name: Optional[str]
    kind: str
    message: str


@dataclass
class InterpretationStats:
    documents_processed: int = 0
    line_items_found: int = 0
    periods_found: int = 0
    processing_time_ms: int = 0


@dataclass
class InterpretationResult:
    records: List[ExtractedRecord]
    raw_output: str
    stats: InterpretationStats
    warnings: List[AggregationWarning] = field(default_factory=list)


@dataclass
class BatchStats:
    files_processed: int = 0
    line_items_found: int = 0
    periods_found: int = 0
    processing_time_ms: int = 0


@dataclass
class BatchResult:
    """
    Résultat agrégé d'un lot.

    Un fichier « réussi » signifie « données extraites et mises en file » :
    l'écriture physique a lieu une seule fois en fin de lot et peut encore
    échouer (voir `persist_error`) sans remettre en cause les fichiers réussis.
    """
    successful_files: List[str]
    failed_files: List[str]
    records: List[ExtractedRecord]
    stats: BatchStats
    file_tasks: List[FileTask] = field(default_factory=list)
    warnings: List[AggregationWarning] = field(default_factory=list)
    persist_error: Optional[str] = None
    cancelled: bool = False


@dataclass
class ProgressSnapshot:
    total_files: int
    current_file_index: int
    current_file_name: Optional[str]
    current_stage: str
    file_results: List[FileTask]
    overall_progress: int
    is_complete: bool
    has_errors: bool


@dataclass
class CellUpdate:
    """Bloc de cellules à écrire, ancré en (row, column) base 0."""
    row: int
    column: int
    values: List[List[str]]

    @property
    def a1_range(self) -> str:
        from .merger import column_letter

        last_row = self.row + len(self.values)
        last_col = self.column + max((len(r) for r in self.values), default=1) - 1
        return f"{column_letter(self.column)}{self.row + 1}:{column_letter(last_col)}{last_row}"
