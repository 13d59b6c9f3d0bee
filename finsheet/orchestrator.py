import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from .errors import ConfigurationError, ParseError
from .merger import snapshot_mode
from .progress import ProgressChannel, ProgressReporter
from .storage import write_batch_report
from .strategies import RecordAccumulator, strategy_for
from .types import (
    AggregationWarning,
    BatchResult,
    BatchStats,
    DownloadedFile,
    ExtractedRecord,
    FileDescriptor,
    FileTask,
    InterpretationResult,
    OperationMode,
    ParsedDocument,
    ProgressSnapshot,
    TabularSnapshot,
)
from .writer import write_parsed_content, write_raw_output, write_records_json

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressSnapshot], None]


@dataclass
class PipelineCapabilities:
    """Fonctions externes injectées dans l'orchestrateur (toutes asynchrones)."""
    download: Callable[[str, str], Awaitable[DownloadedFile]]
    parse_submit: Callable[[DownloadedFile], Awaitable[str]]
    parse_poll: Callable[[str, str], Awaitable[ParsedDocument]]
    interpret: Callable[[List[ParsedDocument], TabularSnapshot, OperationMode], Awaitable[InterpretationResult]]
    persist: Callable[[List[ExtractedRecord], str], Awaitable[Optional[List[AggregationWarning]]]]
    fetch_existing_table: Callable[[str], Awaitable[TabularSnapshot]]

    @classmethod
    def from_services(cls, downloader: Any, parse_client: Any, interpreter: Any, table_store: Any) -> "PipelineCapabilities":
        return cls(
            download=downloader.download,
            parse_submit=parse_client.submit,
            parse_poll=parse_client.await_result,
            interpret=interpreter.interpret,
            persist=table_store.persist,
            fetch_existing_table=table_store.fetch_existing_table,
        )


class PipelineOrchestrator:
    """
    Orchestrateur séquentiel : chaque fichier traverse, dans l'ordre,
    Téléchargement → Parsing → Interprétation → Mise en file, puis une seule
    écriture groupée a lieu en fin de lot.

    L'échec d'un fichier n'interrompt jamais le traitement des suivants ;
    seule une `ConfigurationError` interrompt le lot entier.
    """

    def __init__(
        self,
        capabilities: PipelineCapabilities,
        max_batch_size: int = 10,
        artifacts_dir: Optional[Path] = None,
    ):
        self.capabilities = capabilities
        self.max_batch_size = max_batch_size
        self.artifacts_dir = artifacts_dir

    def validate_batch(self, files: Sequence[FileDescriptor]) -> None:
        if len(files) == 0:
            raise ConfigurationError("Aucun fichier fourni pour le traitement")
        if len(files) > self.max_batch_size:
            raise ConfigurationError(
                f"Trop de fichiers : la taille maximale d'un lot est {self.max_batch_size}, reçu {len(files)}"
            )

    async def _load_snapshot(self, target_id: str) -> TabularSnapshot:
        try:
            return await self.capabilities.fetch_existing_table(target_id) or []
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.warning("Tableau existant introuvable ou illisible (%s), on continue avec un tableau vide", exc)
            return []

    def _dump(self, writer: Callable[..., Path], *args: Any) -> None:
        if self.artifacts_dir is None:
            return
        try:
            writer(self.artifacts_dir, *args)
        except OSError as exc:
            logger.warning("Écriture d'artefact impossible dans %s: %s", self.artifacts_dir, exc)

    async def run(
        self,
        files: Sequence[FileDescriptor],
        mode: Optional[OperationMode],
        target_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        self.validate_batch(files)
        batch_start = time.monotonic()

        tasks = [FileTask(id=f.id, file_name=f.name) for f in files]
        reporter = ProgressReporter(tasks)

        def emit(index: int, stage: str) -> None:
            if on_progress is not None:
                on_progress(reporter.snapshot(index, stage))

        # Lecture unique du tableau existant, avant tout fichier.
        snapshot = await self._load_snapshot(target_id)
        mode = mode or snapshot_mode(snapshot)
        strategy = strategy_for(mode)
        logger.info("Lot de %d fichier(s) en mode %s (lignes existantes: %d)", len(files), mode.upper(), len(snapshot))

        accumulator = RecordAccumulator()
        warnings: List[AggregationWarning] = []
        successful: List[str] = []
        failed: List[str] = []
        cancelled = False
        total = len(files)

        for i, (descriptor, task) in enumerate(zip(files, tasks)):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Lot annulé avant %s : %d fichier(s) non traité(s)", descriptor.name, total - i)
                cancelled = True
                break

            t0 = time.monotonic()
            prefix = f"[{i + 1}/{total}]"
            logger.info("%s Début du pipeline pour %s", prefix, descriptor.name)

            # 1) Téléchargement
            task.start("download")
            emit(i, "download")
            try:
                file = await self.capabilities.download(descriptor.id, descriptor.name)
            except ConfigurationError:
                raise
            except Exception as exc:
                self._fail(task, "download", exc, prefix, failed)
                emit(i, "download")
                continue
            task.complete("download")
            emit(i, "download")

            # 2) Parsing (envoi + suivi du job)
            task.start("parse")
            emit(i, "parse")
            try:
                task.job_id = await self.capabilities.parse_submit(file)
                document = await self.capabilities.parse_poll(task.job_id, descriptor.name)
                if document.status != "completed" or document.content is None:
                    raise ParseError(f"Échec du parsing: {document.error or 'erreur inconnue'}")
            except ConfigurationError:
                raise
            except Exception as exc:
                self._fail(task, "parse", exc, prefix, failed)
                emit(i, "parse")
                continue
            task.complete("parse")
            emit(i, "parse")
            self._dump(write_parsed_content, descriptor.name, document.content)

            # 3) Interprétation
            task.start("interpret")
            emit(i, "interpret")
            try:
                result = await self.capabilities.interpret([document], snapshot, mode)
            except ConfigurationError:
                raise
            except Exception as exc:
                self._fail(task, "interpret", exc, prefix, failed)
                emit(i, "interpret")
                continue
            task.complete("interpret")
            emit(i, "interpret")
            self._dump(write_raw_output, descriptor.name, result.raw_output)
            warnings.extend(result.warnings)

            records = list(result.records)
            if not records or not any(r.non_empty_periods() for r in records):
                msg = f"Aucune donnée financière trouvée dans {descriptor.name}"
                logger.warning("%s %s", prefix, msg)
                warnings.append(AggregationWarning(file_name=descriptor.name, kind="empty_extraction", message=msg))

            # 4) Mise en file : l'écriture réelle est groupée en fin de lot.
            task.start("persist")
            emit(i, "persist")
            warnings.extend(strategy.fold(accumulator, records, source=descriptor.name))
            task.complete("persist")

            task.processing_time_ms = int((time.monotonic() - t0) * 1000)
            successful.append(descriptor.name)
            emit(i, "persist")
            logger.info("%s Pipeline terminé pour %s en %d ms (%d ligne(s))",
                        prefix, descriptor.name, task.processing_time_ms, len(records))

        all_records = accumulator.records()
        persist_error: Optional[str] = None
        if all_records:
            logger.info("Écriture de %d ligne(s) dans %s", len(all_records), target_id)
            emit(total, "persist")
            try:
                # Avertissements éventuels du stockage (libellés non appariés).
                warnings.extend(await self.capabilities.persist(all_records, target_id) or [])
            except Exception as exc:
                # Les fichiers déjà mis en file restent réussis.
                persist_error = str(exc)
                logger.error("Échec de l'écriture finale dans %s: %s", target_id, exc)
        else:
            logger.info("Aucune donnée à écrire, écriture finale ignorée")

        result = BatchResult(
            successful_files=successful,
            failed_files=failed,
            records=all_records,
            stats=BatchStats(
                files_processed=len(successful),
                line_items_found=len(all_records),
                periods_found=len({p for r in all_records for p in r.non_empty_periods()}),
                processing_time_ms=int((time.monotonic() - batch_start) * 1000),
            ),
            file_tasks=tasks,
            warnings=warnings,
            persist_error=persist_error,
            cancelled=cancelled,
        )
        if not cancelled:
            emit(total, "completed")

        self._dump(write_records_json, "batch", all_records)
        self._dump(write_batch_report, result)

        logger.info(
            "Résumé du lot : %d fichier(s), %d réussi(s), %d en échec, %d ms",
            total, len(successful), len(failed), result.stats.processing_time_ms,
        )
        return result

    @staticmethod
    def _fail(task: FileTask, stage: str, exc: Exception, prefix: str, failed: List[str]) -> None:
        message = str(exc) or exc.__class__.__name__
        task.fail(stage, message)
        failed.append(task.file_name)
        logger.error("%s Échec de l'étape %s pour %s: %s", prefix, stage, task.file_name, message)


async def run_pipeline(
    files: Sequence[FileDescriptor],
    mode: Optional[OperationMode],
    capabilities: PipelineCapabilities,
    on_progress: Optional[ProgressCallback] = None,
    target_id: str = "default",
    max_batch_size: int = 10,
    artifacts_dir: Optional[Path] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> BatchResult:
    orchestrator = PipelineOrchestrator(capabilities, max_batch_size=max_batch_size, artifacts_dir=artifacts_dir)
    return await orchestrator.run(files, mode, target_id, on_progress=on_progress, cancel_event=cancel_event)


class PipelineRun:
    """
    Lot en cours d'exécution : `progress` est un flux ordonné d'instantanés
    (`async for`), et l'objet lui-même s'attend pour obtenir le `BatchResult`.
    """

    def __init__(self, task: "asyncio.Task[BatchResult]", progress: ProgressChannel):
        self.task = task
        self.progress = progress

    def __await__(self):
        return self.task.__await__()


def start_pipeline(
    files: Sequence[FileDescriptor],
    mode: Optional[OperationMode],
    capabilities: PipelineCapabilities,
    target_id: str = "default",
    max_batch_size: int = 10,
    artifacts_dir: Optional[Path] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> PipelineRun:
    """
    Démarre le lot dans une tâche asyncio (boucle en cours requise).
    La validation du lot est faite immédiatement, avant la création de la tâche.
    """
    orchestrator = PipelineOrchestrator(capabilities, max_batch_size=max_batch_size, artifacts_dir=artifacts_dir)
    orchestrator.validate_batch(files)
    channel = ProgressChannel()

    async def _run() -> BatchResult:
        try:
            return await orchestrator.run(
                files, mode, target_id, on_progress=channel.publish, cancel_event=cancel_event
            )
        finally:
            channel.close()

    return PipelineRun(asyncio.ensure_future(_run()), channel)
