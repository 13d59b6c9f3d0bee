"""Mise en forme de la progression d'un lot et canal d'événements associé."""

import asyncio
import logging
from typing import AsyncIterator, Dict, List, Optional, Sequence

from .types import FileTask, ProgressSnapshot

logger = logging.getLogger(__name__)

STAGES_PER_FILE = 4
STAGE_WEIGHTS: Dict[str, int] = {
    "download": 0,
    "parse": 1,
    "interpret": 2,
    "persist": 3,
    "completed": 4,
}


def compute_overall_progress(file_index: int, stage: str, total_files: int) -> int:
    """
    Pourcentage global : chaque fichier compte pour quatre étapes de même poids,
    ce qui ne reflète pas le temps réel (parsing et interprétation dominent)
    mais reste monotone.
    """
    if total_files <= 0:
        return 100
    done = file_index * STAGES_PER_FILE + STAGE_WEIGHTS.get(stage, 0)
    return min(100, round(100 * done / (total_files * STAGES_PER_FILE)))


class ProgressReporter:
    def __init__(self, tasks: Sequence[FileTask]):
        self.tasks = tasks
        self._last_progress = 0

    @property
    def total_files(self) -> int:
        return len(self.tasks)

    def snapshot(self, file_index: int, stage: str) -> ProgressSnapshot:
        progress = compute_overall_progress(file_index, stage, self.total_files)
        # Garde-fou : la barre ne recule jamais.
        progress = max(progress, self._last_progress)
        self._last_progress = progress
        return ProgressSnapshot(
            total_files=self.total_files,
            current_file_index=file_index,
            current_file_name=self.tasks[file_index].file_name if file_index < self.total_files else None,
            current_stage=stage,
            file_results=[task.copy() for task in self.tasks],
            overall_progress=progress,
            is_complete=file_index >= self.total_files and stage == "completed",
            has_errors=any(task.has_error for task in self.tasks),
        )


_CLOSED = object()


class ProgressChannel:
    """
    Flux ordonné de `ProgressSnapshot` : l'orchestrateur publie, l'appelant
    consomme avec `async for`. Le flux se termine à la fermeture du canal.
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._closed = False
        self.history: List[ProgressSnapshot] = []

    def publish(self, snapshot: ProgressSnapshot) -> None:
        if self._closed:
            logger.debug("Événement de progression ignoré : canal fermé")
            return
        self.history.append(snapshot)
        self._queue.put_nowait(snapshot)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[ProgressSnapshot]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressSnapshot]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    @property
    def last(self) -> Optional[ProgressSnapshot]:
        return self.history[-1] if self.history else None
