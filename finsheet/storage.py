import json
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Dict

from .types import BatchResult, RunPaths


def _safe_dir_name(name: str) -> str:
    return "".join(c if c.isalnum() or c in ("_", "-", ".") else "_" for c in name)


def ensure_run_dir(out_root: Path, base_name: str) -> Path:
    base = _safe_dir_name(base_name)
    candidate = out_root / base
    if not candidate.exists():
        candidate.mkdir(parents=True, exist_ok=True)
        return candidate
    # fallback unique
    unique = out_root / f"{base}_{uuid.uuid4().hex[:8]}"
    unique.mkdir(parents=True, exist_ok=True)
    return unique


def prepare_paths(target_id: str, out_root: Path) -> RunPaths:
    base_name = Path(target_id).stem or "run"
    run_dir = ensure_run_dir(out_root, base_name)
    return RunPaths(run_root=out_root, run_dir=run_dir, base_name=base_name)


def write_json(path: Path, data: Dict) -> None:
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2, default=str), encoding="utf-8")


def write_status(run_dir: Path, status: Dict) -> Path:
    p = run_dir / "status.json"
    write_json(p, status)
    return p


def write_errors(run_dir: Path, errors: Dict) -> Path:
    p = run_dir / "errors.json"
    write_json(p, errors)
    return p


def write_batch_report(run_dir: Path, result: BatchResult) -> Path:
    """Écrit `status.json` (et `errors.json` si des fichiers ou l'écriture finale ont échoué)."""
    status = {
        "successful_files": result.successful_files,
        "failed_files": result.failed_files,
        "stats": asdict(result.stats),
        "files": [asdict(task) for task in result.file_tasks],
        "warnings": [asdict(w) for w in result.warnings],
        "persist_error": result.persist_error,
        "cancelled": result.cancelled,
    }
    path = write_status(run_dir, status)

    errors = {task.file_name: task.error for task in result.file_tasks if task.error}
    if result.persist_error:
        errors["persist"] = result.persist_error
    if errors:
        write_errors(run_dir, errors)
    return path
