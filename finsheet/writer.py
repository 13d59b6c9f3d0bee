from pathlib import Path
from typing import Any, List

import json

from .types import ExtractedRecord


def _stem(file_name: str) -> str:
    return "".join(c if c.isalnum() or c in ("_", "-", ".") else "_" for c in Path(file_name).stem)


def write_parsed_content(out_dir: Path, file_name: str, content: Any) -> Path:
    """
    Écrit le contenu brut renvoyé par le service de parsing, pour relecture :
    `.md` si c'est du texte, `.json` sinon.
    """
    if isinstance(content, str):
        path = out_dir / f"{_stem(file_name)}_parsed.md"
        path.write_text(content, encoding="utf-8")
    else:
        path = out_dir / f"{_stem(file_name)}_parsed.json"
        path.write_text(json.dumps(content, ensure_ascii=False, indent=2), encoding="utf-8")
    return path


def write_raw_output(out_dir: Path, file_name: str, raw_output: str) -> Path:
    """Écrit la sortie JSON du modèle telle qu'elle a été parsée (après nettoyage/troncature)."""
    path = out_dir / f"{_stem(file_name)}_model_output.json"
    path.write_text(raw_output, encoding="utf-8")
    return path


def write_records_json(out_dir: Path, prefix: str, records: List[ExtractedRecord]) -> Path:
    """
    Écrit l'ensemble des enregistrements accumulés du lot dans `<prefix>_records.json`.
    """
    path = out_dir / f"{prefix}_records.json"
    path.write_text(json.dumps([r.to_dict() for r in records], ensure_ascii=False, indent=2), encoding="utf-8")
    return path
