import logging
import os
from pathlib import Path
from typing import List, Optional

import requests

from .errors import ConfigurationError, NotFoundError, TransferError
from .types import DownloadedFile, FileDescriptor

logger = logging.getLogger(__name__)

DRIVE_BASE_URL = "https://www.googleapis.com/drive/v3"
PDF_SIGNATURE = b"%PDF"
SUPPORTED_EXTS = {".pdf"}


def _check_pdf_signature(name: str, content: bytes) -> None:
    if not content.startswith(PDF_SIGNATURE):
        logger.warning(
            "Le fichier %s ne ressemble pas à un PDF valide (premiers octets: %s)",
            name,
            " ".join(f"0x{b:02x}" for b in content[:10]),
        )


class GoogleDriveDownloader:
    """
    Télécharge un PDF depuis Google Drive (`files/<id>?alt=media`).

    Le jeton OAuth est fourni tel quel (GOOGLE_DRIVE_TOKEN) : l'obtention du
    jeton relève de l'appelant.
    """

    def __init__(self, token: Optional[str] = None, session: Optional[requests.Session] = None, timeout: float = 60.0):
        self.token = token or os.getenv("GOOGLE_DRIVE_TOKEN")
        self.session = session or requests.Session()
        self.timeout = timeout

    async def download(self, file_id: str, display_name: str) -> DownloadedFile:
        if not self.token:
            raise ConfigurationError("GOOGLE_DRIVE_TOKEN doit être défini pour télécharger depuis Google Drive.")
        logger.info("Téléchargement de %s (id: %s) depuis Google Drive...", display_name, file_id)
        try:
            resp = self.session.get(
                f"{DRIVE_BASE_URL}/files/{file_id}",
                headers={"Authorization": f"Bearer {self.token}"},
                params={"alt": "media"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransferError(f"Échec du téléchargement de {display_name}: {exc}") from exc

        if resp.status_code == 404:
            raise NotFoundError(f"Fichier introuvable sur Google Drive: {display_name} (id: {file_id})")
        if not resp.ok:
            raise TransferError(f"Échec du téléchargement de {display_name}: {resp.status_code} {resp.text}")

        content = resp.content
        if not content:
            raise TransferError(f"Le fichier téléchargé est vide: {display_name}")
        _check_pdf_signature(display_name, content)
        logger.info("Téléchargement terminé: %s (%d octets)", display_name, len(content))
        return DownloadedFile(name=display_name, content=content)


class LocalFileSource:
    """Source locale : l'identifiant d'un fichier est son chemin relatif à `root`."""

    def __init__(self, root: Path):
        self.root = Path(root).expanduser().resolve()

    def list_files(self) -> List[FileDescriptor]:
        if not self.root.exists():
            return []
        paths = sorted(p for p in self.root.rglob("*") if p.is_file() and p.suffix.lower() in SUPPORTED_EXTS)
        return [FileDescriptor(id=str(p.relative_to(self.root)), name=p.name) for p in paths]

    async def download(self, file_id: str, display_name: str) -> DownloadedFile:
        path = (self.root / file_id).resolve()
        if self.root not in path.parents and path != self.root:
            raise NotFoundError(f"Chemin hors du dossier source: {file_id}")
        if not path.is_file():
            raise NotFoundError(f"Fichier introuvable: {path}")
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise TransferError(f"Lecture impossible de {path}: {exc}") from exc
        if not content:
            raise TransferError(f"Le fichier est vide: {display_name}")
        _check_pdf_signature(display_name, content)
        return DownloadedFile(name=display_name, content=content)
