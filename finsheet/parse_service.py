import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import requests

from .errors import ConfigurationError, UploadError
from .types import DownloadedFile, ParsedDocument

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "llx-"
PLACEHOLDER_KEY = "YOUR_LLAMAPARSE_API_KEY_HERE"
TIMEOUT_MESSAGE = "Processing timeout exceeded"

SUCCESS_STATUSES = {"SUCCESS"}
FAILURE_STATUSES = {"ERROR", "FAILED", "CANCELED", "CANCELLED"}

# Ordre de priorité des champs candidats dans la réponse de statut du job.
CONTENT_FIELDS = ("result", "pages", "content", "output", "data", "parsed_text", "json", "document")

PARSING_INSTRUCTION = (
    "Extract all tables from this document. Preserve table structures including headers, row labels, "
    "column headers, and all values. Maintain the original table formatting and hierarchical structure. "
    "Do not interpret or analyze the data - just extract the raw table content as structured data."
)


def _is_populated(name: str, value: Any) -> bool:
    if name == "result":
        # Un `result` qui ne contient qu'un identifiant n'est pas exploitable.
        return isinstance(value, dict) and len(value) > 1
    if name == "pages":
        return isinstance(value, list) and len(value) > 0
    return bool(value)


def extract_content(payload: Dict[str, Any]) -> Optional[Any]:
    """
    Parcourt les champs candidats dans l'ordre et renvoie le premier contenu
    non trivial, ou None si aucun champ direct n'est renseigné.
    """
    for name in CONTENT_FIELDS:
        value = payload.get(name)
        if value is not None and _is_populated(name, value):
            logger.debug("Contenu trouvé dans le champ %r", name)
            return value
    return None


class DocumentParseClient:
    """
    Client du service de parsing asynchrone :
    1. `submit` envoie le fichier et renvoie l'identifiant de job.
    2. `await_result` interroge le job jusqu'à un état terminal ou l'expiration
       du budget de temps, et renvoie toujours un `ParsedDocument`.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.cloud.llamaindex.ai/api/parsing",
        timeout: float = 300.0,
        poll_interval: float = 2.0,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
        request_timeout: float = 60.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.session = session or requests.Session()
        self.clock = clock
        self.request_timeout = request_timeout

    def validate_credentials(self) -> None:
        if not self.api_key or self.api_key == PLACEHOLDER_KEY:
            raise ConfigurationError(
                "Clé API du service de parsing non configurée. Ajoutez LLAMAPARSE_API_KEY à votre fichier .env."
            )
        if not self.api_key.startswith(API_KEY_PREFIX):
            raise ConfigurationError(
                f'Format de clé API invalide : la clé doit commencer par "{API_KEY_PREFIX}"'
            )
        logger.debug("Clé API de parsing valide (tronquée) : %s...", self.api_key[:10])

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def submit(self, file: DownloadedFile) -> str:
        self.validate_credentials()
        logger.info("Envoi de %s au service de parsing (%d octets)", file.name, file.size)

        resp = self.session.post(
            f"{self.base_url}/upload",
            headers=self._headers(),
            files={"file": (file.name, file.content, file.mime_type)},
            data={
                "language": "en",
                "parsing_instruction": PARSING_INSTRUCTION,
                "result_type": "json",
                "verbose": "true",
            },
            timeout=self.request_timeout,
        )
        if not resp.ok:
            logger.error("Échec de l'envoi de %s - status=%s, body=%s", file.name, resp.status_code, resp.text)
            raise UploadError(resp.status_code, resp.text, file_name=file.name)

        job_id = resp.json().get("id")
        if not job_id:
            raise UploadError(resp.status_code, f"Réponse sans identifiant de job: {resp.text}", file_name=file.name)
        logger.info("Envoi réussi pour %s, job=%s", file.name, job_id)
        return job_id

    def _fetch_rendered_text(self, job_id: str) -> Optional[Any]:
        """Repli sur l'endpoint de rendu markdown quand la réponse de statut ne contient rien."""
        logger.info("Aucune donnée dans le statut du job %s, lecture de l'endpoint markdown...", job_id)
        try:
            resp = self.session.get(
                f"{self.base_url}/job/{job_id}/result/markdown",
                headers=self._headers(),
                timeout=self.request_timeout,
            )
        except requests.RequestException as exc:
            logger.error("Erreur lors de la lecture du résultat markdown du job %s: %s", job_id, exc)
            return None
        if not resp.ok:
            logger.error("Endpoint markdown en échec pour le job %s - status=%s", job_id, resp.status_code)
            return None
        try:
            data = resp.json()
        except ValueError:
            data = resp.text
        return data or None

    async def await_result(self, job_id: str, display_name: str) -> ParsedDocument:
        start = self.clock()
        while self.clock() - start < self.timeout:
            try:
                resp = self.session.get(
                    f"{self.base_url}/job/{job_id}",
                    headers=self._headers(),
                    timeout=self.request_timeout,
                )
                if not resp.ok:
                    raise RuntimeError(f"Impossible de lire le statut du job: {resp.status_code}")
                payload = resp.json()
                status = str(payload.get("status", "")).upper()
                logger.debug("Job %s (%s) - status=%s, clés=%s", job_id, display_name, status, sorted(payload))

                if status in SUCCESS_STATUSES:
                    content = extract_content(payload)
                    if content is None:
                        content = self._fetch_rendered_text(job_id)
                    if content is None:
                        return ParsedDocument.failed(display_name, job_id, "Aucun contenu renvoyé par le service de parsing")
                    logger.info("Parsing terminé pour %s (job %s)", display_name, job_id)
                    return ParsedDocument(
                        file_name=display_name,
                        job_id=job_id,
                        status="completed",
                        content=content,
                        completed_at=datetime.now(),
                    )
                if status in FAILURE_STATUSES:
                    error = payload.get("error") or "Erreur inconnue du service de parsing"
                    logger.error("Parsing en échec pour %s: %s", display_name, error)
                    return ParsedDocument.failed(display_name, job_id, str(error))
            except Exception as exc:
                logger.error("Erreur pendant le suivi du job %s: %s", job_id, exc)
                return ParsedDocument.failed(display_name, job_id, str(exc) or "Erreur inconnue pendant le suivi")

            await asyncio.sleep(self.poll_interval)

        logger.error("Délai dépassé pour le job %s (%s)", job_id, display_name)
        return ParsedDocument.failed(display_name, job_id, TIMEOUT_MESSAGE)

    async def parse(self, file: DownloadedFile) -> ParsedDocument:
        job_id = await self.submit(file)
        return await self.await_result(job_id, file.name)
