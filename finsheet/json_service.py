import asyncio
import json
import logging
import os
import re
import time
from typing import Any, List, Optional, Sequence, Tuple

from openai import OpenAI

from .errors import (
    ConfigurationError,
    EmptyResponseError,
    InterpretationError,
    MalformedOutputError,
    UnexpectedShapeError,
)
from .strategies import RecordAccumulator, strategy_for
from .types import (
    LINE_ITEM_KEY,
    AggregationWarning,
    ExtractedRecord,
    InterpretationResult,
    InterpretationStats,
    OperationMode,
    ParsedDocument,
    TabularSnapshot,
)

logger = logging.getLogger(__name__)

API_TIMEOUT = int(os.getenv("API_TIMEOUT", "300"))
MAX_RETRIES = int(os.getenv("API_MAX_RETRIES", "3"))
RETRY_DELAY = int(os.getenv("API_RETRY_DELAY", "5"))

# Nombre maximal de points de coupure essayés lors de la troncature d'une sortie trop longue.
MAX_TRUNCATION_ATTEMPTS = 200


def _get_azure_client() -> OpenAI:
    endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
    deployment = os.getenv("AZURE_OPENAI_DEPLOYMENT")
    api_key = os.getenv("AZURE_OPENAI_API_KEY")
    if not (endpoint and deployment and api_key):
        raise ConfigurationError(
            "Variables Azure manquantes: AZURE_OPENAI_ENDPOINT, AZURE_OPENAI_DEPLOYMENT, AZURE_OPENAI_API_KEY"
        )
    base_url = endpoint.rstrip('/') + "/openai/v1/"
    return OpenAI(api_key=api_key, base_url=base_url, timeout=API_TIMEOUT)


def _strip_fences_and_think(raw: str) -> str:
    s = raw.strip()
    s = re.sub(r"<think>[\s\S]*?</think>", "", s)
    s = s.strip()
    if s.startswith("```json"):
        s = s[7:]
    if s.startswith("```"):
        s = s[3:]
    if s.endswith("```"):
        s = s[:-3]
    return s.strip()


def _extract_json_array(s: str) -> Optional[str]:
    start = s.find("[")
    end = s.rfind("]")
    if start == -1 or end == -1 or end < start:
        return None
    return s[start : end + 1]


def truncate_json_array(text: str, max_chars: int) -> str:
    """
    Coupe un tableau JSON trop long au dernier élément complet (objet ou
    ligne de la forme tabulaire).

    On recule de fermeture en fermeture (`}` ou `]`) à partir de `max_chars` et
    on referme le tableau, jusqu'à obtenir un JSON valide. Si aucun point de
    coupure ne convient, le texte coupé brut est renvoyé (l'erreur de parsing
    sera levée ensuite).
    """
    cut = text[:max_chars]
    pos = len(cut)
    for _ in range(MAX_TRUNCATION_ATTEMPTS):
        pos = max(cut.rfind("}", 0, pos), cut.rfind("]", 0, pos))
        if pos == -1:
            break
        candidate = cut[: pos + 1].rstrip().rstrip(",") + "]"
        try:
            json.loads(candidate)
            return candidate
        except json.JSONDecodeError:
            continue
    return cut


def snapshot_to_markdown(snapshot: TabularSnapshot) -> str:
    if not snapshot:
        return ""
    header = snapshot[0]
    lines = ["| " + " | ".join(header) + " |", "| " + " | ".join("---" for _ in header) + " |"]
    lines.extend("| " + " | ".join(row) + " |" for row in snapshot[1:])
    return "\n".join(lines)


def _content_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, dict) and isinstance(content.get("markdown"), str):
        return content["markdown"]
    return json.dumps(content, ensure_ascii=False, indent=1)


def _build_system_prompt(mode: OperationMode) -> str:
    parts: List[str] = [
        "You are an expert financial data extraction service. Analyze the provided content of financial "
        "statements (income statement, balance sheet, cash flow) and extract ALL numerical values associated "
        "with each line item. Be accurate and complete."
    ]
    if mode == "update":
        parts.append(
            "You are updating an existing dataset: first read the existing table to understand its line items "
            "and naming conventions, then match new values to these existing line items."
        )
    return "\n".join(parts)


def _build_user_prompt(document_text: str, snapshot: TabularSnapshot, mode: OperationMode) -> str:
    parts: List[str] = []
    if mode == "create":
        parts.append(
            "CREATE MODE: extract ALL line items with their values for every period found in the tables.\n"
            "- Normalize terminology to English line item names.\n"
            "- Use years (2022, 2023) or quarters (Q1 2023) as period keys; never invent periods.\n"
            "- Convert monetary values to a single consistent unit; negative values use a leading minus sign.\n"
        )
    else:
        parts.append(
            "UPDATE MODE: extract values ONLY for line items that already exist in the table below, "
            "using exactly the same line item names. Focus on new periods to add as columns.\n"
            "- Use years (2022, 2023) or quarters (Q1 2023) as period keys; never invent periods.\n"
            "- Negative values use a leading minus sign, not parentheses.\n"
        )
        existing = snapshot_to_markdown(snapshot)
        if existing:
            parts.append("Existing table (match to these line items):\n" + existing + "\n")
    parts.append(
        'Return ONLY a JSON array where each object has a "lineItem" key and one string property per period, '
        'for example: [{"lineItem": "Revenue", "2023": "1234.5", "2022": "1000.0"}]\n'
    )
    parts.append("Document content:\n" + document_text)
    return "\n".join(parts)


def parse_model_output(raw: str, max_chars: int = 20000, file_name: Optional[str] = None):
    """
    Transforme le texte brut du modèle en liste d'`ExtractedRecord`.

    Retourne (records, texte JSON effectivement parsé, avertissements).
    """
    warnings: List[AggregationWarning] = []
    if not raw or not raw.strip():
        raise EmptyResponseError(
            "Le modèle a renvoyé une réponse vide. Le document est peut-être illisible ou sans tableau financier."
        )

    cleaned = _strip_fences_and_think(raw)
    json_str = _extract_json_array(cleaned) or cleaned
    if len(json_str) > max_chars:
        original_len = len(json_str)
        json_str = truncate_json_array(json_str, max_chars)
        msg = f"Sortie du modèle trop longue ({original_len} caractères), tronquée à {len(json_str)} caractères."
        logger.warning(msg)
        warnings.append(AggregationWarning(file_name=file_name, kind="truncated_output", message=msg))

    if not json_str.strip():
        raise EmptyResponseError("Le modèle a renvoyé une réponse vide après nettoyage.")

    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as exc:
        raise MalformedOutputError(
            f"Sortie du modèle trop volumineuse ou mal formée (longueur JSON: {len(json_str)}): {exc}"
        ) from exc

    if not isinstance(data, list):
        raise UnexpectedShapeError("Le modèle n'a pas renvoyé les données sous forme de tableau.")

    items = data
    if data and all(isinstance(row, list) for row in data):
        # Forme tabulaire : première ligne = en-têtes ["lineItem", période1, ...]
        header = [str(h) for h in data[0]]
        items = [{LINE_ITEM_KEY: row[0] if row else None, **dict(zip(header[1:], row[1:]))} for row in data[1:]]
    elif not all(isinstance(item, dict) for item in data):
        raise UnexpectedShapeError("Le tableau renvoyé par le modèle doit contenir uniquement des objets.")

    records: List[ExtractedRecord] = []
    skipped = 0
    for item in items:
        line_item = item.get(LINE_ITEM_KEY)
        if not isinstance(line_item, str) or not line_item.strip():
            skipped += 1
            continue
        records.append(ExtractedRecord.from_dict({**item, LINE_ITEM_KEY: line_item.strip()}))
    if skipped:
        logger.warning("%d objet(s) sans libellé 'lineItem' ignoré(s)", skipped)

    return records, json_str, warnings


def has_any_value(records: Sequence[ExtractedRecord]) -> bool:
    return any(record.non_empty_periods() for record in records)


def compute_stats(records: Sequence[ExtractedRecord], documents: int, elapsed_ms: int) -> InterpretationStats:
    periods = {p for r in records for p in r.non_empty_periods()}
    return InterpretationStats(
        documents_processed=documents,
        line_items_found=len({r.line_item for r in records}),
        periods_found=len(periods),
        processing_time_ms=elapsed_ms,
    )


class InterpretationClient:
    """
    Transforme le contenu extrait d'un ou plusieurs documents (plus le tableau
    existant comme contexte) en enregistrements normalisés, via le modèle Azure.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        deployment: Optional[str] = None,
        max_response_chars: int = 20000,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
    ):
        self._client = client
        self.deployment = deployment or os.getenv("AZURE_OPENAI_DEPLOYMENT")
        self.max_response_chars = max_response_chars
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = _get_azure_client()
        return self._client

    def validate_configuration(self) -> None:
        """Vérifie le déploiement et les variables Azure avant tout appel au modèle."""
        if not self.deployment:
            raise ConfigurationError("AZURE_OPENAI_DEPLOYMENT non défini (nom du déploiement Azure)")
        if self._client is None:
            self._client = _get_azure_client()

    def _call_model(self, system_prompt: str, user_prompt: str) -> str:
        if not self.deployment:
            raise ConfigurationError("AZURE_OPENAI_DEPLOYMENT non défini (nom du déploiement Azure)")
        resp = self.client.responses.create(
            model=self.deployment,
            instructions=system_prompt,
            input=[{"role": "user", "content": [{"type": "input_text", "text": user_prompt}]}],
        )
        return resp.output_text or ""

    async def _call_with_retries(self, system_prompt: str, user_prompt: str) -> str:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return self._call_model(system_prompt, user_prompt)
            except ConfigurationError:
                raise
            except Exception as exc:  # pragma: no cover - robust API layer
                last_error = exc
                logger.warning("Appel au modèle en échec (tentative %d/%d): %s", attempt, self.max_retries, exc)
                if attempt >= self.max_retries:
                    break
                await asyncio.sleep(self.retry_delay)

        raise InterpretationError(f"Échec de l'interprétation après {self.max_retries} tentatives: {last_error}")

    async def interpret_document(
        self, document: ParsedDocument, existing_table: TabularSnapshot, mode: OperationMode
    ) -> Tuple[List[ExtractedRecord], str, List[AggregationWarning]]:
        if document.status != "completed":
            raise InterpretationError(f"Document non exploitable ({document.status}): {document.file_name}")
        user_prompt = _build_user_prompt(_content_to_text(document.content), existing_table, mode)
        logger.info("Interprétation de %s en mode %s...", document.file_name, mode.upper())
        raw = await self._call_with_retries(_build_system_prompt(mode), user_prompt)
        records, json_str, warnings = parse_model_output(raw, self.max_response_chars, document.file_name)
        logger.info("%s: %d ligne(s) extraite(s)", document.file_name, len(records))
        return records, json_str, warnings

    async def interpret(
        self,
        documents: Sequence[ParsedDocument],
        existing_table: TabularSnapshot,
        mode: OperationMode,
    ) -> InterpretationResult:
        t0 = time.time()
        strategy = strategy_for(mode)
        selected, warnings = strategy.select_documents(documents)
        accumulator = RecordAccumulator()
        raw_outputs: List[str] = []

        for document in selected:
            records, json_str, doc_warnings = await self.interpret_document(document, existing_table, mode)
            raw_outputs.append(json_str)
            warnings.extend(doc_warnings)
            warnings.extend(strategy.fold(accumulator, records, source=document.file_name))

        merged = accumulator.records()
        if merged and not has_any_value(merged):
            logger.warning(
                "Le modèle a renvoyé des libellés sans aucune valeur : document sans tableau exploitable, "
                "graphique plutôt que tableau, ou PDF image nécessitant un OCR."
            )
        stats = compute_stats(merged, len(selected), int((time.time() - t0) * 1000))
        return InterpretationResult(records=merged, raw_output="\n".join(raw_outputs), stats=stats, warnings=warnings)
