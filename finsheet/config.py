import os
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError
from .types import PipelineConfig

UNMATCHED_POLICIES = ("ignore", "append")
TABLE_BACKENDS = ("csv", "firestore")


def _number(value, name: str, cast=int):
    try:
        parsed = cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} doit être numérique (reçu: {value!r})") from exc
    if parsed <= 0:
        raise ConfigurationError(f"{name} doit être strictement positif (reçu: {value!r})")
    return parsed


def _given(value, env_name: str, default: str):
    # Une valeur explicite, même 0 ou vide, n'est jamais remplacée par l'environnement.
    return value if value is not None else os.getenv(env_name, default)


def _choice(value: str, name: str, allowed) -> str:
    value = value.lower()
    if value not in allowed:
        raise ConfigurationError(f"{name} invalide: {value!r} (attendu: {', '.join(allowed)})")
    return value


def load_config(
    out_root: Optional[str] = None,
    llamaparse_api_key: Optional[str] = None,
    max_batch_size: Optional[int] = None,
    processing_timeout: Optional[float] = None,
    poll_interval: Optional[float] = None,
    max_response_chars: Optional[int] = None,
    column_batch_size: Optional[int] = None,
    unmatched_policy: Optional[str] = None,
    table_backend: Optional[str] = None,
) -> PipelineConfig:
    root = Path(out_root or os.getenv("PIPELINE_OUT_ROOT", "uploads")).expanduser().resolve()
    root.mkdir(parents=True, exist_ok=True)

    cfg = PipelineConfig(
        out_root=root,
        llamaparse_api_key=llamaparse_api_key or os.getenv("LLAMAPARSE_API_KEY"),
        llamaparse_base_url=os.getenv("LLAMAPARSE_BASE_URL", "https://api.cloud.llamaindex.ai/api/parsing").rstrip("/"),
        max_batch_size=_number(_given(max_batch_size, "LLAMAPARSE_BATCH_SIZE", "10"), "LLAMAPARSE_BATCH_SIZE"),
        processing_timeout=_number(
            _given(processing_timeout, "PROCESSING_TIMEOUT", "300"), "PROCESSING_TIMEOUT", float
        ),
        poll_interval=_number(_given(poll_interval, "POLL_INTERVAL", "2"), "POLL_INTERVAL", float),
        max_response_chars=_number(
            _given(max_response_chars, "MAX_RESPONSE_CHARS", "20000"), "MAX_RESPONSE_CHARS"
        ),
        column_batch_size=_number(
            _given(column_batch_size, "SHEET_COLUMN_BATCH_SIZE", "10"), "SHEET_COLUMN_BATCH_SIZE"
        ),
        unmatched_policy=_choice(
            _given(unmatched_policy, "UNMATCHED_POLICY", "ignore"), "UNMATCHED_POLICY", UNMATCHED_POLICIES
        ),
        table_backend=_choice(_given(table_backend, "TABLE_BACKEND", "csv"), "TABLE_BACKEND", TABLE_BACKENDS),
    )
    return cfg
