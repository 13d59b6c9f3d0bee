import pytest

from finsheet.config import load_config
from finsheet.errors import ConfigurationError

ENV_VARS = (
    "PIPELINE_OUT_ROOT",
    "LLAMAPARSE_API_KEY",
    "LLAMAPARSE_BASE_URL",
    "LLAMAPARSE_BATCH_SIZE",
    "PROCESSING_TIMEOUT",
    "POLL_INTERVAL",
    "MAX_RESPONSE_CHARS",
    "SHEET_COLUMN_BATCH_SIZE",
    "UNMATCHED_POLICY",
    "TABLE_BACKEND",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        cfg = load_config(out_root=str(tmp_path / "out"))
        assert cfg.out_root == (tmp_path / "out").resolve()
        assert cfg.out_root.is_dir()
        assert cfg.max_batch_size == 10
        assert cfg.processing_timeout == 300.0
        assert cfg.poll_interval == 2.0
        assert cfg.max_response_chars == 20000
        assert cfg.column_batch_size == 10
        assert cfg.unmatched_policy == "ignore"
        assert cfg.table_backend == "csv"
        assert cfg.llamaparse_api_key is None

    def test_environment_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LLAMAPARSE_API_KEY", "llx-env")
        monkeypatch.setenv("LLAMAPARSE_BASE_URL", "https://parse.example/api/")
        monkeypatch.setenv("LLAMAPARSE_BATCH_SIZE", "5")
        monkeypatch.setenv("PROCESSING_TIMEOUT", "12.5")
        monkeypatch.setenv("UNMATCHED_POLICY", "APPEND")
        monkeypatch.setenv("TABLE_BACKEND", "firestore")
        cfg = load_config(out_root=str(tmp_path))
        assert cfg.llamaparse_api_key == "llx-env"
        assert cfg.llamaparse_base_url == "https://parse.example/api"
        assert cfg.max_batch_size == 5
        assert cfg.processing_timeout == 12.5
        assert cfg.unmatched_policy == "append"
        assert cfg.table_backend == "firestore"

    def test_arguments_win_over_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LLAMAPARSE_BATCH_SIZE", "5")
        cfg = load_config(out_root=str(tmp_path), max_batch_size=3)
        assert cfg.max_batch_size == 3

    @pytest.mark.parametrize(
        "name, value",
        [
            ("LLAMAPARSE_BATCH_SIZE", "many"),
            ("LLAMAPARSE_BATCH_SIZE", "-1"),
            ("POLL_INTERVAL", "0"),
            ("UNMATCHED_POLICY", "overwrite"),
            ("TABLE_BACKEND", "sqlite"),
        ],
    )
    def test_invalid_values(self, tmp_path, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigurationError, match=name):
            load_config(out_root=str(tmp_path))

    @pytest.mark.parametrize(
        "argument, name",
        [
            ("max_batch_size", "LLAMAPARSE_BATCH_SIZE"),
            ("column_batch_size", "SHEET_COLUMN_BATCH_SIZE"),
            ("poll_interval", "POLL_INTERVAL"),
        ],
    )
    def test_explicit_zero_is_rejected_not_replaced(self, tmp_path, monkeypatch, argument, name):
        monkeypatch.setenv(name, "5")
        with pytest.raises(ConfigurationError, match=name):
            load_config(out_root=str(tmp_path), **{argument: 0})

    def test_explicit_empty_policy_is_rejected(self, tmp_path, monkeypatch):
        monkeypatch.setenv("UNMATCHED_POLICY", "append")
        with pytest.raises(ConfigurationError, match="UNMATCHED_POLICY"):
            load_config(out_root=str(tmp_path), unmatched_policy="")
