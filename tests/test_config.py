from __future__ import annotations

from pathlib import Path

import pytest

from installment_ledger.config import load_config


_ENV = (
    "FIRESTORE_PROJECT_ID",
    "LEDGER_USER_ID",
    "FIRESTORE_TOKEN",
    "FIRESTORE_BASE_URL",
    "STATEMENT_BLANK_ROW_LIMIT",
    "STATEMENT_UNKNOWN_PREVIEW_LIMIT",
    "STATEMENT_SHEET_NAME",
    "LOG_LEVEL",
    "LOG_FILE",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path: Path, name: str, text: str) -> Path:
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


def test_env_only_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FIRESTORE_PROJECT_ID", "rikshaw-925ef")
    monkeypatch.setenv("LEDGER_USER_ID", "operator-1")
    monkeypatch.setenv("FIRESTORE_TOKEN", " ya29.token ")
    monkeypatch.setenv("STATEMENT_BLANK_ROW_LIMIT", "30")

    cfg = load_config(tmp_path / "missing.yaml")
    assert cfg.firestore.project_id == "rikshaw-925ef"
    assert cfg.firestore.user_id == "operator-1"
    assert cfg.firestore.token == "ya29.token"
    assert cfg.firestore.base_url == "https://firestore.googleapis.com/v1"
    assert cfg.statement.blank_row_limit == 30
    assert cfg.statement.unknown_preview_limit == 5
    assert cfg.logging.level == "INFO"
    assert "ya29" not in repr(cfg.firestore)


def test_yaml_overrides_env_and_expands_vars(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FIRESTORE_PROJECT_ID", "from-env-project")
    monkeypatch.setenv("MY_LEDGER_TOKEN", "secret")
    cfg_path = _write(
        tmp_path,
        "cfg.yaml",
        """
firestore:
  project_id: "rikshaw-925ef"
  user_id: "operator-2"
  token: "${MY_LEDGER_TOKEN}"
  base_url: "http://localhost:8080/v1/"
  timeout_s: 5
statement:
  unknown_preview_limit: 10
  sheet_name: "Statement"
logging:
  level: "DEBUG"
""",
    )
    cfg = load_config(cfg_path)
    assert cfg.firestore.project_id == "rikshaw-925ef"
    assert cfg.firestore.token == "secret"
    assert cfg.firestore.base_url == "http://localhost:8080/v1"
    assert cfg.firestore.timeout_s == 5
    assert cfg.statement.blank_row_limit == 20
    assert cfg.statement.unknown_preview_limit == 10
    assert cfg.statement.sheet_name == "Statement"
    assert cfg.logging.level == "DEBUG"


def test_missing_or_invalid_firestore_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.yaml")

    monkeypatch.setenv("FIRESTORE_PROJECT_ID", "Not A Project")
    monkeypatch.setenv("LEDGER_USER_ID", "operator-1")
    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.yaml")

    monkeypatch.setenv("FIRESTORE_PROJECT_ID", "rikshaw-925ef")
    monkeypatch.setenv("LEDGER_USER_ID", "users/operator-1")
    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.yaml")

    bad = _write(tmp_path, "bad.yaml", "statement:\n  blank_row_limit: 0\n")
    monkeypatch.setenv("LEDGER_USER_ID", "operator-1")
    with pytest.raises(ValueError):
        load_config(bad)


def test_bad_env_ints_fall_back_to_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FIRESTORE_PROJECT_ID", "rikshaw-925ef")
    monkeypatch.setenv("LEDGER_USER_ID", "operator-1")
    monkeypatch.setenv("STATEMENT_BLANK_ROW_LIMIT", "lots")
    cfg = load_config(tmp_path / "missing.yaml")
    assert cfg.statement.blank_row_limit == 20
