from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, model_validator

from .store.firestore import DEFAULT_BASE_URL


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")
_PROJECT_ID_RE = re.compile(r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$")


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _default_config_from_env() -> dict:
    """
    Env-only config so most setups only need `.env`; YAML stays an optional override.
    """
    return {
        "firestore": {
            "project_id": os.getenv("FIRESTORE_PROJECT_ID", ""),
            "user_id": os.getenv("LEDGER_USER_ID", ""),
            "token": os.getenv("FIRESTORE_TOKEN", ""),
            "base_url": os.getenv("FIRESTORE_BASE_URL", DEFAULT_BASE_URL),
        },
        "statement": {
            "blank_row_limit": _env_int("STATEMENT_BLANK_ROW_LIMIT", 20),
            "unknown_preview_limit": _env_int("STATEMENT_UNKNOWN_PREVIEW_LIMIT", 5),
            "sheet_name": os.getenv("STATEMENT_SHEET_NAME", ""),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/ledger.log"),
        },
    }


class FirestoreConfig(BaseModel):
    """
    Where the ledger lives: `projects/{project_id}/databases/(default)/documents/users/{user_id}`.

    `token` is an OAuth2 access token with the datastore scope (e.g. from
    `gcloud auth print-access-token`); issuing it is outside this tool.
    """

    project_id: str
    user_id: str
    token: str = Field(default="", repr=False)
    base_url: str = DEFAULT_BASE_URL
    timeout_s: float = 30.0

    @model_validator(mode="after")
    def _validate(self) -> "FirestoreConfig":
        project_id = (self.project_id or "").strip()
        user_id = (self.user_id or "").strip()
        if not project_id:
            raise ValueError("firestore.project_id is required (or set FIRESTORE_PROJECT_ID)")
        if not _PROJECT_ID_RE.match(project_id):
            raise ValueError("firestore.project_id must look like a GCP project id (e.g. 'rikshaw-925ef')")
        if not user_id or "/" in user_id:
            raise ValueError("firestore.user_id is required and cannot contain '/' (or set LEDGER_USER_ID)")

        base_url = (self.base_url or DEFAULT_BASE_URL).strip().rstrip("/")
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"firestore.base_url must be a full URL like '{DEFAULT_BASE_URL}'")

        self.project_id = project_id
        self.user_id = user_id
        self.base_url = base_url
        self.token = (self.token or "").strip()
        return self


class StatementConfig(BaseModel):
    blank_row_limit: int = Field(default=20, ge=1)
    unknown_preview_limit: int = Field(default=5, ge=0)
    sheet_name: str = ""


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/ledger.log"


class AppConfig(BaseModel):
    firestore: FirestoreConfig
    statement: StatementConfig = StatementConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    raw: dict = {}
    if p.exists():
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
