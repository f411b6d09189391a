from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path, user_data_path

DEFAULT_API_BASE_URL = "https://api.github.com"
DEFAULT_HOST = "github.com"
DEFAULT_BRANCH = "main"
FALLBACK_BRANCH = "master"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_EMBEDDING_URL = "https://api.openai.com/v1"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DESCRIPTOR_FILENAME = "SKILL.md"


@dataclass(frozen=True)
class Config:
    github_token: str | None = None
    api_base_url: str = DEFAULT_API_BASE_URL
    host: str = DEFAULT_HOST
    default_branch: str = DEFAULT_BRANCH
    fallback_branch: str = FALLBACK_BRANCH
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    data_dir: str | None = None  # defaults to the platform user data dir
    embedding_url: str = DEFAULT_EMBEDDING_URL
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_api_key: str | None = None

    def resolved_data_dir(self) -> Path:
        if self.data_dir:
            return Path(self.data_dir).expanduser()
        return user_data_path("skillhub")


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLHUB_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("skillhub") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (the file may hold tokens).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def apply_env(cfg: Config) -> Config:
    """Overlay environment variables on top of file config."""
    github_token = os.getenv("SKILLHUB_GITHUB_TOKEN") or os.getenv("GITHUB_TOKEN") or cfg.github_token
    embedding_api_key = (
        os.getenv("SKILLHUB_EMBEDDING_API_KEY") or os.getenv("OPENAI_API_KEY") or cfg.embedding_api_key
    )
    embedding_url = os.getenv("SKILLHUB_EMBEDDING_URL") or cfg.embedding_url
    embedding_model = os.getenv("SKILLHUB_EMBEDDING_MODEL") or cfg.embedding_model
    data_dir = os.getenv("SKILLHUB_DATA_DIR") or cfg.data_dir

    timeout_raw = os.getenv("SKILLHUB_TIMEOUT_S")
    timeout_s = cfg.timeout_s
    if timeout_raw:
        try:
            timeout_s = float(timeout_raw)
        except ValueError:
            timeout_s = cfg.timeout_s

    return replace(
        cfg,
        github_token=github_token,
        embedding_api_key=embedding_api_key,
        embedding_url=embedding_url,
        embedding_model=embedding_model,
        data_dir=data_dir,
        timeout_s=timeout_s,
    )


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]
