from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class FeedConfig:
    api_url: str
    api_key: str
    results_per_page: int
    page_delay_seconds: float
    max_retries: int
    timeout_seconds: int
    lookback_days: int
    interval_hours: int
    suppressed_statuses: list[str]


@dataclass(frozen=True)
class QueueConfig:
    batch_size: int
    wait_seconds: int
    visibility_timeout_seconds: int
    poll_seconds: float


@dataclass(frozen=True)
class WorkerConfig:
    short_interval_seconds: float
    long_interval_seconds: float


@dataclass(frozen=True)
class GitHubConfig:
    token: str
    api_base: str
    max_files: int
    per_page: int
    fallback_wait_seconds: float
    timeout_seconds: int


@dataclass(frozen=True)
class ExploitDbConfig:
    path: str


@dataclass(frozen=True)
class CweConfig:
    api_base: str
    timeout_seconds: int


@dataclass(frozen=True)
class LlmConfig:
    base_url: str
    api_key: str
    model: str
    timeout_seconds: int


@dataclass(frozen=True)
class Config:
    paths: PathsConfig
    feed: FeedConfig
    queue: QueueConfig
    worker: WorkerConfig
    github: GitHubConfig
    exploitdb: ExploitDbConfig
    cwe: CweConfig
    llm: LlmConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "paths": {
        "data_dir": "./data",
        "state_db": "./data/state.sqlite3",
    },
    "feed": {
        "api_url": "https://services.nvd.nist.gov/rest/json/cves/2.0",
        "api_key": "",
        "results_per_page": 500,
        "page_delay_seconds": 6.0,
        "max_retries": 3,
        "timeout_seconds": 60,
        "lookback_days": 60,
        "interval_hours": 6,
        "suppressed_statuses": ["Received"],
    },
    "queue": {
        "batch_size": 10,
        "wait_seconds": 20,
        "visibility_timeout_seconds": 300,
        "poll_seconds": 1.0,
    },
    "worker": {
        "short_interval_seconds": 10.0,
        "long_interval_seconds": 60.0,
    },
    "github": {
        "token": "",
        "api_base": "https://api.github.com",
        "max_files": 10,
        "per_page": 30,
        "fallback_wait_seconds": 30.0,
        "timeout_seconds": 30,
    },
    "exploitdb": {
        "path": "./exploitdb",
    },
    "cwe": {
        "api_base": "https://cwe-api.mitre.org/api/v1",
        "timeout_seconds": 30,
    },
    "llm": {
        "base_url": "https://api.openai.com/v1",
        "api_key": "",
        "model": "gpt-4o-mini",
        "timeout_seconds": 120,
    },
}

# environment variable -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "VS_DATA_DIR": ("paths", "data_dir"),
    "VS_DB_PATH": ("paths", "state_db"),
    "NVD_API_URL": ("feed", "api_url"),
    "NVD_API_KEY": ("feed", "api_key"),
    "GITHUB_TOKEN": ("github", "token"),
    "EXPLOITDB_PATH": ("exploitdb", "path"),
    "OPENAI_API_KEY": ("llm", "api_key"),
    "VS_LLM_BASE_URL": ("llm", "base_url"),
    "VS_LLM_MODEL": ("llm", "model"),
}

CREDENTIALS: dict[str, tuple[str, str, str]] = {
    "nvd": ("feed", "api_key", "NVD_API_KEY"),
    "github": ("github", "token", "GITHUB_TOKEN"),
    "llm": ("llm", "api_key", "OPENAI_API_KEY"),
}


def load_config(path: str | None = None, env: dict[str, str] | None = None) -> Config:
    env = os.environ if env is None else env
    cfg = _deep_copy(DEFAULT_CONFIG)
    config_path = path or env.get("VS_CONFIG")
    if config_path:
        _deep_merge(cfg, load_config_file(config_path))
    _apply_env(cfg, env)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def load_config_file(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"config file is not valid YAML: {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("config file must contain a mapping")
    return data


def require_credentials(config: Config, names: list[str]) -> None:
    missing = []
    for name in names:
        section, key, env_name = CREDENTIALS[name]
        if not getattr(getattr(config, section), key):
            missing.append(env_name)
    if missing:
        raise ConfigError("missing credentials: " + ", ".join(missing))


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    return errors


def _apply_env(cfg: dict[str, Any], env: Any) -> None:
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None or value.strip() == "":
            continue
        cfg[section][key] = value.strip()
    if env.get("VS_DATA_DIR") and not env.get("VS_DB_PATH"):
        cfg["paths"]["state_db"] = os.path.join(cfg["paths"]["data_dir"], "state.sqlite3")


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")


def _build_config(cfg: dict[str, Any]) -> Config:
    paths_cfg = cfg["paths"]
    feed_cfg = cfg["feed"]
    queue_cfg = cfg["queue"]
    worker_cfg = cfg["worker"]
    github_cfg = cfg["github"]
    llm_cfg = cfg["llm"]

    return Config(
        paths=PathsConfig(
            data_dir=str(paths_cfg["data_dir"]),
            state_db=str(paths_cfg["state_db"]),
        ),
        feed=FeedConfig(
            api_url=str(feed_cfg["api_url"]),
            api_key=str(feed_cfg["api_key"]),
            results_per_page=int(feed_cfg["results_per_page"]),
            page_delay_seconds=float(feed_cfg["page_delay_seconds"]),
            max_retries=int(feed_cfg["max_retries"]),
            timeout_seconds=int(feed_cfg["timeout_seconds"]),
            lookback_days=int(feed_cfg["lookback_days"]),
            interval_hours=int(feed_cfg["interval_hours"]),
            suppressed_statuses=list(feed_cfg["suppressed_statuses"]),
        ),
        queue=QueueConfig(
            batch_size=int(queue_cfg["batch_size"]),
            wait_seconds=int(queue_cfg["wait_seconds"]),
            visibility_timeout_seconds=int(queue_cfg["visibility_timeout_seconds"]),
            poll_seconds=float(queue_cfg["poll_seconds"]),
        ),
        worker=WorkerConfig(
            short_interval_seconds=float(worker_cfg["short_interval_seconds"]),
            long_interval_seconds=float(worker_cfg["long_interval_seconds"]),
        ),
        github=GitHubConfig(
            token=str(github_cfg["token"]),
            api_base=str(github_cfg["api_base"]),
            max_files=int(github_cfg["max_files"]),
            per_page=int(github_cfg["per_page"]),
            fallback_wait_seconds=float(github_cfg["fallback_wait_seconds"]),
            timeout_seconds=int(github_cfg["timeout_seconds"]),
        ),
        exploitdb=ExploitDbConfig(path=str(cfg["exploitdb"]["path"])),
        cwe=CweConfig(
            api_base=str(cfg["cwe"]["api_base"]),
            timeout_seconds=int(cfg["cwe"]["timeout_seconds"]),
        ),
        llm=LlmConfig(
            base_url=str(llm_cfg["base_url"]),
            api_key=str(llm_cfg["api_key"]),
            model=str(llm_cfg["model"]),
            timeout_seconds=int(llm_cfg["timeout_seconds"]),
        ),
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
