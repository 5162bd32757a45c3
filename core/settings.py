from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Dict

from .paths import get_backup_dir, get_default_settings_paths, get_logs_dir
from .settings_schema import SETTINGS_VALIDATOR

__all__ = [
    "DEFAULT_CRITICAL_PATTERNS",
    "DEFAULT_EXCLUDES",
    "DEFAULT_SETTINGS",
    "SETTINGS_VERSION",
    "load_settings",
    "merge_defaults",
    "save_settings",
    "update_settings",
]

SETTINGS_VERSION = 1

DEFAULT_EXCLUDES = [
    "backups/",
    ".git/",
    "node_modules/",
    ".venv/",
    "__pycache__/",
    "dist/",
    "build/",
    ".next/",
    ".DS_Store",
    ".cache/",
    "coverage/",
    ".nyc_output/",
    ".turbo/",
    ".gradle/",
    ".maven/",
    "target/",
    "vendor/",
    ".parcel-cache/",
    ".sass-cache/",
    "logs/",
    ".nuxt/",
    ".output/",
    ".svelte-kit/",
    ".vercel/",
    ".netlify/",
    "htmlcov/",
    "*.pyc",
    ".pytest_cache/",
    ".mypy_cache/",
    ".ruff_cache/",
    "*.egg-info/",
    ".eggs/",
    "bower_components/",
    ".pnpm/",
]

DEFAULT_CRITICAL_PATTERNS = [
    ".env",
    ".env.*",
    "*.pem",
    "*.key",
    "*.p12",
    "*.pfx",
    "credentials.json",
    "secrets.*",
    ".aws/credentials",
    ".aws/config",
    ".gcp/*.json",
    "*.tfvars",
    ".firebase/*.json",
    "*.local.*",
    "local.settings.json",
    "appsettings.*.json",
    "docker-compose.override.yml",
    ".vscode/settings.json",
    ".vscode/launch.json",
    ".vscode/extensions.json",
    ".idea/workspace.xml",
    "*.db",
    "*.sqlite",
    "*.sqlite3",
    ".checkpoint.json",
]


DEFAULT_SETTINGS: Dict[str, Any] = {
    "version": SETTINGS_VERSION,
    "store": {
        "backup_dir": None,
        "copy_retries": 3,
        "retry_delay_s": 1.0,
        "max_file_size": 0,
    },
    "selection": {
        "mode": "all",
        "excludes": list(DEFAULT_EXCLUDES),
        "critical_patterns": list(DEFAULT_CRITICAL_PATTERNS),
        "critical_max_depth": 3,
    },
    "retention": {
        "hourly_hours": 24,
        "daily_days": 7,
        "weekly_weeks": 4,
        "monthly_months": 12,
        "prune_interval_hours": 24,
    },
    "destinations": {
        "cloud_folder": None,
        "project_folder": None,
        "http_url": None,
        "http_token_env": "CHECKPOINT_HTTP_TOKEN",
        "timeout_s": 10.0,
    },
    "queue": {
        "max_retries": 5,
        "max_per_run": 10,
    },
    "encryption": {
        "enabled": False,
        "extension": ".age",
    },
}


def merge_defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    def _merge(default: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key, value in default.items():
            if isinstance(value, dict):
                current = payload.get(key)
                if isinstance(current, dict):
                    result[key] = _merge(value, current)
                else:
                    result[key] = _merge(value, {})
            elif isinstance(value, list):
                current = payload.get(key)
                result[key] = list(current) if isinstance(current, list) else list(value)
            else:
                result[key] = payload.get(key, value)
        for key, value in payload.items():
            if key not in result:
                result[key] = value
        return result

    return _merge(DEFAULT_SETTINGS, data or {})


def _apply_migrations(settings: Dict[str, Any]) -> Dict[str, Any]:
    version = settings.get("version")
    try:
        version_int = int(version)
    except (TypeError, ValueError):
        version_int = 0
    if version_int < SETTINGS_VERSION:
        settings["version"] = SETTINGS_VERSION
    return settings


def _log_unknown_keys(settings: Dict[str, Any], project_root: Path) -> None:
    unknown = list(SETTINGS_VALIDATOR.unknown_keys(settings))
    if not unknown:
        return
    backup_dir = get_backup_dir(project_root, settings.get("store", {}).get("backup_dir"))
    logs_dir = get_logs_dir(backup_dir)
    payload = {
        "ts": time.time(),
        "unknown": unknown,
    }
    target = logs_dir / "settings_unknown.json"
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
    except OSError:
        return


def load_settings(project_root: Path) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for candidate in get_default_settings_paths(project_root):
        try:
            with open(candidate, "r", encoding="utf-8") as handle:
                loaded = json.load(handle)
        except FileNotFoundError:
            continue
        except json.JSONDecodeError:
            continue
        except OSError:
            continue
        if isinstance(loaded, dict):
            data = loaded
            break
    merged = merge_defaults(data)
    merged = _apply_migrations(merged)
    _log_unknown_keys(merged, project_root)
    return merged


def save_settings(settings: Dict[str, Any], project_root: Path) -> None:
    merged = merge_defaults(dict(settings))
    merged = _apply_migrations(merged)
    path = get_default_settings_paths(project_root)[0]
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(merged, handle, ensure_ascii=False, indent=2)


def update_settings(project_root: Path, **values: Any) -> None:
    current = load_settings(project_root)
    current.update(values)
    save_settings(current, project_root)
