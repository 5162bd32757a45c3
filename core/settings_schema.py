from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping


_ALLOWED_STRUCTURE: Dict[str, Any] = {
    "store": {
        "backup_dir",
        "copy_retries",
        "retry_delay_s",
        "max_file_size",
    },
    "selection": {
        "mode",
        "excludes",
        "critical_patterns",
        "critical_max_depth",
    },
    "retention": {
        "hourly_hours",
        "daily_days",
        "weekly_weeks",
        "monthly_months",
        "prune_interval_hours",
    },
    "destinations": {
        "cloud_folder",
        "project_folder",
        "http_url",
        "http_token_env",
        "timeout_s",
    },
    "queue": {
        "max_retries",
        "max_per_run",
    },
    "encryption": "*",
    "version": None,
}


@dataclass(slots=True)
class SettingsValidator:
    schema: Mapping[str, Any]

    def unknown_keys(self, payload: Mapping[str, Any]) -> Iterable[str]:
        return sorted(self._iter_unknown(payload, self.schema, path=""))

    def _iter_unknown(self, payload: Mapping[str, Any], schema: Mapping[str, Any], *, path: str) -> Iterable[str]:
        for key, value in payload.items():
            if key not in schema:
                yield f"{path}{key}"
                continue
            rule = schema[key]
            if rule is None:
                continue
            if rule == "*":
                continue
            if isinstance(rule, set):
                if not isinstance(value, Mapping):
                    continue
                for sub in value.keys():
                    if sub not in rule:
                        yield f"{path}{key}.{sub}"
                continue
            if isinstance(rule, Mapping) and isinstance(value, Mapping):
                next_path = f"{path}{key}."
                yield from self._iter_unknown(value, rule, path=next_path)


SETTINGS_VALIDATOR = SettingsValidator(_ALLOWED_STRUCTURE)

__all__ = ["SETTINGS_VALIDATOR"]
