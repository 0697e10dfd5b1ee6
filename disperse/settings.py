"""Settings loading for Disperse.

Settings are read from a YAML file (JSON is accepted as well, being a subset
of YAML) and merged over DEFAULT_SETTINGS. They hold the permission toggles,
compression levels, logger categories, cloud credentials keyed by service and
the transform presets.
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml


class ConfigurationError(Exception):
    """Error raised for invalid configuration: unknown plugin, bad command, missing credential."""


DEFAULT_SETTINGS: dict[str, Any] = {
    "disk_read": False,
    "disk_write": False,
    "unc_read": False,
    "unc_write": False,
    "gzip_level": 9,
    "brotli_quality": 11,
    "logger": {},
    "cloud": {},
    "transform": {},
    "node_modules": None,
}

SETTINGS_FILENAMES = ("disperse.yaml", "disperse.yml", "disperse.json")


def load_settings(path: Path | None = None, project_root: Path | None = None) -> dict[str, Any]:
    """Load settings with defaults applied.

    Args:
        path: Settings file. When omitted, the first of SETTINGS_FILENAMES
            found in ``project_root`` is used, if any.
        project_root: Directory searched when ``path`` is omitted.

    Returns:
        Dictionary of settings.
    """
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    if path is None and project_root is not None:
        for name in SETTINGS_FILENAMES:
            candidate = project_root / name
            if candidate.exists():
                path = candidate
                break
    if path is not None and path.exists():
        with open(path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if isinstance(loaded, dict):
            settings.update(loaded)
    return settings


def get_int(settings: dict[str, Any], key: str, minimum: int, maximum: int) -> int:
    """Read an integer setting, falling back to the default when out of range."""
    try:
        value = int(settings.get(key, DEFAULT_SETTINGS[key]))
    except (TypeError, ValueError):
        return DEFAULT_SETTINGS[key]
    if minimum <= value <= maximum:
        return value
    return DEFAULT_SETTINGS[key]


def resolve_credential(
    settings: dict[str, Any], service: str, credential: str | dict[str, Any]
) -> dict[str, Any]:
    """Resolve a storage credential against the ``cloud`` settings.

    A string names an entry under ``cloud.<service>``; an object is used as is.
    Unknown names resolve to an empty mapping, which providers reject when
    validating.
    """
    if isinstance(credential, str):
        services = settings.get("cloud") or {}
        found = (services.get(service) or {}).get(credential)
        return dict(found) if isinstance(found, dict) else {}
    return dict(credential or {})