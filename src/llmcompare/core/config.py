# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
# Purpose: Defines the config unit so this responsibility stays isolated, testable, and easy to evolve.

"""
Configuration loading utilities for llmcompare.

Conventions:
- Machine-specific config: resources/config/machine.json (optional)
- Environment variables (LLMC_*) override JSON values.
- JSON values can reference environment variables using ${VAR_NAME} placeholders.

Only generic JSON dicts are returned to keep things simple.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

BASE_DIR = Path(__file__).resolve().parent.parent.parent.parent
CONFIG_DIR = BASE_DIR / "resources" / "config"
DATA_DIR = BASE_DIR / "data"
LOGS_DIR = DATA_DIR / "logs"

DEFAULT_SETTINGS: Dict[str, Any] = {
    # Generation can be slow; the transport timeout is the only stall guard.
    "timeout_s": 300,
    "history_limit": 100,
    "cost_per_1k_tokens": 0.002,
    "streaming_fallback": True,
    "secret_key": "llm-comparison-tool-secret-key",
    "state_path": str(DATA_DIR / "state.json"),
}

_ENV_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")
_TRUE_VALUES = ("1", "true", "TRUE", "yes", "on")


def _interpolate_env(value: Any) -> Any:
    """Interpolate ${VAR} placeholders within strings using environment variables.

    Non-string types are returned unchanged.
    """
    if isinstance(value, str):

        def replace(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, match.group(0))  # leave placeholder if unset

        return _ENV_PATTERN.sub(replace, value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(v) for v in value]
    return value


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Deeply merge mapping 'override' into dict 'base'. Returns new dict.

    - For dict values, merges recursively.
    - For lists and scalars, override replaces base.
    """
    result: Dict[str, Any] = dict(base)
    for k, v in override.items():
        if isinstance(v, Mapping) and isinstance(result.get(k), Mapping):
            result[k] = _deep_merge(dict(result[k]), v)  # type: ignore[index]
        else:
            result[k] = v
    return result


def load_json_file(path: os.PathLike[str] | str | None) -> Dict[str, Any]:
    """Load JSON from path if it exists; return empty dict if missing.

    Raises ValueError for malformed JSON.
    """
    if path is None:
        return {}
    p = Path(path)
    if not p.exists():
        return {}
    try:
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON at {p}: {e}") from e


def _coerce_number(raw: str, cast) -> Any:
    try:
        return cast(raw)
    except ValueError:
        return raw


def _env_overrides() -> Dict[str, Any]:
    """Collect LLMC_* environment variables into a dict.

    Supported variables:
    - LLMC_TIMEOUT_S -> timeout_s (float if parseable)
    - LLMC_HISTORY_LIMIT -> history_limit (int if parseable)
    - LLMC_COST_PER_1K_TOKENS -> cost_per_1k_tokens (float if parseable)
    - LLMC_STREAMING_FALLBACK -> streaming_fallback (bool)
    - LLMC_SECRET_KEY -> secret_key
    - LLMC_STATE_PATH -> state_path
    """
    result: Dict[str, Any] = {}
    timeout_s = os.getenv("LLMC_TIMEOUT_S")
    history_limit = os.getenv("LLMC_HISTORY_LIMIT")
    cost = os.getenv("LLMC_COST_PER_1K_TOKENS")
    fallback = os.getenv("LLMC_STREAMING_FALLBACK")
    secret = os.getenv("LLMC_SECRET_KEY")
    state_path = os.getenv("LLMC_STATE_PATH")

    if timeout_s is not None:
        result["timeout_s"] = _coerce_number(timeout_s, float)
    if history_limit is not None:
        result["history_limit"] = _coerce_number(history_limit, int)
    if cost is not None:
        result["cost_per_1k_tokens"] = _coerce_number(cost, float)
    if fallback is not None:
        result["streaming_fallback"] = fallback in _TRUE_VALUES
    if secret is not None:
        result["secret_key"] = secret
    if state_path is not None:
        result["state_path"] = state_path
    return result


def load_machine_config(
    path: os.PathLike[str] | str | None = CONFIG_DIR / "machine.json",
    defaults: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Load machine configuration applying precedence and interpolation.

    Precedence: env overrides > JSON file > defaults
    """
    defaults = dict(defaults or {})
    json_config = load_json_file(path)
    json_config = _interpolate_env(json_config)
    merged = _deep_merge(defaults, json_config)
    merged = _deep_merge(merged, _env_overrides())
    return merged


def get_runtime_settings(
    path: os.PathLike[str] | str | None = CONFIG_DIR / "machine.json",
) -> Dict[str, Any]:
    """Return the effective runtime settings (built-in defaults included)."""
    return load_machine_config(path, defaults=DEFAULT_SETTINGS)


def public_settings(settings: Mapping[str, Any]) -> Dict[str, Any]:
    """Settings safe to hand to a client (the codec secret is removed)."""
    return {k: v for k, v in settings.items() if k != "secret_key"}
