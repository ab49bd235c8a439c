"""Configuration loading from YAML files with environment variable overrides."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from candyclash.config.models import AppConfig, Environment

_ENV_PREFIX = "CANDYCLASH__"


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge override dict into base dict. Override values win."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides.

    Convention: CANDYCLASH__SECTION__KEY=value
    Double underscore separates nesting levels.
    Example: CANDYCLASH__DATABASE__URL=sqlite:///prod.db
    """
    for key, value in os.environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        parts = key[len(_ENV_PREFIX) :].lower().split("__")
        current = data
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
        current[parts[-1]] = value
    return data


def load_config(
    config_dir: Path | str = "config",
    environment: str | None = None,
) -> AppConfig:
    """Load configuration from YAML files with environment overrides.

    Loading order (later values override earlier):
    1. config/base.yaml
    2. config/development.yaml or config/production.yaml
    3. config/distributions/*.yaml (merged under ``distributions.<stem>``)
    4. Environment variables (CANDYCLASH__SECTION__KEY)

    The overlay in step 2 is chosen by ``environment``, then
    ``CANDYCLASH__ENVIRONMENT``, then the ``environment`` key of base.yaml.
    """
    config_dir = Path(config_dir)

    # Layer 1: base config
    data = _load_yaml(config_dir / "base.yaml")

    # Layer 2: environment overlay
    env = environment or os.environ.get(f"{_ENV_PREFIX}ENVIRONMENT") or data.get("environment")
    env = Environment(env or Environment.DEVELOPMENT)
    data = _deep_merge(data, _load_yaml(config_dir / f"{env.value}.yaml"))
    data["environment"] = env.value

    # Layer 3: named prize distributions
    distributions_dir = config_dir / "distributions"
    if distributions_dir.exists():
        for yaml_file in sorted(distributions_dir.glob("*.yaml")):
            stem = yaml_file.stem.replace("-", "_")
            data = _deep_merge(data, {"distributions": {stem: _load_yaml(yaml_file)}})

    # Layer 4: env var overrides
    data = _apply_env_overrides(data)

    return AppConfig.from_dict(data)
