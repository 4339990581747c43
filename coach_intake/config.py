"""Intake settings: config.yaml, overridable per deployment from the environment."""

import os
from pathlib import Path

import yaml
from dotenv import load_dotenv

# API keys and COACH_INTAKE_* overrides may come from a .env beside the package
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"
ENV_PREFIX = "COACH_INTAKE_"


def apply_env_overrides(config: dict, environ=None) -> dict:
    """Replace keys of config with COACH_INTAKE_<KEY> environment values.

    Values are parsed as YAML scalars, so "null", "5" and "true" keep their
    types. Only keys already present in config.yaml can be overridden.
    """
    environ = os.environ if environ is None else environ
    merged = dict(config)
    for key in config:
        raw = environ.get(ENV_PREFIX + key.upper())
        if raw is not None:
            merged[key] = yaml.safe_load(raw)
    return merged


_config = apply_env_overrides(yaml.safe_load(CONFIG_PATH.read_text()))


def get_config() -> dict:
    """Return the loaded config dictionary."""
    return _config
