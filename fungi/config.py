"""
Configuration for the fungi daemon.

Precedence per key:
1) DEFAULT_CONFIG
2) runtime override (~/.fungi/tuneables.json, "fungi" section)
3) explicit env override (FUNGI_* variables)

Credentials come from TWITTER_* environment variables, falling back to the
.env file at ENV_PATH.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import fields
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from dotenv import dotenv_values

from fungi.evolution import EvolutionConfig

logger = logging.getLogger("fungi.config")

FUNGI_DIR = Path(os.environ.get("FUNGI_HOME") or (Path.home() / ".fungi"))
TUNEABLES_FILE = FUNGI_DIR / "tuneables.json"
ENV_PATH = Path(os.environ.get("FUNGI_ENV_FILE") or (FUNGI_DIR / ".env"))

CREDENTIAL_KEYS = (
    "TWITTER_BEARER_TOKEN",
    "TWITTER_API_KEY",
    "TWITTER_API_SECRET",
    "TWITTER_ACCESS_TOKEN",
    "TWITTER_ACCESS_TOKEN_SECRET",
)

DEFAULT_CONFIG: Dict[str, Any] = {
    "enabled": True,
    "mycelial_hashtag": "fungifeed",
    "candidate_limit": 30,
    "lifecycle_interval": 3600,
    "answer_interval": 180,
    "lifecycle_enabled": True,
    "answer_enabled": True,
    "history_limit": 0,
    "fitness_scorer": "constant",
    "max_message_chars": 280,
}


def _parse_bool(raw: str) -> bool:
    text = str(raw or "").strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"invalid bool: {raw!r}")


def _parse_hashtag(raw: str) -> str:
    tag = str(raw or "").strip().lstrip("#")
    if not tag:
        raise ValueError("empty hashtag")
    return tag


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value <= 0:
        raise ValueError(f"expected positive int: {raw!r}")
    return value


ENV_OVERRIDES: Dict[str, tuple] = {
    "enabled": ("FUNGI_ENABLED", _parse_bool),
    "mycelial_hashtag": ("FUNGI_HASHTAG", _parse_hashtag),
    "candidate_limit": ("FUNGI_CANDIDATE_LIMIT", _positive_int),
    "lifecycle_interval": ("FUNGI_LIFECYCLE_INTERVAL", _positive_int),
    "answer_interval": ("FUNGI_ANSWER_INTERVAL", _positive_int),
    "history_limit": ("FUNGI_HISTORY_LIMIT", int),
    "fitness_scorer": ("FUNGI_FITNESS_SCORER", lambda raw: str(raw).strip().lower()),
    "max_message_chars": ("FUNGI_MAX_MESSAGE_CHARS", _positive_int),
}


def _read_tuneables(path: Optional[Path] = None) -> Dict[str, Any]:
    target = path or TUNEABLES_FILE
    try:
        if target.exists():
            data = json.loads(target.read_text(encoding="utf-8-sig"))
            if isinstance(data, dict):
                return data
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Ignoring unreadable tuneables file %s: %s", target, exc)
    return {}


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    row = data.get(name, {})
    return dict(row) if isinstance(row, dict) else {}


def load_fungi_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load daemon config: defaults, tuneables 'fungi' section, then env overrides."""
    config = dict(DEFAULT_CONFIG)
    config.update(_section(_read_tuneables(path), "fungi"))

    for key, (env_name, parser) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            config[key] = parser(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("Ignoring invalid %s=%r: %s", env_name, raw, exc)
    return config


def load_evolution_config(path: Optional[Path] = None) -> EvolutionConfig:
    """EvolutionConfig with overrides from the tuneables 'evolution' section."""
    section = _section(_read_tuneables(path), "evolution")
    defaults = EvolutionConfig()
    kwargs: Dict[str, Any] = {}
    for f in fields(EvolutionConfig):
        if f.name not in section:
            continue
        cast: Callable[[Any], Any] = type(getattr(defaults, f.name))
        try:
            kwargs[f.name] = cast(section[f.name])
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid evolution.%s=%r", f.name, section[f.name])
    return EvolutionConfig(**kwargs)


def load_credentials(env_path: Optional[Path] = None) -> Dict[str, str]:
    """X API credentials: environment first, then the .env file."""
    target = env_path or ENV_PATH
    file_values: Dict[str, Optional[str]] = {}
    if target.exists():
        file_values = dotenv_values(target)
    creds: Dict[str, str] = {}
    for key in CREDENTIAL_KEYS:
        value = os.environ.get(key) or file_values.get(key) or ""
        creds[key] = value.strip()
    return creds
