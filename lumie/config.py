from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Optional, Tuple

from .errors import CorpusLoadError

BASE_DIR = Path(__file__).resolve().parent
REPO_DIR = (BASE_DIR / "..").resolve()


@dataclass(frozen=True)
class Settings:
    """Configuration container for training data, policy knobs, and runtime limits."""
    training_files: Tuple[Path, ...]
    frontend_dir: Path
    rate_limit_window_sec: float
    rate_limit_max_requests: int
    session_ttl_sec: float
    context_ttl_sec: float
    max_recent_answers: int
    fuzzy_score_limit: float
    fuzzy_tie_margin: float
    general_intents: FrozenSet[str]
    sweep_interval_sec: float
    intent_log_path: Optional[Path]
    log_level: str
    cors_origins: Tuple[str, ...]


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and lists the training data directory.
    Dependencies: Uses os.getenv and REPO_DIR for default paths.
    Failure Modes: Non-numeric or out-of-range knob values raise ValueError.
        A missing training data directory raises CorpusLoadError.
    If Removed: The engine cannot be configured and the app fails at startup.
    Testing Notes: Verify defaults and overrides via monkeypatched environment variables.
    """
    # Resolve training data and frontend paths, then validate policy knobs.
    explicit_files = os.getenv("TRAINING_DATA_FILES", "").strip()
    if explicit_files:
        training_files = tuple(_repo_path(item.strip()) for item in explicit_files.split(",") if item.strip())
    else:
        data_dir = _repo_path(os.getenv("TRAINING_DATA_DIR") or "data/intents")
        if not data_dir.is_dir():
            raise CorpusLoadError("training data directory not found", data_dir)
        training_files = tuple(sorted(data_dir.glob("*.json")))

    frontend_dir = _repo_path(os.getenv("FRONTEND_DIR") or "frontend")

    session_ttl = _positive_float("SESSION_TTL_SEC", "3600")
    context_ttl = _positive_float("CONTEXT_TTL_SEC", "300")
    if context_ttl >= session_ttl:
        raise ValueError("CONTEXT_TTL_SEC must be smaller than SESSION_TTL_SEC")

    intent_log_path = os.getenv("INTENT_LOG_PATH", "").strip()
    general_intents = os.getenv("GENERAL_INTENTS", "greeting,farewell,thanks,None")
    cors_origins = os.getenv("CORS_ORIGINS", "*")

    return Settings(
        training_files=training_files,
        frontend_dir=frontend_dir,
        rate_limit_window_sec=_positive_float("RATE_LIMIT_WINDOW_MS", "60000") / 1000.0,
        rate_limit_max_requests=_positive_int("RATE_LIMIT_MAX_REQUESTS", "20"),
        session_ttl_sec=session_ttl,
        context_ttl_sec=context_ttl,
        max_recent_answers=_positive_int("MAX_RECENT_ANSWERS", "5"),
        fuzzy_score_limit=_unit_float("FUZZY_SCORE_LIMIT", "0.45"),
        fuzzy_tie_margin=_unit_float("FUZZY_TIE_MARGIN", "0.05"),
        general_intents=frozenset(item.strip() for item in general_intents.split(",") if item.strip()),
        sweep_interval_sec=float(os.getenv("SWEEP_INTERVAL_SEC", "600")),
        intent_log_path=_repo_path(intent_log_path) if intent_log_path else None,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        cors_origins=tuple(item.strip() for item in cors_origins.split(",") if item.strip()),
    )


def _repo_path(value: str) -> Path:
    # Relative paths are anchored at the repo root, not the working directory.
    path = Path(value).expanduser()
    return path if path.is_absolute() else REPO_DIR / path


def _positive_int(name: str, default: str) -> int:
    value = int(os.getenv(name, default))
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _positive_float(name: str, default: str) -> float:
    value = float(os.getenv(name, default))
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _unit_float(name: str, default: str) -> float:
    value = float(os.getenv(name, default))
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")
    return value
