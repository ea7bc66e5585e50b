"""Centralised configuration for the code intelligence engine.

Load order (later sources override earlier ones):
  1. Built-in defaults
  2. ~/.codeintel/config.json
  3. .env file (via python-dotenv)
  4. Real environment variables

Nothing here holds engine state: :func:`load_settings` returns an immutable
:class:`EngineSettings` that is injected into each engine instance.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path

from dotenv import load_dotenv

from codeintel.models import CompletionLevel

# Load .env first so real env vars still win over it
load_dotenv()

# ── defaults ──────────────────────────────────────────────────────────
_DEFAULTS = {
    "base_url": "http://127.0.0.1:1234/v1",
    "model_name": "",  # Empty means use the loaded model in the backend
    "reasoning_model_name": "",  # Empty means use model_name
    "model_provider": "openai",
    "api_key": "lm-studio",
    "oracle": "openai",  # "openai" (reports likelihood) or "chat" (LangChain)
    "embedding_model": "",  # Empty means use default (all-MiniLM-L6-v2)
    "index_dir": "",  # Empty means ~/.codeintel/index
    "line_budget_chars": "2000",
    "block_budget_chars": "6000",
    "component_budget_chars": "12000",
    "feature_budget_chars": "24000",
    "line_deadline": "0.8",
    "block_deadline": "3",
    "component_deadline": "15",
    "feature_deadline": "60",
    "search_deadline": "2",
    "embed_timeout": "30",
    "debounce_seconds": "0.3",
    "index_workers": "2",
    "top_k": "8",
    "context_window_lines": "20",
    "ann_threshold": "20000",
    "hnsw_m": "32",
    "hnsw_ef_search": "64",
    "max_plan_targets": "8",
    "history_size": "20",
}

_ENV_MAP = {
    "base_url": "LLM_BASE_URL",
    "model_name": "LLM_MODEL_NAME",
    "reasoning_model_name": "LLM_REASONING_MODEL_NAME",
    "model_provider": "LLM_MODEL_PROVIDER",
    "api_key": "LLM_API_KEY",
    "oracle": "CODEINTEL_ORACLE",
    "embedding_model": "EMBEDDING_MODEL",
    "index_dir": "CODEINTEL_INDEX_DIR",
    "line_budget_chars": "LINE_BUDGET_CHARS",
    "block_budget_chars": "BLOCK_BUDGET_CHARS",
    "component_budget_chars": "COMPONENT_BUDGET_CHARS",
    "feature_budget_chars": "FEATURE_BUDGET_CHARS",
    "line_deadline": "LINE_DEADLINE",
    "block_deadline": "BLOCK_DEADLINE",
    "component_deadline": "COMPONENT_DEADLINE",
    "feature_deadline": "FEATURE_DEADLINE",
    "search_deadline": "SEARCH_DEADLINE",
    "embed_timeout": "EMBED_TIMEOUT",
    "debounce_seconds": "DEBOUNCE_SECONDS",
    "index_workers": "INDEX_WORKERS",
    "top_k": "CONTEXT_TOP_K",
    "context_window_lines": "CONTEXT_WINDOW_LINES",
    "ann_threshold": "ANN_THRESHOLD",
    "hnsw_m": "HNSW_M",
    "hnsw_ef_search": "HNSW_EF_SEARCH",
    "max_plan_targets": "MAX_PLAN_TARGETS",
    "history_size": "HISTORY_SIZE",
}


# ── data directory (configurable via CODEINTEL_DATA_DIR) ──────────────
def config_dir() -> Path:
    """Return the data directory, respecting CODEINTEL_DATA_DIR env var."""
    env_dir = os.environ.get("CODEINTEL_DATA_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".codeintel"


def config_path() -> Path:
    """Return the canonical path to ``~/.codeintel/config.json``."""
    return config_dir() / "config.json"


def _load_file_config() -> dict:
    path = config_path()
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def _get(key: str, file_cfg: dict | None = None) -> str:
    """Return a config value using the load-order described above."""
    # 4) env var  (highest priority)
    env_name = _ENV_MAP.get(key)
    if env_name:
        env_val = os.getenv(env_name)
        if env_val:  # non-empty string
            return env_val

    # 2) ~/.codeintel/config.json
    if file_cfg is None:
        file_cfg = _load_file_config()
    val = file_cfg.get(key)
    if val is not None and str(val):
        return str(val)

    # 1) built-in default
    return _DEFAULTS[key]


def save_config(settings: dict[str, str]) -> Path:
    """Write *settings* to ``~/.codeintel/config.json``.

    Creates the data directory if it doesn't exist.
    Returns the path written to.
    """
    d = config_dir()
    d.mkdir(parents=True, exist_ok=True)
    path = config_path()
    path.write_text(json.dumps(settings, indent=2) + "\n", encoding="utf-8")
    return path


def set_config_value(key: str, value: str) -> Path:
    """Store one setting in ``config.json``, keeping the others.

    Raises:
        KeyError: if *key* is not a known setting.
    """
    if key not in _DEFAULTS:
        raise KeyError(key)
    settings = _load_file_config()
    settings[key] = value
    return save_config(settings)


# ── settings ──────────────────────────────────────────────────────────


def _default_budgets() -> dict[CompletionLevel, int]:
    return {
        CompletionLevel.LINE: 2000,
        CompletionLevel.BLOCK: 6000,
        CompletionLevel.COMPONENT: 12000,
        CompletionLevel.FEATURE: 24000,
    }


def _default_deadlines() -> dict[CompletionLevel, float]:
    return {
        CompletionLevel.LINE: 0.8,
        CompletionLevel.BLOCK: 3.0,
        CompletionLevel.COMPONENT: 15.0,
        CompletionLevel.FEATURE: 60.0,
    }


@dataclass(frozen=True)
class EngineSettings:
    """Immutable settings injected into an engine instance."""

    index_dir: Path
    base_url: str = _DEFAULTS["base_url"]
    model_name: str = ""
    reasoning_model_name: str = ""
    model_provider: str = "openai"
    api_key: str = "lm-studio"
    oracle: str = "openai"
    embedding_model: str = ""
    budgets: dict[CompletionLevel, int] = field(default_factory=_default_budgets)
    deadlines: dict[CompletionLevel, float] = field(
        default_factory=_default_deadlines
    )
    search_deadline: float = 2.0
    embed_timeout: float = 30.0
    debounce_seconds: float = 0.3
    index_workers: int = 2
    top_k: int = 8
    context_window_lines: int = 20
    ann_threshold: int = 20000
    hnsw_m: int = 32
    hnsw_ef_search: int = 64
    max_plan_targets: int = 8
    history_size: int = 20

    def model_for(self, model_type: str = "instruction") -> str:
        """Model name for a prompt's model type.

        The reasoning model is used when requested and set; otherwise the
        instruction model. Empty means the backend's currently loaded model.
        """
        if model_type == "reasoning" and self.reasoning_model_name:
            return self.reasoning_model_name
        return self.model_name

    def budget_for(self, level: CompletionLevel) -> int:
        return self.budgets[level]

    def deadline_for(self, level: CompletionLevel) -> float:
        return self.deadlines[level]

    def with_overrides(self, **changes) -> EngineSettings:
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


def load_settings(index_dir: str | Path | None = None) -> EngineSettings:
    """Build :class:`EngineSettings` from defaults, config file and env."""
    file_cfg = _load_file_config()

    def get(key: str) -> str:
        return _get(key, file_cfg)

    if index_dir is None:
        custom = get("index_dir")
        index_dir = Path(custom) if custom else config_dir() / "index"

    return EngineSettings(
        index_dir=Path(index_dir),
        base_url=get("base_url"),
        model_name=get("model_name"),
        reasoning_model_name=get("reasoning_model_name"),
        model_provider=get("model_provider"),
        api_key=get("api_key"),
        oracle=get("oracle").strip().lower(),
        embedding_model=get("embedding_model"),
        budgets={
            level: int(get(f"{level.value}_budget_chars"))
            for level in CompletionLevel
        },
        deadlines={
            level: float(get(f"{level.value}_deadline")) for level in CompletionLevel
        },
        search_deadline=float(get("search_deadline")),
        embed_timeout=float(get("embed_timeout")),
        debounce_seconds=float(get("debounce_seconds")),
        index_workers=max(1, int(get("index_workers"))),
        top_k=int(get("top_k")),
        context_window_lines=int(get("context_window_lines")),
        ann_threshold=int(get("ann_threshold")),
        hnsw_m=int(get("hnsw_m")),
        hnsw_ef_search=int(get("hnsw_ef_search")),
        max_plan_targets=int(get("max_plan_targets")),
        history_size=int(get("history_size")),
    )
