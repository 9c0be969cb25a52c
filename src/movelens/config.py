"""Layered settings for movelens.

Each source overrides the one listed before it:

* built-in dataclass defaults
* ``~/.movelens/config.yaml``, shared across projects (models only, never secrets)
* ``movelens.yaml`` beside the project's ``.movelens.db``
* ``MOVELENS_GENERATION_MODEL``, ``MOVELENS_EMBEDDING_MODEL``,
  ``MOVELENS_NETWORK`` and ``MOVELENS_LOG_LEVEL``

Command-line flags are applied afterwards by the CLI. YAML is parsed with
``yaml.safe_load`` only.
"""

from __future__ import annotations

import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".movelens"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "movelens.yaml"

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["embedding", "generation", "retrieval", "indexing", "pipeline", "logging"]
)

NETWORKS: frozenset[str] = frozenset(["mainnet", "testnet", "devnet", "localnet"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (movelens.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536


@dataclass
class GenerationCfg:
    """Chat-completion configuration (movelens.yaml: generation:)."""

    model: str = "openai/gpt-4o-mini"
    num_retries: int = 3


@dataclass
class RetrievalCfg:
    """Chat retrieval configuration (movelens.yaml: retrieval:).

    Attributes:
        default_limit: Nearest-neighbour limit when a chat is not analysis-scoped.
        history_limit: Number of most recent chat messages replayed to the model.
        related_modules: Sibling documents used as context for a module explanation.
    """

    default_limit: int = 20
    history_limit: int = 10
    related_modules: int = 3


@dataclass
class IndexingCfg:
    """Bulk reindex pacing (movelens.yaml: indexing:)."""

    batch_size: int = 10
    batch_pause: float = 1.0


@dataclass
class PipelineCfg:
    """Post-analysis pipeline settings (movelens.yaml: pipeline:)."""

    network: str = "mainnet"
    pace_every: int = 5
    pace_delay: float = 0.1


@dataclass
class LoggingCfg:
    level: str = "INFO"


@dataclass
class MoveLensConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    generation: GenerationCfg = field(default_factory=GenerationCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    indexing: IndexingCfg = field(default_factory=IndexingCfg)
    pipeline: PipelineCfg = field(default_factory=PipelineCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

# Trailing name segments that mark a credential. "tokens" stays allowed so
# max_tokens style limits are not rejected.
_SECRET_SUFFIXES: frozenset[str] = frozenset(
    ["token", "secret", "password", "passwd", "credential", "credentials"]
)


def _is_secret_name(name: str) -> bool:
    normalized = name.lower().replace("-", "_")
    if "apikey" in normalized.replace("_", "") or "api_secret" in normalized:
        return True
    return normalized.split("_")[-1] in _SECRET_SUFFIXES


def _iter_key_paths(data: dict[str, Any], prefix: str = ""):
    for key, value in data.items():
        dotted = f"{prefix}.{key}" if prefix else str(key)
        yield str(key), dotted
        if isinstance(value, dict):
            yield from _iter_key_paths(value, dotted)


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Reject credentials in the shared ~/.movelens config.

    Provider keys are read by litellm from the environment, so a key name
    like ``generation.api_key`` in the global file is always a mistake.
    """
    for key, dotted in _iter_key_paths(data):
        if _is_secret_name(key):
            env_name = key.upper().replace("-", "_")
            raise ConfigError(
                f"{source}: forbidden key '{dotted}' in global config.\n"
                f"  Provider credentials are read from the environment; delete the "
                f"entry and run: export {env_name}=<value>"
            )


def _validate_network(network: str) -> None:
    if network not in NETWORKS:
        raise ConfigError(
            f"pipeline.network must be one of {sorted(NETWORKS)}, got '{network}'"
        )


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    unknown = [key for key in data if key not in _KNOWN_SECTIONS]
    for key in unknown:
        warnings.warn(
            f"{source.name}: section '{key}' is not used by movelens and was skipped",
            UserWarning,
            stacklevel=3,
        )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _merge_layer(lower: dict[str, Any], upper: dict[str, Any]) -> dict[str, Any]:
    """Overlay *upper* on *lower*; nested sections merge key by key."""
    merged = {**lower}
    for section, value in upper.items():
        below = merged.get(section)
        if isinstance(below, dict) and isinstance(value, dict):
            merged[section] = _merge_layer(below, value)
        else:
            merged[section] = value
    return merged


def _cfg_from_dict(data: dict[str, Any]) -> MoveLensConfig:
    """Build a *MoveLensConfig* from a merged raw YAML dict."""
    cfg = MoveLensConfig()

    if "embedding" in data:
        e = data["embedding"]
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            dimensions=int(e.get("dimensions", cfg.embedding.dimensions)),
        )

    if "generation" in data:
        g = data["generation"]
        cfg.generation = GenerationCfg(
            model=str(g.get("model", cfg.generation.model)),
            num_retries=int(g.get("num_retries", cfg.generation.num_retries)),
        )

    if "retrieval" in data:
        r = data["retrieval"]
        cfg.retrieval = RetrievalCfg(
            default_limit=int(r.get("default_limit", cfg.retrieval.default_limit)),
            history_limit=int(r.get("history_limit", cfg.retrieval.history_limit)),
            related_modules=int(r.get("related_modules", cfg.retrieval.related_modules)),
        )

    if "indexing" in data:
        i = data["indexing"]
        cfg.indexing = IndexingCfg(
            batch_size=int(i.get("batch_size", cfg.indexing.batch_size)),
            batch_pause=float(i.get("batch_pause", cfg.indexing.batch_pause)),
        )

    if "pipeline" in data:
        p = data["pipeline"]
        cfg.pipeline = PipelineCfg(
            network=str(p.get("network", cfg.pipeline.network)),
            pace_every=int(p.get("pace_every", cfg.pipeline.pace_every)),
            pace_delay=float(p.get("pace_delay", cfg.pipeline.pace_delay)),
        )

    if "logging" in data:
        lg = data["logging"]
        cfg.logging = LoggingCfg(level=str(lg.get("level", cfg.logging.level)).upper())

    return cfg


def _apply_env_overrides(cfg: MoveLensConfig) -> MoveLensConfig:
    """Apply MOVELENS_* environment variable overrides."""
    if model := os.environ.get("MOVELENS_GENERATION_MODEL"):
        cfg.generation.model = model
    if model := os.environ.get("MOVELENS_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if network := os.environ.get("MOVELENS_NETWORK"):
        cfg.pipeline.network = network
    if level := os.environ.get("MOVELENS_LOG_LEVEL"):
        cfg.logging.level = level.upper()
    return cfg


def _read_layer(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    return yaml.safe_load(path.read_text(encoding="utf-8")) or {}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> MoveLensConfig:
    """Resolve the effective settings for a project directory.

    The shared global file is read first and checked for credentials, then
    ``movelens.yaml`` in *project_dir* (the working directory by default) is
    overlaid on it, and finally the ``MOVELENS_*`` variables win.

    Args:
        project_dir: Where to look for *movelens.yaml*.
        global_config_path: Alternative location for the shared file.

    Raises:
        ConfigError: On a credential-like key in the shared file, or when the
            resolved ``pipeline.network`` is not one of NETWORKS.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    project_path = (project_dir if project_dir is not None else Path.cwd()) / _PROJECT_CONFIG_NAME

    shared = _read_layer(global_path)
    _check_no_api_keys(shared, global_path)
    _warn_unknown_keys(shared, global_path)

    local = _read_layer(project_path)
    _warn_unknown_keys(local, project_path)

    cfg = _apply_env_overrides(_cfg_from_dict(_merge_layer(shared, local)))
    _validate_network(cfg.pipeline.network)
    return cfg


_GLOBAL_TEMPLATE = """\
# Shared movelens defaults. Provider keys belong in the environment,
# for example: export OPENAI_API_KEY=sk-...

embedding:
  model: openai/text-embedding-3-small
  dimensions: 1536

generation:
  model: openai/gpt-4o-mini
"""


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Write the shared config template unless one is already present.

    The directory is created 0o700 and the file 0o600. An existing file is
    never rewritten.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    if not target.exists():
        target.write_text(_GLOBAL_TEMPLATE, encoding="utf-8")
        target.chmod(0o600)
    return target
