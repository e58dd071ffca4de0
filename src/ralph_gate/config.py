"""Configuration loading for ralph-gate.

Settings come from TOML files merged in order (``.ralph/ralph-gate.toml``,
``ralph-gate.toml``, then ``$RALPH_GATE_CONFIG``), followed by environment
overrides. Every section maps to a frozen dataclass with working defaults,
so a project with no config file behaves sensibly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

try:
    import tomllib  # py>=3.11
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore

from .errors import ConfigurationError
from .state import DEFAULT_COMPLETION_TOKEN, DEFAULT_LOOP_ID, DEFAULT_MAX_ITERATIONS
from .state_store import STORE_KINDS

HOOK_PROTOCOLS = ("json", "exit-code")
VERBOSITY_LEVELS = ("quiet", "normal", "verbose")
OUTPUT_FORMATS = ("text", "json")


# -------------------------
# Dataclasses
# -------------------------


@dataclass(frozen=True)
class LoopDefaults:
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    completion_token: str = DEFAULT_COMPLETION_TOKEN
    history_limit: int = 50


@dataclass(frozen=True)
class StateConfig:
    store: str = "json"  # json|markdown
    dir: str = ".ralph/gate"


@dataclass(frozen=True)
class HookConfig:
    protocol: str = "json"  # json|exit-code
    loop_id: str = DEFAULT_LOOP_ID


@dataclass(frozen=True)
class OutputSettings:
    verbosity: str = "normal"  # quiet|normal|verbose
    format: str = "text"  # text|json


@dataclass(frozen=True)
class LoggingConfig:
    file: str = ""


@dataclass(frozen=True)
class Config:
    loop: LoopDefaults
    state: StateConfig
    hook: HookConfig
    output: OutputSettings
    logging: LoggingConfig

    def state_dir(self, project_root: Path) -> Path:
        p = Path(self.state.dir).expanduser()
        return p if p.is_absolute() else project_root / p

    def log_file(self, project_root: Path) -> Path | None:
        if not self.logging.file:
            return None
        p = Path(self.logging.file).expanduser()
        return p if p.is_absolute() else project_root / p


# -------------------------
# Parsing helpers
# -------------------------


def _coerce_int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    raw = data.get(name, {}) or {}
    return raw if isinstance(raw, dict) else {}


def _choice(value: Any, default: str, allowed: Tuple[str, ...], key: str) -> str:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized not in allowed:
        raise ConfigurationError(
            f"Invalid {key}: {value!r}. Must be one of: {', '.join(allowed)}."
        )
    return normalized


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """Merge b into a (recursively for dicts), return new dict."""

    out: Dict[str, Any] = dict(a)
    for k, v in b.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def config_paths(project_root: Path) -> List[Path]:
    """Config files that exist, in merge order (later wins)."""

    paths: List[Path] = []

    p1 = project_root / ".ralph" / "ralph-gate.toml"
    if p1.exists():
        paths.append(p1)

    p2 = project_root / "ralph-gate.toml"
    if p2.exists():
        paths.append(p2)

    env = os.environ.get("RALPH_GATE_CONFIG")
    if env:
        p3 = Path(env)
        if not p3.is_absolute():
            p3 = (project_root / p3).resolve()
        if p3.exists():
            paths.append(p3)

    return paths


# -------------------------
# Public API
# -------------------------


def project_root() -> Path:
    """The host project directory: $CLAUDE_PROJECT_DIR, else the cwd."""
    env = os.environ.get("CLAUDE_PROJECT_DIR")
    return Path(env or os.getcwd()).resolve()


def load_config(root: Path) -> Config:
    """Load and normalize configuration for the project at ``root``.

    Reads .ralph/ralph-gate.toml, then ./ralph-gate.toml, then
    $RALPH_GATE_CONFIG, each overriding the previous. Missing files mean
    defaults. $RALPH_GATE_STATE_DIR and $RALPH_GATE_LOOP_ID override the
    file values.

    Args:
        root: Project directory the config paths are resolved against

    Returns:
        Config: Fully populated configuration

    Raises:
        ConfigurationError: For unreadable files or invalid enumerated values
    """

    data: Dict[str, Any] = {}
    for p in config_paths(root):
        data = _deep_merge(data, _load_toml(p))

    loop_raw = _section(data, "loop")
    state_raw = _section(data, "state")
    hook_raw = _section(data, "hook")
    output_raw = _section(data, "output")
    logging_raw = _section(data, "logging")

    loop = LoopDefaults(
        max_iterations=_coerce_int(loop_raw.get("max_iterations"), LoopDefaults.max_iterations),
        completion_token=str(
            loop_raw.get("completion_token", LoopDefaults.completion_token)
        ),
        history_limit=_coerce_int(loop_raw.get("history_limit"), LoopDefaults.history_limit),
    )
    if loop.max_iterations <= 0:
        raise ConfigurationError(
            f"Invalid loop.max_iterations: {loop.max_iterations}. Must be >= 1."
        )
    if loop.history_limit <= 0:
        raise ConfigurationError(
            f"Invalid loop.history_limit: {loop.history_limit}. Must be >= 1."
        )
    if not loop.completion_token:
        raise ConfigurationError("Invalid loop.completion_token: must not be empty.")

    state = StateConfig(
        store=_choice(state_raw.get("store"), StateConfig.store, STORE_KINDS, "state.store"),
        dir=os.environ.get("RALPH_GATE_STATE_DIR")
        or str(state_raw.get("dir", StateConfig.dir)),
    )

    hook = HookConfig(
        protocol=_choice(
            hook_raw.get("protocol"), HookConfig.protocol, HOOK_PROTOCOLS, "hook.protocol"
        ),
        loop_id=os.environ.get("RALPH_GATE_LOOP_ID")
        or str(hook_raw.get("loop_id", HookConfig.loop_id)),
    )

    # Output values fall back to defaults rather than failing a hook run.
    verbosity = str(output_raw.get("verbosity", OutputSettings.verbosity)).strip().lower()
    if verbosity not in VERBOSITY_LEVELS:
        verbosity = OutputSettings.verbosity
    fmt = str(output_raw.get("format", OutputSettings.format)).strip().lower()
    if fmt not in OUTPUT_FORMATS:
        fmt = OutputSettings.format

    return Config(
        loop=loop,
        state=state,
        hook=hook,
        output=OutputSettings(verbosity=verbosity, format=fmt),
        logging=LoggingConfig(file=str(logging_raw.get("file", "") or "")),
    )
