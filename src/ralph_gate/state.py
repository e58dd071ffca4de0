"""Loop state model and record (de)serialization."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError, StateUnavailable

LOOP_STATE_SCHEMA_V1 = "ralph_gate.loop_state.v1"

DEFAULT_MAX_ITERATIONS = 20
DEFAULT_COMPLETION_TOKEN = "DONE"
DEFAULT_LOOP_ID = "default"

EXIT_COMPLETED = "completed"
EXIT_BUDGET_EXHAUSTED = "budget_exhausted"
EXIT_CANCELLED = "cancelled"

_LOOP_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string with offset."""
    return datetime.now(timezone.utc).isoformat()


def validate_loop_id(loop_id: str) -> str:
    """Return ``loop_id`` if it is safe to use as a file stem.

    Raises:
        ConfigurationError: For empty ids, path separators, or ``..``
    """
    if not isinstance(loop_id, str) or not _LOOP_ID_PATTERN.match(loop_id) or ".." in loop_id:
        raise ConfigurationError(
            f"Invalid loop id: {loop_id!r}. Use letters, digits, '.', '_' or '-' "
            "(max 128 characters, must start with a letter or digit)."
        )
    return loop_id


def completion_marker(token: str) -> str:
    """Return the literal text the agent must print to finish a loop.

    Args:
        token: Completion token chosen at loop start

    Returns:
        str: ``<promise>{token}</promise>``, matched verbatim

    Example:
        >>> completion_marker("DONE")
        '<promise>DONE</promise>'
    """
    return f"<promise>{token}</promise>"


@dataclass(frozen=True)
class LoopConfig:
    """Configuration frozen at loop start."""

    original_task: str
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    completion_token: str = DEFAULT_COMPLETION_TOKEN

    def validate(self) -> "LoopConfig":
        """Raise ConfigurationError unless every field is usable."""
        if isinstance(self.max_iterations, bool) or not isinstance(self.max_iterations, int):
            raise ConfigurationError(
                f"max_iterations must be an integer, got {self.max_iterations!r}"
            )
        if self.max_iterations <= 0:
            raise ConfigurationError(
                f"max_iterations must be positive, got {self.max_iterations}"
            )
        if not isinstance(self.completion_token, str) or not self.completion_token:
            raise ConfigurationError("completion_token must be a non-empty string")
        if not isinstance(self.original_task, str) or not self.original_task.strip():
            raise ConfigurationError("original_task must be a non-empty string")
        return self

    @property
    def marker(self) -> str:
        return completion_marker(self.completion_token)


@dataclass
class LoopState:
    """Persisted state of one loop instance.

    Attributes:
        loop_id: Store key for this loop
        config: Start-time configuration; None only for records that lost it
        active: Whether the controller may still force another turn
        iteration: Continuation cycles counted so far
        session_id: Host session bound on the first evaluation that reports one
        exit_reason: completed | budget_exhausted | cancelled, once inactive
        history: Newest-last audit entries of evaluations and cancels
    """

    loop_id: str
    config: Optional[LoopConfig]
    active: bool = False
    iteration: int = 0
    session_id: str = ""
    started_at: str = ""
    updated_at: str = ""
    ended_at: str = ""
    exit_reason: str = ""
    history: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def started(cls, loop_id: str, config: LoopConfig) -> "LoopState":
        now = utc_now_iso()
        return cls(
            loop_id=validate_loop_id(loop_id),
            config=config.validate(),
            active=True,
            iteration=0,
            started_at=now,
            updated_at=now,
        )

    def deactivate(self, reason: str) -> None:
        self.active = False
        self.exit_reason = reason
        self.ended_at = utc_now_iso()

    def record(self, outcome: str, reason: str, limit: int) -> None:
        """Append an audit entry, keeping only the newest ``limit`` entries."""
        now = utc_now_iso()
        self.updated_at = now
        self.history.append(
            {
                "iteration": self.iteration,
                "outcome": outcome,
                "reason": reason,
                "at": now,
            }
        )
        if limit > 0 and len(self.history) > limit:
            del self.history[: len(self.history) - limit]

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "_schema": LOOP_STATE_SCHEMA_V1,
            "loop_id": self.loop_id,
            "active": self.active,
            "iteration": self.iteration,
            "session_id": self.session_id,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "ended_at": self.ended_at,
            "exit_reason": self.exit_reason,
            "history": list(self.history),
        }
        if self.config is not None:
            payload["config"] = {
                "original_task": self.config.original_task,
                "max_iterations": self.config.max_iterations,
                "completion_token": self.config.completion_token,
            }
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "LoopState":
        """Build a LoopState from a stored record.

        Raises:
            StateUnavailable: If the record does not match the v1 schema
        """
        errors = validate_state_payload(payload)
        if errors:
            raise StateUnavailable(f"Invalid loop state record: {'; '.join(errors)}")

        config: Optional[LoopConfig] = None
        raw_config = payload.get("config")
        if isinstance(raw_config, dict):
            try:
                config = LoopConfig(
                    original_task=raw_config.get("original_task"),
                    max_iterations=raw_config.get("max_iterations"),
                    completion_token=raw_config.get("completion_token"),
                ).validate()
            except ConfigurationError:
                config = None

        history = [h for h in payload.get("history") or [] if isinstance(h, dict)]
        return cls(
            loop_id=payload["loop_id"],
            config=config,
            active=payload["active"],
            iteration=payload["iteration"],
            session_id=str(payload.get("session_id") or ""),
            started_at=str(payload.get("started_at") or ""),
            updated_at=str(payload.get("updated_at") or ""),
            ended_at=str(payload.get("ended_at") or ""),
            exit_reason=str(payload.get("exit_reason") or ""),
            history=history,
        )


def validate_state_payload(payload: Any) -> List[str]:
    """Check a raw loop record before it is turned into a ``LoopState``.

    Only the fields the controller depends on are checked. The nested
    config is validated separately, since a record with a bad config is
    still readable.

    Args:
        payload: Decoded record, usually from JSON or YAML front matter

    Returns:
        List[str]: Human-readable problems, empty when the record is usable
    """
    errors: List[str] = []
    if not isinstance(payload, dict):
        return ["record must be an object"]

    if payload.get("_schema") != LOOP_STATE_SCHEMA_V1:
        errors.append(f"Invalid _schema: {payload.get('_schema')!r}")

    if not isinstance(payload.get("loop_id"), str):
        errors.append("missing loop_id string")

    if not isinstance(payload.get("active"), bool):
        errors.append("missing active bool")

    iteration = payload.get("iteration")
    if isinstance(iteration, bool) or not isinstance(iteration, int) or iteration < 0:
        errors.append("iteration must be a non-negative integer")

    history = payload.get("history", [])
    if history is not None and not isinstance(history, list):
        errors.append("history must be a list")

    config = payload.get("config")
    if config is not None and not isinstance(config, dict):
        errors.append("config must be an object")

    return errors
