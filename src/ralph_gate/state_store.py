"""Keyed persistence for loop state.

Every store maps a loop id to one ``LoopState`` record. ``load`` returns
None when no record exists and raises ``StateUnavailable`` when one exists
but cannot be used; ``save`` raises ``PersistenceFailure``. ``lock`` guards
one loop's read-modify-write cycle.
"""

from __future__ import annotations

import contextlib
import copy
import datetime
import fcntl
import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import yaml

from .atomic_file import atomic_write_json, atomic_write_text
from .errors import ConfigurationError, PersistenceFailure, StateUnavailable
from .state import LOOP_STATE_SCHEMA_V1, LoopState, validate_loop_id

logger = logging.getLogger(__name__)

STORE_KINDS = ("json", "markdown")


class StateStore(ABC):
    """Interface shared by all loop state stores."""

    @abstractmethod
    def load(self, loop_id: str) -> Optional[LoopState]:
        ...

    @abstractmethod
    def save(self, state: LoopState) -> None:
        ...

    @contextlib.contextmanager
    def lock(self, loop_id: str) -> Iterator[None]:
        yield


class MemoryStateStore(StateStore):
    """Process-local store. Records are copied in and out."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def load(self, loop_id: str) -> Optional[LoopState]:
        record = self._records.get(validate_loop_id(loop_id))
        if record is None:
            return None
        return LoopState.from_dict(copy.deepcopy(record))

    def save(self, state: LoopState) -> None:
        self._records[validate_loop_id(state.loop_id)] = copy.deepcopy(state.to_dict())

    @contextlib.contextmanager
    def lock(self, loop_id: str) -> Iterator[None]:
        with self._guard:
            loop_lock = self._locks.setdefault(loop_id, threading.Lock())
        with loop_lock:
            yield


class _FileStateStore(StateStore):
    """One file per loop under ``directory`` plus a sibling ``.lock`` file."""

    suffix = ""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, loop_id: str) -> Path:
        return self.directory / f"{validate_loop_id(loop_id)}{self.suffix}"

    def load(self, loop_id: str) -> Optional[LoopState]:
        path = self.path_for(loop_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise StateUnavailable(f"Cannot read {path}: {e}") from e

        state = LoopState.from_dict(self._decode(text, loop_id, path))
        if state.loop_id != loop_id:
            raise StateUnavailable(
                f"{path} holds loop {state.loop_id!r}, expected {loop_id!r}"
            )
        return state

    def save(self, state: LoopState) -> None:
        path = self.path_for(state.loop_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._write(path, state)
        except (OSError, TypeError, yaml.YAMLError) as e:
            raise PersistenceFailure(f"Cannot write {path}: {e}") from e

    @contextlib.contextmanager
    def lock(self, loop_id: str) -> Iterator[None]:
        lock_path = self.directory / f"{validate_loop_id(loop_id)}.lock"
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(lock_path, "a")
        except OSError as e:
            logger.warning("Proceeding without lock for loop %r: %s", loop_id, e)
            yield
            return

        with handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            except OSError as e:
                logger.warning("Proceeding without lock for loop %r: %s", loop_id, e)
                yield
                return
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _decode(self, text: str, loop_id: str, path: Path) -> Dict[str, Any]:
        raise NotImplementedError

    def _write(self, path: Path, state: LoopState) -> None:
        raise NotImplementedError


class JsonFileStateStore(_FileStateStore):
    """``<dir>/<loop_id>.json`` records."""

    suffix = ".json"

    def _decode(self, text: str, loop_id: str, path: Path) -> Dict[str, Any]:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise StateUnavailable(f"Invalid JSON in {path}: {e}") from e
        if not isinstance(payload, dict):
            raise StateUnavailable(f"Expected object at {path}")
        return payload

    def _write(self, path: Path, state: LoopState) -> None:
        atomic_write_json(path, state.to_dict())


_FRONT_MATTER = re.compile(r"\A---\n(.*?)\n---\n?(.*)\Z", re.DOTALL)


def _isoformat_dates(value: Any) -> Any:
    """Turn YAML-parsed dates back into ISO strings, recursing into containers.

    Unquoted timestamps such as ``started_at: 2026-01-13T10:00:00Z`` load as
    ``datetime`` objects; records keep them as text.
    """
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _isoformat_dates(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_isoformat_dates(v) for v in value]
    return value


class MarkdownStateStore(_FileStateStore):
    """``<dir>/<loop_id>.local.md`` records.

    Same layout as the ralph-wiggum plugin's ``ralph-loop.local.md``: YAML
    front matter with the loop fields, then the original task as the body::

        ---
        active: true
        iteration: 1
        max_iterations: 20
        completion_promise: DONE
        ---

        Build the parser.

    Files written by the plugin itself (no ``_schema`` or ``loop_id``) are
    accepted and keyed by the requested loop id.
    """

    suffix = ".local.md"

    def _decode(self, text: str, loop_id: str, path: Path) -> Dict[str, Any]:
        match = _FRONT_MATTER.match(text)
        if not match:
            raise StateUnavailable(f"No front matter in {path}")
        try:
            meta = yaml.safe_load(match.group(1))
        except yaml.YAMLError as e:
            raise StateUnavailable(f"Invalid YAML front matter in {path}: {e}") from e
        if not isinstance(meta, dict):
            raise StateUnavailable(f"Front matter in {path} must be a mapping")

        body = match.group(2)
        if body.startswith("\n"):
            body = body[1:]
        if body.endswith("\n"):
            body = body[:-1]

        payload = _isoformat_dates(dict(meta))
        payload.setdefault("_schema", LOOP_STATE_SCHEMA_V1)
        payload.setdefault("loop_id", loop_id)
        payload.setdefault("history", [])
        payload["config"] = {
            "original_task": body,
            "max_iterations": meta.get("max_iterations"),
            "completion_token": meta.get("completion_promise"),
        }
        for key in ("max_iterations", "completion_promise"):
            payload.pop(key, None)
        return payload

    def _write(self, path: Path, state: LoopState) -> None:
        payload = state.to_dict()
        config = payload.pop("config", None) or {}
        meta: Dict[str, Any] = {
            "active": payload.pop("active"),
            "iteration": payload.pop("iteration"),
            "max_iterations": config.get("max_iterations"),
            "completion_promise": config.get("completion_token"),
        }
        meta.update(payload)
        front = yaml.safe_dump(meta, default_flow_style=False, sort_keys=False)
        task = config.get("original_task") or ""
        atomic_write_text(path, f"---\n{front}---\n\n{task}\n")


def make_store(kind: str, directory: Path) -> StateStore:
    """Return the file store named by ``kind`` rooted at ``directory``."""
    normalized = (kind or "").strip().lower()
    if normalized == "json":
        return JsonFileStateStore(directory)
    if normalized == "markdown":
        return MarkdownStateStore(directory)
    raise ConfigurationError(
        f"Invalid state store: {kind!r}. Must be one of: {', '.join(STORE_KINDS)}."
    )
