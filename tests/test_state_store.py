"""Tests for loop state records and the keyed state stores."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from ralph_gate.errors import ConfigurationError, PersistenceFailure, StateUnavailable
from ralph_gate.state import (
    LOOP_STATE_SCHEMA_V1,
    LoopConfig,
    LoopState,
    completion_marker,
    validate_loop_id,
    validate_state_payload,
)
from ralph_gate.state_store import (
    JsonFileStateStore,
    MarkdownStateStore,
    MemoryStateStore,
    make_store,
)


def _state(loop_id: str = "default", task: str = "Build the thing") -> LoopState:
    return LoopState.started(
        loop_id, LoopConfig(original_task=task, max_iterations=5, completion_token="DONE")
    )


class TestLoopIds:
    @pytest.mark.parametrize("loop_id", ["default", "abc-123", "8f2c1e9a.session_1", "A"])
    def test_valid_ids(self, loop_id: str) -> None:
        assert validate_loop_id(loop_id) == loop_id

    @pytest.mark.parametrize(
        "loop_id", ["", "../x", "a/b", ".hidden", "a..b", "-dash", "x" * 129, "a b"]
    )
    def test_invalid_ids(self, loop_id: str) -> None:
        with pytest.raises(ConfigurationError):
            validate_loop_id(loop_id)


class TestLoopState:
    def test_started_state(self) -> None:
        state = _state()
        assert state.active is True
        assert state.iteration == 0
        assert state.started_at
        assert state.history == []

    def test_record_from_other_schema_is_rejected(self) -> None:
        payload = _state().to_dict()
        payload["_schema"] = "something.else"

        with pytest.raises(StateUnavailable):
            LoopState.from_dict(payload)

    def test_negative_iteration_is_rejected(self) -> None:
        payload = _state().to_dict()
        payload["iteration"] = -1

        errors = validate_state_payload(payload)

        assert "iteration must be a non-negative integer" in errors

    def test_invalid_config_is_dropped(self) -> None:
        payload = _state().to_dict()
        payload["config"]["max_iterations"] = 0

        state = LoopState.from_dict(payload)

        assert state.config is None
        assert state.active is True

    def test_deactivate_sets_exit_fields(self) -> None:
        state = _state()
        state.deactivate("cancelled")
        assert state.active is False
        assert state.exit_reason == "cancelled"
        assert state.ended_at


class TestMemoryStore:
    def test_missing_loop_is_none(self) -> None:
        assert MemoryStateStore().load("default") is None

    def test_loaded_state_is_a_copy(self) -> None:
        store = MemoryStateStore()
        store.save(_state())

        loaded = store.load("default")
        loaded.iteration = 4
        loaded.history.append({"iteration": 4})

        again = store.load("default")
        assert again.iteration == 0
        assert again.history == []


class TestJsonFileStore:
    def test_writes_one_file_per_loop(self, tmp_path: Path) -> None:
        store = JsonFileStateStore(tmp_path / "gate")
        store.save(_state("a"))
        store.save(_state("b"))

        assert sorted(p.name for p in (tmp_path / "gate").glob("*.json")) == ["a.json", "b.json"]
        payload = json.loads((tmp_path / "gate" / "a.json").read_text(encoding="utf-8"))
        assert payload["_schema"] == LOOP_STATE_SCHEMA_V1
        assert payload["config"]["completion_token"] == "DONE"

    def test_load_survives_new_instance(self, tmp_path: Path) -> None:
        JsonFileStateStore(tmp_path).save(_state())

        state = JsonFileStateStore(tmp_path).load("default")

        assert state is not None
        assert state.config.original_task == "Build the thing"

    def test_missing_file_is_none(self, tmp_path: Path) -> None:
        assert JsonFileStateStore(tmp_path).load("default") is None

    def test_corrupt_file_is_unavailable(self, tmp_path: Path) -> None:
        (tmp_path / "default.json").write_text("[]", encoding="utf-8")

        with pytest.raises(StateUnavailable):
            JsonFileStateStore(tmp_path).load("default")

    def test_record_for_other_loop_is_unavailable(self, tmp_path: Path) -> None:
        store = JsonFileStateStore(tmp_path)
        store.save(_state("other"))
        (tmp_path / "other.json").rename(tmp_path / "default.json")

        with pytest.raises(StateUnavailable):
            store.load("default")

    def test_unwritable_directory_raises_persistence_failure(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("", encoding="utf-8")

        with pytest.raises(PersistenceFailure):
            JsonFileStateStore(blocker / "gate").save(_state())

    def test_lock_creates_lock_file(self, tmp_path: Path) -> None:
        store = JsonFileStateStore(tmp_path)

        with store.lock("default"):
            assert (tmp_path / "default.lock").exists()

    def test_lock_degrades_when_directory_unusable(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        store = JsonFileStateStore(blocker / "gate")

        entered = False
        with store.lock("default"):
            entered = True
        assert entered


class TestMarkdownStore:
    def test_front_matter_layout(self, tmp_path: Path) -> None:
        store = MarkdownStateStore(tmp_path)
        store.save(_state(task="Fix the build\n\nThen run the tests."))

        text = (tmp_path / "default.local.md").read_text(encoding="utf-8")
        assert text.startswith("---\n")
        _, front, body = text.split("---\n", 2)
        meta = yaml.safe_load(front)
        assert meta["active"] is True
        assert meta["iteration"] == 0
        assert meta["max_iterations"] == 5
        assert meta["completion_promise"] == "DONE"
        assert body == "\nFix the build\n\nThen run the tests.\n"

    def test_reload_keeps_task_and_history(self, tmp_path: Path) -> None:
        store = MarkdownStateStore(tmp_path)
        state = _state(task="Line one\n---\nLine three")
        state.iteration = 2
        state.record("continue", "Ralph loop iteration 2/5", limit=10)
        store.save(state)

        loaded = store.load("default")

        assert loaded.config.original_task == "Line one\n---\nLine three"
        assert loaded.iteration == 2
        assert loaded.history[0]["outcome"] == "continue"
        assert loaded.started_at == state.started_at

    def test_reads_plugin_written_file(self, tmp_path: Path) -> None:
        (tmp_path / "default.local.md").write_text(
            '---\nactive: true\niteration: 3\nmax_iterations: 20\n'
            'completion_promise: "COMPLETE"\nstarted_at: "2026-01-13T10:00:00Z"\n---\n\n'
            "Build a todo API\n",
            encoding="utf-8",
        )

        state = MarkdownStateStore(tmp_path).load("default")

        assert state.active is True
        assert state.iteration == 3
        assert state.config.completion_token == "COMPLETE"
        assert state.config.original_task == "Build a todo API"

    def test_unquoted_timestamps_stay_iso_strings(self, tmp_path: Path) -> None:
        (tmp_path / "default.local.md").write_text(
            "---\nactive: true\niteration: 1\nmax_iterations: 20\n"
            "completion_promise: DONE\nstarted_at: 2026-01-13T10:00:00Z\n---\n\n"
            "Build a todo API\n",
            encoding="utf-8",
        )
        store = MarkdownStateStore(tmp_path)

        state = store.load("default")
        assert state.started_at == "2026-01-13T10:00:00+00:00"

        store.save(state)
        text = (tmp_path / "default.local.md").read_text(encoding="utf-8")
        meta = yaml.safe_load(text.split("---\n", 2)[1])
        assert meta["started_at"] == "2026-01-13T10:00:00+00:00"

    def test_missing_front_matter_is_unavailable(self, tmp_path: Path) -> None:
        (tmp_path / "default.local.md").write_text("just a task\n", encoding="utf-8")

        with pytest.raises(StateUnavailable):
            MarkdownStateStore(tmp_path).load("default")

    def test_invalid_yaml_is_unavailable(self, tmp_path: Path) -> None:
        (tmp_path / "default.local.md").write_text(
            "---\nactive: [unclosed\n---\n\ntask\n", encoding="utf-8"
        )

        with pytest.raises(StateUnavailable):
            MarkdownStateStore(tmp_path).load("default")


def test_make_store(tmp_path: Path) -> None:
    assert isinstance(make_store("json", tmp_path), JsonFileStateStore)
    assert isinstance(make_store(" Markdown ", tmp_path), MarkdownStateStore)
    with pytest.raises(ConfigurationError):
        make_store("sqlite", tmp_path)


def test_completion_marker() -> None:
    assert completion_marker("DONE") == "<promise>DONE</promise>"
    assert LoopConfig(original_task="t", completion_token="Ship It").marker == (
        "<promise>Ship It</promise>"
    )
