"""Tests for the Stop hook adapter."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from ralph_gate.controller import Decision, DecisionKind, LoopController
from ralph_gate.errors import MalformedInput
from ralph_gate.hook import parse_hook_input, render_decision, run_stop_hook
from ralph_gate.state_store import JsonFileStateStore, MemoryStateStore


@pytest.fixture
def controller() -> LoopController:
    return LoopController(MemoryStateStore())


def _payload(**fields) -> str:
    base = {"session_id": "s-1", "hook_event_name": "Stop", "stop_hook_active": False}
    base.update(fields)
    return json.dumps(base)


class TestParseHookInput:
    def test_object(self) -> None:
        assert parse_hook_input(b'{"session_id": "abc"}') == {"session_id": "abc"}

    def test_empty_input(self) -> None:
        assert parse_hook_input(None) == {}
        assert parse_hook_input("  \n") == {}

    @pytest.mark.parametrize("raw", [b"\xff\xfe", "{nope", "[1, 2]"])
    def test_malformed(self, raw) -> None:
        with pytest.raises(MalformedInput):
            parse_hook_input(raw)


class TestJsonProtocol:
    def test_no_loop_allows_with_empty_object(self, controller: LoopController) -> None:
        result = run_stop_hook(controller, _payload(last_assistant_message="bye"))

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {}

    def test_block_carries_continuation(self, controller: LoopController) -> None:
        controller.start("Migrate the schema", max_iterations=5)

        result = run_stop_hook(controller, _payload(last_assistant_message="halfway"))

        assert result.exit_code == 0
        body = json.loads(result.stdout)
        assert body["decision"] == "block"
        assert "Migrate the schema" in body["reason"]
        assert "<promise>DONE</promise>" in body["reason"]
        assert body["systemMessage"] == "Ralph loop iteration 1/5"

    def test_completion_allows_with_message(self, controller: LoopController) -> None:
        controller.start("Task", max_iterations=5)

        result = run_stop_hook(
            controller, _payload(last_assistant_message="<promise>DONE</promise>")
        )

        body = json.loads(result.stdout)
        assert "decision" not in body
        assert "completed" in body["systemMessage"]

    def test_session_is_bound_from_payload(self, controller: LoopController) -> None:
        controller.start("Task", max_iterations=5)
        run_stop_hook(controller, _payload(session_id="s-1"))

        result = run_stop_hook(controller, _payload(session_id="s-2"))

        assert "decision" not in json.loads(result.stdout)
        assert controller.status().session_id == "s-1"
        assert controller.status().iteration == 1

    def test_other_session_gets_no_message(self, controller: LoopController) -> None:
        controller.start("Task", max_iterations=5)
        run_stop_hook(controller, _payload(session_id="s-1"))

        result = run_stop_hook(controller, _payload(session_id="s-2"))

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {}

    def test_transcript_file_is_searched(self, controller: LoopController, tmp_path: Path) -> None:
        controller.start("Task", max_iterations=5)
        transcript = tmp_path / "session.jsonl"
        transcript.write_text(
            json.dumps(
                {
                    "type": "assistant",
                    "message": {
                        "role": "assistant",
                        "content": [{"type": "text", "text": "Done. <promise>DONE</promise>"}],
                    },
                }
            )
            + "\n",
            encoding="utf-8",
        )

        run_stop_hook(controller, _payload(transcript_path=str(transcript)))

        assert controller.status().exit_reason == "completed"

    def test_malformed_input_counts_as_empty_output(self, controller: LoopController) -> None:
        controller.start("Task", max_iterations=5)

        result = run_stop_hook(controller, b"\x00not json")

        assert json.loads(result.stdout)["decision"] == "block"

    def test_invalid_loop_id_allows(self, controller: LoopController) -> None:
        result = run_stop_hook(controller, _payload(), loop_id="../etc")

        assert result.exit_code == 0
        assert "decision" not in json.loads(result.stdout)

    def test_unreadable_state_allows(self, tmp_path: Path) -> None:
        (tmp_path / "default.json").write_text("garbage", encoding="utf-8")
        controller = LoopController(JsonFileStateStore(tmp_path))

        result = run_stop_hook(controller, _payload(last_assistant_message="x"))

        assert result.exit_code == 0
        assert "decision" not in json.loads(result.stdout)


class TestExitCodeProtocol:
    def test_block_exits_2_with_payload_on_stderr(self, controller: LoopController) -> None:
        controller.start("Write docs", max_iterations=3)

        result = run_stop_hook(controller, _payload(), protocol="exit-code")

        assert result.exit_code == 2
        assert "Write docs" in result.stderr
        assert result.stdout == ""

    def test_allow_exits_0(self, controller: LoopController) -> None:
        result = run_stop_hook(controller, _payload(), protocol="exit-code")

        assert result.exit_code == 0
        assert result.stderr == ""


class TestPersistenceWarning:
    def _unsaved(self, kind: DecisionKind) -> Decision:
        return Decision(
            kind=kind,
            reason="Ralph loop iteration 2/5",
            payload="keep going",
            outcome="continue" if kind is DecisionKind.BLOCK else "completed",
            iteration=2,
            max_iterations=5,
            persisted=False,
            warning="Cannot write state.json: disk full",
        )

    def test_json_block_reports_warning_to_user_only(self) -> None:
        result = render_decision(self._unsaved(DecisionKind.BLOCK), "json")

        body = json.loads(result.stdout)
        assert body["reason"] == "keep going"
        assert "disk full" in body["systemMessage"]

    def test_exit_code_block_keeps_warning_off_stderr(self) -> None:
        result = render_decision(self._unsaved(DecisionKind.BLOCK), "exit-code")

        assert result.exit_code == 2
        assert result.stderr == "keep going"
        assert "disk full" in result.stdout

    def test_exit_code_allow_warns_on_stderr(self) -> None:
        result = render_decision(self._unsaved(DecisionKind.ALLOW), "exit-code")

        assert result.exit_code == 0
        assert "disk full" in result.stderr
