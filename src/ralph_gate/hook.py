"""Claude Code ``Stop`` hook adapter.

Translates a hook invocation (JSON on stdin) into one controller
evaluation and renders the decision in one of two wire protocols:

``json``
    Always exit 0. A block prints ``{"decision": "block", "reason": ...}``
    so the host feeds ``reason`` to the agent as its next input.
``exit-code``
    Exit 2 with the continuation prompt on stderr to block, exit 0 to allow.

Bookkeeping problems never fail the hook: the worst case is an early stop.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Union

from .controller import (
    OUTCOME_FOREIGN_SESSION,
    OUTCOME_INACTIVE,
    OUTCOME_STATE_UNAVAILABLE,
    Decision,
    DecisionKind,
    LoopController,
)
from .errors import ConfigurationError, MalformedInput
from .state import DEFAULT_LOOP_ID
from .transcript import extract_turn_output

logger = logging.getLogger(__name__)

BLOCK_EXIT_CODE = 2

# Allow outcomes that print no status line.
_SILENT_OUTCOMES = (OUTCOME_INACTIVE, OUTCOME_FOREIGN_SESSION)


@dataclass(frozen=True)
class HookResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


def parse_hook_input(raw: Union[str, bytes, None]) -> Dict[str, Any]:
    """Decode the hook payload.

    Raises:
        MalformedInput: If the payload is not UTF-8 JSON describing an object
    """
    if raw is None:
        return {}
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedInput(f"Hook input is not valid UTF-8: {e}") from e
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedInput(f"Hook input is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedInput("Hook input must be a JSON object")
    return payload


def _status_line(decision: Decision) -> str:
    if decision.blocked:
        return f"Ralph loop iteration {decision.iteration}/{decision.max_iterations}"
    return decision.reason


def render_decision(decision: Decision, protocol: str = "json") -> HookResult:
    """Encode ``decision`` for the host runtime."""
    warning = ""
    if not decision.persisted:
        warning = f"ralph-gate: loop state not saved ({decision.warning})"

    if protocol == "exit-code":
        if decision.blocked:
            # stderr goes to the agent here, so the warning stays off it.
            return HookResult(BLOCK_EXIT_CODE, stdout=warning, stderr=decision.payload)
        return HookResult(0, stderr=warning)

    if decision.kind is DecisionKind.BLOCK:
        message = _status_line(decision)
        if warning:
            message = f"{message}\n{warning}"
        body: Dict[str, Any] = {
            "decision": "block",
            "reason": decision.payload,
            "systemMessage": message,
        }
        return HookResult(0, stdout=json.dumps(body))

    lines = []
    if decision.outcome not in _SILENT_OUTCOMES and decision.reason:
        lines.append(_status_line(decision))
    if warning:
        lines.append(warning)
    body = {"systemMessage": "\n".join(lines)} if lines else {}
    return HookResult(0, stdout=json.dumps(body))


def run_stop_hook(
    controller: LoopController,
    raw_input: Union[str, bytes, None],
    loop_id: str = DEFAULT_LOOP_ID,
    protocol: str = "json",
) -> HookResult:
    """Evaluate one ``Stop`` hook invocation and encode the result."""
    try:
        hook_input = parse_hook_input(raw_input)
    except MalformedInput as e:
        logger.warning("Treating hook input as empty: %s", e)
        hook_input = {}

    session_id = hook_input.get("session_id")
    if not isinstance(session_id, str):
        session_id = None

    turn_output = extract_turn_output(hook_input)
    try:
        decision = controller.evaluate(turn_output, loop_id=loop_id, session_id=session_id)
    except ConfigurationError as e:
        logger.error("Cannot evaluate loop %r: %s", loop_id, e)
        decision = Decision(
            kind=DecisionKind.ALLOW,
            reason=str(e),
            outcome=OUTCOME_STATE_UNAVAILABLE,
        )
    return render_decision(decision, protocol)
