"""Completion-gated retry loop controller.

The host runtime calls ``LoopController.evaluate`` each time an agent turn
tries to end. The controller either lets the turn end (``ALLOW``) or forces
another one (``BLOCK``) carrying a continuation prompt, until the agent
prints ``<promise>TOKEN</promise>`` or the iteration budget runs out.

Checks run in a fixed order: inactive loop, completion marker, iteration
ceiling, then continue. Each call on an active loop writes the record once.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional, Union

from .errors import MalformedInput, PersistenceFailure, StateUnavailable
from .state import (
    DEFAULT_COMPLETION_TOKEN,
    DEFAULT_LOOP_ID,
    DEFAULT_MAX_ITERATIONS,
    EXIT_BUDGET_EXHAUSTED,
    EXIT_CANCELLED,
    EXIT_COMPLETED,
    LoopConfig,
    LoopState,
)
from .state_store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50

OUTCOME_INACTIVE = "inactive"
OUTCOME_STATE_UNAVAILABLE = "state_unavailable"
OUTCOME_FOREIGN_SESSION = "foreign_session"
OUTCOME_COMPLETED = EXIT_COMPLETED
OUTCOME_BUDGET_EXHAUSTED = EXIT_BUDGET_EXHAUSTED
OUTCOME_CONTINUE = "continue"
OUTCOME_CANCELLED = EXIT_CANCELLED


class DecisionKind(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"


@dataclass(frozen=True)
class Decision:
    """What the host should do with the turn that just ended.

    Attributes:
        kind: ALLOW lets the turn end, BLOCK forces another turn
        reason: Human-readable summary for logs and status lines
        payload: Continuation prompt for the next turn (BLOCK only)
        outcome: Which rule produced the decision (see OUTCOME_* constants)
        iteration: Iteration count after this evaluation
        max_iterations: Configured ceiling, 0 when no loop was consulted
        persisted: False when the updated state could not be written
        warning: Operator-facing detail when ``persisted`` is False
    """

    kind: DecisionKind
    reason: str = ""
    payload: str = ""
    outcome: str = OUTCOME_INACTIVE
    iteration: int = 0
    max_iterations: int = 0
    persisted: bool = True
    warning: str = ""

    @property
    def blocked(self) -> bool:
        return self.kind is DecisionKind.BLOCK

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


def _allow(outcome: str, reason: str = "", state: Optional[LoopState] = None) -> Decision:
    return Decision(
        kind=DecisionKind.ALLOW,
        reason=reason,
        outcome=outcome,
        iteration=state.iteration if state else 0,
        max_iterations=state.config.max_iterations if state and state.config else 0,
    )


def coerce_turn_output(turn_output: Union[str, bytes, None]) -> str:
    """Return the turn output as text.

    Raises:
        MalformedInput: For undecodable bytes or non-text values
    """
    if turn_output is None:
        return ""
    if isinstance(turn_output, str):
        return turn_output
    if isinstance(turn_output, (bytes, bytearray)):
        try:
            return bytes(turn_output).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedInput(f"Turn output is not valid UTF-8: {e}") from e
    raise MalformedInput(f"Turn output must be text, got {type(turn_output).__name__}")


def build_continuation_prompt(config: LoopConfig, iteration: int) -> str:
    """Text injected as the next turn's input when the loop continues."""
    return (
        f"[Ralph loop iteration {iteration}/{config.max_iterations}]\n"
        "\n"
        f"{config.original_task}\n"
        "\n"
        "The task is not finished yet. Continue working on it.\n"
        f"When it is completely done, output exactly: {config.marker}\n"
        "Only output that marker when the statement is true."
    )


class LoopController:
    """Owns start, cancel and evaluate for loops kept in ``store``."""

    def __init__(self, store: StateStore, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.store = store
        self.history_limit = history_limit

    def start(
        self,
        original_task: str,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        completion_token: str = DEFAULT_COMPLETION_TOKEN,
        loop_id: str = DEFAULT_LOOP_ID,
    ) -> LoopState:
        """Create or reset a loop.

        Raises:
            ConfigurationError: If any parameter is invalid (nothing is written)
            PersistenceFailure: If the new record cannot be written
        """
        config = LoopConfig(
            original_task=original_task,
            max_iterations=max_iterations,
            completion_token=completion_token,
        ).validate()
        state = LoopState.started(loop_id, config)
        with self.store.lock(loop_id):
            self.store.save(state)
        logger.info(
            "Loop %r started (max_iterations=%d, marker=%s)",
            loop_id,
            config.max_iterations,
            config.marker,
        )
        return state

    def cancel(self, loop_id: str = DEFAULT_LOOP_ID) -> Optional[LoopState]:
        """Force the loop inactive without counting an iteration.

        Returns the loop's record, or None when there is no readable record.

        Raises:
            PersistenceFailure: If the cancelled record cannot be written
        """
        with self.store.lock(loop_id):
            try:
                state = self.store.load(loop_id)
            except StateUnavailable as e:
                logger.warning("Cancel of loop %r found unreadable state: %s", loop_id, e)
                return None
            if state is None or not state.active:
                return state
            state.deactivate(EXIT_CANCELLED)
            state.record(OUTCOME_CANCELLED, "Cancelled by operator", self.history_limit)
            self.store.save(state)
        logger.info("Loop %r cancelled at iteration %d", loop_id, state.iteration)
        return state

    def status(self, loop_id: str = DEFAULT_LOOP_ID) -> Optional[LoopState]:
        """Return the stored record, or None when no loop was ever started.

        Raises:
            StateUnavailable: If a record exists but cannot be used
        """
        return self.store.load(loop_id)

    def evaluate(
        self,
        turn_output: Union[str, bytes, None],
        loop_id: str = DEFAULT_LOOP_ID,
        session_id: Optional[str] = None,
    ) -> Decision:
        """Decide whether the turn that produced ``turn_output`` may end."""
        try:
            text = coerce_turn_output(turn_output)
        except MalformedInput as e:
            logger.warning("Treating turn output as empty: %s", e)
            text = ""

        with self.store.lock(loop_id):
            try:
                state = self.store.load(loop_id)
            except StateUnavailable as e:
                logger.warning("Loop %r state unavailable, allowing stop: %s", loop_id, e)
                return _allow(OUTCOME_STATE_UNAVAILABLE, "Loop state unavailable")

            if state is None or not state.active:
                return _allow(OUTCOME_INACTIVE, "No active loop", state)

            if state.config is None:
                logger.warning(
                    "Loop %r is active but has no usable configuration, allowing stop",
                    loop_id,
                )
                return _allow(OUTCOME_STATE_UNAVAILABLE, "Loop configuration missing", state)

            if session_id and state.session_id and state.session_id != session_id:
                logger.info(
                    "Loop %r belongs to session %s, ignoring session %s",
                    loop_id,
                    state.session_id,
                    session_id,
                )
                return _allow(OUTCOME_FOREIGN_SESSION, "Loop belongs to another session", state)
            if session_id and not state.session_id:
                state.session_id = session_id

            decision = self._decide(state, state.config, text)
            state.record(decision.outcome, decision.reason, self.history_limit)
            return self._persist(state, decision)

    def _decide(self, state: LoopState, config: LoopConfig, text: str) -> Decision:
        if config.marker in text:
            state.deactivate(EXIT_COMPLETED)
            reason = f"Loop completed after {state.iteration} iteration(s)"
            logger.info("Loop %r: %s", state.loop_id, reason)
            return _allow(OUTCOME_COMPLETED, reason, state)

        if state.iteration < config.max_iterations:
            state.iteration += 1

        if state.iteration >= config.max_iterations:
            # Records written elsewhere may already be past the ceiling.
            state.iteration = min(state.iteration, config.max_iterations)
            state.deactivate(EXIT_BUDGET_EXHAUSTED)
            reason = (
                f"Iteration budget exhausted ({state.iteration}/{config.max_iterations}) "
                f"without {config.marker}"
            )
            logger.info("Loop %r: %s", state.loop_id, reason)
            return _allow(OUTCOME_BUDGET_EXHAUSTED, reason, state)

        logger.info(
            "Loop %r: continuing (iteration %d/%d)",
            state.loop_id,
            state.iteration,
            config.max_iterations,
        )
        return Decision(
            kind=DecisionKind.BLOCK,
            reason=f"Ralph loop iteration {state.iteration}/{config.max_iterations}",
            payload=build_continuation_prompt(config, state.iteration),
            outcome=OUTCOME_CONTINUE,
            iteration=state.iteration,
            max_iterations=config.max_iterations,
        )

    def _persist(self, state: LoopState, decision: Decision) -> Decision:
        try:
            self.store.save(state)
        except PersistenceFailure as e:
            logger.error("Loop %r: %s; next evaluation will see stale state", state.loop_id, e)
            return replace(decision, persisted=False, warning=str(e))
        return decision
