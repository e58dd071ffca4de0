"""Command-line interface for ralph-gate.

``start``, ``cancel`` and ``status`` manage a loop record; ``evaluate`` runs
one decision by hand; ``hook`` is the entry point registered as a Claude
Code ``Stop`` hook.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from . import __version__
from .config import HOOK_PROTOCOLS, Config, load_config, project_root
from .controller import LoopController
from .errors import ConfigurationError, PersistenceFailure, StateUnavailable
from .hook import run_stop_hook
from .logging_config import setup_logging
from .output import (
    OutputConfig,
    build_json_response,
    print_json_output,
    print_output,
    set_output_config,
)
from .state import LoopState, completion_marker
from .state_store import StateStore, make_store

logger = logging.getLogger(__name__)


class _GateArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.exit(2, f"Error: {message}\n")


def _store(args: argparse.Namespace) -> StateStore:
    cfg: Config = args.cfg
    if args.state_dir:
        state_dir = Path(args.state_dir).expanduser()
        if not state_dir.is_absolute():
            state_dir = args.root / state_dir
    else:
        state_dir = cfg.state_dir(args.root)
    return make_store(cfg.state.store, state_dir)


def _controller(args: argparse.Namespace) -> LoopController:
    return LoopController(_store(args), history_limit=args.cfg.loop.history_limit)


def _loop_id(args: argparse.Namespace) -> str:
    return args.loop_id or args.cfg.hook.loop_id


def _read_stdin_bytes() -> bytes:
    stream = getattr(sys.stdin, "buffer", None)
    if stream is not None:
        return stream.read()
    return sys.stdin.read().encode("utf-8", errors="replace")


def _fail(cmd: str, message: str, exit_code: int) -> int:
    print_output(f"Error: {message}", level="error")
    print_json_output(build_json_response(cmd, exit_code=exit_code, error=message))
    return exit_code


def _describe_state(state: LoopState) -> list[str]:
    lines = [f"Loop: {state.loop_id}"]
    lines.append(f"Active: {'yes' if state.active else 'no'}")
    if state.config is not None:
        lines.append(f"Iteration: {state.iteration}/{state.config.max_iterations}")
        lines.append(f"Completion marker: {state.config.marker}")
    else:
        lines.append(f"Iteration: {state.iteration} (configuration missing)")
    if state.session_id:
        lines.append(f"Session: {state.session_id}")
    if state.started_at:
        lines.append(f"Started: {state.started_at}")
    if state.ended_at:
        lines.append(f"Ended: {state.ended_at} ({state.exit_reason})")
    return lines


# -------------------------
# start / cancel / status
# -------------------------


def cmd_start(args: argparse.Namespace) -> int:
    """Start (or restart) a loop. Exit 2 on invalid input, 1 if the record cannot be saved."""
    cfg: Config = args.cfg

    task = " ".join(args.task or []).strip()
    if args.task_file:
        if task:
            return _fail("start", "Give the task inline or with --task-file, not both", 2)
        try:
            task = Path(args.task_file).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            return _fail("start", f"Cannot read task file: {e}", 2)

    max_iterations = (
        args.max_iterations if args.max_iterations is not None else cfg.loop.max_iterations
    )
    token = (
        args.completion_token
        if args.completion_token is not None
        else cfg.loop.completion_token
    )
    loop_id = _loop_id(args)

    try:
        controller = _controller(args)
        state = controller.start(
            task,
            max_iterations=max_iterations,
            completion_token=token,
            loop_id=loop_id,
        )
    except ConfigurationError as e:
        return _fail("start", str(e), 2)
    except PersistenceFailure as e:
        return _fail("start", str(e), 1)

    print_output(
        f"Started loop '{state.loop_id}' (max {max_iterations} iterations)", level="quiet"
    )
    print_output(
        f"Finish by printing: {completion_marker(token)}",
        level="normal",
    )
    print_json_output(build_json_response("start", state=state.to_dict()))
    return 0


def cmd_cancel(args: argparse.Namespace) -> int:
    """Force the loop inactive. Cancelling a missing or finished loop is not an error."""
    loop_id = _loop_id(args)
    try:
        state = _controller(args).cancel(loop_id)
    except ConfigurationError as e:
        return _fail("cancel", str(e), 2)
    except PersistenceFailure as e:
        return _fail("cancel", str(e), 1)

    if state is None:
        print_output(f"No loop recorded for '{loop_id}'.", level="normal")
    else:
        print_output(
            f"Loop '{loop_id}' inactive at iteration {state.iteration} "
            f"({state.exit_reason or 'never evaluated'})",
            level="quiet",
        )
    print_json_output(
        build_json_response("cancel", state=state.to_dict() if state else None)
    )
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show the loop record; exit 1 when there is none or it cannot be read."""
    loop_id = _loop_id(args)
    try:
        state = _controller(args).status(loop_id)
    except ConfigurationError as e:
        return _fail("status", str(e), 2)
    except StateUnavailable as e:
        return _fail("status", str(e), 1)

    if state is None:
        return _fail("status", f"No loop recorded for '{loop_id}'", 1)

    for line in _describe_state(state):
        print_output(line, level="quiet")
    if args.history and state.history:
        print_output("History:", level="normal")
        for entry in state.history:
            print_output(
                f"  [{entry.get('at', '')}] #{entry.get('iteration')} "
                f"{entry.get('outcome')}: {entry.get('reason', '')}",
                level="normal",
            )
    print_json_output(build_json_response("status", state=state.to_dict()))
    return 0


# -------------------------
# evaluate / hook
# -------------------------


def cmd_evaluate(args: argparse.Namespace) -> int:
    """Run one evaluation by hand (debugging, non-Claude runtimes)."""
    if args.output_file:
        try:
            turn_output: bytes = Path(args.output_file).read_bytes()
        except OSError as e:
            return _fail("evaluate", f"Cannot read output file: {e}", 2)
    else:
        turn_output = _read_stdin_bytes()

    try:
        decision = _controller(args).evaluate(
            turn_output, loop_id=_loop_id(args), session_id=args.session_id
        )
    except ConfigurationError as e:
        return _fail("evaluate", str(e), 2)

    print_output(f"{decision.kind.value.upper()}: {decision.reason}", level="quiet")
    if decision.blocked:
        print_output("", level="normal")
        print_output(decision.payload, level="normal")
    if not decision.persisted:
        print_output(f"Warning: loop state not saved ({decision.warning})", level="error")
    print_json_output(build_json_response("evaluate", decision=decision.to_dict()))
    return 0


def cmd_hook(args: argparse.Namespace) -> int:
    """Claude Code Stop hook entry point. Never fails the host turn."""
    protocol = args.protocol or args.cfg.hook.protocol
    try:
        result = run_stop_hook(
            _controller(args),
            _read_stdin_bytes(),
            loop_id=_loop_id(args),
            protocol=protocol,
        )
    except Exception as e:
        logger.exception("Stop hook failed, allowing stop: %s", e)
        if protocol == "json":
            print(json.dumps({}))
        return 0

    if result.stdout:
        print(result.stdout)
    if result.stderr:
        print(result.stderr, file=sys.stderr)
    return result.exit_code


def build_parser() -> argparse.ArgumentParser:
    p = _GateArgumentParser(
        prog="ralph-gate",
        description="ralph-gate: completion-gated retry loop for agent Stop hooks",
    )
    p.add_argument("--version", action="version", version=f"ralph-gate {__version__}")
    p.add_argument(
        "--format",
        choices=["text", "json"],
        default=None,
        help="Output format (default: from config, else text)",
    )
    verbosity = p.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Minimal output")
    p.add_argument(
        "--state-dir",
        default=None,
        help="Directory holding loop state (default: .ralph/gate)",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    def add_loop_id(sp: argparse.ArgumentParser) -> None:
        sp.add_argument(
            "--loop-id",
            default=None,
            help="Loop identifier (default: hook.loop_id, else 'default')",
        )

    p_start = sub.add_parser("start", help="Start (or restart) a loop")
    p_start.add_argument("task", nargs="*", help="Task text re-injected on every iteration")
    p_start.add_argument("--task-file", default=None, help="Read the task text from a file")
    p_start.add_argument(
        "-n",
        "--max-iterations",
        type=int,
        default=None,
        help="Iteration ceiling (default: loop.max_iterations, else 20)",
    )
    p_start.add_argument(
        "--completion-token",
        default=None,
        help="Token inside <promise>...</promise> that ends the loop (default: DONE)",
    )
    add_loop_id(p_start)
    p_start.set_defaults(func=cmd_start)

    p_cancel = sub.add_parser("cancel", help="Stop a loop before its next evaluation")
    add_loop_id(p_cancel)
    p_cancel.set_defaults(func=cmd_cancel)

    p_status = sub.add_parser("status", help="Show the stored loop record")
    add_loop_id(p_status)
    p_status.add_argument("--history", action="store_true", help="Include audit history")
    p_status.set_defaults(func=cmd_status)

    p_eval = sub.add_parser(
        "evaluate", help="Evaluate one turn's output (from a file or stdin)"
    )
    add_loop_id(p_eval)
    p_eval.add_argument("--output-file", default=None, help="File holding the turn output")
    p_eval.add_argument("--session-id", default=None, help="Host session identifier")
    p_eval.set_defaults(func=cmd_evaluate)

    p_hook = sub.add_parser("hook", help="Run as a Claude Code Stop hook (JSON on stdin)")
    add_loop_id(p_hook)
    p_hook.add_argument(
        "--protocol",
        choices=list(HOOK_PROTOCOLS),
        default=None,
        help="Decision wire format (default: hook.protocol, else json)",
    )
    p_hook.set_defaults(func=cmd_hook)

    return p


def main(argv: list[str] | None = None) -> int:
    """Parse ``argv``, load config, set up logging and dispatch to a ``cmd_*`` handler.

    Returns:
        int: Process exit code
    """
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)
    args.root = project_root()

    try:
        args.cfg = load_config(args.root)
    except ConfigurationError as e:
        if args.cmd == "hook":
            # A broken config file must not trap the host session.
            setup_logging(quiet=True)
            logger.error("Invalid configuration, allowing stop: %s", e)
            if (args.protocol or "json") == "json":
                print(json.dumps({}))
            return 0
        print(f"Error: {e}", file=sys.stderr)
        return 2

    cfg: Config = args.cfg
    verbosity = cfg.output.verbosity
    if args.verbose:
        verbosity = "verbose"
    elif args.quiet:
        verbosity = "quiet"
    set_output_config(OutputConfig(verbosity=verbosity, format=args.format or cfg.output.format))

    setup_logging(
        verbose=verbosity == "verbose",
        quiet=verbosity == "quiet",
        log_file=cfg.log_file(args.root),
        console=args.cmd != "hook",
    )
    logger.debug("ralph-gate v%s command=%s root=%s", __version__, args.cmd, args.root)

    try:
        return int(args.func(args))
    except Exception as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
