"""Verbosity-aware printing and JSON responses for CLI commands."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class OutputConfig:
    verbosity: str = "normal"  # quiet|normal|verbose
    format: str = "text"  # text|json


_output_config: Optional[OutputConfig] = None


def get_output_config() -> OutputConfig:
    return _output_config if _output_config is not None else OutputConfig()


def set_output_config(config: Optional[OutputConfig]) -> None:
    global _output_config
    _output_config = config


def print_output(message: str, level: str = "normal", file: Any = None) -> None:
    """Print ``message`` if the current verbosity admits ``level``.

    "error" always prints (to stderr), "quiet" prints unless the format is
    JSON, "normal" is hidden by --quiet, "verbose" needs --verbose.
    """
    config = get_output_config()

    if level == "error":
        print(message, file=file or sys.stderr)
        return

    if config.format == "json":
        return

    if level == "quiet":
        should_print = True
    elif level == "verbose":
        should_print = config.verbosity == "verbose"
    else:
        should_print = config.verbosity in ("normal", "verbose")

    if should_print:
        print(message, file=file or sys.stdout)


def build_json_response(
    cmd: str,
    exit_code: int = 0,
    error: Optional[str] = None,
    **data: Any,
) -> Dict[str, Any]:
    """Standard JSON body: cmd, exit_code, timestamp, then command fields."""
    response: Dict[str, Any] = {
        "cmd": cmd,
        "exit_code": exit_code,
        "timestamp": datetime.now().isoformat(),
    }
    response.update(data)
    if error:
        response["error"] = error
    return response


def print_json_output(data: Dict[str, Any]) -> None:
    """Print ``data`` when the output format is JSON."""
    if get_output_config().format == "json":
        print(json.dumps(data, indent=2, ensure_ascii=False))
