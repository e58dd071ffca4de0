"""ralph-gate: completion-gated retry loop controller for agent Stop hooks."""

__version__ = "0.1.0"
