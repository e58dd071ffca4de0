"""Error taxonomy for loop bookkeeping.

Only ``ConfigurationError`` is meant to reach the person starting a loop.
The other kinds are raised by the storage and input layers and absorbed by
the controller so that a bookkeeping problem never fails a host turn.
"""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid start parameters, loop id, or configuration file value."""


class StateUnavailable(Exception):
    """Persisted loop state is missing, unreadable, or fails validation."""


class PersistenceFailure(Exception):
    """Updated loop state could not be written."""


class MalformedInput(ValueError):
    """Turn output or hook payload is not decodable text."""
