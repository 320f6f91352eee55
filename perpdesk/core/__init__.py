"""perpdesk.core

Core primitives: types, wire models, config, errors, transport, numerics.

If a module needs to exist, it should probably depend only on this package.
"""

from .config import Config
from .exceptions import ErrorKind, PerpdeskError
from .numeric import round_down, round_to_tick
from .time import utc_now

__all__ = [
    "Config",
    "ErrorKind",
    "PerpdeskError",
    "round_down",
    "round_to_tick",
    "utc_now",
]
