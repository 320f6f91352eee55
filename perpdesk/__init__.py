"""perpdesk: execution core of a futures-trading assistant.

Picks come in, orders go out, and the exchange is asked what actually happened.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.4.0"
