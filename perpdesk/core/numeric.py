"""perpdesk.core.numeric

Tick and step arithmetic.

Exchange filters quantise prices to ``tick_size`` and quantities to
``step_size``. Everything here is pure; non-finite inputs propagate as
non-finite outputs and callers must check.
"""

from __future__ import annotations

import math

# quotient guard: x/step can land a hair below an integer for exact multiples
_QUOTIENT_EPS = 1e-9
_CLEAN_DIGITS = 12


def is_finite(*values: float | None) -> bool:
    for v in values:
        if v is None:
            return False
        try:
            if not math.isfinite(float(v)):
                return False
        except (TypeError, ValueError):
            return False
    return True


def positive_finite(value: float | None) -> bool:
    return is_finite(value) and float(value) > 0  # type: ignore[arg-type]


def close(a: float, b: float, tol: float) -> bool:
    return abs(float(a) - float(b)) <= tol


def round_to_tick(value: float, tick: float) -> float:
    """Round ``value`` to the nearest multiple of ``tick`` (half up).

    ``tick <= 0`` is a passthrough.
    """

    if not is_finite(value, tick) or tick <= 0:
        return value
    n = math.floor(float(value) / float(tick) + 0.5)
    return round(n * float(tick), _CLEAN_DIGITS)


def round_down(value: float, step: float) -> float:
    """Floor ``value`` to the nearest lower multiple of ``step``.

    ``step <= 0`` yields NaN: it means the filter data is missing upstream.
    """

    if not is_finite(value, step) or step <= 0:
        return math.nan
    q = float(value) / float(step)
    n = math.floor(q + max(_QUOTIENT_EPS, 8 * math.ulp(q)))
    return round(n * float(step), _CLEAN_DIGITS)
