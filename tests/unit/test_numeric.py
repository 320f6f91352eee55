from __future__ import annotations

import math

import pytest

from perpdesk.core.numeric import close, is_finite, positive_finite, round_down, round_to_tick


@pytest.mark.parametrize(
    ("value", "tick", "expected"),
    [
        (100.004, 0.01, 100.0),
        (0.125, 0.25, 0.25),
        (0.123456, 0.0001, 0.1235),
        (27_431.6, 0.5, 27_431.5),
        (27_431.75, 0.5, 27_432.0),
    ],
)
def test_round_to_tick_nearest_half_up(value: float, tick: float, expected: float) -> None:
    assert round_to_tick(value, tick) == pytest.approx(expected, abs=1e-12)


def test_round_to_tick_passthrough_on_bad_tick() -> None:
    assert round_to_tick(1.2345, 0) == 1.2345
    assert round_to_tick(1.2345, -1) == 1.2345
    assert math.isnan(round_to_tick(math.nan, 0.01))


def test_round_down_floors_to_step() -> None:
    assert round_down(25.0, 0.001) == 25.0
    assert round_down(0.0299, 0.01) == 0.02
    assert round_down(1.99999, 1) == 1.0


def test_round_down_exact_multiple_survives_float_noise() -> None:
    # 0.3 / 0.1 == 2.9999999999999996 in binary floating point
    assert round_down(0.3, 0.1) == 0.3


@pytest.mark.parametrize("x", [0.0, 0.3, 1.0, 7.77777, 123.456789, 25.0, 1e-6, 99_999.9999])
@pytest.mark.parametrize("step", [1e-6, 0.001, 0.01, 0.1, 1.0, 0.5])
def test_round_down_idempotent(x: float, step: float) -> None:
    once = round_down(x, step)
    assert round_down(once, step) == once


def test_round_down_nan_on_missing_step() -> None:
    assert math.isnan(round_down(10.0, 0))
    assert math.isnan(round_down(10.0, -0.1))
    assert math.isnan(round_down(math.inf, 0.1))


def test_finite_helpers() -> None:
    assert is_finite(1.0, 2, 0.0)
    assert not is_finite(1.0, None)
    assert not is_finite(math.nan)
    assert not is_finite("abc")  # type: ignore[arg-type]
    assert positive_finite(0.1)
    assert not positive_finite(0.0)
    assert close(1.0, 1.0 + 1e-13, 1e-12)
    assert not close(1.0, 1.0 + 1e-11, 1e-12)
