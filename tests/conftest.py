from __future__ import annotations

import random
import shutil
import sys
from pathlib import Path

import pytest

# uv/pytest may run without installing the project; ensure repo root is importable.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from perpdesk.core.config import Config  # noqa: E402
from perpdesk.core.metrics import MetricsRegistry  # noqa: E402
from perpdesk.core.types import ExchangeFilters  # noqa: E402
from tests.unit._fakes import FakeClock  # noqa: E402


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture()
def test_config(temp_dir: Path) -> Config:
    """Config loaded from a copy of the repo defaults."""

    cfg_src = REPO_ROOT / "config" / "default.yaml"
    cfg_dst_dir = temp_dir / "config"
    cfg_dst_dir.mkdir(parents=True, exist_ok=True)

    # copy default + presets
    shutil.copy2(cfg_src, cfg_dst_dir / "default.yaml")
    shutil.copytree(REPO_ROOT / "config" / "presets", cfg_dst_dir / "presets")

    return Config.from_yaml(cfg_dst_dir / "default.yaml")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture()
def rng() -> random.Random:
    return random.Random(7)


@pytest.fixture()
def filters() -> ExchangeFilters:
    return ExchangeFilters(tick_size=0.01, step_size=0.001, min_qty=0.001, min_notional=5.0)
