from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from perpdesk.core.config import Config, PolicyConfig
from perpdesk.core.exceptions import ConfigError
from perpdesk.core.types import MarketPosture

REPO_CONFIG = Path(__file__).resolve().parents[2] / "config"


def _config_dir(tmp_path: Path, default_yaml: str) -> Path:
    cfg_dir = tmp_path / "config"
    cfg_dir.mkdir()
    shutil.copytree(REPO_CONFIG / "presets", cfg_dir / "presets")
    (cfg_dir / "default.yaml").write_text(default_yaml)
    return cfg_dir / "default.yaml"


def test_repo_defaults_load(test_config: Config) -> None:
    assert test_config.preset == "balanced"
    assert test_config.policy.max_leverage == 20
    assert test_config.policy.expiry_minutes == (60, 90)
    assert (test_config.policy.rrr_min_tp1, test_config.policy.rrr_min_tp2) == (1.0, 2.0)
    assert test_config.transport.retry_statuses == (502, 503, 504)
    assert test_config.reconciliation.default_ban_s == 60
    assert test_config.account.equity_usdt == 10_000


def test_conservative_preset_is_merged_under_default(tmp_path: Path) -> None:
    path = _config_dir(tmp_path, "preset: conservative\npolicy:\n  max_leverage: 5\n")
    cfg = Config.from_yaml(path)

    assert cfg.policy.side_policy == "long_only"
    assert cfg.policy.risk_policy.ok == 0.25
    assert cfg.policy.rrr_min_tp1 == 1.2
    assert cfg.policy.entry_price_atr_mult_ok == 0.5
    # default.yaml wins over the preset
    assert cfg.policy.max_leverage == 5


def test_keyword_overrides_win(tmp_path: Path) -> None:
    path = _config_dir(tmp_path, "preset: balanced\n")
    cfg = Config.from_yaml(path, account={"equity_usdt": 2500})
    assert cfg.account.equity_usdt == 2500
    assert cfg.config_dir == path.parent


def test_config_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PERPDESK_TRANSPORT__TIMEOUT_S", "5")
    cfg = Config()
    assert cfg.transport.timeout_s == 5.0


def test_inverted_expiry_window_is_a_config_error(tmp_path: Path) -> None:
    path = _config_dir(tmp_path, "preset: balanced\npolicy:\n  expiry_minutes: [90, 60]\n")
    with pytest.raises(ConfigError, match="inverted"):
        Config.from_yaml(path)


def test_invalid_yaml_is_a_config_error(tmp_path: Path) -> None:
    path = _config_dir(tmp_path, "preset: [unclosed\n")
    with pytest.raises(ConfigError):
        Config.from_yaml(path)


def test_config_from_yaml_raises_if_missing(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        Config.from_yaml(tmp_path / "missing.yaml")


def test_implied_risk_by_posture() -> None:
    policy = PolicyConfig()
    assert policy.implied_risk_pct(MarketPosture.OK) == 0.5
    assert policy.implied_risk_pct(MarketPosture.CAUTION) == 0.25
    assert policy.implied_risk_pct(MarketPosture.NO_TRADE) == 0.0


def test_leverage_cap_must_be_positive() -> None:
    with pytest.raises(ValueError):
        PolicyConfig(max_leverage=0)
