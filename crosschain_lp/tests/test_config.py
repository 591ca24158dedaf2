import json
from decimal import Decimal
from pathlib import Path

import pytest

from crosschain_lp.core.config import (
    CONFIG,
    FundingSource,
    get_rpc_urls,
    load_config,
    load_settings,
    resolve_config_path,
)
from crosschain_lp.core.errors import ConfigMissingError
from crosschain_lp.pipeline.services import state_dir_for


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in (
        "CROSSCHAIN_LP_MNEMONIC",
        "CROSSCHAIN_LP_CONFIG",
        "CROSSCHAIN_LP_CONFIG_PATH",
        "CEX_API_KEY",
        "CEX_API_SECRET",
        "LIFI_API_KEY",
    ):
        monkeypatch.delenv(key, raising=False)


def _write(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))
    return path


def test_load_settings_from_json(tmp_path):
    path = _write(
        tmp_path,
        {
            "wallet_mnemonic": "test test test test test test test test test test test junk",
            "wallet_count": 5,
            "funding": {"source": "cex", "amount": "0.02"},
            "bridge": {"amount": 1000, "to_chain_id": 2741},
            "liquidity": {"reinvest_percent": 40},
        },
    )

    settings = load_settings(path)

    assert settings.wallet_count == 5
    assert settings.funding.source == FundingSource.CEX
    assert settings.funding.amount == Decimal("0.02")
    assert settings.bridge.amount == 1000
    assert settings.liquidity.reinvest_percent == 40
    assert settings.swap.fee == 3000


def test_missing_file_yields_defaults(tmp_path):
    settings = load_settings(tmp_path / "absent.json")

    assert settings.wallet_mnemonic is None
    assert settings.funding.source == FundingSource.NONE
    assert settings.bridge.amount == 0


def test_invalid_json_is_config_error(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")

    with pytest.raises(ConfigMissingError, match="not valid JSON"):
        load_settings(path)


def test_out_of_range_percent_is_config_error(tmp_path):
    path = _write(tmp_path, {"liquidity": {"reinvest_percent": 140}})

    with pytest.raises(ConfigMissingError, match="Invalid configuration"):
        load_settings(path)


def test_range_percent_uses_the_same_scale_as_other_percents(tmp_path):
    settings = load_settings(_write(tmp_path, {"liquidity": {"range_percent": 7.5}}))
    assert settings.liquidity.range_percent == 7.5

    with pytest.raises(ConfigMissingError, match="Invalid configuration"):
        load_settings(_write(tmp_path, {"liquidity": {"range_percent": 0}}))


def test_env_overrides_fill_secrets(tmp_path, monkeypatch):
    monkeypatch.setenv("CROSSCHAIN_LP_MNEMONIC", "  env words  ")
    monkeypatch.setenv("CEX_API_KEY", "key")
    monkeypatch.setenv("CEX_API_SECRET", "secret")
    monkeypatch.setenv("LIFI_API_KEY", "lifi")
    path = _write(tmp_path, {"funding": {"exchange_options": {"apiKey": "from-file"}}})

    settings = load_settings(path)

    assert settings.wallet_mnemonic == "env words"
    assert settings.funding.exchange_options == {"apiKey": "from-file", "secret": "secret"}
    assert settings.bridge.api_key == "lifi"


def test_require_mnemonic(tmp_path):
    settings = load_settings(tmp_path / "absent.json")

    with pytest.raises(ConfigMissingError, match="wallet_mnemonic"):
        settings.require_mnemonic()


def test_rpc_urls_accept_single_string(tmp_path):
    path = _write(
        tmp_path,
        {"rpc_urls": {"8453": "https://base.example", "2741": ["https://a", "https://b"]}},
    )

    settings = load_settings(path)

    assert settings.rpc_urls[8453] == ["https://base.example"]
    assert settings.require_rpc(2741) == ["https://a", "https://b"]
    with pytest.raises(ConfigMissingError):
        settings.require_rpc(1)


def test_dex_chain_defaults_to_bridge_destination(tmp_path):
    settings = load_settings(tmp_path / "absent.json", overrides={"bridge": {"to_chain_id": 10}})
    assert settings.dex_chain_id == 10

    pinned = load_settings(
        tmp_path / "absent.json", overrides={"dex": {"chain_id": 42161}}
    )
    assert pinned.dex_chain_id == 42161


def test_dry_run_state_is_kept_apart(tmp_path):
    settings = load_settings(tmp_path / "absent.json", overrides={"state_dir": str(tmp_path)})

    assert state_dir_for(settings, dry_run=False) == str(tmp_path)
    assert state_dir_for(settings, dry_run=True) == str(tmp_path / "dry-run")


def test_config_path_from_env(tmp_path, monkeypatch):
    target = tmp_path / "custom.json"
    monkeypatch.setenv("CROSSCHAIN_LP_CONFIG_PATH", str(target))

    assert resolve_config_path() == target


def test_load_config_populates_global(tmp_path):
    path = _write(tmp_path, {"rpc_urls": {"8453": ["https://base.example"]}})
    try:
        load_config(path)
        assert get_rpc_urls() == {"8453": ["https://base.example"]}
    finally:
        CONFIG.clear()
