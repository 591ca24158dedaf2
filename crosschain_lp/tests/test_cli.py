import asyncio
import json
import sys

import pytest
from click.testing import CliRunner
from loguru import logger

from crosschain_lp.cli import cli
from crosschain_lp.pipeline.state_store import StateStore
from crosschain_lp.pipeline.steps import Step
from crosschain_lp.pipeline.types import ExecutionState
from crosschain_lp.testing.harness import TEST_MNEMONIC, make_harness


@pytest.fixture(autouse=True)
def _restore_logging():
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def runner():
    return CliRunner()


def _config(tmp_path, **data) -> str:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"state_dir": str(tmp_path / "state"), **data}))
    return str(path)


def _invoke(runner, config_path, *args):
    return runner.invoke(
        cli, ["--config", config_path, "--log-level", "ERROR", *args]
    )


def _json(result) -> dict:
    return json.loads(result.stdout)


def test_wallets_lists_derived_addresses(runner, tmp_path):
    config = _config(tmp_path, wallet_mnemonic=TEST_MNEMONIC)

    result = _invoke(runner, config, "wallets", "--count", "2", "--start", "1")

    assert result.exit_code == 0
    payload = _json(result)
    assert payload["ok"] is True
    assert [w["index"] for w in payload["result"]] == [1, 2]
    assert payload["result"][0]["address"].lower() == (
        "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
    )


def test_missing_mnemonic_exits_with_config_error(runner, tmp_path, monkeypatch):
    monkeypatch.delenv("CROSSCHAIN_LP_MNEMONIC", raising=False)
    result = _invoke(runner, _config(tmp_path), "run")

    assert result.exit_code == 2
    assert _json(result)["error"]["code"] == "CONFIG_MISSING"


def test_invalid_config_exits_with_config_error(runner, tmp_path):
    config = _config(tmp_path, swap={"swap_percent": 150})

    result = _invoke(runner, config, "status")

    assert result.exit_code == 2
    assert _json(result)["ok"] is False


def test_status_and_reset(runner, tmp_path):
    config = _config(tmp_path)
    address = "0x" + "ab" * 20
    asyncio.run(
        StateStore(tmp_path / "state").save(
            ExecutionState(wallet_address=address, current_step=Step.SWAP_DONE)
        )
    )

    status = _invoke(runner, config, "status")
    assert status.exit_code == 0
    [summary] = _json(status)["result"]
    assert summary["address"] == address
    assert summary["step"] == str(Step.SWAP_DONE)

    dry_status = _invoke(runner, config, "status", "--dry-run")
    assert _json(dry_status)["result"] == []

    reset = _invoke(runner, config, "reset", "--address", address)
    assert _json(reset)["result"]["removed"] is True

    again = _invoke(runner, config, "reset", "--address", address)
    assert _json(again)["result"]["removed"] is False
    assert _json(_invoke(runner, config, "status"))["result"] == []


def test_run_dry_run_reports_summary(runner, tmp_path, monkeypatch):
    harness = make_harness(tmp_path)
    config = tmp_path / "pipeline.json"
    config.write_text(harness.settings.model_dump_json())
    monkeypatch.setattr(
        "crosschain_lp.cli.build_services",
        lambda settings, dry_run=False: harness.services,
    )

    result = _invoke(runner, str(config), "run", "--index", "0", "--dry-run")

    assert result.exit_code == 0, result.output
    payload = _json(result)
    assert payload["ok"] is True
    assert payload["result"]["succeeded"] == 1
    assert payload["result"]["wallets"][0]["step"] == str(Step.COLLECT_DONE)
    assert harness.chain.broadcasts == []


def test_run_multi_failure_exits_nonzero(runner, tmp_path, monkeypatch):
    # Every wallet is below the bridge minimum.
    harness = make_harness(tmp_path, bridge={"min_amount": 10**19})
    config = tmp_path / "pipeline.json"
    config.write_text(harness.settings.model_dump_json())
    monkeypatch.setattr(
        "crosschain_lp.cli.build_services",
        lambda settings, dry_run=False: harness.services,
    )

    result = _invoke(runner, str(config), "run-multi", "--count", "2")

    assert result.exit_code == 1
    payload = _json(result)
    assert payload["ok"] is False
    assert payload["result"]["failed"] == 2
    assert {w["error"]["code"] for w in payload["result"]["wallets"]} == {
        "MINIMUM_AMOUNT"
    }
