from __future__ import annotations

import asyncio
import json
import signal
import sys
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any, TypeVar

import click
from loguru import logger

from crosschain_lp.core.config import PipelineSettings, load_settings
from crosschain_lp.core.errors import PipelineError, error_payload
from crosschain_lp.core.wallets.directory import WalletDirectory
from crosschain_lp.pipeline.driver import MultiWalletDriver, RunSummary
from crosschain_lp.pipeline.services import (
    PipelineServices,
    build_services,
    state_dir_for,
)
from crosschain_lp.pipeline.state_store import StateStore

T = TypeVar("T")

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _configure_logging(level: str, log_file: str | None) -> None:
    logger.remove()
    logger.add(sys.stderr, level=str(level).upper())
    if log_file:
        logger.add(log_file, level="DEBUG", serialize=True, enqueue=True)


def _settings(ctx: click.Context, *, require_mnemonic: bool = False) -> PipelineSettings:
    settings: PipelineSettings = ctx.obj["settings"]
    if require_mnemonic:
        try:
            settings.require_mnemonic()
        except PipelineError as exc:
            _echo_json({"ok": False, "error": error_payload(exc)})
            sys.exit(2)
    return settings


def _install_cancel(cancel: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError):
            # Not available off the main thread or on Windows.
            pass


def _run_with_services(
    settings: PipelineSettings,
    dry_run: bool,
    work: Callable[[PipelineServices, asyncio.Event], Awaitable[T]],
) -> T:
    async def _main() -> T:
        cancel = asyncio.Event()
        _install_cancel(cancel)
        services = build_services(settings, dry_run=dry_run)
        try:
            return await work(services, cancel)
        finally:
            await services.close()

    try:
        return asyncio.run(_main())
    except PipelineError as exc:
        logger.error(f"{exc.code}: {exc}")
        _echo_json({"ok": False, "error": error_payload(exc)})
        sys.exit(1)


def _finish(summary: RunSummary) -> None:
    _echo_json({"ok": summary.ok, "result": summary.to_dict()})
    if not summary.ok:
        sys.exit(1)


@click.group(
    name="crosschain-lp",
    help="Fund, bridge, swap and provide liquidity across many wallets.",
)
@click.option("--config", "config_path", default="config.json", show_default=True)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
@click.option("--log-file", default=None, help="Also write JSON logs to this file.")
@click.pass_context
def cli(ctx: click.Context, config_path: str, log_level: str, log_file: str | None):
    _configure_logging(log_level, log_file)
    try:
        settings = load_settings(config_path)
    except PipelineError as exc:
        _echo_json({"ok": False, "error": error_payload(exc)})
        sys.exit(2)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


def _pipeline_options(fn):
    fn = click.option(
        "--retry-failed/--no-retry-failed",
        default=False,
        show_default=True,
        help="Resume wallets stuck in error from their failed step.",
    )(fn)
    fn = click.option(
        "--dry-run/--no-dry-run",
        default=False,
        show_default=True,
        help="Simulate without sending transactions or withdrawals.",
    )(fn)
    return fn


@cli.command(name="run", help="Run the pipeline for one derived wallet.")
@click.option("--index", type=int, default=0, show_default=True)
@_pipeline_options
@click.pass_context
def run_cmd(ctx: click.Context, index: int, dry_run: bool, retry_failed: bool) -> None:
    settings = _settings(ctx, require_mnemonic=True)

    async def _work(services: PipelineServices, cancel: asyncio.Event) -> RunSummary:
        driver = MultiWalletDriver(services)
        contexts = driver.contexts_for(
            1, start=index, dry_run=dry_run, retry_failed=retry_failed, cancel=cancel
        )
        return await driver.run_all(contexts, concurrency=1)

    _finish(_run_with_services(settings, dry_run, _work))


@cli.command(name="run-multi", help="Run the pipeline for many derived wallets.")
@click.option("--count", type=int, default=None, help="Defaults to wallet_count.")
@click.option("--start", type=int, default=0, show_default=True)
@click.option("--concurrency", type=int, default=None)
@_pipeline_options
@click.pass_context
def run_multi_cmd(
    ctx: click.Context,
    count: int | None,
    start: int,
    concurrency: int | None,
    dry_run: bool,
    retry_failed: bool,
) -> None:
    settings = _settings(ctx, require_mnemonic=True)

    async def _work(services: PipelineServices, cancel: asyncio.Event) -> RunSummary:
        driver = MultiWalletDriver(services)
        contexts = driver.contexts_for(
            count or settings.wallet_count,
            start=start,
            dry_run=dry_run,
            retry_failed=retry_failed,
            cancel=cancel,
        )
        return await driver.run_all(contexts, concurrency=concurrency)

    _finish(_run_with_services(settings, dry_run, _work))


@cli.command(name="harvest", help="Harvest fees and rebalance positions when due.")
@click.option("--count", type=int, default=None, help="Defaults to wallet_count.")
@click.option("--start", type=int, default=0, show_default=True)
@click.option("--concurrency", type=int, default=None)
@click.option("--dry-run/--no-dry-run", default=False, show_default=True)
@click.pass_context
def harvest_cmd(
    ctx: click.Context,
    count: int | None,
    start: int,
    concurrency: int | None,
    dry_run: bool,
) -> None:
    settings = _settings(ctx, require_mnemonic=True)

    async def _work(services: PipelineServices, cancel: asyncio.Event) -> RunSummary:
        driver = MultiWalletDriver(services)
        contexts = driver.contexts_for(
            count or settings.wallet_count, start=start, dry_run=dry_run, cancel=cancel
        )
        return await driver.harvest_all(contexts, concurrency=concurrency)

    _finish(_run_with_services(settings, dry_run, _work))


@cli.command(name="fund-hub", help="Fund the distribution hub wallet in one transfer.")
@click.option("--amount", type=str, required=True, help="Amount in human units.")
@click.option("--dry-run/--no-dry-run", default=False, show_default=True)
@click.pass_context
def fund_hub_cmd(ctx: click.Context, amount: str, dry_run: bool) -> None:
    settings = _settings(ctx)

    async def _work(services: PipelineServices, cancel: asyncio.Event):
        return await MultiWalletDriver(services).fund_hub(Decimal(amount), dry_run=dry_run)

    state = _run_with_services(settings, dry_run, _work)
    _echo_json({"ok": state.error is None, "result": state.summary()})
    if state.error is not None:
        sys.exit(1)


@cli.command(name="distribute", help="Split the hub balance across derived wallets.")
@click.option("--count", type=int, default=None, help="Defaults to wallet_count.")
@click.option("--start", type=int, default=0, show_default=True)
@click.option("--chain-id", type=int, required=True)
@click.option("--token", "token_address", default=None, help="Omit for native.")
@click.option("--dry-run/--no-dry-run", default=False, show_default=True)
@click.pass_context
def distribute_cmd(
    ctx: click.Context,
    count: int | None,
    start: int,
    chain_id: int,
    token_address: str | None,
    dry_run: bool,
) -> None:
    settings = _settings(ctx, require_mnemonic=True)

    async def _work(services: PipelineServices, cancel: asyncio.Event):
        driver = MultiWalletDriver(services)
        recipients = [
            record.address
            for record in services.wallets.derive_many(
                count or settings.wallet_count, start=start
            )
        ]
        return await driver.distribute(
            recipients, chain_id=chain_id, token_address=token_address, dry_run=dry_run
        )

    result = _run_with_services(settings, dry_run, _work)
    ok = not result.per_recipient_errors
    _echo_json({"ok": ok, "result": result.__dict__})
    if not ok:
        sys.exit(1)


@cli.command(name="status", help="Show the persisted state of every wallet.")
@click.option("--dry-run/--no-dry-run", default=False, show_default=True)
@click.pass_context
def status_cmd(ctx: click.Context, dry_run: bool) -> None:
    store = StateStore(state_dir_for(_settings(ctx), dry_run=dry_run))
    _echo_json(
        {"ok": True, "result": [state.summary() for state in store.list_states()]}
    )


@cli.command(name="reset", help="Delete the persisted state of one wallet.")
@click.option("--address", required=True)
@click.option("--dry-run/--no-dry-run", default=False, show_default=True)
@click.pass_context
def reset_cmd(ctx: click.Context, address: str, dry_run: bool) -> None:
    store = StateStore(state_dir_for(_settings(ctx), dry_run=dry_run))
    removed = asyncio.run(store.reset(address))
    _echo_json({"ok": True, "result": {"address": address, "removed": removed}})


@cli.command(name="wallets", help="List derived wallet addresses.")
@click.option("--count", type=int, default=None, help="Defaults to wallet_count.")
@click.option("--start", type=int, default=0, show_default=True)
@click.pass_context
def wallets_cmd(ctx: click.Context, count: int | None, start: int) -> None:
    settings = _settings(ctx, require_mnemonic=True)
    directory = WalletDirectory(seed=settings.wallet_mnemonic)
    records = directory.derive_many(count or settings.wallet_count, start=start)
    _echo_json(
        {
            "ok": True,
            "result": [
                {"index": r.derivation_index, "address": r.address} for r in records
            ],
        }
    )


if __name__ == "__main__":
    cli()
