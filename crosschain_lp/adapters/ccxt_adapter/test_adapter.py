from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from ccxt.base import errors as ccxt_errors

from crosschain_lp.adapters.ccxt_adapter.adapter import (
    CCXTAdapter,
    WithdrawalState,
    translate_ccxt_error,
)
from crosschain_lp.core.errors import (
    AddressNotAuthorizedError,
    InsufficientFundsError,
    InvalidParametersError,
    MinimumAmountError,
    NetworkError,
    OperationTimeoutError,
    RateLimitError,
)
from crosschain_lp.core.utils.retry import RetryPolicy

WALLET = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
NO_RETRY = RetryPolicy(max_attempts=1)


def _make_mock_exchange(exchange_id: str) -> MagicMock:
    mock = MagicMock()
    mock.id = exchange_id
    mock.close = AsyncMock()
    mock.load_markets = AsyncMock(return_value={})
    mock.currencies = {
        "USDC": {
            "limits": {"withdraw": {"min": 1.0}},
            "networks": {"BASE": {"limits": {"withdraw": {"min": 5.0}}}},
        }
    }
    return mock


class _FakeCCXTModule:
    """Stands in for ccxt.async_support. Only registered exchanges exist as attributes."""

    def __init__(self) -> None:
        self._instances: dict[str, MagicMock] = {}

    def _register(self, exchange_id: str) -> MagicMock:
        instance = _make_mock_exchange(exchange_id)
        factory = MagicMock(return_value=instance)
        object.__setattr__(self, exchange_id, factory)
        self._instances[exchange_id] = instance
        return instance


@pytest.fixture
def mock_ccxt():
    module = _FakeCCXTModule()

    with patch("crosschain_lp.adapters.ccxt_adapter.adapter.ccxt_async", module):
        yield module


@pytest.fixture
def adapter(mock_ccxt):
    mock_ccxt._register("bybit")
    return CCXTAdapter(
        exchange_id="bybit",
        options={"apiKey": "k", "secret": "s"},
        read_policy=NO_RETRY,
        write_policy=NO_RETRY,
    )


class TestCCXTAdapterInit:
    def test_instantiates_configured_exchange(self, mock_ccxt):
        mock_ccxt._register("bybit")

        adapter = CCXTAdapter(config={"exchange_id": "bybit"})

        assert adapter.exchange is mock_ccxt._instances["bybit"]
        opts = mock_ccxt.bybit.call_args.args[0]
        assert opts["enableRateLimit"] is True

    def test_unknown_exchange_raises(self, mock_ccxt):
        with pytest.raises(InvalidParametersError, match="Unknown exchange"):
            CCXTAdapter(exchange_id="nope")

    @pytest.mark.asyncio
    async def test_close(self, adapter):
        await adapter.close()
        adapter.exchange.close.assert_awaited_once()


class TestWithdrawals:
    @pytest.mark.asyncio
    async def test_network_minimum_wins(self, adapter):
        assert await adapter.withdrawal_minimum("USDC", "BASE") == 5.0
        assert await adapter.withdrawal_minimum("USDC", None) == 1.0
        assert await adapter.withdrawal_minimum("ETH", None) == 0.0

    @pytest.mark.asyncio
    async def test_withdraw_below_minimum_is_rejected_before_calling(self, adapter):
        adapter.exchange.withdraw = AsyncMock()

        with pytest.raises(MinimumAmountError) as exc_info:
            await adapter.withdraw(asset="USDC", amount=2.0, address=WALLET, network="BASE")

        assert exc_info.value.minimum == 5.0
        adapter.exchange.withdraw.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_withdraw_returns_receipt(self, adapter):
        adapter.exchange.withdraw = AsyncMock(return_value={"id": "w-1"})

        receipt = await adapter.withdraw(
            asset="USDC", amount=10.0, address=WALLET, network="BASE"
        )

        assert receipt.withdrawal_id == "w-1"
        adapter.exchange.withdraw.assert_awaited_once_with(
            "USDC", 10.0, WALLET, None, {"network": "BASE"}
        )

    @pytest.mark.asyncio
    async def test_withdraw_maps_whitelist_rejection(self, adapter):
        adapter.exchange.withdraw = AsyncMock(
            side_effect=ccxt_errors.ExchangeError("address not in whitelist")
        )

        with pytest.raises(AddressNotAuthorizedError):
            await adapter.withdraw(asset="USDC", amount=10.0, address=WALLET, network="BASE")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("ok", WithdrawalState.COMPLETED),
            ("failed", WithdrawalState.FAILED),
            ("canceled", WithdrawalState.CANCELLED),
            ("pending", WithdrawalState.PENDING),
        ],
    )
    async def test_fetch_withdrawal_status(self, adapter, raw, expected):
        adapter.exchange.fetch_withdrawals = AsyncMock(
            return_value=[
                {"id": "other", "status": "ok"},
                {"id": "w-1", "status": raw, "txid": "0xabc"},
            ]
        )

        status = await adapter.fetch_withdrawal("w-1", "USDC")

        assert status.state == expected
        assert status.tx_hash == "0xabc"

    @pytest.mark.asyncio
    async def test_unknown_withdrawal_is_pending(self, adapter):
        adapter.exchange.fetch_withdrawals = AsyncMock(return_value=[])
        status = await adapter.fetch_withdrawal("w-9")
        assert status.state == WithdrawalState.PENDING
        assert not status.state.is_terminal

    @pytest.mark.asyncio
    async def test_free_balance(self, adapter):
        adapter.exchange.fetch_balance = AsyncMock(return_value={"free": {"USDC": 12.5}})
        assert await adapter.fetch_free_balance("USDC") == 12.5
        assert await adapter.fetch_free_balance("ETH") == 0.0

    @pytest.mark.asyncio
    async def test_reads_retry_rate_limits(self, mock_ccxt):
        mock_ccxt._register("bybit")
        adapter = CCXTAdapter(
            exchange_id="bybit",
            read_policy=RetryPolicy(max_attempts=2, base_delay_s=0, jitter_ratio=0),
        )
        adapter.exchange.fetch_balance = AsyncMock(
            side_effect=[ccxt_errors.RateLimitExceeded("slow down"), {"free": {"ETH": 1}}]
        )

        assert await adapter.fetch_free_balance("ETH") == 1.0
        assert adapter.exchange.fetch_balance.await_count == 2


@pytest.mark.parametrize(
    "exc,expected",
    [
        (ccxt_errors.InsufficientFunds("no money"), InsufficientFundsError),
        (ccxt_errors.RateLimitExceeded("429"), RateLimitError),
        (ccxt_errors.DDoSProtection("cf"), RateLimitError),
        (ccxt_errors.RequestTimeout("slow"), OperationTimeoutError),
        (ccxt_errors.NetworkError("reset"), NetworkError),
        (ccxt_errors.PermissionDenied("denied"), AddressNotAuthorizedError),
        (ccxt_errors.BadRequest("amount below minimum"), MinimumAmountError),
        (ccxt_errors.AuthenticationError("bad key"), InvalidParametersError),
    ],
)
def test_translate_ccxt_error(exc, expected):
    assert isinstance(translate_ccxt_error(exc, context="bybit"), expected)
