from typing import Any

from eth_account import Account

_DEFAULT_EVM_ACCOUNT_PATH_TEMPLATE = "m/44'/60'/0'/0/{index}"

_HD_WALLET_ENABLED = False


def _enable_hd_wallet_features() -> None:
    global _HD_WALLET_ENABLED
    if _HD_WALLET_ENABLED:
        return
    Account.enable_unaudited_hdwallet_features()
    _HD_WALLET_ENABLED = True


def default_evm_account_path(index: int) -> str:
    idx = int(index)
    if idx < 0:
        raise ValueError("account index must be non-negative")
    return _DEFAULT_EVM_ACCOUNT_PATH_TEMPLATE.format(index=idx)


def make_wallet_from_mnemonic(
    mnemonic: str,
    *,
    account_index: int = 0,
    account_path: str | None = None,
) -> dict[str, Any]:
    """Derive an EVM wallet from a BIP-39 mnemonic.

    Uses MetaMask's default derivation path: ``m/44'/60'/0'/0/{index}``.
    """
    _enable_hd_wallet_features()
    idx = int(account_index)
    if idx < 0:
        raise ValueError("account_index must be non-negative")
    path = str(account_path).strip() if account_path else default_evm_account_path(idx)
    acct = Account.from_mnemonic(str(mnemonic).strip(), account_path=path)
    return {
        "address": acct.address,
        "private_key_hex": acct.key.hex(),
        "derivation_path": path,
        "derivation_index": idx,
    }


def make_wallet_from_private_key(private_key: str) -> dict[str, Any]:
    acct = Account.from_key(str(private_key).strip())
    return {
        "address": acct.address,
        "private_key_hex": acct.key.hex(),
        "derivation_path": None,
        "derivation_index": None,
    }
