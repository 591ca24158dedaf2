GAS_BUFFER_MULTIPLIER = 1.1
SUGGESTED_PRIORITY_FEE_MULTIPLIER = 1.5
SUGGESTED_GAS_PRICE_MULTIPLIER = 1.5
MAX_BASE_FEE_GROWTH_MULTIPLIER = 2

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
NATIVE_TOKEN_ADDRESSES: set[str] = {
    ZERO_ADDRESS,
    "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee",
}

# Timeout constants (seconds)
DEFAULT_TRANSACTION_TIMEOUT = 180
# Li.Fi bridge quotes can take a while to assemble.
BRIDGE_HTTP_TIMEOUT = 60.0

MAX_UINT256 = 2**256 - 1
