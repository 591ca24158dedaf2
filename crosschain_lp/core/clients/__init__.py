from crosschain_lp.core.clients.ChainClient import ChainClient
from crosschain_lp.core.clients.LifiClient import (
    BridgeRoute,
    BridgeStatus,
    LifiClient,
)
from crosschain_lp.core.clients.protocols import (
    BridgeClientProtocol,
    ChainClientProtocol,
    DexProtocol,
    ExchangeProtocol,
)

__all__ = [
    "ChainClient",
    "LifiClient",
    "BridgeRoute",
    "BridgeStatus",
    "ChainClientProtocol",
    "BridgeClientProtocol",
    "ExchangeProtocol",
    "DexProtocol",
]
