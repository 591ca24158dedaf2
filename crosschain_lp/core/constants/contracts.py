from crosschain_lp.core.constants.chains import CHAIN_ID_ABSTRACT, CHAIN_ID_BASE

UNISWAP_V3_FACTORY: dict[int, str] = {
    CHAIN_ID_BASE: "0x33128a8fC17869897dcE68Ed026d694621f6FDfD",
    CHAIN_ID_ABSTRACT: "0xA1160e73B63F322ae88cC2d8E700833e71D0b2a1",
}

UNISWAP_V3_NPM: dict[int, str] = {
    CHAIN_ID_BASE: "0x03a520b32C04BF3bEEf7BEb72E919cf822Ed34f1",
    CHAIN_ID_ABSTRACT: "0xfA928D3ABc512383b8E5E77edd2d5678696084F9",
}

UNISWAP_V3_SWAP_ROUTER: dict[int, str] = {
    CHAIN_ID_BASE: "0x2626664c2603336E57B271c5C0b26F421741e481",
    CHAIN_ID_ABSTRACT: "0x7712FA47387542819d4E35A23f8116C90C18767C",
}

UNISWAP_V3_QUOTER: dict[int, str] = {
    CHAIN_ID_BASE: "0x3d4e44Eb1374240CE5F1B871ab261CD16335B76a",
    CHAIN_ID_ABSTRACT: "0x728BD3eC25D5EDBafebB84F3d67367Cd9EBC7693",
}

# USDT-style tokens revert on approve(x) while a non-zero allowance is set.
TOKENS_REQUIRING_APPROVAL_RESET: set[tuple[int, str]] = {
    (1, "0xdAC17F958D2ee523a2206206994597C13D831ec7"),
}
