"""
Idempotent wallet provisioning.

bitcoind keeps wallet storage and the set of loaded wallets separately: a wallet can
exist on disk without being loaded, or be freshly created (and auto-loaded). These
helpers normalize all of that into "the wallet exists and is loaded".
"""
import logging

from walletrpc import RPCClient, RPCError, ErrorKind

log = logging.getLogger("decaying.provision")

DEFAULT_WALLET = ""

# Coinbase outputs can't be spent until they have this many confirmations.
COINBASE_MATURITY = 100


class WalletLoadError(Exception):
    """A wallet exists but could not be loaded."""

    def __init__(self, wallet_name: str, cause: RPCError):
        super().__init__(f"unable to load wallet {wallet_name!r}: {cause}")
        self.wallet_name = wallet_name
        self.cause = cause


def ensure_wallet(rpc: RPCClient, name: str) -> bool:
    """
    Make sure wallet `name` is created and loaded. Returns True if the wallet was
    newly created by this call.
    """
    created = True
    try:
        rpc.createwallet(wallet_name=name)
    except RPCError as e:
        if e.kind != ErrorKind.WALLET_ALREADY_EXISTS:
            raise
        log.debug("wallet '%s' already exists", name)
        created = False

    try:
        if name not in rpc.listwallets():
            rpc.loadwallet(filename=name)
    except RPCError as e:
        if e.kind != ErrorKind.WALLET_ALREADY_LOADED:
            log.error("an error occurred while loading wallet '%s': %s", name, e)
            raise WalletLoadError(name, e) from e
        log.debug("wallet '%s' already loaded", name)

    if created:
        log.info("created wallet '%s'", name)
    return created


def initialize_default_wallet(rpc: RPCClient, network: str) -> bool:
    """
    Ensure the node's default wallet, and on regtest give it spendable coins by
    mining past coinbase maturity. Returns True if blocks were mined.

    The height check keeps this from re-funding on every restart.
    """
    ensure_wallet(rpc, DEFAULT_WALLET)
    wallet_rpc = rpc.for_wallet(DEFAULT_WALLET)

    if network != "regtest":
        return False

    if (height := wallet_rpc.getblockcount()) >= COINBASE_MATURITY:
        log.debug("chain height %d, not mining", height)
        return False

    log.info("generating blocks and funding default wallet (height %d)", height)
    address = wallet_rpc.getnewaddress()
    wallet_rpc.generatetoaddress(nblocks=COINBASE_MATURITY + 1, address=address)
    return True


def initialize_decaying_wallet(rpc: RPCClient, name: str) -> bool:
    created = ensure_wallet(rpc, name)

    # Make sure the wallet has some keys to show when calling `listdescriptors`.
    rpc.for_wallet(name).getnewaddress()
    return created
