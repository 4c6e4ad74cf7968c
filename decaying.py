#!/usr/bin/env python3
import os
import sys
import time
import logging
import typing as t
from decimal import Decimal
from dataclasses import dataclass
from pathlib import Path, PosixPath

from clii import App
from verystable.script import CTransaction
from verystable.core.messages import COIN
from verystable.serialization import VSJson
from rich import print
from rich.markup import escape

from walletrpc import RPCClient, DEFAULT_HTTP_TIMEOUT
from provision import (
    DEFAULT_WALLET, initialize_default_wallet, initialize_decaying_wallet)
from descriptors import (
    DescriptorManager, DescriptorStore, verify_descriptor)

log = logging.getLogger("decaying")

# Override this if you're not running with docker-compose.
BITCOIN_RPC_URL = os.environ.get('BITCOIN_RPC_URL', 'http://bitcoin:18443')

# BIP-68 relative lock-time fields of nSequence.
SEQUENCE_LOCKTIME_DISABLE_FLAG = 1 << 31
SEQUENCE_LOCKTIME_TYPE_FLAG = 1 << 22
SEQUENCE_LOCKTIME_MASK = 0x0000ffff

BTC_PLACES = Decimal("0.000001")


def btc_to_sats(btc) -> int:
    return int(Decimal(str(btc)) * COIN)


def sats_to_btc(sats: int) -> Decimal:
    return Decimal(sats) / COIN


def format_btc(btc: Decimal) -> str:
    """Fixed 6-place rendering, which is what we hand to bitcoind for amounts."""
    return format(Decimal(btc).quantize(BTC_PLACES), "f")


def encode_relative_timelock(blocks: int) -> int:
    """nSequence value that makes an input honor a relative lock of `blocks`."""
    if not 0 < blocks <= SEQUENCE_LOCKTIME_MASK:
        raise ValueError(f"block delay out of range: {blocks}")
    return blocks


def sequence_satisfies_older(tx_version: int, n_sequence: int, delay: int) -> bool:
    """
    Whether an input with `n_sequence` can satisfy `older(delay)` (i.e.
    OP_CHECKSEQUENCEVERIFY), once the output it spends has matured.
    """
    if tx_version < 2:
        return False
    if n_sequence & SEQUENCE_LOCKTIME_DISABLE_FLAG:
        return False

    mask = SEQUENCE_LOCKTIME_TYPE_FLAG | SEQUENCE_LOCKTIME_MASK
    tx_seq, required = n_sequence & mask, delay & mask
    if (tx_seq < SEQUENCE_LOCKTIME_TYPE_FLAG) != (required < SEQUENCE_LOCKTIME_TYPE_FLAG):
        return False
    return required <= tx_seq


@dataclass
class DecayConfig:
    """
    Static, non-secret configuration for a decaying 2-of-2 wallet.
    """
    wallet_name: str
    counterparty_xpub: str

    # Blocks after which the operator can spend alone.
    block_delay: int = 2
    network: str = "regtest"

    fund_value_sats: int = 1_000
    fee_value_sats: int = 200

    # Which index of the (ranged) descriptor to pay to.
    address_index: int = 1

    # Blocks to wait before treating the funding output as spendable.
    confirmations: int = 2

    # Where the descriptor cache lives.
    descriptor_dir: Path = Path('.')

    filepath: Path | None = None
    _json_exclude = ("filepath",)

    def __post_init__(self) -> None:
        assert self.wallet_name, "the default wallet can't hold the decaying descriptor"
        assert 0 < self.block_delay <= SEQUENCE_LOCKTIME_MASK
        assert 0 < self.fee_value_sats < self.fund_value_sats
        assert self.confirmations >= 1
        self.descriptor_dir = Path(self.descriptor_dir)

    @property
    def fund_amount(self) -> Decimal:
        return sats_to_btc(self.fund_value_sats)

    @property
    def fee(self) -> Decimal:
        return sats_to_btc(self.fee_value_sats)

    @property
    def descriptor_store(self) -> DescriptorStore:
        return DescriptorStore.for_wallet(self.wallet_name, self.descriptor_dir)

    def save(self):
        assert self.filepath
        self.filepath.write_text(VSJson.dumps(self, indent=2))
        log.info("saved config to %s", self.filepath)

    @classmethod
    def load(cls, filepath: Path) -> "DecayConfig":
        obj = VSJson.loads(filepath.read_text())
        obj.filepath = filepath
        return obj


# Wire up JSON serialization for the classes above.
VSJson.add_allowed_classes(DecayConfig, Path, PosixPath)


@dataclass(frozen=True)
class FundedOutput:
    descriptor: str
    address: str
    funding_txid: str


@dataclass(frozen=True)
class Utxo:
    txid: str
    vout: int
    amount: Decimal
    address: str = ""
    confirmations: int = 0

    @classmethod
    def from_rpc(cls, d: dict) -> "Utxo":
        return cls(
            txid=d["txid"],
            vout=d["vout"],
            amount=Decimal(d["amount"]),
            address=d.get("address", ""),
            confirmations=d.get("confirmations", 0),
        )

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout} ({format_btc(self.amount)} BTC)"


@dataclass(frozen=True)
class RawSpend:
    utxo: Utxo
    destination: str
    amount: Decimal
    hex: str


@dataclass(frozen=True)
class SignedSpend:
    raw: RawSpend
    hex: str


@dataclass(frozen=True)
class SpendResult:
    descriptor: str
    address: str
    txid: str
    amount: Decimal


class PipelineError(Exception):
    """A pipeline stage failed; the run has been aborted."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"stage '{stage}' failed: {cause}")
        self.stage = stage
        self.cause = cause


def check_timelock_signaled(raw_hex: str, block_delay: int) -> CTransaction:
    tx = CTransaction.fromhex(raw_hex)
    for i, txin in enumerate(tx.vin):
        if not sequence_satisfies_older(tx.version, txin.nSequence, block_delay):
            raise ValueError(
                f"input {i} (nSequence={txin.nSequence:#x}, version {tx.version}) "
                f"does not signal a relative lock of {block_delay} blocks")
    return tx


T = t.TypeVar("T")


class Pipeline:
    """
    Fund the decaying output, then spend it back to the default wallet through the
    2-of-2 branch. Every step depends on the one before it, and any failure aborts
    the run.
    """

    def __init__(self, config: DecayConfig, rpc: RPCClient, poll_interval: float = 2.0):
        self.config = config
        self.rpc = rpc
        self.default_rpc = rpc.for_wallet(DEFAULT_WALLET)
        self.wallet_rpc = rpc.for_wallet(config.wallet_name)
        self.descriptors = DescriptorManager(self.wallet_rpc, config.descriptor_store)
        self.poll_interval = poll_interval

    @property
    def is_regtest(self) -> bool:
        return self.config.network == "regtest"

    def stage(self, name: str, func: t.Callable[..., T], *args) -> T:
        log.info("stage: %s", name)
        try:
            return func(*args)
        except Exception as e:
            log.exception("stage '%s' failed", name)
            raise PipelineError(name, e) from e

    def initialize_wallets(self) -> None:
        initialize_default_wallet(self.rpc, self.config.network)
        initialize_decaying_wallet(self.rpc, self.config.wallet_name)

    def obtain_descriptor(self) -> str:
        return self.descriptors.get_decaying_descriptor(
            self.config.counterparty_xpub, self.config.block_delay)

    def derive_address(self, descriptor: str) -> str:
        verify_descriptor(descriptor)
        idx = self.config.address_index
        [address] = self.wallet_rpc.deriveaddresses(
            descriptor=descriptor, range=[idx, idx])
        return address

    def fund(self, descriptor: str, address: str) -> FundedOutput:
        txid = self.default_rpc.sendtoaddress(
            address=address, amount=format_btc(self.config.fund_amount))
        log.info("funded %s with %s BTC in %s", address, self.config.fund_amount, txid)
        return FundedOutput(descriptor, address, txid)

    def _funded_unspent(self, funded: FundedOutput, minconf: int = 1) -> list[dict]:
        """Unspent outputs of the funding transaction paying to the decaying address."""
        unspent = self.wallet_rpc.listunspent(minconf=minconf, addresses=[funded.address])
        return [u for u in unspent if u["txid"] == funded.funding_txid]

    def confirm(self, funded: FundedOutput) -> FundedOutput:
        if self.is_regtest:
            address = self.default_rpc.getnewaddress()
            self.default_rpc.generatetoaddress(
                nblocks=self.config.confirmations, address=address)
        else:
            while not self._funded_unspent(funded, minconf=self.config.confirmations):
                log.info("waiting for %s to confirm", funded.funding_txid)
                time.sleep(self.poll_interval)

        log.info("decaying wallet balance: %s", self.wallet_rpc.getbalance())
        return funded

    def select_utxo(self, funded: FundedOutput) -> Utxo:
        unspent = self._funded_unspent(funded)
        if not unspent:
            raise ValueError(
                f"funding output {funded.funding_txid} to {funded.address} is not "
                f"spendable in {self.config.wallet_name!r}")
        return Utxo.from_rpc(unspent[0])

    def build(self, utxo: Utxo) -> RawSpend:
        amount = utxo.amount - self.config.fee
        if amount <= 0:
            raise ValueError(f"{utxo} can't cover a fee of {format_btc(self.config.fee)}")

        destination = self.default_rpc.getnewaddress()
        raw_hex = self.wallet_rpc.createrawtransaction(
            inputs=[{
                "txid": utxo.txid,
                "vout": utxo.vout,
                "sequence": encode_relative_timelock(self.config.block_delay),
            }],
            outputs=[{destination: format_btc(amount)}],
        )
        check_timelock_signaled(raw_hex, self.config.block_delay)
        return RawSpend(utxo, destination, amount, raw_hex)

    def sign(self, raw: RawSpend) -> SignedSpend:
        signed = self.wallet_rpc.signrawtransactionwithwallet(hexstring=raw.hex)
        if not signed.get("complete"):
            raise ValueError(f"incomplete signature: {signed.get('errors')}")
        return SignedSpend(raw, signed["hex"])

    def broadcast(self, signed: SignedSpend) -> str:
        return self.wallet_rpc.sendrawtransaction(hexstring=signed.hex)

    def run(self) -> SpendResult:
        self.stage("initialize wallets", self.initialize_wallets)
        descriptor = self.stage("obtain descriptor", self.obtain_descriptor)
        address = self.stage("derive address", self.derive_address, descriptor)
        funded = self.stage("fund", self.fund, descriptor, address)
        funded = self.stage("confirm", self.confirm, funded)
        utxo = self.stage("select utxo", self.select_utxo, funded)
        raw = self.stage("build raw transaction", self.build, utxo)
        signed = self.stage("sign", self.sign, raw)
        txid = self.stage("broadcast", self.broadcast, signed)

        return SpendResult(descriptor, address, txid, raw.amount)


def _setup_logging() -> None:
    loglevel = "DEBUG" if os.environ.get("DEBUG") else "INFO"
    logging.basicConfig(filename="decaying-multisig.log", level=loglevel)


def get_rpc() -> RPCClient:
    user, _, password = os.environ.get('RPC_CREDS', '').partition(':')
    return RPCClient(
        BITCOIN_RPC_URL,
        auth=(user, password) if user else None,
        timeout=float(os.environ.get('RPC_TIMEOUT', DEFAULT_HTTP_TIMEOUT)),
    )


def load(cfg_file: Path | str) -> tuple[DecayConfig, RPCClient]:
    if not isinstance(cfg_file, Path):
        cfg_file = Path(cfg_file)

    if not cfg_file.exists():
        print("call ./createconfig.py")
        sys.exit(1)

    _setup_logging()
    return DecayConfig.load(cfg_file), get_rpc()


cli = App()


@cli.main
@cli.cmd
def run(config: str = './config.json'):
    """
    Fund the decaying 2-of-2 output and spend it back through the 2-of-2 branch.
    """
    cfg, rpc = load(config)
    with rpc:
        try:
            result = Pipeline(cfg, rpc).run()
        except PipelineError as e:
            print(f"[red bold]!![/] failed at [bold]{e.stage}[/]: {escape(str(e.cause))}")
            sys.exit(1)

    print(f"[cyan bold]=>[/] descriptor {escape(result.descriptor)}")
    print(f"[cyan bold]=>[/] address {result.address}")
    print(f"[green bold]$$[/] spent {format_btc(result.amount)} BTC back to default wallet")
    print(f"Success: {result.txid}")


@cli.cmd
def descriptor(config: str = './config.json'):
    """Provision the wallets and show the decaying descriptor and its address."""
    cfg, rpc = load(config)
    with rpc:
        pipeline = Pipeline(cfg, rpc)
        try:
            pipeline.stage("initialize wallets", pipeline.initialize_wallets)
            desc = pipeline.stage("obtain descriptor", pipeline.obtain_descriptor)
            address = pipeline.stage("derive address", pipeline.derive_address, desc)
        except PipelineError as e:
            print(f"[red bold]!![/] failed at [bold]{e.stage}[/]: {escape(str(e.cause))}")
            sys.exit(1)

    print(f"[cyan bold]=>[/] descriptor {escape(desc)}")
    print(f"[cyan bold]=>[/] address {address}")


@cli.cmd
def verify(config: str = './config.json'):
    """Check the cached descriptor's checksum, locally and against the node."""
    cfg, rpc = load(config)
    store = cfg.descriptor_store
    if (desc := store.read()) is None:
        print(f"no cached descriptor at {store.path}")
        sys.exit(1)

    with rpc:
        manager = DescriptorManager(rpc, store)
        verify_descriptor(desc)
        manager.remote_verify(desc)

    print(f"[bold]✔ [/] {escape(desc)}")


if __name__ == "__main__":
    cli.run()
