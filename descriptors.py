"""
Generation, registration and caching of the decaying 2-of-2 output descriptor.

The descriptor must be produced exactly once per wallet: generating it again yields
a different template, and therefore a different address, orphaning anything sent to
the first one. It's cached on disk after it has been imported into the wallet, and
reused from the cache on every subsequent start.
"""
import re
import logging
from pathlib import Path

from verystable.core.descriptors import descsum_check

from walletrpc import RPCClient, RPCError, ErrorKind

log = logging.getLogger("decaying.descriptors")


class DescriptorError(Exception):
    pass


class DescriptorUnreadableError(DescriptorError):
    """The wallet refused to show a descriptor's private material."""


class DescriptorIntegrityError(DescriptorError):
    """A descriptor's checksum doesn't match its template. Never retried."""


def split_descriptor(desc: str) -> tuple[str, str]:
    template, sep, checksum = desc.rpartition("#")
    if not sep:
        raise DescriptorIntegrityError(f"descriptor has no checksum: {desc!r}")
    return template, checksum


def verify_descriptor(desc: str) -> str:
    """Raise `DescriptorIntegrityError` unless `desc` carries a valid checksum."""
    template, checksum = split_descriptor(desc)
    try:
        ok = descsum_check(desc)
    except TypeError:
        # descsum_expand() rejected a character outside the descriptor charset.
        ok = False
    if not ok:
        raise DescriptorIntegrityError(
            f"checksum {checksum!r} does not match descriptor template {template!r}")
    return desc


def decaying_template(own_key: str, counterparty_key: str, block_delay: int) -> str:
    """
    Both signatures are required until `block_delay` blocks have passed since the
    output confirmed; after that the `older()` branch stands in for the
    counterparty's signature.
    """
    return (
        f"wsh(thresh(2,pk({own_key}),s:pk({counterparty_key}),"
        f"sln:older({block_delay})))")


def descriptor_block_delay(desc: str) -> int | None:
    """The relative delay in a descriptor's `older()` fragment, if it has one."""
    if m := re.search(r"older\((\d+)\)", desc):
        return int(m.group(1))
    return None


class DescriptorStore:
    """Durable storage for a single descriptor string."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def for_wallet(cls, wallet_name: str, directory: Path = Path(".")) -> "DescriptorStore":
        return cls(Path(directory) / f"{wallet_name}_descriptor.dat")

    def read(self) -> str | None:
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError:
            return None

    def write(self, desc: str) -> None:
        self.path.write_text(desc, encoding="utf-8")
        log.info("saved descriptor to %s", self.path)


class DescriptorManager:
    def __init__(self, rpc: RPCClient, store: DescriptorStore):
        self.rpc = rpc
        self.store = store

    def list_descriptors(self, private: bool = False) -> list[dict]:
        try:
            return self.rpc.listdescriptors(private=private)["descriptors"]
        except RPCError as e:
            if e.kind != ErrorKind.DESCRIPTOR_UNREADABLE:
                raise
            raise DescriptorUnreadableError(
                f"An error has occurred: {e.msg}\n"
                "This may be the result of a miniscript descriptor with private keys "
                "having been imported into this wallet in the past. The opaque error "
                "message is a usability issue in Bitcoin Core as of version 28.1."
            ) from e

    def get_private_key_expression(self) -> str:
        """
        Pull the key expression (origin, xpriv and derivation path) out of the
        wallet's receiving P2WPKH descriptor.
        """
        for d in self.list_descriptors(private=True):
            desc = d["desc"]
            if desc.startswith("wpkh(") and not d.get("internal", False):
                template, _ = split_descriptor(desc)
                return template[len("wpkh("):].removesuffix(")")

        raise DescriptorError(
            f"no external wpkh() descriptor found in {self.rpc.wallet!r}")

    def get_checksum(self, template: str) -> str:
        return self.rpc.getdescriptorinfo(descriptor=template)["checksum"]

    def import_descriptor(self, desc: str) -> None:
        results = self.rpc.importdescriptors(requests=[{
            "desc": desc,
            "timestamp": "now",
        }])
        if failed := [r for r in results if not r.get("success")]:
            raise DescriptorError(f"importdescriptors failed: {failed}")

    def generate(self, counterparty_key: str, block_delay: int) -> str:
        own_key = self.get_private_key_expression()
        template = decaying_template(own_key, counterparty_key, block_delay)

        desc = f"{template}#{self.get_checksum(template)}"
        verify_descriptor(desc)

        self.import_descriptor(desc)
        # Only persist once the wallet is actually tracking the descriptor.
        self.store.write(desc)
        return desc

    def get_decaying_descriptor(self, counterparty_key: str, block_delay: int) -> str:
        if (desc := self.store.read()) is not None:
            log.debug("using cached descriptor from %s", self.store.path)
            cached_delay = descriptor_block_delay(desc)
            if cached_delay is not None and cached_delay != block_delay:
                raise DescriptorError(
                    f"cached descriptor in {self.store.path} uses older({cached_delay}) "
                    f"but a block delay of {block_delay} is configured")
            return desc

        log.info(
            "unable to read descriptor from '%s', generating a new one", self.store.path)
        return self.generate(counterparty_key, block_delay)

    def remote_verify(self, desc: str) -> str:
        """Have the node recompute the checksum for a descriptor we hold."""
        template, checksum = split_descriptor(desc)
        if (got := self.get_checksum(template)) != checksum:
            raise DescriptorIntegrityError(
                f"node computed checksum {got!r}, descriptor carries {checksum!r}")
        return desc
