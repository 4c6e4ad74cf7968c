import json
import hashlib
import itertools
from decimal import Decimal

import httpx
import pytest
from verystable.script import CTransaction
from verystable.core.messages import COutPoint, CTxIn, CTxOut
from verystable.core.descriptors import descsum_create, descsum_check

from walletrpc import RPCClient
from decaying import DecayConfig, btc_to_sats

COUNTERPARTY_TPUB = (
    "tpubD6NzVbkrYhZ4XcSpKRM8Mj6hFSD1WyAQ2DCqETVcwe3PCPoyQreQMg4LZwe8AZsytsGphvrR"
    "twxFv7ij5LjQctZuWDLwzp3dhf2mCxzTK4Y")

OWN_KEY = (
    "[d34db33f/84h/1h/0h]tprv8ZgxMBicQKsPd7Uf69XL1XwhmjHopUGep8GuEiJDZmbQz6o58Lnin"
    "orQAfcKZWARbtRtfnLcJ5MQ2AtHcQJCCRUcMRvmDUjyEmNUWwx8UbK/0/*")
CHANGE_KEY = OWN_KEY.replace("/0/*", "/1/*")


class FakeNodeError(Exception):
    def __init__(self, code: int, message: str, http_status: int = 500):
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status


def _sha(*parts) -> str:
    return hashlib.sha256("|".join(str(p) for p in parts).encode()).hexdigest()


class FakeBitcoind:
    """
    Just enough of bitcoind's wallet RPC surface, served over httpx.MockTransport.
    """

    def __init__(self):
        self.height = 0
        self.on_disk: set[str] = set()
        self.loaded: set[str] = set()
        self.descriptors: dict[str, list[dict]] = {}
        self.imported: dict[str, list[str]] = {}
        self.utxos: list[dict] = []
        self.broadcast: list[str] = []
        self.calls: list[tuple[str | None, str, object]] = []
        self._addr_counter = itertools.count()

        # Knobs for failure scenarios.
        self.descriptors_unreadable = False
        self.bad_checksums = False
        self.import_fails = False
        self.load_error: FakeNodeError | None = None
        self.hide_unspent = False
        self.auto_mine_on_poll = False

    def methods_called(self, wallet=...) -> list[str]:
        return [m for w, m, _ in self.calls if wallet is ... or w == wallet]

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        wallet = None
        if path.startswith("/wallet/"):
            wallet = path[len("/wallet/"):]

        body = json.loads(request.content)
        if isinstance(body, list):
            resps = [self._dispatch(wallet, req) for req in body]
            for r in resps:
                r.pop("_http_status", None)
            return self._respond(resps)

        resp = self._dispatch(wallet, body)
        status = resp.pop("_http_status", 200)
        return self._respond(resp, status)

    def _respond(self, body, status=200) -> httpx.Response:
        return httpx.Response(
            status, content=json.dumps(body, default=float),
            headers={"content-type": "application/json"})

    def _dispatch(self, wallet, req) -> dict:
        method, params = req["method"], req.get("params", [])
        self.calls.append((wallet, method, params))
        try:
            if wallet is not None and wallet not in self.loaded:
                raise FakeNodeError(
                    -18, "Requested wallet does not exist or is not loaded")
            func = getattr(self, f"rpc_{method}")
            result = func(wallet, *params) if isinstance(params, list) else func(
                wallet, **params)
        except FakeNodeError as e:
            return {
                "result": None, "id": req["id"], "_http_status": e.http_status,
                "error": {"code": e.code, "message": e.message},
            }
        return {"result": result, "error": None, "id": req["id"]}

    def _address_owner(self, address: str) -> str | None:
        for wallet, descs in self.imported.items():
            for desc in descs:
                if any(self.derive(desc, i) == address for i in range(10)):
                    return wallet
        return None

    def _confs(self, utxo) -> int:
        if utxo["conf_height"] is None:
            return 0
        return self.height - utxo["conf_height"] + 1

    @staticmethod
    def derive(desc: str, idx: int) -> str:
        return "bcrt1q" + _sha(desc, idx)[:38]

    def mine(self, n: int) -> None:
        for _ in range(n):
            self.height += 1
            for u in self.utxos:
                if u["conf_height"] is None:
                    u["conf_height"] = self.height

    # --- node-level calls

    def rpc_createwallet(self, wallet, wallet_name, **_):
        if wallet_name in self.on_disk:
            raise FakeNodeError(
                -4, "Wallet file verification failed. Failed to create database path "
                f"'/data/regtest/wallets/{wallet_name}'. Database already exists.")
        self.on_disk.add(wallet_name)
        self.loaded.add(wallet_name)
        self.descriptors[wallet_name] = [
            {"desc": descsum_create(f"pkh({OWN_KEY.replace('84h', '44h')})"),
             "internal": False, "active": True},
            {"desc": descsum_create(f"wpkh({CHANGE_KEY})"),
             "internal": True, "active": True},
            {"desc": descsum_create(f"wpkh({OWN_KEY})"),
             "internal": False, "active": True},
        ]
        return {"name": wallet_name, "warning": ""}

    def rpc_listwallets(self, wallet):
        return sorted(self.loaded)

    def rpc_loadwallet(self, wallet, filename, **_):
        if self.load_error:
            raise self.load_error
        if filename not in self.on_disk:
            raise FakeNodeError(-18, f"Wallet file not found: {filename}")
        if filename in self.loaded:
            raise FakeNodeError(-35, f'Wallet "{filename}" is already loaded.')
        self.loaded.add(filename)
        return {"name": filename, "warning": ""}

    def rpc_getblockcount(self, wallet):
        return self.height

    # --- wallet calls

    def rpc_getnewaddress(self, wallet, *_):
        return f"bcrt1q{wallet or 'default'}{next(self._addr_counter):04d}"

    def rpc_generatetoaddress(self, wallet, nblocks, address):
        self.mine(nblocks)
        return [_sha("block", self.height - i) for i in range(nblocks)]

    def rpc_listdescriptors(self, wallet, private=False):
        if self.descriptors_unreadable:
            raise FakeNodeError(-1, "Can't get descriptor string.")
        return {"wallet_name": wallet, "descriptors": self.descriptors[wallet]}

    def rpc_getdescriptorinfo(self, wallet, descriptor):
        checksum = descsum_create(descriptor)[-8:]
        if self.bad_checksums:
            checksum = "qqqqqqqq" if checksum != "qqqqqqqq" else "pppppppp"
        return {"descriptor": descriptor, "checksum": checksum, "isrange": True}

    def rpc_importdescriptors(self, wallet, requests):
        results = []
        for r in requests:
            ok = descsum_check(r["desc"]) and not self.import_fails
            if ok:
                self.imported.setdefault(wallet, []).append(r["desc"])
            results.append({"success": ok})
        return results

    def rpc_deriveaddresses(self, wallet, descriptor, range=None):
        if not descsum_check(descriptor):
            raise FakeNodeError(-5, "Provided checksum does not match computed checksum")
        start, end = range or (0, 0)
        return [self.derive(descriptor, i) for i in builtin_range(start, end + 1)]

    def rpc_sendtoaddress(self, wallet, address, amount):
        txid = _sha("send", address, amount, len(self.utxos))
        self.utxos.append({
            "txid": txid, "vout": 0, "amount": Decimal(amount), "address": address,
            "wallet": self._address_owner(address), "conf_height": None,
            "spent": False,
        })
        return txid

    def _unspent(self, wallet, minconf=1):
        return [
            u for u in self.utxos
            if u["wallet"] == wallet and not u["spent"] and self._confs(u) >= minconf
        ]

    def rpc_getbalance(self, wallet, *_):
        return sum((u["amount"] for u in self._unspent(wallet)), Decimal(0))

    def rpc_listunspent(self, wallet, minconf=1, maxconf=9999999, addresses=None, *_):
        if self.auto_mine_on_poll:
            self.mine(1)
        if self.hide_unspent:
            return []
        return [{
            "txid": u["txid"], "vout": u["vout"], "amount": u["amount"],
            "address": u["address"], "confirmations": self._confs(u),
            "spendable": True,
        } for u in self._unspent(wallet, minconf)
            if addresses is None or u["address"] in addresses]

    def rpc_createrawtransaction(self, wallet, inputs, outputs):
        tx = CTransaction()
        tx.version = 2
        tx.vin = [
            CTxIn(
                COutPoint(int(i["txid"], 16), i["vout"]),
                nSequence=i.get("sequence", 0xffffffff))
            for i in inputs
        ]
        tx.vout = [
            CTxOut(
                nValue=btc_to_sats(amount),
                scriptPubKey=b"\x00\x14" + bytes.fromhex(_sha(addr)[:40]))
            for out in outputs for addr, amount in out.items()
        ]
        return tx.tohex()

    def rpc_signrawtransactionwithwallet(self, wallet, hexstring):
        return {"hex": hexstring, "complete": True}

    def rpc_sendrawtransaction(self, wallet, hexstring):
        tx = CTransaction.fromhex(hexstring)
        for txin in tx.vin:
            for u in self.utxos:
                if int(u["txid"], 16) == txin.prevout.hash and u["vout"] == txin.prevout.n:
                    u["spent"] = True
        self.broadcast.append(hexstring)
        return _sha("tx", hexstring)


builtin_range = range


@pytest.fixture
def node() -> FakeBitcoind:
    return FakeBitcoind()


@pytest.fixture
def rpc(node):
    client = RPCClient(
        "http://bitcoin:18443",
        auth=("user", "pass"),
        transport=httpx.MockTransport(node.handle),
    )
    yield client
    client.close()


@pytest.fixture
def config(tmp_path) -> DecayConfig:
    return DecayConfig(
        wallet_name="W",
        counterparty_xpub=COUNTERPARTY_TPUB,
        descriptor_dir=tmp_path,
    )
