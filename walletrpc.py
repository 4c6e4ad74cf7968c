"""
JSON-RPC client for a Bitcoin Core wallet endpoint.

One client is bound to one wallet scope (`/wallet/<name>`, where the empty name is
the node's default wallet). Remote failures are classified once, here, into an
`ErrorKind` so that callers never have to inspect message text themselves.
"""
import enum
import re
import json
import logging
import itertools
import threading
import typing as t
from decimal import Decimal
from dataclasses import dataclass

import httpx
from verystable.rpc import JSONRPCError

log = logging.getLogger("decaying.rpc")

DEFAULT_HTTP_TIMEOUT = 30.0

# bitcoind's RPC_WALLET_ALREADY_LOADED.
RPC_WALLET_ALREADY_LOADED = -35


class ErrorKind(enum.Enum):
    WALLET_ALREADY_EXISTS = "wallet-already-exists"
    WALLET_ALREADY_LOADED = "wallet-already-loaded"
    DESCRIPTOR_UNREADABLE = "descriptor-unreadable"
    OTHER = "other"


@dataclass(frozen=True)
class ErrorPatterns:
    """
    Message fragments (and codes, where bitcoind has a dedicated one) that identify
    the known-benign or known-opaque remote errors.

    The wording matches Bitcoin Core 28.x; override for other versions.
    """
    wallet_exists: tuple[str, ...] = ("Database already exists",)
    wallet_loaded: tuple[str, ...] = ("is already loaded",)
    wallet_loaded_codes: tuple[int, ...] = (RPC_WALLET_ALREADY_LOADED,)
    descriptor_unreadable: tuple[str, ...] = ("Can't get descriptor string",)


def classify(code: int | None, message: str, patterns: ErrorPatterns) -> ErrorKind:
    if any(p in message for p in patterns.wallet_exists):
        return ErrorKind.WALLET_ALREADY_EXISTS
    if code in patterns.wallet_loaded_codes or any(
            p in message for p in patterns.wallet_loaded):
        return ErrorKind.WALLET_ALREADY_LOADED
    if any(p in message for p in patterns.descriptor_unreadable):
        return ErrorKind.DESCRIPTOR_UNREADABLE
    return ErrorKind.OTHER


class RPCError(JSONRPCError):
    """
    A failed call, either an error payload or a non-200 HTTP status.

    Only failures the node reported are raised as this type; network failures
    (connection refused, timeouts) propagate unchanged as `httpx.HTTPError`.
    """

    def __init__(
        self,
        message: str,
        code: int | None = None,
        kind: ErrorKind = ErrorKind.OTHER,
        http_status: int | None = None,
    ):
        super().__init__({"code": code, "message": message})
        self.kind = kind
        self.http_status = http_status

    @property
    def code(self) -> int | None:
        return self.error["code"]

    @property
    def msg(self) -> str:
        return self.error["message"]

    def __str__(self) -> str:
        if self.code is None:
            return self.msg
        return f"{self.msg} (code {self.code})"


class RPCProtocolError(RPCError):
    """The response could not be decoded or correlated to its request."""


def _json_default(obj):
    if isinstance(obj, Decimal):
        # bitcoind accepts amounts as strings, which avoids float round-tripping.
        return format(obj, "f")
    raise TypeError(f"{type(obj).__name__} is not JSON serializable")


XPRIV_RE = re.compile(r"[xt]prv[1-9A-HJ-NP-Za-km-z]+")


def redact(params: t.Any) -> t.Any:
    """Copy of `params` with extended private keys masked, for logging."""
    if isinstance(params, str):
        return XPRIV_RE.sub("<xprv>", params)
    if isinstance(params, dict):
        return {k: redact(v) for k, v in params.items()}
    if isinstance(params, (list, tuple)):
        return [redact(v) for v in params]
    return params


Params = t.Union[list, dict, None]


class RPCClient:
    """
    Blocking JSON-RPC client bound to one wallet scope.

    Calls may be issued concurrently from several threads; each in-flight request
    is tracked by its id until its response has been correlated.
    """

    def __init__(
        self,
        service_url: str,
        wallet: str | None = None,
        auth: tuple[str, str] | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
        patterns: ErrorPatterns = ErrorPatterns(),
        _http: httpx.Client | None = None,
    ):
        self.service_url = service_url.rstrip("/")
        self.wallet = wallet
        self.patterns = patterns
        self.url = self.service_url
        if wallet is not None:
            self.url = f"{self.service_url}/wallet/{wallet}"

        self._owns_http = _http is None
        self._http = _http or httpx.Client(
            auth=auth, timeout=timeout, transport=transport)

        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._pending: dict[int, str] = {}

    def for_wallet(self, wallet: str) -> "RPCClient":
        """Return a client for another wallet scope sharing this connection pool."""
        return RPCClient(
            self.service_url, wallet=wallet, patterns=self.patterns, _http=self._http)

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "RPCClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"RPCClient({self.url!r})"

    def __getattr__(self, name: str) -> t.Callable[..., t.Any]:
        if name.startswith("_"):
            raise AttributeError(name)

        def method(*args, **kwargs):
            if args and kwargs:
                raise TypeError(f"{name}: use positional or named params, not both")
            return self.call(name, kwargs if kwargs else list(args))

        method.__name__ = name
        return method

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._pending)

    def _new_request(self, method: str, params: Params) -> dict:
        with self._lock:
            req_id = next(self._ids)
            self._pending[req_id] = method
        return {
            "jsonrpc": "1.0",
            "id": req_id,
            "method": method,
            "params": [] if params is None else params,
        }

    def _release(self, req_ids: t.Iterable[int]) -> None:
        with self._lock:
            for req_id in req_ids:
                self._pending.pop(req_id, None)

    def _post(self, body: t.Any) -> t.Any:
        """Send one HTTP request and return the decoded JSON body."""
        try:
            resp = self._http.post(
                self.url,
                content=json.dumps(body, default=_json_default),
                headers={"content-type": "application/json"},
            )
        except httpx.HTTPError as e:
            log.error("RPC transport failure at %s: %s", self.url, e)
            raise

        if resp.status_code != 200:
            raise self._error_from_failed_response(resp)

        try:
            return json.loads(resp.text, parse_float=Decimal)
        except ValueError as e:
            raise RPCProtocolError(
                f"undecodable response from {self.url}: {e}",
                http_status=resp.status_code) from e

    def _error_from_failed_response(self, resp: httpx.Response) -> RPCError:
        try:
            error = json.loads(resp.text)["error"]
            message = error["message"]
            code = error.get("code")
        except (ValueError, KeyError, TypeError, AttributeError):
            message = resp.reason_phrase or f"HTTP {resp.status_code}"
            code = None
        return RPCError(
            message,
            code=code,
            kind=classify(code, message, self.patterns),
            http_status=resp.status_code,
        )

    def _unwrap(self, envelope: t.Any, method: str) -> t.Any:
        if not isinstance(envelope, dict) or ("result" not in envelope
                                               and "error" not in envelope):
            raise RPCProtocolError(f"malformed response to {method}: {envelope!r}")

        if error := envelope.get("error"):
            if not isinstance(error, dict):
                error = {"message": str(error)}
            message = error.get("message", str(error))
            code = error.get("code")
            raise RPCError(
                message, code=code, kind=classify(code, message, self.patterns))

        return envelope.get("result")

    def call(self, method: str, params: Params = None) -> t.Any:
        """Make a single call, returning its result or raising `RPCError`."""
        req = self._new_request(method, params)
        req_id = req["id"]
        log.debug("-> %s %s(%s) id=%s", self.url, method, redact(params), req_id)

        try:
            envelope = self._post(req)
            if not isinstance(envelope, dict) or envelope.get("id") != req_id:
                got = envelope.get("id") if isinstance(envelope, dict) else None
                raise RPCProtocolError(
                    f"response id {got!r} does not match request id {req_id} "
                    f"for {method}")
            result = self._unwrap(envelope, method)
        finally:
            self._release([req_id])

        log.debug("<- %s id=%s", method, req_id)
        return result

    def batch(self, calls: t.Sequence[tuple[str, Params]]) -> list[t.Any]:
        """
        Send several calls in one request. Responses are matched back to requests by
        id, so the server is free to answer them in any order. Results are returned
        in request order; the first failed call (in request order) is raised.
        """
        reqs = [self._new_request(method, params) for method, params in calls]
        ids = [r["id"] for r in reqs]

        try:
            envelopes = self._post(reqs)
            if not isinstance(envelopes, list):
                raise RPCProtocolError(f"batch response is not a list: {envelopes!r}")

            by_id: dict[int, dict] = {}
            for env in envelopes:
                env_id = env.get("id") if isinstance(env, dict) else None
                if env_id not in ids or env_id in by_id:
                    raise RPCProtocolError(f"unexpected batch response id {env_id!r}")
                by_id[env_id] = env

            if missing := [i for i in ids if i not in by_id]:
                raise RPCProtocolError(f"no response for request ids {missing}")

            return [
                self._unwrap(by_id[req["id"]], req["method"]) for req in reqs]
        finally:
            self._release(ids)
