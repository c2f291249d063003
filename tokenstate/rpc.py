"""JSON-RPC service and client for querying token chain state."""

from __future__ import annotations

import abc
import base64
import dataclasses
import itertools
import json
import logging
import time
import urllib.error
import urllib.request
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Optional

from .storage import AssetRecord, TransactionRecord

JSONRPC_ENDPOINT = "/tokenapi"
ORDERS_TO_SEND = 128

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
SERVER_ERROR = -32000

_log = logging.getLogger(__name__)
_UNSET = object()


class RPCError(Exception):
    """An error reported by, or returned from, the JSON-RPC service."""

    def __init__(self, message: str, code: int = SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class TxNotFoundError(RPCError):
    def __init__(self) -> None:
        super().__init__("tx not found")


class AssetNotFoundError(RPCError):
    def __init__(self) -> None:
        super().__init__("asset not found")


class _InvalidParamsError(RPCError):
    def __init__(self, message: str) -> None:
        super().__init__(message, INVALID_PARAMS)


class Controller(abc.ABC):
    """State access the service needs from the running chain."""

    @abc.abstractmethod
    def genesis(self) -> Any:
        """Return the genesis document as a JSON-compatible value."""

    @abc.abstractmethod
    def get_transaction(self, tx_id: bytes) -> Optional[TransactionRecord]:
        """Return the stored transaction, or None if unknown."""

    @abc.abstractmethod
    def get_asset_from_state(self, asset: bytes) -> Optional[AssetRecord]:
        """Return the asset, or None if it does not exist."""

    @abc.abstractmethod
    def get_balance_from_state(self, pk: bytes, asset: bytes) -> int:
        """Return the balance of an account in an asset."""

    @abc.abstractmethod
    def orders(self, pair: str, limit: int) -> Iterable[Any]:
        """Return at most ``limit`` open orders for a trading pair."""

    @abc.abstractmethod
    def get_loan_from_state(self, asset: bytes, destination: bytes) -> int:
        """Return the amount of an asset loaned to a destination chain."""

    @abc.abstractmethod
    def address(self, pk: bytes) -> str:
        """Render a public key as an address."""

    @abc.abstractmethod
    def parse_address(self, address: str) -> bytes:
        """Parse an address into a public key; raise ValueError if invalid."""


@dataclass(frozen=True)
class TxInfo:
    timestamp: int
    success: bool
    units: int


@dataclass(frozen=True)
class AssetInfo:
    metadata: bytes
    supply: int
    owner: str
    warp: bool


def _to_json(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, dict):
        return {key: _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    return value


def _decode_id(args: dict, field: str) -> bytes:
    raw = args.get(field)
    if not isinstance(raw, str):
        raise _InvalidParamsError(f"missing {field}")
    try:
        return bytes.fromhex(raw)
    except ValueError:
        raise _InvalidParamsError(f"invalid {field}: {raw!r}") from None


def _error_reply(req_id: Any, code: int, message: str) -> dict:
    return {
        "jsonrpc": "2.0",
        "error": {"code": code, "message": message},
        "id": req_id,
    }


class JSONRPCServer:
    """Serves state queries over JSON-RPC; methods are named ``<name>.<method>``."""

    def __init__(self, controller: Controller, name: str) -> None:
        self._controller = controller
        self._name = name
        self._methods: dict[str, Callable[[dict], dict]] = {
            "genesis": lambda _args: self.genesis(),
            "tx": self.tx,
            "asset": self.asset,
            "balance": self.balance,
            "orders": self.orders,
            "loan": self.loan,
        }

    def genesis(self) -> dict:
        return {"genesis": _to_json(self._controller.genesis())}

    def tx(self, args: dict) -> dict:
        record = self._controller.get_transaction(_decode_id(args, "txId"))
        if record is None:
            raise TxNotFoundError()
        return {
            "timestamp": record.timestamp,
            "success": record.success,
            "units": record.units,
        }

    def asset(self, args: dict) -> dict:
        record = self._controller.get_asset_from_state(_decode_id(args, "asset"))
        if record is None:
            raise AssetNotFoundError()
        return {
            "metadata": base64.b64encode(record.metadata).decode("ascii"),
            "supply": record.supply,
            "owner": self._controller.address(record.owner),
            "warp": record.warp,
        }

    def balance(self, args: dict) -> dict:
        address = args.get("address")
        if not isinstance(address, str):
            raise _InvalidParamsError("missing address")
        pk = self._controller.parse_address(address)
        asset = _decode_id(args, "asset")
        return {"amount": self._controller.get_balance_from_state(pk, asset)}

    def orders(self, args: dict) -> dict:
        pair = args.get("pair", "")
        if not isinstance(pair, str):
            raise _InvalidParamsError("invalid pair")
        orders = self._controller.orders(pair, ORDERS_TO_SEND)
        return {"orders": _to_json(list(orders))}

    def loan(self, args: dict) -> dict:
        asset = _decode_id(args, "asset")
        destination = _decode_id(args, "destination")
        return {"amount": self._controller.get_loan_from_state(asset, destination)}

    def handle(self, body: bytes | str) -> dict:
        """Process one JSON-RPC request body and return the response object."""
        try:
            request = json.loads(body)
        except (ValueError, UnicodeDecodeError) as exc:
            return _error_reply(None, PARSE_ERROR, f"parse error: {exc}")
        if not isinstance(request, dict) or not isinstance(request.get("method"), str):
            return _error_reply(None, INVALID_REQUEST, "invalid request")
        req_id = request.get("id")
        service, _, method = request["method"].rpartition(".")
        handler = self._methods.get(method) if service == self._name else None
        if handler is None:
            return _error_reply(
                req_id, METHOD_NOT_FOUND, f"method not found: {request['method']}"
            )
        params = request.get("params")
        if isinstance(params, list):
            params = params[0] if params else None
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return _error_reply(req_id, INVALID_PARAMS, "params must be an object")
        try:
            result = handler(params)
        except RPCError as exc:
            return _error_reply(req_id, exc.code, exc.message)
        except Exception as exc:  # controller failures are reported to the caller
            return _error_reply(req_id, SERVER_ERROR, str(exc))
        return {"jsonrpc": "2.0", "result": result, "id": req_id}

    def wsgi_app(self, environ: dict, start_response: Callable) -> list[bytes]:
        if environ.get("REQUEST_METHOD") != "POST":
            start_response(
                "405 Method Not Allowed",
                [("Allow", "POST"), ("Content-Type", "text/plain")],
            )
            return [b"method not allowed"]
        try:
            length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        body = environ["wsgi.input"].read(length) if length > 0 else b""
        payload = json.dumps(self.handle(body)).encode("utf-8")
        start_response(
            "200 OK",
            [
                ("Content-Type", "application/json"),
                ("Content-Length", str(len(payload))),
            ],
        )
        return [payload]


class JSONRPCClient:
    """Client for a JSONRPCServer reachable over HTTP."""

    def __init__(self, uri: str, chain_id: bytes, name: str) -> None:
        if uri.endswith("/"):
            uri = uri[:-1]
        self.uri = uri + JSONRPC_ENDPOINT
        self.chain_id = bytes(chain_id)
        self.name = name
        self.request_timeout = 30.0
        self.poll_interval = 1.0
        self.wait_timeout: Optional[float] = None
        self._genesis: Any = _UNSET
        self._ids = itertools.count(1)

    def _send(self, method: str, params: Optional[dict]) -> Any:
        request = {
            "jsonrpc": "2.0",
            "method": f"{self.name}.{method}",
            "params": params,
            "id": next(self._ids),
        }
        http_request = urllib.request.Request(
            self.uri,
            data=json.dumps(request).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(http_request, timeout=self.request_timeout) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as exc:
            raw = exc.read()
            if not raw:
                raise RPCError(f"http status {exc.code}") from None
        try:
            reply = json.loads(raw)
        except ValueError:
            raise RPCError("malformed response") from None
        error = reply.get("error")
        if error:
            if isinstance(error, dict):
                raise RPCError(str(error.get("message", "")), int(error.get("code", SERVER_ERROR)))
            raise RPCError(str(error))
        return reply.get("result") or {}

    def genesis(self) -> Any:
        if self._genesis is not _UNSET:
            return self._genesis
        genesis = self._send("genesis", None).get("genesis")
        if genesis is not None:
            self._genesis = genesis
        return genesis

    def tx(self, tx_id: bytes) -> Optional[TxInfo]:
        """Return the transaction status, or None if the node does not know it."""
        try:
            reply = self._send("tx", {"txId": bytes(tx_id).hex()})
        except RPCError as exc:
            if TxNotFoundError().message in exc.message:
                return None
            raise
        return TxInfo(
            int(reply.get("timestamp", 0)),
            bool(reply.get("success", False)),
            int(reply.get("units", 0)),
        )

    def asset(self, asset: bytes) -> Optional[AssetInfo]:
        """Return the asset, or None if it does not exist."""
        try:
            reply = self._send("asset", {"asset": bytes(asset).hex()})
        except RPCError as exc:
            if AssetNotFoundError().message in exc.message:
                return None
            raise
        metadata = reply.get("metadata")
        return AssetInfo(
            base64.b64decode(metadata) if metadata else b"",
            int(reply.get("supply", 0)),
            str(reply.get("owner", "")),
            bool(reply.get("warp", False)),
        )

    def balance(self, address: str, asset: bytes) -> int:
        reply = self._send("balance", {"address": address, "asset": bytes(asset).hex()})
        return int(reply.get("amount", 0))

    def orders(self, pair: str) -> list:
        return list(self._send("orders", {"pair": pair}).get("orders") or [])

    def loan(self, asset: bytes, destination: bytes) -> int:
        reply = self._send(
            "loan",
            {"asset": bytes(asset).hex(), "destination": bytes(destination).hex()},
        )
        return int(reply.get("amount", 0))

    def _wait(self, check: Callable[[], bool]) -> None:
        deadline = None
        if self.wait_timeout is not None:
            deadline = time.monotonic() + self.wait_timeout
        while not check():
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError("timed out waiting for condition")
            time.sleep(self.poll_interval)

    def wait_for_balance(self, address: str, asset: bytes, minimum: int) -> None:
        """Block until the balance of ``address`` reaches ``minimum``."""

        def reached() -> bool:
            if self.balance(address, asset) >= minimum:
                return True
            _log.info("waiting for %d balance: %s", minimum, address)
            return False

        self._wait(reached)

    def wait_for_transaction(self, tx_id: bytes) -> bool:
        """Block until the transaction is known and return whether it succeeded."""
        found: list[TxInfo] = []

        def known() -> bool:
            info = self.tx(tx_id)
            if info is None:
                return False
            found.append(info)
            return True

        self._wait(known)
        return found[-1].success