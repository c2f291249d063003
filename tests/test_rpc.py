import base64
import json
import threading
from wsgiref.simple_server import WSGIRequestHandler, make_server

import pytest

from tokenstate.rpc import (
    INVALID_PARAMS,
    JSONRPC_ENDPOINT,
    METHOD_NOT_FOUND,
    ORDERS_TO_SEND,
    PARSE_ERROR,
    AssetInfo,
    AssetNotFoundError,
    Controller,
    JSONRPCClient,
    JSONRPCServer,
    RPCError,
    TxInfo,
    TxNotFoundError,
)
from tokenstate.storage import (
    EMPTY_ID,
    MemoryDatabase,
    add_balance,
    get_asset_from_state,
    get_balance_from_state,
    get_loan_from_state,
    get_transaction,
    set_asset,
    set_balance,
    set_loan,
    store_transaction,
)

NAME = "tokenvm"
CHAIN_ID = bytes([7]) * 32
ALICE = bytes([1]) * 32
OWNER = bytes([2]) * 32
ASSET = bytes([3]) * 32
TX_ID = bytes([4]) * 32
DEST = bytes([5]) * 32


class FakeController(Controller):
    def __init__(self):
        self.db = MemoryDatabase()
        self.book = {}
        self.limits = []
        self.genesis_doc = {"hrp": "token", "minUnitPrice": 1}

    def genesis(self):
        return self.genesis_doc

    def get_transaction(self, tx_id):
        return get_transaction(self.db, tx_id)

    def get_asset_from_state(self, asset):
        return get_asset_from_state(self.db.read_state, asset)

    def get_balance_from_state(self, pk, asset):
        return get_balance_from_state(self.db.read_state, pk, asset)

    def orders(self, pair, limit):
        self.limits.append(limit)
        return self.book.get(pair, [])[:limit]

    def get_loan_from_state(self, asset, destination):
        return get_loan_from_state(self.db.read_state, asset, destination)

    def address(self, pk):
        return "token1" + pk.hex()

    def parse_address(self, address):
        if not address.startswith("token1"):
            raise ValueError("invalid address")
        pk = bytes.fromhex(address[len("token1"):])
        if len(pk) != 32:
            raise ValueError("invalid address")
        return pk


def call(server, method, params=None, req_id=1):
    body = json.dumps({"jsonrpc": "2.0", "method": method, "params": params, "id": req_id})
    return server.handle(body)


@pytest.fixture
def controller():
    return FakeController()


@pytest.fixture
def server(controller):
    return JSONRPCServer(controller, NAME)


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, *args):
        pass


@pytest.fixture
def client(server):
    httpd = make_server("127.0.0.1", 0, server.wsgi_app, handler_class=_QuietHandler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    host, port = httpd.server_address[:2]
    cli = JSONRPCClient(f"http://{host}:{port}/", CHAIN_ID, NAME)
    cli.poll_interval = 0.01
    yield cli
    httpd.shutdown()
    httpd.server_close()


def test_error_messages():
    assert str(TxNotFoundError()) == "tx not found"
    assert str(AssetNotFoundError()) == "asset not found"


def test_handle_genesis(server, controller):
    reply = call(server, "tokenvm.genesis")
    assert reply["result"] == {"genesis": controller.genesis_doc}
    assert reply["id"] == 1


def test_handle_unknown_method(server):
    reply = call(server, "tokenvm.nothing")
    assert reply["error"]["code"] == METHOD_NOT_FOUND
    reply = call(server, "othervm.genesis")
    assert reply["error"]["code"] == METHOD_NOT_FOUND


def test_handle_parse_error(server):
    reply = server.handle(b"{not json")
    assert reply["error"]["code"] == PARSE_ERROR


def test_handle_tx_not_found(server):
    reply = call(server, "tokenvm.tx", {"txId": TX_ID.hex()})
    assert reply["error"]["message"] == "tx not found"


def test_handle_tx_bad_id(server):
    reply = call(server, "tokenvm.tx", {"txId": "zz"})
    assert reply["error"]["code"] == INVALID_PARAMS


def test_server_tx_found(server, controller):
    store_transaction(controller.db, TX_ID, 1234, True, 472)
    assert server.tx({"txId": TX_ID.hex()}) == {
        "timestamp": 1234,
        "success": True,
        "units": 472,
    }


def test_server_asset_reply(server, controller):
    set_asset(controller.db, ASSET, b"blah", 10, OWNER, True)
    reply = server.asset({"asset": ASSET.hex()})
    assert base64.b64decode(reply["metadata"]) == b"blah"
    assert reply["supply"] == 10
    assert reply["owner"] == controller.address(OWNER)
    assert reply["warp"] is True


def test_server_asset_missing(server):
    with pytest.raises(AssetNotFoundError):
        server.asset({"asset": ASSET.hex()})


def test_server_orders_uses_limit(server, controller):
    controller.book["a-b"] = [{"id": str(i)} for i in range(200)]
    reply = server.orders({"pair": "a-b"})
    assert len(reply["orders"]) == ORDERS_TO_SEND
    assert controller.limits == [ORDERS_TO_SEND]


def test_server_balance_bad_address(server):
    reply = call(server, "tokenvm.balance", {"address": "bogus", "asset": EMPTY_ID.hex()})
    assert "invalid address" in reply["error"]["message"]


def test_wsgi_rejects_get(server):
    statuses = []
    body = server.wsgi_app({"REQUEST_METHOD": "GET"}, lambda s, h: statuses.append(s))
    assert statuses == ["405 Method Not Allowed"]
    assert body == [b"method not allowed"]


def test_client_uri():
    cli = JSONRPCClient("http://localhost:9650/ext/bc/x/", CHAIN_ID, NAME)
    assert cli.uri == "http://localhost:9650/ext/bc/x" + JSONRPC_ENDPOINT


def test_client_genesis_cached(client, controller):
    first = client.genesis()
    assert first == {"hrp": "token", "minUnitPrice": 1}
    controller.genesis_doc = {"hrp": "changed"}
    assert client.genesis() == first


def test_client_tx(client, controller):
    assert client.tx(TX_ID) is None
    store_transaction(controller.db, TX_ID, 99, False, 5)
    assert client.tx(TX_ID) == TxInfo(99, False, 5)


def test_client_asset(client, controller):
    assert client.asset(ASSET) is None
    set_asset(controller.db, ASSET, b"1", 15, OWNER, False)
    assert client.asset(ASSET) == AssetInfo(b"1", 15, controller.address(OWNER), False)


def test_client_asset_empty_metadata(client, controller):
    set_asset(controller.db, ASSET, b"", 0, OWNER, False)
    info = client.asset(ASSET)
    assert info.metadata == b""
    assert info.supply == 0


def test_client_balance_and_loan(client, controller):
    addr = controller.address(ALICE)
    assert client.balance(addr, EMPTY_ID) == 0
    set_balance(controller.db, ALICE, EMPTY_ID, 100000)
    assert client.balance(addr, EMPTY_ID) == 100000
    assert client.loan(EMPTY_ID, DEST) == 0
    set_loan(controller.db, EMPTY_ID, DEST, 110)
    assert client.loan(EMPTY_ID, DEST) == 110


def test_client_balance_bad_address(client):
    with pytest.raises(RPCError) as info:
        client.balance("bogus", EMPTY_ID)
    assert "invalid address" in info.value.message


def test_client_orders(client, controller):
    assert client.orders("x-y") == []
    controller.book["x-y"] = [{"id": "a", "remaining": 4}]
    assert client.orders("x-y") == [{"id": "a", "remaining": 4}]


def test_wait_for_transaction(client, controller):
    timer = threading.Timer(0.05, store_transaction, (controller.db, TX_ID, 1, True, 2))
    timer.start()
    assert client.wait_for_transaction(TX_ID) is True
    timer.join()


def test_wait_for_balance(client, controller):
    addr = controller.address(ALICE)
    timer = threading.Timer(0.05, add_balance, (controller.db, ALICE, EMPTY_ID, 5000))
    timer.start()
    client.wait_for_balance(addr, EMPTY_ID, 5000)
    timer.join()
    assert client.balance(addr, EMPTY_ID) >= 5000


def test_wait_for_balance_timeout(client, controller):
    client.wait_timeout = 0.05
    with pytest.raises(TimeoutError):
        client.wait_for_balance(controller.address(ALICE), EMPTY_ID, 1)