# tokenstate

`tokenstate` stores the state of a token ledger in any byte-keyed key-value
store and answers read-only queries about it over JSON-RPC.

It has two modules:

- `tokenstate.storage`: key layout, value encoding and read/update helpers.
- `tokenstate.rpc`: a JSON-RPC service (`JSONRPCServer`) and an HTTP client
  for it (`JSONRPCClient`).

There are no third-party dependencies.

## State layout

Every key is a one-byte prefix followed by fixed-width identifiers. Asset
ids, transaction ids and chain ids are 32 bytes; public keys are 32 bytes.
Integers are big-endian and unsigned 64-bit unless noted.

| Prefix | Key                      | Value                                                      |
|--------|--------------------------|------------------------------------------------------------|
| `0x0`  | owner + asset            | balance                                                    |
| `0x1`  | asset                    | metadata length (u16), metadata, supply, owner, warp flag  |
| `0x2`  | order tx id              | in asset, in tick, out asset, out tick, remaining, owner   |
| `0x3`  | asset + destination      | loan amount                                                |
| `0x4`  | (none)                   | height (`height_key()`)                                    |
| `0x5`  | source chain + message   | incoming warp (`incoming_warp_key_prefix`)                 |
| `0x6`  | tx id                    | outgoing warp (`outgoing_warp_key_prefix`)                 |

Transaction results are kept in a separate store under prefix `0x0` with the
tx id as key: a signed 64-bit timestamp, a success byte and the units used
(`prefix_tx_key`, `store_transaction`, `get_transaction`).

Identifiers and public keys of the wrong length, and integers outside the
uint64 range, raise `ValueError`.

## Storage

Any object with `get_value(key)`, `insert(key, value)` and `remove(key)`
can be used as a database; `get_value` must raise
`tokenstate.storage.NotFoundError` for an absent key. `MemoryDatabase` is
an in-memory implementation.

```python
from tokenstate.storage import (
    MemoryDatabase, set_balance, add_balance, sub_balance, get_balance,
    InvalidBalanceError,
)

db = MemoryDatabase()
pk = bytes(32)
asset = bytes(32)

set_balance(db, pk, asset, 100)
add_balance(db, pk, asset, 50)
sub_balance(db, pk, asset, 150)      # the record is removed when it reaches zero
assert get_balance(db, pk, asset) == 0

try:
    sub_balance(db, pk, asset, 1)
except InvalidBalanceError as exc:
    print(exc)                       # "invalid balance: could not subtract balance ..."
```

An absent balance or loan reads as `0`. `add_balance` and `add_loan` raise
`InvalidBalanceError` on uint64 overflow; `sub_balance` and `sub_loan` raise
it when the amount exceeds what is held, and delete the record instead of
storing zero.

Assets, orders and loans have the same kind of helpers: `set_asset`,
`get_asset`, `delete_asset`, `set_order`, `get_order`, `delete_order`,
`set_loan`, `get_loan`, `add_loan`, `sub_loan`. `get_asset` returns an
`AssetRecord` and `get_order` returns an `OrderRecord`; both return `None`
when nothing is stored. `get_transaction` returns a `TransactionRecord` or
`None`.

`get_balance_from_state`, `get_asset_from_state` and `get_loan_from_state`
take a batch reader instead of a database: a callable that is given a list
of keys and returns a list of values, with `None` for an absent key.
`MemoryDatabase.read_state` is such a reader.

## JSON-RPC service

`JSONRPCServer(controller, name)` answers the methods `<name>.genesis`,
`<name>.tx`, `<name>.asset`, `<name>.balance`, `<name>.orders` and
`<name>.loan`. Its state comes from a subclass of `tokenstate.rpc.Controller`,
which you implement: it supplies the genesis document, transaction, asset,
balance, order and loan lookups, and converts between public keys and
address strings (`address`, `parse_address`).

Parameters are a JSON object (or a one-element list holding one). Ids are
sent as hex strings; asset metadata is returned base64-encoded; `orders`
returns at most 128 orders. An unknown transaction or asset yields the
errors `tx not found` and `asset not found`; any other exception from the
controller is returned as a JSON-RPC error carrying its message.

`JSONRPCServer.handle(body)` processes one raw request body and returns the
response object. `JSONRPCServer.wsgi_app` is a WSGI application that
accepts POST requests; mount it at the `/tokenapi` path of a WSGI server.

## Client

```python
from tokenstate.rpc import JSONRPCClient

client = JSONRPCClient("http://localhost:9650/ext/bc/mychain", chain_id, "tokenvm")
info = client.tx(tx_id)                  # TxInfo, or None if not found
asset = client.asset(asset_id)           # AssetInfo, or None if not found
amount = client.balance(address, asset_id)
orders = client.orders(pair)
loaned = client.loan(asset_id, destination_chain_id)
succeeded = client.wait_for_transaction(tx_id)
```

The client appends `/tokenapi` to the URI and prefixes method names with
`name`. The genesis document is fetched once and cached. An unknown
transaction or asset is reported as `None`; other failures raise
`RPCError`, which carries `message` and `code`.

`wait_for_balance` and `wait_for_transaction` poll every `poll_interval`
seconds (default 1). They wait indefinitely unless `wait_timeout` is set,
in which case they raise `TimeoutError`. `request_timeout` (default 30
seconds) bounds each HTTP request.

## What it does not do

The package holds no ledger logic of its own: it does not execute or
validate transactions, build blocks, keep an order book, derive or encode
addresses, or define a genesis format. A `Controller` must provide all of
that. There is no command-line program and no HTTP server of its own; the
service runs inside a WSGI server you choose.