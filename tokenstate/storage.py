"""Key layout and value encoding for token chain state.

Metadata
  0x0/ (tx)       [txID] => timestamp|success|units

State
  0x0/ (balance)  [owner|asset] => balance
  0x1/ (assets)   [asset] => metadataLen|metadata|supply|owner|warp
  0x2/ (orders)   [txID] => in|inTick|out|outTick|remaining|owner
  0x3/ (loans)    [asset|destination] => amount
  0x4/ (height)
  0x5/ (incoming warp)
  0x6/ (outgoing warp)
"""

from __future__ import annotations

import struct
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Optional, Protocol

ID_LEN = 32
PUBLIC_KEY_LEN = 32
UINT64_LEN = 8
UINT16_LEN = 2
MAX_UINT64 = 2**64 - 1
MAX_UINT16 = 2**16 - 1

TX_PREFIX = 0x0

BALANCE_PREFIX = 0x0
ASSET_PREFIX = 0x1
ORDER_PREFIX = 0x2
LOAN_PREFIX = 0x3
HEIGHT_PREFIX = 0x4
INCOMING_WARP_PREFIX = 0x5
OUTGOING_WARP_PREFIX = 0x6

FAILURE_BYTE = 0x0
SUCCESS_BYTE = 0x1

_HEIGHT_KEY = bytes([HEIGHT_PREFIX])

EMPTY_PUBLIC_KEY = bytes(PUBLIC_KEY_LEN)
EMPTY_ID = bytes(ID_LEN)


class NotFoundError(LookupError):
    """Raised by a database when a key is absent."""

    def __init__(self, message: str = "not found") -> None:
        super().__init__(message)


class InvalidBalanceError(ValueError):
    """Raised when a balance or loan would overflow or go negative."""

    def __init__(self, detail: str = "") -> None:
        message = "invalid balance"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class Database(Protocol):
    def get_value(self, key: bytes) -> bytes: ...

    def insert(self, key: bytes, value: bytes) -> None: ...

    def remove(self, key: bytes) -> None: ...


ReadState = Callable[[Sequence[bytes]], Sequence[Optional[bytes]]]


@dataclass(frozen=True)
class TransactionRecord:
    timestamp: int
    success: bool
    units: int


@dataclass(frozen=True)
class AssetRecord:
    metadata: bytes
    supply: int
    owner: bytes
    warp: bool


@dataclass(frozen=True)
class OrderRecord:
    in_asset: bytes
    in_tick: int
    out_asset: bytes
    out_tick: int
    remaining: int
    owner: bytes


class MemoryDatabase:
    """An in-memory key/value store."""

    def __init__(self) -> None:
        self._data: dict[bytes, bytes] = {}

    def get_value(self, key: bytes) -> bytes:
        try:
            return self._data[bytes(key)]
        except KeyError:
            raise NotFoundError() from None

    def insert(self, key: bytes, value: bytes) -> None:
        self._data[bytes(key)] = bytes(value)

    def remove(self, key: bytes) -> None:
        self._data.pop(bytes(key), None)

    def read_state(self, keys: Iterable[bytes]) -> list[Optional[bytes]]:
        """Return the value of each key, or None where the key is absent."""
        return [self._data.get(bytes(key)) for key in keys]

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)


def _check_len(value: bytes, length: int, what: str) -> bytes:
    value = bytes(value)
    if len(value) != length:
        raise ValueError(f"{what} must be {length} bytes, got {len(value)}")
    return value


def _id(value: bytes, what: str = "id") -> bytes:
    return _check_len(value, ID_LEN, what)


def _pk(value: bytes) -> bytes:
    return _check_len(value, PUBLIC_KEY_LEN, "public key")


def _u64(value: int, what: str) -> bytes:
    if not 0 <= value <= MAX_UINT64:
        raise ValueError(f"{what} out of uint64 range: {value}")
    return struct.pack(">Q", value)


def _read_u64(data: bytes, offset: int = 0) -> int:
    return struct.unpack_from(">Q", data, offset)[0]


def _checked_add(a: int, b: int) -> Optional[int]:
    total = a + b
    return total if total <= MAX_UINT64 else None


def _checked_sub(a: int, b: int) -> Optional[int]:
    return a - b if b <= a else None


# Transactions


def prefix_tx_key(tx_id: bytes) -> bytes:
    """[txPrefix] + [txID]"""
    return bytes([TX_PREFIX]) + _id(tx_id, "transaction id")


def store_transaction(
    db: Database, tx_id: bytes, timestamp: int, success: bool, units: int
) -> None:
    value = (
        struct.pack(">q", timestamp)
        + bytes([SUCCESS_BYTE if success else FAILURE_BYTE])
        + _u64(units, "units")
    )
    db.insert(prefix_tx_key(tx_id), value)


def get_transaction(db: Database, tx_id: bytes) -> Optional[TransactionRecord]:
    """Return the stored transaction, or None if it is unknown."""
    try:
        value = db.get_value(prefix_tx_key(tx_id))
    except NotFoundError:
        return None
    timestamp = struct.unpack_from(">q", value, 0)[0]
    success = value[UINT64_LEN] != FAILURE_BYTE
    units = _read_u64(value, UINT64_LEN + 1)
    return TransactionRecord(timestamp, success, units)


# Balances


def prefix_balance_key(pk: bytes, asset: bytes) -> bytes:
    """[balancePrefix] + [address] + [asset]"""
    return bytes([BALANCE_PREFIX]) + _pk(pk) + _id(asset, "asset")


def _decode_u64_or_zero(value: Optional[bytes]) -> int:
    return 0 if value is None else _read_u64(value)


def _db_lookup(db: Database, key: bytes) -> Optional[bytes]:
    try:
        return db.get_value(key)
    except NotFoundError:
        return None


def get_balance(db: Database, pk: bytes, asset: bytes) -> int:
    """Return the balance; an absent account has balance 0."""
    return _decode_u64_or_zero(_db_lookup(db, prefix_balance_key(pk, asset)))


def get_balance_from_state(read_state: ReadState, pk: bytes, asset: bytes) -> int:
    """Balance lookup used to serve RPC queries."""
    return _decode_u64_or_zero(read_state([prefix_balance_key(pk, asset)])[0])


def set_balance(db: Database, pk: bytes, asset: bytes, balance: int) -> None:
    db.insert(prefix_balance_key(pk, asset), _u64(balance, "balance"))


def delete_balance(db: Database, pk: bytes, asset: bytes) -> None:
    db.remove(prefix_balance_key(pk, asset))


def add_balance(db: Database, pk: bytes, asset: bytes, amount: int) -> None:
    key = prefix_balance_key(pk, asset)
    balance = _decode_u64_or_zero(_db_lookup(db, key))
    new_balance = _checked_add(balance, amount)
    if new_balance is None:
        raise InvalidBalanceError(
            f"could not add balance (asset={bytes(asset).hex()}, bal={balance}, "
            f"addr={bytes(pk).hex()}, amount={amount})"
        )
    db.insert(key, _u64(new_balance, "balance"))


def sub_balance(db: Database, pk: bytes, asset: bytes, amount: int) -> None:
    key = prefix_balance_key(pk, asset)
    balance = _decode_u64_or_zero(_db_lookup(db, key))
    new_balance = _checked_sub(balance, amount)
    if new_balance is None:
        raise InvalidBalanceError(
            f"could not subtract balance (asset={bytes(asset).hex()}, bal={balance}, "
            f"addr={bytes(pk).hex()}, amount={amount})"
        )
    if new_balance == 0:
        # An empty balance is removed rather than stored as zero.
        db.remove(key)
        return
    db.insert(key, _u64(new_balance, "balance"))


# Assets


def prefix_asset_key(asset: bytes) -> bytes:
    """[assetPrefix] + [asset]"""
    return bytes([ASSET_PREFIX]) + _id(asset, "asset")


def _decode_asset(value: Optional[bytes]) -> Optional[AssetRecord]:
    if value is None:
        return None
    metadata_len = struct.unpack_from(">H", value, 0)[0]
    start = UINT16_LEN
    metadata = bytes(value[start : start + metadata_len])
    offset = start + metadata_len
    supply = _read_u64(value, offset)
    offset += UINT64_LEN
    owner = bytes(value[offset : offset + PUBLIC_KEY_LEN])
    warp = value[offset + PUBLIC_KEY_LEN] == 0x1
    return AssetRecord(metadata, supply, owner, warp)


def get_asset(db: Database, asset: bytes) -> Optional[AssetRecord]:
    """Return the asset, or None if it does not exist."""
    return _decode_asset(_db_lookup(db, prefix_asset_key(asset)))


def get_asset_from_state(read_state: ReadState, asset: bytes) -> Optional[AssetRecord]:
    """Asset lookup used to serve RPC queries."""
    return _decode_asset(read_state([prefix_asset_key(asset)])[0])


def set_asset(
    db: Database,
    asset: bytes,
    metadata: bytes,
    supply: int,
    owner: bytes,
    warp: bool,
) -> None:
    metadata = bytes(metadata)
    if len(metadata) > MAX_UINT16:
        raise ValueError(f"metadata too long: {len(metadata)} bytes")
    value = (
        struct.pack(">H", len(metadata))
        + metadata
        + _u64(supply, "supply")
        + _pk(owner)
        + bytes([0x1 if warp else 0x0])
    )
    db.insert(prefix_asset_key(asset), value)


def delete_asset(db: Database, asset: bytes) -> None:
    db.remove(prefix_asset_key(asset))


# Orders


def prefix_order_key(tx_id: bytes) -> bytes:
    """[orderPrefix] + [txID]"""
    return bytes([ORDER_PREFIX]) + _id(tx_id, "order id")


def set_order(
    db: Database,
    tx_id: bytes,
    in_asset: bytes,
    in_tick: int,
    out_asset: bytes,
    out_tick: int,
    supply: int,
    owner: bytes,
) -> None:
    value = (
        _id(in_asset, "in asset")
        + _u64(in_tick, "in tick")
        + _id(out_asset, "out asset")
        + _u64(out_tick, "out tick")
        + _u64(supply, "supply")
        + _pk(owner)
    )
    db.insert(prefix_order_key(tx_id), value)


def get_order(db: Database, order: bytes) -> Optional[OrderRecord]:
    """Return the order, or None if it does not exist."""
    value = _db_lookup(db, prefix_order_key(order))
    if value is None:
        return None
    in_asset = bytes(value[:ID_LEN])
    in_tick = _read_u64(value, ID_LEN)
    out_start = ID_LEN + UINT64_LEN
    out_asset = bytes(value[out_start : out_start + ID_LEN])
    out_tick = _read_u64(value, ID_LEN * 2 + UINT64_LEN)
    remaining = _read_u64(value, ID_LEN * 2 + UINT64_LEN * 2)
    owner_start = ID_LEN * 2 + UINT64_LEN * 3
    owner = bytes(value[owner_start : owner_start + PUBLIC_KEY_LEN])
    return OrderRecord(in_asset, in_tick, out_asset, out_tick, remaining, owner)


def delete_order(db: Database, order: bytes) -> None:
    db.remove(prefix_order_key(order))


# Loans


def prefix_loan_key(asset: bytes, destination: bytes) -> bytes:
    """[loanPrefix] + [asset] + [destination]"""
    return bytes([LOAN_PREFIX]) + _id(asset, "asset") + _id(destination, "destination")


def get_loan(db: Database, asset: bytes, destination: bytes) -> int:
    return _decode_u64_or_zero(_db_lookup(db, prefix_loan_key(asset, destination)))


def get_loan_from_state(read_state: ReadState, asset: bytes, destination: bytes) -> int:
    """Loan lookup used to serve RPC queries."""
    return _decode_u64_or_zero(read_state([prefix_loan_key(asset, destination)])[0])


def set_loan(db: Database, asset: bytes, destination: bytes, amount: int) -> None:
    db.insert(prefix_loan_key(asset, destination), _u64(amount, "loan"))


def add_loan(db: Database, asset: bytes, destination: bytes, amount: int) -> None:
    loan = get_loan(db, asset, destination)
    new_loan = _checked_add(loan, amount)
    if new_loan is None:
        raise InvalidBalanceError(
            f"could not add loan (asset={bytes(asset).hex()}, "
            f"destination={bytes(destination).hex()}, amount={amount})"
        )
    set_loan(db, asset, destination, new_loan)


def sub_loan(db: Database, asset: bytes, destination: bytes, amount: int) -> None:
    loan = get_loan(db, asset, destination)
    new_loan = _checked_sub(loan, amount)
    if new_loan is None:
        raise InvalidBalanceError(
            f"could not subtract loan (asset={bytes(asset).hex()}, "
            f"destination={bytes(destination).hex()}, amount={amount})"
        )
    if new_loan == 0:
        db.remove(prefix_loan_key(asset, destination))
        return
    set_loan(db, asset, destination, new_loan)


# Chain bookkeeping keys


def height_key() -> bytes:
    return _HEIGHT_KEY


def incoming_warp_key_prefix(source_chain_id: bytes, msg_id: bytes) -> bytes:
    return (
        bytes([INCOMING_WARP_PREFIX])
        + _id(source_chain_id, "source chain id")
        + _id(msg_id, "message id")
    )


def outgoing_warp_key_prefix(tx_id: bytes) -> bytes:
    return bytes([OUTGOING_WARP_PREFIX]) + _id(tx_id, "transaction id")