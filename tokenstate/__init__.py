"""Token ledger state storage and a JSON-RPC service and client for querying it."""

__version__ = "0.0.1"
__all__ = ["storage", "rpc"]