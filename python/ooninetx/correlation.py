"""
Propagates correlation IDs through the call context.

The dialer knows the dial ID and the HTTP transport knows the transaction
ID, but the resolver and the TLS dialer also need to tag their events with
the same IDs. Rather than coupling the wrappers together, we thread an
immutable Context through every call and stash the IDs inside it.

Corresponds to netx/internal/dialid and netx/internal/transactionid.
"""

from __future__ import annotations
from typing import (
    Any,
    Dict,
    Optional,
)


class Context:
    """Immutable key-value association passed down the call stack.

    Deriving a new context never modifies the parent context, hence it is
    safe to share a context between concurrent operations."""

    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, Any] = dict(values or {})

    def with_value(self, key: str, value: Any) -> Context:
        """Returns a new context where key is bound to value."""
        values = dict(self._values)
        values[key] = value
        return Context(values)

    def value(self, key: str, default: Any = None) -> Any:
        """Returns the value bound to key or default."""
        return self._values.get(key, default)

    def __repr__(self) -> str:
        return f"Context({self._values!r})"


BACKGROUND = Context()

_DIAL_ID_KEY = "dial_id"
_TRANSACTION_ID_KEY = "transaction_id"


def with_dial_id(ctx: Context, dial_id: int) -> Context:
    """Returns a copy of ctx carrying the given dial ID."""
    return ctx.with_value(_DIAL_ID_KEY, dial_id)


def dial_id(ctx: Context) -> int:
    """Returns the dial ID or zero if not set."""
    return int(ctx.value(_DIAL_ID_KEY, 0))


def with_transaction_id(ctx: Context, transaction_id: int) -> Context:
    """Returns a copy of ctx carrying the given transaction ID."""
    return ctx.with_value(_TRANSACTION_ID_KEY, transaction_id)


def transaction_id(ctx: Context) -> int:
    """Returns the transaction ID or zero if not set."""
    return int(ctx.value(_TRANSACTION_ID_KEY, 0))
