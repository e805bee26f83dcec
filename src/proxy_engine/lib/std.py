"""
Domain: Standard builtins
ID Prefix: std.*

Deterministic helpers reachable from procedure bodies through `primitive`
nodes. Nothing here may read clocks, randomness or the environment: every
result must be a function of the arguments and the transaction context so
that replays produce identical results.

Primitives:
  - std.uuid.next: Next deterministic UUID for the current transaction
  - std.uuid.derive: UUID derived from an arbitrary seed
  - std.count: Number of items in a row set
  - std.first: Column of the first row of a row set
  - std.add: Integer addition
  - std.caller: Identity of the transaction signer
"""
from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from ..kernel.schema import ExecutionContext

# Fixed namespace so every node derives the same ids from the same seeds.
ENGINE_NAMESPACE = uuid.UUID("6f1c8a8e-3d4b-5e1f-9a51-3f0e2c7d9b10")


def uuid_next(_ctx: ExecutionContext) -> Dict[str, Any]:
    """
    Primitive: std.uuid.next

    Derive the next UUID from the transaction id and a per-transaction
    sequence. Two replays of the same transaction yield the same ids in
    the same order.

    Returns:
        {"status": "success", "value": "<uuid>"}
    """
    seq = _ctx.tx.next_sequence()
    value = uuid.uuid5(ENGINE_NAMESPACE, f"{_ctx.txid}:{seq}")
    return {"status": "success", "value": str(value)}


def uuid_derive(seed: Any, _ctx: ExecutionContext) -> Dict[str, Any]:
    """
    Primitive: std.uuid.derive

    Returns:
        {"status": "success", "value": "<uuid>"}
    """
    value = uuid.uuid5(ENGINE_NAMESPACE, str(seed))
    return {"status": "success", "value": str(value)}


def count(rows: Optional[List[Any]], _ctx: ExecutionContext) -> Dict[str, Any]:
    return {"status": "success", "value": len(rows or [])}


def first(
    rows: Optional[List[Dict[str, Any]]],
    column: str,
    _ctx: ExecutionContext,
    default: Any = None,
) -> Dict[str, Any]:
    """
    Primitive: std.first

    Returns:
        {"status": "success", "value": <column of first row>, "found": True}
        {"status": "success", "value": <default>, "found": False}
    """
    if not rows:
        return {"status": "success", "value": default, "found": False}
    return {"status": "success", "value": rows[0].get(column, default), "found": True}


def add(a: int, b: int, _ctx: ExecutionContext) -> Dict[str, Any]:
    """
    Primitive: std.add

    Integer addition; use a negative `b` to count down.

    Returns:
        {"status": "success", "value": a + b}
    """
    if isinstance(a, bool) or isinstance(b, bool) or not isinstance(a, int) or not isinstance(b, int):
        raise TypeError(f"std.add takes integers, got {a!r} and {b!r}")
    return {"status": "success", "value": a + b}


def caller(_ctx: ExecutionContext) -> Dict[str, Any]:
    return {"status": "success", "value": _ctx.caller}


BUILTINS = {
    "std.uuid.next": "proxy_engine.lib.std.uuid_next",
    "std.uuid.derive": "proxy_engine.lib.std.uuid_derive",
    "std.count": "proxy_engine.lib.std.count",
    "std.first": "proxy_engine.lib.std.first",
    "std.add": "proxy_engine.lib.std.add",
    "std.caller": "proxy_engine.lib.std.caller",
}
