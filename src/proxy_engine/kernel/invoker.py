"""
Procedure Invoker: resolve, type-check, authorize, execute.

Every invocation, local or foreign, takes a fresh fork of the caller's
context. The fork bumps the call depth, so runaway call chains (including
a proxy configured to point back at itself) stop at the configured bound.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from ..lib.io import sys_log
from .access import check_access
from .errors import SignatureMismatch
from .registry import SchemaRegistry
from .schema import (
    CallableSignature,
    ExecutionContext,
    ReturnKind,
    ReturnShape,
    value_matches,
)
from .vm import ProcedureVM

Args = Union[Sequence[Any], Mapping[str, Any], None]


def bind_arguments(signature: CallableSignature, args: Args) -> Dict[str, Any]:
    """Match positional or named arguments to the signature's parameters."""
    params = signature.params
    if args is None:
        args = []

    if isinstance(args, Mapping):
        unknown = sorted(set(args) - {p.name for p in params})
        if unknown:
            raise SignatureMismatch(
                f"{signature.name}: unexpected arguments {', '.join(unknown)}",
                details={"expected": [p.name for p in params]},
            )
        missing = [p.name for p in params if p.name not in args]
        if missing:
            raise SignatureMismatch(
                f"{signature.name}: missing arguments {', '.join(missing)}",
                details={"expected": [p.name for p in params]},
            )
        bound = {p.name: args[p.name] for p in params}
    else:
        values = list(args)
        if len(values) != len(params):
            raise SignatureMismatch(
                f"{signature.name} expects {len(params)} arguments, got {len(values)}",
                details={"expected": len(params), "got": len(values)},
            )
        bound = {p.name: value for p, value in zip(params, values)}

    for param in params:
        value = bound[param.name]
        if not value_matches(value, param.type):
            raise SignatureMismatch(
                f"{signature.name}: argument {param.name!r} must be {param.type.value}, got {type(value).__name__}",
                details={"parameter": param.name, "type": param.type.value},
            )
    return bound


def shape_result(name: str, returns: ReturnShape, value: Any) -> Any:
    """Check a body's return value against the declared return shape.

    Table results come back as rows keyed by the declared column names, in
    declared column order.
    """
    if returns.kind == ReturnKind.NONE:
        return None

    if returns.kind == ReturnKind.SCALAR:
        if isinstance(value, (list, dict)) or not value_matches(value, returns.type):
            raise SignatureMismatch(
                f"{name} must return {returns.describe()}, got {value!r}",
                details={"returns": returns.describe()},
            )
        return value

    if value is None:
        return []
    if not isinstance(value, list):
        raise SignatureMismatch(f"{name} must return a table, got {type(value).__name__}")

    rows: List[Dict[str, Any]] = []
    for row in value:
        if isinstance(row, Mapping):
            missing = [c.name for c in returns.columns if c.name not in row]
            if missing:
                raise SignatureMismatch(f"{name}: returned row lacks columns {', '.join(missing)}")
            cells = [row[c.name] for c in returns.columns]
        elif isinstance(row, (list, tuple)) and len(row) == len(returns.columns):
            cells = list(row)
        else:
            raise SignatureMismatch(f"{name}: cannot read returned row {row!r}")

        for col, cell in zip(returns.columns, cells):
            if not value_matches(cell, col.type):
                raise SignatureMismatch(
                    f"{name}: column {col.name!r} must be {col.type.value}, got {cell!r}"
                )
        rows.append({col.name: cell for col, cell in zip(returns.columns, cells)})
    return rows


class ProcedureInvoker:
    def __init__(self, registry: SchemaRegistry, vm: ProcedureVM) -> None:
        self._registry = registry
        self._vm = vm

    def invoke(
        self,
        schema_id: Optional[str],
        procedure_name: Optional[str],
        args: Args,
        ctx: ExecutionContext,
        external: bool = True,
    ) -> Any:
        descriptor = self._registry.lookup(schema_id)
        proc = self._registry.procedure(descriptor.id, procedure_name)
        signature = proc.signature

        bound = bind_arguments(signature, args)
        check_access(signature, descriptor.owner, ctx, external)

        child = ctx.fork(schema_id=descriptor.id, read_only=signature.is_view)
        sys_log(
            f"invoke {descriptor.name}.{signature.name} depth={child.depth}"
            f"{' view' if child.read_only else ''}",
            child,
            level="debug",
        )
        value = self._vm.run(descriptor, proc, bound, child)
        return shape_result(f"{descriptor.name}.{signature.name}", signature.returns, value)

    def invoke_local(
        self,
        schema_id: str,
        procedure_name: str,
        args: Args,
        ctx: ExecutionContext,
    ) -> Any:
        """Intra-schema call: private procedures are reachable here."""
        return self.invoke(schema_id, procedure_name, args, ctx, external=False)
