"""
Foreign Dispatch Resolver.

A foreign call names its target schema and procedure with values computed
at run time (typically read from the caller's own configuration table).
The resolver looks the target up on every call, checks that its signature
matches the stub the caller compiled against, and only then hands the call
to the invoker. Nothing is cached between calls: repointing the stored
target takes effect on the next transaction.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..lib.io import sys_log
from .errors import IncompatibleForeignSignature
from .invoker import Args, ProcedureInvoker
from .registry import SchemaRegistry
from .schema import CallableSignature, ExecutionContext, ForeignProcedureStub, ReturnKind


def signature_mismatches(stub: CallableSignature, target: CallableSignature) -> List[str]:
    """Structural differences between a stub and a real procedure.

    Parameter names and return column names are not compared.
    """
    problems: List[str] = []

    if len(stub.params) != len(target.params):
        problems.append(f"expects {len(stub.params)} parameters, target takes {len(target.params)}")
    else:
        for idx, (want, have) in enumerate(zip(stub.params, target.params), start=1):
            if want.type != have.type:
                problems.append(f"parameter {idx} is {have.type.value}, stub declares {want.type.value}")

    want_ret, have_ret = stub.returns, target.returns
    if want_ret.kind != have_ret.kind:
        problems.append(f"returns {have_ret.describe()}, stub declares {want_ret.describe()}")
    elif want_ret.kind == ReturnKind.SCALAR and want_ret.type != have_ret.type:
        problems.append(f"returns {have_ret.describe()}, stub declares {want_ret.describe()}")
    elif want_ret.kind == ReturnKind.TABLE:
        if len(want_ret.columns) != len(have_ret.columns):
            problems.append(
                f"returns {len(have_ret.columns)} columns, stub declares {len(want_ret.columns)}"
            )
        else:
            for idx, (want, have) in enumerate(zip(want_ret.columns, have_ret.columns), start=1):
                if want.type != have.type:
                    problems.append(
                        f"return column {idx} is {have.type.value}, stub declares {want.type.value}"
                    )
    return problems


def signatures_compatible(stub: CallableSignature, target: CallableSignature) -> bool:
    return not signature_mismatches(stub, target)


class ForeignDispatchResolver:
    def __init__(self, registry: SchemaRegistry, invoker: ProcedureInvoker) -> None:
        self._registry = registry
        self._invoker = invoker

    def resolve_and_call(
        self,
        stub: ForeignProcedureStub,
        target_schema_id: Optional[str],
        target_procedure: Optional[str],
        args: Args,
        ctx: ExecutionContext,
    ) -> Any:
        descriptor = self._registry.lookup(target_schema_id)
        proc = self._registry.procedure(descriptor.id, target_procedure)

        problems = signature_mismatches(stub, proc.signature)
        if problems:
            raise IncompatibleForeignSignature(
                f"{descriptor.name}.{proc.signature.name} does not match foreign procedure "
                f"{stub.name}: {'; '.join(problems)}",
                details={
                    "stub": stub.describe(),
                    "target": proc.signature.describe(),
                    "schema_id": descriptor.id,
                },
            )

        sys_log(f"foreign {stub.name} -> {descriptor.name}.{proc.signature.name}", ctx, level="debug")
        value = self._invoker.invoke(descriptor.id, proc.signature.name, args, ctx, external=True)
        return self._rename_columns(stub, value)

    def _rename_columns(self, stub: ForeignProcedureStub, value: Any) -> Any:
        """Rows come back keyed by the stub's column names, matched by position."""
        if stub.returns.kind != ReturnKind.TABLE or not value:
            return value
        renamed: List[Dict[str, Any]] = []
        for row in value:
            cells = list(row.values())
            renamed.append({col.name: cell for col, cell in zip(stub.returns.columns, cells)})
        return renamed
