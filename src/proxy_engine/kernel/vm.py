"""
Procedure Virtual Machine: runs procedure body graphs.

A body is a graph of nodes joined by (optionally conditional) edges. Each
node's result is stored in memory under the node id, next to `inputs` and
`ctx`. Table statements go to the storage collaborator through the shared
transaction handle; `call` and `foreign` nodes yield control back to the
invoker and the foreign dispatch resolver.
"""

from __future__ import annotations

import inspect
import re
from typing import Any, Callable, Dict, List, Optional

from ..lib.io import sys_log
from .errors import ApplicationError, EngineError, ExecutionError, MutationInViewContext
from .registry import PrimitiveRegistry
from .schema import (
    MUTATING_NODES,
    BodyNode,
    ConditionOp,
    EdgeCondition,
    ExecutionContext,
    ForeignProcedureStub,
    NodeKind,
    ProcedureBody,
    ProcedureDef,
    SchemaDescriptor,
    TableOp,
    TableOpKind,
    value_matches,
)

# (schema_id, procedure_name, args, ctx) -> value
LocalCaller = Callable[[str, str, List[Any], ExecutionContext], Any]
# (stub, target_schema_id, target_procedure, args, ctx) -> value
ForeignCaller = Callable[[ForeignProcedureStub, Any, Any, List[Any], ExecutionContext], Any]

DEFAULT_MAX_STEPS = 10_000

TEMPLATE = re.compile(r"{(\$\.[^}]+)}")


class ProcedureVM:
    def __init__(
        self,
        primitives: PrimitiveRegistry,
        max_steps: int = DEFAULT_MAX_STEPS,
    ) -> None:
        self._primitives = primitives
        self._max_steps = max_steps
        self._call_local: Optional[LocalCaller] = None
        self._call_foreign: Optional[ForeignCaller] = None

    def set_call_handlers(self, local: LocalCaller, foreign: ForeignCaller) -> None:
        """Register the callbacks for `call` and `foreign` nodes.

        Keeps the VM free of imports from invoker and dispatch.
        """
        self._call_local = local
        self._call_foreign = foreign

    def run(
        self,
        descriptor: SchemaDescriptor,
        procedure: ProcedureDef,
        args: Dict[str, Any],
        ctx: ExecutionContext,
    ) -> Any:
        """Execute a body to completion and return the value of its return node."""
        body = procedure.body
        memory: Dict[str, Any] = {"inputs": args, "ctx": ctx.memory_view()}
        cursor: Optional[str] = body.start
        steps = 0

        while cursor is not None:
            steps += 1
            if steps > self._max_steps:
                raise ExecutionError(
                    f"{descriptor.name}.{procedure.signature.name} exceeded {self._max_steps} steps"
                )

            node = body.nodes[cursor]
            if node.kind == NodeKind.RETURN:
                return self._resolve_value(node.value, memory)

            memory[cursor] = self._execute(descriptor, cursor, node, memory, ctx)
            cursor = self._advance_cursor(body, cursor, memory)

        return None

    def _execute(
        self,
        descriptor: SchemaDescriptor,
        node_id: str,
        node: BodyNode,
        memory: Dict[str, Any],
        ctx: ExecutionContext,
    ) -> Any:
        sys_log(f"{descriptor.name}:{node_id} ({node.kind.value})", ctx, level="debug")

        if node.kind in (NodeKind.SELECT, NodeKind.INSERT, NodeKind.UPDATE, NodeKind.DELETE):
            return self._execute_table(descriptor, node_id, node, memory, ctx)

        if node.kind == NodeKind.CALL:
            if self._call_local is None:
                raise ExecutionError("No local call handler registered")
            args = self._resolve_value(node.args, memory)
            return self._call_local(descriptor.id, node.ref or "", args, ctx)

        if node.kind == NodeKind.FOREIGN:
            if self._call_foreign is None:
                raise ExecutionError("No foreign call handler registered")
            stub = descriptor.foreign.get(node.ref or "")
            if stub is None:
                raise ExecutionError(f"Node {node_id}: foreign procedure {node.ref!r} is not declared")
            # Two-phase dispatch: the target is an ordinary value computed
            # by earlier nodes; lookup and validation happen in the resolver.
            target = self._resolve_value(node.target, memory)
            procedure = self._resolve_value(node.procedure, memory)
            args = self._resolve_value(node.args, memory)
            return self._call_foreign(stub, target, procedure, args, ctx)

        if node.kind == NodeKind.PRIMITIVE:
            return self._execute_primitive(node_id, node, memory, ctx)

        if node.kind == NodeKind.NOTICE:
            message = str(self._resolve_value(node.message, memory))
            ctx.tx.add_notice(message)
            sys_log(message, ctx, level="notice")
            return message

        if node.kind == NodeKind.ERROR:
            message = self._resolve_value(node.message, memory)
            raise ApplicationError(str(message), details={"schema_id": descriptor.id, "node": node_id})

        raise ExecutionError(f"Unknown node kind: {node.kind}")

    def _execute_table(
        self,
        descriptor: SchemaDescriptor,
        node_id: str,
        node: BodyNode,
        memory: Dict[str, Any],
        ctx: ExecutionContext,
    ) -> Any:
        if node.kind in MUTATING_NODES and ctx.read_only:
            raise MutationInViewContext(
                f"Node {node_id} attempts {node.kind.value} on {node.table!r} inside a view call",
                details={"schema_id": descriptor.id, "table": node.table},
            )

        # Schema-scoped: only this schema's own tables are addressable.
        table_def = descriptor.tables.get(node.table or "")
        if table_def is None:
            raise ExecutionError(f"Node {node_id}: unknown table {node.table!r}")

        op = TableOp(
            kind=TableOpKind(node.kind.value),
            table=table_def.name,
            values=self._map_inputs(node.values, memory),
            where=self._map_inputs(node.where, memory),
            assign=self._map_inputs(node.assign, memory),
            columns=node.columns,
            limit=node.limit,
            on_conflict=node.on_conflict,
        )
        for name, value in {**op.values, **op.assign, **op.where}.items():
            col = table_def.column(name)
            if col is not None and not value_matches(value, col.type):
                raise ExecutionError(
                    f"Node {node_id}: value {value!r} is not a valid {col.type.value} for {table_def.name}.{name}"
                )
        return ctx.tx.execute(descriptor.id, table_def, op)

    def _execute_primitive(
        self,
        node_id: str,
        node: BodyNode,
        memory: Dict[str, Any],
        ctx: ExecutionContext,
    ) -> Any:
        primitive = self._primitives.get(node.ref or "")
        if primitive is None or primitive.handler is None:
            raise ExecutionError(f"Node {node_id}: primitive {node.ref!r} not found")

        kwargs = self._map_inputs(node.inputs, memory)

        # Inject execution context if the handler accepts it
        sig = inspect.signature(primitive.handler)
        if "_ctx" in sig.parameters or any(
            p.kind == inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values()
        ):
            kwargs["_ctx"] = ctx

        try:
            return primitive.handler(**kwargs)
        except EngineError:
            raise
        except Exception as exc:
            raise ExecutionError(f"Node {node_id}: primitive {node.ref!r} failed: {exc}") from exc

    def _resolve_value(self, pointer: Any, memory: Dict[str, Any]) -> Any:
        # Recursively resolve nested dicts
        if isinstance(pointer, dict):
            return {k: self._resolve_value(v, memory) for k, v in pointer.items()}

        # Recursively resolve nested lists
        if isinstance(pointer, list):
            return [self._resolve_value(item, memory) for item in pointer]

        if not isinstance(pointer, str):
            return pointer

        if pointer.startswith("$."):
            path = pointer[2:].split(".")
            value: Any = memory
            for segment in path:
                if isinstance(value, dict) and segment in value:
                    value = value[segment]
                elif isinstance(value, list) and segment.isdigit():
                    idx = int(segment)
                    if 0 <= idx < len(value):
                        value = value[idx]
                    else:
                        return None
                else:
                    return None
            return value

        def replacer(match: re.Match[str]) -> str:
            resolved = self._resolve_value(match.group(1), memory)
            return "" if resolved is None else str(resolved)

        if "{" in pointer and "$." in pointer:
            return TEMPLATE.sub(replacer, pointer)

        return pointer

    def _map_inputs(self, node_inputs: Dict[str, Any], memory: Dict[str, Any]) -> Dict[str, Any]:
        return {key: self._resolve_value(ref, memory) for key, ref in node_inputs.items()}

    def _evaluate_condition(self, condition: EdgeCondition, memory: Dict[str, Any]) -> bool:
        actual = self._resolve_value(condition.path, memory)
        expected = self._resolve_value(condition.value, memory)

        if condition.op == ConditionOp.EQ:
            return actual == expected
        if condition.op == ConditionOp.NEQ:
            return actual != expected
        if condition.op in (ConditionOp.GT, ConditionOp.LT):
            if actual is None or expected is None:
                return False
            try:
                return actual > expected if condition.op == ConditionOp.GT else actual < expected
            except TypeError:
                return False
        if condition.op == ConditionOp.EMPTY:
            return not actual
        if condition.op == ConditionOp.NOT_EMPTY:
            return bool(actual)
        if condition.op == ConditionOp.CONTAINS:
            try:
                return expected in actual
            except TypeError:
                return False
        return False

    def _advance_cursor(
        self,
        body: ProcedureBody,
        current_node_id: str,
        memory: Dict[str, Any],
    ) -> Optional[str]:
        candidates = [edge for edge in body.edges if edge.from_node == current_node_id]

        # 1. Conditional edges, in declaration order
        for edge in candidates:
            if edge.condition and self._evaluate_condition(edge.condition, memory):
                return edge.to_node

        # 2. The default edge of a conditional branch
        default_edge = next((edge for edge in candidates if edge.default), None)
        if default_edge:
            return default_edge.to_node

        # 3. Plain sequential flow
        unconditional_edge = next(
            (edge for edge in candidates if not edge.condition and not edge.default),
            None,
        )
        if unconditional_edge:
            return unconditional_edge.to_node

        # End of flow without a return node
        return None
