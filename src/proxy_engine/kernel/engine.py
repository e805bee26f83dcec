"""
ProxyEngine: the single entry point for every surface.

Architecture:
    CLI ────┐
    API ────┼──> ProxyEngine.call() ──> Invoker ──> VM ──> Resolver ──> Invoker ...
    SDK ────┘

`deploy` compiles and registers a schema. `call` opens one transaction,
runs the whole call chain inside it, and either commits everything or
nothing. No exception crosses `call`: every outcome is a CallResult.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from ..config import EngineConfig
from ..identity import SignedCall, verify_call
from ..lib.io import sys_log
from ..lib.std import BUILTINS
from .compiler import compile_schema
from .dispatch import ForeignDispatchResolver
from .errors import EngineError, ErrorKind, ExecutionError
from .invoker import Args, ProcedureInvoker
from .registry import PrimitiveRegistry, SchemaRegistry
from .schema import ExecutionContext, SchemaDescriptor
from .store import TableStore
from .vm import ProcedureVM


class CapabilityKind(Enum):
    """The two kinds of callables a schema declares."""
    PROCEDURE = "procedure"
    FOREIGN = "foreign"


@dataclass
class Capability:
    """A discoverable procedure or foreign stub of a schema."""
    id: str
    kind: CapabilityKind
    signature: str
    modifiers: List[str] = field(default_factory=list)
    externally_callable: bool = False


@dataclass
class CallResult:
    """Result of a top-level call."""
    ok: bool
    value: Any = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    error_details: Dict[str, Any] = field(default_factory=dict)
    delta: List[Dict[str, Any]] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)
    txid: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        result: Dict[str, Any] = {"ok": self.ok, "txid": self.txid}
        if self.ok:
            result["value"] = _jsonable(self.value)
            result["delta"] = self.delta
            result["notices"] = self.notices
        else:
            result["error_kind"] = self.error_kind
            result["error_message"] = self.error_message
            result["error_details"] = _jsonable(self.error_details)
        return result


def _jsonable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def derive_txid(schema_id: str, procedure: str, args: Args, caller: str, height: int) -> str:
    """Deterministic transaction id for unsigned calls."""
    canonical = json.dumps(
        {
            "schema_id": schema_id,
            "procedure": procedure,
            "args": _jsonable(args if args is not None else []),
            "caller": caller,
            "height": height,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ProxyEngine:
    """
    Hosts deployed schemas and executes calls against them.

    Example:
        engine = ProxyEngine("path/to/db")
        schema_id = engine.deploy(source, deployer="alice")
        result = engine.call(schema_id, "register_owner", [], caller="alice")
    """

    def __init__(self, db_path: Optional[str] = None, config: Optional[EngineConfig] = None):
        """
        Args:
            db_path: Path to the engine's SQLite database (overrides config.db_path).
            config: Engine settings; defaults to EngineConfig().
        """
        self.config = config or EngineConfig()
        self.db_path = db_path or self.config.db_path
        self._store: Optional[TableStore] = None
        self._registry: Optional[SchemaRegistry] = None
        self._invoker: Optional[ProcedureInvoker] = None
        self._hydrated = False

    def _ensure_hydrated(self) -> None:
        """Lazily open the store and wire the components together."""
        if self._hydrated:
            return

        self._store = TableStore(self.db_path)
        self._registry = SchemaRegistry(self._store)
        self._registry.hydrate()

        primitives = PrimitiveRegistry()
        for primitive_id, python_ref in BUILTINS.items():
            primitives.register(primitive_id, python_ref)

        vm = ProcedureVM(primitives, max_steps=self.config.max_steps)
        self._invoker = ProcedureInvoker(self._registry, vm)
        resolver = ForeignDispatchResolver(self._registry, self._invoker)
        vm.set_call_handlers(self._invoker.invoke_local, resolver.resolve_and_call)
        self._hydrated = True

    @property
    def store(self) -> TableStore:
        self._ensure_hydrated()
        assert self._store is not None
        return self._store

    @property
    def registry(self) -> SchemaRegistry:
        self._ensure_hydrated()
        assert self._registry is not None
        return self._registry

    def deploy(self, schema_source: Union[str, Dict[str, Any]], deployer: str, height: int = 0) -> str:
        """
        Compile and register a schema owned by `deployer`.

        Returns:
            The new schema id.

        Raises:
            CompileError: If the source does not compile.
            DuplicateSchema: If `deployer` already deployed a schema with this name.
        """
        descriptor = compile_schema(schema_source, owner=deployer, height=height)
        self.registry.register(descriptor)
        return descriptor.id

    def call(
        self,
        schema_id: str,
        procedure: str,
        args: Args = None,
        caller: str = "",
        txid: Optional[str] = None,
        height: int = 0,
        output_sink: Optional[Callable[[str], None]] = None,
    ) -> CallResult:
        """
        Run one top-level transaction.

        Args:
            schema_id: Schema to enter.
            procedure: Procedure name; must be public or owner.
            args: Positional list or name mapping.
            caller: Identity of the transaction signer.
            txid: Transaction id; derived from the call when omitted.
            height: Block height visible to procedure bodies.
            output_sink: Callback for notices and trace lines.

        Returns:
            CallResult; `ok` is False for every failure at any depth.
        """
        self._ensure_hydrated()
        assert self._invoker is not None
        try:
            txid = txid or derive_txid(schema_id, procedure, args, caller, height)
        except (TypeError, ValueError) as exc:
            return self._failure(ErrorKind.EXECUTION_ERROR.value, f"Cannot derive txid: {exc}", {}, None)

        if not isinstance(txid, str):
            return self._failure(
                ErrorKind.EXECUTION_ERROR.value, f"txid must be a string, got {type(txid).__name__}", {}, None
            )
        if not isinstance(caller, str):
            return self._failure(
                ErrorKind.EXECUTION_ERROR.value,
                f"caller must be a string identity, got {type(caller).__name__}",
                {},
                txid,
            )
        if isinstance(height, bool) or not isinstance(height, int):
            return self._failure(
                ErrorKind.EXECUTION_ERROR.value,
                f"height must be an integer, got {type(height).__name__}",
                {},
                txid,
            )

        try:
            tx = self.store.begin()
        except EngineError as exc:
            return self._failure(exc.kind.value, exc.message, exc.details, txid)

        ctx = ExecutionContext(
            caller=caller,
            txid=txid,
            height=height,
            tx=tx,
            max_depth=self.config.max_call_depth,
            trace=self.config.trace,
            output_sink=output_sink,
        )

        try:
            value = self._invoker.invoke(schema_id, procedure, args, ctx, external=True)
            notices = tx.notices
            delta = ctx.commit()
        except EngineError as exc:
            ctx.rollback()
            sys_log(f"rollback {exc.kind.value}: {exc.message}", ctx, level="debug")
            return self._failure(exc.kind.value, exc.message, exc.details, txid)
        except sqlite3.Error as exc:
            ctx.rollback()
            return self._failure(ErrorKind.STORAGE_ERROR.value, str(exc), {}, txid)
        except Exception as exc:
            ctx.rollback()
            return self._failure(ErrorKind.EXECUTION_ERROR.value, f"{type(exc).__name__}: {exc}", {}, txid)

        sys_log(f"commit {txid[:12]} ({len(delta)} changes)", ctx, level="debug")
        return CallResult(ok=True, value=value, delta=delta, notices=notices, txid=txid)

    def call_signed(
        self,
        envelope: SignedCall,
        output_sink: Optional[Callable[[str], None]] = None,
    ) -> CallResult:
        """Verify a signed envelope and run it with the signer as caller."""
        try:
            caller = verify_call(envelope)
        except EngineError as exc:
            return self._failure(exc.kind.value, exc.message, exc.details, None)

        payload = envelope.payload
        return self.call(
            payload.schema_id,
            payload.procedure,
            payload.args,
            caller=caller,
            txid=envelope.digest(),
            height=payload.height,
            output_sink=output_sink,
        )

    def _failure(self, kind: str, message: str, details: Dict[str, Any], txid: Optional[str]) -> CallResult:
        return CallResult(
            ok=False,
            error_kind=kind,
            error_message=message,
            error_details=details,
            txid=txid,
        )

    def describe(self, schema_id: str) -> SchemaDescriptor:
        return self.registry.lookup(schema_id)

    def list_schemas(self) -> List[SchemaDescriptor]:
        return self.registry.list()

    def list_capabilities(self, schema_id: str) -> List[Capability]:
        """Every procedure and foreign stub a schema declares."""
        descriptor = self.registry.lookup(schema_id)
        capabilities: List[Capability] = []
        for name, proc in descriptor.procedures.items():
            sig = proc.signature
            capabilities.append(Capability(
                id=f"{descriptor.name}.{name}",
                kind=CapabilityKind.PROCEDURE,
                signature=sig.describe(),
                modifiers=[m.value for m in sig.modifiers],
                externally_callable=sig.is_public or sig.is_owner_only,
            ))
        for name, stub in descriptor.foreign.items():
            capabilities.append(Capability(
                id=f"{descriptor.name}.{name}",
                kind=CapabilityKind.FOREIGN,
                signature=stub.describe(),
            ))
        return capabilities

    def dump_table(self, schema_id: str, table: str) -> List[Dict[str, Any]]:
        """Committed rows of one of a schema's tables."""
        descriptor = self.registry.lookup(schema_id)
        table_def = descriptor.tables.get(table)
        if table_def is None:
            raise ExecutionError(f"Schema {descriptor.name} has no table {table!r}")
        return self.store.dump(schema_id, table_def)

    def close(self) -> None:
        """Close the engine and release resources."""
        if self._store:
            self._store.close()
            self._store = None
        self._registry = None
        self._invoker = None
        self._hydrated = False
