"""
Kernel: the machinery of the engine.

- schema: signatures, descriptors, execution context
- store: sqlite table storage and the transaction handle
- registry: write-once schema registry and builtin primitives
- compiler: YAML schema source -> descriptor
- access: modifier-based access control
- vm: procedure body interpreter
- invoker: resolve, check, authorize, execute
- dispatch: late-bound foreign procedure calls
- engine: deploy / call entry point

The kernel is distinct from lib/ (the builtins).
Kernel = machinery. Lib = vocabulary.
"""
from .errors import EngineError, ErrorKind
from .schema import (
    DataType,
    ExecutionContext,
    ForeignProcedureStub,
    Modifier,
    ProcedureSignature,
    ReturnKind,
    ReturnShape,
    SchemaDescriptor,
    TableDef,
)
from .store import TableStore, Transaction
from .registry import PrimitiveRegistry, SchemaRegistry
from .compiler import compile_schema, derive_schema_id
from .vm import ProcedureVM
from .invoker import ProcedureInvoker
from .dispatch import ForeignDispatchResolver, signatures_compatible
from .engine import CallResult, ProxyEngine

__all__ = [
    # Errors
    "EngineError",
    "ErrorKind",
    # Schema
    "DataType",
    "ExecutionContext",
    "ForeignProcedureStub",
    "Modifier",
    "ProcedureSignature",
    "ReturnKind",
    "ReturnShape",
    "SchemaDescriptor",
    "TableDef",
    # Store
    "TableStore",
    "Transaction",
    # Registry
    "PrimitiveRegistry",
    "SchemaRegistry",
    # Compiler
    "compile_schema",
    "derive_schema_id",
    # Execution
    "ProcedureVM",
    "ProcedureInvoker",
    "ForeignDispatchResolver",
    "signatures_compatible",
    # Engine
    "CallResult",
    "ProxyEngine",
]
