from __future__ import annotations

from dataclasses import dataclass
from importlib import import_module
from typing import Any, Callable, Dict, List, Optional

from .errors import DuplicateSchema, ProcedureNotFound, UnknownSchema
from .schema import ForeignProcedureStub, ProcedureDef, SchemaDescriptor
from .store import TableStore


class SchemaRegistry:
    """Write-once map from schema id to its compiled descriptor.

    There is deliberately no update operation. A new version of a schema
    is a new deployment with a new id.
    """

    def __init__(self, store: Optional[TableStore] = None) -> None:
        self._schemas: Dict[str, SchemaDescriptor] = {}
        self._store = store

    def hydrate(self) -> None:
        """Load every persisted schema from the store."""
        if self._store is None:
            return
        for descriptor in self._store.iter_schemas():
            self._schemas[descriptor.id] = descriptor

    def register(self, descriptor: SchemaDescriptor) -> None:
        if descriptor.id in self._schemas:
            raise DuplicateSchema(f"Schema already deployed: {descriptor.id}")
        if self._store is not None:
            self._store.save_schema(descriptor)
        self._schemas[descriptor.id] = descriptor

    def lookup(self, schema_id: Optional[str]) -> SchemaDescriptor:
        if not schema_id:
            raise UnknownSchema("No target schema id supplied")
        descriptor = self._schemas.get(schema_id)
        if descriptor is None:
            raise UnknownSchema(f"Unknown schema: {schema_id}", details={"schema_id": schema_id})
        return descriptor

    def procedure(self, schema_id: Optional[str], name: Optional[str]) -> ProcedureDef:
        descriptor = self.lookup(schema_id)
        proc = descriptor.procedures.get(name or "")
        if proc is None:
            raise ProcedureNotFound(
                f"Procedure {name!r} not found in schema {schema_id}",
                details={"schema_id": schema_id, "procedure": name},
            )
        return proc

    def foreign_stub(self, schema_id: str, name: str) -> ForeignProcedureStub:
        descriptor = self.lookup(schema_id)
        stub = descriptor.foreign.get(name)
        if stub is None:
            raise ProcedureNotFound(
                f"Foreign procedure {name!r} is not declared in schema {schema_id}",
                details={"schema_id": schema_id, "procedure": name},
            )
        return stub

    def __contains__(self, schema_id: object) -> bool:
        return schema_id in self._schemas

    def list(self) -> List[SchemaDescriptor]:
        return list(self._schemas.values())


PrimitiveFn = Callable[..., Any]


@dataclass
class PrimitiveRecord:
    id: str
    python_ref: str
    handler: Optional[PrimitiveFn]


class PrimitiveRegistry:
    """Builtin functions procedure bodies reach through `primitive` nodes."""

    def __init__(self) -> None:
        self._registry: Dict[str, PrimitiveRecord] = {}

    def register(self, primitive_id: str, python_ref: str) -> None:
        handler: Optional[PrimitiveFn] = None
        try:
            module_name, func_name = python_ref.rsplit(".", 1)
            module = import_module(module_name)
            handler = getattr(module, func_name)
        except (ImportError, AttributeError, ValueError):
            handler = None

        self._registry[primitive_id] = PrimitiveRecord(
            id=primitive_id, python_ref=python_ref, handler=handler
        )

    def get(self, primitive_id: str) -> Optional[PrimitiveRecord]:
        return self._registry.get(primitive_id)

    def __contains__(self, primitive_id: object) -> bool:
        return primitive_id in self._registry
