from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import MaxCallDepthExceeded, TransactionOwnership


class DataType(str, Enum):
    TEXT = "text"
    INT = "int"
    BOOL = "bool"
    UUID = "uuid"
    BLOB = "blob"


TYPE_ALIASES = {
    "int8": DataType.INT,
    "integer": DataType.INT,
    "boolean": DataType.BOOL,
    "bytea": DataType.BLOB,
}


def _coerce_type(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        return TYPE_ALIASES.get(lowered, lowered)
    return value


def value_matches(value: Any, data_type: DataType) -> bool:
    """True if `value` is acceptable for a column or parameter of `data_type`."""
    if value is None:
        return True
    if data_type == DataType.TEXT:
        return isinstance(value, str)
    if data_type == DataType.INT:
        return isinstance(value, int) and not isinstance(value, bool)
    if data_type == DataType.BOOL:
        return isinstance(value, bool)
    if data_type == DataType.BLOB:
        return isinstance(value, (bytes, bytearray))
    if data_type == DataType.UUID:
        if isinstance(value, uuid.UUID):
            return True
        try:
            uuid.UUID(str(value))
        except ValueError:
            return False
        return isinstance(value, str)
    return False


class Modifier(str, Enum):
    PUBLIC = "public"
    VIEW = "view"
    OWNER = "owner"
    PRIVATE = "private"


class Parameter(BaseModel):
    name: str
    type: DataType

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        return _coerce_type(value)


class Column(BaseModel):
    name: str
    type: DataType
    primary_key: bool = False
    not_null: bool = False

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        return _coerce_type(value)


class ReturnKind(str, Enum):
    NONE = "none"
    SCALAR = "scalar"
    TABLE = "table"


class ReturnShape(BaseModel):
    kind: ReturnKind = ReturnKind.NONE
    type: Optional[DataType] = None
    columns: List[Column] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        return _coerce_type(value)

    def describe(self) -> str:
        if self.kind == ReturnKind.SCALAR:
            return f"{self.type.value if self.type else '?'}"
        if self.kind == ReturnKind.TABLE:
            cols = ", ".join(f"{c.name} {c.type.value}" for c in self.columns)
            return f"table({cols})"
        return "none"


class CallableSignature(BaseModel):
    """Name, ordered typed parameters and return shape."""

    name: str
    params: List[Parameter] = Field(default_factory=list)
    returns: ReturnShape = Field(default_factory=ReturnShape)

    def describe(self) -> str:
        params = ", ".join(f"{p.name} {p.type.value}" for p in self.params)
        return f"{self.name}({params}) -> {self.returns.describe()}"


class ProcedureSignature(CallableSignature):
    modifiers: List[Modifier] = Field(default_factory=list)

    @property
    def is_public(self) -> bool:
        return Modifier.PUBLIC in self.modifiers

    @property
    def is_owner_only(self) -> bool:
        return Modifier.OWNER in self.modifiers

    @property
    def is_view(self) -> bool:
        return Modifier.VIEW in self.modifiers


class ForeignProcedureStub(CallableSignature):
    """A signature declared without a body, bound to a target at call time."""


class ConditionOp(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    CONTAINS = "contains"
    EMPTY = "empty"
    NOT_EMPTY = "not_empty"


class EdgeCondition(BaseModel):
    op: ConditionOp
    path: str
    value: Optional[Any] = None


class NodeKind(str, Enum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    CALL = "call"
    FOREIGN = "foreign"
    PRIMITIVE = "primitive"
    NOTICE = "notice"
    ERROR = "error"
    RETURN = "return"


MUTATING_NODES = frozenset({NodeKind.INSERT, NodeKind.UPDATE, NodeKind.DELETE})


class BodyNode(BaseModel):
    kind: NodeKind
    # table statements
    table: Optional[str] = None
    values: Dict[str, Any] = Field(default_factory=dict)
    where: Dict[str, Any] = Field(default_factory=dict)
    assign: Dict[str, Any] = Field(default_factory=dict, alias="set")
    columns: Optional[List[str]] = None
    limit: Optional[int] = None
    on_conflict: Optional[str] = None
    # call / foreign / primitive
    ref: Optional[str] = None
    args: List[Any] = Field(default_factory=list)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    target: Optional[Any] = None
    procedure: Optional[Any] = None
    # notice / error / return
    message: Optional[Any] = None
    value: Optional[Any] = None

    model_config = ConfigDict(populate_by_name=True)


class BodyEdge(BaseModel):
    from_node: str = Field(alias="from")
    to_node: str = Field(alias="to")
    condition: Optional[EdgeCondition] = None
    default: bool = False

    model_config = ConfigDict(populate_by_name=True)


class ProcedureBody(BaseModel):
    start: str
    nodes: Dict[str, BodyNode]
    edges: List[BodyEdge] = Field(default_factory=list)


class ProcedureDef(BaseModel):
    signature: ProcedureSignature
    body: ProcedureBody


class TableDef(BaseModel):
    name: str
    columns: List[Column]

    @property
    def primary_key(self) -> List[str]:
        return [c.name for c in self.columns if c.primary_key]

    def column(self, name: str) -> Optional[Column]:
        for col in self.columns:
            if col.name == name:
                return col
        return None


class SchemaDescriptor(BaseModel):
    """A compiled, deployed schema. Never modified after registration."""

    id: str
    name: str
    owner: str
    tables: Dict[str, TableDef] = Field(default_factory=dict)
    procedures: Dict[str, ProcedureDef] = Field(default_factory=dict)
    foreign: Dict[str, ForeignProcedureStub] = Field(default_factory=dict)
    deployed_height: int = 0

    model_config = ConfigDict(frozen=True)


class TableOpKind(str, Enum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class TableOp(BaseModel):
    """A single schema-scoped statement handed to the storage collaborator."""

    kind: TableOpKind
    table: str
    values: Dict[str, Any] = Field(default_factory=dict)
    where: Dict[str, Any] = Field(default_factory=dict)
    assign: Dict[str, Any] = Field(default_factory=dict)
    columns: Optional[List[str]] = None
    limit: Optional[int] = None
    on_conflict: Optional[str] = None


class ExecutionContext(BaseModel):
    """Context carried down a call chain.

    Every descendant shares the transaction handle of the top-level context
    by reference. Only the depth-0 context may commit or roll back.

    The output_sink keeps engine output decoupled from display: the CLI
    passes print, the API passes a buffer collector.
    """

    caller: str
    txid: str
    height: int = 0
    tx: Optional[Any] = Field(default=None, exclude=True)
    depth: int = 0
    max_depth: int = 32
    schema_id: Optional[str] = None
    read_only: bool = False
    trace: bool = False

    output_sink: Optional[Callable[[str], None]] = Field(default=None, exclude=True)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def fork(self, schema_id: Optional[str] = None, read_only: bool = False) -> "ExecutionContext":
        depth = self.depth + 1
        if depth > self.max_depth:
            raise MaxCallDepthExceeded(
                f"Call depth {depth} exceeds maximum of {self.max_depth}",
                details={"max_depth": self.max_depth},
            )
        return self.model_copy(
            update={
                "depth": depth,
                "schema_id": schema_id or self.schema_id,
                "read_only": self.read_only or read_only,
            }
        )

    def commit(self) -> List[Dict[str, Any]]:
        if self.depth != 0:
            raise TransactionOwnership(f"Only the top-level context may commit (depth {self.depth})")
        return self.tx.commit()

    def rollback(self) -> None:
        if self.depth != 0:
            raise TransactionOwnership(f"Only the top-level context may roll back (depth {self.depth})")
        self.tx.rollback()

    def memory_view(self) -> Dict[str, Any]:
        """The `$.ctx` namespace visible to procedure bodies."""
        return {
            "caller": self.caller,
            "txid": self.txid,
            "height": self.height,
            "schema": self.schema_id,
            "depth": self.depth,
        }

    def emit(self, content: str) -> None:
        """Send output to the configured sink, or stdout as fallback."""
        if self.output_sink:
            self.output_sink(content)
        else:
            print(content)
