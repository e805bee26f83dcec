"""
Schema compiler: YAML source -> frozen SchemaDescriptor.

Source layout:

```yaml
name: proxy
tables:
  admins:
    columns:
      - {name: address, type: text, primary_key: true}
foreign:
  ext_get_users:
    params: []
    returns: {table: [{name: id, type: uuid}, {name: name, type: text}]}
procedures:
  get_users:
    modifiers: [public, view]
    returns: {table: [{name: id, type: uuid}, {name: name, type: text}]}
    body:
      start: target
      nodes: {...}
      edges: [...]
```

Parameters and columns accept `{name: x, type: text}`, the short form
`{x: text}`, or a bare type string (named positionally `$1`, `$2`, ...).
Returns accept `none`, a bare type string (scalar) or `{table: [...]}`.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml
from pydantic import ValidationError

from .errors import CompileError
from .schema import (
    Column,
    ForeignProcedureStub,
    Modifier,
    NodeKind,
    Parameter,
    ProcedureBody,
    ProcedureDef,
    ProcedureSignature,
    ReturnKind,
    ReturnShape,
    SchemaDescriptor,
    TableDef,
)

IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

TABLE_NODES = {NodeKind.SELECT, NodeKind.INSERT, NodeKind.UPDATE, NodeKind.DELETE}


def derive_schema_id(owner: str, name: str) -> str:
    return "x" + hashlib.sha224(f"{owner}:{name}".encode("utf-8")).hexdigest()


def _check_identifier(kind: str, name: Any) -> str:
    if not isinstance(name, str) or not IDENTIFIER.match(name):
        raise CompileError(f"Invalid {kind} name: {name!r}")
    return name


def _mapping(raw: Any, where: str) -> Dict[Any, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise CompileError(f"{where}: expected a mapping, got {type(raw).__name__}")
    return raw


def _typed_entries(raw: Any, where: str) -> List[Dict[str, Any]]:
    """Normalise the three accepted forms of a typed name list."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise CompileError(f"{where}: expected a list, got {type(raw).__name__}")

    entries = []
    for idx, item in enumerate(raw, start=1):
        if isinstance(item, str):
            entries.append({"name": f"${idx}", "type": item})
        elif isinstance(item, dict) and "type" in item:
            entries.append(dict(item))
        elif isinstance(item, dict) and len(item) == 1:
            name, type_name = next(iter(item.items()))
            entries.append({"name": name, "type": type_name})
        else:
            raise CompileError(f"{where}: cannot read entry {item!r}")
    return entries


def _parse_returns(raw: Any, where: str) -> ReturnShape:
    if raw is None or raw == "none":
        return ReturnShape(kind=ReturnKind.NONE)
    if isinstance(raw, str):
        return ReturnShape(kind=ReturnKind.SCALAR, type=raw)
    if isinstance(raw, dict) and "table" in raw:
        columns = [Column.model_validate(entry) for entry in _typed_entries(raw["table"], f"{where}.returns")]
        if not columns:
            raise CompileError(f"{where}: table return shape needs at least one column")
        return ReturnShape(kind=ReturnKind.TABLE, columns=columns)
    if isinstance(raw, dict) and "scalar" in raw:
        return ReturnShape(kind=ReturnKind.SCALAR, type=raw["scalar"])
    raise CompileError(f"{where}: cannot read return shape {raw!r}")


def _parse_params(raw: Any, where: str) -> List[Parameter]:
    params = [Parameter.model_validate(entry) for entry in _typed_entries(raw, f"{where}.params")]
    seen = set()
    for param in params:
        if param.name in seen:
            raise CompileError(f"{where}: duplicate parameter {param.name!r}")
        seen.add(param.name)
    return params


def _parse_modifiers(raw: Any, where: str) -> List[Modifier]:
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = raw.split()
    if not isinstance(raw, list):
        raise CompileError(f"{where}: modifiers must be a list, got {type(raw).__name__}")
    modifiers = []
    for item in raw:
        try:
            modifier = Modifier(str(item).lower())
        except ValueError as exc:
            raise CompileError(f"{where}: unknown modifier {item!r}") from exc
        if modifier not in modifiers:
            modifiers.append(modifier)
    if Modifier.PRIVATE in modifiers and (Modifier.PUBLIC in modifiers or Modifier.OWNER in modifiers):
        raise CompileError(f"{where}: private cannot be combined with public or owner")
    return modifiers


def _parse_table(name: str, raw: Any) -> TableDef:
    _check_identifier("table", name)
    raw_columns = raw.get("columns") if isinstance(raw, dict) else raw
    columns = [Column.model_validate(entry) for entry in _typed_entries(raw_columns, f"tables.{name}")]
    if not columns:
        raise CompileError(f"Table {name!r} declares no columns")
    seen = set()
    for col in columns:
        _check_identifier("column", col.name)
        if col.name in seen:
            raise CompileError(f"Table {name!r}: duplicate column {col.name!r}")
        seen.add(col.name)
    return TableDef(name=name, columns=columns)


def _check_body(
    proc_name: str,
    body: ProcedureBody,
    tables: Dict[str, TableDef],
    procedure_names: set,
    foreign: Dict[str, ForeignProcedureStub],
) -> None:
    where = f"procedures.{proc_name}.body"
    if body.start not in body.nodes:
        raise CompileError(f"{where}: start node {body.start!r} does not exist")

    for edge in body.edges:
        for end in (edge.from_node, edge.to_node):
            if end not in body.nodes:
                raise CompileError(f"{where}: edge refers to unknown node {end!r}")

    for node_id, node in body.nodes.items():
        here = f"{where}.nodes.{node_id}"
        if node.kind in TABLE_NODES:
            table_def = tables.get(node.table or "")
            if table_def is None:
                raise CompileError(f"{here}: unknown table {node.table!r}")
            for col in list(node.values) + list(node.where) + list(node.assign) + list(node.columns or []):
                if table_def.column(col) is None:
                    raise CompileError(f"{here}: unknown column {col!r} on {node.table!r}")
            if node.on_conflict not in (None, "update", "nothing"):
                raise CompileError(f"{here}: on_conflict must be 'update' or 'nothing'")
        elif node.kind == NodeKind.CALL:
            if node.ref not in procedure_names:
                raise CompileError(f"{here}: call to unknown procedure {node.ref!r}")
        elif node.kind == NodeKind.FOREIGN:
            if node.ref not in foreign:
                raise CompileError(f"{here}: foreign procedure {node.ref!r} is not declared")
            if node.target is None or node.procedure is None:
                raise CompileError(f"{here}: foreign node needs target and procedure")
        elif node.kind == NodeKind.PRIMITIVE:
            if not node.ref:
                raise CompileError(f"{here}: primitive node missing ref")
        elif node.kind in (NodeKind.ERROR, NodeKind.NOTICE):
            if node.message is None:
                raise CompileError(f"{here}: {node.kind.value} node needs a message")


def compile_schema(source: Union[str, Dict[str, Any]], owner: str, height: int = 0) -> SchemaDescriptor:
    """Compile a schema source document owned by `owner`."""
    if isinstance(source, str):
        try:
            doc = yaml.safe_load(source)
        except yaml.YAMLError as exc:
            raise CompileError(f"Schema source is not valid YAML: {exc}") from exc
    else:
        doc = source

    if not isinstance(doc, dict):
        raise CompileError("Schema source must be a mapping")
    if not owner:
        raise CompileError("A schema needs an owner identity")

    name = _check_identifier("schema", doc.get("name"))

    try:
        tables = {
            tname: _parse_table(tname, traw) for tname, traw in _mapping(doc.get("tables"), "tables").items()
        }

        foreign: Dict[str, ForeignProcedureStub] = {}
        for fname, fraw in _mapping(doc.get("foreign"), "foreign").items():
            _check_identifier("foreign procedure", fname)
            fraw = _mapping(fraw, f"foreign.{fname}")
            foreign[fname] = ForeignProcedureStub(
                name=fname,
                params=_parse_params(fraw.get("params"), f"foreign.{fname}"),
                returns=_parse_returns(fraw.get("returns"), f"foreign.{fname}"),
            )

        raw_procs = _mapping(doc.get("procedures"), "procedures")
        procedures: Dict[str, ProcedureDef] = {}
        for pname, praw in raw_procs.items():
            _check_identifier("procedure", pname)
            if pname in foreign:
                raise CompileError(f"{pname!r} is declared both as procedure and foreign procedure")
            praw = _mapping(praw, f"procedures.{pname}")
            if "body" not in praw:
                raise CompileError(f"Procedure {pname!r} has no body")
            signature = ProcedureSignature(
                name=pname,
                params=_parse_params(praw.get("params"), f"procedures.{pname}"),
                returns=_parse_returns(praw.get("returns"), f"procedures.{pname}"),
                modifiers=_parse_modifiers(praw.get("modifiers"), f"procedures.{pname}"),
            )
            body = ProcedureBody.model_validate(praw["body"])
            procedures[pname] = ProcedureDef(signature=signature, body=body)
    except ValidationError as exc:
        raise CompileError(f"Schema {name!r} is malformed: {exc}") from exc

    for pname, proc in procedures.items():
        _check_body(pname, proc.body, tables, set(procedures), foreign)

    return SchemaDescriptor(
        id=derive_schema_id(owner, name),
        name=name,
        owner=owner,
        tables=tables,
        procedures=procedures,
        foreign=foreign,
        deployed_height=height,
    )


def load_schema_file(path: Union[str, Path]) -> str:
    return Path(path).read_text(encoding="utf-8")
