"""
HTTP API for the engine.

Exposes deploy and call over HTTP so external clients can reach the same
engine the CLI drives.

Run with: uvicorn proxy_engine.api:app --port 8000
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .config import load_config
from .identity import SignedCall
from .kernel.engine import CallResult, ProxyEngine
from .kernel.errors import EngineError, ErrorKind

# --- Configuration ---

# Overrides the configured database path when set.
DEFAULT_DB_PATH: Optional[str] = None

# --- Pydantic Models ---


class DeployRequest(BaseModel):
    """Request body for deploying a schema."""

    source: str
    deployer: str
    height: int = 0


class DeployResponse(BaseModel):
    schema_id: str
    name: str
    owner: str


class CallRequest(BaseModel):
    """Request body for an unsigned procedure call."""

    args: Union[List[Any], Dict[str, Any]] = []
    caller: str
    height: int = 0
    txid: Optional[str] = None


class CapabilitySummary(BaseModel):
    id: str
    kind: str  # "procedure" or "foreign"
    signature: str
    modifiers: List[str] = []
    externally_callable: bool = False


class SchemaSummary(BaseModel):
    schema_id: str
    name: str
    owner: str
    tables: List[str]
    capabilities: List[CapabilitySummary] = []


class SchemaListResponse(BaseModel):
    schemas: List[SchemaSummary]
    count: int


# --- FastAPI App ---

app = FastAPI(
    title="Proxy Engine API",
    description="Deploy immutable schemas and call procedures across them",
    version="0.1.0",
)


def get_db_path() -> Optional[str]:
    """Explicit database path, or None to use the configured one."""
    return DEFAULT_DB_PATH


# --- Engine Singleton ---

_engine: Optional[ProxyEngine] = None


def get_engine() -> ProxyEngine:
    """Get or create the ProxyEngine singleton."""
    global _engine
    if _engine is None:
        _engine = ProxyEngine(get_db_path(), config=load_config(os.environ.get("PROXY_ENGINE_CONFIG")))
    return _engine


@app.on_event("shutdown")
async def shutdown_engine():
    """Clean up engine resources on shutdown."""
    global _engine
    if _engine:
        _engine.close()
        _engine = None


def _status_for(kind: str) -> int:
    if kind == ErrorKind.UNKNOWN_SCHEMA.value:
        return 404
    if kind == ErrorKind.DUPLICATE_SCHEMA.value:
        return 409
    if kind in (ErrorKind.UNAUTHORIZED.value, ErrorKind.INVALID_SIGNATURE.value):
        return 403
    return 400


def _call_response(result: CallResult) -> Dict[str, Any]:
    if not result.ok:
        raise HTTPException(
            status_code=_status_for(result.error_kind or ""),
            detail={
                "error_kind": result.error_kind,
                "error_message": result.error_message,
                "txid": result.txid,
            },
        )
    return result.to_dict()


# --- Endpoints ---


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "service": "proxy-engine"}


@app.get("/schemas", response_model=SchemaListResponse)
async def list_schemas():
    engine = get_engine()
    schemas = [
        SchemaSummary(
            schema_id=d.id,
            name=d.name,
            owner=d.owner,
            tables=sorted(d.tables),
        )
        for d in engine.list_schemas()
    ]
    return SchemaListResponse(schemas=schemas, count=len(schemas))


@app.post("/schemas", response_model=DeployResponse, status_code=201)
async def deploy_schema(request: DeployRequest):
    """Compile and register a schema. Deployed schemas are never updated."""
    engine = get_engine()
    try:
        schema_id = engine.deploy(request.source, deployer=request.deployer, height=request.height)
    except EngineError as exc:
        raise HTTPException(
            status_code=_status_for(exc.kind.value),
            detail={"error_kind": exc.kind.value, "error_message": exc.message},
        )
    descriptor = engine.describe(schema_id)
    return DeployResponse(schema_id=schema_id, name=descriptor.name, owner=descriptor.owner)


@app.get("/schemas/{schema_id}", response_model=SchemaSummary)
async def get_schema(schema_id: str):
    engine = get_engine()
    try:
        descriptor = engine.describe(schema_id)
        capabilities = engine.list_capabilities(schema_id)
    except EngineError as exc:
        raise HTTPException(
            status_code=_status_for(exc.kind.value),
            detail={"error_kind": exc.kind.value, "error_message": exc.message},
        )
    return SchemaSummary(
        schema_id=descriptor.id,
        name=descriptor.name,
        owner=descriptor.owner,
        tables=sorted(descriptor.tables),
        capabilities=[
            CapabilitySummary(
                id=c.id,
                kind=c.kind.value,
                signature=c.signature,
                modifiers=c.modifiers,
                externally_callable=c.externally_callable,
            )
            for c in capabilities
        ],
    )


@app.post("/schemas/{schema_id}/procedures/{procedure}")
async def call_procedure(schema_id: str, procedure: str, request: CallRequest):
    """Run one transaction as `request.caller`. Failures roll back the whole chain."""
    engine = get_engine()
    result = engine.call(
        schema_id,
        procedure,
        request.args,
        caller=request.caller,
        txid=request.txid,
        height=request.height,
    )
    return _call_response(result)


@app.post("/calls")
async def call_signed(envelope: SignedCall):
    """Run a signed call envelope; the signer becomes the caller."""
    engine = get_engine()
    return _call_response(engine.call_signed(envelope))
