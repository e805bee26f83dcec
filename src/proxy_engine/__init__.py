"""
proxy-engine: foreign-procedure dispatch for immutable contract schemas.

Public API re-exports from kernel/ (machinery).
"""
from .kernel.errors import EngineError, ErrorKind
from .kernel.schema import ExecutionContext, SchemaDescriptor
from .kernel.engine import CallResult, ProxyEngine
from .config import EngineConfig, load_config
from .identity import Signer, SignedCall, verify_call

__all__ = [
    "CallResult",
    "EngineConfig",
    "EngineError",
    "ErrorKind",
    "ExecutionContext",
    "ProxyEngine",
    "SchemaDescriptor",
    "SignedCall",
    "Signer",
    "load_config",
    "verify_call",
]
