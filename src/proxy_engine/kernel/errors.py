"""
Engine errors.

Every failure inside a call chain is an EngineError carrying a `kind` tag.
The engine boundary converts them into CallResult values; nothing below
the boundary catches them except to roll back.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    UNKNOWN_SCHEMA = "UnknownSchema"
    DUPLICATE_SCHEMA = "DuplicateSchema"
    PROCEDURE_NOT_FOUND = "ProcedureNotFound"
    SIGNATURE_MISMATCH = "SignatureMismatch"
    INCOMPATIBLE_FOREIGN_SIGNATURE = "IncompatibleForeignSignature"
    UNAUTHORIZED = "Unauthorized"
    NOT_EXTERNALLY_CALLABLE = "NotExternallyCallable"
    MUTATION_IN_VIEW_CONTEXT = "MutationInViewContext"
    MAX_CALL_DEPTH_EXCEEDED = "MaxCallDepthExceeded"
    APPLICATION_ERROR = "ApplicationError"
    COMPILE_ERROR = "CompileError"
    EXECUTION_ERROR = "ExecutionError"
    STORAGE_ERROR = "StorageError"
    INVALID_SIGNATURE = "InvalidSignature"
    TRANSACTION_OWNERSHIP = "TransactionOwnership"


class EngineError(Exception):
    """Base for all engine failures."""

    kind: ErrorKind = ErrorKind.EXECUTION_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "details": self.details}


class UnknownSchema(EngineError):
    kind = ErrorKind.UNKNOWN_SCHEMA


class DuplicateSchema(EngineError):
    kind = ErrorKind.DUPLICATE_SCHEMA


class ProcedureNotFound(EngineError):
    kind = ErrorKind.PROCEDURE_NOT_FOUND


class SignatureMismatch(EngineError):
    kind = ErrorKind.SIGNATURE_MISMATCH


class IncompatibleForeignSignature(EngineError):
    kind = ErrorKind.INCOMPATIBLE_FOREIGN_SIGNATURE


class Unauthorized(EngineError):
    kind = ErrorKind.UNAUTHORIZED


class NotExternallyCallable(EngineError):
    kind = ErrorKind.NOT_EXTERNALLY_CALLABLE


class MutationInViewContext(EngineError):
    kind = ErrorKind.MUTATION_IN_VIEW_CONTEXT


class MaxCallDepthExceeded(EngineError):
    kind = ErrorKind.MAX_CALL_DEPTH_EXCEEDED


class ApplicationError(EngineError):
    """Abort raised by procedure body logic (an `error` node)."""

    kind = ErrorKind.APPLICATION_ERROR


class CompileError(EngineError):
    kind = ErrorKind.COMPILE_ERROR


class ExecutionError(EngineError):
    kind = ErrorKind.EXECUTION_ERROR


class StorageError(EngineError):
    kind = ErrorKind.STORAGE_ERROR


class InvalidSignature(EngineError):
    kind = ErrorKind.INVALID_SIGNATURE


class TransactionOwnership(EngineError):
    kind = ErrorKind.TRANSACTION_OWNERSHIP
