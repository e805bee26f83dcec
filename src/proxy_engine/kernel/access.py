"""
Access control: the declared modifier is the whole contract.

Authorization logic written inside procedure bodies (admin tables and the
like) is ordinary application code and never reaches this module.
"""

from __future__ import annotations

from .errors import NotExternallyCallable, Unauthorized
from .schema import ExecutionContext, Modifier, ProcedureSignature


def is_externally_callable(signature: ProcedureSignature) -> bool:
    """Only `public` or `owner` procedures may be entered from outside their schema."""
    return signature.is_public or signature.is_owner_only


def authorize(signature: ProcedureSignature, owner: str, ctx: ExecutionContext) -> bool:
    for modifier in signature.modifiers:
        if modifier == Modifier.OWNER and ctx.caller != owner:
            return False
    return True


def check_access(
    signature: ProcedureSignature,
    owner: str,
    ctx: ExecutionContext,
    external: bool,
) -> None:
    if external and not is_externally_callable(signature):
        raise NotExternallyCallable(
            f"Procedure {signature.name!r} has no public or owner modifier",
            details={"procedure": signature.name},
        )
    if not authorize(signature, owner, ctx):
        raise Unauthorized(
            f"Procedure {signature.name!r} may only be called by the schema owner",
            details={"procedure": signature.name, "caller": ctx.caller},
        )
