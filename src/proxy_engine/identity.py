"""
Identity: who is calling.

A call is an Ed25519-signed envelope. The verified signer's public key
(hex) becomes the caller identity seen by access control and by procedure
bodies as `$.ctx.caller`. The envelope digest doubles as the transaction
id, so replaying the same signed envelope replays the same transaction.
"""
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Dict, List, Union

import nacl.exceptions
import nacl.signing
from pydantic import BaseModel, Field

from .kernel.errors import InvalidSignature


class CallPayload(BaseModel):
    schema_id: str
    procedure: str
    args: Union[List[Any], Dict[str, Any]] = Field(default_factory=list)
    height: int = 0
    nonce: int = 0

    def canonical_bytes(self) -> bytes:
        return json.dumps(
            self.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
        ).encode("utf-8")


class SignedCall(BaseModel):
    payload: CallPayload
    sender: str  # hex-encoded Ed25519 verify key
    signature: str  # hex-encoded detached signature

    def digest(self) -> str:
        """Transaction id for this envelope."""
        h = hashlib.sha256()
        h.update(self.payload.canonical_bytes())
        h.update(self.signature.encode("ascii"))
        return h.hexdigest()


class Signer:
    """Holds an Ed25519 signing key and produces signed call envelopes."""

    def __init__(self, signing_key: nacl.signing.SigningKey) -> None:
        self._key = signing_key

    @classmethod
    def generate(cls) -> "Signer":
        return cls(nacl.signing.SigningKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "Signer":
        return cls(nacl.signing.SigningKey(seed))

    @property
    def seed(self) -> bytes:
        return bytes(self._key)

    @property
    def identity(self) -> str:
        return self._key.verify_key.encode().hex()

    def sign_call(
        self,
        schema_id: str,
        procedure: str,
        args: Union[List[Any], Dict[str, Any], None] = None,
        height: int = 0,
        nonce: int = 0,
    ) -> SignedCall:
        payload = CallPayload(
            schema_id=schema_id,
            procedure=procedure,
            args=args if args is not None else [],
            height=height,
            nonce=nonce,
        )
        signed = self._key.sign(payload.canonical_bytes())
        return SignedCall(payload=payload, sender=self.identity, signature=signed.signature.hex())


def verify_call(envelope: SignedCall) -> str:
    """Return the caller identity of a correctly signed envelope.

    Raises:
        InvalidSignature: If the sender key or signature is malformed or does not verify
    """
    try:
        verify_key = nacl.signing.VerifyKey(bytes.fromhex(envelope.sender))
        verify_key.verify(envelope.payload.canonical_bytes(), bytes.fromhex(envelope.signature))
    except (ValueError, TypeError, nacl.exceptions.BadSignatureError) as exc:
        raise InvalidSignature(f"Call envelope signature does not verify: {exc}") from exc
    return envelope.sender


def load_signer(path: Union[str, Path]) -> Signer:
    """Load a signer from a file holding a hex-encoded 32-byte seed."""
    seed_hex = Path(path).expanduser().read_text(encoding="utf-8").strip()
    try:
        return Signer.from_seed(bytes.fromhex(seed_hex))
    except ValueError as exc:
        raise InvalidSignature(f"Signing key file {path} does not hold a 32-byte hex seed") from exc


def save_signer(signer: Signer, path: Union[str, Path]) -> None:
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(signer.seed.hex(), encoding="utf-8")
