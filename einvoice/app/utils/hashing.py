"""
Integrity hash and transport encoding for wire documents.

IMPORTANT DESIGN RULE:
- Rendering MUST occur outside this module.
- This module hashes and encodes bytes, and bytes only.
"""

import base64
import binascii
import hashlib
from typing import Union


def compute_document_hash(payload: Union[bytes, bytearray]) -> str:
    """
    Compute the documentHash the intake service recomputes on receipt.

    Returns:
        Lower-case hex SHA-256 digest of the exact payload bytes.
    """
    if not isinstance(payload, (bytes, bytearray)):
        raise TypeError(
            "compute_document_hash expects payload bytes, "
            f"got {type(payload).__name__}"
        )

    return hashlib.sha256(payload).hexdigest()


def encode_transport(payload: Union[bytes, bytearray]) -> str:
    """Standard base64 (with padding), as required by the submission body."""
    return base64.b64encode(payload).decode("ascii")


def decode_transport(encoded: str) -> bytes:
    try:
        return base64.b64decode(encoded, validate=True)
    except binascii.Error as exc:
        raise ValueError("Document is not valid base64") from exc
