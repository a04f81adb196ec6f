"""
Visual token encoding.

A VisualToken is the registered, immutable form of a descriptor. Its id is
a SHA-256 over the tenant, the product, the canonically ordered descriptor
and the capture time, so every registration event gets its own id while
two extractions of the same clusters share the same descriptor signature.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .color_signature import ColorDescriptor
from .errors import EncodingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VisualToken:
    token_id: str
    signature: str
    descriptor: ColorDescriptor
    tenant_id: str
    product_id: str
    created_at: datetime
    registration_confidence: float

    def to_dict(self) -> dict:
        return {
            "token_id": self.token_id,
            "signature": self.signature,
            "descriptor": self.descriptor.to_dict(),
            "tenant_id": self.tenant_id,
            "product_id": self.product_id,
            "created_at": self.created_at.isoformat(),
            "registration_confidence": self.registration_confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VisualToken":
        """
        Rebuild a token from its stored record.

        The id is recomputed from the payload; a stored id that does not
        match means the record was altered and is rejected.
        """
        try:
            token = encode(
                ColorDescriptor.from_dict(data["descriptor"]),
                tenant_id=data["tenant_id"],
                product_id=data["product_id"],
                captured_at=datetime.fromisoformat(data["created_at"]),
                registration_confidence=float(data["registration_confidence"]),
            )
        except EncodingError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise EncodingError(f"Malformed token record: {e}") from e

        if data.get("token_id") != token.token_id:
            raise EncodingError(
                f"Stored token id {data.get('token_id')} does not match its payload"
            )
        return token


def encode(descriptor: ColorDescriptor,
           tenant_id: str,
           product_id: str,
           captured_at: Optional[datetime] = None,
           registration_confidence: float = 1.0) -> VisualToken:
    """
    Encode a descriptor into a VisualToken.

    Args:
        descriptor: Extracted or synthetic colour descriptor.
        tenant_id: Owning tenant.
        product_id: Product the token identifies.
        captured_at: Capture time; defaults to now. Naive values are UTC.
        registration_confidence: Caller-supplied capture quality (0-1),
            stored as-is.

    Raises:
        EncodingError: If the descriptor breaks an invariant, an id is
            empty, or the confidence is outside [0, 1].
    """
    descriptor.validate()
    if not tenant_id or not isinstance(tenant_id, str):
        raise EncodingError("tenant_id must be a non-empty string")
    if not product_id or not isinstance(product_id, str):
        raise EncodingError("product_id must be a non-empty string")
    try:
        registration_confidence = float(registration_confidence)
    except (TypeError, ValueError) as e:
        raise EncodingError(f"Invalid registration confidence: {registration_confidence!r}") from e
    if not 0.0 <= registration_confidence <= 1.0:
        raise EncodingError(
            f"Registration confidence {registration_confidence} outside [0, 1]"
        )

    if captured_at is None:
        captured_at = datetime.now(timezone.utc)
    elif captured_at.tzinfo is None:
        captured_at = captured_at.replace(tzinfo=timezone.utc)

    canonical = descriptor.canonical()
    payload = canonical_payload(canonical)
    signature = _sha256(payload)
    token_id = _sha256(json.dumps({
        "tenant_id": tenant_id,
        "product_id": product_id,
        "descriptor": payload,
        "captured_at": captured_at.isoformat(),
    }, sort_keys=True, separators=(",", ":")))

    return VisualToken(
        token_id=token_id,
        signature=signature,
        descriptor=canonical,
        tenant_id=tenant_id,
        product_id=product_id,
        created_at=captured_at,
        registration_confidence=registration_confidence,
    )


def canonical_payload(descriptor: ColorDescriptor) -> str:
    """Stable JSON text for a descriptor: fixed field order, heaviest cluster first."""
    ordered = descriptor.canonical()
    return json.dumps({
        "clusters": [
            [list(c.rgb), c.weight, list(c.centroid)] for c in ordered.clusters
        ],
        "lighting": ordered.lighting,
    }, separators=(",", ":"))


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
