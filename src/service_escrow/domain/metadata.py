"""Typed metadata attached to gateway payment intents.

Downstream consumers (webhooks, reconciliation scripts, the gateway
dashboard) read these keys by name, so the set of keys is closed: an
unknown or misspelled key is rejected instead of silently written.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from service_escrow.domain.enums import ErrorKind, MetadataKey
from service_escrow.domain.exceptions import EscrowError

PLATFORM_NAME = "service-escrow"


class IntentMetadata(BaseModel):
    """Metadata map for an escrow payment intent.

    Field names are exactly the ``MetadataKey`` values.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    platform: str = PLATFORM_NAME
    payment_type: str = "escrow"
    order_ref: str
    destination_account_id: str
    service_amount: Decimal
    protection_fee: Decimal
    client_id: str | None = None
    provider_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def build(cls, **values: Any) -> IntentMetadata:
        """Validate caller-supplied metadata, mapping failures to INVALID."""
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            raise EscrowError(
                message=f"Invalid intent metadata: {fields}",
                code="INVALID_METADATA",
                kind=ErrorKind.INVALID,
            ) from exc

    def to_gateway(self) -> dict[str, str]:
        """Flatten to the string map the gateway stores, dropping unset keys."""
        out: dict[str, str] = {}
        for key in MetadataKey:
            value = getattr(self, key.value)
            if value is None:
                continue
            out[key.value] = value.isoformat() if isinstance(value, datetime) else str(value)
        return out
