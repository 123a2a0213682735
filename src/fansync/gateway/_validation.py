"""Send payload checks performed before any network round trip."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from fansync.errors import ValidationError
from fansync.types import SendPayload

if TYPE_CHECKING:
    from fansync.config import Settings


@dataclass(frozen=True)
class PayloadLimits:
    max_text_length: int = 5000
    require_media_for_price: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> PayloadLimits:
        return cls(
            max_text_length=settings.limits.max_text_length,
            require_media_for_price=settings.limits.require_media_for_price,
        )


def validate_payload(payload: SendPayload, limits: PayloadLimits) -> None:
    """Raise :class:`ValidationError` if the platform would refuse *payload*."""
    if payload.is_empty:
        raise ValidationError("Message needs text or at least one media attachment")
    if payload.text is not None and len(payload.text) > limits.max_text_length:
        raise ValidationError(
            f"Message text is {len(payload.text)} characters "
            f"(limit {limits.max_text_length})"
        )
    if payload.price is not None:
        if payload.price < 0:
            raise ValidationError("Price cannot be negative")
        if limits.require_media_for_price and not payload.media_refs:
            raise ValidationError("A priced message must include media")
