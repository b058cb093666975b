"""
Pricing Table Lookup

Resolves a request to a credit cost. Two shapes of pricing entry exist:

- flat: keyed by duration (and by audio flag for text/image-to-video),
  charged once per job
- per-second: motion-control variants, not keyed by duration; the unit
  price is multiplied by the measured input duration
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from services.generation.models import ErrorCode, GenerationError, ModelSelector

logger = logging.getLogger(__name__)


class PriceNotFound(GenerationError):
    """No (or no unambiguous) pricing entry for the requested key."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.INVALID_CONFIG)


@dataclass(frozen=True)
class PriceQuote:
    unit_price: Decimal
    is_per_second: bool

    def credits_needed(self, duration: Optional[int]) -> Decimal:
        """Total charge for a job."""
        if not self.is_per_second:
            return self.unit_price
        if not duration or duration <= 0:
            raise GenerationError(
                "Per-second pricing requires a positive duration",
                ErrorCode.INVALID_REQUEST,
            )
        return self.unit_price * Decimal(duration)


async def resolve_price(
    store,
    selector: ModelSelector,
    role: str,
    duration: Optional[int] = None,
    audio_enabled: Optional[bool] = None,
) -> PriceQuote:
    """
    Look up the pricing entry for a request.

    Role is always part of the key; there is no fallback to another role.

    Raises:
        PriceNotFound: when no single entry matches
    """
    lookup_duration = None if selector.is_per_second else duration
    lookup_audio = bool(audio_enabled) if selector.keys_audio else None

    rows = await store.find_prices(
        selector.model_type,
        selector.model_version,
        selector.variant,
        role,
        duration=lookup_duration,
        audio_enabled=lookup_audio,
    )

    key = (
        f"{selector.model_type}/{selector.model_version}/{selector.variant} "
        f"role={role} duration={lookup_duration} audio={lookup_audio}"
    )
    if not rows:
        logger.warning(f"No pricing entry for {key}")
        raise PriceNotFound(f"Invalid configuration or pricing not found ({key})")
    if len(rows) > 1:
        logger.error(f"Ambiguous pricing for {key}: {len(rows)} entries match")
        raise PriceNotFound(f"Ambiguous pricing configuration ({key})")

    row = rows[0]
    price = row["price"]
    return PriceQuote(
        unit_price=price if isinstance(price, Decimal) else Decimal(str(price)),
        is_per_second=bool(row["is_per_second"]),
    )
