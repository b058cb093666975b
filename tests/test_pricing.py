"""
Pricing Table Lookup Tests

Run with:
    python -m pytest tests/test_pricing.py -v
"""

from decimal import Decimal

import pytest

from services.billing.pricing import PriceNotFound, PriceQuote, resolve_price
from services.generation.models import ErrorCode, GenerationError, ModelSelector


class TestResolvePrice:
    """Flat and per-second lookups against the pricing table."""

    @pytest.mark.asyncio
    async def test_flat_price_keyed_by_duration_and_audio(self, store):
        store.add_price("v2.6", "text-to-video", "0.4", duration=5, audio_enabled=False)
        store.add_price("v2.6", "text-to-video", "0.6", duration=5, audio_enabled=True)
        store.add_price("v2.6", "text-to-video", "0.8", duration=10, audio_enabled=False)

        quote = await resolve_price(
            store, ModelSelector("v2.6", "text-to-video"), "user", duration=5, audio_enabled=True
        )

        assert quote == PriceQuote(unit_price=Decimal("0.6"), is_per_second=False)
        assert quote.credits_needed(5) == Decimal("0.6")

    @pytest.mark.asyncio
    async def test_audio_not_keyed_for_other_variants(self, store):
        store.add_price("v2.5-turbo", "image-to-video-pro", "0.35", duration=5)

        quote = await resolve_price(
            store,
            ModelSelector("v2.5-turbo", "image-to-video-pro"),
            "user",
            duration=5,
            audio_enabled=True,
        )

        assert quote.unit_price == Decimal("0.35")

    @pytest.mark.asyncio
    async def test_per_second_charges_duration_times_unit_price(self, store):
        store.add_price("v2.6", "motion-control-standard", "0.112", is_per_second=True)

        quote = await resolve_price(
            store, ModelSelector("v2.6", "motion-control-standard"), "user", duration=7
        )

        assert quote.is_per_second
        assert quote.credits_needed(7) == Decimal("0.784")

    @pytest.mark.asyncio
    async def test_per_second_lookup_ignores_duration(self, store):
        # Entry has no duration; a duration filter would miss it
        store.add_price("v2.6", "motion-control-pro", "0.2", is_per_second=True)

        quote = await resolve_price(
            store, ModelSelector("v2.6", "motion-control-pro"), "user", duration=12
        )

        assert quote.credits_needed(12) == Decimal("2.4")

    @pytest.mark.asyncio
    async def test_role_is_part_of_the_key(self, store):
        store.add_price("v2.6", "text-to-video", "0.3", role="premium", duration=5, audio_enabled=False)

        with pytest.raises(PriceNotFound) as exc:
            await resolve_price(
                store, ModelSelector("v2.6", "text-to-video"), "user", duration=5, audio_enabled=False
            )

        assert exc.value.error_code == ErrorCode.INVALID_CONFIG

    @pytest.mark.asyncio
    async def test_ambiguous_entries_rejected(self, store):
        store.add_price("v2.1", "image-to-video-pro", "0.5", duration=5)
        store.add_price("v2.1", "image-to-video-pro", "0.7", duration=5)

        with pytest.raises(PriceNotFound):
            await resolve_price(store, ModelSelector("v2.1", "image-to-video-pro"), "user", duration=5)


class TestPriceQuote:
    def test_flat_quote_ignores_duration(self):
        quote = PriceQuote(unit_price=Decimal("0.4"), is_per_second=False)
        assert quote.credits_needed(None) == Decimal("0.4")

    def test_per_second_requires_positive_duration(self):
        quote = PriceQuote(unit_price=Decimal("0.112"), is_per_second=True)

        with pytest.raises(GenerationError) as exc:
            quote.credits_needed(0)

        assert exc.value.error_code == ErrorCode.INVALID_REQUEST
