"""
Access & Concurrency Policy

Gates model usage for restricted (standard role) accounts. Premium, admin and
role-less accounts are never restricted. Lookup failures fail open: an
outage of the override table must not block paying users.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from core.config import get_config
from services.generation.models import Account, GenerationInputs, ModelSelector

logger = logging.getLogger(__name__)


@dataclass
class PolicyDecision:
    allowed: bool
    reason: Optional[str] = None
    current_count: Optional[int] = None


ALLOWED = PolicyDecision(allowed=True)


class AccessPolicy:
    """
    Usage:
        policy = AccessPolicy(store)
        decision = await policy.check_access(account, "v2.1", "image-to-video-pro")
    """

    def __init__(self, store, config=None):
        self.store = store
        self.config = (config or get_config()).policy

    async def check_access(
        self,
        account: Account,
        model_version: str,
        variant: str,
    ) -> PolicyDecision:
        if not account.is_restricted:
            return ALLOWED

        try:
            enabled = await self.store.get_model_access(account.id, model_version, variant)
        except Exception as e:
            logger.error(f"Model access lookup failed for {account.id}, allowing: {e}")
            return ALLOWED

        if enabled is None or enabled:
            return ALLOWED

        logger.info(f"Model {model_version}/{variant} disabled for account {account.id}")
        return PolicyDecision(
            allowed=False,
            reason="This model is not available for your account. Contact an admin for access.",
        )

    async def check_concurrency(self, account: Account) -> PolicyDecision:
        if not account.is_restricted:
            return ALLOWED

        try:
            count = await self.store.count_processing(account.id)
        except Exception as e:
            logger.error(f"Processing count lookup failed for {account.id}, allowing: {e}")
            return ALLOWED

        limit = self.config.max_processing_per_user
        if count >= limit:
            return PolicyDecision(
                allowed=False,
                reason=(
                    f"You already have {count} videos processing (limit {limit}). "
                    f"Wait for one to finish before generating another."
                ),
                current_count=count,
            )
        return PolicyDecision(allowed=True, current_count=count)

    def check_duration(
        self,
        account: Account,
        selector: ModelSelector,
        inputs: GenerationInputs,
    ) -> PolicyDecision:
        """Input-video length limits for motion-control jobs."""
        if not selector.is_per_second or not inputs.duration:
            return ALLOWED

        if inputs.character_orientation == "image":
            limit = self.config.motion_max_duration_image_orientation
        elif account.is_restricted:
            limit = self.config.motion_max_duration_standard
        else:
            limit = self.config.motion_max_duration_elevated

        if inputs.duration > limit:
            return PolicyDecision(
                allowed=False,
                reason=f"Input video is {inputs.duration}s; the maximum for this request is {limit}s",
            )
        return ALLOWED
