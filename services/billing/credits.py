"""
Credit Source Selector

Picks exactly one funding source for a charge: the oldest active grant that
can cover it, else the legacy account balance (only when the account also
has its own provider credential).
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Literal, Optional

from services.generation.models import Account, ErrorCode, GenerationError

logger = logging.getLogger(__name__)


class InsufficientCredits(GenerationError):
    def __init__(self, account_id: str, amount: Decimal):
        self.account_id = account_id
        self.amount = amount
        super().__init__(
            f"Insufficient credits or no valid API key for a charge of {amount}",
            ErrorCode.INSUFFICIENT_CREDITS,
        )


@dataclass(frozen=True)
class FundingSource:
    kind: Literal["grant", "legacy"]
    balance: Decimal
    api_key: str
    grant_id: Optional[str] = None

    @property
    def is_grant(self) -> bool:
        return self.kind == "grant"


async def select_source(store, account: Account, amount: Decimal) -> FundingSource:
    """
    Choose the funding source for `amount`.

    Grants are consumed oldest first, even when a newer grant holds a larger
    balance. The legacy balance is only a fallback.

    Raises:
        InsufficientCredits: when no source can cover the amount
    """
    grants = await store.list_eligible_grants(account.id, amount)
    for grant in grants:
        # The query already filters; re-check in case of a loose store
        if grant.is_active and grant.credits >= amount:
            return FundingSource(
                kind="grant",
                balance=grant.credits,
                api_key=grant.api_key,
                grant_id=grant.id,
            )

    if account.api_key and account.credits >= amount:
        return FundingSource(kind="legacy", balance=account.credits, api_key=account.api_key)

    logger.info(
        f"No funding source for account {account.id}: amount={amount}, "
        f"legacy={account.credits}, legacy_key={'set' if account.api_key else 'missing'}"
    )
    raise InsufficientCredits(account.id, amount)
