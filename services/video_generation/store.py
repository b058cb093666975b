"""
Generation Store - PostgreSQL persistence for accounts, credits and jobs.

Every balance mutation is a single conditional UPDATE, and every status
transition is guarded on status = 'processing', so concurrent submissions and
overlapping reconciler sweeps can neither overdraw a balance nor settle the
same record twice.
"""

import asyncio
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

import asyncpg
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from services.generation.models import Account, CreditGrant, ProviderJobHandle

logger = logging.getLogger(__name__)

# Connection-level failures worth retrying; constraint/SQL errors are not
TRANSIENT_DB_ERRORS = (OSError, asyncio.TimeoutError, asyncpg.InterfaceError)

_PROCESSING_COLUMNS = """
    id, request_id, user_id, credits_used, api_key_id, model_version, variant,
    fal_endpoint, fal_status_url, fal_response_url, created_at, last_checked_at
"""


class GenerationStore:
    """
    asyncpg-backed store.

    Usage:
        store = await GenerationStore.connect(config.database)

        record_id = await store.reserve_and_record(
            account_id, grant_id, Decimal("0.4"), record_fields
        )
        await store.attach_job_handle(record_id, handle)
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    @classmethod
    async def connect(cls, database_config) -> "GenerationStore":
        pool = await asyncpg.create_pool(
            database_config.url,
            min_size=database_config.pool_min_size,
            max_size=database_config.pool_max_size,
        )
        return cls(pool)

    async def close(self):
        await self.db_pool.close()

    # ------------------------------------------------------------------
    # Accounts, grants, configuration tables
    # ------------------------------------------------------------------

    async def get_account(self, account_id: str) -> Optional[Account]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, username, role, credits, api_key FROM users WHERE id = $1",
                account_id,
            )
            return Account.from_row(dict(row)) if row else None

    async def get_grant(self, grant_id: str) -> Optional[CreditGrant]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, user_id, api_key, credits, is_active, created_at
                FROM api_keys WHERE id = $1
                """,
                grant_id,
            )
            return CreditGrant.from_row(dict(row)) if row else None

    async def list_eligible_grants(self, account_id: str, amount: Decimal) -> list[CreditGrant]:
        """Active grants able to cover `amount`, oldest first."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, user_id, api_key, credits, is_active, created_at
                FROM api_keys
                WHERE user_id = $1
                  AND is_active = TRUE
                  AND credits >= $2
                ORDER BY created_at ASC
                """,
                account_id,
                amount,
            )
            return [CreditGrant.from_row(dict(row)) for row in rows]

    async def find_prices(
        self,
        model_type: str,
        model_version: str,
        variant: str,
        role: str,
        duration: Optional[int] = None,
        audio_enabled: Optional[bool] = None,
    ) -> list[dict]:
        """Pricing rows matching the given key; optional parts are only filtered when set."""
        query = """
            SELECT price, is_per_second
            FROM credit_pricing
            WHERE model_type = $1
              AND model_version = $2
              AND variant = $3
              AND role = $4
        """
        params: list = [model_type, model_version, variant, role]

        if duration is not None:
            params.append(duration)
            query += f" AND duration = ${len(params)}"

        if audio_enabled is not None:
            params.append(audio_enabled)
            query += f" AND audio_enabled = ${len(params)}"

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query + " LIMIT 2", *params)
            return [dict(row) for row in rows]

    async def get_model_access(
        self,
        account_id: str,
        model_version: str,
        variant: str,
    ) -> Optional[bool]:
        """The override flag, or None when no override exists."""
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT is_enabled FROM model_access
                WHERE user_id = $1 AND model_version = $2 AND variant = $3
                """,
                account_id,
                model_version,
                variant,
            )

    # ------------------------------------------------------------------
    # Money movement
    # ------------------------------------------------------------------

    async def reserve_and_record(
        self,
        account_id: str,
        grant_id: Optional[str],
        amount: Decimal,
        record: dict,
    ) -> Optional[str]:
        """
        Debit the funding source and create the processing record atomically.

        Returns the new record id, or None when the conditional debit matched
        no row (balance changed underneath us); in that case nothing is written.
        """
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                if grant_id:
                    remaining = await conn.fetchval(
                        """
                        UPDATE api_keys
                        SET credits = credits - $1, updated_at = NOW()
                        WHERE id = $2 AND user_id = $3 AND is_active = TRUE AND credits >= $1
                        RETURNING credits
                        """,
                        amount,
                        grant_id,
                        account_id,
                    )
                else:
                    remaining = await conn.fetchval(
                        """
                        UPDATE users
                        SET credits = credits - $1
                        WHERE id = $2 AND credits >= $1
                        RETURNING credits
                        """,
                        amount,
                        account_id,
                    )

                if remaining is None:
                    logger.info(
                        f"Conditional debit of {amount} missed for account {account_id} "
                        f"(grant={grant_id})"
                    )
                    return None

                record_id = await conn.fetchval(
                    """
                    INSERT INTO generation_history (
                        user_id,
                        prompt,
                        image_url,
                        aspect_ratio,
                        duration,
                        credits_used,
                        status,
                        fal_endpoint,
                        model_type,
                        model_version,
                        variant,
                        audio_enabled,
                        metadata,
                        api_key_id
                    ) VALUES (
                        $1, $2, $3, $4, $5, $6, 'processing', $7, $8, $9, $10, $11, $12::jsonb, $13
                    )
                    RETURNING id
                    """,
                    account_id,
                    record.get("prompt", ""),
                    record.get("image_url"),
                    record.get("aspect_ratio") or "default",
                    record.get("duration") or 0,
                    amount,
                    record.get("fal_endpoint"),
                    record.get("model_type"),
                    record.get("model_version"),
                    record.get("variant"),
                    bool(record.get("audio_enabled")),
                    json.dumps(record.get("metadata") or {}),
                    grant_id,
                )

        logger.info(
            f"Reserved {amount} credits for account {account_id} "
            f"({'grant ' + grant_id if grant_id else 'legacy balance'}), record {record_id}"
        )
        return str(record_id)

    @retry(
        retry=retry_if_exception_type(TRANSIENT_DB_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True,
    )
    async def fail_and_refund(
        self,
        record_id: str,
        reason: Optional[str] = None,
    ) -> Optional[dict]:
        """
        Mark a processing record failed and return its credits_used to the
        source it was debited from, in one transaction.

        Returns the settled row (user_id, api_key_id, credits_used), or None if
        the record had already left processing.
        """
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE generation_history
                    SET status = 'failed',
                        refund_status = 'settled',
                        error_message = COALESCE($2, error_message)
                    WHERE id = $1 AND status = 'processing'
                    RETURNING user_id, api_key_id, credits_used
                    """,
                    record_id,
                    reason,
                )
                if row is None:
                    return None

                refunded_to_grant = None
                if row["api_key_id"] is not None:
                    refunded_to_grant = await conn.fetchval(
                        """
                        UPDATE api_keys
                        SET credits = credits + $1, updated_at = NOW()
                        WHERE id = $2
                        RETURNING id
                        """,
                        row["credits_used"],
                        row["api_key_id"],
                    )
                    if refunded_to_grant is None:
                        logger.warning(
                            f"Grant {row['api_key_id']} for record {record_id} no longer exists; "
                            f"refunding to legacy balance"
                        )

                if refunded_to_grant is None:
                    await conn.execute(
                        "UPDATE users SET credits = credits + $1 WHERE id = $2",
                        row["credits_used"],
                        row["user_id"],
                    )

        logger.info(
            f"Record {record_id} failed; refunded {row['credits_used']} credits "
            f"to {'grant ' + str(row['api_key_id']) if row['api_key_id'] else 'legacy balance'}"
        )
        return dict(row)

    # ------------------------------------------------------------------
    # Record transitions
    # ------------------------------------------------------------------

    @retry(
        retry=retry_if_exception_type(TRANSIENT_DB_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True,
    )
    async def attach_job_handle(self, record_id: str, handle: ProviderJobHandle) -> bool:
        async with self.db_pool.acquire() as conn:
            updated = await conn.fetchval(
                """
                UPDATE generation_history
                SET request_id = $1,
                    fal_status_url = $2,
                    fal_response_url = $3,
                    fal_cancel_url = $4
                WHERE id = $5 AND status = 'processing'
                RETURNING id
                """,
                handle.request_id,
                handle.status_url,
                handle.response_url,
                handle.cancel_url,
                record_id,
            )
            return updated is not None

    async def mark_completed(self, record_id: str, video_url: Optional[str]) -> bool:
        async with self.db_pool.acquire() as conn:
            updated = await conn.fetchval(
                """
                UPDATE generation_history
                SET status = 'completed',
                    completed_at = NOW(),
                    video_url = COALESCE($2, video_url)
                WHERE id = $1 AND status = 'processing'
                RETURNING id
                """,
                record_id,
                video_url,
            )
            return updated is not None

    async def mark_checked(self, record_id: str) -> None:
        """Move a still-processing record to the back of the sweep order."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE generation_history
                SET last_checked_at = NOW()
                WHERE id = $1 AND status = 'processing'
                """,
                record_id,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_processing(self, limit: int = 50) -> list[dict]:
        """Processing records with a provider request id, least recently checked first."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_PROCESSING_COLUMNS}
                FROM generation_history
                WHERE status = 'processing'
                  AND request_id IS NOT NULL
                ORDER BY last_checked_at ASC NULLS FIRST, created_at ASC
                LIMIT $1
                """,
                limit,
            )
            return [dict(row) for row in rows]

    async def list_unsubmitted(self, older_than: datetime, limit: int = 50) -> list[dict]:
        """Processing records whose provider submission never completed."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_PROCESSING_COLUMNS}
                FROM generation_history
                WHERE status = 'processing'
                  AND request_id IS NULL
                  AND created_at < $1
                ORDER BY created_at ASC
                LIMIT $2
                """,
                older_than,
                limit,
            )
            return [dict(row) for row in rows]

    async def get_record(self, record_id: str) -> Optional[dict]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM generation_history WHERE id = $1",
                record_id,
            )
            return dict(row) if row else None

    async def list_history(self, account_id: str, limit: int = 10, offset: int = 0) -> list[dict]:
        """An account's records, newest first."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM generation_history
                WHERE user_id = $1
                ORDER BY created_at DESC
                LIMIT $2 OFFSET $3
                """,
                account_id,
                limit,
                offset,
            )
            return [dict(row) for row in rows]

    async def count_history(self, account_id: str) -> int:
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM generation_history WHERE user_id = $1",
                account_id,
            )

    async def count_processing(self, account_id: str) -> int:
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT COUNT(*) FROM generation_history
                WHERE user_id = $1 AND status = 'processing'
                """,
                account_id,
            )
