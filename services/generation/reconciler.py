"""
Job Status Reconciler

One sweep polls every outstanding provider job once and settles the ones
that reached a terminal state:

- COMPLETED           -> record completed, output URL stored, credits kept
- FAILED / CANCELLED  -> record failed, credits_used refunded to its source
- anything else       -> left processing for the next sweep

Records older than the stale window are failed and refunded whether the
provider still reports them running or cannot be asked at all. Records left
processing are stamped as checked so the next sweep starts with others.

Transitions are guarded on status = 'processing' in the store, so repeated or
overlapping sweeps settle each record at most once.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from core.config import get_config
from services.video_generation.client import FalQueueClient, extract_video_url
from services.video_generation.endpoints import (
    queue_result_url,
    queue_status_url,
    resolve_endpoint,
)

from .models import GenerationError, ProviderStatus, ReconcileSummary

logger = logging.getLogger(__name__)


class Outcome(Enum):
    UPDATED = "updated"
    FAILED = "failed"
    PROCESSING = "processing"
    EXPIRED = "expired"
    SKIPPED = "skipped"
    ERROR = "error"
    NOOP = "noop"  # Another sweep settled it first


def _age(record: dict, now: datetime) -> Optional[timedelta]:
    created_at = record.get("created_at")
    if created_at is None:
        return None
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return now - created_at


class JobReconciler:
    """
    Usage:
        reconciler = JobReconciler(store)
        summary = await reconciler.reconcile_once()
        print(summary.to_dict())
    """

    def __init__(self, store, provider: Optional[FalQueueClient] = None, config=None):
        self.config = config or get_config()
        self.store = store
        self.provider = provider or FalQueueClient(config=self.config)

    @property
    def settings(self):
        return self.config.reconciler

    async def reconcile_once(self) -> ReconcileSummary:
        """Run one sweep over processing records."""
        summary = ReconcileSummary()
        records = await self.store.list_processing(self.settings.batch_size)
        summary.total = len(records)

        if records:
            semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrency))

            async def guarded(record: dict) -> Outcome:
                async with semaphore:
                    return await self._reconcile_guarded(record)

            outcomes = await asyncio.gather(*[guarded(r) for r in records])

            for outcome in outcomes:
                if outcome == Outcome.UPDATED:
                    summary.updated += 1
                elif outcome == Outcome.FAILED:
                    summary.failed += 1
                elif outcome == Outcome.PROCESSING:
                    summary.still_processing += 1
                elif outcome == Outcome.EXPIRED:
                    summary.expired += 1
                elif outcome == Outcome.SKIPPED:
                    summary.skipped += 1
                elif outcome == Outcome.ERROR:
                    summary.errors += 1

        summary.orphaned = await self._settle_orphans()

        logger.info(
            f"Reconcile sweep: total={summary.total} updated={summary.updated} "
            f"failed={summary.failed} processing={summary.still_processing} "
            f"expired={summary.expired} skipped={summary.skipped} errors={summary.errors} "
            f"orphaned={summary.orphaned}"
        )
        return summary

    async def _reconcile_guarded(self, record: dict) -> Outcome:
        try:
            outcome = await self.reconcile_record(record)
        except Exception:
            logger.exception(f"Error reconciling record {record.get('id')}")
            outcome = Outcome.ERROR

        if outcome in (Outcome.SKIPPED, Outcome.ERROR) and self._is_stale(record):
            try:
                return await self._expire(record, "without a usable provider status")
            except Exception:
                logger.exception(f"Failed to expire record {record.get('id')}")

        if outcome in (Outcome.PROCESSING, Outcome.SKIPPED, Outcome.ERROR):
            try:
                await self.store.mark_checked(str(record["id"]))
            except Exception:
                logger.exception(f"Failed to mark record {record.get('id')} as checked")
        return outcome

    async def reconcile_record(self, record: dict) -> Outcome:
        record_id = str(record["id"])

        api_key = await self._resolve_credential(record)
        if not api_key:
            logger.error(f"No API key found for record {record_id}; retrying next sweep")
            return Outcome.SKIPPED

        try:
            status_url, result_url = self._job_urls(record)
        except GenerationError as e:
            logger.error(f"Cannot build status URL for record {record_id}: {e}")
            return Outcome.ERROR

        try:
            status_data = await self.provider.get_status(status_url, api_key)
        except GenerationError as e:
            logger.warning(f"Status check failed for {record['request_id']}: {e}")
            return Outcome.ERROR

        status = status_data.get("status")

        if status == ProviderStatus.COMPLETED.value:
            try:
                result = await self.provider.get_result(result_url, api_key)
            except GenerationError as e:
                logger.error(f"Failed to fetch result for {record['request_id']}: {e}")
                return Outcome.ERROR

            video_url = extract_video_url(result)
            if not video_url:
                logger.warning(f"No video URL in result for {record['request_id']}: {result}")

            if await self.store.mark_completed(record_id, video_url):
                logger.info(f"Record {record_id} completed: {video_url}")
                return Outcome.UPDATED
            return Outcome.NOOP

        if status in ProviderStatus.terminal_failures():
            settled = await self.store.fail_and_refund(record_id, f"Provider reported {status}")
            return Outcome.FAILED if settled else Outcome.NOOP

        if self._is_stale(record):
            return await self._expire(record, f"in provider state {status}")

        logger.debug(f"Record {record_id} still processing: {status}")
        return Outcome.PROCESSING

    async def _expire(self, record: dict, detail: str) -> Outcome:
        record_id = str(record["id"])
        settled = await self.store.fail_and_refund(
            record_id,
            f"Expired after {self.settings.stale_after_hours}h {detail}",
        )
        if settled:
            logger.warning(f"Record {record_id} expired {detail}; credits refunded")
            return Outcome.EXPIRED
        return Outcome.NOOP

    async def _resolve_credential(self, record: dict) -> Optional[str]:
        """The funding grant's key, else the account's own key."""
        if record.get("api_key_id"):
            grant = await self.store.get_grant(str(record["api_key_id"]))
            if grant and grant.api_key:
                return grant.api_key

        account = await self.store.get_account(str(record["user_id"]))
        if account and account.api_key:
            return account.api_key
        return None

    def _job_urls(self, record: dict) -> tuple[str, str]:
        """Stored callback URLs win; otherwise rebuild them from the endpoint."""
        if record.get("fal_status_url") and record.get("fal_response_url"):
            return record["fal_status_url"], record["fal_response_url"]

        endpoint = record.get("fal_endpoint") or resolve_endpoint(
            record.get("model_version") or "", record.get("variant") or ""
        )
        base = self.config.provider.queue_base
        request_id = record["request_id"]
        return (
            queue_status_url(base, endpoint, request_id),
            queue_result_url(base, endpoint, request_id),
        )

    def _is_stale(self, record: dict) -> bool:
        hours = self.settings.stale_after_hours
        if hours <= 0:
            return False
        age = _age(record, datetime.now(timezone.utc))
        return age is not None and age > timedelta(hours=hours)

    async def _settle_orphans(self) -> int:
        """Fail and refund records whose provider submission never completed."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=self.settings.orphan_after_minutes)
        try:
            orphans = await self.store.list_unsubmitted(cutoff, self.settings.batch_size)
        except Exception:
            logger.exception("Failed to list unsubmitted records")
            return 0

        settled = 0
        for record in orphans:
            try:
                if await self.store.fail_and_refund(
                    str(record["id"]), "Provider submission never completed"
                ):
                    settled += 1
            except Exception:
                logger.exception(f"Failed to settle orphaned record {record['id']}")

        if settled:
            logger.warning(f"Settled {settled} orphaned records")
        return settled
