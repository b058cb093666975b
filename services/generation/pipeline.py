"""
Generation Request Pipeline

Orchestrates one submission:

    policy checks -> uploads -> price -> funding source
      -> debit + record (one transaction) -> provider submit
      -> attach job handle, or fail the record and refund

Money only moves inside the reserve transaction, which also writes the
processing record, so there is never a debit without an auditable record.
Any refund uses the credits_used stored on that record.
"""

import dataclasses
import logging
from decimal import Decimal
from typing import Optional

from core.config import get_config
from services.access.policy import AccessPolicy
from services.billing.credits import FundingSource, InsufficientCredits, select_source
from services.billing.pricing import resolve_price
from services.video_generation.client import FalQueueClient
from services.video_generation.endpoints import build_payload, resolve_endpoint

from .models import (
    Account,
    ErrorCode,
    GenerationError,
    GenerationInputs,
    ModelSelector,
    SubmissionResult,
)

logger = logging.getLogger(__name__)


class GenerationPipeline:
    """
    Credit-settled submission of video generation jobs.

    Usage:
        pipeline = GenerationPipeline(store)

        result = await pipeline.submit(
            account_id,
            ModelSelector(model_version="v2.6", variant="text-to-video"),
            GenerationInputs(prompt="A paper boat in the rain", duration=5),
        )
        if not result.success:
            print(result.error_code, result.error_message)
    """

    def __init__(
        self,
        store,
        provider: Optional[FalQueueClient] = None,
        uploader=None,
        policy: Optional[AccessPolicy] = None,
        config=None,
    ):
        self.config = config or get_config()
        self.store = store
        self.provider = provider or FalQueueClient(config=self.config)
        self.uploader = uploader
        self.policy = policy or AccessPolicy(store, config=self.config)

    async def submit(
        self,
        account_id: str,
        selector: ModelSelector,
        inputs: GenerationInputs,
    ) -> SubmissionResult:
        """Submit a generation request. Never raises; failures come back as results."""
        try:
            return await self._submit(account_id, selector, inputs)
        except GenerationError as e:
            logger.warning(
                f"Submission for {account_id} ({selector.model_version}/{selector.variant}) "
                f"rejected: {e.error_code.value}: {e}"
            )
            return SubmissionResult.failure(e)
        except Exception as e:
            logger.exception(f"Submission for {account_id} hit an unexpected error")
            return SubmissionResult.failure(
                GenerationError(f"Unexpected error: {type(e).__name__}: {e}", ErrorCode.STORAGE_ERROR)
            )

    async def _submit(
        self,
        account_id: str,
        selector: ModelSelector,
        inputs: GenerationInputs,
    ) -> SubmissionResult:
        account = await self.store.get_account(account_id)
        if account is None:
            raise GenerationError("User not found", ErrorCode.ACCOUNT_NOT_FOUND)

        self._validate(selector, inputs)

        access = await self.policy.check_access(account, selector.model_version, selector.variant)
        if not access.allowed:
            raise GenerationError(access.reason, ErrorCode.ACCESS_DENIED)

        concurrency = await self.policy.check_concurrency(account)
        if not concurrency.allowed:
            raise GenerationError(concurrency.reason, ErrorCode.CONCURRENCY_LIMIT_EXCEEDED)

        duration_limit = self.policy.check_duration(account, selector, inputs)
        if not duration_limit.allowed:
            raise GenerationError(duration_limit.reason, ErrorCode.INVALID_REQUEST)

        inputs = await self._upload_inputs(account, inputs)

        quote = await resolve_price(
            self.store,
            selector,
            account.pricing_role,
            duration=inputs.duration,
            audio_enabled=inputs.audio_enabled,
        )
        endpoint = resolve_endpoint(selector.model_version, selector.variant)
        credits_needed = quote.credits_needed(inputs.duration)

        source, record_id = await self._reserve(
            account,
            credits_needed,
            self._record_fields(selector, inputs, endpoint),
        )

        try:
            handle = await self.provider.submit(endpoint, build_payload(inputs), source.api_key)
        except GenerationError as e:
            await self._release(record_id, str(e))
            return SubmissionResult.failure(e, record_id=record_id)

        try:
            await self.store.attach_job_handle(record_id, handle)
        except Exception as e:
            # The provider job is live; the orphan sweep settles the record if this never lands
            logger.exception(f"Failed to attach request {handle.request_id} to record {record_id}")
            return SubmissionResult.failure(
                GenerationError(
                    f"Job queued but could not be recorded: {type(e).__name__}",
                    ErrorCode.STORAGE_ERROR,
                ),
                record_id=record_id,
            )

        logger.info(
            f"Record {record_id} queued as {handle.request_id} on {endpoint} "
            f"({credits_needed} credits from {source.kind})"
        )
        return SubmissionResult(
            success=True,
            record_id=record_id,
            request_id=handle.request_id,
            handle=handle,
            credits_used=credits_needed,
            funding_kind=source.kind,
            grant_id=source.grant_id,
        )

    def _validate(self, selector: ModelSelector, inputs: GenerationInputs):
        if inputs.duration is not None and inputs.duration <= 0:
            raise GenerationError("Duration must be a positive number of seconds", ErrorCode.INVALID_REQUEST)

        if selector.is_per_second:
            if not inputs.duration:
                raise GenerationError(
                    "Motion control needs the measured input video duration",
                    ErrorCode.INVALID_REQUEST,
                )
            if not (inputs.video_url or inputs.video_file):
                raise GenerationError("Motion control needs a reference video", ErrorCode.INVALID_REQUEST)
        elif "image-to-video" in selector.variant:
            if not (inputs.image_url or inputs.image_file):
                raise GenerationError("Image-to-video needs a start image", ErrorCode.INVALID_REQUEST)
        elif not inputs.prompt.strip():
            raise GenerationError("Prompt is required", ErrorCode.INVALID_REQUEST)

    async def _upload_inputs(self, account: Account, inputs: GenerationInputs) -> GenerationInputs:
        """Replace local file references with public URLs."""
        pending = inputs.pending_uploads()
        if not pending:
            return inputs
        if self.uploader is None:
            raise GenerationError("File uploads are not configured", ErrorCode.UPLOAD_FAILED)

        uploaded = {}
        for attr, path in pending:
            uploaded[attr] = await self.uploader.upload(account.id, path)

        return dataclasses.replace(
            inputs,
            image_file=None,
            tail_image_file=None,
            video_file=None,
            **uploaded,
        )

    @staticmethod
    def _record_fields(selector: ModelSelector, inputs: GenerationInputs, endpoint: str) -> dict:
        return {
            "prompt": inputs.prompt,
            "image_url": inputs.image_url,
            "aspect_ratio": inputs.aspect_ratio,
            "duration": inputs.duration,
            "fal_endpoint": endpoint,
            "model_type": selector.model_type,
            "model_version": selector.model_version,
            "variant": selector.variant,
            "audio_enabled": inputs.audio_enabled,
            "metadata": {
                "imageUrl2": inputs.tail_image_url,
                "videoUrl": inputs.video_url,
                "characterOrientation": inputs.character_orientation,
                "keepOriginalSound": inputs.keep_original_sound,
            },
        }

    async def _reserve(
        self,
        account: Account,
        amount: Decimal,
        record_fields: dict,
    ) -> tuple[FundingSource, str]:
        """
        Select a source and debit it together with the record insert.

        A missed conditional debit means another submission drained the
        source first; re-select against fresh balances a bounded number of times.
        """
        attempts = self.config.policy.max_reservation_attempts

        for attempt in range(1, attempts + 1):
            source = await select_source(self.store, account, amount)
            try:
                record_id = await self.store.reserve_and_record(
                    account.id, source.grant_id, amount, record_fields
                )
            except Exception as e:
                raise GenerationError(
                    f"Failed to reserve credits: {type(e).__name__}: {e}",
                    ErrorCode.STORAGE_ERROR,
                ) from e

            if record_id is not None:
                return source, record_id

            logger.info(
                f"Debit race lost for account {account.id} on attempt {attempt}/{attempts}; re-selecting"
            )
            account = await self.store.get_account(account.id) or account

        raise InsufficientCredits(account.id, amount)

    async def _release(self, record_id: str, reason: str):
        """Fail a just-created record and refund it after a rejected submission."""
        try:
            await self.store.fail_and_refund(record_id, reason)
        except Exception:
            # Record stays processing without a request id; the orphan sweep refunds it later
            logger.exception(f"Refund for record {record_id} failed; deferring to orphan sweep")
