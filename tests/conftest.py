"""
Shared fixtures: an in-memory store with the same contract as
GenerationStore, and a scripted fal queue client.
"""

import dataclasses
import itertools
import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.circuit_breaker import CircuitBreaker
from core.config import Config
from services.generation.models import Account, CreditGrant, ProviderJobHandle


QUEUE_BASE = "https://queue.fal.run"


class FakeStore:
    """Dict-backed store; debits and transitions follow the SQL store's guards."""

    def __init__(self):
        self.accounts: dict[str, Account] = {}
        self.grants: dict[str, CreditGrant] = {}
        self.prices: list[dict] = []
        self.model_access: dict[tuple[str, str, str], bool] = {}
        self.records: dict[str, dict] = {}

        self.before_debit = None  # one-shot hook run inside reserve_and_record
        self.reserve_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.attach_error: Optional[Exception] = None
        self.access_error: Optional[Exception] = None
        self.reserve_calls = 0
        self.checked: list[str] = []

        self._ids = itertools.count(1)

    # Seeding helpers

    def add_account(self, account_id, role="user", credits="0", api_key=""):
        self.accounts[account_id] = Account(
            id=account_id, role=role, credits=Decimal(credits), api_key=api_key
        )
        return self.accounts[account_id]

    def add_grant(self, grant_id, user_id, credits, api_key="", is_active=True, age_minutes=0):
        self.grants[grant_id] = CreditGrant(
            id=grant_id,
            user_id=user_id,
            credits=Decimal(credits),
            api_key=api_key,
            is_active=is_active,
            created_at=datetime.now(timezone.utc) - timedelta(minutes=age_minutes),
        )
        return self.grants[grant_id]

    def add_price(
        self,
        model_version,
        variant,
        price,
        role="user",
        duration=None,
        audio_enabled=None,
        is_per_second=False,
        model_type="kling",
    ):
        self.prices.append({
            "model_type": model_type,
            "model_version": model_version,
            "variant": variant,
            "role": role,
            "duration": duration,
            "audio_enabled": audio_enabled,
            "price": Decimal(price),
            "is_per_second": is_per_second,
        })

    def add_record(
        self,
        user_id,
        credits_used="0.4",
        status="processing",
        request_id=None,
        api_key_id=None,
        fal_endpoint="fal-ai/kling-video/v2.6/pro/text-to-video",
        model_version="v2.6",
        variant="text-to-video",
        age_minutes=0,
        **extra,
    ) -> str:
        record_id = f"rec-{next(self._ids)}"
        self.records[record_id] = {
            "id": record_id,
            "user_id": user_id,
            "credits_used": Decimal(credits_used),
            "status": status,
            "request_id": request_id,
            "api_key_id": api_key_id,
            "fal_endpoint": fal_endpoint,
            "fal_status_url": None,
            "fal_response_url": None,
            "fal_cancel_url": None,
            "model_version": model_version,
            "variant": variant,
            "video_url": None,
            "error_message": None,
            "refund_status": None,
            "last_checked_at": None,
            "created_at": datetime.now(timezone.utc) - timedelta(minutes=age_minutes),
            **extra,
        }
        return record_id

    # GenerationStore contract

    async def get_account(self, account_id):
        account = self.accounts.get(account_id)
        return dataclasses.replace(account) if account else None

    async def get_grant(self, grant_id):
        grant = self.grants.get(grant_id)
        return dataclasses.replace(grant) if grant else None

    async def list_eligible_grants(self, account_id, amount):
        grants = [
            g for g in self.grants.values()
            if g.user_id == account_id and g.is_active and g.credits >= amount
        ]
        grants.sort(key=lambda g: g.created_at)
        return [dataclasses.replace(g) for g in grants]

    async def find_prices(
        self,
        model_type,
        model_version,
        variant,
        role,
        duration=None,
        audio_enabled=None,
    ):
        rows = []
        for row in self.prices:
            if (row["model_type"], row["model_version"], row["variant"], row["role"]) != (
                model_type, model_version, variant, role
            ):
                continue
            if duration is not None and row["duration"] != duration:
                continue
            if audio_enabled is not None and row["audio_enabled"] != audio_enabled:
                continue
            rows.append({"price": row["price"], "is_per_second": row["is_per_second"]})
        return rows[:2]

    async def get_model_access(self, account_id, model_version, variant):
        if self.access_error:
            raise self.access_error
        return self.model_access.get((account_id, model_version, variant))

    async def reserve_and_record(self, account_id, grant_id, amount, record):
        self.reserve_calls += 1
        if self.reserve_error:
            raise self.reserve_error
        if self.before_debit:
            hook, self.before_debit = self.before_debit, None
            hook()

        if grant_id:
            grant = self.grants.get(grant_id)
            if (
                grant is None
                or grant.user_id != account_id
                or not grant.is_active
                or grant.credits < amount
            ):
                return None
            grant.credits -= amount
        else:
            account = self.accounts[account_id]
            if account.credits < amount:
                return None
            account.credits -= amount

        fields = {k: v for k, v in record.items() if k not in ("model_version", "variant", "fal_endpoint")}
        return self.add_record(
            account_id,
            credits_used=str(amount),
            api_key_id=grant_id,
            fal_endpoint=record.get("fal_endpoint"),
            model_version=record.get("model_version"),
            variant=record.get("variant"),
            **fields,
        )

    async def fail_and_refund(self, record_id, reason=None):
        if self.refund_error:
            raise self.refund_error
        record = self.records.get(record_id)
        if record is None or record["status"] != "processing":
            return None

        record["status"] = "failed"
        record["refund_status"] = "settled"
        record["error_message"] = reason or record["error_message"]

        grant = self.grants.get(record["api_key_id"]) if record["api_key_id"] else None
        if grant is not None:
            grant.credits += record["credits_used"]
        else:
            self.accounts[record["user_id"]].credits += record["credits_used"]

        return {
            "user_id": record["user_id"],
            "api_key_id": record["api_key_id"],
            "credits_used": record["credits_used"],
        }

    async def attach_job_handle(self, record_id, handle):
        if self.attach_error:
            raise self.attach_error
        record = self.records.get(record_id)
        if record is None or record["status"] != "processing":
            return False
        record.update(
            request_id=handle.request_id,
            fal_status_url=handle.status_url,
            fal_response_url=handle.response_url,
            fal_cancel_url=handle.cancel_url,
        )
        return True

    async def mark_completed(self, record_id, video_url):
        record = self.records.get(record_id)
        if record is None or record["status"] != "processing":
            return False
        record["status"] = "completed"
        record["video_url"] = video_url or record["video_url"]
        return True

    async def mark_checked(self, record_id):
        record = self.records.get(record_id)
        if record is not None and record["status"] == "processing":
            record["last_checked_at"] = datetime.now(timezone.utc)
            self.checked.append(record_id)

    async def list_processing(self, limit=50):
        rows = [
            dict(r) for r in self.records.values()
            if r["status"] == "processing" and r["request_id"] is not None
        ]
        rows.sort(key=lambda r: (
            r["last_checked_at"] is not None,
            r["last_checked_at"] or r["created_at"],
            r["created_at"],
        ))
        return rows[:limit]

    async def list_unsubmitted(self, older_than, limit=50):
        rows = [
            dict(r) for r in self.records.values()
            if r["status"] == "processing"
            and r["request_id"] is None
            and r["created_at"] < older_than
        ]
        rows.sort(key=lambda r: r["created_at"])
        return rows[:limit]

    async def get_record(self, record_id):
        record = self.records.get(record_id)
        return dict(record) if record else None

    async def list_history(self, account_id, limit=10, offset=0):
        rows = [dict(r) for r in self.records.values() if r["user_id"] == account_id]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return rows[offset:offset + limit]

    async def count_history(self, account_id):
        return sum(1 for r in self.records.values() if r["user_id"] == account_id)

    async def count_processing(self, account_id):
        return sum(
            1 for r in self.records.values()
            if r["user_id"] == account_id and r["status"] == "processing"
        )


class FakeProvider:
    """Scripted fal queue client."""

    def __init__(self):
        self.submissions: list[tuple[str, dict, str]] = []
        self.status_calls: list[tuple[str, str]] = []
        self.submit_error: Optional[Exception] = None
        self.statuses: dict[str, object] = {}
        self.results: dict[str, object] = {}

    @staticmethod
    def _request_id(url: str) -> str:
        return url.split("/requests/", 1)[1].split("/", 1)[0]

    async def submit(self, endpoint, payload, api_key):
        self.submissions.append((endpoint, payload, api_key))
        if self.submit_error:
            raise self.submit_error
        request_id = f"req-{len(self.submissions)}"
        return ProviderJobHandle(
            request_id=request_id,
            status_url=f"{QUEUE_BASE}/{endpoint}/requests/{request_id}/status",
            response_url=f"{QUEUE_BASE}/{endpoint}/requests/{request_id}",
        )

    async def get_status(self, status_url, api_key):
        self.status_calls.append((status_url, api_key))
        value = self.statuses.get(self._request_id(status_url), {"status": "IN_PROGRESS"})
        if isinstance(value, Exception):
            raise value
        return value

    async def get_result(self, response_url, api_key):
        value = self.results.get(self._request_id(response_url), {})
        if isinstance(value, Exception):
            raise value
        return value

    async def check_request(self, endpoint, request_id, api_key):
        status = await self.get_status(f"{QUEUE_BASE}/{endpoint}/requests/{request_id}/status", api_key)
        if status["status"] != "COMPLETED":
            return {"status": status["status"], "full_response": status}
        result = await self.get_result(f"{QUEUE_BASE}/{endpoint}/requests/{request_id}", api_key)
        return {"status": "COMPLETED", "video_url": result["video"]["url"], "full_response": result}

    async def close(self):
        pass


@pytest.fixture(autouse=True)
def fresh_circuit_breakers():
    """Every test starts with closed breakers."""
    CircuitBreaker._instances.clear()
    yield
    CircuitBreaker._instances.clear()


@pytest.fixture
def config():
    config = Config()
    config.provider.queue_base = QUEUE_BASE
    config.policy.max_processing_per_user = 3
    config.policy.max_reservation_attempts = 3
    config.reconciler.batch_size = 50
    config.reconciler.max_concurrency = 5
    config.reconciler.orphan_after_minutes = 15
    config.reconciler.stale_after_hours = 48
    return config


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def provider():
    return FakeProvider()
