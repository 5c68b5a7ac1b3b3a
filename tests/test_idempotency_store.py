"""Tests for the webhook idempotency ledger."""

import asyncio

import pytest

from studio_billing.services.idempotency_store import ClaimResult, IdempotencyStore


@pytest.fixture
def store(session_factory, clock):
    return IdempotencyStore(session_factory, clock)


class TestClaim:
    @pytest.mark.asyncio
    async def test_first_claim_is_new(self, store, fetch, clock):
        result = await store.claim("evt-1", "payment.updated", {"id": 1})
        assert result is ClaimResult.NEW
        assert result.should_process

        row = await fetch.webhook_event("evt-1")
        assert row.processed is False
        assert row.event_type == "payment.updated"
        assert row.data == {"id": 1}
        assert row.created_at == clock.now()

    @pytest.mark.asyncio
    async def test_unfinished_event_is_retried(self, store):
        await store.claim("evt-1", "payment.updated", {})
        result = await store.claim("evt-1", "payment.updated", {})
        assert result is ClaimResult.RETRY
        assert result.should_process

    @pytest.mark.asyncio
    async def test_processed_event_is_skipped(self, store, fetch, clock):
        await store.claim("evt-1", "payment.updated", {})
        await store.mark_processed("evt-1")

        assert await store.is_processed("evt-1")
        result = await store.claim("evt-1", "payment.updated", {})
        assert result is ClaimResult.PROCESSED
        assert not result.should_process
        assert (await fetch.webhook_event("evt-1")).processed_at == clock.now()

    @pytest.mark.asyncio
    async def test_unknown_event_is_not_processed(self, store):
        assert not await store.is_processed("missing")

    @pytest.mark.asyncio
    async def test_concurrent_claims_insert_one_row(self, store, session_factory):
        results = await asyncio.gather(
            store.claim("evt-race", "payment.updated", {}),
            store.claim("evt-race", "payment.updated", {}),
        )
        assert results.count(ClaimResult.NEW) == 1
        other = next(r for r in results if r is not ClaimResult.NEW)
        assert other in (ClaimResult.CONFLICT, ClaimResult.RETRY)

    def test_conflict_is_not_processed(self):
        assert not ClaimResult.CONFLICT.should_process
