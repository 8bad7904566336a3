"""Tests for the Redis idempotency store."""
import asyncio
from datetime import timedelta

import pytest


@pytest.mark.asyncio
async def test_first_claim_wins_and_duplicate_is_reported(idempotency):
    assert await idempotency.try_claim("payos:1:00:x", timedelta(hours=24)) is True
    assert await idempotency.try_claim("payos:1:00:x", timedelta(hours=24)) is False


@pytest.mark.asyncio
async def test_keys_are_independent(idempotency):
    assert await idempotency.try_claim("a", 60)
    assert await idempotency.try_claim("b", 60)


@pytest.mark.asyncio
async def test_claim_sets_expiry(idempotency, redis_client):
    await idempotency.try_claim("expiring", timedelta(minutes=5))

    ttl = await redis_client.ttl("idempotency:expiring")
    assert 0 < ttl <= 300


@pytest.mark.asyncio
async def test_expired_key_is_treated_as_absent(idempotency, redis_client):
    await idempotency.try_claim("gone", 60)
    # Simulate expiry without waiting for it
    await redis_client.delete("idempotency:gone")

    assert await idempotency.try_claim("gone", 60) is True


@pytest.mark.asyncio
async def test_release_allows_reclaim(idempotency):
    await idempotency.try_claim("retry-me", 60)

    assert await idempotency.release("retry-me") is True
    assert await idempotency.is_claimed("retry-me") is False
    assert await idempotency.try_claim("retry-me", 60) is True


@pytest.mark.asyncio
async def test_release_of_unknown_key_returns_false(idempotency):
    assert await idempotency.release("never-claimed") is False


@pytest.mark.asyncio
async def test_concurrent_claims_have_exactly_one_winner(idempotency):
    results = await asyncio.gather(*[idempotency.try_claim("race", 60) for _ in range(20)])

    assert results.count(True) == 1
    assert results.count(False) == 19


@pytest.mark.asyncio
async def test_invalid_arguments_are_rejected(idempotency):
    with pytest.raises(ValueError):
        await idempotency.try_claim("", 60)
    with pytest.raises(ValueError):
        await idempotency.try_claim("k", timedelta(0))
