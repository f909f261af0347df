"""Rate limiting in runtime.py: Redis token bucket, in-process bucket when Redis is absent."""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from coursegate.service.runtime import Runtime, check_rate_limit, prune_local_rate_limits


class TestCheckRateLimit:
    @pytest.fixture
    def local_runtime(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    @pytest.fixture
    def redis_runtime(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=(True, 4, 0))
        return runtime

    async def test_non_positive_limit_always_passes(self, local_runtime):
        assert await check_rate_limit(local_runtime, "login:x", 0, 60) is True
        assert await check_rate_limit(local_runtime, "login:x", -1, 60) is True
        assert local_runtime._local_rate_limits == {}

    async def test_invalid_window_warns_and_defaults(self, local_runtime):
        with patch("coursegate.service.runtime.logger") as mock_logger:
            assert await check_rate_limit(local_runtime, "login:x", 3, 0) is True
        mock_logger.warning.assert_called_once()
        args, kwargs = mock_logger.warning.call_args
        assert args[0] == "rate_limit_invalid_window"
        assert kwargs["window_seconds"] == 0

    async def test_local_bucket_exhausts_then_blocks(self, local_runtime):
        results = [
            await check_rate_limit(local_runtime, "register:1.2.3.4", 3, 60, return_remaining=True)
            for _ in range(4)
        ]
        assert [allowed for allowed, _, _ in results] == [True, True, True, False]
        assert [remaining for _, remaining, _ in results[:3]] == [2, 1, 0]
        assert results[3][2] > 0

    async def test_keys_are_independent(self, local_runtime):
        assert await check_rate_limit(local_runtime, "claim:u-1", 1, 60)
        assert not await check_rate_limit(local_runtime, "claim:u-1", 1, 60)
        assert await check_rate_limit(local_runtime, "claim:u-2", 1, 60)

    async def test_cost_above_budget_is_denied(self, local_runtime):
        assert not await check_rate_limit(local_runtime, "bulk", 2, 60, cost=3)

    async def test_redis_path_delegates(self, redis_runtime):
        result = await check_rate_limit(
            redis_runtime, "login:x", 5, 60, return_remaining=True
        )
        assert result == (True, 4, 0)
        redis_runtime.cache.check_rate_limit.assert_awaited_once_with(
            "login:x", 5, 60, return_remaining=True, cost=1
        )

    async def test_idle_buckets_are_pruned(self, local_runtime):
        assert await check_rate_limit(local_runtime, "login:old", 1, 60)
        assert await check_rate_limit(local_runtime, "login:fresh", 1, 60)
        tokens, last_ts = local_runtime._local_rate_limits["login:old"]
        local_runtime._local_rate_limits["login:old"] = (tokens, last_ts - timedelta(hours=2))

        assert await prune_local_rate_limits(local_runtime) == 1
        assert list(local_runtime._local_rate_limits) == ["login:fresh"]
        # a pruned key starts over with a full bucket
        assert await check_rate_limit(local_runtime, "login:old", 1, 60)

    async def test_prune_cutoff_is_inclusive(self, local_runtime):
        now = datetime.now(timezone.utc)
        local_runtime._local_rate_limits["claim:u-1"] = (0.0, now - timedelta(seconds=60))
        assert await prune_local_rate_limits(local_runtime, max_idle_seconds=61, now=now) == 0
        assert await prune_local_rate_limits(local_runtime, max_idle_seconds=60, now=now) == 1
        assert local_runtime._local_rate_limits == {}
