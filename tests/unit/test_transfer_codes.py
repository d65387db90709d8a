"""Transfer code tests: expiring, single-use codes in Redis."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from questlog.exceptions import InvalidInputError, NotFoundError
from questlog.transfer_codes import (
    KEY_PREFIX,
    TRANSFER_CODE_LENGTH,
    create_transfer_code,
    generate_transfer_code,
    redeem_transfer_code,
)


@pytest.fixture
def redis() -> MagicMock:
    """Dict-backed SET NX / GETDEL."""
    store: dict[str, str] = {}

    async def _set(key, value, ex=None, nx=False):
        if nx and key in store:
            return None
        store[key] = value
        return True

    async def _getdel(key):
        return store.pop(key, None)

    client = MagicMock()
    client.store = store
    client.set = AsyncMock(side_effect=_set)
    client.getdel = AsyncMock(side_effect=_getdel)
    return client


class TestGenerate:
    def test_six_digits(self):
        for _ in range(100):
            code = generate_transfer_code()
            assert len(code) == TRANSFER_CODE_LENGTH
            assert code.isdigit()

    def test_codes_vary(self):
        assert len({generate_transfer_code() for _ in range(50)}) > 1


class TestCreateAndRedeem:
    @pytest.mark.asyncio
    async def test_round_trip(self, redis):
        code = await create_transfer_code(redis, "user-1", {"device": "ios"}, ttl_seconds=60)
        assert await redeem_transfer_code(redis, code) == {"user_id": "user-1", "device": "ios"}

    @pytest.mark.asyncio
    async def test_set_with_ttl_and_nx(self, redis):
        code = await create_transfer_code(redis, "user-1", ttl_seconds=45)
        args, kwargs = redis.set.await_args
        assert args[0] == f"{KEY_PREFIX}{code}"
        assert kwargs == {"ex": 45, "nx": True}

    @pytest.mark.asyncio
    async def test_default_ttl_from_settings(self, redis):
        await create_transfer_code(redis, "user-1")
        assert redis.set.await_args.kwargs["ex"] == 60

    @pytest.mark.asyncio
    async def test_single_use(self, redis):
        code = await create_transfer_code(redis, "user-1")
        await redeem_transfer_code(redis, code)
        with pytest.raises(NotFoundError):
            await redeem_transfer_code(redis, code)

    @pytest.mark.asyncio
    async def test_unknown_code(self, redis):
        with pytest.raises(NotFoundError):
            await redeem_transfer_code(redis, "123456")

    @pytest.mark.asyncio
    async def test_malformed_code(self, redis):
        with pytest.raises(InvalidInputError):
            await redeem_transfer_code(redis, "12ab")
        redis.getdel.assert_not_called()

    @pytest.mark.asyncio
    async def test_collision_retries(self, redis):
        redis.set = AsyncMock(side_effect=[None, True])
        await create_transfer_code(redis, "user-1")
        assert redis.set.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_collisions(self, redis):
        redis.set = AsyncMock(return_value=None)
        with pytest.raises(RuntimeError):
            await create_transfer_code(redis, "user-1")
