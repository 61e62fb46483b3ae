"""
Tests for per-customer billing locks.
"""

import pytest

from adspend.core.exceptions import LockUnavailableError
from adspend.core.locks import InProcessLockProvider, billing_lock_key


class TestInProcessLockProvider:
    def test_lock_key(self):
        assert billing_lock_key(42) == "adspend_billing:42"

    @pytest.mark.asyncio
    async def test_second_acquire_fails_fast(self):
        provider = InProcessLockProvider()

        async with provider.acquire("k"):
            assert provider.is_locked("k") is True
            with pytest.raises(LockUnavailableError) as exc_info:
                async with provider.acquire("k"):
                    pass
            assert exc_info.value.key == "k"

        assert provider.is_locked("k") is False

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        provider = InProcessLockProvider()

        with pytest.raises(RuntimeError):
            async with provider.acquire("k"):
                raise RuntimeError("boom")

        async with provider.acquire("k"):
            assert provider.is_locked("k") is True

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        provider = InProcessLockProvider()

        async with provider.acquire("a"):
            async with provider.acquire("b"):
                assert provider.is_locked("a") and provider.is_locked("b")
