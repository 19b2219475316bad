"""
Tests for grouped writes and their partial-failure contract.
"""
from typing import Any, List

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select

from entitlement_ledger.config import Settings
from entitlement_ledger.core.batch import BatchCoordinator, WriteGroup, partition
from entitlement_ledger.core.errors import BatchCommitError, LedgerValidationError
from entitlement_ledger.database.models import PromoCode


async def count_promo_codes(batches: BatchCoordinator) -> int:
    async with batches.reading() as session:
        result = await session.execute(select(func.count()).select_from(PromoCode))
        return result.scalar_one()


class TestPartition:
    @pytest.mark.unit
    def test_1200_items_make_three_groups(self) -> None:
        groups = list(partition(list(range(1200)), 500))

        assert [len(g) for g in groups] == [500, 500, 200]
        assert groups[2][-1] == 1199

    @pytest.mark.unit
    def test_empty_input_makes_no_groups(self) -> None:
        assert list(partition([], 500)) == []

    @pytest.mark.unit
    def test_ceiling_above_provider_limit_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, batch_max_ops_per_group=501)


class TestBatchCoordinator:
    """Test suite for run_batched."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_groups_commit_sequentially(self, services: Any) -> None:
        sizes: List[int] = []

        async def write(group: WriteGroup, chunk: List[int]) -> None:
            sizes.append(len(chunk))
            for n in chunk:
                group.add(PromoCode(code=f"BULK{n}", discount_percent=10))

        committed = await services.batches.run_batched(list(range(1200)), write, max_ops_per_group=500)

        assert committed == 1200
        assert sizes == [500, 500, 200]
        assert await count_promo_codes(services.batches) == 1200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failure_in_group_two_keeps_group_one(self, services: Any) -> None:
        """Group 1 stays committed; groups 2 and 3 are not applied at all."""
        calls = {"n": 0}

        async def write(group: WriteGroup, chunk: List[int]) -> None:
            calls["n"] += 1
            for n in chunk:
                group.add(PromoCode(code=f"BULK{n}", discount_percent=10))
            if calls["n"] == 2:
                await group.flush()
                raise RuntimeError("provider rejected the group")

        with pytest.raises(BatchCommitError) as exc_info:
            await services.batches.run_batched(list(range(1200)), write, max_ops_per_group=500)

        error = exc_info.value
        assert error.committed_groups == 1
        assert error.committed_items == 500
        assert error.failed_group == 2
        assert isinstance(error.__cause__, RuntimeError)
        assert calls["n"] == 2
        assert await count_promo_codes(services.batches) == 500

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rerun_after_partial_failure_converges(self, services: Any) -> None:
        fail = {"armed": True}

        async def write(group: WriteGroup, chunk: List[int]) -> None:
            for n in chunk:
                if await group.session.get(PromoCode, f"BULK{n}") is None:
                    group.add(PromoCode(code=f"BULK{n}", discount_percent=10))
            if fail["armed"] and chunk[0] == 10:
                raise RuntimeError("transient")

        items = list(range(25))
        with pytest.raises(BatchCommitError):
            await services.batches.run_batched(items, write, max_ops_per_group=10)
        assert await count_promo_codes(services.batches) == 10

        fail["armed"] = False
        committed = await services.batches.run_batched(items, write, max_ops_per_group=10)

        assert committed == 25
        assert await count_promo_codes(services.batches) == 25

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_group_refuses_to_exceed_ceiling(self, session_factory: Any, test_settings: Settings) -> None:
        batches = BatchCoordinator(
            session_factory, test_settings.model_copy(update={"batch_max_ops_per_group": 2})
        )

        with pytest.raises(LedgerValidationError):
            async with batches.atomic() as group:
                for n in range(3):
                    group.add(PromoCode(code=f"OVER{n}", discount_percent=5))

        assert await count_promo_codes(batches) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ops_per_item_shrinks_chunks(self, services: Any) -> None:
        sizes: List[int] = []

        async def write(group: WriteGroup, chunk: List[int]) -> None:
            sizes.append(len(chunk))

        await services.batches.run_batched(list(range(7)), write, max_ops_per_group=6, ops_per_item=2)

        assert sizes == [3, 3, 1]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_override_cannot_exceed_configured_ceiling(self, services: Any) -> None:
        async def write(group: WriteGroup, chunk: List[int]) -> None:
            pass

        with pytest.raises(LedgerValidationError):
            await services.batches.run_batched([1], write, max_ops_per_group=1000)
