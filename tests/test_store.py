"""
Tests for the ledger store implementations.

Every test runs against both the in-memory and the SQL store, which
must behave identically.
"""

import json

import pytest
from decimal import Decimal

from pocketledger.errors import ConflictError
from pocketledger.services.storage import (
    MAX_TRANSACT_ITEMS,
    Collection,
    Condition,
    DeleteItem,
    PutItem,
    UpdateItem,
    values_equal,
)


def account_item(user_id="u1", account_id="a1", balance="10"):
    return {"userId": user_id, "accountId": account_id, "currentBalance": balance}


def put(item, condition=Condition.NONE, **kwargs):
    return PutItem(collection=Collection.ACCOUNTS, item=item, condition=condition, **kwargs)


class TestConditionalWrites:
    """Tests for single-item conditional writes."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, store):
        """Test a put is readable back as a copy."""
        await store.put_item(put(account_item()))
        item = await store.get_item(Collection.ACCOUNTS, "u1", "a1")
        assert item == account_item()

        item["currentBalance"] = "999"
        again = await store.get_item(Collection.ACCOUNTS, "u1", "a1")
        assert again["currentBalance"] == "10"

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        """Test that a missing item is None, not an error."""
        assert await store.get_item(Collection.ACCOUNTS, "u1", "nope") is None

    @pytest.mark.asyncio
    async def test_must_not_exist_conflicts(self, store):
        """Test that MUST_NOT_EXIST fails when the item is present."""
        await store.put_item(put(account_item(), Condition.MUST_NOT_EXIST))
        with pytest.raises(ConflictError):
            await store.put_item(put(account_item(balance="0"), Condition.MUST_NOT_EXIST))
        item = await store.get_item(Collection.ACCOUNTS, "u1", "a1")
        assert item["currentBalance"] == "10"

    @pytest.mark.asyncio
    async def test_update_must_exist(self, store):
        """Test that updating a missing item conflicts."""
        with pytest.raises(ConflictError):
            await store.update_item(UpdateItem(
                collection=Collection.ACCOUNTS,
                user_id="u1",
                key="a1",
                increments={"currentBalance": Decimal("1")},
            ))

    @pytest.mark.asyncio
    async def test_update_increments_and_sets(self, store):
        """Test increments add to stored numbers and the new item is returned."""
        await store.put_item(put(account_item()))
        item = await store.update_item(UpdateItem(
            collection=Collection.ACCOUNTS,
            user_id="u1",
            key="a1",
            set_fields={"name": "Wallet"},
            increments={"currentBalance": Decimal("-2.5")},
        ))
        assert item["currentBalance"] == "7.5"
        assert item["name"] == "Wallet"

    @pytest.mark.asyncio
    async def test_expected_guard(self, store):
        """Test compare-and-swap guards on updates and deletes."""
        await store.put_item(put(account_item()))
        with pytest.raises(ConflictError):
            await store.update_item(UpdateItem(
                collection=Collection.ACCOUNTS,
                user_id="u1",
                key="a1",
                set_fields={"name": "x"},
                expected={"currentBalance": "11"},
            ))
        with pytest.raises(ConflictError):
            await store.delete_item(DeleteItem(
                collection=Collection.ACCOUNTS,
                user_id="u1",
                key="a1",
                expected={"currentBalance": Decimal("9")},
            ))

        # Numeric guards compare by value
        await store.delete_item(DeleteItem(
            collection=Collection.ACCOUNTS,
            user_id="u1",
            key="a1",
            expected={"currentBalance": Decimal("10.00")},
        ))
        assert await store.get_item(Collection.ACCOUNTS, "u1", "a1") is None

    @pytest.mark.asyncio
    async def test_delete_missing_conflicts(self, store):
        """Test that deleting a missing item with MUST_EXIST conflicts."""
        with pytest.raises(ConflictError):
            await store.delete_item(DeleteItem(
                collection=Collection.ACCOUNTS, user_id="u1", key="a1"
            ))


class TestTransactWrite:
    """Tests for all-or-nothing groups."""

    @pytest.mark.asyncio
    async def test_failed_condition_applies_nothing(self, store):
        """Test that one failing op rolls back the whole group."""
        await store.put_item(put(account_item()))
        with pytest.raises(ConflictError):
            await store.transact_write([
                PutItem(
                    collection=Collection.CATEGORIES,
                    item={"userId": "u1", "categoryId": "c1"},
                    condition=Condition.MUST_NOT_EXIST,
                ),
                UpdateItem(
                    collection=Collection.ACCOUNTS,
                    user_id="u1",
                    key="a1",
                    increments={"currentBalance": Decimal("5")},
                ),
                UpdateItem(
                    collection=Collection.ACCOUNTS,
                    user_id="u1",
                    key="missing",
                    increments={"currentBalance": Decimal("5")},
                ),
            ])

        assert await store.get_item(Collection.CATEGORIES, "u1", "c1") is None
        item = await store.get_item(Collection.ACCOUNTS, "u1", "a1")
        assert item["currentBalance"] == "10"

    @pytest.mark.asyncio
    async def test_successful_group_applies_everything(self, store):
        """Test that a passing group applies every op."""
        await store.put_item(put(account_item()))
        await store.transact_write([
            PutItem(
                collection=Collection.CATEGORIES,
                item={"userId": "u1", "categoryId": "c1"},
                condition=Condition.MUST_NOT_EXIST,
            ),
            UpdateItem(
                collection=Collection.ACCOUNTS,
                user_id="u1",
                key="a1",
                increments={"currentBalance": Decimal("5")},
            ),
        ])
        assert await store.get_item(Collection.CATEGORIES, "u1", "c1") is not None
        item = await store.get_item(Collection.ACCOUNTS, "u1", "a1")
        assert Decimal(item["currentBalance"]) == Decimal("15")

    @pytest.mark.asyncio
    async def test_same_item_twice_rejected(self, store):
        """Test that a group may touch each item only once."""
        with pytest.raises(ValueError):
            await store.transact_write([
                put(account_item()),
                UpdateItem(
                    collection=Collection.ACCOUNTS,
                    user_id="u1",
                    key="a1",
                    increments={"currentBalance": Decimal("1")},
                ),
            ])

    @pytest.mark.asyncio
    async def test_group_size_limits(self, store):
        """Test empty and oversized groups are rejected."""
        with pytest.raises(ValueError):
            await store.transact_write([])
        ops = [put(account_item(account_id=f"a{i}")) for i in range(MAX_TRANSACT_ITEMS + 1)]
        with pytest.raises(ValueError):
            await store.transact_write(ops)


class TestReads:
    """Tests for partition queries and scans."""

    async def _seed(self, store):
        for user_id, key in [("u1", "DT#2024-01-02"), ("u1", "DT#2024-01-01"),
                             ("u1", "dt#lower"), ("u1", "XX#other"), ("u2", "DT#2024-01-01")]:
            await store.put_item(PutItem(
                collection=Collection.TRANSACTIONS,
                item={"userId": user_id, "sk": key},
            ))

    @pytest.mark.asyncio
    async def test_query_prefix_is_case_sensitive_and_ordered(self, store):
        """Test begins_with stays in one partition, ordered by key."""
        await self._seed(store)
        items = await store.query(Collection.TRANSACTIONS, "u1", begins_with="DT#")
        assert [i["sk"] for i in items] == ["DT#2024-01-01", "DT#2024-01-02"]

    @pytest.mark.asyncio
    async def test_query_between_is_inclusive(self, store):
        """Test between includes both bounds."""
        await self._seed(store)
        items = await store.query(
            Collection.TRANSACTIONS, "u1", between=("DT#2024-01-01", "DT#2024-01-02")
        )
        assert len(items) == 2

    @pytest.mark.asyncio
    async def test_query_whole_partition(self, store):
        """Test that no key condition returns the whole partition."""
        await self._seed(store)
        items = await store.query(Collection.TRANSACTIONS, "u2")
        assert [i["sk"] for i in items] == ["DT#2024-01-01"]

    @pytest.mark.asyncio
    async def test_scan_pages_with_cursor(self, store):
        """Test that paging with the cursor visits every item once."""
        await self._seed(store)
        seen = []
        cursor = None
        pages = 0
        while True:
            page = await store.scan(Collection.TRANSACTIONS, cursor=cursor, limit=2)
            pages += 1
            seen.extend((i["userId"], i["sk"]) for i in page.items)
            cursor = page.cursor
            if cursor is None:
                break
            assert json.loads(cursor)
        assert pages == 3
        assert len(seen) == 5
        assert seen == sorted(seen)

    @pytest.mark.asyncio
    async def test_scan_exact_page_has_no_cursor(self, store):
        """Test that a page holding the last item ends the scan."""
        await store.put_item(put(account_item()))
        page = await store.scan(Collection.ACCOUNTS, limit=1)
        assert len(page.items) == 1
        assert page.cursor is None


class TestValuesEqual:
    """Tests for guard comparison."""

    def test_numeric_by_value(self):
        """Test numbers compare by value whatever their text form."""
        assert values_equal("80.00", Decimal("80"))
        assert not values_equal("80.01", Decimal("80"))

    def test_strings_compare_exactly(self):
        """Test non-numeric guards are exact."""
        assert values_equal("2024-01-01T00:00:00.000Z", "2024-01-01T00:00:00.000Z")
        assert not values_equal("a", "b")

    def test_none_matches_only_none(self):
        """Test missing attributes only match a None guard."""
        assert values_equal(None, None)
        assert not values_equal(None, "x")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
