"""
Tests for the transaction consistency engine.

Focus: the balance invariant holds after every successful write, and a
failed write leaves nothing behind.
"""

import pytest
from decimal import Decimal

from pocketledger.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from pocketledger.ledger.engine import require_user
from pocketledger.models.audit import AuditEventType
from pocketledger.models.ledger import build_sort_key, parse_timestamp, to_iso
from pocketledger.services.storage import Collection, DeleteItem, UpdateItem

from conftest import OTHER_USER, USER


async def balance(ledger, account):
    return (await ledger.accounts.get(USER, account.account_id)).current_balance


async def stored_transactions(store, user_id=USER):
    return await store.query(Collection.TRANSACTIONS, user_id, begins_with="DT#")


def expense(account, category, amount="20.00", **extra):
    payload = {
        "accountId": account.account_id,
        "categoryId": category.category_id,
        "type": "expense",
        "amount": amount,
    }
    payload.update(extra)
    return payload


class TestCreate:
    """Tests for posting transactions."""

    @pytest.mark.asyncio
    async def test_worked_example(self, engine, ledger):
        """Test create, amend and delete move the balance as expected."""
        account = await ledger.account(opening="100.00")
        category = await ledger.category()

        txn = await engine.create_transaction(USER, expense(account, category))
        assert await balance(ledger, account) == Decimal("80.00")

        await engine.amend_transaction(USER, txn.txn_id, {"amount": "30.00"})
        assert await balance(ledger, account) == Decimal("70.00")

        await engine.delete_transaction(USER, txn.txn_id)
        assert await balance(ledger, account) == Decimal("100.00")
        assert await stored_transactions(engine.store) == []

    @pytest.mark.asyncio
    async def test_defaults(self, engine, ledger, clock):
        """Test currency, rate and occurredAt defaults."""
        account = await ledger.account(currency="EUR")
        category = await ledger.category(type="income", name="Salary")

        txn = await engine.create_transaction(USER, {
            "accountId": account.account_id,
            "categoryId": category.category_id,
            "type": "INCOME",
            "amount": 12.5,
            "tags": ["work", " "],
        })
        assert txn.currency == "EUR"
        assert txn.fx_rate_to_base == Decimal("1")
        assert txn.amount_base == Decimal("12.5")
        assert txn.occurred_at == clock()
        assert txn.sk == build_sort_key(clock(), txn.txn_id)
        assert txn.tags == ["work"]
        assert await balance(ledger, account) == Decimal("12.5")

    @pytest.mark.asyncio
    async def test_amount_base_uses_rate(self, engine, ledger):
        """Test amount_base = amount * fx_rate_to_base."""
        account = await ledger.account(currency="EUR")
        category = await ledger.category()

        txn = await engine.create_transaction(
            USER, expense(account, category, "80", fx_rate_to_base="1.1")
        )
        assert txn.amount_base == Decimal("88.0")
        # Balances stay in account currency
        assert await balance(ledger, account) == Decimal("-80")

    @pytest.mark.asyncio
    async def test_category_type_mismatch_rejected(self, engine, ledger):
        """Test income against an expense category fails before any write."""
        account = await ledger.account(opening="5")
        category = await ledger.category(type="expense")

        payload = expense(account, category)
        payload["type"] = "income"
        with pytest.raises(ValidationError) as exc:
            await engine.create_transaction(USER, payload)
        assert exc.value.details["category_type"] == "expense"
        assert await stored_transactions(engine.store) == []
        assert await balance(ledger, account) == Decimal("5")

    @pytest.mark.asyncio
    async def test_currency_mismatch_rejected(self, engine, ledger):
        """Test a currency different from the account's is rejected."""
        account = await ledger.account(currency="USD")
        category = await ledger.category()
        with pytest.raises(ValidationError):
            await engine.create_transaction(
                USER, expense(account, category, currency="EUR")
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5", "1.123456789", "abc"])
    async def test_bad_amount_rejected(self, engine, ledger, amount):
        """Test non-positive, over-precise and non-numeric amounts."""
        account = await ledger.account()
        category = await ledger.category()
        with pytest.raises(ValidationError):
            await engine.create_transaction(USER, expense(account, category, amount))
        assert await stored_transactions(engine.store) == []

    @pytest.mark.asyncio
    async def test_missing_references(self, engine, ledger):
        """Test unknown account or category is a 404."""
        account = await ledger.account()
        category = await ledger.category()

        payload = expense(account, category)
        payload["accountId"] = "nope"
        with pytest.raises(NotFoundError):
            await engine.create_transaction(USER, payload)

        payload = expense(account, category)
        payload["categoryId"] = "nope"
        with pytest.raises(NotFoundError):
            await engine.create_transaction(USER, payload)

    @pytest.mark.asyncio
    async def test_other_users_account_is_not_found(self, engine, ledger):
        """Test partitions are isolated per user."""
        account = await ledger.account(user_id=OTHER_USER)
        category = await ledger.category()
        with pytest.raises(NotFoundError):
            await engine.create_transaction(USER, expense(account, category))

    @pytest.mark.asyncio
    async def test_account_deleted_mid_flight(self, engine, ledger, store):
        """Test a failed balance write leaves no transaction behind."""
        account = await ledger.account()
        category = await ledger.category()
        real_load = engine.load_account

        async def load_then_vanish(user_id, account_id):
            loaded = await real_load(user_id, account_id)
            await store.delete_item(DeleteItem(
                collection=Collection.ACCOUNTS, user_id=user_id, key=account_id
            ))
            return loaded

        engine.load_account = load_then_vanish
        with pytest.raises(ConflictError):
            await engine.create_transaction(USER, expense(account, category))

        assert await stored_transactions(store) == []
        conflicts = engine.audit_logger.events_of(AuditEventType.WRITE_CONFLICT)
        assert len(conflicts) == 1
        assert conflicts[0].details["operation"] == "create"

    @pytest.mark.asyncio
    async def test_category_type_flipped_mid_flight(self, engine, ledger, store):
        """Test a category whose type changed after validation rejects the write."""
        account = await ledger.account(opening="50")
        category = await ledger.category()
        real_load = engine.load_category

        async def load_then_flip(user_id, category_id):
            loaded = await real_load(user_id, category_id)
            await store.update_item(UpdateItem(
                collection=Collection.CATEGORIES,
                user_id=user_id,
                key=category_id,
                set_fields={"type": "income"},
            ))
            return loaded

        engine.load_category = load_then_flip
        with pytest.raises(ConflictError):
            await engine.create_transaction(USER, expense(account, category))

        assert await stored_transactions(store) == []
        assert await balance(ledger, account) == Decimal("50")

    @pytest.mark.asyncio
    async def test_audit_event_logged(self, engine, ledger):
        """Test a create logs its balance delta."""
        account = await ledger.account()
        category = await ledger.category()
        txn = await engine.create_transaction(USER, expense(account, category, "4"))

        events = engine.audit_logger.events_of(AuditEventType.TRANSACTION_CREATED)
        assert len(events) == 1
        assert events[0].entity_id == txn.txn_id
        assert events[0].details["delta"] == "-4"

    @pytest.mark.asyncio
    async def test_requires_user(self, engine):
        """Test missing user ids are rejected."""
        with pytest.raises(AuthenticationError):
            await engine.create_transaction("", {})
        with pytest.raises(AuthenticationError):
            require_user(None)


class TestAmend:
    """Tests for partial amendments."""

    @pytest.mark.asyncio
    async def test_amend_to_same_values_is_a_no_op(self, engine, ledger):
        """Test amending with current values changes nothing that matters."""
        account = await ledger.account(opening="50")
        category = await ledger.category()
        txn = await engine.create_transaction(USER, expense(account, category, "20"))

        amended = await engine.amend_transaction(USER, txn.txn_id, {
            "accountId": txn.account_id,
            "categoryId": txn.category_id,
            "type": "expense",
            "amount": "20",
            "occurredAt": to_iso(txn.occurred_at),
            "fx_rate_to_base": "1",
        })
        assert amended.sk == txn.sk
        assert amended.amount_base == txn.amount_base
        assert await balance(ledger, account) == Decimal("30")
        assert len(await stored_transactions(engine.store)) == 1

    @pytest.mark.asyncio
    async def test_move_to_new_sort_key(self, engine, ledger, clock):
        """Test changing occurredAt moves the record without touching balances."""
        account = await ledger.account(opening="50")
        category = await ledger.category()
        txn = await engine.create_transaction(USER, expense(account, category, "20"))

        new_time = "2024-03-01T08:30:00.000Z"
        moved = await engine.amend_transaction(USER, txn.txn_id, {"occurredAt": new_time})

        items = await stored_transactions(engine.store)
        assert [i["sk"] for i in items] == [moved.sk]
        assert moved.sk == build_sort_key(parse_timestamp(new_time), txn.txn_id)
        assert moved.sk != txn.sk
        assert moved.created_at == txn.created_at
        assert await balance(ledger, account) == Decimal("30")

        events = engine.audit_logger.events_of(AuditEventType.TRANSACTION_MOVED)
        assert len(events) == 1
        assert events[0].details["balance_adjustments"] == {}

    @pytest.mark.asyncio
    async def test_move_between_accounts(self, engine, ledger):
        """Test the old account is restored and the new one charged."""
        first = await ledger.account(opening="100", name="First")
        second = await ledger.account(opening="100", name="Second")
        category = await ledger.category()
        txn = await engine.create_transaction(USER, expense(first, category, "25"))

        await engine.amend_transaction(USER, txn.txn_id, {"accountId": second.account_id})
        assert await balance(ledger, first) == Decimal("100")
        assert await balance(ledger, second) == Decimal("75")

    @pytest.mark.asyncio
    async def test_change_type_with_category(self, engine, ledger):
        """Test switching expense to income nets both effects."""
        account = await ledger.account(opening="0")
        groceries = await ledger.category(type="expense")
        salary = await ledger.category(type="income", name="Salary")
        txn = await engine.create_transaction(USER, expense(account, groceries, "20"))

        await engine.amend_transaction(USER, txn.txn_id, {
            "type": "income",
            "categoryId": salary.category_id,
        })
        assert await balance(ledger, account) == Decimal("20")

    @pytest.mark.asyncio
    async def test_type_change_must_match_category(self, engine, ledger):
        """Test an amended type is checked against the category."""
        account = await ledger.account()
        category = await ledger.category(type="expense")
        txn = await engine.create_transaction(USER, expense(account, category))
        with pytest.raises(ValidationError):
            await engine.amend_transaction(USER, txn.txn_id, {"type": "income"})

    @pytest.mark.asyncio
    async def test_empty_and_null_payloads(self, engine, ledger):
        """Test empty bodies and nulls on required fields are rejected."""
        account = await ledger.account()
        category = await ledger.category()
        txn = await engine.create_transaction(USER, expense(account, category))

        with pytest.raises(ValidationError):
            await engine.amend_transaction(USER, txn.txn_id, {})
        with pytest.raises(ValidationError):
            await engine.amend_transaction(USER, txn.txn_id, {"amount": None})

    @pytest.mark.asyncio
    async def test_null_note_and_tags_clear(self, engine, ledger):
        """Test nullable fields can be cleared."""
        account = await ledger.account()
        category = await ledger.category()
        txn = await engine.create_transaction(
            USER, expense(account, category, note="lunch", tags=["food"])
        )
        amended = await engine.amend_transaction(
            USER, txn.txn_id, {"note": None, "tags": None}
        )
        assert amended.note is None
        assert amended.tags == []

    @pytest.mark.asyncio
    async def test_missing_transaction_is_not_found(self, engine):
        """Test 404 wins over an empty body."""
        with pytest.raises(NotFoundError):
            await engine.amend_transaction(USER, "nope", {})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("change", [
        {"amount": "35"},
        {"occurredAt": "2024-03-02T08:00:00Z", "amount": "35"},
    ])
    async def test_failed_amend_leaves_record_unchanged(self, engine, ledger, store, change):
        """Test a rejected balance write keeps the stored record, moved or not."""
        account = await ledger.account(opening="100")
        category = await ledger.category()
        txn = await engine.create_transaction(USER, expense(account, category, "20"))
        real_load = engine.load_account

        async def load_then_vanish(user_id, account_id):
            loaded = await real_load(user_id, account_id)
            await store.delete_item(DeleteItem(
                collection=Collection.ACCOUNTS, user_id=user_id, key=account_id
            ))
            return loaded

        engine.load_account = load_then_vanish
        with pytest.raises(ConflictError):
            await engine.amend_transaction(USER, txn.txn_id, change)

        (item,) = await stored_transactions(store)
        assert item["sk"] == txn.sk
        assert Decimal(item["amount"]) == Decimal("20")
        assert item["occurredAt"] == to_iso(txn.occurred_at)
        assert (await ledger.categories.get(USER, category.category_id)).txn_count == 1

    @pytest.mark.asyncio
    async def test_stale_amend_conflicts(self, engine, ledger, clock):
        """Test an amend based on an outdated read is rejected whole."""
        account = await ledger.account(opening="100")
        category = await ledger.category()
        txn = await engine.create_transaction(USER, expense(account, category, "20"))

        clock.advance(seconds=1)
        await engine.amend_transaction(USER, txn.txn_id, {"note": "first"})

        async def stale_read(user_id, txn_id):
            return txn

        engine.get_transaction = stale_read
        with pytest.raises(ConflictError):
            await engine.amend_transaction(USER, txn.txn_id, {"amount": "50"})

        assert await balance(ledger, account) == Decimal("80")
        items = await stored_transactions(engine.store)
        assert items[0]["note"] == "first"
        assert Decimal(items[0]["amount"]) == Decimal("20")


class TestDeleteAndRead:
    """Tests for deletes, lookups and listing."""

    @pytest.mark.asyncio
    async def test_delete_income_reverses(self, engine, ledger):
        """Test deleting income subtracts it again."""
        account = await ledger.account(opening="10")
        category = await ledger.category(type="income", name="Salary")
        payload = expense(account, category, "5")
        payload["type"] = "income"
        txn = await engine.create_transaction(USER, payload)
        assert await balance(ledger, account) == Decimal("15")

        await engine.delete_transaction(USER, txn.txn_id)
        assert await balance(ledger, account) == Decimal("10")
        with pytest.raises(NotFoundError):
            await engine.get_transaction(USER, txn.txn_id)

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_record(self, engine, ledger, store):
        """Test a delete whose balance write fails removes nothing."""
        account = await ledger.account(opening="100")
        category = await ledger.category()
        txn = await engine.create_transaction(USER, expense(account, category, "20"))
        await store.delete_item(DeleteItem(
            collection=Collection.ACCOUNTS, user_id=USER, key=account.account_id
        ))

        with pytest.raises(ConflictError):
            await engine.delete_transaction(USER, txn.txn_id)

        (item,) = await stored_transactions(store)
        assert item["txnId"] == txn.txn_id
        assert (await ledger.categories.get(USER, category.category_id)).txn_count == 1
        conflicts = engine.audit_logger.events_of(AuditEventType.WRITE_CONFLICT)
        assert conflicts[0].details["operation"] == "delete"

    @pytest.mark.asyncio
    async def test_delete_missing_is_not_found(self, engine):
        """Test deleting an unknown transaction is a 404."""
        with pytest.raises(NotFoundError):
            await engine.delete_transaction(USER, "nope")

    @pytest.mark.asyncio
    async def test_get_is_scoped_to_user(self, engine, ledger):
        """Test another user's transaction is invisible."""
        account = await ledger.account()
        category = await ledger.category()
        txn = await engine.create_transaction(USER, expense(account, category))
        assert (await engine.get_transaction(USER, txn.txn_id)).txn_id == txn.txn_id
        with pytest.raises(NotFoundError):
            await engine.get_transaction(OTHER_USER, txn.txn_id)

    @pytest.mark.asyncio
    async def test_list_defaults_to_current_month(self, engine, ledger):
        """Test the default window and explicit ranges."""
        account = await ledger.account()
        category = await ledger.category()
        old = await engine.create_transaction(
            USER, expense(account, category, occurredAt="2024-02-20T10:00:00Z")
        )
        current = await engine.create_transaction(USER, expense(account, category))

        listed = await engine.list_transactions(USER)
        assert [t.txn_id for t in listed] == [current.txn_id]

        listed = await engine.list_transactions(
            USER, "2024-02-01T00:00:00Z", "2024-03-31T00:00:00Z"
        )
        assert [t.txn_id for t in listed] == [old.txn_id, current.txn_id]

    @pytest.mark.asyncio
    async def test_list_inclusive_upper_bound(self, engine, ledger):
        """Test a transaction exactly at `to` is included."""
        account = await ledger.account()
        category = await ledger.category()
        at = "2024-03-10T00:00:00.000Z"
        txn = await engine.create_transaction(USER, expense(account, category, occurredAt=at))
        listed = await engine.list_transactions(USER, "2024-03-01T00:00:00Z", at)
        assert [t.txn_id for t in listed] == [txn.txn_id]

    @pytest.mark.asyncio
    async def test_list_rejects_inverted_range(self, engine):
        """Test from after to is a validation error."""
        with pytest.raises(ValidationError):
            await engine.list_transactions(USER, "2024-03-02T00:00:00Z", "2024-03-01T00:00:00Z")


class TestBalanceInvariant:
    """The stored balance always equals opening plus posted deltas."""

    @pytest.mark.asyncio
    async def test_mixed_sequence(self, engine, ledger, clock):
        """Test the invariant after a mixed create/amend/delete sequence."""
        account = await ledger.account(opening="250.00")
        groceries = await ledger.category()
        salary = await ledger.category(type="income", name="Salary")

        income = dict(expense(account, salary, "1000"), type="income")
        a = await engine.create_transaction(USER, expense(account, groceries, "12.34"))
        b = await engine.create_transaction(USER, income)
        c = await engine.create_transaction(USER, expense(account, groceries, "0.66"))
        clock.advance(minutes=1)
        await engine.amend_transaction(USER, a.txn_id, {"amount": "2.34"})
        await engine.amend_transaction(USER, c.txn_id, {"occurredAt": "2024-03-02T00:00:00Z"})
        await engine.delete_transaction(USER, b.txn_id)

        expected = Decimal("250.00")
        for item in await stored_transactions(engine.store):
            sign = -1 if item["type"] == "expense" else 1
            expected += sign * Decimal(item["amount"])
        assert expected == Decimal("247.00")
        assert await balance(ledger, account) == expected


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
