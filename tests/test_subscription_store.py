from __future__ import annotations

from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from postflow.core.repositories.base import OrganizationRepository
from postflow.core.repositories.subscriptions import SqlSubscriptionStore, TransactionDraft
from postflow.models.credit import Credit
from postflow.models.payment_transaction import PaymentTransaction


def _sql(stmt) -> str:  # noqa: ANN001
    return str(stmt.compile(dialect=postgresql.dialect()))


class _FakeSession:
    def __init__(self, *, scalar_values: list | None = None, execute_result: object | None = None) -> None:
        self._scalar_values = list(scalar_values or [])
        self._execute_result = execute_result
        self.statements: list = []
        self.added: list = []
        self.flushed = 0
        self.committed = 0

    async def scalar(self, stmt):  # noqa: ANN001
        self.statements.append(stmt)
        return self._scalar_values.pop(0) if self._scalar_values else None

    async def execute(self, stmt):  # noqa: ANN001
        self.statements.append(stmt)
        return self._execute_result

    async def get(self, model, entity_id):  # noqa: ANN001
        return None

    def add(self, instance) -> None:  # noqa: ANN001
        self.added.append(instance)

    async def flush(self) -> None:
        self.flushed += 1

    async def commit(self) -> None:
        self.committed += 1


def test_scoped_select_filters_by_organization() -> None:
    organization_id = uuid4()
    repo = OrganizationRepository(session=Mock(), model=PaymentTransaction)

    sql = str(
        repo._scoped_select(organization_id).compile(
            dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True}
        )
    )

    assert "payment_transactions.organization_id" in sql
    assert str(organization_id) in sql


@pytest.mark.asyncio
async def test_upsert_targets_the_active_row_index() -> None:
    session = _FakeSession()
    store = SqlSubscriptionStore(session)

    await store.upsert_subscription(uuid4(), "PRO", "YEARLY", 20, "SUB1", False, None)

    upsert, trial_update = session.statements
    sql = _sql(upsert)
    assert "INSERT INTO subscriptions" in sql
    assert "ON CONFLICT (organization_id) WHERE deleted_at IS NULL DO UPDATE" in sql
    assert "UPDATE organizations" in _sql(trial_update)
    assert session.added == []
    assert session.flushed == 1


@pytest.mark.asyncio
async def test_lifetime_upsert_retires_other_row_and_records_code() -> None:
    organization_id = uuid4()
    current = SimpleNamespace(identifier="sub_old", deleted_at=None)
    session = _FakeSession(scalar_values=[current])
    store = SqlSubscriptionStore(session)

    await store.upsert_subscription(organization_id, "PRO", "MONTHLY", 20, "LTD-1", True, None, lifetime_code="LTD-1")

    assert current.deleted_at is not None
    [used_code] = session.added
    assert used_code.code == "LTD-1"
    assert used_code.organization_id == organization_id


@pytest.mark.asyncio
async def test_external_subscription_lookup_falls_back_in_order() -> None:
    organization = SimpleNamespace(id=uuid4())
    session = _FakeSession(scalar_values=[None, organization])
    store = SqlSubscriptionStore(session)

    found = await store.find_organization_by_external_subscription_id("I-50_%")

    assert found is organization
    identifier_lookup, payment_id_lookup = (_sql(stmt) for stmt in session.statements)
    assert "JOIN subscriptions" in identifier_lookup
    assert "subscriptions.identifier" in identifier_lookup
    assert "organizations.payment_id LIKE" in payment_id_lookup
    assert "ESCAPE '/'" in payment_id_lookup


@pytest.mark.asyncio
async def test_external_subscription_lookup_returns_none_after_all_fallbacks() -> None:
    session = _FakeSession()

    assert await SqlSubscriptionStore(session).find_organization_by_external_subscription_id("I-1") is None
    assert len(session.statements) == 3


@pytest.mark.asyncio
async def test_claim_webhook_event_reports_first_delivery_only() -> None:
    inserted = SimpleNamespace(scalar_one_or_none=lambda: uuid4())
    duplicate = SimpleNamespace(scalar_one_or_none=lambda: None)

    first = _FakeSession(execute_result=inserted)
    assert await SqlSubscriptionStore(first).claim_webhook_event("PAYPAL", "WH-1", "X") is True
    sql = _sql(first.statements[0])
    assert "INSERT INTO webhook_events" in sql
    assert "ON CONFLICT (provider, event_id) DO NOTHING" in sql
    assert "RETURNING webhook_events.id" in sql

    second = _FakeSession(execute_result=duplicate)
    assert await SqlSubscriptionStore(second).claim_webhook_event("PAYPAL", "WH-1", "X") is False


@pytest.mark.asyncio
async def test_disable_integrations_targets_newest_rows() -> None:
    session = _FakeSession(execute_result=SimpleNamespace(rowcount=3))

    assert await SqlSubscriptionStore(session).disable_integrations(uuid4(), 3) == 3
    sql = _sql(session.statements[0])
    assert "UPDATE integrations SET disabled" in sql
    assert "ORDER BY integrations.created_at DESC" in sql
    assert await SqlSubscriptionStore(_FakeSession()).disable_integrations(uuid4(), 0) == 0


@pytest.mark.asyncio
async def test_member_toggle_spares_superadmins() -> None:
    session = _FakeSession(execute_result=SimpleNamespace(rowcount=2))

    assert await SqlSubscriptionStore(session).set_members_disabled(uuid4(), True) == 2
    assert "organization_members.role !=" in _sql(session.statements[0])


def _usage_sessions(session: _FakeSession):  # noqa: ANN202
    @asynccontextmanager
    async def factory():  # noqa: ANN202
        yield session

    return factory


@pytest.mark.asyncio
async def test_usage_insert_commits_on_its_own_session() -> None:
    request_session = _FakeSession()
    usage_session = _FakeSession()
    store = SqlSubscriptionStore(request_session, usage_session_factory=_usage_sessions(usage_session))
    organization_id = uuid4()

    usage_id = await store.insert_usage_unit(organization_id, "posts")

    [credit] = usage_session.added
    assert isinstance(credit, Credit)
    assert credit.organization_id == organization_id
    assert credit.type == "posts"
    assert credit.credits == 1
    assert usage_id == credit.id
    assert usage_session.committed == 1
    assert request_session.added == []
    assert request_session.committed == 0


@pytest.mark.asyncio
async def test_usage_delete_leaves_request_session_alone() -> None:
    request_session = _FakeSession()
    usage_session = _FakeSession(execute_result=SimpleNamespace(rowcount=1))
    store = SqlSubscriptionStore(request_session, usage_session_factory=_usage_sessions(usage_session))

    await store.delete_usage_unit(uuid4())

    assert "DELETE FROM credits WHERE credits.id" in _sql(usage_session.statements[0])
    assert usage_session.committed == 1
    assert request_session.statements == []
    assert request_session.committed == 0


@pytest.mark.asyncio
async def test_append_transaction_goes_through_scoped_repository() -> None:
    session = Mock()
    session.add = Mock()
    session.flush = AsyncMock()
    store = SqlSubscriptionStore(session)
    organization_id = uuid4()

    await store.append_transaction(
        TransactionDraft(
            organization_id=organization_id,
            provider="STRIPE",
            status="SUCCEEDED",
            type="SUBSCRIPTION_PAYMENT",
            amount=4900,
        )
    )

    [transaction] = [call.args[0] for call in session.add.call_args_list]
    assert isinstance(transaction, PaymentTransaction)
    assert transaction.organization_id == organization_id
    assert transaction.amount == 4900
    session.flush.assert_awaited_once()
