import logging
import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from app.api.core.exceptions import PersistenceError
from app.api.modules.subscriptions.schemas.subscription_schema import SubscriptionForm
from app.api.modules.subscriptions.service.subscription_service import SubscriptionService


@pytest.mark.asyncio
async def test_subscribe_assigns_identifier_and_timestamp(mock_session):
    """The service generates the id and time; the caller supplies neither."""
    service = SubscriptionService()
    before = datetime.now(timezone.utc)

    saved = await service.subscribe(mock_session, SubscriptionForm(name="tom", email="tom@tom.com"))

    assert isinstance(saved.id, uuid.UUID)
    assert before <= saved.subscribed_at <= datetime.now(timezone.utc)
    assert saved.email == "tom@tom.com"
    assert saved.name == "tom"
    mock_session.add.assert_called_once_with(saved)
    mock_session.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_subscribe_generates_distinct_identifiers(mock_session):
    service = SubscriptionService()
    form = SubscriptionForm(name="tom", email="tom@tom.com")

    first = await service.subscribe(mock_session, form)
    second = await service.subscribe(mock_session, form)

    assert first.id != second.id


@pytest.mark.asyncio
async def test_subscribe_rolls_back_and_raises_on_insert_failure(mock_session, caplog):
    """A failed insert is logged, rolled back and surfaced as PersistenceError."""
    mock_session.commit.side_effect = IntegrityError(
        "INSERT INTO subscriptions", {}, Exception("duplicate key value")
    )
    service = SubscriptionService()

    with caplog.at_level(logging.INFO, logger="app"):
        with pytest.raises(PersistenceError) as exc_info:
            await service.subscribe(mock_session, SubscriptionForm(name="tom", email="tom@tom.com"))

    assert "Failed to save subscriber details" in str(exc_info.value)
    assert isinstance(exc_info.value.__cause__, IntegrityError)
    mock_session.rollback.assert_awaited_once()
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert any("Failed to insert new subscriber" in r.getMessage() for r in errors)


@pytest.mark.asyncio
async def test_subscribe_does_not_retry(mock_session):
    mock_session.commit.side_effect = IntegrityError("INSERT", {}, Exception("boom"))
    service = SubscriptionService()

    with pytest.raises(PersistenceError):
        await service.subscribe(mock_session, SubscriptionForm(name="tom", email="tom@tom.com"))

    assert mock_session.commit.await_count == 1


@pytest.mark.asyncio
async def test_subscribe_logs_query_span(mock_session, caplog):
    service = SubscriptionService()

    with caplog.at_level(logging.INFO, logger="app"):
        await service.subscribe(mock_session, SubscriptionForm(name="tom", email="tom@tom.com"))

    spans = [
        r for r in caplog.records
        if getattr(r, "span_name", None) == "Saving new subscriber details in the database"
    ]
    assert [r.getMessage().split()[0] for r in spans] == ["[START]", "[END]"]
    assert spans[-1].span_outcome == "completed"
    assert spans[-1].latency_ms >= 0
