import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from app.api.core.exceptions import PersistenceError
from app.api.core.logger import log_span
from app.api.db.database import CONNECTION_FAILURES
from app.api.modules.subscriptions.models.subscription_model import Subscription
from app.api.modules.subscriptions.schemas.subscription_schema import SubscriptionForm

logger = logging.getLogger("app")


class SubscriptionService:
    """Business logic for subscription intake"""

    async def subscribe(self, db: AsyncSession, form: SubscriptionForm) -> Subscription:
        """
        Persist a validated subscription.

        Assigns a fresh identifier and the current UTC time, then writes the
        row with a single INSERT. Nothing is retried: on failure the session
        is rolled back and no row exists.

        Args:
            db: Request-scoped session from the shared pool.
            form: Decoded, validated form data.

        Returns:
            Subscription: The stored record.

        Raises:
            PersistenceError: If the insert fails (constraint violation,
                lost connection, timeout).
        """
        subscription = Subscription(
            id=uuid.uuid4(),
            email=form.email,
            name=form.name,
            subscribed_at=datetime.now(timezone.utc),
        )

        with log_span("Saving new subscriber details in the database"):
            try:
                db.add(subscription)
                await db.commit()
            except CONNECTION_FAILURES as e:
                await db.rollback()
                logger.error(f"Failed to insert new subscriber into subscriptions: {e}")
                raise PersistenceError("Failed to save subscriber details") from e

        logger.info(f"New subscriber {subscription.id} has been saved")
        return subscription


subscription_service = SubscriptionService()
