import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel


class Subscription(SQLModel, table=True):
    """A newsletter subscriber, written once at intake and never updated.

    Attributes:
        id: Identifier generated server-side at intake.
        email: Address as submitted; uniqueness is enforced by the table only.
        name: Display name as submitted.
        subscribed_at: Time the row was inserted (timezone-aware UTC).
    """

    __tablename__ = "subscriptions"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    email: str = Field(sa_column=Column(Text, nullable=False, unique=True))
    name: str = Field(sa_column=Column(Text, nullable=False))
    subscribed_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
        default_factory=lambda: datetime.now(timezone.utc),
    )
