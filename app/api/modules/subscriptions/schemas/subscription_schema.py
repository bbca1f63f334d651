from pydantic import BaseModel, Field


class SubscriptionForm(BaseModel):
    """URL-encoded ``name``/``email`` submitted to ``POST /subscriptions``.

    Both fields must be present and non-empty. The email is stored as given;
    its shape is not checked here.
    """

    name: str = Field(min_length=1)
    email: str = Field(min_length=1)
