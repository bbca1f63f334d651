import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Form, Request
from fastapi.exceptions import RequestValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.core.logger import log_span
from app.api.db.database import get_db
from app.api.modules.subscriptions.schemas.subscription_schema import SubscriptionForm
from app.api.modules.subscriptions.service.subscription_service import subscription_service
from app.api.utils.response_payloads import empty_response

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


async def reject_repeated_fields(request: Request):
    """Reject a body that submits ``name`` or ``email`` more than once."""
    form = await request.form()
    seen = set()
    repeated = []
    for key, _ in form.multi_items():
        if key not in SubscriptionForm.model_fields:
            continue
        if key in seen and key not in repeated:
            repeated.append(key)
        seen.add(key)

    if repeated:
        raise RequestValidationError(
            [
                {
                    "type": "duplicate_field",
                    "loc": ("body", key),
                    "msg": "Field submitted more than once",
                    "input": None,
                }
                for key in repeated
            ]
        )


@router.post("", dependencies=[Depends(reject_repeated_fields)])
async def subscribe(
    form: Annotated[SubscriptionForm, Form()],
    db: AsyncSession = Depends(get_db),
):
    """
    Add a subscriber.

    Returns:
    - 200: Saved, empty body
    - 400: Missing, empty or repeated ``name``/``email`` (no database access)
    - 500: The insert failed
    """
    with log_span(
        "Adding a new subscriber",
        request_id=str(uuid.uuid4()),
        subscriber_email=form.email,
        subscriber_name=form.name,
    ):
        await subscription_service.subscribe(db, form)
    return empty_response()
