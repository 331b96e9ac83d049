"""Request payload schemas.

Field names are snake_case in Python and camelCase on the wire (aliases).
"""
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import ValidationFailed

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

MessageTemplate = Literal["asking_price", "make_offer", "check_availability"]


class Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


# ---------- AUTH ----------

class RegisterPayload(Payload):
    email: str = Field(max_length=120, pattern=EMAIL_PATTERN)
    username: str = Field(min_length=3, max_length=20)
    password: str = Field(min_length=8)


class LoginPayload(Payload):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


# ---------- LISTINGS ----------

class CreateListingPayload(Payload):
    title: str = Field(min_length=3, max_length=100)
    event_name: str = Field(alias="eventName", min_length=3, max_length=200)
    event_date: datetime = Field(alias="eventDate")
    venue: Optional[str] = Field(default=None, max_length=200)
    price_in_cents: int = Field(alias="priceInCents", ge=100, le=100000)
    quantity: int = Field(ge=1, le=10)
    description: Optional[str] = None
    ticket_type: Optional[str] = Field(default=None, alias="ticketType", max_length=50)


class UpdateListingPayload(Payload):
    title: Optional[str] = Field(default=None, min_length=3, max_length=100)
    event_name: Optional[str] = Field(default=None, alias="eventName", min_length=3, max_length=200)
    event_date: Optional[datetime] = Field(default=None, alias="eventDate")
    venue: Optional[str] = Field(default=None, max_length=200)
    price_in_cents: Optional[int] = Field(default=None, alias="priceInCents", ge=100, le=100000)
    quantity: Optional[int] = Field(default=None, ge=1, le=10)
    description: Optional[str] = None
    ticket_type: Optional[str] = Field(default=None, alias="ticketType", max_length=50)


# ---------- OFFERS ----------

class CreateOfferPayload(Payload):
    listing_id: int = Field(alias="listingId", ge=1)
    offer_price_in_cents: int = Field(alias="offerPriceInCents", gt=0)
    quantity: int = Field(gt=0)
    message_template: MessageTemplate = Field(alias="messageTemplate")
    custom_message: Optional[str] = Field(default=None, alias="customMessage", max_length=200)


class RespondToOfferPayload(Payload):
    response: Literal["accept", "reject"]


class MockPayPayload(Payload):
    offer_id: int = Field(alias="offerId", ge=1)


def flatten_errors(exc: ValidationError) -> dict:
    """Group pydantic errors into ``{"formErrors": [...], "fieldErrors": {...}}``."""
    form_errors = []
    field_errors = {}
    for error in exc.errors():
        loc = error.get("loc") or ()
        if loc:
            field_errors.setdefault(str(loc[0]), []).append(error["msg"])
        else:
            form_errors.append(error["msg"])
    return {"formErrors": form_errors, "fieldErrors": field_errors}


def validate_payload(schema, data):
    """Validate ``data`` against ``schema`` or raise ``ValidationFailed``."""
    if not isinstance(data, dict):
        raise ValidationFailed(
            details={"formErrors": ["Expected a JSON object"], "fieldErrors": {}}
        )
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailed(details=flatten_errors(exc)) from exc
