"""
Identity API routes.

POST /identify consolidates an (email, phoneNumber) observation into its
contact cluster and returns the cluster summary.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict, Field, field_validator

from api.services.identity_lock import IdentityLockTimeout
from api.services.identity_resolver import (
    ContactSummary,
    IdentityValidationError,
    get_identity_resolver,
    normalize_field,
)
from api.services.resilience import StoreError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["identity"])

EMPTY_BODY_ERROR = (
    "Request body is missing, empty, or not in JSON format. "
    "Send 'Content-Type: application/json' with a JSON object body."
)
NO_IDENTIFIER_ERROR = "At least email or phoneNumber must be provided and not be empty strings."


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class IdentifyRequest(BaseModel):
    # Unknown keys are kept so {"foo": 1} counts as a non-empty body
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    email: Optional[str] = Field(default=None, description="Email address, null or absent")
    phone_number: Optional[str] = Field(
        default=None,
        alias="phoneNumber",
        description="Phone number as string or number, null or absent",
    )

    @field_validator("email", "phone_number", mode="before")
    @classmethod
    def normalize(cls, value):
        # Numbers become strings; blank strings count as absent
        return normalize_field(value)


class ContactSummaryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    primary_contact_id: Optional[int] = Field(alias="primaryContactId")
    emails: list[str]
    phone_numbers: list[str] = Field(alias="phoneNumbers")
    secondary_contact_ids: list[int] = Field(alias="secondaryContactIds")


class IdentifyResponse(BaseModel):
    contact: ContactSummaryResponse

    @classmethod
    def from_summary(cls, summary: ContactSummary) -> "IdentifyResponse":
        return cls(
            contact=ContactSummaryResponse(
                primary_contact_id=summary.primary_contact_id,
                emails=summary.emails,
                phone_numbers=summary.phone_numbers,
                secondary_contact_ids=summary.secondary_contact_ids,
            )
        )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.post("/identify", response_model=IdentifyResponse)
async def identify(request: IdentifyRequest):
    """Consolidate a contact observation and return its cluster."""
    if not request.model_fields_set and not request.model_extra:
        raise HTTPException(status_code=400, detail=EMPTY_BODY_ERROR)
    if request.email is None and request.phone_number is None:
        raise HTTPException(status_code=400, detail=NO_IDENTIFIER_ERROR)

    resolver = get_identity_resolver()
    try:
        # Consolidation blocks on identity locks and SQLite; keep it off the event loop
        summary = await asyncio.to_thread(resolver.identify, request.email, request.phone_number)
    except IdentityValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (StoreError, IdentityLockTimeout) as e:
        logger.error(f"Error in /identify: {e}")
        raise HTTPException(status_code=500, detail=str(e) or "Internal server error")

    logger.info(
        f"Identified primary {summary.primary_contact_id} "
        f"with {len(summary.secondary_contact_ids)} secondaries"
    )
    return IdentifyResponse.from_summary(summary)
