"""Input validation models.

Boundary checks for values that arrive from outside the core (form posts,
API payloads). The engine validates the same bounds again, so these models
are a convenience for callers rather than the only line of defense.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationInfo, field_validator, model_validator

MAX_BUDGET = Decimal("999999.99")

BudgetType = Literal["hourly", "fixed", "negotiable"]

# 11 or more of the same character in a row
_REPEATED_CHARACTER = re.compile(r"(.)\1{10,}")


class JobCreate(BaseModel):
    """Request to create or edit a job listing.

    Naive deadlines are taken as UTC. Pass ``now`` in the validation context
    to require a deadline after it.
    """

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=5000)
    category_id: Optional[int] = Field(None, gt=0)
    budget_min: Optional[Decimal] = Field(None, ge=0, le=MAX_BUDGET)
    budget_max: Optional[Decimal] = Field(None, ge=0, le=MAX_BUDGET)
    budget_type: BudgetType = "fixed"
    deadline: Optional[datetime] = None
    is_urgent: bool = False

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Title cannot be blank")
        return v

    @field_validator("deadline")
    @classmethod
    def deadline_in_future(cls, v: Optional[datetime], info: ValidationInfo) -> Optional[datetime]:
        if v is None:
            return v
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)  # naive deadlines are UTC
        now = (info.context or {}).get("now")
        if now is not None and v <= now:
            raise ValueError("Deadline must be in the future")
        return v

    @model_validator(mode="after")
    def budget_range(self) -> "JobCreate":
        if (
            self.budget_min is not None
            and self.budget_max is not None
            and self.budget_max < self.budget_min
        ):
            raise ValueError("budget_max must be greater than or equal to budget_min")
        return self


class MessageCreate(BaseModel):
    """Request to send a direct message."""

    recipient_id: int = Field(..., gt=0)
    content: str = Field(..., min_length=1, max_length=2000)
    job_id: Optional[int] = Field(None, gt=0)

    @field_validator("content")
    @classmethod
    def content_rules(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message cannot be empty or contain only whitespace")
        if _REPEATED_CHARACTER.search(v):
            raise ValueError("Message appears to be spam")
        return v


class ReviewCreate(BaseModel):
    """Request to review the other participant of a completed job."""

    job_id: int = Field(..., gt=0)
    reviewee_id: int = Field(..., gt=0)
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, min_length=10, max_length=1000)
    is_public: bool = True


class PaymentCreate(BaseModel):
    """Request to pay for a completed job.

    Pass the job's ``budget_max`` in the validation context as
    ``job_budget_max`` to cap the amount at 110% of the budget::

        PaymentCreate.model_validate(data, context={"job_budget_max": job.budget_max})
    """

    job_id: int = Field(..., gt=0)
    amount: Decimal = Field(..., ge=1, le=MAX_BUDGET, decimal_places=2)

    @field_validator("amount")
    @classmethod
    def within_budget(cls, v: Decimal, info: ValidationInfo) -> Decimal:
        budget_max = (info.context or {}).get("job_budget_max")
        if budget_max is not None:
            limit = Decimal(str(budget_max)) * Decimal("1.1")
            if v > limit:
                raise ValueError(
                    f"Payment amount cannot exceed 110% of the job budget ({limit:.2f})"
                )
        return v
