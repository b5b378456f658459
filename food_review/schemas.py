from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Literal
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .services.quantity import parse_quantity

ReviewRunStatusValue = Literal["running", "pending_approval", "failed", "applied", "partially_applied"]
SuggestedActionValue = Literal["alias", "create", "reject", "delete"]


class NormalizationResult(BaseModel):
    """One element of the classification model's JSON array, with defaults applied."""

    normalized_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("normalizedName", "normalized_name"),
    )
    quantity: Optional[float] = None
    unit: Optional[str] = None
    is_gibberish: bool = Field(
        default=False,
        validation_alias=AliasChoices("isGibberish", "is_gibberish"),
    )

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("normalized_name", "unit", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @field_validator("quantity", mode="before")
    @classmethod
    def _parse_quantity(cls, v: Any) -> Optional[float]:
        return parse_quantity(v)

    @field_validator("is_gibberish", mode="before")
    @classmethod
    def _missing_flag(cls, v: Any) -> Any:
        return False if v is None else v


class ReviewTriggerRequest(BaseModel):
    limit: Optional[int] = Field(default=None, ge=1)


class ReviewTriggerResponse(BaseModel):
    runId: str
    status: ReviewRunStatusValue


class ReviewRunRecord(BaseModel):
    runId: str
    status: ReviewRunStatusValue
    runBy: Optional[str] = None
    startedAt: datetime
    completedAt: Optional[datetime] = None
    totalProcessed: int = 0
    summary: Dict[str, int] = Field(default_factory=dict)
    errorMessage: Optional[str] = None


class ReviewSuggestionRecord(BaseModel):
    id: str
    runId: str
    foodId: str
    foodName: str
    suggestedAction: SuggestedActionValue
    targetFoodId: Optional[str] = None
    targetFoodName: Optional[str] = None
    extractedUnit: Optional[str] = None
    extractedQuantity: Optional[float] = None
    aiReasoning: Optional[str] = None
    ingredientCount: int = 0
    status: str = "pending"
    createdAt: Optional[datetime] = None


class ReviewSuggestionListResponse(BaseModel):
    runId: str
    suggestions: List[ReviewSuggestionRecord] = Field(default_factory=list)


class ReviewStartedEvent(BaseModel):
    runId: str
    total: int


class ReviewBatchEvent(BaseModel):
    processed: int
    suggestionsSoFar: int


class ReviewDoneEvent(BaseModel):
    runId: str
    processed: int
    suggestionsSoFar: int
    summary: Dict[str, int] = Field(default_factory=dict)


class ReviewErrorEvent(BaseModel):
    message: str
