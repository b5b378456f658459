from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from ..models import SuggestedAction
from ..schemas import NormalizationResult
from .catalog import CanonicalMatch, PendingFood

REASON_GIBBERISH = "Ogiltigt livsmedelsnamn (skräptext)"
REASON_UNUSED = "Oanvänd matvara, normaliserat namn: {name}"
REASON_ALIAS = "Normaliserat till befintligt livsmedel: {name}"
REASON_ALREADY_NORMALIZED = "Namnet är redan korrekt normaliserat"
REASON_NORMALIZED = "Normaliserat namn: {name}"


@dataclass(frozen=True)
class SuggestionDraft:
    food_id: UUID
    food_name: str
    suggested_action: str
    ai_reasoning: str
    ingredient_count: int
    target_food_id: Optional[UUID] = None
    target_food_name: Optional[str] = None
    extracted_unit: Optional[str] = None
    extracted_quantity: Optional[float] = None


def needs_canonical_lookup(normalization: NormalizationResult, ingredient_count: int) -> bool:
    """False when the gibberish or unused rules decide the item regardless of any match."""
    if normalization.is_gibberish or normalization.normalized_name is None:
        return False
    return ingredient_count > 0


def decide(
    item: PendingFood,
    normalization: NormalizationResult,
    ingredient_count: int,
    canonical_match: Optional[CanonicalMatch],
) -> SuggestionDraft:
    """Map one classified pending food to a proposed action.

    Rules are checked in order and the first match wins:

    1. gibberish or no normalized name: reject if referenced, else delete
    2. unreferenced: delete, even when a canonical match exists
    3. canonical match: alias to it
    4. otherwise: create, noting whether the name was already normalized
    """
    base = dict(
        food_id=item.id,
        food_name=item.name,
        ingredient_count=ingredient_count,
        extracted_unit=normalization.unit,
        extracted_quantity=normalization.quantity,
    )
    name = normalization.normalized_name

    if normalization.is_gibberish or name is None:
        action = SuggestedAction.REJECT if ingredient_count > 0 else SuggestedAction.DELETE
        return SuggestionDraft(suggested_action=action, ai_reasoning=REASON_GIBBERISH, **base)

    if ingredient_count == 0:
        return SuggestionDraft(
            suggested_action=SuggestedAction.DELETE,
            ai_reasoning=REASON_UNUSED.format(name=name),
            **base,
        )

    if canonical_match is not None:
        return SuggestionDraft(
            suggested_action=SuggestedAction.ALIAS,
            ai_reasoning=REASON_ALIAS.format(name=canonical_match.name),
            target_food_id=canonical_match.id,
            target_food_name=canonical_match.name,
            **base,
        )

    if name.lower() == item.name.lower():
        reasoning = REASON_ALREADY_NORMALIZED
    else:
        reasoning = REASON_NORMALIZED.format(name=name)
    return SuggestionDraft(suggested_action=SuggestedAction.CREATE, ai_reasoning=reasoning, **base)
