"""Resolve free-text customer and item names to existing ids.

Exact case-insensitive matches score 1.0. Anything else scores the mean of
token overlap (Jaccard) and edit-distance similarity, capped below 1.0. The
best candidate at or above the floor wins; equal scores go to the entity used
most recently on an outbound record. Nothing is ever created here.
"""

import re
from datetime import datetime
from difflib import SequenceMatcher
from typing import Iterable, NamedTuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from shipment_intake.config import settings
from shipment_intake.models.customer import Customer
from shipment_intake.models.inventory import InventoryItem
from shipment_intake.models.outbound import OutboundItem, OutboundRecord

_NON_WORD = re.compile(r"[^\w\s]+")
_FUZZY_CEILING = 0.99


class Match(NamedTuple):
    entity_id: str
    score: float


def normalize(text: str) -> str:
    text = _NON_WORD.sub(" ", (text or "").lower())
    return " ".join(text.split())


def similarity(guess: str, candidate: str) -> float:
    """Score how well ``guess`` names ``candidate`` in [0, 1]."""
    if not guess or not candidate:
        return 0.0
    if guess.strip().casefold() == candidate.strip().casefold():
        return 1.0
    a, b = normalize(guess), normalize(candidate)
    if not a or not b:
        return 0.0
    tokens_a, tokens_b = set(a.split()), set(b.split())
    overlap = len(tokens_a & tokens_b) / len(tokens_a | tokens_b)
    edit = SequenceMatcher(None, a, b).ratio()
    return min(round((overlap + edit) / 2, 6), _FUZZY_CEILING)


def best_match(
    guess: str,
    candidates: Iterable[tuple[str, Iterable[str]]],
    last_used: dict[str, datetime],
    floor: float,
) -> Match | None:
    """Pick the highest-scoring candidate (id, names) at or above ``floor``."""
    ranked = []
    for entity_id, names in candidates:
        score = max((similarity(guess, n) for n in names if n), default=0.0)
        if score >= floor:
            ranked.append((score, last_used.get(entity_id), entity_id))
    if not ranked:
        return None
    # Highest score, then most recently used (never-used last), then id for determinism
    ranked.sort(key=lambda r: (-r[0], r[1] is None, -(r[1].timestamp() if r[1] else 0), r[2]))
    score, _, entity_id = ranked[0]
    return Match(entity_id, score)


class EntityMatcher:
    def __init__(self, db: Session, floor: float | None = None):
        self.db = db
        self.floor = settings.MATCH_FLOOR if floor is None else floor

    def match_customer(self, name_guess: str | None) -> Match | None:
        if not name_guess or not name_guess.strip():
            return None
        rows = self.db.execute(select(Customer.id, Customer.name, Customer.company)).all()
        candidates = [(cid, (name, company)) for cid, name, company in rows]
        return best_match(name_guess, candidates, self._customer_last_used(), self.floor)

    def match_item(self, description_guess: str | None) -> Match | None:
        if not description_guess or not description_guess.strip():
            return None
        rows = self.db.execute(select(InventoryItem.id, InventoryItem.name, InventoryItem.sku)).all()
        candidates = [(iid, (name, sku)) for iid, name, sku in rows]
        return best_match(description_guess, candidates, self._item_last_used(), self.floor)

    def customer_exists(self, customer_id: str) -> bool:
        return self.db.get(Customer, customer_id) is not None

    def item_exists(self, item_id: str) -> bool:
        return self.db.get(InventoryItem, item_id) is not None

    def _customer_last_used(self) -> dict[str, datetime]:
        rows = self.db.execute(
            select(OutboundRecord.customer_id, func.max(OutboundRecord.created_at))
            .group_by(OutboundRecord.customer_id)
        ).all()
        return {cid: used for cid, used in rows if used is not None}

    def _item_last_used(self) -> dict[str, datetime]:
        rows = self.db.execute(
            select(OutboundItem.inventory_item_id, func.max(OutboundRecord.created_at))
            .join(OutboundRecord, OutboundRecord.id == OutboundItem.record_id)
            .group_by(OutboundItem.inventory_item_id)
        ).all()
        return {iid: used for iid, used in rows if used is not None}
