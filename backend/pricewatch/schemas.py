from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Comparator = Literal["at_least", "at_most"]


class PriceQuote(BaseModel):
    model_config = ConfigDict(frozen=True)

    instrument: str
    symbol: str
    price: Decimal
    change_24h: Optional[Decimal] = None
    observed_at: datetime
    source: str


class AlertRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    instrument: str
    comparator: Comparator
    threshold: Decimal
    created_at: datetime


class AlertCreateRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=40)
    comparator: Comparator
    threshold: Decimal = Field(..., gt=0)


class InstrumentInfo(BaseModel):
    id: str
    symbol: str
    name: str
    aliases: List[str] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)


class WatchlistResponse(BaseModel):
    owner_id: str
    instruments: List[str]


class TickReport(BaseModel):
    started_at: datetime
    skipped: bool = False
    rules_evaluated: int = 0
    triggered: List[str] = Field(default_factory=list)
    unresolved: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)


class DigestReport(BaseModel):
    started_at: datetime
    skipped: bool = False
    owners_notified: int = 0
    unresolved: List[str] = Field(default_factory=list)
