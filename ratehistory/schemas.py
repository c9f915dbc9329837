"""
Schemas for the persisted files: the per-lender history log and the
"current rates" file written by the live scraper.

The core algorithms work on plain dicts; these models are the gate that
files pass through on their way to and from disk.
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from ratehistory.timeutil import parse_iso


RateType = Literal["fixed", "variable"]


def _check_iso(value: str) -> str:
    parse_iso(value)
    return value


IsoTimestamp = Annotated[str, AfterValidator(_check_iso)]


class MortgageRate(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    lenderId: str
    type: RateType
    rate: float = Field(gt=0)
    apr: Optional[float] = Field(default=None, gt=0)
    fixedTerm: Optional[int] = Field(default=None, gt=0)
    minLtv: float = Field(default=0, ge=0, le=100)
    maxLtv: float = Field(ge=0, le=100)
    minLoan: Optional[float] = Field(default=None, gt=0)
    buyerTypes: List[str] = Field(min_length=1)
    berEligible: Optional[List[str]] = None
    newBusiness: Optional[bool] = None
    perks: List[str] = Field(default_factory=list)
    warning: Optional[str] = None

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.minLtv >= self.maxLtv:
            raise ValueError(f"minLtv {self.minLtv} must be below maxLtv {self.maxLtv}")
        if self.fixedTerm is not None and self.type != "fixed":
            raise ValueError("fixedTerm is only allowed on fixed rates")
        return self


class RateChanges(BaseModel):
    """Partial rate carried by an update: the id plus the changed fields."""
    model_config = ConfigDict(extra="allow")

    id: str


class RateAddOperation(BaseModel):
    op: Literal["add"]
    rate: MortgageRate


class RateRemoveOperation(BaseModel):
    op: Literal["remove"]
    id: str


class RateUpdateOperation(BaseModel):
    op: Literal["update"]
    id: str
    changes: RateChanges


RateDiffOperation = Annotated[
    Union[RateAddOperation, RateRemoveOperation, RateUpdateOperation],
    Field(discriminator="op"),
]


class RateChangeset(BaseModel):
    timestamp: IsoTimestamp
    afterHash: str
    operations: List[RateDiffOperation]


class RatesBaseline(BaseModel):
    timestamp: IsoTimestamp
    ratesHash: str
    rates: List[MortgageRate]


class RatesHistoryFile(BaseModel):
    lenderId: str
    baseline: RatesBaseline
    changesets: List[RateChangeset] = Field(default_factory=list)


class RatesFile(BaseModel):
    lenderId: str
    lastScrapedAt: IsoTimestamp
    lastUpdatedAt: IsoTimestamp
    ratesHash: str
    rates: List[MortgageRate]
