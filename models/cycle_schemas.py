"""Pydantic schemas for validating externally supplied per-cycle input rows."""
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationInfo, field_validator, model_validator


def _is_blank(value) -> bool:
    # CSV readers hand over NaN / empty strings for missing cells
    if value is None:
        return True
    if isinstance(value, float) and value != value:
        return True
    return isinstance(value, str) and not value.strip()


class CycleRow(BaseModel):
    """
    One scan cycle as recorded for replay.

    A row always carries the regime signal. When pool_address is set the
    row also describes an entry/tranche request for that pool.
    """
    timestamp: datetime = Field(
        description="Wall-clock time of the cycle"
    )
    regime: Literal["BEAR", "NEUTRAL", "BULL"] = Field(
        description="Regime signal emitted by the classifier this cycle"
    )
    total_equity_usd: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Portfolio equity from the ledger, if it changed"
    )
    pool_address: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Pool of the entry/tranche request, if any"
    )
    aggression_level: Optional[Literal["A0", "A1", "A2", "A3", "A4"]] = Field(
        default=None,
        description="Aggression ladder level for the pool"
    )
    base_size_usd: Optional[float] = Field(
        default=None,
        ge=0.0,
        description="Base entry size before concentration scaling"
    )
    ods_value: float = Field(
        default=0.0,
        ge=0.0,
        description="Opportunity density value for the pool"
    )
    spike_active: bool = Field(
        default=False,
        description="Whether the density detector reports an active spike"
    )
    ev_usd: Optional[float] = Field(
        default=None,
        description="Expected net value of the entry in USD"
    )
    fee_intensity: Optional[float] = Field(
        default=None,
        ge=0.0,
        description="Fee intensity of the pool (tranche 2/3 input)"
    )
    vsh_eligible: bool = Field(
        default=False,
        description="Volatility-skew eligibility (tranche 2/3 input)"
    )
    adverse_selection_penalty: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Adverse-selection penalty as a fraction (tranche 2/3 input)"
    )
    expected_fee_rate_usd_hour: Optional[float] = Field(
        default=None,
        ge=0.0,
        description="Expected fee income in USD per hour (tranche 2/3 input)"
    )

    @field_validator("regime", "aggression_level", mode="before")
    @classmethod
    def normalize_case(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator(
        "total_equity_usd", "pool_address", "aggression_level", "base_size_usd", "ev_usd",
        "fee_intensity", "adverse_selection_penalty", "expected_fee_rate_usd_hour",
        mode="before"
    )
    @classmethod
    def blank_to_none(cls, value):
        return None if _is_blank(value) else value

    @field_validator("ods_value", "spike_active", "vsh_eligible", mode="before")
    @classmethod
    def blank_to_default(cls, value, info: ValidationInfo):
        if _is_blank(value):
            return cls.model_fields[info.field_name].default
        return value

    @model_validator(mode="after")
    def entry_fields_complete(self) -> "CycleRow":
        if self.pool_address is not None:
            if self.aggression_level is None or self.base_size_usd is None:
                raise ValueError(
                    "aggression_level and base_size_usd are required when pool_address is set"
                )
        return self

    @property
    def has_entry_request(self) -> bool:
        return self.pool_address is not None

    @property
    def has_extended_inputs(self) -> bool:
        """True when every input needed for tranche 2/3 gating is present."""
        return None not in (
            self.ev_usd,
            self.fee_intensity,
            self.adverse_selection_penalty,
            self.expected_fee_rate_usd_hour,
        )
