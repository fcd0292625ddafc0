"""
Registry Schema Definitions using Pydantic

Defines the structure of phase registry YAML files. Per-phase rules are
checked here; cross-phase rules (ordinal contiguity) live in registry.py.
"""

import math

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional


class CriterionDef(BaseModel):
    """Definition of one weighted criterion in the registry YAML."""
    id: str
    prompt: str = Field(..., min_length=1)
    weight: float = 1.0

    @field_validator('id')
    @classmethod
    def id_must_be_valid(cls, v):
        if not v or not v.replace('_', '').replace('-', '').isalnum():
            raise ValueError('criterion id must be alphanumeric with underscores or dashes')
        return v

    @field_validator('weight')
    @classmethod
    def weight_must_be_positive(cls, v):
        if not math.isfinite(v) or v <= 0:
            raise ValueError('criterion weight must be a finite positive number')
        return v


class PhaseDef(BaseModel):
    """Definition of a phase and its gate in the registry YAML."""
    ordinal: int
    name: str
    description: Optional[str] = None
    pass_threshold: float = Field(..., ge=0, le=100, allow_inf_nan=False)
    escalate_threshold: float = Field(..., ge=0, le=100, allow_inf_nan=False)
    criteria: list[CriterionDef]
    deliverables: list[str] = Field(default_factory=list)

    @field_validator('criteria')
    @classmethod
    def must_have_criteria(cls, v):
        if not v:
            raise ValueError('phase must define at least one criterion')
        ids = [c.id for c in v]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"duplicate criterion ids: {', '.join(duplicates)}")
        return v

    @model_validator(mode='after')
    def escalate_not_above_pass(self):
        if self.escalate_threshold > self.pass_threshold:
            raise ValueError(
                f"escalate_threshold ({self.escalate_threshold}) exceeds "
                f"pass_threshold ({self.pass_threshold})"
            )
        return self


class RegistryDef(BaseModel):
    """Complete phase registry loaded from YAML."""
    name: str
    version: str = "1.0"
    description: Optional[str] = None
    phases: list[PhaseDef]

    @field_validator('phases')
    @classmethod
    def must_have_phases(cls, v):
        if not v:
            raise ValueError('registry must define at least one phase')
        return v
