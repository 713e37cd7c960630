from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class VariationConfig(BaseModel):
    """One variation of a flag; `weight` is relative to the other variations."""

    weight: float = 0.0
    enabled: bool = True
    variables: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("weight")
    @classmethod
    def _non_negative(cls, v: float):
        return max(0.0, float(v))


class FlagConfig(BaseModel):
    enabled: bool = False
    rollout_pct: float = 100.0
    rule_key: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    variations: Dict[str, VariationConfig] = Field(default_factory=dict)

    @field_validator("rollout_pct")
    @classmethod
    def _clamp_pct(cls, v: float):
        return max(0.0, min(100.0, float(v)))


class Datafile(BaseModel):
    """
    Flag definitions evaluated by the built-in decision provider.

    Example:
      {"revision": "12", "projectId": "p1",
       "flags": {"hero": {"enabled": true, "rollout_pct": 100, "rule_key": "hero_test",
                          "variations": {"control": {"weight": 50}, "treatment": {"weight": 50}}}}}
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    revision: str = "0"
    project_id: Optional[str] = Field(None, alias="projectId")
    account_id: Optional[str] = Field(None, alias="accountId")
    flags: Dict[str, FlagConfig] = Field(default_factory=dict)

    @field_validator("revision", mode="before")
    @classmethod
    def _revision_str(cls, v: Any):
        return str(v) if v is not None else "0"
