from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

CDN_VARIATION_SETTINGS_KEY = "cdnVariationSettings"
VARIATION_KEY_CACHE_KEY = "VARIATION_KEY"


class Operation(str, Enum):
    DECIDE = "decide"
    DATAFILE = "datafile"
    CONFIG = "config"
    TRACK = "track"
    BATCH = "batch"
    SEND_ODP_EVENT = "send-odp-event"


def truthy(value: Any) -> bool:
    """JSON `true` or the string "true" (case-insensitive); anything else is False."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


@dataclass(frozen=True)
class CdnVariationSettings:
    """Per-decision routing policy carried in a decision's `cdnVariationSettings` variable."""

    cdn_experiment_url: Optional[str] = None
    cdn_response_url: Optional[str] = None
    cache_key: Optional[str] = None
    forward_request_to_origin: bool = False
    cache_request_to_origin: bool = False
    is_control_variation: bool = False
    # Filled in by the matcher from the decision that carried these settings.
    flag_key: Optional[str] = None
    variation_key: Optional[str] = None

    @classmethod
    def from_variables(
        cls,
        raw: Any,
        *,
        flag_key: Optional[str] = None,
        variation_key: Optional[str] = None,
    ) -> Optional["CdnVariationSettings"]:
        if not isinstance(raw, dict):
            return None
        return cls(
            cdn_experiment_url=raw.get("cdnExperimentURL") or None,
            cdn_response_url=raw.get("cdnResponseURL") or None,
            cache_key=raw.get("cacheKey") or None,
            forward_request_to_origin=truthy(raw.get("forwardRequestToOrigin")),
            cache_request_to_origin=truthy(raw.get("cacheRequestToOrigin")),
            is_control_variation=truthy(raw.get("isControlVariation")),
            flag_key=flag_key,
            variation_key=variation_key,
        )

    @property
    def uses_variation_cache_key(self) -> bool:
        return self.cache_key == VARIATION_KEY_CACHE_KEY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cdnExperimentURL": self.cdn_experiment_url,
            "cdnResponseURL": self.cdn_response_url,
            "cacheKey": self.cache_key,
            "forwardRequestToOrigin": self.forward_request_to_origin,
            "cacheRequestToOrigin": self.cache_request_to_origin,
            "isControlVariation": self.is_control_variation,
            "flagKey": self.flag_key,
            "variationKey": self.variation_key,
        }


@dataclass(frozen=True)
class Decision:
    flag_key: str
    variation_key: Optional[str] = None
    enabled: bool = False
    variables: Optional[Dict[str, Any]] = field(default_factory=dict)
    rule_key: Optional[str] = None
    reasons: Optional[List[str]] = field(default_factory=list)
    user_context: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Decision":
        variables = data.get("variables")
        reasons = data.get("reasons")
        return cls(
            flag_key=str(data.get("flagKey") or ""),
            variation_key=data.get("variationKey"),
            enabled=bool(data.get("enabled", False)),
            variables=dict(variables) if isinstance(variables, dict) else None,
            rule_key=data.get("ruleKey"),
            reasons=list(reasons) if isinstance(reasons, list) else None,
            user_context=data.get("userContext") if isinstance(data.get("userContext"), dict) else None,
        )

    @property
    def cdn_variation_settings(self) -> Optional[CdnVariationSettings]:
        raw = (self.variables or {}).get(CDN_VARIATION_SETTINGS_KEY)
        return CdnVariationSettings.from_variables(
            raw, flag_key=self.flag_key, variation_key=self.variation_key
        )

    def to_dict(self) -> Dict[str, Any]:
        """Wire form; fields stripped during preparation (None) are omitted."""
        out: Dict[str, Any] = {
            "flagKey": self.flag_key,
            "variationKey": self.variation_key,
            "enabled": self.enabled,
            "ruleKey": self.rule_key,
        }
        if self.variables is not None:
            out["variables"] = self.variables
        if self.reasons is not None:
            out["reasons"] = self.reasons
        if self.user_context is not None:
            out["userContext"] = self.user_context
        return out


@dataclass(frozen=True)
class StoredDecision:
    """Compact decision persisted in the decisions cookie/header."""

    flag_key: str
    variation_key: Optional[str] = None
    rule_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flagKey": self.flag_key,
            "variationKey": self.variation_key,
            "ruleKey": self.rule_key,
        }


@dataclass(frozen=True)
class StoredDecisionSet:
    saved: Tuple[StoredDecision, ...] = ()
    valid: Tuple[StoredDecision, ...] = ()
    invalid: Tuple[StoredDecision, ...] = ()
