from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

import httpx

from edge_agent.core.decisions import DecisionPlan
from edge_agent.core.mutations import PendingMutations
from edge_agent.core.request_config import RequestConfiguration
from edge_agent.models.decisions import CdnVariationSettings, Decision, Operation, StoredDecisionSet


@dataclass(frozen=True)
class RequestContext:
    """Everything one request has accumulated so far; each pipeline stage returns a new one."""

    request: httpx.Request
    operation: Operation
    config: RequestConfiguration
    visitor_id: Optional[str] = None
    visitor_id_source: Optional[str] = None
    datafile: Optional[Dict[str, Any]] = field(default=None, repr=False, compare=False)
    datafile_source: Optional[str] = None
    active_flags: Tuple[str, ...] = ()
    flag_keys: Tuple[str, ...] = ()
    stored: StoredDecisionSet = field(default_factory=StoredDecisionSet)
    plan: DecisionPlan = field(default_factory=DecisionPlan)
    decisions: Tuple[Decision, ...] = ()
    prepared: Tuple[Decision, ...] = ()
    serialized_decisions: Optional[str] = None
    cdn_settings: Optional[CdnVariationSettings] = None
    mutations: PendingMutations = field(default_factory=PendingMutations)

    @property
    def is_post(self) -> bool:
        return self.request.method.upper() == "POST"

    def evolve(self, **changes: Any) -> "RequestContext":
        return replace(self, **changes)

    def with_metadata(self, **entries: Any) -> "RequestContext":
        return replace(self, config=self.config.with_metadata(**entries))
