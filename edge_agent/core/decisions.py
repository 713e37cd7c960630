"""
Decision orchestration: which operation a request maps to, which flags to decide or
force, calling the provider, and shaping decisions for the response and the cookie.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from edge_agent.core.request_config import SOURCE_KV, RequestConfiguration
from edge_agent.core.visitor import encode_stored_decisions
from edge_agent.models.decisions import Decision, Operation, StoredDecision
from edge_agent.services.decision_provider import DecisionProvider
from edge_agent.services.runtime import KVStore
from edge_agent.utils.errors import (
    DecisionError,
    EdgeAgentError,
    EndpointNotFoundError,
    InvalidRequestError,
)
from edge_agent.utils.observability import log_event
from edge_agent.utils.settings import Settings, get_settings

logger = logging.getLogger(__name__)

NO_DECISIONS = "NO_DECISIONS"
ROLLOUT_MARKER = "-rollout-"

_ANY_METHOD_PATHS = {
    "/v1/datafile": Operation.DATAFILE,
    "/v1/config": Operation.CONFIG,
}
_POST_PATHS = {
    "/v1/decide": Operation.DECIDE,
    "/v1/track": Operation.TRACK,
    "/v1/batch": Operation.BATCH,
    "/v1/send-odp-event": Operation.SEND_ODP_EVENT,
}


def normalize_path(path: str) -> str:
    p = str(path or "/")
    if p.startswith("//"):
        p = "/" + p.lstrip("/")
    if len(p) > 1 and p.endswith("/"):
        p = p[:-1]
    return p.lower()


def resolve_operation(method: str, path: str) -> Operation:
    method = str(method or "").upper()
    p = normalize_path(path)
    if p in _ANY_METHOD_PATHS:
        return _ANY_METHOD_PATHS[p]
    if method == "POST":
        if p in _POST_PATHS:
            return _POST_PATHS[p]
        raise EndpointNotFoundError(f"URL Endpoint Not Found: {p}")
    if method == "GET" and p not in _POST_PATHS:
        return Operation.DECIDE
    raise EndpointNotFoundError(f"URL Endpoint Not Found: {method} {p}")


async def resolve_flag_keys(
    config: RequestConfiguration,
    kv_store: Optional[KVStore],
    settings: Optional[Settings] = None,
) -> Tuple[List[str], Optional[str]]:
    """
    Requested flag keys and where they came from.
    KV flag list first (when enabled), then the request's own keys; empty means "all".
    """
    settings = settings or get_settings()
    if (config.enable_flags_from_kv or settings.flags_from_kv) and kv_store is not None:
        try:
            raw = await kv_store.get(settings.kv_key_flag_keys)
        except Exception as e:
            log_event(logger, "flag_keys_kv_read_failed", level="warning", error=str(e))
            raw = None
        keys = [k.strip() for k in str(raw or "").split(",") if k.strip()]
        if keys:
            return keys, SOURCE_KV
        logger.warning("Flag keys not found in KV store; using request flag keys.")
    if config.flag_keys:
        return list(config.flag_keys), config.metadata.get("flagKeysFrom", "request")
    return [], None


@dataclass(frozen=True)
class DecisionPlan:
    flags_to_decide: Tuple[str, ...] = ()
    flags_to_force: Tuple[StoredDecision, ...] = ()


def determine_flags_to_decide(
    config: RequestConfiguration,
    active_flags: Sequence[str],
    flag_keys: Sequence[str],
    valid_stored: Sequence[StoredDecision],
) -> DecisionPlan:
    requested = list(dict.fromkeys(flag_keys))
    requested_set = set(requested)
    if config.override_visitor_id:
        flags_to_force: Tuple[StoredDecision, ...] = ()
    else:
        flags_to_force = tuple(d for d in valid_stored if d.flag_key in requested_set)
    active_set = set(active_flags)

    if config.decide_all or (not requested and not flags_to_force):
        flags_to_decide = tuple(active_flags)
    else:
        flags_to_decide = tuple(k for k in requested if k in active_set)
    return DecisionPlan(flags_to_decide=flags_to_decide, flags_to_force=flags_to_force)


def trim_decisions(decisions: Sequence[Decision], config: RequestConfiguration) -> List[Decision]:
    if not config.trimmed_decisions:
        return list(decisions)
    return [replace(d, user_context=None) for d in decisions]


def prepare_decisions(decisions: Sequence[Decision], config: RequestConfiguration) -> List[Decision]:
    prepared = []
    for d in trim_decisions(decisions, config):
        if config.enabled_flags_only and not d.enabled:
            continue
        if config.exclude_variables:
            d = replace(d, variables=None)
        if not config.include_reasons:
            d = replace(d, reasons=None)
        prepared.append(d)
    return prepared


def serialize_decisions(decisions: Sequence[Decision]) -> Optional[str]:
    """Cookie/header form of the sticky decisions; None when nothing is worth storing."""
    sticky = [
        StoredDecision(flag_key=d.flag_key, variation_key=d.variation_key, rule_key=d.rule_key)
        for d in decisions
        if d.variation_key and ROLLOUT_MARKER not in str(d.rule_key or "")
    ]
    return encode_stored_decisions(sticky)


def build_payload(
    decisions: Sequence[Decision],
    config: RequestConfiguration,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    settings = settings or get_settings()
    payload: Dict[str, Any] = {
        settings.response_json_key_name: [d.to_dict() for d in decisions] if decisions else NO_DECISIONS
    }
    if config.enable_response_metadata:
        payload["configMetadata"] = dict(config.metadata)
    return payload


@dataclass(frozen=True)
class OperationResult:
    decisions: Optional[Tuple[Decision, ...]] = None
    payload: Optional[Dict[str, Any]] = None


class DecisionOrchestrator:
    async def execute(
        self,
        operation: Operation,
        plan: DecisionPlan,
        config: RequestConfiguration,
        provider: DecisionProvider,
    ) -> OperationResult:
        """
        Run the provider operation. Provider failures surface as DecisionError;
        a TRACK without an event key is an InvalidRequestError (400).
        """
        try:
            return await self._execute(operation, plan, config, provider)
        except EdgeAgentError:
            raise
        except Exception as e:
            log_event(
                logger,
                "decision_provider_failed",
                level="error",
                operation=operation.value,
                error_type=e.__class__.__name__,
                error=str(e),
            )
            raise DecisionError(str(e)) from e

    async def _execute(
        self,
        operation: Operation,
        plan: DecisionPlan,
        config: RequestConfiguration,
        provider: DecisionProvider,
    ) -> OperationResult:
        if operation is Operation.DECIDE:
            forced = [d.to_dict() for d in plan.flags_to_force] + list(config.forced_decisions)
            decisions = await provider.decide(list(plan.flags_to_decide), forced, config.attributes)
            return OperationResult(decisions=tuple(decisions))

        if operation is Operation.DATAFILE:
            datafile = await provider.datafile()
            if config.enable_response_metadata:
                return OperationResult(payload={"datafile": datafile, "metadata": dict(config.metadata)})
            return OperationResult(payload=datafile)

        if operation is Operation.CONFIG:
            cfg = await provider.config()
            payload: Dict[str, Any] = {"config": cfg}
            if config.enable_response_metadata:
                payload["metadata"] = dict(config.metadata)
            return OperationResult(payload=payload)

        if operation is Operation.TRACK:
            if not config.event_key or not isinstance(config.event_key, str):
                raise InvalidRequestError(
                    "Invalid or missing event key. An event key is required for tracking conversions."
                )
            await provider.track(config.event_key, config.attributes, config.event_tags)
            return OperationResult(
                payload={
                    "message": "Conversion event was dispatched.",
                    "attributes": config.attributes,
                    "eventTags": config.event_tags,
                    "status": 200,
                }
            )

        if operation is Operation.BATCH:
            results = await provider.batch(list(config.batch_operations))
            return OperationResult(payload={"batch_decisions": results})

        if operation is Operation.SEND_ODP_EVENT:
            result = await provider.send_odp_event(config.odp_event)
            return OperationResult(payload={"send_odp_event": result})

        raise EndpointNotFoundError(f"Unsupported operation: {operation.value}")
