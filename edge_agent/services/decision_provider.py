"""
Decision providers.

`DecisionProvider` is what the pipeline calls; `DatafileDecisionProvider` is the built-in
implementation evaluating a JSON datafile with deterministic SHA-256 bucketing. Any other
flag service can be plugged in through `EdgePipeline(provider_factory=...)`.
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from edge_agent.core.request_config import RequestConfiguration
from edge_agent.models.datafile import Datafile, FlagConfig
from edge_agent.models.decisions import Decision
from edge_agent.services.event_batcher import EventBatcher
from edge_agent.services.user_profile import UserProfileService
from edge_agent.utils.errors import DatafileError, InvalidRequestError
from edge_agent.utils.settings import Settings, get_settings

logger = logging.getLogger(__name__)

ROLLOUT_RULE_PREFIX = "default-rollout-"


class DecisionProvider:
    async def get_active_flags(self) -> List[str]:
        raise NotImplementedError

    async def decide(
        self,
        flag_keys: Sequence[str],
        forced_decisions: Sequence[Dict[str, Any]] = (),
        attributes: Optional[Dict[str, Any]] = None,
    ) -> List[Decision]:
        raise NotImplementedError

    async def datafile(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def config(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def track(
        self,
        event_key: str,
        attributes: Optional[Dict[str, Any]] = None,
        event_tags: Optional[Dict[str, Any]] = None,
    ) -> None:
        raise NotImplementedError

    async def batch(self, operations: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def send_odp_event(self, odp_event: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        raise NotImplementedError


def stable_bucket(key: str, *, salt: str) -> float:
    """
    Stable bucket in [0, 100).
    Deterministic across processes for the same key+salt.
    """
    raw = (str(salt or "") + "|" + str(key or "")).encode("utf-8", errors="ignore")
    h = hashlib.sha256(raw).hexdigest()
    n = int(h[:8], 16)
    return (n % 10000) / 100.0


def _now_ms() -> int:
    return int(time.time() * 1000)


def _attribute_list(attributes: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {"entity_id": str(k), "key": str(k), "type": "custom", "value": v}
        for k, v in (attributes or {}).items()
    ]


def _experiment_rule_key(flag_key: str, cfg: FlagConfig) -> str:
    return cfg.rule_key or f"{flag_key}_experiment"


class DatafileDecisionProvider(DecisionProvider):
    """
    Evaluates flags for one visitor against a parsed datafile.

    Supported flag shapes:
      {"enabled": false}                                  -> off for everyone
      {"enabled": true, "rollout_pct": 20}                -> on for 20% ("on"/"off" rollout)
      {"enabled": true, "variations": {"a": {"weight": 1}, "b": {"weight": 1}}}
                                                          -> experiment with weighted variations
    Decision events go to the batcher unless DISABLE_DECISION_EVENT is set. With a user profile
    service, experiment assignments are read back before bucketing and saved afterwards
    (skipped when IGNORE_USER_PROFILE_SERVICE is set).
    """

    def __init__(
        self,
        datafile: Dict[str, Any],
        *,
        visitor_id: str,
        config: RequestConfiguration,
        batcher: EventBatcher,
        settings: Optional[Settings] = None,
        user_profile_service: Optional[UserProfileService] = None,
    ):
        self.raw_datafile = datafile
        try:
            self.parsed = Datafile.model_validate(datafile)
        except ValidationError as e:
            raise DatafileError(f"Invalid datafile: {e.error_count()} validation error(s)") from e
        self.visitor_id = visitor_id
        self.request_config = config
        self.batcher = batcher
        self.settings = settings or get_settings()
        self.user_profile_service = user_profile_service

    def for_visitor(self, visitor_id: str) -> "DatafileDecisionProvider":
        return DatafileDecisionProvider(
            self.raw_datafile,
            visitor_id=visitor_id,
            config=self.request_config,
            batcher=self.batcher,
            settings=self.settings,
            user_profile_service=self.user_profile_service,
        )

    async def get_active_flags(self) -> List[str]:
        return list(self.parsed.flags.keys())

    def _user_context(self, attributes: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {"userId": self.visitor_id, "attributes": dict(attributes or {})}

    def _evaluate(
        self, flag_key: str, cfg: FlagConfig, attributes: Optional[Dict[str, Any]]
    ) -> Decision:
        user_context = self._user_context(attributes)
        if not cfg.enabled:
            return Decision(
                flag_key=flag_key,
                variation_key="off",
                enabled=False,
                variables=dict(cfg.variables),
                rule_key=None,
                reasons=[f"Flag {flag_key} is disabled."],
                user_context=user_context,
            )

        rollout_rule = f"{ROLLOUT_RULE_PREFIX}{flag_key}"
        b = stable_bucket(self.visitor_id, salt=flag_key)
        if b >= cfg.rollout_pct:
            return Decision(
                flag_key=flag_key,
                variation_key="off",
                enabled=False,
                variables=dict(cfg.variables),
                rule_key=rollout_rule,
                reasons=[f"Visitor bucket {b:.2f} is outside rollout {cfg.rollout_pct:.2f}."],
                user_context=user_context,
            )

        items: List[Tuple[str, float]] = [
            (key, v.weight) for key, v in cfg.variations.items() if v.weight > 0
        ]
        total = sum(w for _, w in items)
        if not items or total <= 0:
            return Decision(
                flag_key=flag_key,
                variation_key="on",
                enabled=True,
                variables=dict(cfg.variables),
                rule_key=rollout_rule,
                reasons=[f"Visitor bucket {b:.2f} is inside rollout {cfg.rollout_pct:.2f}."],
                user_context=user_context,
            )

        vb = stable_bucket(self.visitor_id + "|variation:" + flag_key, salt=flag_key) * total / 100.0
        chosen = items[-1][0]
        acc = 0.0
        for variation_key, weight in items:
            acc += weight
            if vb < acc:
                chosen = variation_key
                break
        return self._variation_decision(
            flag_key,
            cfg,
            chosen,
            rule_key=_experiment_rule_key(flag_key, cfg),
            reason=f"Visitor bucketed into variation {chosen} ({vb:.2f} of {total:.2f}).",
            attributes=attributes,
        )

    def _variation_decision(
        self,
        flag_key: str,
        cfg: FlagConfig,
        variation_key: str,
        *,
        rule_key: Optional[str],
        reason: str,
        attributes: Optional[Dict[str, Any]],
    ) -> Decision:
        variation = cfg.variations[variation_key]
        variables = dict(cfg.variables)
        variables.update(variation.variables)
        return Decision(
            flag_key=flag_key,
            variation_key=variation_key,
            enabled=bool(cfg.enabled and variation.enabled),
            variables=variables,
            rule_key=rule_key,
            reasons=[reason],
            user_context=self._user_context(attributes),
        )

    def _forced(
        self, forced: Dict[str, Any], attributes: Optional[Dict[str, Any]]
    ) -> Optional[Decision]:
        flag_key = str(forced.get("flagKey") or "")
        variation_key = forced.get("variationKey")
        cfg = self.parsed.flags.get(flag_key)
        if cfg is None or variation_key not in cfg.variations:
            return None
        return self._variation_decision(
            flag_key,
            cfg,
            str(variation_key),
            rule_key=forced.get("ruleKey") or cfg.rule_key,
            reason=f"Forced decision {variation_key} applied for flag {flag_key}.",
            attributes=attributes,
        )

    def _uses_profiles(self) -> bool:
        return self.user_profile_service is not None and not self.request_config.ignore_user_profile_service

    async def _from_profile(
        self, flag_key: str, cfg: FlagConfig, attributes: Optional[Dict[str, Any]]
    ) -> Optional[Decision]:
        if not self._uses_profiles() or not cfg.enabled or not cfg.variations:
            return None
        rule_key = _experiment_rule_key(flag_key, cfg)
        variation_key = await self.user_profile_service.stored_variation(self.visitor_id, rule_key)
        if variation_key not in cfg.variations:
            return None
        return self._variation_decision(
            flag_key,
            cfg,
            variation_key,
            rule_key=rule_key,
            reason=f"Returning previously bucketed variation {variation_key} from the user profile.",
            attributes=attributes,
        )

    async def decide(
        self,
        flag_keys: Sequence[str],
        forced_decisions: Sequence[Dict[str, Any]] = (),
        attributes: Optional[Dict[str, Any]] = None,
    ) -> List[Decision]:
        if attributes is None:
            attributes = self.request_config.attributes
        forced_by_flag: Dict[str, Dict[str, Any]] = {}
        for forced in forced_decisions:
            key = str(forced.get("flagKey") or "")
            if key and key not in forced_by_flag:
                forced_by_flag[key] = forced

        ordered = list(dict.fromkeys(list(flag_keys) + list(forced_by_flag)))
        decisions: List[Decision] = []
        fresh: List[Decision] = []
        for flag_key in ordered:
            cfg = self.parsed.flags.get(flag_key)
            if cfg is None:
                logger.info("Skipping unknown flag %s", flag_key)
                continue
            decision = None
            if flag_key in forced_by_flag:
                decision = self._forced(forced_by_flag[flag_key], attributes)
            if decision is None:
                decision = await self._from_profile(flag_key, cfg, attributes)
                if decision is None:
                    decision = self._evaluate(flag_key, cfg, attributes)
                fresh.append(decision)
            decisions.append(decision)

        if self._uses_profiles():
            assignments = {
                d.rule_key: d.variation_key
                for d in fresh
                if d.rule_key
                and d.variation_key in self.parsed.flags[d.flag_key].variations
                and not d.rule_key.startswith(ROLLOUT_RULE_PREFIX)
            }
            await self.user_profile_service.save(self.visitor_id, assignments)

        if not self.request_config.disable_decision_event:
            impressions = [d for d in fresh if d.rule_key and d.variation_key]
            if impressions:
                self.batcher.enqueue(self._decision_event(impressions, attributes))
        return decisions

    def _event_envelope(self, snapshot: Dict[str, Any], attributes: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "account_id": self.parsed.account_id,
            "project_id": self.parsed.project_id,
            "revision": self.parsed.revision,
            "client_name": self.settings.client_name,
            "client_version": self.settings.client_version,
            "anonymize_ip": True,
            "enrich_decisions": True,
            "visitors": [
                {
                    "visitor_id": self.visitor_id,
                    "attributes": _attribute_list(attributes),
                    "snapshots": [snapshot],
                }
            ],
        }

    def _decision_event(self, decisions: Iterable[Decision], attributes: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        snapshot_decisions = []
        events = []
        for d in decisions:
            snapshot_decisions.append(
                {
                    "campaign_id": d.rule_key,
                    "experiment_id": d.rule_key,
                    "variation_id": d.variation_key,
                    "metadata": {
                        "flag_key": d.flag_key,
                        "rule_key": d.rule_key,
                        "rule_type": "rollout" if str(d.rule_key).startswith(ROLLOUT_RULE_PREFIX) else "experiment",
                        "variation_key": d.variation_key,
                        "enabled": d.enabled,
                    },
                }
            )
            events.append(
                {
                    "entity_id": d.rule_key,
                    "key": "campaign_activated",
                    "timestamp": _now_ms(),
                    "uuid": str(uuid.uuid4()),
                }
            )
        return self._event_envelope({"decisions": snapshot_decisions, "events": events}, attributes)

    async def datafile(self) -> Dict[str, Any]:
        return self.raw_datafile

    async def config(self) -> Dict[str, Any]:
        features = {}
        for key, cfg in self.parsed.flags.items():
            features[key] = {
                "key": key,
                "enabled": cfg.enabled,
                "rolloutPct": cfg.rollout_pct,
                "ruleKey": cfg.rule_key,
                "variations": list(cfg.variations.keys()),
                "variables": dict(cfg.variables),
            }
        return {
            "revision": self.parsed.revision,
            "projectId": self.parsed.project_id,
            "featuresMap": features,
        }

    async def track(
        self,
        event_key: str,
        attributes: Optional[Dict[str, Any]] = None,
        event_tags: Optional[Dict[str, Any]] = None,
    ) -> None:
        event: Dict[str, Any] = {
            "entity_id": event_key,
            "key": event_key,
            "timestamp": _now_ms(),
            "uuid": str(uuid.uuid4()),
        }
        if event_tags:
            event["tags"] = dict(event_tags)
            for numeric in ("revenue", "value"):
                if isinstance(event_tags.get(numeric), (int, float)):
                    event[numeric] = event_tags[numeric]
        self.batcher.enqueue(self._event_envelope({"decisions": [], "events": [event]}, attributes))

    async def batch(self, operations: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Decide for several visitors in one call: [{"visitorId", "flagKeys", "attributes"}]."""
        results = []
        for op in operations:
            visitor_id = str(op.get("visitorId") or "").strip()
            if not visitor_id:
                raise InvalidRequestError("Every batch operation needs a visitorId.")
            keys = op.get("flagKeys")
            if not isinstance(keys, list) or not keys:
                keys = await self.get_active_flags()
            attributes = op.get("attributes") if isinstance(op.get("attributes"), dict) else None
            decisions = await self.for_visitor(visitor_id).decide(
                [str(k) for k in keys], (), attributes=attributes or {}
            )
            results.append(
                {"visitorId": visitor_id, "decisions": [d.to_dict() for d in decisions]}
            )
        return results

    async def send_odp_event(self, odp_event: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not odp_event or not str(odp_event.get("action") or "").strip():
            raise InvalidRequestError("An ODP event requires an action.")
        event_type = str(odp_event.get("type") or "fullstack")
        action = str(odp_event["action"]).strip()
        event = {
            "entity_id": f"odp:{event_type}:{action}",
            "key": f"odp:{event_type}:{action}",
            "timestamp": _now_ms(),
            "uuid": str(uuid.uuid4()),
            "tags": {
                "identifiers": odp_event.get("identifiers") or {},
                "data": odp_event.get("data") or {},
            },
        }
        self.batcher.enqueue(self._event_envelope({"decisions": [], "events": [event]}, None))
        return {"success": True, "type": event_type, "action": action}
