"""
User profile service: remembers which variation a visitor was bucketed into per experiment,
so assignments survive datafile weight changes.

Profiles live in the KV store under `<prefix>-<sdkKey>-<visitorId>` as JSON:

    {"user_id": "...", "experiment_bucket_map": {"<ruleKey>": {"variation_id": "<variationKey>"}}}
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from edge_agent.services.runtime import KVStore
from edge_agent.utils.observability import log_event
from edge_agent.utils.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class UserProfileService:
    def __init__(self, kv_store: KVStore, sdk_key: str, *, settings: Optional[Settings] = None):
        self.kv_store = kv_store
        self.sdk_key = sdk_key
        self.settings = settings or get_settings()
        self._profiles: Dict[str, Dict[str, Any]] = {}

    def user_key(self, visitor_id: str) -> str:
        return f"{self.settings.user_profile_key_prefix}-{self.sdk_key}-{visitor_id}"

    async def lookup(self, visitor_id: str) -> Dict[str, Any]:
        """Stored profile for the visitor, or {} when there is none or it cannot be read."""
        key = self.user_key(visitor_id)
        if key in self._profiles:
            return self._profiles[key]
        try:
            raw = await self.kv_store.get(key)
            profile = json.loads(raw) if raw else {}
        except Exception as e:
            log_event(logger, "user_profile_lookup_failed", level="warning", error=str(e))
            return {}
        if not isinstance(profile, dict):
            profile = {}
        self._profiles[key] = profile
        return profile

    async def stored_variation(self, visitor_id: str, rule_key: str) -> Optional[str]:
        bucket_map = (await self.lookup(visitor_id)).get("experiment_bucket_map") or {}
        entry = bucket_map.get(rule_key)
        if isinstance(entry, dict) and entry.get("variation_id"):
            return str(entry["variation_id"])
        return None

    async def save(self, visitor_id: str, assignments: Dict[str, str]) -> None:
        """Merge {ruleKey: variationKey} into the visitor's profile and write it back."""
        if not assignments:
            return
        profile = dict(await self.lookup(visitor_id))
        bucket_map = dict(profile.get("experiment_bucket_map") or {})
        changed = False
        for rule_key, variation_key in assignments.items():
            entry = bucket_map.get(rule_key)
            if not isinstance(entry, dict) or entry.get("variation_id") != variation_key:
                bucket_map[rule_key] = {"variation_id": variation_key}
                changed = True
        if not changed:
            return
        profile.update({"user_id": visitor_id, "experiment_bucket_map": bucket_map})
        key = self.user_key(visitor_id)
        self._profiles[key] = profile
        try:
            await self.kv_store.put(key, json.dumps(profile, separators=(",", ":")))
        except Exception as e:
            log_event(logger, "user_profile_save_failed", level="warning", error=str(e))
