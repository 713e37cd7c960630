from __future__ import annotations

import asyncio
import copy

import pytest

from edge_agent.core.request_config import RequestConfiguration
from edge_agent.services.decision_provider import (
    ROLLOUT_RULE_PREFIX,
    DatafileDecisionProvider,
    stable_bucket,
)
from edge_agent.services.event_batcher import EventBatcher
from edge_agent.services.runtime import EdgeRuntime, KVStore
from edge_agent.services.user_profile import UserProfileService
from edge_agent.utils.cache import InMemoryCache
from edge_agent.utils.errors import DatafileError, InvalidRequestError
from edge_agent.utils.settings import Settings

DATAFILE = {
    "revision": 7,
    "projectId": "p1",
    "accountId": "a1",
    "flags": {
        "hero": {
            "enabled": True,
            "rule_key": "hero_test",
            "variables": {"headline": "Welcome"},
            "variations": {
                "control": {"weight": 1},
                "treatment": {"weight": 1, "variables": {"headline": "Hello"}},
            },
        },
        "banner": {"enabled": True, "rollout_pct": 100},
        "hidden": {"enabled": True, "rollout_pct": 0},
        "legacy": {"enabled": False},
    },
}


def _provider(visitor_id: str = "visitor-1", config: RequestConfiguration | None = None):
    batcher = EventBatcher(EdgeRuntime())
    provider = DatafileDecisionProvider(
        DATAFILE,
        visitor_id=visitor_id,
        config=config or RequestConfiguration(),
        batcher=batcher,
        settings=Settings(),
    )
    return provider, batcher


def test_stable_bucket_is_deterministic_and_in_range() -> None:
    a = stable_bucket("visitor-1", salt="hero")
    assert a == stable_bucket("visitor-1", salt="hero")
    assert 0.0 <= a < 100.0
    assert len({stable_bucket(f"visitor-{i}", salt="hero") for i in range(20)}) > 1


def test_invalid_datafile_raises_datafile_error() -> None:
    with pytest.raises(DatafileError):
        DatafileDecisionProvider(
            {"flags": {"x": {"rollout_pct": "lots"}}},
            visitor_id="v",
            config=RequestConfiguration(),
            batcher=EventBatcher(EdgeRuntime()),
            settings=Settings(),
        )


def test_flag_shapes() -> None:
    provider, _ = _provider()
    decisions = {d.flag_key: d for d in asyncio.run(provider.decide(["hero", "banner", "hidden", "legacy", "nope"]))}
    assert set(decisions) == {"hero", "banner", "hidden", "legacy"}

    assert decisions["legacy"].variation_key == "off"
    assert decisions["legacy"].enabled is False
    assert decisions["legacy"].rule_key is None

    assert decisions["banner"].variation_key == "on"
    assert decisions["banner"].rule_key == f"{ROLLOUT_RULE_PREFIX}banner"

    assert decisions["hidden"].variation_key == "off"
    assert decisions["hidden"].enabled is False

    assert decisions["hero"].variation_key in {"control", "treatment"}
    assert decisions["hero"].rule_key == "hero_test"
    assert decisions["hero"].user_context == {"userId": "visitor-1", "attributes": {}}


def test_variation_assignment_is_sticky_per_visitor() -> None:
    first = asyncio.run(_provider("visitor-42")[0].decide(["hero"]))[0]
    again = asyncio.run(_provider("visitor-42")[0].decide(["hero"]))[0]
    assert first.variation_key == again.variation_key


def test_variation_variables_override_flag_variables() -> None:
    provider, _ = _provider()
    forced = [{"flagKey": "hero", "variationKey": "treatment", "ruleKey": "hero_test"}]
    (decision,) = asyncio.run(provider.decide([], forced))
    assert decision.variation_key == "treatment"
    assert decision.variables == {"headline": "Hello"}
    assert decision.reasons[0].startswith("Forced decision")


def test_unknown_forced_variation_is_evaluated_normally() -> None:
    provider, _ = _provider()
    forced = [{"flagKey": "hero", "variationKey": "retired"}]
    (decision,) = asyncio.run(provider.decide(["hero"], forced))
    assert decision.variation_key in {"control", "treatment"}
    assert not decision.reasons[0].startswith("Forced decision")


def test_decision_events_are_queued_for_fresh_decisions_only() -> None:
    provider, batcher = _provider()
    forced = [{"flagKey": "hero", "variationKey": "control"}]
    asyncio.run(provider.decide(["hero", "banner", "legacy"], forced, {"plan": "pro"}))
    (event,) = batcher.pending
    snapshot = event["visitors"][0]["snapshots"][0]
    flags = [d["metadata"]["flag_key"] for d in snapshot["decisions"]]
    assert flags == ["banner"]
    assert snapshot["decisions"][0]["metadata"]["rule_type"] == "rollout"
    assert event["visitors"][0]["attributes"][0]["key"] == "plan"
    assert event["revision"] == "7"


def test_disable_decision_event() -> None:
    provider, batcher = _provider(config=RequestConfiguration(disable_decision_event=True))
    asyncio.run(provider.decide(["banner"]))
    assert len(batcher) == 0


def test_config_lists_features() -> None:
    provider, _ = _provider()
    cfg = asyncio.run(provider.config())
    assert cfg["revision"] == "7"
    assert set(cfg["featuresMap"]) == {"hero", "banner", "hidden", "legacy"}
    assert cfg["featuresMap"]["hero"]["variations"] == ["control", "treatment"]


def test_track_queues_conversion_with_revenue() -> None:
    provider, batcher = _provider()
    asyncio.run(provider.track("purchase", {"plan": "pro"}, {"revenue": 4200, "sku": "x"}))
    (event,) = batcher.pending
    conversion = event["visitors"][0]["snapshots"][0]["events"][0]
    assert conversion["key"] == "purchase"
    assert conversion["revenue"] == 4200
    assert conversion["tags"] == {"revenue": 4200, "sku": "x"}


def test_batch_decides_per_visitor() -> None:
    provider, batcher = _provider()
    results = asyncio.run(
        provider.batch(
            [
                {"visitorId": "a", "flagKeys": ["banner"]},
                {"visitorId": "b"},
            ]
        )
    )
    assert [r["visitorId"] for r in results] == ["a", "b"]
    assert [d["flagKey"] for d in results[0]["decisions"]] == ["banner"]
    assert len(results[1]["decisions"]) == 4
    assert len(batcher) == 2

    with pytest.raises(InvalidRequestError):
        asyncio.run(provider.batch([{"flagKeys": ["banner"]}]))


def test_send_odp_event() -> None:
    provider, batcher = _provider()
    result = asyncio.run(provider.send_odp_event({"action": "signup", "identifiers": {"email": "a@b.c"}}))
    assert result == {"success": True, "type": "fullstack", "action": "signup"}
    assert len(batcher) == 1
    with pytest.raises(InvalidRequestError):
        asyncio.run(provider.send_odp_event({"type": "x"}))


def test_user_profile_keeps_the_assignment_when_weights_change() -> None:
    kv = KVStore(InMemoryCache())

    def _decide(datafile, config=None):
        provider = DatafileDecisionProvider(
            datafile,
            visitor_id="visitor-5",
            config=config or RequestConfiguration(),
            batcher=EventBatcher(EdgeRuntime()),
            settings=Settings(),
            user_profile_service=UserProfileService(kv, "sdk-1", settings=Settings()),
        )
        return asyncio.run(provider.decide(["hero"]))[0]

    first = _decide(DATAFILE)
    other = "treatment" if first.variation_key == "control" else "control"
    reweighted = copy.deepcopy(DATAFILE)
    reweighted["flags"]["hero"]["variations"][first.variation_key]["weight"] = 0

    again = _decide(reweighted)
    assert again.variation_key == first.variation_key
    assert again.reasons[0].startswith("Returning previously bucketed variation")

    ignored = _decide(reweighted, RequestConfiguration(ignore_user_profile_service=True))
    assert ignored.variation_key == other
