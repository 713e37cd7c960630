"""
Request pipeline:

    ConfigResolver -> VisitorIdentity -> DecisionOrchestrator -> CdnRoutingMatcher
        -> EdgeCacheGateway -> response; EventBatcher flush runs in the background.

Requests the edge forwarded itself (worker-operation header) skip every stage and go
straight on to the origin.

Each stage takes the current `RequestContext` and returns a new one. Nothing here is
shared across requests except the runtime's stores and the datafile cache.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from edge_agent.core.cdn_routing import CdnRoutingMatcher
from edge_agent.core.context import RequestContext
from edge_agent.core.decisions import (
    DecisionOrchestrator,
    build_payload,
    determine_flags_to_decide,
    prepare_decisions,
    resolve_flag_keys,
    resolve_operation,
    serialize_decisions,
    trim_decisions,
)
from edge_agent.core.listeners import EventListenerRegistry
from edge_agent.core.mutations import build_mutations
from edge_agent.core.request_config import ConfigResolver, RequestConfiguration
from edge_agent.core.visitor import VisitorIdentity
from edge_agent.models.decisions import CdnVariationSettings, Operation, StoredDecisionSet
from edge_agent.services.datafile import DatafileSource
from edge_agent.services.decision_provider import DatafileDecisionProvider, DecisionProvider
from edge_agent.services.edge_cache import EdgeCacheGateway
from edge_agent.services.event_batcher import EventBatcher
from edge_agent.services.runtime import EdgeRuntime
from edge_agent.services.user_profile import UserProfileService
from edge_agent.utils.background import BackgroundTasks
from edge_agent.utils.errors import (
    EdgeAgentError,
    ErrorCode,
    ForwardingLoopError,
    OriginFetchError,
    build_error_payload,
)
from edge_agent.utils.http_messages import copy_request, json_response, origin_target
from edge_agent.utils.observability import log_event, trace_span
from edge_agent.utils.settings import Settings, get_settings

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., DecisionProvider]


def default_provider_factory(
    datafile: Dict[str, Any],
    *,
    visitor_id: str,
    config: RequestConfiguration,
    batcher: EventBatcher,
    settings: Settings,
    user_profile_service: Optional[UserProfileService] = None,
) -> DecisionProvider:
    return DatafileDecisionProvider(
        datafile,
        visitor_id=visitor_id,
        config=config,
        batcher=batcher,
        settings=settings,
        user_profile_service=user_profile_service,
    )


@dataclass(frozen=True)
class ProcessResult:
    response: httpx.Response
    cdn_routing_settings: Optional[CdnVariationSettings]
    background: BackgroundTasks


class EdgePipeline:
    def __init__(
        self,
        runtime: EdgeRuntime,
        *,
        settings: Optional[Settings] = None,
        listeners: Optional[EventListenerRegistry] = None,
        provider_factory: Optional[ProviderFactory] = None,
        datafile_source: Optional[DatafileSource] = None,
        matcher: Optional[CdnRoutingMatcher] = None,
    ):
        self.runtime = runtime
        self.settings = settings or get_settings()
        self.listeners = listeners or EventListenerRegistry()
        self.provider_factory = provider_factory or default_provider_factory
        self.datafile_source = datafile_source or DatafileSource(runtime, settings=self.settings)
        self.matcher = matcher or CdnRoutingMatcher(debug_flag_key=self.settings.routing_debug_flag_key)
        self.config_resolver = ConfigResolver(self.settings)
        self.identity = VisitorIdentity(self.settings)
        self.orchestrator = DecisionOrchestrator()

    @trace_span("edge.process_request")
    async def process_request(self, request: httpx.Request) -> ProcessResult:
        """
        Handle one request. Returns the response, the routing policy that applied (if any)
        and the background work (cache writes, event flush) the host should run afterwards.
        """
        background = self.runtime.new_background_tasks()
        if request.headers.get(self.settings.worker_operation_header, "").lower() == "true":
            try:
                response = await self._pass_through(request)
            except EdgeAgentError as e:
                response = self._error_response(request, e)
            return ProcessResult(response=response, cdn_routing_settings=None, background=background)

        batcher = EventBatcher(self.runtime, listeners=self.listeners)
        cdn_settings: Optional[CdnVariationSettings] = None
        try:
            routed = await self._run(request, background, batcher)
            response = routed.response
            cdn_settings = routed.cdn_settings
        except EdgeAgentError as e:
            response = self._error_response(request, e)
        except Exception as e:
            logger.exception("Unexpected failure while processing %s %s", request.method, request.url)
            response = self._error_response(request, e)
        finally:
            if len(batcher):
                background.add_task(batcher.flush, self.settings.events_endpoint)

        result = await self.listeners.trigger("afterResponse", request, response, cdn_settings)
        response = result.get("modifiedResponse") or response
        await self.listeners.trigger("afterProcessingRequest", request, response)
        return ProcessResult(response=response, cdn_routing_settings=cdn_settings, background=background)

    def _error_response(self, request: httpx.Request, error: Exception) -> httpx.Response:
        if isinstance(error, EdgeAgentError):
            code, status_code, message = error.code, error.status_code, str(error)
        else:
            code, status_code, message = ErrorCode.SERVICE_ERROR, 500, "Internal edge error"
        log_event(
            logger,
            "edge_request_failed",
            level="error" if status_code >= 500 else "warning",
            method=request.method,
            url=str(request.url),
            error_type=error.__class__.__name__,
            error=str(error),
        )
        return json_response(
            build_error_payload(
                code=code,
                message=message,
                request_id=request.headers.get("x-request-id"),
            ),
            status_code=status_code,
        )

    async def _pass_through(self, request: httpx.Request) -> httpx.Response:
        """
        A request the edge forwarded itself: send it on untouched, marked as processed.
        Seeing the marker again means it looped back.
        """
        if request.headers.get(self.settings.worker_processed_header):
            raise ForwardingLoopError("Endless loop detected")
        outgoing = copy_request(
            request,
            url=origin_target(request.url, self.settings.origin_url),
            set_headers={self.settings.worker_processed_header: "true"},
        )
        try:
            return await self.runtime.fetch(outgoing)
        except httpx.HTTPError as e:
            raise OriginFetchError(f"Origin fetch failed: {e}") from e

    async def _run(
        self, request: httpx.Request, background: BackgroundTasks, batcher: EventBatcher
    ) -> "_Routed":
        await self.listeners.trigger("beforeProcessingRequest", request)
        operation = resolve_operation(request.method, request.url.path)
        ctx = RequestContext(
            request=request,
            operation=operation,
            config=self.config_resolver.resolve(request),
        )
        ctx = self._identify(ctx)
        ctx = await self._load_datafile(ctx)

        user_profiles = None
        if self.settings.user_profile_service_enabled and not ctx.config.ignore_user_profile_service:
            user_profiles = UserProfileService(
                self.runtime.kv_store, ctx.config.sdk_key, settings=self.settings
            )
        provider = self.provider_factory(
            ctx.datafile,
            visitor_id=ctx.visitor_id,
            config=ctx.config,
            batcher=batcher,
            settings=self.settings,
            user_profile_service=user_profiles,
        )
        ctx = ctx.evolve(active_flags=tuple(await provider.get_active_flags()))

        if operation is not Operation.DECIDE:
            outcome = await self.orchestrator.execute(operation, ctx.plan, ctx.config, provider)
            response = json_response(outcome.payload)
            return await self._finish(ctx, response)

        ctx = await self._plan(ctx)
        ctx = await self._decide(ctx, provider)
        ctx = self._match(ctx)
        ctx = self._prepare(ctx)

        local_response = json_response(build_payload(ctx.prepared, ctx.config, self.settings))
        gateway = EdgeCacheGateway(
            self.runtime, background=background, listeners=self.listeners, settings=self.settings
        )
        response = await gateway.route(
            ctx.cdn_settings, request, local_response, ctx.mutations, ctx.config
        )
        return await self._finish(ctx, response)

    def _identify(self, ctx: RequestContext) -> RequestContext:
        visitor_id, source = self.identity.resolve(ctx.request, ctx.config)
        return ctx.evolve(visitor_id=visitor_id, visitor_id_source=source).with_metadata(
            visitorId=visitor_id, visitorIdFrom=source
        )

    async def _load_datafile(self, ctx: RequestContext) -> RequestContext:
        datafile, origin = await self.datafile_source.load(ctx.config)
        return ctx.evolve(datafile=datafile, datafile_source=origin).with_metadata(datafileFrom=origin)

    async def _plan(self, ctx: RequestContext) -> RequestContext:
        flag_keys, keys_from = await resolve_flag_keys(ctx.config, self.runtime.kv_store, self.settings)
        stored = self.identity.read_stored_decisions(ctx.request, ctx.active_flags)
        result = await self.listeners.trigger("afterReadingCookie", ctx.request, stored)
        if "validStoredDecisions" in result or "invalidStoredDecisions" in result:
            stored = StoredDecisionSet(
                saved=stored.saved,
                valid=tuple(result.get("validStoredDecisions", stored.valid)),
                invalid=tuple(result.get("invalidStoredDecisions", stored.invalid)),
            )
        plan = determine_flags_to_decide(ctx.config, ctx.active_flags, flag_keys, stored.valid)
        ctx = ctx.evolve(flag_keys=tuple(flag_keys), stored=stored, plan=plan)
        return ctx.with_metadata(
            flagKeysFrom=keys_from,
            flagKeysDecided=list(plan.flags_to_decide),
            storedDecisionsFound=bool(stored.valid),
            storedCookieDecisions=[d.to_dict() for d in stored.valid],
            forcedDecisions=[d.to_dict() for d in plan.flags_to_force],
            pathName=ctx.request.url.path,
        )

    async def _decide(self, ctx: RequestContext, provider: DecisionProvider) -> RequestContext:
        await self.listeners.trigger("beforeDecide", ctx.request, ctx.config, ctx.plan)
        outcome = await self.orchestrator.execute(Operation.DECIDE, ctx.plan, ctx.config, provider)
        await self.listeners.trigger("afterDecide", ctx.request, ctx.config, outcome.decisions)
        return ctx.evolve(decisions=outcome.decisions or ())

    def _match(self, ctx: RequestContext) -> RequestContext:
        matched = self.matcher.find_matching_config(
            str(ctx.request.url),
            trim_decisions(ctx.decisions, ctx.config),
            self.settings.url_ignore_query_parameters,
        )
        ctx = ctx.evolve(cdn_settings=matched)
        if matched is not None:
            ctx = ctx.with_metadata(cdnVariationSettings=matched.to_dict())
        return ctx

    def _prepare(self, ctx: RequestContext) -> RequestContext:
        prepared = tuple(prepare_decisions(ctx.decisions, ctx.config))
        serialized = serialize_decisions(prepared)
        mutations = build_mutations(
            ctx.config,
            self.settings,
            visitor_id=ctx.visitor_id,
            serialized_decisions=serialized,
            is_post=ctx.is_post,
        )
        return ctx.evolve(prepared=prepared, serialized_decisions=serialized, mutations=mutations)

    async def _finish(self, ctx: RequestContext, response: httpx.Response) -> "_Routed":
        result = await self.listeners.trigger("beforeResponse", ctx.request, response, ctx.cdn_settings)
        response = result.get("modifiedResponse") or response
        return _Routed(response=response, cdn_settings=ctx.cdn_settings)


@dataclass(frozen=True)
class _Routed:
    response: httpx.Response
    cdn_settings: Optional[CdnVariationSettings]
