from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
import os


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Datafile retrieval
    datafile_url_template: str = Field(
        default="https://cdn.optimizely.com/datafiles/{sdk_key}.json",
        validation_alias="DATAFILE_URL_TEMPLATE",
    )
    datafile_cache_ttl_seconds: int = Field(default=600, validation_alias="DATAFILE_CACHE_TTL_SECONDS")
    default_sdk_key: str | None = Field(default=None, validation_alias="DEFAULT_SDK_KEY")

    # Event dispatch (batched, fire-and-forget)
    events_endpoint: str = Field(
        default="https://logx.optimizely.com/v1/events",
        validation_alias="EVENTS_ENDPOINT",
    )
    client_name: str = Field(default="python-sdk/edge-agent", validation_alias="CLIENT_NAME")
    client_version: str = Field(default="1.0.0", validation_alias="CLIENT_VERSION")

    # KV store keys
    kv_key_flag_keys: str = Field(default="optly_flagKeys", validation_alias="KV_KEY_FLAG_KEYS")
    kv_prefix: str = Field(default="edge:kv:", validation_alias="KV_PREFIX")
    flags_from_kv: bool = Field(default=False, validation_alias="FLAGS_FROM_KV")

    # User profile service (sticky experiment assignments kept in the KV store)
    user_profile_service_enabled: bool = Field(default=True, validation_alias="USER_PROFILE_SERVICE_ENABLED")
    user_profile_key_prefix: str = Field(default="optly-ups", validation_alias="USER_PROFILE_KEY_PREFIX")

    # Edge cache
    edge_cache_prefix: str = Field(default="edge:cache:", validation_alias="EDGE_CACHE_PREFIX")
    edge_cache_ttl_seconds: int | None = Field(default=None, validation_alias="EDGE_CACHE_TTL_SECONDS")

    # Request resolution
    prioritize_headers_over_query_params: bool = Field(
        default=True, validation_alias="PRIORITIZE_HEADERS_OVER_QUERY_PARAMS"
    )
    url_ignore_query_parameters: bool = Field(default=True, validation_alias="URL_IGNORE_QUERY_PARAMETERS")
    default_trimmed_decisions: bool = Field(default=True, validation_alias="DEFAULT_TRIMMED_DECISIONS")
    default_set_request_headers: bool = Field(default=True, validation_alias="DEFAULT_SET_REQUEST_HEADERS")
    default_set_response_headers: bool = Field(default=True, validation_alias="DEFAULT_SET_RESPONSE_HEADERS")
    default_set_request_cookies: bool = Field(default=True, validation_alias="DEFAULT_SET_REQUEST_COOKIES")
    default_set_response_cookies: bool = Field(default=True, validation_alias="DEFAULT_SET_RESPONSE_COOKIES")
    response_json_key_name: str = Field(default="decisions", validation_alias="RESPONSE_JSON_KEY_NAME")

    # Header names
    sdk_key_header: str = Field(default="X-Edge-SDK-Key", validation_alias="SDK_KEY_HEADER")
    visitor_id_header: str = Field(default="X-Edge-Visitor-Id", validation_alias="VISITOR_ID_HEADER")
    flag_keys_header: str = Field(default="X-Edge-Flag-Keys", validation_alias="FLAG_KEYS_HEADER")
    attributes_header: str = Field(default="X-Edge-Attributes", validation_alias="ATTRIBUTES_HEADER")
    event_tags_header: str = Field(default="X-Edge-Event-Tags", validation_alias="EVENT_TAGS_HEADER")
    event_key_header: str = Field(default="X-Edge-Event-Key", validation_alias="EVENT_KEY_HEADER")
    decide_options_header: str = Field(default="X-Edge-Decide-Options", validation_alias="DECIDE_OPTIONS_HEADER")
    override_visitor_id_header: str = Field(
        default="X-Edge-Override-Visitor-Id", validation_alias="OVERRIDE_VISITOR_ID_HEADER"
    )
    override_cache_header: str = Field(default="X-Edge-Override-Cache", validation_alias="OVERRIDE_CACHE_HEADER")
    decide_all_header: str = Field(default="X-Edge-Decide-All", validation_alias="DECIDE_ALL_HEADER")
    trimmed_decisions_header: str = Field(
        default="X-Edge-Trimmed-Decisions", validation_alias="TRIMMED_DECISIONS_HEADER"
    )
    flags_from_kv_header: str = Field(default="X-Edge-Flags-KV", validation_alias="FLAGS_FROM_KV_HEADER")
    datafile_from_kv_header: str = Field(default="X-Edge-Datafile-KV", validation_alias="DATAFILE_FROM_KV_HEADER")
    response_metadata_header: str = Field(
        default="X-Edge-Enable-Response-Metadata", validation_alias="RESPONSE_METADATA_HEADER"
    )
    set_request_headers_header: str = Field(
        default="X-Edge-Set-Request-Headers", validation_alias="SET_REQUEST_HEADERS_HEADER"
    )
    set_response_headers_header: str = Field(
        default="X-Edge-Set-Response-Headers", validation_alias="SET_RESPONSE_HEADERS_HEADER"
    )
    set_request_cookies_header: str = Field(
        default="X-Edge-Set-Request-Cookies", validation_alias="SET_REQUEST_COOKIES_HEADER"
    )
    set_response_cookies_header: str = Field(
        default="X-Edge-Set-Response-Cookies", validation_alias="SET_RESPONSE_COOKIES_HEADER"
    )
    worker_operation_header: str = Field(
        default="X-Edge-Worker-Operation", validation_alias="WORKER_OPERATION_HEADER"
    )
    worker_processed_header: str = Field(
        default="X-Edge-Worker-Processed", validation_alias="WORKER_PROCESSED_HEADER"
    )

    # Propagation (visitor id + serialized decisions)
    decisions_header_name: str = Field(default="edge-decisions", validation_alias="DECISIONS_HEADER_NAME")
    visitor_id_header_name: str = Field(default="edge-visitor-id", validation_alias="VISITOR_ID_HEADER_NAME")
    decisions_cookie_name: str = Field(default="edge_decisions", validation_alias="DECISIONS_COOKIE_NAME")
    visitor_id_cookie_name: str = Field(default="edge_visitor_id", validation_alias="VISITOR_ID_COOKIE_NAME")
    cookie_domain: str | None = Field(default=None, validation_alias="COOKIE_DOMAIN")
    cookie_max_age_days: int = Field(default=365, validation_alias="COOKIE_MAX_AGE_DAYS")
    cookie_same_site: str = Field(default="None", validation_alias="COOKIE_SAME_SITE")

    # Only for local experiment testing: match a decision by flag key without a URL match.
    routing_debug_flag_key: str | None = Field(default=None, validation_alias="ROUTING_DEBUG_FLAG_KEY")

    # Outbound HTTP
    # Scheme and host for forwarded requests that have no cdnResponseURL.
    origin_url: str | None = Field(default=None, validation_alias="ORIGIN_URL")
    fetch_timeout_seconds: float = Field(default=30.0, validation_alias="FETCH_TIMEOUT_SECONDS")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_to_file: bool = Field(default=False, validation_alias="LOG_TO_FILE")
    log_file_path: str = Field(
        default=os.path.join("logs", "edge_agent.log"),
        validation_alias="LOG_FILE_PATH",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
