from __future__ import annotations

# Ensure local `.env` is loaded early for components that rely on `os.getenv`
# (REDIS_URL / REQUIRE_REDIS for the KV store and edge cache).
try:
    from edge_agent.utils.env import load_project_dotenv

    load_project_dotenv()
except Exception:
    # Never hard-fail import for optional dev convenience.
    pass
