from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv


def load_project_dotenv() -> bool:
    """
    Load `.env` from the project root into `os.environ`.

    `pydantic-settings` reads `.env` into Settings but does not populate `os.environ`,
    and the cache store selection (REDIS_URL / REQUIRE_REDIS) relies on `os.getenv`.

    This is a no-op in production where env vars are already injected by the runtime.
    """
    project_root = Path(__file__).resolve().parents[2]

    candidates = [
        project_root / ".env",
        project_root / "edge_agent" / ".env",
    ]

    loaded = False
    for p in candidates:
        if p.exists():
            loaded = bool(load_dotenv(p, override=False)) or loaded
    return loaded
