import os
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


CLICKZETTA_SERVICE: Optional[str] = os.getenv("CLICKZETTA_SERVICE")
CLICKZETTA_INSTANCE: Optional[str] = os.getenv("CLICKZETTA_INSTANCE")
CLICKZETTA_WORKSPACE: Optional[str] = os.getenv("CLICKZETTA_WORKSPACE")
CLICKZETTA_SCHEMA: Optional[str] = os.getenv("CLICKZETTA_SCHEMA")
CLICKZETTA_USERNAME: Optional[str] = os.getenv("CLICKZETTA_USERNAME")
CLICKZETTA_PASSWORD: Optional[str] = os.getenv("CLICKZETTA_PASSWORD")
CLICKZETTA_VCLUSTER: str = os.getenv("CLICKZETTA_VCLUSTER") or "default_ap"

CLICKZETTA_HINTS: Dict[str, str] = {
    "sdk.job.timeout": os.getenv("CLICKZETTA_JOB_TIMEOUT") or "300",
    "query_tag": "referential-integrity-checker",
}

INTEGRITY_DIMENSION_PREFIX: str = os.getenv("INTEGRITY_DIMENSION_PREFIX") or "dim"
INTEGRITY_FACT_PREFIX: str = os.getenv("INTEGRITY_FACT_PREFIX") or "fact"
INTEGRITY_MAX_WORKERS: int = _get_int("INTEGRITY_MAX_WORKERS", 1)
INTEGRITY_USE_DATABASE_CLOCK: bool = _get_bool("INTEGRITY_USE_DATABASE_CLOCK", True)


def build_base_connection_config() -> Dict[str, object]:
    """Connection settings read from the environment, hints included."""
    return {
        "service": CLICKZETTA_SERVICE or "",
        "instance": CLICKZETTA_INSTANCE or "",
        "workspace": CLICKZETTA_WORKSPACE or "",
        "schema": CLICKZETTA_SCHEMA or "",
        "username": CLICKZETTA_USERNAME or "",
        "password": CLICKZETTA_PASSWORD or "",
        "vcluster": CLICKZETTA_VCLUSTER,
        "hints": CLICKZETTA_HINTS.copy(),
    }
