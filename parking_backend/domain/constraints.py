"""Domain-level validation rules for allocation settings and inputs."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class AllocationConfig:
    max_claim_attempts: int
    busy_timeout_seconds: float


def validate_allocation_config(config: AllocationConfig) -> None:
    if config.max_claim_attempts <= 0:
        raise ValueError("max_claim_attempts must be > 0")
    if config.busy_timeout_seconds <= 0:
        raise ValueError("busy_timeout_seconds must be > 0")


def normalize_reason(reason: str | None) -> str | None:
    """Return the trimmed rejection reason, or None when it carries no text."""
    if reason is None:
        return None
    stripped = reason.strip()
    return stripped or None


# largest rowid SQLite can bind
MAX_RECORD_ID = 2**63 - 1
