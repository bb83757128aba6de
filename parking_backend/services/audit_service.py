"""Append-only audit trail backed by the repository `logs` table."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from parking_backend.domain.models import AuditEntry
from parking_backend.repository.data_repository import DataRepository
from parking_backend.utils.config import Settings, get_settings


class AuditValidationError(Exception):
    """Raised when an audit listing request is out of bounds."""


class RepositoryAuditLogger:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock

    def record(self, actor_id: int, action: str) -> None:
        self._repository.append_audit_entry(
            actor_id=actor_id,
            action=action,
            timestamp=self._clock(),
        )

    def recent(self, limit: Optional[int] = None) -> list[AuditEntry]:
        resolved = limit if limit is not None else self._settings.audit_log_default_limit
        if not 1 <= resolved <= self._settings.audit_log_max_limit:
            raise AuditValidationError(
                f"limit must be between 1 and {self._settings.audit_log_max_limit}"
            )
        return self._repository.list_audit_entries(resolved)

    def total(self) -> int:
        return self._repository.count_audit_entries()
