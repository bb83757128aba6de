#!/usr/bin/env python3
"""Validate local parking allocation API environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from parking_backend.repository.data_repository import DataRepository
from parking_backend.services.allocation_service import AllocationEngine
from parking_backend.services.audit_service import RepositoryAuditLogger
from parking_backend.services.notification_service import LoggingNotificationGateway
from parking_backend.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="parking-env-")

    # CHECK 1: Python version >= 3.10
    if sys.version_info >= (3, 10):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.10",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2: Required packages importable
    package_specs = ["fastapi", "uvicorn", "pydantic", "httpx", "pytest"]
    import_errors: list[str] = []
    for module_name in package_specs:
        try:
            importlib.import_module(module_name)
        except ImportError as exc:
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        validation_settings = replace(
            get_settings(),
            database_path=Path(temp_dir) / "parking_validation.db",
        )
        repository = DataRepository(validation_settings)

        # CHECK 3: Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except RuntimeError as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4: Demo data seeding
        seeded = 0
        try:
            seeded = repository.seed_demo_data()
            if seeded == 0:
                raise RuntimeError("no demo requests were seeded")
            ok, line = _print_result("Demo seeding", True, f": {seeded} pending requests")
        except RuntimeError as exc:
            ok, line = _print_result("Demo seeding", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5: Approval of the first demo request
        try:
            engine = AllocationEngine(
                store=repository,
                notifier=LoggingNotificationGateway(),
                audit_logger=RepositoryAuditLogger(repository, validation_settings),
                settings=validation_settings,
            )
            pending = [request for request in repository.list_requests() if not request.status.is_terminal]
            if not pending:
                raise RuntimeError("no pending request to approve")
            outcome = engine.approve(pending[0].request_id, validation_settings.admin_user_id)
            ok, line = _print_result(
                "Approval round-trip",
                True,
                f": slot {outcome.slot.slot_number} email {outcome.email_status.value}",
            )
        except Exception as exc:
            ok, line = _print_result("Approval round-trip", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Parking API Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
