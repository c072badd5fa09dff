import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from autogrc.services.database import Database  # noqa: E402
from autogrc.services.queries import DataQueryService  # noqa: E402

FIXED_NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


def _populate(db: Database) -> None:
    with db.connect() as conn:
        conn.executemany(
            "INSERT INTO frameworks (id, name, is_master) VALUES (?, ?, ?)",
            [("fw-master", "NIST CSF", 1), ("fw-iso", "ISO 27001", 0), ("fw-soc", "SOC 2", 0)],
        )
        conn.executemany(
            "INSERT INTO controls (id, framework_id, control_code, control_statement, domain) VALUES (?, ?, ?, ?, ?)",
            [
                ("c1", "fw-master", "ID.AM-1", "Physical devices are inventoried", "Identify"),
                ("c2", "fw-master", "PR.AC-1", "Identities and credentials are managed", "Protect"),
                ("c3", "fw-master", "PR.DS-1", "Data at rest is protected", "Protect"),
                ("c4", "fw-master", "DE.CM-1", "The network is monitored", "Detect"),
                ("i1", "fw-iso", "A.5.1", "Information security policies", "Policy"),
                ("i2", "fw-iso", "A.9.2", "User access management", "Access"),
                ("s1", "fw-soc", "CC6.1", "Logical access security", "Access"),
            ],
        )
        conn.executemany(
            """
            INSERT INTO applications
              (id, name, service_management, criticality, service_owner, business_owner,
               lifecycle_status, cloud_provider)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                ("app-1", "MS Active Directory", "IT Ops", "C1", "Alice", "Bob", "Production", "Azure"),
                ("app-2", "Payroll Portal", "HR Systems", "C2", "Carol", "Dan", "Production", "AWS"),
                ("app-3", "Marketing Site", "Marketing", "C3", "Eve", "Frank", "Production", "GCP"),
            ],
        )
        conn.executemany(
            """
            INSERT INTO control_assessments (application_id, control_id, final_score, final_status, assessed_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                ("app-1", "c1", 90, "Compliant", "2025-06-10T09:00:00"),
                ("app-1", "c2", 40, "Non-Compliant", "2025-06-10T09:00:00"),
                ("app-1", "c3", 70, "Partially Compliant", "2025-06-10T09:00:00"),
                ("app-2", "c1", 85, "Compliant", "2025-06-12T09:00:00"),
                ("app-2", "c2", 95, "Compliant", "2025-06-12T09:00:00"),
                ("app-2", "c4", 88, "Compliant", "2025-06-12T09:00:00"),
                ("app-3", "c2", 30, "Non-Compliant", "2025-04-05T09:00:00"),
                ("app-3", "c4", 50, "Non-Compliant", "2025-04-05T09:00:00"),
                ("app-3", "i1", 10, "Non-Compliant", "2025-05-01T09:00:00"),
            ],
        )
        conn.execute(
            """
            INSERT INTO framework_map_runs (id, source_framework_id, target_framework_id, status, completed_at)
            VALUES ('run-1', 'fw-iso', 'fw-master', 'Completed', '2025-05-02T00:00:00')
            """
        )
        conn.executemany(
            "INSERT INTO framework_maps (map_run_id, source_control_id, target_control_id, status) VALUES (?, ?, ?, ?)",
            [("run-1", "i1", "c1", "Full Overlap"), ("run-1", "i2", "c2", "Partial Overlap")],
        )
        conn.executemany(
            """
            INSERT INTO integrations (id, type, display_name, status, schema_initialized, last_sync_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                ("int-1", "identity", "Entra ID", "Active", 1, "2025-06-14T00:00:00"),
                ("int-2", "edr", "CrowdStrike", "Disabled", 1, None),
                ("int-3", "siem", "Splunk", "Disabled", 0, None),
            ],
        )
        conn.executemany(
            "INSERT INTO integration_runs (integration_id, status, started_at) VALUES (?, ?, ?)",
            [
                ("int-2", "Success", "2025-05-01T00:00:00"),
                ("int-2", "Success", "2025-05-02T00:00:00"),
                ("int-2", "Failed", "2025-05-03T00:00:00"),
                ("int-3", "Success", "2025-05-01T00:00:00"),
            ],
        )
        conn.execute(
            "INSERT INTO automations (id, name, control_id, source_integrations) VALUES (?, ?, ?, ?)",
            ("auto-1", "Access review evidence", "c2", json.dumps(["int-3"])),
        )


@pytest.fixture
def database(tmp_path: Path) -> Database:
    """SQLite database with a small, fully known compliance dataset."""
    db = Database(tmp_path / "test.db")
    db.initialize(seed=False)
    _populate(db)
    return db


@pytest.fixture
def empty_database(tmp_path: Path) -> Database:
    """SQLite database with the schema but no rows."""
    db = Database(tmp_path / "empty.db")
    db.initialize(seed=False)
    return db


@pytest.fixture
def queries(database: Database) -> DataQueryService:
    """Query service over the known dataset with a fixed clock."""
    return DataQueryService(database, clock=lambda: FIXED_NOW)
