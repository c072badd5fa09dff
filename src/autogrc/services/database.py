import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS frameworks (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      is_master INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS controls (
      id TEXT PRIMARY KEY,
      framework_id TEXT NOT NULL,
      control_code TEXT NOT NULL,
      control_statement TEXT NOT NULL,
      domain TEXT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS applications (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      service_management TEXT NULL,
      criticality TEXT NULL,
      service_owner TEXT NULL,
      business_owner TEXT NULL,
      lifecycle_status TEXT NULL,
      cloud_provider TEXT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS control_assessments (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      application_id TEXT NOT NULL,
      control_id TEXT NOT NULL,
      final_score REAL NOT NULL,
      final_status TEXT NULL,
      assessed_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS framework_map_runs (
      id TEXT PRIMARY KEY,
      source_framework_id TEXT NOT NULL,
      target_framework_id TEXT NOT NULL,
      status TEXT NOT NULL,
      completed_at TEXT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS framework_maps (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      map_run_id TEXT NOT NULL,
      source_control_id TEXT NOT NULL,
      target_control_id TEXT NULL,
      status TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS integrations (
      id TEXT PRIMARY KEY,
      type TEXT NOT NULL,
      display_name TEXT NOT NULL,
      status TEXT NOT NULL,
      schema_initialized INTEGER NOT NULL DEFAULT 0,
      last_sync_at TEXT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS integration_runs (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      integration_id TEXT NOT NULL,
      status TEXT NOT NULL,
      started_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS automations (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      control_id TEXT NOT NULL,
      source_integrations TEXT NULL
    )
    """,
)


class Database:
    """SQLite access for the compliance datastore.

    Every unit of work opens its own connection, so the object can be shared
    between the event loop and worker threads.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _get_conn(self) -> sqlite3.Connection:
        """Create a new SQLite connection."""
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection; commit on success, roll back on error, always close."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self, seed: bool = False) -> None:
        """Create tables if needed and insert demo data when the store is empty."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            cur = conn.cursor()
            for statement in SCHEMA:
                cur.execute(statement)
            if seed:
                cur.execute("SELECT COUNT(*) FROM frameworks")
                row = cur.fetchone()
                if (row[0] if row else 0) == 0:
                    _insert_demo_data(cur)
                    logger.info("Seeded demo compliance data into %s", self._path)


def _insert_demo_data(cur: sqlite3.Cursor) -> None:
    """Insert a small but realistic compliance portfolio."""
    cur.executemany(
        "INSERT INTO frameworks (id, name, is_master) VALUES (?, ?, ?)",
        [
            ("fw-nist", "NIST CSF 2.0", 1),
            ("fw-iso", "ISO 27001:2022", 0),
            ("fw-soc2", "SOC 2 Type II", 0),
        ],
    )

    master_controls = [
        ("ctl-id-am-1", "ID.AM-1", "Inventories of hardware managed by the organization are maintained", "Identify"),
        ("ctl-id-ra-1", "ID.RA-1", "Vulnerabilities in assets are identified, validated, and recorded", "Identify"),
        ("ctl-pr-aa-1", "PR.AA-1", "Identities and credentials for authorized users are managed", "Protect"),
        ("ctl-pr-aa-5", "PR.AA-5", "Access permissions are defined, managed, and enforced", "Protect"),
        ("ctl-pr-ds-1", "PR.DS-1", "The confidentiality of data-at-rest is protected", "Protect"),
        ("ctl-pr-ps-2", "PR.PS-2", "Software is maintained, replaced, and removed commensurate with risk", "Protect"),
        ("ctl-de-cm-1", "DE.CM-1", "Networks and network services are monitored", "Detect"),
        ("ctl-de-ae-2", "DE.AE-2", "Potentially adverse events are analyzed", "Detect"),
        ("ctl-rs-ma-1", "RS.MA-1", "The incident response plan is executed", "Respond"),
        ("ctl-rc-rp-1", "RC.RP-1", "The recovery portion of the incident response plan is executed", "Recover"),
    ]
    cur.executemany(
        """
        INSERT INTO controls (id, framework_id, control_code, control_statement, domain)
        VALUES (?, 'fw-nist', ?, ?, ?)
        """,
        master_controls,
    )
    cur.executemany(
        """
        INSERT INTO controls (id, framework_id, control_code, control_statement, domain)
        VALUES (?, ?, ?, ?, ?)
        """,
        [
            ("ctl-iso-5-15", "fw-iso", "A.5.15", "Access control", "Protect"),
            ("ctl-iso-5-9", "fw-iso", "A.5.9", "Inventory of information and other associated assets", "Identify"),
            ("ctl-iso-8-16", "fw-iso", "A.8.16", "Monitoring activities", "Detect"),
            ("ctl-iso-8-24", "fw-iso", "A.8.24", "Use of cryptography", "Protect"),
            ("ctl-soc2-cc6-1", "fw-soc2", "CC6.1", "Logical access security software and infrastructure", "Protect"),
            ("ctl-soc2-cc7-2", "fw-soc2", "CC7.2", "System components are monitored for anomalies", "Detect"),
        ],
    )

    cur.executemany(
        """
        INSERT INTO applications
          (id, name, service_management, criticality, service_owner,
           business_owner, lifecycle_status, cloud_provider)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            ("app-ad", "MS Active Directory", "IT Operations", "C1", "Nora Ellis", "Tom Becker", "Production", "Azure"),
            ("app-payroll", "Payroll Portal", "HR Systems", "C1", "Ivy Moreno", "Grace Hall", "Production", "AWS"),
            ("app-crm", "Customer CRM", "Sales Platforms", "C2", "Leo Grant", "Mia Patel", "Production", "AWS"),
            ("app-wiki", "Engineering Wiki", "Developer Tools", "C3", "Sam Ortiz", "Ava Chen", "Production", "GCP"),
            ("app-site", "Marketing Website", "Digital", "C3", "Zoe Turner", "Eli Brooks", "Production", "Vercel"),
            ("app-legacy", "Legacy Billing", "Finance Systems", "C2", "Max Reed", "Ruth Diaz", "Sunsetting", "On-prem"),
        ],
    )

    # (application, control, score, assessed_at)
    assessments = [
        ("app-ad", "ctl-id-am-1", 92, "2025-01-14"),
        ("app-ad", "ctl-pr-aa-1", 45, "2025-03-02"),
        ("app-ad", "ctl-pr-aa-5", 38, "2025-03-02"),
        ("app-ad", "ctl-pr-ds-1", 74, "2025-04-21"),
        ("app-ad", "ctl-de-cm-1", 81, "2025-05-09"),
        ("app-ad", "ctl-rs-ma-1", 66, "2025-05-30"),
        ("app-payroll", "ctl-id-am-1", 88, "2025-02-11"),
        ("app-payroll", "ctl-pr-aa-1", 91, "2025-02-11"),
        ("app-payroll", "ctl-pr-ds-1", 95, "2025-04-03"),
        ("app-payroll", "ctl-de-ae-2", 79, "2025-05-17"),
        ("app-payroll", "ctl-rc-rp-1", 84, "2025-06-01"),
        ("app-crm", "ctl-id-ra-1", 61, "2025-01-28"),
        ("app-crm", "ctl-pr-aa-5", 52, "2025-03-19"),
        ("app-crm", "ctl-pr-ps-2", 47, "2025-03-19"),
        ("app-crm", "ctl-de-cm-1", 70, "2025-06-06"),
        ("app-wiki", "ctl-pr-aa-1", 83, "2025-02-25"),
        ("app-wiki", "ctl-pr-ps-2", 58, "2025-04-15"),
        ("app-wiki", "ctl-de-ae-2", 42, "2025-05-22"),
        ("app-site", "ctl-pr-ds-1", 35, "2025-03-08"),
        ("app-site", "ctl-pr-ps-2", 29, "2025-04-30"),
        ("app-site", "ctl-rs-ma-1", 50, "2025-06-10"),
        ("app-ad", "ctl-iso-5-15", 62, "2025-04-21"),
        ("app-payroll", "ctl-soc2-cc6-1", 90, "2025-05-17"),
    ]
    cur.executemany(
        """
        INSERT INTO control_assessments
          (application_id, control_id, final_score, final_status, assessed_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        [
            (app, ctl, score, _status_label(score), assessed_at)
            for app, ctl, score, assessed_at in assessments
        ],
    )

    cur.executemany(
        """
        INSERT INTO framework_map_runs
          (id, source_framework_id, target_framework_id, status, completed_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        [
            ("run-iso-1", "fw-iso", "fw-nist", "Completed", "2025-05-02 10:00:00"),
            ("run-soc2-1", "fw-nist", "fw-soc2", "Failed", None),
        ],
    )
    cur.executemany(
        """
        INSERT INTO framework_maps (map_run_id, source_control_id, target_control_id, status)
        VALUES ('run-iso-1', ?, ?, ?)
        """,
        [
            ("ctl-iso-5-15", "ctl-pr-aa-5", "Full Overlap"),
            ("ctl-iso-5-9", "ctl-id-am-1", "Full Overlap"),
            ("ctl-iso-8-16", "ctl-de-cm-1", "Partial Overlap"),
            ("ctl-iso-8-24", None, "No Overlap"),
        ],
    )

    cur.executemany(
        """
        INSERT INTO integrations
          (id, type, display_name, status, schema_initialized, last_sync_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        [
            ("int-entra", "entra_id", "Microsoft Entra ID", "Active", 1, "2025-06-10 04:00:00"),
            ("int-crowdstrike", "crowdstrike", "CrowdStrike Falcon", "Disabled", 1, "2025-04-02 04:00:00"),
            ("int-splunk", "splunk", "Splunk SIEM", "Disabled", 0, None),
            ("int-qualys", "qualys", "Qualys VMDR", "Active", 1, "2025-06-09 22:00:00"),
            ("int-jira", "jira", "Jira Service Management", "Error", 1, "2025-05-28 12:00:00"),
        ],
    )
    cur.executemany(
        "INSERT INTO integration_runs (integration_id, status, started_at) VALUES (?, ?, ?)",
        [
            ("int-entra", "Success", "2025-06-09 04:00:00"),
            ("int-entra", "Success", "2025-06-10 04:00:00"),
            ("int-crowdstrike", "Success", "2025-04-01 04:00:00"),
            ("int-crowdstrike", "Success", "2025-04-02 04:00:00"),
            ("int-crowdstrike", "Failed", "2025-04-03 04:00:00"),
            ("int-qualys", "Success", "2025-06-09 22:00:00"),
            ("int-jira", "Failed", "2025-05-29 12:00:00"),
        ],
    )
    cur.executemany(
        "INSERT INTO automations (id, name, control_id, source_integrations) VALUES (?, ?, ?, ?)",
        [
            ("auto-access-review", "Quarterly access review", "ctl-pr-aa-5", json.dumps(["int-entra", "int-splunk"])),
            ("auto-edr-coverage", "EDR coverage check", "ctl-de-cm-1", json.dumps(["int-crowdstrike"])),
            ("auto-vuln-scan", "Vulnerability scan evidence", "ctl-id-ra-1", json.dumps(["int-qualys"])),
        ],
    )


def _status_label(score: float) -> str:
    if score >= 80:
        return "Compliant"
    if score > 50:
        return "Partially Compliant"
    return "Non-Compliant"
