"""Named, parameterized read queries over the compliance datastore.

Every query returns either a list of rows or a single object with a fixed
shape (one ``TypedDict`` per query). Failures that the model can act on are
raised as :class:`~autogrc.errors.QueryError`; ``sqlite3.Error`` propagates so
the dispatcher can report it as a database error.
"""

import json
import logging
import math
import sqlite3
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, localcontext
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, TypedDict, Union

from ..errors import ErrorKind, QueryError
from .database import Database

logger = logging.getLogger(__name__)


class QueryType(str, Enum):
    OVERVIEW_KPIS = "overview_kpis"
    APPLICATIONS_OVERVIEW = "applications_overview"
    FRAMEWORKS_OVERVIEW = "frameworks_overview"
    SECURITY_DOMAINS = "security_domains"
    COMPLIANCE_TRENDS = "compliance_trends"
    CONTROLS_BY_DOMAIN = "controls_by_domain"
    FAILING_CONTROLS = "failing_controls"
    LEAST_COMPLIANT_CONTROLS = "least_compliant_controls"
    APP_CONTROLS = "app_controls"
    APP_DETAILS = "app_details"
    INTEGRATIONS_CATALOG = "integrations_catalog"
    CONTROL_INTEGRATION_RECOMMENDATIONS = "control_integration_recommendations"


FAILING_THRESHOLD = 50
COMPLIANT_THRESHOLD = 80


class OverviewKpis(TypedDict):
    masterFramework: str
    totalMasterControls: int
    failingMasterControls: int
    totalApplications: int
    applicationsCovered: int
    criticalApplicationsAtRisk: int
    averageComplianceScore: int


class ApplicationOverviewRow(TypedDict):
    id: str
    name: str
    serviceManagement: Optional[str]
    criticality: Optional[str]
    avgScore: int
    nonCompliances: int
    lastAssessedAt: Optional[str]
    status: str


class FrameworkOverviewRow(TypedDict):
    id: str
    name: str
    isMaster: bool
    totalControls: int
    mappedControls: int
    mappingPercent: int


class SecurityDomainRow(TypedDict):
    domain: str
    controls: int
    avgCompliance: float


class TrendPoint(TypedDict):
    month: str
    score: int


class DomainControlRow(TypedDict):
    controlCode: str
    controlStatement: str
    compliantApps: int
    nonCompliantApps: int
    avgScore: float


class FailingControlRow(TypedDict):
    controlCode: str
    domain: Optional[str]
    avgScore: float
    nonCompliantApps: int


class PortfolioControlRow(TypedDict):
    scope: str
    controlId: str
    controlCode: str
    controlStatement: str
    domain: Optional[str]
    avgScore: float
    nonCompliantApps: int
    assessedApps: int


class ApplicationControlRow(TypedDict):
    scope: str
    applicationId: str
    applicationName: str
    controlId: str
    controlCode: str
    controlStatement: str
    domain: Optional[str]
    avgScore: float
    assessedRows: int


class ControlScore(TypedDict):
    controlCode: str
    controlStatement: str
    domain: Optional[str]
    score: float
    status: Optional[str]


class AppControls(TypedDict):
    applicationName: str
    applicationId: str
    totalAssessed: int
    failingCount: int
    warningCount: int
    passingCount: int
    failingControls: List[ControlScore]
    warningControls: List[ControlScore]
    passingControls: List[ControlScore]


class AppDetails(TypedDict):
    id: str
    name: str
    serviceManagement: Optional[str]
    criticality: Optional[str]
    serviceOwner: Optional[str]
    businessOwner: Optional[str]
    lifecycleStatus: Optional[str]
    cloudProvider: Optional[str]
    avgScore: float
    nonCompliances: int
    totalAssessed: int
    complianceStatus: str


class IntegrationRow(TypedDict):
    id: str
    type: str
    displayName: str
    status: str
    schemaInitialized: bool
    lastSyncAt: Optional[str]
    successfulRuns: int


class RecommendedIntegration(IntegrationRow):
    selectedInAutomations: bool


class ControlRef(TypedDict):
    id: str
    controlCode: str
    controlStatement: str
    domain: Optional[str]


class IntegrationRecommendations(TypedDict):
    control: ControlRef
    scope: Dict[str, str]
    recommendedToActivate: List[Dict[str, Any]]
    activeIntegrations: List[RecommendedIntegration]
    inactiveIntegrations: List[RecommendedIntegration]


class IntegrationStatusChange(TypedDict):
    changed: bool
    action: str
    integration: Dict[str, Any]
    message: str


QueryResult = Union[
    OverviewKpis,
    AppControls,
    AppDetails,
    IntegrationRecommendations,
    List[ApplicationOverviewRow],
    List[FrameworkOverviewRow],
    List[SecurityDomainRow],
    List[TrendPoint],
    List[DomainControlRow],
    List[FailingControlRow],
    List[PortfolioControlRow],
    List[ApplicationControlRow],
    List[IntegrationRow],
]


def round_half_up(value: Optional[float], ndigits: int = 0) -> Union[int, float]:
    """Round halves away from zero (66.5 -> 67), unlike the built-in round()."""
    if value is None:
        return 0 if ndigits == 0 else 0.0
    if not math.isfinite(value):
        return float(value)
    quantum = Decimal(1).scaleb(-ndigits)
    with localcontext() as ctx:
        # wide enough for any finite float at the requested places
        ctx.prec = 330 + ndigits
        rounded = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    return int(rounded) if ndigits == 0 else float(rounded)


def compliance_status(score: float) -> str:
    """Bucket a compliance score: >=80 Compliant, >=50 Warning, else Critical."""
    if score >= COMPLIANT_THRESHOLD:
        return "Compliant"
    if score >= FAILING_THRESHOLD:
        return "Warning"
    return "Critical"


def _param(params: Mapping[str, Any], key: str) -> str:
    value = params.get(key)
    if value is None:
        return ""
    return str(value).strip()


def _limit(params: Mapping[str, Any], default: int, lower: int, upper: int) -> int:
    raw = params.get("limit", default)
    try:
        value = int(float(raw))
    except (TypeError, ValueError, OverflowError):
        return default
    return max(lower, min(upper, value))


def _like(term: str) -> str:
    return f"%{term.lower()}%"


def _not_found(term: str, hint: str = "") -> QueryError:
    message = f'No application found matching "{term}".'
    if hint:
        message = f"{message} {hint}"
    return QueryError(ErrorKind.NO_DATA, message)


class DataQueryService:
    """Catalog of named compliance queries backed by SQLite."""

    def __init__(
        self,
        database: Database,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._db = database
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handlers: Dict[QueryType, Callable[..., QueryResult]] = {
            QueryType.OVERVIEW_KPIS: self._overview_kpis,
            QueryType.APPLICATIONS_OVERVIEW: self._applications_overview,
            QueryType.FRAMEWORKS_OVERVIEW: self._frameworks_overview,
            QueryType.SECURITY_DOMAINS: self._security_domains,
            QueryType.COMPLIANCE_TRENDS: self._compliance_trends,
            QueryType.CONTROLS_BY_DOMAIN: self._controls_by_domain,
            QueryType.FAILING_CONTROLS: self._failing_controls,
            QueryType.LEAST_COMPLIANT_CONTROLS: self._least_compliant_controls,
            QueryType.APP_CONTROLS: self._app_controls,
            QueryType.APP_DETAILS: self._app_details,
            QueryType.INTEGRATIONS_CATALOG: self._integrations_catalog,
            QueryType.CONTROL_INTEGRATION_RECOMMENDATIONS: self._control_integration_recommendations,
        }

    def run(self, query_type: Any, params: Optional[Mapping[str, Any]] = None) -> QueryResult:
        """Execute one named query.

        Args:
            query_type: One of the QueryType values.
            params: Optional filters (domain, applicationName, applicationId,
                controlCode, controlId, limit).

        Returns:
            A row list or a single result object, depending on the query.

        Raises:
            QueryError: missing/unknown query type, missing parameters, or
                nothing found.
            sqlite3.Error: the datastore failed.
        """
        if not query_type:
            raise QueryError(ErrorKind.MISSING_PARAMS, "Provide queryType.")
        try:
            qt = QueryType(query_type)
        except ValueError:
            raise QueryError(
                ErrorKind.UNKNOWN_QUERY, f'Unknown queryType: "{query_type}"'
            ) from None

        if params is not None and not isinstance(params, Mapping):
            params = {}
        params = params or {}
        logger.debug("Running query %s params=%s", qt.value, dict(params))

        with self._db.connect() as conn:
            master = self._master_framework(conn)
            return self._handlers[qt](conn, master, params)

    @staticmethod
    def _master_framework(conn: sqlite3.Connection) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT id, name FROM frameworks WHERE is_master = 1 ORDER BY id LIMIT 1"
        ).fetchone()

    @staticmethod
    def _require_master(master: Optional[sqlite3.Row]) -> str:
        if master is None:
            raise QueryError(ErrorKind.NO_DATA, "No master framework configured")
        return master["id"]

    @staticmethod
    def _find_applications(
        conn: sqlite3.Connection, app_id: str, app_name: str
    ) -> List[sqlite3.Row]:
        """Exact id match, else case-insensitive partial name match (max 5)."""
        if app_id:
            return conn.execute(
                "SELECT id, name FROM applications WHERE id = ? LIMIT 5", (app_id,)
            ).fetchall()
        return conn.execute(
            "SELECT id, name FROM applications WHERE LOWER(name) LIKE ? ORDER BY name LIMIT 5",
            (_like(app_name),),
        ).fetchall()

    def _resolve_application(
        self, conn: sqlite3.Connection, params: Mapping[str, Any], hint: str = ""
    ) -> Optional[sqlite3.Row]:
        app_name = _param(params, "applicationName")
        app_id = _param(params, "applicationId")
        if not app_name and not app_id:
            return None
        rows = self._find_applications(conn, app_id, app_name)
        if not rows:
            raise _not_found(app_name or app_id, hint)
        return rows[0]

    @staticmethod
    def _integration_rows(conn: sqlite3.Connection) -> List[IntegrationRow]:
        rows = conn.execute(
            """
            SELECT
              i.id,
              i.type,
              i.display_name AS displayName,
              i.status,
              i.schema_initialized AS schemaInitialized,
              i.last_sync_at AS lastSyncAt,
              (
                SELECT COUNT(*)
                FROM integration_runs ir
                WHERE ir.integration_id = i.id AND ir.status = 'Success'
              ) AS successfulRuns
            FROM integrations i
            ORDER BY i.display_name
            """
        ).fetchall()
        return [
            IntegrationRow(
                id=r["id"],
                type=r["type"],
                displayName=r["displayName"],
                status=r["status"],
                schemaInitialized=bool(r["schemaInitialized"]),
                lastSyncAt=r["lastSyncAt"],
                successfulRuns=int(r["successfulRuns"] or 0),
            )
            for r in rows
        ]

    def _overview_kpis(self, conn, master, params) -> OverviewKpis:
        master_id = self._require_master(master)

        def scalar(sql: str, args: tuple = ()) -> Any:
            row = conn.execute(sql, args).fetchone()
            return row[0] if row else None

        total = scalar("SELECT COUNT(*) FROM controls WHERE framework_id = ?", (master_id,))
        failing = scalar(
            """
            SELECT COUNT(DISTINCT ca.control_id)
            FROM control_assessments ca
            JOIN controls c ON c.id = ca.control_id
            WHERE c.framework_id = ? AND ca.final_score <= ?
            """,
            (master_id, FAILING_THRESHOLD),
        )
        apps = scalar("SELECT COUNT(*) FROM applications")
        covered = scalar("SELECT COUNT(DISTINCT application_id) FROM control_assessments")
        critical = scalar(
            """
            WITH app_scores AS (
              SELECT ca.application_id, AVG(ca.final_score) AS avg_score
              FROM control_assessments ca
              JOIN applications a ON a.id = ca.application_id
              JOIN controls c ON c.id = ca.control_id
              WHERE c.framework_id = ? AND a.criticality IN ('C1', 'C2')
              GROUP BY ca.application_id
            )
            SELECT COUNT(*) FROM app_scores WHERE avg_score < 70
            """,
            (master_id,),
        )
        avg_score = scalar(
            """
            WITH app_scores AS (
              SELECT ca.application_id, AVG(ca.final_score) AS avg_score
              FROM control_assessments ca
              JOIN controls c ON c.id = ca.control_id
              WHERE c.framework_id = ?
              GROUP BY ca.application_id
            )
            SELECT COALESCE(AVG(avg_score), 0) FROM app_scores
            """,
            (master_id,),
        )

        return OverviewKpis(
            masterFramework=master["name"],
            totalMasterControls=int(total or 0),
            failingMasterControls=int(failing or 0),
            totalApplications=int(apps or 0),
            applicationsCovered=int(covered or 0),
            criticalApplicationsAtRisk=int(critical or 0),
            averageComplianceScore=round_half_up(avg_score),
        )

    def _applications_overview(self, conn, master, params) -> List[ApplicationOverviewRow]:
        master_id = self._require_master(master)
        rows = conn.execute(
            """
            SELECT
              a.id,
              a.name,
              a.service_management AS serviceManagement,
              a.criticality,
              AVG(CASE WHEN c.framework_id = :master THEN ca.final_score END) AS avgScore,
              COUNT(DISTINCT CASE
                WHEN c.framework_id = :master AND ca.final_score <= :failing
                THEN ca.control_id END) AS nonCompliances,
              MAX(ca.assessed_at) AS lastAssessedAt
            FROM applications a
            LEFT JOIN control_assessments ca ON ca.application_id = a.id
            LEFT JOIN controls c ON c.id = ca.control_id
            GROUP BY a.id, a.name, a.service_management, a.criticality
            ORDER BY COALESCE(avgScore, 0) ASC, a.name
            """,
            {"master": master_id, "failing": FAILING_THRESHOLD},
        ).fetchall()

        result: List[ApplicationOverviewRow] = []
        for r in rows:
            score = round_half_up(r["avgScore"], 1)
            result.append(
                ApplicationOverviewRow(
                    id=r["id"],
                    name=r["name"],
                    serviceManagement=r["serviceManagement"],
                    criticality=r["criticality"],
                    avgScore=round_half_up(score),
                    nonCompliances=int(r["nonCompliances"] or 0),
                    lastAssessedAt=r["lastAssessedAt"],
                    status=compliance_status(score),
                )
            )
        return result

    def _frameworks_overview(self, conn, master, params) -> List[FrameworkOverviewRow]:
        master_id = master["id"] if master is not None else None
        frameworks = conn.execute(
            """
            SELECT f.id, f.name, f.is_master, COUNT(c.id) AS total_controls
            FROM frameworks f
            LEFT JOIN controls c ON c.framework_id = f.id
            GROUP BY f.id, f.name, f.is_master
            ORDER BY f.is_master DESC, f.name
            """
        ).fetchall()

        result: List[FrameworkOverviewRow] = []
        for fw in frameworks:
            total = int(fw["total_controls"] or 0)
            if fw["is_master"] or master_id is None:
                result.append(
                    FrameworkOverviewRow(
                        id=fw["id"], name=fw["name"], isMaster=True,
                        totalControls=total, mappedControls=total, mappingPercent=100,
                    )
                )
                continue

            run = conn.execute(
                """
                SELECT id FROM framework_map_runs
                WHERE status = 'Completed'
                  AND ((source_framework_id = :fw AND target_framework_id = :master)
                    OR (source_framework_id = :master AND target_framework_id = :fw))
                ORDER BY completed_at DESC
                LIMIT 1
                """,
                {"fw": fw["id"], "master": master_id},
            ).fetchone()
            if run is None:
                result.append(
                    FrameworkOverviewRow(
                        id=fw["id"], name=fw["name"], isMaster=False,
                        totalControls=total, mappedControls=0, mappingPercent=0,
                    )
                )
                continue

            overlap = conn.execute(
                """
                SELECT
                  SUM(CASE WHEN status = 'Full Overlap' THEN 1 ELSE 0 END) AS full,
                  SUM(CASE WHEN status = 'Partial Overlap' THEN 1 ELSE 0 END) AS partial
                FROM framework_maps WHERE map_run_id = ?
                """,
                (run["id"],),
            ).fetchone()
            full = int(overlap["full"] or 0)
            partial = int(overlap["partial"] or 0)
            percent = round_half_up((full + partial * 0.5) / total * 100) if total > 0 else 0
            result.append(
                FrameworkOverviewRow(
                    id=fw["id"], name=fw["name"], isMaster=False,
                    totalControls=total, mappedControls=full + partial, mappingPercent=percent,
                )
            )
        return result

    def _security_domains(self, conn, master, params) -> List[SecurityDomainRow]:
        master_id = self._require_master(master)
        rows = conn.execute(
            """
            SELECT
              COALESCE(c.domain, 'Other') AS domain,
              COUNT(DISTINCT c.id) AS controls,
              AVG(ca.final_score) AS avg_compliance
            FROM controls c
            LEFT JOIN control_assessments ca ON ca.control_id = c.id
            WHERE c.framework_id = ?
            GROUP BY COALESCE(c.domain, 'Other')
            """,
            (master_id,),
        ).fetchall()
        domains = [
            SecurityDomainRow(
                domain=r["domain"],
                controls=int(r["controls"] or 0),
                avgCompliance=round_half_up(r["avg_compliance"], 1),
            )
            for r in rows
        ]
        domains.sort(key=lambda d: (-d["avgCompliance"], d["domain"]))
        return domains

    def _compliance_trends(self, conn, master, params) -> List[TrendPoint]:
        master_id = self._require_master(master)
        overall = conn.execute(
            """
            SELECT AVG(ca.final_score)
            FROM control_assessments ca
            JOIN controls c ON c.id = ca.control_id
            WHERE c.framework_id = ?
            """,
            (master_id,),
        ).fetchone()[0]
        monthly = {
            r["ym"]: r["avg_score"]
            for r in conn.execute(
                """
                SELECT substr(ca.assessed_at, 1, 7) AS ym, AVG(ca.final_score) AS avg_score
                FROM control_assessments ca
                JOIN controls c ON c.id = ca.control_id
                WHERE c.framework_id = ?
                GROUP BY substr(ca.assessed_at, 1, 7)
                """,
                (master_id,),
            ).fetchall()
        }

        now = self._clock()
        score = round_half_up(round_half_up(overall, 1))
        points: List[TrendPoint] = []
        for offset in range(5, -1, -1):
            year, month = now.year, now.month - offset
            while month < 1:
                month += 12
                year -= 1
            key = f"{year:04d}-{month:02d}"
            if key in monthly:
                score = round_half_up(round_half_up(monthly[key], 1))
            label = datetime(year, month, 1).strftime("%b %y")
            points.append(TrendPoint(month=label, score=score))
        return points

    def _controls_by_domain(self, conn, master, params) -> List[DomainControlRow]:
        master_id = self._require_master(master)
        domain = _param(params, "domain")
        if not domain:
            raise QueryError(
                ErrorKind.MISSING_PARAMS, "Provide params.domain (e.g. 'Protect')"
            )
        rows = conn.execute(
            """
            SELECT
              c.control_code AS controlCode,
              c.control_statement AS controlStatement,
              COUNT(DISTINCT CASE WHEN ca.final_score > :compliant THEN ca.application_id END) AS compliantApps,
              COUNT(DISTINCT CASE WHEN ca.final_score <= :failing THEN ca.application_id END) AS nonCompliantApps,
              AVG(ca.final_score) AS avgScore
            FROM controls c
            LEFT JOIN control_assessments ca ON ca.control_id = c.id
            WHERE c.framework_id = :master AND LOWER(c.domain) = LOWER(:domain)
            GROUP BY c.id, c.control_code, c.control_statement
            ORDER BY COALESCE(avgScore, 0) ASC, c.control_code
            LIMIT 20
            """,
            {
                "master": master_id,
                "domain": domain,
                "compliant": COMPLIANT_THRESHOLD,
                "failing": FAILING_THRESHOLD,
            },
        ).fetchall()
        return [
            DomainControlRow(
                controlCode=r["controlCode"],
                controlStatement=r["controlStatement"],
                compliantApps=int(r["compliantApps"] or 0),
                nonCompliantApps=int(r["nonCompliantApps"] or 0),
                avgScore=round_half_up(r["avgScore"], 1),
            )
            for r in rows
        ]

    def _failing_controls(self, conn, master, params) -> List[FailingControlRow]:
        master_id = self._require_master(master)
        rows = conn.execute(
            """
            SELECT
              c.control_code AS controlCode,
              c.domain,
              AVG(ca.final_score) AS avgScore,
              COUNT(DISTINCT CASE WHEN ca.final_score <= ? THEN ca.application_id END) AS nonCompliantApps
            FROM controls c
            LEFT JOIN control_assessments ca ON ca.control_id = c.id
            WHERE c.framework_id = ?
            GROUP BY c.id, c.control_code, c.domain
            HAVING COUNT(ca.id) > 0
            ORDER BY avgScore ASC, c.control_code
            LIMIT 10
            """,
            (FAILING_THRESHOLD, master_id),
        ).fetchall()
        return [
            FailingControlRow(
                controlCode=r["controlCode"],
                domain=r["domain"],
                avgScore=round_half_up(r["avgScore"], 1),
                nonCompliantApps=int(r["nonCompliantApps"] or 0),
            )
            for r in rows
        ]

    def _least_compliant_controls(
        self, conn, master, params
    ) -> Union[List[PortfolioControlRow], List[ApplicationControlRow]]:
        master_id = self._require_master(master)
        limit = _limit(params, default=10, lower=1, upper=50)
        app = self._resolve_application(conn, params)

        if app is not None:
            rows = conn.execute(
                """
                SELECT
                  c.id AS controlId,
                  c.control_code AS controlCode,
                  c.control_statement AS controlStatement,
                  c.domain,
                  AVG(ca.final_score) AS avgScore,
                  COUNT(ca.id) AS assessedRows
                FROM controls c
                LEFT JOIN control_assessments ca
                  ON ca.control_id = c.id AND ca.application_id = :app
                WHERE c.framework_id = :master
                GROUP BY c.id, c.control_code, c.control_statement, c.domain
                HAVING COUNT(ca.id) > 0
                ORDER BY avgScore ASC, c.control_code
                LIMIT :limit
                """,
                {"app": app["id"], "master": master_id, "limit": limit},
            ).fetchall()
            return [
                ApplicationControlRow(
                    scope="application",
                    applicationId=app["id"],
                    applicationName=app["name"],
                    controlId=r["controlId"],
                    controlCode=r["controlCode"],
                    controlStatement=r["controlStatement"],
                    domain=r["domain"],
                    avgScore=round_half_up(r["avgScore"], 1),
                    assessedRows=int(r["assessedRows"] or 0),
                )
                for r in rows
            ]

        rows = conn.execute(
            """
            SELECT
              c.id AS controlId,
              c.control_code AS controlCode,
              c.control_statement AS controlStatement,
              c.domain,
              AVG(ca.final_score) AS avgScore,
              COUNT(DISTINCT CASE WHEN ca.final_score <= :failing THEN ca.application_id END) AS nonCompliantApps,
              COUNT(DISTINCT ca.application_id) AS assessedApps
            FROM controls c
            LEFT JOIN control_assessments ca ON ca.control_id = c.id
            WHERE c.framework_id = :master
            GROUP BY c.id, c.control_code, c.control_statement, c.domain
            HAVING COUNT(ca.id) > 0
            ORDER BY avgScore ASC, c.control_code
            LIMIT :limit
            """,
            {"failing": FAILING_THRESHOLD, "master": master_id, "limit": limit},
        ).fetchall()
        return [
            PortfolioControlRow(
                scope="portfolio",
                controlId=r["controlId"],
                controlCode=r["controlCode"],
                controlStatement=r["controlStatement"],
                domain=r["domain"],
                avgScore=round_half_up(r["avgScore"], 1),
                nonCompliantApps=int(r["nonCompliantApps"] or 0),
                assessedApps=int(r["assessedApps"] or 0),
            )
            for r in rows
        ]

    def _app_controls(self, conn, master, params) -> AppControls:
        master_id = self._require_master(master)
        app = self._resolve_application(
            conn, params, hint="Try applications_overview to see all app names."
        )
        if app is None:
            raise QueryError(
                ErrorKind.MISSING_PARAMS,
                "Provide params.applicationName (e.g. 'MS Active Directory') or params.applicationId",
            )

        rows = conn.execute(
            """
            SELECT
              c.control_code AS controlCode,
              c.control_statement AS controlStatement,
              c.domain,
              ca.final_score AS score,
              ca.final_status AS status
            FROM control_assessments ca
            JOIN controls c ON c.id = ca.control_id
            WHERE ca.application_id = ? AND c.framework_id = ?
            ORDER BY ca.final_score ASC, c.control_code
            LIMIT 30
            """,
            (app["id"], master_id),
        ).fetchall()
        controls = [
            ControlScore(
                controlCode=r["controlCode"],
                controlStatement=r["controlStatement"],
                domain=r["domain"],
                score=round_half_up(r["score"], 1),
                status=r["status"],
            )
            for r in rows
        ]
        failing = [c for c in controls if c["score"] <= FAILING_THRESHOLD]
        warning = [c for c in controls if FAILING_THRESHOLD < c["score"] < COMPLIANT_THRESHOLD]
        passing = [c for c in controls if c["score"] >= COMPLIANT_THRESHOLD]

        return AppControls(
            applicationName=app["name"],
            applicationId=app["id"],
            totalAssessed=len(controls),
            failingCount=len(failing),
            warningCount=len(warning),
            passingCount=len(passing),
            failingControls=failing,
            warningControls=warning,
            passingControls=passing,
        )

    def _app_details(self, conn, master, params) -> AppDetails:
        master_id = self._require_master(master)
        app = self._resolve_application(conn, params)
        if app is None:
            raise QueryError(
                ErrorKind.MISSING_PARAMS,
                "Provide params.applicationName or params.applicationId",
            )

        r = conn.execute(
            """
            SELECT
              a.id,
              a.name,
              a.service_management AS serviceManagement,
              a.criticality,
              a.service_owner AS serviceOwner,
              a.business_owner AS businessOwner,
              a.lifecycle_status AS lifecycleStatus,
              a.cloud_provider AS cloudProvider,
              AVG(CASE WHEN c.framework_id = :master THEN ca.final_score END) AS avgScore,
              COUNT(DISTINCT CASE
                WHEN c.framework_id = :master AND ca.final_score <= :failing
                THEN ca.control_id END) AS nonCompliances,
              COUNT(DISTINCT CASE WHEN c.framework_id = :master THEN ca.control_id END) AS totalAssessed
            FROM applications a
            LEFT JOIN control_assessments ca ON ca.application_id = a.id
            LEFT JOIN controls c ON c.id = ca.control_id
            WHERE a.id = :app
            GROUP BY a.id
            """,
            {"master": master_id, "failing": FAILING_THRESHOLD, "app": app["id"]},
        ).fetchone()

        score = round_half_up(r["avgScore"], 1)
        return AppDetails(
            id=r["id"],
            name=r["name"],
            serviceManagement=r["serviceManagement"],
            criticality=r["criticality"],
            serviceOwner=r["serviceOwner"],
            businessOwner=r["businessOwner"],
            lifecycleStatus=r["lifecycleStatus"],
            cloudProvider=r["cloudProvider"],
            avgScore=score,
            nonCompliances=int(r["nonCompliances"] or 0),
            totalAssessed=int(r["totalAssessed"] or 0),
            complianceStatus=compliance_status(score),
        )

    def _integrations_catalog(self, conn, master, params) -> List[IntegrationRow]:
        return self._integration_rows(conn)

    def _control_integration_recommendations(
        self, conn, master, params
    ) -> IntegrationRecommendations:
        master_id = self._require_master(master)
        control_id = _param(params, "controlId")
        control_code = _param(params, "controlCode")
        limit = _limit(params, default=5, lower=1, upper=20)
        app = self._resolve_application(conn, params)

        control = None
        if control_id or control_code:
            if control_id:
                where, arg = "c.id = ?", control_id
            else:
                where, arg = "LOWER(c.control_code) = LOWER(?)", control_code
            control = conn.execute(
                f"""
                SELECT c.id, c.control_code AS controlCode,
                       c.control_statement AS controlStatement, c.domain
                FROM controls c
                WHERE c.framework_id = ? AND {where}
                LIMIT 1
                """,
                (master_id, arg),
            ).fetchone()

        if control is None:
            # Fall back to the weakest assessed control in scope.
            app_filter = "AND ca.application_id = :app" if app is not None else ""
            control = conn.execute(
                f"""
                SELECT c.id, c.control_code AS controlCode,
                       c.control_statement AS controlStatement, c.domain
                FROM controls c
                JOIN control_assessments ca ON ca.control_id = c.id {app_filter}
                WHERE c.framework_id = :master
                GROUP BY c.id, c.control_code, c.control_statement, c.domain
                ORDER BY AVG(ca.final_score) ASC, c.control_code
                LIMIT 1
                """,
                {"master": master_id, "app": app["id"] if app is not None else None},
            ).fetchone()

        if control is None:
            raise QueryError(
                ErrorKind.NO_DATA,
                "Could not resolve a target control for recommendations.",
            )

        linked = set()
        for (raw,) in conn.execute(
            "SELECT source_integrations FROM automations WHERE control_id = ? AND source_integrations IS NOT NULL",
            (control["id"],),
        ).fetchall():
            try:
                linked.update(str(v) for v in json.loads(raw) or [])
            except (TypeError, ValueError) as e:
                logger.warning("Invalid source_integrations on automation for %s: %s", control["id"], e)

        normalized = [
            RecommendedIntegration(**row, selectedInAutomations=row["id"] in linked)
            for row in self._integration_rows(conn)
        ]
        active = [r for r in normalized if r["status"] == "Active"]
        inactive = [r for r in normalized if r["status"] != "Active"]

        ranked = sorted(
            inactive,
            key=lambda r: (not r["selectedInAutomations"], -r["successfulRuns"], r["displayName"]),
        )[:limit]
        recommended = [
            {
                **r,
                "reason": (
                    "Used in existing automations mapped to this control but currently inactive."
                    if r["selectedInAutomations"]
                    else "Currently inactive and available for activation."
                ),
            }
            for r in ranked
        ]

        scope: Dict[str, str] = (
            {"type": "application", "applicationId": app["id"], "applicationName": app["name"]}
            if app is not None
            else {"type": "portfolio"}
        )
        return IntegrationRecommendations(
            control=ControlRef(
                id=control["id"],
                controlCode=control["controlCode"],
                controlStatement=control["controlStatement"],
                domain=control["domain"],
            ),
            scope=scope,
            recommendedToActivate=recommended,
            activeIntegrations=active,
            inactiveIntegrations=inactive,
        )

    def set_integration_status(
        self,
        action: Any,
        integration_id: Optional[str] = None,
        integration_name: Optional[str] = None,
    ) -> IntegrationStatusChange:
        """Activate or deactivate an integration. No write when already in that state."""
        action = str(action or "").strip().lower()
        if action not in ("activate", "deactivate"):
            raise QueryError(
                ErrorKind.MISSING_PARAMS, "Provide action: 'activate' or 'deactivate'."
            )
        integration_id = str(integration_id or "").strip()
        integration_name = str(integration_name or "").strip()
        if not integration_id and not integration_name:
            raise QueryError(
                ErrorKind.MISSING_PARAMS, "Provide integrationId or integrationName."
            )

        desired = "Active" if action == "activate" else "Disabled"
        with self._db.connect() as conn:
            if integration_id:
                where, arg = "i.id = ?", integration_id
            else:
                where, arg = "LOWER(i.display_name) LIKE ?", _like(integration_name)
            rows = conn.execute(
                f"""
                SELECT i.id, i.display_name AS displayName, i.status, i.type,
                       i.schema_initialized AS schemaInitialized,
                       i.last_sync_at AS lastSyncAt
                FROM integrations i
                WHERE {where}
                ORDER BY i.display_name
                LIMIT 5
                """,
                (arg,),
            ).fetchall()
            if not rows:
                raise QueryError(
                    ErrorKind.NO_DATA,
                    f'No integration found matching "{integration_id or integration_name}".',
                )

            integration = dict(rows[0])
            integration["schemaInitialized"] = bool(integration["schemaInitialized"])
            if integration["status"] == desired:
                return IntegrationStatusChange(
                    changed=False,
                    action=action,
                    integration={**integration, "statusAfter": integration["status"]},
                    message=f"{integration['displayName']} is already {desired}.",
                )

            conn.execute(
                "UPDATE integrations SET status = ? WHERE id = ?",
                (desired, integration["id"]),
            )
            logger.info(
                "Integration %s status %s -> %s",
                integration["id"],
                integration["status"],
                desired,
            )
            return IntegrationStatusChange(
                changed=True,
                action=action,
                integration={
                    **integration,
                    "statusBefore": integration["status"],
                    "statusAfter": desired,
                },
                message=f"{integration['displayName']} status updated to {desired}.",
            )
