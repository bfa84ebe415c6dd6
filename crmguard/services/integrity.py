from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
import logging
import re
from typing import Any, Mapping, Sequence, assert_never

from sqlalchemy import Numeric, String, column, delete, func, literal, or_, select, table, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select, TableClause

from crmguard.core.config import Settings, get_settings
from crmguard.core.errors import CheckExecutionError
from crmguard.domain.models import DataIntegrityCheck
from crmguard.domain.types import IntegrityCheckStatus, IntegrityCheckType, UTCDateTime, utc_now


logger = logging.getLogger(__name__)

EMAIL_PATTERN = r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"
PHONE_PATTERN = r"[+]?[0-9\s\-\(\)\.]{7,}"

# Tables carrying tenant_id / deleted_at; scans filter on them only where present.
TENANT_SCOPED_TABLES = frozenset(
    {"users", "companies", "people", "leads", "opportunities", "tasks", "notes", "tags"}
)
SOFT_DELETE_TABLES = frozenset({"companies", "people", "leads", "opportunities", "tasks", "notes"})
FIX_METHODS = ("delete", "nullify")


@dataclass(frozen=True)
class ForeignKeyCheck:
    table: str
    column: str
    reference_table: str
    reference_column: str = "id"

    @property
    def name(self) -> str:
        return f"{self.table}.{self.column}"


@dataclass(frozen=True)
class DuplicateCheck:
    table: str
    field: str


@dataclass(frozen=True)
class FormatCheck:
    name: str
    description: str
    pattern: str
    # (table, column) pairs the pattern applies to.
    targets: tuple[tuple[str, str], ...]


ORPHAN_CHECKS: dict[str, tuple[ForeignKeyCheck, ...]] = {
    "people": (ForeignKeyCheck("people", "company_id", "companies"),),
    "opportunities": (
        ForeignKeyCheck("opportunities", "company_id", "companies"),
        ForeignKeyCheck("opportunities", "contact_id", "people"),
    ),
    "tasks": (
        ForeignKeyCheck("tasks", "creator_id", "users"),
        ForeignKeyCheck("tasks", "assigned_to", "users"),
    ),
}

FOREIGN_KEY_GROUPS: dict[str, tuple[ForeignKeyCheck, ...]] = {
    "user_references": (
        ForeignKeyCheck("tasks", "creator_id", "users"),
        ForeignKeyCheck("tasks", "assigned_to", "users"),
        ForeignKeyCheck("opportunities", "assigned_to", "users"),
    ),
    "tenant_references": (
        ForeignKeyCheck("companies", "tenant_id", "tenants"),
        ForeignKeyCheck("people", "tenant_id", "tenants"),
        ForeignKeyCheck("opportunities", "tenant_id", "tenants"),
    ),
}

DUPLICATE_CHECKS: tuple[DuplicateCheck, ...] = (
    DuplicateCheck("companies", "name"),
    DuplicateCheck("companies", "website"),
    DuplicateCheck("people", "email"),
    DuplicateCheck("tags", "name"),
)

VALIDATION_CHECKS: tuple[FormatCheck, ...] = (
    FormatCheck(
        "invalid_emails",
        "Records with invalid email addresses",
        EMAIL_PATTERN,
        (("people", "email"), ("companies", "primary_email")),
    ),
    FormatCheck(
        "invalid_phone_numbers",
        "Records with invalid phone number formats",
        PHONE_PATTERN,
        (("people", "phone"),),
    ),
)

REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "companies": ("name",),
    "people": ("first_name", "last_name"),
    "opportunities": ("title",),
    "tasks": ("title",),
}

# Column types needed for bound comparisons and result processing; everything else is untyped.
_COLUMN_TYPES: dict[str, Any] = {
    "created_at": UTCDateTime(),
    "deleted_at": UTCDateTime(),
    "value": Numeric(14, 2),
    "tenant_id": String(),
}


def crm_table(name: str, *columns: str) -> TableClause:
    # Lightweight table constructs: the scans query CRM data without owning its schema.
    wanted = ["id", *columns]
    if name in TENANT_SCOPED_TABLES:
        wanted.append("tenant_id")
    if name in SOFT_DELETE_TABLES:
        wanted.append("deleted_at")
    unique = list(dict.fromkeys(wanted))
    return table(name, *(column(col, _COLUMN_TYPES.get(col)) for col in unique))


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _row_dict(row: Any) -> dict[str, Any]:
    return {key: _jsonable(value) for key, value in row._mapping.items()}


def _param(parameters: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    # Accept both camelCase and snake_case parameter keys.
    for key in keys:
        if key in parameters:
            return parameters[key]
    return default


@dataclass
class IntegrityResult:
    issues_found: int = 0
    issues_fixed: int = 0
    issues: list[dict[str, Any]] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "issues_found": self.issues_found,
            "issues_fixed": self.issues_fixed,
            "issues": list(self.issues),
            "summary": self.summary,
        }


class IntegrityChecker:
    """Run structural scans over CRM tables.

    Each individual check is isolated: a failing query is rolled back and
    recorded as a ``check_error`` issue while the remaining checks still run.
    Only orphan scans mutate data, and only when ``autoFix`` is requested.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        tenant_id: str | None = None,
        settings: Settings | None = None,
        orphan_checks: Mapping[str, Sequence[ForeignKeyCheck]] | None = None,
        foreign_key_groups: Mapping[str, Sequence[ForeignKeyCheck]] | None = None,
        duplicate_checks: Sequence[DuplicateCheck] | None = None,
        validation_checks: Sequence[FormatCheck] | None = None,
        required_fields: Mapping[str, Sequence[str]] | None = None,
    ) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self.settings = settings or get_settings()
        self.orphan_checks = orphan_checks if orphan_checks is not None else ORPHAN_CHECKS
        self.foreign_key_groups = foreign_key_groups if foreign_key_groups is not None else FOREIGN_KEY_GROUPS
        self.duplicate_checks = duplicate_checks if duplicate_checks is not None else DUPLICATE_CHECKS
        self.validation_checks = validation_checks if validation_checks is not None else VALIDATION_CHECKS
        self.required_fields = required_fields if required_fields is not None else REQUIRED_FIELDS

    @property
    def sample_limit(self) -> int:
        return max(1, int(self.settings.integrity_sample_limit))

    async def run(
        self,
        check_type: IntegrityCheckType,
        *,
        target_model: str | None = None,
        parameters: Mapping[str, Any] | None = None,
    ) -> IntegrityResult:
        parameters = parameters or {}
        match check_type:
            case IntegrityCheckType.ORPHANED_RECORDS:
                return await self.check_orphaned_records(target_model, parameters)
            case IntegrityCheckType.MISSING_RELATIONSHIPS:
                return await self.check_missing_relationships()
            case IntegrityCheckType.DUPLICATE_DETECTION:
                return await self.check_duplicates()
            case IntegrityCheckType.DATA_VALIDATION:
                return await self.check_data_validation()
            case IntegrityCheckType.FOREIGN_KEY_CONSTRAINTS:
                return await self.check_foreign_key_constraints()
            case IntegrityCheckType.REQUIRED_FIELDS:
                return await self.check_required_fields()
            case IntegrityCheckType.DATA_CONSISTENCY:
                return await self.check_data_consistency()
            case _:
                assert_never(check_type)

    def _scoped(self, query: Select, source: TableClause) -> Select:
        if self.tenant_id is not None and "tenant_id" in source.c:
            query = query.where(source.c.tenant_id == self.tenant_id)
        return query

    def _live(self, query: Select, source: TableClause) -> Select:
        if "deleted_at" in source.c:
            query = query.where(source.c.deleted_at.is_(None))
        return query

    async def _record_check_error(self, issues: list[dict[str, Any]], check: str, exc: SQLAlchemyError) -> None:
        # Postgres aborts the transaction on error; roll back so later checks can run.
        await self.session.rollback()
        error = CheckExecutionError(check, str(exc.orig) if getattr(exc, "orig", None) else str(exc))
        logger.warning("integrity_check_error check=%s error=%s", error.check, error)
        issues.append({"type": "check_error", "check": error.check, "error": str(error)})

    def _orphan_query(self, check: ForeignKeyCheck) -> tuple[Select, TableClause]:
        child = crm_table(check.table, check.column)
        parent = table(check.reference_table, column(check.reference_column)).alias("ref")
        query = (
            select(child.c.id)
            .select_from(
                child.outerjoin(parent, child.c[check.column] == parent.c[check.reference_column])
            )
            .where(child.c[check.column].is_not(None), parent.c[check.reference_column].is_(None))
        )
        return self._scoped(query, child), child

    async def check_orphaned_records(
        self, target_model: str | None, parameters: Mapping[str, Any]
    ) -> IntegrityResult:
        auto_fix = bool(_param(parameters, "autoFix", "auto_fix", default=False))
        fix_method = _param(parameters, "fixMethod", "fix_method")
        if auto_fix and fix_method not in FIX_METHODS:
            raise ValueError(f"fixMethod must be one of {', '.join(FIX_METHODS)}")
        if target_model is not None:
            if target_model not in self.orphan_checks:
                raise ValueError(f"Unknown target model for orphan scan: {target_model}")
            selected = {target_model: self.orphan_checks[target_model]}
        else:
            selected = dict(self.orphan_checks)

        result = IntegrityResult()
        for model, checks in selected.items():
            for check in checks:
                try:
                    query, child = self._orphan_query(check)
                    orphan_ids = list((await self.session.execute(query)).scalars().all())
                    if not orphan_ids:
                        continue
                    fixed = 0
                    if auto_fix:
                        if fix_method == "delete":
                            statement = delete(child).where(child.c.id.in_(orphan_ids))
                        else:
                            statement = (
                                update(child).where(child.c.id.in_(orphan_ids)).values({check.column: None})
                            )
                        fixed = (await self.session.execute(statement)).rowcount or 0
                        await self.session.commit()
                except SQLAlchemyError as exc:
                    await self._record_check_error(result.issues, check.name, exc)
                    continue
                count = len(orphan_ids)
                result.issues_found += count
                result.issues_fixed += fixed
                result.issues.append(
                    {
                        "type": "orphaned_records",
                        "model": model,
                        "table": check.table,
                        "foreign_key": check.column,
                        "reference_table": check.reference_table,
                        "count": count,
                        "fixed": fixed,
                        "description": (
                            f"Found {count} orphaned records in {check.table} with invalid {check.column}"
                        ),
                        "sample_ids": orphan_ids[: self.sample_limit],
                    }
                )
                if fixed:
                    logger.info(
                        "integrity_orphans_fixed table=%s column=%s method=%s fixed=%s",
                        check.table,
                        check.column,
                        fix_method,
                        fixed,
                    )
        result.summary = f"Found {result.issues_found} orphaned records" + (
            f", fixed {result.issues_fixed}" if result.issues_fixed else ""
        )
        return result

    def _relationship_queries(self) -> dict[str, tuple[str, Select]]:
        companies = crm_table("companies", "name")
        people = crm_table("people", "company_id")
        opportunities = crm_table("opportunities", "title", "contact_id")
        companies_without_contacts = self._live(
            self._scoped(
                select(companies.c.id, companies.c.name)
                .select_from(companies.outerjoin(people, companies.c.id == people.c.company_id))
                .where(people.c.id.is_(None)),
                companies,
            ),
            companies,
        )
        opportunities_without_contacts = self._live(
            self._scoped(
                select(opportunities.c.id, opportunities.c.title).where(opportunities.c.contact_id.is_(None)),
                opportunities,
            ),
            opportunities,
        )
        return {
            "companies_without_contacts": (
                "Companies without any associated contacts",
                companies_without_contacts,
            ),
            "opportunities_without_contacts": (
                "Opportunities without associated contacts",
                opportunities_without_contacts,
            ),
        }

    async def _run_named_queries(
        self,
        issue_type: str,
        queries: Mapping[str, tuple[str, Select]],
    ) -> IntegrityResult:
        result = IntegrityResult()
        for name, (description, query) in queries.items():
            try:
                rows = (await self.session.execute(query)).all()
            except SQLAlchemyError as exc:
                await self._record_check_error(result.issues, name, exc)
                continue
            if not rows:
                continue
            result.issues_found += len(rows)
            result.issues.append(
                {
                    "type": issue_type,
                    "check": name,
                    "count": len(rows),
                    "description": description,
                    "records": [_row_dict(row) for row in rows[: self.sample_limit]],
                }
            )
        return result

    async def check_missing_relationships(self) -> IntegrityResult:
        result = await self._run_named_queries("missing_relationships", self._relationship_queries())
        result.summary = f"Found {result.issues_found} missing relationship issues"
        return result

    async def check_duplicates(self) -> IntegrityResult:
        result = IntegrityResult()
        for check in self.duplicate_checks:
            source = crm_table(check.table, check.field)
            value = func.lower(source.c[check.field])
            query = (
                select(value.label("value"), func.count().label("occurrences"))
                .where(source.c[check.field].is_not(None), source.c[check.field] != "")
                .group_by(value)
                .having(func.count() > 1)
                .order_by(func.count().desc(), value)
            )
            query = self._live(self._scoped(query, source), source)
            try:
                groups = (await self.session.execute(query)).all()
            except SQLAlchemyError as exc:
                await self._record_check_error(result.issues, f"{check.table}.{check.field}", exc)
                continue
            if not groups:
                continue
            # Every group keeps one record; the rest are duplicates.
            duplicates = sum(group.occurrences for group in groups) - len(groups)
            result.issues_found += duplicates
            result.issues.append(
                {
                    "type": "duplicates",
                    "table": check.table,
                    "field": check.field,
                    "count": duplicates,
                    "groups": len(groups),
                    "description": (
                        f"Found {duplicates} duplicate records in {check.table} based on {check.field}"
                    ),
                    "samples": [_row_dict(group) for group in groups[: self.sample_limit]],
                }
            )
        result.summary = f"Found {result.issues_found} duplicate records"
        return result

    async def check_data_validation(self) -> IntegrityResult:
        result = IntegrityResult()
        for check in self.validation_checks:
            pattern = re.compile(check.pattern)
            violations: list[dict[str, Any]] = []
            try:
                for table_name, column_name in check.targets:
                    source = crm_table(table_name, column_name)
                    query = select(
                        literal(table_name).label("table_name"),
                        source.c.id,
                        source.c[column_name].label("value"),
                    ).where(source.c[column_name].is_not(None), source.c[column_name] != "")
                    rows = (await self.session.execute(self._live(self._scoped(query, source), source))).all()
                    violations.extend(
                        _row_dict(row) for row in rows if not pattern.fullmatch(str(row.value).strip())
                    )
            except SQLAlchemyError as exc:
                await self._record_check_error(result.issues, check.name, exc)
                continue
            if not violations:
                continue
            result.issues_found += len(violations)
            result.issues.append(
                {
                    "type": "validation_error",
                    "check": check.name,
                    "count": len(violations),
                    "description": check.description,
                    "samples": violations[: self.sample_limit],
                }
            )
        result.summary = f"Found {result.issues_found} data validation issues"
        return result

    async def check_foreign_key_constraints(self) -> IntegrityResult:
        result = IntegrityResult()
        for group, checks in self.foreign_key_groups.items():
            for check in checks:
                query, _ = self._orphan_query(check)
                counted = select(func.count()).select_from(query.subquery())
                try:
                    invalid = int((await self.session.execute(counted)).scalar_one())
                except SQLAlchemyError as exc:
                    await self._record_check_error(result.issues, check.name, exc)
                    continue
                if not invalid:
                    continue
                result.issues_found += invalid
                result.issues.append(
                    {
                        "type": "foreign_key_violation",
                        "group": group,
                        "table": check.table,
                        "column": check.column,
                        "reference": f"{check.reference_table}.{check.reference_column}",
                        "count": invalid,
                        "description": f"Found {invalid} invalid references in {check.table}.{check.column}",
                    }
                )
        result.summary = f"Found {result.issues_found} foreign key constraint violations"
        return result

    async def check_required_fields(self) -> IntegrityResult:
        result = IntegrityResult()
        for table_name, fields in self.required_fields.items():
            for field_name in fields:
                source = crm_table(table_name, field_name)
                query = select(func.count()).select_from(source).where(
                    or_(source.c[field_name].is_(None), source.c[field_name] == "")
                )
                query = self._live(self._scoped(query, source), source)
                try:
                    missing = int((await self.session.execute(query)).scalar_one())
                except SQLAlchemyError as exc:
                    await self._record_check_error(result.issues, f"{table_name}.{field_name}", exc)
                    continue
                if not missing:
                    continue
                result.issues_found += missing
                result.issues.append(
                    {
                        "type": "missing_required_field",
                        "table": table_name,
                        "field": field_name,
                        "count": missing,
                        "description": (
                            f"Found {missing} records in {table_name} missing required field {field_name}"
                        ),
                    }
                )
        result.summary = f"Found {result.issues_found} missing required field issues"
        return result

    def _consistency_queries(self) -> dict[str, tuple[str, Select]]:
        now = utc_now()
        opportunities = crm_table("opportunities", "title", "value")
        companies = crm_table("companies", "name", "created_at")
        people = crm_table("people", "first_name", "last_name", "created_at")
        non_positive_amounts = self._live(
            self._scoped(
                select(opportunities.c.id, opportunities.c.title, opportunities.c.value).where(
                    opportunities.c.value <= 0
                ),
                opportunities,
            ),
            opportunities,
        )
        future_companies = self._live(
            self._scoped(
                select(
                    literal("companies").label("table_name"),
                    companies.c.id,
                    companies.c.name.label("name"),
                    companies.c.created_at,
                ).where(companies.c.created_at > now),
                companies,
            ),
            companies,
        )
        future_people = self._live(
            self._scoped(
                select(
                    literal("people").label("table_name"),
                    people.c.id,
                    func.coalesce(people.c.first_name, "")
                    .concat(" ")
                    .concat(func.coalesce(people.c.last_name, ""))
                    .label("name"),
                    people.c.created_at,
                ).where(people.c.created_at > now),
                people,
            ),
            people,
        )
        return {
            "opportunity_amounts": ("Opportunities with negative or zero amounts", non_positive_amounts),
            "future_created_dates": (
                "Records with future creation dates",
                future_companies.union_all(future_people),
            ),
        }

    async def check_data_consistency(self) -> IntegrityResult:
        result = await self._run_named_queries("consistency_issue", self._consistency_queries())
        result.summary = f"Found {result.issues_found} data consistency issues"
        return result


async def run_integrity_check(
    session: AsyncSession,
    *,
    check_type: IntegrityCheckType,
    tenant_id: str,
    actor_id: str | None = None,
    target_model: str | None = None,
    parameters: Mapping[str, Any] | None = None,
    checker: IntegrityChecker | None = None,
) -> DataIntegrityCheck:
    # Persist the PENDING -> RUNNING -> COMPLETED/FAILED lifecycle around a single scan.
    record = DataIntegrityCheck(
        tenant_id=tenant_id,
        type=check_type,
        status=IntegrityCheckStatus.PENDING,
        target_model=target_model,
        parameters=dict(parameters or {}),
        created_by_actor_id=actor_id,
        created_at=utc_now(),
    )
    session.add(record)
    await session.commit()
    await session.refresh(record)
    record_id = record.id

    record.status = IntegrityCheckStatus.RUNNING
    record.started_at = utc_now()
    await session.commit()

    checker = checker or IntegrityChecker(session, tenant_id=tenant_id)
    try:
        result = await checker.run(check_type, target_model=target_model, parameters=parameters)
    except Exception as exc:  # noqa: BLE001 - scan failures are surfaced via status/errors
        logger.exception("integrity_check_failed check_id=%s type=%s", record_id, check_type.value)
        await session.rollback()
        record.status = IntegrityCheckStatus.FAILED
        record.error_message = str(exc) or exc.__class__.__name__
        record.completed_at = utc_now()
        await session.commit()
        await session.refresh(record)
        return record

    # Individual checks may have rolled back the session; reload before the final write.
    await session.refresh(record)
    record.results = result.to_dict()
    record.issues_found = result.issues_found
    record.issues_fixed = result.issues_fixed
    record.status = IntegrityCheckStatus.COMPLETED
    record.completed_at = utc_now()
    await session.commit()
    logger.info(
        "integrity_check_completed check_id=%s type=%s issues_found=%s issues_fixed=%s",
        record_id,
        check_type.value,
        result.issues_found,
        result.issues_fixed,
    )
    return record
