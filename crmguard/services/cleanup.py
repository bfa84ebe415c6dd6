from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Any, Mapping, Sequence
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import column, delete, func, select, table, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import TableClause

from crmguard.core.errors import CleanupRuleError
from crmguard.domain.types import utc_now
from crmguard.services.integrity import EMAIL_PATTERN, SOFT_DELETE_TABLES, crm_table


logger = logging.getLogger(__name__)

# Common country names mapped to ISO 3166-1 alpha-2 codes.
COUNTRY_CODES: dict[str, str] = {
    "United States": "US",
    "United States of America": "US",
    "USA": "US",
    "United Kingdom": "GB",
    "UK": "GB",
    "Great Britain": "GB",
    "Canada": "CA",
    "Australia": "AU",
    "Germany": "DE",
    "France": "FR",
    "Spain": "ES",
    "Italy": "IT",
    "Japan": "JP",
    "China": "CN",
}

_SCHEME = re.compile(r"^https?://")
_WHITESPACE = re.compile(r"\s+")
_NON_DIALABLE = re.compile(r"[^\d+]")
_EMAIL = re.compile(EMAIL_PATTERN)

INVALID_DATA_ACTIONS = ("delete", "nullify")


class CleanupRule(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    name: str | None = None
    table: str | None = None
    dry_run: bool = Field(default=False, alias="dryRun")
    required_fields: list[str] = Field(default_factory=list, alias="requiredFields")
    phone_field: str = Field(default="phone", alias="phoneField")
    email_field: str = Field(default="email", alias="emailField")
    text_fields: list[str] = Field(default_factory=list, alias="textFields")
    country_field: str = Field(default="country", alias="countryField")
    url_field: str = Field(default="website", alias="urlField")
    validation_rules: dict[str, dict[str, Any]] = Field(default_factory=dict, alias="validationRules")
    action: str | None = None


@dataclass
class CleanupReport:
    total_cleaned: int = 0
    operations: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_cleaned": self.total_cleaned,
            "operations": list(self.operations),
            "errors": list(self.errors),
        }


def normalize_phone_number(phone: str) -> str:
    # Keep digits and '+'; bare 10/11 digit numbers are assumed to be North American.
    cleaned = _NON_DIALABLE.sub("", phone)
    if cleaned.startswith("+1"):
        return cleaned
    if len(cleaned) == 10 and not cleaned.startswith("+"):
        return "+1" + cleaned
    if len(cleaned) == 11 and cleaned.startswith("1"):
        return "+" + cleaned
    return cleaned


def normalize_email(email: str) -> str:
    return email.strip().lower()


def collapse_spaces(text: str) -> str:
    return _WHITESPACE.sub(" ", text.strip())


def clean_url(url: str) -> str:
    url = url.strip()
    if not _SCHEME.match(url):
        url = "https://" + url
    url = url.rstrip("/")
    parts = urlsplit(url)
    try:
        port = parts.port
    except ValueError:
        return url
    if not parts.hostname:
        return url
    rebuilt = f"{parts.scheme}://{parts.hostname}"
    if port is not None:
        rebuilt += f":{port}"
    rebuilt += parts.path
    if parts.query:
        rebuilt += f"?{parts.query}"
    if parts.fragment:
        rebuilt += f"#{parts.fragment}"
    return rebuilt


def _is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and value != "" and _EMAIL.fullmatch(value) is not None


class CleanupService:
    """Apply data-cleanup rules; each rule commits on its own and failures never stop the batch."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def cleanup(self, rules: Sequence[Mapping[str, Any]], tenant_id: str | None = None) -> CleanupReport:
        report = CleanupReport()
        for raw_rule in rules:
            label = str(raw_rule.get("name") or raw_rule.get("type") or "Unknown")
            try:
                rule = self._parse(raw_rule)
                operation = await self._execute(rule, tenant_id)
                if not rule.dry_run:
                    await self.session.commit()
            except Exception as exc:  # noqa: BLE001 - a failing rule is reported, the batch continues
                await self.session.rollback()
                logger.warning("cleanup_rule_failed rule=%s tenant_id=%s", label, tenant_id, exc_info=exc)
                report.errors.append({"rule": label, "error": str(exc)})
                continue
            report.operations.append(operation)
            report.total_cleaned += operation["cleaned_count"]
        logger.info(
            "cleanup_completed tenant_id=%s total_cleaned=%s errors=%s",
            tenant_id,
            report.total_cleaned,
            len(report.errors),
        )
        return report

    @staticmethod
    def _parse(raw_rule: Mapping[str, Any]) -> CleanupRule:
        try:
            return CleanupRule.model_validate(dict(raw_rule))
        except ValidationError as exc:
            raise CleanupRuleError(f"Invalid cleanup rule: {exc.errors()[0]['msg']}") from exc

    async def _execute(self, rule: CleanupRule, tenant_id: str | None) -> dict[str, Any]:
        if rule.type == "merge_duplicate_tags":
            return await self._merge_duplicate_tags(rule, tenant_id)
        handlers = {
            "remove_empty_records": self._remove_empty_records,
            "normalize_phone_numbers": self._normalize_phone_numbers,
            "normalize_email_addresses": self._normalize_email_addresses,
            "remove_duplicate_spaces": self._remove_duplicate_spaces,
            "standardize_country_codes": self._standardize_country_codes,
            "clean_website_urls": self._clean_website_urls,
            "remove_invalid_data": self._remove_invalid_data,
        }
        handler = handlers.get(rule.type)
        if handler is None:
            raise CleanupRuleError(f"Unknown cleanup rule type: {rule.type}")
        if rule.table not in SOFT_DELETE_TABLES:
            raise CleanupRuleError(f"Cleanup rules cannot target table: {rule.table}")
        return await handler(rule, tenant_id)

    def _scoped(self, query: Any, source: TableClause, tenant_id: str | None) -> Any:
        query = query.where(source.c.deleted_at.is_(None))
        if tenant_id is not None:
            query = query.where(source.c.tenant_id == tenant_id)
        return query

    async def _rewrite_values(
        self,
        rule: CleanupRule,
        tenant_id: str | None,
        fields: Sequence[str],
        transform: Any,
    ) -> int:
        # Row-by-row rewrite of string fields; a row counts once however many of its fields changed.
        source = crm_table(str(rule.table), *fields)
        rows = (await self.session.execute(self._scoped(select(source), source, tenant_id))).all()
        cleaned = 0
        for row in rows:
            updates: dict[str, Any] = {}
            for field_name in fields:
                original = row._mapping[field_name]
                if not isinstance(original, str) or original == "":
                    continue
                value = transform(original)
                if value != original:
                    updates[field_name] = value
            if not updates:
                continue
            if not rule.dry_run:
                await self.session.execute(update(source).where(source.c.id == row.id).values(updates))
            cleaned += 1
        return cleaned

    def _operation(self, rule: CleanupRule, default_name: str, cleaned: int, description: str) -> dict[str, Any]:
        return {
            "rule_name": rule.name or default_name,
            "type": rule.type,
            "table": rule.table,
            "cleaned_count": cleaned,
            "dry_run": rule.dry_run,
            "description": description,
        }

    async def _remove_empty_records(self, rule: CleanupRule, tenant_id: str | None) -> dict[str, Any]:
        if not rule.required_fields:
            raise CleanupRuleError("remove_empty_records requires required_fields")
        source = crm_table(str(rule.table), *rule.required_fields)
        conditions = [
            (source.c[name].is_(None)) | (source.c[name] == "") for name in rule.required_fields
        ]
        ids_query = self._scoped(select(source.c.id), source, tenant_id).where(*conditions)
        ids = list((await self.session.execute(ids_query)).scalars().all())
        if ids and not rule.dry_run:
            await self.session.execute(
                update(source).where(source.c.id.in_(ids)).values(deleted_at=utc_now())
            )
        return self._operation(
            rule,
            "Remove Empty Records",
            len(ids),
            f"Removed {len(ids)} empty records from {rule.table}",
        )

    async def _normalize_phone_numbers(self, rule: CleanupRule, tenant_id: str | None) -> dict[str, Any]:
        cleaned = await self._rewrite_values(rule, tenant_id, [rule.phone_field], normalize_phone_number)
        return self._operation(
            rule, "Normalize Phone Numbers", cleaned, f"Normalized {cleaned} phone numbers in {rule.table}"
        )

    async def _normalize_email_addresses(self, rule: CleanupRule, tenant_id: str | None) -> dict[str, Any]:
        cleaned = await self._rewrite_values(rule, tenant_id, [rule.email_field], normalize_email)
        return self._operation(
            rule, "Normalize Email Addresses", cleaned, f"Normalized {cleaned} email addresses in {rule.table}"
        )

    async def _remove_duplicate_spaces(self, rule: CleanupRule, tenant_id: str | None) -> dict[str, Any]:
        if not rule.text_fields:
            raise CleanupRuleError("remove_duplicate_spaces requires text_fields")
        cleaned = await self._rewrite_values(rule, tenant_id, rule.text_fields, collapse_spaces)
        return self._operation(
            rule,
            "Remove Duplicate Spaces",
            cleaned,
            f"Cleaned duplicate spaces in {cleaned} records from {rule.table}",
        )

    async def _standardize_country_codes(self, rule: CleanupRule, tenant_id: str | None) -> dict[str, Any]:
        cleaned = await self._rewrite_values(
            rule, tenant_id, [rule.country_field], lambda value: COUNTRY_CODES.get(value, value)
        )
        return self._operation(
            rule, "Standardize Country Codes", cleaned, f"Standardized {cleaned} country codes in {rule.table}"
        )

    async def _clean_website_urls(self, rule: CleanupRule, tenant_id: str | None) -> dict[str, Any]:
        cleaned = await self._rewrite_values(rule, tenant_id, [rule.url_field], clean_url)
        return self._operation(
            rule, "Clean Website URLs", cleaned, f"Cleaned {cleaned} website URLs in {rule.table}"
        )

    async def _remove_invalid_data(self, rule: CleanupRule, tenant_id: str | None) -> dict[str, Any]:
        # A row qualifies when every listed field fails its check: null, empty or malformed.
        if not rule.validation_rules:
            raise CleanupRuleError("remove_invalid_data requires validation_rules")
        for field_name, validation in rule.validation_rules.items():
            if validation.get("type") != "email":
                raise CleanupRuleError(f"Unsupported validation for {field_name}: {validation.get('type')}")
        if not rule.dry_run and rule.action not in INVALID_DATA_ACTIONS:
            raise CleanupRuleError("remove_invalid_data action must be 'delete' or 'nullify'")

        fields = list(rule.validation_rules)
        source = crm_table(str(rule.table), *fields)
        rows = (await self.session.execute(self._scoped(select(source), source, tenant_id))).all()
        ids = [row.id for row in rows if not any(_is_valid_email(row._mapping[name]) for name in fields)]
        if ids and not rule.dry_run:
            if rule.action == "delete":
                values: dict[str, Any] = {"deleted_at": utc_now()}
            else:
                values = {name: None for name in fields}
            await self.session.execute(update(source).where(source.c.id.in_(ids)).values(values))
        return self._operation(
            rule,
            "Remove Invalid Data",
            len(ids),
            f"Cleaned {len(ids)} invalid records from {rule.table}",
        )

    async def _merge_duplicate_tags(self, rule: CleanupRule, tenant_id: str | None) -> dict[str, Any]:
        tags = crm_table("tags", "name")
        taggables = table(
            "taggables", column("id"), column("tag_id"), column("taggable_type"), column("taggable_id")
        )
        lowered = func.lower(tags.c.name)
        groups_query = (
            select(lowered.label("lower_name"), func.min(tags.c.id).label("keep_id"))
            .group_by(lowered)
            .having(func.count() > 1)
        )
        if tenant_id is not None:
            groups_query = groups_query.where(tags.c.tenant_id == tenant_id)
        groups = (await self.session.execute(groups_query)).all()

        merged = 0
        for group in groups:
            extra_query = select(tags.c.id).where(lowered == group.lower_name, tags.c.id != group.keep_id)
            if tenant_id is not None:
                extra_query = extra_query.where(tags.c.tenant_id == tenant_id)
            extra_ids = list((await self.session.execute(extra_query)).scalars().all())
            if extra_ids and not rule.dry_run:
                await self._repoint_tag_links(taggables, extra_ids, group.keep_id)
                await self.session.execute(delete(tags).where(tags.c.id.in_(extra_ids)))
            merged += len(extra_ids)
        return {
            "rule_name": rule.name or "Merge Duplicate Tags",
            "type": rule.type,
            "table": "tags",
            "cleaned_count": merged,
            "dry_run": rule.dry_run,
            "description": f"Merged {merged} duplicate tags",
        }

    async def _repoint_tag_links(self, taggables: TableClause, extra_ids: list[int], keep_id: int) -> None:
        # Owners already tagged with the kept tag lose the duplicate link instead of gaining a second one.
        owners = set(
            (
                await self.session.execute(
                    select(taggables.c.taggable_type, taggables.c.taggable_id).where(taggables.c.tag_id == keep_id)
                )
            ).tuples().all()
        )
        links = (
            await self.session.execute(
                select(taggables.c.id, taggables.c.taggable_type, taggables.c.taggable_id)
                .where(taggables.c.tag_id.in_(extra_ids))
                .order_by(taggables.c.id)
            )
        ).all()
        colliding: list[int] = []
        repointed: list[int] = []
        for link in links:
            owner = (link.taggable_type, link.taggable_id)
            if owner in owners:
                colliding.append(link.id)
                continue
            owners.add(owner)
            repointed.append(link.id)
        if colliding:
            await self.session.execute(delete(taggables).where(taggables.c.id.in_(colliding)))
        if repointed:
            await self.session.execute(
                update(taggables).where(taggables.c.id.in_(repointed)).values(tag_id=keep_id)
            )
