from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crmguard.core.errors import MissingRecordError
from crmguard.domain.crm import Company, Lead, Noteable, Opportunity, Person, Taskable
from crmguard.domain.models import Base, MergeJob
from crmguard.domain.types import MergeJobStatus, MergeJobType, utc_now


logger = logging.getLogger(__name__)

FIELD_SOURCES = ("primary", "duplicate")


@dataclass(frozen=True)
class HasMany:
    # Child rows owned through a plain foreign key; reparented onto the primary.
    name: str
    model: type[Base]
    foreign_key: str


@dataclass(frozen=True)
class MorphToMany:
    # Polymorphic pivot links; attached to the primary when absent, always detached from the duplicate.
    name: str
    pivot: type[Base]
    related_key: str
    owner_type_column: str
    owner_id_column: str


@dataclass(frozen=True)
class MergeRules:
    model: type[Base]
    morph_type: str
    fields: tuple[str, ...]
    relations: tuple[HasMany | MorphToMany, ...]


_TASKS = MorphToMany("tasks", Taskable, "task_id", "taskable_type", "taskable_id")
_NOTES = MorphToMany("notes", Noteable, "note_id", "noteable_type", "noteable_id")

MERGE_RULES: dict[MergeJobType, MergeRules] = {
    MergeJobType.COMPANY: MergeRules(
        model=Company,
        morph_type="companies",
        fields=("name", "website", "primary_email", "phone", "address", "country", "industry"),
        relations=(
            HasMany("people", Person, "company_id"),
            HasMany("opportunities", Opportunity, "company_id"),
            _TASKS,
            _NOTES,
        ),
    ),
    MergeJobType.CONTACT: MergeRules(
        model=Person,
        morph_type="people",
        fields=("first_name", "last_name", "email", "phone", "job_title", "company_id"),
        relations=(_TASKS, _NOTES, HasMany("opportunities", Opportunity, "contact_id")),
    ),
    MergeJobType.LEAD: MergeRules(
        model=Lead,
        morph_type="leads",
        fields=("name", "email", "phone", "company_name", "source", "status"),
        relations=(_TASKS, _NOTES),
    ),
}


def is_meaningful(value: Any) -> bool:
    if value is None:
        return False
    return not (isinstance(value, str) and value.strip() == "")


def recommend(primary_value: Any, duplicate_value: Any) -> str:
    # Prefer the meaningful side; ties (both or neither) keep the primary.
    if not is_meaningful(primary_value) and is_meaningful(duplicate_value):
        return "duplicate"
    return "primary"


def _display(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def validate_field_selections(merge_type: MergeJobType, selections: Mapping[str, str]) -> dict[str, str]:
    rules = MERGE_RULES[merge_type]
    cleaned: dict[str, str] = {}
    for field_name, source in selections.items():
        if field_name not in rules.fields:
            raise ValueError(f"Field {field_name!r} cannot be merged for {merge_type.value} records")
        if source not in FIELD_SOURCES:
            raise ValueError(f"Field selection for {field_name!r} must be 'primary' or 'duplicate'")
        cleaned[field_name] = source
    return cleaned


class MergeEngine:
    """Collapse a duplicate CRM record into its primary.

    ``process`` runs field selection, relationship transfer and the soft
    delete of the duplicate in one transaction; any failure rolls all of it
    back and is recorded on the job instead of being raised.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def preview(self, merge_type: MergeJobType, primary: Any, duplicate: Any) -> dict[str, dict[str, Any]]:
        preview: dict[str, dict[str, Any]] = {}
        for field_name in MERGE_RULES[merge_type].fields:
            primary_value = getattr(primary, field_name, None)
            duplicate_value = getattr(duplicate, field_name, None)
            preview[field_name] = {
                "field": field_name,
                "primary": _display(primary_value),
                "duplicate": _display(duplicate_value),
                "recommended": recommend(primary_value, duplicate_value),
            }
        return preview

    async def _load(self, rules: MergeRules, record_id: int, tenant_id: str) -> Any | None:
        model: Any = rules.model
        return (
            await self.session.execute(
                select(model).where(
                    model.id == record_id,
                    model.tenant_id == tenant_id,
                    model.deleted_at.is_(None),
                )
            )
        ).scalar_one_or_none()

    async def create(
        self,
        merge_type: MergeJobType,
        primary_id: int,
        duplicate_id: int,
        *,
        tenant_id: str,
        actor_id: str | None = None,
        field_selections: Mapping[str, str] | None = None,
    ) -> MergeJob:
        if primary_id == duplicate_id:
            raise ValueError("A record cannot be merged into itself")
        rules = MERGE_RULES[merge_type]
        selections = validate_field_selections(merge_type, field_selections or {})
        primary = await self._load(rules, primary_id, tenant_id)
        duplicate = await self._load(rules, duplicate_id, tenant_id)
        if primary is None or duplicate is None:
            raise MissingRecordError("Primary or duplicate record not found")
        job = MergeJob(
            tenant_id=tenant_id,
            type=merge_type,
            status=MergeJobStatus.PENDING,
            primary_model_type=rules.morph_type,
            primary_model_id=primary_id,
            duplicate_model_type=rules.morph_type,
            duplicate_model_id=duplicate_id,
            field_selections=selections or None,
            merge_preview=self.preview(merge_type, primary, duplicate),
            created_by_actor_id=actor_id,
            created_at=utc_now(),
        )
        self.session.add(job)
        await self.session.commit()
        await self.session.refresh(job)
        logger.info(
            "merge_job_created job_id=%s tenant_id=%s type=%s primary_id=%s duplicate_id=%s",
            job.id,
            tenant_id,
            merge_type.value,
            primary_id,
            duplicate_id,
        )
        return job

    async def process(self, job: MergeJob, *, actor_id: str | None = None) -> bool:
        job_id = job.id
        if job.status not in (MergeJobStatus.PENDING, MergeJobStatus.FAILED):
            logger.warning("merge_job_not_processable job_id=%s status=%s", job_id, job.status.value)
            return False

        job.status = MergeJobStatus.PROCESSING
        job.processed_by_actor_id = actor_id
        job.processed_at = utc_now()
        job.error_message = None
        await self.session.commit()
        try:
            rules = MERGE_RULES[job.type]
            primary = await self._load(rules, job.primary_model_id, job.tenant_id)
            duplicate = await self._load(rules, job.duplicate_model_id, job.tenant_id)
            if primary is None or duplicate is None:
                raise MissingRecordError("Primary or duplicate record not found")

            selections = validate_field_selections(job.type, job.field_selections or {})
            for field_name, source in selections.items():
                value = getattr(duplicate, field_name)
                if source == "duplicate" and value is not None:
                    setattr(primary, field_name, value)

            transferred: dict[str, int] = {}
            for relation in rules.relations:
                if isinstance(relation, HasMany):
                    transferred[relation.name] = await self._transfer_owned(relation, primary.id, duplicate.id)
                else:
                    transferred[relation.name] = await self._transfer_links(
                        relation, rules.morph_type, primary.id, duplicate.id
                    )

            duplicate.deleted_at = utc_now()
            job.transferred_relationships = transferred
            job.status = MergeJobStatus.COMPLETED
            await self.session.commit()
        except Exception as exc:  # noqa: BLE001 - merge failures are surfaced via status/errors
            logger.exception("merge_job_failed job_id=%s", job_id)
            await self.session.rollback()
            job.status = MergeJobStatus.FAILED
            job.error_message = str(exc) or exc.__class__.__name__
            await self.session.commit()
            await self.session.refresh(job)
            return False
        logger.info("merge_job_completed job_id=%s transferred=%s", job_id, transferred)
        return True

    async def _transfer_owned(self, relation: HasMany, primary_id: int, duplicate_id: int) -> int:
        model: Any = relation.model
        foreign_key = getattr(model, relation.foreign_key)
        query = select(model).where(foreign_key == duplicate_id)
        if hasattr(model, "deleted_at"):
            query = query.where(model.deleted_at.is_(None))
        children = (await self.session.execute(query)).scalars().all()
        for child in children:
            setattr(child, relation.foreign_key, primary_id)
        return len(children)

    async def _transfer_links(
        self,
        relation: MorphToMany,
        morph_type: str,
        primary_id: int,
        duplicate_id: int,
    ) -> int:
        pivot: Any = relation.pivot
        owner_type = getattr(pivot, relation.owner_type_column)
        owner_id = getattr(pivot, relation.owner_id_column)
        related = getattr(pivot, relation.related_key)

        primary_related = set(
            (
                await self.session.execute(
                    select(related).where(owner_type == morph_type, owner_id == primary_id)
                )
            ).scalars().all()
        )
        links = (
            await self.session.execute(select(pivot).where(owner_type == morph_type, owner_id == duplicate_id))
        ).scalars().all()
        attached = 0
        for link in links:
            related_id = getattr(link, relation.related_key)
            if related_id in primary_related:
                await self.session.delete(link)
                continue
            # Re-pointing the pivot row attaches to the primary and detaches from the duplicate at once.
            setattr(link, relation.owner_id_column, primary_id)
            primary_related.add(related_id)
            attached += 1
        return attached
