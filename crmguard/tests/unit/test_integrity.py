from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from crmguard.domain.crm import Company, Opportunity, Person, Tag, Task, Tenant, User
from crmguard.domain.models import DataIntegrityCheck
from crmguard.domain.types import IntegrityCheckStatus, IntegrityCheckType, utc_now
from crmguard.services.integrity import DuplicateCheck, IntegrityChecker, run_integrity_check


async def _seed_orphans(session) -> tuple[Company, list[Person]]:
    acme = Company(tenant_id="t1", name="Acme")
    session.add(acme)
    await session.flush()
    people = [
        Person(tenant_id="t1", company_id=acme.id, first_name="Ada", last_name="Lovelace"),
        Person(tenant_id="t1", company_id=9001, first_name="Orphan", last_name="One"),
        Person(tenant_id="t1", company_id=9002, first_name="Orphan", last_name="Two"),
        # Another tenant's orphan never shows up in t1 scans.
        Person(tenant_id="t2", company_id=9003, first_name="Other", last_name="Tenant"),
    ]
    session.add_all(people)
    await session.commit()
    return acme, people


@pytest.mark.asyncio
async def test_orphan_scan_counts_without_fixing(session, settings) -> None:
    await _seed_orphans(session)
    result = await IntegrityChecker(session, tenant_id="t1", settings=settings).run(
        IntegrityCheckType.ORPHANED_RECORDS, target_model="people"
    )

    assert result.issues_found == 2
    assert result.issues_fixed == 0
    issue = result.issues[0]
    assert issue["type"] == "orphaned_records"
    assert issue["foreign_key"] == "company_id"
    assert issue["count"] == 2
    assert len(issue["sample_ids"]) == 2


@pytest.mark.asyncio
async def test_orphan_autofix_nullify_keeps_rows(session, settings) -> None:
    _acme, people = await _seed_orphans(session)
    result = await IntegrityChecker(session, tenant_id="t1", settings=settings).run(
        IntegrityCheckType.ORPHANED_RECORDS,
        target_model="people",
        parameters={"autoFix": True, "fixMethod": "nullify"},
    )

    assert result.issues_fixed == 2
    rows = (await session.execute(select(Person.id, Person.company_id).order_by(Person.id))).all()
    assert [company_id for _id, company_id in rows] == [people[0].company_id, None, None, 9003]


@pytest.mark.asyncio
async def test_orphan_autofix_delete_removes_rows(session, settings) -> None:
    await _seed_orphans(session)
    result = await IntegrityChecker(session, tenant_id="t1", settings=settings).run(
        IntegrityCheckType.ORPHANED_RECORDS,
        target_model="people",
        parameters={"autoFix": True, "fixMethod": "delete"},
    )

    assert result.issues_fixed == 2
    remaining = (await session.execute(select(Person.last_name).order_by(Person.id))).scalars().all()
    assert remaining == ["Lovelace", "Tenant"]


@pytest.mark.asyncio
async def test_orphan_scan_rejects_bad_parameters(session, settings) -> None:
    checker = IntegrityChecker(session, tenant_id="t1", settings=settings)
    with pytest.raises(ValueError):
        await checker.run(IntegrityCheckType.ORPHANED_RECORDS, parameters={"autoFix": True, "fixMethod": "purge"})
    with pytest.raises(ValueError):
        await checker.run(IntegrityCheckType.ORPHANED_RECORDS, target_model="invoices")


@pytest.mark.asyncio
async def test_duplicate_detection_is_case_insensitive(session, settings) -> None:
    session.add_all(
        [
            Tag(tenant_id="t1", name="VIP"),
            Tag(tenant_id="t1", name="vip"),
            Tag(tenant_id="t1", name="Vip"),
            Tag(tenant_id="t1", name="prospect"),
            Tag(tenant_id="t2", name="vip"),
        ]
    )
    await session.commit()

    result = await IntegrityChecker(
        session,
        tenant_id="t1",
        settings=settings,
        duplicate_checks=[DuplicateCheck("tags", "name")],
    ).run(IntegrityCheckType.DUPLICATE_DETECTION)

    assert result.issues_found == 2
    issue = result.issues[0]
    assert issue["type"] == "duplicates"
    assert issue["groups"] == 1
    assert issue["samples"] == [{"value": "vip", "occurrences": 3}]


@pytest.mark.asyncio
async def test_failing_check_is_isolated(session, settings) -> None:
    session.add_all([Tag(tenant_id="t1", name="hot"), Tag(tenant_id="t1", name="HOT")])
    await session.commit()

    result = await IntegrityChecker(
        session,
        tenant_id="t1",
        settings=settings,
        duplicate_checks=[DuplicateCheck("no_such_table", "name"), DuplicateCheck("tags", "name")],
    ).run(IntegrityCheckType.DUPLICATE_DETECTION)

    kinds = [issue["type"] for issue in result.issues]
    assert kinds == ["check_error", "duplicates"]
    assert result.issues[0]["check"] == "no_such_table.name"
    assert result.issues_found == 1


@pytest.mark.asyncio
async def test_data_validation_flags_bad_emails_and_phones(session, settings) -> None:
    session.add_all(
        [
            Person(tenant_id="t1", first_name="Good", email="good@example.com", phone="+1 (555) 010-0000"),
            Person(tenant_id="t1", first_name="Bad", email="not-an-email", phone="12"),
            Company(tenant_id="t1", name="Co", primary_email="sales@co"),
        ]
    )
    await session.commit()

    result = await IntegrityChecker(session, tenant_id="t1", settings=settings).run(
        IntegrityCheckType.DATA_VALIDATION
    )

    by_check = {issue["check"]: issue for issue in result.issues}
    assert by_check["invalid_emails"]["count"] == 2
    assert by_check["invalid_phone_numbers"]["count"] == 1
    assert result.issues_found == 3


@pytest.mark.asyncio
async def test_foreign_key_and_required_field_scans(session, settings) -> None:
    session.add(Tenant(id="t1", name="Tenant One"))
    user = User(tenant_id="t1", name="Owner")
    session.add(user)
    await session.flush()
    session.add_all(
        [
            Task(tenant_id="t1", title="Call back", creator_id=user.id, assigned_to=404),
            Task(tenant_id="t1", title="", creator_id=user.id),
            Company(tenant_id="t1", name=None),
            Company(tenant_id="ghost", name="Ghost Co"),
        ]
    )
    await session.commit()
    checker = IntegrityChecker(session, settings=settings)

    fk = await checker.run(IntegrityCheckType.FOREIGN_KEY_CONSTRAINTS)
    columns = {(issue["group"], issue["table"], issue["column"]): issue["count"] for issue in fk.issues}
    assert columns == {
        ("user_references", "tasks", "assigned_to"): 1,
        ("tenant_references", "companies", "tenant_id"): 1,
    }

    required = await checker.run(IntegrityCheckType.REQUIRED_FIELDS)
    fields = {(issue["table"], issue["field"]): issue["count"] for issue in required.issues}
    assert fields[("tasks", "title")] == 1
    assert fields[("companies", "name")] == 1


@pytest.mark.asyncio
async def test_relationship_and_consistency_scans(session, settings) -> None:
    lonely = Company(tenant_id="t1", name="Lonely Ltd")
    busy = Company(tenant_id="t1", name="Busy Inc")
    session.add_all([lonely, busy])
    await session.flush()
    contact = Person(tenant_id="t1", company_id=busy.id, first_name="Grace", last_name="Hopper")
    session.add(contact)
    await session.flush()
    session.add_all(
        [
            Opportunity(tenant_id="t1", company_id=busy.id, contact_id=contact.id, title="Renewal", value=Decimal("0")),
            Opportunity(tenant_id="t1", company_id=busy.id, title="Upsell", value=Decimal("1200.00")),
            Company(tenant_id="t1", name="Time Traveller", created_at=utc_now() + timedelta(days=2)),
        ]
    )
    await session.commit()
    checker = IntegrityChecker(session, tenant_id="t1", settings=settings)

    missing = await checker.run(IntegrityCheckType.MISSING_RELATIONSHIPS)
    by_check = {issue["check"]: issue for issue in missing.issues}
    assert {row["name"] for row in by_check["companies_without_contacts"]["records"]} == {
        "Lonely Ltd",
        "Time Traveller",
    }
    assert [row["title"] for row in by_check["opportunities_without_contacts"]["records"]] == ["Upsell"]

    consistency = await checker.run(IntegrityCheckType.DATA_CONSISTENCY)
    by_check = {issue["check"]: issue for issue in consistency.issues}
    assert by_check["opportunity_amounts"]["count"] == 1
    assert by_check["future_created_dates"]["records"][0]["name"] == "Time Traveller"


@pytest.mark.asyncio
async def test_run_integrity_check_persists_lifecycle(session, settings) -> None:
    await _seed_orphans(session)
    record = await run_integrity_check(
        session,
        check_type=IntegrityCheckType.ORPHANED_RECORDS,
        tenant_id="t1",
        actor_id="u-7",
        target_model="people",
        parameters={"autoFix": True, "fixMethod": "nullify"},
    )

    assert record.status is IntegrityCheckStatus.COMPLETED
    assert record.issues_found == 2
    assert record.issues_fixed == 2
    assert record.results["issues"][0]["type"] == "orphaned_records"
    assert record.started_at is not None and record.completed_at is not None


@pytest.mark.asyncio
async def test_run_integrity_check_records_failure(session, settings) -> None:
    record = await run_integrity_check(
        session,
        check_type=IntegrityCheckType.ORPHANED_RECORDS,
        tenant_id="t1",
        target_model="invoices",
    )

    assert record.status is IntegrityCheckStatus.FAILED
    assert "invoices" in (record.error_message or "")
    stored = (await session.execute(select(DataIntegrityCheck))).scalar_one()
    assert stored.status is IntegrityCheckStatus.FAILED
