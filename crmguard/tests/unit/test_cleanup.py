from __future__ import annotations

import pytest
from sqlalchemy import select

from crmguard.domain.crm import Company, Person, Tag, Taggable
from crmguard.services.cleanup import CleanupService, clean_url, collapse_spaces, normalize_phone_number


def test_normalize_phone_number() -> None:
    assert normalize_phone_number("(555) 010-2000") == "+15550102000"
    assert normalize_phone_number("1-555-010-2000") == "+15550102000"
    assert normalize_phone_number("+1 555 010 2000") == "+15550102000"
    assert normalize_phone_number("+44 20 7946 0958") == "+442079460958"


def test_clean_url() -> None:
    assert clean_url("Acme.Example/") == "https://acme.example"
    assert clean_url("http://WWW.Acme.example/about/") == "http://www.acme.example/about"
    assert clean_url("https://acme.example:8443/x?y=1") == "https://acme.example:8443/x?y=1"


def test_collapse_spaces() -> None:
    assert collapse_spaces("  Acme    Widgets\tInc ") == "Acme Widgets Inc"


@pytest.mark.asyncio
async def test_rules_normalize_values_per_tenant(session) -> None:
    session.add_all(
        [
            Person(tenant_id="t1", first_name="Ada", email="  Ada@Example.COM ", phone="(555) 010-2000"),
            Person(tenant_id="t1", first_name="Grace", email="grace@example.com", phone="+15550103000"),
            Person(tenant_id="t2", first_name="Other", email="OTHER@EXAMPLE.COM"),
            Company(tenant_id="t1", name="Acme   Widgets", country="United Kingdom", website="acme.example/"),
        ]
    )
    await session.commit()

    report = await CleanupService(session).cleanup(
        [
            {"type": "normalize_email_addresses", "table": "people"},
            {"type": "normalize_phone_numbers", "table": "people"},
            {"type": "remove_duplicate_spaces", "table": "companies", "textFields": ["name"]},
            {"type": "standardize_country_codes", "table": "companies"},
            {"type": "clean_website_urls", "table": "companies"},
        ],
        tenant_id="t1",
    )

    assert report.errors == []
    assert [op["cleaned_count"] for op in report.operations] == [1, 1, 1, 1, 1]
    assert report.total_cleaned == 5
    emails = dict((await session.execute(select(Person.first_name, Person.email))).all())
    assert emails == {"Ada": "ada@example.com", "Grace": "grace@example.com", "Other": "OTHER@EXAMPLE.COM"}
    company = (await session.execute(select(Company.name, Company.country, Company.website))).one()
    assert tuple(company) == ("Acme Widgets", "GB", "https://acme.example")


@pytest.mark.asyncio
async def test_dry_run_counts_without_writing(session) -> None:
    session.add(Person(tenant_id="t1", first_name="Ada", email="ADA@EXAMPLE.COM"))
    await session.commit()

    report = await CleanupService(session).cleanup(
        [{"type": "normalize_email_addresses", "table": "people", "dryRun": True}], tenant_id="t1"
    )

    assert report.total_cleaned == 1
    assert report.operations[0]["dry_run"] is True
    assert (await session.execute(select(Person.email))).scalar_one() == "ADA@EXAMPLE.COM"


@pytest.mark.asyncio
async def test_remove_empty_records_soft_deletes(session) -> None:
    session.add_all(
        [
            Company(tenant_id="t1", name=""),
            Company(tenant_id="t1", name=None),
            Company(tenant_id="t1", name="Kept"),
        ]
    )
    await session.commit()

    report = await CleanupService(session).cleanup(
        [{"type": "remove_empty_records", "table": "companies", "requiredFields": ["name"]}], tenant_id="t1"
    )

    assert report.total_cleaned == 2
    live = (await session.execute(select(Company.name).where(Company.deleted_at.is_(None)))).scalars().all()
    assert live == ["Kept"]
    assert len((await session.execute(select(Company.id))).all()) == 3


@pytest.mark.asyncio
async def test_merge_duplicate_tags_repoints_links(session) -> None:
    vip = Tag(tenant_id="t1", name="VIP")
    vip_lower = Tag(tenant_id="t1", name="vip")
    other = Tag(tenant_id="t1", name="churn-risk")
    session.add_all([vip, vip_lower, other])
    await session.flush()
    session.add_all(
        [
            Taggable(tag_id=vip.id, taggable_type="companies", taggable_id=1),
            Taggable(tag_id=vip_lower.id, taggable_type="people", taggable_id=7),
        ]
    )
    await session.commit()

    report = await CleanupService(session).cleanup([{"type": "merge_duplicate_tags"}], tenant_id="t1")

    assert report.total_cleaned == 1
    names = (await session.execute(select(Tag.name).order_by(Tag.id))).scalars().all()
    assert names == ["VIP", "churn-risk"]
    tag_ids = set((await session.execute(select(Taggable.tag_id))).scalars().all())
    assert tag_ids == {vip.id}


@pytest.mark.asyncio
async def test_failing_rule_does_not_stop_the_batch(session) -> None:
    session.add(Person(tenant_id="t1", first_name="Ada", email="ADA@EXAMPLE.COM"))
    await session.commit()

    report = await CleanupService(session).cleanup(
        [
            {"type": "shred_everything", "table": "people", "name": "Bogus"},
            {"type": "normalize_email_addresses", "table": "users"},
            {"type": "remove_duplicate_spaces", "table": "people"},
            {"type": "normalize_email_addresses", "table": "people"},
        ],
        tenant_id="t1",
    )

    assert [error["rule"] for error in report.errors] == [
        "Bogus",
        "normalize_email_addresses",
        "remove_duplicate_spaces",
    ]
    assert report.total_cleaned == 1
    assert (await session.execute(select(Person.email))).scalar_one() == "ada@example.com"


@pytest.mark.asyncio
async def test_remove_invalid_data_soft_deletes_bad_emails(session) -> None:
    session.add_all(
        [
            Person(tenant_id="t1", first_name="Valid", email="ada@example.com"),
            Person(tenant_id="t1", first_name="Malformed", email="not-an-email"),
            Person(tenant_id="t1", first_name="Blank", email=""),
            Person(tenant_id="t2", first_name="Elsewhere", email="broken@"),
        ]
    )
    await session.commit()
    email_rules = {"email": {"type": "email"}}
    service = CleanupService(session)

    preview = await service.cleanup(
        [{"type": "remove_invalid_data", "table": "people", "validationRules": email_rules, "dryRun": True}],
        tenant_id="t1",
    )
    assert preview.total_cleaned == 2
    assert (await session.execute(select(Person.id).where(Person.deleted_at.is_not(None)))).all() == []

    report = await service.cleanup(
        [{"type": "remove_invalid_data", "table": "people", "validationRules": email_rules, "action": "delete"}],
        tenant_id="t1",
    )
    assert report.errors == []
    assert report.operations[0]["description"] == "Cleaned 2 invalid records from people"
    live = (
        await session.execute(select(Person.first_name).where(Person.deleted_at.is_(None)).order_by(Person.id))
    ).scalars().all()
    assert live == ["Valid", "Elsewhere"]


@pytest.mark.asyncio
async def test_remove_invalid_data_nullify_and_rule_validation(session) -> None:
    session.add_all(
        [
            Person(tenant_id="t1", first_name="Valid", email="ada@example.com"),
            Person(tenant_id="t1", first_name="Malformed", email="ada at example"),
        ]
    )
    await session.commit()

    report = await CleanupService(session).cleanup(
        [
            {
                "type": "remove_invalid_data",
                "table": "people",
                "validationRules": {"email": {"type": "email"}},
                "action": "nullify",
            },
            {"type": "remove_invalid_data", "table": "people", "name": "No rules", "action": "delete"},
            {
                "type": "remove_invalid_data",
                "table": "people",
                "name": "No action",
                "validationRules": {"email": {"type": "email"}},
            },
            {
                "type": "remove_invalid_data",
                "table": "people",
                "name": "Phone check",
                "validationRules": {"phone": {"type": "phone"}},
                "action": "delete",
            },
        ],
        tenant_id="t1",
    )

    assert report.total_cleaned == 1
    assert [error["rule"] for error in report.errors] == ["No rules", "No action", "Phone check"]
    emails = dict((await session.execute(select(Person.first_name, Person.email))).all())
    assert emails == {"Valid": "ada@example.com", "Malformed": None}
    assert (await session.execute(select(Person.id).where(Person.deleted_at.is_not(None)))).all() == []


@pytest.mark.asyncio
async def test_merge_duplicate_tags_drops_links_that_would_collide(session) -> None:
    sales = Tag(tenant_id="t1", name="Sales")
    sales_lower = Tag(tenant_id="t1", name="sales")
    session.add_all([sales, sales_lower])
    await session.flush()
    session.add_all(
        [
            Taggable(tag_id=sales.id, taggable_type="companies", taggable_id=1),
            Taggable(tag_id=sales_lower.id, taggable_type="companies", taggable_id=1),
            Taggable(tag_id=sales_lower.id, taggable_type="companies", taggable_id=2),
        ]
    )
    await session.commit()

    report = await CleanupService(session).cleanup([{"type": "merge_duplicate_tags"}], tenant_id="t1")

    assert report.total_cleaned == 1
    links = (
        await session.execute(
            select(Taggable.tag_id, Taggable.taggable_type, Taggable.taggable_id).order_by(Taggable.taggable_id)
        )
    ).all()
    assert [tuple(link) for link in links] == [(sales.id, "companies", 1), (sales.id, "companies", 2)]
    assert (await session.execute(select(Tag.name))).scalars().all() == ["Sales"]
