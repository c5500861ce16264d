"""Tests for saved-lead reconciliation, patching, filtering and CSV export."""

import csv
import io
from datetime import datetime, timezone

import pytest

from vib3sales.service.crm import CSV_COLUMNS, CrmService, export_filename, new_lead_id
from vib3sales.service.errors import ValidationError
from vib3sales.storage.memory import MemoryStore
from vib3sales.storage.models import LeadPriority, LeadStatus, build_source


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def crm(memory_store):
    return CrmService(memory_store, max_tags=3)


OWNER = "user-1"


def business(source_id="b1", **extra):
    data = {"id": source_id, "name": "Acme Bakery", "industry": "Bakery", "location": "Austin"}
    data.update(extra)
    return build_source("business", data)


class TestSave:
    def test_new_lead_defaults(self, crm):
        lead = crm.save(OWNER, business())
        assert lead.id.startswith("lead_b1_")
        assert lead.status == LeadStatus.NEW
        assert lead.priority == LeadPriority.MEDIUM
        assert lead.tags == []
        assert lead.notes == ""
        assert lead.created_at == lead.updated_at

    def test_initial_status_and_priority(self, crm):
        lead = crm.save(OWNER, business(), status=LeadStatus.CONTACTED, priority=LeadPriority.HIGH)
        assert lead.status == LeadStatus.CONTACTED
        assert lead.priority == LeadPriority.HIGH

    def test_resave_merges_snapshot_and_keeps_crm_fields(self, crm):
        first = crm.save(OWNER, business(negativeScore=40))
        crm.patch(OWNER, first.id, {"status": "Meeting", "tags": ["warm"], "notes": "call back"})
        again = crm.save(OWNER, business(negativeScore=75))
        assert again.id == first.id
        assert again.source.data["negativeScore"] == 75
        assert again.source.data["name"] == "Acme Bakery"
        assert again.status == LeadStatus.MEETING
        assert again.tags == ["warm"]
        assert again.notes == "call back"
        assert again.updated_at > first.updated_at
        assert len(crm.list(OWNER)) == 1

    def test_resave_ignores_requested_status(self, crm):
        first = crm.save(OWNER, business())
        again = crm.save(OWNER, business(), status=LeadStatus.WON)
        assert again.id == first.id
        assert again.status == LeadStatus.NEW

    def test_owners_are_isolated(self, crm):
        crm.save(OWNER, business())
        crm.save("user-2", business())
        assert len(crm.list(OWNER)) == 1
        assert len(crm.list("user-2")) == 1

    def test_lead_id_prefix_per_source(self):
        assert new_lead_id(build_source("social", {"id": "s1"})).startswith("lead_social_s1_")
        assert new_lead_id(build_source("job", {"id": "j1"})).startswith("lead_job_j1_")


class TestPatch:
    def test_tags_deduplicated_and_trimmed(self, crm):
        lead = crm.save(OWNER, business())
        patched = crm.patch(OWNER, lead.id, {"tags": [" vip ", "vip", "", "warm"]})
        assert patched.tags == ["vip", "warm"]

    def test_tags_truncated_to_cap(self, crm):
        lead = crm.save(OWNER, business())
        patched = crm.patch(OWNER, lead.id, {"tags": ["a", "b", "a", "c", "d", "e"]})
        assert patched.tags == ["a", "b", "c"]

    def test_default_cap_is_twelve(self, memory_store):
        service = CrmService(memory_store)
        lead = service.save(OWNER, business())
        tags = [f"t{i}" for i in range(15)]
        assert service.patch(OWNER, lead.id, {"tags": tags}).tags == tags[:12]

    def test_invalid_status(self, crm):
        lead = crm.save(OWNER, business())
        with pytest.raises(ValidationError):
            crm.patch(OWNER, lead.id, {"status": "Dormant"})

    def test_unknown_field(self, crm):
        lead = crm.save(OWNER, business())
        with pytest.raises(ValidationError):
            crm.patch(OWNER, lead.id, {"owner_user_id": "someone-else"})

    def test_dates_normalized_to_utc_and_clearable(self, crm):
        lead = crm.save(OWNER, business())
        naive = datetime(2026, 3, 1, 9, 30)
        patched = crm.patch(OWNER, lead.id, {"next_follow_up_at": naive})
        assert patched.next_follow_up_at == naive.replace(tzinfo=timezone.utc)
        cleared = crm.patch(OWNER, lead.id, {"next_follow_up_at": None})
        assert cleared.next_follow_up_at is None

    def test_absent_keys_untouched(self, crm):
        lead = crm.save(OWNER, business())
        crm.patch(OWNER, lead.id, {"notes": "keep me"})
        patched = crm.patch(OWNER, lead.id, {"priority": "Low"})
        assert patched.notes == "keep me"
        assert patched.priority == LeadPriority.LOW

    def test_not_owned_returns_none(self, crm):
        lead = crm.save(OWNER, business())
        assert crm.patch("intruder", lead.id, {"notes": "x"}) is None
        assert crm.list(OWNER)[0].notes == ""


class TestRemoveAndList:
    def test_unsave_and_delete_are_idempotent(self, crm):
        lead = crm.save(OWNER, business())
        crm.unsave(OWNER, "business", "b1")
        crm.unsave(OWNER, "business", "b1")
        crm.delete(OWNER, lead.id)
        assert crm.list(OWNER) == []

    def test_delete_ignores_other_owner(self, crm):
        lead = crm.save(OWNER, business())
        crm.delete("intruder", lead.id)
        assert len(crm.list(OWNER)) == 1

    def test_filters_and_search(self, crm):
        bakery = crm.save(OWNER, business())
        crm.save(OWNER, build_source("job", {"id": "j1", "title": "Engineer", "company": "Initech"}))
        crm.save(OWNER, build_source("social", {"id": "s1", "title": "Need a website", "author": "sam"}))
        crm.patch(OWNER, bakery.id, {"status": "Won", "tags": ["priority-client"]})

        assert [lead.source.kind for lead in crm.list(OWNER, source="job")] == ["job"]
        assert [lead.id for lead in crm.list(OWNER, status=LeadStatus.WON)] == [bakery.id]
        assert [lead.id for lead in crm.list(OWNER, q="PRIORITY-client")] == [bakery.id]
        assert [lead.source.kind for lead in crm.list(OWNER, q="initech")] == ["job"]

    def test_search_matches_social_description(self, crm):
        crm.save(OWNER, business())
        idea = crm.save(
            OWNER,
            build_source(
                "social",
                {"id": "s2", "title": "Ask HN", "description": "Looking for a Shopify developer"},
            ),
        )
        assert [lead.id for lead in crm.list(OWNER, q="shopify")] == [idea.id]

    def test_most_recently_updated_first(self, crm):
        first = crm.save(OWNER, business("b1"))
        crm.save(OWNER, business("b2"))
        crm.patch(OWNER, first.id, {"notes": "touched"})
        assert crm.list(OWNER)[0].id == first.id


class TestExport:
    def test_header_and_rows(self, crm):
        lead = crm.save(OWNER, business(contactEmail="hi@acme.test", websiteUrl="https://acme.test"))
        crm.patch(OWNER, lead.id, {"tags": ["a", "b"], "notes": 'line one\nsaid "hi"'})
        body = crm.export_csv(OWNER)
        assert not body.endswith("\n")
        rows = list(csv.reader(io.StringIO(body)))
        assert tuple(rows[0]) == CSV_COLUMNS
        row = dict(zip(CSV_COLUMNS, rows[1]))
        assert row["source"] == "business"
        assert row["name"] == "Acme Bakery"
        assert row["subtitle"] == "Bakery • Austin"
        assert row["tags"] == "a|b"
        assert row["notes"] == 'line one\nsaid "hi"'
        assert row["contactEmail"] == "hi@acme.test"
        assert row["websiteUrl"] == "https://acme.test"
        assert row["nextFollowUpAt"] == ""
        assert row["updatedAt"].endswith("Z")

    def test_every_field_quoted(self, crm):
        crm.save(OWNER, business())
        header = crm.export_csv(OWNER).split("\n")[0]
        assert header.startswith('"source","name"')

    def test_empty_export_is_header_only(self, crm):
        assert crm.export_csv(OWNER) == ",".join(f'"{column}"' for column in CSV_COLUMNS)

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Ann Lee", "vib3_saved_leads_Ann_Lee.csv"),
            ("  ", "vib3_saved_leads_agent.csv"),
            (None, "vib3_saved_leads_agent.csv"),
        ],
    )
    def test_filename(self, name, expected):
        assert export_filename(name) == expected
