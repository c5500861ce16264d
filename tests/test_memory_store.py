"""Tests for the in-memory store: uniqueness, ownership and persistence."""

from datetime import timedelta

import pytest

from vib3sales.storage.errors import ConstraintViolation
from vib3sales.storage.memory import MemoryStore
from vib3sales.storage.models import CrmLead, LeadStatus, build_source, utcnow


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("Ann@Example.com", "Ann", password_hash="hash")


def _session(store, user_id, *, access_ttl=timedelta(hours=1), refresh_ttl=timedelta(days=1), tag="a"):
    now = utcnow()
    return store.create_session(
        user_id, f"access-{tag}", f"refresh-{tag}", now + access_ttl, now + refresh_ttl
    )


class TestUsers:
    def test_email_normalized_on_create(self, user):
        assert user.email == "ann@example.com"

    def test_duplicate_email_any_case(self, memory_store, user):
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("ANN@example.COM", "Other", password_hash="hash")
        assert excinfo.value.detail["field"] == "email"

    def test_requires_a_credential(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_user("nobody@example.com", "Nobody")

    def test_sso_only_user_allowed(self, memory_store):
        created = memory_store.create_user("sso@example.com", "Sso", sso_id="google-1")
        assert not created.has_password
        assert memory_store.get_user_by_sso_id("google-1").id == created.id

    def test_lookup_by_email_is_case_insensitive(self, memory_store, user):
        assert memory_store.get_user_by_email(" ANN@EXAMPLE.COM ").id == user.id

    def test_returned_users_are_copies(self, memory_store, user):
        fetched = memory_store.get_user(user.id)
        fetched.name = "Changed"
        assert memory_store.get_user(user.id).name == "Ann"

    def test_state_survives_reload(self, tmp_path, memory_store, user):
        _session(memory_store, user.id)
        reloaded = MemoryStore(fs_root=str(tmp_path))
        assert reloaded.get_user(user.id).email == "ann@example.com"
        assert len(reloaded.list_sessions(user.id, utcnow())) == 1


class TestSessions:
    def test_lookup_scoped_to_owner(self, memory_store, user):
        session = _session(memory_store, user.id)
        now = utcnow()
        assert memory_store.find_session_by_access_token("access-a", user.id, now).id == session.id
        assert memory_store.find_session_by_access_token("access-a", "intruder", now) is None

    def test_refresh_lookup_outlives_access(self, memory_store, user):
        _session(memory_store, user.id, access_ttl=timedelta(seconds=1))
        later = utcnow() + timedelta(minutes=5)
        assert memory_store.find_session_by_access_token("access-a", user.id, later) is None
        assert memory_store.find_session_by_refresh_token("refresh-a", user.id, later) is not None

    def test_rotation_clamps_to_refresh_expiry(self, memory_store, user):
        session = _session(memory_store, user.id, refresh_ttl=timedelta(hours=2))
        rotated = memory_store.rotate_session_token(
            session.id, "access-b", utcnow() + timedelta(days=7), utcnow()
        )
        assert rotated.access_token == "access-b"
        assert rotated.expires_at == session.refresh_expires_at
        assert memory_store.find_session_by_access_token("access-a", user.id, utcnow()) is None

    def test_revoke_requires_owner(self, memory_store, user):
        session = _session(memory_store, user.id)
        assert memory_store.revoke_session(session.id, "intruder") is False
        assert memory_store.get_session(session.id) is not None
        assert memory_store.revoke_session(session.id, user.id) is True
        assert memory_store.get_session(session.id) is None

    def test_revoke_user_sessions(self, memory_store, user):
        _session(memory_store, user.id, tag="a")
        _session(memory_store, user.id, tag="b")
        assert memory_store.revoke_user_sessions(user.id) == 2
        assert memory_store.list_sessions(user.id, utcnow()) == []

    def test_delete_expired_needs_both_expiries_past(self, memory_store, user):
        _session(memory_store, user.id, access_ttl=timedelta(seconds=1), refresh_ttl=timedelta(hours=1))
        assert memory_store.delete_expired_sessions(utcnow() + timedelta(minutes=1)) == 0
        assert memory_store.delete_expired_sessions(utcnow() + timedelta(hours=2)) == 1

    def test_access_expiry_cannot_exceed_refresh(self, memory_store, user):
        with pytest.raises(ValueError):
            _session(memory_store, user.id, access_ttl=timedelta(days=2), refresh_ttl=timedelta(days=1))


class TestOneTimeTokens:
    def test_consumed_once(self, memory_store, user):
        memory_store.create_email_verification_token(user.id, "tok", utcnow() + timedelta(hours=1))
        first = memory_store.consume_email_verification_token("tok", utcnow())
        assert first is not None and first.used
        assert memory_store.consume_email_verification_token("tok", utcnow()) is None

    def test_expired_not_consumable(self, memory_store, user):
        memory_store.create_password_reset_token(user.id, "tok", utcnow() + timedelta(minutes=1))
        assert memory_store.consume_password_reset_token("tok", utcnow() + timedelta(minutes=2)) is None

    def test_token_kinds_are_separate(self, memory_store, user):
        memory_store.create_password_reset_token(user.id, "tok", utcnow() + timedelta(hours=1))
        assert memory_store.consume_email_verification_token("tok", utcnow()) is None


class TestLoginAttempts:
    def test_only_failures_in_window(self, memory_store):
        now = utcnow()
        memory_store.record_login_attempt("Ann@example.com", "1.1.1.1", False, now - timedelta(hours=1))
        memory_store.record_login_attempt("ann@example.com", "1.1.1.1", False, now)
        memory_store.record_login_attempt("ann@example.com", "1.1.1.1", True, now)
        failed = memory_store.list_failed_login_attempts("ann@example.com", now - timedelta(minutes=15))
        assert len(failed) == 1

    def test_delete_before_cutoff(self, memory_store):
        now = utcnow()
        memory_store.record_login_attempt("ann@example.com", None, False, now - timedelta(hours=1))
        memory_store.record_login_attempt("ann@example.com", None, False, now)
        assert memory_store.delete_login_attempts_before(now - timedelta(minutes=15)) == 1
        assert len(memory_store.list_failed_login_attempts("ann@example.com", now - timedelta(days=1))) == 1


class TestLeads:
    def _lead(self, owner, lead_id="lead_b1_x", source_id="b1"):
        now = utcnow()
        return CrmLead(
            id=lead_id,
            owner_user_id=owner,
            source=build_source("business", {"id": source_id, "name": "Acme"}),
            created_at=now,
            updated_at=now,
        )

    def test_one_lead_per_owner_and_source(self, memory_store, user):
        memory_store.insert_lead(self._lead(user.id))
        with pytest.raises(ConstraintViolation):
            memory_store.insert_lead(self._lead(user.id, lead_id="lead_b1_y"))

    def test_other_owner_cannot_see_or_delete(self, memory_store, user):
        memory_store.insert_lead(self._lead(user.id))
        assert memory_store.get_lead("intruder", "lead_b1_x") is None
        assert memory_store.delete_lead("intruder", "lead_b1_x") is False
        assert memory_store.delete_lead_by_source("intruder", "business", "b1") is False
        assert memory_store.get_lead(user.id, "lead_b1_x") is not None

    def test_lead_round_trips_through_snapshot(self, tmp_path, memory_store, user):
        lead = self._lead(user.id)
        lead.status = LeadStatus.WON
        lead.tags = ["vip"]
        memory_store.insert_lead(lead)
        reloaded = MemoryStore(fs_root=str(tmp_path)).get_lead(user.id, lead.id)
        assert reloaded.status == LeadStatus.WON
        assert reloaded.tags == ["vip"]
        assert reloaded.source.data["name"] == "Acme"
        assert reloaded.source_key == ("business", "b1")
