"""
Tests for the SQL-backed donor record store: atomic batches, duplicate
candidate lookup and value sanitization.
"""

import pytest

from donor_import.db.models import Donor
from donor_import.db.session import get_session_local
from donor_import.domain.imports.errors import RecordStoreError
from donor_import.domain.imports.record_store import SqlRecordStore, prepare_record, sanitize_value
from donor_import.integrations.notifications import LoggingWelcomeNotifier
from tests.utils.fakes import count_donors, stored_donor


@pytest.fixture
def store():
    return SqlRecordStore()


class TestSanitization:
    @pytest.mark.parametrize("value", ["=SUM(A1:A9)", "+cmd", "-2+3", "@import"])
    def test_formula_prefixes_are_escaped(self, value):
        assert sanitize_value("notes", value) == "'" + value

    def test_email_and_phone_are_left_alone(self):
        assert sanitize_value("phone", "+14155551234") == "+14155551234"
        assert sanitize_value("email", "-ops@example.org") == "-ops@example.org"

    def test_plain_and_non_text_values(self):
        assert sanitize_value("city", "Springfield") == "Springfield"
        assert sanitize_value("email_opt_in", True) is True

    def test_prepare_record_for_create(self):
        prepared = prepare_record(
            {"first_name": "Ada", "notes": "=HYPERLINK()", "email": "", "full_name": "Ada Lovelace", "nickname": "x"},
            apply_defaults=True,
        )
        assert prepared["first_name"] == "Ada"
        assert prepared["last_name"] == ""
        assert prepared["notes"] == "'=HYPERLINK()"
        assert prepared["donor_type"] == "community"
        assert prepared["country"] == "USA"
        assert "email" not in prepared
        assert "full_name" not in prepared
        assert "nickname" not in prepared

    def test_prepare_record_for_update_has_no_defaults(self):
        assert prepare_record({"city": "Paris", "phone": None}, apply_defaults=False) == {"city": "Paris"}


class TestBatches:
    def test_batch_commits_creates_and_updates(self, store):
        with store.batch() as batch:
            donor_id = batch.create_record({"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.org"})
            batch.update_record(donor_id, {"city": "London"})

        record = stored_donor(donor_id)
        assert record["first_name"] == "Ada"
        assert record["city"] == "London"
        assert record["engagement_level"] == "new"
        assert record["email_opt_in"] is True
        assert count_donors() == 1

    def test_failure_inside_batch_rolls_back_everything(self, store):
        with pytest.raises(RuntimeError):
            with store.batch() as batch:
                batch.create_record({"first_name": "Ada", "last_name": "Lovelace"})
                batch.create_record({"first_name": "Alan", "last_name": "Turing"})
                raise RuntimeError("interrupted")

        assert count_donors() == 0

    def test_updating_a_missing_donor_fails_the_batch(self, store):
        with pytest.raises(RecordStoreError, match="no longer exists"):
            with store.batch() as batch:
                batch.create_record({"first_name": "Grace", "last_name": "Hopper"})
                batch.update_record("missing-id", {"city": "Arlington"})

        assert count_donors() == 0

    def test_commit_errors_become_record_store_errors(self, store):
        with store.batch() as batch:
            batch.create_record({"first_name": "Ada", "last_name": "Lovelace"}, record_id="fixed-id")

        with pytest.raises(RecordStoreError, match="Could not commit"):
            with store.batch() as batch:
                batch.create_record({"first_name": "Ada", "last_name": "Byron"}, record_id="fixed-id")

        assert stored_donor("fixed-id")["last_name"] == "Lovelace"
        assert stored_donor("other-id") is None


class TestFindCandidates:
    @pytest.fixture(autouse=True)
    def donors(self, store):
        with store.batch() as batch:
            batch.create_record(
                {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.org", "city": "London"},
                record_id="ada",
            )
            batch.create_record({"first_name": "Alan", "last_name": "Turing"}, record_id="alan")
        session = get_session_local()()
        try:
            session.add(Donor(id="gone", first_name="Ada", last_name="Lovelace", is_active=False))
            session.commit()
        finally:
            session.close()

    def test_email_match_is_case_insensitive(self, store):
        (match,) = store.find_candidates("ADA@Example.org", None, None)
        assert match.id == "ada"
        assert match.city == "London"

    def test_name_match_requires_both_names(self, store):
        assert [c.id for c in store.find_candidates(None, "alan", "TURING")] == ["alan"]
        assert store.find_candidates(None, "Alan", None) == []
        assert store.find_candidates(None, None, None) == []

    def test_inactive_donors_are_ignored(self, store):
        assert [c.id for c in store.find_candidates(None, "Ada", "Lovelace")] == ["ada"]


def test_logging_notifier_counts_donors_with_email():
    notifier = LoggingWelcomeNotifier()
    notifier("d1", {"email": "ada@example.org"})
    notifier("d2", {"email": None})
    assert notifier.sent == 1
