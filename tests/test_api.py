"""
Endpoint tests for the donor import API, run against a per-test SQLite
database with the background import executed inside the test client call.
"""

import json

import pytest

from donor_import.api.dependencies import get_inference_provider, get_job_store
from donor_import.core.config import settings
from donor_import.domain.imports.jobs import JobStore
from donor_import.integrations.inference import InferenceTimeout
from tests.utils.fakes import (
    FailingInferenceProvider,
    count_donors,
    donor_rows,
    make_csv,
    make_xlsx,
    unreachable_session_factory,
)

HEADERS = ["firstname", "lastname", "email"]


def _upload(content, name="donors.csv"):
    return {"file": (name, content, "text/csv")}


def _process(client, content, headers=None, **data):
    response = client.post("/import/process", files=_upload(content), data=data, headers=headers or {})
    assert response.status_code == 200, response.text
    return response.json()


def test_root_and_health(client):
    assert client.get("/").json()["message"] == "Donor Import API"
    health = client.get("/health").json()
    assert health["status"] == "healthy"


class TestPreviewAndAnalyze:
    def test_preview(self, client):
        response = client.post("/import/preview", files=_upload(make_csv(HEADERS, donor_rows(12))))

        assert response.status_code == 200
        body = response.json()
        assert body["file_type"] == "csv"
        assert body["headers"] == HEADERS
        assert body["total_rows"] == 12
        assert len(body["preview"]) == settings.import_preview_rows
        assert body["preview"][0] == {"firstname": "First1", "lastname": "Last1", "email": "donor1@example.org"}

    def test_preview_xlsx(self, client):
        content = make_xlsx(["First Name", "Last Name"], [["Ada", "Lovelace"]])
        response = client.post("/import/preview", files=_upload(content, name="donors.xlsx"))

        assert response.status_code == 200
        assert response.json()["file_type"] == "excel"
        assert response.json()["preview"] == [{"First Name": "Ada", "Last Name": "Lovelace"}]

    def test_analyze_falls_back_when_inference_times_out(self, app, client):
        provider = FailingInferenceProvider(InferenceTimeout("inference timed out after 30s"))
        app.dependency_overrides[get_inference_provider] = lambda: provider
        content = make_csv(["First Name", "Last Name", "E-mail", "Mobile"], [["Ada", "Lovelace", "ada@example.org", "555-123-4567"]])

        response = client.post("/import/analyze", files=_upload(content))

        assert response.status_code == 200
        body = response.json()
        assert provider.calls == 1
        assert body["mapping_strategy"] == "heuristic"
        assert body["required_fields_covered"] is True
        assert "AI inference unavailable" in body["data_quality_notes"][0]
        targets = {m["source_column"]: m["target_field"] for m in body["field_mappings"]}
        assert targets == {"First Name": "first_name", "Last Name": "last_name", "E-mail": "email", "Mobile": "phone"}

    def test_unreadable_file_is_400(self, client):
        response = client.post("/import/analyze", files=_upload(b"\x00\x01\x02\x03binary\x00", name="data.bin"))
        assert response.status_code == 400

    def test_oversized_file_is_413(self, client, monkeypatch):
        monkeypatch.setattr(settings, "upload_max_file_size_mb", 0)
        response = client.post("/import/preview", files=_upload(make_csv(HEADERS, donor_rows(1))))
        assert response.status_code == 413


class TestValidate:
    def test_clean_file(self, client):
        mapping = json.dumps({"firstname": "first_name", "lastname": "last_name", "email": "email"})
        response = client.post(
            "/import/validate",
            files=_upload(make_csv(HEADERS, donor_rows(3))),
            data={"field_mapping": mapping, "options": json.dumps({"skipDuplicates": True})},
        )

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["total_rows"] == 3
        assert body["valid_rows"] == 3
        assert body["error_rows"] == 0
        assert body["new_records"] == 3
        assert body["required_fields_covered"] is True
        assert body["field_statistics"]["email"]["valid"] == 3
        assert count_donors() == 0

    def test_mapping_is_inferred_when_omitted(self, client):
        rows = donor_rows(2) + [["Bad", "Email", "not-an-email"]]
        response = client.post("/import/validate", files=_upload(make_csv(HEADERS, rows)))

        body = response.json()
        assert body["error_rows"] == 1
        assert body["row_outcomes"][2]["errors"] == ["Invalid email format: not-an-email"]

    def test_invalid_json_is_422(self, client):
        response = client.post(
            "/import/validate",
            files=_upload(make_csv(HEADERS, donor_rows(1))),
            data={"field_mapping": "{not json"},
        )
        assert response.status_code == 422
        assert "field_mapping" in response.json()["detail"]

    def test_non_boolean_option_is_422(self, client):
        response = client.post(
            "/import/process",
            files=_upload(make_csv(HEADERS, donor_rows(1))),
            data={"options": json.dumps({"skipDuplicates": "sometimes"})},
        )
        assert response.status_code == 422
        assert "skipDuplicates" in response.json()["detail"]
        assert count_donors() == 0

    def test_unknown_column_is_422(self, client):
        response = client.post(
            "/import/validate",
            files=_upload(make_csv(HEADERS, donor_rows(1))),
            data={"field_mapping": json.dumps({"Nickname": "first_name"})},
        )
        assert response.status_code == 422
        assert "Nickname" in response.json()["detail"]


class TestProcessAndJobs:
    def test_import_runs_to_completion(self, client):
        rows = donor_rows(3)
        rows[1][2] = "not-an-email"

        started = _process(client, make_csv(HEADERS, rows), name="Spring appeal")
        assert started["total_rows"] == 3

        status = client.get(f"/import/{started['import_id']}/status")
        assert status.status_code == 200
        job = status.json()["job"]
        assert job["name"] == "Spring appeal"
        assert job["status"] == "completed"
        assert (job["processed_rows"], job["successful_rows"], job["error_rows"]) == (3, 2, 1)
        assert job["progress"] == 100
        assert job["estimated_time_remaining_seconds"] is None
        assert job["errors"] == [{"row_index": 2, "errors": ["Invalid email format: not-an-email"]}]
        assert count_donors() == 2

    def test_second_import_skips_existing_donors(self, client):
        _process(client, make_csv(HEADERS, donor_rows(2)))
        second = _process(
            client,
            make_csv(HEADERS, donor_rows(3)),
            options=json.dumps({"skip_duplicates": True}),
        )

        job = client.get(f"/import/{second['import_id']}/status").json()["job"]
        assert (job["successful_rows"], job["skipped_rows"]) == (1, 2)
        assert job["summary"]["skipped_duplicates"] == 2
        assert count_donors() == 3

    def test_jobs_are_listed_per_caller(self, client):
        first = _process(client, make_csv(HEADERS, donor_rows(1)), headers={"X-User-Id": "alice"})
        second = _process(client, make_csv(HEADERS, donor_rows(1, start=5)), headers={"X-User-Id": "alice"})
        _process(client, make_csv(HEADERS, donor_rows(1, start=9)), headers={"X-User-Id": "bob"})

        listed = client.get("/import/jobs", headers={"X-User-Id": "alice"}).json()
        assert {job["id"] for job in listed["jobs"]} == {first["import_id"], second["import_id"]}
        assert listed["limit"] == 50

        other = client.get(f"/import/{first['import_id']}/status", headers={"X-User-Id": "bob"})
        assert other.status_code == 404

    def test_unknown_job_is_404(self, client):
        assert client.get("/import/does-not-exist/status").status_code == 404
        assert client.post("/import/does-not-exist/cancel").status_code == 404

    def test_job_database_outage_is_503(self, app, client, tmp_path):
        app.dependency_overrides[get_job_store] = lambda: JobStore(unreachable_session_factory(tmp_path))

        assert client.get("/import/jobs").status_code == 503
        assert client.get("/import/some-job/status").status_code == 503
        assert client.get("/import/some-job/errors").status_code == 503
        assert client.post("/import/some-job/cancel").status_code == 503

    def test_finished_job_cannot_be_cancelled(self, client):
        started = _process(client, make_csv(HEADERS, donor_rows(1)), headers={"X-User-Id": "alice"})

        response = client.post(
            f"/import/{started['import_id']}/cancel",
            json={"reason": "too late"},
            headers={"X-User-Id": "alice"},
        )
        assert response.status_code == 400

        foreign = client.post(f"/import/{started['import_id']}/cancel", headers={"X-User-Id": "mallory"})
        assert foreign.status_code == 404


class TestErrorReport:
    @pytest.fixture
    def import_id(self, client):
        rows = donor_rows(3)
        rows[1][2] = "not-an-email"
        rows[2][0] = "=HYPERLINK(\"http://evil\")"
        rows[2][2] = "bad"
        return _process(client, make_csv(HEADERS, rows))["import_id"]

    def test_json_report(self, client, import_id):
        body = client.get(f"/import/{import_id}/errors").json()

        assert [row["row_index"] for row in body["rows"]] == [2, 3]
        assert body["rows"][0]["errors"] == ["Invalid email format: not-an-email"]
        assert body["rows"][0]["raw_data"]["email"] == "not-an-email"
        assert body["job"]["error_rows"] == 2

    def test_csv_report(self, client, import_id):
        response = client.get(f"/import/{import_id}/errors", params={"format": "csv"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        lines = response.text.splitlines()
        assert lines[0] == "Row Number,Error Message,Original Data"
        assert lines[1].startswith("2,Invalid email format: not-an-email,")
        assert len(lines) == 3

    def test_unknown_format_is_rejected(self, client, import_id):
        response = client.get(f"/import/{import_id}/errors", params={"format": "xml"})
        assert response.status_code == 422
