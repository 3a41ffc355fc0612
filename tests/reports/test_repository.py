"""
Unit tests for the in-memory Report Repository.
"""
import pytest

from hvac_reports.domain.models import ReportDefinition, ReportQuery, ReportType, SharePermissionLevel
from hvac_reports.reports.errors import ReportNotFound, ValidationError


def create(repository, data, **overrides):
    payload = dict(data)
    payload.update(overrides)
    return repository.create(ReportDefinition.model_validate(payload))


class TestCreate:
    def test_assigns_id_and_timestamps(self, repository, jobs_report_data):
        report_id = create(repository, jobs_report_data)
        stored = repository.get(report_id)
        assert stored.id == report_id
        assert stored.created_at is not None
        assert stored.updated_at == stored.created_at

    def test_keeps_supplied_id(self, repository, jobs_report_data):
        assert create(repository, jobs_report_data, id="jobs-by-district") == "jobs-by-district"

    def test_duplicate_id_rejected(self, repository, jobs_report_data):
        create(repository, jobs_report_data, id="dup")
        with pytest.raises(ValidationError, match="already exists"):
            create(repository, jobs_report_data, id="dup")

    def test_invalid_definition_rejected(self, repository):
        """Should compile on save so broken definitions never get stored."""
        with pytest.raises(ValidationError):
            create(repository, {
                "name": "broken",
                "dataSources": [{"id": "e", "type": "operational", "table": "equipment"}],
                "calculatedFields": [{"name": "x", "formula": "import os"}],
            })
        assert repository.list() == []


class TestList:
    """Tests for listing filters."""

    @pytest.fixture
    def populated(self, repository, jobs_report_data, margin_report_data):
        create(repository, jobs_report_data, id="a", category="operations", tags=["jobs"], owner="anna")
        create(repository, margin_report_data, id="b", category="sales", isPublic=True)
        create(repository, jobs_report_data, id="c", name="Job template", isTemplate=True, owner="piotr",
               sharedWith=[{"principal": "anna", "permission": "view"}])
        return repository

    def test_most_recent_first(self, populated):
        reports = populated.list()
        assert {r.id for r in reports} == {"a", "b", "c"}
        stamps = [r.updated_at for r in reports]
        assert stamps == sorted(stamps, reverse=True)

    def test_filters(self, populated):
        assert [r.id for r in populated.list(ReportQuery(category="sales"))] == ["b"]
        assert [r.id for r in populated.list(ReportQuery(is_template=True))] == ["c"]
        assert [r.id for r in populated.list(ReportQuery(is_public=True))] == ["b"]
        assert [r.id for r in populated.list(ReportQuery(report_type=ReportType.TABLE))] == ["b"]

    def test_search_matches_name_and_tags(self, populated):
        assert [r.id for r in populated.list(ReportQuery(search="TEMPLATE"))] == ["c"]
        assert [r.id for r in populated.list(ReportQuery(search="jobs"))] == ["a"]

    def test_principal_visibility(self, populated):
        """Should show owned, shared and public reports only."""
        assert {r.id for r in populated.list(ReportQuery(principal="anna"))} == {"a", "b", "c"}
        assert {r.id for r in populated.list(ReportQuery(principal="piotr"))} == {"b", "c"}
        assert {r.id for r in populated.list(ReportQuery(principal="ewa"))} == {"b"}

    def test_limit(self, populated):
        assert len(populated.list(ReportQuery(limit=2))) == 2


class TestUpdate:
    def test_partial_update_accepts_camel_case(self, repository, jobs_report_data):
        report_id = create(repository, jobs_report_data)
        updated = repository.update(report_id, {"name": "Renamed", "isPublic": True})
        assert updated.name == "Renamed"
        assert updated.is_public is True
        assert updated.data_sources == repository.get(report_id).data_sources

    def test_immutable_fields_ignored(self, repository, jobs_report_data):
        report_id = create(repository, jobs_report_data)
        created_at = repository.get(report_id).created_at
        updated = repository.update(report_id, {"id": "other", "createdAt": "2000-01-01T00:00:00Z"})
        assert updated.id == report_id
        assert updated.created_at == created_at

    def test_execution_stats_cannot_be_patched(self, repository, jobs_report_data):
        report_id = create(repository, jobs_report_data)
        updated = repository.update(report_id, {"lastExecuted": "2000-01-01T00:00:00Z", "executionTime": 5})
        assert updated.last_executed is None
        assert updated.execution_time is None

    def test_unknown_field_rejected(self, repository, jobs_report_data):
        report_id = create(repository, jobs_report_data)
        with pytest.raises(ValidationError, match="Unknown report field"):
            repository.update(report_id, {"colour": "red"})

    def test_update_revalidates(self, repository, jobs_report_data):
        report_id = create(repository, jobs_report_data)
        with pytest.raises(ValidationError):
            repository.update(report_id, {"visualization": {"type": "bar_chart", "groupBy": "nope"}})
        assert repository.get(report_id).visualization.group_by == "district"

    def test_missing_report(self, repository):
        with pytest.raises(ReportNotFound):
            repository.update("missing", {"name": "x"})


class TestRemoveAndShare:
    def test_remove(self, repository, jobs_report_data):
        report_id = create(repository, jobs_report_data)
        repository.remove(report_id)
        assert repository.get(report_id) is None
        with pytest.raises(ReportNotFound):
            repository.remove(report_id)

    def test_share_replaces_existing_grant(self, repository, jobs_report_data):
        report_id = create(repository, jobs_report_data)
        repository.share_report(report_id, "anna")
        updated = repository.share_report(report_id, "anna", SharePermissionLevel.EDIT)
        assert [(g.principal, g.permission) for g in updated.shared_with] == [("anna", SharePermissionLevel.EDIT)]

    def test_unshare(self, repository, jobs_report_data):
        report_id = create(repository, jobs_report_data)
        repository.share_report(report_id, "anna")
        assert repository.unshare_report(report_id, "anna").shared_with == []


class TestExecutionStats:
    def test_record_execution(self, repository, jobs_report_data):
        """Should stamp the run without touching updated_at."""
        report_id = create(repository, jobs_report_data)
        before = repository.get(report_id)
        stamped = repository.record_execution(report_id, 12.5)
        assert stamped.execution_time == 12.5
        assert stamped.last_executed.tzinfo is not None
        assert stamped.last_executed >= before.created_at
        assert stamped.updated_at == before.updated_at
        assert repository.get(report_id).execution_time == 12.5

    def test_record_execution_missing_report(self, repository):
        with pytest.raises(ReportNotFound):
            repository.record_execution("missing", 1.0)

    def test_create_clears_supplied_stats(self, repository, jobs_report_data):
        report_id = create(repository, jobs_report_data, lastExecuted="2024-01-01T00:00:00Z", executionTime=9.0)
        stored = repository.get(report_id)
        assert stored.last_executed is None
        assert stored.execution_time is None


class TestTemplates:
    def test_instantiate_template(self, repository, jobs_report_data):
        """Should copy the definition into a fresh private report."""
        template_id = create(repository, jobs_report_data, isTemplate=True, isPublic=True,
                             sharedWith=[{"principal": "anna"}])
        report_id = repository.create_from_template(template_id, "My jobs", owner="piotr")
        report = repository.get(report_id)
        assert report_id != template_id
        assert report.name == "My jobs"
        assert report.owner == "piotr"
        assert report.is_template is False
        assert report.is_public is False
        assert report.shared_with == []
        assert report.data_sources == repository.get(template_id).data_sources

    def test_non_template_rejected(self, repository, jobs_report_data):
        report_id = create(repository, jobs_report_data)
        with pytest.raises(ValidationError, match="not a template"):
            repository.create_from_template(report_id, "copy")
