"""
Unit tests for the Result Merger.
"""
from hvac_reports.domain.models import JoinKind, ReportDefinition
from hvac_reports.reports.merger import hash_join, merge_results, namespace_rows

LEFT_COLS = ["jobs._id", "jobs.contactId"]
RIGHT_COLS = ["contacts._id", "contacts.name"]


def jobs(*contact_ids):
    return [{"jobs._id": f"j{i}", "jobs.contactId": c} for i, c in enumerate(contact_ids)]


def contacts(*ids):
    return [{"contacts._id": c, "contacts.name": f"Client {c}"} for c in ids]


class TestHashJoin:
    """Tests for the join primitive."""

    def test_inner_join(self):
        """Should keep only matched pairs in left order."""
        out = hash_join(jobs("a", "b", "x"), contacts("b", "a"), "jobs.contactId", "contacts._id",
                        JoinKind.INNER, LEFT_COLS, RIGHT_COLS)
        assert [(r["jobs._id"], r["contacts.name"]) for r in out] == [("j0", "Client a"), ("j1", "Client b")]

    def test_left_join_fills_nulls(self):
        out = hash_join(jobs("a", "x"), contacts("a"), "jobs.contactId", "contacts._id",
                        JoinKind.LEFT, LEFT_COLS, RIGHT_COLS)
        assert out[1] == {"jobs._id": "j1", "jobs.contactId": "x", "contacts._id": None, "contacts.name": None}

    def test_right_join_follows_right_side(self):
        """Should preserve every right row and order output by it."""
        out = hash_join(jobs("a"), contacts("z", "a"), "jobs.contactId", "contacts._id",
                        JoinKind.RIGHT, LEFT_COLS, RIGHT_COLS)
        assert [r["contacts._id"] for r in out] == ["z", "a"]
        assert out[0]["jobs._id"] is None
        assert out[1]["jobs._id"] == "j0"
        assert list(out[0]) == LEFT_COLS + RIGHT_COLS

    def test_null_keys_never_match(self):
        out = hash_join(jobs(None), [{"contacts._id": None, "contacts.name": "ghost"}],
                        "jobs.contactId", "contacts._id", JoinKind.INNER, LEFT_COLS, RIGHT_COLS)
        assert out == []

    def test_one_to_many_in_both_build_directions(self):
        """Should give the same output whichever side the hash table is built on."""
        small_left = hash_join(jobs("a"), contacts("a", "a", "b"), "jobs.contactId", "contacts._id",
                               JoinKind.INNER, LEFT_COLS, RIGHT_COLS)
        assert len(small_left) == 2
        small_right = hash_join(jobs("a", "b", "a"), contacts("a"), "jobs.contactId", "contacts._id",
                                JoinKind.INNER, LEFT_COLS, RIGHT_COLS)
        assert [r["jobs._id"] for r in small_right] == ["j0", "j2"]


class TestMergeResults:
    """Tests for plan-driven merging."""

    def _plan(self, compiler, **extra):
        data = {
            "name": "jobs with clients",
            "dataSources": [
                {"id": "jobs", "type": "operational", "table": "jobs",
                 "joins": [{"table": "contacts", "on": "contactId = _id", "type": "left"}]},
                {"id": "contacts", "type": "operational", "table": "contacts"},
            ],
        }
        data.update(extra)
        return compiler.compile(ReportDefinition.model_validate(data))

    def test_namespace_rows(self):
        rows = namespace_rows([{"_id": "c1", "name": "A", "extra": 1}], ["contacts._id", "contacts.name"])
        assert rows == [{"contacts._id": "c1", "contacts.name": "A"}]

    def test_joins_and_namespaces(self, compiler):
        plan = self._plan(compiler)
        merged = merge_results(plan, {
            "jobs": [{"_id": "j1", "contactId": "c1"}, {"_id": "j2", "contactId": "c9"}],
            "contacts": [{"_id": "c1", "name": "Client 1"}],
        })
        assert len(merged) == 2
        assert merged[0]["contacts.name"] == "Client 1"
        assert merged[1]["contacts.name"] is None
        assert set(merged[0]) == set(plan.schema)

    def test_missing_table_treated_as_empty(self, compiler):
        """Should merge around a table whose backend returned nothing."""
        plan = self._plan(compiler)
        merged = merge_results(plan, {"jobs": [{"_id": "j1", "contactId": "c1"}]})
        assert len(merged) == 1
        assert merged[0]["contacts._id"] is None

    def test_disconnected_tables_are_unioned(self, compiler):
        """Should append unjoined tables in declaration order."""
        plan = compiler.compile(ReportDefinition.model_validate({
            "name": "two lists",
            "dataSources": [
                {"id": "jobs", "type": "operational", "table": "jobs"},
                {"id": "equipment", "type": "operational", "table": "equipment"},
            ],
        }))
        merged = merge_results(plan, {
            "jobs": [{"_id": "j1"}],
            "equipment": [{"_id": "e1"}, {"_id": "e2"}],
        })
        assert [r["jobs._id"] for r in merged] == ["j1", None, None]
        assert [r["equipment._id"] for r in merged] == [None, "e1", "e2"]
