"""Tests for the SQLite assessment store."""

import pytest
from core.errors import InputError
from core.storage import AssessmentStore


@pytest.fixture
def store(tmp_path):
    return AssessmentStore(db_path=str(tmp_path / "test.db"))


class TestAssessments:

    def test_save_appends_versions(self, store):
        first = store.save_assessment({"id": "asm_1", "status": "completed", "confidence": 70})
        second = store.save_assessment({"id": "asm_1", "status": "completed", "confidence": 85})

        assert first["version"] == 1
        assert second["version"] == 2
        assert second["storage_version"] == "1.0"
        assert "stored_at" in second
        assert store.list_assessment_versions("asm_1") == [1, 2]
        assert store.get_assessment("asm_1")["confidence"] == 85
        assert store.get_assessment("asm_1", version=1)["confidence"] == 70

    def test_missing(self, store):
        assert store.get_assessment("nope") is None
        assert store.list_assessment_versions("nope") == []

    def test_id_required(self, store):
        with pytest.raises(InputError):
            store.save_assessment({"status": "completed"})

    def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "shared.db")
        AssessmentStore(db_path=path).save_assessment({"id": "asm_2"})
        assert AssessmentStore(db_path=path).get_assessment("asm_2")["id"] == "asm_2"


class TestPolicies:

    def test_add_and_list(self, store):
        store.add_local_plan("lp-2030", "Borough Local Plan 2030", adopted=2021)
        store.add_policy("lp-2030", {"policy_ref": "H2", "content": "Affordable housing"})
        store.add_policy("lp-2030", {"policy_ref": "D1", "title": "Design", "content": "High quality design"})

        policies = store.get_policies("lp-2030")
        assert [p["policy_ref"] for p in policies] == ["D1", "H2"]
        assert policies[1]["id"] == "lp-2030:H2"
        assert policies[1]["title"] == "H2"
        assert policies[0]["local_plan_id"] == "lp-2030"
        assert store.get_local_plan("lp-2030")["adopted"] == 2021

    def test_replace_same_ref(self, store):
        store.add_local_plan("lp-2030", "Plan")
        store.add_policy("lp-2030", {"policy_ref": "H1", "content": "v1"})
        store.add_policy("lp-2030", {"policy_ref": "H1", "content": "v2"})
        policies = store.get_policies("lp-2030")
        assert len(policies) == 1
        assert policies[0]["content"] == "v2"

    def test_unknown_plan(self, store):
        with pytest.raises(InputError):
            store.add_policy("missing", {"policy_ref": "H1", "content": "text"})

    def test_content_required(self, store):
        store.add_local_plan("lp-2030", "Plan")
        with pytest.raises(InputError):
            store.add_policy("lp-2030", {"policy_ref": "H1"})


class TestComplianceAndScenarios:

    def test_compliance_check_replaced(self, store):
        store.save_compliance_check({"assessment_id": "asm_1", "local_plan_id": "lp", "overall_compliance": 0.4})
        store.save_compliance_check({"assessment_id": "asm_1", "local_plan_id": "lp", "overall_compliance": 0.8})
        assert store.get_compliance_check("asm_1", "lp")["overall_compliance"] == 0.8
        assert store.get_compliance_check("asm_1", "other") is None

    def test_scenarios(self, store):
        store.save_scenario({"id": "scn_a", "plan_id": "lp", "updated_at": "2026-01-01T00:00:00"})
        store.save_scenario({"id": "scn_b", "plan_id": "lp", "updated_at": "2026-02-01T00:00:00"})

        assert [s["id"] for s in store.list_scenarios("lp")] == ["scn_b", "scn_a"]
        assert store.delete_scenario("scn_a")
        assert not store.delete_scenario("scn_a")
        assert store.get_scenario("scn_a") is None

    def test_site_allocations(self, store):
        store.add_site_allocation("lp", {"name": "North", "capacity": 200})
        store.add_site_allocation("lp", {"name": "South", "capacity": 150})
        assert [a["name"] for a in store.get_site_allocations("lp")] == ["North", "South"]
        assert store.get_site_allocations("other") == []
