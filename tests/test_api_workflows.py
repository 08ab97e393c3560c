"""
Workflow API tests.

Test blocks:
  1. Authentication & business-unit scoping
  2. Create (201, 422 envelope, 409 duplicate)
  3. Read / update / steps / toggle / duplicate / delete
"""

import pytest

from property_records.models.audit import AuditLog, write_audit


def _url(bu, suffix=""):
    return f"/api/v1/business-units/{bu.id}/workflows{suffix}"


# ═════════════════════════════════════════════════════════════════════════
# 1. AUTH
# ═════════════════════════════════════════════════════════════════════════

class TestAuth:
    def test_missing_token_is_401(self, client, bu):
        res = client.get(_url(bu))
        assert res.status_code == 401
        body = res.get_json()
        assert body["success"] is False
        assert body["code"] == "ERR_UNAUTHENTICATED"

    def test_garbage_token_is_401(self, client, bu):
        res = client.get(_url(bu), headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401

    def test_non_member_is_403(self, client, bu, other_bu, people, auth_headers):
        res = client.get(_url(other_bu), headers=auth_headers(people["md"]))
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_missing_capability_is_403(self, client, bu, people, auth_headers, signoff_definition):
        res = client.post(_url(bu), json=signoff_definition(), headers=auth_headers(people["staff"]))
        assert res.status_code == 403
        assert res.get_json()["details"] == {"required": "APPROVAL.create"}

    def test_request_id_echoed(self, client, bu, people, auth_headers):
        headers = {**auth_headers(people["staff"]), "X-Request-ID": "abc123"}
        res = client.get(_url(bu), headers=headers)
        assert res.headers["X-Request-ID"] == "abc123"


# ═════════════════════════════════════════════════════════════════════════
# 2. CREATE
# ═════════════════════════════════════════════════════════════════════════

class TestCreate:
    def test_create_returns_workflow_id(self, client, bu, people, auth_headers, signoff_definition):
        res = client.post(_url(bu), json=signoff_definition(), headers=auth_headers(people["manager"]))
        assert res.status_code == 201
        body = res.get_json()
        assert body["success"] is True
        assert body["workflow_id"] == body["workflow"]["id"]
        assert [s["step_order"] for s in body["workflow"]["steps"]] == [1, 2]
        assert body["workflow"]["steps"][0]["role"]["name"] == "Manager"

    def test_validation_envelope(self, client, bu, roles, people, auth_headers):
        payload = {
            "name": "Gappy", "entity_type": "PROPERTY_RELEASE",
            "steps": [
                {"step_name": "A", "role_id": roles["manager"].id, "step_order": 1},
                {"step_name": "B", "role_id": roles["director"].id, "step_order": 3},
            ],
        }
        res = client.post(_url(bu), json=payload, headers=auth_headers(people["manager"]))
        assert res.status_code == 422
        body = res.get_json()
        assert body["success"] is False
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert "steps" in body["details"]

    def test_unknown_entity_type(self, client, bu, people, auth_headers, signoff_definition):
        payload = {**signoff_definition(), "entity_type": "PAYROLL"}
        res = client.post(_url(bu), json=payload, headers=auth_headers(people["manager"]))
        assert res.status_code == 422
        assert "entity_type" in res.get_json()["details"]

    def test_non_object_body(self, client, bu, people, auth_headers):
        res = client.post(_url(bu), json=["x"], headers=auth_headers(people["manager"]))
        assert res.status_code == 422

    def test_duplicate_name_is_409(self, client, bu, people, auth_headers, release_workflow, signoff_definition):
        res = client.post(_url(bu), json=signoff_definition(), headers=auth_headers(people["manager"]))
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"


# ═════════════════════════════════════════════════════════════════════════
# 3. READ / MUTATE
# ═════════════════════════════════════════════════════════════════════════

class TestManage:
    def test_list_and_get(self, client, bu, people, auth_headers, release_workflow):
        headers = auth_headers(people["staff"])
        listed = client.get(_url(bu, "?entity_type=PROPERTY_RELEASE"), headers=headers).get_json()
        assert listed["total"] == 1
        assert listed["items"][0]["name"] == "Release Sign-off"

        got = client.get(_url(bu, f"/{release_workflow.id}"), headers=headers).get_json()
        assert got["workflow"]["_count"] == {"steps": 2, "requests": 0}

    def test_get_missing_is_404(self, client, bu, people, auth_headers):
        res = client.get(_url(bu, "/999"), headers=auth_headers(people["staff"]))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_bad_filter(self, client, bu, people, auth_headers):
        res = client.get(_url(bu, "?entity_type=nope"), headers=auth_headers(people["staff"]))
        assert res.status_code == 422

    def test_update_and_replace_steps(self, client, bu, roles, people, auth_headers, release_workflow):
        headers = auth_headers(people["director"])
        res = client.put(_url(bu, f"/{release_workflow.id}"), json={"description": "Updated"}, headers=headers)
        assert res.status_code == 200
        assert res.get_json()["workflow"]["description"] == "Updated"

        steps = [{"step_name": "VP only", "role_id": roles["vp"].id, "step_order": 1}]
        res = client.put(_url(bu, f"/{release_workflow.id}/steps"), json={"steps": steps}, headers=headers)
        wf = res.get_json()["workflow"]
        assert wf["version"] == 2
        assert [s["step_name"] for s in wf["steps"]] == ["VP only"]

    def test_toggle(self, client, bu, people, auth_headers, release_workflow):
        res = client.post(_url(bu, f"/{release_workflow.id}/toggle"), headers=auth_headers(people["manager"]))
        assert res.get_json() == {"success": True, "workflow_id": release_workflow.id, "is_active": False}

    def test_duplicate(self, client, bu, people, auth_headers, release_workflow):
        headers = auth_headers(people["manager"])
        res = client.post(
            _url(bu, f"/{release_workflow.id}/duplicate"), json={"new_name": "Copy"}, headers=headers,
        )
        assert res.status_code == 201
        new_id = res.get_json()["workflow_id"]
        got = client.get(_url(bu, f"/{new_id}"), headers=headers).get_json()["workflow"]
        assert got["is_active"] is False
        assert len(got["steps"]) == 2

    @pytest.mark.parametrize("role_key, expected", [("staff", 403), ("md", 200)])
    def test_delete(self, client, bu, people, auth_headers, release_workflow, role_key, expected):
        res = client.delete(_url(bu, f"/{release_workflow.id}"), headers=auth_headers(people[role_key]))
        assert res.status_code == expected

    def test_stats(self, client, bu, people, auth_headers, release_workflow):
        stats = client.get(_url(bu, "/stats"), headers=auth_headers(people["staff"])).get_json()["stats"]
        assert stats["total"] == 1
        assert stats["active"] == 1


class TestAuditCorrelation:
    def test_audit_row_carries_request_id(self, client, bu, people, auth_headers, signoff_definition):
        headers = {**auth_headers(people["manager"]), "X-Request-ID": "req-42"}
        wf_id = client.post(_url(bu), json=signoff_definition(), headers=headers).get_json()["workflow_id"]
        row = AuditLog.query.filter_by(action="workflow.create", entity_id=str(wf_id)).one()
        assert row.request_id == "req-42"
        assert row.actor_user_id == people["manager"].id

    def test_unknown_action_rejected(self):
        with pytest.raises(ValueError):
            write_audit(entity_type="role", entity_id=1, action="role.promote")
