"""
Approval request API tests.

Test blocks:
  1. Open a request
  2. Respond (envelope, error codes)
  3. Cancel, actionable, stats
"""

import pytest


def _url(bu, suffix=""):
    return f"/api/v1/business-units/{bu.id}/approvals{suffix}"


@pytest.fixture()
def step_ids(release_workflow):
    return [s.id for s in release_workflow.steps_for_version()]


@pytest.fixture()
def opened(client, bu, people, auth_headers, release_workflow):
    res = client.post(
        _url(bu),
        json={"workflow_id": release_workflow.id, "entity_type": "PROPERTY_RELEASE", "entity_id": "rel-9"},
        headers=auth_headers(people["staff"]),
    )
    assert res.status_code == 201
    return res.get_json()["request_id"]


# ═════════════════════════════════════════════════════════════════════════
# 1. OPEN
# ═════════════════════════════════════════════════════════════════════════

class TestOpen:
    def test_open_request(self, client, bu, people, auth_headers, opened, release_workflow):
        res = client.get(_url(bu, f"/{opened}"), headers=auth_headers(people["staff"]))
        req = res.get_json()["request"]
        assert req["status"] == "PENDING"
        assert req["current_step_order"] == 1
        assert req["workflow_version"] == 1
        assert req["workflow"]["name"] == "Release Sign-off"
        assert len(req["steps"]) == 2
        assert req["responses"] == []

    def test_missing_fields(self, client, bu, people, auth_headers):
        res = client.post(_url(bu), json={"entity_type": "PROPERTY_RELEASE"}, headers=auth_headers(people["staff"]))
        assert res.status_code == 422
        assert set(res.get_json()["details"]) == {"workflow_id", "entity_id"}

    def test_duplicate_pending_is_409(self, client, bu, people, auth_headers, release_workflow, opened):
        res = client.post(
            _url(bu),
            json={"workflow_id": release_workflow.id, "entity_type": "PROPERTY_RELEASE", "entity_id": "rel-9"},
            headers=auth_headers(people["staff"]),
        )
        assert res.status_code == 409

    def test_property_must_belong_to_business_unit(self, client, bu, other_bu, people, auth_headers,
                                                   release_workflow, make_property):
        foreign = make_property(other_bu)
        res = client.post(
            _url(bu),
            json={"workflow_id": release_workflow.id, "entity_type": "PROPERTY_RELEASE",
                  "entity_id": "rel-10", "property_id": foreign.id},
            headers=auth_headers(people["staff"]),
        )
        assert res.status_code == 422
        assert res.get_json()["details"] == {"property_id": "property not found in this business unit"}

        own = make_property(bu)
        res = client.post(
            _url(bu),
            json={"workflow_id": release_workflow.id, "entity_type": "PROPERTY_RELEASE",
                  "entity_id": "rel-10", "property_id": own.id},
            headers=auth_headers(people["staff"]),
        )
        assert res.status_code == 201
        assert res.get_json()["request"]["property_id"] == own.id

    def test_get_from_other_business_unit_is_404(self, client, bu, other_bu, roles, make_user,
                                                 add_member, auth_headers, opened):
        outsider = make_user()
        add_member(outsider, other_bu, roles["md"])
        res = client.get(_url(other_bu, f"/{opened}"), headers=auth_headers(outsider))
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# 2. RESPOND
# ═════════════════════════════════════════════════════════════════════════

class TestRespond:
    def test_two_step_flow(self, client, bu, people, auth_headers, opened, step_ids):
        res = client.post(
            _url(bu, f"/{opened}/respond"),
            json={"step_id": step_ids[0], "decision": "APPROVED", "comments": "Looks fine"},
            headers=auth_headers(people["manager"]),
        )
        assert res.status_code == 200
        body = res.get_json()
        assert body["is_completed"] is False
        assert body["next_step"]["id"] == step_ids[1]
        assert body["response"]["comments"] == "Looks fine"
        assert body["request"]["current_step_order"] == 2

        res = client.post(
            _url(bu, f"/{opened}/respond"),
            json={"step_id": step_ids[1], "decision": "APPROVED"},
            headers=auth_headers(people["director"]),
        )
        body = res.get_json()
        assert body["is_completed"] is True
        assert body["next_step"] is None
        assert body["request"]["status"] == "APPROVED"

    def test_wrong_role_is_403(self, client, bu, people, auth_headers, opened, step_ids):
        res = client.post(
            _url(bu, f"/{opened}/respond"),
            json={"step_id": step_ids[0], "decision": "APPROVED"},
            headers=auth_headers(people["director"]),
        )
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_out_of_order_is_409_state(self, client, bu, people, auth_headers, opened, step_ids):
        res = client.post(
            _url(bu, f"/{opened}/respond"),
            json={"step_id": step_ids[1], "decision": "APPROVED"},
            headers=auth_headers(people["director"]),
        )
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_repeat_answer_is_409_duplicate(self, client, bu, people, auth_headers, opened, step_ids):
        payload = {"step_id": step_ids[0], "decision": "REJECTED"}
        headers = auth_headers(people["manager"])
        assert client.post(_url(bu, f"/{opened}/respond"), json=payload, headers=headers).status_code == 200
        res = client.post(_url(bu, f"/{opened}/respond"), json=payload, headers=headers)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    @pytest.mark.parametrize("payload, field", [
        ({"decision": "MAYBE"}, "decision"),
        ({"decision": "APPROVED"}, "step_id"),
        ({"decision": "APPROVED", "comments": 5}, "comments"),
    ])
    def test_bad_body(self, client, bu, people, auth_headers, opened, step_ids, payload, field):
        payload = {"step_id": step_ids[0], **payload} if field != "step_id" else payload
        res = client.post(_url(bu, f"/{opened}/respond"), json=payload, headers=auth_headers(people["manager"]))
        assert res.status_code == 422
        assert field in res.get_json()["details"]

    def test_unknown_request_is_404(self, client, bu, people, auth_headers, step_ids):
        res = client.post(
            _url(bu, "/999/respond"),
            json={"step_id": step_ids[0], "decision": "APPROVED"},
            headers=auth_headers(people["manager"]),
        )
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# 3. CANCEL / ACTIONABLE / STATS
# ═════════════════════════════════════════════════════════════════════════

class TestCancelAndQueries:
    def test_requester_cancels(self, client, bu, people, auth_headers, opened):
        res = client.post(_url(bu, f"/{opened}/cancel"), headers=auth_headers(people["staff"]))
        assert res.status_code == 200
        assert res.get_json()["request"]["status"] == "CANCELLED"

    def test_other_user_cannot_cancel(self, client, bu, people, auth_headers, opened):
        res = client.post(_url(bu, f"/{opened}/cancel"), headers=auth_headers(people["manager"]))
        assert res.status_code == 403

    def test_actionable_follows_current_step(self, client, bu, people, auth_headers, opened):
        mine = client.get(_url(bu, "/actionable"), headers=auth_headers(people["manager"])).get_json()
        assert [r["id"] for r in mine["items"]] == [opened]
        theirs = client.get(_url(bu, "/actionable"), headers=auth_headers(people["director"])).get_json()
        assert theirs["total"] == 0

    def test_list_filter_and_stats(self, client, bu, people, auth_headers, opened):
        headers = auth_headers(people["staff"])
        listed = client.get(_url(bu, "?status=PENDING"), headers=headers).get_json()
        assert listed["total"] == 1
        assert client.get(_url(bu, "?status=BOGUS"), headers=headers).status_code == 422

        stats = client.get(_url(bu, "/stats"), headers=headers).get_json()["stats"]
        assert stats["pending"] == 1
        assert stats["total"] == 1
        assert stats["by_workflow"] == {"Release Sign-off": 1}
