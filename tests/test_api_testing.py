"""
TestMaster AI
Tests — plans, cases and executions API.

Covers:
    - CRUD for each record kind
    - owner scoping (another user's record is a 404, admins may list all)
    - validation errors (422) and missing permissions (403)
    - two-step delete: request, confirm, invalid token, cancel
"""

import pytest


def auth_headers(user_id="tester-1"):
    return {"X-User-Id": user_id}


def _delete_confirmed(client, url, user_id="tester-1"):
    first = client.delete(url, headers=auth_headers(user_id))
    assert first.status_code == 409
    token = first.get_json()["details"]["token"]
    return client.delete(f"{url}?confirm={token}", headers=auth_headers(user_id))


# ═════════════════════════════════════════════════════════════════════════════
# TEST PLANS
# ═════════════════════════════════════════════════════════════════════════════

class TestPlans:
    def test_create_and_get(self, client, plan):
        assert plan["owner_id"] == "tester-1"
        assert plan["generated_by_ai"] is False

        res = client.get(f"/api/v1/plans/{plan['id']}", headers=auth_headers())
        assert res.status_code == 200
        data = res.get_json()
        assert data["title"] == "Checkout plan"
        assert data["case_count"] == 0

    def test_client_cannot_set_ai_marker(self, client, tester):
        res = client.post("/api/v1/plans", json={"title": "x", "generated_by_ai": True},
                          headers=auth_headers())
        assert res.get_json()["generated_by_ai"] is False

    def test_list(self, client, plan):
        res = client.get("/api/v1/plans", headers=auth_headers())
        data = res.get_json()
        assert data["total"] == 1
        assert data["items"][0]["id"] == plan["id"]

    def test_update(self, client, plan):
        res = client.put(f"/api/v1/plans/{plan['id']}", json={"scope": "Web shop"},
                         headers=auth_headers())
        assert res.status_code == 200
        assert res.get_json()["scope"] == "Web shop"

    def test_title_required(self, client, tester):
        res = client.post("/api/v1/plans", json={"objective": "x"}, headers=auth_headers())
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_CONSTRAINT"
        assert body["details"] == {"title": "required"}

    def test_non_object_body(self, client, tester):
        res = client.post("/api/v1/plans", json=["title"], headers=auth_headers())
        assert res.status_code == 422

    def test_missing(self, client, tester):
        res = client.get("/api/v1/plans/999", headers=auth_headers())
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


class TestOwnership:
    def test_other_user_sees_404(self, client, plan, make_user):
        make_user("tester-2")
        res = client.get(f"/api/v1/plans/{plan['id']}", headers=auth_headers("tester-2"))
        assert res.status_code == 404
        res = client.put(f"/api/v1/plans/{plan['id']}", json={"title": "mine"},
                         headers=auth_headers("tester-2"))
        assert res.status_code == 404

    def test_other_user_list_is_empty(self, client, plan, make_user):
        make_user("tester-2")
        assert client.get("/api/v1/plans", headers=auth_headers("tester-2")).get_json()["total"] == 0

    def test_admin_reads_any_record(self, client, plan, admin):
        res = client.get(f"/api/v1/plans/{plan['id']}", headers=auth_headers(admin))
        assert res.status_code == 200

    def test_scope_all(self, client, plan, admin, make_user):
        make_user("tester-2")
        assert client.get("/api/v1/plans?scope=all", headers=auth_headers(admin)).get_json()["total"] == 1
        # scope=all is ignored for non-admins
        assert client.get("/api/v1/plans?scope=all",
                          headers=auth_headers("tester-2")).get_json()["total"] == 0

    def test_cannot_link_case_to_foreign_plan(self, client, plan, make_user):
        make_user("tester-2")
        res = client.post("/api/v1/cases", json={"title": "x", "plan_id": plan["id"]},
                          headers=auth_headers("tester-2"))
        assert res.status_code == 404

    def test_cannot_move_case_into_foreign_plan(self, client, plan, make_user):
        make_user("tester-2")
        own = client.post("/api/v1/cases", json={"title": "Mine"}, headers=auth_headers("tester-2")).get_json()
        res = client.put(f"/api/v1/cases/{own['id']}", json={"plan_id": plan["id"]},
                         headers=auth_headers("tester-2"))
        assert res.status_code == 404
        again = client.get(f"/api/v1/cases/{own['id']}", headers=auth_headers("tester-2")).get_json()
        assert again["plan_id"] is None


class TestPermissionFlags:
    def test_missing_flag_is_403(self, client, make_user):
        make_user("no-plans", manage_plans=False)
        res = client.get("/api/v1/plans", headers=auth_headers("no-plans"))
        assert res.status_code == 403
        body = res.get_json()
        assert body["code"] == "ERR_FORBIDDEN"
        assert body["details"]["required"] == "manage_plans"

    def test_flag_scoped_to_kind(self, client, make_user):
        make_user("no-plans", manage_plans=False)
        assert client.get("/api/v1/cases", headers=auth_headers("no-plans")).status_code == 200

    def test_admin_ignores_flags(self, client, make_user):
        make_user("adm", role="admin", manage_plans=False)
        assert client.get("/api/v1/plans", headers=auth_headers("adm")).status_code == 200

    def test_unauthenticated(self, client):
        res = client.get("/api/v1/plans")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"


# ═════════════════════════════════════════════════════════════════════════════
# TEST CASES
# ═════════════════════════════════════════════════════════════════════════════

class TestCases:
    def test_create_with_steps(self, case, plan):
        assert case["plan_id"] == plan["id"]
        assert case["priority"] == "high"
        assert [s["order"] for s in case["steps"]] == [1, 2]
        assert case["steps"][1]["expected_result"] == "Order confirmed"

    def test_filter_by_plan(self, client, case, plan, tester):
        client.post("/api/v1/cases", json={"title": "Loose"}, headers=auth_headers())
        res = client.get(f"/api/v1/cases?plan_id={plan['id']}", headers=auth_headers())
        items = res.get_json()["items"]
        assert [c["id"] for c in items] == [case["id"]]

    def test_bad_plan_filter(self, client, tester):
        assert client.get("/api/v1/cases?plan_id=abc", headers=auth_headers()).status_code == 422

    def test_replace_steps(self, client, case):
        res = client.put(f"/api/v1/cases/{case['id']}",
                         json={"steps": ["Open the shop"]}, headers=auth_headers())
        steps = res.get_json()["steps"]
        assert len(steps) == 1
        assert steps[0]["action"] == "Open the shop"

    def test_update_keeps_steps_when_absent(self, client, case):
        res = client.put(f"/api/v1/cases/{case['id']}", json={"priority": "low"},
                         headers=auth_headers())
        data = res.get_json()
        assert data["priority"] == "low"
        assert len(data["steps"]) == 2

    def test_invalid_priority(self, client, tester):
        res = client.post("/api/v1/cases", json={"title": "x", "priority": "urgent"},
                          headers=auth_headers())
        assert res.status_code == 422
        assert "priority" in res.get_json()["details"]

    def test_unknown_plan(self, client, tester):
        res = client.post("/api/v1/cases", json={"title": "x", "plan_id": 999},
                          headers=auth_headers())
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# TEST EXECUTIONS
# ═════════════════════════════════════════════════════════════════════════════

@pytest.fixture()
def execution(client, plan, case):
    res = client.post(
        "/api/v1/executions",
        json={"plan_id": plan["id"], "case_id": case["id"], "status": "failed",
              "actual_result": "Card declined"},
        headers=auth_headers(),
    )
    assert res.status_code == 201
    return res.get_json()


class TestExecutions:
    def test_create(self, execution, case):
        assert execution["case_id"] == case["id"]
        assert execution["status"] == "failed"

    def test_default_status(self, client, plan, case):
        res = client.post("/api/v1/executions", json={"plan_id": plan["id"], "case_id": case["id"]},
                          headers=auth_headers())
        assert res.get_json()["status"] == "not_tested"

    def test_requires_links(self, client, tester):
        res = client.post("/api/v1/executions", json={"status": "passed"}, headers=auth_headers())
        assert res.status_code == 422
        assert set(res.get_json()["details"]) == {"plan_id", "case_id"}

    def test_invalid_status(self, client, plan, case):
        res = client.post("/api/v1/executions",
                          json={"plan_id": plan["id"], "case_id": case["id"], "status": "green"},
                          headers=auth_headers())
        assert res.status_code == 422

    def test_update_status(self, client, execution):
        res = client.put(f"/api/v1/executions/{execution['id']}", json={"status": "passed"},
                         headers=auth_headers())
        assert res.get_json()["status"] == "passed"

    def test_filters(self, client, execution, plan):
        res = client.get(f"/api/v1/executions?plan_id={plan['id']}&status=failed",
                         headers=auth_headers())
        assert res.get_json()["total"] == 1
        res = client.get("/api/v1/executions?status=passed", headers=auth_headers())
        assert res.get_json()["total"] == 0


# ═════════════════════════════════════════════════════════════════════════════
# TWO-STEP DELETE
# ═════════════════════════════════════════════════════════════════════════════

class TestTwoStepDelete:
    def test_first_delete_asks_for_confirmation(self, client, plan):
        res = client.delete(f"/api/v1/plans/{plan['id']}", headers=auth_headers())
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFIRMATION_REQUIRED"
        assert body["details"]["resource"] == "TestPlan"
        assert body["details"]["resource_id"] == plan["id"]
        assert body["details"]["expires_in"] > 0
        # still there
        assert client.get(f"/api/v1/plans/{plan['id']}", headers=auth_headers()).status_code == 200

    def test_repeat_request_returns_same_token(self, client, plan):
        url = f"/api/v1/plans/{plan['id']}"
        first = client.delete(url, headers=auth_headers()).get_json()["details"]["token"]
        second = client.delete(url, headers=auth_headers()).get_json()["details"]["token"]
        assert first == second

    def test_confirmed_delete(self, client, plan):
        res = _delete_confirmed(client, f"/api/v1/plans/{plan['id']}")
        assert res.status_code == 200
        assert client.get(f"/api/v1/plans/{plan['id']}", headers=auth_headers()).status_code == 404

    def test_plan_delete_keeps_cases(self, client, plan, case):
        _delete_confirmed(client, f"/api/v1/plans/{plan['id']}")
        res = client.get(f"/api/v1/cases/{case['id']}", headers=auth_headers())
        assert res.status_code == 200
        assert res.get_json()["plan_id"] is None

    def test_case_delete_removes_executions(self, client, case, execution):
        assert _delete_confirmed(client, f"/api/v1/cases/{case['id']}").status_code == 200
        res = client.get(f"/api/v1/executions/{execution['id']}", headers=auth_headers())
        assert res.status_code == 404

    def test_confirm_token_in_body(self, client, execution):
        url = f"/api/v1/executions/{execution['id']}"
        token = client.delete(url, headers=auth_headers()).get_json()["details"]["token"]
        res = client.delete(url, json={"confirm_token": token}, headers=auth_headers())
        assert res.status_code == 200

    def test_wrong_token(self, client, plan):
        url = f"/api/v1/plans/{plan['id']}"
        token = client.delete(url, headers=auth_headers()).get_json()["details"]["token"]
        res = client.delete(f"{url}?confirm=not-the-token", headers=auth_headers())
        assert res.status_code == 409
        # a wrong guess does not reset the live confirmation
        assert res.get_json()["details"]["token"] == token

    def test_token_bound_to_record(self, client, plan, tester):
        other = client.post("/api/v1/plans", json={"title": "Other"}, headers=auth_headers()).get_json()
        token = client.delete(f"/api/v1/plans/{plan['id']}",
                              headers=auth_headers()).get_json()["details"]["token"]
        res = client.delete(f"/api/v1/plans/{other['id']}?confirm={token}", headers=auth_headers())
        assert res.status_code == 409

    def test_cancel(self, client, plan):
        url = f"/api/v1/plans/{plan['id']}"
        token = client.delete(url, headers=auth_headers()).get_json()["details"]["token"]
        assert client.delete(f"/api/v1/confirmations/{token}", headers=auth_headers()).status_code == 200
        res = client.delete(f"{url}?confirm={token}", headers=auth_headers())
        assert res.status_code == 409
        assert res.get_json()["details"]["token"] != token

    def test_cancel_unknown_token(self, client, tester):
        assert client.delete("/api/v1/confirmations/nope", headers=auth_headers()).status_code == 404

    def test_foreign_record_is_404_before_confirmation(self, client, plan, make_user):
        make_user("tester-2")
        res = client.delete(f"/api/v1/plans/{plan['id']}", headers=auth_headers("tester-2"))
        assert res.status_code == 404
