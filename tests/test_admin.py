"""Tests for administration: templates, approval routes and users."""

from tests.helpers import API, assert_error, auth, create_document, submit


def _route_payload(template_id, steps):
    return {"name": "Purchase route", "template_id": template_id, "steps": steps}


class TestTemplates:
    """Scenario: Admins manage templates; everyone can read them."""

    def test_admin_creates_template(self, client, users):
        response = client.post(
            f"{API}/templates",
            json={
                "name": "Travel request",
                "fields": [{"name": "destination", "required": True}],
            },
            headers=auth(users["admin"]),
        )
        assert response.status_code == 201
        data = response.json()
        assert data["created_by_id"] == users["admin"].id
        assert data["fields"][0]["name"] == "destination"

    def test_user_cannot_create_template(self, client, users):
        response = client.post(
            f"{API}/templates", json={"name": "Nope"}, headers=auth(users["initiator"])
        )
        assert_error(response, 403, "forbidden")

    def test_everyone_reads_templates(self, client, users, template):
        response = client.get(f"{API}/templates", headers=auth(users["a"]))
        assert [t["name"] for t in response.json()] == ["Purchase request"]

    def test_update_template(self, client, users, template):
        response = client.put(
            f"{API}/templates/{template.id}",
            json={"description": "Hardware and software"},
            headers=auth(users["admin"]),
        )
        assert response.json()["description"] == "Hardware and software"
        assert response.json()["name"] == "Purchase request"

    def test_template_in_use_cannot_be_deleted(self, client, users, template, draft):
        response = client.delete(f"{API}/templates/{template.id}", headers=auth(users["admin"]))
        assert_error(response, 409, "precondition_failed")

    def test_unused_template_is_deleted(self, client, users, template):
        response = client.delete(f"{API}/templates/{template.id}", headers=auth(users["admin"]))
        assert response.status_code == 204
        response = client.get(f"{API}/templates/{template.id}", headers=auth(users["admin"]))
        assert_error(response, 404, "not_found")


class TestRoutes:
    """Scenario: Routes are validated when saved."""

    def test_create_route(self, client, users, template):
        response = client.post(
            f"{API}/routes",
            json=_route_payload(
                template.id,
                [
                    {"step_number": 2, "name": "Finance", "approver_ids": [users["c"].id]},
                    {
                        "step_number": 1,
                        "name": "Managers",
                        "approver_role": "APPROVER",
                        "require_all": True,
                    },
                ],
            ),
            headers=auth(users["admin"]),
        )
        assert response.status_code == 201
        steps = response.json()["steps"]
        assert [s["step_number"] for s in steps] == [1, 2]
        assert steps[0]["approver_role"] == "APPROVER"

    def test_gap_in_step_numbers_is_rejected(self, client, users, template):
        response = client.post(
            f"{API}/routes",
            json=_route_payload(
                template.id,
                [
                    {"step_number": 1, "name": "One", "approver_ids": [users["a"].id]},
                    {"step_number": 3, "name": "Three", "approver_ids": [users["b"].id]},
                ],
            ),
            headers=auth(users["admin"]),
        )
        assert_error(response, 400, "validation_failed", "without gaps")

    def test_duplicate_step_numbers_are_rejected(self, client, users, template):
        response = client.post(
            f"{API}/routes",
            json=_route_payload(
                template.id,
                [
                    {"step_number": 1, "name": "One", "approver_ids": [users["a"].id]},
                    {"step_number": 1, "name": "Again", "approver_ids": [users["b"].id]},
                ],
            ),
            headers=auth(users["admin"]),
        )
        assert_error(response, 400, "validation_failed")

    def test_step_needs_approvers(self, client, users, template):
        response = client.post(
            f"{API}/routes",
            json=_route_payload(template.id, [{"step_number": 1, "name": "Empty"}]),
            headers=auth(users["admin"]),
        )
        assert_error(response, 400, "validation_failed", "approver")

    def test_approver_role_must_be_able_to_approve(self, client, users, template):
        response = client.post(
            f"{API}/routes",
            json=_route_payload(
                template.id,
                [{"step_number": 1, "name": "Everyone", "approver_role": "USER"}],
            ),
            headers=auth(users["admin"]),
        )
        assert_error(response, 400, "validation_failed", "approver_role")

    def test_one_route_per_template(self, client, users, template, two_step_route):
        response = client.post(
            f"{API}/routes",
            json=_route_payload(
                template.id,
                [{"step_number": 1, "name": "One", "approver_ids": [users["a"].id]}],
            ),
            headers=auth(users["admin"]),
        )
        assert_error(response, 409, "precondition_failed")

    def test_non_admin_cannot_manage_routes(self, client, users, two_step_route):
        response = client.get(f"{API}/routes", headers=auth(users["a"]))
        assert_error(response, 403, "forbidden")

    def test_replacing_steps(self, client, users, two_step_route):
        response = client.put(
            f"{API}/routes/{two_step_route.id}",
            json={
                "steps": [
                    {"step_number": 1, "name": "Single", "approver_ids": [users["c"].id]}
                ]
            },
            headers=auth(users["admin"]),
        )
        assert response.status_code == 200
        assert [s["name"] for s in response.json()["steps"]] == ["Single"]

    def test_deleting_route_falls_back_to_single_approver(
        self, client, users, template, two_step_route, draft
    ):
        response = client.delete(
            f"{API}/routes/{two_step_route.id}", headers=auth(users["admin"])
        )
        assert response.status_code == 204

        response = submit(client, users["initiator"], draft["id"], approver_id=users["c"].id)
        assert response.json()["current_step_number"] is None
        assert response.json()["current_approver_id"] == users["c"].id


class TestUsers:
    """Scenario: Admins manage users."""

    def test_admin_creates_user(self, client, users):
        response = client.post(
            f"{API}/users",
            json={"name": "Nia New", "email": "Nia.New@Example.com", "role": "APPROVER"},
            headers=auth(users["admin"]),
        )
        assert response.status_code == 201
        assert response.json()["email"] == "nia.new@example.com"

    def test_duplicate_email_is_precondition_failure(self, client, users):
        response = client.post(
            f"{API}/users",
            json={"name": "Copy", "email": "ann.approver@example.com"},
            headers=auth(users["admin"]),
        )
        assert_error(response, 409, "precondition_failed")

    def test_invalid_email_is_schema_error(self, client, users):
        response = client.post(
            f"{API}/users",
            json={"name": "Bad", "email": "not-an-email"},
            headers=auth(users["admin"]),
        )
        assert response.status_code == 422

    def test_non_admin_sees_only_self(self, client, users):
        response = client.get(f"{API}/users", headers=auth(users["initiator"]))
        assert [u["id"] for u in response.json()] == [users["initiator"].id]

    def test_change_role(self, client, users):
        response = client.put(
            f"{API}/users/{users['outsider'].id}",
            json={"role": "APPROVER"},
            headers=auth(users["admin"]),
        )
        assert response.json()["role"] == "APPROVER"

    def test_user_with_documents_cannot_be_deleted(self, client, users, template):
        create_document(client, users["initiator"], template.id)
        response = client.delete(
            f"{API}/users/{users['initiator'].id}", headers=auth(users["admin"])
        )
        assert_error(response, 409, "precondition_failed")

    def test_delete_unused_user(self, client, users):
        response = client.delete(
            f"{API}/users/{users['outsider'].id}", headers=auth(users["admin"])
        )
        assert response.status_code == 204

    def test_unknown_caller_is_unauthenticated(self, client, users):
        response = client.get(f"{API}/users", headers={"X-User-Id": "9999"})
        assert_error(response, 401, "unauthenticated")


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
