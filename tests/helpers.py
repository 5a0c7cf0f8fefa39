from __future__ import annotations

from typing import Any

from docflow.enums import UserRole
from docflow.models import ApprovalRoute, RouteStep, Template, User

API = "/api/v1"


def auth(user: User) -> dict[str, str]:
    return {"X-User-Id": str(user.id)}


def assert_error(response, status_code: int, code: str, detail_contains: str | None = None) -> None:
    assert response.status_code == status_code
    payload = response.json()
    assert payload["code"] == code
    if detail_contains is not None:
        assert detail_contains in payload["detail"]


def make_user(session, name: str, role: UserRole = UserRole.USER) -> User:
    user = User(
        name=name,
        email=f"{name.lower().replace(' ', '.')}@example.com",
        role=role,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def make_template(session, owner: User, name: str = "Purchase request") -> Template:
    template = Template(name=name, fields=[], created_by_id=owner.id)
    session.add(template)
    session.commit()
    session.refresh(template)
    return template


def make_route(session, template: Template, steps: list[dict[str, Any]]) -> ApprovalRoute:
    """Attach a route to ``template``; each step is a dict of RouteStep columns."""
    route = ApprovalRoute(
        name=f"{template.name} route",
        template_id=template.id,
        steps=[RouteStep(**step) for step in steps],
    )
    session.add(route)
    session.commit()
    session.refresh(route)
    return route


def create_document(client, user: User, template_id: int, title: str = "New laptops"):
    return client.post(
        f"{API}/documents",
        json={"title": title, "template_id": template_id},
        headers=auth(user),
    )


def submit(client, user: User, document_id: int, approver_id: int | None = None):
    payload = {} if approver_id is None else {"approver_id": approver_id}
    return client.post(
        f"{API}/documents/{document_id}/submit", json=payload, headers=auth(user)
    )


def approve(client, user: User, document_id: int, comment: str | None = None):
    return client.post(
        f"{API}/documents/{document_id}/approve",
        json={"comment": comment},
        headers=auth(user),
    )


def reject(client, user: User, document_id: int, comment: str | None = None):
    return client.post(
        f"{API}/documents/{document_id}/reject",
        json={"comment": comment},
        headers=auth(user),
    )


def history(client, user: User, document_id: int) -> list[dict[str, Any]]:
    response = client.get(f"{API}/documents/{document_id}/history", headers=auth(user))
    assert response.status_code == 200
    return response.json()


def approvals(client, user: User, document_id: int) -> list[dict[str, Any]]:
    response = client.get(f"{API}/documents/{document_id}/approvals", headers=auth(user))
    assert response.status_code == 200
    return response.json()


def notifications(client, user: User) -> list[dict[str, Any]]:
    response = client.get(f"{API}/notifications", headers=auth(user))
    assert response.status_code == 200
    return response.json()["items"]
