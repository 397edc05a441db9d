from __future__ import annotations

import json
import unittest
from collections.abc import Generator
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from opstrack.db import get_db
from opstrack.main import app
from opstrack.models import User, WorkflowRequest
from opstrack.services.attachments import AttachmentStore, get_attachment_store


class _FakeWorkflowDB:
    def __init__(self, *, user: User | None, requests: dict[str, WorkflowRequest] | None = None):
        self.user = user
        self.requests = dict(requests or {})
        self.added: list[object] = []
        self.deleted: list[object] = []

    def scalar(self, _statement):  # type: ignore[no-untyped-def]
        return self.user

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        if model is WorkflowRequest:
            return self.requests.get(pk)
        return None

    def add(self, obj) -> None:  # type: ignore[no-untyped-def]
        self.added.append(obj)

    def delete(self, obj) -> None:  # type: ignore[no-untyped-def]
        self.deleted.append(obj)

    def commit(self) -> None:
        return None


class _Store(AttachmentStore):
    configured = True

    def __init__(self):
        self.calls: list[tuple[str, str]] = []

    def upload(self, data: bytes, folder: str, suggested_name: str) -> dict[str, str]:
        self.calls.append((folder, suggested_name))
        return {"url": f"https://files.example/{suggested_name}", "id": suggested_name}


def _override_get_db(fake_db: _FakeWorkflowDB):
    def _override() -> Generator[_FakeWorkflowDB, None, None]:
        yield fake_db

    return _override


def _user(*, can_import: bool) -> User:
    return User(id=11, username="ops-11", password="x", role="employee", has_import_export_permission=can_import)


def _workflow_request(owner: User) -> WorkflowRequest:
    now_utc = datetime.now(timezone.utc)
    row = WorkflowRequest(
        id="REQ-0042",
        user_id=owner.id,
        title="Panels from Ningbo",
        current_stage_id=1,
        stage_history=[{"stageId": 1, "documents": []}],
        creation_date=now_utc,
        last_modified=now_utc,
    )
    row.user = owner
    return row


class WorkflowRequestEndpointTests(unittest.TestCase):
    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def test_create_requires_import_export_permission(self) -> None:
        app.dependency_overrides[get_db] = _override_get_db(_FakeWorkflowDB(user=_user(can_import=False)))
        client = TestClient(app)

        response = client.post("/api/workflow-requests", json={"employeeId": "ops-11", "title": "Import"})

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "IMPORT_EXPORT_FORBIDDEN")

    def test_create_applies_defaults(self) -> None:
        fake_db = _FakeWorkflowDB(user=_user(can_import=True))
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        client = TestClient(app)

        response = client.post("/api/workflow-requests", json={"employeeId": "ops-11", "title": "Import"})

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertTrue(body["id"].startswith("REQ-"))
        self.assertEqual(body["type"], "استيراد")
        self.assertEqual(body["priority"], "منخفضة")
        self.assertEqual(body["currentStageId"], 1)

    def test_update_attaches_named_documents_to_latest_stage(self) -> None:
        owner = _user(can_import=True)
        row = _workflow_request(owner)
        fake_db = _FakeWorkflowDB(user=owner, requests={row.id: row})
        store = _Store()
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        app.dependency_overrides[get_attachment_store] = lambda: store
        client = TestClient(app)

        response = client.put(
            f"/api/workflow-requests/{row.id}",
            data={
                "requestData": json.dumps(
                    {
                        "employeeId": "ops-11",
                        "currentStageId": 2,
                        "stageHistory": [{"stageId": 1, "documents": []}, {"stageId": 2}],
                        "containerCount20ft": 3,
                    }
                )
            },
            files=[
                ("files", ("doc-1___invoice___ci.pdf", b"%PDF", "application/pdf")),
                ("files", ("no-separators.pdf", b"%PDF", "application/pdf")),
            ],
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["currentStageId"], 2)
        self.assertEqual(body["containerCount20ft"], 3)
        documents = body["stageHistory"][-1]["documents"]
        self.assertEqual(len(documents), 1)
        self.assertEqual(documents[0]["id"], "doc-1")
        self.assertEqual(documents[0]["type"], "invoice")
        self.assertEqual(documents[0]["fileName"], "ci.pdf")
        self.assertEqual(store.calls, [("qssun_reports/workflows/ops-11", "ci.pdf")])

    def test_delete_without_employee_is_unauthorized(self) -> None:
        owner = _user(can_import=True)
        row = _workflow_request(owner)
        fake_db = _FakeWorkflowDB(user=owner, requests={row.id: row})
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        client = TestClient(app)

        response = client.request("DELETE", f"/api/workflow-requests/{row.id}", json={})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(fake_db.deleted, [])

    def test_delete_with_permission_removes_request(self) -> None:
        owner = _user(can_import=True)
        row = _workflow_request(owner)
        fake_db = _FakeWorkflowDB(user=owner, requests={row.id: row})
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        client = TestClient(app)

        response = client.request("DELETE", f"/api/workflow-requests/{row.id}", json={"employeeId": "ops-11"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(fake_db.deleted, [row])


if __name__ == "__main__":
    unittest.main()
