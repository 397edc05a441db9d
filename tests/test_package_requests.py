from __future__ import annotations

import unittest
from collections.abc import Generator
from datetime import datetime, timezone

from fastapi.testclient import TestClient
from sqlalchemy import inspect

from opstrack.db import get_db
from opstrack.errors import NotFoundError, UploadFailedError
from opstrack.main import app
from opstrack.models import (
    PackageAttachment,
    PackageLog,
    PackageRequest,
    PackageStatus,
    User,
)
from opstrack.schemas import PackageRequestCreate, PackageRequestUpdate
from opstrack.services.attachments import AttachmentStore, FilePayload, get_attachment_store
from opstrack.services.packages import (
    PackageAction,
    apply_package_action,
    create_package_request,
    delete_package_request,
    update_package_request,
)


class _ScalarRows:
    def __init__(self, rows):
        self._rows = rows

    def all(self):
        return self._rows


class _FakePackageDB:
    def __init__(self, *, user: User | None, packages: dict[str, PackageRequest] | None = None):
        self.user = user
        self.packages = dict(packages or {})
        self.added: list[object] = []
        self.deleted: list[object] = []
        self.commits = 0
        self.rollbacks = 0

    def scalar(self, _statement):  # type: ignore[no-untyped-def]
        return self.user

    def scalars(self, _statement):  # type: ignore[no-untyped-def]
        return _ScalarRows([])

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        if model is PackageRequest:
            return self.packages.get(pk)
        return None

    def add(self, obj) -> None:  # type: ignore[no-untyped-def]
        self.added.append(obj)

    def delete(self, obj) -> None:  # type: ignore[no-untyped-def]
        self.deleted.append(obj)
        self.packages.pop(getattr(obj, "id", None), None)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1


class _RecordingStore(AttachmentStore):
    configured = True

    def __init__(self, *, fail_on: str | None = None):
        self.fail_on = fail_on
        self.calls: list[tuple[str, str]] = []

    def upload(self, data: bytes, folder: str, suggested_name: str) -> dict[str, str]:
        self.calls.append((folder, suggested_name))
        if suggested_name == self.fail_on:
            raise UploadFailedError(suggested_name)
        return {"url": f"https://files.example/{suggested_name}", "id": f"id-{suggested_name}"}


def _user(user_id: int = 5, username: str = "emp-5") -> User:
    return User(id=user_id, username=username, password="x", full_name="Saleh", role="employee")


def _package(package_id: str = "PKG-000001", status: str = PackageStatus.NEW.value) -> PackageRequest:
    now_utc = datetime.now(timezone.utc)
    package = PackageRequest(
        id=package_id,
        user_id=5,
        title="Solar kit",
        description="",
        customer_name="Nora",
        customer_phone="0500000000",
        priority="medium",
        status=status,
        progress_percent=0,
        meta={},
        created_at=now_utc,
        last_modified=now_utc,
    )
    package.user = _user()
    return package


def _override_get_db(fake_db: _FakePackageDB):
    def _override() -> Generator[_FakePackageDB, None, None]:
        yield fake_db

    return _override


class PackageTransitionTests(unittest.TestCase):
    def test_each_action_sets_exact_status_and_progress_from_any_status(self) -> None:
        expected = {
            PackageAction.CONFIRM_PAYMENT: (PackageStatus.PAYMENT_CONFIRMED.value, 20, "payment_confirmed"),
            PackageAction.START: (PackageStatus.PROCESSING.value, 50, "processing_started"),
            PackageAction.MARK_READY: (PackageStatus.READY_FOR_DELIVERY.value, 75, "marked_ready"),
            PackageAction.CONFIRM_DELIVERY: (PackageStatus.DELIVERED.value, 100, "delivery_confirmed"),
        }
        for prior in (PackageStatus.NEW.value, PackageStatus.DELIVERED.value):
            for action, (status, progress, audit_action) in expected.items():
                with self.subTest(prior=prior, action=action.value):
                    package = _package(status=prior)
                    fake_db = _FakePackageDB(user=_user(), packages={package.id: package})

                    result = apply_package_action(
                        fake_db,  # type: ignore[arg-type]
                        package_id=package.id,
                        action=action,
                        employee_id="emp-5",
                        comment="ok",
                        store=_RecordingStore(),
                    )

                    self.assertEqual(result.status, status)
                    self.assertEqual(result.progress_percent, progress)
                    logs = [item for item in fake_db.added if isinstance(item, PackageLog)]
                    self.assertEqual(len(logs), 1)
                    self.assertEqual(logs[0].action, audit_action)
                    self.assertEqual(logs[0].actor_id, 5)
                    self.assertEqual(logs[0].comment, "ok")

    def test_confirm_payment_stores_one_attachment_per_file(self) -> None:
        package = _package()
        fake_db = _FakePackageDB(user=_user(), packages={package.id: package})
        store = _RecordingStore()

        apply_package_action(
            fake_db,  # type: ignore[arg-type]
            package_id=package.id,
            action=PackageAction.CONFIRM_PAYMENT,
            employee_id="emp-5",
            files=[FilePayload(b"a", "receipt.pdf"), FilePayload(b"b", "transfer.png")],
            store=store,
        )

        attachments = [item for item in fake_db.added if isinstance(item, PackageAttachment)]
        self.assertEqual([item.file_name for item in attachments], ["receipt.pdf", "transfer.png"])
        self.assertTrue(all(item.type == "payment_proof" for item in attachments))
        self.assertTrue(all(item.uploaded_by == 5 for item in attachments))
        self.assertTrue(all(folder.endswith("/packages/5") for folder, _ in store.calls))

    def test_failed_second_upload_leaves_package_untouched(self) -> None:
        package = _package(status=PackageStatus.PROCESSING.value)
        package.progress_percent = 50
        fake_db = _FakePackageDB(user=_user(), packages={package.id: package})

        with self.assertRaises(UploadFailedError):
            apply_package_action(
                fake_db,  # type: ignore[arg-type]
                package_id=package.id,
                action=PackageAction.MARK_READY,
                employee_id="emp-5",
                files=[FilePayload(b"a", "waybill.pdf"), FilePayload(b"b", "invoice.pdf")],
                store=_RecordingStore(fail_on="invoice.pdf"),
            )

        self.assertEqual(package.status, PackageStatus.PROCESSING.value)
        self.assertEqual(package.progress_percent, 50)
        self.assertEqual(fake_db.added, [])

    def test_start_ignores_files_for_actions_without_attachments(self) -> None:
        package = _package()
        fake_db = _FakePackageDB(user=_user(), packages={package.id: package})
        store = _RecordingStore()

        apply_package_action(
            fake_db,  # type: ignore[arg-type]
            package_id=package.id,
            action=PackageAction.START,
            employee_id="emp-5",
            files=[FilePayload(b"a", "stray.pdf")],
            store=store,
        )

        self.assertEqual(store.calls, [])
        self.assertFalse(any(isinstance(item, PackageAttachment) for item in fake_db.added))

    def test_missing_package_is_not_found(self) -> None:
        fake_db = _FakePackageDB(user=_user())
        with self.assertRaises(NotFoundError) as ctx:
            apply_package_action(
                fake_db,  # type: ignore[arg-type]
                package_id="PKG-404404",
                action=PackageAction.START,
                employee_id="emp-5",
            )
        self.assertEqual(ctx.exception.code, "PACKAGE_NOT_FOUND")

    def test_unknown_actor_is_not_found(self) -> None:
        package = _package()
        fake_db = _FakePackageDB(user=None, packages={package.id: package})
        with self.assertRaises(NotFoundError) as ctx:
            apply_package_action(
                fake_db,  # type: ignore[arg-type]
                package_id=package.id,
                action=PackageAction.START,
                employee_id="ghost",
            )
        self.assertEqual(ctx.exception.code, "USER_NOT_FOUND")
        self.assertEqual(package.status, PackageStatus.NEW.value)


class PackageLifecycleTests(unittest.TestCase):
    def test_paid_package_starts_payment_confirmed(self) -> None:
        fake_db = _FakePackageDB(user=_user())
        package = create_package_request(
            fake_db,  # type: ignore[arg-type]
            PackageRequestCreate(
                employee_id="emp-5",
                customer_name="Nora",
                package_type="Home 5kW",
                is_paid=True,
                delivery_method="pickup",
            ),
        )
        self.assertEqual(package.status, PackageStatus.PAYMENT_CONFIRMED.value)
        self.assertEqual(package.progress_percent, 10)
        self.assertTrue(package.id.startswith("PKG-"))
        self.assertEqual(package.meta["deliveryMethod"], "pickup")
        self.assertTrue(package.meta["isPaid"])

    def test_status_update_derives_progress_and_logs(self) -> None:
        package = _package()
        fake_db = _FakePackageDB(user=_user(), packages={package.id: package})

        update_package_request(
            fake_db,  # type: ignore[arg-type]
            package.id,
            PackageRequestUpdate(employee_id="emp-5", status=PackageStatus.READY_FOR_DELIVERY),
        )

        self.assertEqual(package.status, PackageStatus.READY_FOR_DELIVERY.value)
        self.assertEqual(package.progress_percent, 75)
        logs = [item for item in fake_db.added if isinstance(item, PackageLog)]
        self.assertEqual(logs[0].action, "request_updated")

    def test_delete_removes_package_and_missing_is_not_found(self) -> None:
        package = _package()
        fake_db = _FakePackageDB(user=_user(), packages={package.id: package})

        delete_package_request(fake_db, package.id)  # type: ignore[arg-type]

        self.assertEqual(fake_db.deleted, [package])
        with self.assertRaises(NotFoundError):
            delete_package_request(fake_db, package.id)  # type: ignore[arg-type]

    def test_attachments_and_logs_cascade_with_package(self) -> None:
        relationships = inspect(PackageRequest).relationships
        for name in ("attachments", "logs"):
            with self.subTest(relationship=name):
                self.assertTrue(relationships[name].cascade.delete)
                self.assertTrue(relationships[name].cascade.delete_orphan)
        for model in (PackageAttachment, PackageLog):
            foreign_key = next(iter(model.__table__.c.package_id.foreign_keys))
            self.assertEqual(foreign_key.ondelete, "CASCADE")


class PackageEndpointTests(unittest.TestCase):
    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def test_confirm_payment_accepts_bracketed_field_name(self) -> None:
        package = _package()
        fake_db = _FakePackageDB(user=_user(), packages={package.id: package})
        store = _RecordingStore()
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        app.dependency_overrides[get_attachment_store] = lambda: store
        client = TestClient(app)

        response = client.post(
            f"/api/package-requests/{package.id}/confirm-payment",
            data={"employeeId": "emp-5", "comment": "paid"},
            files=[("payment_proof[]", ("receipt.pdf", b"%PDF", "application/pdf"))],
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "PAYMENT_CONFIRMED")
        self.assertEqual(body["progressPercent"], 20)
        self.assertEqual([name for _, name in store.calls], ["receipt.pdf"])

    def test_delete_missing_package_returns_error_envelope(self) -> None:
        fake_db = _FakePackageDB(user=_user())
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        client = TestClient(app)

        response = client.delete("/api/package-requests/PKG-000404")

        self.assertEqual(response.status_code, 404)
        body = response.json()
        self.assertEqual(body["error"]["code"], "PACKAGE_NOT_FOUND")
        self.assertIn("request_id", body["error"])

    def test_upload_failure_returns_generic_500(self) -> None:
        package = _package()
        fake_db = _FakePackageDB(user=_user(), packages={package.id: package})
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        app.dependency_overrides[get_attachment_store] = lambda: _RecordingStore(fail_on="waybill.pdf")
        client = TestClient(app)

        response = client.post(
            f"/api/package-requests/{package.id}/mark-ready",
            data={"employeeId": "emp-5"},
            files=[("shipping_docs", ("waybill.pdf", b"%PDF", "application/pdf"))],
        )

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error"]["code"], "UPLOAD_FAILED")
        self.assertEqual(package.status, PackageStatus.NEW.value)


if __name__ == "__main__":
    unittest.main()
