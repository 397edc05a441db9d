from __future__ import annotations

import threading
import time
import unittest
from unittest.mock import patch

from opstrack.errors import UploadFailedError
from opstrack.services.attachments import (
    AttachmentStore,
    CloudinaryAttachmentStore,
    FilePayload,
    UnconfiguredAttachmentStore,
    _public_id_for,
    build_folder,
    upload_files,
)
from opstrack.settings import get_settings


class _SlowOrderStore(AttachmentStore):
    """Finishes uploads in reverse order to check result ordering."""

    configured = True

    def __init__(self):
        self.lock = threading.Lock()
        self.uploaded: list[str] = []

    def upload(self, data: bytes, folder: str, suggested_name: str) -> dict[str, str]:
        time.sleep(0.05 if suggested_name == "a.jpg" else 0)
        with self.lock:
            self.uploaded.append(suggested_name)
        return {"url": f"https://files.example/{folder}/{suggested_name}", "id": suggested_name}


class _BrokenProviderStore(AttachmentStore):
    configured = True

    def upload(self, data: bytes, folder: str, suggested_name: str) -> dict[str, str]:
        raise ConnectionError("provider unreachable")


class _SteadyStore(AttachmentStore):
    configured = True

    def __init__(self, delay: float):
        self.delay = delay
        self.lock = threading.Lock()
        self.uploaded: list[str] = []

    def upload(self, data: bytes, folder: str, suggested_name: str) -> dict[str, str]:
        time.sleep(self.delay)
        with self.lock:
            self.uploaded.append(suggested_name)
        return {"url": f"https://files.example/{suggested_name}", "id": suggested_name}


class UploadFilesTests(unittest.TestCase):
    def test_results_keep_input_order(self) -> None:
        store = _SlowOrderStore()

        stored = upload_files(
            store,
            [FilePayload(b"1", "a.jpg"), FilePayload(b"2", "b.jpg")],
            namespace="maintenance",
            uploaded_by=4,
        )

        self.assertEqual([item.file_name for item in stored], ["a.jpg", "b.jpg"])
        self.assertTrue(all(item.uploaded_by == 4 for item in stored))
        self.assertEqual(stored[0].url, "https://files.example/qssun_reports/maintenance/4/a.jpg")

    def test_empty_batch_uploads_nothing(self) -> None:
        self.assertEqual(upload_files(_BrokenProviderStore(), [], namespace="sales", uploaded_by=1), [])

    def test_provider_error_is_wrapped(self) -> None:
        with self.assertRaises(UploadFailedError) as ctx:
            upload_files(
                _BrokenProviderStore(),
                [FilePayload(b"1", "a.jpg")],
                namespace="sales",
                uploaded_by=1,
            )
        self.assertEqual(ctx.exception.file_name, "a.jpg")
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(ctx.exception.message, "File upload failed.")
        self.assertIsInstance(ctx.exception.cause, ConnectionError)

    def test_unconfigured_store_fails_every_upload(self) -> None:
        with self.assertRaises(UploadFailedError):
            upload_files(
                UnconfiguredAttachmentStore(),
                [FilePayload(b"1", "a.jpg")],
                namespace="packages",
                uploaded_by=1,
            )

    def test_queued_uploads_are_not_cut_by_batch_wait(self) -> None:
        store = _SteadyStore(delay=0.6)
        settings = get_settings()

        with (
            patch.object(settings, "upload_timeout_seconds", 1),
            patch.object(settings, "upload_max_workers", 2),
        ):
            stored = upload_files(
                store,
                [FilePayload(b"x", f"{index}.jpg") for index in range(5)],
                namespace="projects",
                uploaded_by=3,
            )

        self.assertEqual([item.file_name for item in stored], [f"{index}.jpg" for index in range(5)])
        self.assertEqual(len(store.uploaded), 5)


class FolderNamingTests(unittest.TestCase):
    def test_folder_is_namespaced_per_uploader(self) -> None:
        self.assertEqual(build_folder("projects/exceptions", 9), "qssun_reports/projects/exceptions/9")

    def test_public_id_keeps_stem_only_for_names_with_extension(self) -> None:
        self.assertEqual(_public_id_for("invoice.final.pdf"), "invoice.final")
        self.assertEqual(_public_id_for("README"), "")
        self.assertEqual(_public_id_for("../etc/photo.png"), "photo")


class CloudinaryStoreTests(unittest.TestCase):
    def test_upload_passes_folder_and_timeout(self) -> None:
        with patch("opstrack.services.attachments.cloudinary.config"):
            store = CloudinaryAttachmentStore()
        with patch(
            "opstrack.services.attachments.cloudinary.uploader.upload",
            return_value={"secure_url": "https://res.example/x.pdf", "public_id": "folder/x"},
        ) as upload_mock:
            result = store.upload(b"%PDF", "qssun_reports/packages/1", "x.pdf")

        self.assertEqual(result, {"url": "https://res.example/x.pdf", "id": "folder/x"})
        kwargs = upload_mock.call_args.kwargs
        self.assertEqual(kwargs["folder"], "qssun_reports/packages/1")
        self.assertEqual(kwargs["resource_type"], "auto")
        self.assertEqual(kwargs["public_id"], "x")

    def test_missing_secure_url_is_a_failure(self) -> None:
        with patch("opstrack.services.attachments.cloudinary.config"):
            store = CloudinaryAttachmentStore()
        with patch("opstrack.services.attachments.cloudinary.uploader.upload", return_value={}):
            with self.assertRaises(UploadFailedError):
                store.upload(b"%PDF", "qssun_reports/packages/1", "x.pdf")


if __name__ == "__main__":
    unittest.main()
