from __future__ import annotations

import io
import logging
import math
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from functools import lru_cache
from pathlib import PurePath
from typing import Any, Iterable

import cloudinary
import cloudinary.uploader
from fastapi import UploadFile
from starlette.datastructures import FormData
from starlette.datastructures import UploadFile as StarletteUploadFile

from opstrack.errors import UploadFailedError
from opstrack.schemas import AttachedFile
from opstrack.settings import get_settings, is_cloudinary_configured

logger = logging.getLogger("opstrack.attachments")


@dataclass(frozen=True, slots=True)
class FilePayload:
    data: bytes
    file_name: str
    content_type: str | None = None


@dataclass(frozen=True, slots=True)
class StoredFile:
    url: str
    id: str
    file_name: str
    uploaded_by: int | str

    def as_attached_file(self) -> AttachedFile:
        return AttachedFile(
            url=self.url,
            file_name=self.file_name,
            id=self.id,
            uploaded_by=self.uploaded_by,
        )


class AttachmentStore:
    configured: bool = False

    def upload(self, data: bytes, folder: str, suggested_name: str) -> dict[str, str]:
        """Store ``data`` and return ``{"url": ..., "id": ...}``; raise UploadFailedError."""
        raise NotImplementedError


class UnconfiguredAttachmentStore(AttachmentStore):
    def upload(self, data: bytes, folder: str, suggested_name: str) -> dict[str, str]:
        logger.warning(
            "attachment_store_not_configured",
            extra={"folder": folder, "file_name": suggested_name},
        )
        raise UploadFailedError(suggested_name)


class CloudinaryAttachmentStore(AttachmentStore):
    def __init__(self) -> None:
        settings = get_settings()
        cloudinary.config(
            cloud_name=settings.cloudinary_cloud_name,
            api_key=settings.cloudinary_api_key,
            api_secret=settings.cloudinary_api_secret,
            secure=True,
        )
        self.timeout_seconds = max(1, settings.upload_timeout_seconds)
        self.configured = True

    def upload(self, data: bytes, folder: str, suggested_name: str) -> dict[str, str]:
        options: dict[str, Any] = {
            "folder": folder,
            "resource_type": "auto",
            "timeout": self.timeout_seconds,
        }
        public_id = _public_id_for(suggested_name)
        if public_id:
            options["public_id"] = public_id
        try:
            result = cloudinary.uploader.upload(io.BytesIO(data), **options)
        except Exception as exc:
            raise UploadFailedError(suggested_name, exc) from exc

        url = str((result or {}).get("secure_url") or "")
        if not url:
            raise UploadFailedError(suggested_name)
        return {"url": url, "id": str(result.get("public_id") or "")}


def _public_id_for(file_name: str) -> str:
    # Keep the original name without its extension; names without one get a generated id.
    name = PurePath(file_name or "").name
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[0].strip()


@lru_cache
def get_attachment_store() -> AttachmentStore:
    if is_cloudinary_configured():
        return CloudinaryAttachmentStore()
    logger.warning("cloudinary_not_configured")
    return UnconfiguredAttachmentStore()


def build_folder(namespace: str, uploaded_by: int | str) -> str:
    root = get_settings().cloudinary_root_folder.strip("/")
    return f"{root}/{namespace.strip('/')}/{uploaded_by}"


def upload_files(
    store: AttachmentStore,
    files: Iterable[FilePayload],
    *,
    namespace: str,
    uploaded_by: int | str,
) -> list[StoredFile]:
    """Upload a batch concurrently; the first failure aborts the whole batch.

    Results keep the order of ``files``. Nothing is returned for a partially
    uploaded batch, so callers never persist rows for it.
    """
    payloads = list(files)
    if not payloads:
        return []

    settings = get_settings()
    folder = build_folder(namespace, uploaded_by)
    workers = max(1, min(settings.upload_max_workers, len(payloads)))
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="upload")
    try:
        futures = [
            executor.submit(store.upload, payload.data, folder, payload.file_name)
            for payload in payloads
        ]
        # each upload gets the full per-file timeout, queued ones included
        rounds = math.ceil(len(payloads) / workers)
        done, not_done = wait(
            futures,
            timeout=max(1, settings.upload_timeout_seconds) * rounds,
            return_when=FIRST_EXCEPTION,
        )
        for index, future in enumerate(futures):
            if future in done and future.exception() is not None:
                exc = future.exception()
                logger.error(
                    "attachment_upload_failed",
                    extra={
                        "folder": folder,
                        "file_name": payloads[index].file_name,
                        "error": str(getattr(exc, "cause", None) or exc)[:500],
                    },
                )
                if isinstance(exc, UploadFailedError):
                    raise exc
                raise UploadFailedError(payloads[index].file_name, exc) from exc
        if not_done:
            logger.error(
                "attachment_upload_timeout",
                extra={"folder": folder, "pending": len(not_done)},
            )
            pending_index = next(index for index, future in enumerate(futures) if future in not_done)
            raise UploadFailedError(payloads[pending_index].file_name)

        stored: list[StoredFile] = []
        for payload, future in zip(payloads, futures):
            result = future.result()
            stored.append(
                StoredFile(
                    url=result["url"],
                    id=result.get("id", ""),
                    file_name=payload.file_name,
                    uploaded_by=uploaded_by,
                )
            )
        return stored
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def read_upload_payloads(*groups: list[UploadFile] | None) -> list[FilePayload]:
    payloads: list[FilePayload] = []
    for group in groups:
        for upload in group or []:
            if upload is None or not upload.filename:
                continue
            payloads.append(
                FilePayload(
                    data=upload.file.read(),
                    file_name=upload.filename,
                    content_type=upload.content_type,
                )
            )
    return payloads


async def read_form_uploads(form: FormData) -> dict[str, list[FilePayload]]:
    """Group every uploaded file of a multipart form by its field name."""
    uploads: dict[str, list[FilePayload]] = {}
    for field_name, value in form.multi_items():
        if not isinstance(value, StarletteUploadFile) or not value.filename:
            continue
        uploads.setdefault(field_name, []).append(
            FilePayload(
                data=await value.read(),
                file_name=value.filename,
                content_type=value.content_type,
            )
        )
    return uploads
