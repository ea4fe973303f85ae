"""Question image uploads to Azure Blob Storage.

Images referenced by questions (``Question.image`` and image-choice option
images) are uploaded here and the returned URL goes into the question bank.
Containers that refuse anonymous access get a short-lived read SAS instead
of a plain URL.
"""

from __future__ import annotations

import asyncio
import mimetypes
import os
import uuid
from datetime import datetime, timedelta, timezone

import structlog
from azure.core.credentials import TokenCredential
from azure.core.exceptions import HttpResponseError, ResourceExistsError
from azure.storage.blob import (
    BlobSasPermissions,
    BlobServiceClient,
    ContainerClient,
    ContentSettings,
    generate_blob_sas,
)

from .config import settings
from .errors import ValidationError

logger = structlog.get_logger(__name__)

SAS_LIFETIME = timedelta(minutes=15)
ALLOWED_IMAGE_TYPES = {"image/png", "image/jpeg", "image/gif", "image/webp", "image/svg+xml"}

_blob_service_client: BlobServiceClient | None = None
_container_is_private: bool | None = None


def _get_blob_service() -> BlobServiceClient:
    global _blob_service_client
    if _blob_service_client is None:
        if not settings.AZURE_STORAGE_CONNECTION_STRING:
            raise RuntimeError("Azure Blob Storage is not configured")
        _blob_service_client = BlobServiceClient.from_connection_string(
            settings.AZURE_STORAGE_CONNECTION_STRING
        )
    return _blob_service_client


async def _ensure_container(container: ContainerClient) -> bool:
    """Create the image container once and report whether it is private."""
    global _container_is_private
    if _container_is_private is not None:
        return _container_is_private

    try:
        await asyncio.to_thread(container.create_container, public_access="blob")
        private = False
    except ResourceExistsError:
        properties = await asyncio.to_thread(container.get_container_properties)
        private = getattr(properties, "public_access", None) not in {"blob", "container"}
    except HttpResponseError as exc:
        code = getattr(exc, "error_code", None) or getattr(getattr(exc, "error", None), "code", None)
        if code != "PublicAccessNotPermitted":
            raise
        # The account forbids anonymous access; fall back to a private container.
        try:
            await asyncio.to_thread(container.create_container)
        except ResourceExistsError:
            pass
        private = True

    _container_is_private = private
    logger.info("storage.container_ready", container=container.container_name, private=private)
    return private


def _blob_name(question_id: str, filename: str, content_type: str | None) -> str:
    extension = os.path.splitext(filename or "")[1].lower()
    if not extension and content_type:
        extension = mimetypes.guess_extension(content_type) or ""
    return f"questions/{question_id}-{uuid.uuid4().hex}{extension}"


async def upload_question_image(
    question_id: str,
    filename: str,
    content: bytes,
    content_type: str | None,
) -> str:
    """Store an image for ``question_id`` and return a URL participants can load."""
    if not content:
        raise ValidationError("Uploaded file was empty")

    guessed_type = content_type or mimetypes.guess_type(filename or "")[0]
    if guessed_type not in ALLOWED_IMAGE_TYPES:
        raise ValidationError(f"Unsupported image type: {guessed_type or 'unknown'}")

    service = _get_blob_service()
    container = service.get_container_client(settings.AZURE_STORAGE_CONTAINER)
    private = await _ensure_container(container)

    blob = container.get_blob_client(_blob_name(question_id, filename, guessed_type))
    await asyncio.to_thread(
        blob.upload_blob,
        content,
        overwrite=True,
        content_settings=ContentSettings(content_type=guessed_type),
    )
    logger.info("storage.image_uploaded", question_id=question_id, blob=blob.blob_name, private=private)

    if not private:
        return blob.url
    token = await _read_sas(service, settings.AZURE_STORAGE_CONTAINER, blob.blob_name)
    separator = "&" if "?" in blob.url else "?"
    return f"{blob.url}{separator}{token}"


async def _read_sas(service: BlobServiceClient, container_name: str, blob_name: str) -> str:
    start = datetime.now(timezone.utc)
    expiry = start + SAS_LIFETIME
    common = dict(
        account_name=service.account_name,
        container_name=container_name,
        blob_name=blob_name,
        permission=BlobSasPermissions(read=True),
        expiry=expiry,
    )

    credential = getattr(service, "credential", None)
    if isinstance(credential, TokenCredential):
        delegation_key = await asyncio.to_thread(service.get_user_delegation_key, start, expiry)
        return generate_blob_sas(user_delegation_key=delegation_key, **common)
    if credential is not None:
        return generate_blob_sas(credential=credential, **common)
    raise RuntimeError("Azure Blob Storage credential is required for SAS generation")
