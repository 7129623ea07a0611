# MinIO Storage Service for chat attachments
# Work submissions upload their deliverables here and link them in the chat

import boto3
import os
import uuid
import logging
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
from datetime import datetime, timezone

from core.errors import ExternalUnavailable

logger = logging.getLogger(__name__)

MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "http://minio:9000")
# Public endpoint is what the browser will reach.
# In Docker dev the backend uses http://minio:9000 internally but the browser
# must use http://localhost:19000, so set MINIO_PUBLIC_ENDPOINT accordingly.
MINIO_PUBLIC_ENDPOINT = os.getenv("MINIO_PUBLIC_ENDPOINT", MINIO_ENDPOINT)
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "influence-chat-attachments")
MINIO_REGION = os.getenv("MINIO_REGION", "us-east-1")
MAX_ATTACHMENT_BYTES = int(os.getenv("MAX_ATTACHMENT_BYTES", 25 * 1024 * 1024))


def _get_client():
    """Internal client, uses MINIO_ENDPOINT (Docker-internal address ok)."""
    return boto3.client(
        "s3",
        endpoint_url=MINIO_ENDPOINT,
        aws_access_key_id=MINIO_ACCESS_KEY,
        aws_secret_access_key=MINIO_SECRET_KEY,
        config=Config(signature_version="s3v4"),
        region_name=MINIO_REGION,
    )


def ensure_bucket_exists(client=None):
    """Create the bucket if it doesn't already exist."""
    client = client or _get_client()
    try:
        client.head_bucket(Bucket=MINIO_BUCKET)
    except ClientError as e:
        error_code = e.response["Error"]["Code"]
        if error_code in ("404", "NoSuchBucket"):
            client.create_bucket(Bucket=MINIO_BUCKET)
            logger.info(f"MinIO bucket '{MINIO_BUCKET}' created.")
        else:
            raise


def public_url(object_key: str) -> str:
    return f"{MINIO_PUBLIC_ENDPOINT.rstrip('/')}/{MINIO_BUCKET}/{object_key}"


def upload_attachment(
    file_bytes: bytes,
    original_filename: str,
    content_type: str,
    conversation_id: str,
    client=None,
) -> dict:
    """
    Upload a chat attachment to MinIO.

    Returns a dict with:
      - object_key: the key stored in MinIO
      - url: public URL to put in the work submission
      - file_size: bytes
      - file_name: original filename
      - content_type: MIME type
    """
    client = client or _get_client()

    # Sanitise filename and build a unique key
    safe_name = original_filename.replace(" ", "_").replace("/", "_")
    unique_id = str(uuid.uuid4())[:8]
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d")
    object_key = f"conversations/{conversation_id}/{timestamp}-{unique_id}-{safe_name}"

    try:
        ensure_bucket_exists(client)
        client.put_object(
            Bucket=MINIO_BUCKET,
            Key=object_key,
            Body=file_bytes,
            ContentType=content_type,
        )
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Attachment upload failed for conversation {conversation_id}: {e}")
        raise ExternalUnavailable("Attachment storage is unavailable", service="minio")

    return {
        "object_key": object_key,
        "url": public_url(object_key),
        "file_size": len(file_bytes),
        "file_name": original_filename,
        "content_type": content_type,
    }
