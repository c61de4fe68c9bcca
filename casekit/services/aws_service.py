"""S3 storage for case files.

Uploaded attachments and logos live in one public bucket; the module
envelope stores their public URL.
"""
from __future__ import annotations

import json
import logging
import os
import re
import uuid
from typing import Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from flask import current_app

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {
    "image/jpeg",
    "image/png",
    "image/gif",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
}


class StorageError(Exception):
    pass


class UnsupportedFileError(StorageError):
    pass


def aws_ready() -> Tuple[bool, str]:
    bucket = (current_app.config.get("AWS_S3_BUCKET") or "").strip()
    region = (current_app.config.get("AWS_REGION") or "").strip()
    if not bucket:
        return False, "AWS_S3_BUCKET not set"
    if not region:
        return False, "AWS_REGION not set"
    return True, ""


def s3_client():
    region = (current_app.config.get("AWS_REGION") or "").strip() or None
    return boto3.client("s3", region_name=region)


def safe_filename(filename: str) -> str:
    base = os.path.basename((filename or "").strip())
    stem, ext = os.path.splitext(base)
    stem = re.sub(r"[^a-zA-Z0-9_-]+", "_", stem).strip("_") or "file"
    ext = re.sub(r"[^a-zA-Z0-9.]", "", ext).lower()
    return f"{stem[:80]}{ext}"


def object_key(case_id: int, filename: str) -> str:
    return f"cases/{int(case_id)}/{uuid.uuid4().hex[:12]}_{safe_filename(filename)}"


def public_url(key: str) -> str:
    base = (current_app.config.get("S3_PUBLIC_BASE_URL") or "").strip().rstrip("/")
    if base:
        return f"{base}/{key}"
    bucket = current_app.config["AWS_S3_BUCKET"].strip()
    region = current_app.config["AWS_REGION"].strip()
    return f"https://{bucket}.s3.{region}.amazonaws.com/{key}"


def upload_case_file(case_id: int, filename: str, data: bytes, content_type: str) -> str:
    """Store ``data`` for ``case_id`` and return its public URL."""
    ok, msg = aws_ready()
    if not ok:
        raise StorageError(msg)
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    if mime not in ALLOWED_MIME_TYPES:
        raise UnsupportedFileError(f"File type not allowed: {mime or 'unknown'}")
    if not data:
        raise UnsupportedFileError("Empty file")

    key = object_key(case_id, filename)
    try:
        s3_client().put_object(
            Bucket=current_app.config["AWS_S3_BUCKET"].strip(),
            Key=key,
            Body=data,
            ContentType=mime,
        )
    except (BotoCoreError, ClientError) as e:
        logger.exception("S3 upload failed key=%s", key)
        raise StorageError(f"Upload failed: {e}") from e
    logger.info("Uploaded case file case_id=%s key=%s bytes=%d", case_id, key, len(data))
    return public_url(key)


def ensure_bucket(public: bool = True) -> Optional[str]:
    """Create the case-files bucket if missing. Returns a status message."""
    ok, msg = aws_ready()
    if not ok:
        raise StorageError(msg)
    bucket = current_app.config["AWS_S3_BUCKET"].strip()
    region = current_app.config["AWS_REGION"].strip()
    s3 = s3_client()
    try:
        s3.head_bucket(Bucket=bucket)
        return f"Bucket {bucket} already exists"
    except ClientError as e:
        code = str((e.response.get("Error") or {}).get("Code") or "")
        if code not in ("404", "NoSuchBucket", "NotFound"):
            raise StorageError(f"Could not check bucket: {e}") from e

    args = {"Bucket": bucket}
    if region != "us-east-1":
        args["CreateBucketConfiguration"] = {"LocationConstraint": region}
    try:
        s3.create_bucket(**args)
        if public:
            s3.put_public_access_block(
                Bucket=bucket,
                PublicAccessBlockConfiguration={
                    "BlockPublicAcls": True,
                    "IgnorePublicAcls": True,
                    "BlockPublicPolicy": False,
                    "RestrictPublicBuckets": False,
                },
            )
            s3.put_bucket_policy(Bucket=bucket, Policy=_public_read_policy(bucket))
    except (BotoCoreError, ClientError) as e:
        raise StorageError(f"Could not create bucket: {e}") from e
    return f"Bucket {bucket} created"


def _public_read_policy(bucket: str) -> str:
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [{
            "Sid": "PublicRead",
            "Effect": "Allow",
            "Principal": "*",
            "Action": "s3:GetObject",
            "Resource": f"arn:aws:s3:::{bucket}/*",
        }],
    })
