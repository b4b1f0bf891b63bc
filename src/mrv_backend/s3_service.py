"""
S3 upload for export snapshots.

This module provides functionality for:
- Zipping an export snapshot directory
- Uploading the archive to S3
- Generating presigned URLs for time-limited downloads

The S3 bucket name is configured via the S3_BUCKET_NAME environment variable.
When running locally without a bucket or AWS credentials, uploads are skipped
and the export stays on local disk.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

# S3 client (lazy initialization)
_s3_client = None


def bucket_name() -> str:
    return os.environ.get("S3_BUCKET_NAME", "")


def _get_s3_client():
    """
    Get or create the S3 client.

    Returns:
        boto3 S3 client or None if bucket is not configured
    """
    global _s3_client
    if _s3_client is None:
        if not bucket_name():
            logger.warning("S3_BUCKET_NAME not configured")
            return None
        try:
            _s3_client = boto3.client("s3")
        except BotoCoreError as e:
            logger.warning(f"Failed to create S3 client: {e}")
            _s3_client = None
    return _s3_client


def zip_directory(source_dir: Path, zip_path: Path) -> Path:
    """
    Create a zip archive from a directory.

    Args:
        source_dir: Path to the directory to zip
        zip_path: Path where the zip file should be created (with or without .zip)

    Returns:
        Path to the created zip file (with .zip extension)
    """
    zip_base = str(zip_path).removesuffix(".zip")

    logger.info(f"Creating zip archive: {zip_base}.zip from {source_dir}")
    archive_path = shutil.make_archive(
        base_name=zip_base,
        format="zip",
        root_dir=source_dir.parent,
        base_dir=source_dir.name,
    )
    return Path(archive_path)


def upload_to_s3(path: Path, s3_key: str) -> bool:
    """
    Upload a file to S3.

    Returns:
        True if upload was successful, False otherwise (including when S3 is
        not configured)
    """
    bucket = bucket_name()
    if not bucket:
        logger.warning("S3_BUCKET_NAME not configured, skipping upload")
        return False

    client = _get_s3_client()
    if client is None:
        logger.warning("S3 client not available, skipping upload")
        return False

    try:
        logger.info(f"Uploading {path} to s3://{bucket}/{s3_key}")
        client.upload_file(str(path), bucket, s3_key)
        logger.info(f"Upload successful: s3://{bucket}/{s3_key}")
        return True
    except (ClientError, BotoCoreError) as e:
        logger.error(f"S3 upload failed: {e}")
        return False


def generate_presigned_url(s3_key: str, expiration: int = 3600) -> Optional[str]:
    """
    Generate a presigned URL for downloading an export from S3.

    Returns:
        Presigned URL string, or None if generation fails
    """
    bucket = bucket_name()
    client = _get_s3_client() if bucket else None
    if client is None:
        logger.warning("S3 client not available")
        return None

    try:
        url = client.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": s3_key},
            ExpiresIn=expiration,
        )
        logger.info(f"Generated presigned URL for {s3_key} (expires in {expiration}s)")
        return url
    except (ClientError, BotoCoreError) as e:
        logger.error(f"Failed to generate presigned URL: {e}")
        return None


def is_s3_configured() -> bool:
    """True if an S3 bucket is configured and a client could be created."""
    return bool(bucket_name()) and _get_s3_client() is not None
