"""
GCS bucket used to relay the build workspace to Windows instances.
"""

import logging
import os
import tempfile
import zipfile

from clients import StorageRestClient
from errors import ApiError, SetupError

logger = logging.getLogger(__name__)

# Objects are only a transfer relay; anything left behind expires after a day
LIFECYCLE_DELETE_AFTER_DAYS = 1


def ensure_bucket(storage: StorageRestClient, bucket: str) -> None:
    """
    Create the workspace bucket if it does not exist.

    Args:
        storage: Storage client bound to the builder project
        bucket: Bucket name ("" skips creation)

    Raises:
        SetupError: If the bucket cannot be created
    """
    if not bucket:
        logger.info("No bucket name specified, skip creating the bucket")
        return

    body = {
        "lifecycle": {
            "rule": [
                {
                    "action": {"type": "Delete"},
                    "condition": {"age": LIFECYCLE_DELETE_AFTER_DAYS},
                }
            ]
        }
    }
    try:
        storage.insert_bucket(bucket, body)
    except ApiError as e:
        if e.status_code == 409:
            logger.info(f"{bucket} bucket already exists")
            return
        raise SetupError(f"Create bucket({bucket!r}) failed: {e}") from e
    logger.info(f"Bucket {bucket} is setup")


def create_zip(fullpath: str) -> str:
    """
    Zip every regular file under ``fullpath`` into a temporary archive.

    Symlinks are skipped. Archive names are relative to ``fullpath``.

    Returns:
        Path of the temporary zip file (caller removes it)
    """
    fd, zip_path = tempfile.mkstemp(suffix=".zip")
    os.close(fd)
    try:
        with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED) as zf:
            for root, dirs, files in os.walk(fullpath):
                dirs.sort()
                for name in sorted(files):
                    path = os.path.join(root, name)
                    if os.path.islink(path):
                        logger.info(f"Skipping symlink: {path}")
                        continue
                    zf.write(path, os.path.relpath(path, fullpath))
    except Exception:
        os.remove(zip_path)
        raise
    return zip_path


def write_zip_to_bucket(
    storage: StorageRestClient, bucket: str, object_name: str, input_path: str
) -> str:
    """
    Zip ``input_path`` and upload it as gs://bucket/object_name.

    Returns:
        The gs:// URL of the uploaded archive
    """
    zip_path = create_zip(input_path)
    try:
        with open(zip_path, "rb") as f:
            storage.upload_object(bucket, object_name, f.read(), "application/zip")
    finally:
        os.remove(zip_path)
    return f"gs://{bucket}/{object_name}"
