"""Object storage uploader for staged archive artifacts.

Uploads a finished temp file either with a single ``put_object`` or with a
manual multipart upload at a fixed part size, so the ETag the store reports
is predictable and can be compared with the locally computed checksum.

Usage:
    from archiver.utils.storage import ObjectStorageUploader

    uploader = ObjectStorageUploader(client, "archive-bucket")
    info = uploader.head_object("events/2024/01/events-2024-01-01.jsonl.zst")
    uploader.upload_file(path, key, "application/zstd", size=size)
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from botocore.exceptions import ClientError

from archiver.errors import CancellationError, ConfigurationError

log = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024
DEFAULT_PART_SIZE = 5 * 1024 * 1024
MAX_PARTS = 10_000

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass(frozen=True)
class ObjectInfo:
    """Destination object metadata as reported by a HEAD request."""

    key: str
    size: int
    etag: str
    last_modified: Optional[datetime] = None


def normalize_etag(etag: Optional[str]) -> str:
    """Strip the quotes S3 puts around ETags and lowercase the digest."""
    return (etag or "").strip().strip('"').lower()


class ObjectStorageUploader:
    """Uploads files to a single bucket of an S3-compatible store.

    Args:
        client: boto3 S3 client.
        bucket: Destination bucket name.
        part_size: Multipart part size in bytes.
        threshold: Size at or above which multipart upload is used.
    """

    def __init__(
        self,
        client,
        bucket: str,
        part_size: int = DEFAULT_PART_SIZE,
        threshold: int = MULTIPART_THRESHOLD,
    ):
        self.client = client
        self.bucket = bucket
        self.part_size = part_size
        self.threshold = threshold

    def head_object(self, key: str) -> Optional[ObjectInfo]:
        """Return metadata for *key*, or None if the object does not exist.

        Raises:
            botocore.exceptions.ClientError: For any error other than 404.
        """
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                return None
            raise
        return ObjectInfo(
            key=key,
            size=int(response.get("ContentLength", 0)),
            etag=normalize_etag(response.get("ETag")),
            last_modified=response.get("LastModified"),
        )

    def upload_file(
        self,
        file_path: str,
        key: str,
        content_type: str,
        size: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Upload a local file, overwriting any existing object.

        Args:
            file_path: Path of the staged file.
            key: Destination object key.
            content_type: MIME type stored with the object.
            size: File size in bytes, used to choose the upload method.
            cancel_event: Checked between multipart parts.

        Returns:
            The ETag reported by the store (normalized).

        Raises:
            ConfigurationError: If the file needs more than 10,000 parts.
            CancellationError: If cancelled between parts.
        """
        if size < self.threshold:
            with open(file_path, "rb") as f:
                response = self.client.put_object(
                    Bucket=self.bucket, Key=key, Body=f, ContentType=content_type
                )
            log.info("Uploaded %s to s3://%s/%s (%d bytes)", file_path, self.bucket, key, size)
            return normalize_etag(response.get("ETag"))

        return self._upload_multipart(file_path, key, content_type, size, cancel_event)

    def _upload_multipart(
        self,
        file_path: str,
        key: str,
        content_type: str,
        size: int,
        cancel_event: Optional[threading.Event],
    ) -> str:
        part_count = max(1, math.ceil(size / self.part_size))
        if part_count > MAX_PARTS:
            raise ConfigurationError(
                f"file of {size} bytes needs {part_count} parts of {self.part_size} bytes; "
                f"the limit is {MAX_PARTS}, increase the part size"
            )

        upload = self.client.create_multipart_upload(
            Bucket=self.bucket, Key=key, ContentType=content_type
        )
        upload_id = upload["UploadId"]
        parts = []
        try:
            with open(file_path, "rb") as f:
                for part_number in range(1, part_count + 1):
                    if cancel_event is not None and cancel_event.is_set():
                        raise CancellationError(f"upload of {key} cancelled", stage="upload")
                    body = f.read(self.part_size)
                    response = self.client.upload_part(
                        Bucket=self.bucket,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=body,
                    )
                    parts.append({"ETag": response["ETag"], "PartNumber": part_number})
                    log.debug("Uploaded part %d/%d of %s", part_number, part_count, key)

            response = self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except BaseException:
            log.warning("Aborting multipart upload of s3://%s/%s", self.bucket, key)
            try:
                self.client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
            except ClientError as abort_exc:
                log.error("Failed to abort multipart upload %s: %s", upload_id, abort_exc)
            raise

        log.info(
            "Uploaded %s to s3://%s/%s (%d bytes, %d parts)",
            file_path, self.bucket, key, size, part_count,
        )
        return normalize_etag(response.get("ETag"))
