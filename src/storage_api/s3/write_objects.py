"""Functions for writing objects to an S3 bucket--the "C" and "U" in CRUD."""

import logging
from typing import List, Optional

from storage_api.errors import UPSTREAM_EXCEPTIONS, UpstreamError

try:
    from mypy_boto3_s3 import S3Client
    from mypy_boto3_s3.type_defs import CompletedPartTypeDef
except ImportError:
    ...

logger = logging.getLogger(__name__)

# Largest object CopyObject handles in one call.
MAX_SINGLE_COPY_BYTES = 5 * 1024 * 1024 * 1024


def upload_s3_object(
    bucket_name: str,
    object_key: str,
    file_content: bytes,
    s3_client: "S3Client",
    content_type: Optional[str] = None,
) -> None:
    """
    Upload a file to an S3 bucket.

    :param bucket_name: The name of the S3 bucket.
    :param object_key: path to the object in the S3 bucket.
    :param file_content: The content of the file to upload.
    :param s3_client: The boto3 S3 client.
    :param content_type: The MIME type of the file, e.g. "text/plain" for a text file.
    """
    content_type = content_type or "application/octet-stream"
    try:
        s3_client.put_object(
            Bucket=bucket_name,
            Key=object_key,
            Body=file_content,
            ContentType=content_type,
        )
    except UPSTREAM_EXCEPTIONS as e:
        raise UpstreamError.from_boto(e, f"PutObject s3://{bucket_name}/{object_key}")


def copy_s3_object(
    source_bucket: str,
    source_key: str,
    bucket_name: str,
    object_key: str,
    s3_client: "S3Client",
) -> None:
    """Server-side copy; the destination appears atomically or not at all."""
    try:
        s3_client.copy_object(
            Bucket=bucket_name,
            Key=object_key,
            CopySource={"Bucket": source_bucket, "Key": source_key},
        )
    except UPSTREAM_EXCEPTIONS as e:
        raise UpstreamError.from_boto(e, f"CopyObject s3://{source_bucket}/{source_key}")


class MultipartUpload:
    """
    A multipart upload driven one part at a time.

    Nothing is visible under *object_key* until :meth:`complete`; :meth:`abort`
    discards the parts uploaded so far.
    """

    def __init__(self, bucket_name: str, object_key: str, s3_client: "S3Client"):
        self.bucket_name = bucket_name
        self.object_key = object_key
        self.s3_client = s3_client
        self.upload_id: Optional[str] = None
        self.parts: List["CompletedPartTypeDef"] = []

    def start(self) -> None:
        try:
            response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=self.object_key)
        except UPSTREAM_EXCEPTIONS as e:
            raise UpstreamError.from_boto(e, f"CreateMultipartUpload s3://{self.bucket_name}/{self.object_key}")
        self.upload_id = response["UploadId"]

    def upload_part(self, data: bytes) -> None:
        if self.upload_id is None:
            self.start()
        part_number = len(self.parts) + 1
        try:
            response = self.s3_client.upload_part(
                Bucket=self.bucket_name,
                Key=self.object_key,
                UploadId=self.upload_id,
                PartNumber=part_number,
                Body=data,
            )
        except UPSTREAM_EXCEPTIONS as e:
            raise UpstreamError.from_boto(e, f"UploadPart {part_number} s3://{self.bucket_name}/{self.object_key}")
        self.parts.append({"ETag": response["ETag"], "PartNumber": part_number})

    def complete(self) -> None:
        try:
            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=self.object_key,
                UploadId=self.upload_id,
                MultipartUpload={"Parts": self.parts},
            )
        except UPSTREAM_EXCEPTIONS as e:
            raise UpstreamError.from_boto(e, f"CompleteMultipartUpload s3://{self.bucket_name}/{self.object_key}")

    def abort(self) -> None:
        if self.upload_id is None:
            return
        try:
            self.s3_client.abort_multipart_upload(
                Bucket=self.bucket_name, Key=self.object_key, UploadId=self.upload_id
            )
        except UPSTREAM_EXCEPTIONS as e:
            # The store expires abandoned uploads on its own lifecycle rules.
            logger.error(f"Failed to abort multipart upload {self.upload_id} for {self.object_key}: {e}")
        finally:
            self.upload_id = None
            self.parts = []
