"""
S3-compatible object storage backend.

Uses boto3 with the S3 API, so it works against AWS S3, Cloudflare R2,
Backblaze B2, MinIO or any other S3-compatible store.

Buckets are expected to be private: read access is handed out through
presigned GET URLs, public_url() is only meaningful when a public base URL
(CDN, public bucket) is configured.
"""
import logging
import mimetypes
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from filedrop.exceptions import NotFound, StorageWriteFailed
from filedrop.storage.base import StorageBackend, join_key, unique_filename

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class S3StorageBackend(StorageBackend):
    """S3-compatible storage backend."""

    name = "s3"

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = "auto",
        public_base_url: Optional[str] = None,
        client=None,
    ):
        """
        Initialize the backend.

        Args:
            bucket: Bucket name
            endpoint_url: S3 endpoint (None for AWS)
            access_key: Access key ID
            secret_key: Secret access key
            region: Region name ("auto" for R2)
            public_base_url: Base URL for public links, if the bucket is exposed
            client: Pre-built boto3 client (tests)
        """
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

        if client is None:
            # signature_version='s3v4' and path-style addressing for
            # R2/B2/MinIO compatibility
            client = boto3.client(
                's3',
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                config=Config(
                    signature_version='s3v4',
                    s3={'addressing_style': 'path'}
                )
            )
        self._client = client
        logger.info(f"S3 storage initialized for bucket: {bucket}")

    @staticmethod
    def _error_code(error: ClientError) -> str:
        return str(error.response.get('Error', {}).get('Code', ''))

    def save(
        self,
        data: bytes,
        suggested_name: str,
        folder: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> str:
        storage_key = join_key(folder, unique_filename(suggested_name))
        if not content_type:
            content_type = mimetypes.guess_type(storage_key)[0] or 'application/octet-stream'

        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=storage_key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to upload {storage_key} to S3: {e}")
            raise StorageWriteFailed(f"Failed to upload file: {e}") from e

        logger.info(f"File uploaded to S3: {storage_key}")
        return storage_key

    def fetch(self, storage_key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=storage_key)
            return response['Body'].read()
        except ClientError as e:
            if self._error_code(e) in NOT_FOUND_CODES:
                raise NotFound(f"File not found: {storage_key}")
            logger.error(f"Failed to download {storage_key} from S3: {e}")
            raise

    def delete(self, storage_key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=storage_key)
            logger.debug(f"Deleted object {storage_key} from S3")
        except ClientError as e:
            # Missing object counts as deleted (idempotent)
            if self._error_code(e) in NOT_FOUND_CODES:
                logger.debug(f"Object {storage_key} not found in S3 (already deleted)")
                return
            logger.error(f"Failed to delete object {storage_key} from S3: {e}")
            raise

    def exists(self, storage_key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=storage_key)
            return True
        except ClientError as e:
            if self._error_code(e) in NOT_FOUND_CODES:
                return False
            logger.error(f"Error checking object existence: {e}")
            raise

    def public_url(self, storage_key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{storage_key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{storage_key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{storage_key}"

    def signed_url(self, storage_key: str, ttl: int) -> str:
        """
        Generate a presigned GET URL.

        The bucket stays private; the URL grants read access until it
        expires after ttl seconds.
        """
        url = self._client.generate_presigned_url(
            ClientMethod='get_object',
            Params={
                'Bucket': self.bucket,
                'Key': storage_key,
            },
            ExpiresIn=ttl
        )
        logger.debug(f"Generated presigned read URL for {storage_key} (expires in {ttl}s)")
        return url
