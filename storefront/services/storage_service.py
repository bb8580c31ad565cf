"""
Private object storage for downloadable product files.

Operators upload files once (``flask add-product-file``). Customers never see
bucket keys: a redeemed download grant turns into a presigned GET URL that
expires after DOWNLOAD_URL_TTL seconds. Any S3-compatible endpoint works
(MinIO in development, AWS S3 or DigitalOcean Spaces in production).
"""
import logging
import mimetypes
from typing import BinaryIO, Mapping, Optional

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import ClientError
from flask import current_app

logger = logging.getLogger(__name__)


def product_file_key(product_id: int, file_name: str) -> str:
    return f'products/{product_id}/{file_name}'


class StorageService:
    """Upload and presign product files in one bucket."""

    def __init__(self, config: Mapping):
        self.bucket = config['S3_BUCKET']
        self.url_ttl = int(config.get('DOWNLOAD_URL_TTL', 300))
        self.client = boto3.client(
            's3',
            endpoint_url=config.get('S3_ENDPOINT') or None,
            aws_access_key_id=config.get('S3_ACCESS_KEY'),
            aws_secret_access_key=config.get('S3_SECRET_KEY'),
            region_name=config.get('S3_REGION'),
            config=BotoConfig(signature_version='s3v4'),
        )
        self._bucket_checked = False

    def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') != '404':
                raise
            # Created without a public ACL, objects stay private
            self.client.create_bucket(Bucket=self.bucket)
            logger.info(f"[STORAGE] Created bucket '{self.bucket}'")
        self._bucket_checked = True

    def put_product_file(self, fileobj: BinaryIO, product_id: int, file_name: str) -> str:
        """Upload a product file and confirm it landed. Returns the object key."""
        self._ensure_bucket()
        key = product_file_key(product_id, file_name)
        content_type = mimetypes.guess_type(file_name)[0] or 'application/octet-stream'

        logger.info(f"[STORAGE] Uploading {key} to '{self.bucket}'")
        self.client.upload_fileobj(fileobj, self.bucket, key, ExtraArgs={'ContentType': content_type})
        if not self.exists(key):
            raise RuntimeError(f'Upload of {key} could not be confirmed.')
        return key

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError:
            return False
        return True

    def presign_download(self, key: str, file_name: str, expires_in: Optional[int] = None) -> str:
        """Short-lived GET URL that saves the object under its original name."""
        return self.client.generate_presigned_url(
            'get_object',
            Params={
                'Bucket': self.bucket,
                'Key': key,
                'ResponseContentDisposition': f'attachment; filename="{file_name}"',
            },
            ExpiresIn=expires_in or self.url_ttl,
        )


_storage_service: Optional[StorageService] = None


def get_storage_service() -> StorageService:
    global _storage_service
    if _storage_service is None:
        _storage_service = StorageService(current_app.config)
    return _storage_service
