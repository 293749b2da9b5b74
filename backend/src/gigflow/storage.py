"""
File storage collaborator for deliverables.
Uploads go to the deliverables bucket; downloads use presigned URLs because
the bucket is private.
"""
import mimetypes
import uuid
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import config
from .errors import ExternalCollaboratorError
from .logging import logger

DELIVERABLES_PREFIX = 'deliverables/'


class DeliverableStorage:
    """Stores deliverable files in S3."""

    def __init__(self, s3_client=None, bucket_name: str = None):
        # Custom signature version for presigned URLs
        self.s3 = s3_client or boto3.client(
            's3',
            region_name=config.AWS_REGION,
            config=BotoConfig(signature_version='s3v4')
        )
        self.bucket = bucket_name if bucket_name is not None else config.DELIVERABLES_BUCKET

    def store(self, data: bytes, content_type: str, engagement_id: str = '') -> str:
        """
        Upload a deliverable and return its URL.

        Raises:
            ExternalCollaboratorError: if the bucket is missing or the upload fails
        """
        if not self.bucket:
            raise ExternalCollaboratorError('No DELIVERABLES_BUCKET configured')

        extension = mimetypes.guess_extension(content_type or '') or ''
        key = f"{DELIVERABLES_PREFIX}{engagement_id + '/' if engagement_id else ''}{uuid.uuid4()}{extension}"
        try:
            self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type or 'application/octet-stream'
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error uploading deliverable to {self.bucket}/{key}: {e}")
            raise ExternalCollaboratorError('File storage unavailable') from e

        logger.info(f"Stored deliverable {key} ({len(data)} bytes)")
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    def presigned_url(self, url_or_key: str, expiration: Optional[int] = None) -> str:
        """
        Generate a presigned download URL.

        Returns the original value if it is not one of ours or signing fails.
        """
        if not url_or_key or not self.bucket:
            return url_or_key

        key = url_or_key
        if key.startswith('http://') or key.startswith('https://'):
            bucket_url = f"https://{self.bucket}.s3.amazonaws.com/"
            if not key.startswith(bucket_url):
                # External URL, return as-is
                return url_or_key
            key = key[len(bucket_url):]

        try:
            return self.s3.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket, 'Key': key},
                ExpiresIn=expiration or config.PRESIGNED_URL_EXPIRATION
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error generating presigned URL for {key}: {e}")
            return url_or_key
