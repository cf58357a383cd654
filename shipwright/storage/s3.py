#!/usr/bin/env python3
"""S3 storage backend for off-host backup copies."""

import os
import tempfile
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .base import StorageBackend
from ..errors import BackupFailure, ConfigurationError


class S3Storage(StorageBackend):
    """S3 (or S3-compatible) bucket. Files are staged through a local temp dir."""

    name = 's3'

    def __init__(self, settings, environ=None):
        self.bucket = settings.bucket_name
        self.region = settings.region
        self.endpoint_url = settings.endpoint_url
        self.prefix = settings.prefix or ''
        self.environ = os.environ if environ is None else environ

        if not self.bucket:
            raise ConfigurationError("storage.bucket_name is required for the s3 backend")

        self._validate_credentials()
        self._client = None

    def _validate_credentials(self):
        """Validate required AWS credentials are set."""
        missing = [
            var for var in ('AWS_ACCESS_KEY_ID', 'AWS_SECRET_ACCESS_KEY')
            if var not in self.environ
        ]
        if missing:
            raise ConfigurationError(
                f"Missing environment variables: {', '.join(missing)}",
                guidance='Export AWS credentials or set storage.backend to none.'
            )

    def _get_client(self):
        """Lazy initialization of boto3 client."""
        if self._client is None:
            self._client = boto3.client(
                's3',
                endpoint_url=self.endpoint_url,
                aws_access_key_id=self.environ['AWS_ACCESS_KEY_ID'],
                aws_secret_access_key=self.environ['AWS_SECRET_ACCESS_KEY'],
                region_name=self.region
            )
        return self._client

    def _key(self, storage_key):
        return f"{self.prefix}{storage_key}"

    def _get_s3_url(self, key):
        return f"s3://{self.bucket}/{key}"

    def _s3_upload(self, local_path, storage_key):
        key = self._key(storage_key)
        s3_url = self._get_s3_url(key)
        print(f"Uploading to S3: {s3_url}")
        try:
            self._get_client().upload_file(str(local_path), self.bucket, key)
        except (BotoCoreError, ClientError) as e:
            raise BackupFailure(f"S3 upload failed: {e}") from e
        print("[OK] Uploaded")
        return key, s3_url

    def upload_from_host(self, executor, remote_path, storage_key):
        """Download the file from the host, then push it to S3."""
        with tempfile.TemporaryDirectory(prefix='shipwright-') as temp_dir:
            local_path = Path(temp_dir) / Path(remote_path).name

            print(f"Downloading {remote_path} from {executor.name}...")
            executor.download(remote_path, str(local_path))
            print("[OK] Downloaded")

            key, s3_url = self._s3_upload(local_path, storage_key)

        return {
            'storage_mode': 's3',
            's3_bucket': self.bucket,
            's3_key': key,
            'filename': Path(remote_path).name,
            's3_url': s3_url
        }
