"""S3 backup storage.

Backups are laid out as ``s3://<bucket>/<service>/<backup file>``, one
bucket per environment. Credentials come from named AWS profiles in
~/.aws (no keys are stored by this tool).
"""

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, ProfileNotFound

from dbrestore.core.config import CloudSelection
from dbrestore.core.context import ExecutionContext
from dbrestore.core.exceptions import StorageError
from dbrestore.services.dumpfile import is_backup_file


@dataclass
class S3ObjectInfo:
    """Information about an S3 object."""

    key: str
    size: int
    last_modified: datetime

    @property
    def name(self) -> str:
        """Get the object name (last part of key)."""
        return self.key.rsplit("/", 1)[-1]


# Progress callback type: (bytes_transferred, total_bytes) -> None
ProgressCallback = Callable[[int, int], None]


def available_profiles(configured: list[str]) -> list[str]:
    """AWS profiles that exist locally, in the configured order.

    Falls back to the full configured list when none of them exist, so
    that environment credentials (AWS_ACCESS_KEY_ID) still work through
    the ``default`` profile.
    """
    try:
        existing = set(boto3.session.Session().available_profiles)
    except BotoCoreError:
        existing = set()
    found = [p for p in configured if p in existing]
    return found or list(configured)


class S3BackupStore:
    """Lists and downloads backups from one environment bucket.

    Usage:
        store = S3BackupStore(ctx, selection)
        store.check_bucket()
        for backup in store.list_backups("billing"):
            ...
    """

    def __init__(self, ctx: ExecutionContext, selection: CloudSelection) -> None:
        """Initialize the store.

        Args:
            ctx: Execution context
            selection: Profile, environment, bucket and region for this run
        """
        self.ctx = ctx
        self.selection = selection
        self._client = None

    @property
    def bucket(self) -> str:
        return self.selection.bucket

    @property
    def client(self):
        """Lazy-initialize S3 client."""
        if self._client is None:
            try:
                session = boto3.session.Session(
                    profile_name=self.selection.profile,
                    region_name=self.selection.region,
                )
            except ProfileNotFound as e:
                raise StorageError(
                    f"AWS profile not found: {self.selection.profile}",
                    hint="Configure it with: aws configure --profile "
                    f"{self.selection.profile}",
                ) from e
            self._client = session.client(
                "s3",
                config=BotoConfig(
                    retries={"max_attempts": 3, "mode": "standard"},
                    connect_timeout=30,
                    read_timeout=60,
                ),
            )
        return self._client

    def check_bucket(self) -> None:
        """Check that the bucket is reachable with the selected profile.

        Raises:
            StorageError: If the bucket cannot be accessed
        """
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(
                f"Cannot access S3 bucket '{self.bucket}' with profile '{self.selection.profile}'",
                hint="Check the AWS profile credentials and S3_BUCKET_"
                f"{self.selection.environment.upper()}",
                details=[str(e)],
            ) from e
        self.ctx.console.verbose(f"Bucket s3://{self.bucket} is accessible")

    def list_services(self) -> list[str]:
        """Top-level prefixes of the bucket, one per service, sorted.

        Raises:
            StorageError: If listing fails
        """
        services = [prefix.rstrip("/") for prefix in self._list_prefixes("")]
        return sorted(s for s in services if s)

    def list_backups(self, service: str) -> list[S3ObjectInfo]:
        """Backups of a service with a recognized suffix, newest first.

        Raises:
            StorageError: If listing fails
        """
        prefix = f"{service.strip('/')}/"
        backups = [
            obj for obj in self._list_objects(prefix)
            if not obj.key.endswith("/") and is_backup_file(obj.name)
        ]
        backups.sort(key=lambda obj: obj.last_modified, reverse=True)
        return backups

    def download(
        self,
        key: str,
        local_path: Path,
        *,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Path:
        """Download an object to a local file.

        Args:
            key: S3 object key
            local_path: Local destination path
            progress_callback: Optional callback for progress updates

        Returns:
            The local path

        Raises:
            StorageError: If download fails
        """
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
            file_size = response["ContentLength"]

            callback = None
            if progress_callback:
                bytes_transferred = [0]

                def _callback(bytes_amount):
                    bytes_transferred[0] += bytes_amount
                    progress_callback(bytes_transferred[0], file_size)

                callback = _callback

            local_path.parent.mkdir(parents=True, exist_ok=True)
            self.client.download_file(self.bucket, key, str(local_path), Callback=callback)

        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("404", "NoSuchKey"):
                raise StorageError(
                    f"Backup not found: s3://{self.bucket}/{key}",
                    hint="The object may have been removed; list the backups again",
                ) from e
            raise StorageError(
                f"Failed to download s3://{self.bucket}/{key}",
                details=[str(e)],
            ) from e
        except BotoCoreError as e:
            raise StorageError(
                f"Failed to download s3://{self.bucket}/{key}",
                details=[str(e)],
            ) from e

        self.ctx.console.verbose(f"Downloaded to {local_path}")
        return local_path

    def build_s3_uri(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    def _list_objects(self, prefix: str) -> Iterator[S3ObjectInfo]:
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    yield S3ObjectInfo(
                        key=obj["Key"],
                        size=obj["Size"],
                        last_modified=obj["LastModified"],
                    )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(
                f"Failed to list backups under s3://{self.bucket}/{prefix}",
                details=[str(e)],
            ) from e

    def _list_prefixes(self, prefix: str) -> Iterator[str]:
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix, Delimiter="/"):
                for common_prefix in page.get("CommonPrefixes", []):
                    yield common_prefix["Prefix"]
        except (BotoCoreError, ClientError) as e:
            raise StorageError(
                f"Failed to list services in s3://{self.bucket}",
                details=[str(e)],
            ) from e
