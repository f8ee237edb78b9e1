"""
Blob storage abstraction for exported artifacts.

Provides a unified interface that works with the local filesystem
(development), Google Cloud Storage and Amazon S3.

The export pipeline only needs put(); get, list and delete back the
auxiliary CLI commands. Keys are relative to the store's root, which is
the configured storage_path (a directory, gs://bucket/prefix or
s3://bucket/prefix).
"""

import shutil
from pathlib import Path
from typing import Protocol

import structlog

from sfm_exporter.config import Config

log = structlog.get_logger()

# Multi-part settings for S3 uploads of a single artifact
S3_PART_SIZE = 5 * 1024 * 1024
S3_CONCURRENCY = 5


def content_type_for(path: str) -> str:
    """Content type sent with an upload, based on the file extension."""
    suffix = Path(path).suffix
    if suffix == ".json":
        return "application/json"
    if suffix == ".gz":
        return "application/gzip"
    return "application/octet-stream"


def split_uri(uri: str, scheme: str) -> tuple[str, str]:
    """
    Parse a "<scheme>://bucket/prefix" URI into bucket and prefix.

    Example:
        split_uri("gs://my-bucket/data/out", "gs") -> ("my-bucket", "data/out")
    """
    path = uri.removeprefix(f"{scheme}://")
    bucket, _, prefix = path.partition("/")
    return bucket, prefix.strip("/")


def _join_key(prefix: str, key: str) -> str:
    return f"{prefix}/{key}" if prefix else key


class BlobStore(Protocol):
    """
    Protocol defining the blob store interface.

    - put: Upload a local file under key, blocking until acknowledged
    - get: Download key to a local path
    - list: Keys under a prefix, relative to the store root
    - delete: Remove key
    - uri: Fully qualified location of key, for logging
    """

    def put(self, local_path: str, key: str) -> None:
        ...

    def get(self, key: str, local_path: str) -> None:
        ...

    def list(self, prefix: str = "") -> list[str]:
        ...

    def delete(self, key: str) -> None:
        ...

    def uri(self, key: str) -> str:
        ...


class LocalBlobStore:
    """
    Local filesystem implementation.

    Used for local development. Objects are plain files below root.
    """

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def put(self, local_path: str, key: str) -> None:
        """Copy a file to root/key, replacing any existing object."""
        dest = self.root / key
        dest.parent.mkdir(parents=True, exist_ok=True)

        # Copy to a temp name first so a reader never sees a partial object
        tmp = dest.with_name(dest.name + ".partial")
        shutil.copyfile(local_path, tmp)
        tmp.replace(dest)

    def get(self, key: str, local_path: str) -> None:
        dest = Path(local_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.root / key, dest)

    def list(self, prefix: str = "") -> list[str]:
        if not self.root.exists():
            return []
        keys = [
            p.relative_to(self.root).as_posix()
            for p in self.root.rglob("*")
            if p.is_file() and not p.name.endswith(".partial")
        ]
        return sorted(k for k in keys if k.startswith(prefix))

    def delete(self, key: str) -> None:
        (self.root / key).unlink()

    def uri(self, key: str) -> str:
        return str(self.root / key)


class GCSBlobStore:
    """
    Google Cloud Storage implementation.

    GCS uploads are atomic, so an object is either fully present or not
    visible at all.
    """

    def __init__(self, path: str, client=None) -> None:
        """
        Initialise the GCS client.

        Uses Application Default Credentials unless a client is passed in.

        Args:
            path: Root location like "gs://bucket/prefix"
            client: Optional pre-built storage.Client
        """
        if client is None:
            from google.cloud import storage
            client = storage.Client()
        self.client = client
        self.bucket_name, self.prefix = split_uri(path, "gs")
        self.bucket = self.client.bucket(self.bucket_name)

    def put(self, local_path: str, key: str) -> None:
        blob = self.bucket.blob(_join_key(self.prefix, key))
        blob.upload_from_filename(local_path, content_type=content_type_for(local_path))

    def get(self, key: str, local_path: str) -> None:
        blob = self.bucket.blob(_join_key(self.prefix, key))
        blob.download_to_filename(local_path)

    def list(self, prefix: str = "") -> list[str]:
        full_prefix = _join_key(self.prefix, prefix)
        strip = len(self.prefix) + 1 if self.prefix else 0
        return sorted(
            blob.name[strip:]
            for blob in self.client.list_blobs(self.bucket_name, prefix=full_prefix)
            if not blob.name.endswith("/")
        )

    def delete(self, key: str) -> None:
        self.bucket.blob(_join_key(self.prefix, key)).delete()

    def uri(self, key: str) -> str:
        return f"gs://{self.bucket_name}/{_join_key(self.prefix, key)}"


class S3BlobStore:
    """
    Amazon S3 implementation.

    Large artifacts are sent as multi-part uploads; boto3 parallelises the
    parts of that one object.
    """

    def __init__(
        self,
        path: str,
        region: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        client=None,
    ) -> None:
        """
        Initialise the S3 client.

        Static credentials are used when both keys are given; otherwise
        boto3's default credential chain applies.

        Args:
            path: Root location like "s3://bucket/prefix"
            region: AWS region
            access_key: Optional access key id
            secret_key: Optional secret access key
            client: Optional pre-built boto3 S3 client
        """
        from boto3.s3.transfer import TransferConfig

        if client is None:
            import boto3

            kwargs = {"region_name": region}
            if access_key and secret_key:
                kwargs["aws_access_key_id"] = access_key
                kwargs["aws_secret_access_key"] = secret_key
            client = boto3.client("s3", **kwargs)

        self.client = client
        self.bucket, self.prefix = split_uri(path, "s3")
        self.transfer_config = TransferConfig(
            multipart_chunksize=S3_PART_SIZE,
            max_concurrency=S3_CONCURRENCY,
        )

    def put(self, local_path: str, key: str) -> None:
        self.client.upload_file(
            local_path,
            self.bucket,
            _join_key(self.prefix, key),
            ExtraArgs={"ContentType": content_type_for(local_path)},
            Config=self.transfer_config,
        )

    def get(self, key: str, local_path: str) -> None:
        self.client.download_file(self.bucket, _join_key(self.prefix, key), local_path)

    def list(self, prefix: str = "") -> list[str]:
        full_prefix = _join_key(self.prefix, prefix)
        strip = len(self.prefix) + 1 if self.prefix else 0

        keys = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=full_prefix):
            for item in page.get("Contents", []):
                keys.append(item["Key"][strip:])
        return sorted(keys)

    def delete(self, key: str) -> None:
        full_key = _join_key(self.prefix, key)
        self.client.delete_object(Bucket=self.bucket, Key=full_key)
        self.client.get_waiter("object_not_exists").wait(Bucket=self.bucket, Key=full_key)

    def uri(self, key: str) -> str:
        return f"s3://{self.bucket}/{_join_key(self.prefix, key)}"


def create_blob_store(config: Config) -> BlobStore:
    """Build the blob store selected by config.storage_backend."""
    if config.storage_backend == "gcs":
        return GCSBlobStore(config.storage_path)
    if config.storage_backend == "s3":
        return S3BlobStore(
            config.storage_path,
            region=config.region,
            access_key=config.access_key,
            secret_key=config.secret_key,
        )
    return LocalBlobStore(config.storage_path)
