"""Object storage boundary: durably store a local file at a key, confirm, list."""

import logging
import os
import shutil
import tempfile

import boto3
from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError

from pocketlog.config import Config

logger = logging.getLogger(__name__)

_MISSING_CODES = ("404", "NoSuchKey", "NotFound")


class StoreError(Exception):
    """Raised for any failure talking to the object store."""


class ObjectStore:
    """Minimal capability the uploader needs from durable storage."""

    def put(self, key: str, path: str) -> None:
        raise NotImplementedError

    def head(self, key: str) -> int | None:
        """Return the stored object's size, or None if it does not exist."""
        raise NotImplementedError

    def list(self, prefix: str) -> dict[str, int]:
        """Return ``{key: size}`` for every object under *prefix*."""
        raise NotImplementedError

    def describe(self, key: str) -> str:
        return key


class S3Store(ObjectStore):
    def __init__(self, bucket: str, client=None, region: str | None = None,
                 endpoint_url: str | None = None):
        self._bucket = bucket
        self._client = client if client is not None else self._build_client(region, endpoint_url)

    @staticmethod
    def _build_client(region, endpoint_url):
        try:
            session = boto3.session.Session(region_name=region or None)
            return session.client("s3", endpoint_url=endpoint_url or None)
        except (BotoCoreError, Boto3Error) as exc:
            raise StoreError(f"Cannot create S3 client: {exc}") from exc

    def put(self, key: str, path: str) -> None:
        try:
            self._client.upload_file(
                path, self._bucket, key,
                ExtraArgs={"ContentType": "application/gzip"},
            )
        except (ClientError, BotoCoreError, Boto3Error) as exc:
            raise StoreError(f"Upload of s3://{self._bucket}/{key} failed: {exc}") from exc

    def head(self, key: str) -> int | None:
        try:
            resp = self._client.head_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return None
            raise StoreError(f"HEAD s3://{self._bucket}/{key} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreError(f"HEAD s3://{self._bucket}/{key} failed: {exc}") from exc
        return int(resp["ContentLength"])

    def list(self, prefix: str) -> dict[str, int]:
        objects = {}
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    objects[obj["Key"]] = int(obj["Size"])
        except (ClientError, BotoCoreError) as exc:
            raise StoreError(f"Listing s3://{self._bucket}/{prefix} failed: {exc}") from exc
        return objects

    def describe(self, key: str) -> str:
        return f"s3://{self._bucket}/{key}"


class FileSystemStore(ObjectStore):
    """Stores objects as files under a directory, e.g. a mounted network volume."""

    def __init__(self, directory: str):
        self._directory = directory

    def _path(self, key: str) -> str:
        parts = [p for p in key.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise StoreError(f"Invalid object key: {key!r}")
        return os.path.join(self._directory, *parts)

    def put(self, key: str, path: str) -> None:
        dest = self._path(key)
        try:
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=os.path.dirname(dest), suffix=".part")
            try:
                with os.fdopen(fd, "wb") as out, open(path, "rb") as src:
                    shutil.copyfileobj(src, out)
                    out.flush()
                    os.fsync(out.fileno())
                os.replace(tmp, dest)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as exc:
            raise StoreError(f"Storing {key} failed: {exc}") from exc

    def head(self, key: str) -> int | None:
        try:
            return os.stat(self._path(key)).st_size
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreError(f"Stat of {key} failed: {exc}") from exc

    def list(self, prefix: str) -> dict[str, int]:
        objects = {}
        if not os.path.isdir(self._directory):
            return objects
        try:
            for dirpath, _dirnames, filenames in os.walk(self._directory):
                for name in filenames:
                    if name.endswith(".part"):
                        continue
                    full = os.path.join(dirpath, name)
                    key = os.path.relpath(full, self._directory).replace(os.sep, "/")
                    if key.startswith(prefix):
                        objects[key] = os.stat(full).st_size
        except OSError as exc:
            raise StoreError(f"Listing {self._directory} failed: {exc}") from exc
        return objects

    def describe(self, key: str) -> str:
        return os.path.join(self._directory, key)


def build_store(config: Config) -> ObjectStore:
    if config.store_backend == "filesystem":
        return FileSystemStore(config.store_dir)
    return S3Store(
        config.s3_bucket,
        region=config.aws_region,
        endpoint_url=config.s3_endpoint_url,
    )
