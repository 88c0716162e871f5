"""Byte storage backends for distribution files."""

import logging
import mimetypes
import os
import shutil
import tempfile
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from pkgdepot.aws_permissions import AWSPermissionValidator
from pkgdepot.errors import StorageFailure

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536


def _as_chunks(data: bytes | Iterable[bytes]) -> Iterable[bytes]:
    if isinstance(data, (bytes, bytearray, memoryview)):
        return [bytes(data)]
    return data


class Storage(ABC):
    """Storage capability used by local repositories and remote caches.

    Paths are relative, "/"-separated keys. Writes replace whole objects and
    readers never observe a partially written object.
    """

    @abstractmethod
    def write(self, path: str, data: bytes | Iterable[bytes]) -> int:
        """Store ``data`` at ``path`` and return the number of bytes written.

        Raises:
            StorageFailure: If the bytes could not be persisted
        """

    @abstractmethod
    def read(self, path: str) -> bytes:
        """Return the bytes stored at ``path``.

        Raises:
            FileNotFoundError: If nothing is stored at ``path``
            StorageFailure: If the read fails for any other reason
        """

    @abstractmethod
    def iter_chunks(self, path: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        """Stream the bytes stored at ``path``."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Whether an object is stored at ``path``."""

    @abstractmethod
    def mkdir_all(self, path: str) -> None:
        """Make sure the directory ``path`` and its parents exist."""

    @abstractmethod
    def move(self, source: str, target: str) -> None:
        """Replace whatever is stored at ``target`` with the object at ``source``.

        Raises:
            StorageFailure: If the object could not be moved
        """

    @abstractmethod
    def delete(self, path: str) -> None:
        """Remove the object at ``path`` if there is one."""

    @abstractmethod
    def delete_tree(self, path: str) -> None:
        """Remove ``path`` and everything below it."""


class FilesystemStorage(Storage):
    """Stores bytes below a root directory on local disk."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized FilesystemStorage at {self.root}")

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        if target != self.root and not target.is_relative_to(self.root):
            raise StorageFailure(f"Path escapes storage root: {path}")
        return target

    def write(self, path: str, data: bytes | Iterable[bytes]) -> int:
        target = self._resolve(path)
        tmp_name = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=target.parent, prefix=f".{target.name}.", delete=False
            ) as tmp:
                tmp_name = tmp.name
                size = 0
                for chunk in _as_chunks(data):
                    tmp.write(chunk)
                    size += len(chunk)
                tmp.flush()
                os.fsync(tmp.fileno())

            os.replace(tmp_name, target)
            logger.debug(f"Wrote {size} bytes to {target}")
            return size

        except OSError as e:
            logger.error(f"Failed to write {target}: {e}")
            raise StorageFailure(f"Failed to write {path}: {e}") from e

        finally:
            # The source iterator may fail mid-stream too; never leave a partial file
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def read(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            raise
        except OSError as e:
            logger.error(f"Failed to read {target}: {e}")
            raise StorageFailure(f"Failed to read {path}: {e}") from e

    def iter_chunks(self, path: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        target = self._resolve(path)
        with open(target, "rb") as f:
            for chunk in iter(lambda: f.read(chunk_size), b""):
                yield chunk

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def mkdir_all(self, path: str) -> None:
        try:
            self._resolve(path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFailure(f"Failed to create directory {path}: {e}") from e

    def move(self, source: str, target: str) -> None:
        source_path = self._resolve(source)
        target_path = self._resolve(target)
        try:
            target_path.parent.mkdir(parents=True, exist_ok=True)
            os.replace(source_path, target_path)
            logger.debug(f"Moved {source_path} to {target_path}")
        except OSError as e:
            logger.error(f"Failed to move {source_path} to {target_path}: {e}")
            raise StorageFailure(f"Failed to move {source} to {target}: {e}") from e

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            target.unlink(missing_ok=True)
        except OSError as e:
            raise StorageFailure(f"Failed to delete {path}: {e}") from e

    def delete_tree(self, path: str) -> None:
        target = self._resolve(path)
        if target == self.root:
            raise StorageFailure("Refusing to delete the storage root")
        try:
            if target.exists():
                shutil.rmtree(target)
                logger.info(f"Removed directory {target}")
        except OSError as e:
            raise StorageFailure(f"Failed to delete directory {path}: {e}") from e


class S3Storage(Storage):
    """Stores bytes as objects in an S3 bucket."""

    MAX_RETRIES = 3
    SPOOL_SIZE = 8 * 1024 * 1024

    def __init__(
        self,
        bucket_name: str,
        prefix: str = "",
        region: str = "us-east-1",
        validate_permissions: bool = True,
    ):
        """Initialize S3Storage.

        Args:
            bucket_name: S3 bucket name
            prefix: Key prefix under which all paths are stored
            region: AWS region
            validate_permissions: Whether to validate bucket access on initialization
        """
        self.bucket_name = bucket_name
        self.prefix = prefix.strip("/")
        self.region = region

        if validate_permissions:
            permission_validator = AWSPermissionValidator(self.region)
            permission_validator.validate_s3_permissions(
                self.bucket_name, ["PutObject", "GetObject", "ListBucket"]
            )

        self.s3_client = boto3.client("s3", region_name=self.region)

        logger.info(f"Initialized S3Storage for bucket: {self.bucket_name}")

    def _key(self, path: str) -> str:
        path = path.strip("/")
        return f"{self.prefix}/{path}" if self.prefix else path

    @staticmethod
    def _content_type(path: str) -> str:
        content_type, _ = mimetypes.guess_type(path)
        if content_type is None:
            if path.endswith(".whl"):
                content_type = "application/zip"
            else:
                content_type = "application/octet-stream"
        return content_type

    @staticmethod
    def _is_missing(error: ClientError) -> bool:
        code = error.response.get("Error", {}).get("Code", "Unknown")
        return code in ("NoSuchKey", "404", "NotFound")

    def write(self, path: str, data: bytes | Iterable[bytes]) -> int:
        key = self._key(path)
        content_type = self._content_type(path)

        with tempfile.SpooledTemporaryFile(max_size=self.SPOOL_SIZE) as spool:
            size = 0
            for chunk in _as_chunks(data):
                spool.write(chunk)
                size += len(chunk)

            for attempt in range(self.MAX_RETRIES):
                try:
                    logger.debug(
                        f"Uploading {size} bytes to s3://{self.bucket_name}/{key} (attempt {attempt + 1})"
                    )
                    spool.seek(0)
                    self.s3_client.upload_fileobj(
                        spool,
                        self.bucket_name,
                        key,
                        ExtraArgs={"ContentType": content_type},
                    )
                    return size

                except (ClientError, BotoCoreError) as e:
                    logger.warning(f"Upload attempt {attempt + 1} failed for {key}: {e}")

                    if attempt == self.MAX_RETRIES - 1:
                        logger.error(f"All upload attempts failed for {key}")
                        raise StorageFailure(f"Failed to write {path}: {e}") from e

                    # Exponential backoff
                    time.sleep(2**attempt)

        return size

    def _get_object(self, path: str) -> dict:
        try:
            return self.s3_client.get_object(Bucket=self.bucket_name, Key=self._key(path))
        except ClientError as e:
            if self._is_missing(e):
                raise FileNotFoundError(path) from e
            logger.error(f"Failed to read s3://{self.bucket_name}/{self._key(path)}: {e}")
            raise StorageFailure(f"Failed to read {path}: {e}") from e

    def read(self, path: str) -> bytes:
        return self._get_object(path)["Body"].read()

    def iter_chunks(self, path: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        body = self._get_object(path)["Body"]
        try:
            yield from body.iter_chunks(chunk_size)
        finally:
            body.close()

    def exists(self, path: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=self._key(path))
            return True
        except ClientError as e:
            if self._is_missing(e):
                return False
            raise StorageFailure(f"Failed to stat {path}: {e}") from e

    def mkdir_all(self, path: str) -> None:
        # Object keys need no parent directories
        logger.debug(f"No directory needed for s3://{self.bucket_name}/{self._key(path)}")

    def move(self, source: str, target: str) -> None:
        source_key = self._key(source)
        target_key = self._key(target)
        try:
            self.s3_client.copy(
                {"Bucket": self.bucket_name, "Key": source_key},
                self.bucket_name,
                target_key,
                ExtraArgs={"ContentType": self._content_type(target), "MetadataDirective": "REPLACE"},
            )
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=source_key)
            logger.debug(f"Moved s3://{self.bucket_name}/{source_key} to {target_key}")
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to move s3://{self.bucket_name}/{source_key} to {target_key}: {e}")
            raise StorageFailure(f"Failed to move {source} to {target}: {e}") from e

    def delete(self, path: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self._key(path))
        except ClientError as e:
            raise StorageFailure(f"Failed to delete {path}: {e}") from e

    def delete_tree(self, path: str) -> None:
        prefix = self._key(path).rstrip("/") + "/"
        try:
            paginator = self.s3_client.get_paginator("list_objects_v2")
            deleted = 0
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                objects = [{"Key": item["Key"]} for item in page.get("Contents", [])]
                if objects:
                    self.s3_client.delete_objects(
                        Bucket=self.bucket_name, Delete={"Objects": objects}
                    )
                    deleted += len(objects)
            logger.info(f"Removed {deleted} objects under s3://{self.bucket_name}/{prefix}")
        except ClientError as e:
            raise StorageFailure(f"Failed to delete {path}: {e}") from e
