"""DynamoDB-backed package index store.

All rows live in one table keyed by ``pk`` (hash) and ``sk`` (range):

- package: pk ``REPO#<repository id>``, sk ``PKG#<normalized name>``
- release: pk ``PKG#<repository id>#<normalized name>``, sk ``REL#<version>``
- file: pk ``REL#<repository id>#<normalized name>#<version>``, sk ``FILE#<filename>``
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from pkgdepot.aws_permissions import AWSPermissionValidator
from pkgdepot.config import ENV_AWS_REGION, ENV_DYNAMODB_TABLE, get_env_var
from pkgdepot.errors import DuplicateArtifact, StorageFailure
from pkgdepot.index_store import PackageIndexStore, merge_metadata
from pkgdepot.models import DistributionFile, Package, ProjectDetail, Release
from pkgdepot.utils import normalize_project_name, utcnow

logger = logging.getLogger(__name__)


def _package_key(repository_id: str, name: str) -> dict[str, str]:
    return {"pk": f"REPO#{repository_id}", "sk": f"PKG#{normalize_project_name(name)}"}


def _release_key(repository_id: str, name: str, version: str) -> dict[str, str]:
    return {
        "pk": f"PKG#{repository_id}#{normalize_project_name(name)}",
        "sk": f"REL#{version}",
    }


def _file_key(repository_id: str, name: str, version: str, filename: str) -> dict[str, str]:
    return {
        "pk": f"REL#{repository_id}#{normalize_project_name(name)}#{version}",
        "sk": f"FILE#{filename}",
    }


def _parse_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _sort_key(item: dict[str, Any]) -> tuple[str, int]:
    return item.get("created_at", ""), int(item.get("ordinal", 0))


class DynamoDBIndexStore(PackageIndexStore):
    """Package index persisted in a DynamoDB table."""

    def __init__(
        self,
        table_name: str | None = None,
        region: str | None = None,
        validate_permissions: bool = True,
    ):
        """Initialize the index store.

        Args:
            table_name: DynamoDB table name. If None, uses environment variable.
            region: AWS region. If None, uses environment variable or default.
            validate_permissions: Whether to validate table access on initialization.
        """
        self.table_name = table_name or get_env_var(ENV_DYNAMODB_TABLE, required=True)
        self.region = region or get_env_var(ENV_AWS_REGION, "us-east-1")

        if validate_permissions:
            permission_validator = AWSPermissionValidator(self.region)
            permission_validator.validate_dynamodb_permissions(
                self.table_name, ["GetItem", "Query"]
            )

        self.dynamodb = boto3.resource("dynamodb", region_name=self.region)
        self.table = self.dynamodb.Table(self.table_name)
        self.client = self.dynamodb.meta.client

        logger.info(f"Initialized DynamoDBIndexStore with table: {self.table_name}")

    @contextmanager
    def _backend_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to {action}: {e}")
            raise StorageFailure(f"Failed to {action}: {e}") from e

    def _query_all(self, pk: str) -> list[dict[str, Any]]:
        """Query every item under a partition key, following pagination."""
        response = self.table.query(KeyConditionExpression=Key("pk").eq(pk))
        items = list(response.get("Items", []))

        while "LastEvaluatedKey" in response:
            logger.debug(f"Querying next page of {pk}, found {len(items)} items so far")
            response = self.table.query(
                KeyConditionExpression=Key("pk").eq(pk),
                ExclusiveStartKey=response["LastEvaluatedKey"],
            )
            items.extend(response.get("Items", []))

        return sorted(items, key=_sort_key)

    def _item_to_package(self, item: dict[str, Any], repository_id: str) -> Package:
        return Package(
            repository_id=repository_id,
            name=item["name"],
            synced_at=_parse_timestamp(item.get("synced_at")),
            created_at=_parse_timestamp(item.get("created_at")),
        )

    def _item_to_file(self, item: dict[str, Any]) -> DistributionFile:
        size = item.get("size")
        return DistributionFile(
            filename=item["filename"],
            hashes=dict(item.get("hashes", {})),
            url=item.get("url"),
            path=item.get("path"),
            origin_url=item.get("origin_url"),
            size=int(size) if size is not None else None,
            created_at=_parse_timestamp(item.get("created_at")),
        )

    def _files_of(self, repository_id: str, name: str, version: str) -> list[DistributionFile]:
        files = []
        pk = _file_key(repository_id, name, version, "")["pk"]
        for item in self._query_all(pk):
            try:
                files.append(self._item_to_file(item))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping invalid file item {item.get('sk', 'unknown')}: {e}")
        return files

    def _item_to_release(self, item: dict[str, Any], repository_id: str, name: str) -> Release:
        metadata = item.get("metadata")
        return Release(
            version=item["version"],
            metadata=dict(metadata) if metadata is not None else None,
            files=self._files_of(repository_id, name, item["version"]),
            created_at=_parse_timestamp(item.get("created_at")),
        )

    def _file_item(
        self, repository_id: str, name: str, version: str, dist_file: DistributionFile, created_at: str, ordinal: int
    ) -> dict[str, Any]:
        item: dict[str, Any] = {
            **_file_key(repository_id, name, version, dist_file.filename),
            "entity": "file",
            "filename": dist_file.filename,
            "hashes": dict(dist_file.hashes),
            "created_at": dist_file.created_at.isoformat() if dist_file.created_at else created_at,
            "ordinal": ordinal,
        }
        for attribute in ("url", "path", "origin_url", "size"):
            value = getattr(dist_file, attribute)
            if value is not None:
                item[attribute] = value
        return item

    def _package_update(self, repository_id: str, name: str, now: str, synced_at: str | None = None) -> dict[str, Any]:
        expression = "SET #n = if_not_exists(#n, :n), created_at = if_not_exists(created_at, :now), entity = :entity"
        values: dict[str, Any] = {":n": name, ":now": now, ":entity": "package"}
        if synced_at is not None:
            expression += ", synced_at = :synced"
            values[":synced"] = synced_at
        return {
            "TableName": self.table_name,
            "Key": _package_key(repository_id, name),
            "UpdateExpression": expression,
            "ExpressionAttributeNames": {"#n": "name"},
            "ExpressionAttributeValues": values,
        }

    def _release_update(
        self, repository_id: str, name: str, version: str, metadata: dict[str, str] | None, now: str, ordinal: int = 0
    ) -> dict[str, Any]:
        expression = (
            "SET #v = if_not_exists(#v, :v), created_at = if_not_exists(created_at, :now), "
            "ordinal = if_not_exists(ordinal, :ordinal), entity = :entity"
        )
        names = {"#v": "version"}
        values: dict[str, Any] = {":v": version, ":now": now, ":ordinal": ordinal, ":entity": "release"}
        if metadata is not None:
            expression += ", #md = :md"
            names["#md"] = "metadata"
            values[":md"] = metadata
        return {
            "TableName": self.table_name,
            "Key": _release_key(repository_id, name, version),
            "UpdateExpression": expression,
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }

    def _current_metadata(self, repository_id: str, name: str, version: str) -> dict[str, str] | None:
        item = self.table.get_item(Key=_release_key(repository_id, name, version)).get("Item")
        if item is None or item.get("metadata") is None:
            return None
        return dict(item["metadata"])

    def list_packages(self, repository_id: str) -> list[Package]:
        with self._backend_errors(f"list packages of {repository_id}"):
            items = self._query_all(f"REPO#{repository_id}")

        packages = []
        for item in items:
            try:
                packages.append(self._item_to_package(item, repository_id))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping invalid package item {item.get('sk', 'unknown')}: {e}")
        return packages

    def get_package(self, repository_id: str, name: str) -> Package | None:
        with self._backend_errors(f"get package {name}"):
            item = self.table.get_item(Key=_package_key(repository_id, name)).get("Item")
        return self._item_to_package(item, repository_id) if item else None

    def get_project(self, repository_id: str, name: str) -> ProjectDetail | None:
        package = self.get_package(repository_id, name)
        if package is None:
            return None

        with self._backend_errors(f"get releases of {name}"):
            items = self._query_all(_release_key(repository_id, name, "")["pk"])
            releases = [self._item_to_release(item, repository_id, name) for item in items]

        return ProjectDetail(name=package.name, releases=releases)

    def get_release(self, repository_id: str, name: str, version: str) -> Release | None:
        with self._backend_errors(f"get release {name} {version}"):
            item = self.table.get_item(Key=_release_key(repository_id, name, version)).get("Item")
            return self._item_to_release(item, repository_id, name) if item else None

    def get_distribution_file(
        self, repository_id: str, name: str, version: str, filename: str
    ) -> DistributionFile | None:
        with self._backend_errors(f"get file {filename}"):
            item = self.table.get_item(
                Key=_file_key(repository_id, name, version, filename)
            ).get("Item")
        return self._item_to_file(item) if item else None

    def commit_artifact(
        self,
        repository_id: str,
        name: str,
        version: str,
        dist_file: DistributionFile,
        metadata: dict[str, str] | None = None,
        overwrite: bool = False,
    ) -> DistributionFile:
        now = utcnow().isoformat()

        with self._backend_errors(f"read release {name} {version}"):
            merged = merge_metadata(self._current_metadata(repository_id, name, version), metadata)

        file_put: dict[str, Any] = {
            "TableName": self.table_name,
            "Item": self._file_item(repository_id, name, version, dist_file, now, 0),
        }
        if not overwrite:
            file_put["ConditionExpression"] = "attribute_not_exists(sk)"

        try:
            self.client.transact_write_items(
                TransactItems=[
                    {"Update": self._package_update(repository_id, name, now)},
                    {"Update": self._release_update(repository_id, name, version, merged, now)},
                    {"Put": file_put},
                ]
            )
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            reasons = e.response.get("CancellationReasons", [])
            if error_code == "TransactionCanceledException" and any(
                reason.get("Code") == "ConditionalCheckFailed" for reason in reasons
            ):
                raise DuplicateArtifact(repository_id, name, version, dist_file.filename) from e

            logger.error(f"Failed to commit {name} {version} {dist_file.filename}: {error_code}")
            raise StorageFailure(f"Failed to commit {dist_file.filename}: {error_code}") from e
        except BotoCoreError as e:
            logger.error(f"Failed to commit {name} {version} {dist_file.filename}: {e}")
            raise StorageFailure(f"Failed to commit {dist_file.filename}: {e}") from e

        logger.info(f"Stored {name} {version} {dist_file.filename} in {repository_id}")
        return self._item_to_file(file_put["Item"])

    def remove_distribution_file(
        self, repository_id: str, name: str, version: str, filename: str
    ) -> None:
        with self._backend_errors(f"remove file {filename}"):
            self.table.delete_item(Key=_file_key(repository_id, name, version, filename))

    def record_project(
        self,
        repository_id: str,
        name: str,
        releases: list[Release],
        synced_at: datetime,
    ) -> None:
        now = utcnow().isoformat()

        with self._backend_errors(f"record project {name}"):
            for release_ordinal, release in enumerate(releases):
                merged = merge_metadata(
                    self._current_metadata(repository_id, name, release.version),
                    release.metadata,
                )
                self.client.update_item(
                    **self._release_update(
                        repository_id, name, release.version, merged, now, release_ordinal
                    )
                )

                for file_ordinal, dist_file in enumerate(release.files):
                    try:
                        self.client.put_item(
                            TableName=self.table_name,
                            Item=self._file_item(
                                repository_id, name, release.version, dist_file, now, file_ordinal
                            ),
                            ConditionExpression="attribute_not_exists(sk)",
                        )
                    except ClientError as e:
                        # Cached files are immutable; keep the existing row
                        if e.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
                            raise

            self.client.update_item(
                **self._package_update(repository_id, name, now, synced_at.isoformat())
            )

        logger.info(f"Recorded {len(releases)} releases of {name} in {repository_id}")

    def delete_repository(self, repository_id: str) -> int:
        logger.info(f"Deleting index rows of repository {repository_id}")

        with self._backend_errors(f"delete repository {repository_id}"):
            package_items = self._query_all(f"REPO#{repository_id}")
            keys = []
            for package_item in package_items:
                name = package_item["name"]
                for release_item in self._query_all(_release_key(repository_id, name, "")["pk"]):
                    version = release_item["version"]
                    file_pk = _file_key(repository_id, name, version, "")["pk"]
                    keys.extend({"pk": i["pk"], "sk": i["sk"]} for i in self._query_all(file_pk))
                    keys.append({"pk": release_item["pk"], "sk": release_item["sk"]})
                keys.append({"pk": package_item["pk"], "sk": package_item["sk"]})

            with self.table.batch_writer() as batch:
                for key in keys:
                    batch.delete_item(Key=key)

        logger.info(f"Removed {len(package_items)} packages ({len(keys)} rows) of repository {repository_id}")
        return len(package_items)
