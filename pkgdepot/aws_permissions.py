"""Start-up validation of the AWS resources used by the storage backends."""

import logging
from typing import Any

import boto3
from botocore.exceptions import ClientError, NoCredentialsError

logger = logging.getLogger(__name__)

PERMISSION_TEST_KEY = "permission-test/test-object"
INDEX_KEY_SCHEMA = {"pk": "HASH", "sk": "RANGE"}


class AWSPermissionError(Exception):
    """Custom exception for AWS permission-related errors."""

    def __init__(self, service: str, operation: str, error_code: str, message: str):
        self.service = service
        self.operation = operation
        self.error_code = error_code
        super().__init__(message)


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "Unknown")


class AWSPermissionValidator:
    """Checks that a bucket or table is usable before a backend relies on it."""

    def __init__(self, region: str = "us-east-1"):
        self.region = region
        self._clients: dict[str, Any] = {}

    def _get_client(self, service_name: str) -> Any:
        """Get or create an AWS service client.

        Raises:
            AWSPermissionError: If client creation fails due to credentials
        """
        if service_name not in self._clients:
            try:
                self._clients[service_name] = boto3.client(
                    service_name, region_name=self.region
                )
                logger.debug(f"Created {service_name} client for region {self.region}")
            except NoCredentialsError as e:
                error_msg = f"No AWS credentials found for {service_name}"
                logger.error(error_msg)
                raise AWSPermissionError(
                    service=service_name,
                    operation="client_creation",
                    error_code="NoCredentials",
                    message=error_msg,
                ) from e

        return self._clients[service_name]

    def validate_s3_permissions(
        self, bucket_name: str, required_operations: list[str]
    ) -> None:
        """Validate that the bucket exists and allows the given operations.

        Args:
            bucket_name: S3 bucket name
            required_operations: Any of "PutObject", "GetObject", "ListBucket"

        Raises:
            AWSPermissionError: If permission validation fails
        """
        logger.info(f"Validating S3 permissions for bucket: {bucket_name}")

        s3_client = self._get_client("s3")

        try:
            s3_client.head_bucket(Bucket=bucket_name)
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ("NoSuchBucket", "404"):
                error_msg = f"S3 bucket '{bucket_name}' does not exist"
            elif error_code in ("Forbidden", "403"):
                error_msg = f"Access denied to S3 bucket '{bucket_name}'"
            else:
                error_msg = f"Failed to access S3 bucket '{bucket_name}': {error_code}"

            logger.error(error_msg)
            raise AWSPermissionError(
                service="s3",
                operation="head_bucket",
                error_code=error_code,
                message=error_msg,
            ) from e

        for operation in required_operations:
            self._test_s3_operation(s3_client, bucket_name, operation)

    def _test_s3_operation(
        self, s3_client: Any, bucket_name: str, operation: str
    ) -> None:
        try:
            if operation == "PutObject":
                s3_client.put_object(
                    Bucket=bucket_name, Key=PERMISSION_TEST_KEY, Body=b"permission test"
                )
                try:
                    s3_client.delete_object(Bucket=bucket_name, Key=PERMISSION_TEST_KEY)
                except ClientError:
                    logger.warning(f"Failed to clean up test object: {PERMISSION_TEST_KEY}")

            elif operation == "GetObject":
                try:
                    s3_client.get_object(Bucket=bucket_name, Key=PERMISSION_TEST_KEY)
                except ClientError as e:
                    # A missing key still proves read access
                    if _error_code(e) in ("Forbidden", "AccessDenied"):
                        raise

            elif operation == "ListBucket":
                s3_client.list_objects_v2(Bucket=bucket_name, MaxKeys=1)

            else:
                raise ValueError(f"Unknown S3 operation: {operation}")

            logger.debug(f"S3 {operation} permission validated for {bucket_name}")

        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ("Forbidden", "AccessDenied"):
                error_msg = f"Access denied for S3 {operation} on bucket '{bucket_name}'"
            else:
                error_msg = f"S3 {operation} validation failed for bucket '{bucket_name}': {error_code}"

            logger.error(error_msg)
            raise AWSPermissionError(
                service="s3",
                operation=operation,
                error_code=error_code,
                message=error_msg,
            ) from e

    def validate_dynamodb_permissions(
        self, table_name: str, required_operations: list[str]
    ) -> None:
        """Validate that the index table is active, keyed by pk/sk, and usable.

        Args:
            table_name: DynamoDB table name
            required_operations: Any of "GetItem", "Query"

        Raises:
            AWSPermissionError: If permission validation fails
        """
        logger.info(f"Validating DynamoDB permissions for table: {table_name}")

        dynamodb_client = self._get_client("dynamodb")

        try:
            table = dynamodb_client.describe_table(TableName=table_name)["Table"]
        except ClientError as e:
            error_code = _error_code(e)
            if error_code == "ResourceNotFoundException":
                error_msg = f"DynamoDB table '{table_name}' does not exist"
            elif error_code == "AccessDeniedException":
                error_msg = f"Access denied to DynamoDB table '{table_name}'"
            else:
                error_msg = f"Failed to access DynamoDB table '{table_name}': {error_code}"

            logger.error(error_msg)
            raise AWSPermissionError(
                service="dynamodb",
                operation="describe_table",
                error_code=error_code,
                message=error_msg,
            ) from e

        table_status = table.get("TableStatus")
        if table_status != "ACTIVE":
            error_msg = f"DynamoDB table '{table_name}' is not active (status: {table_status})"
            logger.error(error_msg)
            raise AWSPermissionError(
                service="dynamodb",
                operation="describe_table",
                error_code="TableNotActive",
                message=error_msg,
            )

        key_schema = {
            element["AttributeName"]: element["KeyType"]
            for element in table.get("KeySchema", [])
        }
        if key_schema != INDEX_KEY_SCHEMA:
            error_msg = f"DynamoDB table '{table_name}' must be keyed by pk (hash) and sk (range), found {key_schema}"
            logger.error(error_msg)
            raise AWSPermissionError(
                service="dynamodb",
                operation="describe_table",
                error_code="UnexpectedKeySchema",
                message=error_msg,
            )

        for operation in required_operations:
            self._test_dynamodb_operation(dynamodb_client, table_name, operation)

    def _test_dynamodb_operation(
        self, dynamodb_client: Any, table_name: str, operation: str
    ) -> None:
        test_key = {"pk": {"S": "permission-test"}, "sk": {"S": "permission-test"}}

        try:
            if operation == "GetItem":
                dynamodb_client.get_item(TableName=table_name, Key=test_key)

            elif operation == "Query":
                dynamodb_client.query(
                    TableName=table_name,
                    KeyConditionExpression="pk = :pk",
                    ExpressionAttributeValues={":pk": test_key["pk"]},
                    Limit=1,
                )

            else:
                raise ValueError(f"Unknown DynamoDB operation: {operation}")

            logger.debug(f"DynamoDB {operation} permission validated for {table_name}")

        except ClientError as e:
            error_code = _error_code(e)
            if error_code == "AccessDeniedException":
                error_msg = f"Access denied for DynamoDB {operation} on table '{table_name}'"
            else:
                error_msg = f"DynamoDB {operation} validation failed for table '{table_name}': {error_code}"

            logger.error(error_msg)
            raise AWSPermissionError(
                service="dynamodb",
                operation=operation,
                error_code=error_code,
                message=error_msg,
            ) from e
