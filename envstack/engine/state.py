"""Terraform state backend and the workflow lease."""

import getpass
import socket
import time
from types import TracebackType
from typing import Any, Dict, Optional, Type

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import ConfigurationError, LeaseHeldError, StateLockError
from ..models.config import InfraModel, StateLocation

logger = structlog.get_logger()


def ensure_state_backend(infra: InfraModel, session: Optional[boto3.Session] = None) -> None:
    """
    Ensure state backend resources exist.

    - Creates S3 bucket for state storage
    - Creates DynamoDB table for state locking (also holds the workflow lease)

    Args:
        infra: Infrastructure model
        session: boto3 session; defaults to the standard credential chain

    Raises:
        ClientError: If backend resources cannot be created
    """
    session = session or boto3.Session(region_name=infra.state_region)

    s3 = session.client("s3", region_name=infra.state_region)
    dynamodb = session.client("dynamodb", region_name=infra.state_region)

    bucket_name = infra.state_bucket
    table_name = infra.lock_table

    # Create S3 bucket
    try:
        if infra.state_region == "us-east-1":
            s3.create_bucket(Bucket=bucket_name)
        else:
            s3.create_bucket(
                Bucket=bucket_name,
                CreateBucketConfiguration={"LocationConstraint": infra.state_region},
            )
        logger.info("Created state bucket", bucket=bucket_name)

    except ClientError as e:
        if e.response["Error"]["Code"] in ("BucketAlreadyOwnedByYou",):
            logger.info("State bucket already exists", bucket=bucket_name)
        else:
            raise

    # Versioning keeps prior state revisions recoverable
    s3.put_bucket_versioning(
        Bucket=bucket_name,
        VersioningConfiguration={"Status": "Enabled"},
    )

    s3.put_bucket_encryption(
        Bucket=bucket_name,
        ServerSideEncryptionConfiguration={
            "Rules": [
                {
                    "ApplyServerSideEncryptionByDefault": {
                        "SSEAlgorithm": "AES256",
                    },
                    "BucketKeyEnabled": True,
                }
            ]
        },
    )

    s3.put_public_access_block(
        Bucket=bucket_name,
        PublicAccessBlockConfiguration={
            "BlockPublicAcls": True,
            "IgnorePublicAcls": True,
            "BlockPublicPolicy": True,
            "RestrictPublicBuckets": True,
        },
    )

    # Create DynamoDB table for locking
    try:
        dynamodb.create_table(
            TableName=table_name,
            KeySchema=[{"AttributeName": "LockID", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "LockID", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
            Tags=[{"Key": k, "Value": v} for k, v in infra.tags.items()],
        )

        waiter = dynamodb.get_waiter("table_exists")
        waiter.wait(TableName=table_name, WaiterConfig={"Delay": 2, "MaxAttempts": 30})

        logger.info("Created lock table", table=table_name)

    except ClientError as e:
        if e.response["Error"]["Code"] == "ResourceInUseException":
            logger.info("Lock table already exists", table=table_name)
        else:
            raise


def configure_backend(location: StateLocation) -> Dict[str, Any]:
    """
    Generate S3 backend configuration for one stage.

    Args:
        location: Stage state location

    Returns:
        Keyword arguments for ``cdktf.S3Backend``
    """
    return {
        "bucket": location.bucket,
        "key": location.key,
        "region": location.region,
        "encrypt": True,
        "dynamodb_table": location.lock_table,
    }


def default_owner() -> str:
    return f"{getpass.getuser()}@{socket.gethostname()}"


class WorkflowLease:
    """
    Exclusive, expiring lease on one environment.

    Stored as an item in the Terraform lock table. Acquisition is a
    conditional put, so exactly one writer wins; an expired lease may be
    taken over. Use as a context manager so the lease is released on every
    exit path.
    """

    def __init__(
        self,
        table: str,
        lease_id: str,
        owner: str,
        ttl_seconds: int = 7200,
        client: Any = None,
        region: Optional[str] = None,
    ):
        self.table = table
        self.lease_id = lease_id
        self.owner = owner
        self.ttl_seconds = ttl_seconds
        self.client = client or boto3.client("dynamodb", region_name=region)
        self.held = False

    @classmethod
    def for_environment(
        cls, infra: InfraModel, owner: str, ttl_seconds: int = 7200, client: Any = None
    ) -> "WorkflowLease":
        return cls(
            table=infra.lock_table,
            lease_id=infra.lease_id,
            owner=owner,
            ttl_seconds=ttl_seconds,
            client=client,
            region=infra.state_region,
        )

    def acquire(self) -> None:
        """
        Take the lease.

        Raises:
            LeaseHeldError: If another owner holds an unexpired lease
            ConfigurationError: If the lock table does not exist
            StateLockError: If the lock table cannot be written
        """
        now = int(time.time())

        try:
            self.client.put_item(
                TableName=self.table,
                Item={
                    "LockID": {"S": self.lease_id},
                    "Owner": {"S": self.owner},
                    "Expires": {"N": str(now + self.ttl_seconds)},
                    "AcquiredAt": {"N": str(now)},
                },
                ConditionExpression=(
                    "attribute_not_exists(LockID) OR #expires < :now OR #owner = :owner"
                ),
                ExpressionAttributeNames={"#expires": "Expires", "#owner": "Owner"},
                ExpressionAttributeValues={
                    ":now": {"N": str(now)},
                    ":owner": {"S": self.owner},
                },
            )
        except ClientError as e:
            code = e.response["Error"]["Code"]
            if code == "ResourceNotFoundException":
                raise ConfigurationError(
                    f"lock table {self.table} does not exist, run envstack init first"
                ) from e
            if code != "ConditionalCheckFailedException":
                raise StateLockError(f"cannot acquire lease {self.lease_id}: {e}") from e
            holder = self.holder() or {}
            raise LeaseHeldError(
                self.lease_id, holder.get("owner", "unknown"), holder.get("expires", 0)
            ) from e
        except BotoCoreError as e:
            raise StateLockError(f"cannot acquire lease {self.lease_id}: {e}") from e

        self.held = True
        logger.info("Acquired environment lease", lease_id=self.lease_id, owner=self.owner)

    def release(self) -> None:
        """Release the lease if this owner still holds it."""
        if not self.held:
            return

        try:
            self.client.delete_item(
                TableName=self.table,
                Key={"LockID": {"S": self.lease_id}},
                ConditionExpression="#owner = :owner",
                ExpressionAttributeNames={"#owner": "Owner"},
                ExpressionAttributeValues={":owner": {"S": self.owner}},
            )
            logger.info("Released environment lease", lease_id=self.lease_id)
        except ClientError as e:
            if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
                raise StateLockError(f"cannot release lease {self.lease_id}: {e}") from e
            logger.warning(
                "Environment lease was taken over before release",
                lease_id=self.lease_id,
                owner=self.owner,
            )
        except BotoCoreError as e:
            raise StateLockError(f"cannot release lease {self.lease_id}: {e}") from e
        finally:
            self.held = False

    def holder(self) -> Optional[Dict[str, Any]]:
        """Return the current lease item, if any."""
        response = self.client.get_item(
            TableName=self.table,
            Key={"LockID": {"S": self.lease_id}},
            ConsistentRead=True,
        )
        item = response.get("Item")
        if not item:
            return None
        return {
            "owner": item["Owner"]["S"],
            "expires": int(item["Expires"]["N"]),
        }

    def __enter__(self) -> "WorkflowLease":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        try:
            self.release()
        except StateLockError as e:
            if exc_type is None:
                raise
            # Keep the original error; the lease expires after its TTL
            logger.error("Failed to release environment lease", lease_id=self.lease_id, error=str(e))
