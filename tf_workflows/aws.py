"""AWS remote-state backend provisioning via boto3.

Creates (idempotently) the S3 bucket that stores Terraform state, the
DynamoDB table Terraform uses for state locking, and optionally an EC2 key
pair for the instances the stacks launch.  Also exposes a couple of
read-only helpers for inspecting locks and state versions.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import boto3
from botocore.exceptions import ClientError

from tf_workflows.errors import AwsError, PrerequisiteError
from tf_workflows.models import EnsureResult

logger = logging.getLogger(__name__)

LOCK_TABLE_HASH_KEY = "LockID"
_NO_LOCATION_CONSTRAINT_REGION = "us-east-1"


# ══════════════════════════════════════════════════════════════════════════════
#  SESSION / IDENTITY
# ══════════════════════════════════════════════════════════════════════════════


def get_session(region: str = "", profile: str = "") -> Any:
    """Create a boto3 session for the given region / profile."""
    kwargs: dict[str, str] = {}
    if region:
        kwargs["region_name"] = region
    if profile:
        kwargs["profile_name"] = profile
    return boto3.Session(**kwargs)


def caller_account_id(session: Any) -> str:
    """Return the AWS account id of the active credentials."""
    try:
        identity = session.client("sts").get_caller_identity()
    except Exception as exc:
        raise PrerequisiteError(
            f"AWS credentials not configured ({exc}). Run: aws configure"
        ) from exc
    return identity["Account"]


def state_bucket_name(identifier: str, account_id: str) -> str:
    """Derive the globally-unique state bucket name."""
    identifier = identifier.strip()
    if not identifier:
        raise ValueError("Identifier is required")
    return f"terraform-state-{identifier}-{account_id}"


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


# ══════════════════════════════════════════════════════════════════════════════
#  S3 STATE BUCKET
# ══════════════════════════════════════════════════════════════════════════════


def _bucket_exists(s3: Any, bucket: str) -> bool:
    try:
        s3.head_bucket(Bucket=bucket)
        return True
    except ClientError as exc:
        if _error_code(exc) in ("404", "NoSuchBucket", "NotFound"):
            return False
        raise AwsError(f"Cannot access bucket {bucket}: {exc}") from exc


def ensure_state_bucket(session: Any, bucket: str, region: str) -> EnsureResult:
    """Create the state bucket if needed and (re)apply its protections.

    Versioning, default AES256 encryption and the public access block are
    applied on every call so an existing bucket is brought into line too.
    """
    s3 = session.client("s3", region_name=region)

    created = False
    if _bucket_exists(s3, bucket):
        logger.info("Bucket already exists: %s", bucket)
    else:
        kwargs: dict[str, Any] = {"Bucket": bucket}
        if region != _NO_LOCATION_CONSTRAINT_REGION:
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            s3.create_bucket(**kwargs)
        except ClientError as exc:
            raise AwsError(f"Failed to create bucket {bucket}: {exc}") from exc
        created = True
        logger.info("Bucket created: %s (%s)", bucket, region)

    try:
        s3.put_bucket_versioning(
            Bucket=bucket,
            VersioningConfiguration={"Status": "Enabled"},
        )
        s3.put_bucket_encryption(
            Bucket=bucket,
            ServerSideEncryptionConfiguration={
                "Rules": [
                    {
                        "ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"},
                        "BucketKeyEnabled": True,
                    }
                ]
            },
        )
        s3.put_public_access_block(
            Bucket=bucket,
            PublicAccessBlockConfiguration={
                "BlockPublicAcls": True,
                "IgnorePublicAcls": True,
                "BlockPublicPolicy": True,
                "RestrictPublicBuckets": True,
            },
        )
    except ClientError as exc:
        raise AwsError(f"Failed to configure bucket {bucket}: {exc}") from exc

    return EnsureResult(
        name=bucket,
        created=created,
        detail="versioning, encryption and public access block enabled",
    )


# ══════════════════════════════════════════════════════════════════════════════
#  DYNAMODB LOCK TABLE
# ══════════════════════════════════════════════════════════════════════════════


def ensure_lock_table(session: Any, table: str, region: str) -> EnsureResult:
    """Create the state-lock table if it does not exist yet."""
    ddb = session.client("dynamodb", region_name=region)

    try:
        ddb.describe_table(TableName=table)
        logger.info("Table already exists: %s", table)
        return EnsureResult(name=table, created=False)
    except ClientError as exc:
        if _error_code(exc) != "ResourceNotFoundException":
            raise AwsError(f"Cannot describe table {table}: {exc}") from exc

    try:
        ddb.create_table(
            TableName=table,
            AttributeDefinitions=[{"AttributeName": LOCK_TABLE_HASH_KEY, "AttributeType": "S"}],
            KeySchema=[{"AttributeName": LOCK_TABLE_HASH_KEY, "KeyType": "HASH"}],
            BillingMode="PAY_PER_REQUEST",
        )
        logger.info("Waiting for table %s to be active …", table)
        ddb.get_waiter("table_exists").wait(TableName=table)
    except ClientError as exc:
        raise AwsError(f"Failed to create table {table}: {exc}") from exc

    return EnsureResult(name=table, created=True, detail="PAY_PER_REQUEST, hash key LockID")


# ══════════════════════════════════════════════════════════════════════════════
#  EC2 KEY PAIR
# ══════════════════════════════════════════════════════════════════════════════


def ensure_key_pair(session: Any, name: str, dest_dir: Path, region: str = "") -> EnsureResult:
    """Create an EC2 key pair and save the private key as ``<dest_dir>/<name>.pem``."""
    kwargs = {"region_name": region} if region else {}
    ec2 = session.client("ec2", **kwargs)

    try:
        ec2.describe_key_pairs(KeyNames=[name])
        logger.info("Key pair already exists: %s", name)
        return EnsureResult(name=name, created=False)
    except ClientError as exc:
        if _error_code(exc) != "InvalidKeyPair.NotFound":
            raise AwsError(f"Cannot describe key pair {name}: {exc}") from exc

    try:
        material = ec2.create_key_pair(KeyName=name)["KeyMaterial"]
    except ClientError as exc:
        raise AwsError(f"Failed to create key pair {name}: {exc}") from exc

    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    key_path = dest_dir / f"{name}.pem"
    key_path.write_text(material, encoding="utf-8")
    os.chmod(key_path, 0o400)
    logger.info("Key pair %s saved to %s", name, key_path)
    return EnsureResult(name=name, created=True, detail=str(key_path))


# ══════════════════════════════════════════════════════════════════════════════
#  READ-ONLY INSPECTION
# ══════════════════════════════════════════════════════════════════════════════


def lock_info(session: Any, table: str, lock_id: str, region: str = "") -> dict[str, Any] | None:
    """Return the lock item for a state path (``<bucket>/<key>``), or None."""
    kwargs = {"region_name": region} if region else {}
    ddb = session.client("dynamodb", **kwargs)
    try:
        resp = ddb.get_item(TableName=table, Key={LOCK_TABLE_HASH_KEY: {"S": lock_id}})
    except ClientError as exc:
        raise AwsError(f"Failed to read lock {lock_id}: {exc}") from exc
    item = resp.get("Item")
    if not item:
        return None
    return {k: next(iter(v.values())) for k, v in item.items()}


def state_versions(
    session: Any,
    bucket: str,
    prefix: str,
    region: str = "",
) -> list[dict[str, Any]]:
    """List stored versions of the state objects under *prefix*."""
    kwargs = {"region_name": region} if region else {}
    s3 = session.client("s3", **kwargs)
    versions: list[dict[str, Any]] = []
    try:
        paginator = s3.get_paginator("list_object_versions")
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for v in page.get("Versions", []):
                versions.append({
                    "key": v.get("Key", ""),
                    "version_id": v.get("VersionId", ""),
                    "is_latest": v.get("IsLatest", False),
                    "last_modified": str(v.get("LastModified", "")),
                    "size": v.get("Size", 0),
                })
    except ClientError as exc:
        raise AwsError(f"Failed to list versions in {bucket}/{prefix}: {exc}") from exc
    return versions
