"""AWS adapters (SSM, CloudFormation, ECR, S3) built on boto3.

Each adapter maps botocore errors onto appbuilder exceptions so callers never
need to know about botocore.
"""

from __future__ import annotations

import base64
import logging
import os
from pathlib import Path
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from appbuilder.types import (
    ObjectStoreError,
    ParameterNotFoundError,
    RegistryError,
    StackError,
    StackNotFoundError,
    StoreError,
)

logger = logging.getLogger(__name__)


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class SsmParameterStore:
    """ParameterStore backed by SSM Parameter Store."""

    def __init__(self, client: Any = None) -> None:
        self.client = client or boto3.client("ssm")

    def get_by_prefix(self, prefix: str) -> dict[str, str]:
        params: dict[str, str] = {}
        try:
            paginator = self.client.get_paginator("get_parameters_by_path")
            for page in paginator.paginate(Path=prefix, Recursive=True, WithDecryption=True):
                for param in page.get("Parameters", []):
                    name = param["Name"].removeprefix(prefix)
                    params[name] = param["Value"]
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"Failed to load parameters under {prefix}: {e}") from e
        return params

    def get_value(self, name: str) -> str:
        try:
            resp = self.client.get_parameter(Name=name, WithDecryption=True)
        except ClientError as e:
            if _error_code(e) == "ParameterNotFound":
                raise ParameterNotFoundError(name) from e
            raise StoreError(f"Failed to read parameter {name}: {e}") from e
        except BotoCoreError as e:
            raise StoreError(f"Failed to read parameter {name}: {e}") from e
        return str(resp["Parameter"]["Value"])

    def set_value(self, name: str, value: str) -> None:
        try:
            self.client.put_parameter(Name=name, Value=value, Type="String", Overwrite=True)
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"Failed to write parameter {name}: {e}") from e


class CloudFormationStacks:
    """StackService backed by CloudFormation."""

    def __init__(self, client: Any = None) -> None:
        self.client = client or boto3.client("cloudformation")

    def describe(self, name: str) -> dict[str, Any]:
        try:
            resp = self.client.describe_stacks(StackName=name)
        except ClientError as e:
            if "does not exist" in str(e):
                raise StackNotFoundError(name) from e
            raise StackError(f"Failed to describe stack {name}: {e}") from e
        except BotoCoreError as e:
            raise StackError(f"Failed to describe stack {name}: {e}") from e
        stacks = resp.get("Stacks", [])
        if not stacks:
            raise StackNotFoundError(name)
        return dict(stacks[0])

    def destroy(self, name: str) -> None:
        logger.debug("Deleting stack %s", name)
        try:
            self.client.delete_stack(StackName=name)
        except (ClientError, BotoCoreError) as e:
            raise StackError(f"Failed to delete stack {name}: {e}") from e


class EcrRegistryAuth:
    """RegistryAuth backed by ECR authorization tokens."""

    def __init__(self, client: Any = None) -> None:
        self.client = client or boto3.client("ecr")

    def exchange_login(self) -> tuple[str, str]:
        try:
            resp = self.client.get_authorization_token()
        except (ClientError, BotoCoreError) as e:
            raise RegistryError(f"Failed to get ECR authorization token: {e}") from e
        data = resp.get("authorizationData", [])
        if not data:
            raise RegistryError("No ECR authorization data returned", code="registry_auth_empty")
        token = base64.b64decode(data[0]["authorizationToken"]).decode("utf-8")
        username, sep, password = token.partition(":")
        if not sep:
            raise RegistryError("Malformed ECR authorization token", code="registry_auth_invalid")
        return username, password


class S3ObjectStore:
    """ObjectStore backed by S3."""

    def __init__(self, client: Any = None) -> None:
        self.client = client or boto3.client("s3")

    def _list_keys(self, bucket: str, prefix: str) -> list[str]:
        keys: list[str] = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                keys.append(obj["Key"])
        return keys

    def download_prefix(self, bucket: str, prefix: str, local_dir: Path) -> None:
        key_prefix = prefix.rstrip("/") + "/"
        logger.debug("Downloading s3://%s/%s to %s", bucket, key_prefix, local_dir)
        try:
            for key in self._list_keys(bucket, key_prefix):
                relative = key.removeprefix(key_prefix)
                if not relative or relative.endswith("/"):
                    continue
                dest = local_dir / relative
                dest.parent.mkdir(parents=True, exist_ok=True)
                self.client.download_file(bucket, key, str(dest))
        except (ClientError, BotoCoreError) as e:
            raise ObjectStoreError(f"Failed to download s3://{bucket}/{key_prefix}: {e}") from e

    def upload_dir(
        self,
        local_dir: Path,
        bucket: str,
        prefix: str,
        delete_extraneous: bool = True,
    ) -> None:
        key_prefix = prefix.rstrip("/") + "/"
        logger.debug("Uploading %s to s3://%s/%s", local_dir, bucket, key_prefix)
        uploaded: set[str] = set()
        try:
            for root, _dirs, files in os.walk(local_dir):
                for filename in files:
                    path = Path(root) / filename
                    key = key_prefix + path.relative_to(local_dir).as_posix()
                    self.client.upload_file(str(path), bucket, key)
                    uploaded.add(key)
            if delete_extraneous:
                stale = [k for k in self._list_keys(bucket, key_prefix) if k not in uploaded]
                # delete_objects accepts at most 1000 keys per call
                for i in range(0, len(stale), 1000):
                    batch = [{"Key": k} for k in stale[i : i + 1000]]
                    self.client.delete_objects(Bucket=bucket, Delete={"Objects": batch})
        except (ClientError, BotoCoreError, OSError) as e:
            raise ObjectStoreError(f"Failed to upload {local_dir} to s3://{bucket}/{key_prefix}: {e}") from e


__all__ = [
    "CloudFormationStacks",
    "EcrRegistryAuth",
    "S3ObjectStore",
    "SsmParameterStore",
]
