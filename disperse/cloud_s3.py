"""S3 compatible storage providers (AWS, IBM Cloud Object Storage, OCI)."""

from __future__ import annotations

import json
from typing import Any

from .cloud import CloudProvider, MissingDependencyError, error_code

NOT_FOUND = {"404", "NotFound", "NoSuchBucket", "NoSuchKey", 404}
BUCKET_CONFLICT = {"BucketAlreadyExists", "BucketAlreadyOwnedByYou"}


def public_read_policy(bucket: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Sid": "PublicRead",
                    "Effect": "Allow",
                    "Principal": "*",
                    "Action": ["s3:GetObject", "s3:GetObjectVersion"],
                    "Resource": [f"arn:aws:s3:::{bucket}/*"],
                }
            ],
        }
    )


class S3Provider(CloudProvider):
    """Amazon S3 through boto3."""

    service = "aws"
    required = ("aws_access_key_id", "aws_secret_access_key")
    aliases = {
        "accessKeyId": "aws_access_key_id",
        "secretAccessKey": "aws_secret_access_key",
        "sessionToken": "aws_session_token",
        "region": "region_name",
        "endpoint": "endpoint_url",
    }
    package = "boto3"

    def client_options(self) -> dict[str, Any]:
        keys = ("aws_access_key_id", "aws_secret_access_key", "aws_session_token", "region_name", "endpoint_url")
        return {key: self.credential[key] for key in keys if self.credential.get(key)}

    def create_client(self) -> Any:
        try:
            import boto3
        except ImportError as exc:
            raise MissingDependencyError(self.service, self.package) from exc
        return boto3.client("s3", **self.client_options())

    @property
    def region(self) -> str | None:
        return self.credential.get("region_name")

    def bucket_exists(self, bucket: str) -> bool:
        try:
            self.client.head_bucket(Bucket=bucket)
        except Exception as exc:
            if error_code(exc) in NOT_FOUND:
                return False
            raise
        return True

    def make_bucket(self, bucket: str) -> None:
        params: dict[str, Any] = {"Bucket": bucket}
        if self.region and self.region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        self.client.create_bucket(**params)

    def is_bucket_conflict(self, exc: BaseException) -> bool:
        return error_code(exc) in BUCKET_CONFLICT

    def set_public_read(self, bucket: str) -> None:
        self.client.put_bucket_policy(Bucket=bucket, Policy=public_read_policy(bucket))

    def object_exists(self, bucket: str, key: str) -> bool:
        try:
            self.client.head_object(Bucket=bucket, Key=key)
        except Exception as exc:
            if error_code(exc) in NOT_FOUND:
                return False
            raise
        return True

    def put_object(self, bucket, key, body, mime_type, public_read):
        params: dict[str, Any] = {"Bucket": bucket, "Key": key, "Body": body}
        if mime_type:
            params["ContentType"] = mime_type
        if public_read:
            params["ACL"] = "public-read"
        self.client.put_object(**params)

    def object_url(self, bucket: str, key: str) -> str:
        endpoint = self.credential.get("endpoint_url")
        if endpoint:
            return f"{endpoint.rstrip('/')}/{bucket}/{key}"
        region = self.region or "us-east-1"
        return f"https://{bucket}.s3.{region}.amazonaws.com/{key}"

    def _object_params(self, bucket: str, key: str, version_id: str | None) -> dict[str, Any]:
        params = {"Bucket": bucket, "Key": key}
        if version_id:
            params["VersionId"] = version_id
        return params

    def get_object(self, bucket, key, version_id=None):
        return self.client.get_object(**self._object_params(bucket, key, version_id))["Body"].read()

    def delete_object(self, bucket, key, version_id=None):
        self.client.delete_object(**self._object_params(bucket, key, version_id))

    def delete_all(self, bucket: str) -> int:
        count = 0
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket):
            objects = [{"Key": item["Key"]} for item in page.get("Contents", [])]
            if objects:
                self.client.delete_objects(Bucket=bucket, Delete={"Objects": objects})
                count += len(objects)
        return count


class IBMProvider(S3Provider):
    """IBM Cloud Object Storage through its S3 endpoint (HMAC credentials)."""

    service = "ibm"

    def __init__(self, credential, logger=None, client=None, bucket_cache=None):
        super().__init__(credential, logger, client, bucket_cache)
        self.credential.setdefault("region_name", "us-east")
        self.credential.setdefault(
            "endpoint_url", f"https://s3.{self.credential['region_name']}.cloud-object-storage.appdomain.cloud"
        )

    def make_bucket(self, bucket: str) -> None:
        self.client.create_bucket(Bucket=bucket)

    def set_public_read(self, bucket: str) -> None:
        self.client.put_bucket_acl(Bucket=bucket, ACL="public-read")


class OCIProvider(S3Provider):
    """Oracle Cloud Object Storage through its S3 compatibility endpoint.

    Object ACLs are not supported by the endpoint, so public-read is never
    sent with uploads.
    """

    service = "oci"
    required = ("region_name", "namespace", "aws_access_key_id", "aws_secret_access_key")

    def __init__(self, credential, logger=None, client=None, bucket_cache=None):
        super().__init__(credential, logger, client, bucket_cache)
        if self.credential.get("namespace") and self.credential.get("region_name"):
            self.credential.setdefault(
                "endpoint_url",
                f"https://{self.credential['namespace']}.compat.objectstorage."
                f"{self.credential['region_name']}.oraclecloud.com",
            )

    def set_public_read(self, bucket: str) -> None:
        raise NotImplementedError("public-read is managed with OCI pre-authenticated requests")

    def put_object(self, bucket, key, body, mime_type, public_read):
        super().put_object(bucket, key, body, mime_type, False)
