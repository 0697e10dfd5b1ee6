import io

import pytest


class FakeClientError(Exception):
    """Mimics botocore's ClientError: the code lives in ``response``."""

    def __init__(self, code):
        self.response = {"Error": {"Code": code}}
        super().__init__(code)


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client."""

    def __init__(self, buckets=None, fail_acl=False, fail_put=False):
        self.buckets = {name: {} for name in buckets or []}
        self.fail_acl = fail_acl
        self.fail_put = fail_put
        self.calls = []

    def head_bucket(self, Bucket):
        self.calls.append(("head_bucket", Bucket))
        if Bucket not in self.buckets:
            raise FakeClientError("404")

    def create_bucket(self, Bucket, **kwargs):
        self.calls.append(("create_bucket", Bucket, kwargs))
        if Bucket in self.buckets:
            raise FakeClientError("BucketAlreadyOwnedByYou")
        self.buckets[Bucket] = {}

    def put_bucket_policy(self, Bucket, Policy):
        self.calls.append(("put_bucket_policy", Bucket))
        if self.fail_acl:
            raise FakeClientError("AccessDenied")

    def head_object(self, Bucket, Key):
        if Key not in self.buckets.get(Bucket, {}):
            raise FakeClientError("404")

    def put_object(self, Bucket, Key, Body, ContentType=None, ACL=None):
        self.calls.append(("put_object", Key, ACL))
        if self.fail_put:
            raise FakeClientError("InternalError")
        if ACL and self.fail_acl:
            raise FakeClientError("AccessControlListNotSupported")
        self.buckets.setdefault(Bucket, {})[Key] = {"Body": Body, "ContentType": ContentType, "ACL": ACL}

    def get_object(self, Bucket, Key, VersionId=None):
        try:
            item = self.buckets[Bucket][Key]
        except KeyError:
            raise FakeClientError("NoSuchKey") from None
        return {"Body": io.BytesIO(item["Body"])}

    def delete_object(self, Bucket, Key, VersionId=None):
        self.buckets.get(Bucket, {}).pop(Key, None)

    def get_paginator(self, name):
        client = self

        class Paginator:
            def paginate(self, Bucket):
                keys = list(client.buckets.get(Bucket, {}))
                yield {"Contents": [{"Key": key} for key in keys]}

        return Paginator()

    def delete_objects(self, Bucket, Delete):
        for item in Delete["Objects"]:
            self.buckets[Bucket].pop(item["Key"], None)


AWS_CREDENTIAL = {"aws_access_key_id": "key", "aws_secret_access_key": "secret", "region_name": "eu-west-1"}


@pytest.fixture
def fake_s3():
    return FakeS3Client


@pytest.fixture
def client_error():
    return FakeClientError


@pytest.fixture
def aws_credential():
    return dict(AWS_CREDENTIAL)
