import asyncio
import sys

import pytest

from disperse.barrier import AsyncTaskBarrier
from disperse.cloud import CredentialError, DownloadRequest, MissingDependencyError, UploadRequest, error_code
from disperse.cloud_azure import AzureProvider
from disperse.cloud_gcloud import GCloudProvider
from disperse.cloud_s3 import OCIProvider, S3Provider
from disperse.dispatcher import CloudDispatcher, UnknownServiceError
from disperse.models import CloudStorageAdmin, CloudStorageUpload
from disperse.protocols import StorageProvider


def make_request(tmp_path, **kwargs):
    options = dict(buffer=b"console.log(1);", file_uri=tmp_path / "app.js", mime_type="text/javascript")
    options.update(kwargs)
    return UploadRequest(**options)


def test_error_code(client_error):
    assert error_code(client_error("NoSuchKey")) == "NoSuchKey"

    class Coded(Exception):
        code = 409

    assert error_code(Coded()) == 409
    assert error_code(ValueError()) is None


def test_credential_validation_and_aliases():
    provider = S3Provider({"accessKeyId": "a", "secretAccessKey": "b", "region": "us-west-2"})
    provider.validate()
    assert provider.credential["region_name"] == "us-west-2"

    with pytest.raises(CredentialError) as excinfo:
        S3Provider({"aws_access_key_id": "a"}).validate()
    assert excinfo.value.missing == ["aws_secret_access_key"]

    with pytest.raises(CredentialError):
        OCIProvider({"aws_access_key_id": "a", "aws_secret_access_key": "b"}).validate()

    azure = AzureProvider({"accountName": "acct", "accountKey": "key"})
    azure.validate()
    assert azure.account_url == "https://acct.blob.core.windows.net"


def test_missing_sdk_is_reported(monkeypatch, aws_credential):
    monkeypatch.setitem(sys.modules, "boto3", None)
    with pytest.raises(MissingDependencyError) as excinfo:
        S3Provider(aws_credential).connect()
    assert excinfo.value.hint == "pip install boto3"

    monkeypatch.setitem(sys.modules, "azure.storage", None)
    with pytest.raises(MissingDependencyError) as excinfo:
        AzureProvider({"account_name": "a", "account_key": "b"}).connect()
    assert excinfo.value.package == "azure-storage-blob"


def test_create_bucket_is_idempotent(fake_s3, aws_credential):
    client = fake_s3()
    provider = S3Provider(aws_credential, client=client)
    assert provider.create_bucket("site")
    assert "site" in client.buckets
    create = [call for call in client.calls if call[0] == "create_bucket"][0]
    assert create[2] == {"CreateBucketConfiguration": {"LocationConstraint": "eu-west-1"}}

    assert provider.create_bucket("site")
    assert [call[0] for call in client.calls].count("head_bucket") == 1


def test_public_read_is_granted_once(fake_s3, aws_credential):
    client = fake_s3(buckets=["site"])
    provider = S3Provider(aws_credential, client=client)
    assert provider.create_bucket("site", public_read=True)
    assert provider.create_bucket("site", public_read=True)
    assert provider.create_bucket("site")
    names = [call[0] for call in client.calls]
    assert names.count("head_bucket") == 1
    assert names.count("put_bucket_policy") == 1


def test_create_bucket_race_counts_as_success(fake_s3, client_error, aws_credential):
    class RacingClient(fake_s3):
        def head_bucket(self, Bucket):
            raise client_error("404")

    provider = S3Provider(aws_credential, client=RacingClient(buckets=["site"]))
    assert provider.create_bucket("site")


def test_create_bucket_failure(fake_s3, client_error, aws_credential, capsys):
    class DeniedClient(fake_s3):
        def create_bucket(self, Bucket, **kwargs):
            raise client_error("AccessDenied")

    provider = S3Provider(aws_credential, client=DeniedClient())
    assert not provider.create_bucket("site")
    assert "Unable to create bucket" in capsys.readouterr().err


def test_requested_public_read_failure_is_an_error(fake_s3, aws_credential, capsys):
    provider = S3Provider(aws_credential, client=fake_s3(fail_acl=True))
    assert provider.create_bucket("site", public_read=True)
    assert "FAIL" in capsys.readouterr().err


def test_upload_renames_existing_key(fake_s3, aws_credential, tmp_path):
    client = fake_s3(buckets=["site"])
    client.buckets["site"]["app.js"] = {"Body": b"old"}
    provider = S3Provider(aws_credential, client=client)
    url = provider.upload(make_request(tmp_path, bucket="site"))
    assert url == "https://site.s3.eu-west-1.amazonaws.com/app_1.js"
    assert client.buckets["site"]["app.js"]["Body"] == b"old"
    assert client.buckets["site"]["app_1.js"]["ContentType"] == "text/javascript"


def test_upload_overwrite_with_pathname_and_endpoint(fake_s3, aws_credential, tmp_path):
    client = fake_s3(buckets=["site"])
    client.buckets["site"]["assets/app.js"] = {"Body": b"old"}
    provider = S3Provider(aws_credential, client=client)
    options = CloudStorageUpload.from_dict(
        {"filename": "app.js", "pathname": "/assets/", "overwrite": True, "endpoint": "https://cdn.example.com/"}
    )
    url = provider.upload(make_request(tmp_path, bucket="site", filename="app.js", upload=options))
    assert url == "https://cdn.example.com/assets/app.js"
    assert client.buckets["site"]["assets/app.js"]["Body"] == b"console.log(1);"


def test_upload_without_bucket_uses_random_name(fake_s3, aws_credential, tmp_path):
    client = fake_s3()
    request = make_request(tmp_path)
    url = S3Provider(aws_credential, client=client).upload(request)
    assert request.bucket in client.buckets
    assert url.endswith("/app.js")


def test_implicit_public_read_falls_back(fake_s3, aws_credential, tmp_path, capsys):
    client = fake_s3(buckets=["site"], fail_acl=True)
    provider = S3Provider(aws_credential, client=client)
    options = CloudStorageUpload(active=True)
    url = provider.upload(make_request(tmp_path, bucket="site", upload=options))
    assert url
    assert client.buckets["site"]["app.js"]["ACL"] is None
    assert "Unable to grant public-read" in capsys.readouterr().err


def test_explicit_public_read_failure_raises(fake_s3, client_error, aws_credential, tmp_path):
    client = fake_s3(buckets=["site"], fail_acl=True)
    provider = S3Provider(aws_credential, client=client)
    options = CloudStorageUpload(active=True, public_read=True)
    with pytest.raises(client_error):
        provider.upload(make_request(tmp_path, bucket="site", upload=options))


def test_oci_never_sends_acl(fake_s3, tmp_path):
    client = fake_s3(buckets=["site"])
    provider = OCIProvider(
        {"region_name": "eu-frankfurt-1", "namespace": "ns", "aws_access_key_id": "a", "aws_secret_access_key": "b"},
        client=client,
    )
    url = provider.upload(make_request(tmp_path, bucket="site", upload=CloudStorageUpload(public_read=True)))
    assert client.buckets["site"]["app.js"]["ACL"] is None
    assert url == "https://ns.compat.objectstorage.eu-frankfurt-1.oraclecloud.com/site/app.js"


def test_upload_group_and_extras(fake_s3, aws_credential, tmp_path):
    client = fake_s3(buckets=["site"])
    provider = S3Provider(aws_credential, client=client)
    request = make_request(
        tmp_path,
        bucket="site",
        filename="app.js",
        upload=CloudStorageUpload(overwrite=True),
        file_group=[(b"gz", ".gz")],
        extras=[(b"{}", "app.js.map")],
    )
    provider.upload(request)
    assert set(client.buckets["site"]) == {"app.js", "app.js.gz", "app.js.map"}


def test_download_and_delete(fake_s3, aws_credential, capsys):
    client = fake_s3(buckets=["site"])
    client.buckets["site"]["data.json"] = {"Body": b"{}"}
    provider = S3Provider(aws_credential, client=client)
    data = provider.download(DownloadRequest("site", "data.json", delete_object=True))
    assert data == b"{}"
    assert "data.json" not in client.buckets["site"]

    assert provider.download(DownloadRequest(None, "data.json")) is None
    assert "Bucket not specified" in capsys.readouterr().err


def test_delete_objects_empties_bucket(fake_s3, aws_credential):
    client = fake_s3(buckets=["site"])
    client.buckets["site"].update({"a": {"Body": b""}, "b": {"Body": b""}})
    S3Provider(aws_credential, client=client).delete_objects("site")
    assert client.buckets["site"] == {}


class FakeBlob:
    def __init__(self, store, key, generation=None):
        self.store = store
        self.key = key
        self.generation = generation
        self.public = False

    def exists(self):
        return self.key in self.store

    def upload_from_string(self, body, content_type=None):
        self.store[self.key] = body

    def make_public(self):
        self.public = True

    def download_as_bytes(self):
        return self.store[self.key]

    def delete(self):
        del self.store[self.key]


class FakeBucket:
    def __init__(self, client, name):
        self.client = client
        self.name = name

    def exists(self):
        return self.name in self.client.buckets

    def blob(self, key, generation=None):
        return FakeBlob(self.client.buckets[self.name], key, generation)

    def make_public(self, future=False):
        self.client.public.add(self.name)

    def delete_blobs(self, blobs):
        for blob in blobs:
            blob.delete()


class FakeGCSClient:
    def __init__(self):
        self.buckets = {}
        self.public = set()

    def bucket(self, name):
        return FakeBucket(self, name)

    def create_bucket(self, target, location=None):
        self.buckets[target.name] = {}

    def list_blobs(self, name):
        return [FakeBlob(self.buckets[name], key) for key in list(self.buckets[name])]


def test_gcloud_provider(tmp_path):
    client = FakeGCSClient()
    provider = GCloudProvider({"keyFilename": "key.json"}, client=client)
    provider.validate()
    admin = CloudStorageAdmin(public_read=True)
    url = provider.upload(make_request(tmp_path, bucket="site", admin=admin))
    assert url == "https://storage.googleapis.com/site/app.js"
    assert "site" in client.public
    assert provider.download(DownloadRequest("site", "app.js", version_id="7")) == b"console.log(1);"
    provider.delete_objects("site")
    assert client.buckets["site"] == {}


def make_dispatcher(client, settings=None):
    barrier = AsyncTaskBarrier(lambda: None)
    providers = {"aws": lambda credential, **kwargs: S3Provider(credential, client=client, **kwargs)}
    return CloudDispatcher(settings or {}, barrier, providers=providers)


def test_dispatcher_resolves_named_credentials(fake_s3, aws_credential):
    dispatcher = make_dispatcher(fake_s3(), {"cloud": {"aws": {"main": aws_credential}}})
    provider = dispatcher.get_provider("AWS", "main")
    assert isinstance(provider, StorageProvider)
    assert provider.credential["aws_access_key_id"] == "key"
    assert dispatcher.get_provider("aws", dict(aws_credential)) is provider

    with pytest.raises(CredentialError):
        dispatcher.get_provider("aws", "missing")
    with pytest.raises(UnknownServiceError):
        dispatcher.get_provider("dropbox", {})


def test_dispatcher_handlers_never_raise(fake_s3, aws_credential, tmp_path, capsys):
    dispatcher = make_dispatcher(fake_s3(buckets=["site"], fail_put=True))

    async def main():
        upload = dispatcher.get_upload_handler("aws", aws_credential)
        download = dispatcher.get_download_handler("aws", aws_credential)
        url = await upload(make_request(tmp_path, bucket="site"))
        data = await download(DownloadRequest("site", "missing.txt"))
        return url, data

    assert asyncio.run(main()) == ("", None)
    assert dispatcher.barrier.count == 0
    err = capsys.readouterr().err
    assert "Upload failed" in err
    assert "Download failed" in err


def test_dispatcher_reports_missing_sdk(monkeypatch, aws_credential, capsys):
    monkeypatch.setitem(sys.modules, "boto3", None)
    dispatcher = CloudDispatcher({}, AsyncTaskBarrier(lambda: None))
    with pytest.raises(MissingDependencyError):
        dispatcher.get_upload_handler("aws", aws_credential)
    assert "pip install boto3" in capsys.readouterr().err


def test_dispatcher_create_bucket(fake_s3, aws_credential):
    client = fake_s3()
    dispatcher = make_dispatcher(client)
    assert asyncio.run(dispatcher.create_bucket("aws", aws_credential, "fresh"))
    assert "fresh" in client.buckets
