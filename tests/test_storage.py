"""Unit tests for the byte storage backends."""

import io
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from pkgdepot.errors import StorageFailure
from pkgdepot.storage import FilesystemStorage, S3Storage


class TestFilesystemStorage:
    def test_write_and_read(self, tmp_path):
        storage = FilesystemStorage(tmp_path)
        size = storage.write("repositories/abc/widget/1.0/widget-1.0.tar.gz", b"content")

        assert size == 7
        assert storage.read("repositories/abc/widget/1.0/widget-1.0.tar.gz") == b"content"
        assert storage.exists("repositories/abc/widget/1.0/widget-1.0.tar.gz")

    def test_write_chunks(self, tmp_path):
        storage = FilesystemStorage(tmp_path)
        size = storage.write("a/b.bin", iter([b"ab", b"cd", b"ef"]))

        assert size == 6
        assert b"".join(storage.iter_chunks("a/b.bin", chunk_size=4)) == b"abcdef"
        assert list(storage.iter_chunks("a/b.bin", chunk_size=4)) == [b"abcd", b"ef"]

    def test_overwrite_replaces_content(self, tmp_path):
        storage = FilesystemStorage(tmp_path)
        storage.write("f.bin", b"old")
        storage.write("f.bin", b"new")
        assert storage.read("f.bin") == b"new"

    def test_failed_source_leaves_nothing_behind(self, tmp_path):
        storage = FilesystemStorage(tmp_path)

        def broken():
            yield b"partial"
            raise RuntimeError("stream interrupted")

        with pytest.raises(RuntimeError):
            storage.write("dir/f.bin", broken())

        assert not storage.exists("dir/f.bin")
        assert list((tmp_path / "dir").iterdir()) == []

    def test_read_missing_raises_file_not_found(self, tmp_path):
        storage = FilesystemStorage(tmp_path)
        with pytest.raises(FileNotFoundError):
            storage.read("nope")

    def test_exists_is_false_for_directories(self, tmp_path):
        storage = FilesystemStorage(tmp_path)
        storage.mkdir_all("repositories/abc")
        assert (tmp_path / "repositories" / "abc").is_dir()
        assert not storage.exists("repositories/abc")

    def test_delete_is_idempotent(self, tmp_path):
        storage = FilesystemStorage(tmp_path)
        storage.write("f.bin", b"x")
        storage.delete("f.bin")
        storage.delete("f.bin")
        assert not storage.exists("f.bin")

    def test_move_replaces_target(self, tmp_path):
        storage = FilesystemStorage(tmp_path)
        storage.write("w/.f.bin.staging", b"new")
        storage.write("w/f.bin", b"old")

        storage.move("w/.f.bin.staging", "w/f.bin")

        assert storage.read("w/f.bin") == b"new"
        assert not storage.exists("w/.f.bin.staging")

    def test_move_missing_source(self, tmp_path):
        storage = FilesystemStorage(tmp_path)
        with pytest.raises(StorageFailure):
            storage.move("nope", "f.bin")

    def test_delete_tree(self, tmp_path):
        storage = FilesystemStorage(tmp_path)
        storage.write("repositories/abc/w/1/w-1.tar.gz", b"x")
        storage.write("repositories/def/w/1/w-1.tar.gz", b"y")

        storage.delete_tree("repositories/abc")

        assert not (tmp_path / "repositories" / "abc").exists()
        assert storage.exists("repositories/def/w/1/w-1.tar.gz")

    def test_delete_tree_refuses_root(self, tmp_path):
        storage = FilesystemStorage(tmp_path)
        with pytest.raises(StorageFailure):
            storage.delete_tree("")

    @pytest.mark.parametrize("path", ["../outside", "a/../../outside"])
    def test_paths_cannot_escape_root(self, tmp_path, path):
        storage = FilesystemStorage(tmp_path / "root")
        with pytest.raises(StorageFailure):
            storage.write(path, b"x")


@pytest.fixture
def s3_client():
    with patch("boto3.client") as mock_boto_client:
        client = MagicMock()
        mock_boto_client.return_value = client
        yield client


class TestS3Storage:
    def test_write_uploads_under_prefix(self, s3_client):
        uploaded = {}

        def capture(fileobj, bucket, key, ExtraArgs):
            uploaded["body"] = fileobj.read()
            uploaded["bucket"] = bucket
            uploaded["key"] = key
            uploaded["extra"] = ExtraArgs

        s3_client.upload_fileobj.side_effect = capture
        storage = S3Storage("bucket", prefix="depot/", validate_permissions=False)

        size = storage.write("repositories/abc/w/1/w-1-py3-none-any.whl", iter([b"ab", b"c"]))

        assert size == 3
        assert uploaded == {
            "body": b"abc",
            "bucket": "bucket",
            "key": "depot/repositories/abc/w/1/w-1-py3-none-any.whl",
            "extra": {"ContentType": "application/zip"},
        }

    @patch("pkgdepot.storage.time.sleep")
    def test_write_retries_then_fails(self, mock_sleep, s3_client):
        s3_client.upload_fileobj.side_effect = ClientError(
            {"Error": {"Code": "InternalError"}}, "PutObject"
        )
        storage = S3Storage("bucket", validate_permissions=False)

        with pytest.raises(StorageFailure):
            storage.write("f.bin", b"x")

        assert s3_client.upload_fileobj.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1, 2]

    def test_read(self, s3_client):
        s3_client.get_object.return_value = {"Body": io.BytesIO(b"payload")}
        storage = S3Storage("bucket", validate_permissions=False)

        assert storage.read("a/b") == b"payload"
        s3_client.get_object.assert_called_once_with(Bucket="bucket", Key="a/b")

    def test_read_missing(self, s3_client):
        s3_client.get_object.side_effect = ClientError(
            {"Error": {"Code": "NoSuchKey"}}, "GetObject"
        )
        storage = S3Storage("bucket", validate_permissions=False)

        with pytest.raises(FileNotFoundError):
            storage.read("a/b")

    def test_read_denied_is_storage_failure(self, s3_client):
        s3_client.get_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied"}}, "GetObject"
        )
        storage = S3Storage("bucket", validate_permissions=False)

        with pytest.raises(StorageFailure):
            storage.read("a/b")

    def test_exists(self, s3_client):
        storage = S3Storage("bucket", validate_permissions=False)
        assert storage.exists("a/b")

        s3_client.head_object.side_effect = ClientError({"Error": {"Code": "404"}}, "HeadObject")
        assert not storage.exists("a/b")

    def test_move_copies_then_deletes(self, s3_client):
        storage = S3Storage("bucket", prefix="p", validate_permissions=False)

        storage.move("w/.w-1.tar.gz.staging", "w/w-1.tar.gz")

        source, bucket, key = s3_client.copy.call_args.args
        assert source == {"Bucket": "bucket", "Key": "p/w/.w-1.tar.gz.staging"}
        assert (bucket, key) == ("bucket", "p/w/w-1.tar.gz")
        assert s3_client.copy.call_args.kwargs["ExtraArgs"]["ContentType"] == S3Storage._content_type("w-1.tar.gz")
        s3_client.delete_object.assert_called_once_with(Bucket="bucket", Key="p/w/.w-1.tar.gz.staging")

    def test_move_failure_keeps_source(self, s3_client):
        s3_client.copy.side_effect = ClientError({"Error": {"Code": "AccessDenied"}}, "CopyObject")
        storage = S3Storage("bucket", validate_permissions=False)

        with pytest.raises(StorageFailure):
            storage.move("a", "b")

        s3_client.delete_object.assert_not_called()

    def test_delete_tree_pages_through_prefix(self, s3_client):
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "p/repositories/abc/1"}, {"Key": "p/repositories/abc/2"}]},
            {"Contents": [{"Key": "p/repositories/abc/3"}]},
            {},
        ]
        s3_client.get_paginator.return_value = paginator
        storage = S3Storage("bucket", prefix="p", validate_permissions=False)

        storage.delete_tree("repositories/abc")

        paginator.paginate.assert_called_once_with(Bucket="bucket", Prefix="p/repositories/abc/")
        assert s3_client.delete_objects.call_count == 2

    def test_validates_permissions_on_init(self, s3_client):
        with patch("pkgdepot.storage.AWSPermissionValidator") as mock_validator:
            S3Storage("bucket", region="eu-west-1")

        mock_validator.assert_called_once_with("eu-west-1")
        mock_validator.return_value.validate_s3_permissions.assert_called_once_with(
            "bucket", ["PutObject", "GetObject", "ListBucket"]
        )
