"""Unit tests for the ingestion pipeline."""

import hashlib
import threading
from unittest.mock import patch

import pytest

from pkgdepot.errors import (
    DistributionFileNotFound,
    DuplicateArtifact,
    InvalidArtifact,
    RepositoryNotFound,
    RepositoryNotLocal,
    StorageFailure,
)


@pytest.fixture
def local(registry):
    return registry.create("pypi-local", "local")


def _artifact_files(tmp_path, local):
    root = tmp_path / "data" / "repositories" / local.id
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())


class TestIngest:
    def test_stores_bytes_and_rows(self, local, engine):
        dist_file = engine.ingest("pypi-local", "widget", "1.0.0", "widget-1.0.0.tar.gz", b"WHEEL-CONTENT")

        assert dist_file.hashes == {"sha256": hashlib.sha256(b"WHEEL-CONTENT").hexdigest()}
        assert dist_file.size == 13
        assert dist_file.path == f"repositories/{local.id}/widget/1.0.0/widget-1.0.0.tar.gz"
        assert engine.get_distribution_file("pypi-local", "widget", "1.0.0", "widget-1.0.0.tar.gz").read() == b"WHEEL-CONTENT"

    def test_accepts_chunked_content(self, local, engine):
        engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", iter([b"WHEEL-", b"CONTENT"]))
        source = engine.get_distribution_file("pypi-local", "widget", "1.0", "widget-1.0.tar.gz")
        assert source.read() == b"WHEEL-CONTENT"

    def test_duplicate_leaves_first_untouched(self, local, engine):
        engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"first")

        with pytest.raises(DuplicateArtifact) as exc_info:
            engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"second")

        assert exc_info.value.repository == "pypi-local"
        assert engine.get_distribution_file("pypi-local", "widget", "1.0", "widget-1.0.tar.gz").read() == b"first"

    def test_duplicate_detection_uses_normalized_project(self, local, engine):
        engine.ingest("pypi-local", "Foo_Bar", "1.0", "foo_bar-1.0.tar.gz", b"first")
        with pytest.raises(DuplicateArtifact):
            engine.ingest("pypi-local", "foo-bar", "1.0", "foo_bar-1.0.tar.gz", b"second")

    def test_overwrite(self, local, engine):
        engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"first")
        engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"second", overwrite=True)

        source = engine.get_distribution_file("pypi-local", "widget", "1.0", "widget-1.0.tar.gz")
        assert source.read() == b"second"
        assert source.hashes["sha256"] == hashlib.sha256(b"second").hexdigest()

    def test_declared_hash_verified(self, local, engine):
        digest = hashlib.sha256(b"content").hexdigest()
        dist_file = engine.ingest(
            "pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"content",
            hashes={"SHA256": digest.upper(), "md5": hashlib.md5(b"content").hexdigest()},
        )
        assert set(dist_file.hashes) == {"sha256", "md5"}

    def test_declared_hash_mismatch_leaves_nothing(self, local, engine, tmp_path):
        with pytest.raises(InvalidArtifact):
            engine.ingest(
                "pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"content",
                hashes={"sha256": "00" * 32},
            )

        assert engine.list_projects("pypi-local") == []
        assert _artifact_files(tmp_path, local) == []

    @pytest.mark.parametrize("algorithm", ["shake_128", "whirlpool-9000"])
    def test_unusable_hash_algorithm_leaves_nothing(self, local, engine, tmp_path, algorithm):
        with pytest.raises(InvalidArtifact):
            engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"abc", hashes={algorithm: "00"})

        assert engine.list_projects("pypi-local") == []
        assert _artifact_files(tmp_path, local) == []

    def test_only_the_final_file_is_left(self, local, engine, tmp_path):
        engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"first")
        engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"second", overwrite=True)

        assert _artifact_files(tmp_path, local) == ["widget/1.0/widget-1.0.tar.gz"]

    def test_metadata_merges_across_files(self, local, engine):
        engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"a", metadata={"Name": "widget", "Summary": "old"})
        engine.ingest("pypi-local", "widget", "1.0", "widget-1.0-py3-none-any.whl", b"b")
        engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.zip", b"c", metadata={"Summary": "new"})

        assert engine.get_release_metadata("pypi-local", "widget", "1.0") == {"Name": "widget", "Summary": "new"}

    @pytest.mark.parametrize(
        "project,version,filename",
        [("", "1.0", "w-1.0.tar.gz"), ("w", "..", "w.tar.gz"), ("w", "1.0", "../escape.tar.gz")],
    )
    def test_rejects_unusable_names(self, local, engine, project, version, filename):
        with pytest.raises(InvalidArtifact):
            engine.ingest("pypi-local", project, version, filename, b"x")


class TestTargets:
    def test_unknown_repository(self, engine):
        with pytest.raises(RepositoryNotFound):
            engine.ingest("nope", "w", "1.0", "w-1.0.tar.gz", b"x")

    def test_remote_is_rejected(self, registry, engine, upstream):
        registry.create("pypi-remote", "remote", configuration={"url": upstream.base_url})
        with pytest.raises(RepositoryNotLocal):
            engine.ingest("pypi-remote", "w", "1.0", "w-1.0.tar.gz", b"x")

    def test_virtual_without_target_is_rejected(self, registry, local, engine):
        registry.create("all", "virtual", configuration={"repositories": ["pypi-local"]})
        with pytest.raises(RepositoryNotLocal):
            engine.ingest("all", "w", "1.0", "w-1.0.tar.gz", b"x")

    def test_virtual_upload_target(self, registry, local, engine):
        registry.create(
            "all", "virtual", configuration={"repositories": ["pypi-local"], "upload_target": "pypi-local"}
        )
        engine.ingest("all", "w", "1.0", "w-1.0.tar.gz", b"x")

        assert engine.list_projects("pypi-local") == ["w"]


class TestRollback:
    def test_storage_failure_leaves_no_rows(self, local, engine):
        with patch.object(local.storage, "write", side_effect=StorageFailure("disk full")):
            with pytest.raises(StorageFailure):
                engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"x")

        assert engine.list_projects("pypi-local") == []

    def test_commit_failure_removes_bytes(self, local, engine, tmp_path):
        with patch.object(local.index_store, "commit_artifact", side_effect=StorageFailure("index down")):
            with pytest.raises(StorageFailure):
                engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"x")

        assert engine.list_projects("pypi-local") == []
        assert _artifact_files(tmp_path, local) == []

    def test_failed_overwrite_keeps_original(self, local, engine, tmp_path):
        engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"ORIGINAL")

        with patch.object(local.index_store, "commit_artifact", side_effect=StorageFailure("index down")):
            with pytest.raises(StorageFailure):
                engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"REPLACEMENT", overwrite=True)

        source = engine.get_distribution_file("pypi-local", "widget", "1.0", "widget-1.0.tar.gz")
        assert source.read() == b"ORIGINAL"
        assert _artifact_files(tmp_path, local) == ["widget/1.0/widget-1.0.tar.gz"]

    def test_failed_promotion_restores_previous_row(self, local, engine, tmp_path):
        engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"ORIGINAL")

        with patch.object(local.storage, "move", side_effect=StorageFailure("rename failed")):
            with pytest.raises(StorageFailure):
                engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"REPLACEMENT", overwrite=True)

        source = engine.get_distribution_file("pypi-local", "widget", "1.0", "widget-1.0.tar.gz")
        assert source.read() == b"ORIGINAL"
        assert source.hashes["sha256"] == hashlib.sha256(b"ORIGINAL").hexdigest()
        assert _artifact_files(tmp_path, local) == ["widget/1.0/widget-1.0.tar.gz"]

    def test_failed_promotion_of_new_file_leaves_no_row(self, local, engine, tmp_path):
        with patch.object(local.storage, "move", side_effect=StorageFailure("rename failed")):
            with pytest.raises(StorageFailure):
                engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", b"x")

        with pytest.raises(DistributionFileNotFound):
            engine.get_distribution_file("pypi-local", "widget", "1.0", "widget-1.0.tar.gz")
        assert _artifact_files(tmp_path, local) == []


class TestConcurrency:
    def test_same_key_one_winner(self, local, engine):
        outcomes = []
        barrier = threading.Barrier(6)

        def worker(i):
            barrier.wait(5)
            try:
                engine.ingest("pypi-local", "widget", "1.0", "widget-1.0.tar.gz", f"content-{i}".encode())
                outcomes.append("ok")
            except DuplicateArtifact:
                outcomes.append("duplicate")

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert sorted(outcomes) == ["duplicate"] * 5 + ["ok"]
        release = local.index_store.get_release(local.id, "widget", "1.0")
        assert len(release.files) == 1
        source = engine.get_distribution_file("pypi-local", "widget", "1.0", "widget-1.0.tar.gz")
        assert hashlib.sha256(source.read()).hexdigest() == release.files[0].hashes["sha256"]

    def test_different_files_all_succeed(self, local, engine):
        def worker(i):
            engine.ingest("pypi-local", "widget", "1.0", f"widget-1.0-{i}.tar.gz", b"x")

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert len(engine.get_project("pypi-local", "widget").releases[0].files) == 6
