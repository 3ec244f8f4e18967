"""Tests for building ``docker load`` archives from downloaded layers."""

import hashlib
import json
import tarfile
from concurrent.futures import ThreadPoolExecutor

import pytest

from registry_image_puller.core.types import BlobInfo, ManifestInfo
from registry_image_puller.exceptions import (
    ArchiveBuildError,
    MissingDiffIdsError,
    NoLayersProducedError,
    PackagingError,
)
from registry_image_puller.operations.config import normalize_config, serialize_config
from registry_image_puller.tar.builder import (
    build_docker_archive,
    created_timestamp,
    decompress_layer,
)
from registry_image_puller.tar.models import HashVerification
from registry_image_puller.utils.digest import blob_filename
from registry_image_puller.utils.validator import validate_docker_tar
from tests.helpers import make_config, make_layer_tar, write_gzip_layer


def prepare_layers(work_dir, count):
    """Write ``count`` gzip layers and return (files, diff_ids, manifest)."""
    files, diff_ids, blobs = [], [], []
    for index in range(count):
        digest = f"sha256:{index:064x}"
        path = work_dir / blob_filename(index, digest)
        diff_ids.append(write_gzip_layer(path, {f"layer{index}.txt": f"layer {index}".encode()}))
        files.append(path)
        blobs.append(BlobInfo(digest=digest))
    manifest = ManifestInfo(config=BlobInfo(digest="sha256:" + "c" * 64), layers=blobs)
    return files, diff_ids, manifest


def read_manifest(tar_path):
    with tarfile.open(tar_path) as tar:
        return json.loads(tar.extractfile("manifest.json").read())


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "alpine_latest_amd64_tmp_1"
    path.mkdir()
    return path


class TestBuildDockerArchive:
    """Archive layout and layer verification."""

    def test_layers_in_manifest_order(self, work_dir, tmp_path):
        files, diff_ids, manifest = prepare_layers(work_dir, 3)
        output = tmp_path / "alpine_latest_amd64.tar"

        result = build_docker_archive(
            work_dir, output, "alpine", "latest", manifest, make_config(diff_ids), files
        )

        entry = read_manifest(output)[0]
        assert entry["RepoTags"] == ["alpine:latest"]
        assert entry["Layers"] == [f"{d.split(':')[1]}/layer.tar" for d in diff_ids]
        assert result.layer_paths == entry["Layers"]
        assert all(layer.verification is HashVerification.VERIFIED for layer in result.layers)
        assert validate_docker_tar(output) is True

    def test_config_named_after_its_hash(self, work_dir, tmp_path):
        files, diff_ids, manifest = prepare_layers(work_dir, 1)
        config = make_config(diff_ids)
        output = tmp_path / "out.tar"

        result = build_docker_archive(work_dir, output, "alpine", "latest", manifest, config, files)

        expected = serialize_config(normalize_config(config))
        assert result.config_filename == f"{hashlib.sha256(expected).hexdigest()}.json"
        with tarfile.open(output) as tar:
            assert tar.extractfile(result.config_filename).read() == expected

    def test_config_name_is_deterministic(self, tmp_path):
        names = []
        for attempt in range(2):
            work_dir = tmp_path / f"work{attempt}"
            work_dir.mkdir()
            files, diff_ids, manifest = prepare_layers(work_dir, 2)
            result = build_docker_archive(
                work_dir,
                tmp_path / f"out{attempt}.tar",
                "alpine",
                "latest",
                manifest,
                make_config(diff_ids),
                files,
            )
            names.append(result.config_filename)

        assert names[0] == names[1]

    def test_hash_mismatch_is_reported_not_fatal(self, work_dir, tmp_path):
        files, diff_ids, manifest = prepare_layers(work_dir, 2)
        wrong = "sha256:" + "0" * 64
        output = tmp_path / "out.tar"

        result = build_docker_archive(
            work_dir, output, "alpine", "latest", manifest, make_config([diff_ids[0], wrong]), files
        )

        assert result.layers[0].verification is HashVerification.VERIFIED
        assert result.layers[1].verification is HashVerification.MISMATCHED
        assert result.mismatched_layers == [result.layers[1]]
        assert result.layers[1].path == f"{'0' * 64}/layer.tar"
        assert output.exists()

    def test_missing_diff_ids(self, work_dir, tmp_path):
        files, _, manifest = prepare_layers(work_dir, 1)
        output = tmp_path / "out.tar"

        with pytest.raises(MissingDiffIdsError):
            build_docker_archive(
                work_dir, output, "alpine", "latest", manifest, make_config([]), files
            )

        assert not output.exists()

    def test_extra_layer_without_diff_id_is_skipped(self, work_dir, tmp_path):
        files, diff_ids, manifest = prepare_layers(work_dir, 3)
        output = tmp_path / "out.tar"

        result = build_docker_archive(
            work_dir, output, "alpine", "latest", manifest, make_config(diff_ids[:2]), files
        )

        assert len(result.layers) == 2
        assert len(read_manifest(output)[0]["Layers"]) == 2

    def test_no_layers_produced(self, work_dir, tmp_path):
        output = tmp_path / "out.tar"
        manifest = ManifestInfo(config=BlobInfo(digest="sha256:" + "c" * 64))

        with pytest.raises(NoLayersProducedError):
            build_docker_archive(
                work_dir, output, "alpine", "latest", manifest, make_config(["sha256:" + "1" * 64]), []
            )

        assert not output.exists()

    def test_corrupt_gzip_layer(self, work_dir, tmp_path):
        files, diff_ids, manifest = prepare_layers(work_dir, 1)
        files[0].write_bytes(b"\x1f\x8b\x08\x00garbage")
        output = tmp_path / "out.tar"

        with pytest.raises(ArchiveBuildError):
            build_docker_archive(
                work_dir, output, "alpine", "latest", manifest, make_config(diff_ids), files
            )

        assert not output.exists()

    def test_sorted_directory_fallback(self, work_dir, tmp_path):
        files, diff_ids, manifest = prepare_layers(work_dir, 3)
        output = tmp_path / "out.tar"

        result = build_docker_archive(
            work_dir, output, "alpine", "latest", manifest, make_config(diff_ids)
        )

        assert [layer.diff_id for layer in result.layers] == diff_ids
        assert all(layer.verification is HashVerification.VERIFIED for layer in result.layers)

    def test_duplicate_diff_id_stored_once(self, work_dir, tmp_path):
        first = work_dir / blob_filename(0, "sha256:" + "a" * 64)
        second = work_dir / blob_filename(1, "sha256:" + "b" * 64)
        diff_id = write_gzip_layer(first, {"same.txt": b"same"})
        write_gzip_layer(second, {"same.txt": b"same"})
        manifest = ManifestInfo(
            config=BlobInfo(digest="sha256:" + "c" * 64),
            layers=[BlobInfo(digest="sha256:" + "a" * 64), BlobInfo(digest="sha256:" + "b" * 64)],
        )
        output = tmp_path / "out.tar"

        build_docker_archive(
            work_dir, output, "alpine", "latest", manifest, make_config([diff_id, diff_id]),
            [first, second],
        )

        with tarfile.open(output) as tar:
            names = tar.getnames()
        layer_path = f"{diff_id.split(':')[1]}/layer.tar"
        assert names.count(layer_path) == 1
        assert read_manifest(output)[0]["Layers"] == [layer_path, layer_path]

    def test_member_ownership_and_times(self, work_dir, tmp_path):
        files, diff_ids, manifest = prepare_layers(work_dir, 1)
        config = make_config(diff_ids)
        output = tmp_path / "out.tar"

        build_docker_archive(work_dir, output, "alpine", "latest", manifest, config, files)

        with tarfile.open(output) as tar:
            members = {member.name: member for member in tar.getmembers()}
        assert members["manifest.json"].mtime == 0
        for name, member in members.items():
            assert member.uid == 0 and member.gid == 0
            assert member.mode == 0o644
            if name != "manifest.json":
                assert member.mtime == created_timestamp(config)

    def test_work_dir_removed_after_success(self, work_dir, tmp_path):
        files, diff_ids, manifest = prepare_layers(work_dir, 1)

        build_docker_archive(
            work_dir, tmp_path / "out.tar", "alpine", "latest", manifest, make_config(diff_ids), files
        )

        assert not work_dir.exists()

    def test_keep_work_dir(self, work_dir, tmp_path):
        files, diff_ids, manifest = prepare_layers(work_dir, 1)

        build_docker_archive(
            work_dir,
            tmp_path / "out.tar",
            "alpine",
            "latest",
            manifest,
            make_config(diff_ids),
            files,
            keep_work_dir=True,
        )

        assert (work_dir / "manifest.json").exists()
        assert files[0].exists()

    def test_unwritable_work_dir(self, tmp_path):
        output = tmp_path / "out.tar"

        with pytest.raises(PackagingError):
            build_docker_archive(
                tmp_path / "missing",
                output,
                "alpine",
                "latest",
                None,
                make_config(["sha256:" + "1" * 64]),
                [],
            )

        assert not output.exists()

    def test_concurrent_builds_to_same_output(self, tmp_path):
        output = tmp_path / "alpine_latest_amd64.tar"
        jobs = []
        for worker in range(20):
            work_dir = tmp_path / f"alpine_latest_amd64_tmp_{worker}"
            work_dir.mkdir()
            files, diff_ids, manifest = prepare_layers(work_dir, 2)
            jobs.append((work_dir, manifest, make_config(diff_ids), files))

        def build(job):
            work_dir, manifest, config, files = job
            return build_docker_archive(work_dir, output, "alpine", "latest", manifest, config, files)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(build, jobs))

        assert len(results) == 20
        assert validate_docker_tar(output) is True
        assert {result.size for result in results} == {output.stat().st_size}
        assert [path for path in tmp_path.iterdir() if path.name.endswith(".partial")] == []


class TestDecompressLayer:
    """Layer decompression helpers."""

    def test_uncompressed_layer_copied_through(self, tmp_path):
        layer_tar = make_layer_tar({"a.txt": b"a"})
        source = tmp_path / "000_layer.tar.gz"
        source.write_bytes(layer_tar)

        digest, size = decompress_layer(source, tmp_path / "layer.tar")

        assert digest == hashlib.sha256(layer_tar).hexdigest()
        assert size == len(layer_tar)

    def test_created_timestamp(self):
        assert created_timestamp({"created": "1970-01-01T00:01:40.123456789Z"}) == 100
        assert created_timestamp({}) == 0
        assert created_timestamp({"created": "yesterday"}) == 0
