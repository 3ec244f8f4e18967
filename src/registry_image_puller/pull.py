"""Async registry-to-archive pull pipeline."""

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .core.progress import NullProgressReporter, ProgressReporter
from .core.registry_client import RegistryClient
from .core.types import ImageReference, ManifestInfo, RegistryConfig
from .exceptions import ConfigError, RegistryError, WorkDirError
from .operations.manifests import resolve_manifest
from .tar.builder import build_docker_archive
from .tar.models import LayerResult
from .utils.digest import blob_filename, validate_digest

logger = logging.getLogger(__name__)


class PullStage(str, Enum):
    INIT = "init"
    AUTHENTICATING = "authenticating"
    RESOLVING_MANIFEST = "resolving_manifest"
    RESOLVING_PLATFORM = "resolving_platform"
    FETCHING_CONFIG = "fetching_config"
    DOWNLOADING_LAYERS = "downloading_layers"
    BUILDING_ARCHIVE = "building_archive"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PullResult:
    """A successfully pulled image archive."""

    reference: ImageReference
    output_path: Path
    size: int
    config_filename: str
    work_dir: Path
    layers: list[LayerResult] = field(default_factory=list)
    stage: PullStage = PullStage.DONE


def create_work_dir(download_dir: Path, safe_name: str) -> Path:
    """Create a fresh ``<safe_name>_tmp_<timestamp>`` directory.

    The nanosecond timestamp keeps back-to-back pulls of the same image apart;
    an existing directory is never reused.

    Raises:
        WorkDirError: If the download directory is not usable
    """
    try:
        download_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise WorkDirError(f"Cannot use download directory {download_dir}: {e}") from e
    while True:
        work_dir = download_dir / f"{safe_name}_tmp_{time.time_ns()}"
        try:
            work_dir.mkdir()
        except FileExistsError:
            continue
        except OSError as e:
            raise WorkDirError(f"Cannot create working directory {work_dir}: {e}") from e
        return work_dir


def check_diff_ids(config: dict[str, Any], manifest: ManifestInfo) -> list[str]:
    """Require one rootfs diffID per manifest layer.

    Raises:
        ConfigError: If diff_ids is missing, its length differs from the
            layers or an entry is not a valid digest
    """
    rootfs = config.get("rootfs")
    diff_ids = rootfs.get("diff_ids") if isinstance(rootfs, dict) else None
    if not isinstance(diff_ids, list):
        raise ConfigError("Image config has no rootfs.diff_ids")
    if len(diff_ids) != len(manifest.layers):
        raise ConfigError(
            f"Config lists {len(diff_ids)} diffIDs but the manifest has "
            f"{len(manifest.layers)} layers"
        )
    invalid = [diff_id for diff_id in diff_ids if not validate_digest(diff_id)]
    if invalid:
        raise ConfigError(f"Invalid diffID in image config: {invalid[0]!r}")
    return diff_ids


class ImagePuller:
    """Runs one pull at a time: resolve, download, then build the archive.

    Stages run strictly in sequence and the first failure aborts the pull.
    The working directory is removed after a successful build and left behind
    for inspection otherwise.
    """

    def __init__(
        self,
        config: RegistryConfig | None = None,
        download_dir: str | Path = "downloads",
        progress: ProgressReporter | None = None,
        keep_work_dir: bool = False,
    ) -> None:
        self.config = config or RegistryConfig()
        self.download_dir = Path(download_dir)
        self.progress = progress or NullProgressReporter()
        self.keep_work_dir = keep_work_dir
        self.stage = PullStage.INIT

    def _enter(self, stage: PullStage) -> None:
        self.stage = stage
        logger.debug("Pull stage: %s", stage.value)

    async def pull(self, reference: ImageReference) -> PullResult:
        """Pull ``reference`` into ``<download_dir>/<safe_name>.tar``.

        Raises:
            RegistryError: The failing stage's exception (AuthError,
                ManifestError, ConfigError, WorkDirError, DownloadError,
                ArchiveBuildError)
        """
        self._enter(PullStage.INIT)
        logger.info(
            "=== Download started: %s:%s (architecture: %s) ===",
            reference.repository,
            reference.tag,
            reference.architecture,
        )
        self.progress.start()

        try:
            async with RegistryClient(self.config) as client:
                return await self._run(client, reference)
        except RegistryError as e:
            failed_stage = self.stage
            self._enter(PullStage.FAILED)
            logger.error(
                "=== Download of %s failed while %s: %s ===",
                reference,
                failed_stage.value,
                e,
            )
            raise
        finally:
            self.progress.clear()

    async def _run(self, client: RegistryClient, reference: ImageReference) -> PullResult:
        repository = reference.repository

        self._enter(PullStage.AUTHENTICATING)
        await client.authenticate(repository)

        self._enter(PullStage.RESOLVING_MANIFEST)
        envelope = await client.get_manifest(repository, reference.tag)
        if envelope.is_list:
            self._enter(PullStage.RESOLVING_PLATFORM)
        manifest = await resolve_manifest(
            client, repository, envelope, reference.architecture, reference.os
        )

        work_dir = create_work_dir(self.download_dir, reference.safe_name)
        logger.info("Working directory: %s", work_dir)

        self._enter(PullStage.FETCHING_CONFIG)
        logger.info("Fetching config with digest %s", manifest.config.digest)
        config = await client.get_config(repository, manifest.config.digest)
        check_diff_ids(config, manifest)

        self._enter(PullStage.DOWNLOADING_LAYERS)
        layer_files = await self._download_layers(client, repository, manifest, work_dir)

        self._enter(PullStage.BUILDING_ARCHIVE)
        self.progress.packing(len(layer_files))
        output_path = self.download_dir / f"{reference.safe_name}.tar"
        loop = asyncio.get_running_loop()
        build = await loop.run_in_executor(
            None,
            functools.partial(
                build_docker_archive,
                work_dir,
                output_path,
                reference.name,
                reference.tag,
                manifest,
                config,
                layer_files=layer_files,
                keep_work_dir=self.keep_work_dir,
            ),
        )

        self._enter(PullStage.DONE)
        logger.info(
            "=== Download successful: %s (%s MB) ===",
            build.output_path.name,
            round(build.size / 1024 / 1024, 2),
        )
        return PullResult(
            reference=reference,
            output_path=build.output_path,
            size=build.size,
            config_filename=build.config_filename,
            work_dir=work_dir,
            layers=build.layers,
        )

    async def _download_layers(
        self,
        client: RegistryClient,
        repository: str,
        manifest: ManifestInfo,
        work_dir: Path,
    ) -> list[Path]:
        total = len(manifest.layers)
        logger.info("Starting download of %d layers", total)
        self.progress.layers_started(total)

        layer_files = []
        for index, layer in enumerate(manifest.layers):
            current = index + 1
            destination = work_dir / blob_filename(index, layer.digest)
            logger.info("Downloading layer %d/%d (%s)", current, total, layer.digest)
            self.progress.layer(current, total)

            size = await client.download_blob(repository, layer.digest, destination)
            logger.info(
                "Layer %d downloaded: %s MB", current, round(size / 1024 / 1024, 2)
            )
            layer_files.append(destination)

        return layer_files


async def pull_image(
    image: str,
    tag: str | None = None,
    architecture: str = "amd64",
    os: str = "linux",
    download_dir: str | Path = "downloads",
    config: RegistryConfig | None = None,
    progress: ProgressReporter | None = None,
    keep_work_dir: bool = False,
) -> PullResult:
    """레지스트리에서 이미지를 받아 docker load 용 tar 파일로 저장합니다.

    멀티 아키텍처 이미지는 요청한 아키텍처의 매니페스트로 해석하며,
    일치하는 항목이 없으면 목록의 첫 번째 매니페스트를 사용합니다.

    Args:
        image: 이미지 이름 (예: "alpine", "nginx:alpine", "grafana/grafana")
        tag: 태그 (선택사항, image 의 태그보다 우선. 기본값: "latest")
        architecture: 아키텍처 (amd64, arm64, arm)
        os: 운영체제 (기본값: "linux")
        download_dir: tar 파일과 작업 디렉토리가 생성될 경로
        config: 레지스트리 설정 (기본값: Docker Hub)
        progress: 진행 상황 리포터 (선택사항)
        keep_work_dir: 성공 후에도 작업 디렉토리를 남길지 여부

    Returns:
        PullResult: 생성된 tar 경로, 크기, 레이어 검증 결과

    Raises:
        ValidationError: 이미지 이름이나 아키텍처가 잘못된 경우
        RegistryError: 인증, 매니페스트, 설정, 다운로드, 아카이브 생성 실패 시

    Examples:
        # alpine:latest (amd64) 다운로드
        result = await pull_image("alpine")
        print(result.output_path)  # downloads/alpine_latest_amd64.tar

        # arm64 이미지 다운로드
        result = await pull_image("nginx", tag="alpine", architecture="arm64")
    """
    config = config or RegistryConfig()
    reference = ImageReference.parse(
        image,
        tag=tag,
        architecture=architecture,
        os=os,
        namespace=config.default_namespace,
    )
    puller = ImagePuller(
        config,
        download_dir=download_dir,
        progress=progress,
        keep_work_dir=keep_work_dir,
    )
    return await puller.pull(reference)
