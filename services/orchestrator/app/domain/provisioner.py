"""Resolve node-software version requests into executable artifacts.

Each :data:`BinarySource` variant has one resolution strategy. Results are cached by a
version key, in memory and on disk (``<cache_dir>/artifacts/<key>/artifact.json``), so a
repeated request for the same version does not rebuild or refetch.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import os
import re
import shutil
import stat
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Sequence

import httpx
import structlog
from opentelemetry import trace

from ..config import ProvisioningSettings, get_settings
from ..persistence.storage import ArtifactStorage
from .errors import ProvisioningError
from .retry import retry_async
from .types import BinaryArtifact, BinarySource, LocalBuild, PrebuiltPath, RemoteArtifact, RevisionBuild

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

_MANIFEST = "artifact.json"
_OUTPUT_TAIL = 40


@dataclass
class CommandResult:
    args: Sequence[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, lines: int = _OUTPUT_TAIL) -> str:
        output = (self.stderr or self.stdout).splitlines()
        return "\n".join(output[-lines:])


CommandRunner = Callable[[Sequence[str], Path], Awaitable[CommandResult]]


async def run_command(args: Sequence[str], cwd: Path) -> CommandResult:
    """Run a toolchain command to completion, capturing its output."""
    logger.debug("provisioner.command", command=" ".join(args), cwd=str(cwd))
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise ProvisioningError(f"Failed to spawn `{' '.join(args)}`", operation="provision", cause=exc) from exc
    stdout, stderr = await process.communicate()
    return CommandResult(
        args=list(args),
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def file_sha256(path: Path) -> str:
    hasher = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def _slug(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", value).strip("_") or "unnamed"


def _short_hash(value: str, length: int = 12) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def _make_executable(path: Path) -> None:
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def source_from_settings(settings: ProvisioningSettings) -> BinarySource:
    """Build the binary source selected by configuration."""
    if settings.source == "local":
        return LocalBuild(project_path=settings.local_path, compile=settings.compile)
    if settings.source == "revision":
        if not settings.revision:
            raise ProvisioningError("Revision source selected but no revision configured", operation="provision")
        return RevisionBuild(revision=settings.revision, repo_url=settings.repo_url)
    if settings.source == "remote":
        if not settings.remote_url:
            raise ProvisioningError("Remote source selected but no remote URL configured", operation="provision")
        return RemoteArtifact(url=settings.remote_url, sha256=settings.remote_sha256)
    if settings.artifact_path is None:
        raise ProvisioningError("Path source selected but no artifact path configured", operation="provision")
    return PrebuiltPath(path=settings.artifact_path)


class BinaryProvisioner:
    """Resolve :data:`BinarySource` requests to :class:`BinaryArtifact` with create-once caching."""

    def __init__(
        self,
        settings: ProvisioningSettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        storage: ArtifactStorage | None = None,
        runner: CommandRunner = run_command,
    ) -> None:
        self._settings = settings or get_settings().provisioning
        self._transport = transport
        self._storage = storage
        self._run = runner
        self._cache: dict[str, BinaryArtifact] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._strategies: dict[type, Callable[..., Awaitable[BinaryArtifact]]] = {
            LocalBuild: self._resolve_local,
            RevisionBuild: self._resolve_revision,
            RemoteArtifact: self._resolve_remote,
            PrebuiltPath: self._resolve_prebuilt,
        }

    @property
    def artifacts_dir(self) -> Path:
        return Path(self._settings.cache_dir) / "artifacts"

    def cached(self) -> list[BinaryArtifact]:
        return list(self._cache.values())

    async def resolve(self, source: BinarySource) -> BinaryArtifact:
        strategy = self._strategies.get(type(source))
        if strategy is None:
            raise ProvisioningError(f"Unsupported binary source {type(source).__name__}", operation="provision")
        with tracer.start_as_current_span("provisioner.resolve", attributes={"source": type(source).__name__}):
            key = await self.version_key(source)
            artifact = self._cache.get(key)
            if artifact is not None:
                return artifact
            lock = self._locks.setdefault(key, asyncio.Lock())
            async with lock:
                artifact = self._cache.get(key) or self._load_manifest(key)
                if artifact is None:
                    logger.info("provisioner.resolving", key=key, source=type(source).__name__)
                    artifact = await strategy(source, key)
                    self._write_manifest(key, artifact)
                    logger.info("provisioner.resolved", key=key, version=artifact.version, path=str(artifact.path))
                self._cache[key] = artifact
                return artifact

    async def version_key(self, source: BinarySource) -> str:
        if isinstance(source, LocalBuild):
            return f"local-{await self._local_fingerprint(source.project_path)}"
        if isinstance(source, RevisionBuild):
            return f"rev-{_slug(source.revision)}-{_short_hash(source.repo_url, 8)}"
        if isinstance(source, RemoteArtifact):
            if source.version:
                return f"remote-{_slug(source.version)}"
            return f"remote-{(source.sha256 or _short_hash(source.url, 16))[:16]}"
        if isinstance(source, PrebuiltPath):
            path = Path(source.path)
            if not path.is_file():
                raise ProvisioningError(f"Artifact {path} does not exist", operation="provision")
            return f"path-{file_sha256(path)[:16]}"
        raise ProvisioningError(f"Unsupported binary source {type(source).__name__}", operation="provision")

    async def _local_fingerprint(self, project_path: Path) -> str:
        path = Path(project_path).expanduser()
        if not path.is_dir():
            raise ProvisioningError(f"Local project {path} does not exist", operation="provision")
        path = path.resolve()
        head = await self._run(["git", "rev-parse", "HEAD"], path)
        if not head.ok:
            return _short_hash(str(path))
        status = await self._run(["git", "status", "--porcelain"], path)
        diff = await self._run(["git", "diff", "HEAD"], path)
        return _short_hash(head.stdout.strip() + status.stdout + diff.stdout)

    # Strategies

    async def _resolve_local(self, source: LocalBuild, key: str) -> BinaryArtifact:
        project = Path(source.project_path).expanduser().resolve()
        if source.compile:
            await self._build(project)
        head = await self._run(["git", "describe", "--always", "--dirty"], project)
        version = f"local:{head.stdout.strip()}" if head.ok and head.stdout.strip() else f"local:{project.name}"
        return self._collect_outputs(project, key, version=version, source="local")

    async def _resolve_revision(self, source: RevisionBuild, key: str) -> BinaryArtifact:
        workspace = Path(self._settings.cache_dir) / "workspaces" / key
        if workspace.exists():
            shutil.rmtree(workspace)
        workspace.parent.mkdir(parents=True, exist_ok=True)
        try:
            clone = await self._run(["git", "clone", "--quiet", source.repo_url, str(workspace)], workspace.parent)
            if not clone.ok:
                raise ProvisioningError(
                    f"Failed to clone {source.repo_url}: {clone.tail()}", operation="provision"
                )
            checkout = await self._run(["git", "checkout", "--quiet", "--detach", source.revision], workspace)
            if not checkout.ok:
                raise ProvisioningError(
                    f"Unknown revision {source.revision!r}: {checkout.tail()}", operation="provision"
                )
            commit = await self._run(["git", "rev-parse", "--short", "HEAD"], workspace)
            await self._build(workspace)
            version = f"{source.revision}@{commit.stdout.strip()}" if commit.ok else source.revision
            return self._collect_outputs(workspace, key, version=version, source="revision")
        finally:
            shutil.rmtree(workspace, ignore_errors=True)

    async def _resolve_remote(self, source: RemoteArtifact, key: str) -> BinaryArtifact:
        staging = self.artifacts_dir / f"{key}.partial"
        final = self.artifacts_dir / key
        shutil.rmtree(staging, ignore_errors=True)
        staging.mkdir(parents=True)
        try:
            download = staging / "download"
            await retry_async(
                lambda: self._fetch(source.url, download),
                attempts=self._settings.fetch_retries,
                base_delay=self._settings.fetch_backoff_s,
                retry_on=(httpx.HTTPError, OSError),
                describe=f"fetch {source.url}",
            )
            digest = file_sha256(download)
            if source.sha256 and self._settings.verify_checksums and digest != source.sha256.lower():
                raise ProvisioningError(
                    f"Checksum mismatch for {source.url}: expected {source.sha256}, got {digest}",
                    operation="provision",
                )
            binary_name = Path(self._settings.binary_relpath).name
            if source.url.endswith((".tar.gz", ".tgz")):
                with tarfile.open(download) as archive:
                    archive.extractall(staging, filter="data")
                download.unlink()
                binary = self._find_binary(staging, binary_name)
            else:
                binary = staging / binary_name
                download.rename(binary)
            _make_executable(binary)
        except ProvisioningError:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        except (httpx.HTTPError, OSError, tarfile.TarError) as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise ProvisioningError(f"Failed to fetch {source.url}", operation="provision", cause=exc) from exc
        shutil.rmtree(final, ignore_errors=True)
        staging.rename(final)
        binary = final / binary.relative_to(staging)
        return BinaryArtifact(
            version=source.version or f"remote:{digest[:12]}",
            source="remote",
            path=binary,
            sha256=file_sha256(binary),
            resources_dir=binary.parent,
        )

    async def _resolve_prebuilt(self, source: PrebuiltPath, key: str) -> BinaryArtifact:
        path = Path(source.path).expanduser().resolve()
        if not os.access(path, os.X_OK):
            raise ProvisioningError(f"Artifact {path} is not executable", operation="provision")
        return BinaryArtifact(
            version=f"path:{key[len('path-'):]}",
            source="path",
            path=path,
            sha256=file_sha256(path),
            resources_dir=path.parent,
        )

    # Helpers

    async def _fetch(self, url: str, dest: Path) -> None:
        if url.startswith("s3://"):
            storage = self._storage or ArtifactStorage()
            await storage.download(url, dest)
            return
        async with httpx.AsyncClient(transport=self._transport, timeout=self._settings.fetch_timeout_s) as client:
            async with client.stream("GET", url, follow_redirects=True) as response:
                response.raise_for_status()
                with open(dest, "wb") as handle:
                    async for chunk in response.aiter_bytes():
                        handle.write(chunk)

    async def _build(self, project: Path) -> None:
        with tracer.start_as_current_span("provisioner.build", attributes={"project": str(project)}):
            result = await self._run(self._settings.build_command, project)
        if not result.ok:
            raise ProvisioningError(
                f"Build failed with exit code {result.returncode}:\n{result.tail()}", operation="provision"
            )

    def _find_binary(self, root: Path, name: str) -> Path:
        candidate = root / self._settings.binary_relpath
        if candidate.is_file():
            return candidate
        for path in sorted(root.rglob(name)):
            if path.is_file():
                return path
        raise ProvisioningError(f"Archive does not contain {name}", operation="provision")

    def _collect_outputs(self, project: Path, key: str, *, version: str, source: str) -> BinaryArtifact:
        binary_src = project / self._settings.binary_relpath
        if not binary_src.is_file():
            raise ProvisioningError(f"Build output {binary_src} is missing", operation="provision")
        staging = self.artifacts_dir / f"{key}.partial"
        final = self.artifacts_dir / key
        shutil.rmtree(staging, ignore_errors=True)
        staging.mkdir(parents=True)
        try:
            binary = staging / binary_src.name
            shutil.copy2(binary_src, binary)
            _make_executable(binary)
            templates = {
                "config.toml": project / self._settings.config_template_relpath,
                "chainspec.toml": project / self._settings.chainspec_template_relpath,
            }
            for name, template in templates.items():
                if template.is_file():
                    shutil.copy2(template, staging / name)
            shutil.rmtree(final, ignore_errors=True)
            staging.rename(final)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise ProvisioningError("Failed to copy build outputs", operation="provision", cause=exc) from exc
        path = final / binary_src.name
        return BinaryArtifact(version=version, source=source, path=path, sha256=file_sha256(path), resources_dir=final)

    def _load_manifest(self, key: str) -> BinaryArtifact | None:
        manifest = self.artifacts_dir / key / _MANIFEST
        if not manifest.is_file():
            return None
        data = json.loads(manifest.read_text(encoding="utf-8"))
        path = Path(data["path"])
        if not path.is_file():
            return None
        resources = data.get("resourcesDir")
        return BinaryArtifact(
            version=data["version"],
            source=data["source"],
            path=path,
            sha256=data["sha256"],
            resources_dir=Path(resources) if resources else None,
        )

    def _write_manifest(self, key: str, artifact: BinaryArtifact) -> None:
        directory = self.artifacts_dir / key
        directory.mkdir(parents=True, exist_ok=True)
        data = {
            **artifact.to_dict(),
            "resourcesDir": str(artifact.resources_dir) if artifact.resources_dir else None,
        }
        (directory / _MANIFEST).write_text(json.dumps(data, indent=2), encoding="utf-8")


__all__ = ["BinaryProvisioner", "CommandResult", "run_command", "source_from_settings", "file_sha256"]
