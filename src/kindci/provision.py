# provision.py
from __future__ import annotations

import shutil
import stat
import tarfile
import tempfile
import threading
import urllib.request
import zipfile
from pathlib import Path, PurePosixPath
from typing import Dict, List, Mapping, Optional, Protocol

from .cluster import ClusterTool
from .errors import ProvisionError, TeardownError
from .model import ProvisionedResource, ResourceSpec
from .ui.console import get_console

TOOL = "tool"
KIND_CLUSTER = "kind-cluster"


class ResourceHandler(Protocol):
    """Acquire/release for one resource kind. Raise on failure, the provisioner wraps it."""

    def acquire(self, spec: ResourceSpec, run_id: str, env: Mapping[str, str]) -> ProvisionedResource:
        ...

    def release(self, resource: ProvisionedResource) -> None:
        ...


# ----------------------------------------------------------------------
# Tool binaries
# ----------------------------------------------------------------------

class ToolInstaller:
    """
    Downloads a tool release and puts it on PATH for the job.

    spec options:
      url:             archive (.tar.gz/.tgz/.zip) or a bare binary
      path_in_archive: member to extract (defaults to the spec name)
    """

    def __init__(self, root: str | Path, timeout: float = 120):
        self.root = Path(root)
        self.timeout = timeout

    def acquire(self, spec: ResourceSpec, run_id: str, env: Mapping[str, str]) -> ProvisionedResource:
        url = spec.option("url")
        if not url:
            raise ValueError(f"tool '{spec.name}' has no url")

        tools_dir = self.root / run_id / "tools"
        tools_dir.mkdir(parents=True, exist_ok=True)
        # one dir per acquisition, matrix jobs install the same tool concurrently
        install_dir = Path(tempfile.mkdtemp(prefix=f"{spec.name}-", dir=tools_dir)).resolve()
        try:
            download = install_dir / ".download"
            self._download(url, download)
            binary = self._unpack(download, install_dir, spec)
            download.unlink(missing_ok=True)
            binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except BaseException:
            shutil.rmtree(install_dir, ignore_errors=True)
            raise

        return ProvisionedResource(
            name=spec.name,
            kind=TOOL,
            exports={"PATH": str(install_dir)},
            handle=install_dir,
        )

    def release(self, resource: ProvisionedResource) -> None:
        shutil.rmtree(resource.handle, ignore_errors=False)

    def _download(self, url: str, dest: Path) -> None:
        if "://" not in url:
            # local path, handy for mirrors and tests
            shutil.copyfile(url, dest)
            return
        req = urllib.request.Request(url, headers={"User-Agent": "kindci"})
        with urllib.request.urlopen(req, timeout=self.timeout) as response, dest.open("wb") as f:
            shutil.copyfileobj(response, f)

    def _unpack(self, archive: Path, install_dir: Path, spec: ResourceSpec) -> Path:
        member = spec.option("path_in_archive") or spec.name
        target = install_dir / PurePosixPath(member).name

        if tarfile.is_tarfile(archive):
            with tarfile.open(archive) as tar:
                try:
                    info = tar.getmember(member)
                except KeyError:
                    raise FileNotFoundError(f"{member!r} not found in {spec.option('url')}")
                src = tar.extractfile(info)
                if src is None:
                    raise FileNotFoundError(f"{member!r} in {spec.option('url')} is not a file")
                with src, target.open("wb") as out:
                    shutil.copyfileobj(src, out)
            return target

        if zipfile.is_zipfile(archive):
            with zipfile.ZipFile(archive) as zf:
                try:
                    src = zf.open(member)
                except KeyError:
                    raise FileNotFoundError(f"{member!r} not found in {spec.option('url')}")
                with src, target.open("wb") as out:
                    shutil.copyfileobj(src, out)
            return target

        # bare binary
        archive.replace(target)
        return target


# ----------------------------------------------------------------------
# Ephemeral kind cluster
# ----------------------------------------------------------------------

class KindClusterHandler:
    """
    spec options:
      config:       kind cluster config file
      address_env:  variable that receives the node address (default NODE_IP)
    The cluster is named after the spec, or kind-<run_id> when unnamed.
    """

    def __init__(self, cluster: ClusterTool):
        self.cluster = cluster

    def acquire(self, spec: ResourceSpec, run_id: str, env: Mapping[str, str]) -> ProvisionedResource:
        name = spec.name if spec.name and spec.name != KIND_CLUSTER else f"kind-{run_id}"
        config = spec.option("config")
        env = dict(env)
        conn = self.cluster.create(name, Path(config) if config else None, env)
        address_env = spec.option("address_env", "NODE_IP")
        return ProvisionedResource(
            name=name,
            kind=KIND_CLUSTER,
            exports={
                "KUBECONFIG": str(conn.kubeconfig),
                "KIND_CLUSTER_NAME": conn.name,
                "KUBE_API_SERVER": conn.server,
                address_env: conn.node_address,
            },
            # env kept so delete finds the same kind binary
            handle=(conn, env),
        )

    def release(self, resource: ProvisionedResource) -> None:
        conn, env = resource.handle
        self.cluster.delete(conn.name, env)


# ----------------------------------------------------------------------
# Provisioner
# ----------------------------------------------------------------------

class Provisioner:
    """
    Owns the resources of one job.

    Every acquired resource is released exactly once, in reverse order,
    whatever happened in between.
    """

    def __init__(self, handlers: Dict[str, ResourceHandler], *, job: str, run_id: str):
        self.handlers = dict(handlers)
        self.job = job
        self.run_id = run_id
        self.acquired: List[ProvisionedResource] = []
        self._lock = threading.Lock()

    def acquire(self, spec: ResourceSpec, env: Optional[Mapping[str, str]] = None) -> ProvisionedResource:
        handler = self.handlers.get(spec.kind)
        if handler is None:
            raise ProvisionError(
                job=self.job,
                resource=spec.name,
                message=f"no handler for resource kind '{spec.kind}'",
                details={"known": sorted(self.handlers)},
            )
        try:
            resource = handler.acquire(spec, self.run_id, env or {})
        except ProvisionError:
            raise
        except Exception as e:
            # any handler failure stays local to the owning job
            raise ProvisionError(job=self.job, resource=spec.name, message=str(e) or type(e).__name__) from e

        with self._lock:
            self.acquired.append(resource)
        get_console().print_resource(self.job, f"{resource.kind}:{resource.name}", "acquired")
        return resource

    def release(self, resource: ProvisionedResource) -> Optional[TeardownError]:
        with self._lock:
            if resource.released:
                return None
            resource.released = True

        handler = self.handlers[resource.kind]
        try:
            handler.release(resource)
        except Exception as e:
            err = TeardownError(job=self.job, what=f"{resource.kind}:{resource.name}", message=str(e))
            get_console().print_teardown_error(str(err))
            return err
        get_console().print_resource(self.job, f"{resource.kind}:{resource.name}", "released")
        return None

    def release_all(self) -> List[TeardownError]:
        errors: List[TeardownError] = []
        for resource in reversed(list(self.acquired)):
            err = self.release(resource)
            if err is not None:
                errors.append(err)
        return errors


def default_handlers(cluster: ClusterTool, work_root: str | Path) -> Dict[str, ResourceHandler]:
    return {
        TOOL: ToolInstaller(work_root),
        KIND_CLUSTER: KindClusterHandler(cluster),
    }
