# cluster.py
# Small, focused wrapper around the kind CLI.
# Provisioning code talks to a ClusterTool and never builds kind commands itself.

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Protocol

from .tools import CommandResult, SubprocessToolRunner, ToolRunner, describe

_SERVER_RE = re.compile(r"^\s*server:\s*(\S+)\s*$", re.MULTILINE)


class ClusterToolError(RuntimeError):
    """The cluster lifecycle tool exited non-zero."""


@dataclass(frozen=True)
class ConnectionDescriptor:
    """How later steps reach a freshly created cluster."""
    name: str
    server: str
    node_address: str
    kubeconfig: Path


class ClusterTool(Protocol):
    def create(
        self, name: str, config: Optional[Path] = None, env: Optional[Mapping[str, str]] = None
    ) -> ConnectionDescriptor:
        ...

    def delete(self, name: str, env: Optional[Mapping[str, str]] = None) -> None:
        ...


class KindCli:
    """
    Drives `kind` (and `docker inspect` for the node address).

    Args:
        tools: where commands are executed
        kubeconfig_dir: directory the per-cluster kubeconfig files go into
        env: environment for the kind/docker processes (PATH must find them)
        wait: readiness wait passed to `kind create cluster --wait`
        rewrite_loopback: replace 127.0.0.1 with localhost in the API server
            address, for clients that refuse TLS to a bare IP
        timeout: bound in seconds for each kind/docker invocation
    """

    def __init__(
        self,
        tools: Optional[ToolRunner] = None,
        *,
        kubeconfig_dir: str | Path = ".kindci/kube",
        env: Optional[Mapping[str, str]] = None,
        wait: str = "120s",
        rewrite_loopback: bool = False,
        timeout: Optional[float] = 600,
        binary: str = "kind",
    ):
        self.tools = tools or SubprocessToolRunner()
        self.kubeconfig_dir = Path(kubeconfig_dir)
        self.env = dict(env or {})
        self.wait = wait
        self.rewrite_loopback = rewrite_loopback
        self.timeout = timeout
        self.binary = binary

    def _run(self, args: List[str], env: Optional[Mapping[str, str]] = None) -> CommandResult:
        res = self.tools.run(args, self.env if env is None else env, timeout=self.timeout)
        if res.timed_out:
            raise ClusterToolError(f"timed out after {self.timeout}s: {describe(args)}")
        if res.exit_code != 0:
            raise ClusterToolError(
                f"{describe(args)} exited {res.exit_code}: {res.stderr.strip() or res.stdout.strip()}"
            )
        return res

    def kubeconfig_path(self, name: str) -> Path:
        return (self.kubeconfig_dir / f"{name}.kubeconfig").resolve()

    def create(
        self, name: str, config: Optional[Path] = None, env: Optional[Mapping[str, str]] = None
    ) -> ConnectionDescriptor:
        kubeconfig = self.kubeconfig_path(name)
        kubeconfig.parent.mkdir(parents=True, exist_ok=True)

        args = [self.binary, "create", "cluster", "--name", name, "--kubeconfig", str(kubeconfig)]
        if config is not None:
            args += ["--config", str(config)]
        if self.wait:
            args += ["--wait", self.wait]
        self._run(args, env)

        # the cluster exists from here on: never leave it behind half-described
        try:
            server = self.server_address(kubeconfig)
            if self.rewrite_loopback and "127.0.0.1" in server:
                server = server.replace("127.0.0.1", "localhost")
                text = kubeconfig.read_text(encoding="utf-8")
                kubeconfig.write_text(text.replace("127.0.0.1", "localhost"), encoding="utf-8")
            node = self.node_address(name, env)
        except Exception:
            self.delete(name, env)
            raise

        return ConnectionDescriptor(name=name, server=server, node_address=node, kubeconfig=kubeconfig)

    def delete(self, name: str, env: Optional[Mapping[str, str]] = None) -> None:
        self._run(
            [self.binary, "delete", "cluster", "--name", name, "--kubeconfig", str(self.kubeconfig_path(name))],
            env,
        )

    def server_address(self, kubeconfig: Path) -> str:
        """API server URL from a kubeconfig written by kind (single cluster)."""
        match = _SERVER_RE.search(kubeconfig.read_text(encoding="utf-8")) if kubeconfig.exists() else None
        if not match:
            raise ClusterToolError(f"no server entry in kubeconfig {kubeconfig}")
        return match.group(1)

    def node_address(self, name: str, env: Optional[Mapping[str, str]] = None) -> str:
        """IP of the control-plane container on the docker network kind created."""
        res = self._run([
            "docker",
            "inspect",
            "--format",
            "{{range .NetworkSettings.Networks}}{{.IPAddress}} {{end}}",
            f"{name}-control-plane",
        ], env)
        addrs = res.stdout.split()
        if not addrs:
            raise ClusterToolError(f"no address for node {name}-control-plane")
        return addrs[0]
