# kindci_workflow.py
# Build + end-to-end pipeline: cross-platform build matrix, then e2e tests
# against an ephemeral kind cluster.
from __future__ import annotations

from kindci.dsl import (
    job, sh, upload, secret, always, on_event, on_matrix, matrix, override, tool, kind_cluster, wf,
)

JUST_LINUX = "https://github.com/casey/just/releases/download/v0.5.11/just-v0.5.11-x86_64-unknown-linux-musl.tar.gz"
JUST_MACOS = "https://github.com/casey/just/releases/download/v0.5.11/just-v0.5.11-x86_64-apple-darwin.tar.gz"
KIND_LINUX = "https://kind.sigs.k8s.io/dl/v0.11.1/kind-linux-amd64"


def pipeline():
    return wf(
        job(
            "build",
            sh(
                "(macOS) install dev tools",
                "rustup component add rustfmt clippy && rustup update stable",
                when=on_matrix("os", "macos-latest"),
            ),
            sh(
                "setup for cross-compile builds",
                "rustup target add aarch64-unknown-linux-gnu",
                when=on_matrix("arch", "aarch64"),
            ),
            sh("Build", "just build $BUILD_ARGS"),
            sh("Test", "just test"),
            matrix=matrix(os=["ubuntu-latest", "macos-latest"], arch=["amd64", "aarch64"]),
            overrides=[
                override(os="ubuntu-latest", resources=[tool("just", JUST_LINUX, path_in_archive="just")]),
                override(os="macos-latest", resources=[tool("just", JUST_MACOS, path_in_archive="just")]),
                override(
                    arch="aarch64",
                    env={
                        "BUILD_ARGS": "--target aarch64-unknown-linux-gnu",
                        "OPENSSL_DIR": "/usr/local/openssl-aarch64",
                    },
                ),
            ],
            env={"BUILD_ARGS": ""},
        ),
        job(
            "e2e",
            sh("Apply RBAC rules for CSI tests", "kubectl apply -f tests/csi/rbac.yaml"),
            sh(
                "Run e2e tests (full)",
                "just test-e2e-standalone",
                when=on_event("push"),
                env={
                    "E2E_TEST_ENV": "ci",
                    "E2E_IMAGE_PULL_SECRET": secret("E2E_IMAGE_PULL_SECRET"),
                },
                timeout=3600,
            ),
            sh("Run e2e tests (PR)", "just test-e2e-standalone", when=on_event("pull_request"), timeout=3600),
            always(sh("Dump cluster state", "mkdir -p oneclick-logs && kubectl get pods -A -o wide > oneclick-logs/pods.txt")),
            upload("e2e-logs", "oneclick-logs/"),
            resources=[
                tool("just", JUST_LINUX, path_in_archive="just"),
                tool("kind", KIND_LINUX),
                kind_cluster(address_env="E2E_NODE_IP"),
            ],
            runs_on="ubuntu-latest",
        ),
        job(
            "dependency-audit",
            sh("cargo deny", "cargo deny check $MATRIX_CHECKS"),
            matrix=matrix(checks=["advisories", "bans licenses sources"]),
            runs_on="ubuntu-latest",
        ),
    )
