"""Tests for matrix expansion."""

import pytest

from kindci.dsl import job, matrix, override, sh, tool
from kindci.errors import InvalidAxisError, WorkflowError
from kindci.matrix import expand, expand_all, expand_axes, matrix_env_key


def _template(**kw):
    return job("build", sh("Build", "just build"), **kw)


class TestExpand:
    """Tests for expand()."""

    def test_product_size_and_uniqueness(self):
        """N axes of sizes s1..sN give prod(si) unique jobs."""
        t = _template(matrix=matrix(os=["linux", "macos"], arch=["amd64", "aarch64", "riscv"], tls=["on", "off"]))

        jobs = expand(t)

        assert len(jobs) == 2 * 3 * 2
        assert len(set(jobs)) == len(jobs)
        assert len({j.job_id for j in jobs}) == len(jobs)

    def test_order_follows_declared_axes(self):
        t = _template(matrix=matrix(os=["linux", "macos"], arch=["amd64", "aarch64"]))

        ids = [j.job_id for j in expand(t)]

        assert ids == [
            "build (linux, amd64)",
            "build (linux, aarch64)",
            "build (macos, amd64)",
            "build (macos, aarch64)",
        ]

    def test_reexpansion_is_identical(self):
        t = _template(
            matrix=matrix(os=["linux", "macos"], arch=["amd64", "aarch64"]),
            overrides=[override(arch="aarch64", env={"OPENSSL_DIR": "/opt/ssl"})],
            env={"RUST_LOG": "info"},
        )

        first = expand(t)
        second = expand(t)

        assert [(j.axes, j.env, j.steps, j.resources) for j in first] == [
            (j.axes, j.env, j.steps, j.resources) for j in second
        ]
        assert repr(first) == repr(second)

    def test_no_axes_yields_single_job(self):
        jobs = expand(_template())

        assert len(jobs) == 1
        assert jobs[0].job_id == "build"
        assert jobs[0].axes == ()

    def test_override_env_applies_only_to_matching_combinations(self):
        t = _template(
            matrix=matrix(os=["linux"], arch=["amd64", "aarch64"]),
            overrides=[override(arch="aarch64", env={"OPENSSL_DIR": "/usr/local/openssl-aarch64"})],
            env={"OPENSSL_DIR": "", "RUST_LOG": "info"},
        )

        amd64, aarch64 = expand(t)

        assert amd64.environment["OPENSSL_DIR"] == ""
        assert aarch64.environment["OPENSSL_DIR"] == "/usr/local/openssl-aarch64"
        assert aarch64.environment["RUST_LOG"] == "info"

    def test_later_overrides_win(self):
        t = _template(
            matrix=matrix(os=["linux"], arch=["aarch64"]),
            overrides=[
                override(os="linux", env={"CC": "gcc"}),
                override(os="linux", arch="aarch64", env={"CC": "aarch64-linux-gnu-gcc"}),
            ],
        )

        (only,) = expand(t)

        assert only.environment["CC"] == "aarch64-linux-gnu-gcc"

    def test_axis_values_exported_as_env(self):
        t = _template(matrix=matrix(os=["ubuntu-latest"], **{"cargo-checks": ["advisories"]}))

        (only,) = expand(t)

        assert only.environment["MATRIX_OS"] == "ubuntu-latest"
        assert only.environment["MATRIX_CARGO_CHECKS"] == "advisories"
        assert matrix_env_key("cargo-checks") == "MATRIX_CARGO_CHECKS"

    def test_override_resources_appended(self):
        just_linux = tool("just", "https://example.invalid/just-linux.tar.gz")
        t = _template(
            matrix=matrix(os=["linux", "macos"]),
            overrides=[override(os="linux", resources=[just_linux])],
        )

        linux, macos = expand(t)

        assert linux.resources == (just_linux,)
        assert macos.resources == ()

    def test_runs_on_passed_through(self):
        t = _template(runs_on=["self-hosted", "windows", "x64"])

        (only,) = expand(t)

        assert only.runs_on == ("self-hosted", "windows", "x64")


class TestInvalidAxes:
    """Matrix validation errors."""

    def test_empty_axis(self):
        with pytest.raises(InvalidAxisError) as exc:
            expand(_template(matrix={"os": []}))
        assert exc.value.axis == "os"

    def test_duplicate_values(self):
        with pytest.raises(InvalidAxisError):
            expand(_template(matrix=matrix(os=["linux", "linux"])))

    def test_override_undefined_axis(self):
        with pytest.raises(InvalidAxisError) as exc:
            expand(_template(matrix=matrix(os=["linux"]), overrides=[override(arch="amd64", env={"X": "1"})]))
        assert exc.value.axis == "arch"

    def test_override_undefined_value(self):
        with pytest.raises(InvalidAxisError) as exc:
            expand(_template(matrix=matrix(os=["linux"]), overrides=[override(os="windows", env={"X": "1"})]))
        assert "windows" in str(exc.value)

    def test_invalid_axis_is_a_workflow_error(self):
        with pytest.raises(WorkflowError):
            expand_axes({"os": []}, job="build")


class TestExpandAll:
    def test_keeps_template_order(self):
        jobs = expand_all([
            job("build", sh("b", "true"), matrix=matrix(os=["linux", "macos"])),
            job("e2e", sh("e", "true")),
        ])

        assert [j.job_id for j in jobs] == ["build (linux)", "build (macos)", "e2e"]

    def test_duplicate_job_ids(self):
        with pytest.raises(WorkflowError, match="Duplicate job ids"):
            expand_all([job("e2e", sh("a", "true")), job("e2e", sh("b", "true"))])

    def test_ids_sharing_a_directory_name(self):
        """build (Linux) and build (linux) would write to the same artifact dir."""
        with pytest.raises(WorkflowError, match="same directory name") as exc:
            expand_all([job("build", sh("b", "true"), matrix=matrix(os=["Linux", "linux"]))])

        assert "build (Linux)" in str(exc.value)
        assert "build (linux)" in str(exc.value)
