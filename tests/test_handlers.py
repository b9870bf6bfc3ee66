"""
Tests for action handlers — set-env, run-command, fetch-file, install-package.
"""

import hashlib
import os
import urllib.error
import urllib.request
from pathlib import Path

import pytest

from provisioner.adapters.mock import MockHandler
from provisioner.adapters.network.download import FetchFileHandler, is_transient, verify_checksum
from provisioner.adapters.packages import install
from provisioner.adapters.packages.install import (
    InstallPackageHandler,
    build_install_cmd,
    build_update_cmd,
    split_packages,
)
from provisioner.adapters.registry import HandlerRegistry, default_registry
from provisioner.adapters.shell.command import RunCommandHandler
from provisioner.adapters.shell.environment import SetEnvHandler, append_profile_line, export_line
from provisioner.adapters.shell.subprocess_runner import CommandResult
from provisioner.core.models.step import StepDescriptor

# ── set-env ──────────────────────────────────────────────────────────


class TestSetEnv:
    def test_exports_value(self):
        outcome = SetEnvHandler().perform({"name": "RUSTUP_HOME", "value": "/usr/local/rustup"})
        assert outcome.ok
        assert outcome.environment == {"RUSTUP_HOME": "/usr/local/rustup"}

    def test_expands_references(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("PATH", "/usr/bin")
        outcome = SetEnvHandler().perform({"name": "PATH", "value": "/opt/cargo/bin:$PATH"})
        assert outcome.environment == {"PATH": "/opt/cargo/bin:/usr/bin"}

    def test_does_not_touch_process_environment(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("PROVISION_TEST_VAR", raising=False)
        SetEnvHandler().perform({"name": "PROVISION_TEST_VAR", "value": "x"})
        assert "PROVISION_TEST_VAR" not in os.environ

    def test_profile_line_added_once(self, tmp_path: Path):
        profile = tmp_path / "profile"
        handler = SetEnvHandler()
        params = {"name": "CARGO_HOME", "value": "/usr/local/cargo", "profile": str(profile)}
        assert handler.perform(params).ok
        assert handler.perform(params).ok
        assert profile.read_text().splitlines() == ["export CARGO_HOME=/usr/local/cargo"]

    def test_profile_without_trailing_newline(self, tmp_path: Path):
        profile = tmp_path / "profile"
        profile.write_text("alias ll='ls -l'")
        assert append_profile_line(profile, "export A=1")
        assert profile.read_text() == "alias ll='ls -l'\nexport A=1\n"

    def test_export_line_quotes(self):
        assert export_line("MSG", "hello world") == "export MSG='hello world'"

    def test_validation(self):
        handler = SetEnvHandler()
        assert handler.validate({"name": "OK_NAME", "value": ""}) == (True, "")
        assert not handler.validate({"name": "1BAD", "value": "x"})[0]
        assert not handler.validate({"name": "X"})[0]
        assert not handler.validate({"value": "x"})[0]


# ── run-command ──────────────────────────────────────────────────────


class TestRunCommand:
    def test_success_captures_output(self):
        outcome = RunCommandHandler().perform({"command": "echo provisioned"})
        assert outcome.ok
        assert outcome.output == "provisioned"

    def test_failure_reports_exit_code_and_stderr(self):
        outcome = RunCommandHandler().perform({"command": "echo broken >&2; exit 3"})
        assert not outcome.ok
        assert "exit 3" in outcome.reason
        assert "broken" in outcome.reason
        assert outcome.metadata["return_code"] == 3

    def test_cwd(self, tmp_path: Path):
        outcome = RunCommandHandler().perform({"command": "pwd", "cwd": str(tmp_path)})
        assert Path(outcome.output).resolve() == tmp_path.resolve()

    def test_creates_skips_command(self, tmp_path: Path):
        marker = tmp_path / "marker"
        marker.touch()
        outcome = RunCommandHandler().perform(
            {"command": f"echo ran > {tmp_path / 'ran'}", "creates": str(marker)},
        )
        assert outcome.ok
        assert not (tmp_path / "ran").exists()

    def test_creates_runs_when_absent(self, tmp_path: Path):
        marker = tmp_path / "marker"
        outcome = RunCommandHandler().perform({"command": f"touch {marker}", "creates": str(marker)})
        assert outcome.ok
        assert marker.exists()

    def test_timeout(self):
        outcome = RunCommandHandler().perform({"command": "sleep 3", "timeout": "1"})
        assert not outcome.ok
        assert "timed out" in outcome.reason

    def test_validation(self, tmp_path: Path):
        handler = RunCommandHandler()
        assert not handler.validate({})[0]
        assert not handler.validate({"command": "true", "cwd": str(tmp_path / "nope")})[0]
        assert handler.validate({"command": "true", "cwd": str(tmp_path)})[0]


# ── fetch-file ───────────────────────────────────────────────────────


class TestFetchFile:
    def _source(self, tmp_path: Path, content: bytes = b"rustup-init") -> Path:
        src = tmp_path / "src" / "rustup-init.sh"
        src.parent.mkdir()
        src.write_bytes(content)
        return src

    def test_file_url(self, tmp_path: Path):
        src = self._source(tmp_path)
        dest = tmp_path / "out" / "rustup-init.sh"
        outcome = FetchFileHandler().perform({"url": src.as_uri(), "dest": str(dest)})
        assert outcome.ok, outcome.reason
        assert dest.read_bytes() == b"rustup-init"
        assert outcome.metadata["size_bytes"] == len(b"rustup-init")

    def test_checksum_and_mode(self, tmp_path: Path):
        src = self._source(tmp_path)
        dest = tmp_path / "rustup-init.sh"
        digest = hashlib.sha256(b"rustup-init").hexdigest()
        outcome = FetchFileHandler().perform({
            "url": src.as_uri(),
            "dest": str(dest),
            "checksum": f"sha256:{digest}",
            "mode": "0755",
        })
        assert outcome.ok, outcome.reason
        assert verify_checksum(dest, f"sha256:{digest}")
        assert dest.stat().st_mode & 0o777 == 0o755

    def test_default_mode_follows_umask(self, tmp_path: Path):
        src = self._source(tmp_path)
        dest = tmp_path / "out" / "rustup-init.sh"
        old_umask = os.umask(0o022)
        try:
            outcome = FetchFileHandler().perform({"url": src.as_uri(), "dest": str(dest)})
        finally:
            os.umask(old_umask)
        assert outcome.ok, outcome.reason
        assert dest.stat().st_mode & 0o777 == 0o644

    def test_checksum_mismatch_fails_without_retry(self, tmp_path: Path):
        src = self._source(tmp_path)
        dest = tmp_path / "out"
        sleeps: list[float] = []
        outcome = FetchFileHandler(sleep=sleeps.append).perform({
            "url": src.as_uri(), "dest": str(dest), "checksum": "sha256:" + "0" * 64,
        })
        assert not outcome.ok
        assert "Checksum mismatch" in outcome.reason
        assert sleeps == []
        assert not dest.exists()
        assert list(tmp_path.glob("*.part")) == []

    def test_transient_errors_retried(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        src = self._source(tmp_path)
        real_urlopen = urllib.request.urlopen
        calls: list[str] = []

        def flaky(req, timeout=None):
            calls.append(req.full_url)
            if len(calls) < 3:
                raise urllib.error.URLError("connection reset")
            return real_urlopen(req, timeout=timeout)

        monkeypatch.setattr(urllib.request, "urlopen", flaky)
        sleeps: list[float] = []
        dest = tmp_path / "dest"
        outcome = FetchFileHandler(attempts=4, base_delay=0.5, sleep=sleeps.append).perform(
            {"url": src.as_uri(), "dest": str(dest)},
        )
        assert outcome.ok, outcome.reason
        assert len(calls) == 3
        assert len(sleeps) == 2
        assert sleeps[1] >= sleeps[0]

    def test_gives_up_after_attempt_budget(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        calls: list[str] = []

        def down(req, timeout=None):
            calls.append(req.full_url)
            raise urllib.error.HTTPError(req.full_url, 503, "Service Unavailable", None, None)

        monkeypatch.setattr(urllib.request, "urlopen", down)
        outcome = FetchFileHandler(attempts=3, sleep=lambda s: None).perform(
            {"url": "https://example.invalid/x", "dest": str(tmp_path / "x")},
        )
        assert not outcome.ok
        assert "after 3 attempt(s)" in outcome.reason
        assert len(calls) == 3

    def test_attempts_param_overrides_default(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        calls: list[str] = []

        def down(req, timeout=None):
            calls.append(req.full_url)
            raise urllib.error.URLError("unreachable")

        monkeypatch.setattr(urllib.request, "urlopen", down)
        FetchFileHandler(attempts=5, sleep=lambda s: None).perform(
            {"url": "https://example.invalid/x", "dest": str(tmp_path / "x"), "attempts": "2"},
        )
        assert len(calls) == 2

    def test_client_error_not_retried(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        calls: list[str] = []

        def missing(req, timeout=None):
            calls.append(req.full_url)
            raise urllib.error.HTTPError(req.full_url, 404, "Not Found", None, None)

        monkeypatch.setattr(urllib.request, "urlopen", missing)
        outcome = FetchFileHandler(sleep=lambda s: None).perform(
            {"url": "https://example.invalid/x", "dest": str(tmp_path / "x")},
        )
        assert not outcome.ok
        assert "HTTP 404" in outcome.reason
        assert len(calls) == 1

    def test_is_transient(self):
        assert is_transient(urllib.error.URLError("reset"))
        assert is_transient(TimeoutError())
        assert is_transient(urllib.error.HTTPError("u", 429, "Too Many", None, None))
        assert not is_transient(urllib.error.HTTPError("u", 403, "Forbidden", None, None))
        assert not is_transient(ValueError("bad url"))

    def test_validation(self):
        handler = FetchFileHandler()
        assert not handler.validate({"url": "file:///x"})[0]
        assert not handler.validate({"url": "u", "dest": "d", "checksum": "nothex"})[0]
        assert not handler.validate({"url": "u", "dest": "d", "mode": "rwx"})[0]
        assert handler.validate({"url": "u", "dest": "d", "checksum": "sha256:ab", "mode": "644"})[0]


# ── install-package ──────────────────────────────────────────────────


class TestInstallPackage:
    def test_split_packages(self):
        assert split_packages("curl git, cmake\n  llvm") == ["curl", "git", "cmake", "llvm"]

    def test_commands(self):
        assert build_install_cmd(["git"], "apt") == [
            "apt-get", "install", "-y", "--no-install-recommends", "git",
        ]
        assert build_install_cmd(["git"], "apk") == ["apk", "add", "--no-cache", "git"]
        assert build_update_cmd("apt") == ["apt-get", "update"]
        with pytest.raises(ValueError):
            build_install_cmd(["git"], "chocolatey")

    def test_only_missing_packages_installed(self, monkeypatch: pytest.MonkeyPatch):
        ran: list[list[str]] = []
        monkeypatch.setattr(install, "is_package_installed", lambda pkg, pm: pkg == "curl")
        monkeypatch.setattr(
            install, "run_command", lambda cmd, **kw: ran.append(cmd) or CommandResult(ok=True, returncode=0),
        )
        outcome = InstallPackageHandler().perform(
            {"packages": "curl git cmake", "manager": "apt", "update": "true"},
        )
        assert outcome.ok
        assert outcome.metadata["installed"] == ["git", "cmake"]
        assert ran == [
            ["apt-get", "update"],
            ["apt-get", "install", "-y", "--no-install-recommends", "git", "cmake"],
        ]

    def test_nothing_to_do(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(install, "is_package_installed", lambda pkg, pm: True)
        monkeypatch.setattr(install, "run_command", lambda cmd, **kw: pytest.fail("should not run"))
        outcome = InstallPackageHandler().perform({"packages": "git", "manager": "apt"})
        assert outcome.ok
        assert outcome.metadata["installed"] == []

    def test_install_failure(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(install, "is_package_installed", lambda pkg, pm: False)
        monkeypatch.setattr(
            install,
            "run_command",
            lambda cmd, **kw: CommandResult(ok=False, returncode=100, error="Command failed (exit 100)"),
        )
        outcome = InstallPackageHandler().perform({"packages": "nonexistent-pkg", "manager": "apt"})
        assert not outcome.ok
        assert "nonexistent-pkg" in outcome.reason
        assert "exit 100" in outcome.reason

    def test_no_package_manager(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(install, "detect_package_manager", lambda: None)
        outcome = InstallPackageHandler().perform({"packages": "git"})
        assert not outcome.ok
        assert "No supported package manager" in outcome.reason

    def test_validation(self):
        handler = InstallPackageHandler()
        assert not handler.validate({})[0]
        assert not handler.validate({"packages": "git", "manager": "chocolatey"})[0]
        assert handler.validate({"packages": "git", "manager": "auto"})[0]


# ── registry ─────────────────────────────────────────────────────────


class TestRegistry:
    def test_default_registry_serves_every_kind(self):
        assert default_registry().kinds() == [
            "fetch-file", "install-package", "run-command", "set-env",
        ]

    def test_mock_mode(self):
        registry = default_registry(mock=True)
        assert registry.mock_mode
        assert isinstance(registry.get("install-package"), MockHandler)

    def test_invalid_params_are_a_failure(self):
        registry = default_registry()
        step = StepDescriptor(id="env", kind="set-env", params={"value": "x"})
        outcome = registry.perform(step)
        assert not outcome.ok
        assert outcome.reason.startswith("Validation failed")

    def test_duration_recorded(self):
        registry = HandlerRegistry(mock_handler=MockHandler())
        outcome = registry.perform(StepDescriptor(id="a", kind="run-command"))
        assert outcome.ok
        assert outcome.metadata["duration_ms"] >= 0
