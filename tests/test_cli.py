"""Tests for the repobridge CLI (repository, token and config commands)."""

from __future__ import annotations

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from repobridge.cli import JsonLineFormatter, _with_retries, app
from repobridge.config import load_config
from repobridge.errors import AuthRequiredError, NotFoundError, TransientError
from repobridge.vcs.base import ProviderCaches, VCSProvider
from repobridge.vcs.gitlab import GitLabProvider
from repobridge.vcs.models import FileEntry, ResolvedPath, TreeNode
from repobridge.vcs.registry import ProviderRegistry

runner = CliRunner()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def project_dir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("pathlib.Path.home", lambda: tmp_path / "fakehome")
    (tmp_path / "repobridge.yaml").write_text(
        "subject: alice\nmax_retries: 2\nretry_delay: 0.01\n"
        f"storage:\n  base_dir: {tmp_path / '.repobridge'}\n"
    )
    return tmp_path


@pytest.fixture
def clients():
    github = MagicMock(spec=VCSProvider)
    github.get_tree = AsyncMock(
        return_value=[
            TreeNode(
                name="src", path="src", type="dir",
                children=[TreeNode(name="app.py", path="src/app.py", type="file", size=12, level=1)],
            ),
            TreeNode(name="README.md", path="README.md", type="file", size=5),
        ]
    )
    github.list_directory = AsyncMock(
        return_value=[
            FileEntry(name="src", path="src", type="dir"),
            FileEntry(name="README.md", path="README.md", type="file", size=5),
        ]
    )
    github.get_file_content = AsyncMock(return_value=b"print('hi')\n")
    github.get_default_branch = AsyncMock(return_value="main")

    gitlab = MagicMock(spec=GitLabProvider)
    gitlab.get_tree = AsyncMock(return_value=[])
    gitlab.resolve = AsyncMock(
        return_value=ResolvedPath(owner="acme", repo="widgets", canonical="acme-org/widgets")
    )
    return {"github": github, "gitlab": gitlab}


@pytest.fixture
def registry(clients, validator, project_dir):
    reg = ProviderRegistry(clients, validator, ProviderCaches())
    with patch("repobridge.cli._registry", return_value=reg):
        yield reg


# ---------------------------------------------------------------------------
# Repository commands
# ---------------------------------------------------------------------------


class TestRepoCommands:
    def test_tree(self, registry):
        result = runner.invoke(app, ["tree", "github", "acme", "widgets"])
        assert result.exit_code == 0, result.output
        assert "acme/widgets" in result.output
        assert "src/" in result.output
        assert "app.py" in result.output

    def test_tree_no_fallback_skips_alternate(self, registry, clients):
        clients["github"].get_tree.side_effect = NotFoundError("github", "tree", "GitHub: not found")
        result = runner.invoke(app, ["tree", "github", "acme", "widgets", "--no-fallback"])
        assert result.exit_code == 1
        assert "not found" in result.output
        clients["gitlab"].get_tree.assert_not_awaited()

    def test_tree_falls_back_by_default(self, registry, clients):
        clients["github"].get_tree.side_effect = NotFoundError("github", "tree", "GitHub: not found")
        result = runner.invoke(app, ["tree", "github", "acme", "widgets"])
        assert result.exit_code == 0
        clients["gitlab"].get_tree.assert_awaited_once_with("acme", "widgets")

    def test_ls(self, registry, clients):
        result = runner.invoke(app, ["ls", "github", "acme", "widgets", "src"])
        assert result.exit_code == 0, result.output
        assert "README.md" in result.output
        clients["github"].list_directory.assert_awaited_once_with("acme", "widgets", "src")

    def test_cat_writes_raw_bytes(self, registry):
        result = runner.invoke(app, ["cat", "github", "acme", "widgets", "app.py"])
        assert result.exit_code == 0
        assert result.stdout_bytes == b"print('hi')\n"

    def test_branch(self, registry):
        result = runner.invoke(app, ["branch", "github", "acme", "widgets"])
        assert result.exit_code == 0
        assert result.output.strip() == "main"

    def test_resolve(self, registry):
        result = runner.invoke(app, ["resolve", "acme", "widgets"])
        assert result.exit_code == 0
        assert "acme-org/widgets" in result.output

    def test_unknown_provider(self, registry):
        result = runner.invoke(app, ["branch", "bitbucket", "acme", "widgets"])
        assert result.exit_code == 1
        assert "Unknown or disabled provider" in result.output

    def test_auth_error_is_actionable(self, registry, clients):
        clients["github"].get_default_branch.side_effect = AuthRequiredError(
            "github", "branch", absent=False
        )
        result = runner.invoke(app, ["branch", "github", "acme", "widgets"])
        assert result.exit_code == 1
        assert "Sign in with GitHub" in result.output

    def test_transient_error_is_retried(self, registry, clients):
        clients["github"].get_default_branch.side_effect = [
            TransientError("github", "branch", "GitHub server error 502"),
            "main",
        ]
        result = runner.invoke(app, ["branch", "github", "acme", "widgets"])
        assert result.exit_code == 0, result.output
        assert clients["github"].get_default_branch.await_count == 2

    def test_transient_error_gives_up_after_max_retries(self, registry, clients):
        clients["github"].get_default_branch.side_effect = TransientError(
            "github", "branch", "GitHub server error 502"
        )
        result = runner.invoke(app, ["branch", "github", "acme", "widgets"])
        assert result.exit_code == 1
        assert clients["github"].get_default_branch.await_count == 3

    def test_resolve_requires_gitlab_provider(self, registry, clients):
        clients["gitlab"] = MagicMock(spec=VCSProvider)
        result = runner.invoke(app, ["resolve", "acme", "widgets"])
        assert result.exit_code == 1
        assert "does not support path resolution" in result.output

    def test_retry_wraps_plain_callable_returning_coroutine(self, project_dir):
        cfg = load_config()
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 2:
                raise TransientError("gitlab", "tree", "GitLab server error 503")
            return "ok"

        assert asyncio.run(_with_retries(cfg, lambda: flaky())) == "ok"
        assert len(attempts) == 2


# ---------------------------------------------------------------------------
# Token commands
# ---------------------------------------------------------------------------


class TestTokenCommands:
    def test_set_then_status(self, registry, session_store):
        result = runner.invoke(app, ["token", "set", "github", "gh-good"])
        assert result.exit_code == 0, result.output
        assert "Stored" in result.output

        status = runner.invoke(app, ["token", "status", "github"])
        assert status.exit_code == 0, status.output
        assert "valid" in status.output
        assert "octocat" in status.output

    def test_set_with_refresh_token_and_expiry(self, registry, remote_store):
        result = runner.invoke(
            app,
            ["token", "set", "gitlab", "gl-good", "--refresh-token", "r1", "--expires-in", "7200"],
        )
        assert result.exit_code == 0, result.output

        stored = asyncio.run(remote_store.get("alice", "gitlab"))
        assert stored.refresh_token == "r1"
        assert stored.expires_at is not None

    def test_status_without_token(self, registry):
        result = runner.invoke(app, ["token", "status", "gitlab"])
        assert result.exit_code == 1
        assert "No GitLab token" in result.output

    def test_forget(self, registry, remote_store):
        runner.invoke(app, ["token", "set", "github", "gh-good"])
        result = runner.invoke(app, ["token", "forget", "github"])
        assert result.exit_code == 0
        assert asyncio.run(remote_store.get("alice", "github")).is_valid is False

    def test_token_never_echoed(self, registry):
        result = runner.invoke(app, ["token", "set", "github", "gh-super-secret"])
        assert "gh-super-secret" not in result.output


# ---------------------------------------------------------------------------
# Config commands
# ---------------------------------------------------------------------------


class TestConfigCommands:
    def test_init_creates_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr("pathlib.Path.home", lambda: tmp_path / "fakehome")
        result = runner.invoke(app, ["config", "init"])
        assert result.exit_code == 0
        assert (tmp_path / "repobridge.yaml").read_text().startswith("# repobridge.yaml")

    def test_init_refuses_overwrite(self, project_dir):
        result = runner.invoke(app, ["config", "init"])
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_init_force(self, project_dir):
        result = runner.invoke(app, ["config", "init", "--force"])
        assert result.exit_code == 0
        assert "subject: \"local\"" in (project_dir / "repobridge.yaml").read_text()

    def test_show(self, project_dir):
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "alice" in result.output

    def test_invalid_config_exits(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr("pathlib.Path.home", lambda: tmp_path / "fakehome")
        (tmp_path / "repobridge.yaml").write_text("log_level: loud\n")
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 1
        assert "Invalid config" in result.output

    def test_missing_config_path_exits(self, project_dir):
        result = runner.invoke(app, ["--config", "missing.yaml", "config", "show"])
        assert result.exit_code == 1
        assert "Config file not found" in result.output


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class TestJsonLineFormatter:
    def test_one_json_object_per_record(self):
        record = logging.LogRecord(
            "repobridge.vcs.gitlab", logging.INFO, __file__, 1, "fetched %d entries", (3,), None
        )
        payload = json.loads(JsonLineFormatter().format(record))
        assert payload["level"] == "info"
        assert payload["logger"] == "repobridge.vcs.gitlab"
        assert payload["message"] == "fetched 3 entries"
