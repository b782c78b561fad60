"""Tests for clone and dependency install."""

import logging
from pathlib import Path

import pytest

from solresearch.crawler.downloader import CloneInstaller
from solresearch.crawler.ledger import Ledger

from conftest import FakeRunner, Scripted, make_project_dir, qualifying_record

PACKAGE_JSON = '{"name": "token", "scripts": {"test": "truffle test"}}'


def clone_creates(package_json=PACKAGE_JSON, subdir=""):
    """Effect of a successful clone: lay out the project at the destination."""

    def effect(cmd, cwd):
        make_project_dir(Path(cmd[3]) / subdir, package_json=package_json)

    return effect


def make_installer(ledger, pipeline_config, responses):
    runner = FakeRunner(responses)
    return CloneInstaller(ledger, pipeline_config, runner=runner), runner


# ---------------------------------------------------------------------------
# Clone
# ---------------------------------------------------------------------------

class TestClone:

    @pytest.mark.asyncio
    async def test_clone_into_owner_name(self, ledger, pipeline_config):
        record = qualifying_record("alice/token")
        ledger.add(record)
        installer, runner = make_installer(
            ledger, pipeline_config, {"clone": Scripted(effect=clone_creates())}
        )

        outcome = await installer.clone(record)

        dest = pipeline_config.repos_path / "alice" / "token"
        assert outcome.success
        assert runner.commands()[0] == f"git clone https://github.com/alice/token.git {dest}"
        assert dest.is_dir()

    @pytest.mark.asyncio
    async def test_existing_directory_is_not_cloned(self, ledger, pipeline_config):
        record = qualifying_record("alice/token")
        (pipeline_config.repos_path / "alice" / "token").mkdir(parents=True)
        installer, runner = make_installer(ledger, pipeline_config, {})

        assert await installer.clone(record) is None
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_failed_clone_is_removed(self, ledger, pipeline_config):
        record = qualifying_record("alice/token")

        def partial(cmd, cwd):
            Path(cmd[3]).mkdir(parents=True)
            (Path(cmd[3]) / ".git").mkdir()

        installer, _ = make_installer(
            ledger, pipeline_config, {"clone": Scripted(exit_code=128, effect=partial)}
        )

        outcome = await installer.clone(record)

        assert not outcome.success
        assert not (pipeline_config.repos_path / "alice" / "token").exists()


# ---------------------------------------------------------------------------
# Install
# ---------------------------------------------------------------------------

class TestInstall:

    @pytest.mark.asyncio
    async def test_install_records_stage(self, ledger, pipeline_config):
        record = qualifying_record("alice/token")
        ledger.add(record)
        make_project_dir(pipeline_config.repos_path / "alice" / "token", package_json=PACKAGE_JSON)
        installer, runner = make_installer(
            ledger,
            pipeline_config,
            {"install": Scripted(stdout=["added 120 packages\n"], stderr=["npm WARN deprecated\n"])},
        )

        outcome = await installer.install(record, record.truffle_trees[0])

        assert outcome.success
        assert runner.calls[0] == (
            ["npm", "install"],
            pipeline_config.repos_path / "alice" / "token",
        )
        project = Ledger.load(ledger.path).projects["alice/token/truffle.js"]
        assert project.has_package_json
        run = project.stage("install")
        assert run.exit_code == 0
        assert run.finish is not None
        assert run.stdout_events == ["added 120 packages\n"]
        assert run.stderr_events == ["npm WARN deprecated\n"]

    @pytest.mark.asyncio
    async def test_no_package_json(self, ledger, pipeline_config):
        record = qualifying_record("alice/token")
        make_project_dir(pipeline_config.repos_path / "alice" / "token")
        installer, runner = make_installer(ledger, pipeline_config, {})

        assert await installer.install(record, record.truffle_trees[0]) is None
        assert runner.calls == []
        project = ledger.projects["alice/token/truffle.js"]
        assert project.has_package_json is False
        assert project.stage("install") is None

    @pytest.mark.asyncio
    async def test_existing_node_modules(self, ledger, pipeline_config):
        record = qualifying_record("alice/token")
        root = make_project_dir(pipeline_config.repos_path / "alice" / "token", package_json=PACKAGE_JSON)
        (root / "node_modules").mkdir()
        installer, runner = make_installer(ledger, pipeline_config, {})

        assert await installer.install(record, record.truffle_trees[0]) is None
        assert runner.calls == []
        assert ledger.projects["alice/token/truffle.js"].has_package_json

    @pytest.mark.asyncio
    async def test_missing_directory(self, ledger, pipeline_config):
        record = qualifying_record("alice/token", config_paths=("app/truffle.js",))
        make_project_dir(pipeline_config.repos_path / "alice" / "token", package_json=PACKAGE_JSON)
        installer, runner = make_installer(ledger, pipeline_config, {})

        assert await installer.install(record, record.truffle_trees[0]) is None
        assert runner.calls == []
        assert ledger.projects == {}

    @pytest.mark.asyncio
    async def test_failed_install_is_recorded(self, ledger, pipeline_config):
        record = qualifying_record("alice/token")
        make_project_dir(pipeline_config.repos_path / "alice" / "token", package_json=PACKAGE_JSON)
        installer, _ = make_installer(
            ledger, pipeline_config, {"install": Scripted(exit_code=None, signal="SIGKILL")}
        )

        outcome = await installer.install(record, record.truffle_trees[0])

        assert not outcome.success
        run = ledger.projects["alice/token/truffle.js"].stage("install")
        assert run.exit_code is None
        assert run.exit_signal == "SIGKILL"

    @pytest.mark.asyncio
    async def test_output_forwarded_line_by_line(self, ledger, pipeline_config, caplog):
        record = qualifying_record("alice/token")
        make_project_dir(pipeline_config.repos_path / "alice" / "token", package_json=PACKAGE_JSON)
        installer, _ = make_installer(
            ledger,
            pipeline_config,
            {"install": Scripted(stdout=["added 1", "20 packages\nfound 0 vuln", "erabilities"])},
        )

        with caplog.at_level(logging.INFO, logger="solresearch.crawler.downloader"):
            await installer.install(record, record.truffle_trees[0])

        messages = [r.getMessage() for r in caplog.records]
        assert "[alice/token] added 120 packages" in messages
        assert "[alice/token] found 0 vulnerabilities" in messages


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

class TestCloneAndInstall:

    def _ledger_with(self, ledger, names):
        for name in names:
            ledger.add(qualifying_record(name))
        unqualified = qualifying_record("zed/untested")
        unqualified.test_trees = []
        ledger.add(unqualified)
        return ledger

    @pytest.mark.asyncio
    async def test_batch_processes_qualifying_in_order(self, ledger, pipeline_config):
        self._ledger_with(ledger, ["a/one", "b/two"])
        installer, runner = make_installer(
            ledger, pipeline_config, {"clone": Scripted(effect=clone_creates())}
        )
        completed = []

        results = await installer.clone_and_install(on_complete=lambda: completed.append(True))

        assert [r.full_name for r in results] == ["a/one", "b/two"]
        assert all(r.installed == ["truffle.js"] for r in results)
        assert [c for c in runner.commands() if c.startswith("git")] == [
            f"git clone https://github.com/a/one.git {pipeline_config.repos_path / 'a' / 'one'}",
            f"git clone https://github.com/b/two.git {pipeline_config.repos_path / 'b' / 'two'}",
        ]
        assert completed == [True]

    @pytest.mark.asyncio
    async def test_single_mode_processes_one(self, ledger, pipeline_config):
        self._ledger_with(ledger, ["a/one", "b/two"])
        installer, _ = make_installer(
            ledger, pipeline_config, {"clone": Scripted(effect=clone_creates())}
        )
        completed = []

        results = await installer.clone_and_install(
            start_index=1, continue_to_next=False, on_complete=lambda: completed.append(True)
        )

        assert [r.full_name for r in results] == ["b/two"]
        assert completed == []

    @pytest.mark.asyncio
    async def test_async_completion_past_end(self, ledger, pipeline_config):
        self._ledger_with(ledger, ["a/one"])
        installer, runner = make_installer(ledger, pipeline_config, {})
        completed = []

        async def done():
            completed.append(True)

        results = await installer.clone_and_install(start_index=5, on_complete=done)

        assert results == []
        assert runner.calls == []
        assert completed == [True]

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_batch(self, ledger, pipeline_config):
        self._ledger_with(ledger, ["a/one", "b/two"])

        def clone_second_only(cmd, cwd):
            if cmd[2].endswith("b/two.git"):
                clone_creates()(cmd, cwd)

        installer, _ = make_installer(
            ledger,
            pipeline_config,
            {"clone": Scripted(effect=clone_second_only, exit_code=0)},
        )

        results = await installer.clone_and_install()

        assert results[0].installed == []
        assert results[1].installed == ["truffle.js"]
