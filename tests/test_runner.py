"""End-to-end tests for runner.run() and pipeline loading."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from conftest import FakeStepRunner
from matrixci.conditions import Mode
from matrixci.dsl import allow_failure, axis, cache, deploy, include, pipeline, sh, steps
from matrixci.errors import ConfigurationError
from matrixci.matrix import expand
from matrixci.model import OutcomeStatus, PipelineOutcome
from matrixci.runner import load_pipeline, run
from matrixci.settings import RepoContext, Settings

REPO_ROOT = Path(__file__).resolve().parents[1]


def _config(**overrides):
    kw = dict(
        axes=[axis("rust", "stable", "nightly")],
        allow_failures=[allow_failure(rust="nightly")],
        include=[include(rust="stable", env="BUILD_DOC=1")],
        cache=cache(".cargo", prune=[".cargo/registry"]),
        script=steps(doc_build=[sh("doc", "cargo doc")], default=[sh("test", "cargo test")]),
        deploy=deploy("master", sh("publish", "ghp-import"), on={"rust": "stable"}, local_dir="target/doc"),
    )
    kw.update(overrides)
    return pipeline("e2e", **kw)


@pytest.fixture()
def settings(tmp_path):
    (tmp_path / "target" / "doc").mkdir(parents=True)
    return Settings(repo_root=tmp_path, workers=2)


class TestRun:
    def test_green_run_on_master_deploys_once(self, settings, console):
        runner = FakeStepRunner()
        report = run(_config(), RepoContext(branch="master"), settings, step_runner=runner, console=console)
        assert report.outcome is PipelineOutcome.SUCCESS
        assert report.deploy.fired is True
        assert report.deploy.trigger_job == 3
        assert runner.count("publish") == 1
        assert report.exit_code == 0

    def test_feature_branch_runs_jobs_but_never_deploys(self, settings, console):
        runner = FakeStepRunner()
        report = run(_config(), RepoContext(branch="feature"), settings, step_runner=runner, console=console)
        assert len(report.outcomes) == 3
        assert report.deploy.fired is False
        assert runner.count("publish") == 0

    def test_failed_counted_job_blocks_deploy(self, settings, console):
        runner = FakeStepRunner(exit_codes={"test": lambda env: 1 if env["RUST"] == "stable" else 0})
        report = run(_config(), RepoContext(branch="master"), settings, step_runner=runner, console=console)
        assert report.outcome is PipelineOutcome.FAILED
        assert report.deploy.fired is False
        assert report.exit_code == 1

    def test_cache_persisted_under_repo_root(self, settings, console):
        def fill(step, env, cwd):
            Path(env["MATRIXCI_CACHE_DIR"], ".cargo", "bin").mkdir()

        runner = FakeStepRunner(hooks={"test": fill})
        report = run(_config(deploy=None), RepoContext(branch="master"), settings, step_runner=runner, console=console)
        archives = sorted((settings.repo_root / settings.cache_dir).glob("*.tar.gz"))
        assert len(archives) == 2
        assert report.deploy is None

    def test_branch_filter_skips_whole_pipeline(self, settings, console):
        runner = FakeStepRunner()
        report = run(_config(branches=["master"]), RepoContext(branch="dev"), settings, step_runner=runner, console=console)
        assert report.skipped_reason
        assert report.outcomes == []
        assert report.exit_code == 0
        assert runner.calls == []

    def test_custom_deploy_action(self, settings, console):
        seen = []
        config = _config(deploy=deploy("master", local_dir="target/doc"))
        report = run(
            config,
            RepoContext(branch="master"),
            settings,
            step_runner=FakeStepRunner(),
            deploy_action=lambda path, ctx: seen.append(ctx.trigger_job.number),
            console=console,
        )
        assert seen == [3]
        assert report.deploy.error is None

    def test_deploy_without_steps_or_action_rejected(self, settings, console):
        runner = FakeStepRunner()
        with pytest.raises(ConfigurationError):
            run(_config(deploy=deploy("master")), RepoContext(branch="master"), settings, step_runner=runner, console=console)
        assert runner.calls == []

    def test_settings_timeout_overrides_pipeline(self, settings, console):
        runner = FakeStepRunner()
        run(_config(deploy=None, job_timeout=600), RepoContext(branch="x"), settings.override(job_timeout=5), step_runner=runner, console=console)
        assert runner.timeouts and all(0 < t <= 5 for t in runner.timeouts)


class TestLoadPipeline:
    def test_loads_pipeline_function(self, tmp_path):
        path = tmp_path / "ci_pipeline.py"
        path.write_text(textwrap.dedent(
            """
            from matrixci.dsl import axis, pipeline as build_pipeline, sh, steps

            def pipeline():
                return build_pipeline("t", axes=[axis("py", "3.12")], script=steps(default=[sh("t", "pytest")]))
            """
        ))
        assert load_pipeline(path).name == "t"

    def test_loads_constant(self, tmp_path):
        path = tmp_path / "ci_pipeline.py"
        path.write_text(textwrap.dedent(
            """
            from matrixci.dsl import build, sh, steps

            PIPELINE = build("c").axis("py", "3.12").script(steps(sh("t", "pytest"))).build()
            """
        ))
        assert load_pipeline(path).name == "c"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_pipeline(tmp_path / "nope.py")

    def test_not_a_python_file(self, tmp_path):
        path = tmp_path / ".travis.yml"
        path.write_text("language: rust\n")
        with pytest.raises(ValueError):
            load_pipeline(path)

    def test_nothing_defined(self, tmp_path):
        path = tmp_path / "empty_pipeline.py"
        path.write_text("X = 1\n")
        with pytest.raises(TypeError):
            load_pipeline(path)

    def test_name_collision_hint(self, tmp_path):
        path = tmp_path / "bad_pipeline.py"
        path.write_text("def pipeline(name):\n    return None\n")
        with pytest.raises(TypeError, match="build_pipeline"):
            load_pipeline(path)


class TestExamplePipeline:
    @pytest.fixture()
    def jobs(self):
        return expand(load_pipeline(REPO_ROOT / "matrixci_pipeline.py"))

    def test_eight_jobs(self, jobs):
        assert len(jobs) == 8
        assert [j.mode for j in jobs[4:]] == [Mode.FORMAT_CHECK, Mode.COVERAGE, Mode.DOC_BUILD, Mode.CROSS_TARGET]

    def test_nightly_jobs_allowed_to_fail(self, jobs):
        assert [j.number for j in jobs if j.allow_failure] == [4, 6]

    def test_doc_job_triggers_deploy(self, jobs):
        config = load_pipeline(REPO_ROOT / "matrixci_pipeline.py")
        from matrixci.deploy import DeployGate

        gate = DeployGate(config.deploy, lambda path, ctx: None)
        assert [j.number for j in jobs if gate.is_trigger(j)] == [7]

    def test_cargo_steps_install_into_cache(self, jobs):
        config = load_pipeline(REPO_ROOT / "matrixci_pipeline.py")
        assert config.cache.directories == (".cargo",)
        checked = 0
        for job in jobs:
            for table in (config.setup, config.script, config.after_success):
                for step in table.select(job.mode):
                    if "cargo " in step.run or "cross " in step.run:
                        assert step.run.startswith('export CARGO_HOME="$MATRIXCI_CACHE_DIR/.cargo"'), step.name
                        checked += 1
        assert checked > len(jobs)

    def test_cross_target_job_is_privileged(self, jobs):
        assert jobs[7].privileged and jobs[7].services == ("docker",)
        assert jobs[7].env["TARGET"] == "x86_64-unknown-freebsd"

    def test_full_run_with_nightly_failures(self, tmp_path, console):
        config = load_pipeline(REPO_ROOT / "matrixci_pipeline.py")
        (tmp_path / "target" / "doc").mkdir(parents=True)
        runner = FakeStepRunner(exit_codes={"test": lambda env: 101 if env["RUST"] == "nightly" else 0})
        report = run(config, RepoContext(branch="master"), Settings(repo_root=tmp_path), step_runner=runner, console=console)
        assert report.outcomes[3].status is OutcomeStatus.FAILED
        assert report.outcome is PipelineOutcome.SUCCESS
        assert report.deploy.fired and report.deploy.error is None
        assert runner.count("publish pages") == 1
