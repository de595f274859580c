# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from matrixci.cache import CacheManager
from matrixci.errors import ConfigurationError
from matrixci.matrix import expand
from matrixci.model import CacheConfig
from matrixci.runner import load_pipeline, run as run_pipeline
from matrixci.settings import Settings, resolve_repo_context
from matrixci.ui.console import Console, get_console, set_console

DEFAULT_PIPELINE = "matrixci_pipeline.py"


def find_pipeline_files() -> list[Path]:
    """
    Find all pipeline files in the current directory.

    Returns:
        List of Path objects for pipeline files
    """
    pipeline_files = []
    current_dir = Path(".")

    default_pipeline = current_dir / DEFAULT_PIPELINE
    if default_pipeline.exists():
        pipeline_files.append(default_pipeline)

    for path in current_dir.glob("*_pipeline.py"):
        if path != default_pipeline:
            pipeline_files.append(path)

    return sorted(pipeline_files)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Resolve --pipeline, or the single pipeline file in the current directory.

    Raises:
        SystemExit: If no file or more than one candidate is found
    """
    console = get_console()

    if pipeline_arg:
        pipeline_path = Path(pipeline_arg)
        if not pipeline_path.exists() and pipeline_path.suffix != ".py":
            pipeline_path = Path(str(pipeline_path) + ".py")
        if not pipeline_path.exists():
            console.print_error("Pipeline file not found", f"No such file: {pipeline_arg}")
            sys.exit(1)
        return pipeline_path

    pipeline_files = find_pipeline_files()

    if not pipeline_files:
        console.print_error(
            "No pipeline file found",
            f"Looked for {DEFAULT_PIPELINE} and *_pipeline.py in the current directory.",
            suggestion="Pass one with --pipeline PATH.",
        )
        sys.exit(1)

    if len(pipeline_files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Pick one with --pipeline PATH:",
            details=[str(f) for f in pipeline_files],
        )
        sys.exit(1)

    return pipeline_files[0]


def _config_error(err: ConfigurationError) -> None:
    get_console().print_error(
        "Invalid pipeline configuration",
        err.message,
        details=[f"{k}: {v}" for k, v in err.details.items()] or None,
        suggestion="No job was started.",
    )
    sys.exit(2)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """matrixci: build-matrix CI orchestrator."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help=f"Pipeline file path (defaults to {DEFAULT_PIPELINE} if present)")
@click.option("--workers", default=None, type=int, help="Number of parallel jobs [env: MATRIXCI_WORKERS]")
@click.option("--cache-dir", default=None, type=click.Path(path_type=Path), help="Cache store directory [env: MATRIXCI_CACHE_DIR]")
@click.option("--work-dir", default=None, type=click.Path(path_type=Path), help="Cache working copies [env: MATRIXCI_WORK_DIR]")
@click.option("--timeout", default=None, type=float, help="Per-job timeout in seconds [env: MATRIXCI_JOB_TIMEOUT]")
@click.option("--branch", default=None, help="Branch name (defaults to git) [env: MATRIXCI_BRANCH]")
@click.option("--tag", default=None, help="Tag name (defaults to git) [env: MATRIXCI_TAG]")
@click.option("--report", "report_path", default=None, type=click.Path(path_type=Path), help="Write the JSON run report here")
@click.pass_context
def run(ctx, pipeline_arg, workers, cache_dir, work_dir, timeout, branch, tag, report_path):
    """Run a matrixci pipeline."""
    console = get_console()
    pipeline_path = discover_pipeline(pipeline_arg)

    try:
        settings = Settings.from_env().override(
            workers=workers,
            cache_dir=cache_dir,
            work_dir=work_dir,
            job_timeout=timeout,
            branch=branch,
            tag=tag,
        )
        config = load_pipeline(pipeline_path)
        context = resolve_repo_context(settings)
        report = run_pipeline(config, context, settings, console=console)
    except ConfigurationError as e:
        _config_error(e)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(report)

    if report_path is not None:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
        console.print_info(f"Report written to {report_path}")

    sys.exit(report.exit_code)


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help=f"Pipeline file path (defaults to {DEFAULT_PIPELINE} if present)")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the expanded jobs as JSON")
def plan(pipeline_arg, as_json):
    """Expand the matrix and show the jobs without running them."""
    console = get_console()
    pipeline_path = discover_pipeline(pipeline_arg)

    try:
        config = load_pipeline(pipeline_path)
        jobs = expand(config)
    except ConfigurationError as e:
        _config_error(e)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    if as_json:
        payload = [
            {
                "number": j.number,
                "name": j.name,
                "mode": j.mode.value,
                "allow_failure": j.allow_failure,
                "privileged": j.privileged,
                "services": list(j.services),
                "cache_key": j.cache_key,
            }
            for j in jobs
        ]
        click.echo(json.dumps(payload, indent=2))
        return

    console.print_header(f"{config.name}: {len(jobs)} job(s)")
    for j in jobs:
        console.print_plan_job(j)
    if config.branches:
        console.print_info(f"\nRuns on branches: {', '.join(config.branches)}")
    if config.deploy is not None:
        console.print_info(
            f"Deploys from branch {config.deploy.branch} via the {config.deploy.trigger_mode.value} job"
        )


@cli.group()
def cache():
    """Manage the persisted cache store."""


@cache.command("prune")
@click.option("--cache-dir", default=None, type=click.Path(path_type=Path), help="Cache store directory [env: MATRIXCI_CACHE_DIR]")
@click.option("--keep", default=10, show_default=True, type=int, help="Archives to keep (newest first)")
def cache_prune(cache_dir, keep):
    """Delete all but the newest cache archives."""
    console = get_console()
    settings = Settings.from_env().override(cache_dir=cache_dir)
    removed = CacheManager(CacheConfig(), store_root=settings.cache_dir).prune_store(keep=keep)
    console.print_info(f"Removed {len(removed)} archive(s) from {settings.cache_dir}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
