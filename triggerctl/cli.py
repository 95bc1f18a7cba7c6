"""CLI interface for triggerctl."""

import click
import sys
from pathlib import Path
from typing import Optional
from pydantic import ValidationError
from .errors import PartialFanOutFailure, TriggerError
from .logs import setup_logging
from .models import Config, ParameterDefinition, Result, RetryPolicy, Run
from .parameters import parse_parameters
from .retry import ALREADY_RETRIED, QUEUED_PREFIX, RetryController
from .settings import Settings
from .steps import StepContext, TriggerAndWaitStep, TriggerJobStep, WaitForBuildStep
from .storage import Storage
from .downstream import DownstreamTracker


# Global storage instance
_storage: Optional[Storage] = None


def get_storage() -> Storage:
    """Get or create storage instance."""
    global _storage
    if _storage is None:
        _storage = Storage(str(Settings().data_dir))
    return _storage


def fail(message: str) -> None:
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


def get_parent(storage: Storage, run_id: Optional[str]) -> Optional[Run]:
    if not run_id:
        return None
    run = storage.get_run(run_id)
    if run is None:
        fail(f"Parent run {run_id} not found")
    return run


def step_context(storage: Storage, parent: Optional[str] = None, workspace: Optional[str] = None) -> StepContext:
    return StepContext(
        host=storage,
        config=storage.get_config(),
        parent=get_parent(storage, parent),
        workspace=Path(workspace) if workspace else None,
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log debug output")
def cli(verbose: bool):
    """TriggerCTL - trigger downstream jobs, wait for them and retry failures"""
    settings = Settings()
    setup_logging("DEBUG" if verbose else settings.log_level, settings.log_file)


@cli.group()
def job():
    """Manage job definitions"""
    pass


@job.command("define")
@click.argument("name")
@click.option("--param", "-p", "params", multiple=True, help="Declared parameter as name=default")
@click.option("--disabled", is_flag=True, help="Define the job as not triggerable")
@click.option("--retry-worse-than", "retry_worse_than",
              type=click.Choice([r.value for r in Result], case_sensitive=False),
              help="Retry a run once when it finishes at or worse than this result")
def job_define(name: str, params, disabled: bool, retry_worse_than: Optional[str]):
    """Define (or redefine) a job and its parameters.

    Example:
        triggerctl job define deploy -p env=staging -p version=latest
        triggerctl job define nightly --retry-worse-than UNSTABLE
    """
    definitions = [ParameterDefinition(name=key, default=value)
                   for key, value in parse_parameters("\n".join(params)).items()]
    threshold = Result.parse(retry_worse_than) if retry_worse_than else None
    get_storage().define_job(name, definitions, disabled=disabled, retry_threshold=threshold)
    click.echo(f"✓ Job {name} defined with {len(definitions)} parameter(s)")


@job.command("list")
def job_list():
    """List defined jobs."""
    jobs = get_storage().list_jobs()
    if not jobs:
        click.echo("No jobs defined")
        return

    click.echo(f"\n{'Name':<25} {'Next #':<8} {'Parameters':<40}")
    click.echo("-" * 73)
    for j in jobs:
        params = ", ".join(f"{p.name}={p.default}" for p in j.parameters)
        name = j.name + (" (disabled)" if j.disabled else "")
        click.echo(f"{name:<25} {j.next_build_number:<8} {params[:40]:<40}")
    click.echo()


@cli.command()
@click.argument("job_name")
@click.option("--params", "params", default="", help="key=value lines passed to the job")
@click.option("--params-file", type=click.Path(exists=True, dir_okay=False), help="Read parameters from a file")
@click.option("--parent", help="Run that triggers the job (JOB#NUMBER)")
@click.option("--wait-limit", default=15, help="Minutes to wait for the run to start")
@click.option("--var", "variable", help="Variable that receives the build number; without it the job is only queued")
@click.option("--condition", help="Only trigger if this is true/yes (prefix with ! to invert)")
def trigger(job_name: str, params: str, params_file: Optional[str], parent: Optional[str],
            wait_limit: int, variable: Optional[str], condition: Optional[str]):
    """Trigger a job, optionally waiting for it to start.

    Example:
        triggerctl trigger deploy --params 'env=prod' --parent pipeline#4 --var DEPLOY_BUILD
    """
    if params_file:
        params = Path(params_file).read_text(encoding="utf-8")
    storage = get_storage()
    step = TriggerJobStep(job_name, params, wait_limit, variable, condition)
    outcome = step.perform(step_context(storage, parent))

    if outcome.skipped:
        click.echo(f"- Not triggering {job_name}: condition is '{condition}'")
        return
    if not outcome.ok:
        fail(outcome.failures.get(job_name, f"{job_name} failed with result {outcome.result.value}"))
    if outcome.run_ids:
        click.echo(f"✓ Started {outcome.run_ids[0]}")
        for name, value in outcome.variables.items():
            click.echo(f"{name}={value}")
    else:
        click.echo(f"✓ Job {job_name} queued")


@cli.command()
@click.option("--jobs", "job_names", required=True, help="Job names, one per line")
@click.option("--params", "params", default="", help="key=value lines passed to every job")
@click.option("--parent", help="Run that triggers the jobs (JOB#NUMBER)")
def fanout(job_names: str, params: str, parent: Optional[str]):
    """Trigger several jobs and wait for all of them to finish.

    Example:
        triggerctl fanout --jobs $'unit\\nintegration' --params 'branch=main'
    """
    storage = get_storage()
    outcome = TriggerAndWaitStep(job_names, params).perform(step_context(storage, parent))

    for run_id in outcome.run_ids:
        click.echo(f"  {run_id}")
    try:
        outcome.raise_for_failures()
    except PartialFanOutFailure as e:
        for name, message in e.failures.items():
            click.echo(f"✗ {name}: {message}", err=True)
        fail(str(e))
    click.echo(f"✓ All jobs finished with result {outcome.result.value}")


@cli.command()
@click.argument("job_name")
@click.argument("build_number")
@click.option("--retries", default=0, help="Checks before giving up (0 = wait forever)")
@click.option("--delay", type=float, help="Seconds between checks")
@click.option("--copy", "files_to_copy", help="Artifact glob(s) to copy when finished")
@click.option("--dest", type=click.Path(file_okay=False), help="Directory the artifacts are copied into")
def wait(job_name: str, build_number: str, retries: int, delay: Optional[float],
         files_to_copy: Optional[str], dest: Optional[str]):
    """Wait for a run to finish.

    Example:
        triggerctl wait deploy 12 --copy '**/*.xml' --dest ./reports
    """
    storage = get_storage()
    step = WaitForBuildStep(job_name, build_number, retries, delay, files_to_copy)
    outcome = step.perform(step_context(storage, workspace=dest))
    if outcome.failures:
        fail(next(iter(outcome.failures.values())))
    click.echo(f"✓ {job_name}#{build_number} finished with result {outcome.result.value}")
    if not outcome.ok:
        sys.exit(1)


@cli.command()
@click.argument("run_id")
@click.option("--threshold", help="Retry runs at or worse than this result (default from config)")
def retry(run_id: str, threshold: Optional[str]):
    """Retry a finished run once if its result is bad enough.

    Example:
        triggerctl retry nightly#41 --threshold UNSTABLE
    """
    storage = get_storage()
    config = storage.get_config()
    policy = RetryPolicy(threshold=Result.parse(threshold) if threshold else config.retry_threshold)
    try:
        decision = RetryController(storage, config).maybe_retry(run_id, policy)
    except TriggerError as e:
        fail(str(e))

    if decision.retried:
        click.echo(f"✓ {run_id} retried as {decision.run_id}")
    else:
        retried_as = f" as {decision.run_id}" if decision.run_id else ""
        click.echo(f"- Not retrying {run_id}: {decision.reason}{retried_as}")


@cli.command()
@click.argument("run_id")
def downstream(run_id: str):
    """List the runs a run triggered."""
    storage = get_storage()
    tracker = DownstreamTracker(storage)
    ids = tracker.list(run_id)
    if not ids:
        click.echo(f"{run_id} has no downstream runs")
        return

    click.echo(f"\n{'Run':<30} {'State':<10} {'Result':<10}")
    click.echo("-" * 50)
    for child_id in ids:
        run = storage.get_run(child_id)
        if run is None:
            click.echo(f"{child_id:<30} {'(gone)':<10}")
            continue
        result = run.result.value if run.result else ""
        click.echo(f"{child_id:<30} {run.state.value:<10} {result:<10}")
    click.echo()


@cli.group()
def host():
    """Drive the local execution host"""
    pass


@host.command("start")
@click.argument("job_name")
@click.option("--params", "params", default="", help="key=value lines")
def host_start(job_name: str, params: str):
    """Start a run directly, e.g. a parent pipeline run."""
    storage = get_storage()
    try:
        definitions = storage.job_schema(job_name)
        values = {p.name: p.default for p in definitions}
        values.update({k: v for k, v in parse_parameters(params).items() if k in values})
        run = storage.start_run(job_name, values)
    except TriggerError as e:
        fail(str(e))
    click.echo(f"✓ Started {run.id}")


@host.command("start-next")
@click.option("--job", "job_name", help="Only start a queued run of this job")
def host_start_next(job_name: Optional[str]):
    """Start the oldest queued submission."""
    run = get_storage().start_next(job_name)
    if run is None:
        click.echo("Nothing queued")
        return
    click.echo(f"✓ Started {run.id} ({run.cause.describe()})")


@host.command("finish")
@click.argument("run_id")
@click.argument("result", type=click.Choice([r.value for r in Result], case_sensitive=False))
def host_finish(run_id: str, result: str):
    """Mark a run finished with a result.

    Jobs defined with --retry-worse-than are evaluated for their one retry
    right after.
    """
    storage = get_storage()
    try:
        run = storage.finish_run(run_id, Result(result.upper()))
    except TriggerError as e:
        fail(str(e))
    click.echo(f"✓ {run.id} finished: {run.result.value}")

    job = storage.get_job(run.job)
    if job is None or job.retry_threshold is None:
        return
    # queued work here only starts through start-next, so check once instead of waiting
    config = storage.get_config().model_copy(update={"start_max_wait": 0.0})
    controller = RetryController(storage, config)
    decision = controller.teardown(run, RetryPolicy(threshold=job.retry_threshold))
    if decision.retried:
        click.echo(f"✓ {run.id} retried as {decision.run_id}")
    elif decision.reason != ALREADY_RETRIED and (controller.retried_as(run) or "").startswith(QUEUED_PREFIX):
        click.echo(f"✓ {run.id} retry queued")
    else:
        click.echo(f"- Not retrying {run.id}: {decision.reason}")


@cli.command()
def status():
    """Show run statistics.

    Example:
        triggerctl status
    """
    storage = get_storage()
    stats = storage.get_stats()

    click.echo("\n" + "=" * 50)
    click.echo("TriggerCTL Status")
    click.echo("=" * 50)
    click.echo(f"Jobs:           {stats['jobs']}")
    click.echo(f"Queued:         {stats['queued']}")
    click.echo(f"Total Runs:     {stats['total']}")
    click.echo(f"  Running:      {stats['running']}")
    click.echo(f"  Finished:     {stats['finished']}")
    for result in Result:
        click.echo(f"    {result.value.title() + ':':<12}{stats[result.value]}")
    click.echo("=" * 50 + "\n")


@cli.command()
@click.option("--job", "job_name", help="Only runs of this job")
@click.option("--limit", default=20, help="Maximum runs to display")
def runs(job_name: Optional[str], limit: int):
    """List runs, newest first."""
    rows = list(reversed(get_storage().list_runs(job_name)))[:limit]
    if not rows:
        click.echo("No runs found")
        return

    click.echo(f"\n{'Run':<25} {'State':<10} {'Result':<10} {'Cause':<35}")
    click.echo("-" * 80)
    for run in rows:
        result = run.result.value if run.result else ""
        click.echo(f"{run.id:<25} {run.state.value:<10} {result:<10} {run.cause.describe()[:35]:<35}")
    click.echo()


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command()
def show():
    """Show current configuration.

    Example:
        triggerctl config show
    """
    cfg = get_storage().get_config()

    click.echo("\nCurrent Configuration:")
    for name, value in cfg.model_dump(mode="json").items():
        click.echo(f"  {name.replace('_', '-') + ':':<22}{value}")
    click.echo()


@config.command("set")
@click.argument("key")
@click.argument("value")
def set_value(key: str, value: str):
    """Set a configuration value.

    Example:
        triggerctl config set submit-attempts 3
        triggerctl config set retry-threshold UNSTABLE
    """
    storage = get_storage()
    cfg = storage.get_config()
    field = key.replace("-", "_")
    if field not in Config.model_fields:
        fail(f"Unknown config key: {key}")

    try:
        updated = Config(**{**cfg.model_dump(), field: value})
    except ValidationError as e:
        fail(f"Invalid value: {e.errors()[0]['msg']}")
    storage.set_config(updated)
    click.echo(f"✓ Configuration updated: {key} = {value}")


if __name__ == "__main__":
    cli()
