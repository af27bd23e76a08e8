"""
CLI interface for opflow.

Provides commands to discover, inspect, compile and run jobs.

Jobs are Python scripts in the configured jobs_dir (see opflow.compiler for
the script format). A job can also be given as a path to a script.
"""

import json
import time
from pathlib import Path
from typing import Optional

import click

from opflow import __version__
from opflow.config import ConfigError, OpflowConfig


@click.group()
@click.version_option(version=__version__, prog_name="opflow")
@click.pass_context
def main(ctx):
    """
    opflow - Sequential stateful operation runner.

    Run job scripts whose steps pass State from one operation to the next.
    """
    from opflow.config import load_config

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config()
    except FileNotFoundError:
        # No config yet: run with defaults
        ctx.obj["config"] = OpflowConfig()
    except ConfigError as e:
        ctx.obj["config_error"] = str(e)


def _get_config(ctx) -> OpflowConfig:
    if "config" not in ctx.obj:
        click.echo(f"✗ Invalid config: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Fix config.yaml or run 'opflow init --force'.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _parse_adaptor_option(value: str) -> tuple[str, str]:
    alias, sep, module_path = value.partition("=")
    if not sep or not alias or not module_path:
        raise click.BadParameter(f"expected alias=module.path, got {value!r}", param_hint="--adaptor")
    return alias.strip(), module_path.strip()


def _compile(config: OpflowConfig, job: str, adaptor_options: tuple[str, ...] = ()):
    """Compile a job given as a script path or a job id."""
    from opflow.adaptors import AdaptorRegistry
    from opflow.compiler import Compiler
    from opflow.registry import JobRegistry

    adaptors = AdaptorRegistry.from_config(config)
    for option in adaptor_options:
        alias, module_path = _parse_adaptor_option(option)
        adaptors.load(module_path, alias=alias)

    registry = JobRegistry(config.jobs_path)
    compiler = Compiler(adaptors, registry=registry)

    path = Path(job)
    if path.suffix == ".py" and path.is_file():
        return compiler.compile_file(path)
    return compiler.compile_job(job)


@main.command("run")
@click.argument("job")
@click.option("--state", "state_file", type=click.Path(exists=True, dir_okay=False), help="Initial State (JSON or YAML)")
@click.option("--config-data", "config_file", type=click.Path(exists=True, dir_okay=False), help="File injected as State['configuration']")
@click.option("--output", "output_file", type=click.Path(dir_okay=False), help="Write the final State here instead of stdout")
@click.option("--adaptor", "adaptor_options", multiple=True, help="Extra adaptor as alias=module.path (repeatable)")
@click.option("--no-strict", is_flag=True, help="Keep the previous State when a step returns a non-mapping")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False), help="Override the configured log level")
@click.option("--log-format", type=click.Choice(["pretty", "structured"]), help="Override the configured log format")
@click.pass_context
def run(
    ctx,
    job: str,
    state_file: Optional[str],
    config_file: Optional[str],
    output_file: Optional[str],
    adaptor_options: tuple[str, ...],
    no_strict: bool,
    log_level: Optional[str],
    log_format: Optional[str],
):
    """
    Run a job.

    JOB is a job ID (script name without .py in jobs_dir) or a path to a
    job script.

    Examples:

        opflow run sync_patients

        opflow run jobs/sync_patients.py --config-data creds.json

        opflow run sync_patients --state state.json --output final.json
    """
    from opflow.errors import OpflowError
    from opflow.executor import Engine
    from opflow.state import dump_state, load_state, to_output
    from opflow.utils import (
        format_duration,
        print_error,
        print_success,
        sanitize_error_message,
        setup_logging,
    )

    config = _get_config(ctx)
    setup_logging(
        log_level=log_level or config.log_level,
        log_format=log_format or config.log_format,
        log_file=config.log_path,
    )

    try:
        pipeline = _compile(config, job, adaptor_options)
        state = load_state(state_file) if state_file else {}
        if config_file:
            state["configuration"] = load_state(config_file)
    except (OpflowError, ImportError, OSError, ValueError) as e:
        print_error(f"{job}: {e}")
        raise SystemExit(1)

    engine = Engine(strict_state=config.strict_state and not no_strict)
    started = time.monotonic()
    try:
        result = engine.execute(pipeline, state)
    except OpflowError as e:
        print_error(f"{pipeline.name} aborted: {e}")
        raise SystemExit(1)
    elapsed = format_duration(time.monotonic() - started)

    if not result.success:
        error = result.error
        location = error.step
        print_error(
            f"{pipeline.name} failed at step '{location}': "
            f"{type(error.cause).__name__}: {sanitize_error_message(error.cause)}"
        )
        raise SystemExit(1)

    if output_file:
        dump_state(result.state, output_file, redact=config.redact_keys)
        print_success(f"{pipeline.name} completed in {elapsed}, State written to {output_file}")
    else:
        click.echo(json.dumps(to_output(result.state, config.redact_keys), indent=2))
        print_success(f"{pipeline.name} completed in {elapsed}")


@main.command("compile")
@click.argument("job")
@click.option("--adaptor", "adaptor_options", multiple=True, help="Extra adaptor as alias=module.path (repeatable)")
@click.pass_context
def compile_job(ctx, job: str, adaptor_options: tuple[str, ...]):
    """Validate a job and list its steps."""
    from opflow.errors import OpflowError
    from opflow.utils import print_error, print_success

    config = _get_config(ctx)
    try:
        pipeline = _compile(config, job, adaptor_options)
    except (OpflowError, ImportError, OSError) as e:
        print_error(f"{job}: {e}")
        raise SystemExit(1)

    for index, op in enumerate(pipeline, start=1):
        click.echo(f"{index:>3}. {op.summary()}")
    print_success(f"{pipeline.name}: {len(pipeline)} steps")


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize opflow configuration."""
    from opflow.config import get_opflow_home
    import yaml

    home = get_opflow_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = {
        "jobs_dir": str(home / "jobs"),
        "adaptors": {},
        "strict_state": True,
        "redact_keys": ["configuration"],
        "log_level": "INFO",
        "log_format": "pretty",
        "log_file": None,
        "env_file": str(home / ".env"),
    }
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    (home / "jobs").mkdir(exist_ok=True)

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# API_TOKEN=...\n")

    click.echo(f"Initialized opflow config at {cfg_path}")


@main.group("jobs")
def jobs_group():
    """Manage and inspect jobs."""
    pass


@jobs_group.command("list")
@click.pass_context
def list_jobs(ctx):
    """List available jobs."""
    from opflow.registry import JobRegistry

    config = _get_config(ctx)
    registry = JobRegistry(config.jobs_path)
    job_ids = registry.list_jobs()

    if not job_ids:
        click.echo(f"No jobs found in {registry.jobs_dir}")
        return

    for job_id in job_ids:
        click.echo(f"  {job_id}")


@jobs_group.command("show")
@click.argument("job")
@click.pass_context
def show_job(ctx, job: str):
    """Show a job script."""
    from opflow.registry import JobNotFoundError, JobRegistry, JobValidationError

    config = _get_config(ctx)
    registry = JobRegistry(config.jobs_path)
    try:
        job_def = registry.load(job)
    except JobNotFoundError:
        click.echo(f"✗ Unknown job: {job}", err=True)
        raise SystemExit(1)
    except JobValidationError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Job: {job_def.job_id}")
    click.echo(f"Path: {job_def.path}")
    click.echo(f"SHA256: {registry.compute_hash(job_def)}")
    click.echo()
    click.echo(job_def.source)


if __name__ == "__main__":
    main()
