"""
TermHarness CLI

Click-based command-line interface for running scenarios against a terminal
application and for serving the mock chat-completion service on its own.
"""

import json
import shlex
import sys
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from termharness import __version__
from termharness.config import load_config
from termharness.errors import ConfigError, HarnessError, ScenarioValidationError
from termharness.harness import HarnessConfig, TestHarness
from termharness.logging import (
    EXIT_CONFIG_ERROR,
    EXIT_OK,
    EXIT_RUNTIME_ERROR,
    EXIT_SCENARIO_FAILED,
    get_logger,
    init_cli_logging,
    json_logging_from_env,
)
from termharness.models import ScenarioResult
from termharness.recovery import RecoveryOptions, RetryRecoveryEngine
from termharness.scenario import ScenarioExecutor, load_scenario_from_file

logger = get_logger(__name__)
console = Console()


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def cli(ctx, verbose, json_output):
    """TermHarness - end-to-end tests for terminal chat applications."""
    ctx.ensure_object(dict)
    ctx.obj["VERBOSE"] = verbose
    ctx.obj["JSON"] = json_output
    init_cli_logging(level="DEBUG" if verbose else None, json_output=json_logging_from_env())


@cli.command()
def version():
    """Show version information."""
    click.echo(f"TermHarness v{__version__}")


@cli.command()
@click.argument("scenario_path", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def validate(ctx, scenario_path):
    """Validate a scenario document without running it."""
    try:
        scenario = load_scenario_from_file(scenario_path)
    except ScenarioValidationError as e:
        if ctx.obj.get("JSON"):
            click.echo(json.dumps({"valid": False, "error": str(e)}))
        else:
            console.print(f"[red]✗ Invalid scenario: {e}[/red]")
        sys.exit(EXIT_CONFIG_ERROR)

    if ctx.obj.get("JSON"):
        click.echo(json.dumps({
            "valid": True,
            "name": scenario.name,
            "steps": len(scenario.steps),
            "assertions": len(scenario.assertions),
        }))
    else:
        console.print(f"[green]✓ {scenario.name}[/green]")
        console.print(f"  Steps: {len(scenario.steps)}  Assertions: {len(scenario.assertions)}")


@cli.command()
@click.argument("scenario_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--app", "app_command", help="Command line of the application under test")
@click.option("--pty/--no-pty", "use_pty", default=None, help="Run the application in a pseudo-terminal")
@click.option("--retry", is_flag=True, help="Retry failed steps before failing the scenario")
@click.option("--max-retries", type=int, default=None, help="Attempts per retried operation")
@click.pass_context
def run(ctx, scenario_path, app_command, use_pty, retry, max_retries):
    """Run one scenario and report the result."""
    try:
        config = load_config()
    except ConfigError as e:
        click.echo(f"✗ Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        scenario = load_scenario_from_file(scenario_path)
    except ScenarioValidationError as e:
        click.echo(f"✗ Invalid scenario: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    harness_config = HarnessConfig.from_config(config)
    if app_command:
        harness_config.app_command = shlex.split(app_command)
    if use_pty is not None:
        harness_config.use_pty = use_pty

    engine = RetryRecoveryEngine(
        max_retries=config.max_retries,
        base_delay=config.retry_base_delay,
        max_delay=config.retry_max_delay,
        cleanup_timeout=config.cleanup_timeout,
    )
    options = RecoveryOptions(retry_operation=retry, max_retries=max_retries)
    harness = TestHarness(harness_config)

    try:
        executor = ScenarioExecutor(harness, engine)
        result = executor.execute_scenario(scenario, options)
    except HarnessError as e:
        logger.exception("scenario_run_failed")
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(EXIT_RUNTIME_ERROR)
    finally:
        try:
            harness.cleanup()
        except HarnessError as e:
            logger.warning("harness_cleanup_failed", extra={"error": str(e)})

    if ctx.obj.get("JSON"):
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        _print_result(result)
    sys.exit(EXIT_OK if result.success else EXIT_SCENARIO_FAILED)


def _print_result(result: ScenarioResult) -> None:
    table = Table(title=f"Scenario: {result.scenario_name}")
    table.add_column("#", justify="right")
    table.add_column("Kind")
    table.add_column("Detail")
    table.add_column("Status")
    table.add_column("Duration", justify="right")

    for step in result.step_results:
        status = "[green]pass[/green]" if step.success else ("[yellow]skip[/yellow]" if step.optional else "[red]fail[/red]")
        table.add_row(str(step.step_index + 1), f"step:{step.step_type}", step.action.strip(), status, f"{step.duration:.2f}s")
    for assertion in result.assertion_results:
        status = "[green]pass[/green]" if assertion.success else "[red]fail[/red]"
        detail = f"{assertion.target} {assertion.condition} {assertion.expected!r}"
        table.add_row(
            str(assertion.assertion_index + 1), f"assert:{assertion.type}", detail, status, f"{assertion.duration:.2f}s"
        )
    console.print(table)

    if result.success:
        console.print(f"[green]✓ Passed in {result.duration:.2f}s[/green]")
    else:
        console.print(f"[red]✗ Failed: {result.error}[/red]")
        if result.error_report is not None:
            for suggestion in result.error_report.suggestions:
                console.print(f"  [dim]- {suggestion}[/dim]")
    if not result.cleanup_completed:
        console.print("[yellow]⚠ Cleanup did not complete[/yellow]")


@cli.command("mock-server")
@click.option("--host", default=None, help="Bind address (default from TERMHARNESS_MOCK_HOST)")
@click.option("--port", type=int, default=None, help="Port (default from TERMHARNESS_MOCK_PORT, 0 is not allowed here)")
@click.option("--delay-ms", type=int, default=None, help="Default response delay in milliseconds")
def mock_server(host: Optional[str], port: Optional[int], delay_ms: Optional[int]):
    """Serve the mock chat-completion API in the foreground."""
    import uvicorn

    from termharness.mock_server import MockLLMService, create_app

    try:
        config = load_config()
    except ConfigError as e:
        click.echo(f"✗ Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    bind_host = host or config.mock_host
    bind_port = port if port is not None else (config.mock_port or 3001)
    service = MockLLMService(
        default_delay_ms=config.mock_delay_ms if delay_ms is None else delay_ms,
        enable_logging=True,
    )
    console.print(f"[green]Mock LLM server on http://{bind_host}:{bind_port}/v1[/green]")
    uvicorn.run(create_app(service), host=bind_host, port=bind_port, log_config=None)


def main():
    """CLI entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
