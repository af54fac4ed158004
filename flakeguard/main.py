from __future__ import annotations

import argparse
import asyncio
import logging
import os
import shutil
import sys

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from flakeguard.browser.devtools_driver import DevToolsDriver
from flakeguard.config import Settings, load_settings
from flakeguard.errors import DriverError, ScenarioError
from flakeguard.executor.retry import RetryPolicy
from flakeguard.mcp_client.session import McpSession
from flakeguard.mcp_client.transport import StdioTransport
from flakeguard.scenarios import ScenarioOutcome, ScenarioSuite, load_scenarios, run_scenario

console = Console()
logger = logging.getLogger("flakeguard")

SESSION_TARGET_FLAGS = {"-u", "--browserUrl", "-w", "--wsEndpoint", "--userDataDir"}
EXECUTABLE_FLAGS = {"-e", "--executablePath"}


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run flake-resistant UI scenarios through Chrome DevTools MCP")
    parser.add_argument("--scenarios", required=True, help="Path to a JSON scenario document")
    parser.add_argument("--only", action="append", metavar="NAME", help="Run only the named scenario (repeatable)")
    parser.add_argument("--url", help="Page to open before running, overrides the document's url")
    parser.add_argument("--env-file", help="Load settings from this .env file")
    return parser.parse_args(argv)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=settings.verbose, show_path=False)],
    )


def server_args(settings: Settings) -> list[str]:
    args = list(settings.server_args)

    has_session_target = any(
        token in SESSION_TARGET_FLAGS or any(token.startswith(f"{flag}=") for flag in SESSION_TARGET_FLAGS)
        for token in args
    )
    if "--isolated" not in args and not has_session_target:
        args.append("--isolated")

    has_executable = any(
        token in EXECUTABLE_FLAGS or token.startswith("--executablePath=") for token in args
    )
    if not has_executable and settings.chrome_path and os.path.exists(settings.chrome_path):
        args.extend(["--executablePath", settings.chrome_path])
    return args


def resolve_command(command: str) -> str:
    candidate = command.strip().strip('"')
    resolved = shutil.which(candidate)
    if resolved:
        return resolved
    if os.name == "nt" and not candidate.lower().endswith(".cmd"):
        resolved_cmd = shutil.which(f"{candidate}.cmd")
        if resolved_cmd:
            return resolved_cmd
    raise DriverError(
        f"MCP server command not found: {command}. Ensure Node.js/npx is installed and available in PATH."
    )


async def run_suite(
    suite: ScenarioSuite,
    settings: Settings,
    names: list[str] | None = None,
    url: str | None = None,
) -> list[ScenarioOutcome]:
    scenarios = suite.select(names)
    policy = RetryPolicy.from_settings(settings)
    transport = StdioTransport(resolve_command(settings.server_command), server_args(settings))
    session = McpSession(transport, timeout_seconds=settings.step_timeout)

    outcomes: list[ScenarioOutcome] = []
    async with session:
        driver = DevToolsDriver(
            session,
            poll_interval=settings.poll_interval,
            busy_selector=settings.busy_selector,
        )
        target = url or suite.url
        if target:
            await driver.open_url(target)
        for scenario in scenarios:
            logger.info(f"Running scenario {scenario.name!r}")
            outcomes.append(await run_scenario(scenario, driver, policy))
    return outcomes


def render(outcomes: list[ScenarioOutcome]) -> None:
    table = Table(title="flakeguard")
    table.add_column("Scenario")
    table.add_column("Result")
    table.add_column("Attempts", justify="right")
    table.add_column("Details")
    for outcome in outcomes:
        attempts = ", ".join(str(result.attempts) for result in outcome.steps) or "-"
        status = "[green]PASSED[/green]" if outcome.passed else "[red]FAILED[/red]"
        table.add_row(outcome.scenario.name, status, attempts, outcome.failure_reason() or "")
    console.print(table)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = load_settings(args.env_file)
    configure_logging(settings)

    try:
        suite = load_scenarios(args.scenarios)
    except (ScenarioError, OSError) as exc:
        console.print(f"[red]Invalid scenarios:[/red] {exc}")
        return 2

    try:
        outcomes = asyncio.run(run_suite(suite, settings, names=args.only, url=args.url))
    except ScenarioError as exc:
        console.print(f"[red]Invalid scenarios:[/red] {exc}")
        return 2
    except DriverError as exc:
        console.print(f"[red]Browser session failed:[/red] {exc}")
        return 2

    render(outcomes)
    return 0 if all(outcome.passed for outcome in outcomes) else 1


if __name__ == "__main__":
    sys.exit(main())
