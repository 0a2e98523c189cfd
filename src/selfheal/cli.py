"""
Command-line interface for selfheal

Provides CLI commands for:
- Running actions for detected patterns: selfheal run-actions --actions-file actions.yml --patterns-file patterns.json
- Listing plugins: selfheal detectors / selfheal executors
- Inspecting configuration: selfheal config --show [--section safety]
"""

import asyncio
import json
from typing import Optional

import click
import yaml
from pydantic import BaseModel

from . import __version__
from .config import SelfHealConfig, get_config
from .detection import detector_registry
from .engine import SelfHealingEngine
from .models import AutomatedAction, DetectedPattern, ExecutionOptions, Person
from .observability import configure_logging
from .storage import MemoryStorage

STATUS_MARKERS = {
    "completed": "✅",
    "failed": "❌",
    "pending_approval": "⏳",
}


@click.group()
@click.version_option(version=__version__, prog_name="selfheal")
@click.option("--log-level", default=None, help="Override the configured log level")
def cli(log_level: Optional[str]):
    """selfheal - pattern-driven self-healing automation"""
    app_config = get_config()
    configure_logging(app_config.telemetry, log_level or app_config.log_level)


def _load_actions_file(path: str) -> tuple[list[dict], list[dict]]:
    """Actions YAML is either a list of actions or {actions: [...], persons: [...]}"""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, list):
        return data, []
    return data.get("actions", []), data.get("persons", [])


async def _run_actions(
    organization: str,
    actions: list[AutomatedAction],
    persons: list[Person],
    patterns: list[DetectedPattern],
    options: ExecutionOptions,
):
    engine = SelfHealingEngine(config=get_config(), storage=MemoryStorage())
    try:
        for action in actions:
            await engine.storage.save_action(action)
        for person in persons:
            await engine.storage.save_person(person)
        return await engine.executor.execute_actions_for_patterns(
            organization, patterns, options, matcher=engine.matcher
        )
    finally:
        await engine.close()


@cli.command()
@click.option(
    "--actions-file",
    type=click.Path(exists=True),
    required=True,
    help="YAML file containing automated actions (and optionally persons)",
)
@click.option(
    "--patterns-file",
    type=click.Path(exists=True),
    required=True,
    help="JSON file containing detected patterns",
)
@click.option("--organization", required=True, help="Organization to act for")
@click.option("--dry-run", is_flag=True, help="Validate and record without side effects")
@click.option("--bypass-approval", is_flag=True, help="Run actions that require approval")
def run_actions(
    actions_file: str,
    patterns_file: str,
    organization: str,
    dry_run: bool,
    bypass_approval: bool,
):
    """Match detected patterns against actions and execute them"""
    try:
        action_data, person_data = _load_actions_file(actions_file)
        with open(patterns_file, encoding="utf-8") as f:
            pattern_data = json.load(f)

        actions = [
            AutomatedAction(**{"organization_id": organization, **item})
            for item in action_data
        ]
        persons = [
            Person(**{"organization_id": organization, **item}) for item in person_data
        ]
        patterns = [DetectedPattern(**item) for item in pattern_data]
        options = ExecutionOptions(dry_run=dry_run, bypass_approval=bypass_approval)

        executions = asyncio.run(
            _run_actions(organization, actions, persons, patterns, options)
        )

        click.echo(f"⚙️  Executions for {organization}")
        click.echo("=" * 50)
        if not executions:
            click.echo("No actions matched the given patterns")
        for execution in executions:
            status = execution.status.value
            line = f"{STATUS_MARKERS.get(status, '-')} {execution.id} action={execution.action_id} status={status}"
            if execution.error_message:
                line += f" error={execution.error_message}"
            click.echo(line)

    except Exception as e:
        click.echo(f"❌ Running actions failed: {e}", err=True)


@cli.command()
def detectors():
    """List registered pattern detectors"""
    types = detector_registry.get_registered_types()
    if not types:
        click.echo("No pattern detectors registered")
        return
    click.echo("🔎 Registered pattern detectors")
    for pattern_type in types:
        click.echo(f"  - {pattern_type}")


@cli.command()
def executors():
    """List registered action executors"""
    engine = SelfHealingEngine(config=get_config(), storage=MemoryStorage())
    click.echo("🛠️  Registered action executors")
    for action_type in engine.executors.get_registered_types():
        rollback = " (rollback)" if engine.executors.can_rollback(action_type) else ""
        click.echo(f"  - {action_type}{rollback}")


# Nested settings models of SelfHealConfig, in declaration order
CONFIG_SECTIONS = [
    name
    for name, field in SelfHealConfig.model_fields.items()
    if isinstance(field.annotation, type) and issubclass(field.annotation, BaseModel)
]


def _section_summary(section: BaseModel) -> str:
    doc = (type(section).__doc__ or "").strip()
    return doc.splitlines()[0] if doc else ""


@cli.command()
@click.option("--show", is_flag=True, help="Print configuration values")
@click.option(
    "--section",
    type=click.Choice(CONFIG_SECTIONS),
    default=None,
    help="Only print one configuration section",
)
@click.option("--format", type=click.Choice(["yaml", "json"]), default="yaml", help="Output format")
def config(show: bool, section: Optional[str], format: str):
    """Inspect the effective configuration (selfheal.yml plus SELFHEAL_* variables)"""
    try:
        app_config = get_config()
    except Exception as e:
        click.echo(f"❌ Failed to load configuration: {e}", err=True)
        return

    if not show:
        click.echo("🔧 selfheal configuration sections")
        for name in CONFIG_SECTIONS:
            summary = _section_summary(getattr(app_config, name))
            click.echo(f"  {name:<10} {summary} (SELFHEAL_{name.upper()}__*)")
        click.echo(f"  log_level  {app_config.log_level} (SELFHEAL_LOG_LEVEL)")
        click.echo("Use --show [--section NAME] to print values")
        return

    data = app_config.model_dump(mode="json")
    if data["storage"].get("password"):
        data["storage"]["password"] = "***"
    if section:
        data = {section: data[section]}
        click.echo(f"🔧 selfheal {section} settings")
    else:
        click.echo("🔧 Current selfheal Configuration")
    click.echo("=" * 40)

    if format == "json":
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.dump(data, default_flow_style=False, indent=2, sort_keys=False))


def main():
    """Entry point for the CLI"""
    cli()


if __name__ == "__main__":
    main()
