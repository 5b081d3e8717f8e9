"""
Command-line interface for incidentops

Provides CLI commands for:
- Handling alerts: incidentops handle-alert --alert-file alert.json
- Classifying actions: incidentops classify --action-file action.json --severity P1
- Sweeping overdue incidents: incidentops escalations
- Managing configuration: incidentops config --show
"""

import asyncio
import json

import click
import yaml

from . import __version__
from .config import IncidentOpsConfig, get_config, set_config
from .models import Incident, IncidentAlert, RecommendedAction
from .observability import (
    ObservabilityConfig,
    initialize_observability,
    shutdown_observability,
)
from .orchestrator import create_orchestrator
from .risk import RiskClassifier


@click.group()
@click.version_option(version=__version__, prog_name="incidentops")
@click.option(
    "--config-file",
    type=click.Path(),
    default="incidentops.yml",
    help="YAML configuration file",
)
@click.pass_context
def cli(ctx: click.Context, config_file: str):
    """incidentops - AI-assisted incident response orchestration"""
    config = IncidentOpsConfig.load_from_file(config_file)
    set_config(config)
    initialize_observability(ObservabilityConfig.from_settings(config))
    ctx.call_on_close(shutdown_observability)


@cli.command()
@click.option(
    "--alert-file",
    type=click.Path(exists=True),
    required=True,
    help="JSON file containing alert data",
)
def handle_alert(alert_file: str):
    """Open an incident for an alert and drive it to resolution or escalation"""
    try:
        with open(alert_file) as f:
            alert = IncidentAlert.model_validate(json.load(f))

        result = asyncio.run(_handle(alert))
    except Exception as e:
        click.echo(f"❌ Alert handling failed: {e}", err=True)
        raise SystemExit(1) from e

    incident = result.incident
    click.echo(f"🚨 Incident {incident.id} ({incident.severity.value})")
    click.echo("=" * 50)
    click.echo(f"Title: {incident.title}")
    if result.escalated:
        click.echo(f"❌ Status: {incident.status.value}")
    else:
        click.echo(f"Status: {incident.status.value}")

    if result.rca:
        click.echo(f"Root Cause: {result.rca.root_cause}")
        click.echo(f"Confidence: {result.rca.confidence_score:.2f}")
    if result.remediation:
        click.echo(f"\n🎯 Executed: {', '.join(result.remediation.executed_actions) or 'none'}")
        click.echo(f"Failed: {', '.join(result.remediation.failed_actions) or 'none'}")
        click.echo(
            f"Pending approval: {', '.join(result.remediation.pending_approval) or 'none'}"
        )
    if result.error:
        click.echo(f"\nError: {result.error}")


async def _handle(alert: IncidentAlert):
    orchestrator = create_orchestrator(get_config())
    try:
        return await orchestrator.handle_alert(alert)
    finally:
        await orchestrator.store.close()


@cli.command()
@click.option(
    "--action-file",
    type=click.Path(exists=True),
    required=True,
    help="JSON file containing a recommended action",
)
@click.option(
    "--severity",
    type=click.Choice(["P0", "P1", "P2", "P3"]),
    default="P2",
    help="Incident severity to classify against",
)
@click.option("--restart-attempts", type=int, default=0, help="Restarts already performed")
def classify(action_file: str, severity: str, restart_attempts: int):
    """Show the risk assessment for a recommended action"""
    with open(action_file) as f:
        action = RecommendedAction.model_validate(json.load(f))

    settings = get_config().remediation
    classifier = RiskClassifier(
        max_restart_attempts=settings.max_restart_attempts,
        max_autonomous_replicas=settings.max_autonomous_replicas,
    )
    incident = Incident(
        id="cli-classify",
        title=action.description or action.action_type,
        severity=severity,
        source="cli",
        affected_services={action.target} if action.target else set(),
        metadata={"restart_attempts": restart_attempts},
    )
    assessment = classifier.assess(action, incident)

    click.echo(f"Action: {action.action_type} on {action.target or 'unspecified target'}")
    click.echo(f"Risk Level: {assessment.risk_level.value}")
    click.echo(f"Requires Approval: {assessment.requires_approval}")
    if assessment.risk_factors:
        click.echo("\nRisk Factors:")
        for factor in assessment.risk_factors:
            click.echo(f"  - {factor}")
    if assessment.mitigation_steps:
        click.echo("\nMitigation Steps:")
        for step in assessment.mitigation_steps:
            click.echo(f"  - {step}")


@cli.command()
def escalations():
    """Escalate open incidents past their idle deadline"""

    async def sweep():
        orchestrator = create_orchestrator(get_config())
        try:
            return await orchestrator.escalate_overdue()
        finally:
            await orchestrator.store.close()

    try:
        escalated = asyncio.run(sweep())
    except Exception as e:
        click.echo(f"❌ Escalation sweep failed: {e}", err=True)
        raise SystemExit(1) from e

    if not escalated:
        click.echo("No incidents require escalation")
        return
    click.echo(f"Escalated {len(escalated)} incidents:")
    for incident in escalated:
        click.echo(f"  - {incident.id} ({incident.severity.value}): {incident.title}")


@cli.command()
@click.option("--show", is_flag=True, help="Show current configuration")
@click.option("--format", type=click.Choice(["yaml", "json"]), default="yaml", help="Output format")
def config(show: bool, format: str):
    """Manage incidentops configuration"""
    if show:
        try:
            config_dict = get_config().model_dump(mode="json")

            click.echo("🔧 Current incidentops Configuration")
            click.echo("=" * 40)

            if format == "yaml":
                click.echo(yaml.dump(config_dict, default_flow_style=False, indent=2))
            elif format == "json":
                click.echo(json.dumps(config_dict, indent=2))

        except Exception as e:
            click.echo(f"❌ Failed to load configuration: {e}", err=True)
    else:
        click.echo("Use --show to display current configuration")
        click.echo("Available options:")
        click.echo("  --show          Show current configuration")
        click.echo("  --format yaml   Output in YAML format (default)")
        click.echo("  --format json   Output in JSON format")


def main():
    """Entry point for the CLI"""
    cli()


if __name__ == "__main__":
    main()
