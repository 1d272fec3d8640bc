"""
CLI entry point for Gatehouse.

Operator tooling around the decision core. The gateway itself runs as a
library inside an adapter; these commands help author policies and review
what the gateway decided.

Commands:
    check       Validate policy files and list what they contain
    config      Validate a gateway configuration file and its policies
    evaluate    Dry-run one action for an identity against policy files
    audit       List recorded decisions from the audit log

Architecture Note:
    The CLI only parses arguments and delegates to the policy, store and
    report modules, so everything it does is also available in-process.
"""

import json
import logging
import re
import traceback
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from gatehouse import __version__
from gatehouse.config import load_config
from gatehouse.errors import ConfigError, GatehouseError, PolicyLoadError
from gatehouse.policy import DecisionEngine, PolicyRegistry
from gatehouse.report import generate_console_report, generate_json_report
from gatehouse.schema import (
    DelegationChain,
    Effect,
    Policy,
    load_identity,
    load_policies,
)

app = typer.Typer(
    name="gatehouse",
    help="Govern and audit the actions AI agents attempt.",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()

_RELATIVE_RE = re.compile(r"^(\d+)([mhdw])$")
_RELATIVE_UNITS = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]gatehouse[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str,
        typer.Option(
            "--log-level",
            help="Logging level (DEBUG, INFO, WARNING, ERROR).",
        ),
    ] = "WARNING",
) -> None:
    """
    Gatehouse - Policy decisions and audit for AI agent actions.

    Validate policies, dry-run decisions and review the audit log.
    """
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def parse_time(value: str | None, now: datetime | None = None) -> datetime | None:
    """
    Parse a time bound: ISO 8601, or a relative span back from now
    such as ``30m``, ``12h``, ``7d`` or ``2w``.

    Naive ISO times are taken as UTC.
    """
    if value is None:
        return None
    match = _RELATIVE_RE.match(value.strip())
    if match:
        amount, unit = match.groups()
        now = now or datetime.now(UTC)
        return now - timedelta(**{_RELATIVE_UNITS[unit]: int(amount)})
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise typer.BadParameter(f"not an ISO time or relative span: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _parse_json_option(value: str | None, name: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"{name} must be JSON: {e}") from e


def _load_policy_files(paths: list[Path]) -> list[Policy]:
    policies: list[Policy] = []
    for path in paths:
        policies.extend(load_policies(path))
    return policies


@app.command()
def check(
    paths: Annotated[
        list[Path],
        typer.Argument(
            help="Policy YAML files or directories.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """
    Validate policy files.

    Loads every policy the way the gateway would, including action pattern
    validation and duplicate-name detection, and lists the result.

    Example:
        $ gatehouse check ./policies
    """
    try:
        policies = _load_policy_files(paths)
        PolicyRegistry(policies)
    except PolicyLoadError as e:
        if json_output:
            _output_json_error("policy_load_error", e.message, errors=e.errors)
        else:
            console.print(f"[red]✗ {e.message}[/red]")
        raise typer.Exit(code=1)

    if json_output:
        print(json.dumps(
            {
                "valid": True,
                "policies": [
                    {
                        "name": p.name,
                        "version": p.version,
                        "rules": len(p.rules),
                        "default_effect": p.default_effect.value,
                        "delegation": p.delegation is not None,
                    }
                    for p in policies
                ],
            },
            indent=2,
        ))
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", style="dim", width=3)
    table.add_column("Policy", style="cyan")
    table.add_column("Version")
    table.add_column("Rules", justify="right")
    table.add_column("Default")
    table.add_column("Applies to")
    for i, policy in enumerate(policies, start=1):
        table.add_row(
            str(i),
            policy.name,
            policy.version,
            str(len(policy.rules)),
            _effect_markup(policy.default_effect),
            _describe_applies_to(policy),
        )
    console.print(f"[green]✓[/green] {len(policies)} policies loaded")
    console.print(table)


def _effect_markup(effect: Effect) -> str:
    if effect == Effect.ALLOW:
        return "[green]allow[/green]"
    return "[yellow]deny[/yellow]"


def _describe_applies_to(policy: Policy) -> str:
    applies = policy.applies_to
    if applies.is_unfiltered:
        return "[dim]everyone[/dim]"
    parts = []
    if applies.trust_tiers is not None:
        parts.append("tiers=" + ",".join(t.value for t in applies.trust_tiers))
    if applies.tags is not None:
        parts.append("tags=" + ",".join(applies.tags))
    if applies.agent_ids is not None:
        parts.append("agents=" + ",".join(applies.agent_ids))
    if applies.org_ids is not None:
        parts.append("orgs=" + ",".join(applies.org_ids))
    return " ".join(parts)


@app.command("config")
def show_config(
    path: Annotated[
        Path,
        typer.Argument(
            help="Gateway configuration YAML.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the effective settings as JSON."),
    ] = False,
) -> None:
    """
    Validate a gateway configuration file.

    Loads the configuration and every policy it points at, then prints the
    effective settings. The file's log_level replaces --log-level for the
    rest of the run. Exits 1 if the configuration or a policy is invalid.

    Example:
        $ gatehouse config gatehouse.yaml
    """
    try:
        config = load_config(path)
        logging.getLogger().setLevel(config.log_level.upper())
        policies = _load_policy_files(config.policy_paths)
        PolicyRegistry(policies)
    except (ConfigError, PolicyLoadError) as e:
        if json_output:
            _output_json_error(type(e).__name__, e.message)
        else:
            console.print(f"[red]✗ {e.message}[/red]")
        raise typer.Exit(code=1)

    if json_output:
        data = config.model_dump(mode="json", exclude={"identity": {"secret"}})
        data["policies"] = [p.name for p in policies]
        print(json.dumps(data, indent=2))
        return

    usage = config.usage
    timeouts = config.timeouts
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Setting", style="dim")
    table.add_column("Value")
    table.add_row("Default effect", _effect_markup(config.default_effect))
    table.add_row("Policies", f"{len(policies)} from {len(config.policy_paths)} path(s)")
    table.add_row("Audit log", str(config.audit_db))
    table.add_row(
        "Usage limit",
        f"{usage.limit} per {usage.window.value} ({usage.mode.value})",
    )
    for tier, tier_limit in usage.tier_limits.items():
        table.add_row(f"  {tier.value}", str(tier_limit))
    table.add_row(
        "Timeouts",
        f"identity {timeouts.identity_seconds}s, audit {timeouts.audit_seconds}s, "
        f"forward {timeouts.forward_seconds}s",
    )
    table.add_row("Token algorithms", ", ".join(config.identity.algorithms))
    table.add_row("Upstream", config.upstream.base_url or "[dim]none (decision only)[/dim]")

    console.print(f"[green]✓[/green] {path.name} is valid")
    console.print(table)
    if not config.identity.secret:
        console.print("[yellow]⚠ identity.secret is empty, every token will be rejected[/yellow]")


@app.command()
def evaluate(
    action: Annotated[
        str,
        typer.Argument(help="Action to evaluate, e.g. read:contacts."),
    ],
    policies_path: Annotated[
        list[Path],
        typer.Option(
            "--policies",
            "-p",
            help="Policy YAML file or directory (repeatable).",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    identity_path: Annotated[
        Path,
        typer.Option(
            "--identity",
            "-i",
            help="Identity YAML file.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    resource: Annotated[
        Optional[str],
        typer.Option("--resource", "-r", help="Resource as JSON (or a bare string)."),
    ] = None,
    context: Annotated[
        Optional[str],
        typer.Option("--context", "-c", help="Request context as a JSON object."),
    ] = None,
    chain_path: Annotated[
        Optional[Path],
        typer.Option(
            "--delegation",
            help="Delegation chain YAML file.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    default_effect: Annotated[
        Effect,
        typer.Option("--default-effect", help="Outcome when no policy applies."),
    ] = Effect.DENY,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the decision as JSON."),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Show full error tracebacks."),
    ] = False,
) -> None:
    """
    Dry-run a decision.

    Evaluates one action for one identity exactly as the gateway would,
    without rate limiting, audit or forwarding. Exits 0 when allowed and
    1 when denied.

    Example:
        $ gatehouse evaluate delete:records -p ./policies -i agent.yaml
    """
    try:
        policies = _load_policy_files(policies_path)
        identity = load_identity(identity_path)
        chain = None
        if chain_path is not None:
            with chain_path.open(encoding="utf-8") as f:
                chain = DelegationChain.model_validate(yaml.safe_load(f))
        parsed_context = _parse_json_option(context, "--context") or {}
        if not isinstance(parsed_context, dict):
            raise typer.BadParameter("--context must be a JSON object")
        parsed_resource = _parse_resource(resource)
        engine = DecisionEngine(PolicyRegistry(policies), default_effect=default_effect)
    except typer.BadParameter:
        raise
    except GatehouseError as e:
        if json_output:
            _output_json_error(type(e).__name__, e.message)
        else:
            console.print(f"[red]{e}[/red]")
            if debug:
                console.print(f"[dim]{traceback.format_exc()}[/dim]")
        raise typer.Exit(code=2)
    except Exception as e:
        if json_output:
            _output_json_error("load_error", str(e))
        else:
            console.print(f"[red]Error: {e}[/red]")
            if debug:
                console.print(f"[dim]{traceback.format_exc()}[/dim]")
        raise typer.Exit(code=2)

    decision = engine.evaluate(identity, action, parsed_resource, parsed_context, chain)

    if json_output:
        print(decision.model_dump_json(indent=2))
    elif decision.allowed:
        where = f" by {decision.policy_name}" if decision.policy_name else ""
        if decision.rule_index is not None:
            where += f" rule {decision.rule_index}"
        console.print(f"[green]✓ allow[/green] {action}{where}")
        console.print(f"  [dim]trace: {decision.trace_id}[/dim]")
    else:
        console.print(f"[yellow]⊘ deny[/yellow] {action}: {decision.reason}")
        if decision.policy_name:
            console.print(f"  [dim]policy: {decision.policy_name}[/dim]")
        console.print(f"  [dim]trace: {decision.trace_id}[/dim]")

    raise typer.Exit(code=0 if decision.allowed else 1)


def _parse_resource(value: str | None) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


@app.command()
def audit(
    db: Annotated[
        Path,
        typer.Option(
            "--db",
            help="Path to the audit database.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = Path("gatehouse.db"),
    since: Annotated[
        Optional[str],
        typer.Option("--since", help="Start of range: ISO time or 30m/12h/7d/2w."),
    ] = None,
    until: Annotated[
        Optional[str],
        typer.Option("--until", help="End of range: ISO time or 30m/12h/7d/2w."),
    ] = None,
    identity_id: Annotated[
        Optional[str],
        typer.Option("--identity", help="Only decisions for this identity."),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum decisions to show.", min=1),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the report as JSON."),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Show trace ids and policy attribution."),
    ] = False,
) -> None:
    """
    List recorded decisions.

    Example:
        $ gatehouse audit --db gatehouse.db --since 24h --identity agent-7
    """
    start = parse_time(since)
    end = parse_time(until)

    try:
        if json_output:
            print(generate_json_report(db, start, end, identity_id, limit))
        else:
            generate_console_report(
                db,
                start=start,
                end=end,
                identity_id=identity_id,
                limit=limit,
                console=console,
                verbose=verbose,
            )
    except GatehouseError as e:
        if json_output:
            _output_json_error(type(e).__name__, e.message)
        else:
            console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)


def _output_json_error(error_type: str, message: str, **extra: Any) -> None:
    """Output an error in JSON format."""
    output = {
        "error": True,
        "error_type": error_type,
        "message": message,
        **extra,
    }
    print(json.dumps(output, indent=2))


if __name__ == "__main__":
    app()
