"""CLI main entry point"""

import asyncio
import json
import logging
import threading
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from skillhost import __version__
from skillhost.core.config import load_settings
from skillhost.core.errors import SkillHostError
from skillhost.core.gate.models import ApprovalAnswer, ApprovalRequest
from skillhost.core.rpc.messages import Event
from skillhost.host import SkillHost

logger = logging.getLogger(__name__)

console = Console()

STATUS_STYLES = {
    "enabled": "green",
    "ok": "green",
    "disabled": "dim",
    "slow": "yellow",
    "unknown": "dim",
    "unavailable": "yellow",
    "failed": "red",
    "quarantined": "magenta",
    "unresponsive": "red",
}


class ConsolePrompter:
    """
    Asks approval questions on the terminal

    The question is asked on a daemon thread: when the gate's deadline
    passes, the blocked read is abandoned instead of keeping the event
    loop (and the process) alive.
    """

    def __init__(self, console: Console, timeout: float):
        self.console = console
        self.timeout = timeout

    async def __call__(self, request: ApprovalRequest) -> ApprovalAnswer:
        loop = asyncio.get_running_loop()
        answer = loop.create_future()
        thread = threading.Thread(
            target=self._ask_in_thread,
            args=(request, loop, answer),
            name=f"approval-{request.skill_id}",
            daemon=True,
        )
        thread.start()
        try:
            return await answer
        except asyncio.CancelledError:
            self.console.print(
                f"\n[yellow]No answer within {self.timeout:g}s; "
                f"{request.capability.value} denied.[/yellow]"
            )
            raise

    def _ask_in_thread(self, request: ApprovalRequest, loop: asyncio.AbstractEventLoop, answer: asyncio.Future):
        try:
            outcome, settle = self._ask(request), answer.set_result
        except Exception as e:
            outcome, settle = e, answer.set_exception
        try:
            loop.call_soon_threadsafe(_settle, answer, settle, outcome)
        except RuntimeError:
            logger.debug(f"Approval answer for {request.skill_id} arrived after the loop closed")

    def _ask(self, request: ApprovalRequest) -> ApprovalAnswer:
        if request.escalation:
            self.console.print(
                f"[yellow]⚠ {request.skill_name} requests [bold]{request.capability.value}[/bold], "
                f"which it did not declare.[/yellow]"
            )
        else:
            self.console.print(
                f"[cyan]{request.skill_name} wants [bold]{request.capability.value}[/bold].[/cyan]"
            )
        answer = Prompt.ask(
            f"Allow? (denied after {self.timeout:g}s)",
            choices=[a.value for a in ApprovalAnswer],
            default=ApprovalAnswer.DENY.value,
            console=self.console,
        )
        return ApprovalAnswer(answer)


def _settle(future: asyncio.Future, settle, outcome):
    if not future.done():
        settle(outcome)


def _styled(value: str) -> str:
    style = STATUS_STYLES.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def _print_error(e: SkillHostError):
    console.print(f"[red]✗ {e.message}[/red]")
    console.print(f"  [dim]{e.category} / {e.reason_code}[/dim]")
    if e.hint:
        console.print(f"  Hint: {e.hint}")


def _run(ctx: click.Context, coro_factory):
    """Run an async host operation, rendering runtime errors."""
    settings = ctx.obj["settings"]
    prompter = ConsolePrompter(console, timeout=settings.approval_timeout_s)

    async def runner():
        async with SkillHost(settings, prompter=prompter) as host:
            return await coro_factory(host)

    try:
        return asyncio.run(runner())
    except SkillHostError as e:
        _print_error(e)
        raise click.exceptions.Exit(1)
    except ValueError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise click.exceptions.Exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="skillhost")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
              help="Settings file (default: <home>/config.yaml)")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, config_path: Optional[Path], verbose: bool):
    """skillhost - run sandboxed skill processes"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    try:
        ctx.obj["settings"] = load_settings(config_path)
    except ValueError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise click.exceptions.Exit(1)


# ============================================================================
# skills
# ============================================================================


@cli.group(name="skills")
def skills_group():
    """Manage installed skills."""
    pass


@skills_group.command(name="list")
@click.pass_context
def skills_list(ctx):
    """List installed skills."""
    records = _run(ctx, lambda host: _async_value(host.list_skills()))

    if not records:
        console.print("No skills installed.")
        return

    table = Table(title=f"Installed Skills ({len(records)})")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Status")
    table.add_column("Capabilities")
    for record in records:
        d = record.descriptor
        table.add_row(
            d.skill_id,
            d.name,
            d.version,
            _styled(record.status.value),
            ", ".join(sorted(c.value for c in d.capabilities)) or "-",
        )
    console.print(table)


@skills_group.command(name="install")
@click.argument("manifest", type=click.Path(exists=True, path_type=Path))
@click.pass_context
def skills_install(ctx, manifest: Path):
    """Install a skill from MANIFEST (skill.yaml or its directory)."""
    record = _run(ctx, lambda host: host.install_skill(manifest))
    d = record.descriptor
    console.print(f"[green]✓ Installed {d.skill_id} v{d.version}[/green]")
    if d.capabilities:
        console.print(f"  Capabilities: {', '.join(sorted(c.value for c in d.capabilities))}")


@skills_group.command(name="uninstall")
@click.argument("skill_id")
@click.pass_context
def skills_uninstall(ctx, skill_id: str):
    """Uninstall a skill."""
    removed = _run(ctx, lambda host: host.uninstall_skill(skill_id))
    if not removed:
        console.print(f"[yellow]Skill not installed: {skill_id}[/yellow]")
        raise click.exceptions.Exit(1)
    console.print(f"[green]✓ Uninstalled {skill_id}[/green]")


@skills_group.command(name="disable")
@click.argument("skill_id")
@click.pass_context
def skills_disable(ctx, skill_id: str):
    """Stop SKILL_ID and refuse invocations until activated."""
    _run(ctx, lambda host: host.disable_skill(skill_id))
    console.print(f"[green]✓ Disabled {skill_id}[/green]")


@skills_group.command(name="activate")
@click.argument("skill_id")
@click.pass_context
def skills_activate(ctx, skill_id: str):
    """Make a disabled or failed SKILL_ID invocable again."""
    record = _run(ctx, lambda host: host.activate_skill(skill_id))
    console.print(f"[green]✓ {skill_id} is {record.status.value}[/green]")


@skills_group.command(name="rollback")
@click.argument("skill_id")
@click.pass_context
def skills_rollback(ctx, skill_id: str):
    """Reinstall the version of SKILL_ID the last reinstall replaced."""
    record = _run(ctx, lambda host: host.rollback_skill(skill_id))
    console.print(f"[green]✓ Rolled back {skill_id} to v{record.descriptor.version}[/green]")


@skills_group.command(name="credentials")
@click.argument("skill_id")
@click.pass_context
def skills_credentials(ctx, skill_id: str):
    """Show which credentials SKILL_ID declares and whether they are set."""
    statuses = _run(ctx, lambda host: _async_value(host.credential_status(skill_id)))
    if not statuses:
        console.print(f"{skill_id} declares no credentials.")
        return

    table = Table(title=f"Credentials of {skill_id}")
    table.add_column("Name", style="cyan")
    table.add_column("Variable")
    table.add_column("Required")
    table.add_column("Set")
    for status in statuses:
        if status.available:
            state = "[green]yes[/green]"
        elif status.has_default:
            state = "[dim]default[/dim]"
        else:
            state = "[red]no[/red]" if status.required else "[dim]no[/dim]"
        table.add_row(status.name, status.env_var, "yes" if status.required else "no", state)
    console.print(table)


# ============================================================================
# invoke / health
# ============================================================================


def _event_summary(payload) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, dict):
        summary = payload.get("message") or payload.get("name") or payload.get("text")
        if summary:
            return str(summary)
    if payload is None:
        return ""
    return json.dumps(payload, ensure_ascii=False, default=str)


def _print_event(event: Event):
    if event.kind.value == "partial_output":
        console.print(_event_summary(event.payload), end="", markup=False)
        return
    console.print(f"[dim]· {event.kind.value}[/dim] ", end="")
    console.print(_event_summary(event.payload), markup=False)


@cli.command(name="invoke")
@click.argument("skill_id")
@click.argument("task")
@click.option("--timeout", type=float, default=None, help="Task timeout in seconds")
@click.option("--capability", "capabilities", multiple=True,
              help="Capability to request (repeatable, default: declared set)")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def invoke_cmd(ctx, skill_id: str, task: str, timeout: Optional[float], capabilities, as_json: bool):
    """Run TASK on SKILL_ID and stream its events."""
    result = _run(
        ctx,
        lambda host: host.invoke(
            skill_id,
            task,
            on_event=None if as_json else _print_event,
            timeout=timeout,
            capabilities=list(capabilities) or None,
        ),
    )
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False, default=str))
        return
    console.print()
    console.print(f"[green]✓ Completed in {result.duration_ms}ms ({result.event_count} events)[/green]")
    output = result.output
    if isinstance(output, (dict, list)):
        console.print_json(json.dumps(output, ensure_ascii=False, default=str))
    elif output is not None:
        console.print(str(output))


@cli.command(name="health")
@click.argument("skill_id")
@click.pass_context
def health_cmd(ctx, skill_id: str):
    """Show the last health status of SKILL_ID."""
    result = _run(ctx, lambda host: host.check_health(skill_id))
    console.print(f"{skill_id}: {_styled(result.status.value)} - {result.message}")
    if result.response_time_ms is not None:
        console.print(f"  Response time: {result.response_time_ms}ms")
    if result.consecutive_failures:
        console.print(f"  Consecutive failures: {result.consecutive_failures}")


# ============================================================================
# approvals
# ============================================================================


@cli.group(name="approvals")
def approvals_group():
    """Inspect and revoke capability approvals."""
    pass


@approvals_group.command(name="list")
@click.option("--skill", "skill_id", default=None, help="Only this skill")
@click.pass_context
def approvals_list(ctx, skill_id: Optional[str]):
    """List stored approval decisions."""
    records = _run(ctx, lambda host: _async_value(host.list_approvals(skill_id)))
    if not records:
        console.print("No approvals stored.")
        return

    table = Table(title="Approvals")
    table.add_column("Skill", style="cyan")
    table.add_column("Capability")
    table.add_column("Decision")
    table.add_column("Expires")
    for record in records:
        table.add_row(
            record.skill_id,
            record.capability.value,
            record.decision.value,
            str(record.expires_at) if record.expires_at else "never",
        )
    console.print(table)


@approvals_group.command(name="revoke")
@click.argument("skill_id")
@click.option("--capability", default=None, help="Only this capability (default: all)")
@click.pass_context
def approvals_revoke(ctx, skill_id: str, capability: Optional[str]):
    """Revoke approvals of SKILL_ID; the next session asks again."""
    removed = _run(ctx, lambda host: _async_value(host.revoke(skill_id, capability)))
    console.print(f"[green]✓ Revoked {removed} approval(s) for {skill_id}[/green]")


# ============================================================================
# runtime
# ============================================================================


@cli.group(name="runtime")
def runtime_group():
    """Resolve skill runtimes."""
    pass


@runtime_group.command(name="resolve")
@click.argument("skill_id")
@click.option("--recheck", is_flag=True, help="Ignore the cached resolution")
@click.pass_context
def runtime_resolve(ctx, skill_id: str, recheck: bool):
    """Find the runtime SKILL_ID needs."""
    info = _run(ctx, lambda host: host.resolve_runtime(skill_id, recheck=recheck))
    console.print(f"[green]✓ {info.kind}[/green] {info.version or ''}")
    console.print(f"  Path: {info.path}")
    console.print(f"  Source: {info.source}")


@runtime_group.command(name="pre-warm")
@click.argument("skill_id")
@click.pass_context
def runtime_pre_warm(ctx, skill_id: str):
    """Dry-run SKILL_ID's entry point so its dependencies are ready."""
    ok = _run(ctx, lambda host: host.pre_warm(skill_id))
    if ok:
        console.print(f"[green]✓ Pre-warmed {skill_id}[/green]")
    else:
        console.print(f"[yellow]Pre-warm of {skill_id} exited non-zero (see --verbose)[/yellow]")


async def _async_value(value):
    return value


if __name__ == "__main__":
    cli()
