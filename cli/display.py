"""
cli/display.py

All Rich-based terminal rendering for DevLaunch.
Centralising this here means:
  - the workflow modules never import Rich
  - tests can swap the console without touching workflow logic

Functions:
  print_banner()           : DevLaunch header
  print_plan_table()       : provisioning plan preview
  print_status_panel()     : one instance's live status
  print_reclaim_preview()  : instances + shared resources about to be removed
  print_provision_summary(): phase outcomes and warnings after a run
  print_reclaim_summary()  : what was deleted, kept and blocked
  make_log_handler()       : returns a log callable with Rich formatting
  print_success() / print_error()
"""

from typing import Callable, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

console = Console()

# EC2 on-demand us-east-1 hourly USD (illustrative, not contractual)
_COST_MAP = {
    "t2.micro":  0.0116,
    "t2.small":  0.023,
    "t2.medium": 0.0464,
    "t3.micro":  0.0104,
    "t3.small":  0.0208,
    "t3.medium": 0.0416,
}
_DEFAULT_COST = 0.05

_PHASE_STYLES = {
    "ok":      ("✅", "green"),
    "warning": ("⚠", "yellow"),
    "skipped": ("⏭", "dim"),
}


def print_banner() -> None:
    banner = Text()
    banner.append("  ☁  DevLaunch", style="bold cyan")
    banner.append("  |  ", style="dim")
    banner.append("Remote development boxes on EC2", style="italic white")
    console.print(Panel(banner, border_style="cyan", padding=(0, 2)))


def print_plan_table(resources: List[Dict], config_summary: Dict) -> None:
    """
    Render the plan, like 'terraform plan' output.

    Args:
        resources: list of dicts from provider.get_plan()
                   keys: resource, name, type, detail
        config_summary: dict with provider, region, instance_type keys
    """
    icons = {
        "image":    "💿",
        "network":  "🌐",
        "security": "🔒",
        "compute":  "💻",
    }

    table = Table(
        title="[bold cyan]Execution Plan[/bold cyan]  [dim](no resources will be created)[/dim]",
        box=box.ROUNDED,
        border_style="cyan",
        show_header=True,
        header_style="bold white",
        padding=(0, 1),
    )
    table.add_column("  ", width=3, no_wrap=True)
    table.add_column("Resource", style="green", min_width=18)
    table.add_column("Name",     style="white", min_width=24)
    table.add_column("Detail",   style="dim",   min_width=28)

    for r in resources:
        icon = icons.get(r.get("type", ""), "  ")
        table.add_row(f"[green]+[/green] {icon}", r["resource"], r["name"], r["detail"])

    console.print()
    console.print(table)

    instance_type = config_summary.get("instance_type", "t2.small")
    hourly = _COST_MAP.get(instance_type, _DEFAULT_COST)
    monthly = hourly * 24 * 30

    cost_text = Text()
    cost_text.append("  Provider   ", style="dim")
    cost_text.append(config_summary.get("provider", "aws").upper(), style="bold cyan")
    cost_text.append("   |   ", style="dim")
    cost_text.append("Region   ", style="dim")
    cost_text.append(config_summary.get("region", "-"), style="bold white")
    cost_text.append("   |   ", style="dim")
    cost_text.append("Type   ", style="dim")
    cost_text.append(instance_type, style="bold white")
    cost_text.append("\n\n  Estimated cost   ", style="dim")
    cost_text.append(f"~${hourly:.4f}/hour", style="bold yellow")
    cost_text.append("   (", style="dim")
    cost_text.append(f"~${monthly:.2f}/month", style="yellow")
    cost_text.append(")", style="dim")
    cost_text.append("\n  Prices are estimates. Actual charges depend on AWS pricing.", style="dim")

    console.print(Panel(cost_text, border_style="yellow", title="[yellow]Cost Estimate[/yellow]", padding=(0, 1)))
    console.print("  Run without [bold]--plan[/bold] to apply these changes.\n", style="dim")


def print_status_panel(details, alias: Optional[str] = None) -> None:
    """
    details: InstanceDetails from providers/base.py
    alias:   SSH host alias, if the instance was provisioned from here
    """
    is_running = details.state == "running"
    state_style = "bold green" if is_running else "bold yellow"
    state_icon = "🟢" if is_running else "🟡"

    text = Text()
    text.append(f"  {state_icon} State      ", style="dim")
    text.append(details.state.upper(), style=state_style)

    text.append("\n  🆔 Instance   ", style="dim")
    text.append(details.instance_id, style="bold white")

    text.append("\n  🌐 Public IP  ", style="dim")
    text.append(details.handle.public_ip or "N/A", style="bold white")

    text.append("\n  🏠 Private IP ", style="dim")
    text.append(details.handle.private_ip or "N/A", style="white")

    text.append("\n  💻 Type       ", style="dim")
    text.append(details.instance_type, style="white")

    if details.launch_time:
        text.append("\n  🕒 Launched   ", style="dim")
        text.append(f"{details.launch_time:%Y-%m-%d %H:%M:%S}", style="white")

    if details.key_name:
        text.append("\n  🔑 Key pair   ", style="dim")
        text.append(details.key_name, style="white")

    if is_running and alias:
        text.append("\n\n  🔗 ", style="dim")
        text.append(f"ssh {alias}", style="bold underline cyan")

    title_style = "bold green" if is_running else "bold yellow"
    console.print()
    console.print(Panel(
        text,
        title=f"[{title_style}]{details.name or details.instance_id}[/{title_style}]",
        border_style="green" if is_running else "yellow",
        padding=(0, 2),
    ))


def print_reclaim_preview(batch) -> None:
    """batch: ReclaimBatch from workflow/reclaimer.py"""
    table = Table(
        title="[bold red]The following instances will be TERMINATED[/bold red]",
        box=box.ROUNDED,
        border_style="red",
        header_style="bold white",
    )
    table.add_column("Instance", style="bold white")
    table.add_column("Name")
    table.add_column("State")
    table.add_column("Type", style="dim")
    table.add_column("Security groups", style="dim")
    table.add_column("Key pair", style="dim")

    for d in batch.targets:
        table.add_row(
            d.instance_id,
            d.name or "(no name)",
            d.state,
            d.instance_type,
            ", ".join(d.security_group_ids) or "-",
            d.key_name or "-",
        )
    console.print()
    console.print(table)

    if batch.security_group_ids:
        groups = ", ".join(f"{g} ({batch.group_names.get(g, '')})" for g in batch.security_group_ids)
        console.print(f"  🧹 Security groups to clean up if unused: {groups}")
    if batch.key_names:
        console.print(f"  🔑 Key pairs available for cleanup: {', '.join(batch.key_names)}")
    console.print(
        "\n  ⚠  This action CANNOT be undone. All data on these instances will be lost.\n",
        style="bold red",
    )


def _summary_table(title: str) -> Table:
    table = Table(title=title, box=box.SIMPLE, header_style="bold white", show_header=True)
    table.add_column("  ", width=2)
    table.add_column("Phase", style="white")
    table.add_column("Detail", style="dim")
    return table


def print_provision_summary(report) -> None:
    """report: ProvisionReport from workflow/provisioner.py"""
    table = _summary_table("[bold cyan]Provisioning summary[/bold cyan]")
    for phase in report.phases:
        icon, style = _PHASE_STYLES.get(phase.status, ("•", "white"))
        table.add_row(icon, f"[{style}]{phase.name}[/{style}]", phase.detail)
    console.print()
    console.print(table)

    if report.warnings:
        console.print(Panel(
            "\n".join(f"  • {w}" for w in report.warnings),
            title="[yellow]Incomplete[/yellow]",
            border_style="yellow",
            padding=(0, 1),
        ))

    if report.handle and report.profile:
        text = Text()
        text.append("  Instance   ", style="dim")
        text.append(report.handle.instance_id, style="bold white")
        text.append("\n  Public IP  ", style="dim")
        text.append(report.handle.public_ip or "N/A", style="bold white")
        text.append("\n  SSH        ", style="dim")
        text.append(f"ssh {report.profile.alias}", style="bold cyan")
        text.append("\n  Tunnel     ", style="dim")
        text.append("code tunnel --accept-server-license-terms", style="cyan")
        text.append("\n  Access     ", style="dim")
        text.append(f"SSH allowed only from {report.request.operator_ip}", style="white")
        style = "green" if report.complete else "yellow"
        console.print(Panel(text, title=f"[{style}]Ready[/{style}]", border_style=style, padding=(0, 1)))


def print_reclaim_summary(report) -> None:
    """report: ReclaimReport from workflow/reclaimer.py"""
    text = Text()
    for instance_id, reason in report.skipped.items():
        text.append(f"  ⏭  {instance_id}: {reason}\n", style="dim")
    for instance_id in report.terminated:
        text.append(f"  ✅ terminated {instance_id}\n", style="green")
    for instance_id in report.already_shutting_down:
        text.append(f"  ⏭  {instance_id}: already shutting down\n", style="dim")
    for group_id in report.deleted_groups:
        text.append(f"  ✅ deleted security group {group_id}\n", style="green")
    for blocked in report.blocked_groups:
        reasons = "; ".join(blocked.usage.blocking_reasons())
        text.append(f"  ⏸  kept {blocked.group_id} ({blocked.name}): {reasons}\n", style="yellow")
    for key_name in report.deleted_keys:
        text.append(f"  ✅ deleted key pair {key_name}\n", style="green")
    for key_file in report.deleted_key_files:
        text.append(f"  ✅ deleted local key file {key_file}\n", style="green")
    if report.kept_keys:
        text.append(f"  🔑 key pairs kept: {', '.join(report.kept_keys)}\n", style="white")
    for warning in report.warnings:
        text.append(f"  ⚠  {warning}\n", style="yellow")

    console.print()
    console.print(Panel(text, title="[cyan]Reclaim summary[/cyan]", border_style="cyan", padding=(0, 1)))


def make_log_handler(prefix: str = "") -> Callable[[str], None]:
    """
    Returns a log callable that formats output with Rich.
    Used as the `log=` argument passed to the workflows.

    Detects line content to apply appropriate styling:
      ✅  → green
      ❌  → red
      ⚠/⏳/⚙️  → yellow
      $  (shell cmd) → dim cyan (code style)
      default → white
    """
    def _log(message: str) -> None:
        msg = f"{prefix}{message}"
        if msg.startswith("✅"):
            console.print(f"  {msg}", style="green", markup=False)
        elif msg.startswith("❌"):
            console.print(f"  {msg}", style="bold red", markup=False)
        elif msg.startswith(("⚠", "⏳", "⚙")):
            console.print(f"  {msg}", style="yellow", markup=False)
        elif msg.strip().startswith("$"):
            console.print(f"  {msg}", style="dim cyan", markup=False)
        elif msg.startswith(("🚀", "🧪", "🔍", "🧹", "🗑")):
            console.print(f"  {msg}", style="cyan", markup=False)
        else:
            console.print(f"  {msg}", style="white", markup=False)

    return _log


def print_success(message: str) -> None:
    console.print(Panel(Text(f"  {message}"), border_style="green", padding=(0, 1)))


def print_error(message: str) -> None:
    console.print(Panel(Text(f"  {message}"), border_style="red", title="[red]Error[/red]", padding=(0, 1)))
