"""
main.py

DevLaunch CLI: provision, reclaim, inspect and manage EC2 development boxes.

Usage:
    python main.py provision --my-ip 203.0.113.42 --region eu-west-1
    python main.py provision --my-ip 203.0.113.42 --post-install --plan
    python main.py reclaim --region eu-west-1 i-0abc123 i-0def456
    python main.py status
    python main.py tunnel ssh-dev-instance --url
"""

import os
from pathlib import Path
from typing import Dict, List, Optional

import typer
from botocore.exceptions import NoCredentialsError, PartialCredentialsError, ProfileNotFound
from dotenv import load_dotenv
from pydantic import ValidationError

from cli import display
from providers import CloudProvider, ProviderError, get_provider
from providers.base import RUNNING
from remote import tooling
from remote.ssh import RemoteError, open_channel
from workflow.audit import configure_audit
from workflow.errors import WorkflowError
from workflow.provisioner import Provisioner
from workflow.reclaimer import (
    FIRST_CONFIRMATION,
    SECOND_CONFIRMATION,
    Reclaimer,
    confirmation_satisfied,
)
from workflow.retry import SERVICE_GRACE_POLICY, retry
from workflow.schemas import (
    ProvisionRequest,
    ReclaimRequest,
    StateFile,
    default_key_name,
    looks_like_ipv4,
    looks_like_region,
)

load_dotenv()

app = typer.Typer(help="Provision and reclaim EC2 development boxes reachable over SSH and VS Code tunnels.")

PROVIDER = os.getenv("DEVLAUNCH_PROVIDER", "aws")
REGION_ENV = ["DEVLAUNCH_REGION", "AWS_DEFAULT_REGION"]

_CREDENTIAL_ERRORS = (NoCredentialsError, PartialCredentialsError, ProfileNotFound)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fail(message: str) -> None:
    display.print_error(message)
    raise typer.Exit(code=1)


def _credentials_hint(ex: Exception) -> None:
    _fail(
        f"AWS credentials problem: {ex}\n"
        "  Configure credentials with `aws configure` or set AWS_PROFILE."
    )


def _forget_instances(state_file: Path, instance_ids) -> None:
    """Drop state records for instances that are gone or on their way out."""
    instance_ids = list(instance_ids)
    if not instance_ids or not state_file.exists():
        return
    state = StateFile.load(state_file)
    state.remove(instance_ids)
    state.save(state_file)


def _confirm_override(question: str) -> None:
    if not typer.confirm(question, default=False):
        display.print_error("Aborted")
        raise typer.Exit(code=1)


@app.callback()
def main(
    audit_log: str = typer.Option(
        "audit.log", envvar="DEVLAUNCH_AUDIT_LOG",
        help="Audit trail of mutating cloud calls (empty to disable)."),
):
    """Remote development boxes on EC2."""
    configure_audit(audit_log)


# ---------------------------------------------------------------------------
# provision
# ---------------------------------------------------------------------------

@app.command()
def provision(
    my_ip: str = typer.Option(
        ..., "--my-ip", "-i", help="Your public IP; SSH is opened to <ip>/32 only (curl ifconfig.me)."),
    region: str = typer.Option(
        "us-east-1", "--region", "-r", envvar=REGION_ENV, help="AWS region."),
    name: str = typer.Option(
        "ssh-dev-instance", "--name", "-n", help="Name tag and SSH host alias."),
    key_name: Optional[str] = typer.Option(
        None, "--key-name", "-k", help="Key pair name (default: ssh-key-<timestamp>)."),
    instance_type: str = typer.Option(
        "t2.small", "--instance-type", envvar="DEVLAUNCH_INSTANCE_TYPE", help="EC2 instance type."),
    post_install: bool = typer.Option(
        False, "--post-install", "-p", help="Also install Node.js, Python tools and the Claude CLI."),
    tunnel_service: bool = typer.Option(
        True, "--tunnel-service/--no-tunnel-service", help="Run the VS Code tunnel as a systemd service."),
    key_dir: Path = typer.Option(
        Path("~/.ssh"), envvar="DEVLAUNCH_KEY_DIR", help="Directory for the generated <key-name>.pem."),
    ssh_config: Path = typer.Option(
        Path("~/.ssh/config"), envvar="DEVLAUNCH_SSH_CONFIG", help="SSH config to add the host entry to."),
    state_file: Path = typer.Option(
        Path("state.json"), envvar="DEVLAUNCH_STATE_FILE", help="Local record of provisioned instances."),
    plan: bool = typer.Option(
        False, "--plan", help="Show what would be created and exit. No cloud calls."),
):
    """Create an SSH-only instance, verify SSH, then install VS Code tunnels."""
    my_ip = my_ip.strip()
    if not looks_like_ipv4(my_ip):
        _confirm_override(f"IP '{my_ip}' doesn't look like a valid IP address. Continue anyway?")
    if not looks_like_region(region):
        _confirm_override(f"Region '{region}' doesn't match the usual AWS format. Continue anyway?")

    try:
        request = ProvisionRequest(
            region=region,
            operator_ip=my_ip,
            instance_name=name,
            key_name=key_name or default_key_name(),
            instance_type=instance_type,
            post_install=post_install,
            tunnel_service=tunnel_service,
        )
    except ValidationError as ex:
        _fail(f"Invalid options: {ex}")

    provider = get_provider(PROVIDER, region=request.region)
    display.print_banner()

    if plan:
        resources = provider.get_plan(request.instance_name, request.instance_type,
                                      request.key_name, request.operator_ip)
        display.print_plan_table(resources, {
            "provider": provider.name,
            "region": request.region,
            "instance_type": request.instance_type,
        })
        return

    log = display.make_log_handler()
    provisioner = Provisioner(
        provider,
        key_dir=key_dir,
        ssh_config_path=ssh_config,
        state_path=state_file,
        channel_factory=open_channel,
        log=log,
    )
    try:
        report = provisioner.run(request)
    except _CREDENTIAL_ERRORS as ex:
        _credentials_hint(ex)
    except WorkflowError as ex:
        if ex.report is not None:
            display.print_provision_summary(ex.report)
            created = ex.report.created_resources()
            if created:
                display.console.print(
                    f"  Created before the failure (not rolled back): {', '.join(created)}",
                    style="yellow", markup=False,
                )
        _fail(f"Provisioning stopped at {ex.phase}: {ex.detail}")

    display.print_provision_summary(report)
    if report.complete:
        display.print_success(f"🎉 {report.request.instance_name} is ready: ssh {report.profile.alias}")


# ---------------------------------------------------------------------------
# reclaim
# ---------------------------------------------------------------------------

@app.command()
def reclaim(
    instance_ids: List[str] = typer.Argument(..., help="Instance IDs to terminate (i-...)."),
    region: str = typer.Option(
        "us-east-1", "--region", "-r", envvar=REGION_ENV, help="AWS region."),
    key_dir: Path = typer.Option(
        Path("~/.ssh"), envvar="DEVLAUNCH_KEY_DIR", help="Where the local <key-name>.pem files live."),
    state_file: Path = typer.Option(
        Path("state.json"), envvar="DEVLAUNCH_STATE_FILE", help="Local record of provisioned instances."),
):
    """Terminate instances and delete the security groups and keys nothing else uses."""
    try:
        request = ReclaimRequest(region=region, instance_ids=instance_ids)
    except ValidationError as ex:
        _fail(f"Invalid options: {ex}")

    provider = get_provider(PROVIDER, region=request.region)
    log = display.make_log_handler()
    reclaimer = Reclaimer(provider, key_dir=key_dir, log=log)

    display.print_banner()
    try:
        batch = reclaimer.collect(request.instance_ids)
    except _CREDENTIAL_ERRORS as ex:
        _credentials_hint(ex)
    except ProviderError as ex:
        _fail(f"Could not inspect instances: {ex}")

    if batch.is_empty:
        _forget_instances(state_file, batch.skipped)
        display.print_reclaim_summary(reclaimer.execute(batch, confirmed=True))
        _fail("No valid instances to terminate")

    display.print_reclaim_preview(batch)
    first = typer.prompt(
        f"Are you absolutely sure you want to terminate these {len(batch.targets)} instance(s)? "
        f"[type '{FIRST_CONFIRMATION}' to confirm]",
        default="", show_default=False,
    )
    second = None
    if first == FIRST_CONFIRMATION:
        second = typer.prompt(f"Last chance! Type '{SECOND_CONFIRMATION}' to proceed",
                              default="", show_default=False)
    confirmed = confirmation_satisfied(first, second)
    if not confirmed:
        reclaimer.execute(batch, confirmed=False)
        raise typer.Exit(code=0)

    delete_keys = delete_local = False
    if batch.key_names:
        delete_keys = typer.confirm(
            f"Also delete key pairs {', '.join(batch.key_names)} from AWS?", default=False)
        if delete_keys:
            delete_local = typer.confirm("Delete the local key files too?", default=False)

    try:
        report = reclaimer.execute(batch, confirmed=True,
                                   delete_keys=delete_keys, delete_local_keys=delete_local)
    except _CREDENTIAL_ERRORS as ex:
        _credentials_hint(ex)

    _forget_instances(state_file, report.terminated + report.already_shutting_down + list(report.skipped))

    display.print_reclaim_summary(report)


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------

@app.command()
def status(
    instance_ids: Optional[List[str]] = typer.Argument(
        None, help="Instance names or IDs (default: every recorded instance)."),
    region: str = typer.Option(
        "us-east-1", "--region", "-r", envvar=REGION_ENV, help="Region for explicit instance IDs."),
    remote: bool = typer.Option(
        False, "--remote", help="Also connect over SSH and show memory, disk, load and the boot log."),
    log_lines: int = typer.Option(20, "--log-lines", help="Boot log lines shown with --remote."),
    state_file: Path = typer.Option(
        Path("state.json"), envvar="DEVLAUNCH_STATE_FILE", help="Local record of provisioned instances."),
):
    """Show live state of development boxes."""
    state = StateFile.load(state_file)
    if instance_ids:
        targets = []
        for name_or_id in instance_ids:
            record = state.find(name_or_id)
            if record is not None:
                targets.append((record.instance_id, record.region, record.name))
            else:
                targets.append((name_or_id, region, None))
    else:
        targets = [(r.instance_id, r.region, r.name) for r in state.instances]
    if not targets:
        display.console.print("  🤷 No instances recorded. Run 'provision' first.", style="yellow")
        raise typer.Exit()

    providers: Dict[str, CloudProvider] = {}
    missing = 0
    unhealthy = 0
    try:
        for instance_id, instance_region, alias in targets:
            if instance_region not in providers:
                providers[instance_region] = get_provider(PROVIDER, region=instance_region)
            details = providers[instance_region].describe_instance(instance_id)
            if details is None:
                display.console.print(f"  ⚠ {instance_id} not found in {instance_region}", style="yellow")
                missing += 1
                continue
            record = state.find(instance_id)
            display.print_status_panel(details, alias=alias or (record.name if record else None))
            if remote and not _remote_health(details, record, log_lines):
                unhealthy += 1
    except _CREDENTIAL_ERRORS as ex:
        _credentials_hint(ex)
    except ProviderError as ex:
        _fail(f"Status lookup failed: {ex}")
    if missing == len(targets) or unhealthy:
        raise typer.Exit(code=1)


def _remote_health(details, record, log_lines: int) -> bool:
    """Run the SSH health checks against one box. False when it can't be checked."""
    log = display.make_log_handler()
    if details.state != RUNNING:
        log(f"⚠ {details.instance_id} is {details.state}, skipping remote checks")
        return False
    host = details.handle.public_ip or (record.public_ip if record else None)
    if record is None or not host:
        log(f"⚠ {details.instance_id}: no SSH details recorded or no public IP, skipping remote checks")
        return False
    try:
        channel = open_channel(host, record.user, record.key_path, timeout=5)
    except RemoteError as ex:
        log(f"❌ {record.name} is not reachable over SSH: {ex}")
        return False
    with channel:
        try:
            failed = tooling.remote_health(channel, log=log, log_lines=log_lines)
        except RemoteError as ex:
            log(f"❌ Lost connection to {record.name}: {ex}")
            return False
    return not failed


# ---------------------------------------------------------------------------
# tunnel
# ---------------------------------------------------------------------------

@app.command()
def tunnel(
    name: str = typer.Argument(..., help="Instance name or ID from the state file."),
    show_status: bool = typer.Option(False, "--status", "-s", help="Show the tunnel service status."),
    restart: bool = typer.Option(False, "--restart", "-r", help="Restart the tunnel service."),
    url: bool = typer.Option(False, "--url", "-u", help="Print the tunnel URL from the service journal."),
    state_file: Path = typer.Option(
        Path("state.json"), envvar="DEVLAUNCH_STATE_FILE", help="Local record of provisioned instances."),
):
    """Set up (default) or manage the VS Code tunnel service on a box."""
    if sum([show_status, restart, url]) > 1:
        _fail("Use only one of --status, --restart, --url.")

    record = StateFile.load(state_file).find(name)
    if record is None or not record.public_ip:
        _fail(f"No recorded instance '{name}' with a public IP in {state_file}.")

    log = display.make_log_handler()
    try:
        channel = open_channel(record.public_ip, record.user, record.key_path, timeout=5)
    except RemoteError as ex:
        _fail(f"Cannot connect to {name}: {ex}")

    try:
        with channel:
            if show_status:
                rc = tooling.tunnel_status(channel, log=log)
            elif restart:
                rc = tooling.restart_tunnel(channel, log=log)
                if rc == 0:
                    log("✅ Service restarted")
            elif url:
                rc = tooling.tunnel_url(channel, log=log)
            else:
                rc = _setup_tunnel(channel, record.user, log)
    except RemoteError as ex:
        _fail(str(ex))
    if rc != 0 and not show_status:
        raise typer.Exit(code=1)


def _setup_tunnel(channel, user: str, log) -> int:
    log("🚀 Setting up VS Code tunnel service...")
    if not tooling.install_editor(channel, log=log):
        log("❌ VS Code install failed")
        return 1
    if not tooling.install_tunnel_service(channel, user, log=log):
        log(f"❌ Could not register {tooling.TUNNEL_SERVICE}")
        return 1
    if not retry(lambda _timeout: tooling.tunnel_is_active(channel), SERVICE_GRACE_POLICY):
        log(f"❌ {tooling.TUNNEL_SERVICE} failed to start")
        tooling.tunnel_status(channel, log=log)
        return 1
    log(f"✅ {tooling.TUNNEL_SERVICE} is running")
    return tooling.tunnel_url(channel, log=log)


if __name__ == "__main__":
    app()
