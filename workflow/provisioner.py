"""
workflow/provisioner.py

Phased provisioning of a development box.

Phases run strictly in order, each gated on the previous one:

   1 ResolveImage            fatal
   2 ResolveNetwork          fatal
   3 CreateSecurityRule      fatal
   4 CreateKeyMaterial       fatal
   5 Launch                  fatal
   6 AwaitRunning            fatal (TimeoutWaitError)
   7 ConfigureLocalAccess    soft
   8 VerifyConnectivity      hard gate (ConnectivityGateError)
   9 InstallRemoteTooling    soft
  10 InstallPersistentService soft, only after a successful editor install

Fatal phases do not roll anything back: whatever was already created is
listed in the error output and left for `reclaim`.
"""

import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from providers.base import (
    CloudProvider,
    ImageFilter,
    ImageInfo,
    InstanceHandle,
    InstanceSpec,
    ProviderError,
    ProviderTimeout,
    SecurityRule,
)
from remote import tooling
from remote.ssh import RemoteError, open_channel
from workflow.audit import write_audit
from workflow.errors import ConnectivityGateError, FatalSetupError, TimeoutWaitError, WorkflowError
from workflow.retry import GATE_POLICY, SERVICE_GRACE_POLICY, RetryPolicy, retry
from workflow.schemas import DevboxRecord, ProvisionRequest, StateFile
from workflow.ssh_config import ConnectionProfile, build_profile, login_user_for, write_profile

PREFERRED_IMAGE = ImageFilter(
    family="ubuntu",
    owners=["099720109477"],
    name_pattern="ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-amd64-server-*",
)
FALLBACK_IMAGE = ImageFilter(
    family="amazon-linux",
    owners=["amazon"],
    name_pattern="amzn2-ami-hvm-*-x86_64-gp2",
)

SSH_PORT = 22
# instance_running waiter: 40 checks, 15 s apart (10 min)
RUNNING_WAIT_DELAY = 15
RUNNING_WAIT_ATTEMPTS = 40

PHASES = [
    "ResolveImage",
    "ResolveNetwork",
    "CreateSecurityRule",
    "CreateKeyMaterial",
    "Launch",
    "AwaitRunning",
    "ConfigureLocalAccess",
    "VerifyConnectivity",
    "InstallRemoteTooling",
    "InstallPersistentService",
]

OK = "ok"
WARNING = "warning"
SKIPPED = "skipped"


@dataclass
class PhaseResult:
    name: str
    status: str
    detail: str = ""


@dataclass
class ProvisionReport:
    request: ProvisionRequest
    image: Optional[ImageInfo] = None
    network_id: Optional[str] = None
    security_group_id: Optional[str] = None
    key_created: bool = False
    rule: Optional[SecurityRule] = None
    key_path: Optional[Path] = None
    handle: Optional[InstanceHandle] = None
    profile: Optional[ConnectionProfile] = None
    config_backup: Optional[Path] = None
    phases: List[PhaseResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.warnings

    def created_resources(self) -> List[str]:
        """What exists in the cloud so far, for the operator to reclaim."""
        created = []
        if self.security_group_id:
            created.append(f"security group {self.security_group_id}")
        if self.key_created:
            created.append(f"key pair {self.request.key_name}")
        if self.handle:
            created.append(f"instance {self.handle.instance_id}")
        return created


class Provisioner:
    """
    Runs the ten provisioning phases against a CloudProvider.

    Args:
        provider:        region-bound CloudProvider.
        key_dir:         directory for <key_name>.pem.
        ssh_config_path: local SSH config to merge the host entry into.
        state_path:      state.json path; None disables the record.
        channel_factory: open_channel(host, username, key_path, timeout).
        sleep / clock:   injectable for tests.
        log:             progress callable, same log= pattern as everywhere.
    """

    def __init__(self, provider: CloudProvider, key_dir, ssh_config_path,
                 state_path=None,
                 channel_factory: Callable = open_channel,
                 gate_policy: RetryPolicy = GATE_POLICY,
                 service_policy: RetryPolicy = SERVICE_GRACE_POLICY,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime] = datetime.now,
                 log=print):
        self.provider = provider
        self.key_dir = Path(key_dir).expanduser()
        self.ssh_config_path = Path(ssh_config_path).expanduser()
        self.state_path = state_path
        self.channel_factory = channel_factory
        self.gate_policy = gate_policy
        self.service_policy = service_policy
        self.sleep = sleep
        self.clock = clock
        self.log = log

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    def run(self, request: ProvisionRequest) -> ProvisionReport:
        report = ProvisionReport(request=request)
        try:
            self._resolve_image(report)
            self._resolve_network(report)
            self._create_security_rule(report)
            self._create_key_material(report)
            self._launch(report)
            self._await_running(report)
            self._configure_local_access(report)
            channel = self._verify_connectivity(report)
        except WorkflowError as ex:
            # the CLI lists what was created before the failure
            ex.report = report
            raise

        try:
            editor_ok = self._install_remote_tooling(report, channel)
            self._install_persistent_service(report, channel, editor_ok)
        finally:
            channel.close()
        return report

    # ------------------------------------------------------------------
    # fatal phases
    # ------------------------------------------------------------------

    def _resolve_image(self, report: ProvisionReport) -> None:
        phase = "ResolveImage"
        self.log("📋 Looking up latest Ubuntu 22.04 LTS image...")
        try:
            image = self.provider.find_latest_image(PREFERRED_IMAGE)
            if image is None:
                self.log("⚠ Ubuntu image not found, falling back to Amazon Linux 2...")
                image = self.provider.find_latest_image(FALLBACK_IMAGE)
        except ProviderError as ex:
            raise FatalSetupError(phase, str(ex)) from ex
        if image is None:
            raise FatalSetupError(phase, "No Ubuntu 22.04 or Amazon Linux 2 image found.")
        report.image = image
        self._done(report, phase, f"{image.image_id} ({image.name})")

    def _resolve_network(self, report: ProvisionReport) -> None:
        phase = "ResolveNetwork"
        try:
            network_id = self.provider.find_default_network()
        except ProviderError as ex:
            raise FatalSetupError(phase, str(ex)) from ex
        if not network_id:
            raise FatalSetupError(phase, f"No default VPC in {self.provider.region}.")
        report.network_id = network_id
        self._done(report, phase, network_id)

    def _create_security_rule(self, report: ProvisionReport) -> None:
        phase = "CreateSecurityRule"
        group_name = f"ssh-only-sg-{self.clock():%Y%m%d%H%M}"
        try:
            group_id = self.provider.create_security_group(
                group_name, "SSH access only from specific IP", report.network_id
            )
            report.security_group_id = group_id
            write_audit("create-security-group", group_id, group_name)
            rule = SecurityRule(
                group_id=group_id,
                protocol="tcp",
                port=SSH_PORT,
                cidr=report.request.ingress_cidr,
            )
            self.provider.authorize_ingress(rule)
            write_audit("authorize-ingress", group_id, str(rule))
        except ProviderError as ex:
            raise FatalSetupError(phase, str(ex)) from ex
        report.rule = rule
        self._done(report, phase, f"{group_id} allows {rule}")

    def _create_key_material(self, report: ProvisionReport) -> None:
        phase = "CreateKeyMaterial"
        key_name = report.request.key_name
        key_path = self.key_dir / f"{key_name}.pem"
        if key_path.exists():
            raise FatalSetupError(phase, f"{key_path} already exists; refusing to overwrite it.")
        try:
            material = self.provider.create_key_pair(key_name)
        except ProviderError as ex:
            raise FatalSetupError(phase, str(ex)) from ex
        report.key_created = True
        write_audit("create-key-pair", key_name)

        try:
            self.key_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(material.private_key_pem)
                if not material.private_key_pem.endswith("\n"):
                    f.write("\n")
            os.chmod(key_path, 0o600)
        except OSError as ex:
            raise FatalSetupError(
                phase, f"Key pair '{key_name}' created but could not be saved to {key_path}: {ex}"
            ) from ex
        report.key_path = key_path
        self._done(report, phase, f"saved as {key_path}")

    def _launch(self, report: ProvisionReport) -> None:
        phase = "Launch"
        request = report.request
        spec = InstanceSpec(
            region=self.provider.region,
            instance_type=request.instance_type,
            ami_id=report.image.image_id,
            key_name=request.key_name,
            security_group_id=report.rule.group_id,
            name=request.instance_name,
            user_data=tooling.USER_DATA,
        )
        self.log(f"🚀 Launching {spec.instance_type} instance '{spec.name}'...")
        try:
            handle = self.provider.run_instance(spec)
        except ProviderError as ex:
            raise FatalSetupError(phase, str(ex)) from ex
        write_audit("run-instance", handle.instance_id, spec.instance_type)
        report.handle = handle
        self._done(report, phase, f"{handle.instance_id} ({handle.state})")

    def _await_running(self, report: ProvisionReport) -> None:
        phase = "AwaitRunning"
        instance_id = report.handle.instance_id
        self.log(f"⏳ Waiting for {instance_id} to be running...")
        try:
            handle = self.provider.wait_until_running(
                instance_id, RUNNING_WAIT_DELAY, RUNNING_WAIT_ATTEMPTS
            )
        except ProviderTimeout as ex:
            raise TimeoutWaitError(phase, str(ex)) from ex
        except ProviderError as ex:
            raise FatalSetupError(phase, str(ex)) from ex
        if not handle.public_ip:
            raise FatalSetupError(phase, f"{instance_id} is running but has no public IP.")
        report.handle = handle
        self._done(report, phase, f"public {handle.public_ip}, private {handle.private_ip}")
        self._record_state(report)

    # ------------------------------------------------------------------
    # soft phase
    # ------------------------------------------------------------------

    def _configure_local_access(self, report: ProvisionReport) -> None:
        phase = "ConfigureLocalAccess"
        report.profile = build_profile(
            alias=report.request.instance_name,
            public_ip=report.handle.public_ip,
            image_family=report.image.family,
            key_path=report.key_path,
        )
        try:
            report.config_backup = write_profile(self.ssh_config_path, report.profile, now=self.clock())
        except OSError as ex:
            self._warn(report, phase, f"Could not update {self.ssh_config_path}: {ex}")
            return
        if report.config_backup:
            self.log(f"📋 Backed up SSH config to {report.config_backup}")
        self._done(report, phase, f"Host {report.profile.alias} in {self.ssh_config_path}")

    # ------------------------------------------------------------------
    # gate
    # ------------------------------------------------------------------

    def _verify_connectivity(self, report: ProvisionReport):
        phase = "VerifyConnectivity"
        profile = report.profile
        policy = self.gate_policy
        opened = []

        self.log(f"🧪 Testing SSH to {profile.user}@{profile.host} (up to {policy.max_attempts} attempts)...")

        def attempt(timeout: float) -> bool:
            try:
                channel = self.channel_factory(
                    host=profile.host, username=profile.user,
                    key_path=str(report.key_path), timeout=timeout,
                )
            except RemoteError:
                return False
            try:
                ok = channel.run("echo 'SSH connection successful'", log=self.log, timeout=timeout) == 0
            except RemoteError:
                ok = False
            if ok:
                opened.append(channel)
            else:
                channel.close()
            return ok

        def on_failure(number: int, total: int) -> None:
            self.log(f"⏳ SSH not ready yet (attempt {number}/{total})")

        succeeded_on = retry(attempt, policy, sleep=self.sleep, on_failure=on_failure)
        if not succeeded_on:
            raise ConnectivityGateError(
                phase,
                f"SSH to {profile.user}@{profile.host} failed after {policy.max_attempts} attempts. "
                f"Check that the security group allows {report.request.operator_ip} and the "
                f"instance has finished booting, then try: ssh {profile.alias}",
                attempts=policy.max_attempts,
            )
        self._done(report, phase, f"verified on attempt {succeeded_on}")
        return opened[0]

    # ------------------------------------------------------------------
    # remote phases (soft)
    # ------------------------------------------------------------------

    def _install_remote_tooling(self, report: ProvisionReport, channel) -> bool:
        phase = "InstallRemoteTooling"
        failed = []
        self.log("🚀 Installing VS Code (tunnels) on the instance...")
        try:
            editor_ok = tooling.install_editor(channel, log=self.log)
        except RemoteError as ex:
            self.log(f"❌ {ex}")
            editor_ok = False
        if not editor_ok:
            self._warn(report, phase, "VS Code install failed; install manually: sudo snap install code --classic")

        if report.request.post_install:
            self.log("🚀 Installing extended development toolchain...")
            try:
                failed = tooling.install_extended_toolchain(channel, log=self.log)
            except RemoteError as ex:
                failed = [str(ex)]
            for label in failed:
                self._warn(report, phase, f"Toolchain step failed: {label}")
        else:
            self.log("⏭  Extended toolchain skipped (use --post-install)")

        if editor_ok and (not report.request.post_install or not failed):
            self._done(report, phase, "editor" + (" + toolchain" if report.request.post_install else ""))
        return editor_ok

    def _install_persistent_service(self, report: ProvisionReport, channel, editor_ok: bool) -> None:
        phase = "InstallPersistentService"
        if not report.request.tunnel_service:
            report.phases.append(PhaseResult(phase, SKIPPED, "disabled"))
            return
        if not editor_ok:
            report.phases.append(PhaseResult(phase, SKIPPED, "editor not installed"))
            return

        self.log(f"⚙️  Registering {tooling.TUNNEL_SERVICE}...")
        try:
            installed = tooling.install_tunnel_service(channel, report.profile.user, log=self.log)
            active = installed and bool(retry(
                lambda _timeout: tooling.tunnel_is_active(channel),
                self.service_policy,
                sleep=self.sleep,
            ))
        except RemoteError as ex:
            self.log(f"❌ {ex}")
            installed = active = False

        if not installed:
            self._warn(report, phase, f"Could not register {tooling.TUNNEL_SERVICE}.")
        elif not active:
            self._warn(report, phase, f"{tooling.TUNNEL_SERVICE} did not become active; "
                                      f"check: sudo journalctl -u {tooling.TUNNEL_SERVICE}")
        else:
            self._done(report, phase, f"{tooling.TUNNEL_SERVICE} active")

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _record_state(self, report: ProvisionReport) -> None:
        if not self.state_path:
            return
        request = report.request
        record = DevboxRecord(
            instance_id=report.handle.instance_id,
            name=request.instance_name,
            region=self.provider.region,
            public_ip=report.handle.public_ip,
            user=login_user_for(report.image.family),
            key_name=request.key_name,
            key_path=str(report.key_path),
            security_group_id=report.rule.group_id,
            created_at=self.clock(),
        )
        try:
            state = StateFile.load(self.state_path)
            state.upsert(record)
            state.save(self.state_path)
        except (OSError, ValueError) as ex:
            report.warnings.append(f"Could not write {self.state_path}: {ex}")

    def _done(self, report: ProvisionReport, phase: str, detail: str) -> None:
        report.phases.append(PhaseResult(phase, OK, detail))
        self.log(f"✅ {phase}: {detail}")

    def _warn(self, report: ProvisionReport, phase: str, message: str) -> None:
        existing = next((p for p in report.phases if p.name == phase), None)
        if existing is None:
            report.phases.append(PhaseResult(phase, WARNING, message))
        else:
            existing.status = WARNING
        report.warnings.append(f"{phase}: {message}")
        self.log(f"⚠ {phase}: {message}")
