"""
workflow/reclaimer.py

Reference-counted teardown of development boxes.

Two steps, so the CLI can show the operator what will happen and ask for
confirmation in between:

  collect(instance_ids) -> ReclaimBatch     read-only
  execute(batch, confirmed=...) -> ReclaimReport

Security groups are deleted only when a usage lookup made right before the
delete shows zero instances, zero outbound group references and zero
inbound group references. The counts gathered during collect() are never
reused for that decision.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from providers.base import (
    SHUTTING_DOWN,
    TERMINATED,
    CloudProvider,
    InstanceDetails,
    ProviderError,
    ProviderTimeout,
    ResourceUsage,
)
from workflow.audit import write_audit

FIRST_CONFIRMATION = "yes"
SECOND_CONFIRMATION = "DELETE"

# instance_terminated waiter: 40 checks, 15 s apart (10 min)
TERMINATED_WAIT_DELAY = 15
TERMINATED_WAIT_ATTEMPTS = 40

NOT_FOUND = "not found"
ALREADY_REMOVED = "already removed"


def confirmation_satisfied(first: Optional[str], second: Optional[str]) -> bool:
    """Both answers must match verbatim: 'yes', then 'DELETE'."""
    return first == FIRST_CONFIRMATION and second == SECOND_CONFIRMATION


@dataclass
class ReclaimBatch:
    """
    Everything collect() found, threaded explicitly through execute().
    Groups and keys are de-duplicated across all requested instances.
    """
    targets: List[InstanceDetails] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)      # instance id -> reason
    security_group_ids: List[str] = field(default_factory=list)
    group_names: Dict[str, str] = field(default_factory=dict)
    key_names: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.targets

    def add_group(self, group_id: str, name: str) -> None:
        if group_id not in self.security_group_ids:
            self.security_group_ids.append(group_id)
            self.group_names[group_id] = name

    def add_key(self, key_name: str) -> None:
        if key_name not in self.key_names:
            self.key_names.append(key_name)


@dataclass
class BlockedGroup:
    group_id: str
    name: str
    usage: ResourceUsage


@dataclass
class ReclaimReport:
    confirmed: bool
    terminated: List[str] = field(default_factory=list)
    terminate_failed: Dict[str, str] = field(default_factory=dict)
    already_shutting_down: List[str] = field(default_factory=list)
    wait_timeouts: List[str] = field(default_factory=list)
    deleted_groups: List[str] = field(default_factory=list)
    blocked_groups: List[BlockedGroup] = field(default_factory=list)
    group_errors: Dict[str, str] = field(default_factory=dict)
    deleted_keys: List[str] = field(default_factory=list)
    kept_keys: List[str] = field(default_factory=list)
    key_errors: Dict[str, str] = field(default_factory=dict)
    deleted_key_files: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)

    @property
    def warnings(self) -> List[str]:
        lines = [f"terminate {i}: {err}" for i, err in self.terminate_failed.items()]
        lines += [f"timed out waiting for {i} to terminate" for i in self.wait_timeouts]
        lines += [f"security group {g}: {err}" for g, err in self.group_errors.items()]
        lines += [f"key pair {k}: {err}" for k, err in self.key_errors.items()]
        return lines


class Reclaimer:
    """
    Args:
        provider: region-bound CloudProvider.
        key_dir:  where provisioning saved <key_name>.pem files.
        log:      progress callable.
    """

    def __init__(self, provider: CloudProvider, key_dir=None, log=print,
                 wait_delay: int = TERMINATED_WAIT_DELAY,
                 wait_attempts: int = TERMINATED_WAIT_ATTEMPTS):
        self.provider = provider
        self.key_dir = Path(key_dir).expanduser() if key_dir else None
        self.log = log
        self.wait_delay = wait_delay
        self.wait_attempts = wait_attempts

    # ------------------------------------------------------------------
    # collect
    # ------------------------------------------------------------------

    def collect(self, instance_ids: Iterable[str]) -> ReclaimBatch:
        """
        Resolve each instance and the shared resources it uses. Read-only.

        Unknown ids and already-terminated instances are recorded in
        `skipped` and contribute nothing to the batch.
        """
        batch = ReclaimBatch()
        for instance_id in dict.fromkeys(instance_ids):
            self.log(f"🔍 Checking {instance_id}...")
            details = self.provider.describe_instance(instance_id)
            if details is None:
                batch.skipped[instance_id] = NOT_FOUND
                self.log(f"⚠ {instance_id} not found or access denied")
                continue
            if details.state == TERMINATED:
                batch.skipped[instance_id] = ALREADY_REMOVED
                self.log(f"⚠ {instance_id} is already terminated")
                continue

            for group_id in details.security_group_ids:
                if group_id in batch.security_group_ids:
                    continue
                group = self.provider.describe_security_group(group_id)
                # the live lookup decides what counts as the default group
                if group is None or group.is_default:
                    continue
                batch.add_group(group.group_id, group.name)
            if details.key_name:
                batch.add_key(details.key_name)

            batch.targets.append(details)
            self.log(f"✅ {instance_id} - {details.name or '(no name)'} ({details.state}, {details.instance_type})")
        return batch

    # ------------------------------------------------------------------
    # execute
    # ------------------------------------------------------------------

    def execute(self, batch: ReclaimBatch, confirmed: bool,
                delete_keys: bool = False, delete_local_keys: bool = False) -> ReclaimReport:
        """
        Terminate the batch and clean up its unreferenced shared resources.

        Nothing destructive happens unless `confirmed` is True.

        Args:
            delete_keys:       one decision for every key pair in the batch.
            delete_local_keys: also remove <key_dir>/<key_name>.pem for each
                               key pair actually deleted.
        """
        report = ReclaimReport(confirmed=confirmed, skipped=dict(batch.skipped))
        if not confirmed:
            self.log("❌ Termination cancelled")
            return report
        if batch.is_empty:
            self.log("🤷 Nothing to terminate")
            return report

        self._terminate(batch, report)
        self._await_terminated(report)
        self._cleanup_groups(batch, report)
        self._cleanup_keys(batch, report, delete_keys, delete_local_keys)
        return report

    def _terminate(self, batch: ReclaimBatch, report: ReclaimReport) -> None:
        self.log("🗑  Terminating instances...")
        for details in batch.targets:
            instance_id = details.instance_id
            if details.state == SHUTTING_DOWN:
                # already on its way out, only the wait is left
                report.already_shutting_down.append(instance_id)
                self.log(f"⏭  {instance_id} is already shutting down")
                continue
            try:
                self.provider.terminate_instance(instance_id)
            except ProviderError as ex:
                report.terminate_failed[instance_id] = str(ex)
                self.log(f"❌ Failed to terminate {instance_id}: {ex}")
                continue
            write_audit("terminate", instance_id, self.provider.region)
            report.terminated.append(instance_id)
            self.log(f"✅ {instance_id} termination initiated")

    def _await_terminated(self, report: ReclaimReport) -> None:
        pending = report.terminated + report.already_shutting_down
        if pending:
            self.log("⏳ Waiting for instances to be fully terminated...")
        for instance_id in pending:
            try:
                self.provider.wait_until_terminated(instance_id, self.wait_delay, self.wait_attempts)
            except ProviderError as ex:
                # ProviderTimeout included: log and keep going
                report.wait_timeouts.append(instance_id)
                kind = "Timed out" if isinstance(ex, ProviderTimeout) else "Wait failed"
                self.log(f"⚠ {kind} waiting for {instance_id}, continuing anyway: {ex}")

    def _cleanup_groups(self, batch: ReclaimBatch, report: ReclaimReport) -> None:
        if not batch.security_group_ids:
            self.log("🧹 No security groups to clean up")
            return
        self.log("🧹 Cleaning up security groups...")
        for group_id in batch.security_group_ids:
            name = batch.group_names.get(group_id, "")
            try:
                usage = self.provider.security_group_usage(group_id)
            except ProviderError as ex:
                report.group_errors[group_id] = str(ex)
                self.log(f"⚠ Could not check {group_id}: {ex}")
                continue

            if not usage.is_unreferenced:
                report.blocked_groups.append(BlockedGroup(group_id, name, usage))
                self.log(f"⚠ {group_id} ({name}) still in use: {'; '.join(usage.blocking_reasons())}. Skipping.")
                continue

            try:
                self.provider.delete_security_group(group_id)
            except ProviderError as ex:
                report.group_errors[group_id] = str(ex)
                self.log(f"⚠ Could not delete {group_id}: {ex}")
                continue
            write_audit("delete-security-group", group_id, name)
            report.deleted_groups.append(group_id)
            self.log(f"✅ Deleted security group {group_id} ({name})")

    def _cleanup_keys(self, batch: ReclaimBatch, report: ReclaimReport,
                      delete_keys: bool, delete_local_keys: bool) -> None:
        if not batch.key_names:
            return
        if not delete_keys:
            report.kept_keys = list(batch.key_names)
            self.log(f"🔑 Keeping key pairs: {', '.join(batch.key_names)}")
            return

        for key_name in batch.key_names:
            try:
                self.provider.delete_key_pair(key_name)
            except ProviderError as ex:
                report.key_errors[key_name] = str(ex)
                self.log(f"⚠ Could not delete key pair {key_name}: {ex}")
                continue
            write_audit("delete-key-pair", key_name)
            report.deleted_keys.append(key_name)
            self.log(f"✅ Deleted key pair {key_name}")

            if delete_local_keys and self.key_dir is not None:
                key_file = self.key_dir / f"{key_name}.pem"
                if key_file.exists():
                    try:
                        key_file.unlink()
                    except OSError as ex:
                        report.key_errors[key_name] = f"local file {key_file}: {ex}"
                        continue
                    report.deleted_key_files.append(str(key_file))
                    self.log(f"✅ Deleted local key file {key_file}")
