"""
providers/base.py

Defines the abstract CloudProvider interface and the typed models it returns.
The provisioning and teardown workflows only ever see these shapes, never
raw SDK responses, so a second cloud can be added by subclassing
CloudProvider without touching the workflow code.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict


# Instance states, as reported by the compute API
PENDING = "pending"
RUNNING = "running"
STOPPING = "stopping"
STOPPED = "stopped"
SHUTTING_DOWN = "shutting-down"
TERMINATED = "terminated"

# States in which an instance still holds on to its security groups
ACTIVE_STATES = (PENDING, RUNNING, STOPPING, STOPPED, "rebooting", SHUTTING_DOWN)


class ProviderError(RuntimeError):
    """A cloud API call failed. `code` carries the provider's error code."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ProviderTimeout(ProviderError):
    """A state-transition wait gave up before the target state was reached."""


@dataclass(frozen=True)
class ImageFilter:
    """One image search: owners + name pattern, tagged with the OS family."""
    family: str          # "ubuntu" | "amazon-linux"
    owners: List[str]
    name_pattern: str


@dataclass(frozen=True)
class ImageInfo:
    image_id: str
    name: str
    created: str
    family: str


@dataclass(frozen=True)
class InstanceSpec:
    """
    Everything submitted to run_instance(). Frozen: once handed to the API
    the spec is never edited, a new launch needs a new spec.
    """
    region: str
    instance_type: str
    ami_id: str
    key_name: str
    security_group_id: str
    name: str
    user_data: str


@dataclass
class InstanceHandle:
    """
    Live view of one instance. Only ever rebuilt from provider responses,
    the workflow never sets `state` itself.
    """
    instance_id: str
    state: str
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None


@dataclass
class InstanceDetails:
    """describe_instance() result: the handle plus what teardown needs."""
    handle: InstanceHandle
    name: Optional[str]
    instance_type: str
    security_group_ids: List[str] = field(default_factory=list)
    key_name: Optional[str] = None
    launch_time: Optional[datetime] = None

    @property
    def instance_id(self) -> str:
        return self.handle.instance_id

    @property
    def state(self) -> str:
        return self.handle.state


@dataclass(frozen=True)
class SecurityRule:
    group_id: str
    protocol: str
    port: int
    cidr: str

    def __str__(self) -> str:
        return f"{self.cidr}:{self.port}/{self.protocol}"


@dataclass(frozen=True)
class KeyMaterial:
    key_name: str
    private_key_pem: str = field(repr=False)


@dataclass(frozen=True)
class SecurityGroupInfo:
    group_id: str
    name: str
    is_default: bool


@dataclass(frozen=True)
class ResourceUsage:
    """
    Live reference counts for one security group, recomputed right before
    a delete is attempted.

      instances     : instances in a non-terminal state using the group
      references_out: rules of this group that point at other groups
      referenced_by : other groups whose rules point at this group
    """
    instances: int
    references_out: int
    referenced_by: int

    @property
    def is_unreferenced(self) -> bool:
        return self.instances == 0 and self.references_out == 0 and self.referenced_by == 0

    def blocking_reasons(self) -> List[str]:
        reasons = []
        if self.instances:
            reasons.append(f"used by {self.instances} instance(s)")
        if self.references_out:
            reasons.append(f"has {self.references_out} rule(s) referencing other security groups")
        if self.referenced_by:
            reasons.append(f"referenced by {self.referenced_by} other security group(s)")
        return reasons


class CloudProvider(ABC):
    """
    Abstract base class for the compute API the workflows drive.

    A provider instance is bound to one region. Every method either returns
    one of the typed models above or raises ProviderError / ProviderTimeout.
    "Not found" lookups return None instead of raising.
    """

    name = "abstract"

    def __init__(self, region: str):
        self.region = region

    # -- lookups -------------------------------------------------------

    @abstractmethod
    def find_latest_image(self, image_filter: ImageFilter) -> Optional[ImageInfo]:
        """Newest image matching the filter, or None."""
        ...

    @abstractmethod
    def find_default_network(self) -> Optional[str]:
        """Id of the region's default network (VPC), or None."""
        ...

    @abstractmethod
    def describe_instance(self, instance_id: str) -> Optional[InstanceDetails]:
        """Current instance details, or None if the id is unknown."""
        ...

    @abstractmethod
    def describe_security_group(self, group_id: str) -> Optional[SecurityGroupInfo]:
        ...

    @abstractmethod
    def security_group_usage(self, group_id: str) -> ResourceUsage:
        """Live reference counts for a group. Never cached."""
        ...

    # -- mutations -----------------------------------------------------

    @abstractmethod
    def create_security_group(self, name: str, description: str, network_id: str) -> str:
        ...

    @abstractmethod
    def authorize_ingress(self, rule: SecurityRule) -> None:
        ...

    @abstractmethod
    def create_key_pair(self, key_name: str) -> KeyMaterial:
        """Must fail (ProviderError) when a key pair with that name exists."""
        ...

    @abstractmethod
    def run_instance(self, spec: InstanceSpec) -> InstanceHandle:
        ...

    @abstractmethod
    def terminate_instance(self, instance_id: str) -> None:
        ...

    @abstractmethod
    def delete_security_group(self, group_id: str) -> None:
        ...

    @abstractmethod
    def delete_key_pair(self, key_name: str) -> None:
        ...

    # -- waits ---------------------------------------------------------

    @abstractmethod
    def wait_until_running(self, instance_id: str, delay: int, max_attempts: int) -> InstanceHandle:
        """Block until `running`; raise ProviderTimeout otherwise."""
        ...

    @abstractmethod
    def wait_until_terminated(self, instance_id: str, delay: int, max_attempts: int) -> None:
        """Block until `terminated`; raise ProviderTimeout otherwise."""
        ...

    def get_plan(self, instance_name: str, instance_type: str, key_name: str, operator_ip: str) -> List[Dict]:
        """
        Returns a list of resources that WOULD be created by a provisioning
        run. Zero cloud calls. Each item: { "resource", "name", "type", "detail" }
        """
        return [
            {"resource": "Image lookup",   "name": "Ubuntu 22.04 LTS",      "type": "image",    "detail": "fallback: Amazon Linux 2"},
            {"resource": "Network",        "name": "default VPC",           "type": "network",  "detail": self.region},
            {"resource": "Security Group", "name": "ssh-only-sg-<timestamp>", "type": "security", "detail": f"tcp/22 from {operator_ip}/32"},
            {"resource": "Key Pair",       "name": key_name,                "type": "security", "detail": f"{key_name}.pem (0600)"},
            {"resource": "Instance",       "name": instance_name,           "type": "compute",  "detail": instance_type},
        ]
