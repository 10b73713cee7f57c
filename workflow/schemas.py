"""
workflow/schemas.py

Pydantic models for workflow inputs and the local state file.

  ProvisionRequest / ReclaimRequest : validated inputs from the CLI
  DevboxRecord                      : one provisioned box, as kept in state.json
  StateFile                         : the whole state.json document
"""

import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

# Coarse checks only: a mismatch makes the CLI ask for an override.
IPV4_PATTERN = re.compile(r"^[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}$")
REGION_PATTERN = re.compile(r"^[a-z]{2}-[a-z]+-[0-9]$")


def looks_like_ipv4(value: str) -> bool:
    return bool(IPV4_PATTERN.match(value or ""))


def looks_like_region(value: str) -> bool:
    return bool(REGION_PATTERN.match(value or ""))


def default_key_name(now: Optional[datetime] = None) -> str:
    return f"ssh-key-{(now or datetime.now()):%Y%m%d%H%M}"


class ProvisionRequest(BaseModel):
    """Inputs of one provisioning run."""
    region:         str  = Field("us-east-1",        description="AWS region")
    operator_ip:    str  = Field(...,                description="Caller's public IP; SSH is opened to <ip>/32 only")
    instance_name:  str  = Field("ssh-dev-instance", description="Name tag and SSH host alias")
    key_name:       str  = Field(default_factory=default_key_name, description="Key pair name")
    instance_type:  str  = Field("t2.small",         description="EC2 instance type")
    post_install:   bool = Field(False,              description="Also install Node.js, Python tools, Claude CLI")
    tunnel_service: bool = Field(True,               description="Register the editor tunnel as a systemd service")

    @field_validator("operator_ip")
    @classmethod
    def _strip_ip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("operator IP is required")
        return value

    @field_validator("instance_name", "key_name")
    @classmethod
    def _no_whitespace(cls, value: str) -> str:
        if not value or any(c.isspace() for c in value):
            raise ValueError("must be non-empty and contain no whitespace")
        return value

    @property
    def ingress_cidr(self) -> str:
        return f"{self.operator_ip}/32"


class ReclaimRequest(BaseModel):
    region:       str       = Field("us-east-1", description="AWS region")
    instance_ids: List[str] = Field(..., min_length=1, description="Instances to terminate")

    @field_validator("instance_ids")
    @classmethod
    def _instance_ids(cls, values: List[str]) -> List[str]:
        bad = [v for v in values if not v.startswith("i-")]
        if bad:
            raise ValueError(f"instance IDs should start with 'i-': {', '.join(bad)}")
        # de-duplicate, keep order
        return list(dict.fromkeys(values))


class DevboxRecord(BaseModel):
    instance_id:       str
    name:              str
    region:            str
    public_ip:         Optional[str] = None
    user:              str
    key_name:          str
    key_path:          str
    security_group_id: str
    created_at:        datetime = Field(default_factory=datetime.now)


class StateFile(BaseModel):
    instances: List[DevboxRecord] = Field(default_factory=list)

    @classmethod
    def load(cls, path) -> "StateFile":
        path = Path(path)
        if not path.exists():
            return cls()
        return cls.model_validate_json(path.read_text())

    def save(self, path) -> None:
        Path(path).write_text(self.model_dump_json(indent=4))

    def upsert(self, record: DevboxRecord) -> None:
        self.instances = [r for r in self.instances if r.instance_id != record.instance_id]
        self.instances.append(record)

    def remove(self, instance_ids) -> None:
        drop = set(instance_ids)
        self.instances = [r for r in self.instances if r.instance_id not in drop]

    def find(self, name_or_id: str) -> Optional[DevboxRecord]:
        for record in reversed(self.instances):
            if name_or_id in (record.instance_id, record.name):
                return record
        return None
