"""
test_schemas.py

Request validation and the state.json round trip.
"""

from datetime import datetime

import pytest
from pydantic import ValidationError

from workflow.schemas import (
    DevboxRecord,
    ProvisionRequest,
    ReclaimRequest,
    StateFile,
    default_key_name,
    looks_like_ipv4,
    looks_like_region,
)


def test_provision_defaults():
    request = ProvisionRequest(operator_ip="203.0.113.42")
    assert request.region == "us-east-1"
    assert request.instance_type == "t2.small"
    assert request.instance_name == "ssh-dev-instance"
    assert request.key_name.startswith("ssh-key-")
    assert request.tunnel_service is True
    assert request.post_install is False
    assert request.ingress_cidr == "203.0.113.42/32"


def test_provision_rejects_blank_ip_and_spaced_names():
    with pytest.raises(ValidationError):
        ProvisionRequest(operator_ip="   ")
    with pytest.raises(ValidationError):
        ProvisionRequest(operator_ip="203.0.113.42", instance_name="my box")


def test_default_key_name_is_timestamped():
    assert default_key_name(datetime(2026, 3, 1, 9, 30)) == "ssh-key-202603010930"


@pytest.mark.parametrize("value,expected", [
    ("203.0.113.42", True),
    ("10.0.0.1", True),
    ("localhost", False),
    ("203.0.113", False),
    ("", False),
])
def test_ipv4_shape(value, expected):
    assert looks_like_ipv4(value) is expected


@pytest.mark.parametrize("value,expected", [
    ("us-east-1", True),
    ("ap-southeast-2", True),
    ("us-gov-west-1", False),
    ("useast1", False),
])
def test_region_shape(value, expected):
    assert looks_like_region(value) is expected


def test_reclaim_request_dedupes_and_validates_ids():
    request = ReclaimRequest(instance_ids=["i-1", "i-2", "i-1"])
    assert request.instance_ids == ["i-1", "i-2"]
    with pytest.raises(ValidationError):
        ReclaimRequest(instance_ids=["sg-1"])
    with pytest.raises(ValidationError):
        ReclaimRequest(instance_ids=[])


def record(instance_id="i-1", name="dev") -> DevboxRecord:
    return DevboxRecord(
        instance_id=instance_id, name=name, region="us-east-1", public_ip="198.51.100.7",
        user="ubuntu", key_name="k", key_path="/tmp/k.pem", security_group_id="sg-1",
    )


def test_state_file_round_trip(tmp_path):
    path = tmp_path / "state.json"
    assert StateFile.load(path).instances == []

    state = StateFile()
    state.upsert(record("i-1", "dev"))
    state.upsert(record("i-2", "other"))
    state.upsert(record("i-1", "dev"))
    state.save(path)

    loaded = StateFile.load(path)
    assert [r.instance_id for r in loaded.instances] == ["i-2", "i-1"]
    assert loaded.find("dev").instance_id == "i-1"
    assert loaded.find("i-2").name == "other"
    assert loaded.find("nope") is None

    loaded.remove(["i-1"])
    assert [r.instance_id for r in loaded.instances] == ["i-2"]
