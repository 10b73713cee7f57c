"""
providers/aws_provider.py

Concrete implementation of CloudProvider for AWS EC2, on boto3.

Every response is normalised into the dataclasses from providers/base.py
before it leaves this module; botocore ClientError / WaiterError are
converted into ProviderError / ProviderTimeout.
"""

from typing import Optional

import boto3
from botocore.exceptions import ClientError, WaiterError

from .base import (
    ACTIVE_STATES,
    CloudProvider,
    ImageFilter,
    ImageInfo,
    InstanceDetails,
    InstanceHandle,
    InstanceSpec,
    KeyMaterial,
    ProviderError,
    ProviderTimeout,
    ResourceUsage,
    SecurityGroupInfo,
    SecurityRule,
)

# Error codes that mean "this resource does not exist"
_INSTANCE_NOT_FOUND = ("InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed")
_GROUP_NOT_FOUND = ("InvalidGroup.NotFound", "InvalidGroupId.Malformed")


def _error_code(ex: ClientError) -> str:
    return ex.response.get("Error", {}).get("Code", "Unknown")


def _wrap(ex: ClientError, action: str) -> ProviderError:
    code = _error_code(ex)
    message = ex.response.get("Error", {}).get("Message", str(ex))
    return ProviderError(f"{action} failed ({code}): {message}", code=code)


class AWSProvider(CloudProvider):
    """
    AWS implementation of CloudProvider.
    Authenticates through the default boto3 credential chain
    (env vars, AWS_PROFILE, ~/.aws/credentials, instance role).

    The EC2 client is created lazily so that --plan and other offline
    operations work without credentials.
    """

    name = "aws"

    def __init__(self, region: str, client=None):
        super().__init__(region)
        self._ec2 = client

    def _client(self):
        if self._ec2 is None:
            self._ec2 = boto3.client("ec2", region_name=self.region)
        return self._ec2

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    def find_latest_image(self, image_filter: ImageFilter) -> Optional[ImageInfo]:
        try:
            response = self._client().describe_images(
                Owners=list(image_filter.owners),
                Filters=[
                    {"Name": "name", "Values": [image_filter.name_pattern]},
                    {"Name": "state", "Values": ["available"]},
                ],
            )
        except ClientError as ex:
            raise _wrap(ex, "describe-images") from ex

        images = response.get("Images", [])
        if not images:
            return None
        # CreationDate is ISO-8601, so lexical order is chronological
        newest = max(images, key=lambda img: img.get("CreationDate", ""))
        return ImageInfo(
            image_id=newest["ImageId"],
            name=newest.get("Name", ""),
            created=newest.get("CreationDate", ""),
            family=image_filter.family,
        )

    def find_default_network(self) -> Optional[str]:
        try:
            response = self._client().describe_vpcs(
                Filters=[{"Name": "isDefault", "Values": ["true"]}]
            )
        except ClientError as ex:
            raise _wrap(ex, "describe-vpcs") from ex
        vpcs = response.get("Vpcs", [])
        return vpcs[0]["VpcId"] if vpcs else None

    def describe_instance(self, instance_id: str) -> Optional[InstanceDetails]:
        try:
            response = self._client().describe_instances(InstanceIds=[instance_id])
        except ClientError as ex:
            if _error_code(ex) in _INSTANCE_NOT_FOUND:
                return None
            raise _wrap(ex, f"describe-instances {instance_id}") from ex

        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return self._to_details(instance)
        return None

    def describe_security_group(self, group_id: str) -> Optional[SecurityGroupInfo]:
        group = self._get_group(group_id)
        if group is None:
            return None
        return SecurityGroupInfo(
            group_id=group["GroupId"],
            name=group.get("GroupName", ""),
            is_default=group.get("GroupName") == "default",
        )

    def security_group_usage(self, group_id: str) -> ResourceUsage:
        client = self._client()
        try:
            instances = 0
            paginator = client.get_paginator("describe_instances")
            for page in paginator.paginate(
                Filters=[
                    {"Name": "instance.group-id", "Values": [group_id]},
                    {"Name": "instance-state-name", "Values": list(ACTIVE_STATES)},
                ]
            ):
                for reservation in page.get("Reservations", []):
                    instances += len(reservation.get("Instances", []))

            group = self._get_group(group_id)
            references_out = 0
            if group is not None:
                references_out = sum(
                    1 for perm in group.get("IpPermissions", [])
                    if perm.get("UserIdGroupPairs")
                )

            referencing = client.describe_security_groups(
                Filters=[{"Name": "ip-permission.group-id", "Values": [group_id]}]
            ).get("SecurityGroups", [])
            referenced_by = sum(1 for g in referencing if g.get("GroupId") != group_id)
        except ClientError as ex:
            raise _wrap(ex, f"usage lookup for {group_id}") from ex

        return ResourceUsage(
            instances=instances,
            references_out=references_out,
            referenced_by=referenced_by,
        )

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------

    def create_security_group(self, name: str, description: str, network_id: str) -> str:
        try:
            response = self._client().create_security_group(
                GroupName=name, Description=description, VpcId=network_id
            )
        except ClientError as ex:
            raise _wrap(ex, "create-security-group") from ex
        return response["GroupId"]

    def authorize_ingress(self, rule: SecurityRule) -> None:
        try:
            self._client().authorize_security_group_ingress(
                GroupId=rule.group_id,
                IpPermissions=[
                    {
                        "IpProtocol": rule.protocol,
                        "FromPort": rule.port,
                        "ToPort": rule.port,
                        "IpRanges": [{"CidrIp": rule.cidr, "Description": "operator"}],
                    }
                ],
            )
        except ClientError as ex:
            raise _wrap(ex, "authorize-security-group-ingress") from ex

    def create_key_pair(self, key_name: str) -> KeyMaterial:
        try:
            response = self._client().create_key_pair(KeyName=key_name)
        except ClientError as ex:
            if _error_code(ex) == "InvalidKeyPair.Duplicate":
                raise ProviderError(
                    f"Key pair '{key_name}' already exists.", code=_error_code(ex)
                ) from ex
            raise _wrap(ex, "create-key-pair") from ex
        return KeyMaterial(key_name=response["KeyName"], private_key_pem=response["KeyMaterial"])

    def run_instance(self, spec: InstanceSpec) -> InstanceHandle:
        try:
            response = self._client().run_instances(
                ImageId=spec.ami_id,
                InstanceType=spec.instance_type,
                KeyName=spec.key_name,
                SecurityGroupIds=[spec.security_group_id],
                UserData=spec.user_data,
                MinCount=1,
                MaxCount=1,
                TagSpecifications=[
                    {
                        "ResourceType": "instance",
                        "Tags": [{"Key": "Name", "Value": spec.name}],
                    }
                ],
            )
        except ClientError as ex:
            raise _wrap(ex, "run-instances") from ex
        return self._to_handle(response["Instances"][0])

    def terminate_instance(self, instance_id: str) -> None:
        try:
            self._client().terminate_instances(InstanceIds=[instance_id])
        except ClientError as ex:
            raise _wrap(ex, f"terminate-instances {instance_id}") from ex

    def delete_security_group(self, group_id: str) -> None:
        try:
            self._client().delete_security_group(GroupId=group_id)
        except ClientError as ex:
            raise _wrap(ex, f"delete-security-group {group_id}") from ex

    def delete_key_pair(self, key_name: str) -> None:
        try:
            self._client().delete_key_pair(KeyName=key_name)
        except ClientError as ex:
            raise _wrap(ex, f"delete-key-pair {key_name}") from ex

    # ------------------------------------------------------------------
    # waits
    # ------------------------------------------------------------------

    def wait_until_running(self, instance_id: str, delay: int, max_attempts: int) -> InstanceHandle:
        self._wait("instance_running", instance_id, delay, max_attempts)
        details = self.describe_instance(instance_id)
        if details is None:
            raise ProviderError(f"Instance {instance_id} disappeared after reaching running.")
        return details.handle

    def wait_until_terminated(self, instance_id: str, delay: int, max_attempts: int) -> None:
        self._wait("instance_terminated", instance_id, delay, max_attempts)

    # ------------------------------------------------------------------
    # private helpers
    # ------------------------------------------------------------------

    def _wait(self, waiter_name: str, instance_id: str, delay: int, max_attempts: int) -> None:
        waiter = self._client().get_waiter(waiter_name)
        try:
            waiter.wait(
                InstanceIds=[instance_id],
                WaiterConfig={"Delay": delay, "MaxAttempts": max_attempts},
            )
        except WaiterError as ex:
            raise ProviderTimeout(
                f"{instance_id} did not reach '{waiter_name.split('_')[-1]}' "
                f"after {max_attempts} checks {delay}s apart: {ex}"
            ) from ex

    def _get_group(self, group_id: str) -> Optional[dict]:
        try:
            response = self._client().describe_security_groups(GroupIds=[group_id])
        except ClientError as ex:
            if _error_code(ex) in _GROUP_NOT_FOUND:
                return None
            raise _wrap(ex, f"describe-security-groups {group_id}") from ex
        groups = response.get("SecurityGroups", [])
        return groups[0] if groups else None

    @staticmethod
    def _to_handle(instance: dict) -> InstanceHandle:
        return InstanceHandle(
            instance_id=instance["InstanceId"],
            state=instance.get("State", {}).get("Name", "unknown"),
            public_ip=instance.get("PublicIpAddress"),
            private_ip=instance.get("PrivateIpAddress"),
        )

    def _to_details(self, instance: dict) -> InstanceDetails:
        tags = {t["Key"]: t["Value"] for t in instance.get("Tags", [])}
        return InstanceDetails(
            handle=self._to_handle(instance),
            name=tags.get("Name"),
            instance_type=instance.get("InstanceType", "unknown"),
            security_group_ids=[g["GroupId"] for g in instance.get("SecurityGroups", [])],
            key_name=instance.get("KeyName"),
            launch_time=instance.get("LaunchTime"),
        )
