"""
workflow/__init__.py

Provisioning and teardown workflows for development boxes.

Usage:
    from workflow import Provisioner, Reclaimer
    report = Provisioner(provider, key_dir, ssh_config).run(request)
"""

from .errors import ConnectivityGateError, FatalSetupError, TimeoutWaitError, WorkflowError
from .provisioner import Provisioner, ProvisionReport
from .reclaimer import Reclaimer, ReclaimBatch, ReclaimReport, confirmation_satisfied
from .schemas import ProvisionRequest, ReclaimRequest, StateFile

__all__ = [
    "ConnectivityGateError",
    "FatalSetupError",
    "TimeoutWaitError",
    "WorkflowError",
    "Provisioner",
    "ProvisionReport",
    "Reclaimer",
    "ReclaimBatch",
    "ReclaimReport",
    "confirmation_satisfied",
    "ProvisionRequest",
    "ReclaimRequest",
    "StateFile",
]
