"""
workflow/errors.py

Error kinds raised by the provisioning and teardown workflows.

  FatalSetupError       : image/network/security-rule/key/launch failures
  TimeoutWaitError      : a state-transition wait ran out of attempts
  ConnectivityGateError : the SSH round-trip never succeeded

All carry the phase label so the CLI can say where the run stopped.
Soft degradations are never raised; they land in the run report's warnings.
"""


class WorkflowError(RuntimeError):
    def __init__(self, phase: str, message: str):
        super().__init__(f"[{phase}] {message}")
        self.phase = phase
        self.detail = message
        self.report = None


class FatalSetupError(WorkflowError):
    pass


class TimeoutWaitError(WorkflowError):
    pass


class ConnectivityGateError(WorkflowError):
    def __init__(self, phase: str, message: str, attempts: int):
        super().__init__(phase, message)
        self.attempts = attempts
