"""
remote/__init__.py

Remote side of a development box: the SSH command channel and the fixed
scripts run over it (boot payload, editor install, toolchain, tunnel service).
"""

from .ssh import RemoteError, SSHChannel, open_channel

__all__ = ["RemoteError", "SSHChannel", "open_channel"]
