"""
remote/ssh.py

Authenticated remote command channel over SSH (paramiko).

Used for the connectivity gate, remote tooling installation and the
tunnel-service management commands. Output is streamed line by line to the
`log=` callable as it arrives rather than buffered until the command exits.
"""

import socket
from typing import Optional

import paramiko


class RemoteError(RuntimeError):
    """Connecting to, or running a command on, the remote host failed."""


class SSHChannel:
    """
    One SSH connection to a development box.

    Usage:
        with open_channel(host, "ubuntu", key_path, timeout=10) as ch:
            rc = ch.run("echo ok", log=log)
    """

    def __init__(self, host: str, username: str, key_path: str, port: int = 22):
        self.host = host
        self.username = username
        self.key_path = key_path
        self.port = port
        self._client: Optional[paramiko.SSHClient] = None

    def connect(self, timeout: float) -> None:
        client = paramiko.SSHClient()
        # Freshly launched host: its key cannot be in known_hosts yet.
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                self.host,
                port=self.port,
                username=self.username,
                key_filename=self.key_path,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except (paramiko.SSHException, OSError) as ex:
            client.close()
            raise RemoteError(f"SSH connect to {self.username}@{self.host} failed: {ex}") from ex
        self._client = client

    def run(self, command: str, log=print, stdin: Optional[str] = None,
            timeout: Optional[float] = None) -> int:
        """
        Run `command` remotely and stream combined stdout/stderr to log().

        Args:
            stdin:   Text written to the command's stdin, then closed. Used to
                     feed multi-line scripts to `bash -s`.
            timeout: Seconds of silence after which the read gives up.

        Returns:
            The remote exit status.
        """
        if self._client is None:
            raise RemoteError("SSH channel is not connected.")
        channel = None
        try:
            channel = self._client.get_transport().open_session()
            channel.set_combine_stderr(True)
            if timeout is not None:
                channel.settimeout(timeout)
            channel.exec_command(command)
            if stdin is not None:
                channel.sendall(stdin.encode())
                channel.shutdown_write()

            buffer = b""
            while True:
                chunk = channel.recv(4096)
                if not chunk:
                    break
                buffer += chunk
                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    log(f"    {line.decode('utf-8', errors='replace')}")
            if buffer:
                log(f"    {buffer.decode('utf-8', errors='replace')}")

            return channel.recv_exit_status()
        except (paramiko.SSHException, socket.timeout, OSError) as ex:
            raise RemoteError(f"Remote command failed on {self.host}: {ex}") from ex
        finally:
            if channel is not None:
                channel.close()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "SSHChannel":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def open_channel(host: str, username: str, key_path: str, timeout: float) -> SSHChannel:
    """Connect and return an SSHChannel; raises RemoteError on failure."""
    channel = SSHChannel(host, username, key_path)
    channel.connect(timeout=timeout)
    return channel
