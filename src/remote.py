"""
Remote shell transport used to bootstrap workers.

The launcher only talks to the ``RemoteTransport`` protocol; the default
implementation drives a paramiko ``Transport`` directly so connecting and
authenticating are separate, individually retryable steps.
"""

import io
import logging
import socket
from dataclasses import dataclass
from typing import Any, BinaryIO, Optional, Protocol, Tuple

import paramiko

logger = logging.getLogger(__name__)

SSH_PORT = 22
SSH_TIMEOUT_SECONDS = 10


class RemoteTransport(Protocol):
    """What the bootstrap needs from a remote shell."""

    def connect(self, host: str, port: int, timeout: float) -> Any:
        ...

    def authenticate(
        self,
        session: Any,
        username: str,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
    ) -> bool:
        ...

    def copy_file(self, session: Any, data: bytes, remote_path: str) -> None:
        ...

    def exec(self, session: Any, command: str) -> int:
        ...

    def open_channel(self, session: Any, command: str) -> Tuple[BinaryIO, BinaryIO]:
        ...

    def close(self, session: Any) -> None:
        ...


@dataclass(frozen=True)
class SshKeyPair:
    """A generated key pair in the form GCE expects in ``ssh-keys`` metadata."""

    user: str
    public_key: str
    private_key: str

    @classmethod
    def generate(cls, user: str, bits: int = 2048) -> "SshKeyPair":
        key = paramiko.RSAKey.generate(bits)
        buf = io.StringIO()
        key.write_private_key(buf)
        public = f"{key.get_name()} {key.get_base64()}"
        return cls(user=user, public_key=public, private_key=buf.getvalue())

    def metadata_value(self) -> str:
        """``user:ssh-rsa AAAA... user``"""
        return f"{self.user}:{self.public_key} {self.user}"

    def __repr__(self) -> str:
        return f"SshKeyPair(user={self.user!r}, public_key={self.public_key!r})"


def load_private_key(private_key: str) -> paramiko.PKey:
    """
    Parse a PEM/OpenSSH private key of any type paramiko supports.

    Raises:
        paramiko.SSHException: If the key cannot be parsed
    """
    last_error: Optional[Exception] = None
    for key_class in (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey):
        try:
            return key_class.from_private_key(io.StringIO(private_key))
        except paramiko.SSHException as e:
            last_error = e
    raise paramiko.SSHException(f"Unsupported private key: {last_error}")


class ParamikoTransport:
    """``RemoteTransport`` backed by paramiko."""

    def connect(
        self, host: str, port: int = SSH_PORT, timeout: float = SSH_TIMEOUT_SECONDS
    ) -> paramiko.Transport:
        """
        Open a TCP connection and negotiate SSH. Host keys are not verified;
        the instance was created moments ago and has no known key yet.

        Raises:
            OSError: If the host is unreachable
            paramiko.SSHException: If SSH negotiation fails
        """
        sock = socket.create_connection((host, port), timeout=timeout)
        transport = paramiko.Transport(sock)
        try:
            transport.start_client(timeout=timeout)
        except paramiko.SSHException:
            transport.close()
            raise
        logger.debug(f"SSH transport negotiated with {host}:{port}")
        return transport

    def authenticate(
        self,
        session: paramiko.Transport,
        username: str,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
    ) -> bool:
        try:
            if private_key:
                session.auth_publickey(username, load_private_key(private_key))
            elif password is not None:
                session.auth_password(username, password)
            else:
                raise ValueError("A password or a private key is required")
        except paramiko.AuthenticationException as e:
            logger.debug(f"Authentication as {username} rejected: {e}")
            return False
        return session.is_authenticated()

    def copy_file(self, session: paramiko.Transport, data: bytes, remote_path: str) -> None:
        sftp = paramiko.SFTPClient.from_transport(session)
        try:
            sftp.putfo(io.BytesIO(data), remote_path)
        finally:
            sftp.close()

    def exec(self, session: paramiko.Transport, command: str) -> int:
        channel = session.open_session()
        try:
            channel.exec_command(command)
            return channel.recv_exit_status()
        finally:
            channel.close()

    def open_channel(
        self, session: paramiko.Transport, command: str
    ) -> Tuple[BinaryIO, BinaryIO]:
        channel = session.open_session()
        channel.exec_command(command)
        return channel.makefile("rb"), channel.makefile_stdin("wb")

    def close(self, session: paramiko.Transport) -> None:
        session.close()
