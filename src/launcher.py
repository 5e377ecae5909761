"""
Remote bootstrap of a freshly inserted worker instance.

A launcher waits for the instance to reach RUNNING, gets shell access over
SSH, copies the CI agent onto the machine and starts it. Every step is
bounded by the template's launch timeout.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Dict, Optional, Tuple

import paramiko

from clients import ComputeApiError, ComputeRestClient
from models import WorkerRecord, WorkerTemplate
from remote import SSH_PORT, SSH_TIMEOUT_SECONDS, ParamikoTransport, RemoteTransport, SshKeyPair

logger = logging.getLogger(__name__)

SSH_KEYS_METADATA_KEY = "ssh-keys"
AGENT_JAR_NAME = "agent.jar"

POLL_INTERVAL_SECONDS = 5
AUTH_ATTEMPTS = 30
AUTH_RETRY_INTERVAL_SECONDS = 15

WAITING_STATUSES = ("PROVISIONING", "STAGING", "STOPPING", "SUSPENDING")
FAILED_STATUSES = ("STOPPED", "SUSPENDED", "TERMINATED")

TRANSIENT_ERRORS = (OSError, EOFError, paramiko.SSHException)


class LaunchError(Exception):
    """The worker could not be brought online."""


class LaunchTimeoutError(LaunchError):
    """The launch deadline passed before the worker came online."""


@dataclass
class AgentChannel:
    """Control channel of a running agent, plus the session it lives on."""

    transport: RemoteTransport
    session: Any
    stdout: BinaryIO
    stdin: BinaryIO

    def close(self) -> None:
        self.transport.close(self.session)


class ComputeEngineLauncher:
    """Brings one worker from 'instance inserted' to 'agent running'.

    Subclasses provide credentials and the OS specific commands.
    """

    path_separator = "/"
    temp_dir = "/tmp"

    def __init__(
        self,
        client: ComputeRestClient,
        template: WorkerTemplate,
        agent_payload: bytes,
        transport: Optional[RemoteTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.template = template
        self.agent_payload = agent_payload
        self.transport = transport or ParamikoTransport()
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    def credentials(self, record: WorkerRecord) -> Tuple[str, Optional[str], Optional[str]]:
        """Return (username, password, private_key) for the worker."""
        raise NotImplementedError

    def sentinel_check_command(self) -> str:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    def launch(self, record: WorkerRecord) -> AgentChannel:
        """
        Bootstrap the worker.

        Args:
            record: Worker record; its insert operation is awaited first

        Returns:
            The running agent's control channel

        Raises:
            LaunchTimeoutError: If the launch timeout elapses
            LaunchError: If the instance or the agent fails to start
        """
        deadline = self.clock() + self.template.launch_timeout_seconds
        logger.info(f"Launching {record.name}")

        self._wait_for_insert(record, deadline)
        instance = self._wait_until_running(record, deadline)
        host = self.host_address(instance)
        username, password, private_key = self.credentials(record)

        session = self._connect(record, host, deadline)
        try:
            self._authenticate(record, session, username, password, private_key, deadline)
            if self.template.wait_for_startup_script:
                self._wait_for_startup_script(record, session, deadline)
            channel = self._start_agent(record, session)
        except BaseException:
            self.transport.close(session)
            raise
        logger.info(f"Agent started on {record.name}")
        return channel

    def _remaining(self, deadline: float) -> float:
        return deadline - self.clock()

    def _check_deadline(self, record: WorkerRecord, deadline: float, step: str) -> None:
        if self._remaining(deadline) <= 0:
            raise LaunchTimeoutError(
                f"Timed out after {self.template.launch_timeout_seconds}s "
                f"{step} for {record.name}"
            )

    def _wait_for_insert(self, record: WorkerRecord, deadline: float) -> None:
        if not record.insert_operation:
            return
        try:
            error = self.client.wait_for_operation(
                record.insert_operation,
                timeout=max(self._remaining(deadline), 0),
                poll_interval=POLL_INTERVAL_SECONDS,
            )
        except TimeoutError as e:
            raise LaunchTimeoutError(str(e)) from e
        if error:
            raise LaunchError(f"Insert of {record.name} failed: {error}")

    def _wait_until_running(self, record: WorkerRecord, deadline: float) -> Dict:
        while True:
            instance = self.client.get_instance(record.zone, record.name)
            if instance is None:
                raise LaunchError(f"Instance {record.name} disappeared during launch")
            status = instance.get("status", "")
            if status == "RUNNING":
                return instance
            if status in FAILED_STATUSES:
                raise LaunchError(f"Instance {record.name} is {status}")
            logger.debug(f"Instance {record.name} is {status}, waiting")
            self._check_deadline(record, deadline, "waiting for RUNNING")
            self.sleep(POLL_INTERVAL_SECONDS)

    def host_address(self, instance: Dict) -> str:
        """Pick the address to connect to: internal, or NAT with internal fallback."""
        interfaces = instance.get("networkInterfaces") or [{}]
        nic = interfaces[0]
        internal = nic.get("networkIP")
        host = internal
        if not self.template.use_internal_address:
            for access in nic.get("accessConfigs") or []:
                if access.get("natIP"):
                    host = access["natIP"]
                    break
        if not host:
            raise LaunchError(f"Instance {instance.get('name')} has no reachable address")
        return host

    def _connect(self, record: WorkerRecord, host: str, deadline: float) -> Any:
        attempt = 0
        while True:
            self._check_deadline(record, deadline, "connecting over SSH")
            attempt += 1
            try:
                timeout = min(SSH_TIMEOUT_SECONDS, max(self._remaining(deadline), 1))
                return self.transport.connect(host, SSH_PORT, timeout)
            except TRANSIENT_ERRORS as e:
                logger.info(
                    f"Waiting for SSH on {record.name} ({host}), attempt {attempt}: {e}"
                )
            self.sleep(POLL_INTERVAL_SECONDS)

    def _authenticate(
        self,
        record: WorkerRecord,
        session: Any,
        username: str,
        password: Optional[str],
        private_key: Optional[str],
        deadline: float,
    ) -> None:
        for attempt in range(1, AUTH_ATTEMPTS + 1):
            self._check_deadline(record, deadline, "authenticating")
            if self.transport.authenticate(
                session, username, password=password, private_key=private_key
            ):
                logger.debug(f"Authenticated to {record.name} as {username}")
                return
            logger.info(
                f"Authentication to {record.name} failed, attempt {attempt}/{AUTH_ATTEMPTS}"
            )
            if attempt < AUTH_ATTEMPTS:
                self.sleep(AUTH_RETRY_INTERVAL_SECONDS)
        raise LaunchError(
            f"Authentication to {record.name} as {username} failed "
            f"after {AUTH_ATTEMPTS} attempts"
        )

    def _wait_for_startup_script(
        self, record: WorkerRecord, session: Any, deadline: float
    ) -> None:
        command = self.sentinel_check_command()
        while self.transport.exec(session, command) != 0:
            logger.debug(f"Startup script still running on {record.name}")
            self._check_deadline(record, deadline, "waiting for the startup script")
            self.sleep(POLL_INTERVAL_SECONDS)
        logger.info(f"Startup script finished on {record.name}")

    def agent_path(self) -> str:
        return f"{self.temp_dir}{self.path_separator}{AGENT_JAR_NAME}"

    def _start_agent(self, record: WorkerRecord, session: Any) -> AgentChannel:
        java = self.template.java_exec_path
        agent_path = self.agent_path()

        logger.info(f"Copying agent to {record.name}:{agent_path}")
        self.transport.copy_file(session, self.agent_payload, agent_path)

        if self.transport.exec(session, f"{java} -fullversion") != 0:
            raise LaunchError(f"Java runtime '{java}' not found on {record.name}")

        stdout, stdin = self.transport.open_channel(session, f"{java} -jar {agent_path}")
        return AgentChannel(self.transport, session, stdout, stdin)


class LinuxLauncher(ComputeEngineLauncher):
    """Launcher for Linux images; installs a generated key when none is set."""

    def __init__(self, *args, key_factory: Callable[[str], SshKeyPair] = SshKeyPair.generate, **kwargs):
        super().__init__(*args, **kwargs)
        self.key_factory = key_factory

    def credentials(self, record: WorkerRecord) -> Tuple[str, Optional[str], Optional[str]]:
        user = self.template.run_as_user
        if self.template.ssh_private_key:
            return user, None, self.template.ssh_private_key

        key_pair = self.key_factory(user)
        try:
            error = self.client.append_instance_metadata(
                record.zone,
                record.name,
                [{"key": SSH_KEYS_METADATA_KEY, "value": key_pair.metadata_value()}],
            )
        except (ComputeApiError, TimeoutError) as e:
            raise LaunchError(f"Could not install SSH key on {record.name}: {e}") from e
        if error:
            raise LaunchError(f"Could not install SSH key on {record.name}: {error}")
        return user, None, key_pair.private_key

    def sentinel_check_command(self) -> str:
        return f"test -f {self.template.startup_sentinel()}"


class WindowsLauncher(ComputeEngineLauncher):
    """Launcher for Windows images running OpenSSH server."""

    path_separator = "\\"
    temp_dir = "C:\\Windows\\Temp"

    def credentials(self, record: WorkerRecord) -> Tuple[str, Optional[str], Optional[str]]:
        windows = self.template.windows
        if windows is None:
            raise LaunchError(f"Template {self.template.description} has no Windows credentials")
        return windows.username, windows.password or None, windows.private_key or None

    def sentinel_check_command(self) -> str:
        return (
            'powershell -Command "if (Test-Path '
            f"'{self.template.startup_sentinel()}') {{ exit 0 }} else {{ exit 1 }}\""
        )


def launcher_for(
    client: ComputeRestClient,
    template: WorkerTemplate,
    agent_payload: bytes,
    transport: Optional[RemoteTransport] = None,
) -> ComputeEngineLauncher:
    """Pick the launcher variant matching the template's OS."""
    launcher_class = WindowsLauncher if template.is_windows else LinuxLauncher
    return launcher_class(client, template, agent_payload, transport=transport)
