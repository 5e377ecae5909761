"""
Detects preemption of preemptible workers via the GCE metadata server.
"""

import logging
from typing import Any, Callable, Optional

import paramiko

from models import WorkerRecord
from remote import RemoteTransport

logger = logging.getLogger(__name__)

METADATA_PREEMPTED_URL = (
    "http://metadata.google.internal/computeMetadata/v1/instance/preempted"
)

LINUX_CHECK_COMMAND = (
    f'curl -sf -H "Metadata-Flavor: Google" '
    f'"{METADATA_PREEMPTED_URL}?wait_for_change=true" | grep -q TRUE'
)
WINDOWS_CHECK_COMMAND = (
    'powershell -Command "$r = Invoke-RestMethod -Headers @{\'Metadata-Flavor\'=\'Google\'} '
    f"-Uri '{METADATA_PREEMPTED_URL}?wait_for_change=true'; "
    "if ($r -eq 'TRUE') { exit 0 } else { exit 1 }\""
)


class PreemptionWatcher:
    """Long-polls the preemption flag on a worker over its SSH session.

    ``run`` blocks until the metadata server reports a change, which can take
    as long as the worker is online.
    """

    def __init__(
        self,
        transport: RemoteTransport,
        session: Any,
        record: WorkerRecord,
        windows: bool = False,
        on_preempted: Optional[Callable[[WorkerRecord], None]] = None,
    ):
        self.transport = transport
        self.session = session
        self.record = record
        self.command = WINDOWS_CHECK_COMMAND if windows else LINUX_CHECK_COMMAND
        self.on_preempted = on_preempted

    def run(self) -> bool:
        """Return True if the worker was preempted."""
        logger.debug(f"Watching {self.record.name} for preemption")
        try:
            status = self.transport.exec(self.session, self.command)
        except (OSError, EOFError, paramiko.SSHException) as e:
            # the session goes away on normal termination too
            logger.debug(f"Preemption check on {self.record.name} ended: {e}")
            return False
        if status != 0:
            return False

        logger.warning(f"Worker {self.record.name} was preempted")
        self.record.mark_preempted()
        if self.on_preempted:
            self.on_preempted(self.record)
        return True

