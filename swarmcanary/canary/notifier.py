# swarmcanary/canary/notifier.py
"""
Runs the operator's command when the canary fires
"""
import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import List, Optional

from ..common.config import IP_PLACEHOLDER, NOTIFY_COMPLETION_CHECK
from ..common.errors import NotifyFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotifyResult:
    command: List[str]
    pid: int
    returncode: Optional[int]  # None while the command is still running


class Notifier:
    """Launches the command template with the address substituted"""

    def __init__(self, command_template: str, placeholder: str = IP_PLACEHOLDER,
                 completion_check: float = NOTIFY_COMPLETION_CHECK):
        self.command_template = command_template
        self.placeholder = placeholder
        self.completion_check = completion_check
        self.argv = shlex.split(command_template)
        if not self.argv:
            raise ValueError("notify command is empty")

    def build_command(self, address: str) -> List[str]:
        return [arg.replace(self.placeholder, address) for arg in self.argv]

    def notify(self, address: str) -> NotifyResult:
        """
        Starts the notification command as a detached process

        Args:
            address: Textual IP address put in place of the placeholder

        Returns:
            NotifyResult with the exit status if the command finished
            within the completion check

        Raises:
            NotifyFailed: if the process could not be started
        """
        command = self.build_command(address)
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            raise NotifyFailed(f"could not run {command[0]!r}: {e}") from e

        try:
            returncode = process.wait(timeout=self.completion_check)
        except subprocess.TimeoutExpired:
            returncode = None

        if returncode:
            logger.warning(f"Notify command {command[0]!r} exited with status {returncode}")
        else:
            logger.info(f"Notify command {command[0]!r} started for {address} (pid {process.pid})")

        return NotifyResult(command=command, pid=process.pid, returncode=returncode)
