"""
Blob storage collaborators: account firewall toggling and container copies.
"""

import logging
import os
import subprocess
import threading
import time
from typing import Dict, List, Optional, Tuple

from errors import ArmRequestError
from models import CopyTask, ResourceState, ServerTopology

logger = logging.getLogger(__name__)

FIREWALL_PROPAGATION_SECONDS = 30
AZCOPY_TIMEOUT_SECONDS = 120
AZCOPY_TERMINATE_SECONDS = 10


class StorageFirewall:
    """Opens storage account firewalls for the copy and puts them back after."""

    def __init__(self, api, sleep=time.sleep, propagation_seconds: int = FIREWALL_PROPAGATION_SECONDS):
        self.api = api
        self.sleep = sleep
        self.propagation_seconds = propagation_seconds

    def open(self, accounts: List[ServerTopology]) -> Dict[str, Tuple[ServerTopology, str]]:
        """
        Set `defaultAction=Allow` on every account that denies by default.

        If any account cannot be opened, the accounts already opened are put
        back before the error is raised.

        Returns:
            Previous default action per account name, for `restore`
        """
        previous: Dict[str, Tuple[ServerTopology, str]] = {}
        changed = False
        try:
            for account in accounts:
                if account.name in previous:
                    continue
                action = self.api.get_storage_default_action(account)
                if action != "Allow":
                    logger.info(f"Opening firewall on {account.name} (was {action})")
                    self.api.set_storage_default_action(account, "Allow")
                    changed = True
                previous[account.name] = (account, action)
        except ArmRequestError as e:
            logger.error(f"Failed to open storage firewalls: {e}")
            try:
                self.restore(previous)
            except ArmRequestError as restore_error:
                logger.error(f"Firewall restore after failed open also failed: {restore_error}")
            raise
        if changed:
            logger.info(f"Waiting {self.propagation_seconds}s for firewall rules to propagate")
            self.sleep(self.propagation_seconds)
        return previous

    def restore(self, previous: Dict[str, Tuple[ServerTopology, str]]) -> None:
        """
        Put back the default actions captured by `open`.

        Every account is attempted; the first failure is raised afterwards.
        """
        first_error: Optional[ArmRequestError] = None
        for name, (account, action) in previous.items():
            if action == "Allow":
                continue
            try:
                self.api.set_storage_default_action(account, action)
                logger.info(f"Restored firewall on {name} to {action}")
            except ArmRequestError as e:
                logger.error(f"Failed to restore firewall on {name} to {action}: {e}")
                first_error = first_error or e
        if first_error:
            raise first_error


def container_url(account: ServerTopology, container: str) -> str:
    return f"{account.endpoint_address.rstrip('/')}/{container}"


class ContainerCopyBackend:
    """
    Copies blob containers with azcopy.

    Each copy runs as a child process; its exit code is the readiness signal.
    azcopy authenticates through the Azure CLI login.
    """

    supports_tags = False
    kind = "container"

    def __init__(self, azcopy: str = "azcopy", popen=subprocess.Popen, run=subprocess.run):
        self.azcopy = azcopy
        self.popen = popen
        self.run = run
        self._processes: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _env() -> Dict[str, str]:
        env = dict(os.environ)
        env.setdefault("AZCOPY_AUTO_LOGIN_TYPE", "AZCLI")
        return env

    def _azcopy(self, *args: str) -> subprocess.CompletedProcess:
        return self.run(
            [self.azcopy, *args],
            capture_output=True,
            text=True,
            timeout=AZCOPY_TIMEOUT_SECONDS,
            env=self._env(),
        )

    def destination_id(self, task: CopyTask, target) -> str:
        return container_url(target.destination, task.destination_name)

    def exists(self, task: CopyTask, target) -> bool:
        try:
            result = self._azcopy("list", self.destination_id(task, target))
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"azcopy list {task.destination_name} failed: {e}")
            return False
        return result.returncode == 0

    def delete(self, task: CopyTask, target) -> bool:
        """Remove the destination container contents; absence is not an error."""
        try:
            result = self._azcopy("rm", self.destination_id(task, target), "--recursive=true")
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"azcopy rm {task.destination_name} failed: {e}")
            return False
        if result.returncode != 0:
            logger.debug(
                f"azcopy rm {task.destination_name} exited {result.returncode}: "
                f"{(result.stderr or result.stdout or '').strip()[:200]}"
            )
            return False
        return True

    def start_copy(self, task: CopyTask, target) -> subprocess.Popen:
        source = container_url(target.source, task.source.name)
        destination = self.destination_id(task, target)
        process = self.popen(
            [self.azcopy, "copy", source, destination, "--recursive"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            env=self._env(),
        )
        with self._lock:
            self._processes[task.destination_name] = process
        return process

    def state(self, task: CopyTask, target) -> ResourceState:
        with self._lock:
            process = self._processes.get(task.destination_name)
        if process is None:
            return ResourceState.UNKNOWN
        code = process.poll()
        if code is None:
            return ResourceState.CREATING
        with self._lock:
            self._processes.pop(task.destination_name, None)
        if code == 0:
            return ResourceState.ONLINE
        logger.error(f"azcopy for {task.destination_name} exited with code {code}")
        return ResourceState.FAILED

    def cancel(self, task: CopyTask, target) -> bool:
        """
        Stop a running azcopy child and reap it.

        Returns:
            True if a process was still tracked for the task
        """
        with self._lock:
            process = self._processes.pop(task.destination_name, None)
        if process is None:
            return False
        if process.poll() is None:
            logger.warning(f"Terminating azcopy for {task.destination_name}")
            process.terminate()
            try:
                process.wait(timeout=AZCOPY_TERMINATE_SECONDS)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        return True
