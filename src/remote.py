"""
Remote command execution and workspace transfer over WinRM (HTTPS, port 5986).
"""

import base64
import logging
import os
import sys
import time
import uuid
from typing import Callable, Optional

from winrm.exceptions import WinRMOperationTimeoutError
from winrm.protocol import Protocol

import polling
from bucket import create_zip, write_zip_to_bucket
from clients import StorageRestClient
from errors import BuilderError, RemoteCommandError, WaitTimeoutError
from models import RemoteServer
from scripts import (
    powershell,
    render_bucket_download,
    render_clean_folder,
    render_direct_copy_restore,
)

logger = logging.getLogger(__name__)

WINRM_PORT = 5986
READY_COMMAND = "docker -v"
READY_ATTEMPT_TIMEOUT = 120

# WinRM waits this long for output per poll; HTTP reads get 10 s more
OPERATION_TIMEOUT = 20
READ_TIMEOUT_MARGIN = 10

# Direct copy: base64 chunk per echo (cmd.exe lines are capped at 8191 chars)
COPY_CHUNK_SIZE = 4000
MAX_OPERATIONS_PER_SHELL = 15


def winrm_protocol(
    server: RemoteServer, operation_timeout: int = OPERATION_TIMEOUT
) -> Protocol:
    """Create a WinRM protocol client for ``server``."""
    return Protocol(
        endpoint=f"https://{server.hostname}:{WINRM_PORT}/wsman",
        transport="basic",
        username=server.username,
        password=server.password,
        server_cert_validation="ignore",
        operation_timeout_sec=operation_timeout,
        read_timeout_sec=operation_timeout + READ_TIMEOUT_MARGIN,
    )


class RemoteWindowsServer:
    """Runs commands on, and copies files to, a Windows builder instance."""

    def __init__(
        self,
        server: RemoteServer,
        storage: Optional[StorageRestClient] = None,
        protocol_factory: Callable[..., Protocol] = winrm_protocol,
        stdout=None,
        stderr=None,
    ):
        """
        Args:
            server: Connection details of the instance
            storage: Storage client for the bucket relay (None disables it)
            protocol_factory: Builds the WinRM protocol client
            stdout: Stream receiving remote stdout (defaults to sys.stdout)
            stderr: Stream receiving remote stderr (defaults to sys.stderr)
        """
        self.server = server
        self.storage = storage
        self.protocol_factory = protocol_factory
        self.stdout = stdout
        self.stderr = stderr

    @property
    def hostname(self) -> str:
        return self.server.hostname

    def _protocol(self, deadline: float) -> Protocol:
        """Protocol client whose WinRM operation timeout fits before ``deadline``."""
        remaining = int(deadline - time.monotonic())
        operation_timeout = max(1, min(OPERATION_TIMEOUT, remaining))
        return self.protocol_factory(self.server, operation_timeout=operation_timeout)

    def run_command(self, command: str, path: str, timeout: float) -> None:
        """
        Run ``command`` with ``path`` as working directory.

        Remote stdout and stderr are streamed as they arrive. The deadline is
        checked between output polls and each poll is bounded by the remaining
        time, so a call can overrun ``timeout`` by at most one HTTP read margin
        (READ_TIMEOUT_MARGIN seconds).

        Args:
            command: cmd.exe command line
            path: Remote working directory
            timeout: Deadline for the whole call in seconds

        Raises:
            ValueError: If timeout is not positive
            WaitTimeoutError: If the command does not finish in time
            RemoteCommandError: If the command exits non-zero
        """
        if timeout <= 0:
            raise ValueError("run timeout must be greater than 0")

        deadline = time.monotonic() + timeout
        protocol = self._protocol(deadline)
        shell_id = protocol.open_shell(codepage=65001)
        try:
            exit_code = self._execute(
                protocol, shell_id, f'cd /d "{path}" & {command}', deadline
            )
        finally:
            protocol.close_shell(shell_id)

        if exit_code != 0:
            raise RemoteCommandError(exit_code, self.hostname)

    def _execute(self, protocol: Protocol, shell_id: str, cmdline: str, deadline: float) -> int:
        command_id = protocol.run_command(shell_id, cmdline)
        try:
            while True:
                if time.monotonic() > deadline:
                    raise WaitTimeoutError(
                        f"Remote command on {self.hostname} did not finish in time"
                    )
                try:
                    out, err, exit_code, done = protocol.get_command_output_raw(
                        shell_id, command_id
                    )
                except WinRMOperationTimeoutError:
                    # No output within the WinRM operation timeout
                    continue
                self._write(self.stdout or sys.stdout, out)
                self._write(self.stderr or sys.stderr, err)
                if done:
                    return exit_code
        finally:
            try:
                protocol.cleanup_command(shell_id, command_id)
            except Exception as e:
                logger.debug(f"Cleanup of command on {self.hostname} failed: {e}")

    @staticmethod
    def _write(stream, data: bytes) -> None:
        if data:
            stream.write(data.decode("utf-8", errors="replace"))
            stream.flush()

    def wait_until_ready(self, setup_timeout: float) -> None:
        """
        Wait until WinRM answers and Docker is installed.

        Raises:
            WaitTimeoutError: If the server is not ready within setup_timeout
        """
        logger.info(
            f"Waiting at most {setup_timeout:.0f}s for WinRM connection and Docker on {self.hostname}"
        )

        def ready():
            try:
                self.run_command(
                    READY_COMMAND,
                    self.server.workspace_folder,
                    min(setup_timeout, READY_ATTEMPT_TIMEOUT),
                )
            except Exception as e:
                logger.debug(f"{self.hostname} not ready yet: {e}")
                return None
            return True

        polling.wait_for(
            ready,
            timeout=setup_timeout,
            interval=polling.READY_POLL_INTERVAL,
            description=f"WinRM connection and Docker on {self.hostname}",
        )

    def copy(self, input_path: str, copy_timeout: float) -> None:
        """
        Copy the local workspace to the server's workspace folder.

        The bucket relay is tried first; any failure falls back to the direct
        WinRM copy.

        Raises:
            ValueError: If copy_timeout is not positive
        """
        if copy_timeout <= 0:
            raise ValueError("copy timeout must be greater than 0")

        try:
            self._copy_via_bucket(input_path, copy_timeout)
            logger.info(
                f"Successfully copied data via GCS bucket to {self.server.workspace_folder}"
            )
            return
        except Exception as e:
            logger.warning(f"Failed to copy data via GCS bucket: {e}")

        self._copy_direct(input_path, copy_timeout)
        logger.info(
            f"Successfully copied data via WinRM to {self.server.workspace_folder}"
        )

    def _copy_via_bucket(self, input_path: str, copy_timeout: float) -> None:
        if self.storage is None or not self.server.workspace_bucket:
            raise BuilderError("no workspace bucket configured")

        object_name = f"windows-builder-{time.time_ns()}-{uuid.uuid4().hex[:8]}"
        gs_url = write_zip_to_bucket(
            self.storage, self.server.workspace_bucket, object_name, input_path
        )
        script = render_bucket_download(gs_url, self.server.workspace_folder)
        self.run_command(powershell(script), "C:\\", copy_timeout)

    def _copy_direct(self, input_path: str, copy_timeout: float) -> None:
        """Stream the zipped workspace as base64 chunks and expand it remotely."""
        deadline = time.monotonic() + copy_timeout
        folder = self.server.workspace_folder
        b64_path = f"{folder}.b64"

        zip_path = create_zip(input_path)
        try:
            with open(zip_path, "rb") as f:
                encoded = base64.b64encode(f.read()).decode("ascii")
        finally:
            os.remove(zip_path)

        commands = [f'if exist "{b64_path}" del /f /q "{b64_path}"']
        commands.extend(
            f'echo {encoded[i:i + COPY_CHUNK_SIZE]} >> "{b64_path}"'
            for i in range(0, len(encoded), COPY_CHUNK_SIZE)
        )
        logger.info(
            f"Copying {len(encoded)} base64 bytes to {self.hostname} in {len(commands) - 1} chunks"
        )

        for start in range(0, len(commands), MAX_OPERATIONS_PER_SHELL):
            protocol = self._protocol(deadline)
            shell_id = protocol.open_shell(codepage=65001)
            try:
                for cmdline in commands[start:start + MAX_OPERATIONS_PER_SHELL]:
                    exit_code = self._execute(protocol, shell_id, cmdline, deadline)
                    if exit_code != 0:
                        raise RemoteCommandError(exit_code, self.hostname)
            finally:
                protocol.close_shell(shell_id)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise WaitTimeoutError(f"Copy to {self.hostname} did not finish in time")
        script = render_direct_copy_restore(b64_path, folder)
        self.run_command(powershell(script), "C:\\", remaining)

    def clean_folder(self) -> None:
        """Delete the workspace folder."""
        logger.info(
            f"Instance: {self.hostname} cleaning up workspace folder: {self.server.workspace_folder}"
        )
        script = render_clean_folder(self.server.workspace_folder)
        self.run_command(powershell(script), "C:\\", polling.CLEANUP_TIMEOUT)
