"""
Multi-arch Windows container build orchestration.

One builder instance per Windows version builds and pushes
``<image>_<version>``; one of them then creates and pushes the manifest list
``<image>`` over all built versions.
"""

import logging
import queue
import threading
import time
from datetime import datetime
from typing import Dict, List, Optional

from bucket import ensure_bucket
from clients import ComputeRestClient, StorageRestClient
from config import BuilderConfig
from errors import BuilderError, ImageNotFoundError, InternalConsistencyError
from instances import InstanceManager
from models import BuildOutcome, BuildServer, VersionEntry
from network import check_project_firewalls
from remote import RemoteWindowsServer
from scripts import powershell, render_manifest_create, render_single_arch_build

logger = logging.getLogger(__name__)


class MultiArchBuilder:
    """Builds a multi-arch Windows container image on ephemeral instances."""

    def __init__(
        self,
        config: BuilderConfig,
        compute: Optional[ComputeRestClient] = None,
        storage: Optional[StorageRestClient] = None,
        instances: Optional[InstanceManager] = None,
        remote_factory=RemoteWindowsServer,
    ):
        """
        Initialize the builder.

        Args:
            config: Immutable run configuration
            compute: Compute client (created from config when omitted)
            storage: Storage client (created from config when omitted)
            instances: Instance manager (created from compute when omitted)
            remote_factory: Builds a RemoteWindowsServer from (RemoteServer, storage)
        """
        self.config = config
        self.compute = compute or ComputeRestClient(project_id=config.project_id)
        self.storage = storage or StorageRestClient(project_id=config.project_id)
        self.instances = instances or InstanceManager(
            self.compute, config.project_id, workspace_bucket=config.workspace_bucket
        )
        self.remote_factory = remote_factory

        self.stats = {
            "total": len(config.versions),
            "built": 0,
            "skipped": 0,
            "failed": 0,
            "manifest_created": 0,
        }

        self.run_start_time: Optional[float] = None
        self.run_end_time: Optional[float] = None
        self.outcomes: List[BuildOutcome] = []
        self.manifest_server: Optional[str] = None

    def _remote(self, server: BuildServer) -> RemoteWindowsServer:
        return self.remote_factory(server.remote, self.storage)

    def run(self) -> Dict:
        """
        Execute the whole build.

        Returns:
            Statistics dictionary

        Raises:
            BuilderError: If setup, any single-arch build or the manifest fails
        """
        self.run_start_time = time.time()
        cfg = self.config

        logger.info("=" * 70)
        logger.info("Windows Multi-Arch Container Builder")
        logger.info("=" * 70)
        logger.info(f"Project: {cfg.project_id}")
        logger.info(f"Image: {cfg.container_image_name}")
        logger.info(f"Versions: {', '.join(v.version for v in cfg.versions)}")
        logger.info(f"Zone: {cfg.zone}")
        logger.info(f"Workspace: {cfg.workspace_path} (bucket: {cfg.workspace_bucket})")
        logger.info(f"Reuse instances: {cfg.reuse_instances}")
        logger.info(f"Internal IP: {cfg.use_internal_ip}")
        logger.info(f"Setup timeout: {cfg.setup_timeout}s")
        logger.info(f"Copy timeout: {cfg.copy_timeout}s")
        logger.info(f"Command timeout: {cfg.command_timeout}s")
        logger.info(f"Start time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        logger.info("=" * 70)

        self.setup_project()
        try:
            self.outcomes = self.build_single_arch_containers()
            self.build_multi_arch_container(self.outcomes)
        finally:
            self.shutdown_build_servers(self.outcomes)
            self.run_end_time = time.time()
            self._print_report()

        logger.info("Windows multi-arch container building process is completed")
        return self.stats

    def setup_project(self) -> None:
        """
        Create the workspace bucket and check WinRM firewall rules.

        Raises:
            SetupError: If the project is not usable; no instance exists yet
        """
        ensure_bucket(self.storage, self.config.workspace_bucket)

        if self.config.skip_firewall_check or self.config.use_internal_ip:
            logger.info("Skipping checks that WinRM firewall rules exist")
            return
        check_project_firewalls(self.compute, self.config.network_config())

    def build_single_arch_containers(self) -> List[BuildOutcome]:
        """
        Build every version concurrently, one thread per version.

        Returns:
            One outcome per version

        Raises:
            InternalConsistencyError: If an outcome went missing
            BuilderError: If any version failed (all outcomes are kept on
                self.outcomes so their servers can be shut down)
        """
        versions = self.config.versions
        results: "queue.Queue[BuildOutcome]" = queue.Queue(maxsize=len(versions))

        threads = [
            threading.Thread(
                target=lambda entry=entry: results.put(self._build_task(entry)),
                name=f"build-{entry.version}",
            )
            for entry in versions
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # Drain what arrived so every server can still be shut down
        outcomes: List[BuildOutcome] = []
        while not results.empty():
            outcomes.append(results.get_nowait())
        self.outcomes = outcomes

        if len(outcomes) != len(versions):
            raise InternalConsistencyError(
                f"Expected {len(versions)} build outcomes, got {len(outcomes)}"
            )

        for outcome in outcomes:
            if outcome.skipped:
                self.stats["skipped"] += 1
            elif outcome.error is not None:
                self.stats["failed"] += 1
            else:
                self.stats["built"] += 1

        for outcome in outcomes:
            if outcome.error is not None:
                raise BuilderError(
                    f"Error building single-arch container for Windows "
                    f"{outcome.version}: {outcome.error}"
                ) from outcome.error
        return outcomes

    def _build_task(self, entry: VersionEntry) -> BuildOutcome:
        # Never raises: the thread must always deliver an outcome
        outcome = BuildOutcome(version=entry.version, start_time=time.time())
        try:
            outcome.server, outcome.error = self.build_single_arch_container(entry)
        except Exception as e:
            logger.exception(f"Unexpected error building Windows {entry.version}")
            outcome.error = e
        outcome.end_time = time.time()
        return outcome

    def build_single_arch_container(self, entry: VersionEntry):
        """
        Bring up an instance for ``entry`` and build its container on it.

        Returns:
            (server, error): (server, None) on success, (None, None) if the
            image family no longer exists, (server or None, error) on failure.
            A returned server is still running and must be shut down.
        """
        cfg = self.config
        ver = entry.version
        server_config = cfg.build_server_config(entry)

        server: Optional[BuildServer] = None
        if cfg.reuse_instances:
            logger.info(f"Looking for an existing {ver} instance to reuse")
            try:
                server = self.instances.find_reusable(server_config)
            except Exception as e:
                logger.warning(
                    f"Could not reuse an existing Windows {ver} instance, creating a new one: {e}"
                )
                server = None

        try:
            if server is None:
                server = self.instances.create(server_config)
        except ImageNotFoundError:
            logger.warning(
                f"Failed to create Windows {ver} instance, it may be expired, so skip "
                f"it to continue without stamping Windows {ver} manifest"
            )
            return None, None
        except Exception as e:
            logger.error(f"Failed to bring up Windows {ver} instance: {e}")
            return None, e

        remote = self._remote(server)
        try:
            logger.info(
                f"Waiting for Windows {ver} instance: {remote.hostname} ({server.name}) to become available"
            )
            remote.wait_until_ready(cfg.setup_timeout)

            logger.info(f"Copying local workspace to remote machine: {remote.hostname}")
            remote.copy(cfg.workspace_path, cfg.copy_timeout)

            script = render_single_arch_build(
                cfg.container_image_name, ver, cfg.build_args
            )
            logger.info(f"Start to build single-arch container with commands: {script}")
            remote.run_command(
                powershell(script), server.remote.workspace_folder, cfg.command_timeout
            )
        except Exception as e:
            logger.error(f"Error building Windows {ver} on {remote.hostname}: {e}")
            return server, e

        logger.info(f"Built and pushed {cfg.container_image_name}_{ver}")
        return server, None

    def build_multi_arch_container(self, outcomes: List[BuildOutcome]) -> None:
        """
        Create and push the manifest list on the first available server.

        Skipped versions are left out of the manifest.

        Raises:
            BuilderError: If no manifest was created
        """
        built_versions = [o.version for o in outcomes if not o.skipped]
        image = self.config.container_image_name

        for outcome in outcomes:
            if outcome.server is None:
                continue
            remote = self._remote(outcome.server)
            script = render_manifest_create(image, built_versions)
            logger.info(f"Start to create multi-arch container with commands: {script}")
            try:
                remote.run_command(
                    powershell(script),
                    outcome.server.remote.workspace_folder,
                    self.config.command_timeout,
                )
            except Exception as e:
                logger.error(
                    f"Error creating multi-arch container on instance: {remote.hostname}, with error: {e}"
                )
            else:
                self.stats["manifest_created"] += 1
                self.manifest_server = outcome.server.name
            break

        if not self.manifest_server:
            raise BuilderError("Failed to create the final multi-arch manifest")

    def shutdown_build_servers(self, outcomes: List[BuildOutcome]) -> None:
        """Delete every server, or only clean its workspace in reuse mode."""
        servers = [o.server for o in outcomes if o.server is not None]
        if not servers:
            return

        if self.config.reuse_instances:
            logger.info("Keeping instances for reuse")
            action = self._clean_server
        else:
            logger.info("Deleting created instances")
            action = self.instances.delete

        threads = [
            threading.Thread(target=action, args=(s,), name=f"shutdown-{s.name}")
            for s in servers
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    def _clean_server(self, server: BuildServer) -> None:
        try:
            self._remote(server).clean_folder()
        except Exception as e:
            logger.error(f"Failed to clean workspace on {server.name}: {e}")

    def _format_duration(self, seconds: float) -> str:
        """Format duration in human-readable format."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            mins = int(seconds // 60)
            secs = seconds % 60
            return f"{mins}m {secs:.0f}s"
        else:
            hours = int(seconds // 3600)
            mins = int((seconds % 3600) // 60)
            secs = seconds % 60
            return f"{hours}h {mins}m {secs:.0f}s"

    def _print_report(self):
        """Print timing and per-version status report."""
        total_duration = (self.run_end_time or time.time()) - self.run_start_time

        logger.info("")
        logger.info("=" * 70)
        logger.info("BUILD REPORT")
        logger.info("=" * 70)
        logger.info(f"Total duration:  {self._format_duration(total_duration)}")
        logger.info(f"Manifest server: {self.manifest_server or 'N/A'}")

        logger.info("")
        logger.info("STATISTICS")
        logger.info("-" * 40)
        for k, v in self.stats.items():
            logger.info(f"{k:20s}: {v}")

        if self.outcomes:
            logger.info("")
            logger.info(f"{'Version':<12} {'Status':<10} {'Duration':<12} {'Instance'}")
            logger.info("-" * 70)
            for o in self.outcomes:
                status = "skipped" if o.skipped else "failed" if o.error else "built"
                duration = (
                    self._format_duration(o.duration_seconds)
                    if o.duration_seconds is not None
                    else "N/A"
                )
                instance = o.server.name if o.server else "-"
                logger.info(f"{o.version:<12} {status:<10} {duration:<12} {instance}")
                if o.error:
                    logger.info(f"{'':<12} error: {o.error}")

        logger.info("=" * 70)
