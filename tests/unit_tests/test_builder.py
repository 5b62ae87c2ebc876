"""
Unit tests for the multi-arch build orchestration.
"""

import base64
import unittest
from unittest.mock import MagicMock, patch
from builder import MultiArchBuilder
from config import BuilderConfig
from errors import (
    ApiError,
    BuilderError,
    ImageNotFoundError,
    InternalConsistencyError,
    RemoteCommandError,
    SetupError,
    WaitTimeoutError,
)
from models import BuildOutcome, BuildServer, RemoteServer, VersionEntry

FAMILY_2004 = "windows-cloud/global/images/family/windows-2004-core"
FAMILY_2019 = "windows-cloud/global/images/family/windows-2019-core-for-containers"
ENCODED_PREFIX = "powershell -NoProfile -NonInteractive -EncodedCommand "


def decode(command):
    return base64.b64decode(command[len(ENCODED_PREFIX):]).decode("utf-16-le")


def make_server(server_config):
    version = server_config.image_version
    return BuildServer(
        name=f"windows-builder-{version}",
        zone=server_config.zone,
        version=version,
        remote=RemoteServer(
            hostname=f"host-{version}",
            username="builder",
            password="pw",
            workspace_folder=f"C:\\ws-{version}",
        ),
    )


class TestMultiArchBuilder(unittest.TestCase):
    """Test MultiArchBuilder with fake instances and remotes."""

    def setUp(self):
        self.compute = MagicMock()
        self.storage = MagicMock()
        self.instances = MagicMock()
        self.instances.create.side_effect = make_server
        self.remote = MagicMock()
        self.remote.hostname = "host"
        self.remote_factory = MagicMock(return_value=self.remote)

    def _builder(self, **overrides):
        values = dict(
            project_id="p",
            container_image_name="img:tag",
            versions=(
                VersionEntry("2004", FAMILY_2004),
                VersionEntry("ltsc2019", FAMILY_2019),
            ),
            skip_firewall_check=True,
        )
        values.update(overrides)
        return MultiArchBuilder(
            BuilderConfig(**values),
            compute=self.compute,
            storage=self.storage,
            instances=self.instances,
            remote_factory=self.remote_factory,
        )

    def _scripts(self):
        return [decode(c[0][0]) for c in self.remote.run_command.call_args_list]

    def _manifest_scripts(self):
        return [s for s in self._scripts() if "docker manifest create" in s]

    def _manifest_refs(self):
        (script,) = self._manifest_scripts()
        line = next(
            l for l in script.splitlines() if l.startswith("docker manifest create")
        )
        return line[len("docker manifest create "):].replace("'", "").split()

    def test_all_versions_built(self):
        """Test two successful builds produce one manifest and two teardowns."""
        builder = self._builder()

        stats = builder.run()

        self.assertEqual(stats["built"], 2)
        self.assertEqual(stats["manifest_created"], 1)
        self.assertEqual(len(self._manifest_scripts()), 1)
        refs = self._manifest_refs()
        self.assertEqual(refs[0], "img:tag")
        self.assertEqual(sorted(refs[1:]), ["img:tag_2004", "img:tag_ltsc2019"])
        self.assertEqual(self.instances.delete.call_count, 2)
        self.storage.insert_bucket.assert_called_once()
        self.assertEqual(self.remote.wait_until_ready.call_count, 2)
        self.remote.copy.assert_called_with("/workspace", 300)

    def test_build_script_runs_in_workspace(self):
        builder = self._builder(versions=(VersionEntry("2004", FAMILY_2004),), build_args=("A=1",))

        builder.run()

        build_call = self.remote.run_command.call_args_list[0]
        script = decode(build_call[0][0])
        self.assertIn("docker build -t 'img:tag_2004' --build-arg 'WINDOWS_VERSION=2004' --build-arg 'A=1' .", script)
        self.assertEqual(build_call[0][1], "C:\\ws-2004")
        self.assertEqual(build_call[0][2], 600)

    def test_missing_image_family_is_skipped(self):
        """Test a version whose image family is gone is left out of the manifest."""

        def create(server_config):
            if server_config.image_family == FAMILY_2019:
                raise ImageNotFoundError(FAMILY_2019)
            return make_server(server_config)

        self.instances.create.side_effect = create
        builder = self._builder()

        stats = builder.run()

        self.assertEqual(stats["built"], 1)
        self.assertEqual(stats["skipped"], 1)
        self.assertEqual(sorted(self._manifest_refs()), ["img:tag", "img:tag_2004"])
        self.assertEqual(self.instances.delete.call_count, 1)
        skipped = [o for o in builder.outcomes if o.version == "ltsc2019"][0]
        self.assertIsNone(skipped.server)
        self.assertIsNone(skipped.error)

    def test_build_failure_fails_run_and_tears_down(self):
        """Test one failed build fails the run without a manifest."""

        def run_command(command, path, timeout):
            if path == "C:\\ws-2004":
                raise RemoteCommandError(1, "host-2004")

        self.remote.run_command.side_effect = run_command
        builder = self._builder()

        with self.assertRaises(BuilderError) as ctx:
            builder.run()

        self.assertIn("2004", str(ctx.exception))
        self.assertEqual(self._manifest_scripts(), [])
        self.assertEqual(self.instances.delete.call_count, 2)
        self.assertEqual(builder.stats["failed"], 1)
        self.assertEqual(builder.stats["built"], 1)

    def test_provisioning_failure_fails_run(self):
        def create(server_config):
            if server_config.image_version == "ltsc2019":
                raise ApiError("Insert instance", 403, "quota exceeded")
            return make_server(server_config)

        self.instances.create.side_effect = create
        builder = self._builder()

        with self.assertRaises(BuilderError):
            builder.run()

        self.instances.delete.assert_called_once()
        self.assertEqual(self.instances.delete.call_args[0][0].name, "windows-builder-2004")

    def test_manifest_attempted_once(self):
        """Test a failed manifest is not retried on the other servers."""

        def run_command(command, path, timeout):
            if "docker manifest create" in decode(command):
                raise RemoteCommandError(1, "host")

        self.remote.run_command.side_effect = run_command
        builder = self._builder()

        with self.assertRaises(BuilderError):
            builder.run()

        self.assertEqual(len(self._manifest_scripts()), 1)
        self.assertEqual(builder.stats["manifest_created"], 0)
        self.assertEqual(self.instances.delete.call_count, 2)

    def test_no_servers_means_no_manifest(self):
        """Test a run where every version is skipped fails."""
        self.instances.create.side_effect = ImageNotFoundError("family")
        builder = self._builder()

        with self.assertRaises(BuilderError):
            builder.run()

        self.remote.run_command.assert_not_called()
        self.instances.delete.assert_not_called()

    def test_reuse_mode_cleans_instead_of_deleting(self):
        self.instances.find_reusable.side_effect = make_server
        builder = self._builder(reuse_instances=True)

        builder.run()

        self.instances.create.assert_not_called()
        self.instances.delete.assert_not_called()
        self.assertEqual(self.remote.clean_folder.call_count, 2)

    def test_reuse_mode_creates_when_nothing_found(self):
        self.instances.find_reusable.return_value = None
        builder = self._builder(reuse_instances=True)

        builder.run()

        self.assertEqual(self.instances.create.call_count, 2)

    def test_reuse_list_failure_falls_back_to_create(self):
        """Test a failed instance listing still builds on new instances."""
        self.instances.find_reusable.side_effect = ApiError("List instances", 503, "unavailable")
        builder = self._builder(reuse_instances=True)

        stats = builder.run()

        self.assertEqual(self.instances.create.call_count, 2)
        self.assertEqual(stats["manifest_created"], 1)

    def test_reuse_prepare_failure_falls_back_to_create(self):
        """Test a reused instance whose password reset fails is replaced."""
        self.instances.find_reusable.side_effect = WaitTimeoutError(
            "Timed out waiting for Windows password"
        )
        builder = self._builder(reuse_instances=True)

        stats = builder.run()

        self.assertEqual(self.instances.create.call_count, 2)
        self.assertEqual(stats["manifest_created"], 1)

    def test_cleanup_failure_is_not_escalated(self):
        self.instances.find_reusable.side_effect = make_server
        self.remote.clean_folder.side_effect = RemoteCommandError(1, "host")
        builder = self._builder(reuse_instances=True)

        stats = builder.run()

        self.assertEqual(stats["manifest_created"], 1)

    def test_firewall_failure_aborts_before_instances(self):
        """Test a missing WinRM rule stops the run before any instance exists."""
        self.compute.list_firewalls.return_value = []
        builder = self._builder(skip_firewall_check=False)

        with self.assertRaises(SetupError):
            builder.run()

        self.instances.create.assert_not_called()
        self.instances.find_reusable.assert_not_called()

    def test_internal_ip_skips_firewall_check(self):
        builder = self._builder(skip_firewall_check=False, use_internal_ip=True)

        builder.run()

        self.compute.list_firewalls.assert_not_called()

    def test_missing_outcome_is_internal_error(self):
        """Test a lost build outcome is a hard failure, not a hang."""
        builder = self._builder()
        server = make_server(builder.config.build_server_config(builder.config.versions[0]))

        def build_task(entry):
            if entry.version == "ltsc2019":
                raise RuntimeError("lost")
            return BuildOutcome(version=entry.version, server=server)

        with patch.object(builder, "_build_task", side_effect=build_task), patch(
            "threading.excepthook"
        ):
            with self.assertRaises(InternalConsistencyError):
                builder.run()

        # the delivered outcome still gets its server torn down
        self.instances.delete.assert_called_once_with(server)

    def test_format_duration(self):
        builder = self._builder()
        self.assertEqual(builder._format_duration(5.0), "5.0s")
        self.assertEqual(builder._format_duration(125), "2m 5s")
        self.assertEqual(builder._format_duration(3725), "1h 2m 5s")


if __name__ == "__main__":
    unittest.main()
