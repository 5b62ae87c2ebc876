"""
PowerShell scripts run on the Windows builder instances.

Every script is a ScriptTemplate with named ``%placeholders``. Values are
filled in by the render_* helpers only, already quoted with ps_quote, so no
caller concatenates user supplied text into a script.
"""

import base64
import string
from typing import Iterable


class ScriptTemplate(string.Template):
    """string.Template using '%' so PowerShell '$' needs no escaping."""

    delimiter = "%"


def ps_quote(value: str) -> str:
    """Quote ``value`` as a single-quoted PowerShell literal."""
    escaped = str(value)
    for quote in ("'", "\u2018", "\u2019", "\u201a", "\u201b"):
        escaped = escaped.replace(quote, quote * 2)
    return f"'{escaped}'"


def powershell(script: str) -> str:
    """Return a cmd.exe command line running ``script`` with PowerShell."""
    encoded = base64.b64encode(script.encode("utf-16-le")).decode("ascii")
    return f"powershell -NoProfile -NonInteractive -EncodedCommand {encoded}"


# Runs at every boot via the windows-startup-script-ps1 metadata key.
# Windows Defender scans C:\ProgramData\Docker and locks layers during docker
# build (docker/for-win#2117), so it is removed. Installing the Containers
# feature or removing Defender restarts the computer.
STARTUP_SCRIPT = r"""
$ProgressPreference = 'SilentlyContinue'

if ((Get-WindowsFeature -Name 'Windows-Defender').Installed) {
    Write-Host 'Disabling Windows Defender service'
    Set-MpPreference -DisableRealtimeMonitoring $true
    Uninstall-WindowsFeature -Name 'Windows-Defender'
    Restart-Computer -Force
    exit 0
}

function Test-ContainersFeatureInstalled {
    return (Get-WindowsFeature Containers).Installed
}

function Test-DockerIsInstalled {
    return ((Get-Package -ProviderName DockerMsftProvider -ErrorAction SilentlyContinue | Where-Object Name -eq 'docker') -ne $null)
}

function Test-DockerIsRunning {
    return ((Get-Service docker).Status -eq 'Running')
}

function Install-Docker {
    Write-Host 'Installing NuGet module'
    Install-PackageProvider -Name NuGet -MinimumVersion 2.8.5.201 -Force
    Write-Host 'Installing DockerMsftProvider module'
    Install-Module -Name DockerMsftProvider -Repository PSGallery -Force
    Write-Host 'Installing latest Docker EE version'
    Install-Package -Name docker -ProviderName DockerMsftProvider -Force -Verbose
}

if (-not (Test-ContainersFeatureInstalled)) {
    Write-Host "Installing Windows 'Containers' feature"
    Install-WindowsFeature Containers
    Write-Host 'Restarting computer after enabling Windows Containers feature'
    Restart-Computer -Force
    # Restart-Computer does not stop the script
    exit 0
}

if (-not (Test-DockerIsInstalled)) {
    Install-Docker
}

# The docker service is not always started on the first reboot
Restart-Service docker
Start-Sleep 5
if (-not (Test-DockerIsRunning)) {
    throw 'docker service failed to start or stay running'
}

winrm set winrm/config/service/auth '@{Basic="true"}'

Write-Host 'Windows instance setup is completed'
"""

BUCKET_DOWNLOAD = ScriptTemplate(
    r"""
$ErrorActionPreference = 'Stop'
$ProgressPreference = 'SilentlyContinue'
gsutil cp %gs_url %zip_path
if ($LASTEXITCODE -ne 0) { throw "gsutil cp failed with exit code $LASTEXITCODE" }
Expand-Archive -Path %zip_path -DestinationPath %dest -Force
Remove-Item -Path %zip_path -Force
"""
)

DIRECT_COPY_RESTORE = ScriptTemplate(
    r"""
$ErrorActionPreference = 'Stop'
$ProgressPreference = 'SilentlyContinue'
$encoded = [IO.File]::ReadAllText(%b64_path)
[IO.File]::WriteAllBytes(%zip_path, [Convert]::FromBase64String($encoded))
New-Item -ItemType Directory -Force -Path %dest | Out-Null
Expand-Archive -Path %zip_path -DestinationPath %dest -Force
Remove-Item -Path %zip_path, %b64_path -Force
"""
)

CLEAN_FOLDER = ScriptTemplate(
    r"""
$ErrorActionPreference = 'Stop'
$ProgressPreference = 'SilentlyContinue'
Remove-Item -Path %dest -Recurse -Force
"""
)

# Native commands report through $LASTEXITCODE, docker writes progress to stderr
BUILD_SINGLE_ARCH = ScriptTemplate(
    r"""
$ErrorActionPreference = 'Continue'
$ProgressPreference = 'SilentlyContinue'
$env:DOCKER_CLI_EXPERIMENTAL = 'enabled'
gcloud auth --quiet configure-docker %registry
if ($LASTEXITCODE -ne 0) { exit $LASTEXITCODE }
docker build -t %tag --build-arg %version_arg %build_args .
if ($LASTEXITCODE -ne 0) { exit $LASTEXITCODE }
docker push %tag
exit $LASTEXITCODE
"""
)

CREATE_MANIFEST = ScriptTemplate(
    r"""
$ErrorActionPreference = 'Continue'
$ProgressPreference = 'SilentlyContinue'
$env:DOCKER_CLI_EXPERIMENTAL = 'enabled'
docker manifest create %manifest_args
if ($LASTEXITCODE -ne 0) { exit $LASTEXITCODE }
docker manifest push %image
exit $LASTEXITCODE
"""
)


def registry_of(image: str) -> str:
    """Registry host of ``image``; plain gcr.io needs no explicit registry."""
    registry = image.split("/")[0]
    return "" if registry == "gcr.io" else registry


def render_bucket_download(gs_url: str, dest: str) -> str:
    return BUCKET_DOWNLOAD.substitute(
        gs_url=ps_quote(gs_url),
        zip_path=ps_quote(f"{dest}.zip"),
        dest=ps_quote(dest),
    )


def render_direct_copy_restore(b64_path: str, dest: str) -> str:
    return DIRECT_COPY_RESTORE.substitute(
        b64_path=ps_quote(b64_path),
        zip_path=ps_quote(f"{dest}.zip"),
        dest=ps_quote(dest),
    )


def render_clean_folder(dest: str) -> str:
    return CLEAN_FOLDER.substitute(dest=ps_quote(dest))


def render_single_arch_build(image: str, version: str, build_args: Iterable[str]) -> str:
    """
    Build and push ``<image>_<version>`` from the current directory.

    Args:
        image: Target image:tag
        version: Windows version, passed to the Dockerfile as WINDOWS_VERSION
        build_args: Extra KEY=VALUE docker build arguments
    """
    registry = registry_of(image)
    return BUILD_SINGLE_ARCH.substitute(
        registry=ps_quote(registry) if registry else "",
        tag=ps_quote(f"{image}_{version}"),
        version_arg=ps_quote(f"WINDOWS_VERSION={version}"),
        build_args=" ".join(f"--build-arg {ps_quote(arg)}" for arg in build_args),
    )


def manifest_references(image: str, versions: Iterable[str]) -> list:
    """``image`` followed by ``image_<version>`` for each version."""
    return [image] + [f"{image}_{ver}" for ver in versions]


def render_manifest_create(image: str, versions: Iterable[str]) -> str:
    refs = manifest_references(image, versions)
    return CREATE_MANIFEST.substitute(
        manifest_args=" ".join(ps_quote(ref) for ref in refs),
        image=ps_quote(image),
    )
