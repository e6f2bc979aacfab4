# /*
# Copyright 2026 The Testbed Manager Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

"""Configuration classes, derived testbed names, and config display."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.panel import Panel

from testbed_manager import console
from testbed_manager.constants import (
    CHANGE_ID_PATTERN,
    DEFAULT_BASE_REF,
    DEFAULT_FALLBACK_HOSTPATH_BASE,
    DEFAULT_FALLBACK_SETTLE_SECONDS,
    DEFAULT_FLANNEL_TIMEOUT,
    DEFAULT_K8S_VERSION,
    DEFAULT_KUBECONFIG_DIR,
    DEFAULT_LEASE_DURATION_SECONDS,
    DEFAULT_LEASE_INTERVAL_SECONDS,
    DEFAULT_LEASE_NAMESPACE,
    DEFAULT_LEASE_RETRIES,
    DEFAULT_MANIFEST_DIR,
    DEFAULT_MANIFEST_EXTENSIONS,
    DEFAULT_PARENT_CONTEXT,
    DEFAULT_PARENT_KUBECONFIG,
    DEFAULT_PVC_BIND_TIMEOUT,
    DEFAULT_READINESS_INTERVAL_SECONDS,
    DEFAULT_READINESS_RETRIES,
    DEFAULT_REVISION,
    DEFAULT_ROLLOUT_TIMEOUT,
    DEFAULT_SIZE_GI,
    DEFAULT_SSH_PORT,
    DEFAULT_TUNNEL_LOCAL_PORT,
    DEFAULT_TUNNEL_REMOTE_HOST,
    DEFAULT_TUNNEL_REMOTE_PORT,
    DEFAULT_TUNNEL_STARTUP_GRACE_SECONDS,
    FALLBACK_PV_PREFIX,
    KUBECONFIG_FILE_TEMPLATE,
    LEASE_PREFIX,
    NAMESPACE_PREFIX,
    VCLUSTER_PREFIX,
)


# ============================================================================
# Configuration classes
# ============================================================================

class ProvisionConfig(BaseSettings):
    """Testbed provisioning configuration, auto-loaded from TESTBED_* env vars.

    Attributes:
        size_gi: Size in Gi of the shared volume claim (and fallback PV).
        k8s_version: Kubernetes version reported in the summary.
        parent_context: kubeconfig context of the parent cluster.
        parent_kubeconfig: Explicit parent kubeconfig, or None to use
            ``$KUBECONFIG`` / ``~/.kube/config``.
        kubeconfig_dir: Directory receiving generated vcluster kubeconfigs.
        fallback_hostpath_base: Parent node directory backing fallback PVs.
        configure_host_network: Whether to attempt sysctl and Flannel setup.
        sync_persistent_volumes: Whether the vcluster syncs PVs from the parent.
        flannel_timeout: Seconds to wait for the Flannel rollout.
        readiness_retries: Attempts when polling the vcluster ``/readyz``.
        readiness_interval: Fixed seconds between readiness attempts.
        pvc_bind_timeout: Seconds to wait for the shared claim to bind.
        fallback_settle_seconds: Pause after creating fallback storage.
    """

    model_config = SettingsConfigDict(env_prefix="TESTBED_", extra="ignore")

    size_gi: int = Field(default=DEFAULT_SIZE_GI, ge=1, le=1024)
    k8s_version: str = Field(default=DEFAULT_K8S_VERSION, pattern=r"^\d+\.\d+$")
    parent_context: str = DEFAULT_PARENT_CONTEXT
    parent_kubeconfig: Path | None = None
    kubeconfig_dir: Path = DEFAULT_KUBECONFIG_DIR
    fallback_hostpath_base: Path = DEFAULT_FALLBACK_HOSTPATH_BASE
    configure_host_network: bool = True
    sync_persistent_volumes: bool = True
    flannel_timeout: int = Field(default=DEFAULT_FLANNEL_TIMEOUT, ge=0)
    readiness_retries: int = Field(default=DEFAULT_READINESS_RETRIES, ge=1)
    readiness_interval: float = Field(default=DEFAULT_READINESS_INTERVAL_SECONDS, ge=0)
    pvc_bind_timeout: int = Field(default=DEFAULT_PVC_BIND_TIMEOUT, ge=0)
    fallback_settle_seconds: float = Field(default=DEFAULT_FALLBACK_SETTLE_SECONDS, ge=0)


class DetectConfig(BaseSettings):
    """Change detection configuration, auto-loaded from TESTBED_* env vars.

    Attributes:
        manifest_dir: Repository-relative directory holding unit manifests.
        extensions: File suffixes that count as unit manifests.
        base_ref: Target branch reference to diff against.
        revision: Working revision to diff.
    """

    model_config = SettingsConfigDict(env_prefix="TESTBED_", extra="ignore")

    manifest_dir: str = DEFAULT_MANIFEST_DIR
    extensions: tuple[str, ...] = DEFAULT_MANIFEST_EXTENSIONS
    base_ref: str = DEFAULT_BASE_REF
    revision: str = DEFAULT_REVISION


class DeployConfig(BaseSettings):
    """Deploy-and-verify configuration, auto-loaded from TESTBED_* env vars.

    Attributes:
        manifest_dir: Directory holding unit manifests.
        rollout_timeout: Seconds to wait for each Deployment rollout.
    """

    model_config = SettingsConfigDict(env_prefix="TESTBED_", extra="ignore")

    manifest_dir: Path = Path(DEFAULT_MANIFEST_DIR)
    rollout_timeout: int = Field(default=DEFAULT_ROLLOUT_TIMEOUT, ge=1)


class TunnelConfig(BaseSettings):
    """SSH hop configuration, auto-loaded from TESTBED_TUNNEL_* env vars.

    Attributes:
        ssh_host: Jump host to tunnel through, or None to run without a tunnel.
        ssh_user: Remote user, or None for the ssh default.
        ssh_port: SSH port on the jump host.
        local_port: Local port forwarded to the remote API server.
        remote_host: API server host as seen from the jump host.
        remote_port: API server port as seen from the jump host.
        startup_grace: Seconds to wait before checking the tunnel is alive.
    """

    model_config = SettingsConfigDict(env_prefix="TESTBED_TUNNEL_", extra="ignore")

    ssh_host: str | None = None
    ssh_user: str | None = None
    ssh_port: int = Field(default=DEFAULT_SSH_PORT, ge=1, le=65535)
    local_port: int = Field(default=DEFAULT_TUNNEL_LOCAL_PORT, ge=1, le=65535)
    remote_host: str = DEFAULT_TUNNEL_REMOTE_HOST
    remote_port: int = Field(default=DEFAULT_TUNNEL_REMOTE_PORT, ge=1, le=65535)
    startup_grace: float = Field(default=DEFAULT_TUNNEL_STARTUP_GRACE_SECONDS, ge=0)


class LeaseConfig(BaseSettings):
    """Per-change lease configuration, auto-loaded from TESTBED_* env vars.

    Attributes:
        use_lease: Whether to serialize runs for the same change identifier.
        lease_namespace: Parent cluster namespace holding the leases.
        holder: Holder identity recorded on the lease (defaults to hostname/pid).
        lease_retries: Attempts to acquire a lease held by another run.
        lease_interval: Fixed seconds between acquisition attempts.
        lease_duration: Seconds after which an unrenewed lease counts as abandoned.
    """

    model_config = SettingsConfigDict(env_prefix="TESTBED_", extra="ignore")

    use_lease: bool = True
    lease_namespace: str = DEFAULT_LEASE_NAMESPACE
    holder: str = Field(default_factory=lambda: f"{os.uname().nodename}-{os.getpid()}")
    lease_retries: int = Field(default=DEFAULT_LEASE_RETRIES, ge=1)
    lease_interval: float = Field(default=DEFAULT_LEASE_INTERVAL_SECONDS, ge=0)
    lease_duration: int = Field(default=DEFAULT_LEASE_DURATION_SECONDS, ge=1)


# ============================================================================
# Derived names
# ============================================================================

def validate_change_id(change_id: str) -> str:
    """Check that a change identifier can be embedded in resource names.

    Args:
        change_id: Opaque change token, e.g. a pull request number.

    Returns:
        The identifier, unchanged.

    Raises:
        ValueError: If the identifier is empty or not DNS-1123 compatible.
    """
    if not re.match(CHANGE_ID_PATTERN, change_id or ""):
        raise ValueError(
            f"Invalid change identifier {change_id!r}: use lowercase letters, digits and '-'"
        )
    return change_id


@dataclass(frozen=True)
class TestbedNames:
    """Every name derived from one change identifier.

    Attributes:
        change_id: The change identifier itself.
        namespace: Parent cluster namespace hosting the vcluster.
        vcluster: vcluster instance name.
        kubeconfig: Path of the generated vcluster kubeconfig.
        fallback_pv: Name of the fallback hostPath PersistentVolume.
        fallback_hostpath: Parent node directory backing the fallback PV.
        lease: Name of the Lease serializing runs for this change.
    """

    __test__ = False

    change_id: str
    namespace: str
    vcluster: str
    kubeconfig: Path
    fallback_pv: str
    fallback_hostpath: Path
    lease: str

    @classmethod
    def for_change(cls, change_id: str, cfg: ProvisionConfig | None = None) -> TestbedNames:
        """Derive all names for *change_id*.

        Raises:
            ValueError: If *change_id* is not a valid identifier.
        """
        cfg = cfg or ProvisionConfig()
        validate_change_id(change_id)
        vcluster = f"{VCLUSTER_PREFIX}{change_id}"
        return cls(
            change_id=change_id,
            namespace=f"{NAMESPACE_PREFIX}{change_id}",
            vcluster=vcluster,
            kubeconfig=Path(cfg.kubeconfig_dir) / KUBECONFIG_FILE_TEMPLATE.format(change_id=change_id),
            fallback_pv=f"{FALLBACK_PV_PREFIX}{change_id}",
            fallback_hostpath=Path(cfg.fallback_hostpath_base) / vcluster,
            lease=f"{LEASE_PREFIX}{change_id}",
        )


def resolve_parent_kubeconfig(cfg: ProvisionConfig) -> Path:
    """Pick the parent kubeconfig: explicit setting > $KUBECONFIG > default.

    Args:
        cfg: Provisioning configuration.

    Returns:
        Path to the parent kubeconfig (not checked for existence).
    """
    if cfg.parent_kubeconfig is not None:
        return Path(cfg.parent_kubeconfig)
    env_value = os.environ.get("KUBECONFIG")
    if env_value:
        return Path(env_value)
    return DEFAULT_PARENT_KUBECONFIG


# ============================================================================
# Display
# ============================================================================

def display_config(names: TestbedNames, cfg: ProvisionConfig, parent_kubeconfig: Path) -> None:
    """Print the provisioning configuration for one change.

    Args:
        names: Derived testbed names.
        cfg: Provisioning configuration.
        parent_kubeconfig: Resolved parent kubeconfig path.
    """
    console.print(Panel.fit("Configuration", style="bold blue"))
    console.print(f"  change_id        : {names.change_id}")
    console.print(f"  namespace        : {names.namespace}")
    console.print(f"  vcluster         : {names.vcluster}")
    console.print(f"  k8s_version      : {cfg.k8s_version}")
    console.print(f"  size_gi          : {cfg.size_gi}")
    console.print(f"  parent_context   : {cfg.parent_context}")
    console.print(f"  parent_kubeconfig: {parent_kubeconfig}")
    console.print(f"  kubeconfig       : {names.kubeconfig}")
