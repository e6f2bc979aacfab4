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

"""Constants, dependency loading, and dep_value helper."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


def load_dependencies() -> dict:
    """Load pinned external artefacts from dependencies.yaml.

    Returns:
        Parsed YAML content as a nested dictionary.
    """
    deps_file = Path(__file__).resolve().parent / "dependencies.yaml"
    with open(deps_file) as f:
        return yaml.safe_load(f)


DEPENDENCIES = load_dependencies()


def dep_value(*keys: str, default: Any = None) -> Any:
    """Safely traverse the DEPENDENCIES dict by key path.

    Args:
        *keys: Sequence of dictionary keys to traverse.
        default: Value to return if any key is missing.

    Returns:
        The value at the nested key path, or *default* if not found.
    """
    node = DEPENDENCIES
    for key in keys:
        if not isinstance(node, dict):
            return default
        node = node.get(key)
        if node is None:
            return default
    return node


# -- Naming --
NAMESPACE_PREFIX = "dev-"
VCLUSTER_PREFIX = "vcluster-"
KUBECONFIG_FILE_TEMPLATE = "kubeconfig-{change_id}.yaml"
FALLBACK_PV_PREFIX = "vc-static-pv-"
LEASE_PREFIX = "testbed-"
CHANGE_ID_PATTERN = r"^[a-z0-9]([a-z0-9-]{0,40}[a-z0-9])?$"

# -- Parent cluster defaults --
DEFAULT_PARENT_CONTEXT = "kubernetes-admin@kubernetes"
DEFAULT_K8S_VERSION = "1.32"
DEFAULT_SIZE_GI = 5
DEFAULT_KUBECONFIG_DIR = Path.home() / "vc-kcfg"
DEFAULT_PARENT_KUBECONFIG = Path.home() / ".kube" / "config"
DEFAULT_FALLBACK_HOSTPATH_BASE = Path("/tmp/vc-storage")

# -- Host networking --
SYSCTL_SETTINGS = (
    "net.bridge.bridge-nf-call-iptables=1",
    "net.ipv4.ip_forward=1",
    "net.ipv6.conf.all.forwarding=1",
    "net.ipv4.conf.all.promote_secondaries=1",
)
FLANNEL_MANIFEST_URL = dep_value(
    "flannel", "manifest_url",
    default="https://raw.githubusercontent.com/flannel-io/flannel/master/Documentation/kube-flannel.yml",
)
NS_FLANNEL = dep_value("flannel", "namespace", default="kube-flannel")
FLANNEL_DAEMONSET = dep_value("flannel", "daemonset", default="kube-flannel-ds")
DEFAULT_FLANNEL_TIMEOUT = 180

# -- vcluster --
VCLUSTER_CHART_VERSION = dep_value("vcluster", "chart_version", default="")
VCLUSTER_SECRET_PREFIX = "vc-"
VCLUSTER_SECRET_KEYS = ("config", "kubeconfig", "kubeconfig.yaml")
VCLUSTER_SYNC_VALUES = (
    "sync.persistentvolumeclaims.enabled=true",
    "sync.storageclasses.enabled=true",
    "sync.nodes.enabled=false",
    "vcluster.imagePullPolicy=IfNotPresent",
)
VCLUSTER_PV_SYNC_VALUE = "sync.persistentvolumes.enabled=true"

# -- Readiness --
DEFAULT_READINESS_RETRIES = 30
DEFAULT_READINESS_INTERVAL_SECONDS = 2

# -- Storage --
FALLBACK_STORAGE_CLASS = "vc-local"
SHARED_PVC_NAME = "vc-shared"
NS_DEFAULT = "default"
ANNOTATION_DEFAULT_CLASS = "storageclass.kubernetes.io/is-default-class"
LABEL_VCLUSTER_NS = "vcluster.io/ns"
NO_PROVISIONER = "kubernetes.io/no-provisioner"
DEFAULT_PVC_BIND_TIMEOUT = 60
DEFAULT_FALLBACK_SETTLE_SECONDS = 5

# -- Change detection / deploy --
DEFAULT_MANIFEST_DIR = "scripts/testbed"
DEFAULT_MANIFEST_EXTENSIONS = (".yaml", ".yml")
DEFAULT_BASE_REF = "origin/main"
DEFAULT_REVISION = "HEAD"
DEFAULT_ROLLOUT_TIMEOUT = 120

# -- Tunnel --
DEFAULT_SSH_PORT = 22
DEFAULT_TUNNEL_LOCAL_PORT = 6443
DEFAULT_TUNNEL_REMOTE_HOST = "127.0.0.1"
DEFAULT_TUNNEL_REMOTE_PORT = 6443
DEFAULT_TUNNEL_STARTUP_GRACE_SECONDS = 2

# -- Lease --
DEFAULT_LEASE_NAMESPACE = "default"
DEFAULT_LEASE_RETRIES = 30
DEFAULT_LEASE_INTERVAL_SECONDS = 10
# Renewed between phases; a single phase must finish within this window.
DEFAULT_LEASE_DURATION_SECONDS = 3600

# -- Exit codes --
EXIT_UNEXPECTED = 1
EXIT_PARENT_KUBECONFIG_MISSING = 2
EXIT_PARENT_UNREACHABLE = 3
EXIT_KUBECONFIG_FAILED = 4
EXIT_NAMESPACE_FAILED = 5
EXIT_APPLY_FAILED = 6
EXIT_ROLLOUT_TIMEOUT = 7
EXIT_TUNNEL_FAILED = 8
EXIT_LEASE_HELD = 9
EXIT_LEASE_FAILED = 10

# -- Timeouts for individual CLI invocations --
KUBECTL_TIMEOUT = 30
VCLUSTER_TIMEOUT = 600
GIT_TIMEOUT = 60
