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

"""Storage guarantees inside a vcluster: a default class and a bound claim."""

from __future__ import annotations

import json
import time
from pathlib import Path

from rich.panel import Panel

from testbed_manager import console
from testbed_manager.config import ProvisionConfig, TestbedNames
from testbed_manager.constants import (
    ANNOTATION_DEFAULT_CLASS,
    FALLBACK_STORAGE_CLASS,
    LABEL_VCLUSTER_NS,
    NO_PROVISIONER,
    NS_DEFAULT,
    SHARED_PVC_NAME,
)
from testbed_manager.utils import apply_manifests, run_command, run_kubectl, warn


# ============================================================================
# Manifests
# ============================================================================

def fallback_volume_manifest(names: TestbedNames, size_gi: int) -> dict:
    """Build the hostPath PersistentVolume backing the fallback class.

    Args:
        names: Derived testbed names.
        size_gi: Volume capacity in Gi.

    Returns:
        Kubernetes PersistentVolume resource as a dictionary.
    """
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolume",
        "metadata": {
            "name": names.fallback_pv,
            "labels": {LABEL_VCLUSTER_NS: names.namespace},
        },
        "spec": {
            "capacity": {"storage": f"{size_gi}Gi"},
            "volumeMode": "Filesystem",
            "accessModes": ["ReadWriteOnce"],
            "persistentVolumeReclaimPolicy": "Delete",
            "storageClassName": FALLBACK_STORAGE_CLASS,
            "hostPath": {"path": str(names.fallback_hostpath)},
        },
    }


def fallback_storage_class_manifest() -> dict:
    """Build the default-marked StorageClass for statically provisioned volumes."""
    return {
        "apiVersion": "storage.k8s.io/v1",
        "kind": "StorageClass",
        "metadata": {
            "name": FALLBACK_STORAGE_CLASS,
            "annotations": {ANNOTATION_DEFAULT_CLASS: "true"},
        },
        "provisioner": NO_PROVISIONER,
        "volumeBindingMode": "WaitForFirstConsumer",
    }


def shared_claim_manifest(size_gi: int) -> dict:
    """Build the shared PersistentVolumeClaim requested in every testbed."""
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": SHARED_PVC_NAME, "namespace": NS_DEFAULT},
        "spec": {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": f"{size_gi}Gi"}},
        },
    }


# ============================================================================
# Storage classes
# ============================================================================

def list_storage_classes(kubeconfig: Path) -> list[dict]:
    """Return the StorageClass objects visible through *kubeconfig*.

    An unreadable list counts as empty so the fallback gets created.
    """
    ok, stdout, stderr = run_kubectl(["get", "storageclass", "-o", "json"], kubeconfig=kubeconfig)
    if not ok:
        warn(f"Could not list StorageClasses: {stderr.strip()[:200]}")
        return []
    try:
        return json.loads(stdout).get("items", [])
    except json.JSONDecodeError:
        warn("StorageClass list was not valid JSON")
        return []


def _is_default(storage_class: dict) -> bool:
    annotations = storage_class.get("metadata", {}).get("annotations") or {}
    return annotations.get(ANNOTATION_DEFAULT_CLASS) == "true"


def _prepare_hostpath(names: TestbedNames) -> None:
    """Create the fallback hostPath directory on this node (best effort)."""
    result = run_command(["sudo", "mkdir", "-p", str(names.fallback_hostpath)])
    if not result.ok:
        warn(f"Could not create {names.fallback_hostpath}: {result.detail}")


def create_fallback_storage(names: TestbedNames, cfg: ProvisionConfig, parent_kubeconfig: Path) -> bool:
    """Create the fallback PV and default StorageClass in the parent cluster.

    The vcluster syncer mirrors the class into the virtual cluster.

    Args:
        names: Derived testbed names.
        cfg: Provisioning configuration with size and settle time.
        parent_kubeconfig: kubeconfig of the parent cluster.

    Returns:
        True if the manifests were applied.
    """
    console.print(f"[yellow]   Creating fallback hostPath PV/SC in parent namespace {names.namespace}[/yellow]")
    _prepare_hostpath(names)
    ok, stderr = apply_manifests(
        [fallback_volume_manifest(names, cfg.size_gi), fallback_storage_class_manifest()],
        kubeconfig=parent_kubeconfig,
    )
    if not ok:
        warn(f"Fallback storage could not be created: {stderr.strip()[:200]}")
        return False
    if cfg.fallback_settle_seconds:
        time.sleep(cfg.fallback_settle_seconds)
    return True


def ensure_default_class(storage_classes: list[dict], kubeconfig: Path) -> str | None:
    """Make sure exactly one StorageClass is marked default.

    Leaves an existing default alone; otherwise marks the first class.

    Returns:
        Name of the default class, or None if marking failed.
    """
    defaults = [sc["metadata"]["name"] for sc in storage_classes if _is_default(sc)]
    if len(defaults) == 1:
        return defaults[0]
    if defaults:
        keep, extra = defaults[0], defaults[1:]
        for name in extra:
            _set_default_annotation(name, "false", kubeconfig)
        return keep

    target = storage_classes[0]["metadata"]["name"]
    console.print(f"[yellow]   Marking {target} as default[/yellow]")
    if not _set_default_annotation(target, "true", kubeconfig):
        return None
    return target


def _set_default_annotation(name: str, value: str, kubeconfig: Path) -> bool:
    patch = json.dumps({"metadata": {"annotations": {ANNOTATION_DEFAULT_CLASS: value}}})
    ok, _, stderr = run_kubectl(
        ["patch", "storageclass", name, "--type=merge", "-p", patch], kubeconfig=kubeconfig
    )
    if not ok:
        warn(f"Could not set default annotation on {name}: {stderr.strip()[:200]}")
    return ok


# ============================================================================
# Shared claim
# ============================================================================

def request_shared_claim(size_gi: int, kubeconfig: Path, bind_timeout: int) -> bool:
    """Apply the shared claim and wait for it to bind.

    Returns:
        True if the claim reached phase ``Bound`` in time.
    """
    ok, stderr = apply_manifests([shared_claim_manifest(size_gi)], kubeconfig=kubeconfig)
    if not ok:
        warn(f"PVC {SHARED_PVC_NAME} could not be created: {stderr.strip()[:200]}")
        return False

    console.print(f"[yellow]\u2139\ufe0f  Waiting for PVC {SHARED_PVC_NAME} to bind ({bind_timeout}s max)...[/yellow]")
    ok, _, _ = run_kubectl(
        [
            "-n", NS_DEFAULT, "wait", f"pvc/{SHARED_PVC_NAME}",
            "--for=jsonpath={.status.phase}=Bound",
            f"--timeout={bind_timeout}s",
        ],
        kubeconfig=kubeconfig,
        timeout=bind_timeout + 10,
    )
    if not ok:
        warn(f"PVC {SHARED_PVC_NAME} not bound yet; continuing")
        return False
    console.print(f"[green]\u2705 PVC {SHARED_PVC_NAME} bound[/green]")
    return True


def ensure_storage(names: TestbedNames, cfg: ProvisionConfig, parent_kubeconfig: Path) -> bool:
    """Guarantee a default StorageClass and a bindable shared claim.

    Every failure here is a warning.

    Args:
        names: Derived testbed names.
        cfg: Provisioning configuration.
        parent_kubeconfig: kubeconfig of the parent cluster.

    Returns:
        True if the shared claim bound.
    """
    console.print(Panel.fit(f"Ensuring storage (>={cfg.size_gi}Gi) inside {names.vcluster}", style="bold blue"))
    storage_classes = list_storage_classes(names.kubeconfig)
    if not storage_classes:
        warn("No StorageClasses visible in vcluster after sync")
        create_fallback_storage(names, cfg, parent_kubeconfig)
    else:
        listed = ", ".join(sc["metadata"]["name"] for sc in storage_classes)
        console.print(f"   Detected {len(storage_classes)} StorageClass(es): {listed}")
        ensure_default_class(storage_classes, names.kubeconfig)

    return request_shared_claim(cfg.size_gi, names.kubeconfig, cfg.pvc_bind_timeout)
