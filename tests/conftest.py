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

"""Shared fixtures: a stateful stand-in for git, kubectl, vcluster and sudo."""

from __future__ import annotations

import base64
import json
import os
import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest
import yaml

from testbed_manager import provision as provision_module
from testbed_manager import tunnel as tunnel_module
from testbed_manager import utils as utils_module
from testbed_manager.config import DeployConfig, DetectConfig, LeaseConfig, ProvisionConfig

VCLUSTER_KUBECONFIG = "apiVersion: v1\nkind: Config\nclusters: []\n"


def _result(args: list[str], returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=args, returncode=returncode, stdout=stdout, stderr=stderr)


class FakeCluster:
    """Interprets the external commands the tool runs against in-memory state.

    The parent cluster and the vcluster are told apart by the kubeconfig
    passed to kubectl. StorageClasses applied to the parent are mirrored
    into the vcluster the way the syncer would.
    """

    def __init__(self, parent_kubeconfig: Path) -> None:
        self.parent_kubeconfig = str(parent_kubeconfig)
        self.calls: list[list[str]] = []

        # parent cluster
        self.reachable = True
        self.healthz_ok = True
        self.namespaces: set[str] = {"default", "kube-system"}
        self.namespace_creates = 0
        self.namespace_create_fails = False
        self.flannel_present = True
        self.flannel_apply_ok = True
        self.sudo_ok = True
        self.parent_objects: dict[tuple[str, str], dict] = {}
        self.leases: dict[str, dict] = {}
        self.lease_create_error: str | None = None

        # vcluster lifecycle
        self.vclusters: dict[str, str] = {}
        self.vcluster_creates: list[list[str]] = []
        self.vcluster_create_rc = 0
        self.connect_ok = True
        self.secret_kubeconfig: str | None = None
        self.secret_available = True

        # inside the vcluster
        self.readyz_failures = 0
        self.storage_classes: list[dict] = []
        self.pvcs: dict[str, dict] = {}
        self.pvc_binds = True
        self.applied_units: list[str] = []
        self.apply_fails: set[str] = set()
        self.rollouts_checked: list[str] = []
        self.rollout_fails: set[str] = set()

        # git
        self.merge_base: str | None = "abc123"
        self.diff_output = ""
        self.diff_bases: list[str] = []
        self.diff_fails = False

    # -- helpers -----------------------------------------------------------

    def commands(self, program: str) -> list[list[str]]:
        return [c for c in self.calls if c[0] == program]

    def kubectl_calls(self, *prefix: str) -> list[list[str]]:
        out = []
        for call in self.commands("kubectl"):
            _, rest = self._split_kubeconfig(call[1:])
            if rest[: len(prefix)] == list(prefix):
                out.append(rest)
        return out

    def add_storage_class(self, name: str, default: bool = False) -> None:
        annotations = {"storageclass.kubernetes.io/is-default-class": "true"} if default else {}
        self.storage_classes.append({"metadata": {"name": name, "annotations": annotations}})

    def default_storage_classes(self) -> list[str]:
        return [
            sc["metadata"]["name"]
            for sc in self.storage_classes
            if (sc["metadata"].get("annotations") or {}).get("storageclass.kubernetes.io/is-default-class") == "true"
        ]

    def _split_kubeconfig(self, args: list[str]) -> tuple[str | None, list[str]]:
        if args[:1] == ["--kubeconfig"]:
            return args[1], args[2:]
        return None, args

    # -- dispatch ----------------------------------------------------------

    def __call__(self, args, **kwargs) -> subprocess.CompletedProcess:
        args = list(args)
        self.calls.append(args)
        program = args[0]
        if program == "git":
            return self._git(args)
        if program == "sudo":
            return _result(args, 0 if self.sudo_ok else 1, stderr="" if self.sudo_ok else "sudo: a password is required")
        if program == "vcluster":
            return self._vcluster(args)
        if program == "kubectl":
            kubeconfig, rest = self._split_kubeconfig(args[1:])
            if kubeconfig is None or kubeconfig == self.parent_kubeconfig:
                return self._parent(args, rest, kwargs.get("input"))
            return self._virtual(args, rest)
        raise AssertionError(f"unexpected command: {args}")

    def _git(self, args: list[str]) -> subprocess.CompletedProcess:
        if args[1] == "merge-base":
            if self.merge_base is None:
                return _result(args, 1)
            return _result(args, 0, stdout=f"{self.merge_base}\n")
        if args[1] == "diff" and self.diff_fails:
            return _result(args, 128, stderr=f"fatal: bad revision '{args[3]}'")
        if args[1] == "diff":
            self.diff_bases.append(args[3])
            return _result(args, 0, stdout=self.diff_output)
        raise AssertionError(f"unexpected git command: {args}")

    def _vcluster(self, args: list[str]) -> subprocess.CompletedProcess:
        verb, name = args[1], args[2]
        namespace = args[args.index("-n") + 1]
        if verb == "create":
            self.vcluster_creates.append(args)
            if self.vcluster_create_rc:
                return _result(args, self.vcluster_create_rc, stderr="install failed")
            if name in self.vclusters and "--upgrade" not in args:
                return _result(args, 1, stderr="already exists")
            self.vclusters[name] = namespace
            if self.secret_available:
                self.secret_kubeconfig = self.secret_kubeconfig or VCLUSTER_KUBECONFIG
            return _result(args, 0)
        if verb == "connect":
            if self.connect_ok and name in self.vclusters:
                return _result(args, 0, stdout=VCLUSTER_KUBECONFIG)
            return _result(args, 1, stderr="couldn't find vcluster")
        if verb == "delete":
            if self.vclusters.pop(name, None) is None:
                return _result(args, 1, stderr=f"couldn't find vcluster {name}: not found")
            return _result(args, 0)
        raise AssertionError(f"unexpected vcluster command: {args}")

    def _load_docs(self, path: str) -> list[dict]:
        with open(path) as f:
            return [doc for doc in yaml.safe_load_all(f) if doc]

    def _parent(self, args: list[str], rest: list[str], stdin: str | None) -> subprocess.CompletedProcess:
        if not self.reachable:
            return _result(args, 1, stderr="Unable to connect to the server: dial tcp: i/o timeout")
        if rest[:2] == ["config", "use-context"]:
            return _result(args, 0)
        if rest == ["get", "--raw=/healthz"]:
            return _result(args, 0 if self.healthz_ok else 1, stdout="ok")
        if rest == ["get", "nodes"]:
            return _result(args, 0, stdout="node-1   Ready")
        if rest[:3] == ["-n", "kube-flannel", "get"]:
            return _result(args, 0 if self.flannel_present else 1)
        if rest[:2] == ["apply", "--validate=false"]:
            if self.flannel_apply_ok:
                self.flannel_present = True
                return _result(args, 0)
            return _result(args, 1, stderr="unable to fetch manifest")
        if rest[:3] == ["-n", "kube-flannel", "rollout"]:
            return _result(args, 0 if self.flannel_present else 1)
        if rest[:2] == ["get", "namespace"]:
            found = rest[2] in self.namespaces
            return _result(args, 0 if found else 1, stderr="" if found else "NotFound")
        if rest[:2] == ["create", "namespace"]:
            if self.namespace_create_fails:
                return _result(args, 1, stderr="forbidden: User cannot create namespaces")
            if rest[2] in self.namespaces:
                return _result(args, 1, stderr=f'namespaces "{rest[2]}" AlreadyExists')
            self.namespace_creates += 1
            self.namespaces.add(rest[2])
            return _result(args, 0)
        if rest[:2] == ["delete", "namespace"]:
            self.namespaces.discard(rest[2])
            return _result(args, 0)
        if rest[:2] == ["delete", "pv"]:
            self.parent_objects.pop(("PersistentVolume", rest[2]), None)
            return _result(args, 0)
        if rest[:2] == ["get", "secret"]:
            if self.secret_kubeconfig is None:
                return _result(args, 1, stderr="NotFound")
            data = {"config": base64.b64encode(self.secret_kubeconfig.encode()).decode()}
            return _result(args, 0, stdout=json.dumps({"data": data}))
        if rest[:2] == ["apply", "-f"]:
            for doc in self._load_docs(rest[2]):
                self.parent_objects[(doc["kind"], doc["metadata"]["name"])] = doc
                if doc["kind"] == "StorageClass":
                    self.storage_classes.append({"metadata": dict(doc["metadata"])})
            return _result(args, 0)
        if rest == ["create", "-f", "-"]:
            if self.lease_create_error:
                return _result(args, 1, stderr=self.lease_create_error)
            doc = yaml.safe_load(stdin)
            name = doc["metadata"]["name"]
            if name in self.leases:
                return _result(args, 1, stderr=f'leases.coordination.k8s.io "{name}" AlreadyExists')
            self.leases[name] = doc
            return _result(args, 0)
        if rest[:2] == ["get", "lease"]:
            if rest[2] not in self.leases:
                return _result(args, 1, stderr="NotFound")
            return _result(args, 0, stdout=json.dumps(self.leases[rest[2]]))
        if rest[:2] == ["patch", "lease"]:
            if rest[2] not in self.leases:
                return _result(args, 1, stderr="NotFound")
            patch = json.loads(rest[rest.index("-p") + 1])
            self.leases[rest[2]]["spec"].update(patch["spec"])
            return _result(args, 0)
        if rest[:2] == ["delete", "lease"]:
            self.leases.pop(rest[2], None)
            return _result(args, 0)
        raise AssertionError(f"unexpected parent kubectl command: {rest}")

    def _virtual(self, args: list[str], rest: list[str]) -> subprocess.CompletedProcess:
        if rest == ["get", "--raw=/readyz"]:
            if self.readyz_failures > 0:
                self.readyz_failures -= 1
                return _result(args, 1, stderr="connection refused")
            return _result(args, 0, stdout="ok")
        if rest[:2] == ["get", "storageclass"]:
            return _result(args, 0, stdout=json.dumps({"items": self.storage_classes}))
        if rest[:2] == ["patch", "storageclass"]:
            patch = json.loads(rest[rest.index("-p") + 1])
            for sc in self.storage_classes:
                if sc["metadata"]["name"] == rest[2]:
                    sc["metadata"].setdefault("annotations", {}).update(patch["metadata"]["annotations"])
                    return _result(args, 0)
            return _result(args, 1, stderr="NotFound")
        if rest[:2] == ["apply", "-f"]:
            path = rest[2]
            if path in self.apply_fails:
                return _result(args, 1, stderr="error validating data")
            if Path(path).is_dir():
                self.applied_units.append(Path(path).name)
                return _result(args, 0)
            for doc in self._load_docs(path):
                if doc["kind"] == "PersistentVolumeClaim":
                    self.pvcs[doc["metadata"]["name"]] = doc
                else:
                    self.applied_units.append(Path(path).stem)
            return _result(args, 0)
        if "wait" in rest and rest[rest.index("wait") + 1].startswith("pvc/"):
            name = rest[rest.index("wait") + 1].split("/", 1)[1]
            bound = self.pvc_binds and name in self.pvcs and bool(self.default_storage_classes())
            return _result(args, 0 if bound else 1, stderr="" if bound else "timed out waiting for the condition")
        if rest[:2] == ["rollout", "status"]:
            unit = rest[2].split("/", 1)[1]
            self.rollouts_checked.append(unit)
            if unit in self.rollout_fails:
                return _result(args, 1, stderr=f'error: timed out waiting for "{unit}" rollout to finish')
            return _result(args, 0, stdout=f'deployment "{unit}" successfully rolled out')
        raise AssertionError(f"unexpected vcluster kubectl command: {rest}")


class _ShError(Exception):
    def __init__(self, exit_code: int, stdout: bytes, stderr: bytes) -> None:
        super().__init__(stderr.decode())
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class _ShTimeout(Exception):
    pass


class _ShNotFound(AttributeError):
    pass


class FakeSh:
    """Stands in for the sh module, routing every command to a FakeCluster."""

    ErrorReturnCode = _ShError
    TimeoutException = _ShTimeout
    CommandNotFound = _ShNotFound

    def __init__(self, cluster: FakeCluster) -> None:
        self._cluster = cluster

    def __getattr__(self, program: str):
        def command(*args, **kwargs):
            result = self._cluster([program, *args], **kwargs)
            stdout, stderr = result.stdout.encode(), result.stderr.encode()
            if result.returncode:
                raise _ShError(result.returncode, stdout, stderr)
            return SimpleNamespace(exit_code=0, stdout=stdout, stderr=stderr)

        return command


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("TESTBED_") or key == "KUBECONFIG":
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def parent_kubeconfig(tmp_path: Path) -> Path:
    path = tmp_path / "parent-kubeconfig.yaml"
    path.write_text("apiVersion: v1\nkind: Config\n")
    return path


@pytest.fixture
def fake_cluster(monkeypatch: pytest.MonkeyPatch, parent_kubeconfig: Path) -> FakeCluster:
    cluster = FakeCluster(parent_kubeconfig)
    monkeypatch.setattr(subprocess, "run", cluster)
    monkeypatch.setattr(utils_module, "sh", FakeSh(cluster))
    monkeypatch.setattr(provision_module, "require_command", lambda cmd: None)
    monkeypatch.setattr(tunnel_module, "require_command", lambda cmd: None)
    return cluster


@pytest.fixture
def provision_cfg(tmp_path: Path, parent_kubeconfig: Path) -> ProvisionConfig:
    return ProvisionConfig(
        parent_kubeconfig=parent_kubeconfig,
        kubeconfig_dir=tmp_path / "vc-kcfg",
        fallback_hostpath_base=tmp_path / "vc-storage",
        readiness_retries=3,
        readiness_interval=0,
        pvc_bind_timeout=1,
        flannel_timeout=1,
        fallback_settle_seconds=0,
    )


@pytest.fixture
def manifest_dir(tmp_path: Path) -> Path:
    path = tmp_path / "scripts" / "testbed"
    path.mkdir(parents=True)
    for unit in ("feature-a", "feature-b"):
        (path / f"{unit}.yaml").write_text(yaml.dump({
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": unit},
        }))
    return path


@pytest.fixture
def deploy_cfg(manifest_dir: Path) -> DeployConfig:
    return DeployConfig(manifest_dir=manifest_dir, rollout_timeout=5)


@pytest.fixture
def detect_cfg() -> DetectConfig:
    return DetectConfig(base_ref="origin/main", revision="HEAD")


@pytest.fixture
def lease_cfg() -> LeaseConfig:
    return LeaseConfig(holder="test-runner", lease_retries=2, lease_interval=0)
