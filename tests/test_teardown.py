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

from __future__ import annotations

from testbed_manager.provision import provision
from testbed_manager.teardown import teardown


def test_teardown_removes_everything(fake_cluster, provision_cfg):
    result = provision("42", provision_cfg)

    assert teardown("42", provision_cfg)

    assert fake_cluster.vclusters == {}
    assert "dev-42" not in fake_cluster.namespaces
    assert ("PersistentVolume", "vc-static-pv-42") not in fake_cluster.parent_objects
    assert not result.kubeconfig.exists()


def test_teardown_is_idempotent(fake_cluster, provision_cfg):
    assert teardown("42", provision_cfg)
    assert teardown("42", provision_cfg)
    assert fake_cluster.kubectl_calls("delete", "namespace", "dev-42", "--ignore-not-found", "--wait=false")


def test_teardown_failures_are_warnings(fake_cluster, provision_cfg):
    provision("42", provision_cfg)
    fake_cluster.reachable = False

    assert teardown("42", provision_cfg) is False
    assert not (provision_cfg.kubeconfig_dir / "kubeconfig-42.yaml").exists()
