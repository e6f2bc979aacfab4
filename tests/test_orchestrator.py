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

import pytest

from testbed_manager.config import TunnelConfig
from testbed_manager.constants import EXIT_PARENT_UNREACHABLE
from testbed_manager.errors import FatalError
from testbed_manager.orchestrator import run_pipeline, run_provision


@pytest.fixture
def pipeline_cfgs(detect_cfg, provision_cfg, deploy_cfg, lease_cfg):
    return {
        "detect_cfg": detect_cfg,
        "provision_cfg": provision_cfg,
        "deploy_cfg": deploy_cfg,
        "lease_cfg": lease_cfg,
        "tunnel_cfg": TunnelConfig(),
    }


def test_pipeline_deploys_and_verifies_changed_units(fake_cluster, pipeline_cfgs):
    fake_cluster.diff_output = "scripts/testbed/feature-a.yaml\nREADME.md\n"

    result = run_pipeline("42", **pipeline_cfgs)

    assert result.units == {"feature-a"}
    assert result.applied == ("feature-a",)
    assert fake_cluster.applied_units == ["feature-a"]
    assert fake_cluster.rollouts_checked == ["feature-a"]
    assert result.kubeconfig.exists()
    assert fake_cluster.leases == {}


def test_pipeline_with_no_changes_still_provisions(fake_cluster, pipeline_cfgs):
    fake_cluster.diff_output = "README.md\n"

    result = run_pipeline("42", **pipeline_cfgs)

    assert result.units == frozenset()
    assert result.applied == ()
    assert fake_cluster.vclusters == {"vcluster-42": "dev-42"}
    assert fake_cluster.applied_units == []
    assert fake_cluster.kubectl_calls("rollout", "status") == []


def test_units_without_manifest_are_not_verified(fake_cluster, pipeline_cfgs):
    fake_cluster.diff_output = "scripts/testbed/feature-b.yaml\nscripts/testbed/removed.yaml\n"

    result = run_pipeline("42", **pipeline_cfgs)

    assert result.units == {"feature-b", "removed"}
    assert result.applied == ("feature-b",)
    assert fake_cluster.rollouts_checked == ["feature-b"]


def test_provisioning_failure_stops_before_deploy(fake_cluster, pipeline_cfgs):
    fake_cluster.diff_output = "scripts/testbed/feature-a.yaml\n"
    fake_cluster.vcluster_create_rc = 3

    with pytest.raises(FatalError) as excinfo:
        run_pipeline("42", **pipeline_cfgs)

    assert excinfo.value.exit_code == 3
    assert fake_cluster.applied_units == []
    assert fake_cluster.rollouts_checked == []
    assert fake_cluster.leases == {}


def test_unreachable_parent_fails_before_taking_the_lease(fake_cluster, pipeline_cfgs):
    fake_cluster.reachable = False

    with pytest.raises(FatalError) as excinfo:
        run_pipeline("42", **pipeline_cfgs)

    assert excinfo.value.exit_code == EXIT_PARENT_UNREACHABLE
    assert fake_cluster.kubectl_calls("create", "-f", "-") == []


def test_run_provision_holds_the_lease_while_provisioning(fake_cluster, provision_cfg, lease_cfg):
    result = run_provision("42", provision_cfg, lease_cfg, TunnelConfig())

    assert result.kubeconfig.exists()
    assert fake_cluster.kubectl_calls("create", "-f", "-")
    assert fake_cluster.leases == {}


def _first_index(fake_cluster, *prefix):
    calls = fake_cluster.kubectl_calls()
    return next(i for i, call in enumerate(calls) if call[: len(prefix)] == list(prefix))


def test_directory_unit_is_detected_and_applied(fake_cluster, pipeline_cfgs, manifest_dir):
    (manifest_dir / "bundle").mkdir()
    (manifest_dir / "bundle" / "deployment.yaml").write_text("kind: Deployment\n")
    fake_cluster.diff_output = "scripts/testbed/bundle/deployment.yaml\n"

    result = run_pipeline("42", **pipeline_cfgs)

    assert result.units == {"bundle"}
    assert result.applied == ("bundle",)
    assert fake_cluster.kubectl_calls("apply", "-f", str(manifest_dir / "bundle"), "--recursive")
    assert fake_cluster.rollouts_checked == ["bundle"]


def test_parent_context_is_selected_before_preflight_and_lease(fake_cluster, pipeline_cfgs):
    run_pipeline("42", **pipeline_cfgs)

    use_context = _first_index(fake_cluster, "config", "use-context", "kubernetes-admin@kubernetes")
    assert use_context < _first_index(fake_cluster, "get", "--raw=/healthz")
    assert use_context < _first_index(fake_cluster, "create", "-f", "-")


def test_run_provision_selects_context_before_lease(fake_cluster, provision_cfg, lease_cfg):
    run_provision("42", provision_cfg, lease_cfg, TunnelConfig())

    assert _first_index(fake_cluster, "config", "use-context") < _first_index(fake_cluster, "create", "-f", "-")


def test_lease_is_renewed_between_provision_and_deploy(fake_cluster, pipeline_cfgs):
    fake_cluster.diff_output = "scripts/testbed/feature-a.yaml\n"

    run_pipeline("42", **pipeline_cfgs)

    renew = _first_index(fake_cluster, "patch", "lease", "testbed-42")
    assert _first_index(fake_cluster, "get", "--raw=/readyz") < renew
    assert renew < _first_index(fake_cluster, "rollout", "status", "deploy/feature-a")
