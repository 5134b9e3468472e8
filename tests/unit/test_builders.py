"""Tests for child manifest builders."""

from __future__ import annotations

from coder_k8s_operator.builders.common import prune, ready_replicas
from coder_k8s_operator.builders.controlplane import (
    build_control_plane_deployment,
    build_control_plane_service,
    control_plane_url,
)
from coder_k8s_operator.builders.provisioner import (
    build_provisioner_deployment,
    build_role,
    build_role_binding,
    build_service_account,
)
from coder_k8s_operator.builders.workspaceproxy import (
    build_workspace_proxy_deployment,
    build_workspace_proxy_service,
)
from coder_k8s_operator.constants import ANNOTATION_PROVISIONER_KEY_CHECKSUM, DEFAULT_IMAGE

NS = "coder"


def container(deployment: dict) -> dict:
    return deployment["spec"]["template"]["spec"]["containers"][0]


def env_names(deployment: dict) -> list[str]:
    return [e["name"] for e in container(deployment)["env"]]


class TestCommon:
    """Test cases for shared manifest helpers."""

    def test_prune(self):
        """Test that unset fields are dropped and zero values kept."""
        assert prune({"a": None, "b": {}, "c": [], "d": 0, "e": {"f": None}}) == {"d": 0}

    def test_ready_replicas(self):
        """Test reading ready replicas from a live deployment."""
        assert ready_replicas({"status": {"readyReplicas": 2}}) == 2
        assert ready_replicas({"status": {}}) == 0
        assert ready_replicas(None) == 0


class TestControlPlane:
    """Test cases for control plane manifests."""

    def test_deployment_defaults(self):
        """Test default image, replicas and listen address."""
        deployment = build_control_plane_deployment("coder", NS, {})

        assert deployment["metadata"]["name"] == "coder"
        assert deployment["spec"]["replicas"] == 1
        assert container(deployment)["image"] == DEFAULT_IMAGE
        assert container(deployment)["args"] == ["--http-address=0.0.0.0:3000"]
        assert deployment["spec"]["selector"]["matchLabels"] == deployment["metadata"]["labels"]

    def test_deployment_overrides(self):
        """Test image, replicas, extra args, env and pull secrets."""
        spec = {
            "image": "ghcr.io/coder/coder:v2.20.0",
            "replicas": 0,
            "extraArgs": ["--verbose"],
            "extraEnv": [{"name": "CODER_PG_CONNECTION_URL", "value": "postgres://db"}],
            "imagePullSecrets": [{"name": "regcred"}],
        }

        deployment = build_control_plane_deployment("coder", NS, spec)

        assert deployment["spec"]["replicas"] == 0
        assert container(deployment)["image"] == "ghcr.io/coder/coder:v2.20.0"
        assert container(deployment)["args"][-1] == "--verbose"
        assert env_names(deployment) == ["CODER_PG_CONNECTION_URL"]
        assert deployment["spec"]["template"]["spec"]["imagePullSecrets"] == [{"name": "regcred"}]

    def test_service_and_url(self):
        """Test the service port and the derived in-cluster URL."""
        service = build_control_plane_service("coder", NS, {"service": {"type": "LoadBalancer", "port": 8080}})

        assert service["spec"]["type"] == "LoadBalancer"
        assert service["spec"]["ports"][0] == {"name": "http", "port": 8080, "protocol": "TCP", "targetPort": 3000}
        assert control_plane_url(service) == "http://coder.coder.svc.cluster.local:8080"

    def test_service_default_port(self):
        """Test the default port and type."""
        service = build_control_plane_service("coder", NS, {})

        assert service["spec"]["type"] == "ClusterIP"
        assert control_plane_url(service).endswith(":80")


class TestProvisioner:
    """Test cases for provisioner manifests."""

    def build(self, spec=None, organization="default"):
        return build_provisioner_deployment(
            "ci", NS, spec or {}, "img:1", "http://coder", organization,
            "ci-provisioner-key", "key", "ci-provisioner", "abcd1234",
        )

    def test_deployment(self):
        """Test command, key env, service account and checksum annotation."""
        deployment = self.build()
        pod_spec = deployment["spec"]["template"]["spec"]

        assert deployment["metadata"]["name"] == "provisioner-ci"
        assert container(deployment)["args"] == ["provisionerd", "start"]
        assert container(deployment)["env"][1] == {
            "name": "CODER_PROVISIONER_DAEMON_KEY",
            "valueFrom": {"secretKeyRef": {"name": "ci-provisioner-key", "key": "key"}},
        }
        assert pod_spec["serviceAccountName"] == "ci-provisioner"
        assert pod_spec["terminationGracePeriodSeconds"] == 600
        annotations = deployment["spec"]["template"]["metadata"]["annotations"]
        assert annotations == {ANNOTATION_PROVISIONER_KEY_CHECKSUM: "abcd1234"}

    def test_default_organization_not_set(self):
        """Test that CODER_ORGANIZATION is only set for non-default organizations."""
        assert "CODER_ORGANIZATION" not in env_names(self.build())
        assert "CODER_ORGANIZATION" in env_names(self.build(organization="platform"))

    def test_overrides(self):
        """Test replicas, grace period, extra args and resources."""
        spec = {
            "replicas": 3,
            "terminationGracePeriodSeconds": 0,
            "extraArgs": ["--verbose"],
            "resources": {"limits": {"cpu": "1"}},
        }

        deployment = self.build(spec)

        assert deployment["spec"]["replicas"] == 3
        assert deployment["spec"]["template"]["spec"]["terminationGracePeriodSeconds"] == 0
        assert container(deployment)["args"] == ["provisionerd", "start", "--verbose"]
        assert container(deployment)["resources"] == {"limits": {"cpu": "1"}}

    def test_rbac(self):
        """Test service account, role and binding wiring."""
        service_account = build_service_account("ci", NS, "ci-provisioner")
        role = build_role("ci", NS)
        binding = build_role_binding("ci", NS, "ci-provisioner")

        assert service_account["metadata"]["name"] == "ci-provisioner"
        assert role["rules"][0]["resources"] == ["pods", "persistentvolumeclaims"]
        assert binding["roleRef"]["name"] == role["metadata"]["name"]
        assert binding["subjects"] == [{"kind": "ServiceAccount", "name": "ci-provisioner", "namespace": NS}]


class TestWorkspaceProxy:
    """Test cases for workspace proxy manifests."""

    def test_deployment(self):
        """Test command, primary URL and token env."""
        deployment = build_workspace_proxy_deployment("edge", NS, {"derpOnly": True}, "https://coder", "tok", "token")

        assert deployment["metadata"]["name"] == "wsproxy-edge"
        assert container(deployment)["args"] == ["wsproxy", "server", "--http-address=0.0.0.0:3001", "--derp-only"]
        assert env_names(deployment) == ["CODER_PRIMARY_ACCESS_URL", "CODER_PROXY_SESSION_TOKEN"]

    def test_service(self):
        """Test the proxy service name and ports."""
        service = build_workspace_proxy_service("edge", NS, {})

        assert service["metadata"]["name"] == "wsproxy-edge"
        assert service["spec"]["ports"][0]["targetPort"] == 3001
