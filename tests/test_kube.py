"""Tests for link resolution and service sync."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from kubernetes.client import (
    ApiException,
    V1Deployment,
    V1DeploymentSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1Pod,
    V1PodList,
    V1PodStatus,
)

from vm_operator.kube import (
    MANAGED_BY_LABEL,
    NETWORKS_STATUS_ANNOTATION,
    KubeLinkResolver,
    LinkError,
    LinkReference,
    ServiceSyncer,
    pod_network_ip,
)

POD_LINK = "/api/v1/namespaces/demo/pods/web-0"
DEPLOYMENT_LINK = "/apis/apps/v1/namespaces/demo/deployments/web"


def _pod(
    name: str,
    ip: str = "",
    annotations: dict[str, str] | None = None,
    deleting: bool = False,
) -> V1Pod:
    return V1Pod(
        metadata=V1ObjectMeta(
            name=name,
            namespace="demo",
            labels={"app": "web", "pod-template-hash": "abc"},
            annotations=annotations,
            deletion_timestamp=datetime.now(UTC) if deleting else None,
        ),
        status=V1PodStatus(pod_ip=ip or None),
    )


def _networks(*entries: dict) -> dict[str, str]:
    return {NETWORKS_STATUS_ANNOTATION: json.dumps(list(entries))}


class TestLinkReference:
    """Tests for LinkReference.parse."""

    def test_pod(self) -> None:
        """Test parsing a core pod path."""
        link = LinkReference.parse(POD_LINK)

        assert link.is_pod
        assert link.namespaced_name == "demo/web-0"
        assert link.service_name == "demo-web-0"
        assert link.path == POD_LINK

    def test_deployment(self) -> None:
        """Test parsing a grouped workload path."""
        link = LinkReference.parse(DEPLOYMENT_LINK + "/")

        assert not link.is_pod
        assert (link.group, link.resource, link.name) == ("apps", "deployments", "web")
        assert link.path == DEPLOYMENT_LINK

    def test_digest_stable(self) -> None:
        """Test that equivalent spellings share a digest."""
        assert LinkReference.parse(POD_LINK).digest() == LinkReference.parse(POD_LINK + "/").digest()

    @pytest.mark.parametrize(
        "link",
        [
            "",
            "/api/v1/pods/web-0",
            "/api/v1/namespaces/demo/services/web",
            "/apis/batch/v1/namespaces/demo/jobs/web",
            "/api/v1/namespaces//pods/web-0",
        ],
    )
    def test_rejected(self, link: str) -> None:
        """Test that malformed and unsupported links raise LinkError."""
        with pytest.raises(LinkError):
            LinkReference.parse(link)


class TestPodNetworkIp:
    """Tests for picking the provider network address of a pod."""

    def test_annotation_preferred(self) -> None:
        """Test that the provider network entry wins over the pod IP."""
        pod = _pod(
            "web-0",
            ip="172.16.0.4",
            annotations=_networks(
                {"name": "default/other", "ips": ["192.168.9.9"]},
                {"name": "kube-system/kuryr", "ips": ["10.1.0.7"]},
            ),
        )

        assert pod_network_ip(pod) == "10.1.0.7"

    def test_falls_back_to_pod_ip(self) -> None:
        """Test that pods without the annotation use their pod IP."""
        assert pod_network_ip(_pod("web-0", ip="172.16.0.4")) == "172.16.0.4"

    def test_unparseable_annotation(self) -> None:
        """Test that a broken annotation is ignored."""
        pod = _pod("web-0", ip="172.16.0.4", annotations={NETWORKS_STATUS_ANNOTATION: "{"})

        assert pod_network_ip(pod) == "172.16.0.4"

    def test_no_address(self) -> None:
        """Test that a pod without any address yields nothing."""
        assert pod_network_ip(_pod("web-0")) == ""


class TestKubeLinkResolver:
    """Tests for KubeLinkResolver with mocked API clients."""

    @pytest.fixture()
    def core_api(self) -> MagicMock:
        return MagicMock()

    @pytest.fixture()
    def apps_api(self) -> MagicMock:
        api = MagicMock()
        api.read_namespaced_deployment.return_value = V1Deployment(
            spec=V1DeploymentSpec(
                selector=V1LabelSelector(match_labels={"app": "web", "tier": "front"}),
                template=MagicMock(),
            )
        )
        return api

    @pytest.fixture()
    def resolver(self, core_api: MagicMock, apps_api: MagicMock) -> KubeLinkResolver:
        return KubeLinkResolver(core_api, apps_api)

    def test_exists(self, resolver: KubeLinkResolver, core_api: MagicMock) -> None:
        """Test that a 404 means the target is gone."""
        link = LinkReference.parse(POD_LINK)
        assert resolver.exists(link) is True

        core_api.read_namespaced_pod.side_effect = ApiException(status=404)
        assert resolver.exists(link) is False

    def test_exists_propagates_other_errors(
        self, resolver: KubeLinkResolver, core_api: MagicMock
    ) -> None:
        """Test that non-404 errors are not mistaken for absence."""
        core_api.read_namespaced_pod.side_effect = ApiException(status=403)

        with pytest.raises(ApiException):
            resolver.exists(LinkReference.parse(POD_LINK))

    def test_pod_selector_drops_template_hash(
        self, resolver: KubeLinkResolver, core_api: MagicMock
    ) -> None:
        """Test that a pod's labels minus the template hash select it."""
        core_api.read_namespaced_pod.return_value = _pod("web-0")

        assert resolver.selector(LinkReference.parse(POD_LINK)) == {"app": "web"}

    def test_deployment_pod_ips(self, resolver: KubeLinkResolver, core_api: MagicMock) -> None:
        """Test that workload members are the live pods its selector matches."""
        core_api.list_namespaced_pod.return_value = V1PodList(
            items=[
                _pod("web-a", ip="10.1.0.8"),
                _pod("web-b", ip="10.1.0.9", deleting=True),
                _pod("web-c"),
            ]
        )

        ips = resolver.pod_ips(LinkReference.parse(DEPLOYMENT_LINK))

        assert ips == ["10.1.0.8"]
        core_api.list_namespaced_pod.assert_called_once_with(
            "demo", label_selector="app=web,tier=front"
        )

    def test_missing_workload_has_no_ips(
        self, resolver: KubeLinkResolver, apps_api: MagicMock
    ) -> None:
        """Test that a deleted workload yields no members."""
        apps_api.read_namespaced_deployment.side_effect = ApiException(status=404)

        assert resolver.pod_ips(LinkReference.parse(DEPLOYMENT_LINK)) == []


class TestServiceSyncer:
    """Tests for ServiceSyncer."""

    @pytest.fixture()
    def core_api(self) -> MagicMock:
        api = MagicMock()
        api.read_namespaced_service.side_effect = ApiException(status=404)
        return api

    @pytest.fixture()
    def syncer(self, core_api: MagicMock) -> ServiceSyncer:
        resolver = MagicMock(spec=KubeLinkResolver)
        resolver.selector.return_value = {"app": "web"}
        return ServiceSyncer(resolver, core_api)

    def test_creates_service_once_address_known(
        self, syncer: ServiceSyncer, core_api: MagicMock
    ) -> None:
        """Test that a Service is created only after the address resolves."""
        link = LinkReference.parse(DEPLOYMENT_LINK)
        syncer.add_link(link, [(443, "TCP"), (53, "UDP")])

        syncer.sync_once(lambda _: "")
        core_api.create_namespaced_service.assert_not_called()

        syncer.sync_once(lambda _: "192.168.0.10")

        namespace, body = core_api.create_namespaced_service.call_args.args
        assert namespace == "demo"
        assert body["metadata"]["name"] == "demo-web"
        assert body["metadata"]["labels"][MANAGED_BY_LABEL] == "vm-operator"
        assert body["spec"]["externalIPs"] == ["192.168.0.10"]
        assert body["spec"]["selector"] == {"app": "web"}
        assert [p["name"] for p in body["spec"]["ports"]] == ["udp-53", "tcp-443"]

    def test_unchanged_inputs_not_reapplied(
        self, syncer: ServiceSyncer, core_api: MagicMock
    ) -> None:
        """Test that a Service is only written when its inputs change."""
        link = LinkReference.parse(DEPLOYMENT_LINK)
        syncer.add_link(link, [(80, "TCP")])
        syncer.sync_once(lambda _: "192.168.0.10")
        syncer.add_link(link, [(80, "TCP")])
        syncer.sync_once(lambda _: "192.168.0.10")

        assert core_api.create_namespaced_service.call_count == 1

        core_api.read_namespaced_service.side_effect = None
        syncer.sync_once(lambda _: "192.168.0.11")

        core_api.patch_namespaced_service.assert_called_once()

    def test_removed_link_deletes_service(
        self, syncer: ServiceSyncer, core_api: MagicMock
    ) -> None:
        """Test that removing a link deletes its Service and forgets it."""
        link = LinkReference.parse(POD_LINK)
        syncer.add_link(link, [(80, "TCP")])
        syncer.remove_link(link)

        syncer.sync_once(lambda _: "192.168.0.10")

        core_api.delete_namespaced_service.assert_called_once_with("demo-web-0", "demo")
        assert syncer.tracked() == []

    def test_failed_delete_retried(self, syncer: ServiceSyncer, core_api: MagicMock) -> None:
        """Test that a failed delete is attempted again next cycle."""
        link = LinkReference.parse(POD_LINK)
        syncer.add_link(link, [(80, "TCP")])
        syncer.remove_link(link)
        core_api.delete_namespaced_service.side_effect = [ApiException(status=500), None]

        syncer.sync_once(lambda _: "")
        syncer.sync_once(lambda _: "")

        assert core_api.delete_namespaced_service.call_count == 2
