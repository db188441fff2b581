from nicoperator.spec import (
    ConfigMap,
    ConfigMapNameReference,
    DevicePluginSpec,
    EnvVar,
    ImageSpec,
    NicClusterPolicy,
    NicClusterPolicySpec,
    OFEDDriverSpec,
    PodProbeSpec,
    ProxyConfig,
    PSPSpec,
    SecondaryNetworkSpec,
)


def test_ofed_driver_spec_carries_image_fields():
    spec = OFEDDriverSpec(image="mofed", repository="nvcr.io/mellanox", version="5.7-1.0.0.0")
    assert spec.image == "mofed"
    assert spec.repository == "nvcr.io/mellanox"
    assert spec.version == "5.7-1.0.0.0"
    assert isinstance(spec, ImageSpec)


def test_ofed_driver_spec_defaults_are_empty():
    spec = OFEDDriverSpec()
    assert spec.env == []
    assert spec.cert_config is None
    assert spec.repo_config is None
    assert spec.startup_probe is None
    assert spec.liveness_probe is None
    assert spec.readiness_probe is None


def test_mutable_defaults_are_not_shared():
    first = OFEDDriverSpec()
    second = OFEDDriverSpec()
    first.env.append(EnvVar("HTTP_PROXY", "http-policy"))
    assert second.env == []
    assert first.env == [EnvVar(name="HTTP_PROXY", value="http-policy")]


def test_env_var_equality_by_value():
    assert EnvVar("NO_PROXY", "x") == EnvVar(name="NO_PROXY", value="x")
    assert EnvVar("NO_PROXY", "x") != EnvVar("no_proxy", "x")
    assert EnvVar("NO_PROXY").value == ""


def test_device_plugin_spec_holds_config():
    spec = DevicePluginSpec(image="image", repository="Repository", version="v0.0", config="config")
    assert spec.config == "config"
    assert spec.repository == "Repository"
    assert spec.image_pull_secrets == []


def test_policy_spec_defaults():
    cr = NicClusterPolicy()
    assert cr.spec.ofed_driver is None
    assert cr.spec.rdma_shared_device_plugin is None
    assert cr.spec.sriov_device_plugin is None
    assert cr.spec.secondary_network is None
    assert cr.spec.psp is None
    assert cr.spec.tolerations == []
    assert cr.spec.node_affinity is None


def test_policy_identity():
    cr = NicClusterPolicy(name="nic-policy", namespace="ns", spec=NicClusterPolicySpec(psp=PSPSpec(enabled=True)))
    assert cr.kind == "NicClusterPolicy"
    assert cr.name == "nic-policy"
    assert cr.spec.psp.enabled is True


def test_secondary_network_and_probes():
    network = SecondaryNetworkSpec(ipam_plugin=ImageSpec(image="whereabouts"))
    assert network.ipam_plugin.image == "whereabouts"
    probe = PodProbeSpec(initial_delay_seconds=10, period_seconds=30)
    assert (probe.initial_delay_seconds, probe.period_seconds) == (10, 30)
    assert PSPSpec().enabled is False


def test_config_map_and_reference():
    cm = ConfigMap(name="ocp-network-operator-trusted-ca", data={"ca-bundle.crt": ""})
    assert cm.data["ca-bundle.crt"] == ""
    assert cm.labels == {}
    assert ConfigMapNameReference(cm.name).name == "ocp-network-operator-trusted-ca"


def test_proxy_config_defaults():
    proxy = ProxyConfig(http_proxy="http-cluster-wide")
    assert proxy.http_proxy == "http-cluster-wide"
    assert proxy.https_proxy == ""
    assert proxy.no_proxy == ""
    assert proxy.trusted_ca == ""