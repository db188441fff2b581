"""Data model of the NicClusterPolicy resource and related cluster settings."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional


@dataclass
class EnvVar:
    """An environment variable for a container."""

    name: str
    value: str = ""


@dataclass(kw_only=True)
class ImageSpec:
    """Where a container image comes from."""

    image: str = ""
    repository: str = ""
    version: str = ""
    image_pull_secrets: list[str] = field(default_factory=list)


@dataclass(kw_only=True)
class PodProbeSpec:
    """Timing of a container probe."""

    initial_delay_seconds: int = 0
    period_seconds: int = 0


@dataclass
class ConfigMapNameReference:
    """Reference to a ConfigMap by name."""

    name: str = ""


@dataclass(kw_only=True)
class ConfigMap:
    """A ConfigMap: named string data in a namespace."""

    name: str
    namespace: str = ""
    data: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(kw_only=True)
class OFEDDriverSpec(ImageSpec):
    """Settings of the OFED driver container."""

    env: list[EnvVar] = field(default_factory=list)
    cert_config: Optional[ConfigMapNameReference] = None
    repo_config: Optional[ConfigMapNameReference] = None
    startup_probe: Optional[PodProbeSpec] = None
    liveness_probe: Optional[PodProbeSpec] = None
    readiness_probe: Optional[PodProbeSpec] = None


@dataclass(kw_only=True)
class DevicePluginSpec(ImageSpec):
    """Settings of a device plugin: its image and its configuration document."""

    config: str = ""


@dataclass(kw_only=True)
class SecondaryNetworkSpec:
    """Components of the secondary network."""

    ipam_plugin: Optional[ImageSpec] = None


@dataclass(kw_only=True)
class PSPSpec:
    """Whether the privileged pod security policy is deployed."""

    enabled: bool = False


@dataclass(kw_only=True)
class NicClusterPolicySpec:
    """Desired state of the network components in the cluster."""

    ofed_driver: Optional[OFEDDriverSpec] = None
    rdma_shared_device_plugin: Optional[DevicePluginSpec] = None
    sriov_device_plugin: Optional[DevicePluginSpec] = None
    secondary_network: Optional[SecondaryNetworkSpec] = None
    psp: Optional[PSPSpec] = None
    tolerations: list[dict[str, Any]] = field(default_factory=list)
    node_affinity: Optional[dict[str, Any]] = None


@dataclass(kw_only=True)
class NicClusterPolicy:
    """The cluster-wide policy resource that the states reconcile."""

    api_version: ClassVar[str] = "mellanox.com/v1alpha1"
    kind: ClassVar[str] = "NicClusterPolicy"

    name: str = ""
    namespace: str = ""
    uid: str = ""
    spec: NicClusterPolicySpec = field(default_factory=NicClusterPolicySpec)


@dataclass(kw_only=True)
class ProxyConfig:
    """Cluster-wide proxy settings; ``trusted_ca`` names the CA ConfigMap."""

    http_proxy: str = ""
    https_proxy: str = ""
    no_proxy: str = ""
    trusted_ca: str = ""