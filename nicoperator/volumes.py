"""Extra volumes that mount ConfigMaps into the OFED driver container."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field

from nicoperator.spec import ConfigMap

# Openshift injects its trusted CA bundle into this ConfigMap.
OCP_TRUSTED_CA_CONFIG_MAP_NAME = "ocp-network-operator-trusted-ca"
# Key of the injected bundle inside that ConfigMap.
OCP_TRUSTED_CA_BUNDLE_FILE_NAME = "ca-bundle.crt"
# File name the bundle gets inside the container on RHCOS.
OCP_TRUSTED_CA_TARGET_FILE_NAME = "tls-ca-bundle.pem"

CERT_CONFIG_PATHS = {
    "ubuntu": "/etc/ssl/certs",
    "rhcos": "/etc/pki/ca-trust/extracted/pem",
}

REPO_CONFIG_PATHS = {
    "ubuntu": "/etc/apt/sources.list.d",
    "rhcos": "/etc/yum.repos.d",
}

# {config map name: {key in the config map: file name in the container}}
CONFIG_MAP_KEYS_OVERRIDE = {
    OCP_TRUSTED_CA_CONFIG_MAP_NAME: {OCP_TRUSTED_CA_BUNDLE_FILE_NAME: OCP_TRUSTED_CA_TARGET_FILE_NAME},
}


def get_cert_config_path(osname: str) -> str:
    """Return the OS specific directory for TLS certificates."""
    try:
        return CERT_CONFIG_PATHS[osname]
    except KeyError:
        raise ValueError("distribution not supported") from None


def get_repo_config_path(osname: str) -> str:
    """Return the OS specific directory for package repository files."""
    try:
        return REPO_CONFIG_PATHS[osname]
    except KeyError:
        raise ValueError("distribution not supported") from None


@dataclass(frozen=True)
class KeyToPath:
    """Maps a ConfigMap key to a file path inside the volume."""

    key: str
    path: str


@dataclass(frozen=True)
class VolumeMount:
    """Mounts one file of a volume into the container."""

    name: str
    mount_path: str
    sub_path: str
    read_only: bool = True


@dataclass(frozen=True)
class Volume:
    """A volume backed by selected keys of a ConfigMap."""

    name: str
    config_map_name: str
    items: tuple[KeyToPath, ...] = ()


def _join(directory: str, filename: str) -> str:
    joined = posixpath.join(directory, filename) if directory else filename
    return posixpath.normpath(joined) if joined else ""


@dataclass
class AdditionalVolumeMounts:
    """Volumes and mounts collected for the driver container."""

    volume_mounts: list[VolumeMount] = field(default_factory=list)
    volumes: list[Volume] = field(default_factory=list)

    def from_config_map(self, config_map: ConfigMap, dest_dir: str) -> None:
        """Add a volume for ``config_map`` and mount each of its keys under ``dest_dir``.

        Keys are mounted one file each, in sorted order, so that files already
        present in ``dest_dir`` stay visible.
        """
        overrides = CONFIG_MAP_KEYS_OVERRIDE.get(config_map.name, {})
        mounts = []
        items = []
        for key in sorted(config_map.data):
            dst = overrides.get(key) or key
            mounts.append(
                VolumeMount(
                    name=config_map.name,
                    mount_path=_join(dest_dir, dst),
                    sub_path=dst,
                    read_only=True,
                )
            )
            items.append(KeyToPath(key=key, path=dst))
        self.volume_mounts.extend(mounts)
        self.volumes.append(
            Volume(name=config_map.name, config_map_name=config_map.name, items=tuple(items))
        )