"""Small helpers for manifest discovery and Kubernetes object inspection."""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Mapping

POD_TEMPLATE_GENERATION_LABEL = "pod-template-generation"

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_DECIMAL_INT = re.compile(r"[+-]?[0-9]+")

log = logging.getLogger(__name__)


def _walk(path: str):
    """Yield (path, is_dir) for ``path`` and everything below it, in lexical order."""
    is_dir = os.path.isdir(path) and not os.path.islink(path)
    if not os.path.lexists(path):
        raise FileNotFoundError(f"no such file or directory: {path}")
    yield path, is_dir
    if is_dir:
        for entry in sorted(os.listdir(path)):
            yield from _walk(os.path.join(path, entry))


def get_files_with_suffix(base_dir: str, *suffixes: str) -> list[str]:
    """Return every file below ``base_dir`` whose name ends with one of ``suffixes``.

    Sub-directories are searched recursively. A file is listed once for each
    suffix it matches.
    """
    files: list[str] = []
    try:
        for path, is_dir in _walk(os.fspath(base_dir)):
            if is_dir:
                continue
            base = os.path.basename(path)
            files.extend(path for suffix in suffixes if base.endswith(suffix))
    except OSError as err:
        raise OSError(f"error traversing directory tree: {err}") from err
    return files


def get_network_attachment_def_link(net_att_def: Mapping[str, Any]) -> str:
    """Return the self link of a NetworkAttachmentDefinition object."""
    metadata = net_att_def.get("metadata") or {}
    return "{}/namespaces/{}/{}/{}".format(
        net_att_def.get("apiVersion", ""),
        metadata.get("namespace", ""),
        net_att_def.get("kind", ""),
        metadata.get("name", ""),
    )


def get_pod_template_generation(pod: Mapping[str, Any]) -> int:
    """Return the pod template generation recorded in the pod's labels.

    Raises ValueError when the label is missing or is not a 64-bit decimal integer.
    """
    labels = (pod.get("metadata") or {}).get("labels") or {}
    raw = labels.get(POD_TEMPLATE_GENERATION_LABEL, "")
    if not _DECIMAL_INT.fullmatch(raw):
        err = ValueError(f"invalid pod template generation {raw!r}")
        log.error("Failed to get pod template generation: %s", err)
        raise err
    generation = int(raw)
    if not _INT64_MIN <= generation <= _INT64_MAX:
        err = ValueError(f"pod template generation {raw!r} out of range")
        log.error("Failed to get pod template generation: %s", err)
        raise err
    return generation