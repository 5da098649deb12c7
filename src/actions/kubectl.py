"""kubectl helpers shared by actions that publish Kubernetes objects."""

import base64
import logging
from typing import Optional

import yaml

from common import run_command

logger = logging.getLogger(__name__)


def opaque_secret(name: str, data: dict, namespace: Optional[str] = None) -> dict:
    """Build an Opaque Secret manifest; values are base64-encoded."""
    metadata = {'name': name}
    if namespace:
        metadata['namespace'] = namespace
    return {
        'apiVersion': 'v1',
        'kind': 'Secret',
        'metadata': metadata,
        'type': 'Opaque',
        'data': {
            key: base64.b64encode(value.encode('utf-8')).decode('ascii')
            for key, value in data.items()
        },
    }


def apply_manifest(manifest: dict, timeout: int = 120) -> tuple[int, str, str]:
    """kubectl apply a manifest passed on stdin (never written to disk)."""
    kind = manifest.get('kind', '?')
    name = manifest.get('metadata', {}).get('name', '?')
    logger.debug(f"kubectl apply {kind}/{name}")
    return run_command(
        ['kubectl', 'apply', '-f', '-'],
        timeout=timeout,
        input_text=yaml.safe_dump(manifest, sort_keys=False),
    )


def _namespace_args(namespace: Optional[str]) -> list[str]:
    return ['-n', namespace] if namespace else []


def resource_exists(kind: str, name: str, namespace: Optional[str] = None, timeout: int = 60) -> bool:
    """True if `kubectl get kind name` succeeds."""
    rc, _, _ = run_command(
        ['kubectl', 'get', kind, name, '-o', 'name'] + _namespace_args(namespace),
        timeout=timeout,
    )
    return rc == 0


def delete_resource(kind: str, name: str, namespace: Optional[str] = None, timeout: int = 120) -> tuple[int, str, str]:
    """kubectl delete, treating an already-absent object as success."""
    return run_command(
        ['kubectl', 'delete', kind, name, '--ignore-not-found'] + _namespace_args(namespace),
        timeout=timeout,
    )
