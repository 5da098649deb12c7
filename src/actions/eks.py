"""EKS cluster actions using eksctl and the aws CLI."""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from common import ActionResult, aws_cmd, cli_failure, run_command
from config import Settings

logger = logging.getLogger(__name__)


def _eksctl_flags(region: str, profile: str) -> list[str]:
    flags = ['--region', region]
    if profile:
        flags += ['--profile', profile]
    return flags


@dataclass
class EksClusterAction:
    """Create/delete an EKS cluster and point kubeconfig at it.

    Either pass a ClusterConfig file (config_file) or let the action build
    the eksctl flags from name/version/node settings.
    """
    name: str
    region: str
    profile: str = ''
    version: Optional[str] = None
    node_type: str = 'm5.xlarge'
    nodes: int = 2
    nodes_min: Optional[int] = None
    nodes_max: Optional[int] = None
    managed: bool = True
    config_file: Optional[str] = None
    update_kubeconfig: bool = True
    timeout_create: int = 2400
    timeout_delete: int = 1800

    REQUIRED_TOOLS = ('eksctl', 'aws')

    @classmethod
    def from_spec(cls, spec: dict, settings: Settings) -> 'EksClusterAction':
        return cls(
            name=spec.get('name', settings.cluster_name),
            region=spec.get('region', settings.region),
            profile=spec.get('profile', settings.profile),
            version=spec.get('version'),
            node_type=spec.get('node_type', 'm5.xlarge'),
            nodes=spec.get('nodes', 2),
            nodes_min=spec.get('nodes_min'),
            nodes_max=spec.get('nodes_max'),
            managed=spec.get('managed', True),
            config_file=spec.get('config_file'),
            update_kubeconfig=spec.get('update_kubeconfig', True),
            timeout_create=spec.get('timeout_create', 2400),
            timeout_delete=spec.get('timeout_delete', 1800),
        )

    def _outputs(self) -> dict:
        return {'cluster_name': self.name, 'region': self.region}

    def exists(self) -> bool:
        rc, _, _ = run_command(
            ['eksctl', 'get', 'cluster', '--name', self.name, '-o', 'json']
            + _eksctl_flags(self.region, self.profile),
            timeout=120,
        )
        return rc == 0

    def _create_cmd(self) -> list[str]:
        if self.config_file:
            cmd = ['eksctl', 'create', 'cluster', '-f', self.config_file]
            if self.profile:
                cmd += ['--profile', self.profile]
            return cmd
        cmd = ['eksctl', 'create', 'cluster', '--name', self.name]
        cmd += _eksctl_flags(self.region, self.profile)
        if self.version:
            cmd += ['--version', str(self.version)]
        cmd += ['--node-type', self.node_type, '--nodes', str(self.nodes)]
        if self.nodes_min is not None:
            cmd += ['--nodes-min', str(self.nodes_min)]
        if self.nodes_max is not None:
            cmd += ['--nodes-max', str(self.nodes_max)]
        if self.managed:
            cmd.append('--managed')
        return cmd

    def apply(self, context: dict) -> ActionResult:
        """Create the cluster if missing, then update kubeconfig."""
        start = time.time()

        if self.exists():
            logger.info(f"[eks] Cluster '{self.name}' already exists in {self.region}")
        else:
            logger.info(f"[eks] Creating cluster '{self.name}' in {self.region} (this takes a while)...")
            rc, _, err = run_command(self._create_cmd(), timeout=self.timeout_create)
            if rc != 0:
                return cli_failure('eksctl create cluster', rc, err, time.time() - start)

        if self.update_kubeconfig:
            rc, _, err = run_command(
                aws_cmd(['eks', 'update-kubeconfig', '--name', self.name], self.profile, self.region),
                timeout=120,
            )
            if rc != 0:
                return cli_failure('aws eks update-kubeconfig', rc, err, time.time() - start)

        return ActionResult(
            success=True,
            message=f"Cluster {self.name} ready",
            duration=time.time() - start,
            context_updates=self._outputs(),
        )

    def destroy(self, context: dict) -> ActionResult:
        """Delete the cluster and wait for CloudFormation to finish."""
        start = time.time()
        logger.info(f"[eks] Deleting cluster '{self.name}' in {self.region}...")
        rc, _, err = run_command(
            ['eksctl', 'delete', 'cluster', '--name', self.name, '--wait']
            + _eksctl_flags(self.region, self.profile),
            timeout=self.timeout_delete,
        )
        if rc != 0:
            lowered = err.lower()
            if 'not found' in lowered or 'resourcenotfound' in lowered or 'no cluster found' in lowered:
                logger.info(f"[eks] Cluster '{self.name}' already gone")
            else:
                return cli_failure('eksctl delete cluster', rc, err, time.time() - start)
        return ActionResult(
            success=True,
            message=f"Cluster {self.name} deleted",
            duration=time.time() - start,
        )
