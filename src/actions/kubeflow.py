"""Kubeflow platform install via kfctl and a rendered KfDef manifest."""

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from common import ActionResult, cli_failure, run_command
from config import Settings, get_state_dir
from stack_opr.errors import PermanentActionError

logger = logging.getLogger(__name__)

MANIFESTS_VERSION = 'v1.2-branch'
MANIFESTS_URI = 'https://github.com/kubeflow/manifests/archive/{version}.tar.gz'

# (application name, path in the manifests repo) for the AWS distribution
AWS_APPLICATIONS = (
    ('namespaces', 'namespaces/base'),
    ('application', 'application/v3'),
    ('istio-stack', 'stacks/aws/application/istio-1-3-1-stack'),
    ('cluster-local-gateway', 'stacks/aws/application/cluster-local-gateway-1-3-1'),
    ('istio', 'istio/istio/base'),
    ('cert-manager-crds', 'stacks/aws/application/cert-manager-crds'),
    ('cert-manager-kube-system-resources', 'stacks/aws/application/cert-manager-kube-system-resources'),
    ('cert-manager', 'stacks/aws/application/cert-manager'),
    ('metacontroller', 'metacontroller/base'),
    ('oidc-authservice', 'stacks/aws/application/oidc-authservice'),
    ('dex', 'stacks/aws/application/dex-auth'),
    ('bootstrap', 'admission-webhook/bootstrap/overlays/application'),
    ('spark-operator', 'spark/spark-operator/overlays/application'),
    ('kubeflow-apps', 'stacks/aws'),
    ('istio-ingress', 'aws/istio-ingress/base_v3'),
    ('knative', 'knative/installs/generic'),
    ('kfserving', 'kfserving/installs/generic'),
    ('spartakus', 'stacks/aws/application/spartakus'),
)


def render_kfdef(username: str, password: str, region: str,
                 version: str = MANIFESTS_VERSION,
                 roles: Optional[list] = None,
                 enable_pod_iam_policy: bool = True) -> dict:
    """Build the KfDef document for Kubeflow on AWS with basic auth."""
    aws_spec = {
        'auth': {'basicAuth': {'password': password, 'username': username}},
        'region': region,
        'enablePodIamPolicy': enable_pod_iam_policy,
    }
    if roles:
        aws_spec['roles'] = list(roles)
    return {
        'apiVersion': 'kfdef.apps.kubeflow.org/v1',
        'kind': 'KfDef',
        'metadata': {'namespace': 'kubeflow'},
        'spec': {
            'applications': [
                {'kustomizeConfig': {'repoRef': {'name': 'manifests', 'path': path}}, 'name': name}
                for name, path in AWS_APPLICATIONS
            ],
            'plugins': [{'kind': 'KfAwsPlugin', 'metadata': {'name': 'aws'}, 'spec': aws_spec}],
            'repos': [{'name': 'manifests', 'uri': MANIFESTS_URI.format(version=version)}],
            'version': version,
        },
    }


@dataclass
class KfctlAction:
    """Install or remove Kubeflow with kfctl.

    The KfDef carries the basic-auth password, so it is written with
    0600 permissions just before kfctl runs and removed afterwards.
    Destroy renders it again for `kfctl delete`.
    """
    workdir: Path
    region: str
    profile: str = ''
    username_secret: str = 'kubeflow-vanilla-username'
    password_secret: str = 'kubeflow-vanilla-password'
    version: str = MANIFESTS_VERSION
    roles: list = field(default_factory=list)
    roles_from: list = field(default_factory=list)
    enable_pod_iam_policy: bool = True
    timeout_apply: int = 1800

    REQUIRED_TOOLS = ('kfctl', 'kubectl')
    MANIFEST_NAME = 'kubeflow_manifest.yaml'

    @classmethod
    def from_spec(cls, spec: dict, settings: Settings) -> 'KfctlAction':
        cluster = spec.get('cluster', settings.cluster_name)
        workdir = spec.get('workdir') or get_state_dir(settings) / 'kfctl' / cluster
        return cls(
            workdir=Path(workdir),
            region=spec.get('region', settings.region),
            profile=spec.get('profile', settings.profile),
            username_secret=spec.get('username_secret', 'kubeflow-vanilla-username'),
            password_secret=spec.get('password_secret', 'kubeflow-vanilla-password'),
            version=spec.get('version', MANIFESTS_VERSION),
            roles=list(spec.get('roles', [])),
            roles_from=list(spec.get('roles_from', [])),
            enable_pod_iam_policy=spec.get('enable_pod_iam_policy', True),
            timeout_apply=spec.get('timeout_apply', 1800),
        )

    @property
    def manifest_path(self) -> Path:
        return self.workdir / self.MANIFEST_NAME

    def _env(self) -> dict:
        env = dict(os.environ)
        env['AWS_REGION'] = self.region
        if self.profile:
            env['AWS_PROFILE'] = self.profile
        return env

    def _secret(self, context: dict, name: str) -> str:
        secrets = context.get('secrets') or {}
        if name not in secrets:
            raise PermanentActionError(
                f"Secret '{name}' not available; list it under the resource's secrets"
            )
        return secrets[name].reveal()

    def _roles(self, context: dict) -> list:
        """Explicit roles plus role_name outputs of the roles_from resources."""
        roles = list(self.roles)
        outputs = context.get('outputs') or {}
        for rid in self.roles_from:
            role = (outputs.get(rid) or {}).get('role_name')
            if role:
                roles.append(role)
            else:
                logger.warning(f"[kfctl] Resource '{rid}' has no role_name output")
        return roles

    def _write_manifest(self, context: dict) -> None:
        doc = render_kfdef(
            username=self._secret(context, self.username_secret),
            password=self._secret(context, self.password_secret),
            region=self.region,
            version=self.version,
            roles=self._roles(context),
            enable_pod_iam_policy=self.enable_pod_iam_policy,
        )
        self.workdir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.manifest_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            yaml.safe_dump(doc, f, sort_keys=False)

    def _remove_manifest(self) -> None:
        try:
            self.manifest_path.unlink()
        except FileNotFoundError:
            pass

    def _kfctl(self, verb: str, timeout: int) -> tuple[int, str, str]:
        return run_command(
            ['kfctl', verb, '-V', '-f', str(self.manifest_path)],
            cwd=self.workdir,
            timeout=timeout,
            env=self._env(),
        )

    def apply(self, context: dict) -> ActionResult:
        start = time.time()
        self._write_manifest(context)
        try:
            for verb in ('build', 'apply'):
                logger.info(f"[kfctl] kfctl {verb} in {self.workdir}")
                rc, _, err = self._kfctl(verb, self.timeout_apply)
                if rc != 0:
                    return cli_failure(f'kfctl {verb}', rc, err, time.time() - start)
        finally:
            self._remove_manifest()
        return ActionResult(
            success=True,
            message=f"Kubeflow {self.version} applied",
            duration=time.time() - start,
            context_updates={'namespace': 'kubeflow', 'version': self.version},
        )

    def destroy(self, context: dict) -> ActionResult:
        start = time.time()
        self._write_manifest(context)
        try:
            logger.info(f"[kfctl] kfctl delete in {self.workdir}")
            rc, _, err = self._kfctl('delete', self.timeout_apply)
            if rc != 0:
                return cli_failure('kfctl delete', rc, err, time.time() - start)
        finally:
            self._remove_manifest()
        return ActionResult(success=True, message='Kubeflow deleted', duration=time.time() - start)
