"""IAM actions: node role policies, service users and service roles.

These cover the credential bootstrapping needed by Kubeflow pipelines
that talk to S3, ECR and SageMaker.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from actions.kubectl import apply_manifest, delete_resource, opaque_secret, resource_exists
from common import ActionResult, aws_cmd, cli_failure, run_command
from config import Settings

logger = logging.getLogger(__name__)

AWS_MANAGED_POLICY = 'arn:aws:iam::aws:policy/'


def policy_arn(policy: str) -> str:
    """Expand a bare managed policy name (AmazonS3FullAccess) to its ARN."""
    if policy.startswith('arn:'):
        return policy
    return AWS_MANAGED_POLICY + policy


def _already_exists(err: str) -> bool:
    return 'EntityAlreadyExists' in err


def _no_such_entity(err: str) -> bool:
    return 'NoSuchEntity' in err


@dataclass
class _IamAction:
    """Shared aws iam invocation for IAM actions."""
    profile: str = ''
    timeout: int = 120

    REQUIRED_TOOLS = ('aws',)

    def _iam(self, *args: str) -> tuple[int, str, str]:
        # IAM is global; no region flag
        return run_command(aws_cmd(['iam'] + list(args), self.profile), timeout=self.timeout)

    def _attach(self, target: str, name: str, policies: list[str]) -> Optional[ActionResult]:
        """Attach policies to a role or user; returns a failure result or None."""
        for policy in policies:
            rc, _, err = self._iam(f'attach-{target}-policy', f'--{target}-name', name,
                                   '--policy-arn', policy_arn(policy))
            if rc != 0:
                return cli_failure(f'attach {policy} to {target} {name}', rc, err)
            logger.info(f"[iam] Attached {policy} to {target} {name}")
        return None

    def _detach(self, target: str, name: str, policies: list[str]) -> Optional[ActionResult]:
        for policy in policies:
            rc, _, err = self._iam(f'detach-{target}-policy', f'--{target}-name', name,
                                   '--policy-arn', policy_arn(policy))
            if rc != 0 and not _no_such_entity(err):
                return cli_failure(f'detach {policy} from {target} {name}', rc, err)
        return None


@dataclass
class NodeRolePoliciesAction(_IamAction):
    """Attach managed policies to the eksctl NodeInstanceRole of a cluster."""
    cluster_name: str = ''
    policies: list = field(default_factory=list)

    @classmethod
    def from_spec(cls, spec: dict, settings: Settings) -> 'NodeRolePoliciesAction':
        return cls(
            profile=spec.get('profile', settings.profile),
            cluster_name=spec.get('cluster', settings.cluster_name),
            policies=list(spec.get('policies', [])),
        )

    def find_role(self) -> tuple[Optional[str], Optional[ActionResult]]:
        """Find the node instance role created by eksctl for the cluster."""
        rc, out, err = self._iam('list-roles', '--output', 'json')
        if rc != 0:
            return None, cli_failure('aws iam list-roles', rc, err)
        prefix = f'eksctl-{self.cluster_name}'
        for role in json.loads(out or '{}').get('Roles', []):
            name = role.get('RoleName', '')
            if name.startswith(prefix) and 'NodeInstanceRole' in name:
                return name, None
        return None, None

    def apply(self, context: dict) -> ActionResult:
        start = time.time()
        role, failure = self.find_role()
        if failure:
            return failure
        if role is None:
            return ActionResult(
                success=False,
                message=f"No NodeInstanceRole found for cluster '{self.cluster_name}'",
                duration=time.time() - start,
            )
        failure = self._attach('role', role, self.policies)
        if failure:
            return failure
        return ActionResult(
            success=True,
            message=f"Attached {len(self.policies)} policies to {role}",
            duration=time.time() - start,
            context_updates={'role_name': role},
        )

    def destroy(self, context: dict) -> ActionResult:
        start = time.time()
        role, failure = self.find_role()
        if failure:
            return failure
        if role is None:
            logger.info(f"[iam] No node role for '{self.cluster_name}', nothing to detach")
        else:
            failure = self._detach('role', role, self.policies)
            if failure:
                return failure
        return ActionResult(success=True, message='Node role policies detached', duration=time.time() - start)


@dataclass
class IamUserSecretAction(_IamAction):
    """Create an IAM user with an access key published as a Kubernetes Secret.

    The access key goes straight from the aws CLI response into the
    Secret manifest on kubectl's stdin; it is never returned as output.
    An existing Secret means the key was already issued, so apply does
    not mint another one.
    """
    user_name: str = ''
    policies: list = field(default_factory=list)
    secret_name: str = 'aws-secret'
    namespace: Optional[str] = None

    REQUIRED_TOOLS = ('aws', 'kubectl')

    @classmethod
    def from_spec(cls, spec: dict, settings: Settings) -> 'IamUserSecretAction':
        return cls(
            profile=spec.get('profile', settings.profile),
            user_name=spec['user'],
            policies=list(spec.get('policies', [])),
            secret_name=spec.get('secret_name', 'aws-secret'),
            namespace=spec.get('namespace'),
        )

    def apply(self, context: dict) -> ActionResult:
        start = time.time()

        rc, _, err = self._iam('create-user', '--user-name', self.user_name)
        if rc != 0 and not _already_exists(err):
            return cli_failure(f'create IAM user {self.user_name}', rc, err)

        failure = self._attach('user', self.user_name, self.policies)
        if failure:
            return failure

        if resource_exists('secret', self.secret_name, self.namespace):
            logger.info(f"[iam] Secret '{self.secret_name}' already present, not issuing a new key")
        else:
            rc, out, err = self._iam('create-access-key', '--user-name', self.user_name, '--output', 'json')
            if rc != 0:
                return cli_failure(f'create access key for {self.user_name}', rc, err)
            key = json.loads(out)['AccessKey']
            manifest = opaque_secret(self.secret_name, {
                'AWS_ACCESS_KEY_ID': key['AccessKeyId'],
                'AWS_SECRET_ACCESS_KEY': key['SecretAccessKey'],
            }, self.namespace)
            rc, _, err = apply_manifest(manifest)
            if rc != 0:
                return cli_failure(f'kubectl apply secret {self.secret_name}', rc, err)
            logger.info(f"[iam] Published access key of {self.user_name} as secret '{self.secret_name}'")

        return ActionResult(
            success=True,
            message=f"IAM user {self.user_name} ready",
            duration=time.time() - start,
            context_updates={'user_name': self.user_name, 'secret_name': self.secret_name},
        )

    def destroy(self, context: dict) -> ActionResult:
        start = time.time()

        rc, _, err = delete_resource('secret', self.secret_name, self.namespace)
        if rc != 0:
            return cli_failure(f'kubectl delete secret {self.secret_name}', rc, err)

        rc, out, err = self._iam('list-access-keys', '--user-name', self.user_name, '--output', 'json')
        if rc != 0:
            if _no_such_entity(err):
                logger.info(f"[iam] User {self.user_name} already gone")
                return ActionResult(success=True, message='IAM user already deleted', duration=time.time() - start)
            return cli_failure(f'list access keys of {self.user_name}', rc, err)
        for key in json.loads(out or '{}').get('AccessKeyMetadata', []):
            rc, _, err = self._iam('delete-access-key', '--user-name', self.user_name,
                                   '--access-key-id', key['AccessKeyId'])
            if rc != 0 and not _no_such_entity(err):
                return cli_failure(f'delete access key of {self.user_name}', rc, err)

        failure = self._detach('user', self.user_name, self.policies)
        if failure:
            return failure

        rc, _, err = self._iam('delete-user', '--user-name', self.user_name)
        if rc != 0 and not _no_such_entity(err):
            return cli_failure(f'delete IAM user {self.user_name}', rc, err)

        return ActionResult(success=True, message=f"IAM user {self.user_name} deleted", duration=time.time() - start)


def trust_policy(service: str) -> dict:
    """Trust policy letting an AWS service principal assume a role."""
    return {
        'Version': '2012-10-17',
        'Statement': [{
            'Effect': 'Allow',
            'Principal': {'Service': service},
            'Action': 'sts:AssumeRole',
        }],
    }


@dataclass
class IamServiceRoleAction(_IamAction):
    """Create a role assumable by an AWS service and output its ARN."""
    role_name: str = ''
    service: str = 'sagemaker.amazonaws.com'
    policies: list = field(default_factory=list)

    @classmethod
    def from_spec(cls, spec: dict, settings: Settings) -> 'IamServiceRoleAction':
        return cls(
            profile=spec.get('profile', settings.profile),
            role_name=spec['role'],
            service=spec.get('service', 'sagemaker.amazonaws.com'),
            policies=list(spec.get('policies', [])),
        )

    def apply(self, context: dict) -> ActionResult:
        start = time.time()

        rc, _, err = self._iam('create-role', '--role-name', self.role_name,
                               '--assume-role-policy-document', json.dumps(trust_policy(self.service)))
        if rc != 0 and not _already_exists(err):
            return cli_failure(f'create role {self.role_name}', rc, err)

        failure = self._attach('role', self.role_name, self.policies)
        if failure:
            return failure

        rc, out, err = self._iam('get-role', '--role-name', self.role_name,
                                 '--query', 'Role.Arn', '--output', 'text')
        if rc != 0:
            return cli_failure(f'get role {self.role_name}', rc, err)
        arn = out.strip()
        logger.info(f"[iam] Role {self.role_name}: {arn}")

        return ActionResult(
            success=True,
            message=f"Role {self.role_name} ready",
            duration=time.time() - start,
            context_updates={'role_name': self.role_name, 'role_arn': arn},
        )

    def destroy(self, context: dict) -> ActionResult:
        start = time.time()
        failure = self._detach('role', self.role_name, self.policies)
        if failure:
            return failure
        rc, _, err = self._iam('delete-role', '--role-name', self.role_name)
        if rc != 0 and not _no_such_entity(err):
            return cli_failure(f'delete role {self.role_name}', rc, err)
        return ActionResult(success=True, message=f"Role {self.role_name} deleted", duration=time.time() - start)
