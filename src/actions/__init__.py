"""Resource actions and the registry that builds them from stack files."""

from config import ConfigError, Settings
from actions.command import CommandAction
from actions.eks import EksClusterAction
from actions.iam import IamServiceRoleAction, IamUserSecretAction, NodeRolePoliciesAction
from actions.kubeflow import KfctlAction
from actions.pipeline import PipelineRunAction, PipelineUploadAction

ACTION_TYPES = {
    'command': CommandAction,
    'eks-cluster': EksClusterAction,
    'node-role-policies': NodeRolePoliciesAction,
    'iam-user-secret': IamUserSecretAction,
    'iam-service-role': IamServiceRoleAction,
    'kfctl': KfctlAction,
    'pipeline': PipelineUploadAction,
    'pipeline-run': PipelineRunAction,
}


def build_action(spec: dict, settings: Settings):
    """Instantiate the action described by an `action:` mapping.

    Raises:
        ConfigError: Unknown type or missing required keys
    """
    if not isinstance(spec, dict) or 'type' not in spec:
        raise ConfigError("action must be a mapping with a 'type' key")
    action_type = spec['type']
    cls = ACTION_TYPES.get(action_type)
    if cls is None:
        raise ConfigError(
            f"Unknown action type '{action_type}'. Available: {', '.join(sorted(ACTION_TYPES))}"
        )
    params = {k: v for k, v in spec.items() if k != 'type'}
    try:
        return cls.from_spec(params, settings)
    except KeyError as e:
        raise ConfigError(f"action '{action_type}' is missing required key {e}")
    except (TypeError, ValueError) as e:
        raise ConfigError(f"action '{action_type}': {e}")


def required_tools(action) -> tuple:
    """Executables an action needs on PATH."""
    return tuple(getattr(action, 'required_tools', None) or getattr(action, 'REQUIRED_TOOLS', ()))


__all__ = [
    'ACTION_TYPES',
    'build_action',
    'required_tools',
    'CommandAction',
    'EksClusterAction',
    'NodeRolePoliciesAction',
    'IamUserSecretAction',
    'IamServiceRoleAction',
    'KfctlAction',
    'PipelineUploadAction',
    'PipelineRunAction',
]
