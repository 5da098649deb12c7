"""Stack loading and resource descriptors.

A stack file declares the provisionable resources of one deployment
(cluster, IAM roles, platform stack, pipelines) and the dependencies
between them. Each resource carries an `action:` mapping that is turned
into apply/destroy callables by the actions registry.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from common import ActionResult
from config import ConfigError, Settings, get_site_config_dir

logger = logging.getLogger(__name__)

# Signature of an apply/destroy callable: context in, optional result out
ActionFn = Callable[[dict], Optional[ActionResult]]


class ResourceKind(str, Enum):
    """Kinds of provisionable resources."""
    CLUSTER = 'cluster'
    IAM_ROLE = 'iam-role'
    PLATFORM_STACK = 'platform-stack'
    PIPELINE = 'pipeline'
    SECRET = 'secret'

    @classmethod
    def parse(cls, value: str) -> 'ResourceKind':
        """Parse a kind from its stack-file spelling (case-insensitive)."""
        normalized = str(value).strip().lower().replace('_', '-')
        aliases = {'iamrole': 'iam-role', 'platformstack': 'platform-stack', 'stack': 'platform-stack'}
        normalized = aliases.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            valid = ', '.join(k.value for k in cls)
            raise ConfigError(f"Unknown resource kind '{value}'. Valid kinds: {valid}")


@dataclass(frozen=True)
class ResourceDescriptor:
    """Static declaration of a provisionable unit.

    Attributes:
        id: Unique resource identifier within a stack
        kind: Resource kind
        depends_on: Ids that must be applied before this resource
        apply_action: Callable invoked to create/update the resource
        destroy_action: Callable invoked to tear it down (None = nothing to do)
        idempotent: Whether an applied resource may be skipped on re-run
        secrets: Secret names resolved through the credential broker
        timeout: Per-resource action timeout in seconds (None = settings default)
        description: Free-form text shown in previews
    """
    id: str
    kind: ResourceKind
    depends_on: frozenset = field(default_factory=frozenset)
    apply_action: Optional[ActionFn] = field(default=None, compare=False, repr=False)
    destroy_action: Optional[ActionFn] = field(default=None, compare=False, repr=False)
    idempotent: bool = True
    secrets: tuple = ()
    timeout: Optional[int] = None
    description: str = ''

    def __post_init__(self):
        if not self.id or not isinstance(self.id, str):
            raise ConfigError(f"Resource id must be a non-empty string, got {self.id!r}")
        if not isinstance(self.kind, ResourceKind):
            object.__setattr__(self, 'kind', ResourceKind.parse(self.kind))
        if not isinstance(self.depends_on, frozenset):
            object.__setattr__(self, 'depends_on', frozenset(self.depends_on))
        if not isinstance(self.secrets, tuple):
            object.__setattr__(self, 'secrets', tuple(self.secrets))


@dataclass
class Stack:
    """A named set of resource descriptors.

    Attributes:
        name: Stack name (also the state partition key)
        resources: Resource descriptors in file order
        description: Optional description
        settings: Effective settings (site defaults + stack overrides)
        source_path: Path the stack was loaded from (for debugging)
    """
    name: str
    resources: list[ResourceDescriptor]
    description: str = ''
    settings: Settings = field(default_factory=Settings)
    source_path: Optional[Path] = None

    def get(self, resource_id: str) -> ResourceDescriptor:
        """Get a descriptor by id.

        Raises:
            KeyError: If no resource has that id
        """
        for resource in self.resources:
            if resource.id == resource_id:
                return resource
        raise KeyError(resource_id)

    @classmethod
    def from_dict(
        cls,
        data: dict,
        settings: Optional[Settings] = None,
        action_factory: Optional[Callable[[dict, Settings], Any]] = None,
        source_path: Optional[Path] = None,
    ) -> 'Stack':
        """Create a Stack from a parsed stack document.

        Args:
            data: Stack data dictionary
            settings: Site settings the stack's own settings are merged onto
            action_factory: Builds an action object from an `action:` mapping.
                Defaults to actions.build_action.
            source_path: Optional source path for error messages

        Raises:
            ConfigError: If the stack document is invalid
        """
        if 'name' not in data:
            raise ConfigError("Stack missing required field: name")
        if not data.get('resources'):
            raise ConfigError(f"Stack '{data['name']}' must declare at least one resource")

        effective = (settings or Settings()).merged(data.get('settings'))

        if action_factory is None:
            from actions import build_action
            action_factory = build_action

        resources = [
            _resource_from_dict(i, entry, effective, action_factory)
            for i, entry in enumerate(data['resources'])
        ]

        return cls(
            name=data['name'],
            resources=resources,
            description=data.get('description', ''),
            settings=effective,
            source_path=source_path,
        )


def _as_list(value: Any, what: str) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return list(value)
    raise ConfigError(f"{what} must be a string or list, got {type(value).__name__}")


def _resource_from_dict(index: int, entry: dict, settings: Settings, action_factory) -> ResourceDescriptor:
    """Parse one entry of `resources:` into a ResourceDescriptor."""
    if not isinstance(entry, dict):
        raise ConfigError(f"Resource {index} must be a mapping")
    if 'id' not in entry:
        raise ConfigError(f"Resource {index} missing required field: id")
    rid = str(entry['id'])
    if 'kind' not in entry:
        raise ConfigError(f"Resource '{rid}' missing required field: kind")

    apply_action = destroy_action = None
    action_spec = entry.get('action')
    if action_spec is not None:
        if not isinstance(action_spec, dict) or 'type' not in action_spec:
            raise ConfigError(f"Resource '{rid}': action must be a mapping with a 'type'")
        action = action_factory(action_spec, settings)
        apply_action = action.apply
        destroy_action = getattr(action, 'destroy', None)
    else:
        logger.debug(f"Resource '{rid}' has no action; apply is a no-op")

    timeout = entry.get('timeout')
    if timeout is not None and (not isinstance(timeout, int) or timeout <= 0):
        raise ConfigError(f"Resource '{rid}': timeout must be a positive integer")

    return ResourceDescriptor(
        id=rid,
        kind=ResourceKind.parse(entry['kind']),
        depends_on=frozenset(str(d) for d in _as_list(entry.get('depends_on'), f"Resource '{rid}' depends_on")),
        apply_action=apply_action,
        destroy_action=destroy_action,
        idempotent=bool(entry.get('idempotent', True)),
        secrets=tuple(str(s) for s in _as_list(entry.get('secrets'), f"Resource '{rid}' secrets")),
        timeout=timeout,
        description=entry.get('description', ''),
    )


class StackLoader:
    """Loads stacks from the site-config stacks/ directory."""

    def __init__(self, site_config_path: Optional[str] = None, settings: Optional[Settings] = None):
        """Initialize loader with site-config path.

        Args:
            site_config_path: Path to site-config directory. If None, uses
                              auto-discovery (env var, sibling, /usr/local/etc).
            settings: Site settings applied beneath each stack's settings
        """
        if site_config_path:
            self.site_config_dir = Path(site_config_path)
        else:
            self.site_config_dir = get_site_config_dir()

        self.stacks_dir = self.site_config_dir / 'stacks'
        self.settings = settings or Settings()

    def list_stacks(self) -> list[str]:
        """List available stack names."""
        if not self.stacks_dir.exists():
            return []
        return sorted(f.stem for f in self.stacks_dir.glob('*.yaml') if f.is_file())

    def load(self, name: str) -> Stack:
        """Load a stack by name.

        Raises:
            ConfigError: If stack not found or invalid
        """
        path = self.stacks_dir / f'{name}.yaml'
        if not path.exists():
            available = self.list_stacks()
            raise ConfigError(
                f"Stack '{name}' not found at {path}. "
                f"Available: {', '.join(available) if available else 'none'}"
            )
        return self.load_file(path)

    def load_file(self, path: Path) -> Stack:
        """Load a stack from a specific file path.

        Raises:
            ConfigError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigError(f"Stack file not found: {path}")

        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in stack {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Stack {path} must be a YAML object (dict)")

        return Stack.from_dict(data, settings=self.settings, source_path=path)


def load_stack(
    name: Optional[str] = None,
    file_path: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Stack:
    """Load a stack by file path or by name from site-config/stacks/.

    Raises:
        ConfigError: If no source given, or stack not found or invalid
    """
    if file_path:
        path = Path(file_path)
        site_dir = path.parent.parent if path.parent.name == 'stacks' else path.parent
        return StackLoader(str(site_dir), settings=settings).load_file(path)
    if name:
        return StackLoader(settings=settings).load(name)
    raise ConfigError("No stack specified")
