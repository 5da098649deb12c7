"""Site configuration management.

Configuration is loaded from site-config YAML files:
- site.yaml: Site-wide defaults (region, profile, retry policy, ...)
- secrets.yaml: Sensitive values (decrypted), read by SiteSecretsBroker
- stacks/*.yaml: Stack definitions

The merge order is: built-in defaults -> site.yaml -> stack settings -> CLI flags.
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional

import yaml


class ConfigError(Exception):
    """Configuration error."""


SECRETS_BACKENDS = ('site', 'ssm', 'chain')


@dataclass
class Settings:
    """Recognized orchestration settings.

    Attributes:
        region: AWS region passed to aws/eksctl
        profile: AWS CLI profile (empty = default credential chain)
        cluster_name: Default EKS cluster name for actions that need one
        max_retries: Retries for transient action errors
        backoff_base: First retry delay in seconds
        backoff_cap: Upper bound for a single retry delay
        timeout: Default per-resource action timeout (seconds, 0 = none)
        secrets_backend: Credential broker to use (site, ssm, chain)
        state_dir: Override for the state directory
    """
    region: str = 'eu-west-2'
    profile: str = ''
    cluster_name: str = 'kubeflow-platform'
    max_retries: int = 3
    backoff_base: float = 2.0
    backoff_cap: float = 30.0
    timeout: int = 0
    secrets_backend: str = 'chain'
    state_dir: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        self.validate()

    def validate(self) -> None:
        """Check field values; raises ConfigError on the first bad one."""
        if not isinstance(self.max_retries, int) or self.max_retries < 0:
            raise ConfigError(f"max_retries must be a non-negative integer, got {self.max_retries!r}")
        for name in ('backoff_base', 'backoff_cap'):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value < 0:
                raise ConfigError(f"{name} must be a non-negative number, got {value!r}")
        if self.backoff_cap < self.backoff_base:
            raise ConfigError(
                f"backoff_cap ({self.backoff_cap}) must not be below backoff_base ({self.backoff_base})"
            )
        if not isinstance(self.timeout, int) or self.timeout < 0:
            raise ConfigError(f"timeout must be a non-negative integer, got {self.timeout!r}")
        if self.secrets_backend not in SECRETS_BACKENDS:
            raise ConfigError(
                f"secrets_backend must be one of {', '.join(SECRETS_BACKENDS)}, got {self.secrets_backend!r}"
            )

    def merged(self, overrides: Optional[dict]) -> 'Settings':
        """Return a copy with recognized keys from overrides applied.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        if not overrides:
            return replace(self)
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigError(f"Unknown setting(s): {', '.join(unknown)}")
        return replace(self, **overrides)


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def get_base_dir() -> Path:
    """Get the kfstack checkout directory."""
    return Path(__file__).parent.parent  # src/ -> kfstack/


def get_site_config_dir() -> Path:
    """Discover site-config directory.

    Resolution order:
    1. $KFSTACK_SITE_CONFIG environment variable
    2. ../site-config/ sibling directory (dev workspace)
    3. /usr/local/etc/kfstack/
    """
    if env_path := os.environ.get('KFSTACK_SITE_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"KFSTACK_SITE_CONFIG={env_path} does not exist")

    sibling = get_base_dir().parent / 'site-config'
    if sibling.exists():
        return sibling

    fhs_path = Path('/usr/local/etc/kfstack')
    if fhs_path.exists():
        return fhs_path

    raise ConfigError(
        "site-config not found. "
        "Set KFSTACK_SITE_CONFIG or create a site-config sibling directory."
    )


def get_state_dir(settings: Optional[Settings] = None) -> Path:
    """Directory holding per-stack state files.

    $KFSTACK_STATE_DIR wins over settings.state_dir, which wins over
    the .states/ directory of the checkout.
    """
    if env_path := os.environ.get('KFSTACK_STATE_DIR'):
        return Path(env_path)
    if settings is not None and settings.state_dir is not None:
        return settings.state_dir
    return get_base_dir() / '.states'


def load_settings(site_config_dir: Optional[Path] = None) -> Settings:
    """Load Settings from site.yaml defaults.

    A missing site-config directory or site.yaml yields built-in defaults.
    """
    if site_config_dir is None:
        try:
            site_config_dir = get_site_config_dir()
        except ConfigError:
            return Settings()

    site_file = Path(site_config_dir) / 'site.yaml'
    if not site_file.exists():
        return Settings()

    defaults = _parse_yaml(site_file).get('defaults') or {}
    if not isinstance(defaults, dict):
        raise ConfigError(f"{site_file}: 'defaults' must be a mapping")
    return Settings().merged(defaults)


def load_secrets(site_config_dir: Optional[Path] = None) -> Optional[dict]:
    """Load decrypted secrets from secrets.yaml, or None when absent."""
    if site_config_dir is None:
        site_config_dir = get_site_config_dir()
    secrets_file = Path(site_config_dir) / 'secrets.yaml'
    if not secrets_file.exists():
        return None
    return _parse_yaml(secrets_file)


def list_stacks(site_config_dir: Optional[Path] = None) -> list[str]:
    """List stack names available under site-config/stacks/."""
    try:
        if site_config_dir is None:
            site_config_dir = get_site_config_dir()
    except ConfigError:
        return []
    stacks_dir = Path(site_config_dir) / 'stacks'
    if not stacks_dir.exists():
        return []
    return sorted(f.stem for f in stacks_dir.glob('*.yaml') if f.is_file())
