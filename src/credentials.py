"""Credential brokers.

Resolve named secrets (usernames, passwords, access keys) from an
external store and hand them to actions as opaque SecretValue objects.
Resolved values are never written to state or logs.
"""

import json
import logging
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from common import TIMEOUT_RC, aws_cmd, classify_cli_error, run_command
from config import ConfigError, Settings, load_secrets
from stack_opr.errors import PermanentActionError, TransientActionError

logger = logging.getLogger(__name__)


class CredentialError(PermanentActionError):
    """Base class for broker failures."""

    def __init__(self, name: str, message: str):
        self.name = name
        super().__init__(message)


class SecretNotFound(CredentialError):
    """Named secret does not exist in the backing store."""

    def __init__(self, name: str, where: str = ''):
        suffix = f" in {where}" if where else ''
        super().__init__(name, f"Secret '{name}' not found{suffix}")


class AccessDenied(CredentialError):
    """Caller is not allowed to read the named secret."""

    def __init__(self, name: str, detail: str = ''):
        suffix = f": {detail}" if detail else ''
        super().__init__(name, f"Access denied reading secret '{name}'{suffix}")


class SecretValue:
    """Opaque secret; reveal() returns the plain value, repr/str are masked."""

    __slots__ = ('_value',)

    def __init__(self, value: str):
        self._value = value

    def reveal(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return 'SecretValue(***)'

    __str__ = __repr__

    def __eq__(self, other) -> bool:
        if isinstance(other, SecretValue):
            return self._value == other._value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._value)


@runtime_checkable
class CredentialBroker(Protocol):
    """Protocol for secret resolution backends."""

    def resolve(self, name: str) -> SecretValue:
        """Resolve a secret by name.

        Raises:
            SecretNotFound: If the secret does not exist
            AccessDenied: If the caller may not read it
        """


class SiteSecretsBroker:
    """Secrets from site-config/secrets.yaml.

    Names may be dotted paths into nested mappings
    (e.g. 'kubeflow.password'). A top-level `secrets:` mapping is
    searched first when present.
    """

    def __init__(self, site_config_dir: Optional[Path] = None, data: Optional[dict] = None):
        self.site_config_dir = site_config_dir
        self._data = data

    def _secrets(self) -> dict:
        if self._data is None:
            try:
                loaded = load_secrets(self.site_config_dir)
            except ConfigError as e:
                logger.debug(f"Site secrets unavailable: {e}")
                loaded = None
            self._data = loaded or {}
        return self._data

    def resolve(self, name: str) -> SecretValue:
        data = self._secrets()
        for root in (data.get('secrets'), data):
            if not isinstance(root, dict):
                continue
            value = _lookup(root, name)
            if value is not None:
                return SecretValue(str(value))
        raise SecretNotFound(name, 'secrets.yaml')


def _lookup(data: dict, name: str):
    if name in data and not isinstance(data[name], dict):
        return data[name]
    node = data
    for part in name.split('.'):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return None if isinstance(node, dict) else node


class SsmParameterBroker:
    """Secrets from AWS SSM Parameter Store via the aws CLI."""

    def __init__(self, settings: Settings, timeout: int = 30):
        self.settings = settings
        self.timeout = timeout

    def resolve(self, name: str) -> SecretValue:
        cmd = aws_cmd(
            ['ssm', 'get-parameter', '--name', name, '--with-decryption', '--output', 'json'],
            profile=self.settings.profile,
            region=self.settings.region,
        )
        rc, out, err = run_command(cmd, timeout=self.timeout)
        if rc != 0:
            if 'ParameterNotFound' in err:
                raise SecretNotFound(name, 'SSM Parameter Store')
            if 'AccessDenied' in err or 'UnrecognizedClient' in err or 'ExpiredToken' in err:
                raise AccessDenied(name, err.strip().splitlines()[-1] if err.strip() else '')
            if rc == TIMEOUT_RC or classify_cli_error(rc, err):
                raise TransientActionError(f"Reading SSM parameter '{name}' failed: {err.strip()}")
            raise PermanentActionError(f"Reading SSM parameter '{name}' failed: {err.strip()}")
        try:
            value = json.loads(out)['Parameter']['Value']
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise PermanentActionError(f"Unexpected SSM response for '{name}': {e}")
        logger.debug(f"Resolved secret '{name}' from SSM")
        return SecretValue(value)


class ChainedBroker:
    """Try brokers in order; SecretNotFound falls through to the next."""

    def __init__(self, brokers: list):
        self.brokers = list(brokers)

    def resolve(self, name: str) -> SecretValue:
        for broker in self.brokers:
            try:
                return broker.resolve(name)
            except SecretNotFound:
                continue
        raise SecretNotFound(name)


def broker_from_settings(settings: Settings, site_config_dir: Optional[Path] = None) -> CredentialBroker:
    """Build the broker selected by settings.secrets_backend."""
    if settings.secrets_backend == 'site':
        return SiteSecretsBroker(site_config_dir)
    if settings.secrets_backend == 'ssm':
        return SsmParameterBroker(settings)
    return ChainedBroker([SiteSecretsBroker(site_config_dir), SsmParameterBroker(settings)])
