"""Tests for credentials.py - credential brokers and SecretValue."""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import Settings
from credentials import (
    AccessDenied,
    ChainedBroker,
    CredentialBroker,
    SecretNotFound,
    SecretValue,
    SiteSecretsBroker,
    SsmParameterBroker,
    broker_from_settings,
)
from stack_opr.errors import PermanentActionError, TransientActionError


def _ssm_ok(value):
    return (0, json.dumps({'Parameter': {'Name': 'x', 'Value': value}}), '')


class TestSecretValue:
    """Tests for SecretValue masking."""

    def test_reveal(self):
        assert SecretValue('hunter2').reveal() == 'hunter2'

    def test_repr_and_str_masked(self):
        secret = SecretValue('hunter2')
        assert 'hunter2' not in repr(secret)
        assert 'hunter2' not in str(secret)
        assert 'hunter2' not in f"{secret}"
        assert repr(secret) == 'SecretValue(***)'

    def test_masked_inside_containers(self):
        assert 'hunter2' not in repr({'pw': SecretValue('hunter2')})

    def test_equality(self):
        assert SecretValue('a') == SecretValue('a')
        assert SecretValue('a') != SecretValue('b')
        assert SecretValue('a') != 'a'


class TestSiteSecretsBroker:
    """Tests for SiteSecretsBroker."""

    def test_resolves_from_secrets_section(self, site_config_dir):
        broker = SiteSecretsBroker(site_config_dir)
        assert broker.resolve('kubeflow-vanilla-username').reveal() == 'admin@kubeflow.org'

    def test_dotted_name(self, site_config_dir):
        broker = SiteSecretsBroker(site_config_dir)
        assert broker.resolve('kubeflow.session').reveal() == 'cookie-value'

    def test_missing(self, site_config_dir):
        with pytest.raises(SecretNotFound, match="'nope' not found in secrets.yaml"):
            SiteSecretsBroker(site_config_dir).resolve('nope')

    def test_mapping_is_not_a_secret(self):
        broker = SiteSecretsBroker(data={'kubeflow': {'session': 'x'}})
        with pytest.raises(SecretNotFound):
            broker.resolve('kubeflow')

    def test_without_secrets_file(self, tmp_path):
        with pytest.raises(SecretNotFound):
            SiteSecretsBroker(tmp_path).resolve('anything')

    def test_values_stringified(self):
        assert SiteSecretsBroker(data={'port': 8080}).resolve('port').reveal() == '8080'

    def test_is_credential_broker(self):
        assert isinstance(SiteSecretsBroker(data={}), CredentialBroker)


class TestSsmParameterBroker:
    """Tests for SsmParameterBroker with run_command mocked."""

    @patch('credentials.run_command')
    def test_resolves(self, mock_run):
        mock_run.return_value = _ssm_ok('admin@kubeflow.org')
        broker = SsmParameterBroker(Settings(profile='kf', region='eu-west-2'))

        value = broker.resolve('kubeflow-vanilla-username')

        assert value.reveal() == 'admin@kubeflow.org'
        cmd = mock_run.call_args[0][0]
        assert cmd[:3] == ['aws', 'ssm', 'get-parameter']
        assert '--with-decryption' in cmd
        assert cmd[cmd.index('--name') + 1] == 'kubeflow-vanilla-username'
        assert cmd[cmd.index('--profile') + 1] == 'kf'
        assert cmd[cmd.index('--region') + 1] == 'eu-west-2'

    @patch('credentials.run_command')
    def test_parameter_not_found(self, mock_run):
        mock_run.return_value = (254, '', 'An error occurred (ParameterNotFound) when calling GetParameter')
        with pytest.raises(SecretNotFound):
            SsmParameterBroker(Settings()).resolve('missing')

    @patch('credentials.run_command')
    def test_access_denied(self, mock_run):
        mock_run.return_value = (254, '', 'An error occurred (AccessDeniedException): not authorized')
        with pytest.raises(AccessDenied) as exc_info:
            SsmParameterBroker(Settings()).resolve('pw')
        assert isinstance(exc_info.value, PermanentActionError)

    @patch('credentials.run_command')
    def test_throttling_is_transient(self, mock_run):
        mock_run.return_value = (254, '', 'An error occurred (ThrottlingException): Rate exceeded')
        with pytest.raises(TransientActionError):
            SsmParameterBroker(Settings()).resolve('pw')

    @patch('credentials.run_command')
    def test_timeout_is_transient(self, mock_run):
        mock_run.return_value = (-1, '', 'Command timed out after 30s')
        with pytest.raises(TransientActionError):
            SsmParameterBroker(Settings()).resolve('pw')

    @patch('credentials.run_command')
    def test_other_error_is_permanent(self, mock_run):
        mock_run.return_value = (252, '', 'usage: aws [options]')
        with pytest.raises(PermanentActionError) as exc_info:
            SsmParameterBroker(Settings()).resolve('pw')
        assert not isinstance(exc_info.value, TransientActionError)

    @patch('credentials.run_command')
    def test_malformed_response(self, mock_run):
        mock_run.return_value = (0, 'not json', '')
        with pytest.raises(PermanentActionError, match='Unexpected SSM response'):
            SsmParameterBroker(Settings()).resolve('pw')


class TestChainedBroker:
    """Tests for ChainedBroker."""

    def test_first_hit_wins(self):
        second = MagicMock()
        broker = ChainedBroker([SiteSecretsBroker(data={'pw': 'site'}), second])
        assert broker.resolve('pw').reveal() == 'site'
        second.resolve.assert_not_called()

    def test_falls_through_on_not_found(self):
        second = MagicMock()
        second.resolve.return_value = SecretValue('ssm')
        broker = ChainedBroker([SiteSecretsBroker(data={}), second])
        assert broker.resolve('pw').reveal() == 'ssm'

    def test_access_denied_not_swallowed(self):
        denied = MagicMock()
        denied.resolve.side_effect = AccessDenied('pw')
        fallback = MagicMock()
        with pytest.raises(AccessDenied):
            ChainedBroker([denied, fallback]).resolve('pw')
        fallback.resolve.assert_not_called()

    def test_all_miss(self):
        with pytest.raises(SecretNotFound):
            ChainedBroker([SiteSecretsBroker(data={})]).resolve('pw')


class TestBrokerFromSettings:
    """Tests for broker_from_settings()."""

    def test_site(self):
        assert isinstance(broker_from_settings(Settings(secrets_backend='site')), SiteSecretsBroker)

    def test_ssm(self):
        assert isinstance(broker_from_settings(Settings(secrets_backend='ssm')), SsmParameterBroker)

    def test_chain(self):
        broker = broker_from_settings(Settings(secrets_backend='chain'))
        assert isinstance(broker, ChainedBroker)
        assert [type(b) for b in broker.brokers] == [SiteSecretsBroker, SsmParameterBroker]
