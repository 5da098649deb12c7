"""Tests for actions/eks.py - EKS cluster action with mocked commands."""

import sys
from pathlib import Path
from unittest.mock import patch

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from actions.eks import EksClusterAction
from config import Settings


def _action(**kwargs):
    kwargs.setdefault('name', 'kubeflow-platform')
    kwargs.setdefault('region', 'eu-west-2')
    return EksClusterAction(**kwargs)


class TestEksClusterFromSpec:
    """Tests for EksClusterAction.from_spec()."""

    def test_defaults_from_settings(self):
        action = EksClusterAction.from_spec({}, Settings(cluster_name='kf', region='us-east-1', profile='p'))
        assert action.name == 'kf'
        assert action.region == 'us-east-1'
        assert action.profile == 'p'
        assert action.nodes == 2

    def test_spec_overrides(self):
        action = EksClusterAction.from_spec(
            {'name': 'other', 'version': '1.18', 'node_type': 'm5.2xlarge', 'nodes': 4},
            Settings(),
        )
        assert action.name == 'other'
        assert action.version == '1.18'
        assert action.node_type == 'm5.2xlarge'
        assert action.nodes == 4


class TestEksClusterApply:
    """Tests for EksClusterAction.apply()."""

    @patch('actions.eks.run_command')
    def test_creates_missing_cluster(self, mock_run):
        mock_run.side_effect = [
            (1, '', 'Error: cannot find cluster'),  # eksctl get
            (0, '', ''),                            # eksctl create
            (0, '', ''),                            # update-kubeconfig
        ]
        result = _action(version='1.18', profile='kf').apply({})

        assert result.success is True
        assert result.context_updates == {'cluster_name': 'kubeflow-platform', 'region': 'eu-west-2'}
        create = mock_run.call_args_list[1][0][0]
        assert create[:4] == ['eksctl', 'create', 'cluster', '--name']
        assert '--managed' in create
        assert create[create.index('--version') + 1] == '1.18'
        assert create[create.index('--profile') + 1] == 'kf'
        kubeconfig = mock_run.call_args_list[2][0][0]
        assert kubeconfig[:3] == ['aws', 'eks', 'update-kubeconfig']

    @patch('actions.eks.run_command')
    def test_existing_cluster_not_recreated(self, mock_run):
        mock_run.side_effect = [(0, '[{"Name": "kubeflow-platform"}]', ''), (0, '', '')]
        result = _action().apply({})
        assert result.success is True
        assert mock_run.call_count == 2
        assert all(call[0][0][1] != 'create' for call in mock_run.call_args_list)

    @patch('actions.eks.run_command')
    def test_config_file(self, mock_run):
        mock_run.side_effect = [(1, '', 'not found'), (0, '', ''), (0, '', '')]
        _action(config_file='cluster.yaml').apply({})
        assert mock_run.call_args_list[1][0][0] == ['eksctl', 'create', 'cluster', '-f', 'cluster.yaml']

    @patch('actions.eks.run_command')
    def test_create_failure_classified(self, mock_run):
        mock_run.side_effect = [
            (1, '', 'not found'),
            (1, '', 'AlreadyExistsException: stack eksctl-kubeflow-platform-cluster exists'),
        ]
        result = _action().apply({})
        assert result.success is False
        assert result.transient is False
        assert 'eksctl create cluster failed' in result.message

    @patch('actions.eks.run_command')
    def test_throttled_kubeconfig_is_transient(self, mock_run):
        mock_run.side_effect = [(0, '[]', ''), (255, '', 'Rate exceeded')]
        result = _action().apply({})
        assert result.success is False
        assert result.transient is True

    @patch('actions.eks.run_command')
    def test_skip_kubeconfig(self, mock_run):
        mock_run.return_value = (0, '[]', '')
        _action(update_kubeconfig=False).apply({})
        assert mock_run.call_count == 1


class TestEksClusterDestroy:
    """Tests for EksClusterAction.destroy()."""

    @patch('actions.eks.run_command')
    def test_deletes_and_waits(self, mock_run):
        mock_run.return_value = (0, '', '')
        result = _action().destroy({})
        assert result.success is True
        cmd = mock_run.call_args[0][0]
        assert cmd[:3] == ['eksctl', 'delete', 'cluster']
        assert '--wait' in cmd
        assert mock_run.call_args[1]['timeout'] == 1800

    @patch('actions.eks.run_command')
    def test_already_gone(self, mock_run):
        mock_run.return_value = (1, '', 'Error: ResourceNotFoundException: No cluster found for name')
        assert _action().destroy({}).success is True

    @patch('actions.eks.run_command')
    def test_failure(self, mock_run):
        mock_run.return_value = (1, '', 'Error: DELETE_FAILED')
        result = _action().destroy({})
        assert result.success is False
