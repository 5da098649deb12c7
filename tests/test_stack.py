"""Tests for stack.py - stack loading and resource descriptors."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from actions import CommandAction
from config import ConfigError, Settings
from stack import ResourceDescriptor, ResourceKind, Stack, StackLoader, load_stack
from stack_opr.errors import CycleError
from stack_opr.graph import build_plan


def _stack_data(**overrides):
    data = {
        'name': 'kf',
        'resources': [
            {'id': 'cluster', 'kind': 'cluster'},
            {'id': 'kubeflow', 'kind': 'platform-stack', 'depends_on': 'cluster',
             'secrets': ['kubeflow-vanilla-password'], 'timeout': 900},
        ],
    }
    data.update(overrides)
    return data


class TestResourceKind:
    """Tests for ResourceKind.parse()."""

    @pytest.mark.parametrize('value,expected', [
        ('cluster', ResourceKind.CLUSTER),
        ('IamRole', ResourceKind.IAM_ROLE),
        ('iam_role', ResourceKind.IAM_ROLE),
        ('Stack', ResourceKind.PLATFORM_STACK),
        ('pipeline', ResourceKind.PIPELINE),
        ('secret', ResourceKind.SECRET),
    ])
    def test_parse(self, value, expected):
        assert ResourceKind.parse(value) == expected

    def test_unknown_kind(self):
        with pytest.raises(ConfigError, match="Unknown resource kind 'database'"):
            ResourceKind.parse('database')


class TestResourceDescriptor:
    """Tests for ResourceDescriptor normalization."""

    def test_normalizes_collections(self):
        d = ResourceDescriptor(id='r', kind='iam-role', depends_on=['c'], secrets=['pw'])
        assert d.kind == ResourceKind.IAM_ROLE
        assert d.depends_on == frozenset({'c'})
        assert d.secrets == ('pw',)

    def test_empty_id_rejected(self):
        with pytest.raises(ConfigError):
            ResourceDescriptor(id='', kind=ResourceKind.CLUSTER)

    def test_actions_ignored_in_equality(self):
        a = ResourceDescriptor(id='r', kind=ResourceKind.CLUSTER, apply_action=lambda c: None)
        b = ResourceDescriptor(id='r', kind=ResourceKind.CLUSTER)
        assert a == b

    def test_frozen(self):
        d = ResourceDescriptor(id='r', kind=ResourceKind.CLUSTER)
        with pytest.raises(AttributeError):
            d.id = 'other'


class TestStackFromDict:
    """Tests for Stack.from_dict()."""

    def test_basic(self):
        stack = Stack.from_dict(_stack_data())
        assert stack.name == 'kf'
        kubeflow = stack.get('kubeflow')
        assert kubeflow.kind == ResourceKind.PLATFORM_STACK
        assert kubeflow.depends_on == frozenset({'cluster'})
        assert kubeflow.secrets == ('kubeflow-vanilla-password',)
        assert kubeflow.timeout == 900
        assert kubeflow.idempotent is True
        assert kubeflow.apply_action is None

    def test_missing_name(self):
        with pytest.raises(ConfigError, match='name'):
            Stack.from_dict({'resources': [{'id': 'a', 'kind': 'cluster'}]})

    def test_no_resources(self):
        with pytest.raises(ConfigError, match='at least one resource'):
            Stack.from_dict({'name': 'empty', 'resources': []})

    def test_resource_missing_id(self):
        with pytest.raises(ConfigError, match='missing required field: id'):
            Stack.from_dict({'name': 'x', 'resources': [{'kind': 'cluster'}]})

    def test_resource_missing_kind(self):
        with pytest.raises(ConfigError, match="'a' missing required field: kind"):
            Stack.from_dict({'name': 'x', 'resources': [{'id': 'a'}]})

    def test_invalid_timeout(self):
        data = _stack_data()
        data['resources'][1]['timeout'] = -5
        with pytest.raises(ConfigError, match='timeout'):
            Stack.from_dict(data)

    def test_depends_on_must_be_list_or_string(self):
        data = _stack_data()
        data['resources'][1]['depends_on'] = {'cluster': True}
        with pytest.raises(ConfigError, match='depends_on'):
            Stack.from_dict(data)

    def test_settings_merged_over_site(self):
        site = Settings(region='us-east-1', max_retries=5)
        stack = Stack.from_dict(_stack_data(settings={'max_retries': 1}), settings=site)
        assert stack.settings.region == 'us-east-1'
        assert stack.settings.max_retries == 1
        assert site.max_retries == 5

    def test_unknown_setting_rejected(self):
        with pytest.raises(ConfigError, match='Unknown setting'):
            Stack.from_dict(_stack_data(settings={'retries': 1}))

    def test_action_factory_binds_apply_and_destroy(self):
        action = MagicMock()
        factory = MagicMock(return_value=action)
        data = _stack_data()
        data['resources'][0]['action'] = {'type': 'eks-cluster', 'name': 'kf'}

        stack = Stack.from_dict(data, action_factory=factory)

        cluster = stack.get('cluster')
        assert cluster.apply_action is action.apply
        assert cluster.destroy_action is action.destroy
        spec, settings = factory.call_args[0]
        assert spec == {'type': 'eks-cluster', 'name': 'kf'}
        assert isinstance(settings, Settings)

    def test_action_needs_type(self):
        data = _stack_data()
        data['resources'][0]['action'] = {'name': 'kf'}
        with pytest.raises(ConfigError, match="'type'"):
            Stack.from_dict(data)

    def test_default_registry_used(self):
        data = _stack_data()
        data['resources'][0]['action'] = {'type': 'command', 'apply': ['true']}
        stack = Stack.from_dict(data)
        assert isinstance(stack.get('cluster').apply_action.__self__, CommandAction)

    def test_non_idempotent_flag(self):
        data = _stack_data()
        data['resources'][1]['idempotent'] = False
        assert Stack.from_dict(data).get('kubeflow').idempotent is False

    def test_get_unknown(self):
        with pytest.raises(KeyError):
            Stack.from_dict(_stack_data()).get('missing')


class TestStackLoader:
    """Tests for StackLoader and load_stack()."""

    def test_list_stacks(self, site_config_dir):
        loader = StackLoader(str(site_config_dir))
        assert loader.list_stacks() == ['broken', 'demo']

    def test_load_by_name(self, site_config_dir):
        stack = StackLoader(str(site_config_dir)).load('demo')
        assert stack.name == 'demo'
        assert [r.id for r in stack.resources] == ['cluster', 'roles', 'platform']
        assert stack.source_path == site_config_dir / 'stacks' / 'demo.yaml'

    def test_load_unknown_lists_available(self, site_config_dir):
        with pytest.raises(ConfigError, match='Available: broken, demo'):
            StackLoader(str(site_config_dir)).load('nope')

    def test_loaded_cycle_rejected_by_plan(self, site_config_dir):
        stack = StackLoader(str(site_config_dir)).load('broken')
        with pytest.raises(CycleError):
            build_plan(stack.resources)

    def test_invalid_yaml(self, site_config_dir):
        (site_config_dir / 'stacks' / 'bad.yaml').write_text('name: [unclosed')
        with pytest.raises(ConfigError, match='Invalid YAML'):
            StackLoader(str(site_config_dir)).load('bad')

    def test_non_mapping(self, site_config_dir):
        (site_config_dir / 'stacks' / 'list.yaml').write_text('- a\n- b\n')
        with pytest.raises(ConfigError, match='YAML object'):
            StackLoader(str(site_config_dir)).load('list')

    def test_load_stack_by_file(self, site_config_dir):
        stack = load_stack(file_path=str(site_config_dir / 'stacks' / 'demo.yaml'))
        assert stack.name == 'demo'

    def test_load_stack_by_name_uses_env(self, site_config_dir, monkeypatch):
        monkeypatch.setenv('KFSTACK_SITE_CONFIG', str(site_config_dir))
        assert load_stack(name='demo').name == 'demo'

    def test_load_stack_requires_source(self):
        with pytest.raises(ConfigError, match='No stack specified'):
            load_stack()

    def test_settings_passed_to_actions(self, site_config_dir):
        settings = Settings(cluster_name='other-cluster')
        stack = StackLoader(str(site_config_dir), settings=settings).load('demo')
        action = stack.get('cluster').apply_action.__self__
        assert action.cluster_name == 'other-cluster'


class TestExampleStack:
    """The shipped example stack loads and orders like the original scripts."""

    EXAMPLE = Path(__file__).parent.parent / 'site-config.example' / 'stacks' / 'kubeflow-platform.yaml'

    def test_loads_and_plans(self):
        stack = load_stack(file_path=str(self.EXAMPLE))
        plan = build_plan(stack.resources)

        ids = plan.ids
        assert ids.index('cluster') < ids.index('node-role') < ids.index('kubeflow')
        assert ids.index('kubeflow') < ids.index('s3-user') < ids.index('pipeline')
        assert ids[-1] == 'training-run'
        assert stack.get('training-run').idempotent is False
        assert stack.settings.cluster_name == 'kubeflow-platform'
        assert stack.settings.timeout == 3600
