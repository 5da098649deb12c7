"""Shared pytest fixtures for kfstack tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep tests away from a real site-config or state directory."""
    monkeypatch.delenv('KFSTACK_SITE_CONFIG', raising=False)
    monkeypatch.delenv('KFSTACK_STATE_DIR', raising=False)


@pytest.fixture
def state_dir(tmp_path):
    """Empty directory for StateStore files."""
    path = tmp_path / 'states'
    path.mkdir()
    return path


@pytest.fixture
def site_config_dir(tmp_path):
    """Create temporary site-config directory structure.

    Creates minimal site-config with:
    - site.yaml (defaults)
    - secrets.yaml (Kubeflow basic-auth credentials)
    - stacks/demo.yaml (command-only stack, runnable without AWS)
    - stacks/broken.yaml (dependency cycle)
    """
    (tmp_path / 'stacks').mkdir(parents=True, exist_ok=True)

    (tmp_path / 'site.yaml').write_text("""
defaults:
  region: eu-west-2
  profile: test-profile
  cluster_name: kubeflow-platform
  max_retries: 2
  backoff_base: 0
  backoff_cap: 0
  secrets_backend: site
""")

    (tmp_path / 'secrets.yaml').write_text("""
secrets:
  kubeflow-vanilla-username: admin@kubeflow.org
  kubeflow-vanilla-password: s3cr3t-pa55
kubeflow:
  session: cookie-value
""")

    (tmp_path / 'stacks/demo.yaml').write_text("""
name: demo
description: Command-only stack for tests
resources:
  - id: cluster
    kind: cluster
    action:
      type: command
      apply: [echo, create, "{cluster_name}"]
      destroy: [echo, delete, "{cluster_name}"]
  - id: roles
    kind: iam-role
    depends_on: [cluster]
    action:
      type: command
      apply: [echo, roles]
  - id: platform
    kind: platform-stack
    depends_on: [cluster, roles]
    secrets: [kubeflow-vanilla-password]
    action:
      type: command
      apply: [echo, platform]
      env:
        KF_PASSWORD: secret:kubeflow-vanilla-password
""")

    (tmp_path / 'stacks/broken.yaml').write_text("""
name: broken
resources:
  - id: a
    kind: cluster
    depends_on: [b]
  - id: b
    kind: cluster
    depends_on: [a]
""")

    return tmp_path


@pytest.fixture
def site_env(site_config_dir, state_dir, monkeypatch):
    """Point discovery env vars at the temporary site-config and state dir."""
    monkeypatch.setenv('KFSTACK_SITE_CONFIG', str(site_config_dir))
    monkeypatch.setenv('KFSTACK_STATE_DIR', str(state_dir))
    return site_config_dir
