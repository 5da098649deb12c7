"""Pre-flight validation checks for stacks.

This module provides readiness checks that run before apply/destroy,
catching missing tools, bad AWS credentials and unreachable endpoints
early with actionable error messages.
"""

import json
import logging
import shutil

import requests

from common import aws_cmd, run_command

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Tooling
# -----------------------------------------------------------------------------

INSTALL_HINTS = {
    'aws': 'https://docs.aws.amazon.com/cli/latest/userguide/install-cliv2.html',
    'eksctl': 'https://eksctl.io/installation/',
    'kubectl': 'https://kubernetes.io/docs/tasks/tools/',
    'kfctl': 'https://github.com/kubeflow/kfctl/releases (v1.2.0)',
}


def validate_tools(names) -> list[str]:
    """Check that every executable in names is on PATH.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []
    for name in sorted(set(names)):
        if shutil.which(name) is None:
            hint = INSTALL_HINTS.get(name)
            message = f"Required tool '{name}' not found on PATH"
            if hint:
                message += f"\n  Install: {hint}"
            errors.append(message)
    return errors


# -----------------------------------------------------------------------------
# AWS credentials
# -----------------------------------------------------------------------------

def validate_aws_identity(profile: str = '', region: str = '', timeout: int = 30) -> list[str]:
    """Check that the aws CLI has working credentials.

    Args:
        profile: AWS CLI profile (empty = default chain)
        region: Region to query STS in
        timeout: Seconds before giving up

    Returns:
        List of validation error messages (empty if valid)
    """
    rc, out, err = run_command(
        aws_cmd(['sts', 'get-caller-identity', '--output', 'json'], profile, region),
        timeout=timeout,
    )
    if rc != 0:
        where = f"profile '{profile}'" if profile else 'the default credential chain'
        detail = err.strip().splitlines()[-1] if err.strip() else f'exit code {rc}'
        return [
            f"AWS credentials not usable with {where}: {detail}\n"
            f"  Check: aws configure list{' --profile ' + profile if profile else ''}"
        ]
    try:
        identity = json.loads(out)
        logger.info(f"AWS identity: {identity.get('Arn', 'unknown')} (account {identity.get('Account', '?')})")
    except json.JSONDecodeError:
        logger.debug("Unexpected sts get-caller-identity output")
    return []


# -----------------------------------------------------------------------------
# HTTP endpoints
# -----------------------------------------------------------------------------

def validate_endpoint(url: str, timeout: float = 10.0, verify: bool = True) -> list[str]:
    """Check that an HTTP endpoint answers.

    Any response below 500 counts as reachable; auth is checked later by
    the action that uses it.
    """
    errors = []
    try:
        resp = requests.get(url, timeout=timeout, verify=verify)
        if resp.status_code >= 500:
            errors.append(f"Endpoint {url} returned HTTP {resp.status_code}")
    except requests.exceptions.ConnectionError:
        errors.append(
            f"Cannot connect to {url}\n"
            f"  Check: port-forward or ingress is up "
            f"(kubectl port-forward -n istio-system svc/istio-ingressgateway 8080:80)"
        )
    except requests.exceptions.Timeout:
        errors.append(f"Timeout connecting to {url}")
    return errors


# -----------------------------------------------------------------------------
# Combined Validation
# -----------------------------------------------------------------------------

def _actions(stack) -> list:
    """Action objects behind the descriptors' bound apply/destroy methods."""
    found = []
    for descriptor in stack.resources:
        for fn in (descriptor.apply_action, descriptor.destroy_action):
            action = getattr(fn, '__self__', None)
            if action is not None and action not in found:
                found.append(action)
    return found


def collect_required_tools(stack) -> list[str]:
    """Executables needed by any resource of the stack."""
    from actions import required_tools

    tools = set()
    for action in _actions(stack):
        tools.update(required_tools(action))
    return sorted(tools)


def collect_endpoints(stack, operation: str = 'apply') -> list[str]:
    """Pipelines API endpoints used by the stack.

    Endpoints that only exist once an earlier resource is applied cannot
    be checked before apply, so they are only collected for destroy.
    """
    endpoints = []
    for descriptor in stack.resources:
        action = getattr(descriptor.apply_action, '__self__', None)
        endpoint = getattr(action, 'endpoint', None)
        if not endpoint:
            continue
        if operation == 'apply' and descriptor.depends_on:
            continue
        if endpoint not in endpoints:
            endpoints.append(endpoint)
    return endpoints


def validate_readiness(stack, settings, operation: str = 'apply',
                       timeout: float = 10.0) -> list[str]:
    """Run all readiness checks for a stack.

    Args:
        stack: Loaded Stack
        settings: Effective Settings
        operation: 'apply' or 'destroy'
        timeout: Connection timeout for network checks

    Returns:
        Combined list of all validation errors
    """
    errors = []

    tools = collect_required_tools(stack)
    errors.extend(validate_tools(tools))

    # Skip the identity check when the CLI itself is missing
    if 'aws' in tools and not any("'aws'" in e for e in errors):
        errors.extend(validate_aws_identity(settings.profile, settings.region))

    for endpoint in collect_endpoints(stack, operation):
        errors.extend(validate_endpoint(endpoint, timeout=timeout))

    return errors


def format_preflight_results(stack_name: str, errors: list[str]) -> str:
    """Format readiness errors for display."""
    if not errors:
        return f"Preflight checks for stack '{stack_name}': all passed"
    lines = [f"\nPreflight checks for stack '{stack_name}' failed:\n"]
    for error in errors:
        lines.append(f"  [FAIL] {error}")
    lines.append(f"\n{len(errors)} check(s) failed")
    return '\n'.join(lines)
