"""Run arbitrary commands as a resource's apply/destroy steps."""

import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Optional

from common import ActionResult, cli_failure, run_command
from config import ConfigError, Settings
from stack_opr.errors import PermanentActionError

logger = logging.getLogger(__name__)

SECRET_PREFIX = 'secret:'

# {region}, {profile}, {cluster_name}, {resource_id} or {outputs[id][key]...}
_PLACEHOLDER_RE = re.compile(
    r'\{(?:(?P<name>region|profile|cluster_name|resource_id)|outputs(?P<path>(?:\[[^\[\]{}]+\])+))\}'
)
_OUTPUT_KEY_RE = re.compile(r'\[([^\[\]]+)\]')


@dataclass
class CommandAction:
    """Shell-free command action.

    Arguments may reference {region}, {profile}, {cluster_name},
    {resource_id} and action outputs (e.g. '{outputs[cluster][cluster_name]}').
    Any other braces, such as JSON or a JMESPath --query, pass through
    unchanged.
    Environment values of the form 'secret:NAME' are replaced by the
    resolved secret, so secrets never appear on the command line.
    """
    apply_cmd: list
    destroy_cmd: Optional[list] = None
    env: dict = field(default_factory=dict)
    cwd: Optional[str] = None
    timeout: int = 600
    region: str = ''
    profile: str = ''
    cluster_name: str = ''

    REQUIRED_TOOLS = ()

    @classmethod
    def from_spec(cls, spec: dict, settings: Settings) -> 'CommandAction':
        if not spec.get('apply'):
            raise ConfigError("command action requires an 'apply' argv list")
        return cls(
            apply_cmd=list(spec['apply']),
            destroy_cmd=list(spec['destroy']) if spec.get('destroy') else None,
            env={k: str(v) for k, v in (spec.get('env') or {}).items()},
            cwd=spec.get('cwd'),
            timeout=spec.get('timeout', 600),
            region=settings.region,
            profile=settings.profile,
            cluster_name=settings.cluster_name,
        )

    @property
    def required_tools(self) -> tuple:
        return tuple(cmd[0] for cmd in (self.apply_cmd, self.destroy_cmd) if cmd)

    def _format(self, cmd: list, context: dict) -> list[str]:
        values = {
            'region': self.region,
            'profile': self.profile,
            'cluster_name': self.cluster_name,
            'resource_id': context.get('resource_id', ''),
        }
        outputs = context.get('outputs') or {}

        def _substitute(match) -> str:
            if match.group('name'):
                return str(values[match.group('name')])
            node = outputs
            for key in _OUTPUT_KEY_RE.findall(match.group('path')):
                if not isinstance(node, dict) or key not in node:
                    raise PermanentActionError(
                        f"Cannot render command {cmd!r}: missing output {match.group(0)}")
                node = node[key]
            return str(node)

        return [_PLACEHOLDER_RE.sub(_substitute, str(arg)) for arg in cmd]

    def _env(self, context: dict) -> Optional[dict]:
        if not self.env:
            return None
        secrets = context.get('secrets') or {}
        env = dict(os.environ)
        for key, value in self.env.items():
            if value.startswith(SECRET_PREFIX):
                name = value[len(SECRET_PREFIX):]
                if name not in secrets:
                    raise PermanentActionError(f"Secret '{name}' not available for env {key}")
                env[key] = secrets[name].reveal()
            else:
                env[key] = value
        return env

    def _run(self, cmd: list, context: dict) -> ActionResult:
        start = time.time()
        argv = self._format(cmd, context)
        logger.info(f"[command] {' '.join(argv)}")
        rc, out, err = run_command(argv, cwd=self.cwd, timeout=self.timeout, env=self._env(context))
        if rc != 0:
            return cli_failure(argv[0], rc, err, time.time() - start)
        return ActionResult(
            success=True,
            message=out.strip().splitlines()[-1] if out.strip() else f"{argv[0]} completed",
            duration=time.time() - start,
        )

    def apply(self, context: dict) -> ActionResult:
        return self._run(self.apply_cmd, context)

    def destroy(self, context: dict) -> ActionResult:
        if not self.destroy_cmd:
            return ActionResult(success=True, message='No destroy command')
        return self._run(self.destroy_cmd, context)
