"""Common utilities and types for stack orchestration."""

import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Return code used by run_command when the process could not complete
TIMEOUT_RC = -1

# stderr fragments that indicate a retry is likely to succeed
_TRANSIENT_PATTERNS = [
    r'timed out',
    r'timeout',
    r'throttl',
    r'rate exceeded',
    r'requestlimitexceeded',
    r'toomanyrequests',
    r'serviceunavailable',
    r'service unavailable',
    r'internalfailure',
    r'internal error',
    r'connection reset',
    r'connection refused',
    r'could not connect to the endpoint',
    r'endpointconnectionerror',
    r'temporary failure in name resolution',
    r'\b50[234]\b',
]
_TRANSIENT_RE = re.compile('|'.join(_TRANSIENT_PATTERNS), re.IGNORECASE)


@dataclass
class ActionResult:
    """Result returned by a resource action.

    Attributes:
        success: Whether the action completed
        message: Human-readable summary or error text
        duration: Wall-clock seconds spent in the action
        context_updates: Non-secret outputs recorded on the resource state
        transient: On failure, whether a retry may succeed
    """
    success: bool
    message: str = ''
    duration: float = 0.0
    context_updates: dict = field(default_factory=dict)
    transient: bool = False


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    input_text: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            input=input_text,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return TIMEOUT_RC, '', f'Command timed out after {timeout}s'
    except FileNotFoundError:
        return 127, '', f'Command not found: {cmd[0]}'
    except OSError as e:
        return TIMEOUT_RC, '', str(e)


def classify_cli_error(rc: int, stderr: str) -> bool:
    """Return True if a failed CLI invocation looks transient.

    Timeouts, throttling, connection problems and 5xx service errors are
    transient. Everything else (bad arguments, access denied, missing
    entities) is permanent.
    """
    if rc == 0:
        return False
    if rc == 127:
        return False
    if rc == TIMEOUT_RC and 'timed out' in stderr:
        return True
    return bool(_TRANSIENT_RE.search(stderr or ''))


def cli_failure(what: str, rc: int, stderr: str, duration: float = 0.0) -> ActionResult:
    """Build a failed ActionResult for a CLI invocation, classifying the error."""
    message = (stderr or '').strip() or f'exit code {rc}'
    return ActionResult(
        success=False,
        message=f"{what} failed: {message}",
        duration=duration,
        transient=classify_cli_error(rc, stderr),
    )


def aws_cmd(args: list[str], profile: str = '', region: str = '') -> list[str]:
    """Build an aws CLI invocation with optional profile/region flags."""
    cmd = ['aws'] + list(args)
    if region:
        cmd += ['--region', region]
    if profile:
        cmd += ['--profile', profile]
    return cmd
