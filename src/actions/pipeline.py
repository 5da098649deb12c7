"""Kubeflow Pipelines actions over the v1beta1 REST API."""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import requests

from common import ActionResult
from config import Settings
from stack_opr.errors import PermanentActionError, TransientActionError

logger = logging.getLogger(__name__)

API_PREFIX = '/apis/v1beta1'


def _name_filter(name: str) -> str:
    return json.dumps({'predicates': [{'key': 'name', 'op': 'EQUALS', 'string_value': name}]})


class PipelinesClient:
    """Thin client for the Kubeflow Pipelines API.

    Connection problems, timeouts, 429 and 5xx responses raise
    TransientActionError; other error responses raise PermanentActionError.
    """

    def __init__(self, endpoint: str, session_cookie: Optional[str] = None,
                 timeout: int = 30, verify: bool = True):
        self.endpoint = endpoint.rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()
        self.session.verify = verify
        if session_cookie:
            self.session.cookies.set('authservice_session', session_cookie)

    def _request(self, method: str, path: str, ok: tuple = (200,), **kwargs) -> requests.Response:
        url = f"{self.endpoint}{API_PREFIX}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout:
            raise TransientActionError(f"Timeout calling {method} {url}")
        except requests.exceptions.ConnectionError as e:
            raise TransientActionError(f"Cannot connect to {url}: {e}")
        if resp.status_code in ok:
            return resp
        detail = resp.text.strip()[:200]
        message = f"{method} {url} returned HTTP {resp.status_code}: {detail}"
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientActionError(message)
        raise PermanentActionError(message)

    def find_pipeline(self, name: str) -> Optional[dict]:
        resp = self._request('GET', '/pipelines', params={'filter': _name_filter(name), 'page_size': 1})
        pipelines = resp.json().get('pipelines') or []
        return pipelines[0] if pipelines else None

    def upload_pipeline(self, name: str, package: Path, description: str = '') -> dict:
        params = {'name': name}
        if description:
            params['description'] = description
        with open(package, 'rb') as f:
            resp = self._request('POST', '/pipelines/upload', params=params,
                                 files={'uploadfile': (package.name, f)})
        return resp.json()

    def delete_pipeline(self, pipeline_id: str) -> None:
        self._request('DELETE', f'/pipelines/{pipeline_id}', ok=(200, 404))

    def ensure_experiment(self, name: str) -> str:
        resp = self._request('GET', '/experiments', params={'filter': _name_filter(name), 'page_size': 1})
        experiments = resp.json().get('experiments') or []
        if experiments:
            return experiments[0]['id']
        resp = self._request('POST', '/experiments', json={'name': name})
        return resp.json()['id']

    def create_run(self, name: str, pipeline_id: str, experiment_id: str, parameters: dict) -> dict:
        body = {
            'name': name,
            'pipeline_spec': {
                'pipeline_id': pipeline_id,
                'parameters': [{'name': k, 'value': str(v)} for k, v in parameters.items()],
            },
            'resource_references': [{
                'key': {'type': 'EXPERIMENT', 'id': experiment_id},
                'relationship': 'OWNER',
            }],
        }
        resp = self._request('POST', '/runs', json=body)
        return resp.json().get('run', {})


def _client_from_spec(spec: dict) -> dict:
    return {
        'endpoint': spec.get('endpoint', 'http://localhost:8080/pipeline'),
        'session_secret': spec.get('session_secret'),
        'verify': spec.get('verify_tls', True),
        'request_timeout': spec.get('request_timeout', 30),
    }


@dataclass
class _PipelinesAction:
    endpoint: str = 'http://localhost:8080/pipeline'
    session_secret: Optional[str] = None
    verify: bool = True
    request_timeout: int = 30

    REQUIRED_TOOLS = ()

    def client(self, context: dict) -> PipelinesClient:
        cookie = None
        if self.session_secret:
            secret = (context.get('secrets') or {}).get(self.session_secret)
            if secret is None:
                raise PermanentActionError(f"Secret '{self.session_secret}' not available")
            cookie = secret.reveal()
        return PipelinesClient(self.endpoint, cookie, timeout=self.request_timeout, verify=self.verify)


@dataclass
class PipelineUploadAction(_PipelinesAction):
    """Upload a compiled pipeline package; reuse one with the same name."""
    name: str = ''
    package: str = ''
    description: str = ''

    @classmethod
    def from_spec(cls, spec: dict, settings: Settings) -> 'PipelineUploadAction':
        return cls(name=spec['name'], package=spec['package'],
                   description=spec.get('description', ''), **_client_from_spec(spec))

    def apply(self, context: dict) -> ActionResult:
        start = time.time()
        client = self.client(context)
        existing = client.find_pipeline(self.name)
        if existing:
            logger.info(f"[pipeline] '{self.name}' already uploaded ({existing['id']})")
            pipeline = existing
        else:
            package = Path(self.package)
            if not package.is_file():
                raise PermanentActionError(f"Pipeline package not found: {package}")
            pipeline = client.upload_pipeline(self.name, package, self.description)
            logger.info(f"[pipeline] Uploaded '{self.name}' as {pipeline.get('id')}")
        return ActionResult(
            success=True,
            message=f"Pipeline {self.name} available",
            duration=time.time() - start,
            context_updates={'pipeline_id': pipeline.get('id'), 'pipeline_name': self.name},
        )

    def destroy(self, context: dict) -> ActionResult:
        start = time.time()
        client = self.client(context)
        existing = client.find_pipeline(self.name)
        if existing:
            client.delete_pipeline(existing['id'])
            logger.info(f"[pipeline] Deleted '{self.name}'")
        return ActionResult(success=True, message=f"Pipeline {self.name} removed", duration=time.time() - start)


@dataclass
class PipelineRunAction(_PipelinesAction):
    """Start a run of an uploaded pipeline inside an experiment.

    The pipeline id comes from the outputs of pipeline_from. Runs are not
    undone on destroy.
    """
    pipeline_from: str = ''
    experiment: str = 'Default'
    run_name: str = ''
    parameters: dict = field(default_factory=dict)

    @classmethod
    def from_spec(cls, spec: dict, settings: Settings) -> 'PipelineRunAction':
        return cls(
            pipeline_from=spec['pipeline_from'],
            experiment=spec.get('experiment', 'Default'),
            run_name=spec.get('run_name', ''),
            parameters=dict(spec.get('parameters') or {}),
            **_client_from_spec(spec),
        )

    def apply(self, context: dict) -> ActionResult:
        start = time.time()
        outputs = (context.get('outputs') or {}).get(self.pipeline_from) or {}
        pipeline_id = outputs.get('pipeline_id')
        if not pipeline_id:
            raise PermanentActionError(f"Resource '{self.pipeline_from}' has no pipeline_id output")
        client = self.client(context)
        experiment_id = client.ensure_experiment(self.experiment)
        name = self.run_name or f"{context.get('resource_id', 'run')}-{int(start)}"
        run = client.create_run(name, pipeline_id, experiment_id, self.parameters)
        logger.info(f"[pipeline] Started run '{name}' ({run.get('id')})")
        return ActionResult(
            success=True,
            message=f"Run {name} started",
            duration=time.time() - start,
            context_updates={'run_id': run.get('id'), 'experiment_id': experiment_id},
        )
