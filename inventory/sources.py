"""
Inventory and metrics sources.

Connectors to vCenter / Hyper-V live outside this package; the engine only
sees already-shaped records:

- inventory: hosts per cluster and VMs per cluster / organization
- metrics: utilization samples per VM for a time range

Two implementations of each: in-memory (fixtures, tests) and HTTP.
"""
import json
import logging
import os
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import requests
import yaml

from config import SOURCE_TIMEOUT_SECONDS, SOURCE_RETRY_COUNT, SOURCE_RETRY_BACKOFF_BASE
from errors import SourceConnectionError, SourceQueryError, FetchTimeoutError
from normalize.series import samples_in_window

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> Optional[float]:
    """Accept epoch seconds or ISO-8601 strings; return epoch seconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    try:
        return float(value)
    except (TypeError, ValueError):
        pass
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00')).timestamp()
    except ValueError:
        return None


def normalize_sample(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Flatten a raw sample into {vm_id, timestamp, cpu, memory, storage}.

    Accepts both the flat shape and the nested `metrics.cpu.usage` shape.
    Returns None when the timestamp is unreadable.
    """
    ts = _parse_timestamp(raw.get('timestamp'))
    if ts is None:
        return None
    nested = raw.get('metrics') or {}

    def _reading(key):
        if key in raw:
            return raw.get(key)
        return (nested.get(key) or {}).get('usage')

    return {
        'vm_id': raw.get('vm_id'),
        'timestamp': ts,
        'cpu': _reading('cpu'),
        'memory': _reading('memory'),
        'storage': _reading('storage'),
    }


# =============================================================================
# In-memory sources
# =============================================================================
class InMemoryInventory:
    """Inventory held in memory, keyed by host and VM id"""

    def __init__(self, hosts: Optional[List[Dict[str, Any]]] = None,
                 vms: Optional[List[Dict[str, Any]]] = None):
        self.hosts: Dict[str, Dict[str, Any]] = {h['id']: h for h in (hosts or [])}
        self.vms: Dict[str, Dict[str, Any]] = {v['id']: v for v in (vms or [])}

    def list_host_ids(self, cluster_id: str) -> List[str]:
        return [h['id'] for h in self.hosts.values() if h.get('cluster_id') == cluster_id]

    def get_host(self, host_id: str) -> Optional[Dict[str, Any]]:
        return self.hosts.get(host_id)

    def _cluster_host_names(self, cluster_id: str) -> set:
        return {h.get('name') for h in self.hosts.values() if h.get('cluster_id') == cluster_id}

    def list_vms(self, cluster_id: Optional[str] = None,
                 organization_id: Optional[str] = None,
                 status: Optional[str] = None) -> List[Dict[str, Any]]:
        host_names = self._cluster_host_names(cluster_id) if cluster_id else None
        result = []
        for vm in self.vms.values():
            if host_names is not None and vm.get('esxi_host') not in host_names:
                continue
            if organization_id is not None and vm.get('organization_id') != organization_id:
                continue
            if status is not None and vm.get('status') != status:
                continue
            result.append(vm)
        return result

    def get_vm(self, vm_id: str) -> Optional[Dict[str, Any]]:
        return self.vms.get(vm_id)


class InMemoryMetrics:
    """Append-only utilization samples per VM"""

    def __init__(self, samples: Optional[List[Dict[str, Any]]] = None):
        self._samples: Dict[str, List[Dict[str, Any]]] = {}
        for s in samples or []:
            self.add_sample(s)

    def add_sample(self, raw: Dict[str, Any]) -> None:
        sample = normalize_sample(raw)
        if sample is None or sample['vm_id'] is None:
            return
        self._samples.setdefault(sample['vm_id'], []).append(sample)

    def get_samples(self, vm_id: str, start_ts: float, end_ts: float) -> List[Dict[str, Any]]:
        return samples_in_window(self._samples.get(vm_id, []), start_ts, end_ts)


def load_fixture(path: str) -> Tuple[List[Dict[str, Any]], InMemoryInventory, InMemoryMetrics]:
    """Load clusters, inventory and samples from a YAML or JSON fixture file.

    Expected top-level keys: clusters, hosts, vms, samples.
    """
    with open(path, 'r', encoding='utf-8') as f:
        if os.path.splitext(path)[1].lower() == '.json':
            data = json.load(f)
        else:
            data = yaml.safe_load(f) or {}
    inventory = InMemoryInventory(data.get('hosts', []), data.get('vms', []))
    metrics = InMemoryMetrics(data.get('samples', []))
    logger.info(f"Loaded fixture {path}: {len(inventory.hosts)} hosts, {len(inventory.vms)} VMs")
    return data.get('clusters', []), inventory, metrics


# =============================================================================
# HTTP sources
# =============================================================================
class HttpSourceClient:
    """Thin JSON-over-HTTP client with per-call timeout and retry on connection errors"""

    def __init__(self, base_url: str, timeout: int = SOURCE_TIMEOUT_SECONDS,
                 retries: int = SOURCE_RETRY_COUNT,
                 backoff_base: int = SOURCE_RETRY_BACKOFF_BASE,
                 api_token: Optional[str] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.retries = max(1, retries)
        self.backoff_base = backoff_base
        self.api_token = api_token

    def _headers(self) -> Dict[str, str]:
        headers = {'Accept': 'application/json'}
        if self.api_token:
            headers['Authorization'] = f'Bearer {self.api_token}'
        return headers

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None,
                 allow_missing: bool = False) -> Any:
        """GET base_url + path and decode the JSON body.

        Returns None for 404 when allow_missing is set.

        Raises:
            FetchTimeoutError: the request exceeded its timeout
            SourceConnectionError: still unreachable after all retries
            SourceQueryError: non-200 status or invalid JSON
        """
        url = f"{self.base_url}{path}"
        last_error = None
        for attempt in range(self.retries):
            try:
                r = requests.get(url, params=params, headers=self._headers(), timeout=self.timeout)
            except requests.exceptions.Timeout as e:
                raise FetchTimeoutError(f"request to {url} timed out after {self.timeout}s: {e}")
            except requests.exceptions.RequestException as e:
                last_error = e
                delay = self.backoff_base * (2 ** attempt)
                logger.warning(f"Request to {url} failed (attempt {attempt + 1}/{self.retries}): {e}")
                time.sleep(delay)
                continue
            if r.status_code == 404 and allow_missing:
                return None
            if r.status_code != 200:
                raise SourceQueryError(f"{url} returned status {r.status_code}: {r.text}")
            try:
                return r.json()
            except ValueError as e:
                raise SourceQueryError(f"{url} returned invalid JSON: {e}")
        raise SourceConnectionError(f"request to {url} failed after {self.retries} attempts: {last_error}")


class HttpInventorySource:
    """Inventory served by an HTTP collector.

    Endpoints:
      GET /api/v1/clusters/{id}/hosts        -> {"hosts": [{"id": ...}, ...]}
      GET /api/v1/hosts/{id}                 -> host record
      GET /api/v1/vms?cluster_id=&organization_id=&status= -> {"vms": [...]}
      GET /api/v1/vms/{id}                   -> VM record
    """

    def __init__(self, client: HttpSourceClient):
        self.client = client

    def list_host_ids(self, cluster_id: str) -> List[str]:
        data = self.client.get_json(f"/api/v1/clusters/{cluster_id}/hosts") or {}
        return [h['id'] for h in data.get('hosts', []) if h.get('id')]

    def get_host(self, host_id: str) -> Optional[Dict[str, Any]]:
        return self.client.get_json(f"/api/v1/hosts/{host_id}", allow_missing=True)

    def list_vms(self, cluster_id: Optional[str] = None,
                 organization_id: Optional[str] = None,
                 status: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {k: v for k, v in (('cluster_id', cluster_id),
                                    ('organization_id', organization_id),
                                    ('status', status)) if v is not None}
        data = self.client.get_json("/api/v1/vms", params=params) or {}
        return data.get('vms', [])

    def get_vm(self, vm_id: str) -> Optional[Dict[str, Any]]:
        return self.client.get_json(f"/api/v1/vms/{vm_id}", allow_missing=True)


class HttpMetricsSource:
    """Utilization samples served over HTTP.

    GET /api/v1/vms/{id}/utilization?start=&end= -> {"samples": [...]}
    """

    def __init__(self, client: HttpSourceClient):
        self.client = client

    def get_samples(self, vm_id: str, start_ts: float, end_ts: float) -> List[Dict[str, Any]]:
        data = self.client.get_json(
            f"/api/v1/vms/{vm_id}/utilization",
            params={'start': str(start_ts), 'end': str(end_ts)},
        ) or {}
        samples = []
        for raw in data.get('samples', []):
            sample = normalize_sample(dict(raw, vm_id=raw.get('vm_id', vm_id)))
            if sample is not None:
                samples.append(sample)
        return sorted(samples, key=lambda s: s['timestamp'])
