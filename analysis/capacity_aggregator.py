"""
Capacity aggregation - rolls eligible host capacity and active VM allocations
into a cluster-level total / allocated / available snapshot.
"""
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from config import resolve_utilization_target
from errors import NotFoundError, SourceError, ValidationError
from tracker import now_iso

logger = logging.getLogger(__name__)

BYTES_PER_GB = 1024 ** 3
KB_PER_GB = 1024 * 1024


def empty_capacity() -> Dict[str, Any]:
    return {
        'cpu': {'cores': 0, 'mhz': 0},
        'memory': {'mb': 0},
        'storage': {'gb': 0},
    }


def is_eligible_host(host: Dict[str, Any]) -> bool:
    """Only connected, powered-on, non-maintenance, active hosts contribute capacity"""
    return (
        host.get('connection_state') == 'connected'
        and host.get('power_state') == 'poweredOn'
        and not host.get('maintenance_mode', False)
        and host.get('is_active', True)
    )


def host_storage_gb(host: Dict[str, Any]) -> float:
    datastores = host.get('capacity', {}).get('storage', {}).get('datastores') or []
    total_bytes = sum(ds.get('capacity_bytes') or 0 for ds in datastores)
    return total_bytes / BYTES_PER_GB


def aggregate_host_capacity(hosts: List[Dict[str, Any]]) -> Dict[str, Any]:
    total = empty_capacity()
    for host in hosts:
        capacity = host.get('capacity', {})
        total['cpu']['cores'] += capacity.get('cpu', {}).get('cores') or 0
        total['cpu']['mhz'] += capacity.get('cpu', {}).get('mhz') or 0
        total['memory']['mb'] += capacity.get('memory', {}).get('mb') or 0
        total['storage']['gb'] += host_storage_gb(host)
    return total


def aggregate_vm_allocations(vms: List[Dict[str, Any]]) -> Dict[str, Any]:
    allocated = empty_capacity()
    for vm in vms:
        alloc = vm.get('resource_allocation', {})
        allocated['cpu']['cores'] += alloc.get('cpu', {}).get('cores') or 0
        allocated['cpu']['mhz'] += alloc.get('cpu', {}).get('reserved_mhz') or 0
        allocated['memory']['mb'] += alloc.get('memory', {}).get('allocated_mb') or 0
        allocated['storage']['gb'] += (alloc.get('storage', {}).get('allocated_kb') or 0) / KB_PER_GB
    return allocated


def _usable(total: float, target_percent: float) -> int:
    return int(math.floor(total * target_percent / 100.0))


def calculate_available_capacity(total: Dict[str, Any], allocated: Dict[str, Any],
                                 target: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """available[r] = max(0, floor(total[r] * target[r] / 100) - allocated[r]) per resource.

    CPU cores and MHz share the cpu target.
    """
    t = resolve_utilization_target(target)
    return {
        'cpu': {
            'cores': max(0, _usable(total['cpu']['cores'], t['cpu']) - allocated['cpu']['cores']),
            'mhz': max(0, _usable(total['cpu']['mhz'], t['cpu']) - allocated['cpu']['mhz']),
        },
        'memory': {
            'mb': max(0, _usable(total['memory']['mb'], t['memory']) - allocated['memory']['mb']),
        },
        'storage': {
            'gb': max(0, _usable(total['storage']['gb'], t['storage']) - allocated['storage']['gb']),
        },
    }


def _percent(part: float, whole: float) -> float:
    if not whole:
        return 0.0
    return (part / whole) * 100.0


def calculate_utilization(capacity: Dict[str, Any]) -> Dict[str, Any]:
    """Allocated share of total capacity per resource (0 when total is unknown)"""
    total = capacity.get('total') or empty_capacity()
    allocated = capacity.get('allocated') or empty_capacity()
    return {
        'cpu': {
            'percentage': _percent(allocated['cpu']['cores'], total['cpu']['cores']),
            'cores': allocated['cpu']['cores'],
            'total': total['cpu']['cores'],
        },
        'memory': {
            'percentage': _percent(allocated['memory']['mb'], total['memory']['mb']),
            'allocated': allocated['memory']['mb'],
            'total': total['memory']['mb'],
        },
        'storage': {
            'percentage': _percent(allocated['storage']['gb'], total['storage']['gb']),
            'allocated': allocated['storage']['gb'],
            'total': total['storage']['gb'],
        },
    }


def _fetch_eligible_hosts(cluster_id: str, inventory) -> Tuple[List[Dict[str, Any]], List[str]]:
    """Fetch hosts one at a time; a failed fetch skips that host only."""
    eligible = []
    skipped = []
    for host_id in inventory.list_host_ids(cluster_id):
        try:
            host = inventory.get_host(host_id)
        except SourceError as e:
            logger.warning(f"[{cluster_id}] Skipping host {host_id}: {e}")
            skipped.append(host_id)
            continue
        if host is None:
            logger.warning(f"[{cluster_id}] Host {host_id} disappeared from inventory")
            skipped.append(host_id)
            continue
        if is_eligible_host(host):
            eligible.append(host)
        else:
            logger.debug(f"[{cluster_id}] Host {host.get('name', host_id)} not eligible for aggregation")
    return eligible, skipped


def _snapshot(cluster: Dict[str, Any], status: str, skipped: List[str]) -> Dict[str, Any]:
    capacity = cluster.get('capacity') or {}
    return {
        'cluster_id': cluster['id'],
        'status': status,
        'total': capacity.get('total'),
        'allocated': capacity.get('allocated'),
        'available': capacity.get('available'),
        'host_count': cluster.get('host_count', 0),
        'last_sync': cluster.get('last_sync'),
        'skipped_hosts': skipped,
    }


def recalculate_capacity(cluster_id: str, repository, inventory) -> Dict[str, Any]:
    """Recompute and persist the capacity snapshot for one cluster.

    Returns the snapshot with status 'updated', or 'no_eligible_hosts' when no
    host qualifies (prior capacity is left untouched in that case).

    Raises:
        ValidationError: empty cluster id
        NotFoundError: cluster not in the repository
    """
    if not cluster_id:
        raise ValidationError("cluster_id is required")
    cluster = repository.get_cluster(cluster_id)
    if cluster is None:
        raise NotFoundError("Cluster", cluster_id)

    hosts, skipped = _fetch_eligible_hosts(cluster_id, inventory)
    if not hosts:
        logger.warning(f"[{cluster_id}] No eligible hosts found, keeping previous capacity")
        return _snapshot(cluster, 'no_eligible_hosts', skipped)

    host_names = {h.get('name') for h in hosts}
    vms = [
        vm for vm in inventory.list_vms(cluster_id=cluster_id, status='active')
        if vm.get('status') == 'active' and vm.get('esxi_host') in host_names
    ]

    total = aggregate_host_capacity(hosts)
    allocated = aggregate_vm_allocations(vms)
    target = cluster.get('configuration', {}).get('utilization_target')
    available = calculate_available_capacity(total, allocated, target)

    cluster['capacity'] = {'total': total, 'allocated': allocated, 'available': available}
    cluster['host_count'] = len(hosts)
    cluster['last_sync'] = now_iso()
    repository.save_cluster(cluster)

    logger.info(
        f"[{cluster_id}] Capacity updated from {len(hosts)} hosts and {len(vms)} VMs: "
        f"available {available['cpu']['cores']} cores, {available['memory']['mb']} MB, "
        f"{available['storage']['gb']:.1f} GB"
    )
    return _snapshot(cluster, 'updated', skipped)
