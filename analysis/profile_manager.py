"""
Allocation profiles - equivalence classes of active VMs with the same
(cores, whole GB of memory, whole GB of storage) footprint.

Profiles are reconciled wholesale every cycle: the instance list is replaced,
never patched, and the updated profile is written in one save. Identity across
cycles comes from matching (cluster, cpu cores, memory MB) within the same
storage bucket, not from a stable membership id. Auto profiles whose group
has dissolved are emptied in the same run.
"""
import logging
import math
import time
from typing import Any, Dict, List, Optional, Tuple

from config import (
    MIN_PROFILE_GROUP_SIZE,
    PROFILE_STATS_WINDOW_DAYS,
    DEFAULT_MHZ_PER_CORE,
)
from errors import NotFoundError, ProfileInUseError, SourceError, ValidationError
from normalize import math as m
from normalize.series import values_from_samples
from tracker import now_iso

logger = logging.getLogger(__name__)

KB_PER_GB = 1024 * 1024
GroupKey = Tuple[int, int, int]


# =============================================================================
# Grouping
# =============================================================================
def group_key(vm: Dict[str, Any]) -> GroupKey:
    """(cores, floor(memory MB / 1024), floor(storage KB / 1024^2))

    Division-based buckets, not a distance tolerance: 8192 MB and 9000 MB share
    a bucket while 8191 MB and 8192 MB do not.
    """
    alloc = vm.get('resource_allocation', {})
    cores = alloc.get('cpu', {}).get('cores') or 0
    memory_mb = alloc.get('memory', {}).get('allocated_mb') or 0
    storage_kb = alloc.get('storage', {}).get('allocated_kb') or 0
    return (cores, memory_mb // 1024, storage_kb // KB_PER_GB)


def group_vms_by_resources(vms: List[Dict[str, Any]],
                           min_size: int = MIN_PROFILE_GROUP_SIZE) -> Dict[GroupKey, List[Dict[str, Any]]]:
    """Bucket active VMs by group_key and drop groups smaller than min_size"""
    groups: Dict[GroupKey, List[Dict[str, Any]]] = {}
    for vm in vms:
        if vm.get('status') != 'active':
            continue
        groups.setdefault(group_key(vm), []).append(vm)
    return {k: v for k, v in groups.items() if len(v) >= min_size}


def auto_profile_name(cores: int, memory_mb: int, storage_gb: int) -> str:
    return f"Auto-{cores}vCPU-{memory_mb // 1024}GB-{storage_gb}GB"


def _instance_from_vm(vm: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'vm_id': vm['id'],
        'name': vm.get('name'),
        'esxi_host': vm.get('esxi_host'),
        'status': vm.get('status'),
    }


# =============================================================================
# Maximum allocation
# =============================================================================
def calculate_max_allocation(specs: Dict[str, Any], available: Optional[Dict[str, Any]],
                             current_count: int) -> int:
    """Instances already placed plus whole extra instances that fit in `available`.

    Bin packing by the scarcest resource: the smallest of the per-resource
    ratios decides. A dimension with a zero or negative spec allows no extra
    slots.
    """
    if not available:
        return current_count
    pairs = (
        (available.get('cpu', {}).get('cores', 0), specs.get('cpu', {}).get('cores', 0)),
        (available.get('memory', {}).get('mb', 0), specs.get('memory', {}).get('mb', 0)),
        (available.get('storage', {}).get('gb', 0), specs.get('storage', {}).get('gb', 0)),
    )
    ratios = []
    for avail, need in pairs:
        if not need or need <= 0:
            return current_count
        ratios.append(max(0.0, (avail or 0) / need))
    return int(math.floor(min(ratios))) + current_count


def available_slots(profile: Dict[str, Any]) -> int:
    allocation = profile.get('allocation', {})
    maximum = allocation.get('maximum', {}).get('count', 0)
    current = allocation.get('current', {}).get('count', 0)
    return max(0, maximum - current)


# =============================================================================
# Utilization statistics
# =============================================================================
def calculate_efficiency(avg_cpu: float) -> float:
    """100 at 50% average CPU, decaying linearly to 0 at 0% and 100%"""
    return max(0.0, 100.0 - 2.0 * abs(avg_cpu - 50.0))


def calculate_profile_utilization(profile: Dict[str, Any], metrics,
                                  now: Optional[float] = None,
                                  window_days: int = PROFILE_STATS_WINDOW_DAYS) -> Optional[Dict[str, Any]]:
    """Average (mean of per-VM means) and peak usage over the trailing window.

    Sets and returns profile['utilization_stats'], or returns None and leaves
    the profile untouched when no member has samples.
    """
    instances = profile.get('instances') or []
    if not instances:
        return None
    end_ts = now if now is not None else time.time()
    start_ts = end_ts - window_days * 86400

    per_vm_avg = {'cpu': [], 'memory': [], 'storage': []}
    per_vm_max = {'cpu': [], 'memory': [], 'storage': []}
    for inst in instances:
        try:
            samples = metrics.get_samples(inst['vm_id'], start_ts, end_ts)
        except SourceError as e:
            logger.warning(f"Skipping utilization for {inst['vm_id']} in profile {profile.get('name')}: {e}")
            continue
        for key in per_vm_avg:
            vals = values_from_samples(samples, key)
            if vals:
                per_vm_avg[key].append(m.avg(vals))
                per_vm_max[key].append(m.maximum(vals))

    if not any(per_vm_avg.values()):
        return None

    average = {k: (m.avg(v) if v else 0.0) for k, v in per_vm_avg.items()}
    peak = {k: (m.maximum(v) if v else 0.0) for k, v in per_vm_max.items()}
    stats = {
        'average': average,
        'peak': peak,
        'efficiency': calculate_efficiency(average['cpu']),
    }
    profile['utilization_stats'] = stats
    return stats


# =============================================================================
# Reconciliation
# =============================================================================
def _empty_stats() -> Dict[str, Any]:
    zero = {'cpu': 0.0, 'memory': 0.0, 'storage': 0.0}
    return {'average': dict(zero), 'peak': dict(zero), 'efficiency': 0.0}


def _replace_instances(profile: Dict[str, Any], group: List[Dict[str, Any]],
                       available: Optional[Dict[str, Any]], metrics, now: Optional[float]) -> None:
    profile['instances'] = [_instance_from_vm(vm) for vm in group]
    count = len(profile['instances'])
    profile['allocation'] = {
        'current': {'count': count},
        'maximum': {'count': calculate_max_allocation(profile['resource_specs'], available, count)},
    }
    calculate_profile_utilization(profile, metrics, now=now)
    profile['last_calculated'] = now_iso()


def _new_auto_profile(cluster: Dict[str, Any], group: List[Dict[str, Any]]) -> Dict[str, Any]:
    sample = group[0]
    alloc = sample.get('resource_allocation', {})
    cores = alloc.get('cpu', {}).get('cores') or 0
    memory_mb = alloc.get('memory', {}).get('allocated_mb') or 0
    storage_gb = (alloc.get('storage', {}).get('allocated_kb') or 0) // KB_PER_GB
    return {
        'id': None,
        'name': auto_profile_name(cores, memory_mb, storage_gb),
        'organization_id': cluster.get('organization_id'),
        'cluster_id': cluster['id'],
        'resource_specs': {
            'cpu': {
                'cores': cores,
                'mhz': alloc.get('cpu', {}).get('reserved_mhz') or cores * DEFAULT_MHZ_PER_CORE,
            },
            'memory': {'mb': memory_mb},
            'storage': {'gb': storage_gb},
        },
        'instances': [],
        'allocation': {'current': {'count': 0}, 'maximum': {'count': 0}},
        'auto_generated': True,
        'is_active': True,
        'tags': ['auto-generated', 'cluster-analysis'],
        'utilization_stats': _empty_stats(),
        'created_at': now_iso(),
    }


def generate_auto_profiles(cluster_id: str, repository, inventory, metrics,
                           now: Optional[float] = None) -> List[Dict[str, Any]]:
    """Discover recurring VM shapes in a cluster and reconcile their profiles.

    Returns only the profiles created in this run; matched profiles are
    updated in place and auto profiles left without a group are emptied.

    Raises:
        ValidationError: empty cluster id
        NotFoundError: cluster not in the repository
    """
    if not cluster_id:
        raise ValidationError("cluster_id is required")
    cluster = repository.get_cluster(cluster_id)
    if cluster is None:
        raise NotFoundError("Cluster", cluster_id)

    vms = inventory.list_vms(cluster_id=cluster_id, status='active')
    if not vms:
        logger.info(f"[{cluster_id}] No active VMs found, no profiles generated")

    available = (cluster.get('capacity') or {}).get('available')
    groups = group_vms_by_resources(vms)
    created = []
    updated = 0
    # one profile per group per run
    claimed = set()

    for key, group in sorted(groups.items()):
        cores, _, storage_gb = key
        memory_mb = group[0].get('resource_allocation', {}).get('memory', {}).get('allocated_mb') or 0

        profile = repository.find_profile(cluster_id, cores, memory_mb,
                                          storage_gb=storage_gb, exclude_ids=claimed)
        is_new = False
        if profile is None:
            candidate = _new_auto_profile(cluster, group)
            clash = repository.find_profile_by_name(cluster_id, candidate['name'])
            if clash is not None and not clash.get('auto_generated'):
                logger.warning(f"[{cluster_id}] Not overwriting manual profile {clash['name']}")
                continue
            if clash is not None and clash['id'] in claimed:
                logger.warning(f"[{cluster_id}] Profile {clash['name']} already reconciled this run")
                continue
            if clash is not None:
                profile = clash
            else:
                profile = candidate
                is_new = True

        _replace_instances(profile, group, available, metrics, now)
        repository.save_profile(profile)
        claimed.add(profile['id'])
        if is_new:
            created.append(profile)
            logger.info(f"[{cluster_id}] Created profile {profile['name']} with {len(group)} instances")
        else:
            updated += 1
            logger.info(f"[{cluster_id}] Updated profile {profile['name']} with {len(group)} instances")

    emptied = _empty_dissolved_profiles(cluster_id, repository, claimed, available)
    logger.info(f"[{cluster_id}] Generated {len(created)} profiles, updated {updated}, emptied {emptied}")
    return created


def _empty_dissolved_profiles(cluster_id: str, repository, claimed, available) -> int:
    """Clear auto profiles whose group no longer exists; each is saved in one write."""
    emptied = 0
    for profile in repository.list_profiles(cluster_id):
        if not profile.get('auto_generated') or profile['id'] in claimed:
            continue
        if not profile.get('instances') and profile.get('allocation', {}).get('current', {}).get('count', 0) == 0:
            continue
        profile['instances'] = []
        profile['allocation'] = {
            'current': {'count': 0},
            'maximum': {'count': calculate_max_allocation(profile['resource_specs'], available, 0)},
        }
        profile['utilization_stats'] = _empty_stats()
        profile['last_calculated'] = now_iso()
        repository.save_profile(profile)
        emptied += 1
        logger.info(f"[{cluster_id}] Profile {profile['name']} has no matching VMs, instances cleared")
    return emptied


def refresh_profile_allocations(cluster_id: str, repository) -> int:
    """Recompute maximum allocation for every active profile against the
    cluster's current available capacity. Returns the number of profiles saved."""
    cluster = repository.get_cluster(cluster_id)
    if cluster is None:
        raise NotFoundError("Cluster", cluster_id)
    available = (cluster.get('capacity') or {}).get('available')
    profiles = repository.list_profiles(cluster_id)
    for profile in profiles:
        current = len(profile.get('instances') or [])
        profile['allocation'] = {
            'current': {'count': current},
            'maximum': {'count': calculate_max_allocation(profile['resource_specs'], available, current)},
        }
        profile['last_calculated'] = now_iso()
        repository.save_profile(profile)
    logger.info(f"[{cluster_id}] Refreshed allocation for {len(profiles)} profiles")
    return len(profiles)


# =============================================================================
# Manual profiles
# =============================================================================
def _validate_specs(cores: Any, memory_mb: Any, storage_gb: Any) -> None:
    errors = []
    if not isinstance(cores, int) or not (1 <= cores <= 32):
        errors.append(f"cpu cores must be an integer between 1 and 32, got {cores!r}")
    if not isinstance(memory_mb, int) or memory_mb < 1024:
        errors.append(f"memory must be an integer of at least 1024 MB, got {memory_mb!r}")
    if not isinstance(storage_gb, int) or storage_gb < 1:
        errors.append(f"storage must be an integer of at least 1 GB, got {storage_gb!r}")
    if errors:
        raise ValidationError("; ".join(errors))


def create_profile(cluster_id: str, name: str, cores: int, memory_mb: int, storage_gb: int,
                   repository, mhz: Optional[int] = None,
                   description: Optional[str] = None,
                   tags: Optional[List[str]] = None) -> Dict[str, Any]:
    """Create a manually curated profile (never touched by auto-generation)."""
    if not name or not name.strip():
        raise ValidationError("profile name is required")
    _validate_specs(cores, memory_mb, storage_gb)
    cluster = repository.get_cluster(cluster_id)
    if cluster is None:
        raise NotFoundError("Cluster", cluster_id)
    if repository.find_profile_by_name(cluster_id, name.strip()) is not None:
        raise ValidationError(f"profile {name.strip()!r} already exists in cluster {cluster_id}")

    specs = {
        'cpu': {'cores': cores, 'mhz': mhz if mhz is not None else cores * DEFAULT_MHZ_PER_CORE},
        'memory': {'mb': memory_mb},
        'storage': {'gb': storage_gb},
    }
    available = (cluster.get('capacity') or {}).get('available')
    profile = {
        'id': None,
        'name': name.strip(),
        'description': description,
        'organization_id': cluster.get('organization_id'),
        'cluster_id': cluster_id,
        'resource_specs': specs,
        'instances': [],
        'allocation': {
            'current': {'count': 0},
            'maximum': {'count': calculate_max_allocation(specs, available, 0)},
        },
        'auto_generated': False,
        'is_active': True,
        'tags': list(tags or []),
        'utilization_stats': _empty_stats(),
        'created_at': now_iso(),
        'last_calculated': now_iso(),
    }
    repository.save_profile(profile)
    logger.info(f"[{cluster_id}] Created manual profile {profile['name']}")
    return profile


def delete_profile(profile_id: str, repository) -> None:
    """Delete a profile; refused while it still has instances."""
    profile = repository.get_profile(profile_id)
    if profile is None:
        raise NotFoundError("Profile", profile_id)
    count = profile.get('allocation', {}).get('current', {}).get('count', 0)
    if count > 0:
        raise ProfileInUseError(f"profile {profile['name']} has {count} active instances")
    repository.delete_profile(profile_id)
    logger.info(f"Deleted profile {profile['name']}")
