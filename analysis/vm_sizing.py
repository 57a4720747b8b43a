"""
VM right-sizing - classifies each VM's CPU and memory allocation as
oversized / undersized / optimal from recent utilization percentiles.

Two rankings are reported:
- overall recommendation by severity: oversized (3) > undersized (2) > optimal (1)
- action priority: undersized is 'high' because under-provisioning is an
  operational risk, cost trims are 'medium' or 'low'
"""
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from config import (
    SIZING_THRESHOLDS,
    SIZING_WINDOW_HOURS,
    COST_PER_CORE_MONTH,
    COST_PER_GB_MONTH,
    BULK_MAX_WORKERS,
    BULK_TOP_RECOMMENDATIONS,
)
from errors import NotFoundError, ValidationError
from normalize import math as m
from normalize.series import values_from_samples

logger = logging.getLogger(__name__)

SEVERITY = {'oversized': 3, 'undersized': 2, 'optimal': 1}
PRIORITY_ORDER = {'high': 3, 'medium': 2, 'low': 1, 'none': 0}
CONFIDENCE_RANK = {'high': 3, 'medium': 2, 'low': 1}
MEMORY_STEP_MB = 512


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _round_up(value: float, step: int) -> int:
    return int(math.ceil(value / step) * step)


def utilization_level(avg_usage: float, thresholds: Dict[str, float]) -> str:
    if avg_usage < thresholds['oversized_avg']:
        return 'low'
    if avg_usage > thresholds['undersized_p95']:
        return 'high'
    return 'optimal'


def estimate_monthly_saving(resource: str, amount: float) -> float:
    """Cores for 'cpu', MB for 'memory'. Placeholder rates from config."""
    if resource == 'cpu':
        return round(amount * COST_PER_CORE_MONTH, 2)
    if resource == 'memory':
        return round((amount / 1024.0) * COST_PER_GB_MONTH, 2)
    return 0.0


def analyze_cpu_sizing(current_cores: int, stats: Dict[str, Any],
                       thresholds: Optional[Dict[str, float]] = None) -> Dict[str, Any]:
    t = thresholds or SIZING_THRESHOLDS['cpu']
    avg_usage = stats['avg']
    p95_usage = stats['p95']

    recommendation = 'optimal'
    suggested = current_cores
    reason = 'CPU allocation is optimal'
    confidence = 'high'

    if avg_usage < t['oversized_avg']:
        recommendation = 'oversized'
        suggested = max(1, int(math.ceil(current_cores * p95_usage / t['oversized_target'])))
        reason = f"Average CPU usage is {avg_usage:.1f}%, indicating over-allocation. P95 usage: {p95_usage:.1f}%"
        confidence = 'high' if avg_usage < t['high_confidence_avg'] else 'medium'
    elif p95_usage > t['undersized_p95']:
        recommendation = 'undersized'
        suggested = int(math.ceil(current_cores * p95_usage / t['undersized_target']))
        reason = f"P95 CPU usage is {p95_usage:.1f}%, indicating potential performance issues"
        confidence = 'high' if p95_usage > t['high_confidence_p95'] else 'medium'

    savings = None
    if recommendation == 'oversized':
        saved = current_cores - suggested
        savings = {
            'cores_saved': saved,
            'percent_saved': round(saved / current_cores * 100.0, 1) if current_cores else 0.0,
            'estimated_monthly_saving': estimate_monthly_saving('cpu', saved),
        }

    return {
        'recommendation': recommendation,
        'current_cores': current_cores,
        'suggested_cores': suggested,
        'reason': reason,
        'confidence': confidence,
        'utilization_level': utilization_level(avg_usage, t),
        'potential_savings': savings,
    }


def analyze_memory_sizing(current_mb: int, stats: Dict[str, Any],
                          thresholds: Optional[Dict[str, float]] = None) -> Dict[str, Any]:
    t = thresholds or SIZING_THRESHOLDS['memory']
    avg_usage = stats['avg']
    p95_usage = stats['p95']

    recommendation = 'optimal'
    suggested = current_mb
    reason = 'Memory allocation is optimal'
    confidence = 'high'

    if avg_usage < t['oversized_avg']:
        recommendation = 'oversized'
        suggested = max(MEMORY_STEP_MB, int(math.ceil(current_mb * p95_usage / t['oversized_target'])))
        suggested = _round_up(suggested, MEMORY_STEP_MB)
        reason = f"Average memory usage is {avg_usage:.1f}%, indicating over-allocation. P95 usage: {p95_usage:.1f}%"
        confidence = 'high' if avg_usage < t['high_confidence_avg'] else 'medium'
    elif p95_usage > t['undersized_p95']:
        recommendation = 'undersized'
        suggested = _round_up(current_mb * p95_usage / t['undersized_target'], MEMORY_STEP_MB)
        reason = f"P95 memory usage is {p95_usage:.1f}%, indicating potential memory pressure"
        confidence = 'high' if p95_usage > t['high_confidence_p95'] else 'medium'

    savings = None
    if recommendation == 'oversized':
        saved = current_mb - suggested
        savings = {
            'mb_saved': saved,
            'gb_saved': round(saved / 1024.0, 1),
            'percent_saved': round(saved / current_mb * 100.0, 1) if current_mb else 0.0,
            'estimated_monthly_saving': estimate_monthly_saving('memory', saved),
        }

    return {
        'recommendation': recommendation,
        'current_mb': current_mb,
        'suggested_mb': suggested,
        'reason': reason,
        'confidence': confidence,
        'utilization_level': utilization_level(avg_usage, t),
        'potential_savings': savings,
    }


def action_priority(recommendation: str, primary_concern: Optional[str]) -> str:
    if recommendation == 'undersized':
        return 'high'
    if recommendation == 'oversized' and primary_concern == 'both':
        return 'medium'
    if recommendation == 'oversized':
        return 'low'
    return 'none'


def _summary(cpu: str, memory: str, overall: str) -> str:
    if overall == 'optimal':
        return 'VM is optimally sized for current workload'
    if overall == 'oversized':
        if cpu == 'oversized' and memory == 'oversized':
            return 'VM is over-allocated for both CPU and memory. Consider downsizing to reduce costs.'
        if cpu == 'oversized':
            return 'VM has excessive CPU allocation. Consider reducing CPU cores.'
        return 'VM has excessive memory allocation. Consider reducing memory.'
    if cpu == 'undersized' and memory == 'undersized':
        return 'VM is under-allocated for both CPU and memory. Upgrade recommended for better performance.'
    if cpu == 'undersized':
        return 'VM needs more CPU cores to handle current workload effectively.'
    return 'VM needs more memory to handle current workload effectively.'


def determine_overall_recommendation(cpu_analysis: Dict[str, Any],
                                     memory_analysis: Dict[str, Any]) -> Dict[str, Any]:
    cpu_rec = cpu_analysis['recommendation']
    mem_rec = memory_analysis['recommendation']
    cpu_sev = SEVERITY[cpu_rec]
    mem_sev = SEVERITY[mem_rec]

    overall = 'optimal'
    primary = None
    secondary = None
    if cpu_sev > mem_sev:
        overall = cpu_rec
        primary = 'cpu'
        if mem_rec != 'optimal':
            secondary = 'memory'
    elif mem_sev > cpu_sev:
        overall = mem_rec
        primary = 'memory'
        if cpu_rec != 'optimal':
            secondary = 'cpu'
    elif cpu_rec != 'optimal':
        overall = cpu_rec
        primary = 'both'

    return {
        'recommendation': overall,
        'primary_concern': primary,
        'secondary_concern': secondary,
        'action_priority': action_priority(overall, primary),
        'summary': _summary(cpu_rec, mem_rec, overall),
    }


def _current_specs(vm: Dict[str, Any]) -> Dict[str, Any]:
    alloc = vm.get('resource_allocation', {})
    return {
        'cpu': {'cores': alloc.get('cpu', {}).get('cores') or 0,
                'reserved_mhz': alloc.get('cpu', {}).get('reserved_mhz')},
        'memory': {'allocated_mb': alloc.get('memory', {}).get('allocated_mb') or 0,
                   'reservation_mb': alloc.get('memory', {}).get('reservation_mb')},
        'storage': {'allocated_kb': alloc.get('storage', {}).get('allocated_kb') or 0},
    }


def analyze_vm_sizing(vm_id: str, inventory, metrics, hours: Optional[float] = None,
                      now: Optional[float] = None) -> Dict[str, Any]:
    """Right-size one VM from samples in [now - hours, now].

    Returns a result with status 'analyzed', or 'insufficient_data' when the
    window holds no usable CPU or memory readings.

    Raises:
        ValidationError: empty VM id or non-positive window
        NotFoundError: VM not in inventory
    """
    if hours is None:
        hours = SIZING_WINDOW_HOURS
    if not vm_id:
        raise ValidationError("vm_id is required")
    if hours <= 0:
        raise ValidationError(f"hours must be positive, got {hours}")

    vm = inventory.get_vm(vm_id)
    if vm is None:
        raise NotFoundError("VM", vm_id)

    end_ts = now if now is not None else time.time()
    start_ts = end_ts - hours * 3600
    samples = metrics.get_samples(vm_id, start_ts, end_ts)
    specs = _current_specs(vm)
    time_range = {'start': _iso(start_ts), 'end': _iso(end_ts)}

    cpu_values = values_from_samples(samples, 'cpu')
    mem_values = values_from_samples(samples, 'memory')
    if not cpu_values or not mem_values:
        logger.warning(f"Insufficient utilization data for VM {vm.get('name', vm_id)} in the last {hours}h")
        return {
            'vm_id': vm_id,
            'vm_name': vm.get('name'),
            'status': 'insufficient_data',
            'message': 'Not enough performance data available for analysis',
            'current_specs': specs,
            'data_points': len(samples),
            'time_range': time_range,
        }

    cpu_stats = m.compute_stats(cpu_values)
    mem_stats = m.compute_stats(mem_values)
    cpu_analysis = analyze_cpu_sizing(specs['cpu']['cores'], cpu_stats)
    memory_analysis = analyze_memory_sizing(specs['memory']['allocated_mb'], mem_stats)

    return {
        'vm_id': vm_id,
        'vm_name': vm.get('name'),
        'status': 'analyzed',
        'current_specs': specs,
        'cpu': cpu_analysis,
        'memory': memory_analysis,
        'overall': determine_overall_recommendation(cpu_analysis, memory_analysis),
        'utilization_stats': {'cpu': cpu_stats, 'memory': mem_stats},
        'data_points': len(samples),
        'time_range': time_range,
        'analyzed_at': _iso(time.time()),
    }


# =============================================================================
# Bulk analysis
# =============================================================================
def _safe_analyze(vm: Dict[str, Any], inventory, metrics, hours: float,
                  now: Optional[float]) -> Dict[str, Any]:
    """One VM per slot: failures are recorded, never raised."""
    try:
        return analyze_vm_sizing(vm['id'], inventory, metrics, hours=hours, now=now)
    except Exception as e:
        logger.error(f"Failed to analyze VM {vm.get('name', vm['id'])}: {e}")
        return {
            'vm_id': vm['id'],
            'vm_name': vm.get('name'),
            'status': 'error',
            'message': str(e),
        }


def generate_bulk_summary(analyses: List[Dict[str, Any]],
                          top_n: int = BULK_TOP_RECOMMENDATIONS) -> Dict[str, Any]:
    summary = {
        'total': len(analyses),
        'optimal': 0,
        'oversized': 0,
        'undersized': 0,
        'insufficient_data': 0,
        'error': 0,
        'total_potential_savings': {'cpu_cores': 0, 'memory_gb': 0.0, 'estimated_monthly': 0.0},
    }
    recommendations = []

    for analysis in analyses:
        status = analysis.get('status')
        if status != 'analyzed':
            summary[status if status == 'insufficient_data' else 'error'] += 1
            continue

        overall = analysis['overall']
        summary[overall['recommendation']] += 1

        if overall['recommendation'] == 'oversized':
            totals = summary['total_potential_savings']
            cpu_savings = analysis['cpu'].get('potential_savings')
            mem_savings = analysis['memory'].get('potential_savings')
            if cpu_savings:
                totals['cpu_cores'] += cpu_savings['cores_saved']
                totals['estimated_monthly'] += cpu_savings['estimated_monthly_saving']
            if mem_savings:
                totals['memory_gb'] += mem_savings['gb_saved']
                totals['estimated_monthly'] += mem_savings['estimated_monthly_saving']

        recommendations.append({
            'vm_id': analysis['vm_id'],
            'vm_name': analysis.get('vm_name'),
            'recommendation': overall['recommendation'],
            'priority': overall['action_priority'],
            'summary': overall['summary'],
            'confidence': min(CONFIDENCE_RANK[analysis['cpu']['confidence']],
                              CONFIDENCE_RANK[analysis['memory']['confidence']]),
        })

    totals = summary['total_potential_savings']
    totals['memory_gb'] = round(totals['memory_gb'], 1)
    totals['estimated_monthly'] = round(totals['estimated_monthly'], 2)

    recommendations.sort(key=lambda r: (PRIORITY_ORDER[r['priority']], r['confidence']), reverse=True)
    return {
        'summary': summary,
        'recommendations': recommendations[:top_n],
        'analyzed_at': _iso(time.time()),
    }


def analyze_bulk_vms(organization_id: str, inventory, metrics, hours: Optional[float] = None,
                     cluster_id: Optional[str] = None, max_workers: int = BULK_MAX_WORKERS,
                     now: Optional[float] = None) -> Dict[str, Any]:
    """Right-size every active VM of an organization (optionally one cluster).

    VMs are analysed concurrently on a bounded thread pool; each VM's outcome
    lands in its own slot.
    """
    if hours is None:
        hours = SIZING_WINDOW_HOURS
    if not organization_id and not cluster_id:
        raise ValidationError("organization_id or cluster_id is required")
    if hours <= 0:
        raise ValidationError(f"hours must be positive, got {hours}")
    if max_workers <= 0:
        raise ValidationError(f"max_workers must be positive, got {max_workers}")

    vms = inventory.list_vms(cluster_id=cluster_id, organization_id=organization_id, status='active')
    vms = [vm for vm in vms if vm.get('status') == 'active']
    logger.info(f"Analyzing {len(vms)} active VMs (organization={organization_id}, cluster={cluster_id})")

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        analyses = list(pool.map(lambda vm: _safe_analyze(vm, inventory, metrics, hours, now), vms))

    return generate_bulk_summary(analyses)
