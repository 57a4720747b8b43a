"""Orchestrator: per-cluster planning cycle aggregate -> reconcile profiles -> (analyze).
Outputs are advisory. Each cluster is planned independently; at most one cycle
per cluster runs at a time and overlapping requests are dropped, not queued.
"""
import logging
import json
import os
import threading
from typing import Any, Dict, List, Optional

from config import (
    setup_logging, validate_config, ConfigValidationError,
    CLUSTERS, get_cluster_ids, get_report_output_path, resolve_utilization_target,
    INVENTORY_SOURCE_URL, METRICS_SOURCE_URL, SOURCE_API_TOKEN, INVENTORY_FIXTURE_PATH,
    REPOSITORY_PATH, OUTPUT_DIR, ANALYZE_ON_CYCLE, SIZING_WINDOW_HOURS,
    CLUSTER_HIGH_UTILIZATION_PERCENT, CLUSTER_LOW_UTILIZATION_PERCENT,
    PROFILE_LOW_EFFICIENCY_PERCENT,
)
from errors import NotFoundError, PlanningError, ValidationError
from analysis import capacity_aggregator as aggregator
from analysis import profile_manager as profiles_mod
from analysis import vm_sizing as sizing
from inventory import sources as sources_mod
from inventory.repository import JsonFileRepository
from tracker import append_run, atomic_write, now_iso

logger = logging.getLogger(__name__)

PHASE_IDLE = 'idle'
PHASE_AGGREGATING = 'aggregating'
PHASE_RECONCILING = 'reconciling_profiles'
PHASE_ANALYZING = 'analyzing'


class ClusterRunGuard:
    """Lock-guarded map of cluster id -> current phase.

    A cluster absent from the map is idle. try_acquire checks and inserts
    under one lock, so two callers can never both start a cycle.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._phases: Dict[str, str] = {}

    def try_acquire(self, cluster_id: str) -> bool:
        with self._lock:
            if cluster_id in self._phases:
                return False
            self._phases[cluster_id] = PHASE_AGGREGATING
            return True

    def set_phase(self, cluster_id: str, phase: str) -> None:
        with self._lock:
            if cluster_id in self._phases:
                self._phases[cluster_id] = phase

    def release(self, cluster_id: str) -> None:
        with self._lock:
            self._phases.pop(cluster_id, None)

    def phase_of(self, cluster_id: str) -> str:
        with self._lock:
            return self._phases.get(cluster_id, PHASE_IDLE)

    def running(self) -> List[str]:
        with self._lock:
            return sorted(self._phases)


class PlanningOrchestrator:
    """Entry point for the planning operations used by the API layer and scheduler.

    Args:
        repository: persistence port for clusters and profiles
        inventory: host / VM source
        metrics: utilization sample source
    """

    def __init__(self, repository, inventory, metrics):
        self.repository = repository
        self.inventory = inventory
        self.metrics = metrics
        self.guard = ClusterRunGuard()

    # -------------------------------------------------------------------------
    # Planning cycle
    # -------------------------------------------------------------------------
    def run_cycle(self, cluster_id: str, analyze: bool = False,
                  hours: Optional[float] = None) -> Dict[str, Any]:
        """Run one planning cycle for a cluster.

        Never raises: the report carries status 'completed', 'skipped'
        (another cycle is running) or 'failed' with the error message.
        """
        report: Dict[str, Any] = {
            'cluster_id': cluster_id,
            'started_at': now_iso(),
            'status': 'completed',
            'capacity': None,
            'profiles': None,
            'sizing': None,
        }
        if not self.guard.try_acquire(cluster_id):
            logger.warning(f"[{cluster_id}] Planning cycle already in progress, skipping")
            report['status'] = 'skipped'
            return report

        try:
            logger.info(f"[{cluster_id}] Starting planning cycle")
            report['capacity'] = aggregator.recalculate_capacity(cluster_id, self.repository, self.inventory)

            self.guard.set_phase(cluster_id, PHASE_RECONCILING)
            profiles_mod.refresh_profile_allocations(cluster_id, self.repository)
            created = profiles_mod.generate_auto_profiles(
                cluster_id, self.repository, self.inventory, self.metrics
            )
            report['profiles'] = {
                'created': [p['name'] for p in created],
                'active': len(self.repository.list_profiles(cluster_id)),
            }

            if analyze:
                self.guard.set_phase(cluster_id, PHASE_ANALYZING)
                cluster = self.repository.get_cluster(cluster_id)
                report['sizing'] = sizing.analyze_bulk_vms(
                    cluster.get('organization_id'), self.inventory, self.metrics,
                    hours=hours, cluster_id=cluster_id,
                )
            logger.info(f"[{cluster_id}] Planning cycle completed")
        except Exception as e:
            logger.error(f"[{cluster_id}] Planning cycle failed: {e}")
            report['status'] = 'failed'
            report['error'] = str(e)
        finally:
            self.guard.release(cluster_id)
            report['finished_at'] = now_iso()
        return report

    def run_clusters(self, cluster_ids: List[str], analyze: bool = False,
                     hours: Optional[float] = None) -> List[Dict[str, Any]]:
        """Plan each cluster independently; one failure never stops the others."""
        return [self.run_cycle(cid, analyze=analyze, hours=hours) for cid in cluster_ids]

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------
    def recalculate_capacity(self, cluster_id: str) -> Dict[str, Any]:
        """Aggregate capacity and refresh profile maxima for one cluster.

        Returns a snapshot; status 'skipped' when a cycle is already running.
        """
        if not self.guard.try_acquire(cluster_id):
            logger.warning(f"[{cluster_id}] Capacity calculation already in progress, skipping")
            return {'cluster_id': cluster_id, 'status': 'skipped'}
        try:
            snapshot = aggregator.recalculate_capacity(cluster_id, self.repository, self.inventory)
            if snapshot['status'] == 'updated':
                self.guard.set_phase(cluster_id, PHASE_RECONCILING)
                try:
                    profiles_mod.refresh_profile_allocations(cluster_id, self.repository)
                except PlanningError as e:
                    logger.error(f"[{cluster_id}] Error updating allocation profiles: {e}")
            return snapshot
        finally:
            self.guard.release(cluster_id)

    def generate_auto_profiles(self, cluster_id: str) -> List[Dict[str, Any]]:
        """Reconcile auto profiles; returns [] when a cycle is already running."""
        if not self.guard.try_acquire(cluster_id):
            logger.warning(f"[{cluster_id}] Profile generation already in progress, skipping")
            return []
        try:
            self.guard.set_phase(cluster_id, PHASE_RECONCILING)
            return profiles_mod.generate_auto_profiles(
                cluster_id, self.repository, self.inventory, self.metrics
            )
        finally:
            self.guard.release(cluster_id)

    def get_capacity_status(self, organization_id: str) -> List[Dict[str, Any]]:
        """Capacity, utilization and profiles for every active cluster of an organization."""
        if not organization_id:
            raise ValidationError("organization_id is required")
        status = []
        for cluster in self.repository.list_clusters(organization_id=organization_id):
            capacity = cluster.get('capacity') or {}
            profiles = self.repository.list_profiles(cluster['id'])
            status.append({
                'cluster': {
                    'id': cluster['id'],
                    'name': cluster.get('name'),
                    'capacity': capacity,
                    'utilization': aggregator.calculate_utilization(capacity),
                    'host_count': cluster.get('host_count', 0),
                    'last_sync': cluster.get('last_sync'),
                    'phase': self.guard.phase_of(cluster['id']),
                },
                'profiles': [
                    {
                        'id': p['id'],
                        'name': p['name'],
                        'resource_specs': p['resource_specs'],
                        'allocation': p['allocation'],
                        'available_slots': profiles_mod.available_slots(p),
                        'efficiency': (p.get('utilization_stats') or {}).get('efficiency', 0.0),
                        'auto_generated': p.get('auto_generated', False),
                    }
                    for p in profiles
                ],
            })
        return status

    def get_capacity_recommendations(self, cluster_id: str) -> List[Dict[str, Any]]:
        cluster = self.repository.get_cluster(cluster_id)
        if cluster is None:
            raise NotFoundError("Cluster", cluster_id)
        utilization = aggregator.calculate_utilization(cluster.get('capacity') or {})
        cpu_pct = utilization['cpu']['percentage']
        mem_pct = utilization['memory']['percentage']
        recommendations = []

        if cpu_pct > CLUSTER_HIGH_UTILIZATION_PERCENT:
            recommendations.append({
                'type': 'warning',
                'category': 'capacity',
                'message': f"Cluster CPU utilization is {cpu_pct:.1f}%. Consider adding more hosts or migrating VMs.",
                'priority': 'high',
                'action': 'scale_out',
            })
        if mem_pct > CLUSTER_HIGH_UTILIZATION_PERCENT:
            recommendations.append({
                'type': 'warning',
                'category': 'capacity',
                'message': f"Cluster memory utilization is {mem_pct:.1f}%. Consider adding more hosts or memory.",
                'priority': 'high',
                'action': 'scale_out',
            })
        # no capacity known yet: a 0% reading is not underuse
        if utilization['cpu']['total'] and cpu_pct < CLUSTER_LOW_UTILIZATION_PERCENT:
            recommendations.append({
                'type': 'info',
                'category': 'optimization',
                'message': f"Cluster CPU utilization is only {cpu_pct:.1f}%. Consider consolidating VMs or downsizing.",
                'priority': 'medium',
                'action': 'optimize',
            })

        for profile in self.repository.list_profiles(cluster_id):
            efficiency = (profile.get('utilization_stats') or {}).get('efficiency', 0.0)
            if efficiency < PROFILE_LOW_EFFICIENCY_PERCENT:
                recommendations.append({
                    'type': 'warning',
                    'category': 'efficiency',
                    'message': f"Profile \"{profile['name']}\" has low efficiency ({efficiency:.1f}%). Consider right-sizing or consolidation.",
                    'priority': 'medium',
                    'action': 'rightsize',
                    'profile_id': profile['id'],
                })
        return recommendations

    def analyze_vm_sizing(self, vm_id: str, hours: Optional[float] = None) -> Dict[str, Any]:
        return sizing.analyze_vm_sizing(vm_id, self.inventory, self.metrics, hours=hours)

    def analyze_bulk_vms(self, organization_id: str, hours: Optional[float] = None) -> Dict[str, Any]:
        return sizing.analyze_bulk_vms(organization_id, self.inventory, self.metrics, hours=hours)


# =============================================================================
# CLI
# =============================================================================
def ensure_cluster(repository, entry: Dict[str, Any]) -> Dict[str, Any]:
    """Create the cluster record from its config entry if missing and
    refresh its utilization target."""
    cluster_id = entry['cluster_id']
    cluster = repository.get_cluster(cluster_id)
    if cluster is None:
        cluster = {
            'id': cluster_id,
            'name': entry.get('name', cluster_id),
            'organization_id': entry.get('organization_id'),
            'is_active': True,
            'configuration': {},
            'capacity': {
                'total': aggregator.empty_capacity(),
                'allocated': aggregator.empty_capacity(),
                'available': aggregator.empty_capacity(),
            },
            'host_count': 0,
            'last_sync': None,
        }
        logger.info(f"[{cluster_id}] Registered new cluster")
    cluster.setdefault('configuration', {})['utilization_target'] = resolve_utilization_target(
        entry.get('utilization_target')
    )
    repository.save_cluster(cluster)
    return cluster


def build_sources():
    """HTTP sources when URLs are configured, otherwise the local fixture file."""
    if INVENTORY_SOURCE_URL and METRICS_SOURCE_URL:
        inventory = sources_mod.HttpInventorySource(
            sources_mod.HttpSourceClient(INVENTORY_SOURCE_URL, api_token=SOURCE_API_TOKEN)
        )
        metrics = sources_mod.HttpMetricsSource(
            sources_mod.HttpSourceClient(METRICS_SOURCE_URL, api_token=SOURCE_API_TOKEN)
        )
        return [], inventory, metrics
    return sources_mod.load_fixture(INVENTORY_FIXTURE_PATH)


def main() -> int:
    setup_logging()

    try:
        validate_config()
        logger.info("Configuration validated successfully")
    except ConfigValidationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    os.makedirs(OUTPUT_DIR, exist_ok=True)

    try:
        fixture_clusters, inventory, metrics = build_sources()
    except (OSError, ValueError) as e:
        logger.error(f"Unable to load inventory: {e}")
        return 1

    repository = JsonFileRepository(REPOSITORY_PATH)
    entries = fixture_clusters or CLUSTERS
    for entry in entries:
        ensure_cluster(repository, entry)
    cluster_ids = [e['cluster_id'] for e in entries] if fixture_clusters else get_cluster_ids()

    orchestrator = PlanningOrchestrator(repository, inventory, metrics)
    logger.info(f"Planning {len(cluster_ids)} cluster(s) (analyze={ANALYZE_ON_CYCLE})")

    success_count = 0
    failed_count = 0
    output_files = []

    for cluster_id in cluster_ids:
        logger.info("=" * 60)
        logger.info(f"Processing cluster: {cluster_id}")
        logger.info("=" * 60)

        report = orchestrator.run_cycle(cluster_id, analyze=ANALYZE_ON_CYCLE, hours=SIZING_WINDOW_HOURS)
        if report['status'] == 'failed':
            failed_count += 1
            continue

        report['recommendations'] = orchestrator.get_capacity_recommendations(cluster_id)
        output_path = get_report_output_path(cluster_id)
        atomic_write(output_path, json.dumps(report, indent=2, default=str))
        logger.info(f"[{cluster_id}] Wrote planning report to {output_path}")
        output_files.append(output_path)
        success_count += 1

    if output_files:
        append_run({
            'files_modified': output_files,
            'type': 'planning',
            'description': f'Planning run: {success_count} cluster(s) planned, {failed_count} failed',
        })

    logger.info("=" * 60)
    logger.info(f"Planning complete: {success_count} succeeded, {failed_count} failed")
    logger.info("=" * 60)

    return 0 if failed_count == 0 else 1


if __name__ == '__main__':
    raise SystemExit(main())
