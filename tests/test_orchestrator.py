"""
Tests for the planning orchestrator and CLI entry point
"""
import json
import threading

import pytest
import yaml

import config
import orchestrator
from errors import NotFoundError, ValidationError
from inventory.repository import InMemoryRepository

from conftest import NOW, make_cluster, make_host, make_samples, make_vm


@pytest.fixture
def planner(repository, inventory, metrics):
    return orchestrator.PlanningOrchestrator(repository, inventory, metrics)


class TestClusterRunGuard:
    """Tests for ClusterRunGuard"""

    def test_single_holder(self):
        guard = orchestrator.ClusterRunGuard()
        assert guard.try_acquire('c1')
        assert not guard.try_acquire('c1')
        assert guard.try_acquire('c2')
        assert guard.running() == ['c1', 'c2']

    def test_phase_tracking(self):
        guard = orchestrator.ClusterRunGuard()
        assert guard.phase_of('c1') == orchestrator.PHASE_IDLE
        guard.try_acquire('c1')
        assert guard.phase_of('c1') == orchestrator.PHASE_AGGREGATING
        guard.set_phase('c1', orchestrator.PHASE_ANALYZING)
        assert guard.phase_of('c1') == orchestrator.PHASE_ANALYZING
        guard.release('c1')
        assert guard.phase_of('c1') == orchestrator.PHASE_IDLE

    def test_set_phase_ignored_when_not_running(self):
        guard = orchestrator.ClusterRunGuard()
        guard.set_phase('c1', orchestrator.PHASE_ANALYZING)
        assert guard.phase_of('c1') == orchestrator.PHASE_IDLE


class TestRunCycle:
    """Tests for PlanningOrchestrator.run_cycle"""

    def test_cycle_completes(self, planner, repository):
        report = planner.run_cycle('c1')
        assert report['status'] == 'completed'
        assert report['capacity']['status'] == 'updated'
        assert report['profiles']['created'] == ['Auto-4vCPU-8GB-100GB']
        assert report['profiles']['active'] == 1
        assert report['sizing'] is None
        assert report['finished_at']
        assert planner.guard.phase_of('c1') == orchestrator.PHASE_IDLE

        profile = repository.list_profiles('c1')[0]
        assert profile['allocation']['maximum']['count'] == 13

    def test_cycle_with_analysis(self, planner):
        report = planner.run_cycle('c1', analyze=True, hours=24 * 365 * 10)
        assert report['status'] == 'completed'
        assert report['sizing']['summary']['total'] == 4

    def test_overlapping_cycle_is_skipped(self, planner, inventory):
        started = threading.Event()
        proceed = threading.Event()
        original = inventory.list_host_ids

        def slow_list_host_ids(cluster_id):
            started.set()
            proceed.wait(5)
            return original(cluster_id)

        inventory.list_host_ids = slow_list_host_ids
        results = []
        worker = threading.Thread(target=lambda: results.append(planner.run_cycle('c1')))
        worker.start()
        try:
            assert started.wait(5)
            assert planner.guard.phase_of('c1') == orchestrator.PHASE_AGGREGATING
            assert planner.run_cycle('c1')['status'] == 'skipped'
            assert planner.recalculate_capacity('c1')['status'] == 'skipped'
            assert planner.generate_auto_profiles('c1') == []
        finally:
            proceed.set()
            worker.join(5)

        assert results[0]['status'] == 'completed'
        assert planner.guard.phase_of('c1') == orchestrator.PHASE_IDLE

    def test_failure_isolated_per_cluster(self, planner):
        reports = planner.run_clusters(['missing', 'c1'])
        assert reports[0]['status'] == 'failed'
        assert 'not found' in reports[0]['error']
        assert reports[1]['status'] == 'completed'
        assert planner.guard.running() == []


class TestOperations:
    """Tests for the public orchestrator operations"""

    def test_recalculate_capacity_refreshes_profiles(self, planner, repository):
        planner.generate_auto_profiles('c1')
        assert repository.list_profiles('c1')[0]['allocation']['maximum']['count'] == 3

        snapshot = planner.recalculate_capacity('c1')
        assert snapshot['status'] == 'updated'
        assert repository.list_profiles('c1')[0]['allocation']['maximum']['count'] == 13

    def test_capacity_status(self, planner):
        planner.run_cycle('c1')
        status = planner.get_capacity_status('org1')
        assert len(status) == 1
        cluster = status[0]['cluster']
        assert cluster['id'] == 'c1'
        assert cluster['host_count'] == 2
        assert cluster['phase'] == orchestrator.PHASE_IDLE
        assert cluster['utilization']['cpu']['percentage'] == pytest.approx(14 / 64 * 100)
        profiles = status[0]['profiles']
        assert len(profiles) == 1
        assert profiles[0]['available_slots'] == 10
        assert profiles[0]['auto_generated'] is True

    def test_capacity_status_requires_organization(self, planner):
        with pytest.raises(ValidationError):
            planner.get_capacity_status('')

    def test_recommendations(self, inventory, metrics):
        cluster = make_cluster()
        cluster['capacity'] = {
            'total': {'cpu': {'cores': 100, 'mhz': 0}, 'memory': {'mb': 1000}, 'storage': {'gb': 0}},
            'allocated': {'cpu': {'cores': 90, 'mhz': 0}, 'memory': {'mb': 500}, 'storage': {'gb': 0}},
            'available': {'cpu': {'cores': 0, 'mhz': 0}, 'memory': {'mb': 350}, 'storage': {'gb': 0}},
        }
        profiles = [
            {'id': 'p1', 'name': 'Idle', 'cluster_id': 'c1', 'utilization_stats': {'efficiency': 20.0}},
            {'id': 'p2', 'name': 'Busy', 'cluster_id': 'c1', 'utilization_stats': {'efficiency': 80.0}},
        ]
        repository = InMemoryRepository(clusters=[cluster], profiles=profiles)
        planner = orchestrator.PlanningOrchestrator(repository, inventory, metrics)

        recommendations = planner.get_capacity_recommendations('c1')
        actions = [(r['action'], r['priority']) for r in recommendations]
        assert actions == [('scale_out', 'high'), ('rightsize', 'medium')]
        assert recommendations[1]['profile_id'] == 'p1'

    def test_low_utilization_recommendation(self, planner):
        planner.recalculate_capacity('c1')
        actions = [r['action'] for r in planner.get_capacity_recommendations('c1')]
        assert 'optimize' in actions

    def test_unsynced_cluster_gets_no_optimize_hint(self, planner):
        assert planner.get_capacity_recommendations('c1') == []

    def test_recommendations_unknown_cluster(self, planner):
        with pytest.raises(NotFoundError):
            planner.get_capacity_recommendations('nope')


def test_ensure_cluster_registers_and_updates_target():
    repository = InMemoryRepository()
    entry = {'cluster_id': 'c9', 'organization_id': 'org9', 'utilization_target': {'cpu': 99}}
    cluster = orchestrator.ensure_cluster(repository, entry)
    assert cluster['capacity']['total']['cpu']['cores'] == 0
    assert repository.get_cluster('c9')['configuration']['utilization_target'] == {
        'cpu': 95.0, 'memory': 85.0, 'storage': 85.0,
    }

    entry['utilization_target'] = {'cpu': 70, 'memory': 70, 'storage': 60}
    orchestrator.ensure_cluster(repository, entry)
    assert repository.get_cluster('c9')['configuration']['utilization_target']['storage'] == 60.0


def test_main_writes_reports(tmp_path, monkeypatch):
    fixture = {
        'clusters': [{'cluster_id': 'c1', 'organization_id': 'org1',
                      'utilization_target': {'cpu': 85, 'memory': 85}}],
        'hosts': [make_host('h1'), make_host('h2')],
        'vms': [make_vm('vm1'), make_vm('vm2'), make_vm('vm3', 'h2')],
        'samples': make_samples('vm1', [10.0] * 5) + make_samples('vm2', [60.0] * 5),
    }
    fixture_path = tmp_path / 'inventory.yaml'
    fixture_path.write_text(yaml.safe_dump(fixture))
    output_dir = tmp_path / 'output'

    monkeypatch.setattr(orchestrator, 'INVENTORY_SOURCE_URL', None)
    monkeypatch.setattr(orchestrator, 'METRICS_SOURCE_URL', None)
    monkeypatch.setattr(orchestrator, 'INVENTORY_FIXTURE_PATH', str(fixture_path))
    monkeypatch.setattr(orchestrator, 'OUTPUT_DIR', str(output_dir))
    monkeypatch.setattr(config, 'OUTPUT_DIR', str(output_dir))
    monkeypatch.setattr(orchestrator, 'REPOSITORY_PATH', str(output_dir / 'planning_state.json'))
    monkeypatch.setattr(orchestrator, 'ANALYZE_ON_CYCLE', True)
    runs = []
    monkeypatch.setattr(orchestrator, 'append_run', lambda entry: runs.append(entry) or True)

    assert orchestrator.main() == 0

    report = json.loads((output_dir / 'c1_planning_report.json').read_text())
    assert report['status'] == 'completed'
    assert report['capacity']['host_count'] == 2
    assert report['profiles']['created'] == ['Auto-4vCPU-8GB-100GB']
    assert 'recommendations' in report
    assert report['sizing']['summary']['total'] == 3

    state = json.loads((output_dir / 'planning_state.json').read_text())
    assert [c['id'] for c in state['clusters']] == ['c1']
    assert len(state['profiles']) == 1

    assert len(runs) == 1
    assert runs[0]['type'] == 'planning'


def test_main_missing_fixture(tmp_path, monkeypatch):
    monkeypatch.setattr(orchestrator, 'INVENTORY_SOURCE_URL', None)
    monkeypatch.setattr(orchestrator, 'METRICS_SOURCE_URL', None)
    monkeypatch.setattr(orchestrator, 'INVENTORY_FIXTURE_PATH', str(tmp_path / 'absent.yaml'))
    monkeypatch.setattr(orchestrator, 'OUTPUT_DIR', str(tmp_path / 'output'))
    assert orchestrator.main() == 1


def test_main_rejects_invalid_config(monkeypatch):
    def invalid():
        raise config.ConfigValidationError("bad")

    monkeypatch.setattr(orchestrator, 'validate_config', invalid)
    assert orchestrator.main() == 1
