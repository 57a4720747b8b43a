"""
Test fixtures and configuration for pytest
"""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from inventory.repository import InMemoryRepository
from inventory.sources import InMemoryInventory, InMemoryMetrics

NOW = 1_760_000_000.0
GIB = 1024 ** 3


def make_host(host_id, cluster_id='c1', cores=32, mhz=64000, memory_mb=262144,
              datastore_gb=(1000,), connection_state='connected', power_state='poweredOn',
              maintenance_mode=False):
    return {
        'id': host_id,
        'name': f'{host_id}.lab.local',
        'cluster_id': cluster_id,
        'capacity': {
            'cpu': {'cores': cores, 'mhz': mhz},
            'memory': {'mb': memory_mb},
            'storage': {'datastores': [
                {'name': f'ds{i}', 'capacity_bytes': gb * GIB} for i, gb in enumerate(datastore_gb)
            ]},
        },
        'utilization': {'cpu': 40, 'memory': 55, 'storage': 30},
        'connection_state': connection_state,
        'power_state': power_state,
        'maintenance_mode': maintenance_mode,
        'is_active': True,
    }


def make_vm(vm_id, host_id='h1', cores=4, memory_mb=8192, storage_kb=100 * 1024 * 1024,
            reserved_mhz=0, status='active', organization_id='org1'):
    return {
        'id': vm_id,
        'name': f'vdi-{vm_id}',
        'organization_id': organization_id,
        'esxi_host': f'{host_id}.lab.local',
        'status': status,
        'resource_allocation': {
            'cpu': {'cores': cores, 'reserved_mhz': reserved_mhz},
            'memory': {'allocated_mb': memory_mb, 'reservation_mb': 0},
            'storage': {'allocated_kb': storage_kb},
            'gpu': {'allocated': 0, 'type': 'None'},
        },
    }


def make_samples(vm_id, cpu_values, memory_values=None, storage_value=40.0,
                 end_ts=NOW, step_seconds=600):
    """Samples ending at end_ts, oldest first."""
    if memory_values is None:
        memory_values = [50.0] * len(cpu_values)
    n = len(cpu_values)
    return [
        {
            'vm_id': vm_id,
            'timestamp': end_ts - (n - 1 - i) * step_seconds,
            'cpu': cpu,
            'memory': mem,
            'storage': storage_value,
        }
        for i, (cpu, mem) in enumerate(zip(cpu_values, memory_values))
    ]


def make_cluster(cluster_id='c1', organization_id='org1', target=None):
    return {
        'id': cluster_id,
        'name': f'Cluster {cluster_id}',
        'organization_id': organization_id,
        'is_active': True,
        'configuration': {'utilization_target': target or {'cpu': 85, 'memory': 85}},
        'capacity': None,
        'host_count': 0,
        'last_sync': None,
    }


@pytest.fixture
def repository():
    return InMemoryRepository(clusters=[make_cluster()])


@pytest.fixture
def inventory():
    hosts = [make_host('h1'), make_host('h2')]
    vms = [
        make_vm('vm1', 'h1'),
        make_vm('vm2', 'h1'),
        make_vm('vm3', 'h2'),
        make_vm('vm4', 'h2', cores=2, memory_mb=4096),
        make_vm('vm5', 'h2', status='inactive'),
    ]
    return InMemoryInventory(hosts, vms)


@pytest.fixture
def metrics():
    samples = []
    samples += make_samples('vm1', [5.0] * 20, [20.0] * 20)
    samples += make_samples('vm2', [50.0] * 20, [60.0] * 20)
    samples += make_samples('vm3', [90.0] * 20, [95.0] * 20)
    return InMemoryMetrics(samples)
