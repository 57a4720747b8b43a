"""
Persistence port for derived planning records (clusters and allocation profiles).

Every write replaces a whole document under the repository lock, so readers
see either the previous or the new version of a record, never a mix. There is
no multi-document transaction: cluster capacity and profile counts may briefly
disagree until the next planning cycle.
"""
import copy
import json
import logging
import os
import threading
import uuid
from typing import Any, Dict, List, Optional, Set

from tracker import atomic_write

logger = logging.getLogger(__name__)


class InMemoryRepository:
    """Clusters and profiles held in memory; records are copied in and out."""

    def __init__(self, clusters: Optional[List[Dict[str, Any]]] = None,
                 profiles: Optional[List[Dict[str, Any]]] = None):
        self._lock = threading.Lock()
        self._clusters: Dict[str, Dict[str, Any]] = {}
        self._profiles: Dict[str, Dict[str, Any]] = {}
        for c in clusters or []:
            self._clusters[c['id']] = copy.deepcopy(c)
        for p in profiles or []:
            pid = p.get('id') or uuid.uuid4().hex
            self._profiles[pid] = dict(copy.deepcopy(p), id=pid)

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the lock held."""
        pass

    # -------------------------------------------------------------------------
    # Clusters
    # -------------------------------------------------------------------------
    def get_cluster(self, cluster_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            c = self._clusters.get(cluster_id)
            return copy.deepcopy(c) if c is not None else None

    def list_clusters(self, organization_id: Optional[str] = None,
                      active_only: bool = True) -> List[Dict[str, Any]]:
        with self._lock:
            result = []
            for c in self._clusters.values():
                if organization_id is not None and c.get('organization_id') != organization_id:
                    continue
                if active_only and not c.get('is_active', True):
                    continue
                result.append(copy.deepcopy(c))
            return result

    def save_cluster(self, cluster: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._clusters[cluster['id']] = copy.deepcopy(cluster)
            self._persist()
        return cluster

    # -------------------------------------------------------------------------
    # Profiles
    # -------------------------------------------------------------------------
    def get_profile(self, profile_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            p = self._profiles.get(profile_id)
            return copy.deepcopy(p) if p is not None else None

    def list_profiles(self, cluster_id: Optional[str] = None,
                      active_only: bool = True) -> List[Dict[str, Any]]:
        with self._lock:
            result = []
            for p in self._profiles.values():
                if cluster_id is not None and p.get('cluster_id') != cluster_id:
                    continue
                if active_only and not p.get('is_active', True):
                    continue
                result.append(copy.deepcopy(p))
            return result

    def find_profile(self, cluster_id: str, cores: int, memory_mb: int,
                     storage_gb: Optional[int] = None,
                     exclude_ids: Optional[Set[str]] = None) -> Optional[Dict[str, Any]]:
        """Active profile in the cluster matching (cpu cores, memory MB),
        narrowed to one storage bucket when storage_gb is given."""
        for p in self.list_profiles(cluster_id):
            if exclude_ids and p['id'] in exclude_ids:
                continue
            specs = p.get('resource_specs', {})
            if specs.get('cpu', {}).get('cores') != cores or specs.get('memory', {}).get('mb') != memory_mb:
                continue
            if storage_gb is not None and specs.get('storage', {}).get('gb') != storage_gb:
                continue
            return p
        return None

    def find_profile_by_name(self, cluster_id: str, name: str) -> Optional[Dict[str, Any]]:
        for p in self.list_profiles(cluster_id):
            if p.get('name') == name:
                return p
        return None

    def save_profile(self, profile: Dict[str, Any]) -> Dict[str, Any]:
        if not profile.get('id'):
            profile['id'] = uuid.uuid4().hex
        with self._lock:
            self._profiles[profile['id']] = copy.deepcopy(profile)
            self._persist()
        return profile

    def delete_profile(self, profile_id: str) -> bool:
        with self._lock:
            removed = self._profiles.pop(profile_id, None) is not None
            if removed:
                self._persist()
            return removed


class JsonFileRepository(InMemoryRepository):
    """InMemoryRepository persisted to a JSON file after every write."""

    def __init__(self, path: str):
        self.path = path
        clusters, profiles = [], []
        if os.path.exists(path):
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            clusters = data.get('clusters', [])
            profiles = data.get('profiles', [])
            logger.info(f"Loaded {len(clusters)} clusters and {len(profiles)} profiles from {path}")
        super().__init__(clusters, profiles)

    def _persist(self) -> None:
        data = {
            'clusters': list(self._clusters.values()),
            'profiles': list(self._profiles.values()),
        }
        atomic_write(self.path, json.dumps(data, indent=2, default=str))
