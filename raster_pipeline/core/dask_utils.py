"""
Dask execution settings for chunked temporal reductions.

Temporal reductions build dask-backed xarray stacks when compute.chunk_size
is set and run them on dask's threaded scheduler. With compute.distributed
enabled, the pipeline opens a LocalCluster for the loading and compositing
steps; while its client is alive dask schedules the reductions on it.

Author: Diego Bengochea
"""

import gc
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import psutil
from dask.distributed import Client, LocalCluster

from shared_utils import get_config_value, get_logger


class DaskClusterManager:
    """
    Optional local Dask cluster sized from the ``compute`` section.

    Keys: distributed (bool), num_workers, threads_per_worker and
    memory_limit (per worker, dask syntax such as '4GB').
    """

    def __init__(self, config: Dict[str, Any]):
        self.logger = get_logger('dask')

        self.enabled = bool(get_config_value(config, 'compute.distributed', False))
        self.memory_per_worker_gb = float(get_config_value(config, 'compute.memory_per_worker_gb', 4.0))
        self.num_workers = int(get_config_value(config, 'compute.num_workers') or
                               self.recommended_workers(self.memory_per_worker_gb))
        self.threads_per_worker = int(get_config_value(config, 'compute.threads_per_worker', 1))
        self.memory_limit = get_config_value(config, 'compute.memory_limit', 'auto')

    @staticmethod
    def recommended_workers(memory_per_worker_gb: float = 4.0) -> int:
        """Physical cores, capped by how many workers fit in available memory."""
        cores = psutil.cpu_count(logical=False) or 1
        available_gb = psutil.virtual_memory().available / 1024 ** 3
        return max(1, min(cores, int(available_gb // memory_per_worker_gb)))

    @contextmanager
    def cluster(self) -> Iterator[Optional[Client]]:
        """
        Run the enclosed block on a LocalCluster when distributed is enabled.

        Yields:
            Client connected to the cluster, or None when disabled

        Examples:
            >>> with DaskClusterManager(config).cluster():
            ...     composite = reduce_collection(collection, 'median', chunk_size=512)
        """
        if not self.enabled:
            yield None
            return

        self.logger.info(f"Starting LocalCluster: {self.num_workers} workers x {self.threads_per_worker} threads, "
                         f"memory limit {self.memory_limit}")
        cluster = LocalCluster(
            n_workers=self.num_workers,
            threads_per_worker=self.threads_per_worker,
            memory_limit=self.memory_limit,
        )
        try:
            with Client(cluster) as client:
                self.logger.info(f"Dask dashboard: {client.dashboard_link}")
                yield client
        finally:
            cluster.close()
            gc.collect()
            self.logger.info("LocalCluster closed")


def log_memory_usage(logger, label: Optional[str] = None) -> float:
    """Log and return the system memory usage percentage."""
    usage = psutil.virtual_memory().percent
    logger.debug(f"Memory usage{f' ({label})' if label else ''}: {usage:.1f}%")
    return usage
