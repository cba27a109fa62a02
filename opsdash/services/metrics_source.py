"""
opsdash.services.metrics_source — Host & Cluster Sampling
==========================================================

``sample()`` produces one :class:`MetricSnapshot`:

* **host** — CPU, memory, disk, network throughput, uptime and platform
  metadata read with ``psutil`` (on a worker thread; ``psutil`` blocks);
* **cluster** — pod / node / deployment counts from the Kubernetes API when
  credentials are available (in-cluster service account, or ``KUBE_API_URL``
  + ``KUBE_TOKEN``).  Each count is fetched independently; a failed read
  leaves ``None`` in place and an entry in ``errors``.

Sampling never raises.  If the host read itself fails the snapshot is all
zeros with ``errors["host"]`` describing why.

The most recent snapshots are kept in a small ring (``METRICS_HISTORY``) for
the history endpoint; nothing is persisted.
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import socket
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx
import psutil

from opsdash.clock import monotonic, utcnow
from opsdash.config import DashboardConfig

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
CONTROL_PLANE_TIMEOUT_SECONDS = 3.0
_GB = 1024 ** 3

# field name → (path template, namespaced path template)
_CLUSTER_QUERIES: dict[str, tuple[str, str]] = {
    "pods": ("/api/v1/pods", "/api/v1/namespaces/{ns}/pods"),
    "nodes": ("/api/v1/nodes", "/api/v1/nodes"),
    "deployments": ("/apis/apps/v1/deployments", "/apis/apps/v1/namespaces/{ns}/deployments"),
}


@dataclass(frozen=True, slots=True)
class MetricSnapshot:
    """Immutable sample.  ``sequence`` increases by one per sample."""
    sequence: int
    sampled_at: datetime
    host: dict[str, Any]
    cluster: dict[str, Any] | None = None
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        body = {
            "sequence": self.sequence,
            "timestamp": self.sampled_at.isoformat(),
            **self.host,
            "cluster": self.cluster,
        }
        if self.errors:
            body["errors"] = dict(self.errors)
        return body


def zero_host() -> dict[str, Any]:
    return {
        "cpu": 0.0,
        "memory": 0.0,
        "disk": 0.0,
        "network": 0.0,
        "uptime": 0,
        "platform": "unknown",
        "hostname": "unknown",
        "cpu_count": 0,
        "load_average": [0.0, 0.0, 0.0],
        "total_memory_gb": 0.0,
        "free_memory_gb": 0.0,
        "process_uptime": 0,
        "python_version": platform.python_version(),
    }


def system_info() -> dict[str, Any]:
    """Static-ish platform/runtime description (``/api/system``, ``/health``)."""
    try:
        load = list(os.getloadavg())
    except (AttributeError, OSError):
        load = [0.0, 0.0, 0.0]
    vm = psutil.virtual_memory()
    return {
        "platform": platform.system().lower(),
        "arch": platform.machine(),
        "python_version": platform.python_version(),
        "hostname": socket.gethostname(),
        "uptime": int(utcnow().timestamp() - psutil.boot_time()),
        "loadavg": load,
        "totalmem": vm.total,
        "freemem": vm.available,
        "cpus": psutil.cpu_count() or 0,
    }


# ---------------------------------------------------------------------------
# Control-plane credentials
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ControlPlaneCredentials:
    api_url: str
    token: str
    ca_file: str | None = None
    namespace: str | None = None

    @classmethod
    def discover(cls, cfg: DashboardConfig) -> ControlPlaneCredentials | None:
        """Explicit config first, then the in-cluster service account."""
        if cfg.kube_api_url and cfg.kube_token:
            return cls(cfg.kube_api_url.rstrip("/"), cfg.kube_token,
                       cfg.kube_ca_file, cfg.kube_namespace)

        host = os.getenv("KUBERNETES_SERVICE_HOST")
        token_file = SERVICE_ACCOUNT_DIR / "token"
        if not host or not token_file.exists():
            return None
        port = os.getenv("KUBERNETES_SERVICE_PORT", "443")
        ca_file = SERVICE_ACCOUNT_DIR / "ca.crt"
        return cls(
            api_url=f"https://{host}:{port}",
            token=token_file.read_text(encoding="utf-8").strip(),
            ca_file=str(ca_file) if ca_file.exists() else None,
            namespace=cfg.kube_namespace,
        )


class MetricsSource:
    """Samples host state (and optionally cluster state) on demand."""

    def __init__(
        self,
        *,
        history: int = 60,
        control_plane: ControlPlaneCredentials | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._history: deque[MetricSnapshot] = deque(maxlen=history)
        self._history_lock = threading.Lock()
        self._sequence = 0
        self._control_plane = control_plane
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._started = monotonic()
        self._last_net: tuple[float, int] | None = None

    @classmethod
    def from_config(cls, cfg: DashboardConfig) -> MetricsSource:
        creds = ControlPlaneCredentials.discover(cfg)
        if creds:
            logger.info("Cluster metrics enabled → %s", creds.api_url)
        return cls(history=cfg.metrics_history, control_plane=creds)

    # ------------------------------------------------------------------
    # Host
    # ------------------------------------------------------------------
    def _network_rate(self) -> float:
        """Bytes/second across all interfaces since the previous sample."""
        counters = psutil.net_io_counters()
        total = counters.bytes_sent + counters.bytes_recv
        now = monotonic()
        previous, self._last_net = self._last_net, (now, total)
        if previous is None or now <= previous[0]:
            return 0.0
        return max(0.0, (total - previous[1]) / (now - previous[0]))

    def read_host(self) -> dict[str, Any]:
        vm = psutil.virtual_memory()
        try:
            load = [round(v, 2) for v in os.getloadavg()]
        except (AttributeError, OSError):
            load = [0.0, 0.0, 0.0]
        return {
            "cpu": psutil.cpu_percent(interval=None),
            "memory": vm.percent,
            "disk": psutil.disk_usage("/").percent,
            "network": round(self._network_rate(), 1),
            "uptime": int(utcnow().timestamp() - psutil.boot_time()),
            "platform": platform.system().lower(),
            "hostname": socket.gethostname(),
            "cpu_count": psutil.cpu_count() or 0,
            "load_average": load,
            "total_memory_gb": round(vm.total / _GB, 2),
            "free_memory_gb": round(vm.available / _GB, 2),
            "process_uptime": int(monotonic() - self._started),
            "python_version": platform.python_version(),
        }

    # ------------------------------------------------------------------
    # Cluster
    # ------------------------------------------------------------------
    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            creds = self._control_plane
            verify: Any = creds.ca_file if creds and creds.ca_file else True
            self._client = httpx.AsyncClient(
                base_url=creds.api_url if creds else "",
                headers={"Authorization": f"Bearer {creds.token}"} if creds else {},
                timeout=CONTROL_PLANE_TIMEOUT_SECONDS,
                verify=verify,
                transport=self._transport,
            )
        return self._client

    async def _count(self, name: str) -> int:
        cluster_path, ns_path = _CLUSTER_QUERIES[name]
        ns = self._control_plane.namespace if self._control_plane else None
        path = ns_path.format(ns=ns) if ns else cluster_path
        resp = await self._get_client().get(path, params={"limit": 500})
        resp.raise_for_status()
        body = resp.json()
        count = len(body.get("items") or [])
        remaining = (body.get("metadata") or {}).get("remainingItemCount")
        return count + int(remaining or 0)

    async def read_cluster(self) -> tuple[dict[str, Any], dict[str, str]]:
        names = list(_CLUSTER_QUERIES)
        results = await asyncio.gather(
            *(self._count(n) for n in names), return_exceptions=True
        )
        cluster: dict[str, Any] = {}
        errors: dict[str, str] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                cluster[name] = None
                errors[name] = f"{type(result).__name__}: {result}"
            else:
                cluster[name] = result
        return cluster, errors

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def sample(self) -> MetricSnapshot:
        errors: dict[str, str] = {}
        try:
            host = await asyncio.to_thread(self.read_host)
        except Exception as exc:
            logger.exception("Host metrics sampling failed")
            host = zero_host()
            errors["host"] = f"{type(exc).__name__}: {exc}"

        cluster = None
        if self._control_plane is not None:
            cluster, cluster_errors = await self.read_cluster()
            errors.update(cluster_errors)

        self._sequence += 1
        snapshot = MetricSnapshot(
            sequence=self._sequence,
            sampled_at=utcnow(),
            host=host,
            cluster=cluster,
            errors=errors,
        )
        with self._history_lock:
            self._history.append(snapshot)
        return snapshot

    def latest(self) -> MetricSnapshot | None:
        with self._history_lock:
            return self._history[-1] if self._history else None

    def recent(self, limit: int | None = None) -> list[MetricSnapshot]:
        with self._history_lock:
            items = list(self._history)
        if limit:
            items = items[-limit:]
        return items

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
