import logging
import threading
from collections.abc import Iterable
from datetime import datetime

from .models import GpuReading, HostDescriptor, HostStatus

logger = logging.getLogger(__name__)


class HostStatusStore:
    """Holds one HostStatus record per monitored host.

    Every write goes through a single lock so a record is never seen half-updated.
    Callers outside the engine should only use ``snapshot()``.
    """

    def __init__(self):
        self._records: list[HostStatus] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def replace(self, hosts: Iterable[HostDescriptor]) -> list[HostStatus]:
        """Drop every record and start fresh ones for ``hosts``."""
        records = [HostStatus(host=host) for host in hosts]
        with self._lock:
            self._records = records
        return list(records)

    def records(self) -> list[HostStatus]:
        with self._lock:
            return list(self._records)

    def records_for(self, host_id: str) -> list[HostStatus]:
        with self._lock:
            return [record for record in self._records if record.host.id == host_id]

    def _is_tracked(self, record: HostStatus) -> bool:
        return any(record is tracked for tracked in self._records)

    def reconcile_success(self, record: HostStatus, gpus: list[GpuReading], when: datetime | None = None) -> bool:
        """Store fresh readings. Returns True if anything visible changed."""
        with self._lock:
            if not self._is_tracked(record):
                logger.debug("Ignoring result for %s, host is no longer monitored.", record.host.display_name)
                return False
            changed = record.gpus != gpus or not record.is_connected or record.error_message is not None
            record.gpus = list(gpus)
            record.is_connected = True
            record.error_message = None
            record.last_update = when or datetime.now()
        return changed

    def reconcile_failure(self, record: HostStatus, message: str, when: datetime | None = None) -> bool:
        """Record a failed poll. Previous readings are discarded, not kept as stale."""
        with self._lock:
            if not self._is_tracked(record):
                logger.debug("Ignoring failure for %s, host is no longer monitored.", record.host.display_name)
                return False
            changed = bool(record.gpus) or record.is_connected or record.error_message != message
            record.gpus = []
            record.is_connected = False
            record.error_message = message
            record.last_update = when or datetime.now()
        return changed

    def snapshot(self) -> list[HostStatus]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._records]
