import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime

from . import parsers
from .models import GpuReading, HostDescriptor, HostStatus, MonitorEvent, MonitorSnapshot
from .scheduler import Ticker
from .ssh_utils import ExecutorError, RemoteExecutor
from .store import HostStatusStore

logger = logging.getLogger(__name__)

# --- Constants for Commands ---
NVIDIA_SMI_GPU_QUERY_CMD = (
    "nvidia-smi --query-gpu=index,name,temperature.gpu,power.draw,power.limit,"
    "memory.used,memory.total,utilization.gpu,utilization.memory --format=csv,noheader,nounits"
)
DEFAULT_REFRESH_INTERVAL = 5.0
SUBSCRIBER_QUEUE_SIZE = 100


class MonitoringEngine:
    """Polls every monitored host on a fixed cadence and keeps their GPU status.

    The engine is either stopped (initial) or running. While running, a ticker
    triggers a poll cycle every ``interval`` seconds. A cycle runs the GPU query
    on all hosts concurrently and reconciles each result into that host's record.
    Cycles never overlap: explicit refreshes queue behind a running cycle and
    scheduled ticks that find one running are skipped.

    Observers get copies through ``snapshot()`` or subscribe to a queue of
    ``MonitorEvent`` notifications.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        interval: float = DEFAULT_REFRESH_INTERVAL,
        command: str = NVIDIA_SMI_GPU_QUERY_CMD,
    ):
        self.executor = executor
        self.command = command
        self.store = HostStatusStore()
        self.ticker = Ticker(self._scheduled_cycle, interval, name="gpu-poll")
        self.last_cycle_at: datetime | None = None
        self._cycle_lock = asyncio.Lock()
        self._subscribers: set[asyncio.Queue] = set()

    # --- State ---

    @property
    def is_running(self) -> bool:
        return self.ticker.running

    @property
    def interval(self) -> float:
        return self.ticker.interval

    def set_hosts(self, hosts: Iterable[HostDescriptor]) -> None:
        """Replace the monitored hosts. Starts monitoring if there is something to watch."""
        hosts = list(hosts)
        valid_hosts = [host for host in hosts if host.is_valid]
        if len(valid_hosts) != len(hosts):
            logger.warning("Ignoring %d invalid host descriptor(s).", len(hosts) - len(valid_hosts))

        self.store.replace(valid_hosts)
        logger.info("Monitoring %d host(s): %s", len(valid_hosts), [h.display_name for h in valid_hosts])
        self._publish("hosts_changed")

        if valid_hosts and not self.is_running:
            self.start()

    def start(self) -> None:
        if self.is_running:
            logger.warning("Monitoring already running, ignoring start.")
            return
        if not len(self.store):
            logger.warning("No hosts to monitor, not starting.")
            return

        logger.info("Starting monitoring of %d host(s), interval %s seconds.", len(self.store), self.interval)
        self.ticker.start()
        self._publish("state_changed")
        # First observation should not wait a full interval
        self.ticker.fire()

    def stop(self) -> None:
        if not self.is_running:
            logger.debug("Monitoring not running, ignoring stop.")
            return
        logger.info("Stopping monitoring.")
        self.ticker.stop()
        self._publish("state_changed")

    def set_interval(self, seconds: float) -> None:
        self.ticker.reschedule(seconds)
        logger.info("Update interval set to %s seconds.", seconds)
        self._publish("state_changed")

    def set_connect_timeout(self, seconds: float) -> None:
        if seconds <= 0:
            raise ValueError(f"connect timeout must be positive, got {seconds}")
        self.executor.connect_timeout = seconds
        logger.info("Connection timeout set to %s seconds.", seconds)

    async def aclose(self) -> None:
        """Stop scheduling and let an in-flight cycle finish."""
        self.stop()
        await self.ticker.drain()
        async with self._cycle_lock:
            pass

    # --- Polling ---

    async def refresh_one(self, host: HostDescriptor) -> bool:
        """Poll a single host now, whether or not the engine is running.

        Returns False if the host is not monitored.
        """
        if not self.store.records_for(host.id):
            logger.warning("Refresh requested for unmonitored host %s.", host.display_name)
            return False

        logger.info("Refreshing host %s", host.display_name)
        async with self._cycle_lock:
            # The host set may have been replaced while waiting for the lock
            records = self.store.records_for(host.id)
            if records:
                await self._poll_records(host, records)
        return True

    async def refresh_all(self) -> None:
        """Run a full poll cycle now, whether or not the engine is running."""
        logger.info("Refreshing all hosts")
        await self._run_cycle()

    async def _scheduled_cycle(self) -> None:
        await self._run_cycle()

    async def _run_cycle(self) -> None:
        async with self._cycle_lock:
            records = self.store.records()
            if not records:
                logger.info("No hosts to poll, skipping cycle.")
                return

            logger.info("Polling %d host(s)", len(records))
            tasks = [self._poll_records(record.host, [record]) for record in records]
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for record, result in zip(records, results):
                if isinstance(result, Exception):
                    logger.error("Poll task for %s failed", record.host.display_name, exc_info=result)

            self.last_cycle_at = datetime.now()
            logger.info("Poll cycle completed for %d host(s).", len(records))
            self._publish("cycle_completed")

    async def fetch_gpu_readings(self, host: HostDescriptor) -> list[GpuReading]:
        """Run the GPU query on ``host`` and parse its output."""
        raw_output = await self.executor.execute(self.command, host)
        return parsers.parse_gpu_readings(raw_output)

    async def _poll_records(self, host: HostDescriptor, records: list[HostStatus]) -> None:
        error_message = None
        gpus: list[GpuReading] = []
        try:
            gpus = await self.fetch_gpu_readings(host)
        except (ExecutorError, parsers.UnreadableOutputError) as e:
            logger.warning("Failed to update host %s: %s", host.display_name, e)
            error_message = str(e)
        except Exception as e:
            logger.exception("Unexpected error polling host %s", host.display_name)
            error_message = f"Task execution failed: {e}"

        for record in records:
            if error_message is None:
                changed = self.store.reconcile_success(record, gpus)
            else:
                changed = self.store.reconcile_failure(record, error_message)
            if changed:
                self._publish("host_updated", host_id=host.id)

    # --- Observers ---

    def snapshot(self) -> MonitorSnapshot:
        return MonitorSnapshot(
            is_running=self.is_running,
            interval_sec=self.interval,
            last_cycle_at=self.last_cycle_at,
            hosts=self.store.snapshot(),
        )

    def subscribe(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.add(queue)
        logger.info("Subscriber added. Total subscribers: %d", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)
            logger.info("Subscriber removed. Total subscribers: %d", len(self._subscribers))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _publish(self, kind: str, host_id: str | None = None) -> None:
        if not self._subscribers:
            return
        event = MonitorEvent(kind=kind, host_id=host_id, snapshot=self.snapshot())
        # Iterate over a copy of the set in case it's modified during iteration
        for queue in list(self._subscribers):
            if queue.full():
                # Slow reader: drop its oldest event
                queue.get_nowait()
            queue.put_nowait(event)
