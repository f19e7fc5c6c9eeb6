import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field

ACTIVE_GPU_UTILIZATION_THRESHOLD = 10


class HostDescriptor(BaseModel):
    """Identity and connection parameters for one monitored machine."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = ""
    hostname: str
    port: int = 22
    user: str | None = None
    proxy_jump: str | None = None  # Relay host name, as in ssh -J
    aliases: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return bool(self.hostname.strip()) and 0 < self.port < 65536

    @property
    def display_name(self) -> str:
        return self.name or self.hostname

    @property
    def all_names(self) -> str:
        return ", ".join(n for n in (self.name, *self.aliases) if n)

    @property
    def connection_string(self) -> str:
        result = f"{self.user}@{self.hostname}" if self.user else self.hostname
        if self.port != 22:
            result += f":{self.port}"
        if self.proxy_jump:
            result += f" (via {self.proxy_jump})"
        return result


class GpuReading(BaseModel):
    """One GPU as reported by a single nvidia-smi query row.

    Bounds are enforced on construction, so an out-of-range reading never exists.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    index: int = Field(..., ge=0)
    name: str = Field(..., min_length=1)
    temperature: int = Field(..., ge=0, le=200, alias="temperature.gpu")
    power_draw: float = Field(..., ge=0, le=1000, alias="power.draw")  # Watts
    power_limit: float = Field(..., ge=0, le=1000, alias="power.limit")  # Watts
    memory_used: int = Field(..., ge=0, alias="memory.used")  # MiB
    memory_total: int = Field(..., gt=0, alias="memory.total")  # MiB
    gpu_utilization: int = Field(..., ge=0, le=100, alias="utilization.gpu")
    memory_utilization: int = Field(..., ge=0, le=100, alias="utilization.memory")

    @computed_field
    @property
    def memory_usage_percent(self) -> float:
        return self.memory_used / self.memory_total * 100

    @computed_field
    @property
    def power_usage_percent(self) -> float:
        if self.power_limit <= 0:
            return 0.0
        return self.power_draw / self.power_limit * 100

    @property
    def formatted_memory_usage(self) -> str:
        return f"{self.memory_used / 1024:.1f} / {self.memory_total / 1024:.1f} GB"


class HostStatus(BaseModel):
    """Last-known state of a single monitored host."""

    host: HostDescriptor
    gpus: list[GpuReading] = Field(default_factory=list)
    is_connected: bool = False
    last_update: datetime = Field(default_factory=datetime.now)
    error_message: str | None = None

    @computed_field
    @property
    def has_gpus(self) -> bool:
        return bool(self.gpus)

    @computed_field
    @property
    def active_gpu_count(self) -> int:
        return sum(1 for gpu in self.gpus if gpu.gpu_utilization > ACTIVE_GPU_UTILIZATION_THRESHOLD)

    @computed_field
    @property
    def average_utilization(self) -> float:
        if not self.gpus:
            return 0.0
        return sum(gpu.gpu_utilization for gpu in self.gpus) / len(self.gpus)

    @computed_field
    @property
    def max_temperature(self) -> int:
        return max((gpu.temperature for gpu in self.gpus), default=0)


class MonitorSnapshot(BaseModel):
    """Point-in-time view of the engine handed to observers."""

    is_running: bool
    interval_sec: float
    last_cycle_at: datetime | None = None
    hosts: list[HostStatus]


class MonitorEvent(BaseModel):
    """Change notification pushed to every subscriber queue."""

    kind: Literal["host_updated", "cycle_completed", "hosts_changed", "state_changed"]
    host_id: str | None = None
    snapshot: MonitorSnapshot
