import logging
import re
from typing import Any

from pydantic import ValidationError

from .models import GpuReading

logger = logging.getLogger(__name__)

# Column order of the nvidia-smi GPU query, see monitor.NVIDIA_SMI_GPU_QUERY_CMD
GPU_QUERY_KEYS = [
    "index",
    "name",
    "temperature.gpu",
    "power.draw",
    "power.limit",
    "memory.used",
    "memory.total",
    "utilization.gpu",
    "utilization.memory",
]
FLOAT_KEYS = {"power.draw", "power.limit"}
STRING_KEYS = {"name"}

# Plain ASCII numerals, no digit separators
INT_RE = re.compile(r"[+-]?[0-9]+")
FLOAT_RE = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


class UnreadableOutputError(ValueError):
    """Raised when raw command output cannot be decoded as text."""


def decode_output(raw: str | bytes) -> str:
    """Return command output as text, decoding bytes as UTF-8."""
    if isinstance(raw, str):
        return raw
    try:
        return bytes(raw).decode("utf-8")
    except (UnicodeDecodeError, TypeError) as e:
        raise UnreadableOutputError(f"Unreadable output: {e}") from e


def _to_int(value: str) -> int:
    if not INT_RE.fullmatch(value):
        raise ValueError(f"not an integer: {value!r}")
    return int(value)


def _to_float(value: str) -> float:
    if not FLOAT_RE.fullmatch(value):
        raise ValueError(f"not a number: {value!r}")
    return float(value)


def parse_nvidia_smi_csv(csv_output: str, expected_keys: list[str]) -> list[dict[str, Any]]:
    """Parse the CSV output of `nvidia-smi ... --format=csv,noheader,nounits`.

    Rows with too few columns or a column that does not convert are dropped.
    Columns beyond ``expected_keys`` are ignored.
    """
    items = []
    num_expected_keys = len(expected_keys)

    for i, line in enumerate(csv_output.splitlines()):
        if not line.strip():
            continue
        values = [v.strip() for v in line.split(",")]
        if len(values) < num_expected_keys:
            logger.debug(
                "Skipping malformed nvidia-smi line %d: %r. Expected %d values, got %d",
                i + 1,
                line,
                num_expected_keys,
                len(values),
            )
            continue
        try:
            item_data = {}
            for key, value in zip(expected_keys, values):
                if key in FLOAT_KEYS:
                    item_data[key] = _to_float(value)
                elif key in STRING_KEYS:
                    item_data[key] = value
                else:
                    item_data[key] = _to_int(value)
        except ValueError:
            logger.debug("Skipping nvidia-smi line %d with unparsable value: %r", i + 1, line)
            continue
        items.append(item_data)
    return items


def parse_gpu_readings(raw_output: str | bytes) -> list[GpuReading]:
    """Turn raw GPU query output into readings sorted by index.

    Only undecodable input is an error; bad rows are silently dropped.
    Duplicate indices are kept as reported.
    """
    text = decode_output(raw_output)

    readings = []
    for gpu_data in parse_nvidia_smi_csv(text, GPU_QUERY_KEYS):
        try:
            readings.append(GpuReading(**gpu_data))
        except ValidationError as e:
            logger.debug("Dropping out-of-range GPU reading %s: %s", gpu_data.get("index", "N/A"), e)

    readings.sort(key=lambda gpu: gpu.index)
    return readings
