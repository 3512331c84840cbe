"""Host capability probe and parallelism recommendations."""

import os
import platform

import psutil
from loguru import logger

from .models import AudioProcessingConfig, SystemCapabilities

log = logger.bind(stage="capabilities")

FALLBACK_CPU_CORES = 4

OPERATION_BATCH = "batch_conversion"
OPERATION_MERGE = "merge"


def detect() -> SystemCapabilities:
    """Read the host core count and memory.

    Never raises: on probe failure returns a conservative fallback
    (4 cores, ``is_fallback=True`` so the default parallelism is 1).
    """
    try:
        cores = psutil.cpu_count(logical=True) or os.cpu_count()
        if not cores or cores < 1:
            raise ValueError(f"unusable core count: {cores!r}")
        memory_mb = psutil.virtual_memory().total // (1024 * 1024)
    except Exception as e:
        log.warning(f"Capability probe failed, using fallback: {e}")
        return SystemCapabilities(
            cpu_cores=FALLBACK_CPU_CORES,
            platform=platform.system(),
            is_fallback=True,
        )

    caps = SystemCapabilities(
        cpu_cores=int(cores),
        total_memory_mb=int(memory_mb),
        platform=platform.system(),
    )
    log.debug(
        f"Detected capabilities: cores={caps.cpu_cores} "
        f"memory={caps.total_memory_mb}MB platform={caps.platform}"
    )
    return caps


def recommend_parallel_jobs(
    caps: SystemCapabilities,
    operation: str = OPERATION_BATCH,
    file_count: int | None = None,
) -> int:
    """Recommend a parallel job count for an operation.

    Starts from the core-based default, scales down on low memory, never
    exceeds the number of files, and uses a single job for merges (one
    output file).
    """
    jobs = caps.default_parallel_jobs

    if caps.total_memory_mb:
        memory_gb = caps.total_memory_mb / 1024
        if memory_gb < 4:
            jobs = round(jobs * 0.5)
        elif memory_gb < 8:
            jobs = round(jobs * 0.75)

    if operation == OPERATION_MERGE:
        jobs = 1

    if file_count:
        jobs = min(jobs, file_count)

    return max(1, min(jobs, caps.max_parallel_jobs))


def optimal_config(
    caps: SystemCapabilities,
    operation: str = OPERATION_BATCH,
    file_count: int | None = None,
    preferences: AudioProcessingConfig | None = None,
) -> AudioProcessingConfig:
    """Build a config from the recommendation, honouring user preferences.

    A preference with ``parallel_jobs > 0`` wins over the recommendation but
    is still clamped to the host maximum.
    """
    jobs = recommend_parallel_jobs(caps, operation, file_count)
    if preferences is None:
        config = AudioProcessingConfig(parallel_jobs=jobs)
    else:
        chosen = preferences.parallel_jobs if preferences.parallel_jobs > 0 else jobs
        config = AudioProcessingConfig(
            parallel_jobs=chosen,
            bitrate=preferences.bitrate,
            preserve_original_bitrate=preferences.preserve_original_bitrate,
            channels=preferences.channels,
            output_dir=preferences.output_dir,
        )
    config = config.clamped(caps.max_parallel_jobs)
    log.debug(
        f"Optimal config for {operation}: {config.parallel_jobs} parallel jobs, "
        f"bitrate={config.bitrate or 'auto'}"
    )
    return config


def recommendations(caps: SystemCapabilities) -> list[str]:
    """Human-readable tuning hints for the detected host."""
    hints: list[str] = []
    if caps.is_fallback:
        hints.append(
            "Hardware detection failed; running one conversion at a time."
        )
    elif caps.cpu_cores >= 8:
        hints.append(
            f"{caps.cpu_cores} CPU cores detected: 3-4 parallel conversions are safe."
        )
    elif caps.cpu_cores >= 4:
        hints.append(
            f"{caps.cpu_cores} CPU cores detected: 2 parallel conversions recommended."
        )
    else:
        hints.append(
            f"{caps.cpu_cores} CPU cores detected: convert one file at a time."
        )

    if caps.total_memory_mb and caps.total_memory_mb < 4096:
        hints.append(
            f"Low memory ({caps.total_memory_mb}MB): use 1-2 parallel conversions only."
        )
    elif caps.total_memory_mb and caps.total_memory_mb < 8192:
        hints.append(
            f"Moderate memory ({caps.total_memory_mb}MB): up to 4 parallel conversions."
        )
    return hints
