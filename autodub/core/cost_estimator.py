"""
Cost and time estimates for a dubbing run.
Pure functions: same VideoInfo + PipelineConfig always give the same numbers.
"""

import math
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone

from autodub.core.constants import (
    DUBBING_PRICE_PER_MINUTE, WATERMARK_DISCOUNT, PROCESSING_COST_PER_CHUNK,
    DOWNLOAD_SEC_PER_MINUTE, CHUNKING_SEC_PER_MINUTE, DUBBING_DURATION_MULTIPLIER,
    MERGING_SEC_PER_MINUTE, FINALIZATION_SEC, ALLOWED_CHUNK_DURATIONS,
)
from autodub.core.models_sqlite import PipelineConfig, VideoInfo


@dataclass(frozen=True)
class CostEstimate:
    total_cost: float
    cost_per_chunk: float
    total_chunks: int
    video_duration: float
    dubbing_cost: float
    processing_cost: float

    @property
    def breakdown(self) -> dict:
        return {'dubbing_cost': self.dubbing_cost, 'processing_cost': self.processing_cost}

    def to_dict(self) -> dict:
        data = asdict(self)
        data['breakdown'] = {
            'dubbing_cost': data.pop('dubbing_cost'),
            'processing_cost': data.pop('processing_cost'),
        }
        return data


@dataclass(frozen=True)
class TimeEstimate:
    total_time: int
    download: int
    chunking: int
    dubbing: int
    merging: int
    finalization: int

    @property
    def breakdown(self) -> dict:
        return {
            'download': self.download,
            'chunking': self.chunking,
            'dubbing': self.dubbing,
            'merging': self.merging,
            'finalization': self.finalization,
        }

    def to_dict(self) -> dict:
        return {'total_time': self.total_time, 'breakdown': self.breakdown}


def _cents(value: float) -> float:
    return round(value, 2)


def calculate_chunk_count(duration: float, chunk_duration: int) -> int:
    if duration <= 0:
        return 0
    return math.ceil(duration / chunk_duration)


def calculate_cost(video_info: VideoInfo, config: PipelineConfig) -> CostEstimate:
    minutes = video_info.duration / 60
    chunks = calculate_chunk_count(video_info.duration, config.chunk_duration)

    dubbing = minutes * DUBBING_PRICE_PER_MINUTE
    if config.use_watermark:
        dubbing *= WATERMARK_DISCOUNT
    processing = chunks * PROCESSING_COST_PER_CHUNK
    total = dubbing + processing

    return CostEstimate(
        total_cost=_cents(total),
        cost_per_chunk=_cents(total / chunks) if chunks else 0.0,
        total_chunks=chunks,
        video_duration=video_info.duration,
        dubbing_cost=_cents(dubbing),
        processing_cost=_cents(processing),
    )


def calculate_time(video_info: VideoInfo, config: PipelineConfig) -> TimeEstimate:
    """Seconds per stage. Dubbing runs in batches of max_parallel_jobs chunks."""
    minutes = video_info.duration / 60
    chunks = calculate_chunk_count(video_info.duration, config.chunk_duration)
    batches = math.ceil(chunks / config.max_parallel_jobs)

    download = minutes * DOWNLOAD_SEC_PER_MINUTE
    chunking = minutes * CHUNKING_SEC_PER_MINUTE
    dubbing = batches * config.chunk_duration * DUBBING_DURATION_MULTIPLIER
    merging = minutes * MERGING_SEC_PER_MINUTE
    finalization = FINALIZATION_SEC

    # the total is rounded once, not built from the rounded stages
    return TimeEstimate(
        total_time=math.ceil(download + chunking + dubbing + merging + finalization),
        download=math.ceil(download),
        chunking=math.ceil(chunking),
        dubbing=math.ceil(dubbing),
        merging=math.ceil(merging),
        finalization=math.ceil(finalization),
    )


def calculate_optimal_chunk_duration(duration: float) -> int:
    """Longer videos get longer chunks to keep the chunk count manageable."""
    if duration < 300:
        return 60
    if duration < 900:
        return 120
    if duration < 1800:
        return 180
    return 300


def choose_chunk_duration(duration: float) -> int:
    """
    The recommended chunk length snapped down to one a job accepts.
    calculate_optimal_chunk_duration can suggest 180s, which is not allowed.
    """
    target = calculate_optimal_chunk_duration(duration)
    fitting = [d for d in ALLOWED_CHUNK_DURATIONS if d <= target]
    return max(fitting) if fitting else min(ALLOWED_CHUNK_DURATIONS)


def estimate_completion(time_estimate: TimeEstimate, start: datetime | None = None) -> datetime:
    start = start or datetime.now(timezone.utc)
    return start + timedelta(seconds=time_estimate.total_time)


def format_cost(cost: float) -> str:
    return f"${cost:.2f}"


def format_time(seconds: float) -> str:
    """30 -> '30s', 90 -> '1m 30s', 3660 -> '1h 1m'."""
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"
    if minutes:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    return f"{secs}s"


def cost_breakdown_percentage(estimate: CostEstimate) -> dict:
    if not estimate.total_cost:
        return {'dubbing': 0, 'processing': 0}
    return {
        'dubbing': round(estimate.dubbing_cost / estimate.total_cost * 100),
        'processing': round(estimate.processing_cost / estimate.total_cost * 100),
    }


def time_breakdown_percentage(estimate: TimeEstimate) -> dict:
    if not estimate.total_time:
        return {stage: 0 for stage in estimate.breakdown}
    return {
        stage: round(seconds / estimate.total_time * 100)
        for stage, seconds in estimate.breakdown.items()
    }
