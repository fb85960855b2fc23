"""
Per-frame fan-out shared by alignment and photometry.

Frames are independent once the reference sources are known, so each one is
handed to a worker and the results are put back in input order. The failure
policy decides whether the first per-frame error aborts the run or is
collected alongside the successful results.
"""
from concurrent.futures import ThreadPoolExecutor, ProcessPoolExecutor, as_completed
from typing import Any, Callable, List, Optional, Sequence, Tuple

from photalign.logger.backend_logger import backend_logger
from photalign.config import PipelineConfig
from photalign.exceptions import PhotAlignError, FrameError


def map_frames(
    task: Callable[[Any], Any],
    items: Sequence[Any],
    config: PipelineConfig,
    indices: Optional[Sequence[int]] = None,
    timestamps: Optional[Sequence[Any]] = None,
) -> Tuple[List[Optional[Any]], List[FrameError]]:
    """
    Applies `task` to every item, inline or on a worker pool.

    Args:
        task (Callable): Called once per item. Must be picklable for the process executor.
        items (Sequence): Work items, one per frame.
        config (PipelineConfig): Supplies max_workers, executor and failure_policy.
        indices (Sequence[int]): Sequence position of each item, used to tag errors. Defaults to 0..N-1.
        timestamps (Sequence): Observation time of each item, used to tag errors.

    Returns:
        Tuple[List, List[FrameError]]: Results in input order (None where the task
                                       failed) and the collected errors sorted by frame index.

    Raises:
        FrameError: Under the fail-fast policy, on the first failure observed.
                    Pending work is cancelled before raising.
    """
    indices = list(range(len(items))) if indices is None else list(indices)
    results: List[Optional[Any]] = [None] * len(items)
    errors: List[FrameError] = []

    def record_failure(position: int, exc: PhotAlignError):
        timestamp = timestamps[position] if timestamps is not None else None
        error = FrameError(indices[position], exc, timestamp)
        if config.fail_fast:
            backend_logger.error(f"Aborting sequence: {error}")
            raise error from exc
        backend_logger.warning(f"Skipping frame: {error}")
        errors.append(error)

    if config.max_workers == 1 or len(items) <= 1:
        for position, item in enumerate(items):
            try:
                results[position] = task(item)
            except PhotAlignError as e:
                record_failure(position, e)
    else:
        pool_class = ThreadPoolExecutor if config.executor == 'thread' else ProcessPoolExecutor
        n_workers = min(config.max_workers, len(items))
        backend_logger.debug(f"Dispatching {len(items)} frames to {n_workers} {config.executor} workers.")
        with pool_class(max_workers=n_workers) as executor:
            futures = {executor.submit(task, item): position for position, item in enumerate(items)}
            try:
                for future in as_completed(futures):
                    position = futures[future]
                    try:
                        results[position] = future.result()
                    except PhotAlignError as e:
                        record_failure(position, e)
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

    errors.sort(key=lambda error: error.frame_index)
    return results, errors
