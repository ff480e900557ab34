import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Hashable, Iterable, List, Tuple, TypeVar

from timeboxer.models.errors import ExternalSyncFailure

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchOutcome(Generic[K, R]):
    results: Dict[K, R] = field(default_factory=dict)
    errors: Dict[K, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.errors)


def run_batch(
    tasks: Iterable[Tuple[K, T]],
    fn: Callable[[T], R],
    max_workers: int = 4,
    label: str = "sync",
) -> BatchOutcome:
    """
    Run ``fn`` over independent ``(key, payload)`` tasks with bounded
    concurrency. One task failing never stops the others; each outcome is
    captured under its key. Completion order carries no meaning.
    """
    outcome: BatchOutcome = BatchOutcome()
    tasks = list(tasks)
    if not tasks:
        return outcome

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        futures = {executor.submit(fn, payload): key for key, payload in tasks}
        for future in as_completed(futures):
            key = futures[future]
            try:
                outcome.results[key] = future.result()
            except ExternalSyncFailure as exc:
                logger.warning(f"{label} failed for {key}: {exc}")
                outcome.errors[key] = str(exc)
            except Exception as exc:
                logger.exception(f"{label} raised unexpectedly for {key}")
                outcome.errors[key] = repr(exc)

    logger.info(f"{label}: {outcome.succeeded} succeeded, {outcome.failed} failed")
    return outcome
