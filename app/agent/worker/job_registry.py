"""
Registry of in-flight jobs.

The registry is the source of truth for whether a job is still live. Both
the timeout path and the completion path of a job finish through
``remove``; whichever removes the entry first sends the terminal report
and the other finds nothing and stands down.
"""

import logging
import threading
from typing import Dict, Iterator, List, Optional

from ..core.types import Job

logger = logging.getLogger(__name__)


class JobRegistry:
    """Thread-safe map of job id to Job"""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def insert(self, job: Job) -> bool:
        """
        Register a job.

        Returns:
            False if a job with the same id is already live
        """
        with self._lock:
            if job.id in self._jobs:
                return False
            self._jobs[job.id] = job
            return True

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def contains(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def remove(self, job_id: str) -> Optional[Job]:
        """
        Atomically remove a job and return it.

        Idempotent: returns None when the job was already removed, which
        tells the caller another path already resolved it.
        """
        with self._lock:
            return self._jobs.pop(job_id, None)

    def clear(self) -> List[Job]:
        """Remove every job and return the removed jobs"""
        with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
        if jobs:
            logger.info(f"Cleared {len(jobs)} in-flight jobs")
        return jobs

    def job_ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __iter__(self) -> Iterator[Job]:
        with self._lock:
            return iter(list(self._jobs.values()))
