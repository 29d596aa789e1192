"""Wall-clock timing of simulation phases."""

import logging
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

import pandas as pd
from mpi4py import MPI

logger = logging.getLogger(__name__)


class ComputingTimer:
    """Accumulate wall-clock time per named section.

    Example:
        >>> timer = ComputingTimer()
        >>> with timer.scope('assemble'):
        ...     assemble()
        >>> timer.summary()
    """

    def __init__(self, comm: Optional[MPI.Comm] = None) -> None:
        self.comm = comm if comm is not None else MPI.COMM_WORLD
        self._sections: Dict[str, List[float]] = {}
        self._start = time.perf_counter()

    @contextmanager
    def scope(self, name: str) -> Iterator[None]:
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self._sections.setdefault(name, []).append(time.perf_counter() - t0)

    def calls(self, name: str) -> int:
        return len(self._sections.get(name, []))

    def summary(self) -> pd.DataFrame:
        """Calls, maximum wall time over ranks and share of the total. Collective."""
        total = self.comm.allreduce(time.perf_counter() - self._start, op=MPI.MAX)
        names = sorted({name for part in self.comm.allgather(list(self._sections)) for name in part})
        rows = []
        for name in names:
            times = self._sections.get(name, [])
            wall = self.comm.allreduce(sum(times), op=MPI.MAX)
            rows.append({
                'section': name,
                'calls': len(times),
                'wall_time': wall,
                'share': wall / total if total > 0 else 0.0,
            })
        return pd.DataFrame(rows, columns=['section', 'calls', 'wall_time', 'share'])

    def log_summary(self) -> pd.DataFrame:
        summary = self.summary()
        logger.info('Timing summary (total %.3f s):\n%s',
                    float(self.comm.allreduce(time.perf_counter() - self._start, op=MPI.MAX)),
                    summary.to_string(index=False))
        return summary
