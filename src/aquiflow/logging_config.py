"""Logging configuration for AquiFlow.

Sets up the ``aquiflow`` logger namespace. Under MPI every rank runs the same
code, so INFO records are only printed on rank 0 while warnings and errors are
printed everywhere, tagged with the rank that produced them.
"""
import logging
import sys
from typing import Optional


class RankFilter(logging.Filter):
    """Drop INFO/DEBUG records on ranks other than 0 and tag records with the rank.

    Args:
        rank: Rank of the current process.
        keep_all: If True, records are only tagged, never dropped.
    """

    def __init__(self, rank: int = 0, keep_all: bool = False) -> None:
        super().__init__()
        self.rank = rank
        self.keep_all = keep_all

    def filter(self, record: logging.LogRecord) -> bool:
        record.rank = self.rank
        if self.rank == 0 or self.keep_all:
            return True
        return record.levelno >= logging.WARNING


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None, comm=None) -> logging.Logger:
    """Configure the logger for the 'aquiflow' namespace.

    Args:
        level: Logging level (e.g. logging.DEBUG, logging.INFO).
        log_file: Optional path to save logs to a file. With more than one
            rank the rank number is appended to the file name.
        comm: MPI communicator used to find the rank of this process. If None,
            ``MPI.COMM_WORLD`` is used.

    Returns:
        The configured ``aquiflow`` logger.
    """
    if comm is None:
        from mpi4py import MPI
        comm = MPI.COMM_WORLD
    rank = comm.Get_rank()

    logger = logging.getLogger("aquiflow")
    logger.setLevel(level)

    # avoid duplicate handlers when called twice
    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(
        '%(asctime)s - [%(rank)d] %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )
    rank_filter = RankFilter(rank)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(rank_filter)
    logger.addHandler(console_handler)

    if log_file:
        if comm.Get_size() > 1:
            log_file = f"{log_file}.{rank:04d}"
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        # every rank keeps its full log on file
        file_handler.addFilter(RankFilter(rank, keep_all=True))
        logger.addHandler(file_handler)

    logger.info("Logging initialized.")
    return logger
