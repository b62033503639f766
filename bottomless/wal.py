"""WAL hooks that mirror committed frames and checkpoints to an object store."""

from __future__ import annotations

import enum
import logging
import os
from collections.abc import Callable, Iterable, Mapping

from .replicator import Options, Replicator, ReplicatorError, RestoreKind
from .storage import ObjectStore, StorageError

logger = logging.getLogger(__name__)

_LOCAL_TRUE = ("true", "t", "yes", "y")
_FAILURES = (StorageError, ReplicatorError, OSError)


class WalError(Exception):
    """Raised when a WAL operation cannot be replicated or the WAL cannot be opened."""


class CheckpointMode(enum.IntEnum):
    PASSIVE = 0
    FULL = 1
    RESTART = 2
    TRUNCATE = 3


def is_local(environ: Mapping[str, str] | None = None) -> bool:
    """Tell whether replication is switched off by LIBSQL_BOTTOMLESS_LOCAL."""
    env = os.environ if environ is None else environ
    value = env.get("LIBSQL_BOTTOMLESS_LOCAL")
    if value is None:
        return False
    return value.lower() in _LOCAL_TRUE or value == "1"


def wal_pathname(path: str) -> str:
    """Return the WAL file name belonging to a database path."""
    return f"{path}-wal"


def try_restore(replicator: Replicator) -> None:
    """Restore the registered database and prepare the generation to write into."""
    try:
        action = replicator.restore()
    except _FAILURES as exc:
        logger.error("Failed to restore the database: %s", exc)
        raise WalError(f"failed to restore the database: {exc}") from exc

    if action.kind is RestoreKind.SNAPSHOT_MAIN_DB_FILE:
        replicator.new_generation()
        try:
            replicator.snapshot_main_db_file()
        except _FAILURES as exc:
            logger.error("Failed to snapshot the main db file: %s", exc)
            raise WalError(f"failed to snapshot the main db file: {exc}") from exc
        # A local WAL survives restoration only when it is newer than the remote one.
        try:
            replicator.maybe_replicate_wal()
        except _FAILURES as exc:
            logger.error("Failed to replicate local WAL: %s", exc)
            raise WalError(f"failed to replicate local WAL: {exc}") from exc
    elif action.kind is RestoreKind.REUSE_GENERATION and action.generation is not None:
        replicator.set_generation(action.generation)


def _create_replicator(
    options: Options, store: ObjectStore | None, environ: Mapping[str, str] | None
) -> Replicator:
    try:
        return Replicator.create(options, store, environ)
    except _FAILURES as exc:
        logger.error("Failed to initialize replicator: %s", exc)
        raise WalError(f"failed to initialize replicator: {exc}") from exc


def pre_main_db_open(
    path: str | None,
    store: ObjectStore | None = None,
    environ: Mapping[str, str] | None = None,
) -> Replicator | None:
    """Restore a database before its main file is opened.

    Returns the replicator used, or None when replication is off or no path is given.
    """
    if is_local(environ):
        logger.info("Running in local-mode only, without any replication")
        return None
    if path is None:
        return None
    logger.debug("Main database file %s will be open soon", path)
    replicator = _create_replicator(
        Options(create_bucket_if_not_exists=True, verify_crc=True, use_compression=False),
        store,
        environ,
    )
    replicator.register_db(path)
    try_restore(replicator)
    return replicator


class BottomlessWal:
    """A write-ahead log whose commits and checkpoints are replicated.

    The local WAL operations themselves are supplied by the caller as callables;
    this class adds replication around them. Without a replicator it runs local-only.
    """

    def __init__(self, replicator: Replicator | None = None) -> None:
        self.replicator = replicator

    @property
    def is_local(self) -> bool:
        """True when no replication takes place."""
        return self.replicator is None

    @classmethod
    def open(
        cls,
        wal_name: str,
        store: ObjectStore | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> BottomlessWal:
        """Open the WAL named ``wal_name``, restoring its database first."""
        logger.debug("Opening WAL %s", wal_name)
        if is_local(environ):
            logger.info("Running in local-mode only, without any replication")
            return cls(None)
        replicator = _create_replicator(Options(), store, environ)
        path = wal_name[:-4] if len(wal_name) >= 4 else wal_name
        replicator.register_db(path)
        try_restore(replicator)
        return cls(replicator)

    def frames(
        self,
        page_size: int,
        pages: Iterable[tuple[int, bytes]],
        last_valid_frame: int,
        is_commit: bool,
        commit: Callable[[], tuple[int, int]],
    ) -> int:
        """Buffer ``pages`` and, on commit, upload them, then append them locally.

        ``commit`` writes the frames to the local WAL and returns its frame checksum.
        Returns the last consistent replicated frame (0 when nothing was committed).
        """
        replicator = self.replicator
        if replicator is None:
            commit()
            return 0

        last_consistent_frame = 0
        replicator.register_last_valid_frame(last_valid_frame)
        try:
            replicator.set_page_size(page_size)
        except ReplicatorError as exc:
            logger.error("%s", exc)
            raise WalError(str(exc)) from exc
        for pgno, data in pages:
            replicator.write(pgno, data)

        if is_commit:
            try:
                last_consistent_frame = replicator.flush()
            except _FAILURES as exc:
                logger.error("Failed to replicate: %s", exc)
                raise WalError(f"failed to replicate: {exc}") from exc

        checksum = commit()

        if is_commit:
            try:
                replicator.finalize_commit(last_consistent_frame, checksum)
            except _FAILURES as exc:
                logger.error("Failed to finalize replication: %s", exc)
                raise WalError(f"failed to finalize replication: {exc}") from exc
        return last_consistent_frame

    def _rollback(self, last_valid_frame: int, reason: str) -> None:
        if self.replicator is None:
            return
        logger.debug(
            "%s: rolling back from frame %d to %d",
            reason,
            self.replicator.peek_last_valid_frame(),
            last_valid_frame,
        )
        self.replicator.rollback_to_frame(last_valid_frame)

    def undo(self, last_valid_frame: int) -> None:
        """Drop replicated-but-uncommitted frames after a transaction rollback."""
        self._rollback(last_valid_frame, "Undo")

    def savepoint_undo(self, last_valid_frame: int) -> None:
        """Drop uncommitted frames after rolling back to a savepoint."""
        self._rollback(last_valid_frame, "Savepoint")

    def checkpoint(self, mode: CheckpointMode | int, run_checkpoint: Callable[[], None]) -> bool:
        """Run a TRUNCATE checkpoint and snapshot the database into a new generation.

        Weaker checkpoint requests are ignored; returns whether the checkpoint ran.
        """
        if mode < CheckpointMode.TRUNCATE:
            logger.debug("Ignoring a checkpoint request weaker than TRUNCATE")
            return False
        run_checkpoint()

        replicator = self.replicator
        if replicator is None:
            return True
        if replicator.commits_in_current_generation == 0:
            logger.debug("No commits happened in this generation, not snapshotting")
            return True

        replicator.new_generation()
        logger.debug("Snapshotting after checkpoint")
        try:
            replicator.snapshot_main_db_file()
        except _FAILURES as exc:
            logger.error("Failed to snapshot the main db file during checkpoint: %s", exc)
            raise WalError(f"failed to snapshot the main db file: {exc}") from exc
        return True