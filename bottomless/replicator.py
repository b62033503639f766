"""Replicates SQLite WAL frames and database snapshots to an object store."""

from __future__ import annotations

import enum
import gzip
import logging
import os
import re
import shutil
import struct
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import BinaryIO

from .crc64 import crc64
from .generation import new_generation
from .storage import BucketNotFound, ObjectStore, StorageError, store_from_env

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "bottomless"
COMPRESSED_DB_PATH = "db.gz"
WAL_HEADER_SIZE = 32
WAL_FRAME_HEADER_SIZE = 24


class ReplicatorError(Exception):
    """Raised when replication or restoration fails."""


@dataclass(frozen=True)
class Options:
    """Replicator settings."""

    create_bucket_if_not_exists: bool = False
    verify_crc: bool = True
    use_compression: bool = False


class RestoreKind(enum.Enum):
    NONE = "none"
    SNAPSHOT_MAIN_DB_FILE = "snapshot_main_db_file"
    REUSE_GENERATION = "reuse_generation"


@dataclass(frozen=True)
class RestoreAction:
    """What the caller should do after a restore attempt."""

    kind: RestoreKind
    generation: uuid.UUID | None = None


@dataclass
class _Frame:
    pgno: int
    data: bytes
    crc: int


_UNSIGNED = re.compile(r"\+?[0-9]+")
_SIGNED = re.compile(r"[+-]?[0-9]+")
_HEX = re.compile(r"\+?[0-9a-fA-F]+")


def parse_frame_page_crc(key: str) -> tuple[int, int, int] | None:
    """Parse ``<db>-<generation>/<frame>-<page>-<crc64 hex>`` into (frame, page, crc)."""
    checksum_delim = key.rfind("-")
    if checksum_delim < 0:
        return None
    page_delim = key.rfind("-", 0, checksum_delim)
    if page_delim < 0:
        return None
    frame_delim = key.rfind("/", 0, page_delim)
    if frame_delim < 0:
        return None
    frame_text = key[frame_delim + 1 : page_delim]
    page_text = key[page_delim + 1 : checksum_delim]
    crc_text = key[checksum_delim + 1 :]
    if not (_UNSIGNED.fullmatch(frame_text) and _SIGNED.fullmatch(page_text)
            and _HEX.fullmatch(crc_text)):
        return None
    frameno, pgno, crc = int(frame_text), int(page_text), int(crc_text, 16)
    if frameno >= 1 << 32 or not -(1 << 31) <= pgno < 1 << 31 or crc >= 1 << 64:
        return None
    logger.debug("frameno=%d pgno=%d crc=%d", frameno, pgno, crc)
    return frameno, pgno, crc


def _read_exact(reader: BinaryIO, size: int) -> bytes:
    data = reader.read(size)
    if len(data) != size:
        raise ReplicatorError("unexpected end of file")
    return data


def _read_u32(reader: BinaryIO) -> int:
    return int.from_bytes(_read_exact(reader, 4), "big")


def _read_change_counter(reader: BinaryIO) -> bytes:
    reader.seek(24)
    return _read_exact(reader, 4)


def _read_page_size(reader: BinaryIO) -> int:
    reader.seek(16)
    page_size = int.from_bytes(_read_exact(reader, 2), "big")
    return 65536 if page_size == 1 else page_size


class Replicator:
    """Buffers WAL frames of one database and ships them to a bucket."""

    def __init__(
        self,
        store: ObjectStore,
        bucket: str = DEFAULT_BUCKET,
        options: Options | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        options = options or Options()
        self.store = store
        self.bucket = bucket
        self.page_size: int | None = None
        self.generation = new_generation()
        self.commits_in_current_generation = 0
        self.db_path = ""
        self.db_name = ""
        self.verify_crc = options.verify_crc
        self.use_compression = options.use_compression
        self._environ = os.environ if environ is None else environ
        self._write_buffer: dict[int, _Frame] = {}
        self._next_frame = 1
        self._last_frame_crc = 0
        self._last_transaction_crc = 0
        logger.debug("Generation %s", self.generation)

    @classmethod
    def create(
        cls,
        options: Options | None = None,
        store: ObjectStore | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> Replicator:
        """Build a replicator, checking (and optionally creating) its bucket."""
        options = options or Options()
        env = os.environ if environ is None else environ
        if store is None:
            store = store_from_env(env)
        bucket = env.get("LIBSQL_BOTTOMLESS_BUCKET", DEFAULT_BUCKET)
        try:
            store.head_bucket(bucket)
            logger.info("Bucket %s exists and is accessible", bucket)
        except BucketNotFound:
            if not options.create_bucket_if_not_exists:
                logger.error("Bucket %s does not exist", bucket)
                raise
            logger.info("Bucket %s not found, recreating", bucket)
            store.create_bucket(bucket)
        return cls(store, bucket, options, env)

    @property
    def pending_frames(self) -> int:
        """Number of written frames not yet flushed."""
        return len(self._write_buffer)

    def set_page_size(self, page_size: int) -> None:
        """Record the database page size; it may not change once set."""
        logger.debug("Setting page size from %s to %s", self.page_size, page_size)
        if self.page_size is not None and self.page_size != page_size:
            raise ReplicatorError(
                f"Cannot set page size to {page_size}, it was already set to {self.page_size}"
            )
        self.page_size = page_size

    def new_generation(self) -> None:
        """Start a fresh generation."""
        logger.debug("New generation started: %s", self.generation)
        self.set_generation(new_generation())

    def set_generation(self, generation: uuid.UUID) -> None:
        """Reuse an existing generation; a new generation marks a new WAL."""
        self.generation = generation
        self.commits_in_current_generation = 0
        self._next_frame = 1
        logger.debug("Generation set to %s", self.generation)

    def register_db(self, db_path: str) -> None:
        """Register the database path; its file name (with an optional id prefix) names it."""
        db_id = self._environ.get("LIBSQL_BOTTOMLESS_DATABASE_ID", "")
        name = db_path.rsplit("/", 1)[-1]
        self.db_name = db_id + name
        self.db_path = db_path
        logger.debug("Registered %s (full path: %s)", self.db_name, self.db_path)

    def _take_next_frame(self) -> int:
        frame = self._next_frame
        self._next_frame += 1
        return frame

    def peek_last_valid_frame(self) -> int:
        """Return the last valid frame number of the replicated log."""
        return max(self._next_frame - 1, 0)

    def register_last_valid_frame(self, frame: int) -> None:
        """Align the replicated log with the local WAL's last valid frame."""
        if frame != self.peek_last_valid_frame():
            if self._next_frame != 1:
                logger.error(
                    "[BUG] Local max valid frame is %d, while replicator thinks it's %d",
                    frame,
                    self.peek_last_valid_frame(),
                )
            self._next_frame = frame + 1

    def write(self, pgno: int, data: bytes) -> None:
        """Buffer one page as the next frame."""
        frame = self._take_next_frame()
        crc = crc64(data, self._last_frame_crc)
        logger.debug("Writing page %d:%d at frame %d, crc: %d", pgno, len(data), frame, crc)
        self._write_buffer[frame] = _Frame(pgno, bytes(data), crc)
        self._last_frame_crc = crc

    def _frame_prefix(self, generation: uuid.UUID | None = None) -> str:
        return f"{self.db_name}-{generation or self.generation}/"

    def flush(self) -> int:
        """Upload buffered frames; return the number of the last flushed frame, or 0."""
        if not self._write_buffer:
            logger.debug("Attempting to flush an empty buffer")
            return 0
        logger.debug("Flushing %d frames", len(self._write_buffer))
        self.commits_in_current_generation += 1
        buffer, self._write_buffer = self._write_buffer, {}
        frames = sorted(buffer.items())
        last_crc = frames[-1][1].crc
        for frame, entry in frames:
            if len(entry.data) != self.page_size:
                logger.warning("Unexpected truncated page of size %d", len(entry.data))
            key = f"{self._frame_prefix()}{frame:012}-{entry.pgno:012}-{entry.crc:016x}"
            body = gzip.compress(entry.data) if self.use_compression else entry.data
            self.store.put_object(self.bucket, key, body)
        self._last_transaction_crc = last_crc
        logger.debug("Last transaction crc: %d", last_crc)
        return self._next_frame - 1

    def finalize_commit(self, last_frame: int, checksum: tuple[int, int]) -> None:
        """Persist the last consistent frame number and its WAL checksum."""
        logger.debug("Finalizing frame: %d, checksum: %s", last_frame, checksum)
        info = struct.pack(">III", last_frame, checksum[0], checksum[1])
        self.store.put_object(self.bucket, f"{self._frame_prefix()}.consistent", info)

    def rollback_to_frame(self, last_valid_frame: int) -> None:
        """Drop buffered frames newer than ``last_valid_frame``."""
        self._write_buffer = {
            frame: entry for frame, entry in self._write_buffer.items()
            if frame <= last_valid_frame
        }
        self._next_frame = last_valid_frame + 1
        if self._write_buffer:
            self._last_frame_crc = self._write_buffer[max(self._write_buffer)].crc
        else:
            self._last_frame_crc = self._last_transaction_crc
        logger.debug(
            "Rolled back to %d, crc %d (last transaction crc = %d)",
            last_valid_frame, self._last_frame_crc, self._last_transaction_crc,
        )

    def compress_main_db_file(self) -> tuple[str, bytes]:
        """Gzip the main database into ``db.gz``; return its path and the change counter."""
        with open(self.db_path, "rb") as reader:
            with gzip.open(COMPRESSED_DB_PATH, "wb") as writer:
                shutil.copyfileobj(reader, writer)
            counter = _read_change_counter(reader)
        return COMPRESSED_DB_PATH, counter

    def _wal_path(self) -> str:
        return f"{self.db_path}-wal"

    def maybe_replicate_wal(self) -> None:
        """Upload the frames of a local WAL file, if there is one."""
        try:
            wal_file = open(self._wal_path(), "rb")
        except OSError:
            logger.info("Local WAL not present - not replicating")
            return
        with wal_file:
            try:
                length = os.fstat(wal_file.fileno()).st_size
            except OSError:
                length = 0
            if length < WAL_HEADER_SIZE:
                logger.info("Local WAL is empty, not replicating")
                return
            if self.page_size is None:
                logger.debug("Page size not detected yet, not replicated")
                return
            page_size = self.page_size
            wal_file.seek(24)
            checksum = (_read_u32(wal_file), _read_u32(wal_file))
            last_written_frame = 0
            for offset in range(WAL_HEADER_SIZE, length, page_size + WAL_FRAME_HEADER_SIZE):
                wal_file.seek(offset)
                pgno = _read_u32(wal_file)
                size_after = _read_u32(wal_file)
                wal_file.seek(offset + WAL_FRAME_HEADER_SIZE)
                self.write(pgno, _read_exact(wal_file, page_size))
                # Only the last page of a transaction carries a non-zero size.
                if size_after != 0:
                    last_written_frame = self.flush()
        if last_written_frame > 0:
            self.finalize_commit(last_written_frame, checksum)
        if self._write_buffer:
            logger.warning("Uncommitted WAL entries: %d", len(self._write_buffer))
        self._write_buffer.clear()
        logger.info("Local WAL replicated")

    def _main_db_exists_and_not_empty(self) -> bool:
        try:
            return os.path.getsize(self.db_path) > 0
        except OSError:
            return False

    def snapshot_main_db_file(self) -> None:
        """Upload the main database file and its change counter."""
        if not self._main_db_exists_and_not_empty():
            logger.debug("Not snapshotting, the main db file does not exist or is empty")
            return
        logger.debug("Snapshotting %s", self.db_path)
        prefix = self._frame_prefix()
        if self.use_compression:
            compressed_path, counter = self.compress_main_db_file()
            with open(compressed_path, "rb") as compressed:
                self.store.put_object(self.bucket, f"{prefix}db.gz", compressed.read())
        else:
            with open(self.db_path, "rb") as reader:
                self.store.put_object(self.bucket, f"{prefix}db.db", reader.read())
                counter = _read_change_counter(reader)
        self.store.put_object(self.bucket, f"{prefix}.changecounter", counter)
        logger.debug("Main db snapshot complete")

    def find_newest_generation(self) -> uuid.UUID | None:
        """Return the newest remote generation of this database, if any."""
        try:
            response = self.store.list_objects(
                self.bucket, prefix=f"{self.db_name}-", max_keys=1
            )
        except StorageError:
            return None
        if not response.contents:
            return None
        key = response.contents[0].key
        index = key.find("/")
        if index >= 0:
            key = key[len(self.db_name) + 1 : index]
        logger.debug("Generation candidate: %s", key)
        try:
            return uuid.UUID(key)
        except ValueError:
            return None

    def get_remote_change_counter(self, generation: uuid.UUID) -> bytes:
        """Return the remote change counter of a generation, or zeros if absent."""
        try:
            body = self.store.get_object(
                self.bucket, f"{self._frame_prefix(generation)}.changecounter"
            )
        except StorageError:
            return bytes(4)
        if len(body) < 4:
            raise ReplicatorError("remote change counter is truncated")
        return body[:4]

    def get_last_consistent_frame(self, generation: uuid.UUID) -> tuple[int, int]:
        """Return (last consistent frame, 64-bit checksum), or (0, 0) if absent."""
        try:
            body = self.store.get_object(
                self.bucket, f"{self._frame_prefix(generation)}.consistent"
            )
        except StorageError:
            return 0, 0
        if len(body) < 12:
            raise ReplicatorError("remote consistency marker is truncated")
        frame, checksum = struct.unpack_from(">IQ", body)
        return frame, checksum

    def _get_local_wal_page_count(self) -> int:
        try:
            with open(self._wal_path(), "rb") as wal_file:
                length = os.fstat(wal_file.fileno()).st_size
                if length < WAL_HEADER_SIZE:
                    return 0
                wal_file.seek(8)
                page_size = _read_u32(wal_file)
        except (OSError, ReplicatorError):
            return 0
        try:
            self.set_page_size(page_size)
        except ReplicatorError:
            return 0
        return length // (page_size + WAL_FRAME_HEADER_SIZE)

    def _restore_frame(
        self, pgno: int, crc: int, prev_crc: int, data: bytes, writer: BinaryIO
    ) -> None:
        if pgno < 1:
            raise ReplicatorError(f"invalid page number {pgno}")
        if self.verify_crc or self.page_size is None:
            if self.verify_crc:
                expected = crc64(data, prev_crc)
                if crc != expected:
                    logger.warning("CRC check failed: %016x != %016x (expected)", crc, expected)
            self.set_page_size(len(data))
            writer.seek((pgno - 1) * len(data))
        else:
            writer.seek((pgno - 1) * self.page_size)
        writer.write(data)
        writer.flush()

    def _decompress(self, data: bytes) -> bytes:
        try:
            return gzip.decompress(data)
        except (OSError, EOFError) as exc:
            raise ReplicatorError(f"failed to decompress: {exc}") from exc

    def _local_change_counter(self) -> bytes:
        try:
            db = open(self.db_path, "rb")
        except OSError:
            return bytes(4)
        with db:
            try:
                page_size = _read_page_size(db)
            except ReplicatorError:
                page_size = None
            if page_size is not None:
                self.set_page_size(page_size)
            try:
                return _read_change_counter(db)
            except ReplicatorError:
                return bytes(4)

    def restore_from(self, generation: uuid.UUID) -> RestoreAction:
        """Restore the local database from the given remote generation."""
        local_counter = self._local_change_counter()
        remote_counter = self.get_remote_change_counter(generation)
        logger.debug("Counters: l=%s, r=%s", list(local_counter), list(remote_counter))
        last_consistent_frame, checksum = self.get_last_consistent_frame(generation)
        logger.debug(
            "Last consistent remote frame: %d; checksum: %x", last_consistent_frame, checksum
        )
        wal_pages = self._get_local_wal_page_count()
        if local_counter == remote_counter:
            if wal_pages == last_consistent_frame:
                logger.info("Remote generation is up-to-date, reusing it in this session")
                self._next_frame = wal_pages + 1
                return RestoreAction(RestoreKind.REUSE_GENERATION, generation)
            if wal_pages > last_consistent_frame:
                logger.info("Local WAL contains newer data, which needs to be replicated")
                return RestoreAction(RestoreKind.SNAPSHOT_MAIN_DB_FILE)
        elif local_counter > remote_counter:
            logger.info("Local change counter is larger than its remote counterpart")
            return RestoreAction(RestoreKind.SNAPSHOT_MAIN_DB_FILE)

        try:
            os.replace(self.db_path, f"{self.db_path}.bottomless.backup")
        except OSError:
            pass

        prefix = self._frame_prefix(generation)
        applied_wal_frame = False
        with open(self.db_path, "w+b") as writer:
            snapshot_key = prefix + ("db.gz" if self.use_compression else "db.db")
            try:
                snapshot = self.store.get_object(self.bucket, snapshot_key)
            except StorageError:
                snapshot = None
            if snapshot is not None:
                writer.write(self._decompress(snapshot) if self.use_compression else snapshot)
                writer.flush()
            logger.info("Restored the main database file")

            for suffix in ("-wal", "-shm"):
                try:
                    os.remove(f"{self.db_path}{suffix}")
                except OSError:
                    pass

            marker: str | None = None
            while True:
                response = self.store.list_objects(self.bucket, prefix=prefix, marker=marker)
                if not response.contents:
                    logger.debug("No objects found in generation %s", generation)
                    break
                prev_crc = 0
                for obj in response.contents:
                    parsed = parse_frame_page_crc(obj.key)
                    if parsed is None:
                        if not obj.key.endswith((".gz", ".db", ".consistent", ".changecounter")):
                            logger.warning("Failed to parse frame/page from key %s", obj.key)
                        continue
                    frameno, pgno, crc = parsed
                    if frameno > last_consistent_frame:
                        logger.warning(
                            "Remote log contains frame %d larger than last consistent frame "
                            "(%d), stopping the restoration process",
                            frameno, last_consistent_frame,
                        )
                        break
                    data = self.store.get_object(self.bucket, obj.key)
                    if self.use_compression:
                        data = self._decompress(data)
                    self._restore_frame(pgno, crc, prev_crc, data, writer)
                    logger.debug("Written frame %d as main db page %d", frameno, pgno)
                    prev_crc = crc
                    applied_wal_frame = True
                marker = response.contents[-1].key if response.is_truncated else None
                if marker is None:
                    break

        if applied_wal_frame:
            return RestoreAction(RestoreKind.SNAPSHOT_MAIN_DB_FILE)
        return RestoreAction(RestoreKind.NONE)

    def restore(self) -> RestoreAction:
        """Restore the local database from the newest remote generation."""
        newest = self.find_newest_generation()
        if newest is None:
            logger.debug("No generation found, nothing to restore")
            return RestoreAction(RestoreKind.SNAPSHOT_MAIN_DB_FILE)
        logger.info("Restoring from generation %s", newest)
        return self.restore_from(newest)