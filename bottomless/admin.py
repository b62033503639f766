"""Administrative operations on the generations stored in a bucket."""

from __future__ import annotations

import sys
import uuid
from collections.abc import Iterator
from datetime import date, datetime, timezone
from typing import Any, TextIO

from .generation import generation_to_datetime
from .replicator import Replicator, ReplicatorError
from .storage import ListResult, NoSuchKey, ObjectStore, StorageError

# Length of "-<uuid>/" at the end of a generation prefix.
_GENERATION_SUFFIX_LEN = 38


def _format_naive(moment: datetime) -> str:
    text = moment.strftime("%Y-%m-%d %H:%M:%S")
    micros = moment.microsecond
    if micros == 0:
        return text
    if micros % 1000 == 0:
        return f"{text}.{micros // 1000:03d}"
    return f"{text}.{micros:06d}"


def _format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    text = moment.strftime("%Y-%m-%dT%H:%M:%S")
    if moment.microsecond:
        text += f".{moment.microsecond:06d}".rstrip("0")
    return text + "Z"


class Admin:
    """Lists, inspects and removes the generations of one database."""

    def __init__(self, replicator: Replicator, out: TextIO | None = None) -> None:
        self.replicator = replicator
        self.out = out

    @property
    def store(self) -> ObjectStore:
        return self.replicator.store

    @property
    def bucket(self) -> str:
        return self.replicator.bucket

    @property
    def db_name(self) -> str:
        return self.replicator.db_name

    def _print(self, text: str = "") -> None:
        print(text, file=self.out if self.out is not None else sys.stdout)

    def _pages(self, **kwargs: Any) -> Iterator[ListResult]:
        marker: str | None = None
        while True:
            response = self.store.list_objects(self.bucket, marker=marker, **kwargs)
            yield response
            marker = response.next_marker
            if marker is None:
                return

    def _prefix_generation(self, prefix: str) -> uuid.UUID:
        text = prefix[len(self.db_name) + 1 : len(prefix) - 1]
        try:
            return uuid.UUID(text)
        except ValueError as exc:
            raise ReplicatorError(f"invalid generation identifier {text!r}") from exc

    def _generation_prefix(self, generation: uuid.UUID) -> str:
        return f"{self.db_name}-{generation}/"

    def _print_details(self, generation: uuid.UUID, created_label: str) -> None:
        counter = self.replicator.get_remote_change_counter(generation)
        frame, checksum = self.replicator.get_last_consistent_frame(generation)
        self._print(f"\t{created_label}{_format_naive(generation_to_datetime(generation))}")
        self._print(f"\tchange counter:       {list(counter)}")
        self._print(f"\tconsistent WAL frame: {frame}")
        self._print(f"\tWAL frame checksum:   {checksum:x}")
        self.print_snapshot_summary(generation)

    def print_snapshot_summary(self, generation: uuid.UUID) -> None:
        """Print the size and modification time of a generation's main snapshot."""
        key = f"{self._generation_prefix(generation)}db.gz"
        try:
            info = self.store.head_object(self.bucket, key)
        except NoSuchKey:
            self._print("\tno main database snapshot file found")
            return
        except StorageError as exc:
            self._print(f"\tfailed to fetch main database snapshot info: {exc}")
            return
        modified = _format_timestamp(info.last_modified) if info.last_modified else "never"
        self._print("\tmain database snapshot:")
        self._print(f"\t\tobject size:   {info.size}")
        self._print(f"\t\tlast modified: {modified}")

    def list_generations(
        self,
        limit: int | None = None,
        older_than: date | None = None,
        newer_than: date | None = None,
        verbose: bool = False,
    ) -> None:
        """Print generations newest first, optionally limited and filtered by date."""
        if limit is not None and limit <= 0:
            return
        remaining = limit
        lower = newer_than or date.min
        upper = older_than or date.max
        for response in self._pages(prefix=self.db_name, delimiter="/"):
            if verbose:
                self._print(f"Database {self.db_name}:")
            if not response.common_prefixes:
                self._print("No generations found")
                return
            for prefix in response.common_prefixes:
                generation = self._prefix_generation(prefix)
                created = generation_to_datetime(generation).date()
                if created < lower or created > upper:
                    continue
                self._print(str(generation))
                if verbose:
                    self._print_details(generation, "created at (UTC):     ")
                    self._print()
                if remaining is not None:
                    remaining -= 1
                    if remaining == 0:
                        return

    def remove(self, generation: uuid.UUID, verbose: bool = False) -> None:
        """Delete every object belonging to a generation."""
        removed = 0
        for response in self._pages(prefix=self._generation_prefix(generation)):
            if not response.contents:
                if verbose:
                    self._print("No objects found")
                return
            for obj in response.contents:
                if verbose:
                    self._print(f"Removing {obj.key}")
                self.store.delete_object(self.bucket, obj.key)
                removed += 1
        if verbose:
            self._print(f"Removed {removed} snapshot generations")

    def remove_many(self, older_than: date, verbose: bool = False) -> None:
        """Delete all generations created before the given date."""
        removed_count = 0
        for response in self._pages(prefix=self.db_name, delimiter="/"):
            if not response.common_prefixes:
                if verbose:
                    self._print("No generations found")
                return
            for prefix in response.common_prefixes:
                generation = self._prefix_generation(prefix)
                if generation_to_datetime(generation).date() >= older_than:
                    continue
                if verbose:
                    self._print(f"Removing {generation}")
                self.remove(generation, verbose)
                removed_count += 1
        if verbose:
            self._print(f"Removed {removed_count} generations")

    def list_generation(self, generation: uuid.UUID) -> None:
        """Print details of a single generation; raise if it does not exist."""
        response = self.store.list_objects(
            self.bucket, prefix=self._generation_prefix(generation), max_keys=1
        )
        if not response.contents:
            raise ReplicatorError(f"Generation {generation} not found for {self.db_name}")
        self._print(f"Generation {generation} for {self.db_name}")
        self._print_details(generation, "created at:           ")

    def detect_db(self) -> str | None:
        """Guess the database name from the first generation in the bucket."""
        try:
            response = self.store.list_objects(self.bucket, prefix=self.db_name, delimiter="/")
        except StorageError:
            return None
        if not response.common_prefixes:
            return None
        prefix = response.common_prefixes[0]
        cut = max(len(prefix) - _GENERATION_SUFFIX_LEN, 0)
        if prefix[cut : cut + 1] == "-":
            return prefix[:cut]
        return None