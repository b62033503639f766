# bottomless

Continuous replication of a SQLite database to S3-compatible object storage.

Committed write-ahead-log frames are uploaded as separate objects. Each object
carries its frame number, page number and a chained CRC-64 (ECMA-182)
checksum. A full snapshot of the main database file is uploaded when a new
generation starts: after a restore that finds the local copy newer than the
remote one, and after a TRUNCATE checkpoint that follows at least one commit.
Replicated data is grouped into *generations*. A generation is a version 7 UUID
whose timestamp runs backwards, so the newest generation is listed first in the
bucket. A database can be restored from the newest generation or from any
other one.

## Installation

```
pip install .
```

To run the test suite, install the `test` extra and run `pytest`:

```
pip install ".[test]"
pytest
```

## Storage layout

All objects for a database live under a key prefix made from the database
name and the generation:

```
<db-name>-<generation>/<frame:012>-<page:012>-<crc64:016x>   one WAL frame
<db-name>-<generation>/db.db                                 main database snapshot
<db-name>-<generation>/db.gz                                 gzip snapshot (compression on)
<db-name>-<generation>/.changecounter                        4-byte change counter of the snapshot
<db-name>-<generation>/.consistent                           last consistent frame (4 bytes) and checksum (8 bytes), big-endian
```

The database name is the last path component of the registered database
path, prefixed with `LIBSQL_BOTTOMLESS_DATABASE_ID` if that is set. With
compression on, frames are gzip-compressed as well, and the snapshot is first
written to a `db.gz` file in the current directory before upload.

## Configuration

These environment variables are read:

| Variable | Meaning |
| --- | --- |
| `LIBSQL_BOTTOMLESS_ENDPOINT` | Endpoint URL of the S3-compatible service (default: the regional AWS S3 endpoint) |
| `LIBSQL_BOTTOMLESS_BUCKET` | Bucket name (default: `bottomless`) |
| `LIBSQL_BOTTOMLESS_DATABASE_ID` | Optional prefix that tells apart databases with the same file name |
| `LIBSQL_BOTTOMLESS_LOCAL` | `true`, `t`, `yes`, `y` (any case) or `1` turns replication off |
| `AWS_REGION`, `AWS_DEFAULT_REGION` | Region used for signing (default: `us-east-1`) |
| `AWS_ACCESS_KEY_ID`, `AWS_SECRET_ACCESS_KEY` | Credentials; requests are signed (Signature V4) only when both are set |
| `AWS_SESSION_TOKEN` | Optional session token |

## Command line

The `bottomless-cli` command inspects and manages the generations stored in a
bucket. The global options come before the subcommand:

```
bottomless-cli [-e ENDPOINT] [-b BUCKET] [-d DATABASE] <command> ...
```

If `-d` is left out, the database name is detected from the first generation
found in the bucket. Failures are printed as `Error: ...` and the command
exits with status 1.

List generations, newest first:

```
bottomless-cli -d data ls
bottomless-cli -d data ls --limit 5 --verbose
bottomless-cli -d data ls --newer-than 2023-01-01 --older-than 2023-02-01
```

Show the details of one generation (`-g` cannot be combined with `--limit`,
`--older-than` or `--newer-than`):

```
bottomless-cli -d data ls -g <generation-uuid>
```

Restore the database from the newest generation, or from a chosen one. The
database is written to the path given with `-d`; an existing file there is
first moved aside to `<path>.bottomless.backup`:

```
bottomless-cli -d data restore
bottomless-cli -d data restore -g <generation-uuid>
```

Remove one generation, or every generation created before a date:

```
bottomless-cli -d data rm -g <generation-uuid> --verbose
bottomless-cli -d data rm --older-than 2023-01-01
```

## Library

- `bottomless.storage`: the `ObjectStore` interface; `MemoryStore`, kept in
  memory; `S3Store`, which speaks to an S3-compatible service over HTTP with
  path-style URLs; and `store_from_env`, which builds an `S3Store` from the
  environment. Failures raise `StorageError`, `NoSuchKey` or `BucketNotFound`.
- `bottomless.replicator`: `Replicator` buffers written pages (`write`),
  uploads them (`flush`), records the last consistent frame
  (`finalize_commit`), drops uncommitted frames (`rollback_to_frame`), takes
  snapshots (`snapshot_main_db_file`), uploads a leftover local WAL
  (`maybe_replicate_wal`) and restores a database (`restore`,
  `restore_from`). A restore returns a `RestoreAction` whose `RestoreKind`
  tells the caller what to do next. `Options` selects bucket creation, CRC
  verification and compression; errors raise `ReplicatorError`.
- `bottomless.generation`: `new_generation`, `generation_to_datetime`,
  `uuid7` and `uuid7_timestamp`.
- `bottomless.crc64`: `crc64(data, initial)`, the checksum that chains frames.
- `bottomless.wal`: `BottomlessWal` wraps the write-ahead-log events of an
  open database (`frames`, `undo`, `savepoint_undo`, `checkpoint`), plus
  `pre_main_db_open`, `try_restore`, `is_local` and `wal_pathname`. Failures
  raise `WalError`.
- `bottomless.admin`: `Admin`, the listing and removal operations behind the
  command line.

A short example with the in-memory store:

```python
from bottomless.replicator import Options, Replicator
from bottomless.storage import MemoryStore

store = MemoryStore()
replicator = Replicator.create(
    Options(create_bucket_if_not_exists=True), store=store, environ={}
)
replicator.register_db("data.db")
replicator.set_page_size(4096)
replicator.write(1, bytes(4096))
last_frame = replicator.flush()
replicator.finalize_commit(last_frame, (0, 0))
```

## What this package does not do

- It does not hook into SQLite by itself. `BottomlessWal` adds replication
  around WAL operations that the caller performs and passes in as callables
  (the local frame write in `frames`, the checkpoint in `checkpoint`).
- Uploads are made one object at a time; there is no concurrent upload.
- Only TRUNCATE checkpoints are acted on; weaker requests are ignored.