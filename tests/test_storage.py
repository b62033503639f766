import hashlib
from datetime import datetime, timezone

import httpx
import pytest
import respx

from bottomless.storage import (
    BucketNotFound,
    MemoryStore,
    NoSuchKey,
    ObjectInfo,
    S3Store,
    StorageError,
    store_from_env,
)

ENDPOINT = "http://localhost:9000"
FIXED = datetime(2023, 3, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    memory = MemoryStore(clock=lambda: FIXED)
    memory.create_bucket("bucket")
    return memory


def test_head_missing_bucket_raises():
    with pytest.raises(BucketNotFound):
        MemoryStore().head_bucket("nope")


def test_put_get_round_trip(store):
    store.put_object("bucket", "a/b", b"payload")
    assert store.get_object("bucket", "a/b") == b"payload"


def test_get_missing_key(store):
    with pytest.raises(NoSuchKey):
        store.get_object("bucket", "missing")


def test_put_into_missing_bucket(store):
    with pytest.raises(BucketNotFound):
        store.put_object("other", "k", b"x")


def test_no_such_key_is_storage_error(store):
    with pytest.raises(StorageError):
        store.get_object("bucket", "missing")


def test_delete_removes_and_tolerates_missing(store):
    store.put_object("bucket", "k", b"x")
    store.delete_object("bucket", "k")
    store.delete_object("bucket", "k")
    with pytest.raises(NoSuchKey):
        store.get_object("bucket", "k")


def test_head_object(store):
    store.put_object("bucket", "k", b"12345")
    assert store.head_object("bucket", "k") == ObjectInfo("k", 5, FIXED)


def test_list_prefix_sorted(store):
    for key in ["db-2/x", "db-1/b", "db-1/a", "other"]:
        store.put_object("bucket", key, b"")
    result = store.list_objects("bucket", prefix="db-")
    assert [info.key for info in result.contents] == ["db-1/a", "db-1/b", "db-2/x"]
    assert result.is_truncated is False
    assert result.next_marker is None


def test_list_with_delimiter_rolls_up(store):
    for key in ["db-1/a", "db-1/b", "db-2/x", "db-top"]:
        store.put_object("bucket", key, b"")
    result = store.list_objects("bucket", prefix="db", delimiter="/")
    assert result.common_prefixes == ["db-1/", "db-2/"]
    assert [info.key for info in result.contents] == ["db-top"]


def test_list_pagination_with_marker(store):
    keys = [f"k{i}" for i in range(5)]
    for key in keys:
        store.put_object("bucket", key, b"")
    seen = []
    marker = None
    while True:
        page = store.list_objects("bucket", marker=marker, max_keys=2)
        seen.extend(info.key for info in page.contents)
        if not page.is_truncated:
            break
        marker = page.next_marker
    assert seen == keys


def test_list_prefix_pagination_skips_marker_prefix(store):
    for key in ["db-1/a", "db-1/b", "db-2/a"]:
        store.put_object("bucket", key, b"")
    first = store.list_objects("bucket", prefix="db", delimiter="/", max_keys=1)
    assert first.common_prefixes == ["db-1/"]
    assert first.next_marker == "db-1/"
    second = store.list_objects("bucket", prefix="db", delimiter="/", marker=first.next_marker)
    assert second.common_prefixes == ["db-2/"]


def test_list_negative_max_keys(store):
    with pytest.raises(ValueError):
        store.list_objects("bucket", max_keys=-1)


def test_s3_get_object_signed():
    with respx.mock() as mock:
        route = mock.route(method="GET", host="localhost", path="/bucket/db-1/key").respond(
            200, content=b"data"
        )
        with S3Store(ENDPOINT, access_key_id="placeholder", secret_access_key="secret") as s3:
            assert s3.get_object("bucket", "db-1/key") == b"data"
        request = route.calls.last.request
        assert request.headers["authorization"].split()[0] == "AWS4-HMAC-SHA256"
        assert request.headers["x-amz-content-sha256"] == hashlib.sha256(b"").hexdigest()


def test_s3_put_object_sends_body():
    with respx.mock() as mock:
        put_route = mock.route(method="PUT", host="localhost", path="/bucket/k").respond(200)
        mock.route(method="GET", host="localhost", path="/bucket/k").respond(
            200, content=b"body"
        )
        with S3Store(ENDPOINT) as s3:
            s3.put_object("bucket", "k", b"body")
            fetched = s3.get_object("bucket", "k")
        request = put_route.calls.last.request
        assert put_route.call_count == 1
        assert request.content == b"body"
        assert request.headers["x-amz-content-sha256"] == hashlib.sha256(b"body").hexdigest()
        assert "authorization" not in request.headers
    assert fetched == b"body"


def test_s3_missing_key():
    with respx.mock() as mock:
        mock.route(method="GET", host="localhost", path="/bucket/k").respond(
            404, content=b"<Error><Code>NoSuchKey</Code></Error>"
        )
        with S3Store(ENDPOINT) as s3, pytest.raises(NoSuchKey):
            s3.get_object("bucket", "k")


def test_s3_missing_bucket():
    with respx.mock() as mock:
        mock.route(method="HEAD", host="localhost", path="/bucket").respond(404)
        with S3Store(ENDPOINT) as s3, pytest.raises(BucketNotFound):
            s3.head_bucket("bucket")


def test_s3_server_error():
    with respx.mock() as mock:
        mock.route(method="DELETE", host="localhost", path="/bucket/k").respond(500)
        with S3Store(ENDPOINT) as s3, pytest.raises(StorageError):
            s3.delete_object("bucket", "k")


def test_s3_transport_error():
    with respx.mock() as mock:
        mock.route(method="GET", host="localhost", path="/bucket/k").mock(
            side_effect=httpx.ConnectError("refused")
        )
        with S3Store(ENDPOINT) as s3, pytest.raises(StorageError):
            s3.get_object("bucket", "k")


def test_s3_list_objects_parses_listing():
    listing = (
        b"<ListBucketResult><IsTruncated>true</IsTruncated>"
        b"<Contents><Key>db-top</Key><Size>7</Size>"
        b"<LastModified>2023-03-01T10:00:00.000Z</LastModified></Contents>"
        b"<CommonPrefixes><Prefix>db-1/</Prefix></CommonPrefixes>"
        b"<NextMarker>db-top</NextMarker></ListBucketResult>"
    )
    with respx.mock() as mock:
        route = mock.route(method="GET", host="localhost", path="/bucket").respond(
            200, content=listing
        )
        with S3Store(ENDPOINT) as s3:
            result = s3.list_objects("bucket", prefix="db", delimiter="/", max_keys=2)
        params = route.calls.last.request.url.params
        assert params["prefix"] == "db"
        assert params["delimiter"] == "/"
        assert params["max-keys"] == "2"
    assert result.contents == [ObjectInfo("db-top", 7, FIXED)]
    assert result.common_prefixes == ["db-1/"]
    assert result.is_truncated is True
    assert result.next_marker == "db-top"


def test_s3_head_object_last_modified():
    with respx.mock() as mock:
        mock.route(method="HEAD", host="localhost", path="/bucket/k").respond(
            200, headers={"Last-Modified": "Wed, 01 Mar 2023 10:00:00 GMT"}
        )
        with S3Store(ENDPOINT) as s3:
            info = s3.head_object("bucket", "k")
    assert info.key == "k"
    assert info.last_modified == FIXED


def test_invalid_endpoint():
    with pytest.raises(StorageError):
        S3Store("not a url")


def test_store_from_env():
    s3 = store_from_env(
        {"LIBSQL_BOTTOMLESS_ENDPOINT": "http://localhost:9000/", "AWS_REGION": "eu-west-1"}
    )
    try:
        assert s3.endpoint == ENDPOINT
        assert s3.region == "eu-west-1"
    finally:
        s3.close()