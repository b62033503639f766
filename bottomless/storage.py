"""Object storage backends: an in-memory store and an S3-compatible HTTP client."""

from __future__ import annotations

import abc
import hashlib
import hmac
import os
import urllib.parse
import xml.etree.ElementTree as ET
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

DEFAULT_MAX_KEYS = 1000


class StorageError(Exception):
    """Raised when the object store reports a failure."""


class NoSuchKey(StorageError):
    """Raised when an object does not exist."""


class BucketNotFound(StorageError):
    """Raised when a bucket does not exist."""


@dataclass(frozen=True)
class ObjectInfo:
    """Metadata of one stored object."""

    key: str
    size: int
    last_modified: datetime | None = None


@dataclass
class ListResult:
    """One page of a bucket listing."""

    contents: list[ObjectInfo] = field(default_factory=list)
    common_prefixes: list[str] = field(default_factory=list)
    is_truncated: bool = False
    next_marker: str | None = None


class ObjectStore(abc.ABC):
    """The subset of S3 operations the replicator relies on."""

    @abc.abstractmethod
    def head_bucket(self, bucket: str) -> None:
        """Check that a bucket exists; raise BucketNotFound otherwise."""

    @abc.abstractmethod
    def create_bucket(self, bucket: str) -> None:
        """Create a bucket."""

    @abc.abstractmethod
    def put_object(self, bucket: str, key: str, body: bytes) -> None:
        """Store an object under the given key."""

    @abc.abstractmethod
    def get_object(self, bucket: str, key: str) -> bytes:
        """Return the body of an object."""

    @abc.abstractmethod
    def delete_object(self, bucket: str, key: str) -> None:
        """Delete an object; deleting a missing key is not an error."""

    @abc.abstractmethod
    def head_object(self, bucket: str, key: str) -> ObjectInfo:
        """Return metadata of an object."""

    @abc.abstractmethod
    def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        delimiter: str | None = None,
        marker: str | None = None,
        max_keys: int = DEFAULT_MAX_KEYS,
    ) -> ListResult:
        """List keys in lexicographic order, starting after ``marker``."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore(ObjectStore):
    """An object store kept entirely in memory."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._buckets: dict[str, dict[str, tuple[bytes, datetime]]] = {}
        self._clock = clock or _utcnow

    def _bucket(self, bucket: str) -> dict[str, tuple[bytes, datetime]]:
        try:
            return self._buckets[bucket]
        except KeyError:
            raise BucketNotFound(f"bucket {bucket} does not exist") from None

    def head_bucket(self, bucket: str) -> None:
        self._bucket(bucket)

    def create_bucket(self, bucket: str) -> None:
        self._buckets.setdefault(bucket, {})

    def put_object(self, bucket: str, key: str, body: bytes) -> None:
        self._bucket(bucket)[key] = (bytes(body), self._clock())

    def get_object(self, bucket: str, key: str) -> bytes:
        try:
            return self._bucket(bucket)[key][0]
        except KeyError:
            raise NoSuchKey(f"key {key} does not exist") from None

    def delete_object(self, bucket: str, key: str) -> None:
        self._bucket(bucket).pop(key, None)

    def head_object(self, bucket: str, key: str) -> ObjectInfo:
        try:
            body, modified = self._bucket(bucket)[key]
        except KeyError:
            raise NoSuchKey(f"key {key} does not exist") from None
        return ObjectInfo(key=key, size=len(body), last_modified=modified)

    def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        delimiter: str | None = None,
        marker: str | None = None,
        max_keys: int = DEFAULT_MAX_KEYS,
    ) -> ListResult:
        if max_keys < 0:
            raise ValueError("max_keys must not be negative")
        objects = self._bucket(bucket)
        prefix = prefix or ""
        candidates = sorted(
            key
            for key in objects
            if key.startswith(prefix) and (marker is None or key > marker)
        )
        result = ListResult()
        seen_prefixes: set[str] = set()
        last_entry: str | None = None
        count = 0
        for key in candidates:
            common = None
            if delimiter:
                rest = key[len(prefix):]
                index = rest.find(delimiter)
                if index >= 0:
                    common = prefix + rest[: index + len(delimiter)]
                    if common in seen_prefixes or (marker is not None and common <= marker):
                        continue
            if count >= max_keys:
                result.is_truncated = True
                break
            count += 1
            if common is not None:
                seen_prefixes.add(common)
                result.common_prefixes.append(common)
                last_entry = common
            else:
                body, modified = objects[key]
                result.contents.append(ObjectInfo(key, len(body), modified))
                last_entry = key
        if result.is_truncated:
            result.next_marker = last_entry
        return result


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in element if _local_name(child.tag) == name]


def _child_text(element: ET.Element, name: str) -> str | None:
    for child in _children(element, name):
        return child.text or ""
    return None


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class S3Store(ObjectStore):
    """An S3-compatible object store spoken to over HTTP with path-style URLs."""

    def __init__(
        self,
        endpoint: str,
        region: str = "us-east-1",
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        session_token: str | None = None,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        parts = urllib.parse.urlsplit(self.endpoint)
        if not parts.scheme or not parts.netloc:
            raise StorageError(f"invalid endpoint: {endpoint}")
        self.region = region
        self._scheme = parts.scheme
        self._host = parts.netloc
        self._base_path = parts.path
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._session_token = session_token
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=timeout)

    def __enter__(self) -> S3Store:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Release the underlying HTTP client if this store created it."""
        if self._owns_client:
            self._client.close()

    def _sign(self, method: str, path: str, query: str, headers: dict[str, str], payload_hash: str,
              now: datetime) -> None:
        if not (self._access_key_id and self._secret_access_key):
            return
        date = now.strftime("%Y%m%d")
        signed = sorted(headers)
        canonical_headers = "".join(f"{name}:{headers[name].strip()}\n" for name in signed)
        signed_headers = ";".join(signed)
        canonical_request = "\n".join(
            [method, path, query, canonical_headers, signed_headers, payload_hash]
        )
        scope = f"{date}/{self.region}/s3/aws4_request"
        string_to_sign = "\n".join(
            ["AWS4-HMAC-SHA256", headers["x-amz-date"], scope,
             _sha256_hex(canonical_request.encode("utf-8"))]
        )
        key = _hmac(("AWS4" + self._secret_access_key).encode("utf-8"), date)
        for part in (self.region, "s3", "aws4_request"):
            key = _hmac(key, part)
        signature = hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()
        headers["authorization"] = (
            f"AWS4-HMAC-SHA256 Credential={self._access_key_id}/{scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )

    def _request(
        self,
        method: str,
        bucket: str,
        key: str | None = None,
        params: Mapping[str, str] | None = None,
        body: bytes = b"",
    ) -> httpx.Response:
        path = f"{self._base_path}/{urllib.parse.quote(bucket, safe='')}"
        if key is not None:
            path += "/" + urllib.parse.quote(key, safe="/")
        query = "&".join(
            f"{urllib.parse.quote(name, safe='-_.~')}={urllib.parse.quote(value, safe='-_.~')}"
            for name, value in sorted((params or {}).items())
        )
        now = _utcnow()
        payload_hash = _sha256_hex(body)
        headers = {
            "host": self._host,
            "x-amz-content-sha256": payload_hash,
            "x-amz-date": now.strftime("%Y%m%dT%H%M%SZ"),
        }
        if self._session_token:
            headers["x-amz-security-token"] = self._session_token
        self._sign(method, path, query, headers, payload_hash, now)
        url = f"{self._scheme}://{self._host}{path}"
        if query:
            url += "?" + query
        try:
            return self._client.request(method, url, headers=headers, content=body or None)
        except httpx.HTTPError as exc:
            raise StorageError(f"{method} {url} failed: {exc}") from exc

    @staticmethod
    def _error_code(response: httpx.Response) -> str | None:
        if not response.content:
            return None
        try:
            root = ET.fromstring(response.content)
        except ET.ParseError:
            return None
        return _child_text(root, "Code")

    def _check(self, response: httpx.Response, bucket: str, key: str | None = None) -> None:
        if response.status_code < 300:
            return
        code = self._error_code(response)
        if code == "NoSuchBucket" or (response.status_code == 404 and key is None):
            raise BucketNotFound(f"bucket {bucket} does not exist")
        if response.status_code == 404 or code == "NoSuchKey":
            raise NoSuchKey(f"key {key} does not exist")
        raise StorageError(
            f"request failed with status {response.status_code}" + (f": {code}" if code else "")
        )

    def head_bucket(self, bucket: str) -> None:
        self._check(self._request("HEAD", bucket), bucket)

    def create_bucket(self, bucket: str) -> None:
        body = b""
        if self.region != "us-east-1":
            body = (
                "<CreateBucketConfiguration><LocationConstraint>"
                f"{self.region}</LocationConstraint></CreateBucketConfiguration>"
            ).encode("utf-8")
        self._check(self._request("PUT", bucket, body=body), bucket)

    def put_object(self, bucket: str, key: str, body: bytes) -> None:
        self._check(self._request("PUT", bucket, key, body=bytes(body)), bucket, key)

    def get_object(self, bucket: str, key: str) -> bytes:
        response = self._request("GET", bucket, key)
        self._check(response, bucket, key)
        return response.content

    def delete_object(self, bucket: str, key: str) -> None:
        self._check(self._request("DELETE", bucket, key), bucket, key)

    def head_object(self, bucket: str, key: str) -> ObjectInfo:
        response = self._request("HEAD", bucket, key)
        self._check(response, bucket, key)
        try:
            size = int(response.headers.get("content-length", "0"))
        except ValueError:
            size = 0
        modified = None
        if "last-modified" in response.headers:
            try:
                modified = parsedate_to_datetime(response.headers["last-modified"])
            except (TypeError, ValueError):
                modified = None
        return ObjectInfo(key=key, size=size, last_modified=modified)

    def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        delimiter: str | None = None,
        marker: str | None = None,
        max_keys: int = DEFAULT_MAX_KEYS,
    ) -> ListResult:
        if max_keys < 0:
            raise ValueError("max_keys must not be negative")
        params = {"max-keys": str(max_keys)}
        if prefix:
            params["prefix"] = prefix
        if delimiter:
            params["delimiter"] = delimiter
        if marker is not None:
            params["marker"] = marker
        response = self._request("GET", bucket, params=params)
        self._check(response, bucket)
        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as exc:
            raise StorageError(f"malformed listing: {exc}") from exc
        result = ListResult()
        for entry in _children(root, "Contents"):
            size_text = _child_text(entry, "Size") or "0"
            result.contents.append(
                ObjectInfo(
                    key=_child_text(entry, "Key") or "",
                    size=int(size_text) if size_text.isdigit() else 0,
                    last_modified=_parse_iso(_child_text(entry, "LastModified")),
                )
            )
        for entry in _children(root, "CommonPrefixes"):
            value = _child_text(entry, "Prefix")
            if value is not None:
                result.common_prefixes.append(value)
        result.is_truncated = (_child_text(root, "IsTruncated") or "").lower() == "true"
        if result.is_truncated:
            result.next_marker = _child_text(root, "NextMarker") or None
            if result.next_marker is None:
                last = [info.key for info in result.contents] + result.common_prefixes
                result.next_marker = max(last) if last else None
        return result


def store_from_env(environ: Mapping[str, str] | None = None) -> S3Store:
    """Build an S3 store from the environment (endpoint, region and credentials)."""
    env = os.environ if environ is None else environ
    region = env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION") or "us-east-1"
    endpoint = env.get("LIBSQL_BOTTOMLESS_ENDPOINT") or f"https://s3.{region}.amazonaws.com"
    return S3Store(
        endpoint,
        region=region,
        access_key_id=env.get("AWS_ACCESS_KEY_ID"),
        secret_access_key=env.get("AWS_SECRET_ACCESS_KEY"),
        session_token=env.get("AWS_SESSION_TOKEN"),
    )