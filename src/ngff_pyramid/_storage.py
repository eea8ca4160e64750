"""Key-value storage over a local directory or an anonymous S3 bucket.

Both backends expose the same small surface: keys are slash-delimited strings
relative to the store root, objects are read as byte streams, and keys can be
listed either by suffix (to discover ``.zgroup``/``.zarray`` nodes) or as a
lazy walk of every leaf object under a prefix.

The object-store backend is selected from the textual form of the root::

    https://<endpoint-host>/<bucket>/<key/prefix>/image.zarr

and issues anonymous, path-style requests with a single attempt per request.
"""

from __future__ import annotations

import logging
import posixpath
from abc import ABC, abstractmethod
from typing import IO, TYPE_CHECKING, Any, NamedTuple

from fsspec.implementations.local import LocalFileSystem, make_path_posix

from ._errors import StorageIOError, StoreKeyNotFoundError
from ._util import KEY_DELIMITER, join_key

if TYPE_CHECKING:
    import os
    from collections.abc import Iterator

    from typing_extensions import Self

__all__ = [
    "KeyValueStore",
    "LocalStore",
    "ObjectStoreLocation",
    "S3Store",
    "is_object_store_root",
    "open_store",
    "parse_object_store_root",
]

logger = logging.getLogger(__name__)

_PROTOCOL_MARKERS = ("https:", "http:")


class KeyValueStore(ABC):
    """Mapping of string keys to bytes rooted at :attr:`root`."""

    def __init__(self, root: str) -> None:
        self._root = root

    @property
    def root(self) -> str:
        return self._root

    @property
    def read_only(self) -> bool:
        """Whether writes are rejected by this backend."""
        return False

    # ---------------- primitive operations ----------------

    @abstractmethod
    def open_read(self, key: str) -> IO[bytes]:
        """Open the object at `key` for reading.

        Raises
        ------
        StoreKeyNotFoundError
            If no object exists at `key`.
        StorageIOError
            If the backend fails to produce the stream.
        """

    @abstractmethod
    def open_write(self, key: str) -> IO[bytes]:
        """Open a byte sink that replaces the object at `key` on close."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete `key`. Directory-like keys are removed recursively."""

    @abstractmethod
    def iter_object_keys(self, prefix: str = "") -> Iterator[str]:
        """Lazily yield every leaf key under `prefix`, relative to the root."""

    def close(self) -> None:  # noqa: B027
        """Release backend resources."""

    # ---------------- derived operations ----------------

    def read_bytes(self, key: str) -> bytes:
        with self.open_read(key) as f:
            return f.read()

    def get(self, key: str) -> bytes | None:
        """Return the object at `key`, or None if it does not exist."""
        try:
            return self.read_bytes(key)
        except StoreKeyNotFoundError:
            return None

    def write_bytes(self, key: str, data: bytes) -> None:
        with self.open_write(key) as f:
            f.write(data)

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def list_keys_with_suffix(self, suffix: str, prefix: str = "") -> list[str]:
        """Return the sorted keys of objects whose name contains `suffix`.

        Each returned key has the suffix (and the delimiter before it) stripped,
        so ``"a/b/.zarray"`` is reported as ``"a/b"`` for ``suffix=".zarray"``.
        Keys that reduce to the empty string (the store root itself) are
        omitted.  Unreachable prefixes produce an empty list.
        """
        found: set[str] = set()
        for key in self.iter_object_keys(prefix):
            if (idx := key.find(suffix)) < 0:
                continue
            if stripped := key[:idx].rstrip(KEY_DELIMITER):
                found.add(stripped)
        return sorted(found)

    def list_leaf_keys_under(self, prefix: str = "") -> Iterator[str]:
        """Alias of :meth:`iter_object_keys`."""
        return self.iter_object_keys(prefix)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._root!r})"


class LocalStore(KeyValueStore):
    """Store backed by a local directory, accessed through fsspec."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        super().__init__(make_path_posix(str(root)).rstrip(KEY_DELIMITER))
        self._fs = LocalFileSystem()

    @property
    def fs(self) -> LocalFileSystem:
        return self._fs

    def full_path(self, key: str) -> str:
        return posixpath.join(self._root, key) if key else self._root

    def open_read(self, key: str) -> IO[bytes]:
        path = self.full_path(key)
        try:
            return self._fs.open(path, "rb")
        except (FileNotFoundError, IsADirectoryError) as e:
            raise StoreKeyNotFoundError(key) from e
        except OSError as e:
            raise StorageIOError(f"Could not open {path!r}: {e}") from e

    def open_write(self, key: str) -> IO[bytes]:
        path = self.full_path(key)
        try:
            self._fs.makedirs(posixpath.dirname(path), exist_ok=True)
            return self._fs.open(path, "wb")
        except OSError as e:
            raise StorageIOError(f"Could not write {path!r}: {e}") from e

    def delete(self, key: str) -> None:
        path = self.full_path(key)
        if not self._fs.exists(path):
            return
        try:
            self._fs.rm(path, recursive=True)
        except OSError as e:
            raise StorageIOError(f"Could not delete {path!r}: {e}") from e

    def iter_object_keys(self, prefix: str = "") -> Iterator[str]:
        base = self.full_path(prefix.strip(KEY_DELIMITER))
        if not self._fs.isdir(base):
            return
        for dirpath, _dirs, files in self._fs.walk(base):
            rel_dir = posixpath.relpath(make_path_posix(dirpath), self._root)
            for name in sorted(files):
                yield name if rel_dir == "." else f"{rel_dir}/{name}"


# ---------------------- object store ----------------------


class ObjectStoreLocation(NamedTuple):
    """Endpoint, bucket and key prefix derived from an object-store root."""

    endpoint: str
    bucket: str
    prefix: str

    @property
    def endpoint_url(self) -> str:
        return f"https://{self.endpoint}"


def is_object_store_root(root: str | os.PathLike[str]) -> bool:
    """Return True if `root` encodes an object-store endpoint."""
    return str(root).lower().startswith(_PROTOCOL_MARKERS)


def parse_object_store_root(root: str) -> ObjectStoreLocation:
    """Split an object-store root into endpoint host, bucket and key prefix.

    Examples
    --------
    >>> parse_object_store_root("https://s3.example.org/idr/zarr/v0.4/6001240.zarr")
    ObjectStoreLocation(endpoint='s3.example.org', bucket='idr', prefix='zarr/v0.4/6001240.zarr')
    """
    if not is_object_store_root(root):
        raise ValueError(f"Not an object-store root: {root!r}")
    # the protocol marker is segment 0; normalized paths collapse the '//'
    segments = [s for s in root.split(KEY_DELIMITER) if s]
    if len(segments) < 3:
        raise ValueError(
            f"Object-store root {root!r} must name an endpoint host and a bucket"
        )
    return ObjectStoreLocation(
        endpoint=segments[1],
        bucket=segments[2],
        prefix=KEY_DELIMITER.join(segments[3:]),
    )


def _make_s3_filesystem(location: ObjectStoreLocation) -> Any:
    try:
        import s3fs
    except ImportError as e:
        msg = (
            "s3fs is required to read object-store roots.\n"
            "Install with: 'pip install ngff-pyramid[s3]' or 'pip install s3fs'"
        )
        raise ImportError(msg) from e

    fs = s3fs.S3FileSystem(
        anon=True,
        client_kwargs={"endpoint_url": location.endpoint_url},
        config_kwargs={
            "s3": {"addressing_style": "path"},
            "retries": {"max_attempts": 1, "mode": "standard"},
        },
        skip_instance_cache=True,
    )
    # s3fs retries on its own on top of botocore
    fs.retries = 1
    return fs


class S3Store(KeyValueStore):
    """Read-only store over an S3-compatible bucket using anonymous requests.

    Parameters
    ----------
    root : str
        Object-store root, ``https://<host>/<bucket>/<prefix...>``.
    filesystem : s3fs.S3FileSystem, optional
        Filesystem to issue requests through.  By default one anonymous,
        path-style client is created for the lifetime of the store.
    """

    def __init__(self, root: str, filesystem: Any = None) -> None:
        super().__init__(root.rstrip(KEY_DELIMITER))
        self._location = parse_object_store_root(self._root)
        self._fs = filesystem if filesystem is not None else _make_s3_filesystem(
            self._location
        )
        logger.debug("Opened object store %s", self._location)

    @property
    def read_only(self) -> bool:
        return True

    @property
    def fs(self) -> Any:
        return self._fs

    @property
    def location(self) -> ObjectStoreLocation:
        return self._location

    def object_key(self, key: str) -> str:
        """Return the bucket-relative object key for store key `key`."""
        return join_key(self._location.prefix, key)

    def open_read(self, key: str) -> IO[bytes]:
        if self._fs is None:
            raise StorageIOError("Store is closed")
        path = f"{self._location.bucket}/{self.object_key(key)}"
        try:
            return self._fs.open(path, "rb")
        except FileNotFoundError as e:
            raise StoreKeyNotFoundError(key) from e
        except OSError as e:
            raise StorageIOError(f"Could not read {path!r}: {e}") from e

    def open_write(self, key: str) -> IO[bytes]:
        raise StorageIOError(f"Object-store roots are read-only: {self._root!r}")

    def delete(self, key: str) -> None:
        raise StorageIOError(f"Object-store roots are read-only: {self._root!r}")

    def iter_object_keys(self, prefix: str = "") -> Iterator[str]:
        """Yield keys under `prefix`, paging while the listing is truncated."""
        if self._fs is None:
            raise StorageIOError("Store is closed")
        base = self.object_key(prefix.strip(KEY_DELIMITER))
        request: dict[str, Any] = {
            "Bucket": self._location.bucket,
            "Prefix": f"{base}/" if base else "",
        }
        strip = len(self._location.prefix) + 1 if self._location.prefix else 0
        page = 0
        while True:
            try:
                response = self._fs.call_s3("list_objects_v2", **request)
            except OSError as e:
                raise StorageIOError(
                    f"Listing {request['Prefix']!r} in bucket "
                    f"{self._location.bucket!r} failed: {e}"
                ) from e
            page += 1
            contents = response.get("Contents") or []
            logger.debug("Listing page %d: %d objects", page, len(contents))
            for obj in contents:
                yield obj["Key"][strip:]
            if not response.get("IsTruncated"):
                break
            token = response.get("NextContinuationToken")
            if not token:
                break
            request["ContinuationToken"] = token

    def close(self) -> None:
        self._fs = None


def open_store(root: str | os.PathLike[str], *, filesystem: Any = None) -> KeyValueStore:
    """Return the backend appropriate for `root`.

    Roots starting with an ``http(s):`` protocol marker are served by
    :class:`S3Store`; everything else is a :class:`LocalStore`.
    """
    root_str = str(root)
    if is_object_store_root(root_str):
        return S3Store(root_str, filesystem=filesystem)
    return LocalStore(root_str)
