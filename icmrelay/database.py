"""Key-value storage of relayer state, kept separately for every relayer ID."""

from __future__ import annotations

import abc
import enum
import json
import logging
import os
import threading
from pathlib import Path
from typing import Iterable, Protocol

import redis

from icmrelay.ids import Hash
from icmrelay.relayer_id import RelayerConfigLike, RelayerID, get_config_relayer_ids

logger = logging.getLogger(__name__)

_MAX_UINT64 = 2**64 - 1


class DatabaseError(Exception):
    """Base class of errors raised by a relayer database."""


class KeyNotFoundError(DatabaseError, LookupError):
    """The requested key has no stored value."""

    def __init__(self, message: str = "key not found") -> None:
        super().__init__(message)


class RelayerIDNotFoundError(DatabaseError, LookupError):
    """Nothing at all is stored for the relayer ID."""

    def __init__(self, message: str = "no database entry for relayer id") -> None:
        super().__init__(message)


class DatabaseMisconfigurationError(DatabaseError):
    """The database was not set up for the relayer ID it was asked about."""

    def __init__(self, message: str = "database misconfiguration") -> None:
        super().__init__(message)


class DataKey(enum.Enum):
    """Keys under which relayer state is stored."""

    LATEST_PROCESSED_BLOCK = "latestProcessedBlock"

    def __str__(self) -> str:
        return self.value


class RelayerDatabase(abc.ABC):
    """A thread-safe key-value store holding the state of each relayer ID."""

    @abc.abstractmethod
    def get(self, relayer_id: Hash, key: DataKey) -> bytes:
        """Return the value stored under ``key``; raise a lookup error if absent."""

    @abc.abstractmethod
    def put(self, relayer_id: Hash, key: DataKey, value: bytes) -> None:
        """Store ``value`` under ``key``."""


class JSONFileStorage(RelayerDatabase):
    """Keeps each relayer ID's state in its own JSON file inside one directory."""

    def __init__(self, directory: str | os.PathLike[str], relayer_ids: Iterable[RelayerID]) -> None:
        self._dir = Path(os.path.normpath(os.fspath(directory)))
        relayer_ids = list(relayer_ids)
        # The set of relayer IDs is fixed here, so the dictionaries need no lock of their own.
        self._locks: dict[Hash, threading.Lock] = {}
        self._state: dict[Hash, dict[str, str]] = {}
        for relayer_id in relayer_ids:
            self._locks[relayer_id.id] = threading.Lock()
            self._state[relayer_id.id] = {}

        if self._dir.exists():
            for relayer_id in relayer_ids:
                state = self._read(relayer_id.id)
                if state is not None:
                    self._state[relayer_id.id] = state
            return

        try:
            self._dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError:
            logger.error("failed to create directory %s", self._dir)
            raise

    @property
    def directory(self) -> Path:
        return self._dir

    def _lock_for(self, relayer_id: Hash) -> threading.Lock:
        try:
            return self._locks[relayer_id]
        except KeyError:
            raise DatabaseMisconfigurationError(
                f"database not configured for key {relayer_id}: database misconfiguration"
            ) from None

    def get(self, relayer_id: Hash, key: DataKey) -> bytes:
        with self._lock_for(relayer_id):
            state = self._read(relayer_id)
        if state is None:
            raise RelayerIDNotFoundError()
        try:
            return state[str(key)].encode("utf-8")
        except KeyError:
            raise KeyNotFoundError() from None

    def put(self, relayer_id: Hash, key: DataKey, value: bytes) -> None:
        text = bytes(value).decode("utf-8")
        logger.debug("db put relayerID=%s key=%s value=%s", relayer_id, key, text)
        with self._lock_for(relayer_id):
            state = self._state[relayer_id]
            state[str(key)] = text
            self._write(relayer_id, state)

    def _path(self, relayer_id: Hash) -> Path:
        return self._dir / f"{relayer_id}.json"

    def _write(self, relayer_id: Hash, state: dict[str, str]) -> None:
        final_path = self._path(relayer_id)
        tmp_path = final_path.with_name(final_path.name + ".tmp")
        data = json.dumps(state, indent="\t", sort_keys=True).encode("utf-8")
        # Write to a temporary file first so a failed write leaves the old file intact.
        try:
            tmp_path.write_bytes(data)
        except OSError as exc:
            raise DatabaseError(f"failed to write file: {exc}") from exc
        try:
            os.replace(tmp_path, final_path)
        except OSError as exc:
            raise DatabaseError(f"failed to rename file: {exc}") from exc

    def _read(self, relayer_id: Hash) -> dict[str, str] | None:
        """Load the stored state, or return None when there is no file yet."""
        path = self._path(relayer_id)
        if not path.exists():
            logger.debug("file does not exist: %s", path)
            return None
        try:
            raw = path.read_bytes()
        except OSError as exc:
            logger.error("failed to read file for relayerID %s", relayer_id)
            raise DatabaseError(f"failed to read file: {exc}") from exc
        try:
            loaded = json.loads(raw)
        except ValueError as exc:
            logger.error("failed to read file for relayerID %s", relayer_id)
            raise DatabaseError(f"failed to unmarshal json file: {exc}") from exc
        if loaded is None:
            return {}
        if not isinstance(loaded, dict) or not all(
            isinstance(item, str) for item in loaded.values()
        ):
            logger.error("failed to read file for relayerID %s", relayer_id)
            raise DatabaseError("failed to unmarshal json file: expected an object of strings")
        return loaded


class RedisClient(Protocol):
    def get(self, name: str) -> bytes | str | None: ...

    def set(self, name: str, value: bytes) -> object: ...


def _composite_key(relayer_id: Hash, key: DataKey) -> str:
    return f"{relayer_id.hex()}-{key}"


class RedisDatabase(RelayerDatabase):
    """Stores relayer state in Redis under ``<relayer id>-<key>`` keys."""

    def __init__(
        self,
        redis_url: str,
        relayer_ids: Iterable[RelayerID] = (),
        client: RedisClient | None = None,
    ) -> None:
        if client is None:
            try:
                client = redis.Redis.from_url(redis_url)
            except ValueError:
                logger.error("Failed to parse Redis URL %s", redis_url)
                raise
        self._client = client

    def get(self, relayer_id: Hash, key: DataKey) -> bytes:
        composite = _composite_key(relayer_id, key)
        try:
            value = self._client.get(composite)
        except Exception:
            logger.debug("Error retrieving key %s from Redis", composite)
            raise
        if value is None:
            logger.debug("Key %s not found in Redis", composite)
            raise KeyNotFoundError()
        return value.encode("utf-8") if isinstance(value, str) else bytes(value)

    def put(self, relayer_id: Hash, key: DataKey, value: bytes) -> None:
        composite = _composite_key(relayer_id, key)
        try:
            self._client.set(composite, bytes(value))
        except Exception:
            logger.error("Error storing key %s in Redis", composite)
            raise


class DatabaseConfigLike(RelayerConfigLike, Protocol):
    redis_url: str
    storage_location: str


def new_database(cfg: DatabaseConfigLike) -> RelayerDatabase:
    """Open Redis when a Redis URL is configured, the JSON file store otherwise."""
    relayer_ids = get_config_relayer_ids(cfg)
    if cfg.redis_url:
        try:
            return RedisDatabase(cfg.redis_url, relayer_ids)
        except Exception:
            logger.error("Failed to create Redis database")
            raise
    try:
        return JSONFileStorage(cfg.storage_location, relayer_ids)
    except Exception:
        logger.error("Failed to create JSON database")
        raise


def is_key_not_found_error(err: BaseException | None) -> bool:
    """Report whether ``err``, or an error it was raised from, means the key is absent."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, (KeyNotFoundError, RelayerIDNotFoundError)):
            return True
        seen.add(id(err))
        err = err.__cause__
    return False


def _parse_uint64(text: str) -> int:
    if not (text.isascii() and text.isdigit()):
        raise ValueError(f"invalid unsigned integer: {text!r}")
    number = int(text)
    if number > _MAX_UINT64:
        raise ValueError(f"value out of range: {text!r}")
    return number


def get_latest_processed_block_height(db: RelayerDatabase, relayer_id: RelayerID) -> int:
    """Read the latest processed block height stored for ``relayer_id``."""
    data = db.get(relayer_id.id, DataKey.LATEST_PROCESSED_BLOCK)
    return _parse_uint64(bytes(data).decode("utf-8"))


def calculate_starting_block_height(
    db: RelayerDatabase,
    relayer_id: RelayerID,
    process_historical_blocks_from_height: int,
    current_height: int,
) -> int:
    """Choose the block height to resume processing from.

    With a stored height, the larger of it and the configured height wins. Without one,
    the configured height is used, or the chain head when none is configured.
    """
    try:
        latest = get_latest_processed_block_height(db, relayer_id)
    except Exception as exc:
        if is_key_not_found_error(exc):
            if process_historical_blocks_from_height == 0:
                return current_height
            return process_historical_blocks_from_height
        logger.error("Failed to get latest block from database for relayerID %s", relayer_id.id)
        raise

    if latest > process_historical_blocks_from_height:
        logger.info(
            "Processing historical blocks from the latest processed block in the DB: "
            "relayerID=%s latestProcessedBlock=%d",
            relayer_id.id,
            latest,
        )
        return latest
    logger.info(
        "Processing historical blocks from the configured start block height: "
        "relayerID=%s processHistoricalBlocksFromHeight=%d",
        relayer_id.id,
        process_historical_blocks_from_height,
    )
    return process_historical_blocks_from_height