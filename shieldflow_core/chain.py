"""
Blockchain commitment-log sources.

The reconciler needs two things from the chain:

  - the authoritative tree state ``(root, leaf_count)``
  - the ordered stream of ``(leaf_index, commitment)`` pairs extracted
    from historical transactions

Commitments and roots are 32-byte little-endian field elements.  Fetches
are paginated and may be rate-limited, so every page request is retried
on :class:`TransientFetchError` with a delay that grows with the attempt
number; after the last attempt :class:`LogFetchError` is raised.
"""

from __future__ import annotations

import asyncio
import logging
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar, Union

import aiohttp

from shieldflow_core.errors import (
    FieldRangeError,
    LogFetchError,
    TransientFetchError,
    ValidationError,
)
from shieldflow_core.field import from_bytes_le

logger = logging.getLogger("shieldflow_chain")

T = TypeVar("T")

# Tree account layout: discriminator(8) | pool(32) | root(32) | leaf_count u64 LE | depth u8
TREE_ACCOUNT_ROOT_OFFSET = 8 + 32
TREE_ACCOUNT_LEAF_COUNT_OFFSET = TREE_ACCOUNT_ROOT_OFFSET + 32
TREE_ACCOUNT_DEPTH_OFFSET = TREE_ACCOUNT_LEAF_COUNT_OFFSET + 8
TREE_ACCOUNT_MIN_LEN = TREE_ACCOUNT_DEPTH_OFFSET + 1

DEFAULT_PAGE_SIZE = 100


# ─── Data types ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ChainState:
    """Authoritative tree state read from on-chain storage."""
    root: int
    leaf_count: int
    depth: Optional[int] = None


@dataclass(frozen=True)
class LogEntry:
    leaf_index: int
    commitment: int

    @classmethod
    def from_wire(cls, leaf_index: int, commitment: Union[bytes, int]) -> "LogEntry":
        if isinstance(commitment, (bytes, bytearray)):
            commitment = from_bytes_le(bytes(commitment))
        if leaf_index < 0:
            raise ValidationError(f"negative leaf index {leaf_index}")
        return cls(leaf_index=leaf_index, commitment=commitment)


@dataclass
class LogPage:
    entries: list[LogEntry] = field(default_factory=list)
    next_cursor: Optional[int] = None


def parse_tree_account(data: bytes) -> ChainState:
    """Decode root, leaf count and depth from raw tree-account bytes."""
    if len(data) < TREE_ACCOUNT_MIN_LEN:
        raise ValidationError(
            f"tree account is {len(data)} bytes, need at least {TREE_ACCOUNT_MIN_LEN}"
        )
    root = from_bytes_le(
        data[TREE_ACCOUNT_ROOT_OFFSET:TREE_ACCOUNT_ROOT_OFFSET + 32]
    )
    (leaf_count,) = struct.unpack_from("<Q", data, TREE_ACCOUNT_LEAF_COUNT_OFFSET)
    depth = data[TREE_ACCOUNT_DEPTH_OFFSET]
    return ChainState(root=root, leaf_count=leaf_count, depth=depth)


# ─── Sources ─────────────────────────────────────────────────────────────


class CommitmentLogSource(ABC):
    """Where the authoritative commitment log comes from."""

    @abstractmethod
    async def fetch_state(self) -> ChainState:
        ...

    @abstractmethod
    async def fetch_page(self, cursor: int, limit: int) -> LogPage:
        """Entries starting at *cursor*; ``next_cursor`` is None at the end."""

    async def close(self) -> None:
        return None


class StaticLogSource(CommitmentLogSource):
    """In-memory log (replays, tests, offline rebuilds)."""

    def __init__(
        self,
        entries: Iterable[tuple[int, Union[bytes, int]]],
        state: Optional[ChainState] = None,
    ) -> None:
        self.entries = [LogEntry.from_wire(i, c) for i, c in entries]
        self.state = state

    async def fetch_state(self) -> ChainState:
        if self.state is None:
            raise LogFetchError("static source has no chain state")
        return self.state

    async def fetch_page(self, cursor: int, limit: int) -> LogPage:
        chunk = self.entries[cursor:cursor + limit]
        end = cursor + len(chunk)
        return LogPage(entries=chunk, next_cursor=end if end < len(self.entries) else None)


class HttpLogSource(CommitmentLogSource):
    """Indexer reached over HTTP.

    ``GET {base}/state``       -> ``{"root": <hex LE>, "leafCount": n}``
    ``GET {base}/commitments`` -> ``{"entries": [{"leafIndex", "commitment"}],
                                     "nextCursor": n | null}``
    """

    def __init__(self, base_url: str, request_timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self._http_session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self._http_session = aiohttp.ClientSession(timeout=timeout)
        return self._http_session

    async def _get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.get(url, params=params) as resp:
                if resp.status == 429 or resp.status >= 500:
                    raise TransientFetchError(f"GET {path}: HTTP {resp.status}")
                if resp.status != 200:
                    raise LogFetchError(f"GET {path}: HTTP {resp.status}")
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientFetchError(f"GET {path}: {type(exc).__name__}") from exc

    async def fetch_state(self) -> ChainState:
        data = await self._get_json("/state")
        try:
            return ChainState(
                root=from_bytes_le(bytes.fromhex(data["root"])),
                leaf_count=int(data["leafCount"]),
                depth=data.get("depth"),
            )
        except (KeyError, TypeError, ValueError, FieldRangeError) as exc:
            raise LogFetchError(f"malformed state response: {exc}") from exc

    async def fetch_page(self, cursor: int, limit: int) -> LogPage:
        data = await self._get_json("/commitments", {"cursor": cursor, "limit": limit})
        try:
            entries = [
                LogEntry.from_wire(int(e["leafIndex"]), bytes.fromhex(e["commitment"]))
                for e in data["entries"]
            ]
            nxt = data.get("nextCursor")
        except (KeyError, TypeError, ValueError, ValidationError) as exc:
            raise LogFetchError(f"malformed commitments response: {exc}") from exc
        return LogPage(entries=entries, next_cursor=None if nxt is None else int(nxt))

    async def close(self) -> None:
        if self._http_session is not None and not self._http_session.closed:
            await self._http_session.close()


# ─── Fetch with retry ────────────────────────────────────────────────────


async def with_retry(
    op: Callable[[], Awaitable[T]],
    what: str,
    max_attempts: int = 3,
    backoff: float = 1.0,
) -> T:
    """Run *op*, retrying TransientFetchError with a linearly growing delay."""
    for attempt in range(1, max_attempts + 1):
        try:
            return await op()
        except TransientFetchError as exc:
            if attempt >= max_attempts:
                raise LogFetchError(
                    f"{what} failed after {max_attempts} attempts: {exc}"
                ) from exc
            delay = backoff * attempt
            logger.warning(
                f"{what} failed (attempt {attempt}/{max_attempts}): {exc}; "
                f"retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
    raise LogFetchError(f"{what}: no attempts made")


async def fetch_commitment_log(
    source: CommitmentLogSource,
    page_size: int = DEFAULT_PAGE_SIZE,
    max_attempts: int = 3,
    backoff: float = 1.0,
) -> list[LogEntry]:
    """Page through *source* to the end and return every entry."""
    entries: list[LogEntry] = []
    cursor: Optional[int] = 0
    pages = 0
    while cursor is not None:
        current = cursor
        page = await with_retry(
            lambda: source.fetch_page(current, page_size),
            f"log page @{current}",
            max_attempts,
            backoff,
        )
        entries.extend(page.entries)
        pages += 1
        if page.next_cursor is not None and page.next_cursor <= current:
            raise LogFetchError(f"log source did not advance past cursor {current}")
        cursor = page.next_cursor
    logger.info(f"Fetched {len(entries)} commitment(s) in {pages} page(s)")
    return entries


async def fetch_chain_snapshot(
    source: CommitmentLogSource,
    page_size: int = DEFAULT_PAGE_SIZE,
    max_attempts: int = 3,
    backoff: float = 1.0,
) -> tuple[ChainState, list[LogEntry]]:
    state = await with_retry(source.fetch_state, "chain state", max_attempts, backoff)
    entries = await fetch_commitment_log(source, page_size, max_attempts, backoff)
    return state, entries
