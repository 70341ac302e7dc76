from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from fnmatch import fnmatch
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


_BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, data: List[Dict[str, Any]]) -> None:
        self.data = data


class FakeQuery:
    """Just enough of the postgrest builder chain for SessionStore."""

    def __init__(self, client: "FakeSupabaseClient", table: str) -> None:
        self._client = client
        self._table = table
        self._op = "select"
        self._payload: Optional[Dict[str, Any]] = None
        self._filters: List[Callable[[Dict[str, Any]], bool]] = []
        self._order: Optional[Tuple[str, bool]] = None
        self._limit: Optional[int] = None
        self._range: Optional[Tuple[int, int]] = None
        self.chain: List[Tuple[str, Tuple[Any, ...]]] = []

    def select(self, columns: str = "*") -> "FakeQuery":
        self.chain.append(("select", (columns,)))
        self._op = "select"
        return self

    def insert(self, row: Dict[str, Any]) -> "FakeQuery":
        self.chain.append(("insert", (dict(row),)))
        self._op = "insert"
        self._payload = dict(row)
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.chain.append(("eq", (column, value)))
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column: str, values: Sequence[Any]) -> "FakeQuery":
        self.chain.append(("in_", (column, list(values))))
        allowed = set(values)
        self._filters.append(lambda row: row.get(column) in allowed)
        return self

    def ilike(self, column: str, pattern: str) -> "FakeQuery":
        self.chain.append(("ilike", (column, pattern)))
        needle = pattern.strip("%").lower()
        self._filters.append(lambda row: needle in str(row.get(column, "")).lower())
        return self

    def or_(self, expression: str) -> "FakeQuery":
        self.chain.append(("or_", (expression,)))
        clauses = []
        for clause in expression.split(","):
            column, _, pattern = clause.split(".", 2)
            clauses.append((column, pattern.strip("%").lower()))
        self._filters.append(
            lambda row: any(needle in str(row.get(column, "")).lower() for column, needle in clauses)
        )
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self.chain.append(("order", (column, desc)))
        self._order = (column, desc)
        return self

    def limit(self, count: int) -> "FakeQuery":
        self.chain.append(("limit", (count,)))
        self._limit = count
        return self

    def range(self, start: int, end: int) -> "FakeQuery":
        self.chain.append(("range", (start, end)))
        self._range = (start, end)
        return self

    def execute(self) -> FakeResult:
        self._client.queries.append((self._table, self._op, list(self.chain)))
        error = self._client.next_error(self._table, self._op, self._payload)
        if error is not None:
            raise error

        rows = self._client.tables.setdefault(self._table, [])
        if self._op == "insert":
            assert self._payload is not None
            stored = dict(self._payload)
            stored.setdefault("id", self._client.next_id(self._table, len(rows) + 1))
            stored.setdefault("created_at", (_BASE_TIME + timedelta(minutes=len(rows))).isoformat())
            rows.append(stored)
            return FakeResult([dict(stored)])

        selected = [dict(row) for row in rows if all(check(row) for check in self._filters)]
        if self._order is not None:
            column, desc = self._order
            selected.sort(key=lambda row: str(row.get(column) or ""), reverse=desc)
        if self._range is not None:
            start, end = self._range
            selected = selected[start : end + 1]
        if self._limit is not None:
            selected = selected[: self._limit]
        return FakeResult(selected)


class FakeSupabaseClient:
    """In-memory stand-in for ``supabase.Client`` with scripted failures."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None, *, integer_ids: bool = False) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {name: list(rows) for name, rows in (tables or {}).items()}
        self.queries: List[Tuple[str, str, List[Tuple[str, Tuple[Any, ...]]]]] = []
        self.fail_selects = False
        # Each entry fails one insert whose payload matches the predicate.
        self.insert_failures: List[Callable[[Dict[str, Any]], bool]] = []
        # Mimics a bigint identity column instead of text ids.
        self.integer_ids = integer_ids

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def next_id(self, table: str, position: int) -> Any:
        return position if self.integer_ids else f"{table}_{position}"

    def fail_next_inserts(self, count: int) -> None:
        self.insert_failures.extend(lambda _row: True for _ in range(count))

    def next_error(self, table: str, op: str, payload: Optional[Dict[str, Any]]) -> Optional[Exception]:
        if op == "select" and self.fail_selects:
            return RuntimeError(f"select on {table} refused")
        if op == "insert" and self.insert_failures:
            predicate = self.insert_failures[0]
            if predicate(payload or {}):
                self.insert_failures.pop(0)
                return RuntimeError(f"insert into {table} refused")
        return None


class FakeConversation:
    def __init__(self, conversation_id: Optional[str], on_message) -> None:
        self._conversation_id = conversation_id
        self.on_message = on_message
        self.muted_calls: List[bool] = []
        self.audio: List[bytes] = []
        self.ended = 0
        self.fail_on_end = False

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    async def set_muted(self, muted: bool) -> None:
        self.muted_calls.append(muted)

    async def send_audio(self, chunk: bytes) -> None:
        self.audio.append(chunk)

    async def end_session(self) -> None:
        self.ended += 1
        if self.fail_on_end:
            raise RuntimeError("socket already gone")

    async def emit(self, role: str, content: str) -> None:
        await self.on_message(role, content)


class FakeTransport:
    """Voice transport that connects instantly and can replay a scripted transcript."""

    def __init__(
        self,
        *,
        script: Optional[List[Tuple[str, str]]] = None,
        fail_with: Optional[Exception] = None,
        conversation_id: Optional[str] = "conv_fake_1",
    ) -> None:
        self.script = list(script or [])
        self.fail_with = fail_with
        self.conversation_id = conversation_id
        self.configs: List[Any] = []
        self.conversations: List[FakeConversation] = []

    @property
    def last(self) -> FakeConversation:
        return self.conversations[-1]

    async def start_session(self, config, on_message) -> FakeConversation:
        self.configs.append(config)
        if self.fail_with is not None:
            raise self.fail_with
        conversation = FakeConversation(self.conversation_id, on_message)
        self.conversations.append(conversation)
        for role, content in self.script:
            await conversation.emit(role, content)
        return conversation


class FakeMetricsClient:
    def __init__(self, payload: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None, delay: float = 0.0) -> None:
        self.payload = payload if payload is not None else {"status": "done", "metadata": {"call_duration_secs": 95}}
        self.error = error
        self.delay = delay
        self.calls: List[str] = []

    async def fetch(self, call_id: str) -> Dict[str, Any]:
        self.calls.append(call_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return dict(self.payload)


class StaticRandom:
    """``random.Random`` replacement returning a fixed randint value."""

    def __init__(self, value: int) -> None:
        self.value = value
        self.ranges: List[Tuple[int, int]] = []

    def randint(self, low: int, high: int) -> int:
        self.ranges.append((low, high))
        return self.value


class FakeRedis:
    """The handful of redis.asyncio calls CacheService makes."""

    def __init__(self) -> None:
        self.storage: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[int]] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self.storage.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self.storage[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.storage.pop(key, None) is not None)

    async def scan_iter(self, match: str = "*"):
        for key in list(self.storage):
            if fnmatch(key, match):
                yield key
