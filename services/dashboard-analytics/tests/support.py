import datetime
import json
import threading
import time
from typing import Any, Dict, Iterable, List, Optional

from jose import jwt
from pymongo.errors import OperationFailure, ServerSelectionTimeoutError

from app.core.config import settings


def make_token(user_id: str = "user-1",
               roles: Optional[List[str]] = None,
               email: Optional[str] = "user@example.com",
               expires_in: int = 3600,
               without: Iterable[str] = (),
               **claims: Any) -> str:
    payload: Dict[str, Any] = {
        "sub": user_id,
        "email": email,
        "role": roles or [],
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "exp": datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=expires_in),
    }
    payload.update(claims)
    for claim in without:
        payload.pop(claim, None)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_headers(*roles: str, user_id: str = "user-1") -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, list(roles))}"}


def envelope(event_type: str, data: Dict[str, Any], timestamp: Optional[str] = None) -> bytes:
    body: Dict[str, Any] = {"eventType": event_type, "data": data}
    if timestamp:
        body["timestamp"] = timestamp
    return json.dumps(body).encode("utf-8")


class FakeRedis:
    """In-process stand-in for ``redis.asyncio.Redis`` with expiring keys."""

    def __init__(self, clock=time.monotonic):
        self.store: Dict[str, Any] = {}
        self.expires: Dict[str, float] = {}
        self.clock = clock
        self.down = False
        self.closed = False

    def _check(self) -> None:
        if self.down:
            raise ConnectionError("redis is down")

    def _alive(self, key: str) -> bool:
        deadline = self.expires.get(key)
        if deadline is not None and self.clock() >= deadline:
            self.store.pop(key, None)
            self.expires.pop(key, None)
        return key in self.store

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.store[key] if self._alive(key) else None

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._check()
        self.store[key] = value
        if ex is not None:
            self.expires[key] = self.clock() + ex
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.expires.pop(key, None)
        return removed

    async def scan_iter(self, match: str):
        self._check()
        prefix = match.rstrip("*")
        for key in list(self.store):
            if key.startswith(prefix):
                yield key

    async def aclose(self) -> None:
        self.closed = True


class RecordingSink:
    name = "recording"

    def __init__(self):
        self.notifications = []

    def deliver(self, notification) -> int:
        self.notifications.append(notification)
        return 1

    def kinds(self) -> List[str]:
        return [n.kind.value for n in self.notifications]


def _matches(document, query):
    return all(document.get(key) == value for key, value in query.items())


class FakeCursor:
    def __init__(self, documents):
        self._documents = list(documents)

    def skip(self, n):
        return FakeCursor(self._documents[n:])

    def limit(self, n):
        return FakeCursor(self._documents[:n])

    def __iter__(self):
        return iter(self._documents)


class FakeCollection:
    def __init__(self, documents, size=0, indexes=None, stats_fail=False):
        self.documents = documents
        self.size = size
        self.indexes = indexes or [{"name": "_id_", "key": {"_id": 1}}]
        self.stats_fail = stats_fail
        self.threads = set()

    def count_documents(self, query):
        self.threads.add(threading.current_thread().name)
        return sum(1 for d in self.documents if _matches(d, query))

    def list_indexes(self):
        return iter(self.indexes)

    def find(self, query):
        self.threads.add(threading.current_thread().name)
        return FakeCursor(d for d in self.documents if _matches(d, query))

    def aggregate(self, pipeline):
        documents = list(self.documents)
        for stage in pipeline:
            if "$match" in stage:
                documents = [d for d in documents if _matches(d, stage["$match"])]
            elif "$skip" in stage:
                documents = documents[stage["$skip"]:]
            elif "$limit" in stage:
                documents = documents[:stage["$limit"]]
        return iter(documents)


class FakeDatabase:
    def __init__(self, collections, unreachable=False):
        self.collections = collections
        self.unreachable = unreachable

    def list_collection_names(self):
        if self.unreachable:
            raise ServerSelectionTimeoutError("localhost:27017: connection refused")
        return list(self.collections)

    def __getitem__(self, name):
        return self.collections[name]

    def command(self, name, collection):
        target = self.collections[collection]
        if target.stats_fail:
            raise OperationFailure("not authorized")
        count = len(target.documents)
        return {"size": target.size, "avgObjSize": target.size / count if count else 0, "indexSizes": {"_id_": 4096}}


class FakeMongoClient:
    def __init__(self, databases):
        self.databases = databases
        self.closed = False

    def __getitem__(self, name):
        return self.databases.setdefault(name, FakeDatabase({}))

    def close(self):
        self.closed = True
