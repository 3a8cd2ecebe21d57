"""Redis-backed log of top-level runs (example generation, test scripts, reports)."""
import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import redis
from pydantic import BaseModel, Field

from .config import REDIS_HOST, REDIS_PASSWORD, REDIS_PORT, REDIS_SSL
from .errors import SyncError

logger = logging.getLogger(__name__)

RUNS_KEY = "reqforge:runs"
MAX_RUNS = 200


class RunRecord(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    kind: str
    collectionId: str
    status: str = "succeeded"
    startedAt: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    durationMs: int = 0
    detail: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


def connect_redis() -> redis.Redis:
    return redis.Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        password=REDIS_PASSWORD,
        ssl=REDIS_SSL,
        decode_responses=True,
        socket_timeout=10,
        socket_connect_timeout=10,
    )


class RunHistory:
    def __init__(self, client: redis.Redis):
        self._redis = client

    def record(self, run: RunRecord) -> RunRecord:
        pipe = self._redis.pipeline()
        pipe.lpush(RUNS_KEY, run.model_dump_json())
        pipe.ltrim(RUNS_KEY, 0, MAX_RUNS - 1)
        pipe.execute()
        return run

    def recent(self, limit: int = 20, collection_id: Optional[str] = None) -> List[RunRecord]:
        runs = [RunRecord.model_validate(json.loads(raw)) for raw in self._redis.lrange(RUNS_KEY, 0, MAX_RUNS - 1)]
        if collection_id:
            runs = [r for r in runs if r.collectionId == collection_id]
        return runs[:limit]

    @asynccontextmanager
    async def track(self, kind: str, collection_id: str) -> AsyncIterator[Dict[str, Any]]:
        """Record the wrapped operation; the caller fills the yielded dict with run details."""
        detail: Dict[str, Any] = {}
        started = time.time()
        started_at = datetime.now(timezone.utc).isoformat()
        status, error = "succeeded", None
        try:
            yield detail
        except Exception as e:
            status, error = "failed", str(e)
            if isinstance(e, SyncError):
                detail["partial"] = e.report.model_dump()
            raise
        finally:
            run = RunRecord(kind=kind, collectionId=collection_id, status=status, error=error, detail=detail,
                            startedAt=started_at, durationMs=int((time.time() - started) * 1000))
            try:
                await asyncio.to_thread(self.record, run)
            except redis.RedisError as e:
                logger.error("Failed to record %s run in Redis: %s", kind, e)
