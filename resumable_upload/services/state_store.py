# services/state_store.py
import logging
from datetime import timedelta
from typing import Dict, Optional

from redis.asyncio import Redis

from ..models.upload_models import MultipartState

logger = logging.getLogger(__name__)


class InMemoryStateStore:
    """
    Side table of multipart state, keyed by file id.

    The uploader owns the entries; files only carry their id.
    """

    def __init__(self):
        self._states: Dict[str, MultipartState] = {}

    def get(self, file_id: str) -> MultipartState:
        state = self._states.get(file_id)
        if state is None:
            state = MultipartState()
            self._states[file_id] = state
        return state

    def peek(self, file_id: str) -> Optional[MultipartState]:
        return self._states.get(file_id)

    async def load(self, file_id: str) -> MultipartState:
        return self.get(file_id)

    async def save(self, file_id: str) -> None:
        pass

    async def reset(self, file_id: str) -> None:
        state = self._states.get(file_id)
        if state is not None:
            state.reset()

    async def remove(self, file_id: str) -> None:
        self._states.pop(file_id, None)


class RedisStateStore(InMemoryStateStore):
    """
    Multipart state persisted to Redis so a new process can pick up an
    upload that was started remotely by a previous one.
    """

    def __init__(self, redis_client: Redis, ttl: timedelta = timedelta(days=7), prefix: str = "multipart_state"):
        super().__init__()
        self.redis_client = redis_client
        self.ttl = ttl
        self.prefix = prefix

    def _key(self, file_id: str) -> str:
        return f"{self.prefix}:{file_id}"

    async def load(self, file_id: str) -> MultipartState:
        state = self.peek(file_id)
        if state is not None and state.upload_id:
            return state

        raw = await self.redis_client.get(self._key(file_id))
        if not raw:
            return self.get(file_id)

        stored = MultipartState.model_validate_json(raw)
        state = self.get(file_id)
        state.upload_id = stored.upload_id
        state.key = stored.key
        state.is_multipart = stored.is_multipart
        state.uploaded_parts[:] = stored.uploaded_parts
        logger.info(f"Restored multipart state for {file_id} (upload {state.upload_id})")
        return state

    async def save(self, file_id: str) -> None:
        state = self.peek(file_id)
        if state is None:
            return
        await self.redis_client.setex(
            self._key(file_id),
            int(self.ttl.total_seconds()),
            state.model_dump_json(),
        )

    async def reset(self, file_id: str) -> None:
        await super().reset(file_id)
        await self.redis_client.delete(self._key(file_id))

    async def remove(self, file_id: str) -> None:
        await super().remove(file_id)
        await self.redis_client.delete(self._key(file_id))
