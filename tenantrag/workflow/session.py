import json
import logging
from typing import Dict, List

from tenantrag.config import SESSION_HISTORY_MAX_MESSAGES, SESSION_HISTORY_TTL
from tenantrag.db.kv_store import KeyValueStore
from tenantrag.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


class SessionHistory:
    """
    Conversation turns per (tenant, session id), capped and expiring.

    History is best-effort: store failures read as an empty history and
    lost writes are only logged.
    """

    def __init__(
        self,
        store: KeyValueStore,
        max_messages: int = SESSION_HISTORY_MAX_MESSAGES,
        ttl: int = SESSION_HISTORY_TTL,
    ):
        self._store = store
        self._max_messages = max_messages
        self._ttl = ttl

    @staticmethod
    def _key(tenant_id: str, session_id: str) -> str:
        return f"session:{tenant_id}:{session_id}"

    def get(self, tenant_id: str, session_id: str) -> List[Dict[str, str]]:

        try:
            raw = self._store.get(self._key(tenant_id, session_id))
        except StoreUnavailableError as e:
            logger.error("Failed to get history", extra={"session_id": session_id, "error": str(e)})
            return []

        return json.loads(raw) if raw else []

    def append(self, tenant_id: str, session_id: str, query: str, response: str) -> None:

        history = self.get(tenant_id, session_id)

        history.append({"role": "user", "content": query})
        history.append({"role": "assistant", "content": response})

        trimmed = history[-self._max_messages:]

        try:
            self._store.set(self._key(tenant_id, session_id), json.dumps(trimmed), self._ttl)
        except StoreUnavailableError as e:
            logger.error("Failed to save history", extra={"session_id": session_id, "error": str(e)})
            return

        logger.debug(
            "History saved",
            extra={"session_id": session_id, "history_length": len(trimmed)},
        )

    def clear(self, tenant_id: str, session_id: str) -> None:

        try:
            self._store.delete(self._key(tenant_id, session_id))
        except StoreUnavailableError as e:
            logger.error("Failed to clear history", extra={"session_id": session_id, "error": str(e)})
