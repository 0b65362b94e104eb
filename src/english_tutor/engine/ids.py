import itertools
import logging
import uuid

logger = logging.getLogger(__name__)


class RequestIdGenerator:
    """Per-session source of turn and message ids.

    Ids are ``<prefix>-<n>`` with ``n`` counting from 1, so two sessions
    never share a counter and tests can predict the values.
    """

    def __init__(self, prefix: str | None = None) -> None:
        self._prefix = prefix or uuid.uuid4().hex[:12]
        self._counter = itertools.count(1)

    @property
    def prefix(self) -> str:
        return self._prefix

    def next_id(self) -> str:
        return f"{self._prefix}-{next(self._counter)}"


class MessageIdMap:
    """Two-way mapping between server-assigned and local message ids."""

    def __init__(self) -> None:
        self._server_to_local: dict[str, str] = {}
        self._local_to_server: dict[str, str] = {}

    def add(self, server_id: str, local_id: str) -> None:
        if not server_id or not local_id:
            logger.warning("Ignoring empty id mapping %r -> %r", server_id, local_id)
            return
        self._server_to_local[server_id] = local_id
        self._local_to_server[local_id] = server_id

    def local_id(self, server_id: str) -> str | None:
        return self._server_to_local.get(server_id)

    def server_id(self, local_id: str) -> str | None:
        return self._local_to_server.get(local_id)

    def discard_local(self, local_id: str) -> None:
        server_id = self._local_to_server.pop(local_id, None)
        if server_id is not None:
            self._server_to_local.pop(server_id, None)

    def __len__(self) -> int:
        return len(self._server_to_local)
