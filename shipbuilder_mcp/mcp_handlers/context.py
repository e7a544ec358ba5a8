# shipbuilder_mcp/mcp_handlers/context.py
import copy
import logging
from typing import Any, Dict, Optional

from ..mcp_auth.models import UserInfo
from ..sessions import McpSession

logger = logging.getLogger(__name__)


class ExecutionContext:
    """
    What a single JSON-RPC call runs against.

    A stateful context wraps a stored session and knows its key. A stateless
    context is built for one call and thrown away afterwards: nothing in it is
    persisted, so its context map and event sequence start fresh every time.
    """

    def __init__(
        self,
        user: UserInfo,
        session: Optional[McpSession] = None,
        session_key: Optional[str] = None,
        resolved_via: str = "stateless",
    ):
        self.user = user
        self.session = session
        self.session_key = session_key
        self.resolved_via = resolved_via
        self._scratch: Dict[str, Any] = copy.deepcopy(session.context) if session else {}

    @classmethod
    def stateless(cls, user: UserInfo) -> "ExecutionContext":
        return cls(user=user)

    @property
    def is_stateful(self) -> bool:
        return self.session is not None and self.session_key is not None

    @property
    def connection_id(self) -> Optional[str]:
        return self.session.connection_id if self.session else None

    @property
    def context(self) -> Dict[str, Any]:
        return self._scratch

    def __repr__(self) -> str:
        return (
            f"ExecutionContext(user={self.user.user_id!r}, via={self.resolved_via!r}, "
            f"connection={self.connection_id!r})"
        )
