from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional
import structlog

from dynamics_agent.domain.models.conversation import Restriction
from dynamics_agent.infrastructure.config import Settings, get_settings

logger = structlog.get_logger(__name__)

DEFAULT_ROLE = "read_only"


class AccessStore(ABC):
    """Source of user roles and active data restrictions"""

    @abstractmethod
    async def get_user_role(self, user_id: Optional[str]) -> str:
        pass

    @abstractmethod
    async def get_active_restrictions(self) -> List[Restriction]:
        pass


class StaticAccessStore(AccessStore):
    """Roles and restrictions taken from settings"""

    def __init__(
        self,
        user_roles: Optional[Dict[str, str]] = None,
        restrictions: Optional[List[Dict[str, Any]]] = None
    ):
        self.user_roles = dict(user_roles or {})
        self.restrictions = [Restriction.model_validate(r) for r in restrictions or []]

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "StaticAccessStore":
        settings = settings or get_settings()
        return cls(user_roles=settings.user_roles, restrictions=settings.restrictions)

    async def get_user_role(self, user_id: Optional[str]) -> str:
        if not user_id:
            return DEFAULT_ROLE
        return self.user_roles.get(user_id, DEFAULT_ROLE)

    async def get_active_restrictions(self) -> List[Restriction]:
        return list(self.restrictions)
