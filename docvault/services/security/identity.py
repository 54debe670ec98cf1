# docvault/services/security/identity.py
from dataclasses import dataclass
from typing import List, Optional

from docvault.services.security.permission_metadata import identity_to_metadata_queries


@dataclass(frozen=True)
class Identity:
    """
    调用方身份。username 为 None 表示匿名调用方。
    """
    username: Optional[str] = None
    is_admin: bool = False

    @property
    def is_anonymous(self) -> bool:
        return self.username is None

    def metadata_queries(self) -> List[str]:
        return identity_to_metadata_queries(self.username)


ANONYMOUS = Identity()
