# docvault/domain/permission.py
from enum import Enum

# 通配用户：对该用户名授予的权限对所有调用方 (包括匿名) 生效
ANY_USERNAME = "*"


class Permission(str, Enum):
    """
    知识条目的访问级别，按 NONE < READONLY < READWRITE < OWNER 全序排列。
    """
    NONE = "NONE"
    READONLY = "READONLY"
    READWRITE = "READWRITE"
    OWNER = "OWNER"

    @property
    def level(self) -> int:
        return _LEVELS[self]

    def at_least(self, other: "Permission") -> bool:
        return self.level >= other.level

    def grants_read(self) -> bool:
        # 检索过滤只区分 "有权限 / 无权限"
        return self.level > _LEVELS[Permission.NONE]

    def grants_write(self) -> bool:
        return self.at_least(Permission.READWRITE)


_LEVELS = {p: i for i, p in enumerate(Permission)}
