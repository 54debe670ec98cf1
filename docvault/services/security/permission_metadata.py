# docvault/services/security/permission_metadata.py
"""
权限 -> 向量 payload 的编码规则。

有读权限的用户名排序后用分隔符拼接并首尾包裹，例如 {"alice", "bob"} -> "|alice|bob|"。
查询时每个身份生成形如 "|alice|" 的探针，判断是否为 payload 的子串即可，
包裹的分隔符保证 "|al|" 不会匹配到 "|alice|"。
"""
from typing import List, Mapping, Optional, Set

from docvault.domain.permission import ANY_USERNAME, Permission

DELIMITER = "|"


def _check_username(username: str):
    if not username:
        raise ValueError("username must not be empty")
    if DELIMITER in username:
        raise ValueError(f"username must not contain '{DELIMITER}': {username!r}")


def permissions_to_metadata_entry(permissions: Mapping[str, Permission]) -> str:
    """
    只编码权限高于 NONE 的用户；没有任何可读用户时返回空串。
    """
    usernames = sorted(u for u, p in permissions.items() if p.grants_read())
    if not usernames:
        return ""
    for username in usernames:
        _check_username(username)
    return DELIMITER + DELIMITER.join(usernames) + DELIMITER


def metadata_entry_to_usernames(entry: Optional[str]) -> Set[str]:
    if not entry:
        return set()
    return {part for part in entry.split(DELIMITER) if part}


def username_probe(username: str) -> str:
    _check_username(username)
    return f"{DELIMITER}{username}{DELIMITER}"


def identity_to_metadata_queries(username: Optional[str]) -> List[str]:
    """
    匿名调用方只能看到对通配用户开放的内容；
    已认证用户额外携带自己的探针。
    """
    wildcard = username_probe(ANY_USERNAME)
    if username is None:
        return [wildcard]
    return [username_probe(username), wildcard]


def metadata_entry_grants(entry: Optional[str], queries: List[str]) -> bool:
    if not entry:
        return False
    return any(q in entry for q in queries)

