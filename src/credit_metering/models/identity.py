from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from ..utils.ip import DEFAULT_LOCAL_PLACEHOLDER, local_ip_config, normalize_ip

# Sentinel values sent by clients that have no real user id / IP.
USER_ID_PLACEHOLDERS = frozenset({"", "none", "undefined", "null"})
USER_IP_PLACEHOLDERS = frozenset({"", "unknown", "-"})


class _IdentityBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def user_id(self) -> Optional[str]:
        return None

    @property
    def user_ip(self) -> Optional[str]:
        return None


class ByUser(_IdentityBase):
    kind: Literal["user"] = "user"
    id: str

    @property
    def identity_key(self) -> str:
        return self.id

    @property
    def user_id(self) -> Optional[str]:
        return self.id


class ByIp(_IdentityBase):
    kind: Literal["ip"] = "ip"
    normalized_ip: str

    @property
    def identity_key(self) -> str:
        return self.normalized_ip

    @property
    def user_ip(self) -> Optional[str]:
        return self.normalized_ip


class Both(_IdentityBase):
    kind: Literal["both"] = "both"
    id: str
    normalized_ip: str

    @property
    def identity_key(self) -> str:
        # User id wins over the IP bucket
        return self.id

    @property
    def user_id(self) -> Optional[str]:
        return self.id

    @property
    def user_ip(self) -> Optional[str]:
        return self.normalized_ip


Identity = Union[ByUser, ByIp, Both]


def clean_user_id(user_id: Optional[str]) -> Optional[str]:
    if user_id is None:
        return None
    user_id = user_id.strip()
    return None if user_id.lower() in USER_ID_PLACEHOLDERS else user_id


def clean_user_ip(
    user_ip: Optional[str], local_placeholder: str = DEFAULT_LOCAL_PLACEHOLDER
) -> Optional[str]:
    """
    Normalize a raw client IP (first hop of a forwarded-for list) into its
    grouping key, or return None for absent/placeholder values.
    """
    if user_ip is None:
        return None
    first_hop = user_ip.split(",")[0].strip()
    if first_hop.lower() in USER_IP_PLACEHOLDERS:
        return None
    return normalize_ip(local_ip_config(first_hop, local_placeholder))


def resolve_identity(
    user_id: Optional[str],
    user_ip: Optional[str],
    local_placeholder: str = DEFAULT_LOCAL_PLACEHOLDER,
) -> Optional[Identity]:
    """
    Build the identity for a (user id, raw IP) pair. Returns None when
    neither carries a usable value.
    """
    uid = clean_user_id(user_id)
    ip = clean_user_ip(user_ip, local_placeholder=local_placeholder)
    if uid and ip:
        return Both(id=uid, normalized_ip=ip)
    if uid:
        return ByUser(id=uid)
    if ip:
        return ByIp(normalized_ip=ip)
    return None


def balance_lookup_plan(identity: Identity) -> List[Dict[str, Any]]:
    """
    Ordered store filters tried by a balance lookup; the first match wins.

    A signed-in identity never falls back to the IP bucket, which keeps
    user-keyed and IP-keyed balances separate.
    """
    if isinstance(identity, Both):
        return [
            {"UserId": identity.id, "UserIp": identity.normalized_ip},
            {"UserId": identity.id},
        ]
    if isinstance(identity, ByUser):
        return [{"UserId": identity.id}]
    return [{"UserIp": identity.normalized_ip}]


def activity_filter(identity: Identity) -> Dict[str, Any]:
    """Store filter selecting the activity records that belong to an identity."""
    if identity.user_id is not None:
        return {"UserId": identity.user_id}
    return {"UserIp": identity.user_ip}
