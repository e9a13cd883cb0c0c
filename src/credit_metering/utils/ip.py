"""
Client IP canonicalization.

Anonymous visitors are tracked per /24 subnet rather than per address so
that dynamic reassignment inside an ISP block keeps one identity.
"""
from __future__ import annotations

import ipaddress
from typing import List, Union, overload

DEFAULT_LOCAL_PLACEHOLDER = "10.0.0.0"


@overload
def normalize_ip(ip: str) -> str: ...


@overload
def normalize_ip(ip: List[str]) -> List[str]: ...


def normalize_ip(ip: Union[str, List[str]]) -> Union[str, List[str]]:
    """
    Zero the last octet of an IPv4 address ("192.168.1.42" -> "192.168.1.0").

    IPv6 addresses and anything that does not parse are returned unchanged.
    Lists are normalized element-wise.
    """
    if isinstance(ip, list):
        return [normalize_ip(item) for item in ip]

    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return ip

    if addr.version != 4:
        return ip

    octets = bytearray(addr.packed)
    octets[3] = 0
    return ".".join(str(o) for o in octets)


@overload
def local_ip_config(ip: str, placeholder: str = ...) -> str: ...


@overload
def local_ip_config(ip: List[str], placeholder: str = ...) -> List[str]: ...


def local_ip_config(
    ip: Union[str, List[str]], placeholder: str = DEFAULT_LOCAL_PLACEHOLDER
) -> Union[str, List[str]]:
    """
    Map loopback addresses (local development and test traffic) to a fixed
    placeholder subnet address so they share one bucket.
    """
    if isinstance(ip, list):
        return [local_ip_config(item, placeholder) for item in ip]

    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return ip
    return placeholder if addr.is_loopback else ip
