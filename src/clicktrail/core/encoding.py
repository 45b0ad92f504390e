"""Postback query encoding.

Turns a Postback into the flat query parameters the affiliate network
expects. Encoding is pure: no field influences whether another one is
sent, and absent values (empty strings, zero sum, no IP, unreportable
status) are simply left out.

Typical usage:
    >>> from clicktrail.core.encoding import encode_postback, encode_query
    >>> params = encode_postback(Postback(click_id="111111111111111111111111"))
    >>> encode_query(params)
    'click_id=111111111111111111111111'
"""

import math
import re
from decimal import Decimal
from ipaddress import IPv4Address, IPv6Address
from urllib.parse import urlencode

from .errors import InvalidClickIDError
from .models import Postback

# Outbound query parameter names
PARAM_CLICK_ID = "click_id"
PARAM_ACTION_ID = "action_id"
PARAM_GOAL = "goal"
PARAM_SUM = "sum"
PARAM_IP = "ip"
PARAM_STATUS = "status"
PARAM_REFERRER = "referrer"
PARAM_COMMENT = "comment"
PARAM_SECURE = "secure"
PARAM_FBCLID = "fbclid"
PARAM_DEVICE_TYPE = "device_type"
PARAM_USER_ID = "user_id"
PARAM_CUSTOM_FIELD = "custom_field{}"

_TEXT_PARAMS = (
    (PARAM_ACTION_ID, "action_id"),
    (PARAM_GOAL, "goal"),
    (PARAM_REFERRER, "referrer"),
    (PARAM_COMMENT, "comment"),
    (PARAM_SECURE, "secure"),
    (PARAM_FBCLID, "fbclid"),
    (PARAM_DEVICE_TYPE, "device_type"),
    (PARAM_USER_ID, "user_id"),
)
"""Free-text query parameters paired with the Postback attribute they read."""

CLICK_ID_PATTERN = re.compile(r"[0-9a-f]{24}")
"""Click id format. Applied with ``search``, so any string containing a
24-character lowercase hex run passes."""


def is_valid_click_id(click_id: str) -> bool:
    """Check a click id against the network's format."""
    return CLICK_ID_PATTERN.search(click_id) is not None


def validate_click_id(click_id: str) -> None:
    """Raise if ``click_id`` does not contain a 24-character lowercase hex run.

    Args:
        click_id: Click id to check.

    Raises:
        InvalidClickIDError: If the click id does not match.
    """
    if not is_valid_click_id(click_id):
        raise InvalidClickIDError(click_id)


def format_sum(value: float) -> str:
    """Format a conversion amount in its shortest readable decimal form.

    Integral amounts drop the fractional part (``4.0`` -> ``"4"``). Very
    small or large magnitudes (decimal exponent below -4 or from 6 up)
    switch to exponent notation with at least two exponent digits, e.g.
    ``1e+06`` or ``2.5e-05``.

    Args:
        value: Amount to format.

    Returns:
        The formatted amount.
    """
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"

    number = Decimal(repr(value)).normalize()
    sign, digits, exponent = number.as_tuple()
    magnitude = len(digits) + exponent - 1

    if magnitude < -4 or magnitude >= 6:
        mantissa = str(digits[0])
        if len(digits) > 1:
            mantissa += "." + "".join(str(d) for d in digits[1:])
        exp_sign = "-" if magnitude < 0 else "+"
        return f"{'-' if sign else ''}{mantissa}e{exp_sign}{abs(magnitude):02d}"
    return format(number, "f")


def format_ip(ip: IPv4Address | IPv6Address) -> str:
    """Format an IP address, writing IPv4-mapped IPv6 addresses as plain IPv4."""
    mapped = getattr(ip, "ipv4_mapped", None)
    return str(mapped if mapped is not None else ip)


def encode_postback(postback: Postback) -> dict[str, str]:
    """Build the query parameters for a postback.

    The click id is always present. Free-text fields, the sum, the IP,
    the status and each custom field are added only when they carry a
    value. Custom fields are named ``custom_field1`` to ``custom_field15``.

    Args:
        postback: Postback to encode. Not modified.

    Returns:
        Mapping of query parameter name to value.
    """
    params = {PARAM_CLICK_ID: postback.click_id}

    for param, attr in _TEXT_PARAMS:
        value = getattr(postback, attr)
        if value:
            params[param] = value

    if postback.sum != 0:
        params[PARAM_SUM] = format_sum(postback.sum)

    if postback.ip is not None:
        params[PARAM_IP] = format_ip(postback.ip)

    if postback.status.is_reportable:
        params[PARAM_STATUS] = str(int(postback.status))

    for index, value in enumerate(postback.custom_fields, start=1):
        if value:
            params[PARAM_CUSTOM_FIELD.format(index)] = value

    return params


def encode_query(params: dict[str, str]) -> str:
    """Percent-encode query parameters, sorted by name."""
    return urlencode(sorted(params.items()))
