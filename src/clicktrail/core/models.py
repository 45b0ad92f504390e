"""Shared data models for postback tracking.

Postback is the canonical record of a conversion event reported to the
affiliate network. PostbackStatus carries the network's numeric status
codes, which are fixed on the wire and must not be renumbered.
"""

from collections.abc import Sequence
from enum import IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress, field_validator

CUSTOM_FIELDS_COUNT = 15
"""Number of custom field slots. Slots 8-15 require a matching network plan."""


class PostbackStatus(IntEnum):
    """Conversion status as reported to the affiliate network.

    Attributes:
        INVALID: Unset status. Never sent.
        CONFIRMED: Conversion approved.
        PENDING: Conversion awaiting review.
        DECLINED: Conversion rejected.
        RESERVED: Unused network code, kept so HOLD stays at 5.
        HOLD: Conversion on hold.
    """

    INVALID = 0
    CONFIRMED = 1
    PENDING = 2
    DECLINED = 3
    RESERVED = 4
    HOLD = 5

    @property
    def is_reportable(self) -> bool:
        """Whether this status is sent in the postback query."""
        return self in _REPORTABLE_STATUSES


_REPORTABLE_STATUSES = frozenset(
    {
        PostbackStatus.CONFIRMED,
        PostbackStatus.PENDING,
        PostbackStatus.DECLINED,
        PostbackStatus.HOLD,
    }
)


class Postback(BaseModel):
    """A server-to-server conversion report for a single click.

    Only ``click_id`` is required. Every other field is sent only when it
    carries a value: non-empty strings, a non-zero sum, a present IP, a
    reportable status, non-empty custom fields.

    The click id is not checked here; validation happens when the request
    is built so that it can be recovered from a cookie first. It is also
    the only field that may be reassigned after construction.

    Attributes:
        click_id: Network click identifier (24 lowercase hex characters).
        action_id: Advertiser-side action identifier.
        goal: Conversion goal name or id.
        sum: Conversion amount.
        ip: Visitor IP address.
        status: Conversion status.
        referrer: Referring page.
        comment: Free-form comment.
        secure: Postback security token.
        fbclid: Facebook click id.
        device_type: Visitor device type.
        user_id: Advertiser-side user id.
        custom_fields: Exactly 15 custom field slots, numbered from 1 on the wire.
    """

    model_config = ConfigDict(validate_assignment=True)

    click_id: str
    action_id: str = ""
    goal: str = ""
    sum: float = 0
    ip: IPvAnyAddress | None = None
    status: PostbackStatus = PostbackStatus.INVALID
    referrer: str = ""
    comment: str = ""
    secure: str = ""
    fbclid: str = ""
    device_type: str = ""
    user_id: str = ""
    custom_fields: tuple[str, ...] = Field(default=("",) * CUSTOM_FIELDS_COUNT)

    @field_validator("custom_fields", mode="before")
    @classmethod
    def _pad_custom_fields(cls, value: Any) -> Any:
        if isinstance(value, Sequence) and not isinstance(value, str):
            if len(value) > CUSTOM_FIELDS_COUNT:
                raise ValueError(
                    f"at most {CUSTOM_FIELDS_COUNT} custom fields are supported, got {len(value)}"
                )
            return tuple(value) + ("",) * (CUSTOM_FIELDS_COUNT - len(value))
        return value

    def __setattr__(self, name: str, value: Any) -> None:
        if name != "click_id" and name in type(self).model_fields:
            raise AttributeError(f"Postback.{name} is read-only; only click_id may be reassigned")
        super().__setattr__(name, value)
