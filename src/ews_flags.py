"""
Exchange Flag Translation

Converts follow-up flag values between the MAPI vocabulary Exchange stores on
items and the vocabulary used by the destination mail store.

Flags are advisory metadata, so every conversion is total: unknown input maps
to a safe default instead of raising.
"""

from enum import Enum

# MAPI property tags read from / written to migrated items
PID_TAG_FOLLOWUP_ICON = 0x1095
PID_TAG_FLAG_STATUS = 0x1090
PID_TAG_CLIENT_SUBMIT_TIME = 0x0039
PID_TAG_MESSAGE_DELIVERY_TIME = 0x0E06
PID_TAG_MESSAGE_FLAGS = 0x0E07


class FlagIcon(Enum):
    PURPLE = "purple"
    ORANGE = "orange"
    GREEN = "green"
    YELLOW = "yellow"
    BLUE = "blue"
    RED = "red"


class FollowUpFlagStatus(Enum):
    """Flag status as the destination store records it."""

    NOT_FLAGGED = "not_flagged"
    COMPLETE = "complete"
    FLAGGED = "flagged"


class ItemFlagStatus(Enum):
    """Flag status as Exchange records it on an item."""

    NOT_FLAGGED = "not_flagged"
    COMPLETE = "complete"
    FLAGGED = "flagged"


_ICON_BY_CODE = {
    1: FlagIcon.PURPLE,
    2: FlagIcon.ORANGE,
    3: FlagIcon.GREEN,
    4: FlagIcon.YELLOW,
    5: FlagIcon.BLUE,
}
_CODE_BY_ICON = {icon: code for code, icon in _ICON_BY_CODE.items()}

DEFAULT_FLAG_ICON = FlagIcon.RED
# One past the highest explicit code
DEFAULT_FLAG_CODE = max(_ICON_BY_CODE) + 1


def flag_icon_from_code(code):
    """Convert a PidTagFollowupIcon integer to a FlagIcon. Unknown codes become RED."""
    try:
        return _ICON_BY_CODE.get(code, DEFAULT_FLAG_ICON)
    except TypeError:  # unhashable
        return DEFAULT_FLAG_ICON


def flag_icon_to_code(icon):
    """Convert a FlagIcon back to its PidTagFollowupIcon integer. RED and unknown icons become 6."""
    try:
        return _CODE_BY_ICON.get(icon, DEFAULT_FLAG_CODE)
    except TypeError:  # unhashable
        return DEFAULT_FLAG_CODE


def item_status_from_follow_up(status):
    if status is FollowUpFlagStatus.COMPLETE:
        return ItemFlagStatus.COMPLETE
    if status is FollowUpFlagStatus.FLAGGED:
        return ItemFlagStatus.FLAGGED
    return ItemFlagStatus.NOT_FLAGGED


def follow_up_status_from_item(status):
    if status is ItemFlagStatus.COMPLETE:
        return FollowUpFlagStatus.COMPLETE
    if status is ItemFlagStatus.FLAGGED:
        return FollowUpFlagStatus.FLAGGED
    return FollowUpFlagStatus.NOT_FLAGGED
