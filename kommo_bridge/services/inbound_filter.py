from typing import Iterable, Optional

from kommo_bridge.services.normalizer import InboundRecord

DEFAULT_INTERNAL_MARKERS = frozenset(
    {"internal", "system", "bot", "salesbot", "robot", "manager", "operator", "outgoing", "outbound", "out"}
)


def classify(
    record: InboundRecord,
    *,
    default_inbound: bool = True,
    internal_markers: Optional[Iterable[str]] = None,
) -> tuple[bool, str]:
    """Return (is_inbound, reason) for a normalized record."""
    markers = {m.lower() for m in internal_markers} if internal_markers is not None else DEFAULT_INTERNAL_MARKERS

    if record.author_type and record.author_type.lower() in markers:
        return False, "internal_author"
    if record.direction == "out":
        return False, "outbound"
    if record.author_type or record.direction:
        return True, "tagged_inbound"
    if default_inbound:
        return True, "untagged_default_allow"
    return False, "untagged_default_ignore"


def is_inbound_user_message(
    record: InboundRecord,
    *,
    default_inbound: bool = True,
    internal_markers: Optional[Iterable[str]] = None,
) -> bool:
    """True when the record looks like a new message written by the end user."""
    inbound, _ = classify(record, default_inbound=default_inbound, internal_markers=internal_markers)
    return inbound
