import logging
from typing import Any, Mapping, Optional

from marketchat.utils.identity import normalize_id

logger = logging.getLogger(__name__)


def authorize(conversation: Optional[Mapping[str, Any]], requester_id: Any) -> bool:
    """True iff ``requester_id`` is a participant of ``conversation``.

    Both ``participants`` and ``participant_ids`` are consulted, and stored ids
    are normalized before comparing, so a drifted copy of either still matches.
    """
    if not conversation:
        return False
    requester = normalize_id(requester_id)
    if not requester:
        return False
    for pid in conversation.get("participant_ids") or []:
        if normalize_id(pid) == requester:
            return True
    for participant in conversation.get("participants") or []:
        if isinstance(participant, Mapping) and normalize_id(participant.get("id")) == requester:
            return True
    logger.warning("Denied access to conversation %s for %s", conversation.get("_id"), requester)
    return False
