"""Input cleaning for conversation and message writes.

Everything here runs before the store is touched and raises
``ValidationError`` on malformed input. Optional fields that are absent or
empty are dropped rather than stored as null.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from marketchat.core.errors import ValidationError
from marketchat.models.conversation import RELATED_ENTITY_TYPES
from marketchat.models.message import ATTACHMENT_TYPES
from marketchat.models.participant import PARTICIPANT_ROLES
from marketchat.utils.identity import normalize_id


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _first_present(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def check_counter_key(participant_id: str) -> None:
    # canonical ids become `unread_counts.<id>` field paths
    if "." in participant_id or participant_id.startswith("$"):
        raise ValidationError("Invalid participant id")


def clean_participants(participants: Any) -> List[Dict[str, Any]]:
    if not isinstance(participants, Sequence) or isinstance(participants, (str, bytes)):
        raise ValidationError("Invalid participants data")
    if len(participants) < 2:
        raise ValidationError("A conversation needs at least two participants")

    cleaned: List[Dict[str, Any]] = []
    seen = set()
    for participant in participants:
        if not isinstance(participant, Mapping):
            raise ValidationError("Invalid participant data")
        pid = normalize_id(participant.get("id"))
        name = _first_present(participant, "display_name", "name")
        role = _enum_value(_first_present(participant, "role", "type"))
        if not pid or not name or not role:
            raise ValidationError("Invalid participant data: missing required fields")
        if role not in PARTICIPANT_ROLES:
            raise ValidationError(f"Invalid participant role: {role}")
        check_counter_key(pid)
        if pid in seen:
            raise ValidationError("Participants must be distinct")
        seen.add(pid)

        entry: Dict[str, Any] = {"id": pid, "display_name": str(name), "role": role}
        avatar = _first_present(participant, "avatar_url", "avatar")
        if avatar:
            entry["avatar_url"] = str(avatar)
        cleaned.append(entry)
    return cleaned


def clean_related_entity(related: Any) -> Optional[Dict[str, Any]]:
    if related is None:
        return None
    if not isinstance(related, Mapping):
        raise ValidationError("Invalid related entity")
    entity_type = _enum_value(related.get("type"))
    if entity_type not in RELATED_ENTITY_TYPES:
        raise ValidationError("Invalid related entity: missing or unknown type")
    return {
        "type": entity_type,
        "id": str(related.get("id") or ""),
        "name": str(related.get("name") or ""),
    }


def clean_attachments(attachments: Any) -> List[Dict[str, Any]]:
    if attachments is None:
        return []
    if not isinstance(attachments, Sequence) or isinstance(attachments, (str, bytes)):
        raise ValidationError("Invalid attachments")
    cleaned = []
    for attachment in attachments:
        if not isinstance(attachment, Mapping):
            raise ValidationError("Invalid attachment")
        kind = _enum_value(attachment.get("type"))
        url = attachment.get("url")
        name = attachment.get("name")
        if kind not in ATTACHMENT_TYPES or not url or not name:
            raise ValidationError("Attachment missing required fields")
        entry: Dict[str, Any] = {"type": kind, "url": str(url), "name": str(name)}
        size = attachment.get("size")
        if size is not None:
            if isinstance(size, bool) or not isinstance(size, int) or size < 0:
                raise ValidationError("Attachment size must be a non-negative integer")
            entry["size"] = size
        cleaned.append(entry)
    return cleaned


def clean_message(message: Any) -> Dict[str, Any]:
    if not isinstance(message, Mapping):
        raise ValidationError("Invalid message")
    text = message.get("text")
    sender_id = normalize_id(message.get("sender_id"))
    sender_name = message.get("sender_name")
    sender_role = _enum_value(message.get("sender_role"))
    if not isinstance(text, str) or not text.strip() or not sender_id or not sender_name or not sender_role:
        raise ValidationError("Message missing required fields")
    if sender_role not in PARTICIPANT_ROLES:
        raise ValidationError(f"Invalid sender role: {sender_role}")

    doc: Dict[str, Any] = {
        "text": text,
        "sender_id": sender_id,
        "sender_name": str(sender_name),
        "sender_role": sender_role,
    }
    if message.get("sender_avatar"):
        doc["sender_avatar"] = str(message["sender_avatar"])
    attachments = clean_attachments(message.get("attachments"))
    if attachments:
        doc["attachments"] = attachments
    return doc
