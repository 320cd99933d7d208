import json
from typing import Any


def _looks_like_identity_object(token: str) -> bool:
    return token.startswith("{") and token.endswith("}") and "uid" in token


def normalize_id(token: Any) -> str:
    """Return the canonical participant id for ``token``.

    Clients sometimes send a serialized auth user (``'{"uid": "A1", ...}'``)
    where a plain id is expected. Those are unwrapped to their ``uid``; anything
    else, including unparsable object-looking strings, comes back unchanged.
    """
    if token is None:
        return ""
    text = token if isinstance(token, str) else str(token)
    text = text.strip()
    if not _looks_like_identity_object(text):
        return text
    try:
        parsed = json.loads(text)
    except ValueError:
        return text
    if not isinstance(parsed, dict):
        return text
    uid = parsed.get("uid")
    if uid is None or isinstance(uid, (dict, list)):
        return text
    # a uid that is itself serialized gets unwrapped too, so the result is a fixed point
    return normalize_id(uid) or text
