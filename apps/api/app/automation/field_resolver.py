from __future__ import annotations

from typing import Any

CUSTOM_FIELDS_PREFIX = "customFields."
ENTITY_NAMESPACES = ("contact", "deal")


def resolve(path: str, entity: dict[str, Any] | None, namespace: str | None = None) -> Any:
    """Read a dotted field path off an entity snapshot.

    ``customFields.<name>`` reads the custom-field bag. A leading ``contact.``
    or ``deal.`` is dropped when it names the entity being evaluated (or when
    no namespace is given), so ``contact.email`` and ``email`` resolve the same
    against a contact. Missing segments resolve to None.
    """
    if not path or not isinstance(entity, dict):
        return None

    if path.startswith(CUSTOM_FIELDS_PREFIX):
        custom_fields = entity.get("customFields")
        if not isinstance(custom_fields, dict):
            return None
        return custom_fields.get(path[len(CUSTOM_FIELDS_PREFIX) :])

    segments = path.split(".")
    head = segments[0]
    if len(segments) > 1 and head in ENTITY_NAMESPACES and head not in entity and namespace in (None, head):
        segments = segments[1:]
        if segments[0] == "customFields":
            return resolve(".".join(segments), entity)

    current: Any = entity
    for segment in segments:
        if not isinstance(current, dict):
            return None
        current = current.get(segment)
        if current is None:
            return None
    return current
