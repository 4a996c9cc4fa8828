"""One-time conversion of window documents to the multi-service shape.

Windows used to reference a single service through ``service_id`` (or the
camel-cased ``serviceId`` written by older kiosk builds). The current shape is a
``service_ids`` array. After this migration has run only ``service_ids`` is read.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from .repository import QueueRepository

logger = logging.getLogger(__name__)

_LEGACY_KEYS = ("service_id", "serviceId")
_LEGACY_PLURAL_KEY = "serviceIds"


def needs_migration(document: Mapping[str, Any]) -> bool:
    return any(key in document for key in (*_LEGACY_KEYS, _LEGACY_PLURAL_KEY)) or "service_ids" not in document


def normalize_window_document(document: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``document`` in the plural shape, dropping legacy keys."""

    normalized = dict(document)
    service_ids: list[str] = [str(value) for value in normalized.pop(_LEGACY_PLURAL_KEY, None) or ()]
    service_ids.extend(str(value) for value in normalized.get("service_ids") or ())
    for key in _LEGACY_KEYS:
        legacy = normalized.pop(key, None)
        if legacy:
            service_ids.append(str(legacy))

    normalized["service_ids"] = list(dict.fromkeys(service_ids))
    return normalized


async def migrate_window_documents(repository: QueueRepository) -> int:
    """Rewrite legacy window documents in place. Returns the number of windows changed."""

    migrated = 0
    for document in await repository.list_window_documents():
        if not needs_migration(document):
            continue
        normalized = normalize_window_document(document)
        await repository.save_window_document(normalized)
        migrated += 1
        logger.info(
            "Migrated window %s (%s) to service_ids=%s",
            normalized.get("name", normalized.get("id")),
            normalized.get("department"),
            normalized["service_ids"],
        )

    if migrated:
        logger.info("Window migration completed: %d document(s) updated", migrated)
    return migrated
