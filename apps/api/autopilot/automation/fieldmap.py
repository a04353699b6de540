from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from autopilot.automation.models import FieldMap

if TYPE_CHECKING:
    from autopilot.crm.client import CrmGateway

logger = logging.getLogger("autopilot.jobs")

FIELD_ENTITY_TYPES = ("deal", "lead", "person", "org")


class FieldMapService:
    def __init__(self, session: Session, gateway: CrmGateway) -> None:
        self.session = session
        self.gateway = gateway

    def refresh(self) -> int:
        upserted = 0
        for entity_type in FIELD_ENTITY_TYPES:
            for field in self.gateway.fields.list(entity_type):
                field_key = field.get("key")
                if not isinstance(field_key, str) or not field_key:
                    continue
                self._upsert(entity_type, field_key, field)
                upserted += 1
        self.session.commit()
        logger.info("fieldmap_refreshed", extra={"stats": {"upserted": upserted}})
        return upserted

    def list(self, entity_type: str | None = None) -> list[FieldMap]:
        stmt = select(FieldMap)
        if entity_type:
            stmt = stmt.where(FieldMap.entity_type == entity_type)
        return list(self.session.scalars(stmt.order_by(FieldMap.entity_type, FieldMap.field_key)))

    def _upsert(self, entity_type: str, field_key: str, field: dict) -> None:
        row = self.session.scalar(
            select(FieldMap).where(and_(FieldMap.entity_type == entity_type, FieldMap.field_key == field_key))
        )
        if row is None:
            row = FieldMap(entity_type=entity_type, field_key=field_key)
        row.name = str(field.get("name") or field_key)
        row.field_type = str(field.get("field_type") or "unknown")
        options = field.get("options")
        row.options_json = json.dumps(options) if options is not None else None
        self.session.add(row)
        self.session.flush()
