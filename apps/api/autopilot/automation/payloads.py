from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

AUTOPILOT_PREFIX = "[AUTOPILOT]"

MergeEntityType = Literal["person", "org"]


@dataclass(frozen=True)
class DealTrigger:
    id: int
    action: str = ""
    type: Literal["deal"] = "deal"


@dataclass(frozen=True)
class LeadTrigger:
    id: str
    action: str = ""
    type: Literal["lead"] = "lead"


@dataclass(frozen=True)
class UnknownTrigger:
    action: str = ""
    type: Literal["unknown"] = "unknown"

    @property
    def id(self) -> str:
        return "unknown"


WebhookTrigger = DealTrigger | LeadTrigger | UnknownTrigger


@dataclass(frozen=True)
class WebhookMeta:
    user_id: int | None = None
    is_bulk_update: bool = False


@dataclass(frozen=True)
class MergeReviewInput:
    entity_type: MergeEntityType
    source_id: int
    target_id: int
    confidence_score: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "confidence_score": self.confidence_score,
        }


def to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def to_int_id(value: Any) -> int | None:
    number = to_number(value)
    if number is None or not number.is_integer():
        return None
    return int(number)


def _first_present(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def parse_webhook_payload(payload: Any) -> WebhookTrigger:
    if not isinstance(payload, Mapping):
        return UnknownTrigger()

    meta = _as_mapping(payload.get("meta"))
    object_name = str(_first_present(meta.get("object"), payload.get("object")) or "").lower()
    action = str(_first_present(meta.get("action"), payload.get("action")) or "").lower()
    current = payload.get("current")
    if not isinstance(current, Mapping):
        current = _as_mapping(payload.get("data"))

    if object_name in {"deal", "deals"}:
        deal_id = to_int_id(_first_present(current.get("id"), payload.get("id")))
        if deal_id is not None:
            return DealTrigger(id=deal_id, action=action)

    if object_name in {"lead", "leads"}:
        lead_id = _first_present(current.get("id"), payload.get("id"))
        if isinstance(lead_id, str) and lead_id.strip():
            return LeadTrigger(id=lead_id, action=action)

    fallback_deal_id = to_int_id(_first_present(payload.get("deal_id"), current.get("deal_id"), current.get("id")))
    mentions_deal = "deal" in str(payload.get("event") or "") or "deal" in str(meta.get("object") or "")
    if fallback_deal_id is not None and mentions_deal:
        return DealTrigger(id=fallback_deal_id, action=action)

    fallback_lead_id = _first_present(payload.get("lead_id"), current.get("lead_id"), current.get("id"))
    if isinstance(fallback_lead_id, str) and fallback_lead_id.strip():
        return LeadTrigger(id=fallback_lead_id, action=action)

    return UnknownTrigger(action=action)


def parse_webhook_meta(payload: Any) -> WebhookMeta:
    if not isinstance(payload, Mapping):
        return WebhookMeta()
    meta = _as_mapping(payload.get("meta"))
    return WebhookMeta(
        user_id=to_int_id(meta.get("user_id")),
        is_bulk_update=meta.get("is_bulk_update") is True,
    )


def stage_allowed(active_stage_ids: list[int] | None, stage_id: Any) -> bool:
    if not active_stage_ids:
        return True
    if isinstance(stage_id, bool) or not isinstance(stage_id, int):
        return False
    return stage_id in active_stage_ids


def is_open_deal(deal: Mapping[str, Any], active_stage_ids: list[int] | None = None) -> bool:
    status = deal.get("status")
    if status and status != "open":
        return False
    return stage_allowed(active_stage_ids, deal.get("stage_id"))


def as_person_or_org_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, Mapping):
        nested = value.get("value")
        if isinstance(nested, int) and not isinstance(nested, bool):
            return nested
    return None


def has_autopilot_prefix(content: str | None) -> bool:
    if not content:
        return False
    return AUTOPILOT_PREFIX in content


def normalize_merge_entity_type(value: Any) -> MergeEntityType | None:
    candidate = str(value or "").lower()
    if "person" in candidate:
        return "person"
    if "org" in candidate:
        return "org"
    return None


def parse_merge_review_payload(payload: Any) -> MergeReviewInput | None:
    if not isinstance(payload, Mapping):
        return None

    entity_type = normalize_merge_entity_type(
        _first_present(payload.get("entityType"), payload.get("type"), payload.get("objectType"))
    )
    source_id = to_int_id(
        _first_present(payload.get("sourceId"), payload.get("loserId"), payload.get("duplicateId"))
    )
    target_id = to_int_id(
        _first_present(payload.get("targetId"), payload.get("winnerId"), payload.get("masterId"))
    )
    confidence = to_number(
        _first_present(payload.get("confidenceScore"), payload.get("confidence"), payload.get("score"))
    )

    if entity_type is None or source_id is None or target_id is None:
        return None
    if source_id == target_id:
        return None

    return MergeReviewInput(
        entity_type=entity_type,
        source_id=source_id,
        target_id=target_id,
        confidence_score=confidence if confidence is not None else 0.0,
    )
