from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping
from urllib.parse import parse_qsl

from leadsync.domain.errors import InvalidPayload
from leadsync.domain.events import SOURCE_KOMMO, SOURCE_TINTIM, CanonicalEvent, EventKind
from leadsync.domain.formatting import digits_only, parse_amount, parse_timestamp


TINTIM_EVENT_KINDS = {
    "lead.create": EventKind.CREATE,
    "lead.update": EventKind.UPDATE,
}
KOMMO_LEAD_ACTIONS = ("add", "update", "status")
KOMMO_CONTACT_ACTIONS = ("add", "update")
KOMMO_SOURCE_FIELD_KEYS = (
    "Fonte de prospecção",
    "Fonte de prospeccao",
    "Source",
    "Origem",
    "UTM Source",
)

_FORM_KEY_PART = re.compile(r"\[([^\[\]]*)\]")


def _first_present(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def ensure_sequence(value: Any) -> list[Any]:
    """Coerce arrays, numeric-keyed objects, single objects and scalars into a list."""
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, Mapping):
        if not value:
            return []
        if all(str(key).isdigit() for key in value):
            return [value[key] for key in sorted(value, key=lambda k: int(str(k)))]
        return [value]
    return [value]


def extract_custom_field(fields: Any, key: str) -> Any:
    wanted = key.strip().lower()
    for item in ensure_sequence(fields):
        if not isinstance(item, Mapping):
            continue
        code = str(item.get("code") or item.get("field_code") or "").strip().lower()
        name = str(item.get("name") or item.get("field_name") or "").strip().lower()
        field_id = str(item.get("id") or item.get("field_id") or "")
        if wanted not in {code, name} and key != field_id:
            continue
        values = ensure_sequence(item.get("values"))
        if not values:
            return None
        first = values[0]
        if isinstance(first, Mapping):
            return first.get("value")
        return first
    return None


def parse_nested_form(raw_body: bytes | str) -> dict[str, Any]:
    """Parse `a[b][0][c]=v` style form bodies into nested dicts."""
    text = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
    result: dict[str, Any] = {}
    for raw_key, value in parse_qsl(text, keep_blank_values=True):
        head, bracket, rest = raw_key.partition("[")
        parts = [head]
        if bracket:
            parts.extend(_FORM_KEY_PART.findall(bracket + rest))
        node = result
        for part in parts[:-1]:
            part = part or str(len(node))
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1] or str(len(node))] = value
    return result


# --- Tintim ---------------------------------------------------------------


def extract_status_label(payload: Mapping[str, Any]) -> str | None:
    status = payload.get("status")
    if isinstance(status, Mapping):
        label = status.get("name")
    else:
        label = status
    if label is None:
        return None
    label = str(label).strip()
    return label or None


def extract_status_id(payload: Mapping[str, Any]) -> str | None:
    status = payload.get("status")
    if isinstance(status, Mapping) and status.get("id") is not None:
        return str(status["id"])
    status_id = payload.get("status_id")
    return str(status_id) if status_id is not None else None


def _tintim_event_kind(payload: Mapping[str, Any]) -> tuple[EventKind, bool]:
    event_type = payload.get("event_type")
    if not event_type:
        return EventKind.CREATE, False
    kind = TINTIM_EVENT_KINDS.get(str(event_type).strip().lower())
    if kind is None:
        raise InvalidPayload(f"Unsupported event type: {event_type}", reason="ignored_type")
    return kind, True


def normalize_tintim_payload(payload: Any, *, now: datetime | None = None) -> CanonicalEvent:
    if not isinstance(payload, Mapping) or not payload:
        raise InvalidPayload("Empty or non-object payload", reason="invalid")
    if payload.get("fromMe") is True:
        raise InvalidPayload("Message sent by the business", reason="from_me")

    kind, tagged = _tintim_event_kind(payload)
    annotated = copy.deepcopy(dict(payload))
    account = _as_dict(payload.get("account"))

    phone = digits_only(_first_present(payload.get("phone"), payload.get("phone_e164")))
    if not phone:
        raise InvalidPayload("Missing phone", reason="missing_phone")

    instance_id = _first_present(payload.get("instanceId"), account.get("code"))
    chat_name = _first_present(payload.get("chatName"), payload.get("name"))
    moment_raw = _first_present(
        payload.get("moment"),
        payload.get("created_isoformat"),
        payload.get("first_interaction_at"),
        payload.get("updated_isoformat"),
    )
    occurred_at = parse_timestamp(moment_raw) or now or datetime.now(timezone.utc)

    annotated["instanceId"] = str(instance_id) if instance_id is not None else None
    annotated["chatName"] = chat_name
    annotated["moment"] = occurred_at.isoformat()
    annotated.setdefault("senderName", account.get("name"))

    return CanonicalEvent(
        source_id=SOURCE_TINTIM,
        tenant_hint=annotated["instanceId"],
        phone=phone,
        display_name=str(chat_name).strip() if chat_name else None,
        occurred_at=occurred_at,
        kind=kind,
        kind_tagged=tagged,
        status_label=extract_status_label(payload),
        status_id=extract_status_id(payload),
        sale_amount=parse_amount(_first_present(payload.get("sale_amount"), payload.get("saleAmount"))),
        raw_payload=annotated,
    )


# --- Kommo ----------------------------------------------------------------


@dataclass(frozen=True)
class KommoLeadEvent:
    action: str
    lead: dict[str, Any]

    @property
    def lead_id(self) -> str | None:
        lead_id = self.lead.get("id")
        return str(lead_id) if lead_id is not None else None


@dataclass(frozen=True)
class KommoContactEvent:
    action: str
    contact_id: str | None
    name: str | None
    phone: str | None
    linked_lead_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class KommoDelivery:
    account_id: str | None
    subdomain: str | None
    lead_events: list[KommoLeadEvent] = field(default_factory=list)
    contact_events: list[KommoContactEvent] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.lead_events and not self.contact_events


def kommo_custom_fields(entity: Mapping[str, Any]) -> Any:
    return _first_present(entity.get("custom_fields"), entity.get("custom_fields_values"))


def kommo_lead_source(lead: Mapping[str, Any]) -> str | None:
    fields = kommo_custom_fields(lead)
    for key in KOMMO_SOURCE_FIELD_KEYS:
        value = extract_custom_field(fields, key)
        if value:
            return str(value).strip()
    return None


def _kommo_contact(action: str, contact: Mapping[str, Any]) -> KommoContactEvent:
    phone = extract_custom_field(kommo_custom_fields(contact), "PHONE")
    linked = contact.get("linked_leads_id")
    if isinstance(linked, Mapping):
        linked_ids = tuple(str(key) for key in linked)
    else:
        linked_ids = tuple(str(item) for item in ensure_sequence(linked))
    contact_id = contact.get("id")
    return KommoContactEvent(
        action=action,
        contact_id=str(contact_id) if contact_id is not None else None,
        name=contact.get("name") or None,
        phone=digits_only(phone) or None,
        linked_lead_ids=linked_ids,
    )


def normalize_kommo_body(body: Any) -> KommoDelivery:
    if not isinstance(body, Mapping) or not body:
        raise InvalidPayload("Empty Kommo delivery", reason="invalid")
    account = _as_dict(body.get("account"))
    account_id = _first_present(account.get("id"), body.get("account_id"))

    leads = _as_dict(body.get("leads"))
    lead_events = [
        KommoLeadEvent(action=action, lead=dict(lead))
        for action in KOMMO_LEAD_ACTIONS
        for lead in ensure_sequence(leads.get(action))
        if isinstance(lead, Mapping)
    ]
    contacts = _as_dict(body.get("contacts"))
    contact_events = [
        _kommo_contact(action, contact)
        for action in KOMMO_CONTACT_ACTIONS
        for contact in ensure_sequence(contacts.get(action))
        if isinstance(contact, Mapping)
    ]
    return KommoDelivery(
        account_id=str(account_id) if account_id is not None else None,
        subdomain=account.get("subdomain") or None,
        lead_events=lead_events,
        contact_events=contact_events,
    )


def kommo_lead_event(
    delivery: KommoDelivery,
    event: KommoLeadEvent,
    *,
    phone: str | None,
    contact_name: str | None = None,
    now: datetime | None = None,
) -> CanonicalEvent:
    digits = digits_only(phone)
    if not digits:
        raise InvalidPayload(f"Kommo lead {event.lead_id} has no phone", reason="missing_phone")
    lead = event.lead
    occurred_at = parse_timestamp(lead.get("date_create")) or now or datetime.now(timezone.utc)
    status_id = lead.get("status_id")
    return CanonicalEvent(
        source_id=SOURCE_KOMMO,
        tenant_hint=delivery.account_id,
        phone=digits,
        display_name=_first_present(contact_name, lead.get("name")),
        occurred_at=occurred_at,
        kind=EventKind.CREATE if event.action == "add" else EventKind.UPDATE,
        kind_tagged=True,
        status_label=None,
        status_id=str(status_id) if status_id is not None else None,
        sale_amount=parse_amount(lead.get("price")),
        external_id=event.lead_id,
        raw_payload={**lead, "_action": event.action, "_source": kommo_lead_source(lead)},
    )
