from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from leadsync.domain.events import CanonicalEvent, EventKind


class LeadState(str, Enum):
    NEW_LEAD = "new_lead"
    STATUS_UPDATE = "status_update"


class Outcome(str, Enum):
    SALE = "sale"
    LOSS = "loss"
    INTERMEDIATE = "intermediate"


KOMMO_STAGE_CLOSED_WON = "142"
KOMMO_STAGE_CLOSED_LOST = "143"

SALE_STATUS_KEYWORDS = (
    "venda",
    "vendido",
    "fechou",
    "fechado",
    "ganho",
    "ganhou",
    "convertido",
    "contrato",
    "assinado",
    "pago",
    "pagou",
    "comprou",
    "comprado",
    "sale",
    "won",
    "closed",
)
LOSS_STATUS_KEYWORDS = (
    "perdido",
    "perdeu",
    "desqualificado",
    "sem interesse",
    "desistiu",
    "lost",
)

# Ordered: first product whose keyword appears wins.
PRODUCT_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("BPC/LOAS", ("bpc", "loas", "benefício", "beneficio", "deficiência", "deficiencia", "idoso")),
    (
        "SALÁRIO-MATERNIDADE",
        (
            "maternidade",
            "gestante",
            "grávida",
            "gravida",
            "bebê",
            "bebe",
            "salário-maternidade",
            "salario maternidade",
        ),
    ),
    (
        "AUXÍLIO-DOENÇA",
        ("auxílio-doença", "auxilio doenca", "doença", "doenca", "afastamento", "incapacidade"),
    ),
    ("APOSENTADORIA", ("aposentadoria", "aposentar", "inss", "tempo de contribuição")),
)
CAMPAIGN_FIELDS = ("utmCampaign", "utm_campaign", "campaign", "adName", "ad_name", "adSetName", "adset_name")
ORIGIN_FIELDS = ("source", "channel", "medium", "utmSource", "utm_source", "utmMedium", "utm_medium")

CHANNEL_GOOGLE = "Google Ads"
CHANNEL_META = "Meta Ads"
CHANNEL_PAID = "Tráfego Pago"
CHANNEL_WHATSAPP = "WhatsApp"
PAID_CHANNELS = frozenset({CHANNEL_GOOGLE, CHANNEL_META, CHANNEL_PAID})

_ORIGIN_RULES = (
    (re.compile(r"google|gclid|g_ads|googleads|search|pmax|performance.max"), CHANNEL_GOOGLE, "Lead chegou pelo Google Ads"),
    (re.compile(r"meta|facebook|instagram|\bfb\b|\big\b|fbclid|meta_ads"), CHANNEL_META, "Lead chegou no Wpp pelo Meta"),
    (re.compile(r"\bcpc\b|\bcpm\b|paid|\bads\b|\bppc\b"), CHANNEL_PAID, "Lead chegou por tráfego pago"),
)

KOMMO_PAID_SOURCES = frozenset(
    {
        "google ads",
        "google",
        "meta",
        "facebook",
        "instagram",
        "meta ads",
        "facebook ads",
        "instagram ads",
        "trafego pago",
        "cpc",
        "ppc",
    }
)


@dataclass(frozen=True)
class Origin:
    channel: str
    comment: str

    @property
    def paid(self) -> bool:
        return self.channel in PAID_CHANNELS


ORGANIC_ORIGIN = Origin(CHANNEL_WHATSAPP, "Lead chegou via WhatsApp")


def fold_text(value: Any) -> str:
    """Lowercase and strip accents so keyword checks ignore diacritics."""
    text = unicodedata.normalize("NFKD", str(value or ""))
    return "".join(ch for ch in text if not unicodedata.combining(ch)).lower().strip()


def _contains_any(text: str, keywords: tuple[str, ...]) -> bool:
    folded = fold_text(text)
    return any(fold_text(keyword) in folded for keyword in keywords)


def classify_event(event: CanonicalEvent) -> LeadState:
    if event.kind_tagged:
        return LeadState.STATUS_UPDATE if event.kind is EventKind.UPDATE else LeadState.NEW_LEAD
    if event.sale_amount is not None and event.sale_amount > 0:
        return LeadState.STATUS_UPDATE
    return LeadState.NEW_LEAD


def is_sale_status(status_label: str | None) -> bool:
    return bool(status_label) and _contains_any(status_label, SALE_STATUS_KEYWORDS)


def classify_outcome(
    status_label: str | None,
    status_id: str | None = None,
    sale_amount: float | None = None,
) -> Outcome:
    if status_id is not None:
        if str(status_id) == KOMMO_STAGE_CLOSED_WON:
            return Outcome.SALE
        if str(status_id) == KOMMO_STAGE_CLOSED_LOST:
            return Outcome.LOSS
    if is_sale_status(status_label):
        return Outcome.SALE
    if status_label and _contains_any(status_label, LOSS_STATUS_KEYWORDS):
        return Outcome.LOSS
    if sale_amount is not None and sale_amount > 0:
        return Outcome.SALE
    return Outcome.INTERMEDIATE


def detect_product_from_text(text: str | None) -> str:
    if not text:
        return ""
    for product, keywords in PRODUCT_KEYWORDS:
        if _contains_any(text, keywords):
            return product
    return ""


def detect_product(payload: Mapping[str, Any]) -> str:
    campaign_text = " ".join(str(payload.get(key)) for key in CAMPAIGN_FIELDS if payload.get(key))
    product = detect_product_from_text(campaign_text)
    if product:
        return product
    text = payload.get("text")
    message = text.get("message") if isinstance(text, Mapping) else text
    return detect_product_from_text(message if isinstance(message, str) else None)


def _match_origin(text: str) -> Origin | None:
    folded = fold_text(text)
    if not folded:
        return None
    for pattern, channel, comment in _ORIGIN_RULES:
        if pattern.search(folded):
            return Origin(channel, comment)
    return None


def detect_origin(payload: Mapping[str, Any]) -> Origin:
    origin_text = " ".join(str(payload.get(key)) for key in ORIGIN_FIELDS if payload.get(key))
    origin = _match_origin(origin_text)
    if origin is None:
        campaign_text = " ".join(str(payload.get(key)) for key in CAMPAIGN_FIELDS if payload.get(key))
        origin = _match_origin(campaign_text)
    return origin or ORGANIC_ORIGIN


def is_paid_source(source: str | None) -> bool:
    folded = fold_text(source)
    if not folded:
        return False
    return any(key in folded for key in KOMMO_PAID_SOURCES)


def map_source_to_channel(source: str | None) -> str:
    folded = fold_text(source)
    if not folded:
        return CHANNEL_WHATSAPP
    if "google" in folded:
        return CHANNEL_GOOGLE
    if any(key in folded for key in ("meta", "facebook", "instagram")):
        return CHANNEL_META
    if any(key in folded for key in ("trafego pago", "cpc", "ppc")):
        return CHANNEL_PAID
    return str(source).strip()
