"""
Encodage KHQR (EMVCo "merchant presented QR", profil Bakong).

Chaque champ est un TLV texte: ID sur 2 chiffres, longueur sur 2 chiffres, valeur.
Le payload se termine par le tag 63 (CRC16-CCITT, poly 0x1021, init 0xFFFF)
calculé sur tout ce qui précède, "6304" compris.
"""
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple
import hashlib

from shopease import config

PAYLOAD_FORMAT = "00"
POINT_OF_INITIATION = "01"
INDIVIDUAL_ACCOUNT = "29"
MERCHANT_CATEGORY = "52"
CURRENCY = "53"
AMOUNT = "54"
COUNTRY = "58"
MERCHANT_NAME = "59"
MERCHANT_CITY = "60"
ADDITIONAL_DATA = "62"
TIMESTAMP = "99"
CRC = "63"

CURRENCY_CODES = {"KHR": "116", "USD": "840"}

# Sous-tags de 62 (données additionnelles)
BILL_NUMBER = "01"
STORE_LABEL = "03"
TERMINAL_LABEL = "07"


def tlv(tag: str, value: str) -> str:
    if len(value) > 99:
        raise ValueError(f"Valeur trop longue pour le tag {tag}")
    return f"{tag}{len(value):02d}{value}"


def crc16(data: str) -> str:
    crc = 0xFFFF
    for byte in data.encode("utf-8"):
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return f"{crc:04X}"


def md5_hex(payload: str) -> str:
    """Identifiant de corrélation Bakong: MD5 hexadécimal du payload KHQR."""
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def usd_to_khr(amount) -> int:
    """Conversion USD -> KHR au taux configuré, arrondie au riel."""
    khr = Decimal(str(amount)) * Decimal(config.USD_TO_KHR_RATE)
    return int(khr.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _epoch_ms(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return str(int(value.timestamp() * 1000))


def build_payload(
    *,
    amount: int,
    bill_number: str,
    expires_at: datetime,
    created_at: datetime,
    currency: str = "KHR",
    merchant_id: Optional[str] = None,
    merchant_name: Optional[str] = None,
    merchant_city: Optional[str] = None,
    store_label: Optional[str] = None,
    terminal_label: str = "ShopEase App",
) -> str:
    """Construit un KHQR dynamique (montant fixé) pour une facture."""
    if amount <= 0:
        raise ValueError("Montant de paiement invalide")
    merchant_name = (merchant_name or config.BAKONG_MERCHANT_NAME or "ShopEase Store")[:25]
    merchant_city = (merchant_city or config.BAKONG_MERCHANT_CITY or "Phnom Penh")[:15]
    additional = (
        tlv(BILL_NUMBER, bill_number[:25])
        + tlv(STORE_LABEL, (store_label or merchant_name)[:25])
        + tlv(TERMINAL_LABEL, terminal_label[:25])
    )
    body = (
        tlv(PAYLOAD_FORMAT, "01")
        + tlv(POINT_OF_INITIATION, "12")
        + tlv(INDIVIDUAL_ACCOUNT, tlv("00", merchant_id or config.BAKONG_MERCHANT_ID))
        + tlv(MERCHANT_CATEGORY, "5999")
        + tlv(CURRENCY, CURRENCY_CODES[currency])
        + tlv(AMOUNT, str(amount))
        + tlv(COUNTRY, "KH")
        + tlv(MERCHANT_NAME, merchant_name)
        + tlv(MERCHANT_CITY, merchant_city)
        + tlv(ADDITIONAL_DATA, additional)
        + tlv(TIMESTAMP, tlv("00", _epoch_ms(created_at)) + tlv("01", _epoch_ms(expires_at)))
    )
    body += CRC + "04"
    return body + crc16(body)


def parse_tlv(data: str) -> List[Tuple[str, str]]:
    fields: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(data):
        if pos + 4 > len(data):
            raise ValueError("TLV tronqué")
        tag, length = data[pos:pos + 2], int(data[pos + 2:pos + 4])
        value = data[pos + 4:pos + 4 + length]
        if len(value) != length:
            raise ValueError(f"Longueur invalide pour le tag {tag}")
        fields.append((tag, value))
        pos += 4 + length
    return fields


def decode_payload(payload: str) -> Dict[str, str]:
    """Décode un KHQR et vérifie son CRC. Retourne {tag: valeur} (premier niveau)."""
    if len(payload) < 8 or payload[-8:-4] != CRC + "04":
        raise ValueError("CRC absent")
    if crc16(payload[:-4]) != payload[-4:].upper():
        raise ValueError("CRC invalide")
    return dict(parse_tlv(payload))
