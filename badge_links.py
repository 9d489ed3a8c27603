import os
import re
from datetime import date
from urllib.parse import quote, urlencode

OPENSEA_ASSETS_BASE = "https://opensea.io/assets/matic"
LINKEDIN_ADD_CERT_URL = "https://www.linkedin.com/profile/add"
ISSUER_NAME = os.getenv("ISSUER_NAME", "La Movida de SST DAO")
LINKEDIN_ORGANIZATION_ID = os.getenv("LINKEDIN_ORGANIZATION_ID")

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_DEC_RE = re.compile(r"^[0-9]+$")


def opensea_link(contract_address: str, badge_id: str) -> str:
    return f"{OPENSEA_ASSETS_BASE}/{contract_address}/{badge_id}"


def certificate_id(tx_hash: str | None, contract_address: str, badge_id: str) -> str:
    """LinkedIn certId: the mint tx hash, or contract+id when nothing was minted now."""
    if tx_hash:
        return tx_hash
    return f"{contract_address}-{badge_id}"


def linkedin_link(name: str, cert_url: str, cert_id: str, today: date | None = None) -> str:
    """Deep link that opens LinkedIn's "add certification" form pre-filled."""
    today = today or date.today()
    params = {
        "startTask": "CERTIFICATION_NAME",
        "name": name,
    }
    if LINKEDIN_ORGANIZATION_ID:
        params["organizationId"] = LINKEDIN_ORGANIZATION_ID
    else:
        params["organizationName"] = ISSUER_NAME
    params.update({
        "issueYear": str(today.year),
        "issueMonth": str(today.month),
        "certUrl": cert_url,
        "certId": cert_id,
    })
    return f"{LINKEDIN_ADD_CERT_URL}?{urlencode(params, quote_via=quote)}"


def normalize_token_id(raw: str) -> str | None:
    """Canonical decimal form of a token id.

    Accepts plain decimal ("5"), 0x-prefixed hex ("0x5") and the 64 character
    zero-padded hex that ERC-1155 wallets substitute for {id} in the URI.
    Short hex without the 0x prefix is rejected.
    """
    value = (raw or "").strip()
    if not value:
        return None
    if value[:2].lower() == "0x":
        digits = value[2:]
        return str(int(digits, 16)) if digits and _HEX_RE.match(digits) else None
    if len(value) == 64 and _HEX_RE.match(value):
        return str(int(value, 16))
    if _DEC_RE.match(value):
        return str(int(value))
    return None
