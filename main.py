import os
import re
import sys
import asyncio

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

# Load environment variables before the modules below read them
load_dotenv(override=True)

from badge_chain import (  # noqa: E402
    CONTRACT_ADDRESS,
    BadgeContract,
    MintError,
    check_ownership,
    issue_badge,
    normalize_address,
)
from badge_links import (  # noqa: E402
    ISSUER_NAME,
    certificate_id,
    linkedin_link,
    normalize_token_id,
    opensea_link,
)
from logging_config import setup_logging  # noqa: E402
from sheets import (  # noqa: E402
    GID_INSIGNIAS,
    GID_USUARIOS,
    CatalogCache,
    UserDirectory,
    sheet_export_url,
)

# Configure logging
logger = setup_logging()

PORT = int(os.getenv("PORT", "3000"))

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Initialize FastAPI
app = FastAPI(
    title="SST Badge Issuer",
    description="Issues ERC-1155 badges to users listed in the SST Google Sheet",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ─────────────────────────────────────────────────────────────────────────────
# Sheets and contract wiring
# ─────────────────────────────────────────────────────────────────────────────
catalog_cache = CatalogCache(sheet_export_url(GID_INSIGNIAS))
user_directory = UserDirectory(sheet_export_url(GID_USUARIOS))
badge_contract = BadgeContract.from_env()

# in-flight receipt watcher tasks
_receipt_watchers: set[asyncio.Task] = set()


def get_catalog_cache() -> CatalogCache:
    return catalog_cache


def get_user_directory() -> UserDirectory:
    return user_directory


def get_badge_contract() -> BadgeContract | None:
    return badge_contract


# ─────────────────────────────────────────────────────────────────────────────
# Pydantic Models
# ─────────────────────────────────────────────────────────────────────────────
class ConsultarUsuarioRequest(BaseModel):
    email: str | None = None

    class Config:
        json_schema_extra = {"example": {"email": "alice@example.com"}}


class EmitirInsigniaRequest(BaseModel):
    wallet: str | None = None
    badgeId: str | int | None = None

    class Config:
        json_schema_extra = {
            "example": {"wallet": "0x4A5340cBB1e2D000357880fFBaC8AA5B6Cf557fD", "badgeId": "5"}
        }


class OwnershipView(BaseModel):
    id: str
    name: str
    description: str
    image: str
    owned: bool
    openseaLink: str
    linkedinLink: str


class ConsultarUsuarioResponse(BaseModel):
    success: bool
    wallet: str
    badges: dict[str, OwnershipView]


class MintResult(BaseModel):
    success: bool
    alreadyOwned: bool
    txHash: str | None = None
    opensea: str
    linkedin: str
    image: str


class BadgeMetadata(BaseModel):
    name: str
    description: str
    image: str
    external_url: str | None = None
    attributes: list[dict] = []


# ─────────────────────────────────────────────────────────────────────────────
# Error handling
# ─────────────────────────────────────────────────────────────────────────────
@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"Rejected malformed body on {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=400, content={"detail": "Datos inválidos"})


# ─────────────────────────────────────────────────────────────────────────────
# Liveness
# ─────────────────────────────────────────────────────────────────────────────
@app.get("/", response_class=PlainTextResponse)
async def root():
    return "Servidor SST Online."


@app.get("/health")
async def health():
    """
    Returns the health of the server.
    """
    return {
        "status": "healthy"
    }


# ─────────────────────────────────────────────────────────────────────────────
# 1) Look up a user's badges
# ─────────────────────────────────────────────────────────────────────────────
@app.post("/api/consultar-usuario", response_model=ConsultarUsuarioResponse)
async def consultar_usuario(
    data: ConsultarUsuarioRequest,
    catalog: CatalogCache = Depends(get_catalog_cache),
    directory: UserDirectory = Depends(get_user_directory),
    contract: BadgeContract | None = Depends(get_badge_contract),
):
    """ Returns the badges a user may claim and whether the wallet already holds them """
    email = (data.email or "").strip()
    if not email:
        raise HTTPException(status_code=400, detail="Falta email")
    if not _EMAIL_RE.match(email):
        raise HTTPException(status_code=400, detail="Email inválido")

    try:
        user = await directory.find(email)
    except httpx.HTTPError as e:
        logger.error(f"Error reading user sheet: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error leyendo Excel.")

    if user is None:
        logger.info(f"User {email.lower()} not found")
        raise HTTPException(status_code=404, detail="Usuario no encontrado.")

    badges = await catalog.get()
    permitted = [badge_id for badge_id in user.badge_ids if badge_id in badges]
    if not permitted:
        raise HTTPException(status_code=404, detail="Sin insignias asignadas.")

    owned = await check_ownership(contract, user.wallet, permitted)

    views = {}
    for badge_id in permitted:
        badge = badges[badge_id]
        opensea = opensea_link(CONTRACT_ADDRESS, badge_id)
        views[badge_id] = OwnershipView(
            **badge.model_dump(),
            owned=owned[badge_id],
            openseaLink=opensea,
            linkedinLink=linkedin_link(badge.name, opensea, certificate_id(None, CONTRACT_ADDRESS, badge_id)),
        )

    return ConsultarUsuarioResponse(success=True, wallet=user.wallet, badges=views)


# ─────────────────────────────────────────────────────────────────────────────
# 2) Mint a badge (fire and forget)
# ─────────────────────────────────────────────────────────────────────────────
@app.post("/api/emitir-insignia", response_model=MintResult)
async def emitir_insignia(
    data: EmitirInsigniaRequest,
    catalog: CatalogCache = Depends(get_catalog_cache),
    contract: BadgeContract | None = Depends(get_badge_contract),
):
    """ Mints the badge and answers as soon as the node accepts the transaction.

    The response does not mean the mint is confirmed; clients poll the chain for that.
    """
    if not data.wallet or data.badgeId is None or str(data.badgeId).strip() == "":
        raise HTTPException(status_code=400, detail="Datos incompletos")
    wallet = normalize_address(data.wallet)
    if wallet is None:
        raise HTTPException(status_code=400, detail="Wallet inválida")

    badge_id = normalize_token_id(str(data.badgeId))
    badges = await catalog.get()
    badge = badges.get(badge_id) if badge_id else None
    if badge is None:
        raise HTTPException(status_code=404, detail="ID de insignia no existe")

    if contract is None:
        raise HTTPException(status_code=500, detail="Error interno: Sin contrato.")

    logger.info(f"Issuing badge {badge_id} to {wallet}")
    try:
        outcome = await issue_badge(contract, wallet, badge_id)
    except MintError as e:
        raise HTTPException(status_code=500, detail=str(e))

    if outcome.tx_hash:
        task = asyncio.create_task(contract.watch_receipt(outcome.tx_hash))
        _receipt_watchers.add(task)
        task.add_done_callback(_receipt_watchers.discard)

    opensea = opensea_link(CONTRACT_ADDRESS, badge_id)
    return MintResult(
        success=True,
        alreadyOwned=outcome.already_owned,
        txHash=outcome.tx_hash,
        opensea=opensea,
        linkedin=linkedin_link(badge.name, opensea, certificate_id(outcome.tx_hash, CONTRACT_ADDRESS, badge_id)),
        image=badge.image,
    )


# ─────────────────────────────────────────────────────────────────────────────
# 3) Token metadata for OpenSea / wallets
# ─────────────────────────────────────────────────────────────────────────────
@app.get("/api/metadata/{token_id}.json", response_model=BadgeMetadata)
async def metadata(token_id: str, catalog: CatalogCache = Depends(get_catalog_cache)):
    badge_id = normalize_token_id(token_id)
    badges = await catalog.get()
    badge = badges.get(badge_id) if badge_id else None
    if badge is None:
        raise HTTPException(status_code=404, detail="No encontrada")

    return BadgeMetadata(
        name=badge.name,
        description=badge.description,
        image=badge.image,
        external_url=opensea_link(CONTRACT_ADDRESS, badge_id),
        attributes=[
            {"trait_type": "Emisor", "value": ISSUER_NAME},
            {"trait_type": "ID", "value": int(badge_id)},
        ],
    )


# ─────────────────────────────────────────────────────────────────────────────
# Main Logic if Called as a Script
# ─────────────────────────────────────────────────────────────────────────────
def main():
    print("Start the API using `python main.py api`.")


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "api":
        logger.info(f"Starting badge issuer on port {PORT}...")
        uvicorn.run(app, host="0.0.0.0", port=PORT)
    else:
        main()
