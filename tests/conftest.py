"""Shared fixtures: sheet CSV samples, a stub sheet fetcher and an in-memory badge contract."""
import httpx
import pytest
from fastapi.testclient import TestClient
from web3 import Web3

from sheets import CatalogCache, UserDirectory

CATALOG_URL = "https://sheets.test/export?gid=catalog"
USERS_URL = "https://sheets.test/export?gid=users"

ALICE_WALLET = "0xabc0000000000000000000000000000000000001"
CAROL_WALLET = "0x00000000000000000000000000000000000000c0"

CATALOG_CSV = (
    "ID,Nombre,Descripción,Imagen\n"
    '1,Safety Basics,"Intro course, part 1",https://img.test/1.png\n'
    '2,"Heights ""Pro""","Line one\nline two",https://img.test/2.png\n'
    "5,Safety Level 1,First level,https://img.test/5.png\n"
    "abc,Broken,row,https://img.test/x.png\n"
)

USERS_CSV = (
    "Marca temporal,Correo,Wallet,Nombre,Empresa,Cargo,Insignias\n"
    f"2024-01-01,alice@x.com,{ALICE_WALLET},Alice,ACME,Lead,5\n"
    '2024-01-02,bob@x.com,not-a-wallet,Bob,ACME,Tech,"1,2"\n'
    f'2024-01-03, Carol@X.com ,{CAROL_WALLET},Carol,ACME,Tech,"1; 2 99"\n'
    f"2024-01-04,dave@x.com,{CAROL_WALLET},Dave,ACME,Tech,99\n"
)


def checksum(address: str) -> str:
    return Web3.to_checksum_address(address.lower())


class StubFetcher:
    """Async stand-in for fetch_sheet_csv. Replays responses in order; exceptions are raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    async def __call__(self, url: str) -> str:
        self.calls += 1
        response = self.responses[0] if len(self.responses) == 1 else self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeBadgeContract:
    """In-memory BadgeContract. A successful send_mint credits the balance right away."""

    def __init__(self, balances=None, can_mint=True, failing_reads=(), estimate_error=None,
                 send_error=None, gas_estimate=100_000):
        self.balances = dict(balances or {})
        self.can_mint = can_mint
        self.failing_reads = set(failing_reads)
        self.estimate_error = estimate_error
        self.send_error = send_error
        self.gas_estimate = gas_estimate
        self.sent = []
        self.watched = []

    async def balance_of(self, wallet: str, badge_id: str) -> int:
        if badge_id in self.failing_reads:
            raise httpx.ConnectError("rpc unreachable")
        return self.balances.get((wallet, badge_id), 0)

    async def estimate_mint_gas(self, wallet: str, badge_id: str) -> int:
        if self.estimate_error:
            raise self.estimate_error
        return self.gas_estimate

    async def send_mint(self, wallet: str, badge_id: str, gas_limit: int) -> str:
        if self.send_error:
            raise self.send_error
        self.sent.append((wallet, badge_id, gas_limit))
        self.balances[(wallet, badge_id)] = self.balances.get((wallet, badge_id), 0) + 1
        return "0x" + f"{len(self.sent):064x}"

    async def watch_receipt(self, tx_hash: str) -> None:
        self.watched.append(tx_hash)


@pytest.fixture
def fake_contract() -> FakeBadgeContract:
    return FakeBadgeContract()


@pytest.fixture
def catalog_cache() -> CatalogCache:
    return CatalogCache(CATALOG_URL, ttl=60, fetcher=StubFetcher(CATALOG_CSV))


@pytest.fixture
def user_directory() -> UserDirectory:
    return UserDirectory(USERS_URL, fetcher=StubFetcher(USERS_CSV))


@pytest.fixture
def client(catalog_cache, user_directory, fake_contract):
    """TestClient with sheets and contract swapped for the fixtures above."""
    from main import app, get_badge_contract, get_catalog_cache, get_user_directory

    app.dependency_overrides[get_catalog_cache] = lambda: catalog_cache
    app.dependency_overrides[get_user_directory] = lambda: user_directory
    app.dependency_overrides[get_badge_contract] = lambda: fake_contract
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
