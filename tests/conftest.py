import pytest
from fastapi.testclient import TestClient

from common.redis_client import IdempotencyCache
from common.security import mint_user_jwt
from escrow_service.collaborators import InMemoryAdvertisementDirectory
from escrow_service.main import EscrowServices, create_app
from tests.support import FakeRedis, ad_payload, make_store, settings_for


@pytest.fixture
def directory():
    return InMemoryAdvertisementDirectory({"ad-1": ad_payload("ad-1", owner_id="seller")})


@pytest.fixture
def services(tmp_path, directory):
    store = make_store(str(tmp_path))
    config = settings_for(str(tmp_path))
    services = EscrowServices.build(store, directory, config=config,
                                    idempotency=IdempotencyCache(client=FakeRedis(), ttl_seconds=60))
    yield services
    store.engine.dispose()


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


@pytest.fixture
def auth():
    def headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {mint_user_jwt(user_id)}"}
    return headers
