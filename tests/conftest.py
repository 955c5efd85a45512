import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from dualmerge.main import create_app
from tests.fakes import FakeProviderClient, make_settings


@pytest.fixture
def app_factory():
    def _factory(
        *,
        fake_a: FakeProviderClient = None,
        fake_b: FakeProviderClient = None,
        **settings_overrides,
    ):
        settings = make_settings(**settings_overrides)
        fake_a = fake_a or FakeProviderClient("a", answer="answer from A")
        fake_b = fake_b or FakeProviderClient("b", answer="answer from B")
        app = create_app(settings, provider_a=fake_a, provider_b=fake_b)
        return app, fake_a, fake_b

    return _factory


@pytest.fixture
async def client(app_factory):
    app, fake_a, fake_b = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_a = fake_a  # type: ignore[attr-defined]
            http_client.fake_b = fake_b  # type: ignore[attr-defined]
            yield http_client
