from contextlib import asynccontextmanager

from httpx import ASGITransport, AsyncClient

from paper_trading.api.deps import get_db_session, get_quote_service, get_session_locks
from paper_trading.main import create_app


@asynccontextmanager
async def api_client(session_factory, quotes, session_locks, overrides=None):
    """Yield an HTTP client bound to a fresh app wired to test doubles."""

    app = create_app()

    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_session
    app.dependency_overrides[get_quote_service] = lambda: quotes
    app.dependency_overrides[get_session_locks] = lambda: session_locks
    app.dependency_overrides.update(overrides or {})

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
