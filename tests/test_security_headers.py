"""
Tests for SecurityHeadersMiddleware.

Checks that:
- in production (DEBUG=False) CSP, HSTS and nosniff are on every response
- in development (DEBUG=True) CSP and HSTS are left out so plain HTTP keeps
  working, while nosniff is always applied
"""
import pytest

from httpx import ASGITransport, AsyncClient
from starlette.applications import Starlette
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from app.core.middleware import SecurityHeadersMiddleware


def _hello(request):
    return PlainTextResponse("ok")


def _build_test_app(*, debug: bool) -> Starlette:
    test_app = Starlette(routes=[Route("/test", _hello)])
    test_app.add_middleware(SecurityHeadersMiddleware, debug=debug)
    return test_app


@pytest.fixture
async def production_client(settings, async_engine):
    from app.main import create_app

    app = create_app(settings.model_copy(update={"DEBUG": False}), engine=async_engine)
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestSecurityHeadersProduction:

    @pytest.mark.asyncio
    async def test_csp_upgrade_insecure_requests(self, production_client) -> None:
        response = await production_client.get("/health")
        assert response.status_code == 200
        csp = response.headers.get("content-security-policy", "")
        assert "upgrade-insecure-requests" in csp

    @pytest.mark.asyncio
    async def test_hsts_header(self, production_client) -> None:
        response = await production_client.get("/health")
        hsts = response.headers.get("strict-transport-security", "")
        assert "max-age=" in hsts
        assert "includeSubDomains" in hsts

    @pytest.mark.asyncio
    async def test_x_content_type_options(self, production_client) -> None:
        response = await production_client.get("/health")
        assert response.headers.get("x-content-type-options") == "nosniff"

    @pytest.mark.asyncio
    async def test_headers_on_rejected_requests(self, production_client) -> None:
        """A 401 from the admin API still carries the headers"""
        response = await production_client.get("/api/admin/queue/stats")
        assert response.status_code == 401
        assert "upgrade-insecure-requests" in response.headers.get("content-security-policy", "")


class TestSecurityHeadersDebugMode:

    @pytest.mark.unit
    def test_no_hsts_csp_in_debug(self) -> None:
        app = _build_test_app(debug=True)
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.status_code == 200
            assert "content-security-policy" not in response.headers
            assert "strict-transport-security" not in response.headers

    @pytest.mark.unit
    def test_nosniff_always_present_even_in_debug(self) -> None:
        app = _build_test_app(debug=True)
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.headers.get("x-content-type-options") == "nosniff"

    @pytest.mark.asyncio
    async def test_debug_app_only_sends_nosniff(self, test_client) -> None:
        response = await test_client.get("/health")
        assert response.headers.get("x-content-type-options") == "nosniff"
        assert "strict-transport-security" not in response.headers

    @pytest.mark.unit
    def test_security_headers_when_not_debug(self) -> None:
        app = _build_test_app(debug=False)
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.status_code == 200
            assert "upgrade-insecure-requests" in response.headers.get(
                "content-security-policy", ""
            )
            assert "max-age=" in response.headers.get(
                "strict-transport-security", ""
            )
            assert response.headers.get("x-content-type-options") == "nosniff"
