import pytest
from httpx import ASGITransport, AsyncClient
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route

from app.middleware import RequestContextMiddleware, SecurityHeadersMiddleware


async def _ok(request: Request):
    return PlainTextResponse("OK")


def _app(is_production: bool = False) -> Starlette:
    test_app = Starlette(routes=[Route("/", _ok), Route("/wallet", _ok), Route("/bookings/me", _ok)])
    test_app.add_middleware(SecurityHeadersMiddleware, is_production=is_production)
    test_app.add_middleware(RequestContextMiddleware)
    return test_app


async def _get(test_app: Starlette, path: str, headers: dict | None = None):
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        return await ac.get(path, headers=headers)


@pytest.mark.asyncio
async def test_security_headers_in_production():
    response = await _get(_app(is_production=True), "/")

    assert response.status_code == 200
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Referrer-Policy"] == "no-referrer"
    assert response.headers["Content-Security-Policy"] == "default-src 'none'; frame-ancestors 'none'"
    assert "max-age=31536000" in response.headers["Strict-Transport-Security"]


@pytest.mark.asyncio
async def test_no_hsts_in_development():
    response = await _get(_app(), "/")

    assert "Strict-Transport-Security" not in response.headers
    assert "Content-Security-Policy" in response.headers


@pytest.mark.asyncio
async def test_money_routes_are_not_cached():
    wallet = await _get(_app(), "/wallet")
    bookings = await _get(_app(), "/bookings/me")

    assert wallet.headers["Cache-Control"] == "no-store"
    assert "Cache-Control" not in bookings.headers


@pytest.mark.asyncio
async def test_request_id_is_echoed_or_generated():
    supplied = await _get(_app(), "/", headers={"X-Request-ID": "req-42"})
    generated = await _get(_app(), "/")

    assert supplied.headers["X-Request-ID"] == "req-42"
    assert len(generated.headers["X-Request-ID"]) == 36
    assert generated.headers["X-Process-Time"].endswith("ms")


@pytest.mark.asyncio
async def test_unsafe_request_id_is_replaced():
    response = await _get(_app(), "/", headers={"X-Request-ID": "bad id;drop"})

    assert response.headers["X-Request-ID"] != "bad id;drop"
    assert len(response.headers["X-Request-ID"]) == 36
