"""
Proxy Endpoint

Catch-all route forwarding every unmatched request through the dispatcher.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, Response

from routegate.routing.dispatcher import GatewayRequest

router = APIRouter()

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


@router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy(path: str, request: Request) -> Response:
    """Forward the request to an instance of the service its path routes to."""
    gateway_request = GatewayRequest(
        method=request.method,
        path=request.url.path,
        headers=request.headers.items(),
        body=await request.body(),
        query=request.url.query,
        client_host=request.client.host if request.client else None,
    )

    result = await request.app.state.dispatcher.dispatch(gateway_request)

    response = Response(content=result.body, status_code=result.status_code)
    # Repeated headers such as Set-Cookie stay separate
    for name, value in result.headers:
        response.headers.append(name, value)
    return response
