"""
Callback endpoint for the provider redirect.

Provides the single route the browser hits after the user authorizes:
- GET {callback_path}?state=...&code=...  - validate state, exchange code

The first request to reach the endpoint claims the flow. Its outcome is
delivered to the OutcomeCell after the response has been sent to the
browser. Later requests are redirected without touching the flow.
"""

import asyncio
import hmac
import logging

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse
from starlette.background import BackgroundTask

from loopback.core.domain import OAuthToken, Outcome
from loopback.core.exceptions import ExchangeError, LoopbackOAuthError, StateMismatchError
from loopback.core.ports import TokenExchanger
from loopback.core.rendezvous import OutcomeCell


logger = logging.getLogger(__name__)


def _failure_redirect(cell: OutcomeCell, error: LoopbackOAuthError) -> RedirectResponse:
    return RedirectResponse(
        url="/",
        status_code=status.HTTP_307_TEMPORARY_REDIRECT,
        background=BackgroundTask(cell.deliver, Outcome.failure(error)),
    )


async def _redeem(exchanger: TokenExchanger, code: str, redirect_uri: str) -> OAuthToken:
    """Exchange the code and validate the token response."""
    try:
        token_data = await exchanger.exchange(code, redirect_uri)
        return OAuthToken.from_oauth_response(token_data)
    except ExchangeError:
        raise
    except Exception as e:
        raise ExchangeError(f"Code exchange failed: {e}") from e


async def _redeem_unless_aborted(
    exchanger: TokenExchanger,
    code: str,
    redirect_uri: str,
    abort: asyncio.Event | None,
) -> OAuthToken | None:
    """
    Run the exchange until it finishes or the flow is aborted.

    Returns None when ``abort`` fired first; the exchange is cancelled.
    """
    if abort is None:
        return await _redeem(exchanger, code, redirect_uri)

    redeem = asyncio.ensure_future(_redeem(exchanger, code, redirect_uri))
    aborted = asyncio.ensure_future(abort.wait())
    try:
        await asyncio.wait({redeem, aborted}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (redeem, aborted):
            if not task.done():
                task.cancel()
        await asyncio.gather(redeem, aborted, return_exceptions=True)

    if redeem.done() and not redeem.cancelled():
        return redeem.result()
    return None


def create_callback_router(
    *,
    callback_path: str,
    expected_state: str,
    redirect_uri: str,
    exchanger: TokenExchanger,
    cell: OutcomeCell,
    success_page: str,
    abort: asyncio.Event | None = None,
) -> APIRouter:
    """
    Build the router holding the callback endpoint.

    The expected state is captured by value; nothing is looked up globally.

    Args:
        callback_path: Path the provider redirects to
        expected_state: Flow state embedded in the authorization URL
        redirect_uri: Full redirect URI, passed on to the exchanger
        exchanger: Code-for-token capability
        cell: One-shot cell receiving the flow outcome
        success_page: HTML shown to the browser on success
        abort: Event set by the flow once it is decided; an exchange still
            running is abandoned and the browser is redirected

    Returns:
        Router with a single GET route
    """
    router = APIRouter(tags=["oauth"])

    async def callback(request: Request):
        """
        Handle the provider redirect.

        Validates state, exchanges the code and answers the browser with the
        success page or a temporary redirect to ``/``.
        """
        if not cell.claim():
            logger.warning("Ignoring duplicate OAuth callback, flow already claimed")
            return RedirectResponse(url="/", status_code=status.HTTP_307_TEMPORARY_REDIRECT)

        params = request.query_params
        received_state = params.get("state")
        if received_state is None or not hmac.compare_digest(
            received_state.encode(), expected_state.encode()
        ):
            logger.error(
                "OAuth callback state mismatch",
                extra={"received_state": received_state},
            )
            return _failure_redirect(cell, StateMismatchError(expected_state, received_state))

        provider_error = params.get("error")
        if provider_error:
            description = params.get("error_description")
            logger.error(
                f"Provider returned an authorization error: {provider_error}",
                extra={"error": provider_error, "error_description": description},
            )
            message = f"Authorization denied by provider: {provider_error}"
            if description:
                message += f" ({description})"
            return _failure_redirect(cell, ExchangeError(message))

        code = params.get("code")
        if not code:
            logger.error("OAuth callback without authorization code")
            return _failure_redirect(cell, ExchangeError("Missing authorization code"))

        try:
            token = await _redeem_unless_aborted(exchanger, code, redirect_uri, abort)
        except ExchangeError as e:
            logger.error(f"OAuth error during token exchange: {e}")
            return _failure_redirect(cell, e)

        if token is None:
            logger.warning("OAuth flow ended during token exchange, redirecting browser")
            return RedirectResponse(url="/", status_code=status.HTTP_307_TEMPORARY_REDIRECT)

        logger.info("OAuth callback completed, token received")
        return HTMLResponse(
            content=success_page,
            status_code=status.HTTP_200_OK,
            background=BackgroundTask(cell.deliver, Outcome.success(token)),
        )

    router.add_api_route(
        callback_path,
        callback,
        methods=["GET"],
        include_in_schema=False,
    )
    return router


def create_callback_app(**router_kwargs) -> FastAPI:
    """
    Build the ASGI app served by the redirect listener.

    Only the callback path is routed; everything else is a 404.
    """
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    app.include_router(create_callback_router(**router_kwargs))
    return app
