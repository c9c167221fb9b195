from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse, RedirectResponse, Response
from sqlalchemy.orm import Session

from app.config import Settings
from app.models.shopify import InstallStatusResponse, LinkAccountRequest, LinkAccountResponse, Operator
from app.models_sqlalchemy import get_db
from app.services.auth import get_current_operator
from app.services.shopify_errors import (
    ShopifyApiError,
    ShopifySignatureError,
    ShopifyValidationError,
    ShopNotInstalledError,
)
from app.services.shopify_oauth import (
    OPERATOR_COOKIE_NAME,
    STATE_COOKIE_NAME,
    ShopifyOAuthController,
    shopify_oauth_controller,
)
from app.utils.logger import logger


router = APIRouter(prefix="/shopify", tags=["shopify_install"])


def get_oauth_controller() -> ShopifyOAuthController:
    return shopify_oauth_controller


def _set_handshake_cookie(response: Response, name: str, value: str, max_age: int, config: Settings) -> None:
    secure = config.SHOPIFY_COOKIE_SECURE
    response.set_cookie(
        name,
        value,
        max_age=max_age,
        path="/",
        httponly=True,
        secure=secure,
        # The callback arrives as a cross-site top-level redirect from Shopify.
        samesite="none" if secure else "lax",
    )


def _clear_handshake_cookies(response: Response) -> None:
    for name in (STATE_COOKIE_NAME, OPERATOR_COOKIE_NAME):
        response.delete_cookie(name, path="/")


# ---------------------------------------------------------------------------
# Browser-facing handshake: plain-text errors, never JSON
# ---------------------------------------------------------------------------


@router.get("/install/start")
async def install_start(
    shop: Optional[str] = Query(None),
    token: Optional[str] = Query(None, description="Optional operator JWT; install may precede login"),
    controller: ShopifyOAuthController = Depends(get_oauth_controller),
):
    try:
        started = controller.begin_install(shop, token)
    except ShopifyValidationError as exc:
        return PlainTextResponse(exc.message, status_code=status.HTTP_400_BAD_REQUEST)
    except RuntimeError as exc:
        logger.error("[shopify-install] start misconfigured: %s", exc)
        return PlainTextResponse("Failed to initiate Shopify connection.", status_code=500)

    response = RedirectResponse(started.redirect_url, status_code=status.HTTP_302_FOUND)
    _set_handshake_cookie(
        response,
        STATE_COOKIE_NAME,
        started.state_cookie,
        controller.settings.SHOPIFY_STATE_COOKIE_TTL_SECONDS,
        controller.settings,
    )
    if started.operator_cookie:
        _set_handshake_cookie(
            response,
            OPERATOR_COOKIE_NAME,
            started.operator_cookie,
            controller.settings.SHOPIFY_OPERATOR_COOKIE_TTL_SECONDS,
            controller.settings,
        )
    return response


@router.get("/install/callback")
async def install_callback(
    request: Request,
    db: Session = Depends(get_db),
    controller: ShopifyOAuthController = Depends(get_oauth_controller),
):
    # Signature verification needs the query exactly as Shopify sent it.
    raw_query = request.url.query
    params = dict(request.query_params)

    try:
        completed = await controller.complete_install(
            db,
            params,
            raw_query,
            request.cookies.get(STATE_COOKIE_NAME),
            request.cookies.get(OPERATOR_COOKIE_NAME),
        )
    except ShopifySignatureError as exc:
        return PlainTextResponse(exc.message, status_code=exc.status_code)
    except ShopifyValidationError as exc:
        return PlainTextResponse(exc.message, status_code=status.HTTP_400_BAD_REQUEST)
    except ShopifyApiError as exc:
        logger.error(
            "[shopify-install] token exchange failed shop=%s status=%s context=%s",
            exc.shop,
            exc.status,
            exc.context,
        )
        return PlainTextResponse("Authentication failed.", status_code=500)

    response = RedirectResponse(completed.redirect_url, status_code=status.HTTP_302_FOUND)
    _clear_handshake_cookies(response)
    return response


# ---------------------------------------------------------------------------
# JSON endpoints
# ---------------------------------------------------------------------------


@router.post("/link-account", response_model=LinkAccountResponse)
async def link_account(
    payload: LinkAccountRequest,
    db: Session = Depends(get_db),
    current_operator: Operator = Depends(get_current_operator),
    controller: ShopifyOAuthController = Depends(get_oauth_controller),
):
    try:
        store = controller.link_account(db, payload.shop, current_operator.id)
    except ShopifyValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    except ShopNotInstalledError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)

    return LinkAccountResponse(shop=store.shop, linked=True)


@router.get("/status", response_model=InstallStatusResponse, response_model_exclude_none=True)
async def install_status(
    shop: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    controller: ShopifyOAuthController = Depends(get_oauth_controller),
):
    try:
        result = controller.get_status(db, shop)
    except ShopifyValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)

    return InstallStatusResponse(installed=result.installed, linked=result.linked, authUrl=result.auth_url)
