"""
api/routes/v1/secrets.py -- Reveal / hide / copy for vault entries as JSON.

Routes:
  POST /api/v1/secrets/{secret_id}/reveal -- fetch + show; returns the value
  POST /api/v1/secrets/{secret_id}/hide   -- stop showing; returns visible=false
  POST /api/v1/secrets/{secret_id}/copy   -- 409 unless visible; returns the value
                                             for the page to put on the clipboard

All state lives in app.state.vault (SecretVisibilityCache); these handlers
only translate it to HTTP. Responses carry Cache-Control: no-store because
two of them contain plaintext.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import CopyResponse, VisibilityResponse
from auth.dependencies import get_current_principal
from core.errors import NetworkOrServerError, NotVisibleError
from vault.visibility import SecretVisibilityCache

router = APIRouter(dependencies=[Depends(get_current_principal)])


def _no_store(model) -> JSONResponse:
    resp = JSONResponse(content=model.model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/secrets/{secret_id}/reveal", response_model=VisibilityResponse)
async def reveal_secret(request: Request, secret_id: str) -> JSONResponse:
    vault: SecretVisibilityCache = request.app.state.vault
    try:
        await vault.reveal(secret_id)
    except NetworkOrServerError as e:
        raise HTTPException(
            status_code=502 if (e.status or 500) >= 500 else e.status,
            detail={"code": "reveal_failed", "message": e.message},
        ) from e
    return _no_store(
        VisibilityResponse(id=secret_id, visible=vault.is_visible(secret_id), data=vault.value(secret_id))
    )


@router.post("/secrets/{secret_id}/hide", response_model=VisibilityResponse)
async def hide_secret(request: Request, secret_id: str) -> VisibilityResponse:
    vault: SecretVisibilityCache = request.app.state.vault
    vault.hide(secret_id)
    return VisibilityResponse(id=secret_id, visible=False)


@router.post("/secrets/{secret_id}/copy", response_model=CopyResponse)
async def copy_secret(request: Request, secret_id: str) -> JSONResponse:
    vault: SecretVisibilityCache = request.app.state.vault
    try:
        vault.copy(secret_id)
    except NotVisibleError as e:
        raise HTTPException(
            status_code=409,
            detail={"code": "not_visible", "message": e.message},
        ) from e
    return _no_store(CopyResponse(id=secret_id, data=request.app.state.clipboard.take() or ""))
