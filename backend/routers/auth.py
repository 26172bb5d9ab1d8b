from fastapi import APIRouter, Depends, Query, Request
from typing import Optional
import logging

from services.auth import (
    AuthService,
    AuthenticatedPrincipal,
    LoginRequest,
    Token,
    TokenService,
    get_token_service,
)
from services.authorization import AuthorizationResolver
from services.storage import DocumentStore
from services.store_provider import get_document_store
from middleware.auth import get_current_principal

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# ==================== PUBLIC ENDPOINTS ====================

@router.post("/login", response_model=Token)
async def login(
    login_data: LoginRequest,
    request: Request,
    store: DocumentStore = Depends(get_document_store),
    token_service: TokenService = Depends(get_token_service),
):
    """
    Authenticate with email and password and return an access token.

    The identity is looked up in the canonical store first, then the legacy
    account and profile stores.

    Example:
    ```json
    {
      "email": "secretary@lodge.org",
      "password": "correct horse"
    }
    ```
    """
    logger.debug(f"Login attempt for {login_data.email} from {_client_ip(request)}")
    result = await AuthService(store, token_service).authenticate(login_data.email, login_data.password)
    return result.to_token()


# ==================== AUTHENTICATED ENDPOINTS ====================

@router.get("/verify")
async def verify(principal: AuthenticatedPrincipal = Depends(get_current_principal)):
    """
    Verify the bearer token.

    Returns the caller with the role as stored now and the lodge display
    name as it is now.
    """
    return {"valid": True, "user": principal.to_dict()}


@router.get("/permissions")
async def permissions(
    scope_id: Optional[str] = Query(None, description="Lodge the caller wants to act on"),
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    store: DocumentStore = Depends(get_document_store),
):
    """
    Effective permission of the caller, optionally for one lodge.

    404 when the lodge does not exist, 403 when the caller has no access to it.
    """
    permission = await AuthorizationResolver(store).resolve(principal.identity, requested_scope=scope_id)
    return permission.to_dict()
