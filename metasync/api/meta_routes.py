"""METASYNC: Meta API Routes."""

from fastapi import APIRouter, Depends, HTTPException, Query

from metasync.api.sync_routes import get_api_client, get_meta_client
from metasync.connectors.meta.client import MetaClient
from metasync.connectors.meta.resilient import ResilientApiClient
from metasync.core.errors import MetaSyncError
from metasync.core.logging import get_logger

logger = get_logger("api.meta")

router = APIRouter(prefix="/meta", tags=["Meta"])


@router.get("/validate-token")
def validate_token(
    client: MetaClient = Depends(get_meta_client),
    api: ResilientApiClient = Depends(get_api_client),
):
    """Check if the Meta access token is valid.

    Returns validity status, expiration, and granted scopes.
    """
    try:
        result = api.execute(client.validate_token, name="validate_token")
    except MetaSyncError as e:
        raise HTTPException(
            status_code=400, detail=f"Token validation failed: {str(e)}"
        )
    return {"status": "success", **result}


@router.get("/account-info")
def get_account_info(
    account_id: str = Query(..., description="Ad account id, with or without act_"),
    client: MetaClient = Depends(get_meta_client),
    api: ResilientApiClient = Depends(get_api_client),
):
    """Fetch ad account details from Meta."""
    try:
        result = api.execute(
            lambda: client.get_account_info(account_id), name="get_account_info"
        )
    except MetaSyncError as e:
        raise HTTPException(
            status_code=400, detail=f"Failed to fetch account info: {str(e)}"
        )
    return {"status": "success", "account": result}
