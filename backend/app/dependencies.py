"""
Shared router dependencies: the shop's Facebook connection and Graph client,
and translation of service exceptions into HTTP errors.
"""

import logging
from dataclasses import dataclass
from fastapi import Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_shop
from app.config import get_settings
from app.database import get_db
from app.graph_client import FacebookGraphClient, GraphAPIError
from app.models import FacebookAccount
from app.services.campaign_store import SqlCampaignStore
from app.services.insights_service import InsightsService
from app.services.optimizer_service import CampaignOptimizationService
from app.services.token_service import AccountNotConnectedError, TokenExpiredError, get_graph_client_for_shop

logger = logging.getLogger(__name__)

# Graph codes that mean the stored token is no good any more
TOKEN_ERROR_CODES = {190}


@dataclass
class ShopConnection:
    shop: str
    account: FacebookAccount
    client: FacebookGraphClient


async def get_connection(
    shop: str = Depends(get_shop),
    db: AsyncSession = Depends(get_db),
) -> ShopConnection:
    try:
        account, client = await get_graph_client_for_shop(db, shop)
    except AccountNotConnectedError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TokenExpiredError as e:
        raise HTTPException(status_code=401, detail=str(e))
    return ShopConnection(shop=shop, account=account, client=client)


def graph_http_error(exc: GraphAPIError) -> HTTPException:
    """GraphAPIError messages are already merchant-safe; pass them through."""
    if exc.code in TOKEN_ERROR_CODES:
        return HTTPException(status_code=401, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


def build_insights_service(client: FacebookGraphClient, store: SqlCampaignStore) -> InsightsService:
    return InsightsService(
        client,
        average_order_value=store.average_order_value,
        default_average_order_value=get_settings().default_average_order_value,
    )


def build_optimizer(client: FacebookGraphClient, db: AsyncSession, shop: str) -> CampaignOptimizationService:
    """Optimization service bound to one shop's store and rules."""
    store = SqlCampaignStore(db, shop)
    return CampaignOptimizationService(client, build_insights_service(client, store), store)
