import datetime
from dataclasses import dataclass, field
from typing import Optional

import plaid
import structlog
from plaid.api import plaid_api
from plaid.model.country_code import CountryCode
from plaid.model.institutions_get_by_id_request import InstitutionsGetByIdRequest
from plaid.model.item_get_request import ItemGetRequest
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.products import Products
from plaid.model.transactions_get_request import TransactionsGetRequest
from plaid.model.transactions_get_request_options import TransactionsGetRequestOptions
from plaid.model.transactions_sync_request import TransactionsSyncRequest
from plaid.model.transactions_sync_request_options import TransactionsSyncRequestOptions

from errors import ExternalServiceError

logger = structlog.get_logger(__name__)

CLIENT_NAME = "AI Bookkeeping"
SYNC_PAGE_SIZE = 100

# --- Plaid Client Setup ---
ENVIRONMENTS = {
    "sandbox": plaid.Environment.Sandbox,
    "production": plaid.Environment.Production,
}


def build_plaid_client(client_id: Optional[str], secret: Optional[str], env: str = "sandbox"):
    """Returns a PlaidApi client, or None when credentials are not set."""
    if not client_id or not secret:
        return None

    configuration = plaid.Configuration(
        host=ENVIRONMENTS.get(env, plaid.Environment.Sandbox),
        api_key={
            'clientId': client_id,
            'secret': secret,
        }
    )
    api_client = plaid.ApiClient(configuration)
    return plaid_api.PlaidApi(api_client)


@dataclass
class SyncDelta:
    added: list = field(default_factory=list)
    modified: list = field(default_factory=list)
    removed: list = field(default_factory=list)
    next_cursor: Optional[str] = None


class PlaidService:
    def __init__(self, client, webhook_url: Optional[str] = None):
        self.client = client
        self.webhook_url = webhook_url

    def create_link_token(self, user_id: str) -> str:
        """
        Generates a Link Token to initialize Plaid Link on the client side.
        """
        kwargs = {
            'products': [Products('transactions')],
            'client_name': CLIENT_NAME,
            'country_codes': [CountryCode('US')],
            'language': 'en',
            'user': LinkTokenCreateRequestUser(client_user_id=user_id),
        }
        if self.webhook_url:
            kwargs['webhook'] = self.webhook_url

        try:
            response = self.client.link_token_create(LinkTokenCreateRequest(**kwargs))
        except plaid.ApiException as e:
            raise ExternalServiceError(f"Failed to create link token: {e.body}") from e
        logger.info("link_token_created")
        return response['link_token']

    def exchange_public_token(self, public_token: str):
        """
        Exchanges the public token (from Plaid Link) for an access token.
        """
        request = ItemPublicTokenExchangeRequest(public_token=public_token)
        try:
            response = self.client.item_public_token_exchange(request)
        except plaid.ApiException as e:
            raise ExternalServiceError(f"Failed to exchange public token: {e.body}") from e
        logger.info("public_token_exchanged", item_id=response['item_id'])
        return response['access_token'], response['item_id']

    def institution_name(self, access_token: str) -> str:
        try:
            item = self.client.item_get(ItemGetRequest(access_token=access_token))
            institution_id = item['item']['institution_id']
            if not institution_id:
                return "Unknown Institution"
            institution = self.client.institutions_get_by_id(
                InstitutionsGetByIdRequest(institution_id=institution_id, country_codes=[CountryCode('US')])
            )
        except plaid.ApiException as e:
            raise ExternalServiceError(f"Failed to look up institution: {e.body}") from e
        return institution['institution']['name']

    def _sync_page(self, access_token: str, cursor: Optional[str]) -> dict:
        sync_options = TransactionsSyncRequestOptions(
            include_personal_finance_category=True,
            include_original_description=True,
        )

        # Prepare arguments, omitting cursor if it is None
        kwargs = {
            'access_token': access_token,
            'count': SYNC_PAGE_SIZE,
            'options': sync_options,
        }
        if cursor:
            kwargs['cursor'] = cursor

        response = self.client.transactions_sync(TransactionsSyncRequest(**kwargs))
        return response.to_dict()

    def _recent_transactions(self, access_token: str, days: int = 30) -> list:
        end_date = datetime.date.today()
        start_date = end_date - datetime.timedelta(days=days)
        get_request = TransactionsGetRequest(
            access_token=access_token,
            start_date=start_date,
            end_date=end_date,
            options=TransactionsGetRequestOptions(
                include_personal_finance_category=True,
                include_original_description=True,
            ),
        )
        return self.client.transactions_get(get_request).to_dict().get("transactions", [])

    def sync_transactions(self, access_token: str, cursor: Optional[str] = None) -> SyncDelta:
        """
        Pulls every page of /transactions/sync after ``cursor``.
        """
        delta = SyncDelta(next_cursor=cursor)
        page_cursor = cursor
        has_more = True
        try:
            while has_more:
                page = self._sync_page(access_token, page_cursor)
                delta.added.extend(page.get("added", []))
                delta.modified.extend(page.get("modified", []))
                delta.removed.extend(page.get("removed", []))
                has_more = page.get("has_more", False)
                page_cursor = page.get("next_cursor", page_cursor)
                delta.next_cursor = page_cursor

            # Some sandbox items return zero transactions on the very first sync
            # because the initial update has not populated yet. In that case, fall
            # back to transactions/get for a 30-day window to seed the database.
            if cursor is None and not delta.added:
                delta.added = self._recent_transactions(access_token)
        except plaid.ApiException as e:
            raise ExternalServiceError(f"Plaid sync failed: {e.body}") from e

        logger.info(
            "plaid_sync_fetched",
            added=len(delta.added),
            modified=len(delta.modified),
            removed=len(delta.removed),
        )
        return delta
