"""Plaid API client construction and the Link calls (link token, token exchange).

The client is built per use and passed explicitly to whatever needs it;
nothing in the sync engine reaches for a process-wide Plaid client.
"""

import json
import logging
from datetime import datetime

import plaid
import urllib3
from plaid.api import plaid_api
from plaid.exceptions import ApiException
from plaid.model.country_code import CountryCode
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.products import Products

from ledgersync.core.config import Settings, settings as default_settings
from ledgersync.services.errors import RemoteUnavailable

logger = logging.getLogger(__name__)


def build_plaid_client(settings: Settings = default_settings) -> plaid_api.PlaidApi:
    if not settings.plaid_configured:
        raise RuntimeError("Plaid is not configured (PLAID_CLIENT_ID / PLAID_SECRET)")

    configuration = plaid.Configuration(
        host=getattr(plaid.Environment, settings.plaid_env.capitalize(), plaid.Environment.Sandbox),
        api_key={
            "clientId": settings.plaid_client_id,
            "secret": settings.plaid_secret,
        },
    )
    return plaid_api.PlaidApi(plaid.ApiClient(configuration))


def remote_error(exc: Exception) -> RemoteUnavailable:
    """Map a Plaid SDK or transport exception onto RemoteUnavailable."""
    if isinstance(exc, ApiException):
        error_code = None
        message = exc.reason or f"HTTP {exc.status}"
        body = getattr(exc, "body", None)
        if isinstance(body, (str, bytes)):
            try:
                details = json.loads(body)
            except ValueError:
                details = None
            if isinstance(details, dict):
                error_code = details.get("error_code")
                message = details.get("error_message") or message
        return RemoteUnavailable(message, error_code=error_code)
    return RemoteUnavailable(f"{type(exc).__name__}: {exc}")


def exchange_public_token(client, public_token: str) -> tuple[str, str]:
    """Swap a Link public token for (access_token, item_id)."""
    try:
        response = client.item_public_token_exchange(
            ItemPublicTokenExchangeRequest(public_token=public_token)
        )
    except (ApiException, urllib3.exceptions.HTTPError, OSError) as exc:
        raise remote_error(exc) from exc
    logger.info("Exchanged public token for item %s", response.item_id)
    return response.access_token, response.item_id


def create_link_token(client, user_id: str, settings: Settings = default_settings) -> tuple[str, datetime]:
    """Start a Plaid Link session for ``user_id``. Returns (link_token, expiration)."""
    options = {}
    if settings.plaid_redirect_uri:
        options["redirect_uri"] = settings.plaid_redirect_uri

    request = LinkTokenCreateRequest(
        user=LinkTokenCreateRequestUser(client_user_id=user_id),
        client_name=settings.plaid_client_name,
        products=[Products("transactions")],
        country_codes=[CountryCode(code.strip()) for code in settings.plaid_country_codes.split(",")],
        language="en",
        **options,
    )
    try:
        response = client.link_token_create(request)
    except (ApiException, urllib3.exceptions.HTTPError, OSError) as exc:
        raise remote_error(exc) from exc
    return response.link_token, response.expiration
