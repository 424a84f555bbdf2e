"""One page of Plaid /transactions/sync.

The fetcher keeps no state between calls: the cursor returned with a page is
the whole continuation token, and the caller decides when (and whether) to
ask for the next one.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

import urllib3
from plaid.exceptions import ApiException
from plaid.model.transactions_sync_request import TransactionsSyncRequest

from ledgersync.core.config import settings
from ledgersync.services.plaid_client import remote_error

logger = logging.getLogger(__name__)


@dataclass
class RemoteTransaction:
    transaction_id: str
    amount: Decimal
    name: str
    merchant_name: str | None
    date: date
    pending: bool
    category: list[str] | None = None
    pfc_primary: str | None = None
    pfc_detailed: str | None = None


@dataclass
class SyncPage:
    added: list[RemoteTransaction] = field(default_factory=list)
    modified: list[RemoteTransaction] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    next_cursor: str = ""
    has_more: bool = False


def _to_remote(pt) -> RemoteTransaction:
    # Plaid SDK models raise AttributeError for unset optional fields
    pfc = getattr(pt, "personal_finance_category", None)
    category = getattr(pt, "category", None)
    return RemoteTransaction(
        transaction_id=pt.transaction_id,
        amount=Decimal(str(pt.amount)),
        name=pt.name,
        merchant_name=getattr(pt, "merchant_name", None),
        date=pt.date,
        pending=bool(getattr(pt, "pending", False)),
        category=list(category) if category else None,
        pfc_primary=getattr(pfc, "primary", None) if pfc else None,
        pfc_detailed=getattr(pfc, "detailed", None) if pfc else None,
    )


class PageFetcher:
    """Wraps ``PlaidApi.transactions_sync`` for a single page."""

    def __init__(self, client, page_size: int | None = None):
        self.client = client
        self.page_size = page_size or settings.plaid_page_size

    async def fetch(self, access_token: str, cursor: str | None = None) -> SyncPage:
        """Fetch the changes after ``cursor`` (the full history when it is None).

        Raises:
            RemoteUnavailable: on any Plaid API or transport failure.
        """
        if cursor:
            request = TransactionsSyncRequest(
                access_token=access_token, cursor=cursor, count=self.page_size
            )
        else:
            request = TransactionsSyncRequest(access_token=access_token, count=self.page_size)

        try:
            # The SDK is blocking; run it off the event loop so the await is cancellable
            response = await asyncio.to_thread(self.client.transactions_sync, request)
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as exc:
            raise remote_error(exc) from exc

        page = SyncPage(
            added=[_to_remote(pt) for pt in response.added],
            modified=[_to_remote(pt) for pt in response.modified],
            removed=[r.transaction_id for r in response.removed],
            next_cursor=response.next_cursor,
            has_more=bool(response.has_more),
        )
        logger.debug(
            "Fetched page: %d added, %d modified, %d removed, has_more=%s",
            len(page.added), len(page.modified), len(page.removed), page.has_more,
        )
        return page
