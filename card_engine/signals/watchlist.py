"""
Card Engine — Watchlist Alert Job

Runs hourly under the watchlist_check leader lock:
1. Load enabled watchlist entries
2. Batch-load the current price_cache rows and card names they reference
3. Fire entries whose threshold is crossed (inclusive on both sides)
4. Per fired entry, disable it and write a price_alert notification together
5. Push the alerts to the users' Expo devices, best-effort

At-most-once: an entry is disabled in the same transaction that records its
notification, so it cannot fire again until the user re-enables it.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any, Callable, NamedTuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from card_engine.config import AlertDirection
from card_engine.models.card_variant import CardVariant
from card_engine.models.notification import Notification
from card_engine.models.price_cache import PriceSnapshot
from card_engine.models.user import PushToken
from card_engine.models.watchlist import WatchlistEntry
from card_engine.signals.push import ExpoPushClient, PushMessage, is_expo_token

logger = structlog.get_logger(__name__)

NOTIFICATION_TYPE = "price_alert"

_CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€"}


class FiredAlert(NamedTuple):
    entry_id: uuid.UUID
    user_id: uuid.UUID
    variant_key: str
    title: str
    body: str
    data: dict[str, Any]


def is_triggered(direction: str, amount: Decimal, threshold: Decimal) -> bool:
    """Inclusive threshold test. Unknown directions never fire."""
    if direction == AlertDirection.ABOVE.value:
        return amount >= threshold
    if direction == AlertDirection.BELOW.value:
        return amount <= threshold
    return False


def format_amount(amount: Decimal, currency: str) -> str:
    symbol = _CURRENCY_SYMBOLS.get(currency)
    if symbol is not None:
        return f"{symbol}{amount:.2f}"
    return f"{amount:.2f} {currency}"


def alert_title(entry: WatchlistEntry, card_name: str) -> str:
    label = "Above" if entry.direction == AlertDirection.ABOVE.value else "Below"
    return f"{label} {format_amount(entry.threshold_amount, entry.currency)} - {card_name}"


def alert_body(entry: WatchlistEntry, amount: Decimal) -> str:
    return f"Now {format_amount(amount, entry.currency)} on {entry.market} ({entry.kind})"


def build_alert(entry: WatchlistEntry, amount: Decimal, card_name: str) -> FiredAlert:
    """Copy everything the notification needs off the entry."""
    return FiredAlert(
        entry_id=entry.id,
        user_id=entry.user_id,
        variant_key=entry.variant_key,
        title=alert_title(entry, card_name),
        body=alert_body(entry, amount),
        data={
            "variantId": entry.variant_key,
            "market": entry.market,
            "kind": entry.kind,
            "currency": entry.currency,
            "amount": str(amount),
            "threshold": str(entry.threshold_amount),
            "direction": entry.direction,
        },
    )


class WatchlistChecker:
    """
    Evaluates watchlist thresholds against price_cache.

    Usage:
        checker = WatchlistChecker(session_factory)
        fired = await checker.evaluate_watch_entries()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        push_client_factory: Callable[[], ExpoPushClient] = ExpoPushClient,
    ):
        self.session_factory = session_factory
        self.push_client_factory = push_client_factory

    async def evaluate_watch_entries(self) -> int:
        """
        Run one evaluation pass.

        Returns:
            Number of notifications created. 0 if the pass failed; the failure
            is logged, not raised.
        """
        try:
            fired = await self._evaluate()
            if fired:
                await self._push(fired)
            logger.info("watchlist_check_complete", notifications=len(fired))
            return len(fired)
        except Exception as e:
            logger.error(
                "watchlist_check_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return 0

    async def _evaluate(self) -> list[FiredAlert]:
        async with self.session_factory() as session:
            entries = (
                await session.scalars(
                    select(WatchlistEntry).where(WatchlistEntry.enabled.is_(True))
                )
            ).all()
            if not entries:
                logger.info("watchlist_check_no_entries")
                return []

            variant_keys = {entry.variant_key for entry in entries}
            prices = await self._load_prices(session, variant_keys)
            names = await self._load_names(session, variant_keys)

            # Built before any commit; commits expire the loaded entries
            candidates: list[FiredAlert] = []
            missing_prices = 0
            for entry in entries:
                amount = prices.get(
                    (entry.variant_key, entry.market, entry.kind, entry.currency)
                )
                if amount is None:
                    missing_prices += 1
                    continue
                if is_triggered(entry.direction, amount, entry.threshold_amount):
                    candidates.append(
                        build_alert(entry, amount, names.get(entry.variant_key, entry.variant_key))
                    )

            logger.info(
                "watchlist_entries_evaluated",
                entries=len(entries),
                triggered=len(candidates),
                missing_prices=missing_prices,
            )

            fired: list[FiredAlert] = []
            for alert in candidates:
                if await self._fire(session, alert):
                    fired.append(alert)
            return fired

    @staticmethod
    async def _load_prices(
        session: AsyncSession, variant_keys: set[str]
    ) -> dict[tuple[str, str, str, str], Decimal]:
        rows = await session.execute(
            select(
                PriceSnapshot.variant_key,
                PriceSnapshot.market,
                PriceSnapshot.kind,
                PriceSnapshot.currency,
                PriceSnapshot.amount,
            ).where(PriceSnapshot.variant_key.in_(variant_keys))
        )
        return {
            (row.variant_key, row.market, row.kind, row.currency): Decimal(row.amount)
            for row in rows
        }

    @staticmethod
    async def _load_names(session: AsyncSession, variant_keys: set[str]) -> dict[str, str]:
        rows = await session.execute(
            select(CardVariant.variant_key, CardVariant.name).where(
                CardVariant.variant_key.in_(variant_keys)
            )
        )
        return {row.variant_key: row.name for row in rows}

    @staticmethod
    async def _fire(session: AsyncSession, alert: FiredAlert) -> bool:
        """Disable the entry and record the notification in one transaction."""
        try:
            result = await session.execute(
                update(WatchlistEntry)
                .where(WatchlistEntry.id == alert.entry_id, WatchlistEntry.enabled.is_(True))
                .values(enabled=False)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Disabled by another writer since it was loaded
                await session.rollback()
                logger.info("watchlist_entry_already_disabled", entry_id=str(alert.entry_id))
                return False

            session.add(
                Notification(
                    user_id=alert.user_id,
                    type=NOTIFICATION_TYPE,
                    title=alert.title,
                    body=alert.body,
                    data=alert.data,
                )
            )
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(
                "watchlist_alert_write_failed",
                entry_id=str(alert.entry_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        logger.info(
            "watchlist_alert_fired",
            entry_id=str(alert.entry_id),
            user_id=str(alert.user_id),
            variant_key=alert.variant_key,
            amount=alert.data["amount"],
        )
        return True

    async def _push(self, fired: list[FiredAlert]) -> None:
        """Fan out one push per alert per Expo token. Failures are logged only."""
        try:
            async with self.session_factory() as session:
                rows = await session.execute(
                    select(PushToken.user_id, PushToken.token).where(
                        PushToken.user_id.in_({alert.user_id for alert in fired})
                    )
                )
                tokens_by_user: dict[uuid.UUID, list[str]] = {}
                for row in rows:
                    if is_expo_token(row.token):
                        tokens_by_user.setdefault(row.user_id, []).append(row.token)

            messages = [
                PushMessage(
                    to=token,
                    title=alert.title,
                    body=alert.body,
                    data={"variantId": alert.variant_key, "screen": "card"},
                )
                for alert in fired
                for token in tokens_by_user.get(alert.user_id, [])
            ]
            if not messages:
                logger.info("watchlist_push_no_tokens", alerts=len(fired))
                return

            async with self.push_client_factory() as push:
                await push.send_messages(messages)
        except Exception as e:
            logger.warning(
                "watchlist_push_failed",
                alerts=len(fired),
                error=str(e),
                error_type=type(e).__name__,
            )
