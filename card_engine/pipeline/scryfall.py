"""
Card Engine — Scryfall API Client

Three upstream calls:
- GET /bulk-data           → manifest of downloadable datasets
- GET {download_uri}       → the full "default_cards" catalog, streamed
- GET /cards/{id}          → one card's live prices (card-detail lookups)

The bulk file is a JSON array of card objects, ~500MB. It is never parsed as
one document: text is decoded as it arrives so peak memory is bounded by a
single record, not the catalog.

No retries here. A failed fetch raises ScryfallError and the next scheduled
cycle tries again.
"""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator, NamedTuple

import httpx
import structlog
from pydantic import BaseModel, Field

from card_engine.config import settings

logger = structlog.get_logger(__name__)

_decoder = json.JSONDecoder()
# Characters between records in the bulk array: brackets, commas, whitespace
_RECORD_SEPARATORS = frozenset(" \t\r\n[],")


class ScryfallError(RuntimeError):
    """Manifest, download or live lookup failed."""


# ---------------------------------------------------------------------------
# Pydantic Response Models
# ---------------------------------------------------------------------------


class ScryfallPrices(BaseModel):
    """Price sub-object. Scryfall sends amounts as strings, or null."""
    usd: str | None = None
    usd_foil: str | None = None
    usd_etched: str | None = None
    eur: str | None = None
    eur_foil: str | None = None
    eur_etched: str | None = None
    tix: str | None = None


class ImageUris(BaseModel):
    normal: str | None = None


class CardFace(BaseModel):
    oracle_text: str | None = None
    image_uris: ImageUris | None = None


class ScryfallCard(BaseModel):
    """One record of the default_cards bulk file."""
    id: str
    oracle_id: str | None = None
    name: str
    lang: str
    layout: str
    set: str
    collector_number: str
    oracle_text: str | None = None
    type_line: str | None = None
    colors: list[str] | None = None
    color_identity: list[str] | None = None
    cmc: float | None = None
    mana_cost: str | None = None
    rarity: str | None = None
    finishes: list[str] | None = None
    image_uris: ImageUris | None = None
    card_faces: list[CardFace] | None = None
    prices: ScryfallPrices | None = None
    games: list[str] | None = None

    @property
    def is_foil_only(self) -> bool:
        finishes = self.finishes or []
        return "foil" in finishes and "nonfoil" not in finishes

    @property
    def variant_key(self) -> str:
        """scryfall:{id}, suffixed with -foil for printings that only exist in foil."""
        suffix = "-foil" if self.is_foil_only else ""
        return f"scryfall:{self.id}{suffix}"

    @property
    def image_url(self) -> str | None:
        """Front image, falling back to the first face for double-faced cards."""
        if self.image_uris and self.image_uris.normal:
            return self.image_uris.normal
        if self.card_faces and self.card_faces[0].image_uris:
            return self.card_faces[0].image_uris.normal
        return None

    @property
    def full_oracle_text(self) -> str | None:
        if self.oracle_text:
            return self.oracle_text
        if self.card_faces:
            return "\n//\n".join(face.oracle_text or "" for face in self.card_faces)
        return None


class BulkDataEntry(BaseModel):
    type: str
    download_uri: str
    updated_at: str | None = None
    size: int | None = None


class BulkDataManifest(BaseModel):
    data: list[BulkDataEntry] = Field(default_factory=list)


class ScryfallLiveData(BaseModel):
    """The subset of GET /cards/{id} used by card-detail lookups."""
    id: str | None = None
    prices: ScryfallPrices = Field(default_factory=ScryfallPrices)
    purchase_uris: dict[str, str] | None = None
    related_uris: dict[str, str] | None = None


# ---------------------------------------------------------------------------
# Price field mapping
# ---------------------------------------------------------------------------


class PriceField(NamedTuple):
    field: str
    market: str
    kind: str
    currency: str


class PriceObservation(NamedTuple):
    market: str
    kind: str
    currency: str
    amount: Decimal


PRICE_FIELDS: tuple[PriceField, ...] = (
    PriceField("usd", "tcgplayer", "market", "USD"),
    PriceField("usd_foil", "tcgplayer", "foil", "USD"),
    PriceField("usd_etched", "tcgplayer", "etched", "USD"),
    PriceField("eur", "cardmarket", "market", "EUR"),
    PriceField("eur_foil", "cardmarket", "foil", "EUR"),
    PriceField("eur_etched", "cardmarket", "etched", "EUR"),
    PriceField("tix", "mtgo", "market", "TIX"),
)


def parse_amount(raw: Any) -> Decimal | None:
    """Parse a Scryfall price string. Non-positive or unparsable values give None."""
    if raw is None or raw == "":
        return None
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


def extract_prices(prices: ScryfallPrices | None) -> list[PriceObservation]:
    """Map every usable price field onto (market, kind, currency, amount)."""
    if prices is None:
        return []

    observations: list[PriceObservation] = []
    for pf in PRICE_FIELDS:
        amount = parse_amount(getattr(prices, pf.field))
        if amount is not None:
            observations.append(PriceObservation(pf.market, pf.kind, pf.currency, amount))
    return observations


class BulkRecordDecoder:
    """
    Incremental decoder for the bulk file's top-level values.

    Text is fed in arbitrary chunks; complete objects come out as soon as
    their closing brace arrives and only the unfinished tail is kept. Works
    for the one-card-per-line array, indented arrays, a minified single-line
    array, and NDJSON.

    A decode failure followed by a newline and more content is a real syntax
    error: the offending line is dropped and decoding resumes on the next
    line. Otherwise the record is just incomplete and waits for more text.

    Usage:
        decoder = BulkRecordDecoder()
        for chunk in chunks:
            for record in decoder.feed(chunk):
                ...
        decoder.close()
    """

    def __init__(self, max_buffer_chars: int | None = None) -> None:
        self._buffer = ""
        self._max_buffer = max_buffer_chars or settings.BULK_MAX_RECORD_CHARS
        self.malformed = 0

    def feed(self, text: str) -> list[dict[str, Any]]:
        buf = self._buffer + text
        records: list[dict[str, Any]] = []
        pos, end = 0, len(buf)

        while True:
            while pos < end and buf[pos] in _RECORD_SEPARATORS:
                pos += 1
            if pos >= end:
                break
            try:
                obj, pos = _decoder.raw_decode(buf, pos)
            except json.JSONDecodeError as e:
                resume = self._resync_point(buf, e.pos)
                if resume is None:
                    break
                self.malformed += 1
                logger.debug("scryfall_bulk_record_malformed", error=e.msg, offset=e.pos)
                pos = resume
                continue
            if isinstance(obj, dict):
                records.append(obj)

        self._buffer = buf[pos:]
        if len(self._buffer) > self._max_buffer:
            raise ScryfallError(
                f"Bulk record exceeds {self._max_buffer} characters without completing"
            )
        return records

    @staticmethod
    def _resync_point(buf: str, error_pos: int) -> int | None:
        """Start of the next line with content after error_pos, or None if there is none yet."""
        newline = buf.find("\n", error_pos)
        while newline != -1:
            if buf[newline + 1:].strip():
                return newline + 1
            newline = buf.find("\n", newline + 1)
        return None

    def close(self) -> None:
        """Flag a truncated final record once the stream has ended."""
        tail = self._buffer.strip(" \t\r\n[],")
        if tail:
            self.malformed += 1
            logger.warning("scryfall_bulk_truncated_record", chars=len(tail))
        self._buffer = ""


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


class ScryfallClient:
    """
    Async client for the Scryfall API.

    Usage:
        async with ScryfallClient() as client:
            uri = await client.fetch_default_cards_uri()
            async for record in client.iter_bulk_records(uri):
                ...
    """

    def __init__(
        self,
        base_url: str | None = None,
        user_agent: str | None = None,
        timeout: float | None = None,
        download_timeout: float | None = None,
    ):
        self._base_url = base_url or settings.SCRYFALL_API_URL
        self._user_agent = user_agent or settings.SCRYFALL_USER_AGENT
        self._timeout = timeout or settings.SCRYFALL_TIMEOUT_SECONDS
        self._download_timeout = download_timeout or settings.BULK_DOWNLOAD_TIMEOUT_SECONDS
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ScryfallClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"User-Agent": self._user_agent, "Accept": "application/json"},
            timeout=self._timeout,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()

    async def _get_json(self, path: str) -> dict[str, Any]:
        """Single GET, no retry. Any failure becomes ScryfallError."""
        assert self._client is not None, "Client not initialized. Use 'async with'."

        try:
            response = await self._client.get(path)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "scryfall_http_error",
                status_code=e.response.status_code,
                path=path,
            )
            raise ScryfallError(f"Scryfall {path} returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("scryfall_request_error", error=str(e), path=path)
            raise ScryfallError(f"Scryfall {path} request failed: {e}") from e
        except ValueError as e:
            logger.error("scryfall_invalid_json", error=str(e), path=path)
            raise ScryfallError(f"Scryfall {path} returned invalid JSON") from e

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def fetch_bulk_manifest(self) -> BulkDataManifest:
        logger.info("scryfall_fetch_bulk_manifest")
        data = await self._get_json(settings.SCRYFALL_BULK_DATA_PATH)
        return BulkDataManifest.model_validate(data)

    async def fetch_default_cards_uri(self) -> str:
        """
        Return the download URI of the default_cards dataset.

        Raises:
            ScryfallError: manifest unavailable or no default_cards entry.
        """
        manifest = await self.fetch_bulk_manifest()
        for entry in manifest.data:
            if entry.type == settings.SCRYFALL_BULK_TYPE:
                logger.info(
                    "scryfall_bulk_entry_selected",
                    type=entry.type,
                    download_uri=entry.download_uri,
                    size=entry.size,
                )
                return entry.download_uri

        raise ScryfallError(
            f"No {settings.SCRYFALL_BULK_TYPE} entry found in Scryfall bulk data."
        )

    async def iter_bulk_records(self, download_uri: str) -> AsyncIterator[dict[str, Any]]:
        """
        Stream the bulk file and yield raw card dicts one at a time.

        The read timeout is generous because the file is large; a timeout is
        a fetch failure like any other.

        Raises:
            ScryfallError: non-2xx response, timeout, or dropped connection.
        """
        assert self._client is not None, "Client not initialized. Use 'async with'."

        timeout = httpx.Timeout(self._download_timeout, connect=self._timeout)
        logger.info("scryfall_bulk_download_start", download_uri=download_uri)

        decoder = BulkRecordDecoder()
        chars = 0
        records = 0
        try:
            async with self._client.stream("GET", download_uri, timeout=timeout) as response:
                if response.status_code >= 400:
                    logger.error(
                        "scryfall_bulk_download_http_error",
                        status_code=response.status_code,
                        download_uri=download_uri,
                    )
                    raise ScryfallError(f"Download returned {response.status_code}")

                async for chunk in response.aiter_text():
                    chars += len(chunk)
                    for record in decoder.feed(chunk):
                        records += 1
                        yield record
        except httpx.HTTPError as e:
            logger.error(
                "scryfall_bulk_download_failed",
                error=str(e),
                error_type=type(e).__name__,
                chars_read=chars,
            )
            raise ScryfallError(f"Bulk download failed after {chars} characters: {e}") from e

        decoder.close()
        logger.info(
            "scryfall_bulk_download_complete",
            chars_read=chars,
            records=records,
            malformed=decoder.malformed,
        )

    async def fetch_card(self, scryfall_id: str) -> ScryfallLiveData:
        """
        Fetch live prices for one card.

        Args:
            scryfall_id: Bare Scryfall card id (no "scryfall:" prefix or "-foil" suffix).
        """
        logger.debug("scryfall_fetch_card", scryfall_id=scryfall_id)
        data = await self._get_json(f"/cards/{scryfall_id}")
        return ScryfallLiveData.model_validate(data)
