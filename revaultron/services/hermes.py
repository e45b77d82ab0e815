"""Hermes price-update client.

Fetches signed price-update payloads (to be forwarded to the volatility
index) together with the parsed prices they carry.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import httpx

from revaultron.config import HermesSettings
from revaultron.errors import OracleError
from revaultron.models import PriceQuote

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceUpdateBundle:
    payloads: List[bytes]
    quotes: Dict[str, PriceQuote] = field(default_factory=dict)


def _normalize_feed_id(feed: str) -> str:
    value = feed.strip().lower()
    return value if value.startswith("0x") else f"0x{value}"


def parse_update_response(payload: Any) -> PriceUpdateBundle:
    if not isinstance(payload, dict):
        raise OracleError("unexpected Hermes response shape")
    binary = payload.get("binary") or {}
    encoding = str(binary.get("encoding") or "hex")
    if encoding != "hex":
        raise OracleError(f"unsupported payload encoding {encoding!r}")
    try:
        payloads = [bytes.fromhex(str(item).removeprefix("0x")) for item in binary.get("data") or []]
    except ValueError as exc:
        raise OracleError(f"malformed hex payload: {exc}") from exc

    quotes: Dict[str, PriceQuote] = {}
    for item in payload.get("parsed") or []:
        if not isinstance(item, dict):
            continue
        price = item.get("price")
        if not isinstance(price, dict):
            continue
        try:
            quotes[_normalize_feed_id(str(item["id"]))] = PriceQuote(
                price=int(price["price"]),
                conf=int(price["conf"]),
                expo=int(price["expo"]),
                publish_time=int(price["publish_time"]),
            )
        except (KeyError, TypeError, ValueError):
            LOGGER.warning("skipping malformed parsed price entry: %s", item)
    if not payloads:
        raise OracleError("Hermes returned no price-update payloads")
    return PriceUpdateBundle(payloads=payloads, quotes=quotes)


class HermesClient:
    """Synchronous Hermes client with retry on rate limiting.

    Parameters
    ----------
    settings:
        Base URL, timeout and retry budget.
    transport:
        Optional ``httpx`` transport, used by tests to serve canned responses.
    """

    def __init__(
        self,
        settings: HermesSettings | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._settings = settings or HermesSettings()
        self._client = httpx.Client(
            base_url=self._settings.base_url.rstrip("/"),
            timeout=self._settings.timeout_seconds,
            transport=transport,
        )

    def __enter__(self) -> HermesClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def latest_price_updates(self, feeds: Sequence[str]) -> PriceUpdateBundle:
        ids = [_normalize_feed_id(feed) for feed in feeds if feed.strip()]
        if not ids:
            raise OracleError("at least one feed id is required")
        params: list[tuple[str, str]] = [("ids[]", feed) for feed in ids]
        params.append(("encoding", "hex"))
        params.append(("parsed", "true"))
        payload = self._get_json("/v2/updates/price/latest", params)
        bundle = parse_update_response(payload)
        LOGGER.info("fetched %d price update payload(s) for %s", len(bundle.payloads), ids)
        return bundle

    def _get_json(self, path: str, params: list[tuple[str, str]]) -> Any:
        max_attempts = max(1, self._settings.max_attempts)
        base_delay = self._settings.retry_base_delay_seconds
        for attempt in range(max_attempts):
            response = self._client.get(path, params=params)
            if response.status_code == 429 and attempt + 1 < max_attempts:
                delay = base_delay * (2 ** attempt)
                retry_after = response.headers.get("Retry-After")
                if retry_after:
                    try:
                        delay = max(delay, float(retry_after))
                    except ValueError:
                        pass
                LOGGER.warning("Hermes rate limited, retrying in %.2fs", delay)
                time.sleep(delay)
                continue
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise OracleError(f"Hermes request failed: {exc.response.status_code}") from exc
            return response.json()
        raise OracleError(f"Hermes request failed for path={path}")
