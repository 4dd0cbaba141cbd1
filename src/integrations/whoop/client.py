"""Whoop Developer API v2 client.

API base: https://api.prod.whoop.com/developer/v2

Endpoints used:
    /activity/sleep           Sleep records (paginated), /{id} for one record
    /recovery                 Recovery records (paginated, no fetch-by-id)
    /activity/workout         Workout records (paginated), /{id} for one record
    /cycle                    Physiological cycles (paginated)
    /user/profile/basic       Authenticated user's profile

Range queries follow ``next_token`` until the collection is exhausted.
Rate-limited (429) and server-error (5xx) responses and network failures are
retried with exponential backoff; other error statuses fail immediately.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any, Awaitable, Callable

import httpx

from src.integrations.base import TokenSet
from src.integrations.config_loader import RetryPolicy, get_integration_config
from src.integrations.errors import RateLimitedError, UpstreamUnavailableError, WhoopAPIError
from src.integrations.tokens import TokenCustodian
from src.integrations.whoop.oauth import WhoopOAuth

logger = logging.getLogger("fitsync.whoop.client")

WHOOP_API_BASE = "https://api.prod.whoop.com/developer/v2"

# Whoop sport_id -> display name
SPORT_NAMES: dict[int, str] = {
    -1: "Activity",
    0: "Running",
    1: "Cycling",
    16: "Baseball",
    17: "Basketball",
    18: "Rowing",
    19: "Fencing",
    20: "Field Hockey",
    21: "Football",
    22: "Golf",
    24: "Ice Hockey",
    25: "Lacrosse",
    27: "Rugby",
    28: "Sailing",
    29: "Skiing",
    30: "Soccer",
    31: "Softball",
    32: "Squash",
    33: "Swimming",
    34: "Tennis",
    35: "Track & Field",
    36: "Volleyball",
    37: "Water Polo",
    38: "Wrestling",
    39: "Boxing",
    42: "Dance",
    43: "Pilates",
    44: "Yoga",
    45: "Weightlifting",
    47: "Cross Country Skiing",
    48: "Functional Fitness",
    49: "Duathlon",
    51: "Gymnastics",
    52: "Hiking/Rucking",
    53: "Horseback Riding",
    55: "Kayaking",
    56: "Martial Arts",
    57: "Mountain Biking",
    59: "Powerlifting",
    60: "Rock Climbing",
    61: "Paddleboarding",
    62: "Triathlon",
    63: "Walking",
    64: "Surfing",
    65: "Elliptical",
    66: "Stairmaster",
    70: "Meditation",
    71: "Other",
    73: "Diving",
    74: "Operations - Loss",
    75: "Operations - Tactical",
    76: "Operations - High",
    77: "Water Aerobics",
    82: "Spin",
    83: "Jiu Jitsu",
    84: "Stretching",
    85: "Jogging",
    86: "Massage Therapy",
    87: "Sauna",
    88: "Cold Exposure",
    89: "Assault Bike",
    90: "Kickboxing",
    91: "Obstacle Course Racing",
    92: "Motor Racing",
    93: "HIIT",
    94: "Caddying",
    95: "Ultimate Frisbee",
    96: "Breathwork",
    97: "Jumping Rope",
    98: "F45 Training",
    99: "Barry's",
    100: "CrossFit",
    101: "Orange Theory Fitness",
    102: "SoulCycle",
    103: "Peloton Bike",
    104: "Peloton Tread",
    105: "Peloton Floor",
}

DEFAULT_SPORT_NAME = "Activity"


def get_sport_name(sport_id: Any) -> str:
    """Display name for a Whoop sport id.  Unknown or malformed ids map to "Activity"."""
    try:
        return SPORT_NAMES.get(int(sport_id), DEFAULT_SPORT_NAME)
    except (TypeError, ValueError):
        return DEFAULT_SPORT_NAME


def _range_params(start: date, end: date) -> dict[str, str]:
    return {
        "start": f"{start.isoformat()}T00:00:00.000Z",
        "end": f"{end.isoformat()}T23:59:59.999Z",
    }


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class WhoopClient:
    """Authenticated Whoop API client with retry and pagination.

    Args:
        tokens:      Valid token set; only the access token is used.
        http_client: Optional pre-configured httpx client (for testing).
        retry:       Retry ceiling and initial backoff.  Defaults to config.
        sleep:       Awaitable delay function.  Tests pass a no-op.
    """

    def __init__(
        self,
        tokens: TokenSet,
        http_client: httpx.AsyncClient | None = None,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.tokens = tokens
        self._http_client = http_client
        policy = retry or get_integration_config().retry
        self.max_retries = policy.max_retries
        self.initial_backoff = policy.initial_backoff_seconds
        self._sleep = sleep

    @classmethod
    async def from_custodian(
        cls,
        custodian: TokenCustodian,
        oauth: WhoopOAuth,
        http_client: httpx.AsyncClient | None = None,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> "WhoopClient":
        """Build a client from the custodian's tokens, refreshing first if expired.

        Raises:
            TokensNotFoundError:         No tokens stored yet.
            IntegrationUnavailableError: Refresh failed with no usable fallback.
        """
        tokens = await custodian.get_valid_tokens(oauth.refresh_access_token)
        return cls(tokens, http_client=http_client, retry=retry, sleep=sleep)

    # ------------------------------------------------------------------
    # Core request with retry
    # ------------------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        return self.initial_backoff * (2**attempt)

    async def _send(self, url: str, params: dict[str, str] | None) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.tokens.access_token}"}
        if self._http_client:
            return await self._http_client.get(url, params=params, headers=headers)
        async with httpx.AsyncClient(timeout=30.0) as client:
            return await client.get(url, params=params, headers=headers)

    async def request(self, endpoint: str, params: dict[str, str] | None = None) -> Any:
        """GET ``endpoint`` and return the decoded JSON body.

        Raises:
            RateLimitedError:         Still rate limited after the last retry.
            WhoopAPIError:            Non-retriable status, or 5xx after the last retry.
            UpstreamUnavailableError: Network failure after the last retry.
        """
        url = f"{WHOOP_API_BASE}{endpoint}"
        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            delay = self._backoff(attempt)
            try:
                response = await self._send(url, params)
            except httpx.TransportError as exc:
                logger.warning("Whoop request to %s failed: %s", endpoint, exc)
                last_error = UpstreamUnavailableError(f"Whoop request to {endpoint} failed: {exc}")
            else:
                if response.status_code == 429:
                    retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                    if retry_after is not None:
                        delay = retry_after
                    last_error = RateLimitedError(response.text)
                    logger.info("Whoop rate limited on %s, waiting %.1fs", endpoint, delay)
                elif 500 <= response.status_code < 600:
                    last_error = WhoopAPIError(response.status_code, response.text)
                    logger.warning("Whoop server error %s on %s", response.status_code, endpoint)
                elif not response.is_success:
                    raise WhoopAPIError(response.status_code, response.text)
                else:
                    return response.json()

            if attempt < self.max_retries:
                logger.info("Retry %d/%d for %s", attempt + 1, self.max_retries, endpoint)
                await self._sleep(delay)

        if last_error is None:
            raise UpstreamUnavailableError(
                f"Whoop request to {endpoint} was not attempted (max_retries={self.max_retries})"
            )
        raise last_error

    async def _paginate(self, endpoint: str, start: date, end: date) -> list[dict]:
        records: list[dict] = []
        next_token: str | None = None
        while True:
            params = _range_params(start, end)
            if next_token:
                params["nextToken"] = next_token
            page = await self.request(endpoint, params)
            records.extend(page.get("records") or [])
            next_token = page.get("next_token")
            if not next_token:
                return records

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def get_user(self) -> dict:
        """Authenticated user's basic profile."""
        return await self.request("/user/profile/basic")

    async def get_sleep(self, start: date, end: date) -> list[dict]:
        return await self._paginate("/activity/sleep", start, end)

    async def get_sleep_by_id(self, sleep_id: int | str) -> dict:
        return await self.request(f"/activity/sleep/{sleep_id}")

    async def get_recovery(self, start: date, end: date) -> list[dict]:
        return await self._paginate("/recovery", start, end)

    async def get_workouts(self, start: date, end: date) -> list[dict]:
        return await self._paginate("/activity/workout", start, end)

    async def get_workout_by_id(self, workout_id: int | str) -> dict:
        return await self.request(f"/activity/workout/{workout_id}")

    async def get_cycles(self, start: date, end: date) -> list[dict]:
        return await self._paginate("/cycle", start, end)
