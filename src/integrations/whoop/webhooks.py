"""Whoop webhook verification and normalization.

Reference: https://developer.whoop.com/docs/developing/webhooks

A Whoop webhook only carries ``{type, user_id, id, trace_id}``.  Each payload
is first checked for structure, signature and user, then resolved against
the REST API, filtered for actionability (scored, not a nap, not a delete)
and finally mapped onto the normalized records.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import math
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Mapping

from src.integrations.base import (
    RecoveryData,
    RecoveryEvent,
    SleepData,
    SleepEvent,
    SleepStages,
    WebhookEvent,
    WebhookRequest,
    WorkoutData,
    WorkoutEvent,
    local_date,
    parse_iso_datetime,
    safe_float,
    safe_int,
)
from src.integrations.config_loader import get_integration_config
from src.integrations.whoop.client import DEFAULT_SPORT_NAME, WhoopClient, get_sport_name

logger = logging.getLogger("fitsync.whoop.webhooks")

SOURCE = "whoop"
SIGNATURE_HEADER = "X-WHOOP-Signature"
KJ_PER_KCAL = 4.184

WEBHOOK_RESOURCES = ("sleep", "recovery", "workout")
WEBHOOK_ACTIONS = ("updated", "deleted")
VALID_WEBHOOK_TYPES = frozenset(
    f"{resource}.{action}" for resource in WEBHOOK_RESOURCES for action in WEBHOOK_ACTIONS
)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def parse_webhook_type(value: Any) -> tuple[str, str] | None:
    """Split ``"<resource>.<action>"`` into its parts, or None if not allowed."""
    if not isinstance(value, str) or value not in VALID_WEBHOOK_TYPES:
        return None
    resource, action = value.split(".")
    return resource, action


def validate_payload(payload: Any) -> bool:
    """Structural check; runs before any signature or network work."""
    if not isinstance(payload, Mapping):
        logger.info("Invalid payload: not an object")
        return False
    if parse_webhook_type(payload.get("type")) is None:
        logger.info("Invalid payload: unknown type %r", payload.get("type"))
        return False
    user_id = payload.get("user_id")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        logger.info("Invalid payload: missing or invalid user_id")
        return False
    resource_id = payload.get("id")
    if isinstance(resource_id, bool) or not isinstance(resource_id, (int, str)):
        logger.info("Invalid payload: missing or invalid id")
        return False
    if isinstance(resource_id, str) and not resource_id:
        logger.info("Invalid payload: empty id")
        return False
    return True


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Check ``signature`` against ``body``.

    Without a configured secret the check is skipped and always passes.
    With one, a missing or mismatched signature fails.
    """
    if not secret:
        return True
    if not signature:
        logger.info("Missing %s header", SIGNATURE_HEADER)
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(signature.strip().encode("utf-8"), expected.encode("utf-8"))


def user_matches(user_id: int, expected_user_id: str | None) -> bool:
    if not expected_user_id:
        return True
    try:
        return user_id == int(expected_user_id)
    except ValueError:
        return str(user_id) == expected_user_id


def verify_whoop_webhook(
    request: WebhookRequest,
    webhook_secret: str | None = None,
    expected_user_id: str | None = None,
) -> bool:
    """Run structure, signature and user checks on an inbound request."""
    payload = request.json()
    if not validate_payload(payload):
        return False
    if not verify_signature(request.body, request.header(SIGNATURE_HEADER), webhook_secret):
        logger.warning("Rejected Whoop webhook: invalid signature")
        return False
    if not user_matches(payload["user_id"], expected_user_id):
        logger.warning("Rejected Whoop webhook: user id %s not allowed", payload["user_id"])
        return False
    return True


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def ms_to_minutes(value: Any) -> int:
    ms = safe_float(value)
    return round_half_up(ms / 60000) if ms is not None else 0


def _duration_minutes(start: datetime | None, end: datetime | None) -> int:
    if start is None or end is None:
        return 0
    return round_half_up((end - start).total_seconds() / 60)


def _record_date(instant: datetime | None, tz: tzinfo, raw: Mapping[str, Any]) -> date:
    if instant is None:
        logger.warning("Whoop record %s has no timestamp; dating it today", raw.get("id"))
        instant = datetime.now(timezone.utc)
    return local_date(instant, tz)


def _score(raw: Mapping[str, Any]) -> Mapping[str, Any]:
    score = raw.get("score")
    return score if isinstance(score, Mapping) else {}


def normalize_sleep(raw: Mapping[str, Any], tz: tzinfo) -> SleepData:
    """Map a Whoop sleep record onto SleepData, dated by its local start."""
    start = parse_iso_datetime(raw.get("start"))
    end = parse_iso_datetime(raw.get("end"))
    score = _score(raw)

    stages = None
    summary = score.get("stage_summary")
    if isinstance(summary, Mapping):
        stages = SleepStages(
            rem=ms_to_minutes(summary.get("total_rem_sleep_time_milli")),
            deep=ms_to_minutes(summary.get("total_slow_wave_sleep_time_milli")),
            light=ms_to_minutes(summary.get("total_light_sleep_time_milli")),
            awake=ms_to_minutes(summary.get("total_awake_time_milli")),
        )

    return SleepData(
        source=SOURCE,
        date=_record_date(start, tz, raw),
        start_time=start,
        end_time=end,
        duration_minutes=_duration_minutes(start, end),
        stages=stages,
        score=safe_float(score.get("sleep_performance_percentage")),
        efficiency=safe_float(score.get("sleep_efficiency_percentage")),
        respiratory_rate=safe_float(score.get("respiratory_rate")),
        record_id=str(raw["id"]) if raw.get("id") is not None else None,
        raw=dict(raw),
    )


def normalize_recovery(raw: Mapping[str, Any], tz: tzinfo) -> RecoveryData:
    """Map a Whoop recovery record onto RecoveryData, dated by its local creation time."""
    score = _score(raw)
    return RecoveryData(
        source=SOURCE,
        date=_record_date(parse_iso_datetime(raw.get("created_at")), tz, raw),
        score=safe_float(score.get("recovery_score")) or 0.0,
        hrv=safe_float(score.get("hrv_rmssd_milli")),
        resting_heart_rate=safe_float(score.get("resting_heart_rate")),
        spo2=safe_float(score.get("spo2_percentage")),
        skin_temp_deviation=safe_float(score.get("skin_temp_celsius")),
        sleep_id=str(raw["sleep_id"]) if raw.get("sleep_id") is not None else None,
        raw=dict(raw),
    )


def _workout_type(raw: Mapping[str, Any]) -> str:
    if raw.get("sport_id") is not None:
        return get_sport_name(raw.get("sport_id"))
    name = raw.get("sport_name")
    if isinstance(name, str) and name:
        return name.replace("_", " ").title()
    return DEFAULT_SPORT_NAME


def normalize_workout(raw: Mapping[str, Any], tz: tzinfo) -> WorkoutData:
    """Map a Whoop workout record onto WorkoutData, dated by its local start."""
    start = parse_iso_datetime(raw.get("start"))
    end = parse_iso_datetime(raw.get("end"))
    score = _score(raw)
    kilojoule = safe_float(score.get("kilojoule"))
    avg_hr = safe_float(score.get("average_heart_rate"))
    max_hr = safe_float(score.get("max_heart_rate"))

    return WorkoutData(
        source=SOURCE,
        date=_record_date(start, tz, raw),
        type=_workout_type(raw),
        duration_minutes=_duration_minutes(start, end),
        strain=safe_float(score.get("strain")),
        calories=round_half_up(kilojoule / KJ_PER_KCAL) if kilojoule is not None else None,
        heart_rate_avg=round_half_up(avg_hr) if avg_hr is not None else None,
        heart_rate_max=round_half_up(max_hr) if max_hr is not None else None,
        distance_meters=safe_float(score.get("distance_meter")),
        record_id=str(raw["id"]) if raw.get("id") is not None else None,
        raw=dict(raw),
    )


def is_scored(raw: Mapping[str, Any]) -> bool:
    return raw.get("score_state") == "SCORED"


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


async def parse_whoop_webhook(
    payload: Mapping[str, Any],
    client: WhoopClient,
    tz: tzinfo,
    today: date | None = None,
) -> WebhookEvent | None:
    """Resolve a verified payload into a normalized event.

    Returns None for delete events, unscored records, naps, and recoveries
    that cannot be found in the search window.

    Args:
        payload: Verified webhook payload.
        client:  Authenticated API client used to fetch the full record.
        tz:      User's timezone for the local-date rule.
        today:   Local "today" anchoring the recovery search window.

    Raises:
        WhoopAPIError, UpstreamUnavailableError: The API lookup failed.
    """
    parsed = parse_webhook_type(payload.get("type"))
    if parsed is None:
        logger.info("Cannot parse webhook type %r", payload.get("type"))
        return None
    resource, action = parsed
    resource_id = payload.get("id")

    if action == "deleted":
        logger.info("Ignoring delete event for %s %s", resource, resource_id)
        return None

    if resource == "sleep":
        sleep = await client.get_sleep_by_id(resource_id)
        if not is_scored(sleep):
            logger.info("Ignoring unscored sleep %s (state: %s)", resource_id, sleep.get("score_state"))
            return None
        if sleep.get("nap"):
            logger.info("Ignoring nap %s", resource_id)
            return None
        return SleepEvent(normalize_sleep(sleep, tz))

    if resource == "workout":
        workout = await client.get_workout_by_id(resource_id)
        if not is_scored(workout):
            logger.info(
                "Ignoring unscored workout %s (state: %s)", resource_id, workout.get("score_state")
            )
            return None
        return WorkoutEvent(normalize_workout(workout, tz))

    # Recovery has no fetch-by-id; the webhook id is the associated sleep's id.
    policy = get_integration_config().webhooks
    anchor = today or local_date(datetime.now(timezone.utc), tz)
    recoveries = await client.get_recovery(
        anchor - timedelta(days=policy.recovery_search_days_back),
        anchor + timedelta(days=policy.recovery_search_days_forward),
    )
    recovery = next(
        (r for r in recoveries if str(r.get("sleep_id")) == str(resource_id)),
        None,
    )
    if recovery is None:
        logger.info("Recovery for sleep %s not found in API results", resource_id)
        return None
    if not is_scored(recovery):
        logger.info(
            "Ignoring unscored recovery %s (state: %s)", resource_id, recovery.get("score_state")
        )
        return None
    return RecoveryEvent(normalize_recovery(recovery, tz))
