import hashlib
import json
from datetime import datetime, timedelta, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.http import api_football_client, request_with_retries
from app.core.logger import get_logger

log = get_logger("providers.api_football")

SERVICE = "api-football"
FIXTURE_TTL_SECONDS = 30
ODDS_TTL_SECONDS = 300


class ApiFootballError(RuntimeError):
    pass


def _make_key(url: str, params: dict, cache_tag: str | None = None) -> str:
    raw = url + "|" + (cache_tag or "") + "|" + json.dumps(params, sort_keys=True, ensure_ascii=False)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def _errors_empty(errors_obj) -> bool:
    if errors_obj is None:
        return True
    if isinstance(errors_obj, (dict, list)):
        return len(errors_obj) == 0
    if isinstance(errors_obj, str):
        return errors_obj.strip() == ""
    return False


def _payload_has_errors(payload) -> bool:
    if not isinstance(payload, dict):
        return False
    return not _errors_empty(payload.get("errors"))


async def get_cached(session: AsyncSession, cache_key: str):
    q = text(
        """
        SELECT payload FROM api_cache
        WHERE cache_key=:k AND expires_at > now()
    """
    )
    res = await session.execute(q, {"k": cache_key})
    row = res.first()
    payload = row[0] if row else None
    # Quota/validation errors must not be served from cache.
    if payload is not None and _payload_has_errors(payload):
        await session.execute(text("DELETE FROM api_cache WHERE cache_key=:k"), {"k": cache_key})
        return None
    return payload


async def set_cached(session: AsyncSession, cache_key: str, payload: dict, ttl_seconds: int):
    expires = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
    q = text(
        """
        INSERT INTO api_cache(cache_key, payload, expires_at)
        VALUES(:k, CAST(:p AS jsonb), :e)
        ON CONFLICT (cache_key)
        DO UPDATE SET payload=CAST(:p AS jsonb), expires_at=:e
    """
    )
    await session.execute(
        q,
        {
            "k": cache_key,
            "p": json.dumps(payload, ensure_ascii=False),
            "e": expires,
        },
    )


async def api_get(
    session: AsyncSession,
    url: str,
    params: dict,
    ttl_seconds: int,
    *,
    cache_tag: str | None = None,
    circuit=None,
    budget=None,
):
    """
    Cached GET against API-Football.

    Cache hits cost nothing. A miss is gated by the circuit breaker (raises CircuitOpenError)
    and the daily request budget (raises BudgetExceededError) before the request is made, and
    its outcome is reported back to the breaker.
    """
    key = _make_key(url, params, cache_tag=cache_tag)
    cached = await get_cached(session, key)
    if cached is not None:
        return cached

    if circuit is not None:
        await circuit.check(SERVICE)
    if budget is not None:
        await budget.check_and_increment(SERVICE)

    client = api_football_client()
    try:
        r = await request_with_retries(client, "GET", url, params=params)
        r.raise_for_status()
        data = r.json()
        if _payload_has_errors(data):
            raise ApiFootballError(f"API-Football returned errors for {url}: {data.get('errors')}")
    except Exception as exc:
        log.warning("api_football_request_failed url=%s params=%s error=%s", url, params, exc)
        if circuit is not None:
            await circuit.record_failure(SERVICE, exc)
        raise

    if circuit is not None:
        await circuit.record_success(SERVICE)
    await set_cached(session, key, data, ttl_seconds)
    return data


async def get_fixture(session: AsyncSession, fixture_id: int, *, circuit=None, budget=None) -> dict | None:
    params = {"id": int(fixture_id), "timezone": "UTC"}
    data = await api_get(
        session,
        "/fixtures",
        params,
        ttl_seconds=FIXTURE_TTL_SECONDS,
        cache_tag="fixture_live_v1",
        circuit=circuit,
        budget=budget,
    )
    rows = data.get("response") or []
    return rows[0] if rows else None


async def get_fixture_prediction(session: AsyncSession, fixture_id: int, *, circuit=None, budget=None) -> dict | None:
    params = {"fixture": int(fixture_id)}
    data = await api_get(
        session,
        "/predictions",
        params,
        ttl_seconds=int(settings.api_football_analysis_ttl_seconds),
        cache_tag="predictions_v1",
        circuit=circuit,
        budget=budget,
    )
    rows = data.get("response") or []
    return rows[0] if rows else None


async def get_fixture_odds(session: AsyncSession, fixture_id: int, *, circuit=None, budget=None) -> dict | None:
    params = {"fixture": int(fixture_id), "bet": 1}
    data = await api_get(
        session,
        "/odds",
        params,
        ttl_seconds=ODDS_TTL_SECONDS,
        cache_tag="odds_fixture_v3",
        circuit=circuit,
        budget=budget,
    )
    rows = data.get("response") or []
    return rows[0] if rows else None


def _pct(value) -> float | None:
    if value is None:
        return None
    try:
        return float(str(value).strip().rstrip("%"))
    except ValueError:
        return None


def _odd(value) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def extract_match_winner_odds(odds_entry: dict | None) -> tuple[float | None, float | None, float | None]:
    """First bookmaker's 1X2 prices from an /odds response entry."""
    for bookmaker in (odds_entry or {}).get("bookmakers") or []:
        for bet in bookmaker.get("bets") or []:
            if bet.get("id") != 1 and (bet.get("name") or "").lower() != "match winner":
                continue
            prices = {str(v.get("value")).lower(): _odd(v.get("odd")) for v in bet.get("values") or []}
            home, draw, away = prices.get("home"), prices.get("draw"), prices.get("away")
            if home and draw and away:
                return home, draw, away
    return None, None, None


def extract_analysis(prediction: dict | None, odds_entry: dict | None) -> dict:
    pred = (prediction or {}).get("predictions") or {}
    percent = pred.get("percent") or {}
    comparison = (prediction or {}).get("comparison") or {}
    h2h = (prediction or {}).get("h2h") or []
    odds_home, odds_draw, odds_away = extract_match_winner_odds(odds_entry)
    h2h_summary = None
    if h2h:
        parts = []
        for fx in h2h[:5]:
            teams = fx.get("teams") or {}
            goals = fx.get("goals") or {}
            parts.append(
                f"{(teams.get('home') or {}).get('name')} {goals.get('home')}-{goals.get('away')} "
                f"{(teams.get('away') or {}).get('name')}"
            )
        h2h_summary = "; ".join(parts)
    return {
        "home_win_pct": _pct(percent.get("home")),
        "draw_pct": _pct(percent.get("draw")),
        "away_win_pct": _pct(percent.get("away")),
        "advice": pred.get("advice"),
        "odds_home": odds_home,
        "odds_draw": odds_draw,
        "odds_away": odds_away,
        "h2h_summary": h2h_summary,
        "form_home": ((comparison.get("form") or {}).get("home")),
        "form_away": ((comparison.get("form") or {}).get("away")),
    }
